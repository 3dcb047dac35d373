"""Shared pytest fixtures for API, database and service tests.

The suite runs against a file-backed SQLite database and the in-memory
resolution cache, so no PostgreSQL or Redis is needed.
"""

import os
import tempfile
from collections.abc import AsyncGenerator
from unittest.mock import MagicMock, Mock

_TEST_DB_PATH = os.path.join(tempfile.gettempdir(), f"urlshortener-test-{os.getpid()}.db")

os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB_PATH}"
os.environ["CACHE_BACKEND"] = "memory"
os.environ["KAFKA_ENABLED"] = "false"
os.environ["SWEEPER_ENABLED"] = "false"
os.environ["BASE_URL"] = "http://short.test"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from urlshortener.analytics import ClickRecorder  # noqa: E402
from urlshortener.cache import InMemoryResolutionCache  # noqa: E402
from urlshortener.config import Settings, get_settings  # noqa: E402
from urlshortener.database import Base, async_session, engine  # noqa: E402
from urlshortener.dependencies import ServiceManager, get_service_manager  # noqa: E402
from urlshortener.main import app  # noqa: E402
from urlshortener.rate_limiter import RateLimiter  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest_asyncio.fixture(scope="function")
async def db_tables() -> AsyncGenerator[None, None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(scope="function")
async def manager(db_tables: None) -> AsyncGenerator[ServiceManager, None]:
    """Service manager with per-test cache, limiter and click recorder."""
    manager = await get_service_manager()
    manager.cache = InMemoryResolutionCache()
    manager.rate_limiter = RateLimiter(per_minute=1000, per_hour=10_000)
    manager.click_recorder = ClickRecorder(async_session)
    yield manager
    await manager.click_recorder.drain(timeout=5)


@pytest_asyncio.fixture(scope="function")
async def client(manager: ServiceManager) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def mock_logger() -> MagicMock:
    return MagicMock()


@pytest.fixture
def mock_context(settings: Settings, mock_logger: MagicMock) -> Mock:
    """A RequestContext stand-in for service-level tests."""
    ctx = Mock()
    ctx.database = MagicMock()
    ctx.cache = InMemoryResolutionCache()
    ctx.logger = mock_logger
    ctx.settings = settings
    return ctx
