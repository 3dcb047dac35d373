"""FastAPI application entry point for the URL shortener service.

Application Lifecycle
=====================
::
    ┌──────────────┐
    │  uvicorn     │
    │  startup     │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ CORS + rate  │
    │ limiting     │
    │ middleware   │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ lifespan()   │
    │ init_db()    │
    │ init_kafka() │
    │ scheduler    │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ Serve HTTP   │
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ lifespan()   │
    │ stop jobs    │
    │ drain clicks │
    │ close conns  │
    └──────────────┘

How to Use
===========
**Step 1 — Run with uvicorn**::
    uvicorn urlshortener.main:app --host 0.0.0.0 --port 8000

**Step 2 — Make API calls**::
    curl -X POST http://localhost:8000/api/shorten \
         -H "Content-Type: application/json" \
         -d '{"url": "https://example.com", "custom_alias": "docs"}'

    curl -i http://localhost:8000/r/docs

Key Behaviours
===============
- Database tables are created on startup.
- The expiration sweeper and the idle bucket sweep run as scheduled jobs.
- Pending click recordings are drained (bounded) before shutdown.
- ``/health``, ``/metrics`` and the docs are exempt from rate limiting.
"""

__all__ = ["app"]

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from urlshortener.config import get_settings
from urlshortener.database import close_db, init_db
from urlshortener.dependencies import _service_manager, get_rate_limiter
from urlshortener.kafka import close_kafka, init_kafka
from urlshortener.rate_limiter import RateLimitMiddleware
from urlshortener.routes import router

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await init_db()
    await init_kafka()
    await _service_manager.start_background()
    yield
    # Shutdown
    await _service_manager.cleanup()
    await close_kafka()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="URL shortener with per-client rate limiting and click analytics",
    lifespan=lifespan,
)

app.add_middleware(
    RateLimitMiddleware,
    limiter_provider=get_rate_limiter,
    exempt_prefixes=settings.RATE_LIMIT_EXEMPT_PREFIXES,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_respect_env_var=False,
).instrument(app).expose(app)

app.include_router(router)
