"""Database configuration and session management for the URL shortener.

This module provides SQLAlchemy async engine setup, session management,
and database lifecycle operations using PostgreSQL as the backend.

Flow Diagram — Database Operations
=================================
::
    ┌─────────────┐      ┌─────────────┐
    │  Request    │      │ Background  │
    │  handler    │      │ task        │
    └──────┬──────┘      └──────┬──────┘
           ▼                    ▼
    ┌─────────────┐      ┌─────────────┐
    │ get_db()    │      │ async with  │
    │ dependency  │      │ async_session()
    └──────┬──────┘      └──────┬──────┘
           └─────────┬──────────┘
                     ▼
              ┌─────────────┐
              │ Shared      │
              │ engine/pool │
              └─────────────┘

How to Use
===========
**Step 1 — Initialize on startup**::
    await init_db()  # Creates tables

**Step 2 — Use in FastAPI endpoints**::
    @router.get("/api/stats/{short_code}")
    async def stats(db: AsyncSession = Depends(get_db)): ...

**Step 3 — Open a session outside a request**::
    async with async_session() as session:
        ...

**Step 4 — Cleanup on shutdown**::
    await close_db()

Key Behaviours
===============
- Request sessions are closed after each request.
- Click recording and the expiration sweeper open their own sessions so they
  never share a transaction with the redirect that triggered them.
- SQLite URLs (local runs and tests) use a connection per session instead of a
  sized pool.

Classes:
    Base:  SQLAlchemy declarative base for all models.

Functions:
    get_db():  FastAPI dependency for database sessions.
    init_db():  Creates all tables on startup.
    close_db():  Disposes the engine on shutdown.
"""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from urlshortener.config import get_settings

__all__ = ["Base", "async_session", "engine", "get_db", "init_db", "close_db"]

settings = get_settings()


def _engine_options(database_url: str) -> dict[str, Any]:
    if database_url.startswith("sqlite"):
        return {"poolclass": NullPool, "connect_args": {"timeout": 30}}
    return {"pool_size": 20, "max_overflow": 10, "pool_pre_ping": True}


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DATABASE_ECHO,
    **_engine_options(settings.DATABASE_URL),
)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
