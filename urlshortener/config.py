"""Configuration management for the URL shortener service.

This module provides centralized configuration management using Pydantic BaseSettings
with environment variable support and caching for performance.

Flow Diagram — get_settings()
=============================
::
    ┌─────────────┐
    │  Call get_  │
    │  settings() │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Check cache  │
    │ (lru_cache)  │
    └──────┬──────┘
    HIT?  │
    ┌─────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Create  │  │ Return  │
│ Settings│  │ cached  │
│ instance│  │ value   │
└─────────┘  └─────────┘

How to Use
===========
**Step 1 — Import**::
    from urlshortener.config import get_settings

**Step 2 — Read values**::
    settings = get_settings()
    if settings.RATE_LIMIT_ENABLED:
        print(settings.RATE_LIMIT_PER_MINUTE)

Key Behaviours
===============
- Settings are cached after first access for performance.
- Environment variables (or a ``.env`` file) override defaults automatically.
- ``DEFAULT_EXPIRATION_DAYS`` of zero or less disables automatic expiration.

Classes:
    Settings:  Pydantic model for all configuration values.
"""

__all__ = ["CacheBackend", "Settings", "get_settings"]

from enum import StrEnum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class CacheBackend(StrEnum):
    REDIS = "redis"
    MEMORY = "memory"


class Settings(BaseSettings):
    APP_NAME: str = "url-shortener"
    APP_ENV: str = "development"
    BASE_URL: str = "http://localhost:8080"
    LOG_LEVEL: str = "INFO"

    # PostgreSQL
    DATABASE_URL: str = "postgresql+asyncpg://urlshortener:urlshortener@db:5432/urlshortener"
    DATABASE_ECHO: bool = False

    # Resolution cache
    CACHE_BACKEND: CacheBackend = CacheBackend.REDIS
    REDIS_URL: str = "redis://redis:6379/0"
    CACHE_KEY_PREFIX: str = "url"

    # Short URL config
    SHORT_CODE_LENGTH: int = 7
    SHORT_CODE_MAX_ATTEMPTS: int = 10
    DEFAULT_EXPIRATION_DAYS: int = 365
    MAX_CUSTOM_ALIAS_LENGTH: int = 20

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_PER_MINUTE: int = 60
    RATE_LIMIT_PER_HOUR: int = 1000
    RATE_LIMIT_MAX_BUCKETS: int = 10_000
    RATE_LIMIT_BUCKET_IDLE_SECONDS: int = 3600
    RATE_LIMIT_SWEEP_INTERVAL_SECONDS: int = 300
    RATE_LIMIT_EXEMPT_PREFIXES: list[str] = ["/health", "/metrics", "/docs", "/redoc", "/openapi.json"]

    # Expiration sweeper
    SWEEPER_ENABLED: bool = True
    SWEEPER_INTERVAL_SECONDS: int = 3600

    # Click events
    CLICK_DRAIN_TIMEOUT_SECONDS: float = 5.0
    KAFKA_ENABLED: bool = False
    KAFKA_BOOTSTRAP_SERVERS: str = "kafka:9092"
    KAFKA_CLICK_TOPIC: str = "click_events"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
