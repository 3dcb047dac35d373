"""Dependency injection with a singleton service manager.

Shared, process-wide components (cache, rate limiter, click recorder,
expiration sweeper, scheduler, logger) live on ``ServiceManager``; the only
per-request resource is the database session carried by ``RequestContext``.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from urlshortener.analytics import ClickRecorder, RequestMetadata
from urlshortener.cache import InMemoryResolutionCache, RedisResolutionCache, ResolutionCache
from urlshortener.config import CacheBackend, Settings, get_settings
from urlshortener.database import async_session, get_db
from urlshortener.kafka import publish_click_event
from urlshortener.rate_limiter import RateLimiter
from urlshortener.scheduler import JobScheduler
from urlshortener.sweeper import ExpirationSweeper
from urlshortener.url_service import URLShorteningService

__all__ = [
    "RequestContext",
    "ServiceManager",
    "get_rate_limiter",
    "get_request_context",
    "get_service_manager",
    "get_url_service",
]


# ============================================================================
# SINGLETON SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Singleton holder for shared resources.

    ``initialize()`` builds everything once; ``start_background()`` starts the
    scheduled jobs (sweeper, idle bucket sweep) and is only called from the
    application lifespan.
    """

    _instance: Optional["ServiceManager"] = None
    _initialized: bool = False

    settings: Settings
    logger: logging.Logger
    cache: ResolutionCache
    rate_limiter: RateLimiter
    click_recorder: ClickRecorder
    sweeper: ExpirationSweeper
    scheduler: JobScheduler

    def __new__(cls) -> "ServiceManager":
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def initialize(self) -> None:
        """Initialize shared resources once at startup."""
        if self._initialized:
            return
        self.settings = get_settings()
        self.logger = self._setup_logger()
        self.cache = self._setup_cache()
        self.rate_limiter = RateLimiter(
            per_minute=self.settings.RATE_LIMIT_PER_MINUTE,
            per_hour=self.settings.RATE_LIMIT_PER_HOUR,
            enabled=self.settings.RATE_LIMIT_ENABLED,
            max_buckets=self.settings.RATE_LIMIT_MAX_BUCKETS,
            idle_seconds=self.settings.RATE_LIMIT_BUCKET_IDLE_SECONDS,
        )
        self.click_recorder = ClickRecorder(
            async_session,
            publisher=publish_click_event if self.settings.KAFKA_ENABLED else None,
        )
        self.sweeper = ExpirationSweeper(async_session, self.cache)
        self.scheduler = self._setup_scheduler()
        self._initialized = True

    def _setup_logger(self) -> logging.Logger:
        """Setup logger once."""
        logger = logging.getLogger("urlshortener")
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)
        logger.setLevel(self.settings.LOG_LEVEL.upper())
        return logger

    def _setup_cache(self) -> ResolutionCache:
        """Setup the resolution cache backend once."""
        if self.settings.CACHE_BACKEND is CacheBackend.MEMORY:
            return InMemoryResolutionCache()
        client = redis.from_url(self.settings.REDIS_URL, encoding="utf-8", decode_responses=True)
        return RedisResolutionCache(client, key_prefix=self.settings.CACHE_KEY_PREFIX)

    def _setup_scheduler(self) -> JobScheduler:
        """Register periodic jobs; they only run once ``start_background()`` is called."""
        scheduler = JobScheduler()
        if self.settings.SWEEPER_ENABLED:
            scheduler.schedule("expiration-sweeper", self.settings.SWEEPER_INTERVAL_SECONDS, self.sweeper.run)
        if self.settings.RATE_LIMIT_ENABLED:
            scheduler.schedule(
                "rate-limit-idle-sweep",
                self.settings.RATE_LIMIT_SWEEP_INTERVAL_SECONDS,
                self.rate_limiter.sweep_idle_async,
            )
        return scheduler

    async def start_background(self) -> None:
        await self.initialize()
        await self.scheduler.start()
        self.logger.info(f"Background jobs started: {[job.name for job in self.scheduler.jobs]}")

    async def cleanup(self) -> None:
        """Cleanup shared resources at shutdown."""
        if not self._initialized:
            return
        await self.scheduler.stop()
        await self.click_recorder.drain(timeout=self.settings.CLICK_DRAIN_TIMEOUT_SECONDS)
        await self.cache.close()
        self._initialized = False


# Global singleton instance
_service_manager = ServiceManager()


# ============================================================================
# LIGHTWEIGHT REQUEST CONTEXT
# ============================================================================


@dataclass
class RequestContext:
    """Per-request context with tracking and shared resource access.

    Attributes:
        database: Async database session (only per-request resource)
        service_manager: Singleton service manager with shared resources
        metadata: Client IP, user agent and referer for click recording
        request_id: Unique identifier for this request
        trace_id: Correlation ID for distributed tracing
        start_time: Request start timestamp
        tags: Request tags for categorization
    """

    database: AsyncSession
    service_manager: ServiceManager
    metadata: RequestMetadata = field(default_factory=RequestMetadata)
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    trace_id: Optional[str] = None
    start_time: float = field(default_factory=time.time)
    tags: list[str] = field(default_factory=list)

    @property
    def cache(self) -> ResolutionCache:
        return self.service_manager.cache

    @property
    def click_recorder(self) -> ClickRecorder:
        return self.service_manager.click_recorder

    @property
    def settings(self) -> Settings:
        return self.service_manager.settings

    @property
    def logger(self) -> logging.LoggerAdapter:
        """Shared logger carrying the request context on every record."""
        return logging.LoggerAdapter(
            self.service_manager.logger,
            {
                "request_id": self.request_id,
                "trace_id": self.trace_id or self.request_id,
                "client_ip": self.metadata.ip_address,
                "user_agent": self.metadata.user_agent,
                "tags": ",".join(self.tags),
            },
        )

    def add_tag(self, tag: str) -> None:
        if tag not in self.tags:
            self.tags.append(tag)

    def get_duration(self) -> float:
        """Get request duration in milliseconds."""
        return (time.time() - self.start_time) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


async def get_service_manager() -> ServiceManager:
    if not _service_manager._initialized:
        await _service_manager.initialize()
    return _service_manager


async def get_rate_limiter() -> RateLimiter:
    return (await get_service_manager()).rate_limiter


async def get_request_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    manager: ServiceManager = Depends(get_service_manager),
) -> RequestContext:
    return RequestContext(
        database=db,
        service_manager=manager,
        metadata=RequestMetadata.from_request(request),
        trace_id=request.headers.get("x-trace-id"),
    )


def get_url_service(ctx: RequestContext = Depends(get_request_context)) -> URLShorteningService:
    return URLShorteningService.from_context(ctx)
