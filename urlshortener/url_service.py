"""URL Shortener Service Layer - Core Business Logic

This module owns short URL creation, the cached resolution path used by
redirects, the mutations that must invalidate that cache, and per-URL
statistics.

Architecture Overview
=====================
::
    ┌─────────────────────────────────────────────────────────────┐
    │                    URLShorteningService                     │
    │  ┌─────────────────┐  ┌─────────────────┐  ┌──────────────┐ │
    │  │  Create         │  │  Resolve        │  │  Mutate      │ │
    │  │ • alias check   │  │ • cache first   │  │ • update     │ │
    │  │ • random code   │  │ • store on miss │  │ • deactivate │ │
    │  │ • bounded retry │  │ • live expiry   │  │ • invalidate │ │
    │  └─────────────────┘  └─────────────────┘  └──────────────┘ │
    └─────────────────────────────────────────────────────────────┘
                │                    │                    │
                ▼                    ▼                    ▼
    ┌─────────────────┐  ┌─────────────────┐  ┌─────────────────┐
    │    URLStore     │  │ ResolutionCache │  │ ClickEventStore │
    │  (PostgreSQL)   │  │ (Redis/memory)  │  │  (PostgreSQL)   │
    └─────────────────┘  └─────────────────┘  └─────────────────┘

URL Creation Flow
-----------------
::
    ┌─────────────┐
    │ custom      │── yes ──► validate alias ──► exists? ──► DuplicateAliasError
    │ alias?      │
    └──────┬──────┘
           │ no
           ▼
    ┌─────────────┐
    │ generate()  │◄──────────────┐
    └──────┬──────┘               │ collision (exists or
           ▼                      │ unique violation)
    ┌─────────────┐               │
    │ exists? /   ├───────────────┘
    │ insert      │  after 10 attempts ──► GenerationExhaustedError
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ cache put   │
    └─────────────┘

Resolution Flow
---------------
::
    cache hit ──► expired? ──► yes: invalidate, EXPIRED
                          └──► no:  OK
    cache miss ──► read version ──► store: absent   ──► NOT_FOUND
                                          inactive ──► DEACTIVATED
                                          expired  ──► EXPIRED
                                          else     ──► put if version unchanged, OK

Key Behaviours
==============
- The generator never guarantees uniqueness alone; the store's unique
  constraint is authoritative and a lost insert race counts as a collision.
- Expiry is checked against the live clock on every resolution, whether or
  not the sweeper has run yet.
- Every mutation of target, active flag or expiry invalidates the cache after
  the commit, so the next request sees the change.
- A read-through write only lands if no invalidation happened since the
  version was read, so a resolve racing an update cannot restore the old
  target.
- Cache failures degrade to store reads and never fail a redirect.
"""

import datetime
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from prometheus_client import Counter, Histogram

from urlshortener import codegen
from urlshortener.clock import Clock, as_utc, utcnow
from urlshortener.enums import CacheStatus, RequestStatus, ResolutionStatus
from urlshortener.exceptions import (
    DuplicateAliasError,
    GenerationExhaustedError,
    ShortCodeCollisionError,
    ShortenerError,
)
from urlshortener.models import URL, ClickEvent
from urlshortener.schemas import (
    AnalyticsResponse,
    CachedResolution,
    DailyClicks,
    StatEntry,
    URLCreate,
    URLUpdate,
)
from urlshortener.store import UNSET, ClickEventStore, URLStore

if TYPE_CHECKING:
    from urlshortener.dependencies import RequestContext

__all__ = ["Resolution", "URLShorteningService"]

MAX_SHORT_CODE_LENGTH = 20
ANALYTICS_TOP_N = 10
ANALYTICS_DAYS = 30


# ============================================================================
# PROMETHEUS METRICS
# ============================================================================

URL_CREATION_REQUESTS_TOTAL = Counter(
    "url_shortener_creation_requests_total",
    "Total URL creation requests",
    ["status"],
)
URL_CREATION_DURATION = Histogram(
    "url_shortener_creation_duration_seconds",
    "Time taken to create short URLs",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)
URL_LOOKUP_REQUESTS_TOTAL = Counter(
    "url_shortener_lookup_requests_total",
    "Total URL resolutions",
    ["status", "cache_hit"],
)
URL_LOOKUP_DURATION = Histogram(
    "url_shortener_lookup_duration_seconds",
    "Time taken to resolve short codes",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25],
)
SHORT_CODE_COLLISIONS_TOTAL = Counter(
    "url_shortener_short_code_collisions_total",
    "Generated short codes that were already taken",
)


# ============================================================================
# DATA STRUCTURES
# ============================================================================


@dataclass(frozen=True)
class Resolution:
    """Result of resolving a short code; ``target_url`` is set only when usable."""

    status: ResolutionStatus
    short_code: str
    target_url: str | None = None
    cache_hit: bool = False

    @property
    def usable(self) -> bool:
        return self.status.usable


# ============================================================================
# CORE SERVICE CLASS
# ============================================================================


class URLShorteningService:
    """Business logic for short URL creation, resolution and mutation.

    Example:
        >>> service = URLShorteningService.from_context(ctx)
        >>> url = await service.create_short_url(URLCreate(url="https://example.com"))
        >>> resolution = await service.resolve(url.short_code)
        >>> resolution.target_url
        'https://example.com'
    """

    def __init__(
        self,
        ctx: "RequestContext",
        clock: Clock = utcnow,
        code_generator: Callable[[int], str] = codegen.generate,
    ):
        self._store = URLStore(ctx.database)
        self._clicks = ClickEventStore(ctx.database)
        self._cache = ctx.cache
        self._logger = ctx.logger
        self._settings = ctx.settings
        self._clock = clock
        self._generate = code_generator
        self._ctx = ctx

    @classmethod
    def from_context(cls, ctx: "RequestContext") -> "URLShorteningService":
        return cls(ctx)

    # ========================================================================
    # CREATION
    # ========================================================================

    async def create_short_url(self, request: URLCreate, user_id: int | None = None) -> URL:
        """Create a short URL from a random code or a custom alias.

        Args:
            request: Target URL, optional alias and optional expiration in days
            user_id: Owning user, stored as a plain reference

        Returns:
            URL: The persisted record

        Raises:
            InvalidAliasError: If the alias has the wrong length or characters
            DuplicateAliasError: If the alias is already taken
            GenerationExhaustedError: If no free random code was found
        """
        start_time = time.perf_counter()
        try:
            now = self._clock()
            expires_at = self._initial_expiration(request.expiration_days, now)

            if request.custom_alias:
                url = await self._insert_with_alias(request, expires_at, user_id)
            else:
                url = await self._insert_with_generated_code(request, expires_at, user_id)

            await self._cache_put(url)

            URL_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
            self._logger.info(
                f"Created short URL: {url.short_code} -> {url.original_url}",
                extra={"operation": "create_short_url", "short_code": url.short_code},
            )
            return url

        except GenerationExhaustedError:
            URL_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.ERROR).inc()
            raise

        except ShortenerError as exc:
            URL_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.VALIDATION_ERROR).inc()
            self._logger.warning(f"URL creation rejected: {exc}")
            raise

        except Exception as exc:
            URL_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.ERROR).inc()
            self._logger.error(f"URL creation error: {exc}")
            raise

        finally:
            URL_CREATION_DURATION.observe(time.perf_counter() - start_time)

    async def _insert_with_alias(
        self, request: URLCreate, expires_at: datetime.datetime | None, user_id: int | None
    ) -> URL:
        alias = codegen.validate_alias(request.custom_alias, self._settings.MAX_CUSTOM_ALIAS_LENGTH)
        if await self._store.exists(alias):
            raise DuplicateAliasError(alias)

        try:
            return await self._store.insert(self._new_url(alias, request, expires_at, user_id, custom_alias=True))
        except ShortCodeCollisionError as exc:
            raise DuplicateAliasError(alias) from exc

    async def _insert_with_generated_code(
        self, request: URLCreate, expires_at: datetime.datetime | None, user_id: int | None
    ) -> URL:
        max_attempts = self._settings.SHORT_CODE_MAX_ATTEMPTS
        for attempt in range(1, max_attempts + 1):
            short_code = self._generate(self._settings.SHORT_CODE_LENGTH)

            if await self._store.exists(short_code):
                SHORT_CODE_COLLISIONS_TOTAL.inc()
                self._logger.debug(f"Short code collision on attempt {attempt}: {short_code}")
                continue

            try:
                return await self._store.insert(self._new_url(short_code, request, expires_at, user_id))
            except ShortCodeCollisionError:
                SHORT_CODE_COLLISIONS_TOTAL.inc()
                self._logger.warning(f"Lost insert race for short code {short_code} on attempt {attempt}")

        self._logger.critical(
            f"Failed to generate a unique short code after {max_attempts} attempts; code space may be saturated",
            extra={"operation": "create_short_url", "attempts": max_attempts},
        )
        raise GenerationExhaustedError(max_attempts)

    def _new_url(
        self,
        short_code: str,
        request: URLCreate,
        expires_at: datetime.datetime | None,
        user_id: int | None,
        custom_alias: bool = False,
    ) -> URL:
        return URL(
            short_code=short_code,
            original_url=str(request.url),
            user_id=user_id,
            custom_alias=custom_alias,
            clicks=0,
            is_active=True,
            expires_at=expires_at,
        )

    def _initial_expiration(self, expiration_days: int | None, now: datetime.datetime) -> datetime.datetime | None:
        if expiration_days is not None and expiration_days > 0:
            return now + datetime.timedelta(days=expiration_days)
        if self._settings.DEFAULT_EXPIRATION_DAYS > 0:
            return now + datetime.timedelta(days=self._settings.DEFAULT_EXPIRATION_DAYS)
        return None

    # ========================================================================
    # RESOLUTION
    # ========================================================================

    async def resolve(self, short_code: str) -> Resolution:
        """Translate a short code into a usable target, cache first.

        Returns:
            Resolution: OK with ``target_url``, or NOT_FOUND / DEACTIVATED / EXPIRED
        """
        start_time = time.perf_counter()
        resolution = await self._resolve(short_code)
        URL_LOOKUP_DURATION.observe(time.perf_counter() - start_time)
        URL_LOOKUP_REQUESTS_TOTAL.labels(
            status=resolution.status,
            cache_hit=CacheStatus.HIT if resolution.cache_hit else CacheStatus.MISS,
        ).inc()
        return resolution

    async def _resolve(self, short_code: str) -> Resolution:
        if len(short_code) > MAX_SHORT_CODE_LENGTH or not codegen.is_valid_alphabet(short_code):
            return Resolution(ResolutionStatus.NOT_FOUND, short_code)

        now = self._clock()
        entry = await self._cache_get(short_code)
        if entry is not None:
            if entry.expires_at is not None and now > as_utc(entry.expires_at):
                await self._invalidate(short_code)
                return Resolution(ResolutionStatus.EXPIRED, short_code, cache_hit=True)
            return Resolution(ResolutionStatus.OK, short_code, entry.target_url, cache_hit=True)

        # Captured before the store read so an invalidation racing this read wins.
        version = await self._cache_version(short_code)
        url = await self._store.get(short_code)
        if url is None:
            return Resolution(ResolutionStatus.NOT_FOUND, short_code)
        if not url.is_active:
            return Resolution(ResolutionStatus.DEACTIVATED, short_code)
        if url.is_expired(now):
            return Resolution(ResolutionStatus.EXPIRED, short_code)

        if version is not None:
            await self._cache_put_if_version(url, version)
        return Resolution(ResolutionStatus.OK, short_code, url.original_url)

    # ========================================================================
    # MUTATION
    # ========================================================================

    async def update_url(self, short_code: str, request: URLUpdate) -> URL:
        """Change the target and/or expiration, then invalidate the cache.

        ``expiration_days`` of zero clears the expiration.

        Raises:
            ShortURLNotFoundError: If no record holds ``short_code``
        """
        expires_at: datetime.datetime | None | object = UNSET
        if request.expiration_days is not None:
            expires_at = (
                self._clock() + datetime.timedelta(days=request.expiration_days)
                if request.expiration_days > 0
                else None
            )

        url = await self._store.update(short_code, original_url=request.url, expires_at=expires_at)
        await self._cache.invalidate(short_code)
        self._logger.info(f"Updated URL: {short_code}", extra={"operation": "update_url", "short_code": short_code})
        return url

    async def deactivate_url(self, short_code: str) -> URL:
        url = await self._store.set_active(short_code, False)
        await self._cache.invalidate(short_code)
        self._logger.info(f"Deactivated URL: {short_code}", extra={"operation": "deactivate_url"})
        return url

    # ========================================================================
    # STATISTICS
    # ========================================================================

    async def get_url_statistics(self, short_code: str) -> URL:
        return await self._store.get_or_raise(short_code)

    async def get_analytics(self, short_code: str) -> AnalyticsResponse:
        """Click totals, a 30 day daily series and top-10 breakdowns for one URL."""
        url = await self._store.get_or_raise(short_code)
        now = self._clock()
        total = url.clicks

        daily = await self._clicks.daily_counts(short_code, now - datetime.timedelta(days=ANALYTICS_DAYS))
        return AnalyticsResponse(
            short_code=short_code,
            total_clicks=total,
            clicks_last_24_hours=await self._clicks.count_since(short_code, now - datetime.timedelta(hours=24)),
            clicks_last_7_days=await self._clicks.count_since(short_code, now - datetime.timedelta(days=7)),
            clicks_last_30_days=await self._clicks.count_since(short_code, now - datetime.timedelta(days=30)),
            daily_clicks=[DailyClicks(date=day, clicks=clicks) for day, clicks in daily],
            top_browsers=await self._breakdown(short_code, ClickEvent.browser, total),
            top_devices=await self._breakdown(short_code, ClickEvent.device_type, total),
            top_operating_systems=await self._breakdown(short_code, ClickEvent.os, total),
            top_referers=await self._breakdown(short_code, ClickEvent.referer, total),
        )

    async def _breakdown(self, short_code: str, column, total: int) -> list[StatEntry]:
        rows = await self._clicks.breakdown(short_code, column, ANALYTICS_TOP_N)
        return [
            StatEntry(
                name=name if name is not None else "Unknown",
                count=count,
                percentage=round(count * 100.0 / total, 2) if total > 0 else 0.0,
            )
            for name, count in rows
        ]

    # ========================================================================
    # CACHE HELPERS
    # ========================================================================

    async def _cache_get(self, short_code: str) -> CachedResolution | None:
        try:
            return await self._cache.get(short_code)
        except Exception as exc:
            self._logger.error(f"Cache read failed for {short_code}, falling back to store: {exc}")
            return None

    async def _cache_put(self, url: URL) -> None:
        entry = CachedResolution(target_url=url.original_url, expires_at=as_utc(url.expires_at))
        try:
            await self._cache.put(url.short_code, entry)
        except Exception as exc:
            self._logger.error(f"Cache write failed for {url.short_code}: {exc}")

    async def _cache_version(self, short_code: str) -> int | None:
        try:
            return await self._cache.version(short_code)
        except Exception as exc:
            self._logger.error(f"Cache version read failed for {short_code}: {exc}")
            return None

    async def _cache_put_if_version(self, url: URL, version: int) -> None:
        entry = CachedResolution(target_url=url.original_url, expires_at=as_utc(url.expires_at))
        try:
            written = await self._cache.put_if_version(url.short_code, entry, version)
        except Exception as exc:
            self._logger.error(f"Cache write failed for {url.short_code}: {exc}")
            return
        if not written:
            self._logger.info(f"Skipped stale cache write for {url.short_code}")

    async def _invalidate(self, short_code: str) -> None:
        try:
            await self._cache.invalidate(short_code)
        except Exception as exc:
            self._logger.error(f"Cache invalidation failed for {short_code}: {exc}")
