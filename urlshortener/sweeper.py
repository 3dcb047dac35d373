"""Periodic deactivation of expired URLs.

Expiration is already enforced live on the redirect path; the sweeper makes it
durable by flipping ``is_active`` and drops the matching cache entries.

Key Behaviours
===============
- One bulk ``UPDATE ... RETURNING`` per run, in its own session.
- Idempotent: a second run with nothing newly expired affects zero rows.
- Runs on the scheduler (hourly by default), never overlapping itself.
- Failures are logged by the scheduler and retried on the next tick.
"""

import datetime
import logging
import time

from prometheus_client import Counter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from urlshortener.cache import ResolutionCache
from urlshortener.clock import Clock, utcnow
from urlshortener.store import URLStore

__all__ = ["ExpirationSweeper"]

logger = logging.getLogger(__name__)

URLS_DEACTIVATED_TOTAL = Counter(
    "url_shortener_urls_deactivated_total",
    "URLs deactivated by the expiration sweeper",
)


class ExpirationSweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: ResolutionCache,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._cache = cache
        self._clock = clock

    async def sweep(self, now: datetime.datetime | None = None) -> int:
        """Deactivate every active URL whose expiration is before ``now``.

        Returns:
            int: Number of records deactivated by this run
        """
        now = now or self._clock()
        start_time = time.perf_counter()

        async with self._session_factory() as session:
            short_codes = await URLStore(session).deactivate_expired(now)

        for short_code in short_codes:
            try:
                await self._cache.invalidate(short_code)
            except Exception as exc:
                # The live expiry check on cache hits still rejects the code.
                logger.error(f"Cache invalidation failed for expired URL {short_code}: {exc}")

        if short_codes:
            URLS_DEACTIVATED_TOTAL.inc(len(short_codes))
            logger.info(
                f"Deactivated {len(short_codes)} expired URLs in {time.perf_counter() - start_time:.3f}s"
            )
        return len(short_codes)

    async def run(self) -> None:
        await self.sweep()
