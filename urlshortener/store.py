"""Durable URL store and click event store on top of SQLAlchemy.

Both stores wrap an ``AsyncSession`` owned by the caller: the request session
for the API, or a dedicated session opened by the click recorder and the
expiration sweeper.

Store Operations
================
::
    URLStore
    ├─ get / exists             point lookups by short code
    ├─ insert                   unique constraint -> ShortCodeCollisionError
    ├─ update / set_active      commit, caller invalidates the cache
    ├─ increment_clicks         UPDATE ... SET clicks = clicks + 1
    └─ deactivate_expired       one bulk UPDATE ... RETURNING short_code

    ClickEventStore
    ├─ add                      append a click event
    ├─ count_since              clicks after a timestamp
    ├─ daily_counts             clicks grouped by day
    └─ breakdown                top-N values of a classification column

Key Behaviours
===============
- Mutations other than ``increment_clicks`` and ``ClickEventStore.add`` commit
  immediately; those two join the caller's transaction so a click event and its
  counter increment land together.
- Cache invalidation is never done here; the service layer and the sweeper own
  every invalidation point.
"""

import datetime

from prometheus_client import Counter
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

from urlshortener.exceptions import ShortCodeCollisionError, ShortURLNotFoundError
from urlshortener.models import URL, ClickEvent

__all__ = ["ClickEventStore", "URLStore", "UNSET"]

DATABASE_READS_TOTAL = Counter(
    "url_shortener_database_reads_total",
    "Total database read operations",
)
DATABASE_WRITES_TOTAL = Counter(
    "url_shortener_database_writes_total",
    "Total database write operations",
)

# Sentinel for "leave unchanged" where None is a meaningful value.
UNSET = object()


class URLStore:
    """Short code -> URL record persistence."""

    def __init__(self, session: AsyncSession):
        self._db = session

    async def get(self, short_code: str) -> URL | None:
        result = await self._db.execute(select(URL).where(URL.short_code == short_code))
        DATABASE_READS_TOTAL.inc()
        return result.scalar_one_or_none()

    async def get_or_raise(self, short_code: str) -> URL:
        url = await self.get(short_code)
        if url is None:
            raise ShortURLNotFoundError(short_code)
        return url

    async def exists(self, short_code: str) -> bool:
        result = await self._db.execute(select(URL.id).where(URL.short_code == short_code).limit(1))
        DATABASE_READS_TOTAL.inc()
        return result.scalar_one_or_none() is not None

    async def insert(self, url: URL) -> URL:
        """Insert a new record.

        Raises:
            ShortCodeCollisionError: If another record already holds the short code
        """
        try:
            self._db.add(url)
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            raise ShortCodeCollisionError(url.short_code) from exc
        DATABASE_WRITES_TOTAL.inc()
        await self._db.refresh(url)
        return url

    async def update(
        self,
        short_code: str,
        *,
        original_url: str | None = None,
        expires_at: datetime.datetime | None | object = UNSET,
    ) -> URL:
        url = await self.get_or_raise(short_code)
        if original_url is not None:
            url.original_url = original_url
        if expires_at is not UNSET:
            url.expires_at = expires_at
        await self._db.commit()
        DATABASE_WRITES_TOTAL.inc()
        await self._db.refresh(url)
        return url

    async def set_active(self, short_code: str, active: bool) -> URL:
        url = await self.get_or_raise(short_code)
        url.is_active = active
        await self._db.commit()
        DATABASE_WRITES_TOTAL.inc()
        await self._db.refresh(url)
        return url

    async def increment_clicks(self, short_code: str) -> int:
        """Atomically add one click; joins the caller's transaction.

        Returns:
            int: Number of rows updated (0 if the record is gone)
        """
        result = await self._db.execute(
            update(URL)
            .where(URL.short_code == short_code)
            .values(clicks=URL.clicks + 1)
            .execution_options(synchronize_session=False)
        )
        DATABASE_WRITES_TOTAL.inc()
        return result.rowcount

    async def deactivate_expired(self, now: datetime.datetime) -> list[str]:
        """Flip every active, expired record to inactive in one statement.

        Returns:
            list[str]: Short codes that were deactivated by this call
        """
        result = await self._db.execute(
            update(URL)
            .where(URL.is_active.is_(True), URL.expires_at.is_not(None), URL.expires_at < now)
            .values(is_active=False)
            .returning(URL.short_code)
            .execution_options(synchronize_session=False)
        )
        short_codes = list(result.scalars().all())
        await self._db.commit()
        DATABASE_WRITES_TOTAL.inc()
        return short_codes


class ClickEventStore:
    """Append-only click analytics."""

    def __init__(self, session: AsyncSession):
        self._db = session

    async def add(self, event: ClickEvent) -> ClickEvent:
        self._db.add(event)
        await self._db.flush()
        DATABASE_WRITES_TOTAL.inc()
        return event

    async def count_since(self, short_code: str, since: datetime.datetime) -> int:
        result = await self._db.execute(
            select(func.count(ClickEvent.id)).where(
                ClickEvent.short_code == short_code, ClickEvent.clicked_at >= since
            )
        )
        DATABASE_READS_TOTAL.inc()
        return int(result.scalar_one())

    async def daily_counts(self, short_code: str, since: datetime.datetime) -> list[tuple[str, int]]:
        day = func.date(ClickEvent.clicked_at)
        result = await self._db.execute(
            select(day, func.count(ClickEvent.id))
            .where(ClickEvent.short_code == short_code, ClickEvent.clicked_at >= since)
            .group_by(day)
            .order_by(day)
        )
        DATABASE_READS_TOTAL.inc()
        return [(str(row[0]), int(row[1])) for row in result.all()]

    async def breakdown(
        self, short_code: str, column: InstrumentedAttribute, limit: int = 10
    ) -> list[tuple[str | None, int]]:
        count = func.count(ClickEvent.id)
        result = await self._db.execute(
            select(column, count)
            .where(ClickEvent.short_code == short_code)
            .group_by(column)
            .order_by(count.desc())
            .limit(limit)
        )
        DATABASE_READS_TOTAL.inc()
        return [(row[0], int(row[1])) for row in result.all()]
