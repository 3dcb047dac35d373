"""Wall-clock helpers.

Components that compare against "now" take a ``Clock`` so tests can pin time.
All timestamps are UTC; values read back without tzinfo (SQLite) are treated
as UTC.
"""

import datetime
from collections.abc import Callable

__all__ = ["Clock", "as_utc", "utcnow"]

Clock = Callable[[], datetime.datetime]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)
