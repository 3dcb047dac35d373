"""Per-client admission control with paired minute/hour token buckets.

Every client key owns two greedy token buckets: one refilling to the
per-minute ceiling over 60 seconds, one refilling to the per-hour ceiling over
3600 seconds. A request consumes one token from *both* or from neither.

Admission Flow
==============
::
    ┌─────────────┐
    │  Request    │
    └──────┬──────┘
           ▼
    ┌─────────────┐   exempt prefix   ┌─────────────┐
    │ Middleware  ├──────────────────►│ call_next   │
    └──────┬──────┘                   └─────────────┘
           ▼
    ┌─────────────┐
    │ Client key  │  apikey:<sha256> > jwt:<prefix> > ip:<addr>
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Registry    │  lock-free lookup, locked insert, bounded size
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Bucket lock │  refill both, deduct both or neither
    └──────┬──────┘
    OK?    │
    ┌──────┴──────┐
    │ YES         │ NO
    ▼             ▼
 X-Rate-Limit-   429 + X-Rate-Limit-
 Remaining       Retry-After-Seconds

How to Use
===========
**Step 1 — Build a limiter**::
    limiter = RateLimiter(per_minute=60, per_hour=1000)

**Step 2 — Admit requests**::
    result = limiter.try_admit("ip:10.0.0.1")
    if not result.admitted:
        print(result.retry_after_seconds)

**Step 3 — Keep memory bounded**::
    scheduler.schedule("rate-limit-idle-sweep", 300, limiter.sweep_idle_async)

Key Behaviours
===============
- Refill is continuous and fractional, capped at capacity.
- The pair deduction happens under a per-bucket ``threading.Lock`` so it stays
  atomic even when called from worker threads.
- ``remaining`` is the smaller whole-token count of the two buckets.
- ``retry_after_seconds`` is the floor of the wait for the more constrained
  bucket.
- The registry evicts idle buckets first and least recently used buckets next
  once it reaches capacity. A bucket idle for an hour is full again, so the
  default idle eviction loses no state.
"""

import hashlib
import logging
import threading
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import Counter
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from urlshortener.enums import RateLimitDecision
from urlshortener.schemas import RateLimitErrorResponse

__all__ = [
    "Admitted",
    "BucketRegistry",
    "RateLimitBucket",
    "RateLimitMiddleware",
    "RateLimiter",
    "Rejected",
    "TokenBucket",
    "client_ip_from_headers",
    "client_key_from_headers",
]

logger = logging.getLogger(__name__)

MINUTE_SECONDS = 60.0
HOUR_SECONDS = 3600.0
API_KEY_HASH_LENGTH = 32
BEARER_PREFIX = "Bearer "
BEARER_KEY_END = 20
PROXY_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "proxy-client-ip")

REMAINING_HEADER = "X-Rate-Limit-Remaining"
RETRY_AFTER_HEADER = "X-Rate-Limit-Retry-After-Seconds"

RATE_LIMIT_DECISIONS_TOTAL = Counter(
    "url_shortener_rate_limit_decisions_total",
    "Rate limiter admission decisions",
    ["decision"],
)
RATE_LIMIT_BUCKETS_EVICTED_TOTAL = Counter(
    "url_shortener_rate_limit_buckets_evicted_total",
    "Rate limit buckets dropped from the registry",
    ["reason"],
)


@dataclass(frozen=True)
class Admitted:
    remaining: int | None

    @property
    def admitted(self) -> bool:
        return True


@dataclass(frozen=True)
class Rejected:
    retry_after_seconds: int

    @property
    def admitted(self) -> bool:
        return False


RateLimitResult = Admitted | Rejected


@dataclass
class TokenBucket:
    """Greedy token bucket: ``capacity`` tokens refill evenly over ``period_seconds``."""

    capacity: int
    period_seconds: float
    tokens: float
    last_refill: float

    @classmethod
    def full(cls, capacity: int, period_seconds: float, now: float) -> "TokenBucket":
        return cls(capacity=capacity, period_seconds=period_seconds, tokens=float(capacity), last_refill=now)

    @property
    def refill_rate(self) -> float:
        return self.capacity / self.period_seconds

    def refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(float(self.capacity), self.tokens + elapsed * self.refill_rate)
            self.last_refill = now

    def seconds_until_token(self) -> float:
        if self.tokens >= 1:
            return 0.0
        return (1 - self.tokens) / self.refill_rate


class RateLimitBucket:
    """Minute and hour buckets for one client key, mutated as a pair."""

    __slots__ = ("minute", "hour", "last_access", "_lock")

    def __init__(self, per_minute: int, per_hour: int, now: float):
        self.minute = TokenBucket.full(per_minute, MINUTE_SECONDS, now)
        self.hour = TokenBucket.full(per_hour, HOUR_SECONDS, now)
        self.last_access = now
        self._lock = threading.Lock()

    def try_consume(self, now: float) -> RateLimitResult:
        with self._lock:
            self.last_access = now
            self.minute.refill(now)
            self.hour.refill(now)

            if self.minute.tokens >= 1 and self.hour.tokens >= 1:
                self.minute.tokens -= 1
                self.hour.tokens -= 1
                return Admitted(remaining=int(min(self.minute.tokens, self.hour.tokens)))

            wait = max(self.minute.seconds_until_token(), self.hour.seconds_until_token())
            return Rejected(retry_after_seconds=int(wait))


class BucketRegistry:
    """Bounded map of client key -> ``RateLimitBucket``.

    Lookups of existing keys take no lock. Inserts and evictions are
    serialized on one registry lock, which only new keys ever touch.
    """

    def __init__(
        self,
        factory: Callable[[float], RateLimitBucket],
        max_buckets: int = 10_000,
        idle_seconds: float = HOUR_SECONDS,
    ):
        if max_buckets <= 0:
            raise ValueError("max_buckets must be positive")
        self._factory = factory
        self._max_buckets = max_buckets
        self._idle_seconds = idle_seconds
        self._buckets: dict[str, RateLimitBucket] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, key: str) -> bool:
        return key in self._buckets

    def get(self, key: str) -> RateLimitBucket | None:
        return self._buckets.get(key)

    def get_or_create(self, key: str, now: float) -> RateLimitBucket:
        bucket = self._buckets.get(key)
        if bucket is not None:
            return bucket

        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                if len(self._buckets) >= self._max_buckets:
                    self._make_room(now)
                bucket = self._factory(now)
                self._buckets[key] = bucket
            return bucket

    def sweep_idle(self, now: float) -> int:
        with self._lock:
            return self._purge_idle(now)

    def remove(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)

    def _purge_idle(self, now: float) -> int:
        idle = [key for key, bucket in list(self._buckets.items()) if now - bucket.last_access >= self._idle_seconds]
        for key in idle:
            del self._buckets[key]
        if idle:
            RATE_LIMIT_BUCKETS_EVICTED_TOTAL.labels(reason="idle").inc(len(idle))
        return len(idle)

    def _make_room(self, now: float) -> None:
        self._purge_idle(now)
        if len(self._buckets) < self._max_buckets:
            return

        # Drop down to 90% so a burst of new keys doesn't evict on every insert.
        target = int(self._max_buckets * 0.9)
        overflow = max(1, len(self._buckets) - target)
        oldest = sorted(self._buckets.items(), key=lambda item: item[1].last_access)[:overflow]
        for key, _bucket in oldest:
            del self._buckets[key]
        RATE_LIMIT_BUCKETS_EVICTED_TOTAL.labels(reason="capacity").inc(len(oldest))
        logger.warning(f"Rate limit registry full, evicted {len(oldest)} least recently used buckets")


class RateLimiter:
    """Admit or reject requests per client key."""

    def __init__(
        self,
        per_minute: int = 60,
        per_hour: int = 1000,
        enabled: bool = True,
        max_buckets: int = 10_000,
        idle_seconds: float = HOUR_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if per_minute <= 0 or per_hour <= 0:
            raise ValueError("Rate limits must be positive")
        self.per_minute = per_minute
        self.per_hour = per_hour
        self.enabled = enabled
        self._clock = clock
        self._registry = BucketRegistry(
            lambda now: RateLimitBucket(per_minute, per_hour, now),
            max_buckets=max_buckets,
            idle_seconds=idle_seconds,
        )

    @property
    def registry(self) -> BucketRegistry:
        return self._registry

    def try_admit(self, client_key: str) -> RateLimitResult:
        if not self.enabled:
            return Admitted(remaining=None)

        now = self._clock()
        result = self._registry.get_or_create(client_key, now).try_consume(now)
        decision = RateLimitDecision.ADMITTED if result.admitted else RateLimitDecision.REJECTED
        RATE_LIMIT_DECISIONS_TOTAL.labels(decision=decision).inc()
        return result

    def sweep_idle(self) -> int:
        return self._registry.sweep_idle(self._clock())

    async def sweep_idle_async(self) -> None:
        evicted = self.sweep_idle()
        if evicted:
            logger.info(f"Evicted {evicted} idle rate limit buckets")

    def clear_bucket(self, client_key: str) -> None:
        self._registry.remove(client_key)


def client_ip_from_headers(
    headers: Mapping[str, str],
    remote_addr: str | None,
    header_names: Iterable[str] = PROXY_IP_HEADERS,
) -> str:
    """First usable proxy header value, else the connection address.

    ``headers`` must be case-insensitive (Starlette ``Headers``) or use
    lower-case names.
    """
    for name in header_names:
        value = headers.get(name)
        if value and value.strip() and value.strip().lower() != "unknown":
            return value.split(",")[0].strip()
    return remote_addr or "unknown"


def client_key_from_headers(headers: Mapping[str, str], remote_addr: str | None) -> str:
    api_key = headers.get("x-api-key")
    if api_key and api_key.strip():
        digest = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
        return f"apikey:{digest[:API_KEY_HASH_LENGTH]}"

    authorization = headers.get("authorization")
    if authorization and authorization.startswith(BEARER_PREFIX):
        return f"jwt:{authorization[len(BEARER_PREFIX):BEARER_KEY_END]}"

    return f"ip:{client_ip_from_headers(headers, remote_addr)}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Apply ``RateLimiter`` to every request outside the exempt prefixes."""

    def __init__(
        self,
        app: ASGIApp,
        limiter_provider: Callable[[], Awaitable[RateLimiter]],
        exempt_prefixes: Iterable[str] = (),
    ):
        super().__init__(app)
        self._limiter_provider = limiter_provider
        self._exempt_prefixes = tuple(prefix.rstrip("/") for prefix in exempt_prefixes)

    def _is_exempt(self, path: str) -> bool:
        # Whole path segments only: "/docs" covers "/docs/x" but not "/docs-x".
        return any(path == prefix or path.startswith(prefix + "/") for prefix in self._exempt_prefixes)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if self._is_exempt(request.url.path):
            return await call_next(request)

        limiter = await self._limiter_provider()
        if not limiter.enabled:
            return await call_next(request)

        client_key = client_key_from_headers(request.headers, request.client.host if request.client else None)
        result = limiter.try_admit(client_key)

        if result.admitted:
            response = await call_next(request)
            response.headers[REMAINING_HEADER] = str(result.remaining)
            return response

        logger.warning(f"Rate limit exceeded for client: {client_key}")
        seconds = result.retry_after_seconds
        body = RateLimitErrorResponse(message=f"Rate limit exceeded. Please try again in {seconds} seconds.")
        return JSONResponse(
            status_code=429,
            content=body.model_dump(),
            headers={RETRY_AFTER_HEADER: str(seconds)},
        )
