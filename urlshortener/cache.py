"""Resolution cache in front of the URL store.

The cache is an explicit ``get``/``put``/``invalidate`` interface composed by
hand around the store, so every invalidation point is visible at the call
site. Entries never age out: a changed target must be visible to the very next
request, which only explicit invalidation can guarantee.

Cache Layout
============
::
    url:{short_code}          -> {"target_url": "...", "expires_at": "...|null"}
    url:{short_code}:version  -> invalidation counter (absent means 0)

How to Use
===========
**Step 1 — Build one per process**::
    cache = RedisResolutionCache(redis.from_url(settings.REDIS_URL, decode_responses=True))

**Step 2 — Read-through on the redirect path**::
    entry = await cache.get(short_code)
    if entry is None:
        version = await cache.version(short_code)
        url = await store.get(short_code)
        await cache.put_if_version(short_code, CachedResolution(target_url=url.original_url, ...), version)

**Step 3 — Invalidate on every mutation**::
    await cache.invalidate(short_code)

Key Behaviours
===============
- No TTL; staleness is only resolved by invalidation.
- ``invalidate`` bumps a per-code version. A read-through write carries the
  version seen before its store read and is dropped if an invalidation landed
  in between, so a slow reader can never re-insert a target that a mutation
  already replaced. The reader itself may still return that old target once.
- Corrupt Redis payloads are treated as misses and dropped.

Classes:
    ResolutionCache:  Abstract cache interface.
    RedisResolutionCache:  Shared Redis-backed implementation.
    InMemoryResolutionCache:  Per-process implementation for single-node runs and tests.
"""

import abc
import logging
import threading

import redis.asyncio as redis
from prometheus_client import Counter
from pydantic import ValidationError

from urlshortener.schemas import CachedResolution

__all__ = ["InMemoryResolutionCache", "RedisResolutionCache", "ResolutionCache"]

logger = logging.getLogger(__name__)

REDIS_OPERATIONS_TOTAL = Counter(
    "url_shortener_redis_operations_total",
    "Total Redis operations",
)
STALE_CACHE_WRITES_SKIPPED_TOTAL = Counter(
    "url_shortener_stale_cache_writes_skipped_total",
    "Read-through cache writes dropped because the entry was invalidated meanwhile",
)

# KEYS[1] entry, KEYS[2] version; ARGV[1] payload, ARGV[2] expected version
PUT_IF_VERSION_SCRIPT = """
local current = redis.call('GET', KEYS[2]) or '0'
if current == ARGV[2] then
    redis.call('SET', KEYS[1], ARGV[1])
    return 1
end
return 0
"""


class ResolutionCache(abc.ABC):
    @abc.abstractmethod
    async def get(self, short_code: str) -> CachedResolution | None: ...

    @abc.abstractmethod
    async def put(self, short_code: str, entry: CachedResolution) -> None: ...

    @abc.abstractmethod
    async def version(self, short_code: str) -> int: ...

    @abc.abstractmethod
    async def put_if_version(self, short_code: str, entry: CachedResolution, version: int) -> bool:
        """Store ``entry`` only if no invalidation happened since ``version`` was read."""

    @abc.abstractmethod
    async def invalidate(self, short_code: str) -> None: ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class RedisResolutionCache(ResolutionCache):
    def __init__(self, client: redis.Redis, key_prefix: str = "url"):
        self._client = client
        self._key_prefix = key_prefix

    def _key(self, short_code: str) -> str:
        return f"{self._key_prefix}:{short_code}"

    def _version_key(self, short_code: str) -> str:
        return f"{self._key_prefix}:{short_code}:version"

    async def get(self, short_code: str) -> CachedResolution | None:
        cached = await self._client.get(self._key(short_code))
        REDIS_OPERATIONS_TOTAL.inc()
        if not cached:
            return None
        try:
            return CachedResolution.model_validate_json(cached)
        except ValidationError as exc:
            logger.error(f"Cache deserialization error for {short_code}: {exc}")
            await self.invalidate(short_code)
            return None

    async def put(self, short_code: str, entry: CachedResolution) -> None:
        await self._client.set(self._key(short_code), entry.model_dump_json())
        REDIS_OPERATIONS_TOTAL.inc()

    async def version(self, short_code: str) -> int:
        value = await self._client.get(self._version_key(short_code))
        REDIS_OPERATIONS_TOTAL.inc()
        return int(value) if value else 0

    async def put_if_version(self, short_code: str, entry: CachedResolution, version: int) -> bool:
        written = await self._client.eval(
            PUT_IF_VERSION_SCRIPT,
            2,
            self._key(short_code),
            self._version_key(short_code),
            entry.model_dump_json(),
            str(version),
        )
        REDIS_OPERATIONS_TOTAL.inc()
        if not written:
            STALE_CACHE_WRITES_SKIPPED_TOTAL.inc()
        return bool(written)

    async def invalidate(self, short_code: str) -> None:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(self._version_key(short_code))
            pipe.delete(self._key(short_code))
            await pipe.execute()
        REDIS_OPERATIONS_TOTAL.inc()

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryResolutionCache(ResolutionCache):
    def __init__(self) -> None:
        self._entries: dict[str, CachedResolution] = {}
        self._versions: dict[str, int] = {}
        self._lock = threading.Lock()

    async def get(self, short_code: str) -> CachedResolution | None:
        return self._entries.get(short_code)

    async def put(self, short_code: str, entry: CachedResolution) -> None:
        with self._lock:
            self._entries[short_code] = entry

    async def version(self, short_code: str) -> int:
        return self._versions.get(short_code, 0)

    async def put_if_version(self, short_code: str, entry: CachedResolution, version: int) -> bool:
        with self._lock:
            if self._versions.get(short_code, 0) != version:
                STALE_CACHE_WRITES_SKIPPED_TOTAL.inc()
                return False
            self._entries[short_code] = entry
            return True

    async def invalidate(self, short_code: str) -> None:
        with self._lock:
            self._versions[short_code] = self._versions.get(short_code, 0) + 1
            self._entries.pop(short_code, None)

    def __len__(self) -> int:
        return len(self._entries)
