"""Resolution cache tests for the Redis and in-memory backends."""

import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as redis

from urlshortener.cache import InMemoryResolutionCache, RedisResolutionCache
from urlshortener.schemas import CachedResolution

EXPIRES = datetime.datetime(2030, 1, 1, tzinfo=datetime.timezone.utc)


@pytest.fixture
def mock_redis() -> AsyncMock:
    client = AsyncMock(spec=redis.Redis)
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    return client


@pytest.fixture
def mock_pipeline(mock_redis: AsyncMock) -> MagicMock:
    pipe = MagicMock()
    pipe.__aenter__.return_value = pipe
    pipe.execute = AsyncMock(return_value=[1, 1])
    mock_redis.pipeline = MagicMock(return_value=pipe)
    return pipe


@pytest.mark.asyncio
async def test_redis_put_stores_without_ttl(mock_redis: AsyncMock) -> None:
    cache = RedisResolutionCache(mock_redis)
    await cache.put("abc1234", CachedResolution(target_url="https://example.com", expires_at=EXPIRES))

    mock_redis.set.assert_awaited_once()
    key, payload = mock_redis.set.await_args.args
    assert key == "url:abc1234"
    assert mock_redis.set.await_args.kwargs == {}
    assert CachedResolution.model_validate_json(payload).target_url == "https://example.com"


@pytest.mark.asyncio
async def test_redis_get_hit(mock_redis: AsyncMock) -> None:
    entry = CachedResolution(target_url="https://example.com", expires_at=EXPIRES)
    mock_redis.get.return_value = entry.model_dump_json()
    cache = RedisResolutionCache(mock_redis, key_prefix="test")

    assert await cache.get("abc1234") == entry
    mock_redis.get.assert_awaited_once_with("test:abc1234")


@pytest.mark.asyncio
async def test_redis_get_miss(mock_redis: AsyncMock) -> None:
    assert await RedisResolutionCache(mock_redis).get("missing") is None


@pytest.mark.asyncio
async def test_redis_corrupt_payload_is_dropped(mock_redis: AsyncMock, mock_pipeline: MagicMock) -> None:
    mock_redis.get.return_value = "https://example.com"
    cache = RedisResolutionCache(mock_redis)

    assert await cache.get("abc1234") is None
    mock_pipeline.delete.assert_called_once_with("url:abc1234")


@pytest.mark.asyncio
async def test_redis_invalidate_bumps_version(mock_redis: AsyncMock, mock_pipeline: MagicMock) -> None:
    await RedisResolutionCache(mock_redis).invalidate("abc1234")

    mock_redis.pipeline.assert_called_once_with(transaction=True)
    mock_pipeline.incr.assert_called_once_with("url:abc1234:version")
    mock_pipeline.delete.assert_called_once_with("url:abc1234")
    mock_pipeline.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_version_defaults_to_zero(mock_redis: AsyncMock) -> None:
    cache = RedisResolutionCache(mock_redis)
    assert await cache.version("abc1234") == 0
    mock_redis.get.assert_awaited_once_with("url:abc1234:version")

    mock_redis.get.return_value = "3"
    assert await cache.version("abc1234") == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("script_result, expected", [(1, True), (0, False)])
async def test_redis_put_if_version(mock_redis: AsyncMock, script_result: int, expected: bool) -> None:
    mock_redis.eval = AsyncMock(return_value=script_result)
    entry = CachedResolution(target_url="https://example.com")

    written = await RedisResolutionCache(mock_redis).put_if_version("abc1234", entry, 2)

    assert written is expected
    _, numkeys, *args = mock_redis.eval.await_args.args
    assert numkeys == 2
    assert args == ["url:abc1234", "url:abc1234:version", entry.model_dump_json(), "2"]


@pytest.mark.asyncio
async def test_redis_errors_propagate(mock_redis: AsyncMock) -> None:
    mock_redis.get.side_effect = redis.ConnectionError("down")
    with pytest.raises(redis.ConnectionError):
        await RedisResolutionCache(mock_redis).get("abc1234")


@pytest.mark.asyncio
async def test_in_memory_cache() -> None:
    cache = InMemoryResolutionCache()
    entry = CachedResolution(target_url="https://example.com")

    assert await cache.get("abc1234") is None
    await cache.put("abc1234", entry)
    assert await cache.get("abc1234") == entry
    assert len(cache) == 1

    await cache.invalidate("abc1234")
    await cache.invalidate("abc1234")
    assert await cache.get("abc1234") is None
    assert await cache.ping()


@pytest.mark.asyncio
async def test_in_memory_put_if_version_rejected_after_invalidate() -> None:
    cache = InMemoryResolutionCache()
    version = await cache.version("abc1234")

    await cache.invalidate("abc1234")

    assert not await cache.put_if_version("abc1234", CachedResolution(target_url="https://old.example"), version)
    assert await cache.get("abc1234") is None
    assert await cache.put_if_version(
        "abc1234", CachedResolution(target_url="https://new.example"), await cache.version("abc1234")
    )
    assert (await cache.get("abc1234")).target_url == "https://new.example"
