"""Rate limiting middleware tests through the ASGI app."""

import pytest
from httpx import AsyncClient

from urlshortener.dependencies import ServiceManager
from urlshortener.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tight_limiter(manager: ServiceManager, clock: FakeClock) -> RateLimiter:
    manager.rate_limiter = RateLimiter(per_minute=3, per_hour=100, clock=clock)
    return manager.rate_limiter


@pytest.mark.asyncio
async def test_remaining_header_counts_down(client: AsyncClient, tight_limiter: RateLimiter) -> None:
    remaining = []
    for _ in range(3):
        response = await client.get("/api/stats/nonexistent")
        assert response.status_code == 404
        remaining.append(response.headers["X-Rate-Limit-Remaining"])
    assert remaining == ["2", "1", "0"]


@pytest.mark.asyncio
async def test_rejects_with_429_when_exhausted(client: AsyncClient, tight_limiter: RateLimiter) -> None:
    for _ in range(3):
        await client.get("/api/stats/nonexistent")

    response = await client.get("/api/stats/nonexistent")
    assert response.status_code == 429
    assert response.headers["X-Rate-Limit-Retry-After-Seconds"] == "20"
    assert response.json() == {
        "success": False,
        "message": "Rate limit exceeded. Please try again in 20 seconds.",
    }


@pytest.mark.asyncio
async def test_rejected_requests_do_not_reach_handlers(client: AsyncClient, tight_limiter: RateLimiter) -> None:
    for _ in range(3):
        await client.get("/api/stats/nonexistent")

    response = await client.post("/api/shorten", json={"url": "https://www.example.com"})
    assert response.status_code == 429


@pytest.mark.asyncio
async def test_refill_admits_again(client: AsyncClient, tight_limiter: RateLimiter, clock: FakeClock) -> None:
    for _ in range(3):
        await client.get("/api/stats/nonexistent")
    assert (await client.get("/api/stats/nonexistent")).status_code == 429

    clock.now += 21
    assert (await client.get("/api/stats/nonexistent")).status_code == 404


@pytest.mark.asyncio
async def test_health_is_exempt(client: AsyncClient, tight_limiter: RateLimiter) -> None:
    for _ in range(5):
        response = await client.get("/health")
        assert response.status_code == 200
        assert "X-Rate-Limit-Remaining" not in response.headers
    assert len(tight_limiter.registry) == 0


@pytest.mark.asyncio
async def test_exempt_prefix_covers_sub_paths(client: AsyncClient, tight_limiter: RateLimiter) -> None:
    for _ in range(5):
        response = await client.get("/docs/oauth2-redirect")
        assert "X-Rate-Limit-Remaining" not in response.headers
    assert len(tight_limiter.registry) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/docs-anything", "/healthz-admin", "/metricsfoo"])
async def test_lookalike_paths_are_limited(client: AsyncClient, tight_limiter: RateLimiter, path: str) -> None:
    for _ in range(3):
        response = await client.get(path)
        assert "X-Rate-Limit-Remaining" in response.headers

    assert (await client.get(path)).status_code == 429
    assert len(tight_limiter.registry) == 1


@pytest.mark.asyncio
async def test_clients_are_limited_separately(client: AsyncClient, tight_limiter: RateLimiter) -> None:
    for _ in range(3):
        await client.get("/api/stats/nonexistent", headers={"x-api-key": "client-a"})
    assert (await client.get("/api/stats/nonexistent", headers={"x-api-key": "client-a"})).status_code == 429

    response = await client.get("/api/stats/nonexistent", headers={"x-api-key": "client-b"})
    assert response.status_code == 404
    response = await client.get("/api/stats/nonexistent", headers={"x-forwarded-for": "203.0.113.9"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_disabled_limiter_sets_no_header(client: AsyncClient, manager: ServiceManager) -> None:
    manager.rate_limiter = RateLimiter(per_minute=1, per_hour=1, enabled=False)
    for _ in range(3):
        response = await client.get("/api/stats/nonexistent")
        assert response.status_code == 404
        assert "X-Rate-Limit-Remaining" not in response.headers
