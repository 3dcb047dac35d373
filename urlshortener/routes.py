"""FastAPI route definitions for the URL shortener REST API.

API Endpoint Overview
=====================
::
    GET    /health
        └─ HealthResponse (200)

    POST   /api/shorten
        ├─ URLCreate (request body)
        └─ URLResponse (201) or 400/422/500

    GET    /api/stats/{short_code}
        └─ URLStats (200) or 404

    GET    /api/analytics/{short_code}
        └─ AnalyticsResponse (200) or 404

    PATCH  /api/urls/{short_code}
        └─ URLResponse (200) or 404

    DELETE /api/urls/{short_code}
        └─ 204 (deactivated) or 404

    GET    /r/{short_code}
        └─ 302 Redirect or 404

Key Behaviours
===============
- Every request except the exempt prefixes passes the rate limiter first
  (see ``urlshortener.rate_limiter.RateLimitMiddleware``).
- Unknown, deactivated and expired codes all produce the same 404 so callers
  cannot tell which codes ever existed.
- Redirects are 302 with caching disabled; the click is recorded on a
  separate task after the response is built.
- Alias errors are 400; an exhausted code space is a 500 logged as critical
  by the service.
"""

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import RedirectResponse
from sqlalchemy import text

from urlshortener.dependencies import RequestContext, get_request_context, get_url_service
from urlshortener.enums import HealthStatus
from urlshortener.exceptions import (
    DuplicateAliasError,
    GenerationExhaustedError,
    InvalidAliasError,
    ShortURLNotFoundError,
)
from urlshortener.models import URL
from urlshortener.schemas import (
    AnalyticsResponse,
    HealthResponse,
    URLCreate,
    URLResponse,
    URLStats,
    URLUpdate,
)
from urlshortener.url_service import URLShorteningService

__all__ = ["router"]

NOT_FOUND_DETAIL = "Short URL not found"
REDIRECT_CACHE_CONTROL = "no-cache, no-store, must-revalidate"

router = APIRouter()


def _to_response(url: URL, ctx: RequestContext, model: type[URLResponse] = URLResponse) -> URLResponse:
    return model(
        id=url.id,
        short_code=url.short_code,
        original_url=url.original_url,
        short_url=f"{ctx.settings.BASE_URL}/r/{url.short_code}",
        clicks=url.clicks,
        custom_alias=url.custom_alias,
        is_active=url.is_active,
        expires_at=url.expires_at,
        created_at=url.created_at,
        updated_at=url.updated_at,
    )


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(ctx: RequestContext = Depends(get_request_context)) -> HealthResponse:
    db_status = HealthStatus.HEALTHY
    cache_status = HealthStatus.HEALTHY

    try:
        await ctx.database.execute(text("SELECT 1"))
    except Exception as e:
        ctx.logger.error(f"Database health check failed: {e}")
        db_status = HealthStatus.UNHEALTHY

    try:
        await ctx.cache.ping()
    except Exception as e:
        ctx.logger.error(f"Cache health check failed: {e}")
        cache_status = HealthStatus.UNHEALTHY

    status = (
        HealthStatus.HEALTHY
        if db_status is HealthStatus.HEALTHY and cache_status is HealthStatus.HEALTHY
        else HealthStatus.UNHEALTHY
    )
    return HealthResponse(status=status, database=db_status, cache=cache_status)


@router.post("/api/shorten", response_model=URLResponse, status_code=201, tags=["urls"])
async def shorten_url(
    payload: URLCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: URLShorteningService = Depends(get_url_service),
) -> URLResponse:
    ctx.add_tag("url_creation")
    ctx.logger.info(
        f"URL shortening requested: {payload.url}",
        extra={"operation": "create_short_url", "target_url": payload.url, "custom_alias": payload.custom_alias},
    )

    try:
        url = await service.create_short_url(payload)
    except (InvalidAliasError, DuplicateAliasError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except GenerationExhaustedError as exc:
        raise HTTPException(status_code=500, detail="Could not allocate a short code, please retry") from exc

    ctx.logger.info(
        f"URL shortened successfully: {url.short_code}",
        extra={"operation": "create_short_url", "short_code": url.short_code, "duration_ms": ctx.get_duration()},
    )
    return _to_response(url, ctx)


@router.get("/api/stats/{short_code}", response_model=URLStats, tags=["urls"])
async def get_stats(
    short_code: str,
    ctx: RequestContext = Depends(get_request_context),
    service: URLShorteningService = Depends(get_url_service),
) -> URLResponse:
    try:
        url = await service.get_url_statistics(short_code)
    except ShortURLNotFoundError as exc:
        ctx.logger.warning(f"Stats not found for short code: {short_code}")
        raise HTTPException(status_code=404, detail=NOT_FOUND_DETAIL) from exc
    return _to_response(url, ctx, URLStats)


@router.get("/api/analytics/{short_code}", response_model=AnalyticsResponse, tags=["urls"])
async def get_analytics(
    short_code: str,
    service: URLShorteningService = Depends(get_url_service),
) -> AnalyticsResponse:
    try:
        return await service.get_analytics(short_code)
    except ShortURLNotFoundError as exc:
        raise HTTPException(status_code=404, detail=NOT_FOUND_DETAIL) from exc


@router.patch("/api/urls/{short_code}", response_model=URLResponse, tags=["urls"])
async def update_url(
    short_code: str,
    payload: URLUpdate,
    ctx: RequestContext = Depends(get_request_context),
    service: URLShorteningService = Depends(get_url_service),
) -> URLResponse:
    try:
        url = await service.update_url(short_code, payload)
    except ShortURLNotFoundError as exc:
        raise HTTPException(status_code=404, detail=NOT_FOUND_DETAIL) from exc
    return _to_response(url, ctx)


@router.delete("/api/urls/{short_code}", status_code=204, tags=["urls"])
async def deactivate_url(
    short_code: str,
    service: URLShorteningService = Depends(get_url_service),
) -> Response:
    try:
        await service.deactivate_url(short_code)
    except ShortURLNotFoundError as exc:
        raise HTTPException(status_code=404, detail=NOT_FOUND_DETAIL) from exc
    return Response(status_code=204)


@router.get("/r/{short_code}", tags=["redirect"])
async def redirect_to_url(
    short_code: str,
    ctx: RequestContext = Depends(get_request_context),
    service: URLShorteningService = Depends(get_url_service),
) -> RedirectResponse:
    ctx.add_tag("redirect")

    resolution = await service.resolve(short_code)
    if not resolution.usable:
        ctx.logger.info(
            f"Redirect refused for {short_code}: {resolution.status}",
            extra={"operation": "redirect", "short_code": short_code, "status": resolution.status},
        )
        raise HTTPException(status_code=404, detail=NOT_FOUND_DETAIL)

    ctx.click_recorder.record(short_code, ctx.metadata)

    ctx.logger.debug(
        f"Redirect successful: {short_code} -> {resolution.target_url}",
        extra={"operation": "redirect", "short_code": short_code, "duration_ms": ctx.get_duration()},
    )
    return RedirectResponse(
        url=resolution.target_url,
        status_code=302,
        headers={"Cache-Control": REDIRECT_CACHE_CONTROL},
    )
