"""Pydantic schemas for request/response validation in the URL shortener.

This module defines Pydantic models for API input validation and output serialization,
ensuring type safety and automatic OpenAPI documentation generation.

Schema Hierarchy
=================
::
    URLCreate (Input)
    ├─ url: str (validated http/https URL)
    ├─ custom_alias: str | None (checked by the service, 400 on failure)
    └─ expiration_days: int | None

    URLUpdate (Input)
    ├─ url: str | None
    └─ expiration_days: int | None

    URLResponse / URLStats (Output)
    └─ short code, target, click count, activation and timestamps

    AnalyticsResponse (Output)
    └─ click totals, daily series and top-N breakdowns

    RateLimitErrorResponse (Output)
    ├─ success: bool (always false)
    └─ message: str

Key Behaviours
===============
- URL validation uses the validators library and accepts http/https only.
- Alias rules live in ``urlshortener.codegen`` so a bad alias is a 400, not a 422.
- All datetime fields are timezone-aware when the store provides them.
- Models are configured for ORM attribute mapping.
"""

import datetime
from urllib.parse import urlsplit

import validators
from pydantic import BaseModel, Field, field_validator

from urlshortener.enums import HealthStatus

__all__ = [
    "URLCreate",
    "URLUpdate",
    "URLResponse",
    "URLStats",
    "StatEntry",
    "DailyClicks",
    "AnalyticsResponse",
    "HealthResponse",
    "RateLimitErrorResponse",
    "CachedResolution",
    "ClickEventMessage",
]

ALLOWED_SCHEMES = ("http", "https")


def _check_url(value: str) -> str:
    if not validators.url(value) or urlsplit(value).scheme.lower() not in ALLOWED_SCHEMES:
        raise ValueError("Invalid URL provided")
    return value


class URLCreate(BaseModel):
    url: str
    custom_alias: str | None = None
    expiration_days: int | None = Field(None, ge=0)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _check_url(v)

    @field_validator("custom_alias")
    @classmethod
    def blank_alias_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


class URLUpdate(BaseModel):
    url: str | None = None
    expiration_days: int | None = Field(None, ge=0)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _check_url(v)


class URLResponse(BaseModel):
    id: int
    short_code: str
    original_url: str
    short_url: str
    clicks: int
    custom_alias: bool
    is_active: bool
    expires_at: datetime.datetime | None
    created_at: datetime.datetime
    updated_at: datetime.datetime

    model_config = {"from_attributes": True}


class URLStats(URLResponse):
    pass


class StatEntry(BaseModel):
    name: str
    count: int
    percentage: float


class DailyClicks(BaseModel):
    date: str
    clicks: int


class AnalyticsResponse(BaseModel):
    short_code: str
    total_clicks: int
    clicks_last_24_hours: int
    clicks_last_7_days: int
    clicks_last_30_days: int
    daily_clicks: list[DailyClicks]
    top_browsers: list[StatEntry]
    top_devices: list[StatEntry]
    top_operating_systems: list[StatEntry]
    top_referers: list[StatEntry]


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus


class RateLimitErrorResponse(BaseModel):
    success: bool = False
    message: str


class CachedResolution(BaseModel):
    """Resolution cache payload: the target plus what is needed to re-check expiry."""

    target_url: str
    expires_at: datetime.datetime | None = None


class ClickEventMessage(BaseModel):
    """Kafka click event payload, keyed by short_code for partition affinity."""

    short_code: str = Field(..., description="Short code being clicked, e.g. 'abc123'")
    ip_address: str | None = None
    referer: str | None = None
    device_type: str
    browser: str
    os: str
    clicked_at: datetime.datetime
