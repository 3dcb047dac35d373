"""Shared enums for the URL shortener service.

This module defines all status and state enums used across the codebase.
Using enums instead of string literals provides type safety and prevents typos.
"""

from enum import StrEnum

__all__ = ["CacheStatus", "HealthStatus", "RateLimitDecision", "RequestStatus", "ResolutionStatus"]


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class RequestStatus(StrEnum):
    """Request status values for metrics and logging."""

    SUCCESS = "success"
    VALIDATION_ERROR = "validation_error"
    ERROR = "error"


class CacheStatus(StrEnum):
    """Cache status values for metrics."""

    HIT = "true"
    MISS = "false"


class ResolutionStatus(StrEnum):
    """Outcome of resolving a short code on the redirect path.

    Everything but OK is reported to clients as the same 404.
    """

    OK = "ok"
    NOT_FOUND = "not_found"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"

    @property
    def usable(self) -> bool:
        return self is ResolutionStatus.OK


class RateLimitDecision(StrEnum):
    """Rate limiter outcomes for metrics."""

    ADMITTED = "admitted"
    REJECTED = "rejected"
