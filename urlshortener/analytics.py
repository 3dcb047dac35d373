"""Fire-and-forget click recording for successful redirects.

``ClickRecorder.record`` schedules the write on its own asyncio task and
returns at once, so a slow or failing analytics store can never add latency
to, or fail, the redirect that triggered it.

Click Recording Flow
====================
::
    ┌─────────────┐
    │  Redirect   │  record() returns immediately
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ asyncio     │  own task, own DB session
    │ task        │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Classify UA │  device / browser / OS
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ INSERT click│
    │ UPDATE      │  clicks = clicks + 1, same transaction
    │ COMMIT      │
    └──────┬──────┘
    OK?    │
    ┌──────┴──────┐
    │ YES         │ NO
    ▼             ▼
 Kafka fan-out   log + drop
 (if enabled)

Key Behaviours
===============
- Every failure is caught and logged; nothing is retried.
- Ordering against the HTTP response is not guaranteed: the client usually
  gets its redirect before the click is durable.
- In-flight tasks are retained so they are not garbage collected mid-write;
  ``drain()`` awaits them on shutdown.
- A missing user agent classifies as "Unknown" on all three fields.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from fastapi import Request
from prometheus_client import Counter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from urlshortener.clock import Clock, utcnow
from urlshortener.models import ClickEvent
from urlshortener.rate_limiter import client_ip_from_headers
from urlshortener.schemas import ClickEventMessage
from urlshortener.store import ClickEventStore, URLStore

__all__ = [
    "ClickRecorder",
    "RequestMetadata",
    "UserAgentInfo",
    "classify_browser",
    "classify_device",
    "classify_os",
    "classify_user_agent",
]

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"

ANALYTICS_IP_HEADERS = (
    "x-forwarded-for",
    "x-real-ip",
    "proxy-client-ip",
    "wl-proxy-client-ip",
    "http_x_forwarded_for",
    "http_x_forwarded",
    "http_forwarded_for",
    "http_forwarded",
    "http_client_ip",
)

CLICK_EVENTS_RECORDED_TOTAL = Counter(
    "url_shortener_click_events_recorded_total",
    "Click events persisted by the click recorder",
)
CLICK_EVENTS_FAILED_TOTAL = Counter(
    "url_shortener_click_events_failed_total",
    "Click events dropped because recording failed",
)
CLICK_EVENTS_PUBLISHED_TOTAL = Counter(
    "url_shortener_click_events_published_total",
    "Click events published to Kafka",
)


@dataclass(frozen=True)
class RequestMetadata:
    ip_address: str | None = None
    user_agent: str | None = None
    referer: str | None = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestMetadata":
        remote_addr = request.client.host if request.client else None
        return cls(
            ip_address=client_ip_from_headers(request.headers, remote_addr, ANALYTICS_IP_HEADERS),
            user_agent=request.headers.get("user-agent"),
            referer=request.headers.get("referer"),
        )


@dataclass(frozen=True)
class UserAgentInfo:
    device_type: str
    browser: str
    os: str


def classify_device(user_agent: str | None) -> str:
    if user_agent is None:
        return UNKNOWN
    agent = user_agent.lower()
    if "mobile" in agent or ("android" in agent and "mobile" in agent):
        return "Mobile"
    if "tablet" in agent or "ipad" in agent:
        return "Tablet"
    return "Desktop"


def classify_browser(user_agent: str | None) -> str:
    if user_agent is None:
        return UNKNOWN
    agent = user_agent.lower()
    if "edg" in agent:
        return "Edge"
    if "chrome" in agent and "edg" not in agent:
        return "Chrome"
    if "firefox" in agent:
        return "Firefox"
    if "safari" in agent and "chrome" not in agent:
        return "Safari"
    if "opera" in agent or "opr" in agent:
        return "Opera"
    return "Other"


def classify_os(user_agent: str | None) -> str:
    if user_agent is None:
        return UNKNOWN
    agent = user_agent.lower()
    if "windows" in agent:
        return "Windows"
    if "mac os" in agent or "macintosh" in agent:
        return "macOS"
    if "linux" in agent and "android" not in agent:
        return "Linux"
    if "android" in agent:
        return "Android"
    if "iphone" in agent or "ipad" in agent or "ios" in agent:
        return "iOS"
    return "Other"


def classify_user_agent(user_agent: str | None) -> UserAgentInfo:
    return UserAgentInfo(
        device_type=classify_device(user_agent),
        browser=classify_browser(user_agent),
        os=classify_os(user_agent),
    )


class ClickRecorder:
    """Persist click events off the request path.

    Args:
        session_factory: Opens a fresh ``AsyncSession`` per click
        publisher: Optional async callable forwarding the event (Kafka)
        clock: Source of the click timestamp
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: Callable[[ClickEventMessage], Awaitable[bool]] | None = None,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._publisher = publisher
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def record(self, short_code: str, metadata: RequestMetadata) -> asyncio.Task:
        task = asyncio.create_task(self._record(short_code, metadata), name=f"click:{short_code}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight clicks; leftovers after ``timeout`` are abandoned."""
        if not self._tasks:
            return
        _done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} click events still pending after drain timeout")

    async def _record(self, short_code: str, metadata: RequestMetadata) -> None:
        try:
            event = self._build_event(short_code, metadata)
            async with self._session_factory() as session:
                await ClickEventStore(session).add(event)
                await URLStore(session).increment_clicks(short_code)
                await session.commit()
        except Exception:
            CLICK_EVENTS_FAILED_TOTAL.inc()
            logger.exception(f"Failed to record click analytics for URL: {short_code}")
            return

        CLICK_EVENTS_RECORDED_TOTAL.inc()
        logger.debug(f"Recorded click for URL: {short_code}")

        if self._publisher is not None:
            await self._publish(event)

    def _build_event(self, short_code: str, metadata: RequestMetadata) -> ClickEvent:
        info = classify_user_agent(metadata.user_agent)
        return ClickEvent(
            short_code=short_code,
            ip_address=metadata.ip_address,
            user_agent=metadata.user_agent,
            referer=metadata.referer,
            device_type=info.device_type,
            browser=info.browser,
            os=info.os,
            clicked_at=self._clock(),
        )

    async def _publish(self, event: ClickEvent) -> None:
        message = ClickEventMessage(
            short_code=event.short_code,
            ip_address=event.ip_address,
            referer=event.referer,
            device_type=event.device_type,
            browser=event.browser,
            os=event.os,
            clicked_at=event.clicked_at,
        )
        try:
            if await self._publisher(message):
                CLICK_EVENTS_PUBLISHED_TOTAL.inc()
        except Exception as exc:
            logger.error(f"Kafka publish error for {event.short_code}: {exc}")
