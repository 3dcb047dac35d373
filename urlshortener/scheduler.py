"""Fixed-interval background jobs on APScheduler's asyncio scheduler.

The expiration sweeper and the rate limiter's idle-bucket sweep are plain
async callbacks registered here at startup.

Key Behaviours
===============
- Jobs are coroutine functions run on the application's event loop.
- ``max_instances=1``: a run still in progress when the next tick fires makes
  APScheduler skip that tick, so a job never overlaps itself.
- A failing run is logged by APScheduler and the job fires again on the next
  tick.
- ``stop()`` shuts the scheduler down without waiting for running jobs, then
  yields to the loop until APScheduler has finished its deferred shutdown, so
  no job fires after ``stop()`` returns.
"""

import asyncio
import datetime
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler

__all__ = ["JobScheduler", "ScheduledJob"]

logger = logging.getLogger(__name__)

JobCallback = Callable[[], Awaitable[object]]

JOB_DEFAULTS = {
    "coalesce": True,
    "max_instances": 1,
    "misfire_grace_time": 60,
}


@dataclass(frozen=True)
class ScheduledJob:
    name: str
    interval_seconds: float
    callback: JobCallback
    run_immediately: bool = False


class JobScheduler:
    """Named interval jobs, validated up front and handed to ``AsyncIOScheduler``."""

    def __init__(self) -> None:
        self._scheduler = AsyncIOScheduler(job_defaults=JOB_DEFAULTS, timezone=datetime.timezone.utc)
        self._jobs: dict[str, ScheduledJob] = {}

    @property
    def running(self) -> bool:
        return self._scheduler.running

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs.values())

    def schedule(
        self, name: str, interval_seconds: float, callback: JobCallback, run_immediately: bool = False
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds!r}")
        if name in self._jobs:
            raise ValueError(f"Job '{name}' is already scheduled")

        options: dict[str, Any] = {}
        if run_immediately:
            options["next_run_time"] = datetime.datetime.now(datetime.timezone.utc)

        self._scheduler.add_job(
            callback,
            "interval",
            seconds=interval_seconds,
            id=name,
            name=name,
            **options,
        )
        self._jobs[name] = ScheduledJob(name, interval_seconds, callback, run_immediately)

    async def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info(f"Scheduler started with jobs: {sorted(self._jobs)}")

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            # AsyncIOScheduler completes shutdown on a later loop iteration.
            while self._scheduler.running:
                await asyncio.sleep(0)
            logger.info("Scheduler stopped")
