"""
Polling scheduler for live chart views (APScheduler, in-memory jobs).

Jobs are refresh coroutines; a refresh still running when the next one is due
is coalesced instead of stacked.
"""

import logging
from datetime import tzinfo
from typing import Any, Awaitable, Callable, Dict, Union

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..timegrid import BUSINESS_TZ

logger = logging.getLogger(__name__)

RefreshJob = Callable[[], Awaitable[Any]]


class Scheduler:
    """Runs refresh jobs at fixed intervals on the current event loop."""

    def __init__(self, tz: Union[str, tzinfo] = BUSINESS_TZ, misfire_grace_seconds: int = 30):
        job_defaults = {
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": misfire_grace_seconds,
        }
        self.tz = tz
        self._scheduler = AsyncIOScheduler(job_defaults=job_defaults, timezone=tz)
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    async def start(self) -> None:
        if not self._started:
            self._scheduler.start()
            self._started = True
            logger.info("Scheduler started (%d job(s))", len(self._scheduler.get_jobs()))

    async def stop(self) -> None:
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Scheduler stopped")

    def add_interval_job(self, func: RefreshJob, seconds: int, job_id: str) -> None:
        """Run *func* every *seconds*; a job with the same id is replaced."""
        if seconds <= 0:
            raise ValueError(f"Poll interval must be positive, got {seconds}")
        self._scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=seconds, timezone=self.tz),
            id=job_id,
            replace_existing=True,
        )
        logger.info(f"Polling {job_id} every {seconds}s")

    def remove_job(self, job_id: str) -> bool:
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            logger.debug(f"No job {job_id} to remove")
            return False
        logger.info(f"Removed job: {job_id}")
        return True

    def list_jobs(self) -> Dict[str, Dict[str, Any]]:
        jobs = {}
        for job in self._scheduler.get_jobs():
            jobs[job.id] = {
                "name": job.name,
                "next_run": getattr(job, "next_run_time", None),
                "trigger": str(job.trigger),
            }
        return jobs
