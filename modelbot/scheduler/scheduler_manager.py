import logging
from typing import Any, Awaitable, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pytz import timezone

from ..config import get_settings

logger = logging.getLogger(__name__)


class SchedulerManager:
    """Manages the APScheduler instance that drives the background timers."""

    def __init__(self, timezone_name: Optional[str] = None):
        if timezone_name is None:
            timezone_name = get_settings().scheduler.timezone
        self._scheduler = AsyncIOScheduler(timezone=timezone(timezone_name))

    def start(self):
        """Starts the scheduler; must be called from inside the running event loop."""
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Scheduler started.")

    def add_interval_job(
        self,
        job_id: str,
        func: Callable[[], Awaitable[Any]],
        interval_ms: float,
    ) -> None:
        """Run ``func`` every ``interval_ms``, replacing any job with the same id."""
        self.start()
        self._scheduler.add_job(
            func,
            "interval",
            seconds=interval_ms / 1000,
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.debug("Scheduled job %s every %sms", job_id, interval_ms)

    def remove_job(self, job_id: str) -> bool:
        """Remove a job; returns False when no such job is scheduled."""
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        logger.debug("Removed job %s", job_id)
        return True

    def has_job(self, job_id: str) -> bool:
        return self._scheduler.get_job(job_id) is not None

    def shutdown(self):
        """Shuts down the scheduler."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler shut down.")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    @property
    def instance(self) -> AsyncIOScheduler:
        return self._scheduler
