"""APScheduler-based job scheduler for periodic maintenance.

Provides scheduling for:
- Orphaned RouterOS object reconciliation (write-through compensation leftovers)
- Periodic ``/ppp/active`` sync making the router's list authoritative

Jobs coalesce missed runs and never overlap with themselves.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from mikrops.config import Settings

logger = logging.getLogger(__name__)

ORPHAN_RECONCILE_JOB_ID = "orphan_reconcile"

JobFunc = Callable[..., Awaitable[Any]]


class JobScheduler:
    """Periodic background jobs.

    Example:
        scheduler = JobScheduler(settings)
        scheduler.add_orphan_reconcile_job(container.reconcile_orphans)
        scheduler.add_ppp_sync_job("default", container.ppp.sync_active)
        await scheduler.start()
        ...
        await scheduler.shutdown()
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 300,
            },
        )
        self.scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start the scheduler (must run inside the event loop).

        Raises:
            RuntimeError: If scheduler already started
        """
        if self._started:
            raise RuntimeError("Scheduler already started")

        self.scheduler.start()
        self._started = True
        logger.info("Job scheduler started", extra={"job_count": len(self.scheduler.get_jobs())})

    async def shutdown(self, wait: bool = False) -> None:
        if not self._started:
            return
        self.scheduler.shutdown(wait=wait)
        self._started = False
        logger.info("Job scheduler stopped")

    def add_orphan_reconcile_job(self, job_func: JobFunc, interval_seconds: int | None = None) -> str:
        interval = interval_seconds or self.settings.reconciler_interval_seconds
        job = self.scheduler.add_job(
            job_func,
            trigger=IntervalTrigger(seconds=interval),
            id=ORPHAN_RECONCILE_JOB_ID,
            name="Orphaned RouterOS object reconcile",
            replace_existing=True,
        )
        logger.info(
            "Added orphan reconcile job",
            extra={"job_id": job.id, "interval_seconds": interval},
        )
        return job.id

    def add_ppp_sync_job(
        self,
        tenant_id: str,
        job_func: JobFunc,
        interval_seconds: int | None = None,
    ) -> str | None:
        """Schedule ``job_func(tenant_id)``; an interval of 0 disables the job."""
        interval = (
            self.settings.ppp_sync_interval_seconds if interval_seconds is None else interval_seconds
        )
        if interval <= 0:
            return None

        job = self.scheduler.add_job(
            job_func,
            trigger=IntervalTrigger(seconds=interval),
            id=f"ppp_sync_{tenant_id}",
            name=f"PPP active sync: {tenant_id}",
            replace_existing=True,
            args=[tenant_id],
        )
        logger.info(
            "Added PPP active sync job",
            extra={"job_id": job.id, "tenant_id": tenant_id, "interval_seconds": interval},
        )
        return job.id

    def remove_job(self, job_id: str) -> None:
        self.scheduler.remove_job(job_id)
        logger.info("Removed job", extra={"job_id": job_id})

    def get_job_status(self, job_id: str) -> dict | None:
        job = self.scheduler.get_job(job_id)
        if not job:
            return None
        # pending jobs (scheduler not started) have no next_run_time yet
        next_run = getattr(job, "next_run_time", None)
        return {
            "id": job.id,
            "name": job.name,
            "next_run_time": next_run.isoformat() if next_run else None,
        }

    def _on_job_executed(self, event: JobExecutionEvent) -> None:
        if event.exception:
            logger.error(
                f"Job {event.job_id} failed",
                extra={"job_id": event.job_id, "error": str(event.exception)},
                exc_info=event.exception,
            )
        else:
            logger.debug(f"Job {event.job_id} executed", extra={"job_id": event.job_id})


__all__ = ["JobScheduler", "ORPHAN_RECONCILE_JOB_ID"]
