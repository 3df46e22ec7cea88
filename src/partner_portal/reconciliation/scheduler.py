"""Background scheduler for the daily CRM reconciliation.

Wraps an APScheduler AsyncIOScheduler with one cron job that runs
SyncReconciler.run_all() once a day at a fixed UTC time. Also exposes the
manual trigger used by operators and a status snapshot for the API.

Exports:
    SyncScheduler: Daily sync trigger plus manual trigger and status.
"""

from __future__ import annotations

from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.partner_portal.reconciliation.errors import SyncAlreadyRunningError
from src.partner_portal.reconciliation.schemas import SyncRunResult, SyncTrigger
from src.partner_portal.reconciliation.sync import SyncReconciler

logger = structlog.get_logger(__name__)

JOB_ID = "crm_daily_sync"


class SyncScheduler:
    """Fires the full CRM sync once per day.

    A scheduled fire that lands while a run is still in flight is skipped
    with a warning; a manual trigger in the same situation raises
    SyncAlreadyRunningError.

    Args:
        reconciler: SyncReconciler to run.
        hour: UTC hour of the daily run.
        minute: UTC minute of the daily run.
        misfire_grace_time: Seconds a late fire is still honoured.
    """

    def __init__(
        self,
        reconciler: SyncReconciler,
        hour: int = 2,
        minute: int = 0,
        misfire_grace_time: int = 3600,
    ) -> None:
        self._reconciler = reconciler
        self._hour = hour
        self._minute = minute
        self._misfire_grace_time = misfire_grace_time
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def schedule(self) -> str:
        return f"Daily {self._hour:02d}:{self._minute:02d} UTC"

    def start(self) -> bool:
        """Start the scheduler. Returns False if it could not be started."""
        if self._started:
            return True
        try:
            self._scheduler = AsyncIOScheduler(timezone="UTC")
            self._scheduler.add_job(
                self.run_scheduled,
                trigger=CronTrigger(hour=self._hour, minute=self._minute, timezone="UTC"),
                id=JOB_ID,
                name="Daily CRM reconciliation of partner leads and deals",
                misfire_grace_time=self._misfire_grace_time,
                max_instances=1,
                coalesce=True,
            )
            self._scheduler.start()
        except Exception as exc:
            logger.warning("sync_scheduler.start_failed", error=str(exc))
            self._scheduler = None
            return False

        self._started = True
        logger.info(
            "sync_scheduler.started",
            job=JOB_ID,
            schedule=self.schedule,
            next_run_at=self._next_run_iso(),
        )
        return True

    def shutdown(self) -> None:
        """Shut down the scheduler."""
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            self._started = False
            logger.info("sync_scheduler.stopped")

    async def run_scheduled(self) -> SyncRunResult | None:
        """Cron job body. Returns None when skipped because a run is in flight."""
        logger.info("sync_scheduler.triggered", trigger=SyncTrigger.SCHEDULED.value)
        try:
            return await self._reconciler.run_all(SyncTrigger.SCHEDULED)
        except SyncAlreadyRunningError:
            logger.warning("sync_scheduler.skipped", reason="sync_in_progress")
            return None

    async def trigger_manual(self, triggered_by: str | None = None) -> SyncRunResult:
        """Run a full sync now on behalf of an operator.

        Raises:
            SyncAlreadyRunningError: a run is already in flight.
        """
        logger.info("sync_scheduler.manual_trigger", triggered_by=triggered_by)
        return await self._reconciler.run_all(SyncTrigger.MANUAL, triggered_by=triggered_by)

    def status(self) -> dict[str, Any]:
        """Scheduler state, next fire time and last run summary."""
        last = self._reconciler.last_result
        last_run: dict[str, Any] | None = None
        if last is not None:
            last_run = {
                "success": last.success,
                "trigger": last.trigger.value,
                "started_at": last.started_at.isoformat(),
                "finished_at": last.finished_at.isoformat() if last.finished_at else None,
                "total_partners": last.total_partners,
                "successful_syncs": last.successful_syncs,
                "errors": len(last.errors),
                "summary": last.summary.model_dump(),
            }
        return {
            "running": self._started,
            "sync_in_progress": self._reconciler.is_running,
            "schedule": self.schedule,
            "next_run_at": self._next_run_iso(),
            "last_run": last_run,
        }

    def _next_run_iso(self) -> str | None:
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(JOB_ID)
        if job is None or job.next_run_time is None:
            return None
        return job.next_run_time.isoformat()
