"""Cron scheduling for reconciliation cycles and the audit retention purge."""
from __future__ import annotations

from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.exc import SQLAlchemyError

from order_reconciliation.config import ReconciliationSettings
from order_reconciliation.jobs.reconciliation_cycle import CycleSummary, ReconciliationCycle
from order_reconciliation.utils import get_logger

logger = get_logger(__name__)

CYCLE_JOB_ID = "order_reconciliation_cycle"
PURGE_JOB_ID = "order_reconciliation_audit_purge"


class ReconciliationScheduler:
    """Runs `ReconciliationCycle` on the configured cron expression.

    Within one process `max_instances=1` plus the `is_running` flag keep
    cycles from overlapping (manual triggers included); across processes
    the lease does.
    """

    def __init__(
        self,
        cycle: ReconciliationCycle,
        settings: ReconciliationSettings,
        *,
        scheduler: Optional[AsyncIOScheduler] = None,
        purge_hour: int = 3,
    ):
        self.cycle = cycle
        self.settings = settings
        self.scheduler = scheduler or AsyncIOScheduler(timezone=settings.cron_timezone)
        self.purge_hour = purge_hour
        self.is_running = False
        self.last_summary: Optional[CycleSummary] = None
        self.last_error: Optional[str] = None

    def start(self) -> None:
        """Register jobs and start the scheduler (needs a running event loop)."""
        self.scheduler.add_job(
            self._run_scheduled,
            trigger=CronTrigger.from_crontab(self.settings.cron_schedule, timezone=self.settings.cron_timezone),
            id=CYCLE_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._purge_scheduled,
            trigger=CronTrigger(hour=self.purge_hour, minute=30, timezone=self.settings.cron_timezone),
            id=PURGE_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            "Reconciliation scheduler started",
            cron_schedule=self.settings.cron_schedule,
            timezone=self.settings.cron_timezone,
            environment=self.settings.environment,
        )

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Reconciliation scheduler stopped")

    async def run_now(self) -> Optional[CycleSummary]:
        """Run one cycle immediately; None when a cycle is already running here."""
        if self.is_running:
            logger.info("Reconciliation cycle already running in this process, trigger ignored")
            return None
        self.is_running = True
        try:
            summary = await self.cycle.run()
            self.last_summary = summary
            self.last_error = None
            return summary
        finally:
            self.is_running = False

    async def _run_scheduled(self) -> None:
        # a crash must never take the scheduler down; the next tick retries
        try:
            await self.run_now()
        except Exception as e:
            self.last_error = str(e)
            logger.error("Scheduled reconciliation cycle crashed", error=str(e), exc_info=True)

    def purge(self, days: Optional[int] = None) -> int:
        return self.cycle.audit.purge_older_than(days or self.settings.audit_retention_days)

    async def _purge_scheduled(self) -> None:
        try:
            self.purge()
        except SQLAlchemyError as e:
            logger.error("Scheduled audit purge failed", error=str(e))

    def status(self) -> Dict[str, Any]:
        jobs = {}
        if self.scheduler.running:
            for job in self.scheduler.get_jobs():
                next_run = getattr(job, "next_run_time", None)
                jobs[job.id] = next_run.isoformat() if next_run else None
        return {
            "scheduler_running": bool(self.scheduler.running),
            "cycle_running": self.is_running,
            "cron_schedule": self.settings.cron_schedule,
            "timezone": self.settings.cron_timezone,
            "next_runs": jobs,
            "last_cycle": self.last_summary.to_dict() if self.last_summary else None,
            "last_error": self.last_error,
            "circuit_breaker": self.cycle.reconciler.breaker.snapshot(),
        }


__all__ = ["ReconciliationScheduler", "CYCLE_JOB_ID", "PURGE_JOB_ID"]
