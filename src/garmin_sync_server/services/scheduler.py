"""Background backfill reconciliation using APScheduler.

Garmin never says when a backfill window is finished, so requested chunks
are closed by a periodic sweep that marks everything older than the stale
window as received. The same run replays push records queued after a
transient failure. Both are normally driven externally through the jobs
endpoints; with RECONCILE_ENABLED the server runs them in-process instead.

Configuration:
    RECONCILE_ENABLED: Run the sweep in-process
    RECONCILE_INTERVAL_MINUTES: How often to run it (default: 60)
    BACKFILL_STALE_AFTER_HOURS: Age after which a requested chunk counts as received

Usage:
    scheduler = ReconcileScheduler(async_session_maker)
    await scheduler.start()
    ...
    await scheduler.stop()
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from garmin_sync_server.core.config import settings
from garmin_sync_server.services.backfill import BackfillService
from garmin_sync_server.services.push_retry import PushRetryService

if TYPE_CHECKING:
    from apscheduler.job import Job

logger = structlog.get_logger()


class ReconcileScheduler:
    """Periodic stale-chunk sweep and push retry replay.

    Attributes:
        session_factory: Async session factory for database access
        scheduler: APScheduler instance
        is_running: Whether scheduler is currently running
        last_run_at: Timestamp of last sweep
        last_run_stats: Stats from last sweep
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory
        self.scheduler = AsyncIOScheduler()
        self.is_running = False
        self.last_run_at: datetime | None = None
        self.last_run_stats: dict[str, object] | None = None
        self._job: Job | None = None
        self.logger = logger.bind(component="reconcile_scheduler")

    async def start(self) -> None:
        """Start the sweep job unless disabled by configuration."""
        if not settings.reconcile_enabled:
            self.logger.info("Reconcile scheduler disabled by configuration")
            return

        if self.is_running:
            self.logger.warning("Scheduler already running")
            return

        self._job = self.scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(minutes=settings.reconcile_interval_minutes),
            id="reconcile_backfill_chunks",
            name="Mark stale backfill chunks received and replay queued pushes",
            replace_existing=True,
            max_instances=1,  # Prevent overlapping runs
        )
        self.scheduler.start()
        self.is_running = True

        self.logger.info(
            "Reconcile scheduler started",
            interval_minutes=settings.reconcile_interval_minutes,
            stale_after_hours=settings.backfill_stale_after_hours,
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self.is_running:
            return

        self.scheduler.shutdown(wait=True)
        self.is_running = False
        self.logger.info("Reconcile scheduler stopped")

    async def run_once(self) -> int:
        """Run one sweep across all users, then replay due push retries.

        Failures are logged and recorded in ``last_run_stats``; the next
        interval simply tries again.

        Returns:
            Number of chunks marked received (0 on failure)
        """
        start_time = datetime.now(UTC)
        try:
            async with self.session_factory() as session:
                marked = await BackfillService(session).mark_stale_chunks_received()
                retries = await PushRetryService(session).retry_due()
        except Exception as e:
            self.logger.exception("Reconcile sweep failed", error=str(e))
            self.last_run_stats = {
                "error": str(e),
                "timestamp": datetime.now(UTC).isoformat(),
            }
            return 0

        end_time = datetime.now(UTC)
        self.last_run_at = end_time
        self.last_run_stats = {
            "marked_received": marked,
            "pushes_replayed": retries.processed,
            "pushes_rescheduled": retries.rescheduled,
            "pushes_abandoned": retries.abandoned + retries.expired,
            "duration_ms": int((end_time - start_time).total_seconds() * 1000),
        }
        self.logger.info("Reconcile sweep complete", **self.last_run_stats)
        return marked

    def get_status(self) -> dict[str, object]:
        """Scheduler state for the health endpoint."""
        next_run = None
        if self._job and self.is_running and self._job.next_run_time:
            next_run = self._job.next_run_time.isoformat()

        return {
            "enabled": settings.reconcile_enabled,
            "is_running": self.is_running,
            "interval_minutes": settings.reconcile_interval_minutes,
            "next_run_at": next_run,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_run_stats": self.last_run_stats,
        }


# Global scheduler instance (initialized in app startup)
_scheduler: ReconcileScheduler | None = None


def get_scheduler() -> ReconcileScheduler | None:
    """Get the global scheduler instance, if the app has started one."""
    return _scheduler


def set_scheduler(scheduler: ReconcileScheduler | None) -> None:
    """Set the global scheduler instance."""
    global _scheduler
    _scheduler = scheduler
