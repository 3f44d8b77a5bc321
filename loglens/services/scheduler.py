"""
Scheduler for background alerting and retention jobs.

Uses APScheduler to run:
- The alert scan (escalations and pending notifications)
- The nightly retention sweep over alerts and log records

With several worker processes, distributed locking via Redis ensures
only one worker executes each scheduled job.
"""

import logging
from collections.abc import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from loglens.core.config import Settings, settings
from loglens.core.redis import get_redis, job_lock
from loglens.services.alert_scanner import AlertScanner
from loglens.services.ingestion import LogIngestionService

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = AsyncIOScheduler()

ALERT_SCAN_LOCK = "scheduler:alert_scan"
RETENTION_SWEEP_LOCK = "scheduler:retention_sweep"


class SchedulerService:
    """Service for managing scheduled background jobs."""

    def __init__(
        self,
        scanner: AlertScanner,
        ingestion: LogIngestionService | None = None,
        config: Settings | None = None,
    ):
        self.scanner = scanner
        self.ingestion = ingestion
        self.config = config or settings

    def start(self):
        """Register jobs and start the scheduler."""
        self._schedule_alert_scan()
        self._schedule_retention_sweep()
        if not scheduler.running:
            scheduler.start()
            logger.info("Scheduler started")

    def stop(self):
        """Stop the scheduler."""
        if scheduler.running:
            scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    async def _run_with_lock(self, lock_name: str, timeout: int, job_func: Callable[[], Awaitable[None]]):
        """
        Execute a job function with distributed locking.

        Only one worker will execute the job; others will skip. Without
        redis the job still runs, unlocked.
        """
        try:
            client = await get_redis()
            async with job_lock(client, lock_name, timeout) as owned:
                if not owned:
                    logger.debug("Lock %s held by another worker, skipping", lock_name)
                    return
                await job_func()
        except Exception as e:
            logger.error("Error in locked job %s: %s", lock_name, e)

    def _schedule_alert_scan(self):
        """Schedule the periodic alert scan."""
        interval = self.config.ALERT_SCAN_INTERVAL_SECONDS
        scheduler.add_job(
            self._run_alert_scan,
            trigger=IntervalTrigger(seconds=interval),
            id="alert_scan",
            name="alert escalation and notification scan",
            replace_existing=True,
            misfire_grace_time=interval,
        )
        logger.info("Scheduled alert_scan job (every %d seconds)", interval)

    def _schedule_retention_sweep(self):
        """Schedule the retention sweep (daily at 3 AM)."""
        scheduler.add_job(
            self._run_retention_sweep,
            trigger=CronTrigger(hour=3, minute=0),
            id="retention_sweep",
            name="alert and log retention sweep",
            replace_existing=True,
            misfire_grace_time=3600,  # 1 hour grace period
        )
        logger.info("Scheduled retention_sweep job (daily at 3 AM)")

    async def _run_alert_scan(self):
        """Execute one alert scan with distributed locking."""

        async def do_scan():
            report = await self.scanner.run_scan()
            logger.debug(
                "Alert scan finished in %dms (%d critical, %d stale, %d notifications)",
                report.duration_ms,
                report.unacknowledged_critical,
                report.stale_acknowledged,
                report.notifications_enqueued,
            )

        await self._run_with_lock(
            ALERT_SCAN_LOCK,
            timeout=max(self.config.ALERT_SCAN_INTERVAL_SECONDS, 30),
            job_func=do_scan,
        )

    async def _run_retention_sweep(self):
        """Execute the retention sweep with distributed locking."""

        async def do_sweep():
            alerts_deleted = await self.scanner.engine.purge_expired()
            logs_deleted = 0
            if self.ingestion is not None:
                logs_deleted = await self.ingestion.purge_expired()
            logger.info(
                "Retention sweep removed %d alerts and %d log records",
                alerts_deleted,
                logs_deleted,
            )

        await self._run_with_lock(RETENTION_SWEEP_LOCK, timeout=3600, job_func=do_sweep)
