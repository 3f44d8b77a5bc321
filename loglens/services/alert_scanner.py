"""
Periodic alert scanner.

Each pass reads escalation candidates and pending notifications in short
snapshot sessions, then hands deliveries to background tasks. A task reports
its outcome back to the lifecycle engine in its own session, so a slow
webhook never holds a transaction open or blocks triggers.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Coroutine
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from loglens.core.config import Settings, settings
from loglens.schemas.alert import AlertRead
from loglens.services.alert_lifecycle import AlertLifecycleEngine
from loglens.services.notification import (
    REASON_NEW,
    REASON_STALE_ACKNOWLEDGED,
    REASON_UNACKNOWLEDGED_CRITICAL,
    DeliveryResult,
    NotificationDispatcher,
)

logger = logging.getLogger(__name__)


@dataclass
class ScanReport:
    unacknowledged_critical: int = 0
    stale_acknowledged: int = 0
    escalations_enqueued: int = 0
    notifications_enqueued: int = 0
    skipped_in_flight: int = 0
    duration_ms: int = 0
    escalated_ids: list[uuid.UUID] = field(default_factory=list)


class AlertScanner:
    def __init__(
        self,
        engine: AlertLifecycleEngine,
        dispatcher: NotificationDispatcher,
        config: Settings | None = None,
    ):
        self.engine = engine
        self.dispatcher = dispatcher
        self.config = config or settings
        self._tasks: set[asyncio.Task] = set()
        self._in_flight: set[tuple[uuid.UUID, str]] = set()
        self._semaphore = asyncio.Semaphore(self.config.NOTIFICATION_CONCURRENCY)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def _due_for_escalation(self, alert: AlertRead) -> bool:
        if alert.last_escalated_at is None:
            return True
        repeat = timedelta(minutes=self.config.ESCALATION_REPEAT_MINUTES)
        return self.engine.clock() - alert.last_escalated_at >= repeat

    async def run_scan(self) -> ScanReport:
        """One pass: enqueue escalation notices and pending notifications."""
        started = time.monotonic()
        report = ScanReport()

        escalations = await self.engine.list_escalations()
        pending = await self.engine.list_pending_notifications()

        report.unacknowledged_critical = len(escalations.unacknowledged_critical)
        report.stale_acknowledged = len(escalations.stale_acknowledged)

        for reason, alerts in (
            (REASON_UNACKNOWLEDGED_CRITICAL, escalations.unacknowledged_critical),
            (REASON_STALE_ACKNOWLEDGED, escalations.stale_acknowledged),
        ):
            for alert in alerts:
                if not self._due_for_escalation(alert):
                    continue
                if self._spawn(alert, reason, self._escalate(alert, reason)):
                    report.escalations_enqueued += 1
                    report.escalated_ids.append(alert.id)
                else:
                    report.skipped_in_flight += 1

        for alert in pending:
            if self._spawn(alert, REASON_NEW, self._deliver(alert)):
                report.notifications_enqueued += 1
            else:
                report.skipped_in_flight += 1

        report.duration_ms = int((time.monotonic() - started) * 1000)
        if report.escalations_enqueued or report.notifications_enqueued:
            logger.info(
                "Alert scan enqueued %d escalations and %d notifications",
                report.escalations_enqueued,
                report.notifications_enqueued,
            )
        return report

    def _spawn(self, alert: AlertRead, reason: str, coro: Coroutine[Any, Any, None]) -> bool:
        key = (alert.id, reason)
        if key in self._in_flight:
            # A delivery from an earlier pass is still running
            coro.close()
            return False

        self._in_flight.add(key)
        task = asyncio.create_task(coro, name=f"alert-{reason}-{alert.id}")
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, key))
        return True

    def _on_done(self, task: asyncio.Task, key: tuple[uuid.UUID, str]) -> None:
        self._tasks.discard(task)
        self._in_flight.discard(key)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Alert delivery task %s failed: %s", task.get_name(), exc)

    async def _send(self, alert: AlertRead, reason: str) -> DeliveryResult:
        try:
            return await self.dispatcher.dispatch(alert, reason)
        except Exception as e:
            # A broken dispatcher counts as a failed attempt
            logger.error("Dispatcher raised for alert %s: %s", alert.id, type(e).__name__)
            return DeliveryResult(False, str(e) or type(e).__name__)

    async def _deliver(self, alert: AlertRead) -> None:
        async with self._semaphore:
            result = await self._send(alert, REASON_NEW)
            await self.engine.record_notification_attempt(alert.id, result.success, result.error)

    async def _escalate(self, alert: AlertRead, reason: str) -> None:
        async with self._semaphore:
            result = await self._send(alert, reason)
            if result.success:
                await self.engine.mark_escalated(alert.id)
                logger.warning("Escalated alert %s (%s)", alert.id, reason)
            else:
                logger.error("Escalation notice for alert %s failed: %s", alert.id, result.error)

    async def drain(self) -> None:
        """Wait for every in-flight delivery to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 10.0) -> None:
        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except TimeoutError:
            logger.warning("Cancelling %d unfinished alert deliveries", len(self._tasks))
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
