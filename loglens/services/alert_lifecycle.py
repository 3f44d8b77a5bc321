"""
Alert lifecycle engine.

Deduplicates triggers into one OPEN alert per (rule_id, source), drives the
OPEN -> ACKNOWLEDGED -> RESOLVED -> CLOSED state machine (plus OPEN ->
SUPPRESSED), and tracks escalation and notification bookkeeping.

Usage:
    engine = AlertLifecycleEngine(create_session_maker(db_engine))

    alert = await engine.trigger(
        rule_id="disk-full",
        source="web-01",
        title="Disk almost full",
        severity="CRITICAL",
        metadata={"mount": "/var"},
    )
    await engine.acknowledge(alert.id, "oncall@example.com")
"""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from loglens.core.config import Settings, settings
from loglens.core.errors import ConflictError, StateError, ValidationError, not_found
from loglens.core.locks import KeyedLock
from loglens.db.base import utc_now
from loglens.models.alert import Alert, AlertSeverity, AlertStatus
from loglens.schemas.alert import AlertRead, AlertStats, EscalationReport
from loglens.services.alert_store import AlertStore

logger = logging.getLogger(__name__)

# Allowed transitions; anything else is rejected
TRANSITIONS: dict[AlertStatus, frozenset[AlertStatus]] = {
    AlertStatus.OPEN: frozenset(
        {AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED, AlertStatus.SUPPRESSED}
    ),
    AlertStatus.ACKNOWLEDGED: frozenset({AlertStatus.RESOLVED}),
    AlertStatus.RESOLVED: frozenset({AlertStatus.CLOSED}),
    AlertStatus.SUPPRESSED: frozenset({AlertStatus.CLOSED}),
    AlertStatus.CLOSED: frozenset(),
}


def can_transition(current: AlertStatus, target: AlertStatus) -> bool:
    return target in TRANSITIONS[current]


class AlertLifecycleEngine:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        config: Settings | None = None,
        store: AlertStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_maker = session_maker
        self.config = config or settings
        self.store = store or AlertStore(self.config)
        self.clock = clock
        self._locks = KeyedLock()

    # Triggering

    async def trigger(
        self,
        rule_id: str,
        source: str,
        title: str,
        severity: AlertSeverity | str,
        metadata: dict[str, Any] | None = None,
        description: str | None = None,
        tags: list[str] | None = None,
        rule_name: str | None = None,
    ) -> AlertRead:
        """Record a trigger for (rule_id, source).

        An existing OPEN alert is updated in place (count, last occurrence,
        merged metadata); otherwise a new OPEN alert is created.

        Raises:
            ValidationError: Missing rule id, source or title, or unknown severity
            ConflictError: Insert kept colliding after TRIGGER_MAX_RETRIES attempts
        """
        if not rule_id or not source:
            raise ValidationError("rule_id and source are required", details={"rule_id": rule_id, "source": source})
        if not title:
            raise ValidationError("title is required", details={"rule_id": rule_id})
        try:
            severity = AlertSeverity.parse(severity)
        except ValueError as e:
            raise ValidationError(str(e), details={"severity": str(severity)}) from e

        async with self._locks.acquire((rule_id, source)):
            for attempt in range(1, self.config.TRIGGER_MAX_RETRIES + 1):
                async with self.session_maker() as db:
                    try:
                        alert, created = await self._find_or_create(
                            db, rule_id, source, title, severity, metadata, description, tags, rule_name
                        )
                        snapshot = AlertRead.model_validate(alert)
                        await db.commit()
                    except IntegrityError:
                        # Another worker inserted the OPEN row first; retry as an update
                        await db.rollback()
                        logger.warning(
                            "Alert insert for rule=%s source=%s collided (attempt %d/%d)",
                            rule_id,
                            source,
                            attempt,
                            self.config.TRIGGER_MAX_RETRIES,
                        )
                        continue

                    if created:
                        logger.info(
                            "Opened %s alert %s for rule=%s source=%s", severity.value, snapshot.id, rule_id, source
                        )
                    else:
                        logger.debug(
                            "Deduplicated trigger into alert %s (count=%d)", snapshot.id, snapshot.trigger_count
                        )
                    return snapshot

        raise ConflictError(
            "Could not record trigger after repeated conflicts",
            details={
                "rule_id": rule_id,
                "source": source,
                "attempts": self.config.TRIGGER_MAX_RETRIES,
            },
        )

    async def _find_or_create(
        self,
        db: AsyncSession,
        rule_id: str,
        source: str,
        title: str,
        severity: AlertSeverity,
        metadata: dict[str, Any] | None,
        description: str | None,
        tags: list[str] | None,
        rule_name: str | None,
    ) -> tuple[Alert, bool]:
        now = self.clock()
        alert = await self.store.find_open(db, rule_id, source)

        if alert is not None:
            alert.trigger_count += 1
            alert.last_occurrence = now
            alert.updated_at = now
            if metadata:
                # Reassign so the JSON column is flagged dirty
                alert.alert_metadata = {**(alert.alert_metadata or {}), **metadata}
            if tags:
                alert.tags = list(dict.fromkeys([*(alert.tags or []), *tags]))
            await db.flush()
            return alert, False

        alert = Alert(
            title=title,
            description=description,
            severity=severity,
            status=AlertStatus.OPEN,
            rule_id=rule_id,
            rule_name=rule_name,
            triggered_by=source,
            trigger_count=1,
            first_occurrence=now,
            last_occurrence=now,
            notification_sent=False,
            notification_attempts=0,
            escalation_count=0,
            alert_metadata=dict(metadata or {}),
            tags=list(dict.fromkeys(tags or [])),
            created_at=now,
            updated_at=now,
        )
        await self.store.add(db, alert)
        return alert, True

    # State transitions

    async def _transition(
        self,
        alert_id: uuid.UUID,
        target: AlertStatus,
        apply: Callable[[Alert, datetime], None],
    ) -> AlertRead:
        async with self.session_maker() as db:
            alert = await self.store.get(db, alert_id, for_update=True)
            if alert is None:
                raise not_found("Alert", details={"alert_id": str(alert_id)})
            if not can_transition(alert.status, target):
                raise StateError(
                    f"Cannot move alert from {alert.status.value} to {target.value}",
                    details={
                        "alert_id": str(alert_id),
                        "current": alert.status.value,
                        "target": target.value,
                    },
                )

            now = self.clock()
            previous = alert.status
            alert.status = target
            alert.updated_at = now
            apply(alert, now)
            await db.flush()
            snapshot = AlertRead.model_validate(alert)
            await db.commit()

        logger.info("Alert %s moved %s -> %s", alert_id, previous.value, target.value)
        return snapshot

    async def acknowledge(self, alert_id: uuid.UUID, who: str) -> AlertRead:
        def apply(alert: Alert, now: datetime) -> None:
            alert.acknowledged_by = who
            alert.acknowledged_at = now

        return await self._transition(alert_id, AlertStatus.ACKNOWLEDGED, apply)

    async def resolve(self, alert_id: uuid.UUID, who: str, notes: str | None = None) -> AlertRead:
        def apply(alert: Alert, now: datetime) -> None:
            alert.resolved_by = who
            alert.resolved_at = now
            alert.resolution_notes = notes

        return await self._transition(alert_id, AlertStatus.RESOLVED, apply)

    async def close(self, alert_id: uuid.UUID, who: str) -> AlertRead:
        def apply(alert: Alert, now: datetime) -> None:
            alert.alert_metadata = {**(alert.alert_metadata or {}), "closed_by": who}

        return await self._transition(alert_id, AlertStatus.CLOSED, apply)

    async def suppress(self, alert_id: uuid.UUID, who: str, reason: str | None = None) -> AlertRead:
        def apply(alert: Alert, now: datetime) -> None:
            extra = {"suppressed_by": who}
            if reason:
                extra["suppression_reason"] = reason
            alert.alert_metadata = {**(alert.alert_metadata or {}), **extra}

        return await self._transition(alert_id, AlertStatus.SUPPRESSED, apply)

    # Listings

    async def get(self, alert_id: uuid.UUID) -> AlertRead:
        async with self.session_maker() as db:
            alert = await self.store.get(db, alert_id)
            if alert is None:
                raise not_found("Alert", details={"alert_id": str(alert_id)})
            return AlertRead.model_validate(alert)

    async def list_open(self) -> list[AlertRead]:
        async with self.session_maker() as db:
            return [AlertRead.model_validate(a) for a in await self.store.list_open(db)]

    async def list_by_status(self, status: AlertStatus, limit: int | None = None) -> list[AlertRead]:
        async with self.session_maker() as db:
            return [AlertRead.model_validate(a) for a in await self.store.list_by_status(db, status, limit)]

    async def list_pending_notifications(self) -> list[AlertRead]:
        """Alerts not yet delivered with attempts left under NOTIFICATION_RETRY_LIMIT."""
        async with self.session_maker() as db:
            return [AlertRead.model_validate(a) for a in await self.store.list_pending_notifications(db)]

    async def list_escalations(self) -> EscalationReport:
        """Unacknowledged CRITICAL alerts and stale acknowledgements, read in one snapshot."""
        now = self.clock()
        critical_threshold = now - timedelta(minutes=self.config.UNACKNOWLEDGED_CRITICAL_MINUTES)
        stale_threshold = now - timedelta(hours=self.config.STALE_ACKNOWLEDGED_HOURS)

        async with self.session_maker() as db:
            critical = await self.store.list_unacknowledged_critical(db, critical_threshold)
            stale = await self.store.list_stale_acknowledged(db, stale_threshold)
            return EscalationReport(
                unacknowledged_critical=[AlertRead.model_validate(a) for a in critical],
                stale_acknowledged=[AlertRead.model_validate(a) for a in stale],
            )

    # Bookkeeping

    async def record_notification_attempt(
        self,
        alert_id: uuid.UUID,
        delivered: bool,
        error: str | None = None,
    ) -> AlertRead:
        """Count a dispatch attempt whatever its outcome; mark delivery on success."""
        async with self.session_maker() as db:
            alert = await self.store.get(db, alert_id, for_update=True)
            if alert is None:
                raise not_found("Alert", details={"alert_id": str(alert_id)})

            now = self.clock()
            alert.notification_attempts += 1
            alert.last_notification_attempt = now
            alert.updated_at = now
            if delivered:
                alert.notification_sent = True
                alert.last_notification_error = None
            else:
                alert.last_notification_error = error

            await db.flush()
            snapshot = AlertRead.model_validate(alert)
            await db.commit()

            if not delivered and snapshot.notification_attempts >= self.config.NOTIFICATION_RETRY_LIMIT:
                logger.warning(
                    "Alert %s exhausted %d notification attempts: %s",
                    alert_id,
                    snapshot.notification_attempts,
                    error,
                )
            return snapshot

    async def mark_escalated(self, alert_id: uuid.UUID) -> AlertRead:
        async with self.session_maker() as db:
            alert = await self.store.get(db, alert_id, for_update=True)
            if alert is None:
                raise not_found("Alert", details={"alert_id": str(alert_id)})

            now = self.clock()
            alert.last_escalated_at = now
            alert.escalation_count += 1
            alert.updated_at = now
            await db.flush()
            snapshot = AlertRead.model_validate(alert)
            await db.commit()
            return snapshot

    async def purge_expired(self) -> int:
        """Delete RESOLVED and CLOSED alerts untouched for ALERT_RETENTION_DAYS."""
        cutoff = self.clock() - timedelta(days=self.config.ALERT_RETENTION_DAYS)
        async with self.session_maker() as db:
            deleted = await self.store.delete_expired(db, cutoff)
            await db.commit()
        if deleted:
            logger.info("Retention sweep removed %d alerts older than %s", deleted, cutoff.isoformat())
        return deleted

    async def stats(self) -> AlertStats:
        async with self.session_maker() as db:
            by_status = await self.store.count_by(db, Alert.status)
            by_severity = await self.store.count_by(db, Alert.severity)
            pending = await self.store.count_pending_notifications(db)
        return AlertStats(
            total=sum(by_status.values()),
            by_status=by_status,
            by_severity=by_severity,
            pending_notifications=pending,
        )
