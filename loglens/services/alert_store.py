"""
Alert persistence queries.

Stateless: every method takes the session it should run in, so callers
decide transaction boundaries.
"""

import uuid
from datetime import datetime

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loglens.core.config import Settings, settings
from loglens.models.alert import Alert, AlertSeverity, AlertStatus

_severity_rank = case(
    {severity.value: severity.level for severity in AlertSeverity},
    value=Alert.severity,
    else_=0,
)


class AlertStore:
    def __init__(self, config: Settings | None = None):
        self.config = config or settings

    async def get(self, db: AsyncSession, alert_id: uuid.UUID, for_update: bool = False) -> Alert | None:
        query = select(Alert).where(Alert.id == alert_id)
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def find_open(self, db: AsyncSession, rule_id: str, source: str) -> Alert | None:
        result = await db.execute(
            select(Alert).where(
                Alert.rule_id == rule_id,
                Alert.triggered_by == source,
                Alert.status == AlertStatus.OPEN,
            ).with_for_update()
        )
        return result.scalar_one_or_none()

    async def add(self, db: AsyncSession, alert: Alert) -> Alert:
        db.add(alert)
        await db.flush()
        return alert

    async def list_by_status(self, db: AsyncSession, status: AlertStatus, limit: int | None = None) -> list[Alert]:
        query = select(Alert).where(Alert.status == status).order_by(Alert.created_at.desc())
        if limit is not None:
            query = query.limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    async def list_open(self, db: AsyncSession) -> list[Alert]:
        """OPEN alerts, most severe first, then newest first."""
        result = await db.execute(
            select(Alert)
            .where(Alert.status == AlertStatus.OPEN)
            .order_by(_severity_rank.desc(), Alert.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_pending_notifications(self, db: AsyncSession) -> list[Alert]:
        result = await db.execute(
            select(Alert)
            .where(
                Alert.notification_sent.is_(False),
                Alert.notification_attempts < self.config.NOTIFICATION_RETRY_LIMIT,
            )
            .order_by(Alert.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_unacknowledged_critical(self, db: AsyncSession, threshold: datetime) -> list[Alert]:
        """OPEN CRITICAL alerts nobody acknowledged that were created before ``threshold``."""
        result = await db.execute(
            select(Alert)
            .where(
                Alert.status == AlertStatus.OPEN,
                Alert.severity == AlertSeverity.CRITICAL,
                Alert.acknowledged_at.is_(None),
                Alert.created_at < threshold,
            )
            .order_by(Alert.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_stale_acknowledged(self, db: AsyncSession, threshold: datetime) -> list[Alert]:
        """ACKNOWLEDGED alerts acknowledged before ``threshold`` and still unresolved."""
        result = await db.execute(
            select(Alert)
            .where(
                Alert.status == AlertStatus.ACKNOWLEDGED,
                Alert.acknowledged_at < threshold,
                Alert.resolved_at.is_(None),
            )
            .order_by(Alert.acknowledged_at.asc())
        )
        return list(result.scalars().all())

    async def delete_expired(self, db: AsyncSession, cutoff: datetime) -> int:
        result = await db.execute(
            delete(Alert).where(
                Alert.status.in_([AlertStatus.RESOLVED, AlertStatus.CLOSED]),
                Alert.updated_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def count_by(self, db: AsyncSession, column) -> dict[str, int]:
        result = await db.execute(select(column, func.count(Alert.id)).group_by(column))
        return {(key.value if hasattr(key, "value") else str(key)): count for key, count in result.all()}

    async def count_pending_notifications(self, db: AsyncSession) -> int:
        result = await db.execute(
            select(func.count(Alert.id)).where(
                Alert.notification_sent.is_(False),
                Alert.notification_attempts < self.config.NOTIFICATION_RETRY_LIMIT,
            )
        )
        return result.scalar() or 0

