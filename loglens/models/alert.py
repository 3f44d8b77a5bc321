from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, Index, Integer, String, Text, text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from loglens.db.base import Base, JSONType, TimestampMixin, UTCDateTime, UUIDMixin


class AlertSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def level(self) -> int:
        return _SEVERITY_LEVELS[self]

    @classmethod
    def parse(cls, value: str | AlertSeverity) -> AlertSeverity:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"Unknown alert severity: {value!r}") from None


_SEVERITY_LEVELS = {
    AlertSeverity.LOW: 1,
    AlertSeverity.MEDIUM: 2,
    AlertSeverity.HIGH: 3,
    AlertSeverity.CRITICAL: 4,
}


class AlertStatus(str, Enum):
    OPEN = "OPEN"                  # Firing, eligible for notification and escalation
    ACKNOWLEDGED = "ACKNOWLEDGED"  # Someone is working it
    RESOLVED = "RESOLVED"          # Fixed, kept until retention
    SUPPRESSED = "SUPPRESSED"      # Muted, kept for audit
    CLOSED = "CLOSED"              # Terminal


def _enum_column(enum_cls: type[Enum]) -> SAEnum:
    # Stored as VARCHAR so the partial index predicate is portable
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=16,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )


class Alert(Base, UUIDMixin, TimestampMixin):
    """A stateful record of a triggered condition for a rule and source pair."""

    __tablename__ = "alerts"

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    severity: Mapped[AlertSeverity] = mapped_column(
        _enum_column(AlertSeverity), nullable=False, index=True
    )
    status: Mapped[AlertStatus] = mapped_column(
        _enum_column(AlertStatus), nullable=False, default=AlertStatus.OPEN, index=True
    )

    rule_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    rule_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Source identifier the rule fired for (host, application, ...)
    triggered_by: Mapped[str] = mapped_column(String(255), nullable=False)

    trigger_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    first_occurrence: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_occurrence: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    acknowledged_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Notification bookkeeping
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_notification_attempt: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_notification_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Escalation bookkeeping
    last_escalated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    escalation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # "metadata" is reserved on declarative classes
    alert_metadata: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    tags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    __table_args__ = (
        # At most one OPEN alert per (rule, source)
        Index(
            "uq_alerts_open_rule_source",
            "rule_id",
            "triggered_by",
            unique=True,
            postgresql_where=text("status = 'OPEN'"),
            sqlite_where=text("status = 'OPEN'"),
        ),
        Index("idx_alerts_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Alert {self.id} {self.rule_id}/{self.triggered_by} {self.status.value}>"
