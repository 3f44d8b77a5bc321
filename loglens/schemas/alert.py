"""Alert schemas handed to callers, dispatchers and the scanner."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from loglens.models.alert import AlertSeverity, AlertStatus


class AlertRead(BaseModel):
    """Detached snapshot of an alert row."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None = None
    severity: AlertSeverity
    status: AlertStatus
    rule_id: str
    rule_name: str | None = None
    triggered_by: str
    trigger_count: int
    first_occurrence: datetime
    last_occurrence: datetime
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    resolution_notes: str | None = None
    notification_sent: bool = False
    notification_attempts: int = 0
    last_notification_attempt: datetime | None = None
    last_notification_error: str | None = None
    last_escalated_at: datetime | None = None
    escalation_count: int = 0
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("alert_metadata", "metadata")
    )
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class EscalationReport(BaseModel):
    """Alerts that need operator attention."""

    unacknowledged_critical: list[AlertRead] = Field(default_factory=list)
    stale_acknowledged: list[AlertRead] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.unacknowledged_critical) + len(self.stale_acknowledged)


class AlertStats(BaseModel):
    total: int
    by_status: dict[str, int]
    by_severity: dict[str, int]
    pending_notifications: int
