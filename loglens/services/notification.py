"""
Notification dispatch.

A dispatcher attempts one delivery and reports (success, error); the alert
lifecycle engine owns retry bookkeeping. Webhook payloads can be shaped for
Slack, Discord or posted as plain JSON.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx

from loglens.core.config import Settings, settings
from loglens.schemas.alert import AlertRead

logger = logging.getLogger(__name__)

# Notification reasons
REASON_NEW = "new"
REASON_UNACKNOWLEDGED_CRITICAL = "unacknowledged_critical"
REASON_STALE_ACKNOWLEDGED = "stale_acknowledged"

# Severity colors for Discord (decimal format)
SEVERITY_COLORS = {
    "critical": 0xFF0000,    # Red
    "high": 0xFF8C00,        # Dark Orange
    "medium": 0xFFD700,      # Gold
    "low": 0x4169E1,         # Royal Blue
}

SEVERITY_EMOJI = {
    "critical": "🔴",
    "high": "🟠",
    "medium": "🟡",
    "low": "🔵",
}

REASON_TITLES = {
    REASON_NEW: "Alert triggered",
    REASON_UNACKNOWLEDGED_CRITICAL: "Critical alert still unacknowledged",
    REASON_STALE_ACKNOWLEDGED: "Acknowledged alert has gone stale",
}


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: str | None = None


class NotificationDispatcher(Protocol):
    async def dispatch(self, alert: AlertRead, reason: str) -> DeliveryResult:
        ...


def build_payload(alert: AlertRead, reason: str) -> dict[str, Any]:
    return {
        "type": "alert",
        "reason": reason,
        "alert_id": str(alert.id),
        "title": alert.title,
        "description": alert.description,
        "severity": alert.severity.value.lower(),
        "status": alert.status.value,
        "rule_id": alert.rule_id,
        "rule_name": alert.rule_name,
        "source": alert.triggered_by,
        "trigger_count": alert.trigger_count,
        "first_occurrence": alert.first_occurrence.isoformat(),
        "last_occurrence": alert.last_occurrence.isoformat(),
        "tags": alert.tags,
        "timestamp": datetime.now(UTC).isoformat(),
    }


def _format_discord_payload(payload: dict) -> dict:
    """Format payload for Discord webhook."""
    severity = payload.get("severity", "medium")
    emoji = SEVERITY_EMOJI.get(severity, "⚪")
    color = SEVERITY_COLORS.get(severity, SEVERITY_COLORS["medium"])
    heading = REASON_TITLES.get(payload.get("reason"), "Alert")

    fields = [
        {"name": "Alert ID", "value": f"`{payload.get('alert_id', 'N/A')}`", "inline": True},
        {"name": "Severity", "value": severity.upper(), "inline": True},
        {"name": "Source", "value": payload.get("source") or "N/A", "inline": True},
        {"name": "Occurrences", "value": str(payload.get("trigger_count", 1)), "inline": True},
    ]

    return {
        "embeds": [{
            "title": f"{emoji} {payload.get('title', 'Alert')}",
            "description": f"**{heading}** for rule `{payload.get('rule_id')}`.",
            "color": color,
            "fields": fields,
            "timestamp": payload.get("timestamp"),
            "footer": {"text": "LogLens Alerting"}
        }]
    }


def _format_slack_payload(payload: dict) -> dict:
    """Format payload for Slack webhook."""
    severity = payload.get("severity", "medium")
    emoji = SEVERITY_EMOJI.get(severity, "⚪")
    heading = REASON_TITLES.get(payload.get("reason"), "Alert")

    return {
        "blocks": [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"{emoji} {payload.get('title', 'Alert')}", "emoji": True}
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*{heading}*"},
                "fields": [
                    {"type": "mrkdwn", "text": f"*Severity:*\n{severity.upper()}"},
                    {"type": "mrkdwn", "text": f"*Alert ID:*\n`{payload.get('alert_id', 'N/A')}`"},
                    {"type": "mrkdwn", "text": f"*Source:*\n{payload.get('source') or 'N/A'}"},
                    {"type": "mrkdwn", "text": f"*Occurrences:*\n{payload.get('trigger_count', 1)}"},
                ]
            },
            {
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": "LogLens Alerting"}]
            }
        ]
    }


def format_payload_for_provider(provider: str, payload: dict) -> dict:
    """Format payload based on webhook provider."""
    if provider == "discord":
        return _format_discord_payload(payload)
    elif provider == "slack":
        return _format_slack_payload(payload)
    else:
        return payload


class WebhookDispatcher:
    """POST alert notifications to a single webhook URL."""

    def __init__(
        self,
        url: str,
        provider: str = "generic",
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.provider = provider
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self._client = client

    async def _post(self, client: httpx.AsyncClient, body: dict) -> httpx.Response:
        return await client.post(self.url, json=body, headers=self.headers, timeout=self.timeout)

    async def dispatch(self, alert: AlertRead, reason: str) -> DeliveryResult:
        body = format_payload_for_provider(self.provider, build_payload(alert, reason))
        try:
            if self._client is not None:
                response = await self._post(self._client, body)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, body)
        except httpx.TimeoutException:
            return DeliveryResult(False, "Timeout")
        except httpx.HTTPError as e:
            logger.error("Failed to send alert %s to webhook: %s", alert.id, type(e).__name__)
            return DeliveryResult(False, str(e))

        if response.is_success:
            return DeliveryResult(True)
        return DeliveryResult(False, f"HTTP {response.status_code}")


class LoggingDispatcher:
    """Log notifications instead of sending them. Used when no webhook is configured."""

    async def dispatch(self, alert: AlertRead, reason: str) -> DeliveryResult:
        logger.warning(
            "[%s] %s alert %s rule=%s source=%s count=%d: %s",
            reason,
            alert.severity.value,
            alert.id,
            alert.rule_id,
            alert.triggered_by,
            alert.trigger_count,
            alert.title,
        )
        return DeliveryResult(True)


def build_dispatcher(config: Settings | None = None) -> NotificationDispatcher:
    config = config or settings
    if config.NOTIFICATION_WEBHOOK_URL:
        return WebhookDispatcher(
            config.NOTIFICATION_WEBHOOK_URL,
            provider=config.NOTIFICATION_WEBHOOK_PROVIDER,
            timeout=config.NOTIFICATION_TIMEOUT_SECONDS,
        )
    logger.info("No notification webhook configured, alerts will be logged only")
    return LoggingDispatcher()
