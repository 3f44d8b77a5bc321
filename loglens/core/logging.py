"""
Process logging setup.

DEBUG runs get plain text on stdout. Everything else gets one JSON object per
line, rendered by structlog when it is installed and by python-json-logger
otherwise. Both paths pass through the same redaction so credentials and
webhook secrets never reach the log pipeline.
"""
import logging
import re
import sys
from typing import Any

from loglens.core.config import Settings, settings

# Keys whose values are dropped entirely
SENSITIVE_KEYS = ("password", "token", "api_key", "secret", "authorization", "webhook_url")

# Slack/Discord style webhook paths embed the credential in the URL
_WEBHOOK_RE = re.compile(r"(https?://[^/\s]+/(?:services|api/webhooks|hooks))/\S+")
_EMAIL_RE = re.compile(r"^([^@\s])[^@\s]*@([^@\s]+\.[^@\s]+)$")

QUIET_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "opensearch",
    "urllib3",
    "httpx",
    "apscheduler.executors.default",
)

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(config: Settings | None = None) -> None:
    """Install the root handler for this process; safe to call again."""
    config = config or settings
    level = getattr(logging, config.LOG_LEVEL)

    handler = logging.StreamHandler(sys.stdout)
    if config.DEBUG:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    else:
        handler.setFormatter(json_formatter(config.APP_NAME))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def json_formatter(service: str) -> logging.Formatter:
    try:
        import structlog
    except ImportError:
        from pythonjsonlogger import jsonlogger

        class RedactingJsonFormatter(jsonlogger.JsonFormatter):
            def process_log_record(self, log_record):
                return redact_sensitive_data(None, "", log_record)

        return RedactingJsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            static_fields={"service": service},
            timestamp=True,
        )

    def add_service(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("service", service)
        return event_dict

    # %-style args are already merged into "event" by the time this runs
    pre_chain = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso"),
        add_service,
        redact_sensitive_data,
    ]
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )


def redact_sensitive_data(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Drop credential values and mask webhook URLs and e-mail addresses."""
    redacted = event_dict.copy()

    for key, value in redacted.items():
        if not isinstance(key, str):
            continue
        if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
            redacted[key] = "***REDACTED***"
        elif key == "event" and isinstance(value, str):
            redacted[key] = mask_webhooks(value)
        elif isinstance(value, str):
            redacted[key] = redact_string(value)

    return redacted


def mask_webhooks(value: str) -> str:
    return _WEBHOOK_RE.sub(r"\1/***", value)


def redact_string(value: str) -> str:
    """
    Mask a free-form value.

    - Webhook URLs keep scheme, host and route, not the secret path
    - E-mail addresses keep the first character and the domain
    - Long token-like strings keep 8 leading and 4 trailing characters
    """
    value = mask_webhooks(value)

    match = _EMAIL_RE.match(value)
    if match:
        return f"{match.group(1)}***@{match.group(2)}"

    if len(value) > 20 and value.replace("_", "").replace("-", "").isalnum():
        return f"{value[:8]}...{value[-4:]}"

    return value
