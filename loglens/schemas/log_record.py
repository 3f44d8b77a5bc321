"""
Log record schema shared by every storage backend.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class LogLevel(str, Enum):
    TRACE = "TRACE"
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    FATAL = "FATAL"

    @classmethod
    def _missing_(cls, value: object) -> "LogLevel | None":
        if isinstance(value, str):
            normalized = value.strip().upper()
            if normalized == "WARNING":
                return cls.WARN
            for member in cls:
                if member.value == normalized:
                    return member
        return None

    @property
    def severity(self) -> int:
        return LEVEL_SEVERITY[self]


LEVEL_SEVERITY = {
    LogLevel.TRACE: 0,
    LogLevel.DEBUG: 1,
    LogLevel.INFO: 2,
    LogLevel.WARN: 3,
    LogLevel.ERROR: 4,
    LogLevel.FATAL: 5,
}

# Fields searched by free-text queries on the substring backends
TEXT_FIELDS = ("message", "source", "application", "host", "logger", "thread")

# Fields usable in exact filters, distinct values and aggregations
KEYWORD_FIELDS = (
    "id",
    "level",
    "source",
    "host",
    "application",
    "environment",
    "logger",
    "thread",
    "http_method",
    "http_status",
    "severity",
)

SORTABLE_FIELDS = (
    "timestamp",
    "level",
    "severity",
    "source",
    "host",
    "application",
    "environment",
    "logger",
    "thread",
    "id",
    "http_status",
    "response_time_ms",
)

MAP_FIELD_PREFIXES = ("metadata.", "tags.")

# Width of the relational primary key column
MAX_RECORD_ID_LENGTH = 64


def is_known_field(name: str) -> bool:
    """True for top-level keyword/sort fields and metadata./tags. paths."""
    if name in KEYWORD_FIELDS or name in SORTABLE_FIELDS or name in TEXT_FIELDS:
        return True
    for prefix in MAP_FIELD_PREFIXES:
        if name.startswith(prefix) and len(name) > len(prefix):
            return True
    return False


class LogRecord(BaseModel):
    """A single immutable log event."""

    model_config = ConfigDict(frozen=True, from_attributes=True, extra="ignore")

    id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    level: LogLevel = LogLevel.INFO
    message: str = ""
    source: str | None = None
    host: str | None = None
    application: str | None = None
    environment: str | None = None
    logger: str | None = None
    thread: str | None = None
    stack_trace: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)

    # HTTP request fields
    http_method: str | None = None
    http_url: str | None = None
    http_status: int | None = None
    response_time_ms: int | None = None

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)

    @field_validator("tags", mode="before")
    @classmethod
    def stringify_tags(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        if isinstance(v, (list, tuple, set, frozenset)):
            return {str(tag): "true" for tag in v}
        return v

    @computed_field
    @property
    def severity(self) -> int:
        return self.level.severity

    @property
    def is_error(self) -> bool:
        return self.level in (LogLevel.ERROR, LogLevel.FATAL)

    @property
    def is_http(self) -> bool:
        return bool(self.http_method and self.http_url)

    @property
    def has_stack_trace(self) -> bool:
        return bool(self.stack_trace and self.stack_trace.strip())

    def field_value(self, name: str) -> Any:
        """Resolve a field name or a metadata./tags. path to its value."""
        if name.startswith("metadata."):
            return self.metadata.get(name[len("metadata."):])
        if name.startswith("tags."):
            return self.tags.get(name[len("tags."):])
        if name == "level":
            return self.level.value
        if name == "severity":
            return self.severity
        if name in type(self).model_fields:
            return getattr(self, name)
        return None
