"""
Log ingestion: normalisation, auto-tagging, storage and retention.

Ingestion is append-only. Backend outages propagate as
BackendUnavailableError so the caller can retry.
"""

import logging
from collections import Counter
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

import pydantic
from pydantic import BaseModel

from loglens.core.config import Settings, settings
from loglens.core.errors import ValidationError
from loglens.schemas.log_record import LogLevel, LogRecord
from loglens.services.log_parser import parse_log_line, parse_timestamp
from loglens.services.storage.base import LogStorageAdapter

logger = logging.getLogger(__name__)

DEFAULT_LEVEL = LogLevel.INFO
DEFAULT_ENVIRONMENT = "unknown"
DEFAULT_HOST = "localhost"

# Wire names accepted from shippers that use camelCase
FIELD_ALIASES = {
    "@timestamp": "timestamp",
    "stackTrace": "stack_trace",
    "httpMethod": "http_method",
    "httpUrl": "http_url",
    "httpStatus": "http_status",
    "responseTime": "response_time_ms",
}


class IngestionStats(BaseModel):
    processed: int
    errors: int
    by_source: dict[str, int]
    success_rate: float


def auto_tags(record: LogRecord) -> dict[str, str]:
    tags = {}
    if record.is_error:
        tags["error"] = "true"
    if record.has_stack_trace:
        tags["exception"] = "true"
    if record.is_http:
        tags["http"] = "true"
    return tags


class LogIngestionService:
    def __init__(self, storage: LogStorageAdapter, config: Settings | None = None):
        self.storage = storage
        self.config = config or settings
        self._processed = 0
        self._errors = 0
        self._by_source: Counter[str] = Counter()

    def normalize(self, raw: dict[str, Any] | LogRecord, source: str | None = None) -> LogRecord:
        """Apply defaults and auto-tags to a raw payload or record.

        Raises:
            ValidationError: If the payload cannot form a valid record
        """
        if isinstance(raw, LogRecord):
            data = raw.model_dump(exclude={"severity"})
        else:
            data = {FIELD_ALIASES.get(key, key): value for key, value in raw.items()}
            data.pop("severity", None)

        if source and not data.get("source"):
            data["source"] = source
        if not data.get("level") or str(data["level"]).upper() == "UNKNOWN":
            data["level"] = DEFAULT_LEVEL
        if not data.get("environment"):
            data["environment"] = DEFAULT_ENVIRONMENT
        if not data.get("host"):
            data["host"] = DEFAULT_HOST

        timestamp = parse_timestamp(data.get("timestamp"))
        data["timestamp"] = timestamp or datetime.now(UTC)

        try:
            record = LogRecord.model_validate(data)
        except pydantic.ValidationError as e:
            raise ValidationError(
                "Invalid log record",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e

        tags = {**auto_tags(record), **record.tags}
        if tags != record.tags:
            record = record.model_copy(update={"tags": tags})
        return record

    def _count(self, record: LogRecord) -> None:
        self._processed += 1
        self._by_source[record.source or "unknown"] += 1

    async def ingest(self, raw: dict[str, Any] | LogRecord, source: str | None = None) -> LogRecord:
        try:
            stored = await self.storage.put(self.normalize(raw, source))
        except Exception:
            self._errors += 1
            raise
        self._count(stored)
        logger.debug("Log ingested: %s", stored.id)
        return stored

    async def ingest_batch(
        self, raws: Iterable[dict[str, Any] | LogRecord], source: str | None = None
    ) -> list[LogRecord]:
        raws = list(raws)
        try:
            stored = await self.storage.put_many([self.normalize(raw, source) for raw in raws])
        except Exception:
            self._errors += len(raws)
            raise
        for record in stored:
            self._count(record)
        logger.info("Batch ingested: %d logs from source %s", len(stored), source or "mixed")
        return stored

    async def ingest_line(self, line: str, source: str) -> LogRecord:
        """Parse a raw text line (Apache, nginx, log4j, syslog, JSON or free-form) and store it."""
        return await self.ingest(parse_log_line(line), source)

    async def purge_expired(self, now: datetime | None = None) -> int:
        cutoff = (now or datetime.now(UTC)) - timedelta(days=self.config.LOG_RETENTION_DAYS)
        deleted = await self.storage.purge_before(cutoff)
        if deleted:
            logger.info("Retention sweep removed %d log records older than %s", deleted, cutoff.isoformat())
        return deleted

    def stats(self) -> IngestionStats:
        total = self._processed + self._errors
        return IngestionStats(
            processed=self._processed,
            errors=self._errors,
            by_source=dict(self._by_source),
            success_rate=round(self._processed / total * 100, 2) if total else 100.0,
        )

    def reset_stats(self) -> None:
        self._processed = 0
        self._errors = 0
        self._by_source.clear()
        logger.info("Ingestion statistics reset")
