"""
Query engine: validates structured queries, dispatches them to the configured
storage backend and shapes the results.

Validation happens before storage is touched. Backend stalls and outages
become degraded ``timed_out`` results when soft timeouts are enabled.
"""

import asyncio
import logging
import time
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel

from loglens.core.config import Settings, settings
from loglens.core.errors import BackendUnavailableError, QueryError, ValidationError
from loglens.schemas.log_record import (
    KEYWORD_FIELDS,
    SORTABLE_FIELDS,
    TEXT_FIELDS,
    LogLevel,
    LogRecord,
    is_known_field,
)
from loglens.schemas.query import (
    HISTOGRAM_INTERVALS,
    AggregationRequest,
    AggregationType,
    Bucket,
    PatternMode,
    Query,
    QueryResult,
)
from loglens.services.query_parser import apply_query_text, parse_level
from loglens.services.storage.base import BackendCapabilities, Deadline, LogStorageAdapter
from loglens.services.storage.matching import compile_regex, resolve_filter_field

logger = logging.getLogger(__name__)

MAX_FILTER_VALUES = 50
MAX_CUSTOM_FILTERS = 20
MAX_SORT_FIELDS = 5
MAX_AGGREGATIONS = 10
MAX_TEXT_LENGTH = 1000

# Extra time the engine allows past the adapter's own deadline before cancelling
CANCEL_GRACE_SECONDS = 0.5


class LogStatistics(BaseModel):
    total: int
    error_count: int
    error_rate: float
    by_level: dict[str, int]
    by_application: dict[str, int]
    timed_out: bool = False


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _is_aggregatable(field: str) -> bool:
    return field in KEYWORD_FIELDS or (is_known_field(field) and field.startswith(("metadata.", "tags.")))


class QueryEngine:
    def __init__(self, storage: LogStorageAdapter, config: Settings | None = None):
        self.storage = storage
        self.config = config or settings

    @property
    def capabilities(self) -> BackendCapabilities:
        return self.storage.capabilities

    @staticmethod
    def available_fields() -> list[str]:
        return sorted(set(KEYWORD_FIELDS) | set(TEXT_FIELDS) | set(SORTABLE_FIELDS))

    # Validation

    def validate(self, query: Query) -> Query:
        """Check bounds and field names; return the normalised query.

        Raises:
            ValidationError: Page, size or time range out of bounds
            QueryError: Unknown field, bad pattern or bad aggregation
        """
        if query.page < 1:
            raise ValidationError("Page must be at least 1", details={"page": query.page})
        if query.size < 1 or query.size > self.config.MAX_PAGE_SIZE:
            raise ValidationError(
                f"Size must be between 1 and {self.config.MAX_PAGE_SIZE}",
                details={"size": query.size},
            )
        if query.text and len(query.text) > MAX_TEXT_LENGTH:
            raise ValidationError(
                f"Query text cannot exceed {MAX_TEXT_LENGTH} characters",
                details={"length": len(query.text)},
            )

        start, end = _utc(query.start_time), _utc(query.end_time)
        if start is not None and end is not None:
            if start >= end:
                raise ValidationError(
                    "Start time must be before end time",
                    details={"start_time": start.isoformat(), "end_time": end.isoformat()},
                )
            max_span = timedelta(days=self.config.MAX_QUERY_SPAN_DAYS)
            if end - start > max_span:
                raise ValidationError(
                    f"Time range cannot exceed {self.config.MAX_QUERY_SPAN_DAYS} days",
                    details={"span_days": (end - start).total_seconds() / 86400},
                )

        query = apply_query_text(query.model_copy(update={"start_time": start, "end_time": end}))
        query = self._lift_level_filter(query)

        for field, values in query.filter_sets().items():
            if len(values) > MAX_FILTER_VALUES:
                raise ValidationError(
                    f"Too many {field} values (max {MAX_FILTER_VALUES})",
                    details={"field": field, "count": len(values)},
                )

        if len(query.filters) > MAX_CUSTOM_FILTERS or len(query.patterns) > MAX_CUSTOM_FILTERS:
            raise ValidationError(f"Too many custom filters (max {MAX_CUSTOM_FILTERS})")
        for key in [*query.filters, *query.patterns]:
            if not key or not is_known_field(resolve_filter_field(key)):
                raise QueryError(f"Invalid filter field: {key!r}", details={"field": key})

        if len(query.sort) > MAX_SORT_FIELDS:
            raise ValidationError(f"Too many sort fields (max {MAX_SORT_FIELDS})")
        for sort_field in query.sort:
            if sort_field.field not in SORTABLE_FIELDS:
                raise QueryError(
                    f"Field is not sortable: {sort_field.field}",
                    details={"field": sort_field.field, "allowed": list(SORTABLE_FIELDS)},
                )

        query = query.model_copy(update={"aggregations": self._validate_aggregations(query.aggregations)})

        if query.mode == PatternMode.REGEX and not query.is_match_all:
            compile_regex(query.text.strip(), query.case_sensitive)

        return query

    @staticmethod
    def _lift_level_filter(query: Query) -> Query:
        """Move a ``level`` custom filter into the typed level set."""
        if "level" not in query.filters:
            return query
        filters = dict(query.filters)
        raw = filters.pop("level")
        values = raw if isinstance(raw, (list, tuple, set, frozenset)) else [raw]
        levels = list(dict.fromkeys([*query.levels, *(parse_level(str(v)) for v in values)]))
        return query.model_copy(update={"filters": filters, "levels": levels})

    def _validate_aggregations(self, requests: list[AggregationRequest]) -> list[AggregationRequest]:
        """Check each aggregation and resolve its bucket count against the configured caps."""
        if len(requests) > MAX_AGGREGATIONS:
            raise ValidationError(f"Too many aggregations (max {MAX_AGGREGATIONS})")
        seen: set[str] = set()
        resolved: list[AggregationRequest] = []
        for request in requests:
            if request.key in seen:
                raise QueryError(f"Duplicate aggregation name: {request.key}", details={"name": request.key})
            seen.add(request.key)

            if request.size is not None and request.size < 1:
                raise ValidationError("Aggregation size must be at least 1", details={"name": request.key})

            if request.type == AggregationType.DATE_HISTOGRAM:
                if request.field != "timestamp":
                    raise QueryError("Date histograms are only supported on timestamp", details={"field": request.field})
                if (request.interval or "hour") not in HISTOGRAM_INTERVALS:
                    raise QueryError(
                        f"Unsupported histogram interval: {request.interval}",
                        details={"allowed": list(HISTOGRAM_INTERVALS)},
                    )
            elif not _is_aggregatable(request.field):
                raise QueryError(f"Field cannot be aggregated: {request.field}", details={"field": request.field})

            cap = self.config.bucket_cap_for(request.field)
            resolved.append(request.model_copy(update={"size": min(request.size or cap, cap)}))
        return resolved

    def _validate_facet(self, field: str, limit: int) -> int:
        if not _is_aggregatable(field):
            raise QueryError(f"Field cannot be aggregated: {field}", details={"field": field})
        if limit < 1:
            raise ValidationError("Limit must be at least 1", details={"limit": limit})
        return min(limit, self.config.bucket_cap_for(field))

    # Dispatch

    def _soft_fail(self, error: BackendUnavailableError) -> None:
        if not self.config.QUERY_SOFT_TIMEOUT:
            raise error
        logger.warning("Degrading query result: %s", error.message)

    async def _bounded(self, coro):
        """Run an adapter call, cancelling it if it overruns the engine timeout."""
        timeout = self.config.QUERY_TIMEOUT_SECONDS
        return await asyncio.wait_for(coro, timeout=timeout + CANCEL_GRACE_SECONDS)

    async def search(self, query: Query) -> QueryResult:
        query = self.validate(query)
        started = time.monotonic()
        deadline = Deadline(self.config.QUERY_TIMEOUT_SECONDS)

        try:
            result = await self._bounded(self.storage.query(query, deadline))
        except TimeoutError:
            logger.warning(
                "Query on %s backend cancelled after %.1fs",
                self.storage.name,
                self.config.QUERY_TIMEOUT_SECONDS,
            )
            result = QueryResult.empty(query, backend=self.storage.name, timed_out=True)
        except BackendUnavailableError as e:
            self._soft_fail(e)
            result = QueryResult.empty(query, backend=self.storage.name, timed_out=True)

        result.took_ms = int((time.monotonic() - started) * 1000)
        if result.timed_out:
            logger.info("Query %s returned partial results (total_hits=%d)", result.search_id, result.total_hits)
        else:
            logger.debug(
                "Query %s matched %d records in %dms", result.search_id, result.total_hits, result.took_ms
            )
        return result

    async def distinct_values(self, field: str, limit: int, query: Query | None = None) -> list[str]:
        limit = self._validate_facet(field, limit)
        if query is not None:
            query = self.validate(query)
        try:
            return await self._bounded(self.storage.distinct_values(field, limit, query))
        except TimeoutError:
            logger.warning("distinct_values(%s) cancelled on %s backend", field, self.storage.name)
            return []
        except BackendUnavailableError as e:
            self._soft_fail(e)
            return []

    async def aggregate(self, field: str, limit: int, query: Query | None = None) -> list[Bucket]:
        limit = self._validate_facet(field, limit)
        if query is not None:
            query = self.validate(query)
        try:
            return await self._bounded(self.storage.aggregate(field, limit, query))
        except TimeoutError:
            logger.warning("aggregate(%s) cancelled on %s backend", field, self.storage.name)
            return []
        except BackendUnavailableError as e:
            self._soft_fail(e)
            return []

    async def get_by_id(self, record_id: str) -> LogRecord | None:
        return await self.storage.get_by_id(record_id)

    # Convenience searches

    async def search_errors(
        self,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        page: int = 1,
        size: int = 100,
    ) -> QueryResult:
        """ERROR and FATAL records, newest first."""
        return await self.search(
            Query(
                levels=[LogLevel.ERROR, LogLevel.FATAL],
                start_time=start_time,
                end_time=end_time,
                page=page,
                size=size,
            )
        )

    async def statistics(self, start_time: datetime | None = None, end_time: datetime | None = None) -> LogStatistics:
        """Level and application breakdown over a time range."""
        result = await self.search(
            Query(
                start_time=start_time,
                end_time=end_time,
                size=1,
                aggregations=[
                    AggregationRequest(field="level", size=len(LogLevel)),
                    AggregationRequest(field="application"),
                ],
            )
        )
        level_agg = result.aggregations.get("level")
        app_agg = result.aggregations.get("application")
        by_level = {b.key: b.doc_count for b in level_agg.buckets} if level_agg else {}
        by_application = {b.key: b.doc_count for b in app_agg.buckets} if app_agg else {}
        error_count = by_level.get(LogLevel.ERROR.value, 0) + by_level.get(LogLevel.FATAL.value, 0)
        return LogStatistics(
            total=result.total_hits,
            error_count=error_count,
            error_rate=round(error_count / result.total_hits, 4) if result.total_hits else 0.0,
            by_level=by_level,
            by_application=by_application,
            timed_out=result.timed_out,
        )
