"""
Relational storage backend (SQLAlchemy async).

Runs against PostgreSQL in production and SQLite in tests. Free text is
matched as substrings over the text fields; FUZZY falls back to substring
matching and REGEX uses the database's native operator.
"""

import asyncio
import logging
import time
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import Integer, String, cast, delete, distinct, func, or_, select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from loglens.core.errors import BackendUnavailableError, DuplicateRecordError, QueryError
from loglens.models.log_record import LogRecordRow
from loglens.schemas.log_record import TEXT_FIELDS, LogRecord
from loglens.schemas.query import (
    AggregationRequest,
    AggregationResult,
    AggregationType,
    Bucket,
    PatternMode,
    Query,
    QueryResult,
    SortField,
)
from loglens.services.storage.base import BackendCapabilities, Deadline, LogStorageAdapter, with_id
from loglens.services.storage.matching import (
    FUZZY_AS_SUBSTRING,
    HISTOGRAM_FORMATS,
    as_key,
    bucket_limit,
    build_highlights,
    compile_regex,
    resolve_filter_field,
)

logger = logging.getLogger(__name__)

_COLUMNS = {
    "id": LogRecordRow.id,
    "timestamp": LogRecordRow.timestamp,
    "level": LogRecordRow.level,
    "severity": LogRecordRow.severity,
    "message": LogRecordRow.message,
    "source": LogRecordRow.source,
    "host": LogRecordRow.host,
    "application": LogRecordRow.application,
    "environment": LogRecordRow.environment,
    "logger": LogRecordRow.logger,
    "thread": LogRecordRow.thread,
    "http_method": LogRecordRow.http_method,
    "http_status": LogRecordRow.http_status,
    "response_time_ms": LogRecordRow.response_time_ms,
}

_UNAVAILABLE = (OperationalError, InterfaceError, OSError)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _glob_to_like(pattern: str) -> str:
    return _escape_like(pattern).replace("*", "%").replace("?", "_")


def _escape_glob(pattern: str) -> str:
    # SQLite GLOB: keep * and ? as wildcards, make brackets literal
    return pattern.replace("[", "[[]")


def row_to_record(row: LogRecordRow) -> LogRecord:
    return LogRecord(
        id=row.id,
        timestamp=row.timestamp,
        level=row.level,
        message=row.message,
        source=row.source,
        host=row.host,
        application=row.application,
        environment=row.environment,
        logger=row.logger,
        thread=row.thread,
        stack_trace=row.stack_trace,
        metadata=row.record_metadata or {},
        tags=row.tags or {},
        http_method=row.http_method,
        http_url=row.http_url,
        http_status=row.http_status,
        response_time_ms=row.response_time_ms,
    )


def record_to_row(record: LogRecord) -> LogRecordRow:
    return LogRecordRow(
        id=record.id,
        timestamp=record.timestamp,
        level=record.level.value,
        severity=record.severity,
        message=record.message,
        source=record.source,
        host=record.host,
        application=record.application,
        environment=record.environment,
        logger=record.logger,
        thread=record.thread,
        stack_trace=record.stack_trace,
        record_metadata=dict(record.metadata),
        tags=dict(record.tags),
        http_method=record.http_method,
        http_url=record.http_url,
        http_status=record.http_status,
        response_time_ms=record.response_time_ms,
    )


class RelationalLogStorage(LogStorageAdapter):
    capabilities = BackendCapabilities(
        name="relational",
        fuzzy=False,
        relevance_scoring=False,
        native_regex=True,
        highlighting=True,
    )

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.dialect = engine.dialect.name
        self.session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(LogRecordRow.__table__.create, checkfirst=True)

    # Expression building

    def _field_expr(self, field: str):
        """Column for a top-level field, JSON text extraction for map paths."""
        if field in _COLUMNS:
            return _COLUMNS[field]
        if field.startswith("metadata."):
            return cast(LogRecordRow.record_metadata[field[len("metadata."):]].as_string(), String)
        if field.startswith("tags."):
            return cast(LogRecordRow.tags[field[len("tags."):]].as_string(), String)
        raise QueryError(f"Unknown field: {field}", details={"field": field})

    def _contains(self, column, term: str, case_sensitive: bool):
        if not case_sensitive:
            return func.lower(column).contains(term.lower(), autoescape=True)
        if self.dialect == "sqlite":
            # SQLite LIKE ignores case
            return func.instr(column, term) > 0
        return column.contains(term, autoescape=True)

    def _wildcard(self, column, pattern: str, case_sensitive: bool):
        if not case_sensitive:
            return func.lower(column).like(_glob_to_like(pattern.lower()), escape="\\")
        if self.dialect == "sqlite":
            return column.op("GLOB")(_escape_glob(pattern))
        return column.like(_glob_to_like(pattern), escape="\\")

    def _regex(self, column, pattern: str, case_sensitive: bool):
        if case_sensitive:
            return column.regexp_match(pattern)
        if self.dialect == "sqlite":
            # Python re backs REGEXP on SQLite; pass the flag inline
            return column.regexp_match(f"(?i){pattern}")
        return column.regexp_match(pattern, flags="i")

    def _text_clause(self, query: Query):
        if query.is_match_all:
            return None

        term = query.text.strip()
        columns = [_COLUMNS[field] for field in TEXT_FIELDS]

        if query.mode == PatternMode.REGEX:
            # Reject malformed patterns before the database sees them
            compile_regex(term, query.case_sensitive)
            clauses = [self._regex(col, term, query.case_sensitive) for col in columns]
        elif query.mode == PatternMode.WILDCARD:
            clauses = [self._wildcard(col, term, query.case_sensitive) for col in columns]
        elif query.mode == PatternMode.EXACT:
            if query.case_sensitive:
                clauses = [col == term for col in columns]
            else:
                clauses = [func.lower(col) == term.lower() for col in columns]
        else:
            clauses = [self._contains(col, term, query.case_sensitive) for col in columns]

        return or_(*clauses)

    def _filter_value(self, field: str, value: Any) -> Any:
        column = _COLUMNS.get(field)
        if column is not None and isinstance(column.type, Integer):
            try:
                return int(value)
            except (TypeError, ValueError):
                raise QueryError(
                    f"Filter value for {field} must be an integer",
                    details={"field": field, "value": value},
                ) from None
        return as_key(value)

    def _where(self, query: Query | None) -> list:
        if query is None:
            return []

        clauses = []
        if query.start_time is not None:
            clauses.append(LogRecordRow.timestamp >= query.start_time)
        if query.end_time is not None:
            clauses.append(LogRecordRow.timestamp < query.end_time)

        for field, allowed in query.filter_sets().items():
            clauses.append(_COLUMNS[field].in_(allowed))

        for key, expected in query.filters.items():
            field = resolve_filter_field(key)
            expr = self._field_expr(field)
            values = expected if isinstance(expected, (list, tuple, set, frozenset)) else [expected]
            clauses.append(expr.in_([self._filter_value(field, v) for v in values if v is not None]))

        for key, pattern in query.patterns.items():
            expr = self._field_expr(resolve_filter_field(key))
            if isinstance(expr.type, Integer):
                expr = cast(expr, String)
            clauses.append(self._wildcard(expr, pattern, query.case_sensitive))

        text_clause = self._text_clause(query)
        if text_clause is not None:
            clauses.append(text_clause)
        return clauses

    def _order_by(self, sort: list[SortField]) -> list:
        order = []
        for sort_field in sort or [SortField(field="timestamp")]:
            column = _COLUMNS.get(sort_field.field)
            if column is None:
                raise QueryError(f"Field is not sortable: {sort_field.field}", details={"field": sort_field.field})
            order.append(column.desc().nulls_last() if sort_field.descending else column.asc().nulls_first())
        order.append(LogRecordRow.id.desc())
        return order

    def _histogram_expr(self, interval: str):
        if interval not in HISTOGRAM_FORMATS:
            raise QueryError(f"Unsupported histogram interval: {interval}", details={"interval": interval})
        if self.dialect == "sqlite":
            return func.strftime(HISTOGRAM_FORMATS[interval], LogRecordRow.timestamp)
        return func.date_trunc(interval, LogRecordRow.timestamp)

    # Storage operations

    async def put(self, record: LogRecord) -> LogRecord:
        record = with_id(record)
        try:
            async with self.session_maker() as session:
                session.add(record_to_row(record))
                await session.commit()
        except IntegrityError as e:
            raise DuplicateRecordError(
                "Log record already exists",
                details={"id": record.id, "backend": self.name},
            ) from e
        except _UNAVAILABLE as e:
            raise BackendUnavailableError(self.name, str(e)) from e
        return record

    async def put_many(self, records: Iterable[LogRecord]) -> list[LogRecord]:
        stored = [with_id(record) for record in records]
        if not stored:
            return []
        try:
            async with self.session_maker() as session:
                session.add_all([record_to_row(record) for record in stored])
                await session.commit()
        except IntegrityError as e:
            raise DuplicateRecordError(
                "Batch contains an existing log record id",
                details={"backend": self.name, "count": len(stored)},
            ) from e
        except _UNAVAILABLE as e:
            raise BackendUnavailableError(self.name, str(e)) from e
        return stored

    async def get_by_id(self, record_id: str) -> LogRecord | None:
        try:
            async with self.session_maker() as session:
                row = await session.get(LogRecordRow, record_id)
        except _UNAVAILABLE as e:
            raise BackendUnavailableError(self.name, str(e)) from e
        return row_to_record(row) if row else None

    async def _run(self, coro, deadline: Deadline):
        return await asyncio.wait_for(coro, timeout=deadline.remaining())

    async def query(self, query: Query, deadline: Deadline | None = None) -> QueryResult:
        started = time.monotonic()
        deadline = deadline or Deadline.unbounded()
        where = self._where(query)
        order = self._order_by(query.sort)

        result = QueryResult(page=query.page, size=query.size, backend=self.name)
        if query.mode == PatternMode.FUZZY and not query.is_match_all:
            result.approximations.append(FUZZY_AS_SUBSTRING)

        try:
            async with self.session_maker() as session:
                try:
                    count_stmt = select(func.count()).select_from(LogRecordRow).where(*where)
                    result.total_hits = await self._run(session.scalar(count_stmt), deadline) or 0

                    if query.offset < result.total_hits:
                        page_stmt = (
                            select(LogRecordRow)
                            .where(*where)
                            .order_by(*order)
                            .offset(query.offset)
                            .limit(query.size)
                        )
                        rows = (await self._run(session.scalars(page_stmt), deadline)).all()
                        result.records = [row_to_record(row) for row in rows]

                    for request in query.aggregations:
                        result.aggregations[request.key] = await self._run(
                            self._aggregation(session, request, where), deadline
                        )
                except TimeoutError:
                    logger.warning(
                        "Relational query %s hit deadline (total_hits=%d)", result.search_id, result.total_hits
                    )
                    result.timed_out = True
        except _UNAVAILABLE as e:
            raise BackendUnavailableError(self.name, str(e)) from e

        result.highlights = build_highlights(result.records, query)
        result.took_ms = int((time.monotonic() - started) * 1000)
        return result

    async def _aggregation(self, session: AsyncSession, request: AggregationRequest, where: list) -> AggregationResult:
        limit = bucket_limit(request)

        if request.type == AggregationType.CARDINALITY:
            expr = self._field_expr(request.field)
            stmt = select(func.count(distinct(expr))).where(*where, expr.is_not(None))
            value = await session.scalar(stmt)
            return AggregationResult(name=request.key, type=request.type, field=request.field, value=value or 0)

        if request.type == AggregationType.DATE_HISTOGRAM:
            interval = request.interval or "hour"
            expr = self._histogram_expr(interval)
            stmt = select(expr, func.count()).where(*where).group_by(expr).order_by(expr.desc()).limit(limit + 1)
            rows = (await session.execute(stmt)).all()
            truncated = len(rows) > limit
            buckets = [
                Bucket(
                    key=key.strftime(HISTOGRAM_FORMATS[interval]) if isinstance(key, datetime) else str(key),
                    doc_count=count,
                )
                for key, count in reversed(rows[:limit])
            ]
            return AggregationResult(
                name=request.key, type=request.type, field=request.field, buckets=buckets, truncated=truncated
            )

        buckets, truncated = await self._terms(session, request.field, limit, where)
        return AggregationResult(
            name=request.key, type=request.type, field=request.field, buckets=buckets, truncated=truncated
        )

    async def _terms(self, session: AsyncSession, field: str, limit: int, where: list) -> tuple[list[Bucket], bool]:
        expr = self._field_expr(field)
        count = func.count().label("doc_count")
        stmt = (
            select(expr, count)
            .where(*where, expr.is_not(None))
            .group_by(expr)
            .order_by(count.desc(), expr.asc())
            .limit(limit + 1)
        )
        rows = (await session.execute(stmt)).all()
        buckets = [Bucket(key=as_key(key), doc_count=doc_count) for key, doc_count in rows[:limit]]
        return buckets, len(rows) > limit

    async def distinct_values(self, field: str, limit: int, query: Query | None = None) -> list[str]:
        expr = self._field_expr(field)
        stmt = select(expr).where(*self._where(query), expr.is_not(None)).distinct().order_by(expr.asc()).limit(limit)
        try:
            async with self.session_maker() as session:
                values = (await session.scalars(stmt)).all()
        except _UNAVAILABLE as e:
            raise BackendUnavailableError(self.name, str(e)) from e
        return [as_key(value) for value in values]

    async def aggregate(self, field: str, limit: int, query: Query | None = None) -> list[Bucket]:
        try:
            async with self.session_maker() as session:
                buckets, _ = await self._terms(session, field, limit, self._where(query))
        except _UNAVAILABLE as e:
            raise BackendUnavailableError(self.name, str(e)) from e
        return buckets

    async def count(self) -> int:
        async with self.session_maker() as session:
            return await session.scalar(select(func.count()).select_from(LogRecordRow)) or 0

    async def purge_before(self, cutoff: datetime) -> int:
        async with self.session_maker() as session:
            result = await session.execute(
                delete(LogRecordRow)
                .where(LogRecordRow.timestamp < cutoff)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount or 0

    async def close(self) -> None:
        await self.engine.dispose()
