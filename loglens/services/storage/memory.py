"""
Volatile in-memory storage backend.

Useful for development and tests. Free text is matched as substrings over
the text fields; FUZZY queries fall back to substring matching.
"""

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Iterable
from datetime import datetime

from loglens.core.errors import DuplicateRecordError
from loglens.schemas.log_record import LogRecord
from loglens.schemas.query import Bucket, PatternMode, Query, QueryResult
from loglens.services.storage.base import BackendCapabilities, Deadline, LogStorageAdapter, with_id
from loglens.services.storage.matching import (
    FUZZY_AS_SUBSTRING,
    as_key,
    build_highlights,
    compile_text_matcher,
    record_matches,
    run_aggregations,
    sort_records,
    terms_buckets,
)

logger = logging.getLogger(__name__)

# Records scanned between deadline checks / event-loop yields
SCAN_BATCH = 500


class MemoryLogStorage(LogStorageAdapter):
    capabilities = BackendCapabilities(
        name="memory",
        fuzzy=False,
        relevance_scoring=False,
        native_regex=True,
        highlighting=True,
    )

    def __init__(self) -> None:
        self._records: dict[str, LogRecord] = {}

    async def put(self, record: LogRecord) -> LogRecord:
        record = with_id(record)
        if record.id in self._records:
            raise DuplicateRecordError(
                "Log record already exists",
                details={"id": record.id, "backend": self.name},
            )
        self._records[record.id] = record
        return record

    async def put_many(self, records: Iterable[LogRecord]) -> list[LogRecord]:
        """All or nothing, like a relational transaction."""
        stored = [with_id(record) for record in records]
        seen = Counter(record.id for record in stored)
        clashes = sorted(i for i, n in seen.items() if n > 1 or i in self._records)
        if clashes:
            raise DuplicateRecordError(
                "Batch contains an existing log record id",
                details={"ids": clashes, "backend": self.name},
            )
        for record in stored:
            self._records[record.id] = record
        return stored

    async def get_by_id(self, record_id: str) -> LogRecord | None:
        return self._records.get(record_id)

    async def _scan(self, query: Query | None, deadline: Deadline) -> tuple[list[LogRecord], bool]:
        """Collect matching records; stops early when the deadline passes."""
        if query is None:
            return list(self._records.values()), False

        matcher = compile_text_matcher(query)
        snapshot = list(self._records.values())
        matched = []
        for index, record in enumerate(snapshot):
            if index and index % SCAN_BATCH == 0:
                if deadline.expired:
                    logger.warning(
                        "Memory scan hit deadline after %d of %d records", index, len(snapshot)
                    )
                    return matched, True
                await asyncio.sleep(0)
            if record_matches(record, query, matcher):
                matched.append(record)
        return matched, False

    async def query(self, query: Query, deadline: Deadline | None = None) -> QueryResult:
        started = time.monotonic()
        deadline = deadline or Deadline.unbounded()

        matched, timed_out = await self._scan(query, deadline)
        ordered = sort_records(matched, query.sort)
        page = ordered[query.offset:query.offset + query.size]

        approximations = []
        if query.mode == PatternMode.FUZZY and not query.is_match_all:
            approximations.append(FUZZY_AS_SUBSTRING)

        return QueryResult(
            records=page,
            total_hits=len(matched),
            page=query.page,
            size=query.size,
            took_ms=int((time.monotonic() - started) * 1000),
            timed_out=timed_out,
            aggregations=run_aggregations(matched, query.aggregations),
            highlights=build_highlights(page, query),
            backend=self.name,
            approximations=approximations,
        )

    async def distinct_values(self, field: str, limit: int, query: Query | None = None) -> list[str]:
        records, _ = await self._scan(query, Deadline.unbounded())
        keys = {as_key(record.field_value(field)) for record in records} - {None}
        return sorted(keys)[:limit]

    async def aggregate(self, field: str, limit: int, query: Query | None = None) -> list[Bucket]:
        records, _ = await self._scan(query, Deadline.unbounded())
        buckets, _ = terms_buckets((record.field_value(field) for record in records), limit)
        return buckets

    async def count(self) -> int:
        return len(self._records)

    async def purge_before(self, cutoff: datetime) -> int:
        expired = [rid for rid, record in self._records.items() if record.timestamp < cutoff]
        for rid in expired:
            del self._records[rid]
        return len(expired)

    async def close(self) -> None:
        self._records.clear()
