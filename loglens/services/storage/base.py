"""
Storage adapter contract shared by the memory, relational and OpenSearch backends.
"""

import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from loglens.core.errors import ValidationError
from loglens.schemas.log_record import MAX_RECORD_ID_LENGTH, LogRecord
from loglens.schemas.query import Bucket, Query, QueryResult


@dataclass(frozen=True)
class BackendCapabilities:
    name: str
    fuzzy: bool = False
    relevance_scoring: bool = False
    native_regex: bool = True
    highlighting: bool = True


class Deadline:
    """Per-query time budget checked by adapters while they work."""

    def __init__(self, seconds: float | None):
        self.seconds = seconds
        self._expires_at = None if seconds is None else time.monotonic() + seconds

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at


def new_record_id() -> str:
    return uuid.uuid4().hex


def with_id(record: LogRecord) -> LogRecord:
    """Return the record with a system-assigned id when it has none.

    Raises:
        ValidationError: If a caller-supplied id is longer than the stored key
    """
    if record.id:
        if len(record.id) > MAX_RECORD_ID_LENGTH:
            raise ValidationError(
                f"Record id cannot exceed {MAX_RECORD_ID_LENGTH} characters",
                details={"length": len(record.id)},
            )
        return record
    return record.model_copy(update={"id": new_record_id()})


class LogStorageAdapter(ABC):
    """One contract for storing and retrieving log records.

    Every backend honours AND across filter dimensions, OR within a dimension,
    the half-open time range ``[start, end)``, default ordering by timestamp
    descending (ties by id descending) and ``offset = (page - 1) * size``
    pagination with an empty page past the end.
    """

    capabilities: BackendCapabilities

    @property
    def name(self) -> str:
        return self.capabilities.name

    @abstractmethod
    async def put(self, record: LogRecord) -> LogRecord:
        """Store a record, assigning an id if absent.

        Raises:
            DuplicateRecordError: If a record with the same id exists
        """

    async def put_many(self, records: Iterable[LogRecord]) -> list[LogRecord]:
        return [await self.put(record) for record in records]

    @abstractmethod
    async def get_by_id(self, record_id: str) -> LogRecord | None:
        ...

    @abstractmethod
    async def query(self, query: Query, deadline: Deadline | None = None) -> QueryResult:
        ...

    @abstractmethod
    async def distinct_values(self, field: str, limit: int, query: Query | None = None) -> list[str]:
        """Distinct values of ``field`` in ascending order, at most ``limit``."""

    @abstractmethod
    async def aggregate(self, field: str, limit: int, query: Query | None = None) -> list[Bucket]:
        """Terms buckets ordered by count desc then key asc, at most ``limit``."""

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def purge_before(self, cutoff: datetime) -> int:
        """Delete records with timestamp before ``cutoff``. Returns the number deleted."""

    async def close(self) -> None:
        return None
