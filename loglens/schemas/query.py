"""
Structured query and result schemas.
"""

import math
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

from loglens.schemas.log_record import LogLevel, LogRecord


class PatternMode(str, Enum):
    FULL_TEXT = "FULL_TEXT"
    EXACT = "EXACT"
    WILDCARD = "WILDCARD"
    REGEX = "REGEX"
    FUZZY = "FUZZY"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class AggregationType(str, Enum):
    TERMS = "TERMS"
    CARDINALITY = "CARDINALITY"
    DATE_HISTOGRAM = "DATE_HISTOGRAM"


HISTOGRAM_INTERVALS = ("minute", "hour", "day")

MATCH_ALL = "*"


class SortField(BaseModel):
    field: str
    direction: SortDirection = SortDirection.DESC

    @property
    def descending(self) -> bool:
        return self.direction == SortDirection.DESC


class AggregationRequest(BaseModel):
    field: str
    type: AggregationType = AggregationType.TERMS
    name: str | None = None
    size: int | None = None
    interval: str | None = None

    @property
    def key(self) -> str:
        return self.name or self.field


class Query(BaseModel):
    """Structured search request. Bounds are checked by the query engine."""

    text: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    page: int = 1
    size: int = 100

    levels: list[LogLevel] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    hosts: list[str] = Field(default_factory=list)
    applications: list[str] = Field(default_factory=list)
    environments: list[str] = Field(default_factory=list)
    filters: dict[str, Any] = Field(default_factory=dict)
    # Per-field globs (`*`, `?`) matched against the whole value
    patterns: dict[str, str] = Field(default_factory=dict)

    sort: list[SortField] = Field(default_factory=list)
    aggregations: list[AggregationRequest] = Field(default_factory=list)

    mode: PatternMode = PatternMode.FULL_TEXT
    case_sensitive: bool = False
    highlight: bool = False

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.size

    @property
    def is_match_all(self) -> bool:
        return self.text is None or self.text.strip() in ("", MATCH_ALL)

    @property
    def has_time_range(self) -> bool:
        return self.start_time is not None or self.end_time is not None

    def filter_sets(self) -> dict[str, list[str]]:
        """Non-empty value sets keyed by record field name."""
        sets = {
            "level": [lvl.value for lvl in self.levels],
            "source": self.sources,
            "host": self.hosts,
            "application": self.applications,
            "environment": self.environments,
        }
        return {field: values for field, values in sets.items() if values}

    @property
    def has_filters(self) -> bool:
        return bool(self.filter_sets() or self.filters or self.patterns)


class Bucket(BaseModel):
    key: str
    doc_count: int


class AggregationResult(BaseModel):
    name: str
    type: AggregationType
    field: str
    buckets: list[Bucket] = Field(default_factory=list)
    # Set for single-value aggregations (CARDINALITY)
    value: int | None = None
    truncated: bool = False


class QueryResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    records: list[LogRecord] = Field(default_factory=list)
    total_hits: int = 0
    page: int = 1
    size: int = 100
    took_ms: int = 0
    timed_out: bool = False
    aggregations: dict[str, AggregationResult] = Field(default_factory=dict)
    highlights: dict[str, list[str]] = Field(default_factory=dict)
    search_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    backend: str | None = None
    # Capability fallbacks applied while answering, e.g. "fuzzy_as_substring"
    approximations: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def total_pages(self) -> int:
        if self.total_hits <= 0 or self.size <= 0:
            return 0
        return math.ceil(self.total_hits / self.size)

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1

    @property
    def result_count(self) -> int:
        return len(self.records)

    @classmethod
    def empty(cls, query: Query, backend: str | None = None, timed_out: bool = False) -> "QueryResult":
        return cls(page=query.page, size=query.size, backend=backend, timed_out=timed_out)
