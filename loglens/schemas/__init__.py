from loglens.schemas.alert import AlertRead, AlertStats, EscalationReport
from loglens.schemas.log_record import LogLevel, LogRecord
from loglens.schemas.query import (
    AggregationRequest,
    AggregationResult,
    AggregationType,
    Bucket,
    PatternMode,
    Query,
    QueryResult,
    SortDirection,
    SortField,
)

__all__ = [
    "AggregationRequest",
    "AggregationResult",
    "AggregationType",
    "AlertRead",
    "AlertStats",
    "Bucket",
    "EscalationReport",
    "LogLevel",
    "LogRecord",
    "PatternMode",
    "Query",
    "QueryResult",
    "SortDirection",
    "SortField",
]
