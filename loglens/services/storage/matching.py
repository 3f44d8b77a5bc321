"""
In-process matching helpers for the substring backends.

The memory backend uses all of these; the relational backend reuses the
filter-field resolution, bucket shaping and highlighting.
"""

import re
from collections import Counter
from collections.abc import Callable, Iterable
from datetime import datetime
from enum import Enum
from typing import Any

from loglens.core.config import settings
from loglens.core.errors import QueryError
from loglens.schemas.log_record import KEYWORD_FIELDS, TEXT_FIELDS, LogRecord
from loglens.schemas.query import (
    AggregationRequest,
    AggregationResult,
    AggregationType,
    Bucket,
    PatternMode,
    Query,
    SortField,
)

FUZZY_AS_SUBSTRING = "fuzzy_as_substring"

HIGHLIGHT_PRE = "<em>"
HIGHLIGHT_POST = "</em>"

HISTOGRAM_FORMATS = {
    "minute": "%Y-%m-%dT%H:%M:00Z",
    "hour": "%Y-%m-%dT%H:00:00Z",
    "day": "%Y-%m-%dT00:00:00Z",
}

TextMatcher = Callable[[str], bool]


def resolve_filter_field(key: str) -> str:
    """Map a custom filter key to a record field path.

    Known top-level fields and ``metadata.``/``tags.`` paths are used as-is;
    any other bare key addresses ``metadata.<key>``.
    """
    if key in KEYWORD_FIELDS or key in TEXT_FIELDS or key.startswith(("metadata.", "tags.")):
        return key
    return f"metadata.{key}"


def glob_to_regex(pattern: str) -> str:
    """Translate a ``*``/``?`` glob into an anchored regular expression."""
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return "^" + "".join(parts) + "$"


def compile_regex(pattern: str, case_sensitive: bool) -> re.Pattern:
    flags = 0 if case_sensitive else re.IGNORECASE
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        raise QueryError(
            f"Invalid regular expression: {e}",
            details={"pattern": pattern},
        ) from e


def compile_text_matcher(query: Query) -> TextMatcher | None:
    """Build a predicate for a single text value, or None for match-all."""
    if query.is_match_all:
        return None

    term = query.text.strip()
    mode = query.mode

    if mode == PatternMode.REGEX:
        regex = compile_regex(term, query.case_sensitive)
        return lambda value: regex.search(value) is not None

    if mode == PatternMode.WILDCARD:
        regex = compile_regex(glob_to_regex(term), query.case_sensitive)
        return lambda value: regex.match(value) is not None

    if mode == PatternMode.EXACT:
        if query.case_sensitive:
            return lambda value: value == term
        folded = term.casefold()
        return lambda value: value.casefold() == folded

    # FULL_TEXT and FUZZY both degrade to substring matching here
    if query.case_sensitive:
        return lambda value: term in value
    folded = term.casefold()
    return lambda value: folded in value.casefold()


def matches_text(record: LogRecord, matcher: TextMatcher | None) -> bool:
    if matcher is None:
        return True
    for field in TEXT_FIELDS:
        value = getattr(record, field)
        if value and matcher(value):
            return True
    return False


def in_time_range(record: LogRecord, query: Query) -> bool:
    if query.start_time is not None and record.timestamp < query.start_time:
        return False
    if query.end_time is not None and record.timestamp >= query.end_time:
        return False
    return True


def as_key(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def _filter_values(expected: Any) -> set[str]:
    if isinstance(expected, (list, tuple, set, frozenset)):
        return {as_key(v) for v in expected if v is not None}
    return {as_key(expected)}


def matches_filters(record: LogRecord, query: Query) -> bool:
    """AND across dimensions, OR within a dimension's value set."""
    for field, allowed in query.filter_sets().items():
        if as_key(record.field_value(field)) not in set(allowed):
            return False
    for key, expected in query.filters.items():
        actual = as_key(record.field_value(resolve_filter_field(key)))
        if actual is None or actual not in _filter_values(expected):
            return False
    for key, pattern in query.patterns.items():
        actual = as_key(record.field_value(resolve_filter_field(key)))
        regex = compile_regex(glob_to_regex(pattern), query.case_sensitive)
        if actual is None or regex.match(actual) is None:
            return False
    return True


def record_matches(record: LogRecord, query: Query, matcher: TextMatcher | None) -> bool:
    return in_time_range(record, query) and matches_filters(record, query) and matches_text(record, matcher)


def _sort_value(record: LogRecord, field: str) -> tuple:
    value = record.field_value(field)
    if isinstance(value, Enum):
        value = value.value
    # None sorts below every value
    return (value is not None, value if value is not None else "")


def sort_records(records: list[LogRecord], sort: list[SortField]) -> list[LogRecord]:
    """Sort by the requested fields, defaulting to timestamp desc; ties by id desc."""
    ordered = sorted(records, key=lambda r: r.id or "", reverse=True)
    fields = sort or [SortField(field="timestamp")]
    for sort_field in reversed(fields):
        ordered.sort(key=lambda r, f=sort_field.field: _sort_value(r, f), reverse=sort_field.descending)
    return ordered


def terms_buckets(values: Iterable[Any], limit: int) -> tuple[list[Bucket], bool]:
    """Count values, order by count desc then key asc, cap at ``limit``."""
    counts = Counter(key for key in (as_key(v) for v in values) if key is not None)
    ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    buckets = [Bucket(key=key, doc_count=count) for key, count in ordered[:limit]]
    return buckets, len(ordered) > limit


def histogram_key(ts: datetime, interval: str) -> str:
    try:
        return ts.strftime(HISTOGRAM_FORMATS[interval])
    except KeyError:
        raise QueryError(
            f"Unsupported histogram interval: {interval}",
            details={"interval": interval, "allowed": list(HISTOGRAM_FORMATS)},
        ) from None


def histogram_buckets(timestamps: Iterable[datetime], interval: str, limit: int) -> tuple[list[Bucket], bool]:
    """Chronological buckets, keeping the most recent ``limit`` when capped."""
    counts = Counter(histogram_key(ts, interval) for ts in timestamps)
    ordered = sorted(counts.items())
    truncated = len(ordered) > limit
    if truncated:
        ordered = ordered[-limit:]
    return [Bucket(key=key, doc_count=count) for key, count in ordered], truncated


def bucket_limit(request: AggregationRequest) -> int:
    """Bucket count for a request; the query engine resolves sizes against its own caps."""
    if request.size is None:
        return settings.bucket_cap_for(request.field)
    return max(1, request.size)


def run_aggregations(records: list[LogRecord], requests: list[AggregationRequest]) -> dict[str, AggregationResult]:
    results: dict[str, AggregationResult] = {}
    for request in requests:
        limit = bucket_limit(request)
        if request.type == AggregationType.CARDINALITY:
            distinct = {as_key(r.field_value(request.field)) for r in records} - {None}
            results[request.key] = AggregationResult(
                name=request.key, type=request.type, field=request.field, value=len(distinct)
            )
        elif request.type == AggregationType.DATE_HISTOGRAM:
            buckets, truncated = histogram_buckets(
                (r.timestamp for r in records), request.interval or "hour", limit
            )
            results[request.key] = AggregationResult(
                name=request.key, type=request.type, field=request.field,
                buckets=buckets, truncated=truncated,
            )
        else:
            buckets, truncated = terms_buckets((r.field_value(request.field) for r in records), limit)
            results[request.key] = AggregationResult(
                name=request.key, type=request.type, field=request.field,
                buckets=buckets, truncated=truncated,
            )
    return results


def highlight_message(message: str, term: str, case_sensitive: bool = False) -> list[str]:
    """Wrap literal occurrences of ``term`` in ``message`` with emphasis tags."""
    if not term or not message:
        return []
    flags = 0 if case_sensitive else re.IGNORECASE
    pattern = re.compile(re.escape(term), flags)
    if not pattern.search(message):
        return []
    return [pattern.sub(lambda m: f"{HIGHLIGHT_PRE}{m.group(0)}{HIGHLIGHT_POST}", message)]


def build_highlights(records: list[LogRecord], query: Query) -> dict[str, list[str]]:
    if not query.highlight or query.is_match_all:
        return {}
    if query.mode not in (PatternMode.FULL_TEXT, PatternMode.FUZZY, PatternMode.EXACT):
        return {}
    term = query.text.strip()
    highlights = {}
    for record in records:
        fragments = highlight_message(record.message, term, query.case_sensitive)
        if fragments:
            highlights[record.id] = fragments
    return highlights
