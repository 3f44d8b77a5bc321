"""
Full-text storage backend on OpenSearch.

Free text is analysed and relevance scored, FUZZY uses ``fuzziness: AUTO``
and highlighting comes from the native highlighter. Calls run in a worker
thread through the circuit breaker so a dead cluster fails fast.
"""

import asyncio
import logging
import ssl
import time
import warnings
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from opensearchpy import ConflictError as OpenSearchConflictError
from opensearchpy import ConnectionError as OpenSearchConnectionError
from opensearchpy import NotFoundError as OpenSearchNotFoundError
from opensearchpy import OpenSearch, RequestError, TransportError

from loglens.core.circuit_breaker import CircuitBreaker, CircuitBreakerError, get_circuit_breaker
from loglens.core.errors import BackendUnavailableError, DuplicateRecordError, QueryError, ValidationError
from loglens.schemas.log_record import LogRecord
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
    HIGHLIGHT_POST,
    HIGHLIGHT_PRE,
    as_key,
    bucket_limit,
    resolve_filter_field,
)

logger = logging.getLogger(__name__)

# Suppress urllib3 InsecureRequestWarning when verify_certs=False
warnings.filterwarnings("ignore", message="Unverified HTTPS request")

_ssl_warning_logged = False

# Keyword fields with an analysed ".text" subfield
_KEYWORD_TEXT_FIELDS = ("source", "application", "host", "logger", "thread")

# Analysed fields for FULL_TEXT / FUZZY
_ANALYSED_FIELDS = ["message", *(f"{field}.text" for field in _KEYWORD_TEXT_FIELDS)]

# Keyword representations for EXACT / WILDCARD / REGEX
_KEYWORD_FIELDS = ["message.keyword", *_KEYWORD_TEXT_FIELDS]

_HISTOGRAM_FORMAT = "yyyy-MM-dd'T'HH:mm:ss'Z'"

# index.max_result_window default; from + size beyond it is rejected
MAX_RESULT_WINDOW = 10_000

LOG_INDEX_MAPPING = {
    "settings": {
        "number_of_shards": 1,
        "number_of_replicas": 0,
    },
    "mappings": {
        "dynamic_templates": [
            {
                "map_strings_as_keywords": {
                    "path_match": "metadata.*",
                    "match_mapping_type": "string",
                    "mapping": {"type": "keyword", "ignore_above": 1024},
                }
            },
            {
                "tags_as_keywords": {
                    "path_match": "tags.*",
                    "mapping": {"type": "keyword"},
                }
            },
        ],
        "properties": {
            "id": {"type": "keyword"},
            "timestamp": {"type": "date"},
            "level": {"type": "keyword"},
            "severity": {"type": "integer"},
            "message": {
                "type": "text",
                "fields": {"keyword": {"type": "keyword", "ignore_above": 8191}},
            },
            **{
                field: {"type": "keyword", "fields": {"text": {"type": "text"}}}
                for field in _KEYWORD_TEXT_FIELDS
            },
            "environment": {"type": "keyword"},
            "stack_trace": {"type": "text"},
            "metadata": {"type": "object", "dynamic": True},
            "tags": {"type": "object", "dynamic": True},
            "http_method": {"type": "keyword"},
            "http_url": {"type": "keyword", "ignore_above": 2048},
            "http_status": {"type": "integer"},
            "response_time_ms": {"type": "long"},
        },
    },
}


def create_client(
    host: str,
    port: int,
    username: str | None,
    password: str | None,
    use_ssl: bool,
    verify_certs: bool = True,
) -> OpenSearch:
    """Create an OpenSearch client.

    Security Note:
        verify_certs should stay True outside development; disabling it
        accepts self-signed certificates and opens the door to MITM.
    """
    global _ssl_warning_logged
    auth = (username, password) if username and password else None

    ssl_context = None
    if use_ssl and not verify_certs:
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE

        if not _ssl_warning_logged:
            logger.warning("[SECURITY] SSL certificate verification is DISABLED for OpenSearch")
            _ssl_warning_logged = True

    return OpenSearch(
        hosts=[{"host": host, "port": port}],
        http_auth=auth,
        use_ssl=use_ssl,
        ssl_context=ssl_context,
        verify_certs=verify_certs,
        ssl_show_warn=not verify_certs,
        timeout=10,
    )


def _source_to_record(source: dict[str, Any]) -> LogRecord:
    return LogRecord.model_validate(source)


class OpenSearchLogStorage(LogStorageAdapter):
    capabilities = BackendCapabilities(
        name="opensearch",
        fuzzy=True,
        relevance_scoring=True,
        native_regex=True,
        highlighting=True,
    )

    def __init__(
        self,
        client: OpenSearch,
        index: str,
        breaker: CircuitBreaker | None = None,
        refresh: bool | str = False,
        max_result_window: int = MAX_RESULT_WINDOW,
    ):
        self.client = client
        self.index = index
        self.refresh = refresh
        self.max_result_window = max_result_window
        self.breaker = breaker or get_circuit_breaker(
            "opensearch",
            failure_threshold=5,
            recovery_timeout=30.0,
            trip_on=OpenSearchConnectionError,
        )

    async def _call(self, func, *args: Any, **kwargs: Any) -> Any:
        """Run a blocking client call off the event loop and map transport failures."""
        try:
            return await self.breaker.call(asyncio.to_thread, func, *args, **kwargs)
        except CircuitBreakerError as e:
            raise BackendUnavailableError(
                self.name, "circuit open", details={"retry_in": e.retry_in}
            ) from e
        except OpenSearchConnectionError as e:
            raise BackendUnavailableError(self.name, str(e)) from e
        except RequestError as e:
            raise QueryError(
                f"OpenSearch rejected the query: {e.error}",
                details={"info": str(e.info)[:500]},
            ) from e

    async def ensure_index(self) -> None:
        exists = await self._call(self.client.indices.exists, index=self.index)
        if not exists:
            await self._call(self.client.indices.create, index=self.index, body=LOG_INDEX_MAPPING)
            logger.info("Created log index %s", self.index)

    # Query building

    def _text_clause(self, query: Query) -> dict[str, Any] | None:
        if query.is_match_all:
            return None

        term = query.text.strip()
        insensitive = not query.case_sensitive

        if query.mode == PatternMode.FULL_TEXT:
            return {"multi_match": {"query": term, "fields": _ANALYSED_FIELDS}}
        if query.mode == PatternMode.FUZZY:
            return {"multi_match": {"query": term, "fields": _ANALYSED_FIELDS, "fuzziness": "AUTO"}}

        if query.mode == PatternMode.EXACT:
            should = [
                {"term": {field: {"value": term, "case_insensitive": insensitive}}}
                for field in _KEYWORD_FIELDS
            ]
        elif query.mode == PatternMode.WILDCARD:
            should = [
                {"wildcard": {field: {"value": term, "case_insensitive": insensitive}}}
                for field in _KEYWORD_FIELDS
            ]
        else:
            should = [
                {"regexp": {field: {"value": term, "case_insensitive": insensitive}}}
                for field in _KEYWORD_FIELDS
            ]
        return {"bool": {"should": should, "minimum_should_match": 1}}

    def _filter_clauses(self, query: Query | None) -> list[dict[str, Any]]:
        if query is None:
            return []

        clauses: list[dict[str, Any]] = []
        if query.start_time is not None or query.end_time is not None:
            bounds = {}
            if query.start_time is not None:
                bounds["gte"] = query.start_time.isoformat()
            if query.end_time is not None:
                bounds["lt"] = query.end_time.isoformat()
            clauses.append({"range": {"timestamp": bounds}})

        for field, allowed in query.filter_sets().items():
            clauses.append({"terms": {field: list(allowed)}})

        for key, expected in query.filters.items():
            values = expected if isinstance(expected, (list, tuple, set, frozenset)) else [expected]
            clauses.append({"terms": {resolve_filter_field(key): [as_key(v) for v in values if v is not None]}})

        for key, pattern in query.patterns.items():
            clauses.append(
                {"wildcard": {resolve_filter_field(key): {"value": pattern, "case_insensitive": not query.case_sensitive}}}
            )

        return clauses

    def _bool_query(self, query: Query | None) -> dict[str, Any]:
        filters = self._filter_clauses(query)
        text_clause = self._text_clause(query) if query is not None else None
        if not filters and text_clause is None:
            return {"match_all": {}}
        body: dict[str, Any] = {"filter": filters}
        if text_clause is not None:
            body["must"] = [text_clause]
        return {"bool": body}

    @staticmethod
    def _sort(sort: list[SortField]) -> list[dict[str, Any]]:
        clauses = []
        for sort_field in sort or [SortField(field="timestamp")]:
            order = "desc" if sort_field.descending else "asc"
            missing = "_last" if sort_field.descending else "_first"
            clauses.append({sort_field.field: {"order": order, "missing": missing}})
        clauses.append({"id": {"order": "desc"}})
        return clauses

    @staticmethod
    def _aggregation_body(request: AggregationRequest) -> dict[str, Any]:
        limit = bucket_limit(request)
        field = resolve_filter_field(request.field) if request.field != "timestamp" else "timestamp"
        if request.type == AggregationType.CARDINALITY:
            return {"cardinality": {"field": field}}
        if request.type == AggregationType.DATE_HISTOGRAM:
            return {
                "date_histogram": {
                    "field": "timestamp",
                    "calendar_interval": request.interval or "hour",
                    "min_doc_count": 1,
                    "format": _HISTOGRAM_FORMAT,
                }
            }
        return {
            "terms": {
                "field": field,
                "size": limit,
                "order": [{"_count": "desc"}, {"_key": "asc"}],
            }
        }

    def build_search_body(self, query: Query, deadline: Deadline) -> dict[str, Any]:
        body: dict[str, Any] = {
            "query": self._bool_query(query),
            "from": query.offset,
            "size": query.size,
            "sort": self._sort(query.sort),
            "track_total_hits": True,
        }
        remaining = deadline.remaining()
        if remaining is not None:
            body["timeout"] = f"{max(1, int(remaining * 1000))}ms"
        if query.aggregations:
            body["aggs"] = {request.key: self._aggregation_body(request) for request in query.aggregations}
        if query.highlight and not query.is_match_all:
            body["highlight"] = {
                "pre_tags": [HIGHLIGHT_PRE],
                "post_tags": [HIGHLIGHT_POST],
                "fields": {"message": {}},
            }
        return body

    @staticmethod
    def _parse_aggregation(request: AggregationRequest, raw: dict[str, Any]) -> AggregationResult:
        if request.type == AggregationType.CARDINALITY:
            return AggregationResult(
                name=request.key, type=request.type, field=request.field, value=int(raw.get("value", 0))
            )

        limit = bucket_limit(request)
        raw_buckets = raw.get("buckets", [])
        if request.type == AggregationType.DATE_HISTOGRAM:
            truncated = len(raw_buckets) > limit
            if truncated:
                raw_buckets = raw_buckets[-limit:]
            buckets = [
                Bucket(key=str(b.get("key_as_string", b["key"])), doc_count=b["doc_count"]) for b in raw_buckets
            ]
        else:
            truncated = raw.get("sum_other_doc_count", 0) > 0
            buckets = [Bucket(key=as_key(b["key"]), doc_count=b["doc_count"]) for b in raw_buckets]
        return AggregationResult(
            name=request.key, type=request.type, field=request.field, buckets=buckets, truncated=truncated
        )

    # Storage operations

    def _document(self, record: LogRecord) -> dict[str, Any]:
        return record.model_dump(mode="json")

    async def put(self, record: LogRecord) -> LogRecord:
        record = with_id(record)
        try:
            await self._call(
                self.client.index,
                index=self.index,
                id=record.id,
                body=self._document(record),
                op_type="create",
                refresh=self.refresh,
            )
        except OpenSearchConflictError as e:
            raise DuplicateRecordError(
                "Log record already exists",
                details={"id": record.id, "backend": self.name},
            ) from e
        return record

    async def put_many(self, records: Iterable[LogRecord]) -> list[LogRecord]:
        stored = [with_id(record) for record in records]
        if not stored:
            return []

        bulk_body: list[dict[str, Any]] = []
        for record in stored:
            bulk_body.append({"create": {"_index": self.index, "_id": record.id}})
            bulk_body.append(self._document(record))

        response = await self._call(self.client.bulk, body=bulk_body, refresh=self.refresh)
        if response.get("errors"):
            duplicates = [
                item["create"]["_id"]
                for item in response.get("items", [])
                if item.get("create", {}).get("status") == 409
            ]
            if duplicates:
                raise DuplicateRecordError(
                    "Batch contains existing log record ids",
                    details={"ids": duplicates[:20], "backend": self.name},
                )
            raise BackendUnavailableError(self.name, "bulk indexing reported errors")
        return stored

    async def get_by_id(self, record_id: str) -> LogRecord | None:
        try:
            response = await self._call(self.client.get, index=self.index, id=record_id)
        except OpenSearchNotFoundError:
            return None
        if not response.get("found", True):
            return None
        return _source_to_record(response["_source"])

    async def query(self, query: Query, deadline: Deadline | None = None) -> QueryResult:
        started = time.monotonic()
        deadline = deadline or Deadline.unbounded()

        if query.offset + query.size > self.max_result_window:
            # Past the end is an empty page, not a rejected search
            total_hits = await self._count_matching(query)
            if query.offset >= total_hits:
                result = QueryResult.empty(query, backend=self.name)
                result.total_hits = total_hits
                return result
            raise ValidationError(
                f"Page reaches beyond the {self.max_result_window} result window",
                details={"offset": query.offset, "size": query.size, "max_result_window": self.max_result_window},
            )

        body = self.build_search_body(query, deadline)

        kwargs: dict[str, Any] = {"index": self.index, "body": body}
        remaining = deadline.remaining()
        if remaining is not None:
            kwargs["request_timeout"] = max(remaining, 0.001)

        try:
            response = await self._call(self.client.search, **kwargs)
        except TransportError as e:
            # Missing index means nothing has been ingested yet
            if getattr(e, "error", "") == "index_not_found_exception":
                return QueryResult.empty(query, backend=self.name)
            raise BackendUnavailableError(self.name, str(e)) from e

        hits = response.get("hits", {})
        total = hits.get("total", 0)
        total_hits = total.get("value", 0) if isinstance(total, dict) else int(total)

        records = []
        highlights: dict[str, list[str]] = {}
        for hit in hits.get("hits", []):
            record = _source_to_record(hit["_source"])
            records.append(record)
            fragments = hit.get("highlight", {}).get("message")
            if fragments:
                highlights[record.id] = list(fragments)

        raw_aggs = response.get("aggregations", {})
        aggregations = {
            request.key: self._parse_aggregation(request, raw_aggs.get(request.key, {}))
            for request in query.aggregations
        }

        return QueryResult(
            records=records,
            total_hits=total_hits,
            page=query.page,
            size=query.size,
            took_ms=int(response.get("took", (time.monotonic() - started) * 1000)),
            timed_out=bool(response.get("timed_out", False)),
            aggregations=aggregations,
            highlights=highlights,
            backend=self.name,
        )

    async def _count_matching(self, query: Query) -> int:
        body = {"size": 0, "query": self._bool_query(query), "track_total_hits": True}
        try:
            response = await self._call(self.client.search, index=self.index, body=body)
        except TransportError as e:
            if getattr(e, "error", "") == "index_not_found_exception":
                return 0
            raise BackendUnavailableError(self.name, str(e)) from e
        total = response.get("hits", {}).get("total", 0)
        return total.get("value", 0) if isinstance(total, dict) else int(total)

    async def _terms(self, field: str, limit: int, query: Query | None, order: list[dict[str, str]]) -> list[dict]:
        body = {
            "size": 0,
            "query": self._bool_query(query),
            "aggs": {
                "values": {
                    "terms": {"field": resolve_filter_field(field), "size": limit, "order": order}
                }
            },
        }
        response = await self._call(self.client.search, index=self.index, body=body)
        return response.get("aggregations", {}).get("values", {}).get("buckets", [])

    async def distinct_values(self, field: str, limit: int, query: Query | None = None) -> list[str]:
        buckets = await self._terms(field, limit, query, [{"_key": "asc"}])
        return [as_key(b["key"]) for b in buckets]

    async def aggregate(self, field: str, limit: int, query: Query | None = None) -> list[Bucket]:
        buckets = await self._terms(field, limit, query, [{"_count": "desc"}, {"_key": "asc"}])
        return [Bucket(key=as_key(b["key"]), doc_count=b["doc_count"]) for b in buckets]

    async def count(self) -> int:
        response = await self._call(self.client.count, index=self.index)
        return int(response.get("count", 0))

    async def purge_before(self, cutoff: datetime) -> int:
        response = await self._call(
            self.client.delete_by_query,
            index=self.index,
            body={"query": {"range": {"timestamp": {"lt": cutoff.isoformat()}}}},
            refresh=True,
        )
        deleted = int(response.get("deleted", 0))
        logger.info("Purged %d log records older than %s from %s", deleted, cutoff.isoformat(), self.index)
        return deleted

    async def close(self) -> None:
        await asyncio.to_thread(self.client.close)
