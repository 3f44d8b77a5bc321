"""Tests for the OpenSearch backend with a mocked client."""

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from opensearchpy import ConflictError, ConnectionError, NotFoundError, RequestError

from loglens.core.circuit_breaker import CircuitBreaker
from loglens.core.errors import BackendUnavailableError, DuplicateRecordError, QueryError, ValidationError
from loglens.schemas.log_record import LogRecord
from loglens.schemas.query import (
    AggregationRequest,
    AggregationType,
    PatternMode,
    Query,
    SortDirection,
    SortField,
)
from loglens.services.storage.base import Deadline
from loglens.services.storage.opensearch import LOG_INDEX_MAPPING, MAX_RESULT_WINDOW, OpenSearchLogStorage


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def storage(client):
    breaker = CircuitBreaker("opensearch-test", failure_threshold=2, trip_on=ConnectionError)
    return OpenSearchLogStorage(client, "logs-test", breaker=breaker)


def hit(record_id, message, **fields):
    source = {
        "id": record_id,
        "timestamp": "2024-03-01T12:00:00+00:00",
        "level": "ERROR",
        "message": message,
        "severity": 4,
        **fields,
    }
    return {"_id": record_id, "_source": source}


class TestSearchBody:
    """Query translation."""

    def test_match_all_defaults(self, storage):
        body = storage.build_search_body(Query(), Deadline.unbounded())
        assert body["query"] == {"match_all": {}}
        assert body["from"] == 0
        assert body["size"] == 100
        assert body["track_total_hits"] is True
        assert body["sort"] == [
            {"timestamp": {"order": "desc", "missing": "_last"}},
            {"id": {"order": "desc"}},
        ]
        assert "timeout" not in body

    def test_deadline_becomes_search_timeout(self, storage):
        body = storage.build_search_body(Query(), Deadline(2))
        assert body["timeout"].endswith("ms")
        assert 1 <= int(body["timeout"][:-2]) <= 2000

    def test_paging_and_sort(self, storage):
        query = Query(page=3, size=20, sort=[SortField(field="host", direction=SortDirection.ASC)])
        body = storage.build_search_body(query, Deadline.unbounded())
        assert body["from"] == 40
        assert body["sort"][0] == {"host": {"order": "asc", "missing": "_first"}}

    def test_full_text(self, storage):
        body = storage.build_search_body(Query(text="disk full"), Deadline.unbounded())
        must = body["query"]["bool"]["must"][0]
        assert must["multi_match"]["query"] == "disk full"
        assert "message" in must["multi_match"]["fields"]
        assert "fuzziness" not in must["multi_match"]

    def test_fuzzy(self, storage):
        body = storage.build_search_body(Query(text="dsik", mode=PatternMode.FUZZY), Deadline.unbounded())
        assert body["query"]["bool"]["must"][0]["multi_match"]["fuzziness"] == "AUTO"

    def test_exact_is_case_insensitive_by_default(self, storage):
        body = storage.build_search_body(Query(text="Disk full", mode=PatternMode.EXACT), Deadline.unbounded())
        should = body["query"]["bool"]["must"][0]["bool"]["should"]
        assert {"term": {"message.keyword": {"value": "Disk full", "case_insensitive": True}}} in should

    def test_filters(self, storage):
        query = Query(
            start_time=datetime(2024, 3, 1, tzinfo=UTC),
            end_time=datetime(2024, 3, 2, tzinfo=UTC),
            hosts=["web-01", "web-02"],
            filters={"user": "alice"},
            patterns={"application": "bill*"},
        )
        filters = storage.build_search_body(query, Deadline.unbounded())["query"]["bool"]["filter"]
        assert {"range": {"timestamp": {"gte": "2024-03-01T00:00:00+00:00", "lt": "2024-03-02T00:00:00+00:00"}}} in filters
        assert {"terms": {"host": ["web-01", "web-02"]}} in filters
        assert {"terms": {"metadata.user": ["alice"]}} in filters
        assert {"wildcard": {"application": {"value": "bill*", "case_insensitive": True}}} in filters

    def test_aggregations_and_highlight(self, storage):
        query = Query(
            text="disk",
            highlight=True,
            aggregations=[
                AggregationRequest(field="host", size=5),
                AggregationRequest(field="timestamp", type=AggregationType.DATE_HISTOGRAM, interval="day"),
            ],
        )
        body = storage.build_search_body(query, Deadline.unbounded())
        assert body["aggs"]["host"] == {
            "terms": {"field": "host", "size": 5, "order": [{"_count": "desc"}, {"_key": "asc"}]}
        }
        assert body["aggs"]["timestamp"]["date_histogram"]["calendar_interval"] == "day"
        assert body["highlight"]["pre_tags"] == ["<em>"]


class TestQuery:
    """Response parsing and error mapping."""

    @pytest.mark.asyncio
    async def test_parses_hits_highlights_and_aggregations(self, storage, client):
        first = hit("r1", "Disk full", host="web-01")
        first["highlight"] = {"message": ["<em>Disk</em> full"]}
        client.search.return_value = {
            "took": 7,
            "timed_out": False,
            "hits": {"total": {"value": 42, "relation": "eq"}, "hits": [first, hit("r2", "disk slow")]},
            "aggregations": {
                "host": {"sum_other_doc_count": 3, "buckets": [{"key": "web-01", "doc_count": 30}]},
                "hosts": {"value": 4},
            },
        }
        query = Query(
            text="disk",
            highlight=True,
            aggregations=[
                AggregationRequest(field="host"),
                AggregationRequest(field="host", type=AggregationType.CARDINALITY, name="hosts"),
            ],
        )

        result = await storage.query(query)

        assert [r.id for r in result.records] == ["r1", "r2"]
        assert result.total_hits == 42
        assert result.took_ms == 7
        assert result.highlights == {"r1": ["<em>Disk</em> full"]}
        assert result.aggregations["host"].buckets[0].key == "web-01"
        assert result.aggregations["host"].truncated
        assert result.aggregations["hosts"].value == 4
        assert result.backend == "opensearch"

    @pytest.mark.asyncio
    async def test_missing_index_is_empty(self, storage, client):
        client.search.side_effect = NotFoundError(404, "index_not_found_exception", {})
        result = await storage.query(Query())
        assert result.total_hits == 0
        assert not result.timed_out

    @pytest.mark.asyncio
    async def test_page_past_result_window_is_empty(self, storage, client):
        client.search.return_value = {"hits": {"total": {"value": 5, "relation": "eq"}, "hits": []}}

        result = await storage.query(Query(page=20, size=1000))

        assert result.records == []
        assert result.total_hits == 5
        assert result.page == 20
        assert not result.timed_out
        body = client.search.call_args.kwargs["body"]
        assert body["size"] == 0
        assert "from" not in body

    @pytest.mark.asyncio
    async def test_page_inside_matches_beyond_window_rejected(self, storage, client):
        client.search.return_value = {"hits": {"total": {"value": 50_000, "relation": "eq"}, "hits": []}}

        with pytest.raises(ValidationError) as exc_info:
            await storage.query(Query(page=20, size=1000))

        assert exc_info.value.details["max_result_window"] == MAX_RESULT_WINDOW
        client.search.assert_called_once()

    @pytest.mark.asyncio
    async def test_page_inside_window_searches_directly(self, storage, client):
        client.search.return_value = {"hits": {"total": {"value": 0}, "hits": []}}

        await storage.query(Query(page=10, size=1000))

        assert client.search.call_args.kwargs["body"]["from"] == 9000

    @pytest.mark.asyncio
    async def test_rejected_query(self, storage, client):
        client.search.side_effect = RequestError(400, "parsing_exception", {"error": "bad regexp"})
        with pytest.raises(QueryError):
            await storage.query(Query(text="[", mode=PatternMode.REGEX))

    @pytest.mark.asyncio
    async def test_connection_failure_opens_circuit(self, storage, client):
        client.search.side_effect = ConnectionError("N/A", "connection refused", Exception("refused"))

        for _ in range(2):
            with pytest.raises(BackendUnavailableError):
                await storage.query(Query())

        client.search.reset_mock()
        with pytest.raises(BackendUnavailableError) as exc_info:
            await storage.query(Query())
        assert exc_info.value.reason == "circuit open"
        client.search.assert_not_called()


class TestWrites:
    """Indexing and point reads."""

    @pytest.mark.asyncio
    async def test_put_uses_create(self, storage, client):
        stored = await storage.put(LogRecord(message="hello"))
        kwargs = client.index.call_args.kwargs
        assert kwargs["op_type"] == "create"
        assert kwargs["id"] == stored.id
        assert kwargs["body"]["message"] == "hello"

    @pytest.mark.asyncio
    async def test_put_conflict_is_duplicate(self, storage, client):
        client.index.side_effect = ConflictError(409, "version_conflict_engine_exception", {})
        with pytest.raises(DuplicateRecordError):
            await storage.put(LogRecord(id="dup", message="x"))

    @pytest.mark.asyncio
    async def test_bulk_conflict_is_duplicate(self, storage, client):
        client.bulk.return_value = {
            "errors": True,
            "items": [{"create": {"_id": "a", "status": 201}}, {"create": {"_id": "b", "status": 409}}],
        }
        with pytest.raises(DuplicateRecordError) as exc_info:
            await storage.put_many([LogRecord(id="a"), LogRecord(id="b")])
        assert exc_info.value.details["ids"] == ["b"]

    @pytest.mark.asyncio
    async def test_get_missing(self, storage, client):
        client.get.side_effect = NotFoundError(404, "not_found", {})
        assert await storage.get_by_id("nope") is None

    @pytest.mark.asyncio
    async def test_get_found(self, storage, client):
        client.get.return_value = {"found": True, **hit("r1", "hello")}
        record = await storage.get_by_id("r1")
        assert record.message == "hello"
        assert record.severity == 4

    @pytest.mark.asyncio
    async def test_ensure_index_creates_when_missing(self, storage, client):
        client.indices.exists.return_value = False
        await storage.ensure_index()
        client.indices.create.assert_called_once_with(index="logs-test", body=LOG_INDEX_MAPPING)

    @pytest.mark.asyncio
    async def test_purge_before(self, storage, client):
        client.delete_by_query.return_value = {"deleted": 12}
        assert await storage.purge_before(datetime(2024, 3, 1, tzinfo=UTC)) == 12

    @pytest.mark.asyncio
    async def test_distinct_values(self, storage, client):
        client.search.return_value = {
            "aggregations": {"values": {"buckets": [{"key": "db-01", "doc_count": 1}, {"key": "web-01", "doc_count": 5}]}}
        }
        assert await storage.distinct_values("host", 10) == ["db-01", "web-01"]
        body = client.search.call_args.kwargs["body"]
        assert body["aggs"]["values"]["terms"]["order"] == [{"_key": "asc"}]
