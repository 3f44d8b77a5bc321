"""Behaviour every storage backend must share.

Each test runs against the in-memory backend and the relational backend
(SQLite unless TEST_DATABASE_URL points elsewhere).
"""

from datetime import timedelta

import pytest
import pytest_asyncio

from loglens.core.errors import DuplicateRecordError, QueryError, ValidationError
from loglens.schemas.log_record import MAX_RECORD_ID_LENGTH, LogLevel, LogRecord
from loglens.schemas.query import (
    AggregationRequest,
    AggregationType,
    PatternMode,
    Query,
    SortDirection,
    SortField,
)
from loglens.services.storage.matching import FUZZY_AS_SUBSTRING
from loglens.services.storage.memory import MemoryLogStorage
from loglens.services.storage.relational import RelationalLogStorage


@pytest_asyncio.fixture(params=["memory", "relational"])
async def storage(request, test_engine):
    if request.param == "memory":
        return MemoryLogStorage()
    return RelationalLogStorage(test_engine)


@pytest.fixture
def dataset(base_time) -> list[LogRecord]:
    return [
        LogRecord(
            id="a1",
            timestamp=base_time,
            level="ERROR",
            message="Disk full on /var",
            host="web-01",
            application="billing",
            source="syslog",
            environment="prod",
            metadata={"user": "alice"},
            tags={"team": "core"},
        ),
        LogRecord(
            id="a2",
            timestamp=base_time + timedelta(minutes=1),
            level="INFO",
            message="User login succeeded",
            host="web-02",
            application="auth",
            source="app",
            environment="prod",
            metadata={"user": "bob"},
        ),
        LogRecord(
            id="a3",
            timestamp=base_time + timedelta(minutes=2),
            level="WARN",
            message="disk usage at 85%",
            host="db-01",
            application="billing",
            environment="staging",
        ),
        LogRecord(
            id="a4",
            timestamp=base_time + timedelta(minutes=3),
            level="ERROR",
            message="Payment timeout",
            host="web-01",
            application="billing",
            http_method="POST",
            http_url="/pay",
            http_status=504,
        ),
        LogRecord(
            id="a5",
            timestamp=base_time - timedelta(hours=1),
            level="DEBUG",
            message="cache warmed",
            host="web-02",
            application="auth",
            environment="dev",
        ),
    ]


@pytest_asyncio.fixture
async def seeded(storage, dataset):
    await storage.put_many(dataset)
    return storage


def ids(result) -> list[str]:
    return [record.id for record in result.records]


class TestPutAndGet:
    """Writes and point reads."""

    @pytest.mark.asyncio
    async def test_assigns_id_when_missing(self, storage, make_record):
        stored = await storage.put(make_record(message="no id yet"))
        assert stored.id
        fetched = await storage.get_by_id(stored.id)
        assert fetched is not None
        assert fetched.message == "no id yet"

    @pytest.mark.asyncio
    async def test_round_trip_preserves_fields(self, seeded, dataset):
        fetched = await seeded.get_by_id("a1")
        assert fetched.timestamp == dataset[0].timestamp
        assert fetched.level == LogLevel.ERROR
        assert fetched.metadata == {"user": "alice"}
        assert fetched.tags == {"team": "core"}

    @pytest.mark.asyncio
    async def test_missing_id_returns_none(self, storage):
        assert await storage.get_by_id("does-not-exist") is None

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, seeded, make_record):
        with pytest.raises(DuplicateRecordError):
            await seeded.put(make_record(id="a1", message="again"))

    @pytest.mark.asyncio
    async def test_overlong_id_rejected(self, storage, make_record):
        with pytest.raises(ValidationError):
            await storage.put(make_record(id="x" * (MAX_RECORD_ID_LENGTH + 1)))
        with pytest.raises(ValidationError):
            await storage.put_many([make_record(id="ok"), make_record(id="y" * 100)])

        assert await storage.count() == 0

    @pytest.mark.asyncio
    async def test_id_at_key_width_accepted(self, storage, make_record):
        record_id = "k" * MAX_RECORD_ID_LENGTH
        await storage.put(make_record(id=record_id))
        assert (await storage.get_by_id(record_id)).id == record_id

    @pytest.mark.asyncio
    async def test_count(self, seeded):
        assert await seeded.count() == 5


class TestOrderingAndPaging:
    """Default ordering and offset pagination."""

    @pytest.mark.asyncio
    async def test_default_order_is_newest_first(self, seeded):
        result = await seeded.query(Query())
        assert ids(result) == ["a4", "a3", "a2", "a1", "a5"]
        assert result.total_hits == 5

    @pytest.mark.asyncio
    async def test_ties_broken_by_id_descending(self, storage, make_record):
        await storage.put(make_record(id="b1"))
        await storage.put(make_record(id="b2"))
        result = await storage.query(Query())
        assert ids(result) == ["b2", "b1"]

    @pytest.mark.asyncio
    async def test_custom_sort(self, seeded):
        result = await seeded.query(Query(sort=[SortField(field="host", direction=SortDirection.ASC)]))
        assert [record.host for record in result.records] == ["db-01", "web-01", "web-01", "web-02", "web-02"]
        # Ties on host fall back to id descending
        assert ids(result)[1:3] == ["a4", "a1"]

    @pytest.mark.asyncio
    async def test_pages(self, seeded):
        first = await seeded.query(Query(size=2, page=1))
        last = await seeded.query(Query(size=2, page=3))
        assert ids(first) == ["a4", "a3"]
        assert ids(last) == ["a5"]
        assert last.total_hits == 5
        assert last.total_pages == 3

    @pytest.mark.asyncio
    async def test_page_past_end_is_empty(self, seeded):
        result = await seeded.query(Query(size=2, page=4))
        assert result.records == []
        assert result.total_hits == 5


class TestFiltering:
    """Time range, filter sets and custom filters."""

    @pytest.mark.asyncio
    async def test_time_range_is_half_open(self, seeded, base_time):
        result = await seeded.query(Query(start_time=base_time, end_time=base_time + timedelta(minutes=2)))
        assert ids(result) == ["a2", "a1"]

    @pytest.mark.asyncio
    async def test_and_across_dimensions(self, seeded):
        result = await seeded.query(Query(levels=[LogLevel.ERROR], hosts=["web-01"]))
        assert ids(result) == ["a4", "a1"]

    @pytest.mark.asyncio
    async def test_or_within_dimension(self, seeded):
        result = await seeded.query(Query(hosts=["web-01", "db-01"]))
        assert ids(result) == ["a4", "a3", "a1"]

    @pytest.mark.asyncio
    async def test_metadata_filter_by_bare_key(self, seeded):
        result = await seeded.query(Query(filters={"user": "alice"}))
        assert ids(result) == ["a1"]

    @pytest.mark.asyncio
    async def test_tag_filter(self, seeded):
        result = await seeded.query(Query(filters={"tags.team": "core"}))
        assert ids(result) == ["a1"]

    @pytest.mark.asyncio
    async def test_integer_filter(self, seeded):
        result = await seeded.query(Query(filters={"http_status": 504}))
        assert ids(result) == ["a4"]

    @pytest.mark.asyncio
    async def test_field_pattern(self, seeded):
        result = await seeded.query(Query(patterns={"host": "web-*"}))
        assert ids(result) == ["a4", "a2", "a1", "a5"]


class TestTextMatching:
    """Free-text pattern modes on the substring backends."""

    @pytest.mark.asyncio
    async def test_full_text_is_case_insensitive_by_default(self, seeded):
        result = await seeded.query(Query(text="disk"))
        assert ids(result) == ["a3", "a1"]

    @pytest.mark.asyncio
    async def test_case_sensitive(self, seeded):
        result = await seeded.query(Query(text="disk", case_sensitive=True))
        assert ids(result) == ["a3"]

    @pytest.mark.asyncio
    async def test_exact(self, seeded):
        assert ids(await seeded.query(Query(text="payment timeout", mode=PatternMode.EXACT))) == ["a4"]
        assert ids(await seeded.query(Query(text="Payment", mode=PatternMode.EXACT))) == []

    @pytest.mark.asyncio
    async def test_wildcard_matches_whole_value(self, seeded):
        result = await seeded.query(Query(text="disk*", mode=PatternMode.WILDCARD))
        assert ids(result) == ["a3", "a1"]
        assert ids(await seeded.query(Query(text="full*", mode=PatternMode.WILDCARD))) == []

    @pytest.mark.asyncio
    async def test_regex(self, seeded):
        result = await seeded.query(Query(text="time(out)?$", mode=PatternMode.REGEX))
        assert ids(result) == ["a4"]

    @pytest.mark.asyncio
    async def test_malformed_regex_rejected(self, seeded):
        with pytest.raises(QueryError):
            await seeded.query(Query(text="disk(", mode=PatternMode.REGEX))

    @pytest.mark.asyncio
    async def test_text_searches_host(self, seeded):
        result = await seeded.query(Query(text="db-01"))
        assert ids(result) == ["a3"]

    @pytest.mark.asyncio
    async def test_fuzzy_degrades_to_substring(self, seeded):
        result = await seeded.query(Query(text="login", mode=PatternMode.FUZZY))
        assert ids(result) == ["a2"]
        assert FUZZY_AS_SUBSTRING in result.approximations

    @pytest.mark.asyncio
    async def test_highlights(self, seeded):
        result = await seeded.query(Query(text="disk", highlight=True))
        assert result.highlights["a1"] == ["<em>Disk</em> full on /var"]
        assert result.highlights["a3"] == ["<em>disk</em> usage at 85%"]


class TestAggregations:
    """Terms, cardinality and histogram buckets."""

    @pytest.mark.asyncio
    async def test_terms_ordered_by_count_then_key(self, seeded):
        result = await seeded.query(Query(aggregations=[AggregationRequest(field="host")]))
        buckets = result.aggregations["host"].buckets
        assert [(b.key, b.doc_count) for b in buckets] == [("web-01", 2), ("web-02", 2), ("db-01", 1)]

    @pytest.mark.asyncio
    async def test_terms_respect_size(self, seeded):
        result = await seeded.query(Query(aggregations=[AggregationRequest(field="host", size=1)]))
        agg = result.aggregations["host"]
        assert [b.key for b in agg.buckets] == ["web-01"]
        assert agg.truncated

    @pytest.mark.asyncio
    async def test_aggregations_cover_all_matches_not_just_the_page(self, seeded):
        result = await seeded.query(Query(size=1, aggregations=[AggregationRequest(field="application")]))
        buckets = result.aggregations["application"].buckets
        assert [(b.key, b.doc_count) for b in buckets] == [("billing", 3), ("auth", 2)]

    @pytest.mark.asyncio
    async def test_cardinality(self, seeded):
        request = AggregationRequest(field="host", type=AggregationType.CARDINALITY, name="hosts")
        result = await seeded.query(Query(aggregations=[request]))
        assert result.aggregations["hosts"].value == 3

    @pytest.mark.asyncio
    async def test_hourly_histogram(self, seeded):
        request = AggregationRequest(field="timestamp", type=AggregationType.DATE_HISTOGRAM, interval="hour")
        result = await seeded.query(Query(aggregations=[request]))
        buckets = result.aggregations["timestamp"].buckets
        assert [(b.key, b.doc_count) for b in buckets] == [
            ("2024-03-01T11:00:00Z", 1),
            ("2024-03-01T12:00:00Z", 4),
        ]

    @pytest.mark.asyncio
    async def test_aggregate(self, seeded):
        buckets = await seeded.aggregate("level", 10)
        assert [(b.key, b.doc_count) for b in buckets] == [
            ("ERROR", 2),
            ("DEBUG", 1),
            ("INFO", 1),
            ("WARN", 1),
        ]

    @pytest.mark.asyncio
    async def test_distinct_values_sorted(self, seeded):
        assert await seeded.distinct_values("host", 10) == ["db-01", "web-01", "web-02"]
        assert await seeded.distinct_values("host", 2) == ["db-01", "web-01"]

    @pytest.mark.asyncio
    async def test_distinct_values_scoped_by_query(self, seeded):
        assert await seeded.distinct_values("host", 10, Query(applications=["auth"])) == ["web-02"]


class TestRetention:
    """purge_before() removes older records only."""

    @pytest.mark.asyncio
    async def test_purge_before(self, seeded, base_time):
        assert await seeded.purge_before(base_time) == 1
        assert await seeded.count() == 4
        assert await seeded.get_by_id("a5") is None
        assert await seeded.get_by_id("a1") is not None
