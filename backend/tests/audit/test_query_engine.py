"""Tests for the audit query engine."""

import asyncio
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from shield_audit.audit.errors import QueryError, QueryTimeoutError
from shield_audit.audit.models import AuditEventType, RawEvent, RiskLevel
from shield_audit.audit.query import AuditQueryEngine, Pagination, PaginationInfo, SortSpec
from shield_audit.audit.recorder import AuditRecorder
from shield_audit.audit.repository import AuditQueryFilters, AuditRepository

BASE_TIME = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine(db_session):
    return AuditQueryEngine(AuditRepository(db_session))


class TestPagination:
    """Tests for page clamping and page metadata."""

    def test_limit_clamped_to_maximum(self):
        assert Pagination(page=1, limit=500).clamped(100).limit == 100

    def test_limit_and_page_clamped_to_one(self):
        clamped = Pagination(page=0, limit=0).clamped(100)
        assert clamped.page == 1
        assert clamped.limit == 1

    def test_page_info(self):
        info = PaginationInfo.build(Pagination(page=2, limit=10), total=25)

        assert info.total_pages == 3
        assert info.has_next is True
        assert info.has_prev is True

    def test_page_info_empty(self):
        info = PaginationInfo.build(Pagination(page=1, limit=10), total=0)

        assert info.total_pages == 0
        assert info.has_next is False
        assert info.has_prev is False


class TestFilters:
    """Tests for query filters."""

    @pytest.mark.asyncio
    async def test_no_filters_returns_everything(self, engine, insert_entries, make_entry):
        await insert_entries(*(make_entry() for _ in range(3)))

        result = await engine.query()

        assert result.total == 3
        assert len(result.entries) == 3

    @pytest.mark.asyncio
    async def test_exact_filters_are_anded(self, engine, insert_entries, make_entry):
        await insert_entries(
            make_entry(user_id="alice", risk_level=RiskLevel.HIGH),
            make_entry(user_id="alice", risk_level=RiskLevel.LOW),
            make_entry(user_id="bob", risk_level=RiskLevel.HIGH),
        )

        result = await engine.query(AuditQueryFilters(user_id="alice", risk_level=RiskLevel.HIGH))

        assert result.total == 1
        assert result.entries[0].user_id == "alice"
        assert result.entries[0].risk_level == RiskLevel.HIGH

    @pytest.mark.asyncio
    async def test_event_type_and_success(self, engine, insert_entries, make_entry):
        await insert_entries(
            make_entry(event_type=AuditEventType.FAILED_ACCESS, success=False),
            make_entry(event_type=AuditEventType.DATA_ACCESS, success=True),
        )

        failed = await engine.query(AuditQueryFilters(success=False))
        typed = await engine.query(AuditQueryFilters(event_type=AuditEventType.DATA_ACCESS))

        assert [e.event_type for e in failed.entries] == [AuditEventType.FAILED_ACCESS]
        assert typed.total == 1

    @pytest.mark.asyncio
    async def test_date_range_is_inclusive(self, engine, insert_entries, make_entry):
        await insert_entries(
            make_entry(timestamp=datetime(2024, 6, 1, 0, 0, tzinfo=timezone.utc)),
            make_entry(timestamp=datetime(2024, 6, 2, 23, 59, 59, tzinfo=timezone.utc)),
            make_entry(timestamp=datetime(2024, 6, 3, 0, 0, 1, tzinfo=timezone.utc)),
        )

        result = await engine.query(
            AuditQueryFilters(start_date=date(2024, 6, 1), end_date=date(2024, 6, 2))
        )

        assert result.total == 2

    @pytest.mark.asyncio
    async def test_time_range(self, engine, insert_entries, make_entry):
        await insert_entries(
            make_entry(timestamp=BASE_TIME - timedelta(minutes=30)),
            make_entry(timestamp=BASE_TIME - timedelta(hours=3)),
            make_entry(timestamp=BASE_TIME - timedelta(days=2)),
        )

        one_hour = await engine.query(AuditQueryFilters(time_range="1h"), now=BASE_TIME)
        six_hours = await engine.query(AuditQueryFilters(time_range="6h"), now=BASE_TIME)
        everything = await engine.query(AuditQueryFilters(time_range="all"), now=BASE_TIME)

        assert one_hour.total == 1
        assert six_hours.total == 2
        assert everything.total == 3

    @pytest.mark.asyncio
    async def test_explicit_dates_override_time_range(self, engine, insert_entries, make_entry):
        await insert_entries(make_entry(timestamp=datetime(2023, 1, 15, tzinfo=timezone.utc)))

        result = await engine.query(
            AuditQueryFilters(time_range="1h", start_date=date(2023, 1, 1)), now=BASE_TIME
        )

        assert result.total == 1

    def test_unsupported_time_range_rejected(self):
        with pytest.raises(ValueError):
            AuditQueryFilters(time_range="90d")

    @pytest.mark.asyncio
    async def test_search_is_case_insensitive_substring(self, engine, insert_entries, make_entry):
        await insert_entries(
            make_entry(user_id="Dr.Alice"),
            make_entry(user_id="bob", details={"api_endpoint": "/api/ALICE/profile"}),
            make_entry(user_id="carol"),
        )

        result = await engine.query(AuditQueryFilters(search="alice"))

        assert result.total == 2

    @pytest.mark.asyncio
    async def test_search_treats_wildcards_literally(self, engine, insert_entries, make_entry):
        await insert_entries(make_entry(user_id="user_1"), make_entry(user_id="userX1"))

        result = await engine.query(AuditQueryFilters(search="user_"))

        assert [e.user_id for e in result.entries] == ["user_1"]

    @pytest.mark.asyncio
    async def test_details_filters(self, engine, insert_entries, make_entry):
        await insert_entries(
            make_entry(details={"http_method": "GET", "duration_ms": 50, "cache_hit": True}),
            make_entry(details={"http_method": "POST", "duration_ms": 400, "cache_hit": False}),
            make_entry(details={}),
        )

        by_method = await engine.query(AuditQueryFilters(http_method="get"))
        by_duration = await engine.query(AuditQueryFilters(min_duration=100, max_duration=400))
        by_cache = await engine.query(AuditQueryFilters(cache_hit=True))

        assert by_method.total == 1
        assert by_duration.entries[0].details["http_method"] == "POST"
        assert by_cache.total == 1
        assert by_cache.entries[0].details["http_method"] == "GET"


class TestSortAndPages:
    """Tests for ordering and pagination over stored entries."""

    @pytest.mark.asyncio
    async def test_default_sort_is_newest_first(self, engine, insert_entries, make_entry):
        await insert_entries(
            *(make_entry(timestamp=BASE_TIME + timedelta(minutes=i)) for i in range(3))
        )

        result = await engine.query()

        timestamps = [e.timestamp for e in result.entries]
        assert timestamps == sorted(timestamps, reverse=True)

    @pytest.mark.asyncio
    async def test_sort_by_risk_level_uses_tier_order(self, engine, insert_entries, make_entry):
        await insert_entries(
            make_entry(risk_level=RiskLevel.MEDIUM),
            make_entry(risk_level=RiskLevel.CRITICAL),
            make_entry(risk_level=RiskLevel.LOW),
            make_entry(risk_level=RiskLevel.HIGH),
        )

        result = await engine.query(sort=SortSpec(sort_by="risk_level", sort_order="asc"))

        assert [e.risk_level for e in result.entries] == [
            RiskLevel.LOW,
            RiskLevel.MEDIUM,
            RiskLevel.HIGH,
            RiskLevel.CRITICAL,
        ]

    @pytest.mark.asyncio
    async def test_sort_by_duration_puts_missing_last(self, engine, insert_entries, make_entry):
        await insert_entries(
            make_entry(details={"duration_ms": 300}),
            make_entry(details={}),
            make_entry(details={"duration_ms": 20}),
        )

        result = await engine.query(sort=SortSpec(sort_by="duration_ms", sort_order="asc"))

        assert [e.duration_ms for e in result.entries] == [20.0, 300.0, None]

    @pytest.mark.asyncio
    async def test_unsupported_sort_field_rejected(self, engine):
        with pytest.raises(ValueError):
            await engine.query(sort=SortSpec(sort_by="details"))

    @pytest.mark.asyncio
    async def test_pages_partition_the_result(self, engine, insert_entries, make_entry):
        """Entries with equal timestamps still never repeat across pages."""
        await insert_entries(*(make_entry(timestamp=BASE_TIME) for _ in range(7)))

        seen = []
        for page in (1, 2, 3):
            result = await engine.query(pagination=Pagination(page=page, limit=3))
            seen.extend(e.id for e in result.entries)

        assert len(seen) == 7
        assert len(set(seen)) == 7


class TestStatistics:
    """Tests for aggregate statistics."""

    @pytest.mark.asyncio
    async def test_empty_set_reports_zeros(self, engine):
        result = await engine.query()

        assert result.stats.total == 0
        assert result.stats.success_rate == 0
        assert result.stats.avg_response_time == 0
        assert result.stats.cache_hit_rate == 0
        assert result.stats.risk_distribution == {
            "low": 0,
            "medium": 0,
            "high": 0,
            "critical": 0,
        }

    @pytest.mark.asyncio
    async def test_statistics_over_filtered_set(self, engine, insert_entries, make_entry):
        await insert_entries(
            make_entry(success=True, details={"duration_ms": 100, "cache_hit": True}),
            make_entry(success=True, details={"duration_ms": 300, "cache_hit": False}),
            make_entry(success=False, risk_level=RiskLevel.HIGH, details={}),
            make_entry(user_id="other", details={"duration_ms": 9999}),
        )

        result = await engine.query(
            AuditQueryFilters(user_id="user-1"), pagination=Pagination(page=1, limit=1)
        )

        assert result.total == 3
        assert len(result.entries) == 1
        assert result.stats.success_rate == pytest.approx(66.67)
        assert result.stats.avg_response_time == pytest.approx(200.0)
        assert result.stats.cache_hit_rate == pytest.approx(50.0)
        assert result.stats.risk_distribution["low"] == 2
        assert result.stats.risk_distribution["high"] == 1

    @pytest.mark.asyncio
    async def test_mistyped_duration_ignored_by_statistics(self, engine, session_factory):
        recorder = AuditRecorder(session_factory)
        for duration in (100, "fast", True):
            result = await recorder.record(
                RawEvent(
                    event_type="api_request",
                    user_id="user-1",
                    action="get",
                    resource_type="api",
                    details={"duration_ms": duration, "cache_hit": "maybe"},
                )
            )
            assert result.persisted is True

        result = await engine.query()

        assert result.total == 3
        assert result.stats.avg_response_time == pytest.approx(100.0)
        assert result.stats.cache_hit_rate == 0
        invalid = sorted(
            str(e.details.get("duration_ms_invalid")) for e in result.entries
        )
        assert invalid == ["None", "True", "fast"]

    @pytest.mark.asyncio
    async def test_mistyped_duration_does_not_break_sorting(self, engine, session_factory):
        recorder = AuditRecorder(session_factory)
        for duration in (30, "n/a", 10):
            await recorder.record(
                RawEvent(
                    event_type="data_access",
                    user_id="user-1",
                    action="read",
                    resource_type="sleep_data",
                    details={"duration_ms": duration},
                )
            )

        result = await engine.query(sort=SortSpec(sort_by="duration_ms", sort_order="asc"))

        assert [e.duration_ms for e in result.entries] == [10.0, 30.0, None]


class TestErrors:
    """Read-path errors always reach the caller."""

    @pytest.mark.asyncio
    async def test_timeout_raises_query_timeout(self):
        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        repository = MagicMock()
        repository.statistics = slow
        engine = AuditQueryEngine(repository, timeout_seconds=0.01)

        with pytest.raises(QueryTimeoutError):
            await engine.query()

    @pytest.mark.asyncio
    async def test_store_error_raises_query_error(self):
        repository = MagicMock()
        repository.get_entry = AsyncMock(
            side_effect=OperationalError("SELECT", {}, Exception("connection lost"))
        )
        engine = AuditQueryEngine(repository)

        with pytest.raises(QueryError):
            await engine.get_by_id("abc")


class TestGetById:
    """Tests for single-entry detail."""

    @pytest.mark.asyncio
    async def test_missing_entry_returns_none(self, engine):
        assert await engine.get_by_id("does-not-exist") is None

    @pytest.mark.asyncio
    async def test_detail_includes_related_events(self, engine, insert_entries, make_entry):
        target, near, session_peer, far, stranger = await insert_entries(
            make_entry(user_id="alice", details={"session_id": "s-1"}),
            make_entry(user_id="alice", timestamp=BASE_TIME + timedelta(minutes=5)),
            make_entry(
                user_id="bob",
                timestamp=BASE_TIME - timedelta(minutes=2),
                details={"session_id": "s-1"},
            ),
            make_entry(user_id="alice", timestamp=BASE_TIME + timedelta(hours=2)),
            make_entry(user_id="carol"),
        )

        detail = await engine.get_by_id(target.id)

        related_ids = [e.id for e in detail.related_events]
        assert detail.entry.id == target.id
        assert related_ids == [session_peer.id, near.id]
        assert target.id not in related_ids
        assert detail.security_analysis.threat_level in {
            "none",
            "low",
            "medium",
            "high",
            "critical",
        }
