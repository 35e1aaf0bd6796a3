"""Tests for the retention policy engine."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from shield_audit.audit.classification import SEVEN_YEARS_DAYS
from shield_audit.audit.models import RetentionAction, RetentionState
from shield_audit.audit.repository import AuditRepository
from shield_audit.audit.retention import RetentionPolicyEngine, SweepCursor
from shield_audit.models.audit_log import AuditLogArchive, AuditLogRecord

NOW = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)


class FailingColdStore:
    async def archive(self, entry):
        raise OSError("cold storage unavailable")


@pytest.fixture
def engine():
    return RetentionPolicyEngine()


def _days_ago(days: int) -> datetime:
    return NOW - timedelta(days=days)


class TestEvaluate:
    """Tests for evaluate()."""

    def test_new_record_retained(self, engine):
        decision = engine.evaluate("lab_reports", _days_ago(10), NOW)

        assert decision.action == RetentionAction.RETAIN
        assert decision.resource_age_days == 10
        assert decision.days_until_expiry == SEVEN_YEARS_DAYS - 10
        assert decision.should_retain is True

    def test_expired_record_deleted(self, engine):
        decision = engine.evaluate("lab_reports", _days_ago(SEVEN_YEARS_DAYS), NOW)

        assert decision.action == RetentionAction.DELETE
        assert decision.days_until_expiry == 0
        assert decision.should_retain is False

    def test_long_expired_reports_zero_days(self, engine):
        decision = engine.evaluate("lab_reports", _days_ago(SEVEN_YEARS_DAYS + 400), NOW)

        assert decision.days_until_expiry == 0

    @pytest.mark.parametrize("days_left", [1, 15, 30])
    def test_near_expiry_archived(self, engine, days_left):
        decision = engine.evaluate("lab_reports", _days_ago(SEVEN_YEARS_DAYS - days_left), NOW)

        assert decision.action == RetentionAction.ARCHIVE
        assert decision.days_until_expiry == days_left

    def test_just_outside_archive_window_retained(self, engine):
        decision = engine.evaluate("lab_reports", _days_ago(SEVEN_YEARS_DAYS - 31), NOW)

        assert decision.action == RetentionAction.RETAIN

    def test_partial_days_round_down(self, engine):
        decision = engine.evaluate("lab_reports", NOW - timedelta(days=3, hours=23), NOW)

        assert decision.resource_age_days == 3

    def test_future_creation_counts_as_new(self, engine):
        decision = engine.evaluate("lab_reports", NOW + timedelta(days=5), NOW)

        assert decision.resource_age_days == 0
        assert decision.action == RetentionAction.RETAIN

    def test_unknown_type_uses_default_window(self, engine):
        decision = engine.evaluate("tax_records", _days_ago(400), NOW)

        assert decision.action == RetentionAction.RETAIN
        assert decision.days_until_expiry == SEVEN_YEARS_DAYS - 400

    def test_shorter_retention_type(self, engine):
        decision = engine.evaluate("security_monitoring", _days_ago(400), NOW)

        assert decision.action == RetentionAction.DELETE

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValueError):
            RetentionPolicyEngine(batch_size=0)


class TestSweep:
    """Tests for run_sweep() against the audit store."""

    async def _seed(self, insert_entries, make_entry):
        return await insert_entries(
            make_entry(resource_type="security_monitoring", timestamp=_days_ago(400)),
            make_entry(resource_type="security_monitoring", timestamp=_days_ago(350)),
            make_entry(resource_type="security_monitoring", timestamp=_days_ago(100)),
        )

    @pytest.mark.asyncio
    async def test_sweep_applies_decisions(self, engine, db_session, insert_entries, make_entry):
        expired, near_expiry, fresh = await self._seed(insert_entries, make_entry)

        report = await engine.run_sweep(db_session, cursor=SweepCursor(started_at=NOW))

        assert report.completed is True
        assert report.scanned == 3
        assert report.deleted == 1
        assert report.archived == 1
        assert report.retained == 1

        repo = AuditRepository(db_session)
        assert await repo.get_entry(expired.id) is None
        assert await repo.get_entry(fresh.id) is not None

        row = await db_session.get(AuditLogRecord, near_expiry.id)
        await db_session.refresh(row)
        assert row.retention_state == RetentionState.ARCHIVED.value

        archived = (await db_session.execute(select(AuditLogArchive))).scalars().all()
        assert [a.id for a in archived] == [near_expiry.id]
        assert archived[0].entry["resource_type"] == "security_monitoring"

    @pytest.mark.asyncio
    async def test_second_sweep_has_no_effect(self, engine, db_session, insert_entries, make_entry):
        await self._seed(insert_entries, make_entry)

        await engine.run_sweep(db_session, cursor=SweepCursor(started_at=NOW))
        report = await engine.run_sweep(db_session, cursor=SweepCursor(started_at=NOW))

        assert report.deleted == 0
        assert report.archived == 0
        assert report.skipped == 1
        assert report.retained == 1
        archived = (await db_session.execute(select(AuditLogArchive))).scalars().all()
        assert len(archived) == 1

    @pytest.mark.asyncio
    async def test_sweep_resumes_from_cursor(self, db_session, insert_entries, make_entry):
        await insert_entries(
            *(
                make_entry(resource_type="security_monitoring", timestamp=_days_ago(400 + i))
                for i in range(5)
            )
        )
        engine = RetentionPolicyEngine(batch_size=2)

        first = await engine.run_sweep(
            db_session, cursor=SweepCursor(started_at=NOW), max_batches=1
        )
        assert first.completed is False
        assert first.deleted == 2

        second = await engine.run_sweep(db_session, cursor=first.cursor)

        assert second.completed is True
        assert second.deleted == 3

    @pytest.mark.asyncio
    async def test_rows_after_sweep_start_not_visited(
        self, engine, db_session, insert_entries, make_entry
    ):
        await insert_entries(
            make_entry(resource_type="security_monitoring", timestamp=NOW + timedelta(minutes=1))
        )

        report = await engine.run_sweep(db_session, cursor=SweepCursor(started_at=NOW))

        assert report.scanned == 0
        assert report.completed is True

    @pytest.mark.asyncio
    async def test_cold_store_failure_leaves_row_active(
        self, engine, db_session, insert_entries, make_entry
    ):
        (entry,) = await insert_entries(
            make_entry(resource_type="security_monitoring", timestamp=_days_ago(350))
        )

        report = await engine.run_sweep(
            db_session, cold_store=FailingColdStore(), cursor=SweepCursor(started_at=NOW)
        )

        assert report.skipped == 1
        assert report.archived == 0
        row = await db_session.get(AuditLogRecord, entry.id)
        await db_session.refresh(row)
        assert row.retention_state == RetentionState.ACTIVE.value
