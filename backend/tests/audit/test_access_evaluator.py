"""Tests for the access control evaluator."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from shield_audit.audit.access import (
    REASON_INSUFFICIENT_PERMISSIONS,
    REASON_INVALID_REQUEST,
    REASON_UNKNOWN_RESOURCE_TYPE,
    AccessControlEvaluator,
    StaticRoleResolver,
)
from shield_audit.audit.recorder import AuditRecorder
from shield_audit.models.audit_log import AuditLogRecord


class FailingResolver:
    def resolve_role(self, principal_id):
        raise LookupError(principal_id)


@pytest.fixture
def recorder():
    return AsyncMock()


def _recorded_events(recorder):
    return [call.args[0] for call in recorder.record.await_args_list]


class TestCheckAccess:
    """Tests for check_access() decisions and their audit entries."""

    @pytest.mark.asyncio
    async def test_unknown_resource_type_denied(self, recorder):
        evaluator = AccessControlEvaluator(recorder)

        decision = await evaluator.check_access("admin", "tax_records", "read")

        assert decision.allowed is False
        assert decision.reason == REASON_UNKNOWN_RESOURCE_TYPE
        events = _recorded_events(recorder)
        assert len(events) == 1
        assert events[0].event_type == "failed_access"
        assert events[0].success is False

    @pytest.mark.asyncio
    async def test_role_not_permitted_denied(self, recorder):
        evaluator = AccessControlEvaluator(recorder)

        decision = await evaluator.check_access("marketing", "lab_reports", "read")

        assert decision.allowed is False
        assert decision.reason == REASON_INSUFFICIENT_PERMISSIONS
        events = _recorded_events(recorder)
        assert len(events) == 1
        assert events[0].details["reason"] == REASON_INSUFFICIENT_PERMISSIONS

    @pytest.mark.asyncio
    async def test_every_deny_is_recorded(self, recorder):
        evaluator = AccessControlEvaluator(recorder)

        for _ in range(3):
            await evaluator.check_access("marketing", "lab_reports", "read", resource_id="lab-1")

        assert recorder.record.await_count == 3

    @pytest.mark.asyncio
    async def test_first_allow_on_restricted_resource_recorded(self, recorder):
        evaluator = AccessControlEvaluator(recorder)

        first = await evaluator.check_access(
            "healthcare_provider", "lab_reports", "read", resource_id="lab-1"
        )
        second = await evaluator.check_access(
            "healthcare_provider", "lab_reports", "read", resource_id="lab-1"
        )

        assert first.allowed is True
        assert first.reason is None
        assert second.allowed is True
        events = _recorded_events(recorder)
        assert len(events) == 1
        assert events[0].event_type == "data_access"
        assert events[0].success is True

    @pytest.mark.asyncio
    async def test_allow_on_other_resource_recorded_separately(self, recorder):
        evaluator = AccessControlEvaluator(recorder)

        await evaluator.check_access("data_owner", "sleep_data", "read", resource_id="s-1")
        await evaluator.check_access("data_owner", "sleep_data", "read", resource_id="s-2")

        assert recorder.record.await_count == 2

    @pytest.mark.asyncio
    async def test_allow_on_confidential_resource_not_recorded(self, recorder):
        evaluator = AccessControlEvaluator(recorder)

        decision = await evaluator.check_access("data_owner", "user_profile", "read")

        assert decision.allowed is True
        recorder.record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_new_evaluator_records_again(self, recorder):
        """Evaluators are request-scoped; each request records its first allow."""
        for _ in range(2):
            evaluator = AccessControlEvaluator(recorder)
            await evaluator.check_access("healthcare_provider", "biomarkers", "read")

        assert recorder.record.await_count == 2

    @pytest.mark.asyncio
    async def test_missing_role_uses_lowest_privilege(self, recorder):
        evaluator = AccessControlEvaluator(recorder)

        decision = await evaluator.check_access(None, "sleep_data", "read")

        assert decision.allowed is False
        assert _recorded_events(recorder)[0].details["role"] == "anonymous"

    @pytest.mark.asyncio
    async def test_blank_role_and_user_use_lowest_privilege(self, recorder):
        evaluator = AccessControlEvaluator(recorder)

        await evaluator.check_access("   ", "sleep_data", "read", user_id="")

        event = _recorded_events(recorder)[0]
        assert event.details["role"] == "anonymous"
        assert event.user_id == "anonymous"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("resource_type,action", [("lab_reports", ""), ("", "read"), ("  ", " ")])
    async def test_blank_request_denied_not_raised(self, recorder, resource_type, action):
        evaluator = AccessControlEvaluator(recorder)

        decision = await evaluator.check_access("admin", resource_type, action)

        assert decision.allowed is False
        assert decision.reason == REASON_INVALID_REQUEST
        events = _recorded_events(recorder)
        assert len(events) == 1
        assert events[0].event_type == "failed_access"
        assert events[0].action.strip()
        assert events[0].resource_type.strip()


class TestCheckPrincipalAccess:
    """Tests for role resolution before the check."""

    @pytest.mark.asyncio
    async def test_resolved_role_used(self, recorder):
        evaluator = AccessControlEvaluator(
            recorder, role_resolver=StaticRoleResolver({"doc-1": "healthcare_provider"})
        )

        decision = await evaluator.check_principal_access("doc-1", "lab_reports", "read")

        assert decision.allowed is True
        assert _recorded_events(recorder)[0].user_id == "doc-1"

    @pytest.mark.asyncio
    async def test_unresolvable_principal_is_denied_not_raised(self, recorder):
        evaluator = AccessControlEvaluator(recorder, role_resolver=FailingResolver())

        decision = await evaluator.check_principal_access("ghost", "lab_reports", "read")

        assert decision.allowed is False
        assert decision.reason == REASON_INSUFFICIENT_PERMISSIONS

    @pytest.mark.asyncio
    async def test_unknown_principal_gets_lowest_role(self, recorder):
        evaluator = AccessControlEvaluator(
            recorder,
            role_resolver=StaticRoleResolver({}),
            lowest_privilege_role="guest",
        )

        assert evaluator.resolve_role("nobody") == "guest"


class TestAccessAuditTrail:
    """Decisions end up in the audit store through a real recorder."""

    @pytest.mark.asyncio
    async def test_deny_stored_as_failed_access(self, session_factory, db_session):
        evaluator = AccessControlEvaluator(AuditRecorder(session_factory))

        await evaluator.check_access("marketing", "lab_reports", "read", user_id="mkt-1")

        rows = (await db_session.execute(select(AuditLogRecord))).scalars().all()
        assert len(rows) == 1
        assert rows[0].event_type == "failed_access"
        assert rows[0].user_id == "mkt-1"
        assert rows[0].success is False
        assert rows[0].risk_level == "medium"

    @pytest.mark.asyncio
    async def test_blank_action_stored_as_failed_access(self, session_factory, db_session):
        evaluator = AccessControlEvaluator(AuditRecorder(session_factory))

        decision = await evaluator.check_access("admin", "lab_reports", "", user_id="adm-1")

        assert decision.reason == REASON_INVALID_REQUEST
        rows = (await db_session.execute(select(AuditLogRecord))).scalars().all()
        assert len(rows) == 1
        assert rows[0].event_type == "failed_access"
        assert rows[0].action == "unspecified"
        assert rows[0].user_id == "adm-1"
        assert rows[0].details["reason"] == REASON_INVALID_REQUEST
