"""
Payment eligibility engine tests.

Verifies:
- Recalculation is idempotent and appends one event and one audit entry
- Human overrides are sticky against automatic recalculation
- Block / unblock round trip restores the pre-block state
- MARKED_PAID is terminal
- Invalid automatic transitions are retained, logged and counted
- The compensating recalculation may override the table
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from governance_kernel.db.write_guard import LIFECYCLE_WRITER, write_grant
from governance_kernel.domain.eligibility import (
    BlockingReasonCode,
    EligibilityEventType,
    EligibilityState,
    ResolutionOutcome,
)
from governance_kernel.domain.lifecycle import MilestoneState, Role
from governance_kernel.exceptions import (
    AlreadyInStateError,
    ForbiddenRoleError,
    InvalidTransitionError,
    MilestoneNotFoundError,
    PreconditionFailedError,
    ReasonRequiredError,
    ValidationError,
)
from governance_kernel.models.audit_log import AuditActionType, AuditLogEntry
from governance_kernel.models.eligibility import EligibilityEvent
from governance_kernel.services.eligibility_engine import retained_transition_counts

E = EligibilityState


def _events(session, record_id):
    return session.execute(
        select(EligibilityEvent)
        .where(EligibilityEvent.eligibility_id == record_id)
        .order_by(EligibilityEvent.seq)
    ).scalars().all()


def _audit_actions(session, record_id):
    return session.execute(
        select(AuditLogEntry.action_type)
        .where(AuditLogEntry.entity_id == record_id)
        .order_by(AuditLogEntry.seq)
    ).scalars().all()


@pytest.fixture
def verified(create_milestone, advance_milestone):
    """A VERIFIED milestone worth 1000 with a FULLY_ELIGIBLE payment."""
    milestone = create_milestone(value=1000)
    advance_milestone(milestone.id, MilestoneState.VERIFIED)
    return milestone


def _regress_to_in_progress(session, milestone):
    """Simulate drift: milestone facts no longer support the stored state."""
    with write_grant(session, LIFECYCLE_WRITER):
        milestone.state = MilestoneState.IN_PROGRESS.value
        session.flush()


class TestRecalculate:

    def test_idempotent(self, session, eligibility_engine, verified, owner_id, eligibility_of):
        first = eligibility_engine.recalculate(
            verified.id, owner_id, Role.OWNER, EligibilityEventType.RECALCULATION_TRIGGERED
        )
        second = eligibility_engine.recalculate(
            verified.id, owner_id, Role.OWNER, EligibilityEventType.RECALCULATION_TRIGGERED
        )

        assert first.new_state == second.new_state == E.FULLY_ELIGIBLE
        assert first.eligible_amount == second.eligible_amount == Decimal("1000")
        assert second.outcome == ResolutionOutcome.UNCHANGED
        assert not second.changed
        assert first.event_id != second.event_id
        assert first.audit_entry_id != second.audit_entry_id

    def test_recalculation_log_reports_change(
        self, eligibility_engine, verified, owner_id, captured_logs
    ):
        eligibility_engine.recalculate(
            verified.id, owner_id, Role.OWNER, EligibilityEventType.RECALCULATION_TRIGGERED
        )

        line = [r for r in captured_logs() if r["message"] == "eligibility_recalculated"][-1]
        assert line["changed"] is False
        assert line["to_state"] == "FULLY_ELIGIBLE"

    def test_unknown_role_is_refused(self, eligibility_engine, verified, owner_id):
        with pytest.raises(ForbiddenRoleError):
            eligibility_engine.recalculate(
                verified.id, owner_id, "ADMIN", EligibilityEventType.RECALCULATION_TRIGGERED
            )

    def test_one_event_and_one_audit_entry_per_call(
        self, session, eligibility_engine, create_milestone, owner_id, eligibility_of
    ):
        milestone = create_milestone()
        record = eligibility_of(milestone.id)
        events_before = len(_events(session, record.id))
        audits_before = len(_audit_actions(session, record.id))

        eligibility_engine.recalculate(
            milestone.id, owner_id, Role.OWNER, EligibilityEventType.RECALCULATION_TRIGGERED
        )

        assert len(_events(session, record.id)) == events_before + 1
        actions = _audit_actions(session, record.id)
        assert len(actions) == audits_before + 1
        assert actions[-1] == AuditActionType.ELIGIBILITY_RECALCULATED.value

    def test_unknown_milestone(self, eligibility_engine, owner_id):
        with pytest.raises(MilestoneNotFoundError):
            eligibility_engine.recalculate(
                uuid4(), owner_id, Role.OWNER, EligibilityEventType.RECALCULATION_TRIGGERED
            )

    def test_amounts_follow_facts(self, create_milestone, eligibility_of):
        milestone = create_milestone(value="1234.50", advance_percent="12.5")
        record = eligibility_of(milestone.id)
        assert record.advance_amount == Decimal("154.3125")
        assert record.advance_amount + record.remaining_amount == Decimal("1234.50")
        assert record.deductions == Decimal("0")

    def test_due_date_mirrors_planned_end(self, create_milestone, eligibility_of):
        from datetime import date

        milestone = create_milestone(planned_end=date(2024, 2, 15))
        assert eligibility_of(milestone.id).due_date == date(2024, 2, 15)


class TestBlock:

    def test_block_eligible_payment(self, session, eligibility_engine, verified, pmc_id, eligibility_of):
        record = eligibility_engine.block(
            verified.id, BlockingReasonCode.QUALITY_ISSUE, "Cracks in slab", pmc_id, Role.PMC
        )

        assert record.eligibility_state == E.BLOCKED
        assert record.blocked_amount == Decimal("1000")
        assert record.block_reason_code == "QUALITY_ISSUE"
        assert record.block_explanation == "Cracks in slab"
        assert record.blocked_by_id == pmc_id
        last = _events(session, record.id)[-1]
        assert last.event_type == EligibilityEventType.BLOCKED_BY_PMC.value
        assert last.reason_code == "QUALITY_ISSUE"
        assert _audit_actions(session, record.id)[-1] == AuditActionType.ELIGIBILITY_BLOCKED.value

    def test_reason_code_accepts_string(self, eligibility_engine, verified, owner_id):
        record = eligibility_engine.block(
            verified.id, "BUDGET_HOLD", "Awaiting funds", owner_id, Role.OWNER
        )
        assert record.block_reason_code == "BUDGET_HOLD"

    def test_unknown_reason_code(self, eligibility_engine, verified, owner_id):
        with pytest.raises(ValidationError):
            eligibility_engine.block(verified.id, "BAD_VIBES", "no", owner_id, Role.OWNER)

    @pytest.mark.parametrize("explanation", [None, "", "  "])
    def test_explanation_required(self, eligibility_engine, verified, owner_id, explanation):
        with pytest.raises(ReasonRequiredError):
            eligibility_engine.block(
                verified.id, BlockingReasonCode.OTHER, explanation, owner_id, Role.OWNER
            )

    def test_vendor_cannot_block(self, eligibility_engine, verified, vendor_id):
        with pytest.raises(ForbiddenRoleError):
            eligibility_engine.block(
                verified.id, BlockingReasonCode.OTHER, "x", vendor_id, Role.VENDOR
            )

    def test_cannot_block_not_due(self, eligibility_engine, create_milestone, owner_id):
        milestone = create_milestone()
        with pytest.raises(InvalidTransitionError):
            eligibility_engine.block(
                milestone.id, BlockingReasonCode.OTHER, "early", owner_id, Role.OWNER
            )

    def test_double_block(self, eligibility_engine, verified, owner_id):
        eligibility_engine.block(verified.id, BlockingReasonCode.OTHER, "one", owner_id, Role.OWNER)
        with pytest.raises(AlreadyInStateError):
            eligibility_engine.block(
                verified.id, BlockingReasonCode.OTHER, "two", owner_id, Role.OWNER
            )

    def test_block_is_sticky_against_automatic_events(
        self, eligibility_engine, verified, owner_id, pmc_id, eligibility_of, captured_logs
    ):
        eligibility_engine.block(verified.id, BlockingReasonCode.DISPUTE_PENDING, "x", owner_id, Role.OWNER)

        for event_type in (
            EligibilityEventType.MILESTONE_STATE_CHANGED,
            EligibilityEventType.EVIDENCE_APPROVED,
            EligibilityEventType.RECALCULATION_TRIGGERED,
        ):
            result = eligibility_engine.recalculate(verified.id, pmc_id, Role.PMC, event_type)
            assert result.new_state == E.BLOCKED
            assert result.outcome == ResolutionOutcome.STICKY_RETAINED

        record = eligibility_of(verified.id)
        assert record.block_reason_code == "DISPUTE_PENDING"
        assert record.blocked_amount == Decimal("1000")
        assert retained_transition_counts() == {}
        assert any(r["message"] == "eligibility_override_retained" for r in captured_logs())


class TestUnblock:

    def test_round_trip_restores_state(self, session, eligibility_engine, verified, owner_id, eligibility_of):
        eligibility_engine.block(verified.id, BlockingReasonCode.QUALITY_ISSUE, "x", owner_id, Role.OWNER)
        result = eligibility_engine.unblock(verified.id, "Fixed on site", owner_id, Role.OWNER)

        record = eligibility_of(verified.id)
        assert result.previous_state == E.BLOCKED
        assert result.new_state == E.FULLY_ELIGIBLE
        assert record.eligibility_state == E.FULLY_ELIGIBLE
        assert record.blocked_amount == Decimal("0")
        assert record.block_reason_code is None
        assert record.block_explanation is None
        assert record.blocked_by_id is None
        last = _events(session, record.id)[-1]
        assert last.event_type == EligibilityEventType.UNBLOCKED_BY_OWNER.value
        assert last.explanation == "Fixed on site"
        assert _audit_actions(session, record.id)[-1] == AuditActionType.ELIGIBILITY_UNBLOCKED.value

    def test_pmc_cannot_unblock(self, eligibility_engine, verified, owner_id, pmc_id):
        eligibility_engine.block(verified.id, BlockingReasonCode.OTHER, "x", owner_id, Role.OWNER)
        with pytest.raises(ForbiddenRoleError):
            eligibility_engine.unblock(verified.id, "ok", pmc_id, Role.PMC)

    def test_reason_required(self, eligibility_engine, verified, owner_id):
        eligibility_engine.block(verified.id, BlockingReasonCode.OTHER, "x", owner_id, Role.OWNER)
        with pytest.raises(ReasonRequiredError):
            eligibility_engine.unblock(verified.id, "", owner_id, Role.OWNER)

    def test_unblock_when_not_blocked(self, eligibility_engine, verified, owner_id):
        with pytest.raises(PreconditionFailedError):
            eligibility_engine.unblock(verified.id, "nothing to lift", owner_id, Role.OWNER)


class TestMarkPaid:

    def test_mark_paid(self, session, eligibility_engine, verified, owner_id, eligibility_of):
        record = eligibility_engine.mark_paid(verified.id, "Wire ref 8812", owner_id, Role.OWNER)

        assert record.eligibility_state == E.MARKED_PAID
        assert record.paid_explanation == "Wire ref 8812"
        assert record.paid_by_id == owner_id
        assert record.blocked_amount == Decimal("0")
        assert _events(session, record.id)[-1].event_type == "MARKED_PAID_BY_OWNER"

    def test_paid_is_terminal(self, eligibility_engine, verified, owner_id, pmc_id):
        eligibility_engine.mark_paid(verified.id, "paid", owner_id, Role.OWNER)

        with pytest.raises(AlreadyInStateError):
            eligibility_engine.mark_paid(verified.id, "again", pmc_id, Role.PMC)
        with pytest.raises(AlreadyInStateError):
            eligibility_engine.block(verified.id, BlockingReasonCode.OTHER, "late", owner_id, Role.OWNER)
        with pytest.raises(PreconditionFailedError):
            eligibility_engine.unblock(verified.id, "n/a", owner_id, Role.OWNER)

        for event_type in EligibilityEventType:
            result = eligibility_engine.recalculate(verified.id, owner_id, Role.OWNER, event_type)
            assert result.new_state == E.MARKED_PAID

    def test_paid_survives_drifted_facts(
        self, session, eligibility_engine, verified, owner_id, eligibility_of
    ):
        eligibility_engine.mark_paid(verified.id, "paid", owner_id, Role.OWNER)
        _regress_to_in_progress(session, verified)

        result = eligibility_engine.recalculate(
            verified.id, owner_id, Role.OWNER, EligibilityEventType.RECALCULATION_TRIGGERED
        )
        assert result.new_state == E.MARKED_PAID
        assert eligibility_of(verified.id).paid_explanation == "paid"

    def test_blocked_must_be_unblocked_first(self, eligibility_engine, verified, owner_id):
        eligibility_engine.block(verified.id, BlockingReasonCode.OTHER, "hold", owner_id, Role.OWNER)
        with pytest.raises(AlreadyInStateError) as exc_info:
            eligibility_engine.mark_paid(verified.id, "paid", owner_id, Role.OWNER)
        assert "unblock" in str(exc_info.value)

    def test_not_due_cannot_be_paid(self, eligibility_engine, create_milestone, owner_id):
        milestone = create_milestone()
        with pytest.raises(InvalidTransitionError):
            eligibility_engine.mark_paid(milestone.id, "early", owner_id, Role.OWNER)

    def test_explanation_required(self, eligibility_engine, verified, pmc_id):
        with pytest.raises(ReasonRequiredError):
            eligibility_engine.mark_paid(verified.id, None, pmc_id, Role.PMC)


class TestRetention:

    def test_invalid_automatic_transition_is_retained(
        self, session, eligibility_engine, verified, pmc_id, eligibility_of, captured_logs
    ):
        _regress_to_in_progress(session, verified)

        result = eligibility_engine.recalculate(
            verified.id, pmc_id, Role.PMC, EligibilityEventType.EVIDENCE_APPROVED
        )

        assert result.outcome == ResolutionOutcome.INVALID_RETAINED
        assert result.new_state == E.FULLY_ELIGIBLE
        assert eligibility_of(verified.id).eligibility_state == E.FULLY_ELIGIBLE
        assert retained_transition_counts() == {("FULLY_ELIGIBLE", "NOT_DUE"): 1}
        warnings = [
            r for r in captured_logs() if r["message"] == "eligibility_transition_retained"
        ]
        assert len(warnings) == 1
        assert warnings[0]["level"] == "WARNING"
        assert warnings[0]["candidate_state"] == "NOT_DUE"

    def test_retained_transition_still_writes_trail(
        self, session, eligibility_engine, verified, pmc_id, eligibility_of
    ):
        record = eligibility_of(verified.id)
        events_before = len(_events(session, record.id))
        _regress_to_in_progress(session, verified)

        eligibility_engine.recalculate(
            verified.id, pmc_id, Role.PMC, EligibilityEventType.MILESTONE_STATE_CHANGED
        )

        events = _events(session, record.id)
        assert len(events) == events_before + 1
        assert events[-1].from_state == events[-1].to_state == "FULLY_ELIGIBLE"

    def test_compensating_recalculation_overrides_table(
        self, session, eligibility_engine, verified, owner_id, eligibility_of, captured_logs
    ):
        _regress_to_in_progress(session, verified)

        result = eligibility_engine.recalculate(
            verified.id, owner_id, Role.OWNER, EligibilityEventType.RECALCULATION_TRIGGERED
        )

        assert result.new_state == E.NOT_DUE
        assert result.eligible_amount == Decimal("0")
        assert eligibility_of(verified.id).eligibility_state == E.NOT_DUE
        assert retained_transition_counts() == {}
        assert any(
            r["message"] == "eligibility_transition_overridden" for r in captured_logs()
        )


def test_event_count_matches_audit_count(session, create_milestone, advance_milestone, eligibility_of):
    milestone = create_milestone()
    advance_milestone(milestone.id, MilestoneState.CLOSED)
    record = eligibility_of(milestone.id)

    event_count = session.execute(
        select(func.count(EligibilityEvent.id)).where(EligibilityEvent.eligibility_id == record.id)
    ).scalar_one()
    assert event_count == len(_audit_actions(session, record.id)) == 5
