"""
End-to-end payment governance scenarios.

Every step goes through the GovernanceOrchestrator, the way a calling
application would drive it:

- Happy path: DRAFT through CLOSED, eligibility follows, owner marks paid
- The evidence gate blocks submission until evidence exists
- A rejected submission needs a reason and returns work to the vendor
- A human block survives lifecycle movement until the owner lifts it
- MARKED_PAID is terminal for payments
- The audit chain validates after a full run
"""

from datetime import date
from decimal import Decimal

import pytest

from governance_kernel.domain.eligibility import BlockingReasonCode, EligibilityState
from governance_kernel.domain.indicator import PaymentIndicator
from governance_kernel.domain.lifecycle import MilestoneState, Role
from governance_kernel.services.governance_orchestrator import FailureKind

from tests.conftest import sample_files


@pytest.fixture
def ids(owner_id, pmc_id, vendor_id):
    return {"owner": owner_id, "pmc": pmc_id, "vendor": vendor_id}


@pytest.fixture
def milestone_id(orchestrator, project_id, ids):
    result = orchestrator.create_milestone(
        project_id=project_id,
        title="Level 3 slab",
        value=Decimal("12000"),
        actor_id=ids["owner"],
        role=Role.OWNER,
        advance_percent=Decimal("25"),
        planned_end=date(2024, 1, 5),
    )
    assert result.success, result.message
    return result.value


def _ok(result):
    assert result.success, f"{result.error}: {result.message}"
    return result


def _submit_and_approve(orchestrator, milestone_id, ids, deterministic_clock):
    evidence = _ok(
        orchestrator.submit_evidence(
            milestone_id, ids["vendor"], Role.VENDOR, Decimal("100"), sample_files(2)
        )
    )
    deterministic_clock.advance(3600)
    _ok(orchestrator.transition_milestone(
        milestone_id, MilestoneState.SUBMITTED, ids["vendor"], Role.VENDOR
    ))
    deterministic_clock.advance(3600)
    _ok(orchestrator.review_evidence(evidence.value, ids["pmc"], Role.PMC, approve=True))
    return evidence.value


def _drive_to_verified(orchestrator, milestone_id, ids, deterministic_clock):
    _ok(orchestrator.transition_milestone(
        milestone_id, MilestoneState.IN_PROGRESS, ids["vendor"], Role.VENDOR
    ))
    _submit_and_approve(orchestrator, milestone_id, ids, deterministic_clock)
    deterministic_clock.advance(3600)
    _ok(orchestrator.transition_milestone(
        milestone_id, MilestoneState.VERIFIED, ids["pmc"], Role.PMC
    ))


def _state(orchestrator, milestone_id) -> EligibilityState:
    return _ok(orchestrator.get_eligibility(milestone_id)).value.record.state


class TestHappyPath:

    def test_draft_to_paid(self, orchestrator, milestone_id, ids, deterministic_clock):
        assert _state(orchestrator, milestone_id) == EligibilityState.NOT_DUE

        _drive_to_verified(orchestrator, milestone_id, ids, deterministic_clock)
        view = _ok(orchestrator.get_eligibility(milestone_id)).value
        assert view.record.state == EligibilityState.FULLY_ELIGIBLE
        assert view.record.eligible_amount == Decimal("12000")
        assert view.record.advance_amount == Decimal("3000")
        assert view.record.remaining_amount == Decimal("9000")
        assert view.record.blocked_amount == Decimal("0")

        _ok(orchestrator.transition_milestone(
            milestone_id, MilestoneState.CLOSED, ids["owner"], Role.OWNER
        ))
        assert _state(orchestrator, milestone_id) == EligibilityState.FULLY_ELIGIBLE

        paid = _ok(orchestrator.mark_paid(milestone_id, "Wire 2024-001", ids["owner"], Role.OWNER))
        assert paid.new_state == EligibilityState.MARKED_PAID.value

        view = _ok(orchestrator.get_eligibility(milestone_id)).value
        assert view.indicator.indicator == PaymentIndicator.PAID
        assert view.record.paid_explanation == "Wire 2024-001"
        assert view.record.paid_by_id == ids["owner"]

    def test_history_records_every_edge(self, orchestrator, milestone_id, ids, deterministic_clock):
        _drive_to_verified(orchestrator, milestone_id, ids, deterministic_clock)
        history = _ok(orchestrator.get_transition_history(milestone_id)).value
        assert [t.to_state for t in history] == [
            MilestoneState.DRAFT,
            MilestoneState.IN_PROGRESS,
            MilestoneState.SUBMITTED,
            MilestoneState.VERIFIED,
        ]
        assert [t.seq for t in history] == sorted(t.seq for t in history)

    def test_milestone_read_reflects_stamps(self, orchestrator, milestone_id, ids, deterministic_clock):
        _drive_to_verified(orchestrator, milestone_id, ids, deterministic_clock)
        record = _ok(orchestrator.get_milestone(milestone_id)).value
        assert record.state == MilestoneState.VERIFIED
        assert record.actual_start is not None
        assert record.actual_submission is not None
        assert record.actual_verification is not None
        assert record.actual_start <= record.actual_submission <= record.actual_verification


class TestEvidenceGate:

    def test_submission_without_evidence_fails(self, orchestrator, milestone_id, ids):
        _ok(orchestrator.transition_milestone(
            milestone_id, MilestoneState.IN_PROGRESS, ids["vendor"], Role.VENDOR
        ))
        result = orchestrator.transition_milestone(
            milestone_id, MilestoneState.SUBMITTED, ids["vendor"], Role.VENDOR
        )
        assert not result.success
        assert result.error == FailureKind.PRECONDITION_FAILED
        assert _ok(orchestrator.get_milestone(milestone_id)).value.state == MilestoneState.IN_PROGRESS

    def test_next_states_follow_role(self, orchestrator, milestone_id, ids, deterministic_clock):
        _ok(orchestrator.transition_milestone(
            milestone_id, MilestoneState.IN_PROGRESS, ids["vendor"], Role.VENDOR
        ))
        _submit_and_approve(orchestrator, milestone_id, ids, deterministic_clock)

        assert _ok(orchestrator.get_valid_next_states(milestone_id, Role.VENDOR)).value == ()
        assert set(_ok(orchestrator.get_valid_next_states(milestone_id, Role.PMC)).value) == {
            MilestoneState.VERIFIED,
            MilestoneState.IN_PROGRESS,
        }


class TestRejection:

    def test_rejection_requires_reason(self, orchestrator, milestone_id, ids, deterministic_clock):
        _ok(orchestrator.transition_milestone(
            milestone_id, MilestoneState.IN_PROGRESS, ids["vendor"], Role.VENDOR
        ))
        orchestrator.submit_evidence(
            milestone_id, ids["vendor"], Role.VENDOR, Decimal("80"), sample_files()
        )
        _ok(orchestrator.transition_milestone(
            milestone_id, MilestoneState.SUBMITTED, ids["vendor"], Role.VENDOR
        ))

        result = orchestrator.transition_milestone(
            milestone_id, MilestoneState.IN_PROGRESS, ids["pmc"], Role.PMC, reason="   "
        )
        assert result.error == FailureKind.REASON_REQUIRED

        result = _ok(orchestrator.transition_milestone(
            milestone_id,
            MilestoneState.IN_PROGRESS,
            ids["pmc"],
            Role.PMC,
            reason="Rebar spacing out of tolerance",
        ))
        assert result.previous_state == "SUBMITTED"
        assert result.new_state == "IN_PROGRESS"

        history = _ok(orchestrator.get_transition_history(milestone_id)).value
        assert history[-1].reason == "Rebar spacing out of tolerance"
        assert _state(orchestrator, milestone_id) == EligibilityState.NOT_DUE


class TestBlocking:

    def test_block_sticks_across_close_until_unblocked(
        self, orchestrator, milestone_id, ids, deterministic_clock
    ):
        _drive_to_verified(orchestrator, milestone_id, ids, deterministic_clock)

        blocked = _ok(orchestrator.block_payment(
            milestone_id,
            BlockingReasonCode.QUALITY_ISSUE,
            "Cracks in slab soffit",
            ids["pmc"],
            Role.PMC,
        ))
        assert blocked.new_state == EligibilityState.BLOCKED.value

        _ok(orchestrator.transition_milestone(
            milestone_id, MilestoneState.CLOSED, ids["pmc"], Role.PMC
        ))
        view = _ok(orchestrator.get_eligibility(milestone_id)).value
        assert view.record.state == EligibilityState.BLOCKED
        assert view.record.blocked_amount == Decimal("12000")
        assert view.record.block_reason_code == BlockingReasonCode.QUALITY_ISSUE
        assert view.indicator.indicator == PaymentIndicator.BLOCKED

        result = orchestrator.mark_paid(milestone_id, "early", ids["owner"], Role.OWNER)
        assert result.error == FailureKind.ALREADY_IN_STATE

        result = orchestrator.unblock_payment(milestone_id, "Repaired", ids["pmc"], Role.PMC)
        assert result.error == FailureKind.FORBIDDEN

        unblocked = _ok(orchestrator.unblock_payment(
            milestone_id, "Repair signed off", ids["owner"], Role.OWNER
        ))
        assert unblocked.previous_state == EligibilityState.BLOCKED.value
        assert unblocked.new_state == EligibilityState.FULLY_ELIGIBLE.value

        record = _ok(orchestrator.get_eligibility(milestone_id)).value.record
        assert record.blocked_amount == Decimal("0")
        assert record.block_reason_code is None

    def test_cannot_block_before_eligible(self, orchestrator, milestone_id, ids):
        result = orchestrator.block_payment(
            milestone_id, BlockingReasonCode.DISPUTE_PENDING, "Scope dispute", ids["owner"], Role.OWNER
        )
        assert result.error == FailureKind.INVALID_TRANSITION
        assert _state(orchestrator, milestone_id) == EligibilityState.NOT_DUE


class TestPaidIsTerminal:

    def test_nothing_moves_a_paid_record(self, orchestrator, milestone_id, ids, deterministic_clock):
        _drive_to_verified(orchestrator, milestone_id, ids, deterministic_clock)
        _ok(orchestrator.mark_paid(milestone_id, "Cheque 88", ids["pmc"], Role.PMC))

        again = orchestrator.mark_paid(milestone_id, "Cheque 89", ids["owner"], Role.OWNER)
        assert again.error == FailureKind.ALREADY_IN_STATE

        block = orchestrator.block_payment(
            milestone_id, BlockingReasonCode.OTHER, "late", ids["owner"], Role.OWNER
        )
        assert block.error == FailureKind.ALREADY_IN_STATE

        _ok(orchestrator.transition_milestone(
            milestone_id, MilestoneState.CLOSED, ids["owner"], Role.OWNER
        ))
        _ok(orchestrator.recalculate_eligibility(milestone_id, ids["owner"], Role.OWNER))
        assert _state(orchestrator, milestone_id) == EligibilityState.MARKED_PAID


class TestIndicator:

    def test_overdue_once_eligible_past_planned_end(
        self, orchestrator, milestone_id, ids, deterministic_clock
    ):
        _drive_to_verified(orchestrator, milestone_id, ids, deterministic_clock)
        deterministic_clock.advance(7 * 86400)

        indicator = _ok(orchestrator.get_eligibility(milestone_id)).value.indicator
        assert indicator.indicator == PaymentIndicator.OVERDUE
        assert indicator.is_urgent
        assert indicator.days_overdue == 3

    def test_project_view_lists_every_milestone(self, orchestrator, project_id, milestone_id, ids):
        _ok(orchestrator.create_milestone(
            project_id=project_id,
            title="Roof membrane",
            value=Decimal("4000"),
            actor_id=ids["pmc"],
            role=Role.PMC,
        ))
        views = _ok(orchestrator.get_project_eligibilities(project_id)).value
        assert len(views) == 2
        assert {v.indicator.indicator for v in views} == {PaymentIndicator.NOT_DUE}


class TestAuditTrail:

    def test_full_run_leaves_a_valid_chain(
        self, orchestrator, project_id, milestone_id, ids, deterministic_clock
    ):
        _drive_to_verified(orchestrator, milestone_id, ids, deterministic_clock)
        _ok(orchestrator.block_payment(
            milestone_id, BlockingReasonCode.BUDGET_HOLD, "Quarter end", ids["owner"], Role.OWNER
        ))
        _ok(orchestrator.unblock_payment(milestone_id, "Released", ids["owner"], Role.OWNER))
        _ok(orchestrator.mark_paid(milestone_id, "Wire 7", ids["owner"], Role.OWNER))

        assert orchestrator.validate_audit_chain() is True

        entries = _ok(orchestrator.query_audit_log(project_id, entity_id=milestone_id)).value
        assert entries
        assert [e.seq for e in entries] == sorted((e.seq for e in entries), reverse=True)

        csv_text = _ok(orchestrator.export_audit_log_csv(project_id)).value
        assert csv_text.splitlines()[0].startswith("Timestamp,Actor,Role")
