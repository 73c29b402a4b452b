"""
PaymentEligibilityEngine -- the single writer of payment state.

Responsibility:
    Computes and stores ``state``, ``eligible_amount`` and ``blocked_amount``
    for every milestone's PaymentEligibility record.  Two entry paths:

    * ``recalculate`` -- machine-triggered, from milestone lifecycle
      transitions (via the typed MilestoneStateChanged event) and evidence
      review.  Degrades safely: an invalid candidate is retained, logged and
      counted, never raised.
    * ``block`` / ``unblock`` / ``mark_paid`` -- human handlers, role-gated
      and reason-mandatory.  They are the only way into or out of BLOCKED
      and MARKED_PAID.

Architecture position:
    Kernel > Services -- imperative shell around domain/eligibility.py.
    The pure decisions (amounts, stickiness, table) live in the domain
    layer; this module loads, locks, writes, and records.

Invariants enforced:
    - Single writer: every PaymentEligibility insert or update happens inside
      ``write_grant(session, ELIGIBILITY_WRITER)``; the before_flush guard
      rejects any other write path.
    - Every mutation writes exactly one EligibilityEvent and exactly one
      AuditLogEntry in the same flush sequence as the state change.
    - Row locks are taken milestone first, then eligibility, on every path.

Failure modes:
    - MilestoneNotFoundError, ForbiddenRoleError, ReasonRequiredError,
      AlreadyInStateError, PreconditionFailedError, InvalidTransitionError
      from the human handlers.
    - recalculate() raises only MilestoneNotFoundError or storage errors.
"""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from governance_kernel.db.write_guard import ELIGIBILITY_WRITER, write_grant
from governance_kernel.domain.clock import Clock, SystemClock
from governance_kernel.domain.eligibility import (
    ZERO,
    BlockingReasonCode,
    EligibilityEventType,
    EligibilityState,
    MilestoneFacts,
    ResolutionOutcome,
    StateResolution,
    blocked_amount_for,
    compute_raw,
    is_valid_eligibility_transition,
    resolve_state,
)
from governance_kernel.domain.lifecycle import (
    MANAGING_ROLES,
    MilestoneStateChanged,
    Role,
    coerce_role,
)
from governance_kernel.exceptions import (
    AlreadyInStateError,
    ForbiddenRoleError,
    InvalidTransitionError,
    MilestoneNotFoundError,
    PreconditionFailedError,
    ReasonRequiredError,
    ValidationError,
)
from governance_kernel.logging_config import get_logger
from governance_kernel.models.audit_log import AuditActionType
from governance_kernel.models.eligibility import EligibilityEvent, PaymentEligibility
from governance_kernel.models.milestone import Milestone
from governance_kernel.services.audit_logger import AuditLogger
from governance_kernel.services.sequence_service import SequenceService

logger = get_logger("services.eligibility")

ENTITY_TYPE = "PaymentEligibility"


# =========================================================================
# Retention observability
# =========================================================================

_retention_lock = threading.Lock()
_retained_transitions: Counter[tuple[str, str]] = Counter()


def _record_retention(from_state: EligibilityState, to_state: EligibilityState) -> None:
    with _retention_lock:
        _retained_transitions[(from_state.value, to_state.value)] += 1


def retained_transition_counts() -> dict[tuple[str, str], int]:
    """Invalid automatic transitions retained since start, by (from, to)."""
    with _retention_lock:
        return dict(_retained_transitions)


def reset_retention_counts() -> None:
    """FOR TESTING ONLY."""
    with _retention_lock:
        _retained_transitions.clear()


# =========================================================================
# Results
# =========================================================================


@dataclass(frozen=True)
class RecalculationResult:
    """Outcome of one automatic recalculation."""

    eligibility_id: UUID
    milestone_id: UUID
    previous_state: EligibilityState | None
    new_state: EligibilityState
    outcome: ResolutionOutcome
    eligible_amount: Decimal
    blocked_amount: Decimal
    event_id: UUID
    audit_entry_id: UUID

    @property
    def changed(self) -> bool:
        return self.previous_state != self.new_state


def _snapshot(record: PaymentEligibility) -> dict[str, Any]:
    return {
        "state": record.state,
        "eligible_amount": record.eligible_amount,
        "blocked_amount": record.blocked_amount,
        "advance_amount": record.advance_amount,
        "remaining_amount": record.remaining_amount,
        "due_date": record.due_date,
        "block_reason_code": record.block_reason_code,
        "paid_explanation": record.paid_explanation,
    }


def _clear_block_fields(record: PaymentEligibility) -> None:
    record.block_reason_code = None
    record.block_explanation = None
    record.blocked_by_id = None
    record.blocked_at = None


def _clear_paid_fields(record: PaymentEligibility) -> None:
    record.paid_explanation = None
    record.paid_by_id = None
    record.paid_at = None


def _require_text(value: str | None, action: str, field_name: str) -> str:
    if value is None or not value.strip():
        raise ReasonRequiredError(action=action, field_name=field_name)
    return value.strip()


class PaymentEligibilityEngine:
    """
    The only component that writes payment state.

    Non-goals:
        - Does NOT commit.  The orchestrator owns the transaction boundary.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._audit = AuditLogger(session, self._clock)
        self._sequences = SequenceService(session)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _lock_milestone(self, milestone_id: UUID) -> Milestone:
        milestone = self._session.execute(
            select(Milestone)
            .where(Milestone.id == milestone_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if milestone is None:
            raise MilestoneNotFoundError(str(milestone_id))
        return milestone

    def _lock_eligibility(self, milestone_id: UUID) -> PaymentEligibility | None:
        return self._session.execute(
            select(PaymentEligibility)
            .where(PaymentEligibility.milestone_id == milestone_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _lock_pair(self, milestone_id: UUID) -> tuple[Milestone, PaymentEligibility]:
        milestone = self._lock_milestone(milestone_id)
        record = self._lock_eligibility(milestone_id)
        if record is None:
            raise PreconditionFailedError(
                str(milestone_id), "Payment eligibility record has not been calculated"
            )
        return milestone, record

    # ------------------------------------------------------------------
    # Trail
    # ------------------------------------------------------------------

    def _append_event(
        self,
        record: PaymentEligibility,
        event_type: EligibilityEventType,
        from_state: EligibilityState | None,
        to_state: EligibilityState,
        actor_id: UUID,
        role: Role,
        amount_before: Decimal | None,
        reason_code: BlockingReasonCode | None = None,
        explanation: str | None = None,
        trigger_entity_type: str | None = None,
        trigger_entity_id: UUID | None = None,
    ) -> EligibilityEvent:
        event = EligibilityEvent(
            eligibility_id=record.id,
            seq=self._sequences.next_value(SequenceService.ELIGIBILITY_EVENT),
            event_type=event_type.value,
            from_state=from_state.value if from_state else None,
            to_state=to_state.value,
            actor_id=actor_id,
            actor_role=role.value,
            amount_before=amount_before,
            amount_after=record.eligible_amount,
            reason_code=reason_code.value if reason_code else None,
            explanation=explanation,
            trigger_entity_type=trigger_entity_type,
            trigger_entity_id=trigger_entity_id,
            occurred_at=self._clock.now(),
        )
        self._session.add(event)
        self._session.flush()
        return event

    # ------------------------------------------------------------------
    # Machine path
    # ------------------------------------------------------------------

    def apply_milestone_state_changed(self, event: MilestoneStateChanged) -> RecalculationResult:
        """Recalculate in response to a lifecycle transition."""
        return self.recalculate(
            milestone_id=event.milestone_id,
            actor_id=event.actor_id,
            role=event.role,
            event_type=EligibilityEventType.MILESTONE_STATE_CHANGED,
            trigger_entity_type="MilestoneTransition" if event.transition_id else "Milestone",
            trigger_entity_id=event.transition_id or event.milestone_id,
        )

    def recalculate(
        self,
        milestone_id: UUID,
        actor_id: UUID,
        role: Role,
        event_type: EligibilityEventType,
        trigger_entity_type: str | None = None,
        trigger_entity_id: UUID | None = None,
        reason: str | None = None,
    ) -> RecalculationResult:
        """
        Recompute the eligibility record of one milestone from its facts.

        Algorithm:
            1. Lock milestone, then its eligibility record (if any).
            2. compute_raw() from milestone facts only.
            3. resolve_state(): stickiness, then table validation, with
               retention instead of failure on the automatic path.
            4. Upsert amounts and final state; blocked_amount follows state.
            5. Append one EligibilityEvent and one AuditLogEntry.

        Postconditions:
            - Calling twice with no fact change stores the same state and
              amounts both times.
        """
        role = coerce_role(role, "recalculate payments")
        with write_grant(self._session, ELIGIBILITY_WRITER):
            milestone = self._lock_milestone(milestone_id)
            record = self._lock_eligibility(milestone_id)

            raw = compute_raw(
                MilestoneFacts(
                    lifecycle_state=milestone.lifecycle_state,
                    value=milestone.value,
                    advance_percent=milestone.advance_percent,
                    planned_end=milestone.planned_end,
                )
            )

            previous_state = record.eligibility_state if record is not None else None
            before = _snapshot(record) if record is not None else None
            amount_before = record.eligible_amount if record is not None else None

            resolution = resolve_state(previous_state, raw.candidate_state, event_type)
            self._observe(milestone_id, previous_state, resolution, event_type)

            if record is None:
                record = PaymentEligibility(
                    milestone_id=milestone.id,
                    project_id=milestone.project_id,
                    created_by_id=actor_id,
                )
                self._session.add(record)

            final_state = resolution.final_state
            record.state = final_state.value
            record.eligible_amount = raw.eligible_amount
            record.blocked_amount = blocked_amount_for(final_state, raw.eligible_amount)
            record.advance_amount = raw.advance_amount
            record.remaining_amount = raw.remaining_amount
            record.boq_value_completed = raw.boq_value_completed
            record.deductions = ZERO
            record.due_date = raw.due_date
            if final_state != EligibilityState.BLOCKED:
                _clear_block_fields(record)
            if final_state != EligibilityState.MARKED_PAID:
                _clear_paid_fields(record)
            record.last_calculated_at = self._clock.now()
            record.updated_by_id = actor_id
            self._session.flush()

            event = self._append_event(
                record,
                event_type,
                previous_state,
                final_state,
                actor_id,
                role,
                amount_before,
                explanation=reason,
                trigger_entity_type=trigger_entity_type,
                trigger_entity_id=trigger_entity_id,
            )

            unblocking = event_type == EligibilityEventType.UNBLOCKED_BY_OWNER
            audit_entry = self._audit.log(
                project_id=milestone.project_id,
                actor_id=actor_id,
                role=role,
                action_type=(
                    AuditActionType.ELIGIBILITY_UNBLOCKED
                    if unblocking
                    else AuditActionType.ELIGIBILITY_RECALCULATED
                ),
                entity_type=ENTITY_TYPE,
                entity_id=record.id,
                before=before,
                after={**_snapshot(record), "event_type": event_type.value},
                reason=reason,
            )

        result = RecalculationResult(
            eligibility_id=record.id,
            milestone_id=milestone.id,
            previous_state=previous_state,
            new_state=final_state,
            outcome=resolution.outcome,
            eligible_amount=record.eligible_amount,
            blocked_amount=record.blocked_amount,
            event_id=event.id,
            audit_entry_id=audit_entry.id,
        )
        logger.info(
            "eligibility_recalculated",
            extra={
                "milestone_id": str(milestone_id),
                "event_type": event_type.value,
                "from_state": previous_state.value if previous_state else None,
                "to_state": final_state.value,
                "changed": result.changed,
                "outcome": resolution.outcome.value,
                "eligible_amount": str(record.eligible_amount),
            },
        )
        return result

    def _observe(
        self,
        milestone_id: UUID,
        previous_state: EligibilityState | None,
        resolution: StateResolution,
        event_type: EligibilityEventType,
    ) -> None:
        if previous_state is None:
            return
        extra = {
            "milestone_id": str(milestone_id),
            "stored_state": previous_state.value,
            "candidate_state": resolution.candidate_state.value,
            "event_type": event_type.value,
        }
        if resolution.outcome == ResolutionOutcome.INVALID_RETAINED:
            _record_retention(previous_state, resolution.candidate_state)
            logger.warning("eligibility_transition_retained", extra=extra)
        elif resolution.outcome == ResolutionOutcome.STICKY_RETAINED:
            logger.info("eligibility_override_retained", extra=extra)
        elif resolution.overridden:
            logger.warning("eligibility_transition_overridden", extra=extra)

    # ------------------------------------------------------------------
    # Human handlers
    # ------------------------------------------------------------------

    def block(
        self,
        milestone_id: UUID,
        reason_code: BlockingReasonCode | str,
        explanation: str | None,
        actor_id: UUID,
        role: Role,
    ) -> PaymentEligibility:
        """Block an eligible payment.  OWNER or PMC; explanation required."""
        with write_grant(self._session, ELIGIBILITY_WRITER):
            milestone, record = self._lock_pair(milestone_id)
            role = coerce_role(role, "block payments")
            if role not in MANAGING_ROLES:
                raise ForbiddenRoleError(
                    role.value, "block payments", tuple(r.value for r in (Role.OWNER, Role.PMC))
                )
            text = _require_text(explanation, "block a payment", "explanation")
            try:
                code = BlockingReasonCode(reason_code)
            except ValueError:
                raise ValidationError("reason_code", f"unknown blocking reason {reason_code!r}")

            current = record.eligibility_state
            if current == EligibilityState.MARKED_PAID:
                raise AlreadyInStateError(
                    ENTITY_TYPE, str(record.id), current.value,
                    "Cannot block a payment that is already marked paid",
                )
            if current == EligibilityState.BLOCKED:
                raise AlreadyInStateError(
                    ENTITY_TYPE, str(record.id), current.value, "Payment is already blocked"
                )
            if not is_valid_eligibility_transition(current, EligibilityState.BLOCKED):
                raise InvalidTransitionError(
                    ENTITY_TYPE, current.value, EligibilityState.BLOCKED.value
                )

            before = _snapshot(record)
            now = self._clock.now()
            record.state = EligibilityState.BLOCKED.value
            record.blocked_amount = record.eligible_amount
            record.block_reason_code = code.value
            record.block_explanation = text
            record.blocked_by_id = actor_id
            record.blocked_at = now
            record.updated_by_id = actor_id
            self._session.flush()

            event_type = (
                EligibilityEventType.BLOCKED_BY_OWNER
                if role == Role.OWNER
                else EligibilityEventType.BLOCKED_BY_PMC
            )
            self._append_event(
                record, event_type, current, EligibilityState.BLOCKED, actor_id, role,
                record.eligible_amount, reason_code=code, explanation=text,
            )
            self._audit.log(
                project_id=milestone.project_id,
                actor_id=actor_id,
                role=role,
                action_type=AuditActionType.ELIGIBILITY_BLOCKED,
                entity_type=ENTITY_TYPE,
                entity_id=record.id,
                before=before,
                after=_snapshot(record),
                reason=f"{code.value}: {text}",
            )

        logger.info(
            "payment_blocked",
            extra={
                "milestone_id": str(milestone_id),
                "reason_code": code.value,
                "blocked_amount": str(record.blocked_amount),
            },
        )
        return record

    def unblock(
        self,
        milestone_id: UUID,
        reason: str | None,
        actor_id: UUID,
        role: Role,
    ) -> RecalculationResult:
        """Lift a block.  OWNER only; the state falls through to the raw facts."""
        with write_grant(self._session, ELIGIBILITY_WRITER):
            milestone, record = self._lock_pair(milestone_id)
            role = coerce_role(role, "unblock payments")
            if role != Role.OWNER:
                raise ForbiddenRoleError(role.value, "unblock payments", (Role.OWNER.value,))
            text = _require_text(reason, "unblock a payment", "reason")
            if record.eligibility_state != EligibilityState.BLOCKED:
                raise PreconditionFailedError(str(record.id), "Payment is not blocked")

            result = self.recalculate(
                milestone_id=milestone.id,
                actor_id=actor_id,
                role=role,
                event_type=EligibilityEventType.UNBLOCKED_BY_OWNER,
                trigger_entity_type=ENTITY_TYPE,
                trigger_entity_id=record.id,
                reason=text,
            )

        logger.info(
            "payment_unblocked",
            extra={"milestone_id": str(milestone_id), "new_state": result.new_state.value},
        )
        return result

    def mark_paid(
        self,
        milestone_id: UUID,
        explanation: str | None,
        actor_id: UUID,
        role: Role,
    ) -> PaymentEligibility:
        """Record payment.  OWNER or PMC; MARKED_PAID is terminal."""
        with write_grant(self._session, ELIGIBILITY_WRITER):
            milestone, record = self._lock_pair(milestone_id)
            role = coerce_role(role, "mark payments as paid")
            if role not in MANAGING_ROLES:
                raise ForbiddenRoleError(
                    role.value, "mark payments as paid",
                    tuple(r.value for r in (Role.OWNER, Role.PMC)),
                )
            text = _require_text(explanation, "mark a payment as paid", "explanation")

            current = record.eligibility_state
            if current == EligibilityState.BLOCKED:
                raise AlreadyInStateError(
                    ENTITY_TYPE, str(record.id), current.value,
                    "Payment is blocked; unblock it before marking it paid",
                )
            if current == EligibilityState.MARKED_PAID:
                raise AlreadyInStateError(
                    ENTITY_TYPE, str(record.id), current.value, "Payment is already marked paid"
                )
            if not is_valid_eligibility_transition(current, EligibilityState.MARKED_PAID):
                raise InvalidTransitionError(
                    ENTITY_TYPE, current.value, EligibilityState.MARKED_PAID.value
                )

            before = _snapshot(record)
            record.state = EligibilityState.MARKED_PAID.value
            record.blocked_amount = ZERO
            record.paid_explanation = text
            record.paid_by_id = actor_id
            record.paid_at = self._clock.now()
            record.updated_by_id = actor_id
            self._session.flush()

            event_type = (
                EligibilityEventType.MARKED_PAID_BY_OWNER
                if role == Role.OWNER
                else EligibilityEventType.MARKED_PAID_BY_PMC
            )
            self._append_event(
                record, event_type, current, EligibilityState.MARKED_PAID, actor_id, role,
                record.eligible_amount, explanation=text,
            )
            self._audit.log(
                project_id=milestone.project_id,
                actor_id=actor_id,
                role=role,
                action_type=AuditActionType.ELIGIBILITY_MARKED_PAID,
                entity_type=ENTITY_TYPE,
                entity_id=record.id,
                before=before,
                after=_snapshot(record),
                reason=text,
            )

        logger.info(
            "payment_marked_paid",
            extra={"milestone_id": str(milestone_id), "amount": str(record.eligible_amount)},
        )
        return record
