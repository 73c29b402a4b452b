"""
MilestoneStateMachine -- the milestone delivery lifecycle.

Responsibility:
    Drives milestones through DRAFT -> IN_PROGRESS -> SUBMITTED -> VERIFIED
    -> CLOSED (with the single rejection edge SUBMITTED -> IN_PROGRESS),
    gating every edge by role and, for submission, by the evidence gate.

Architecture position:
    Kernel > Services -- imperative shell around domain/lifecycle.py.
    Emits a typed MilestoneStateChanged event to the eligibility engine in
    the same unit of work, so lifecycle state and payment state never
    diverge.

Invariants enforced:
    - Checks run in a fixed order: not found, edge, role, evidence, reason.
    - A successful transition writes the new state, the actual_* stamp on
      first entry, one MilestoneTransition, one audit entry, and one
      eligibility recalculation.  A failed one writes nothing.
    - Milestone.state is only written inside the lifecycle write grant.

Failure modes:
    - MilestoneNotFoundError, InvalidTransitionError, ForbiddenRoleError,
      PreconditionFailedError, ReasonRequiredError, ValidationError,
      AlreadyInStateError.
    - OptimisticLockError if a concurrent writer bumped the version.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from governance_kernel.db.write_guard import LIFECYCLE_WRITER, write_grant
from governance_kernel.domain.clock import Clock, SystemClock
from governance_kernel.domain.eligibility import HUNDRED, ZERO, EligibilityEventType
from governance_kernel.domain.lifecycle import (
    MANAGING_ROLES,
    MilestoneState,
    MilestoneStateChanged,
    Role,
    allowed_roles,
    coerce_role,
    is_valid_transition,
    requires_reason,
    valid_next_states,
)
from governance_kernel.exceptions import (
    AlreadyInStateError,
    ForbiddenRoleError,
    InvalidTransitionError,
    MilestoneNotFoundError,
    OptimisticLockError,
    PreconditionFailedError,
    ReasonRequiredError,
    ValidationError,
)
from governance_kernel.logging_config import get_logger
from governance_kernel.models.audit_log import AuditActionType
from governance_kernel.models.evidence import Evidence, EvidenceStatus
from governance_kernel.models.milestone import Milestone, MilestoneTransition
from governance_kernel.services.audit_logger import AuditLogger
from governance_kernel.services.eligibility_engine import (
    PaymentEligibilityEngine,
    RecalculationResult,
)
from governance_kernel.services.sequence_service import SequenceService

logger = get_logger("services.lifecycle")

ENTITY_TYPE = "Milestone"
MAX_TITLE_LENGTH = 200

# Lifecycle stamp set on first entry to each state
_ENTRY_STAMPS: dict[MilestoneState, str] = {
    MilestoneState.IN_PROGRESS: "actual_start",
    MilestoneState.SUBMITTED: "actual_submission",
    MilestoneState.VERIFIED: "actual_verification",
}


@dataclass(frozen=True)
class TransitionResult:
    milestone_id: UUID
    previous_state: MilestoneState
    new_state: MilestoneState
    transition_id: UUID
    eligibility: RecalculationResult


def _milestone_snapshot(milestone: Milestone) -> dict[str, Any]:
    return {
        "title": milestone.title,
        "value": milestone.value,
        "advance_percent": milestone.advance_percent,
        "is_extra": milestone.is_extra,
        "extra_approved_at": milestone.extra_approved_at,
        "state": milestone.state,
        "planned_start": milestone.planned_start,
        "planned_end": milestone.planned_end,
        "actual_start": milestone.actual_start,
        "actual_submission": milestone.actual_submission,
        "actual_verification": milestone.actual_verification,
    }


def _to_decimal(field_name: str, value: Any) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(field_name, f"{value!r} is not a decimal amount")
    if not result.is_finite():
        raise ValidationError(field_name, f"{value!r} is not a decimal amount")
    return result


class MilestoneStateMachine:
    """
    Owns milestone lifecycle state.

    Non-goals:
        - Does NOT commit.  The orchestrator owns the transaction boundary.
        - Does NOT compute payment state; it hands a MilestoneStateChanged
          event to the eligibility engine.
    """

    def __init__(
        self,
        session: Session,
        eligibility_engine: PaymentEligibilityEngine,
        clock: Clock | None = None,
    ):
        self._session = session
        self._engine = eligibility_engine
        self._clock = clock or SystemClock()
        self._audit = AuditLogger(session, self._clock)
        self._sequences = SequenceService(session)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _get(self, milestone_id: UUID, lock: bool = False) -> Milestone:
        stmt = select(Milestone).where(Milestone.id == milestone_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        milestone = self._session.execute(stmt).scalar_one_or_none()
        if milestone is None:
            raise MilestoneNotFoundError(str(milestone_id))
        return milestone

    def _count_evidence(self, milestone_id: UUID, status: EvidenceStatus) -> int:
        return self._session.execute(
            select(func.count(Evidence.id)).where(
                Evidence.milestone_id == milestone_id,
                Evidence.status == status.value,
            )
        ).scalar_one()

    def _flush(self, milestone: Milestone) -> None:
        try:
            self._session.flush()
        except StaleDataError:
            raise OptimisticLockError(ENTITY_TYPE, str(milestone.id))

    def _append_transition(
        self,
        milestone: Milestone,
        from_state: MilestoneState | None,
        to_state: MilestoneState,
        actor_id: UUID,
        role: Role,
        reason: str | None,
    ) -> MilestoneTransition:
        transition = MilestoneTransition(
            milestone_id=milestone.id,
            seq=self._sequences.next_value(SequenceService.MILESTONE_TRANSITION),
            from_state=from_state.value if from_state else None,
            to_state=to_state.value,
            actor_id=actor_id,
            actor_role=role.value,
            reason=reason,
            occurred_at=self._clock.now(),
        )
        self._session.add(transition)
        self._session.flush()
        return transition

    # ------------------------------------------------------------------
    # Creation and administration
    # ------------------------------------------------------------------

    def create_milestone(
        self,
        project_id: UUID,
        title: str,
        value: Decimal | int | str,
        actor_id: UUID,
        role: Role,
        advance_percent: Decimal | int | str = ZERO,
        planned_start: date | None = None,
        planned_end: date | None = None,
        is_extra: bool = False,
        description: str | None = None,
    ) -> Milestone:
        """
        Create a DRAFT milestone and its payment eligibility record.

        Postconditions:
            - One initial MilestoneTransition (None -> DRAFT).
            - One MILESTONE_CREATE audit entry.
            - PaymentEligibility exists in NOT_DUE.
        """
        role = coerce_role(role, "create milestones")
        if role not in MANAGING_ROLES:
            raise ForbiddenRoleError(
                role.value, "create milestones", tuple(r.value for r in (Role.OWNER, Role.PMC))
            )

        title = (title or "").strip()
        if not title or len(title) > MAX_TITLE_LENGTH:
            raise ValidationError("title", f"must be 1 to {MAX_TITLE_LENGTH} characters")
        amount = _to_decimal("value", value)
        if amount < ZERO:
            raise ValidationError("value", "must not be negative")
        percent = _to_decimal("advance_percent", advance_percent)
        if percent < ZERO or percent > HUNDRED:
            raise ValidationError("advance_percent", "must be between 0 and 100")
        if planned_start and planned_end and planned_end < planned_start:
            raise ValidationError("planned_end", "must not be before planned_start")

        with write_grant(self._session, LIFECYCLE_WRITER):
            milestone = Milestone(
                project_id=project_id,
                title=title,
                description=description,
                value=amount,
                advance_percent=percent,
                is_extra=is_extra,
                state=MilestoneState.DRAFT.value,
                planned_start=planned_start,
                planned_end=planned_end,
                created_by_id=actor_id,
            )
            self._session.add(milestone)
            self._session.flush()

            transition = self._append_transition(
                milestone, None, MilestoneState.DRAFT, actor_id, role, None
            )
            self._audit.log(
                project_id=project_id,
                actor_id=actor_id,
                role=role,
                action_type=AuditActionType.MILESTONE_CREATE,
                entity_type=ENTITY_TYPE,
                entity_id=milestone.id,
                after=_milestone_snapshot(milestone),
            )

        self._engine.recalculate(
            milestone_id=milestone.id,
            actor_id=actor_id,
            role=role,
            event_type=EligibilityEventType.MILESTONE_STATE_CHANGED,
            trigger_entity_type="MilestoneTransition",
            trigger_entity_id=transition.id,
        )

        logger.info(
            "milestone_created",
            extra={
                "milestone_id": str(milestone.id),
                "project_id": str(project_id),
                "value": str(amount),
                "is_extra": is_extra,
            },
        )
        return milestone

    def approve_extra(self, milestone_id: UUID, actor_id: UUID, role: Role) -> Milestone:
        """Approve a milestone flagged as extra work.  OWNER only."""
        milestone = self._get(milestone_id, lock=True)
        role = coerce_role(role, "approve extra work")
        if role != Role.OWNER:
            raise ForbiddenRoleError(role.value, "approve extra work", (Role.OWNER.value,))
        if not milestone.is_extra:
            raise PreconditionFailedError(str(milestone.id), "Milestone is not extra work")
        if milestone.extra_approved_at is not None:
            raise AlreadyInStateError(
                ENTITY_TYPE, str(milestone.id), "EXTRA_APPROVED",
                "Extra work is already approved",
            )

        before = _milestone_snapshot(milestone)
        milestone.extra_approved_at = self._clock.now()
        milestone.extra_approved_by_id = actor_id
        milestone.updated_by_id = actor_id
        self._flush(milestone)

        self._audit.log(
            project_id=milestone.project_id,
            actor_id=actor_id,
            role=role,
            action_type=AuditActionType.MILESTONE_UPDATE,
            entity_type=ENTITY_TYPE,
            entity_id=milestone.id,
            before=before,
            after=_milestone_snapshot(milestone),
            reason="extra work approved",
        )
        logger.info("extra_work_approved", extra={"milestone_id": str(milestone.id)})
        return milestone

    # ------------------------------------------------------------------
    # Transition
    # ------------------------------------------------------------------

    def transition(
        self,
        milestone_id: UUID,
        to_state: MilestoneState | str,
        actor_id: UUID,
        role: Role,
        reason: str | None = None,
    ) -> TransitionResult:
        """
        Move a milestone along one lifecycle edge.

        Preconditions (checked in this order):
            1. The milestone exists.
            2. ``to_state`` is adjacent to the current state.
            3. ``role`` is on the edge's allow-list.
            4. Entering SUBMITTED: at least one SUBMITTED evidence record.
            5. The rejection edge carries a non-empty reason.

        Postconditions:
            - Returns the previous and new state; never a silent no-op.
        """
        milestone = self._get(milestone_id, lock=True)
        current = milestone.lifecycle_state

        try:
            target = MilestoneState(to_state)
        except ValueError:
            raise InvalidTransitionError(ENTITY_TYPE, current.value, str(to_state))

        if not is_valid_transition(current, target):
            raise InvalidTransitionError(ENTITY_TYPE, current.value, target.value)

        action = f"move a milestone from {current.value} to {target.value}"
        role = coerce_role(role, action)
        permitted = allowed_roles(current, target)
        if role not in permitted:
            raise ForbiddenRoleError(
                role.value,
                action,
                tuple(sorted(r.value for r in permitted)),
            )

        if target == MilestoneState.SUBMITTED:
            if self._count_evidence(milestone.id, EvidenceStatus.SUBMITTED) == 0:
                raise PreconditionFailedError(
                    str(milestone.id), "Evidence is mandatory for submission"
                )

        if requires_reason(current, target):
            if reason is None or not reason.strip():
                raise ReasonRequiredError(action="reject a submitted milestone")
            reason = reason.strip()

        before = _milestone_snapshot(milestone)
        now = self._clock.now()

        with write_grant(self._session, LIFECYCLE_WRITER):
            milestone.state = target.value
            stamp = _ENTRY_STAMPS.get(target)
            if stamp and getattr(milestone, stamp) is None:
                setattr(milestone, stamp, now)
            milestone.updated_by_id = actor_id
            self._flush(milestone)

            transition = self._append_transition(
                milestone, current, target, actor_id, role, reason
            )
            self._audit.log(
                project_id=milestone.project_id,
                actor_id=actor_id,
                role=role,
                action_type=AuditActionType.MILESTONE_STATE_TRANSITION,
                entity_type=ENTITY_TYPE,
                entity_id=milestone.id,
                before=before,
                after=_milestone_snapshot(milestone),
                reason=reason,
            )

        eligibility = self._engine.apply_milestone_state_changed(
            MilestoneStateChanged(
                milestone_id=milestone.id,
                from_state=current,
                to_state=target,
                actor_id=actor_id,
                role=role,
                occurred_at=now,
                transition_id=transition.id,
                reason=reason,
            )
        )

        logger.info(
            "milestone_transitioned",
            extra={
                "milestone_id": str(milestone.id),
                "from_state": current.value,
                "to_state": target.value,
                "role": role.value,
                "eligibility_state": eligibility.new_state.value,
            },
        )
        return TransitionResult(
            milestone_id=milestone.id,
            previous_state=current,
            new_state=target,
            transition_id=transition.id,
            eligibility=eligibility,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def valid_next_states_for(
        self, milestone_id: UUID, role: Role
    ) -> tuple[MilestoneState, ...]:
        milestone = self._get(milestone_id)
        return valid_next_states(
            milestone.lifecycle_state, coerce_role(role, "move milestones")
        )

    def can_submit(self, milestone_id: UUID) -> tuple[bool, str | None]:
        milestone = self._get(milestone_id)
        if milestone.lifecycle_state != MilestoneState.IN_PROGRESS:
            return False, f"Milestone must be IN_PROGRESS, currently {milestone.state}"
        if self._count_evidence(milestone.id, EvidenceStatus.SUBMITTED) == 0:
            return False, "Evidence is mandatory for submission"
        return True, None

    def can_verify(self, milestone_id: UUID) -> tuple[bool, str | None]:
        milestone = self._get(milestone_id)
        if milestone.lifecycle_state != MilestoneState.SUBMITTED:
            return False, f"Milestone must be SUBMITTED, currently {milestone.state}"
        if self._count_evidence(milestone.id, EvidenceStatus.APPROVED) == 0:
            return False, "At least one approved evidence record is required"
        return True, None

    def get_transition_history(self, milestone_id: UUID) -> list[MilestoneTransition]:
        self._get(milestone_id)
        return list(
            self._session.execute(
                select(MilestoneTransition)
                .where(MilestoneTransition.milestone_id == milestone_id)
                .order_by(MilestoneTransition.seq)
            ).scalars()
        )
