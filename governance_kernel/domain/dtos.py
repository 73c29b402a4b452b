"""
DTOs -- read-side data transfer objects.

Responsibility:
    Immutable snapshots of persisted governance records handed to callers by
    selectors and the orchestrator: milestones, transitions, eligibility
    records and events, the combined eligibility view, and audit entries.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  ``from_model()`` class methods are
    boundary converters invoked only by selectors.

Invariants enforced:
    - Enum-valued fields are coerced back to their enum on conversion, so a
      caller never sees the raw stored string.
    - An EligibilityView carries the same payload whoever asks for it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from governance_kernel.domain.eligibility import (
    BlockingReasonCode,
    EligibilityEventType,
    EligibilityState,
)
from governance_kernel.domain.indicator import EligibilitySnapshot, IndicatorResult
from governance_kernel.domain.lifecycle import MilestoneState, Role

if TYPE_CHECKING:
    from governance_kernel.models.audit_log import AuditLogEntry as AuditLogEntryModel
    from governance_kernel.models.eligibility import (
        EligibilityEvent as EligibilityEventModel,
    )
    from governance_kernel.models.eligibility import (
        PaymentEligibility as PaymentEligibilityModel,
    )
    from governance_kernel.models.milestone import Milestone as MilestoneModel
    from governance_kernel.models.milestone import (
        MilestoneTransition as MilestoneTransitionModel,
    )


@dataclass(frozen=True)
class MilestoneRecord:
    id: UUID
    project_id: UUID
    title: str
    value: Decimal
    advance_percent: Decimal
    is_extra: bool
    extra_approved: bool
    state: MilestoneState
    planned_start: date | None
    planned_end: date | None
    actual_start: datetime | None
    actual_submission: datetime | None
    actual_verification: datetime | None

    @classmethod
    def from_model(cls, model: MilestoneModel) -> MilestoneRecord:
        return cls(
            id=model.id,
            project_id=model.project_id,
            title=model.title,
            value=model.value,
            advance_percent=model.advance_percent,
            is_extra=model.is_extra,
            extra_approved=model.extra_approved_at is not None,
            state=MilestoneState(model.state),
            planned_start=model.planned_start,
            planned_end=model.planned_end,
            actual_start=model.actual_start,
            actual_submission=model.actual_submission,
            actual_verification=model.actual_verification,
        )


@dataclass(frozen=True)
class TransitionRecord:
    id: UUID
    milestone_id: UUID
    seq: int
    from_state: MilestoneState | None
    to_state: MilestoneState
    actor_id: UUID
    actor_role: Role
    reason: str | None
    occurred_at: datetime

    @classmethod
    def from_model(cls, model: MilestoneTransitionModel) -> TransitionRecord:
        return cls(
            id=model.id,
            milestone_id=model.milestone_id,
            seq=model.seq,
            from_state=MilestoneState(model.from_state) if model.from_state else None,
            to_state=MilestoneState(model.to_state),
            actor_id=model.actor_id,
            actor_role=Role(model.actor_role),
            reason=model.reason,
            occurred_at=model.occurred_at,
        )


@dataclass(frozen=True)
class EligibilityRecord:
    """The canonical payment record of one milestone."""

    id: UUID
    milestone_id: UUID
    project_id: UUID
    state: EligibilityState
    eligible_amount: Decimal
    blocked_amount: Decimal
    advance_amount: Decimal
    remaining_amount: Decimal
    due_date: date | None
    block_reason_code: BlockingReasonCode | None = None
    block_explanation: str | None = None
    blocked_by_id: UUID | None = None
    blocked_at: datetime | None = None
    paid_explanation: str | None = None
    paid_by_id: UUID | None = None
    paid_at: datetime | None = None
    last_calculated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: PaymentEligibilityModel) -> EligibilityRecord:
        return cls(
            id=model.id,
            milestone_id=model.milestone_id,
            project_id=model.project_id,
            state=EligibilityState(model.state),
            eligible_amount=model.eligible_amount,
            blocked_amount=model.blocked_amount,
            advance_amount=model.advance_amount,
            remaining_amount=model.remaining_amount,
            due_date=model.due_date,
            block_reason_code=(
                BlockingReasonCode(model.block_reason_code)
                if model.block_reason_code
                else None
            ),
            block_explanation=model.block_explanation,
            blocked_by_id=model.blocked_by_id,
            blocked_at=model.blocked_at,
            paid_explanation=model.paid_explanation,
            paid_by_id=model.paid_by_id,
            paid_at=model.paid_at,
            last_calculated_at=model.last_calculated_at,
        )

    def snapshot(self) -> EligibilitySnapshot:
        return EligibilitySnapshot(
            state=self.state,
            eligible_amount=self.eligible_amount,
            blocked_amount=self.blocked_amount,
            due_date=self.due_date,
        )


@dataclass(frozen=True)
class EligibilityEventRecord:
    id: UUID
    seq: int
    event_type: EligibilityEventType
    from_state: EligibilityState | None
    to_state: EligibilityState
    actor_id: UUID
    actor_role: Role
    amount_before: Decimal | None
    amount_after: Decimal | None
    reason_code: BlockingReasonCode | None
    explanation: str | None
    trigger_entity_type: str | None
    trigger_entity_id: UUID | None
    occurred_at: datetime

    @classmethod
    def from_model(cls, model: EligibilityEventModel) -> EligibilityEventRecord:
        return cls(
            id=model.id,
            seq=model.seq,
            event_type=EligibilityEventType(model.event_type),
            from_state=EligibilityState(model.from_state) if model.from_state else None,
            to_state=EligibilityState(model.to_state),
            actor_id=model.actor_id,
            actor_role=Role(model.actor_role),
            amount_before=model.amount_before,
            amount_after=model.amount_after,
            reason_code=BlockingReasonCode(model.reason_code) if model.reason_code else None,
            explanation=model.explanation,
            trigger_entity_type=model.trigger_entity_type,
            trigger_entity_id=model.trigger_entity_id,
            occurred_at=model.occurred_at,
        )


@dataclass(frozen=True)
class EligibilityView:
    """Canonical record + derived indicator + recent events (newest first)."""

    record: EligibilityRecord
    indicator: IndicatorResult
    recent_events: tuple[EligibilityEventRecord, ...]


@dataclass(frozen=True)
class AuditEntryRecord:
    id: UUID
    seq: int
    project_id: UUID
    actor_id: UUID
    actor_role: str
    action_type: str
    entity_type: str
    entity_id: UUID
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    reason: str | None
    occurred_at: datetime
    hash: str

    @classmethod
    def from_model(cls, model: AuditLogEntryModel) -> AuditEntryRecord:
        return cls(
            id=model.id,
            seq=model.seq,
            project_id=model.project_id,
            actor_id=model.actor_id,
            actor_role=model.actor_role,
            action_type=model.action_type,
            entity_type=model.entity_type,
            entity_id=model.entity_id,
            before=model.before_json,
            after=model.after_json,
            reason=model.reason,
            occurred_at=model.occurred_at,
            hash=model.hash,
        )
