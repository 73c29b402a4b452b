"""
Module: governance_kernel.models.eligibility
Responsibility: ORM persistence for the canonical payment eligibility record
    of each milestone and its append-only event trail.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value types only.

Invariants enforced:
    - One PaymentEligibility per milestone (unique milestone_id).
    - PaymentEligibility is inserted and updated only while the session holds
      the eligibility write grant, which only PaymentEligibilityEngine takes
      (db/write_guard.py).  No other component has a write path.
    - Block fields are populated only in BLOCKED, paid fields only in
      MARKED_PAID, never both (chk_eligibility_override_fields).
    - EligibilityEvent rows are append-only (db/immutability.py).

Audit relevance:
    EligibilityEvent answers "why is this blocked/paid": every recalculation
    and every human action on a record leaves exactly one event.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import BigInteger, CheckConstraint, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from governance_kernel.db.base import Base, TrackedBase, UUIDString
from governance_kernel.domain.eligibility import (
    BlockingReasonCode,
    EligibilityEventType,
    EligibilityState,
)
from governance_kernel.domain.lifecycle import Role


class PaymentEligibility(TrackedBase):
    """
    The canonical payment record for one milestone.

    Contract:
        Readers read; only the eligibility engine writes.  ``state``,
        ``eligible_amount`` and ``blocked_amount`` always come from the one
        canonical calculation.
    """

    __tablename__ = "payment_eligibility"

    __table_args__ = (
        Index("idx_eligibility_state", "state"),
        CheckConstraint(
            "(block_reason_code IS NULL OR state = 'BLOCKED') "
            "AND (paid_explanation IS NULL OR state = 'MARKED_PAID')",
            name="chk_eligibility_override_fields",
        ),
    )

    milestone_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("milestones.id"),
        nullable=False,
        unique=True,
    )

    project_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, index=True)

    state: Mapped[EligibilityState] = mapped_column(String(30), nullable=False)

    eligible_amount: Mapped[Decimal] = mapped_column(nullable=False)
    blocked_amount: Mapped[Decimal] = mapped_column(nullable=False)
    advance_amount: Mapped[Decimal] = mapped_column(nullable=False)
    remaining_amount: Mapped[Decimal] = mapped_column(nullable=False)
    boq_value_completed: Mapped[Decimal] = mapped_column(nullable=False)
    # Not computed by the canonical calculation; always zero here
    deductions: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    due_date: Mapped[date | None] = mapped_column(nullable=True)

    block_reason_code: Mapped[BlockingReasonCode | None] = mapped_column(
        String(40), nullable=True
    )
    block_explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    blocked_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    blocked_at: Mapped[datetime | None] = mapped_column(nullable=True)

    paid_explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    paid_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    last_calculated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    version: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<PaymentEligibility {self.milestone_id} {self.state}>"

    @property
    def eligibility_state(self) -> EligibilityState:
        return EligibilityState(self.state)


class EligibilityEvent(Base):
    """
    Immutable record of one eligibility recalculation or human action.

    Contract:
        Append-only.  Ordered per record by ``seq``.
    """

    __tablename__ = "eligibility_events"

    __table_args__ = (
        Index("idx_eligibility_event_record", "eligibility_id", "seq"),
    )

    eligibility_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("payment_eligibility.id"),
        nullable=False,
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    event_type: Mapped[EligibilityEventType] = mapped_column(String(40), nullable=False)

    from_state: Mapped[EligibilityState | None] = mapped_column(String(30), nullable=True)
    to_state: Mapped[EligibilityState] = mapped_column(String(30), nullable=False)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    actor_role: Mapped[Role] = mapped_column(String(20), nullable=False)

    amount_before: Mapped[Decimal | None] = mapped_column(nullable=True)
    amount_after: Mapped[Decimal] = mapped_column(nullable=False)

    reason_code: Mapped[BlockingReasonCode | None] = mapped_column(String(40), nullable=True)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)

    trigger_entity_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    trigger_entity_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<EligibilityEvent {self.event_type} {self.from_state} -> {self.to_state}>"
