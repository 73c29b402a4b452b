"""
Module: governance_kernel.models.milestone
Responsibility: ORM persistence for milestones and their immutable lifecycle
    transition history.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value types only.

Invariants enforced:
    - Milestone.state is written only by MilestoneStateMachine (single-writer
      guard in db/write_guard.py).
    - MilestoneTransition rows are append-only (db/immutability.py).
    - version is the optimistic-lock column; a stale flush raises
      StaleDataError, surfaced as OptimisticLockError.

Audit relevance:
    The ordered MilestoneTransition rows of a milestone are its complete
    delivery history.  Each one is mirrored by a MILESTONE_STATE_TRANSITION
    AuditLogEntry.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from governance_kernel.db.base import Base, TrackedBase, UUIDString
from governance_kernel.domain.lifecycle import MilestoneState, Role


class Milestone(TrackedBase):
    """
    A contracted unit of work with a fixed value.

    Contract:
        Created in DRAFT.  ``state`` and the actual_* stamps move only through
        the lifecycle state machine; other fields are administrative.
        Never physically deleted by this kernel.
    """

    __tablename__ = "milestones"

    __table_args__ = (
        Index("idx_milestone_project", "project_id"),
        Index("idx_milestone_state", "state"),
        CheckConstraint("value >= 0", name="chk_milestone_value_non_negative"),
        CheckConstraint(
            "advance_percent >= 0 AND advance_percent <= 100",
            name="chk_milestone_advance_percent_range",
        ),
    )

    project_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    title: Mapped[str] = mapped_column(String(200), nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Fixed contract amount
    value: Mapped[Decimal] = mapped_column(nullable=False)

    advance_percent: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        nullable=False,
        default=Decimal("0"),
    )

    # Work outside the approved BOQ; needs separate owner approval
    is_extra: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    extra_approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    extra_approved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    state: Mapped[MilestoneState] = mapped_column(
        String(20),
        nullable=False,
        default=MilestoneState.DRAFT.value,
    )

    planned_start: Mapped[date | None] = mapped_column(nullable=True)
    planned_end: Mapped[date | None] = mapped_column(nullable=True)

    # Stamped on first entry to IN_PROGRESS / SUBMITTED / VERIFIED
    actual_start: Mapped[datetime | None] = mapped_column(nullable=True)
    actual_submission: Mapped[datetime | None] = mapped_column(nullable=True)
    actual_verification: Mapped[datetime | None] = mapped_column(nullable=True)

    version: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Milestone {self.title!r} {self.state}>"

    @property
    def lifecycle_state(self) -> MilestoneState:
        return MilestoneState(self.state)


class MilestoneTransition(Base):
    """
    Immutable record of one lifecycle edge.

    Contract:
        Append-only; never updated or deleted.  ``seq`` orders a milestone's
        history even when two transitions share a timestamp.
    """

    __tablename__ = "milestone_transitions"

    __table_args__ = (
        Index("idx_transition_milestone", "milestone_id", "seq"),
    )

    milestone_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("milestones.id"),
        nullable=False,
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    # None only for an initial entry with no prior state
    from_state: Mapped[MilestoneState | None] = mapped_column(String(20), nullable=True)
    to_state: Mapped[MilestoneState] = mapped_column(String(20), nullable=False)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    actor_role: Mapped[Role] = mapped_column(String(20), nullable=False)

    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<MilestoneTransition {self.from_state} -> {self.to_state}>"
