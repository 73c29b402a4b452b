"""
Module: governance_kernel.models.audit_log
Responsibility: ORM persistence for the project-scoped, hash-chained audit log
    covering every mutating governance action.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only; no UPDATE or DELETE (db/immutability.py).
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash).
      Validated by AuditLogger.validate_chain().
    - seq is monotonically increasing, allocated by SequenceService.

Audit relevance:
    This IS the compliance trail.  Each core mutation writes exactly one
    entry in the same transaction as the mutation it describes.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from governance_kernel.db.base import Base, UUIDString


class AuditActionType(str, Enum):
    """
    Every class of mutating action that MUST be recorded.
    """

    # Milestone lifecycle
    MILESTONE_CREATE = "MILESTONE_CREATE"
    MILESTONE_UPDATE = "MILESTONE_UPDATE"
    MILESTONE_STATE_TRANSITION = "MILESTONE_STATE_TRANSITION"

    # Evidence
    EVIDENCE_SUBMIT = "EVIDENCE_SUBMIT"
    EVIDENCE_APPROVE = "EVIDENCE_APPROVE"
    EVIDENCE_REJECT = "EVIDENCE_REJECT"

    # Payment eligibility
    ELIGIBILITY_RECALCULATED = "ELIGIBILITY_RECALCULATED"
    ELIGIBILITY_BLOCKED = "ELIGIBILITY_BLOCKED"
    ELIGIBILITY_UNBLOCKED = "ELIGIBILITY_UNBLOCKED"
    ELIGIBILITY_MARKED_PAID = "ELIGIBILITY_MARKED_PAID"


class AuditLogEntry(Base):
    """
    Audit log entry with hash chain for tamper evidence.

    Guarantees:
        - seq is globally unique and monotonically increasing.
        - prev_hash is None only for the genesis entry.
    """

    __tablename__ = "audit_log_entries"

    __table_args__ = (
        Index("idx_audit_project", "project_id", "occurred_at"),
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_actor", "actor_id"),
        Index("idx_audit_action", "action_type"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    project_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(20), nullable=False)

    action_type: Mapped[AuditActionType] = mapped_column(String(50), nullable=False)

    # e.g. "Milestone", "Evidence", "PaymentEligibility"
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    before_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    after_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditLogEntry {self.action_type} on {self.entity_type}:{self.entity_id}>"
