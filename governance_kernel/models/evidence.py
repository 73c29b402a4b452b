"""
Module: governance_kernel.models.evidence
Responsibility: ORM persistence for vendor completion evidence and the
    metadata of its attached files.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value types only.

Invariants enforced:
    - ``frozen`` is set at creation and never cleared.
    - The only permitted mutation is the single review: status moves from
      SUBMITTED to APPROVED or REJECTED together with the reviewer fields
      (db/immutability.py).
    - Evidence and file rows are never deleted.

Non-goals:
    File bytes live in external storage; only name, type, size and the
    storage key are recorded here.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import BigInteger, Boolean, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from governance_kernel.db.base import Base, TrackedBase, UUIDString


class EvidenceStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# Fields the review is allowed to set (plus TrackedBase audit metadata)
REVIEW_FIELDS = frozenset({
    "status",
    "reviewed_by_id",
    "reviewed_at",
    "review_note",
    "updated_at",
    "updated_by_id",
})


class Evidence(TrackedBase):
    """
    A vendor's claim of completion for one milestone.

    ``created_by_id`` is the submitting vendor.
    """

    __tablename__ = "evidence"

    __table_args__ = (
        Index("idx_evidence_milestone", "milestone_id", "status"),
    )

    milestone_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("milestones.id"),
        nullable=False,
    )

    qty_or_percent: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)

    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[EvidenceStatus] = mapped_column(
        String(20),
        nullable=False,
        default=EvidenceStatus.SUBMITTED.value,
    )

    frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    submitted_at: Mapped[datetime] = mapped_column(nullable=False)

    reviewed_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    review_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    files: Mapped[list["EvidenceFile"]] = relationship(
        back_populates="evidence",
        order_by="EvidenceFile.file_name",
    )

    def __repr__(self) -> str:
        return f"<Evidence {self.id} {self.status}>"

    @property
    def evidence_status(self) -> EvidenceStatus:
        return EvidenceStatus(self.status)


class EvidenceFile(Base):
    """Metadata of one file attached to an evidence record."""

    __tablename__ = "evidence_files"

    evidence_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("evidence.id"),
        nullable=False,
        index=True,
    )

    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    storage_key: Mapped[str | None] = mapped_column(String(500), nullable=True)

    evidence: Mapped[Evidence] = relationship(back_populates="files")
