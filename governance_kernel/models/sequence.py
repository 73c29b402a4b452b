"""
Module: governance_kernel.models.sequence
Responsibility: Named monotonic counters backing SequenceService.
Architecture position: Kernel > Models.  May import from db/base.py only.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from governance_kernel.db.base import Base


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row represents a named sequence with its current value.
    Row-level locking ensures monotonicity under concurrency.
    """

    __tablename__ = "sequence_counters"

    # e.g. "audit_log", "milestone_transition", "eligibility_event"
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
