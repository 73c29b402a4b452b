"""
Module: governance_kernel.db.base
Responsibility: Declarative base for every governance table.
Architecture position: Kernel > DB.  Imported by models/ only; imports
    nothing from the kernel.

Column conventions, applied through ``type_annotation_map`` so models only
need ``Mapped[...]`` annotations:

    Decimal   -> Numeric(38, 9)   contract value, advance, eligible/blocked amounts
    datetime  -> DateTime(tz)     transitions, reviews, audit timestamps
    date      -> Date             planned start/end, payment due date
    UUID      -> UUIDString       ids of milestones, actors, projects
    int       -> BigInteger       sequence numbers

Milestones, evidence and payment records also carry creator/updater
stamps through TrackedBase.  The append-only trails (transitions,
eligibility events, audit entries) use Base directly: they are written once
and their actor columns are part of the record itself.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, Date, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID stored as its 36-character text form, so SQLite and PostgreSQL agree."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        # Accept "3f2c..." as well as UUID objects; both normalize to lowercase text
        return str(value if isinstance(value, PyUUID) else PyUUID(str(value)))

    def process_result_value(self, value, dialect):
        return None if value is None else PyUUID(value)


class Base(DeclarativeBase):

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        date: Date,
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(primary_key=True, default=uuid4)


class TrackedBase(Base):
    """
    Mutable governance records: who created them, who touched them last.

    ``created_at``/``updated_at`` come from the database clock;
    ``updated_by_id`` is set by the service performing the change.  These
    four columns are the only ones a frozen evidence row may still change.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now()
    )
    created_by_id: Mapped[PyUUID]
    updated_by_id: Mapped[PyUUID | None]


UUID = PyUUID
