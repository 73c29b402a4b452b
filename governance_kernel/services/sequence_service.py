"""
SequenceService -- ordered numbering for the three append-only trails.

Milestone transitions, eligibility events and audit entries each get a
``seq`` from a named row in ``sequence_counters``.  The row is read with
``SELECT ... FOR UPDATE`` and stays locked until the caller's transaction
ends, which has two consequences:

- numbers are unique and increase in commit order; a rolled-back
  transaction gives its number back;
- audit writers are serialized on the ``audit_log`` row, so the entry
  that reads the chain head after taking a number always sees the
  previous committed entry.  The hash chain relies on this.

The service only flushes; the caller owns the transaction.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from governance_kernel.logging_config import get_logger
from governance_kernel.models.sequence import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:

    AUDIT_LOG = "audit_log"
    MILESTONE_TRANSITION = "milestone_transition"
    ELIGIBILITY_EVENT = "eligibility_event"

    def __init__(self, session: Session):
        self._session = session

    def _lock(self, name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _try_create(self, name: str) -> bool:
        """Insert the counter at 1.  False if a concurrent writer inserted it first."""
        savepoint = self._session.begin_nested()
        try:
            self._session.add(SequenceCounter(name=name, current_value=1))
            self._session.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("sequence_counter_race", extra={"sequence_name": name})
            return False
        savepoint.commit()
        return True

    def next_value(self, name: str) -> int:
        """The next number of sequence ``name``; the counter row stays locked."""
        counter = self._lock(name)
        if counter is None:
            if self._try_create(name):
                value = 1
                logger.debug("sequence_allocated", extra={"sequence_name": name, "value": value})
                return value
            counter = self._lock(name)
            if counter is None:
                raise RuntimeError(f"Sequence counter {name!r} vanished after a creation race")

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": name, "value": counter.current_value},
        )
        return counter.current_value
