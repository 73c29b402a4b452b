"""
Single-writer enforcement for guarded state.

Payment numbers must come from one calculation.  Rather than trusting every
caller to route through the eligibility engine, the session refuses to
flush a new or modified PaymentEligibility unless the flush happens inside
the engine's write grant.  Milestone lifecycle state is guarded the same
way by the state machine's grant.

    with write_grant(session, ELIGIBILITY_WRITER):
        record.state = ...
        session.flush()          # allowed

    record.state = ...
    session.flush()              # SingleWriterViolationError

Grants are counted per session (session.info), so nested grants and
independent sessions on other threads do not interfere.
"""

from collections import Counter
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from governance_kernel.exceptions import SingleWriterViolationError
from governance_kernel.logging_config import get_logger

logger = get_logger("db.write_guard")

ELIGIBILITY_WRITER = "eligibility_writer"
LIFECYCLE_WRITER = "lifecycle_writer"

_GRANTS_KEY = "governance_write_grants"


def _grants(session: Session) -> Counter:
    return session.info.setdefault(_GRANTS_KEY, Counter())


@contextmanager
def write_grant(session: Session, grant: str) -> Generator[None, None, None]:
    """Hold ``grant`` on ``session`` for the duration of the block."""
    grants = _grants(session)
    grants[grant] += 1
    try:
        yield
    finally:
        grants[grant] -= 1


def holds_grant(session: Session, grant: str) -> bool:
    return _grants(session)[grant] > 0


def _violation(entity_type: str, target, grant: str) -> None:
    logger.error(
        "single_writer_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "required_grant": grant,
        },
    )
    raise SingleWriterViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        required_grant=grant,
    )


def _check_single_writer_before_flush(session, flush_context, instances):
    """Reject guarded writes made outside their owner's grant."""
    from governance_kernel.models.eligibility import PaymentEligibility
    from governance_kernel.models.milestone import Milestone

    eligibility_granted = holds_grant(session, ELIGIBILITY_WRITER)
    lifecycle_granted = holds_grant(session, LIFECYCLE_WRITER)

    for obj in list(session.new):
        if isinstance(obj, PaymentEligibility) and not eligibility_granted:
            _violation("PaymentEligibility", obj, ELIGIBILITY_WRITER)
        if isinstance(obj, Milestone) and not lifecycle_granted:
            _violation("Milestone", obj, LIFECYCLE_WRITER)

    for obj in list(session.dirty):
        if isinstance(obj, PaymentEligibility) and not eligibility_granted:
            if session.is_modified(obj, include_collections=False):
                _violation("PaymentEligibility", obj, ELIGIBILITY_WRITER)
        if isinstance(obj, Milestone) and not lifecycle_granted:
            if inspect(obj).attrs.state.history.has_changes():
                _violation("Milestone", obj, LIFECYCLE_WRITER)

    for obj in list(session.deleted):
        if isinstance(obj, PaymentEligibility):
            _violation("PaymentEligibility", obj, ELIGIBILITY_WRITER)


def register_write_guard() -> None:
    """Install the before_flush single-writer check (idempotent)."""
    if not event.contains(Session, "before_flush", _check_single_writer_before_flush):
        event.listen(Session, "before_flush", _check_single_writer_before_flush)


def unregister_write_guard() -> None:
    """Remove the single-writer check. TESTS ONLY."""
    if event.contains(Session, "before_flush", _check_single_writer_before_flush):
        event.remove(Session, "before_flush", _check_single_writer_before_flush)
