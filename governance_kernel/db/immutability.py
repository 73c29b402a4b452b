"""
ORM-level immutability for the governance trail.

Listeners on before_update/before_delete raise ImmutabilityViolationError
before any SQL is sent, so the transaction aborts with the database
untouched.

Protected:
    MilestoneTransition, EligibilityEvent, AuditLogEntry, EvidenceFile
        never updated or deleted.
    Evidence
        never deleted; one review (SUBMITTED -> APPROVED/REJECTED plus
        reviewer columns) is the only content change.  The TrackedBase
        stamps may still change.

register_immutability_listeners() runs once at startup and in the test
session fixture.  Model imports are inline to avoid a db/models cycle.
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from governance_kernel.exceptions import ImmutabilityViolationError
from governance_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _block(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "reason": reason,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _append_only_update(entity_type: str):
    """Build a before_update listener that always refuses."""

    def _check(mapper, connection, target):
        _block(entity_type, target, "UPDATE", f"{entity_type} records are append-only")

    _check.__name__ = f"_check_{entity_type.lower()}_immutability"
    return _check


def _append_only_delete(entity_type: str):
    """Build a before_delete listener that always refuses."""

    def _check(mapper, connection, target):
        _block(entity_type, target, "DELETE", f"{entity_type} records cannot be deleted")

    _check.__name__ = f"_check_{entity_type.lower()}_delete"
    return _check


_check_transition_immutability = _append_only_update("MilestoneTransition")
_check_transition_delete = _append_only_delete("MilestoneTransition")
_check_eligibility_event_immutability = _append_only_update("EligibilityEvent")
_check_eligibility_event_delete = _append_only_delete("EligibilityEvent")
_check_audit_entry_immutability = _append_only_update("AuditLogEntry")
_check_audit_entry_delete = _append_only_delete("AuditLogEntry")
_check_evidence_file_immutability = _append_only_update("EvidenceFile")
_check_evidence_file_delete = _append_only_delete("EvidenceFile")
_check_evidence_delete = _append_only_delete("Evidence")


def _check_evidence_immutability(mapper, connection, target):
    """
    Allow exactly one review of a frozen Evidence record.

    Logic:
        1. Any change outside REVIEW_FIELDS: block (evidence content is frozen).
        2. Status changing FROM SUBMITTED to APPROVED/REJECTED: allow (the review).
        3. Reviewer fields changing without that status change: block.
    """
    from governance_kernel.models.evidence import REVIEW_FIELDS, EvidenceStatus

    state = inspect(target)
    changed = {
        attr.key
        for attr in state.attrs
        if attr.history.has_changes()
    }
    if not changed:
        return

    content_changes = changed - REVIEW_FIELDS
    if content_changes:
        _block(
            "Evidence",
            target,
            "UPDATE",
            f"Evidence is frozen; cannot modify {sorted(content_changes)}",
        )

    review_changes = changed - {"updated_at", "updated_by_id"}
    if not review_changes:
        return

    status_history = get_history(target, "status")
    old_values = list(status_history.deleted)
    new_values = list(status_history.added)
    is_review = (
        len(old_values) == 1
        and old_values[0] == EvidenceStatus.SUBMITTED
        and len(new_values) == 1
        and new_values[0] in (EvidenceStatus.APPROVED, EvidenceStatus.REJECTED)
    )
    if not is_review:
        _block(
            "Evidence",
            target,
            "UPDATE",
            "Evidence may be reviewed only once, from SUBMITTED",
        )


def _listener_table():
    from governance_kernel.models.audit_log import AuditLogEntry
    from governance_kernel.models.eligibility import EligibilityEvent
    from governance_kernel.models.evidence import Evidence, EvidenceFile
    from governance_kernel.models.milestone import MilestoneTransition

    return [
        (MilestoneTransition, "before_update", _check_transition_immutability),
        (MilestoneTransition, "before_delete", _check_transition_delete),
        (EligibilityEvent, "before_update", _check_eligibility_event_immutability),
        (EligibilityEvent, "before_delete", _check_eligibility_event_delete),
        (AuditLogEntry, "before_update", _check_audit_entry_immutability),
        (AuditLogEntry, "before_delete", _check_audit_entry_delete),
        (Evidence, "before_update", _check_evidence_immutability),
        (Evidence, "before_delete", _check_evidence_delete),
        (EvidenceFile, "before_update", _check_evidence_file_immutability),
        (EvidenceFile, "before_delete", _check_evidence_file_delete),
    ]


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Call this after all models are imported but before any database
    operations begin.  Safe to call more than once.
    """
    for target, event_name, listener in _listener_table():
        if not event.contains(target, event_name, listener):
            event.listen(target, event_name, listener)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, event_name, listener in _listener_table():
        _safe_remove_listener(target, event_name, listener)
