"""
AuditLogger -- append-only, hash-chained governance audit trail.

Responsibility:
    Writes one AuditLogEntry per mutating governance action and validates
    the hash chain.  A pure sink: it decides nothing about the action it
    records.

Architecture position:
    Kernel > Services -- imperative shell.  Called by the state machine,
    evidence service, and eligibility engine inside their own units of work.

Invariants enforced:
    - seq is allocated from the locked "audit_log" counter before the
      previous hash is read, so concurrent writers chain in seq order.
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash).
    - The entry is flushed in the caller's transaction; a failed audit
      write aborts the mutation it describes.

Failure modes:
    - AuditChainBrokenError from validate_chain() on any mismatch.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from governance_kernel.domain.clock import Clock, SystemClock
from governance_kernel.exceptions import AuditChainBrokenError
from governance_kernel.logging_config import get_logger
from governance_kernel.models.audit_log import AuditActionType, AuditLogEntry
from governance_kernel.services.sequence_service import SequenceService
from governance_kernel.utils.hashing import hash_audit_entry, hash_payload, to_json_safe

logger = get_logger("services.audit")


def _enum_value(value: Any) -> str:
    return value.value if hasattr(value, "value") else str(value)


def _entry_payload(
    project_id: UUID,
    actor_id: UUID,
    actor_role: str,
    before: dict | None,
    after: dict | None,
    reason: str | None,
) -> dict[str, Any]:
    return {
        "project_id": str(project_id),
        "actor_id": str(actor_id),
        "actor_role": actor_role,
        "before": before,
        "after": after,
        "reason": reason,
    }


class AuditLogger:
    """
    Records governance actions in the audit hash chain.

    Non-goals:
        - Does NOT commit.  Querying and export live in
          selectors/audit_selector.py.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        last_entry = self._session.execute(
            select(AuditLogEntry).order_by(AuditLogEntry.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return last_entry.hash if last_entry else None

    def log(
        self,
        *,
        project_id: UUID,
        actor_id: UUID,
        role: Any,
        action_type: AuditActionType,
        entity_type: str,
        entity_id: UUID,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> AuditLogEntry:
        """
        Append an audit entry with hash chain linkage.

        Postconditions:
            - A new AuditLogEntry is flushed with a monotonically increasing
              seq and a valid chain link.
            - before/after are stored as canonical JSON-safe snapshots.
        """
        seq = self._sequence_service.next_value(SequenceService.AUDIT_LOG)
        prev_hash = self._get_last_hash()

        actor_role = _enum_value(role)
        before_json = to_json_safe(before) if before is not None else None
        after_json = to_json_safe(after) if after is not None else None

        payload_hash = hash_payload(
            _entry_payload(project_id, actor_id, actor_role, before_json, after_json, reason)
        )
        entry_hash = hash_audit_entry(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action_type.value,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
        )

        entry = AuditLogEntry(
            seq=seq,
            project_id=project_id,
            actor_id=actor_id,
            actor_role=actor_role,
            action_type=action_type.value,
            entity_type=entity_type,
            entity_id=entity_id,
            before_json=before_json,
            after_json=after_json,
            reason=reason,
            occurred_at=self._clock.now(),
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            hash=entry_hash,
        )
        self._session.add(entry)
        self._session.flush()

        logger.info(
            "audit_entry_created",
            extra={
                "seq": seq,
                "action_type": action_type.value,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "hash": entry_hash,
            },
        )
        return entry

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Postconditions:
            - Returns True only if every entry's payload hash and chain hash
              match recomputed values and every prev_hash matches its
              predecessor's hash.

        Raises:
            AuditChainBrokenError: If validation fails at any point.
        """
        entries = self._session.execute(
            select(AuditLogEntry).order_by(AuditLogEntry.seq)
        ).scalars().all()

        previous_hash: str | None = None
        for entry in entries:
            if entry.prev_hash != previous_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"audit_entry_id": str(entry.id), "check": "linkage"},
                )
                raise AuditChainBrokenError(
                    str(entry.id), previous_hash or "None", entry.prev_hash or "None"
                )

            expected_payload_hash = hash_payload(
                _entry_payload(
                    entry.project_id,
                    entry.actor_id,
                    entry.actor_role,
                    entry.before_json,
                    entry.after_json,
                    entry.reason,
                )
            )
            if entry.payload_hash != expected_payload_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"audit_entry_id": str(entry.id), "check": "payload"},
                )
                raise AuditChainBrokenError(
                    str(entry.id), expected_payload_hash, entry.payload_hash
                )

            expected_hash = hash_audit_entry(
                entity_type=entry.entity_type,
                entity_id=str(entry.entity_id),
                action=_enum_value(entry.action_type),
                payload_hash=entry.payload_hash,
                prev_hash=entry.prev_hash,
            )
            if entry.hash != expected_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"audit_entry_id": str(entry.id), "check": "hash"},
                )
                raise AuditChainBrokenError(str(entry.id), expected_hash, entry.hash)

            previous_hash = entry.hash

        logger.info("audit_chain_validated", extra={"entry_count": len(entries)})
        return True
