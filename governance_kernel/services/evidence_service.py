"""
EvidenceService -- the evidence gate.

Vendors submit proof of completion; owners and PMCs review it exactly once.
Evidence is frozen from the moment it exists.  A review triggers an
eligibility recalculation for the milestone in the same unit of work.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from governance_kernel.domain.clock import Clock, SystemClock
from governance_kernel.domain.eligibility import ZERO, EligibilityEventType
from governance_kernel.domain.lifecycle import (
    MANAGING_ROLES,
    MilestoneState,
    Role,
    coerce_role,
)
from governance_kernel.domain.policy import DEFAULT_MAX_EVIDENCE_FILE_BYTES
from governance_kernel.exceptions import (
    AlreadyInStateError,
    EvidenceNotFoundError,
    ForbiddenRoleError,
    MilestoneNotFoundError,
    PreconditionFailedError,
    ReasonRequiredError,
    SelfReviewError,
    ValidationError,
)
from governance_kernel.logging_config import get_logger
from governance_kernel.models.audit_log import AuditActionType
from governance_kernel.models.evidence import Evidence, EvidenceFile, EvidenceStatus
from governance_kernel.models.milestone import Milestone
from governance_kernel.services.audit_logger import AuditLogger
from governance_kernel.services.eligibility_engine import PaymentEligibilityEngine

logger = get_logger("services.evidence")

ENTITY_TYPE = "Evidence"

_RESUBMITTABLE = frozenset({EvidenceStatus.SUBMITTED, EvidenceStatus.REJECTED})


@dataclass(frozen=True)
class EvidenceFileSpec:
    """Metadata of one uploaded file.  The bytes live in external storage."""

    file_name: str
    mime_type: str
    size_bytes: int
    storage_key: str | None = None


def _evidence_snapshot(evidence: Evidence) -> dict[str, Any]:
    return {
        "milestone_id": evidence.milestone_id,
        "qty_or_percent": evidence.qty_or_percent,
        "remarks": evidence.remarks,
        "status": evidence.status,
        "frozen": evidence.frozen,
        "reviewed_by_id": evidence.reviewed_by_id,
        "review_note": evidence.review_note,
        "files": [f.file_name for f in evidence.files],
    }


class EvidenceService:
    """Submission and single review of milestone evidence."""

    def __init__(
        self,
        session: Session,
        eligibility_engine: PaymentEligibilityEngine,
        clock: Clock | None = None,
        max_file_bytes: int = DEFAULT_MAX_EVIDENCE_FILE_BYTES,
    ):
        self._session = session
        self._engine = eligibility_engine
        self._clock = clock or SystemClock()
        self._audit = AuditLogger(session, self._clock)
        self._max_file_bytes = max_file_bytes

    def _get_milestone(self, milestone_id: UUID) -> Milestone:
        milestone = self._session.get(Milestone, milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(str(milestone_id))
        return milestone

    def _get_evidence(self, evidence_id: UUID, lock: bool = False) -> Evidence:
        stmt = select(Evidence).where(Evidence.id == evidence_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        evidence = self._session.execute(stmt).scalar_one_or_none()
        if evidence is None:
            raise EvidenceNotFoundError(str(evidence_id))
        return evidence

    def _validate_files(self, files: Sequence[EvidenceFileSpec]) -> None:
        if not files:
            raise ValidationError("files", "at least one file is required")
        for file_spec in files:
            if not file_spec.file_name or not file_spec.file_name.strip():
                raise ValidationError("files", "every file needs a name")
            if file_spec.size_bytes < 0:
                raise ValidationError("files", f"{file_spec.file_name}: negative size")
            if file_spec.size_bytes > self._max_file_bytes:
                raise ValidationError(
                    "files",
                    f"{file_spec.file_name} exceeds the {self._max_file_bytes} byte limit",
                )

    def submit_evidence(
        self,
        milestone_id: UUID,
        actor_id: UUID,
        role: Role,
        qty_or_percent: Decimal | int | str,
        files: Sequence[EvidenceFileSpec],
        remarks: str | None = None,
    ) -> Evidence:
        """Record vendor evidence for an IN_PROGRESS milestone.  VENDOR only."""
        milestone = self._get_milestone(milestone_id)
        role = coerce_role(role, "submit evidence")
        if role != Role.VENDOR:
            raise ForbiddenRoleError(role.value, "submit evidence", (Role.VENDOR.value,))
        if milestone.lifecycle_state != MilestoneState.IN_PROGRESS:
            raise PreconditionFailedError(
                str(milestone.id),
                f"Evidence can only be submitted while IN_PROGRESS, currently {milestone.state}",
            )
        try:
            quantity = Decimal(str(qty_or_percent))
        except (InvalidOperation, ValueError):
            raise ValidationError("qty_or_percent", f"{qty_or_percent!r} is not a number")
        if not quantity.is_finite() or quantity < ZERO:
            raise ValidationError("qty_or_percent", "must be a non-negative number")
        self._validate_files(files)

        evidence = Evidence(
            milestone_id=milestone.id,
            qty_or_percent=quantity,
            remarks=remarks,
            status=EvidenceStatus.SUBMITTED.value,
            frozen=True,
            submitted_at=self._clock.now(),
            created_by_id=actor_id,
        )
        self._session.add(evidence)
        self._session.flush()

        for file_spec in files:
            self._session.add(
                EvidenceFile(
                    evidence_id=evidence.id,
                    file_name=file_spec.file_name.strip(),
                    mime_type=file_spec.mime_type,
                    size_bytes=file_spec.size_bytes,
                    storage_key=file_spec.storage_key,
                )
            )
        self._session.flush()
        self._session.refresh(evidence, attribute_names=["files"])

        self._audit.log(
            project_id=milestone.project_id,
            actor_id=actor_id,
            role=role,
            action_type=AuditActionType.EVIDENCE_SUBMIT,
            entity_type=ENTITY_TYPE,
            entity_id=evidence.id,
            after=_evidence_snapshot(evidence),
        )
        logger.info(
            "evidence_submitted",
            extra={
                "evidence_id": str(evidence.id),
                "milestone_id": str(milestone.id),
                "file_count": len(files),
            },
        )
        return evidence

    def review_evidence(
        self,
        evidence_id: UUID,
        actor_id: UUID,
        role: Role,
        approve: bool,
        note: str | None = None,
    ) -> Evidence:
        """
        Approve or reject submitted evidence.

        Preconditions:
            - OWNER or PMC, and not the submitter.
            - Evidence is still SUBMITTED.
            - A rejection carries a note.

        Postconditions:
            - One EVIDENCE_APPROVE/EVIDENCE_REJECT audit entry, then one
              eligibility recalculation for the milestone.
        """
        evidence = self._get_evidence(evidence_id, lock=True)
        role = coerce_role(role, "review evidence")
        if role not in MANAGING_ROLES:
            raise ForbiddenRoleError(
                role.value, "review evidence", tuple(r.value for r in (Role.OWNER, Role.PMC))
            )
        if evidence.created_by_id == actor_id:
            raise SelfReviewError(str(evidence.id), str(actor_id), role.value)
        if evidence.evidence_status != EvidenceStatus.SUBMITTED:
            raise AlreadyInStateError(
                ENTITY_TYPE, str(evidence.id), evidence.evidence_status.value,
                "Evidence has already been reviewed",
            )
        note = note.strip() if note else None
        if not approve and not note:
            raise ReasonRequiredError(action="reject evidence", field_name="note")

        milestone = self._get_milestone(evidence.milestone_id)
        before = _evidence_snapshot(evidence)
        new_status = EvidenceStatus.APPROVED if approve else EvidenceStatus.REJECTED

        evidence.status = new_status.value
        evidence.reviewed_by_id = actor_id
        evidence.reviewed_at = self._clock.now()
        evidence.review_note = note
        evidence.updated_by_id = actor_id
        self._session.flush()

        self._audit.log(
            project_id=milestone.project_id,
            actor_id=actor_id,
            role=role,
            action_type=(
                AuditActionType.EVIDENCE_APPROVE if approve else AuditActionType.EVIDENCE_REJECT
            ),
            entity_type=ENTITY_TYPE,
            entity_id=evidence.id,
            before=before,
            after=_evidence_snapshot(evidence),
            reason=note,
        )
        self._engine.recalculate(
            milestone_id=milestone.id,
            actor_id=actor_id,
            role=role,
            event_type=(
                EligibilityEventType.EVIDENCE_APPROVED
                if approve
                else EligibilityEventType.EVIDENCE_REJECTED
            ),
            trigger_entity_type=ENTITY_TYPE,
            trigger_entity_id=evidence.id,
        )

        logger.info(
            "evidence_reviewed",
            extra={
                "evidence_id": str(evidence.id),
                "milestone_id": str(milestone.id),
                "status": new_status.value,
            },
        )
        return evidence

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def can_edit(evidence: Evidence) -> bool:
        return not evidence.frozen

    def can_resubmit(self, milestone_id: UUID) -> bool:
        """Vendors may resubmit while IN_PROGRESS unless the latest evidence was approved."""
        milestone = self._get_milestone(milestone_id)
        if milestone.lifecycle_state != MilestoneState.IN_PROGRESS:
            return False
        latest = self._session.execute(
            select(Evidence)
            .where(Evidence.milestone_id == milestone_id)
            .order_by(Evidence.submitted_at.desc(), Evidence.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        return latest is None or latest.evidence_status in _RESUBMITTABLE

    def list_for_milestone(self, milestone_id: UUID) -> list[Evidence]:
        return list(
            self._session.execute(
                select(Evidence)
                .where(Evidence.milestone_id == milestone_id)
                .options(selectinload(Evidence.files))
                .order_by(Evidence.submitted_at)
            ).scalars()
        )

    def pending_reviews(self, project_id: UUID) -> list[Evidence]:
        return list(
            self._session.execute(
                select(Evidence)
                .join(Milestone, Milestone.id == Evidence.milestone_id)
                .where(
                    Milestone.project_id == project_id,
                    Evidence.status == EvidenceStatus.SUBMITTED.value,
                )
                .options(selectinload(Evidence.files))
                .order_by(Evidence.submitted_at)
            ).scalars()
        )
