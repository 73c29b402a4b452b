"""
Governance Orchestrator - the public operation surface.

Ties together:
- MilestoneStateMachine: lifecycle transitions, creation, extra approval
- EvidenceService: the evidence gate
- PaymentEligibilityEngine: payment state and human overrides
- Selectors: eligibility views, valid next states, audit queries

Owns the transaction boundary.  Every operation returns an OperationResult;
caller-facing rejections never escape as exceptions.  Transient storage
failures are retried a bounded number of times and surface as
TEMPORARILY_UNAVAILABLE when the bound is exhausted.  Anything else rolls
back and propagates, so a failed trail write aborts the whole mutation.
"""

import time
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Sequence
from uuid import UUID
from uuid import uuid4 as _uuid4

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from governance_kernel.domain.clock import Clock, SystemClock
from governance_kernel.domain.eligibility import BlockingReasonCode, EligibilityEventType
from governance_kernel.domain.lifecycle import MilestoneState, Role
from governance_kernel.domain.policy import GovernancePolicy
from governance_kernel.exceptions import (
    OptimisticLockError,
    RejectionError,
    RetryExhaustedError,
)
from governance_kernel.logging_config import LogContext, get_logger
from governance_kernel.selectors.audit_selector import AuditSelector
from governance_kernel.selectors.eligibility_selector import EligibilitySelector
from governance_kernel.selectors.milestone_selector import MilestoneSelector
from governance_kernel.services.audit_logger import AuditLogger
from governance_kernel.services.eligibility_engine import PaymentEligibilityEngine
from governance_kernel.services.evidence_service import EvidenceFileSpec, EvidenceService
from governance_kernel.services.milestone_state_machine import MilestoneStateMachine

logger = get_logger("services.governance_orchestrator")

_TRANSIENT_ERRORS = (OperationalError, OptimisticLockError, StaleDataError)


class FailureKind(str, Enum):
    """Machine-checkable kind of a failed operation."""

    NOT_FOUND = "NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    FORBIDDEN = "FORBIDDEN"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    REASON_REQUIRED = "REASON_REQUIRED"
    ALREADY_IN_STATE = "ALREADY_IN_STATE"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    TEMPORARILY_UNAVAILABLE = "TEMPORARILY_UNAVAILABLE"


@dataclass(frozen=True)
class OperationResult:
    """Result of a governance operation."""

    success: bool
    value: Any = None
    new_state: str | None = None
    previous_state: str | None = None
    error: FailureKind | None = None
    message: str | None = None

    @property
    def is_success(self) -> bool:
        return self.success

    @classmethod
    def failed(cls, kind: FailureKind, message: str) -> "OperationResult":
        return cls(success=False, error=kind, message=message)


class GovernanceOrchestrator:
    """
    Entry point for every state-changing and read operation.

    By default each operation commits on success and rolls back on failure.
    Set auto_commit=False to leave the outer transaction to the caller; each
    attempt still runs inside a savepoint, so a rejected or retried attempt
    leaves nothing behind.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: GovernancePolicy | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._policy = policy or GovernancePolicy()
        self._auto_commit = auto_commit

        self._engine = PaymentEligibilityEngine(session, self._clock)
        self._state_machine = MilestoneStateMachine(session, self._engine, self._clock)
        self._evidence = EvidenceService(
            session,
            self._engine,
            self._clock,
            max_file_bytes=self._policy.max_evidence_file_bytes,
        )
        self._eligibility_selector = EligibilitySelector(session, self._clock, self._policy)
        self._milestone_selector = MilestoneSelector(session)
        self._audit_selector = AuditSelector(session)

    # ------------------------------------------------------------------
    # Transaction boundary
    # ------------------------------------------------------------------

    def _rollback(self) -> None:
        if self._auto_commit:
            self._session.rollback()
            logger.info("transaction_rolled_back")

    def _execute(
        self,
        operation: str,
        work: Callable[[], OperationResult],
        max_attempts: int | None = None,
        **context: Any,
    ) -> OperationResult:
        attempts = max_attempts or self._policy.max_transaction_retries
        with LogContext.bind(correlation_id=str(_uuid4()), operation=operation, **context):
            logger.info("operation_started")
            t0 = time.monotonic()
            last_error: Exception | None = None

            for attempt in range(1, attempts + 1):
                try:
                    with self._session.begin_nested():
                        result = work()
                    if self._auto_commit:
                        self._session.commit()
                except RejectionError as exc:
                    self._rollback()
                    logger.warning(
                        "operation_rejected",
                        extra={"kind": exc.kind, "reason": str(exc)},
                    )
                    return OperationResult.failed(FailureKind(exc.kind), str(exc))
                except _TRANSIENT_ERRORS as exc:
                    self._rollback()
                    last_error = exc
                    logger.warning(
                        "operation_retry",
                        extra={
                            "attempt": attempt,
                            "max_attempts": attempts,
                            "error": type(exc).__name__,
                        },
                    )
                    continue
                except Exception:
                    self._rollback()
                    logger.error("operation_failed", exc_info=True)
                    raise

                duration_ms = round((time.monotonic() - t0) * 1000, 2)
                logger.info(
                    "operation_completed",
                    extra={
                        "attempts": attempt,
                        "duration_ms": duration_ms,
                        "new_state": result.new_state,
                    },
                )
                return result

            exhausted = RetryExhaustedError(
                operation, attempts, type(last_error).__name__ if last_error else "unknown"
            )
            logger.error(
                "operation_retries_exhausted",
                extra={
                    "attempts": attempts,
                    "last_error": exhausted.last_error,
                },
            )
            return OperationResult.failed(FailureKind.TEMPORARILY_UNAVAILABLE, str(exhausted))

    def _read(self, operation: str, query: Callable[[], Any], **context: Any) -> OperationResult:
        with LogContext.bind(operation=operation, **context):
            try:
                return OperationResult(success=True, value=query())
            except RejectionError as exc:
                logger.info(
                    "read_rejected",
                    extra={"kind": exc.kind, "reason": str(exc)},
                )
                return OperationResult.failed(FailureKind(exc.kind), str(exc))

    # ------------------------------------------------------------------
    # Milestone lifecycle
    # ------------------------------------------------------------------

    def create_milestone(
        self,
        project_id: UUID,
        title: str,
        value: Decimal | int | str,
        actor_id: UUID,
        role: Role,
        advance_percent: Decimal | int | str = Decimal("0"),
        planned_start: date | None = None,
        planned_end: date | None = None,
        is_extra: bool = False,
        description: str | None = None,
    ) -> OperationResult:
        def work() -> OperationResult:
            milestone = self._state_machine.create_milestone(
                project_id=project_id,
                title=title,
                value=value,
                actor_id=actor_id,
                role=role,
                advance_percent=advance_percent,
                planned_start=planned_start,
                planned_end=planned_end,
                is_extra=is_extra,
                description=description,
            )
            return OperationResult(
                success=True,
                value=milestone.id,
                new_state=MilestoneState.DRAFT.value,
            )

        return self._execute(
            "create_milestone", work, actor_id=actor_id, project_id=project_id
        )

    def transition_milestone(
        self,
        milestone_id: UUID,
        to_state: MilestoneState | str,
        actor_id: UUID,
        role: Role,
        reason: str | None = None,
    ) -> OperationResult:
        """
        Move a milestone along one lifecycle edge.

        Failure kinds: NOT_FOUND, INVALID_TRANSITION, FORBIDDEN,
        PRECONDITION_FAILED (missing evidence), REASON_REQUIRED.
        """

        def work() -> OperationResult:
            result = self._state_machine.transition(
                milestone_id, to_state, actor_id, role, reason
            )
            return OperationResult(
                success=True,
                value=result,
                new_state=result.new_state.value,
                previous_state=result.previous_state.value,
            )

        return self._execute(
            "transition_milestone", work, actor_id=actor_id, milestone_id=milestone_id
        )

    def approve_extra(self, milestone_id: UUID, actor_id: UUID, role: Role) -> OperationResult:
        def work() -> OperationResult:
            milestone = self._state_machine.approve_extra(milestone_id, actor_id, role)
            return OperationResult(success=True, value=milestone.extra_approved_at)

        return self._execute(
            "approve_extra", work, actor_id=actor_id, milestone_id=milestone_id
        )

    def get_valid_next_states(self, milestone_id: UUID, role: Role) -> OperationResult:
        return self._read(
            "get_valid_next_states",
            lambda: self._state_machine.valid_next_states_for(milestone_id, role),
            milestone_id=milestone_id,
        )

    def get_transition_history(self, milestone_id: UUID) -> OperationResult:
        """Ordered TransitionRecords, oldest first."""
        return self._read(
            "get_transition_history",
            lambda: self._milestone_selector.history(milestone_id),
            milestone_id=milestone_id,
        )

    def get_milestone(self, milestone_id: UUID) -> OperationResult:
        return self._read(
            "get_milestone",
            lambda: self._milestone_selector.get(milestone_id),
            milestone_id=milestone_id,
        )

    def list_milestones(
        self, project_id: UUID, state: MilestoneState | None = None
    ) -> OperationResult:
        return self._read(
            "list_milestones",
            lambda: self._milestone_selector.list_for_project(project_id, state),
            project_id=project_id,
        )

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    def submit_evidence(
        self,
        milestone_id: UUID,
        actor_id: UUID,
        role: Role,
        qty_or_percent: Decimal | int | str,
        files: Sequence[EvidenceFileSpec],
        remarks: str | None = None,
    ) -> OperationResult:
        def work() -> OperationResult:
            evidence = self._evidence.submit_evidence(
                milestone_id, actor_id, role, qty_or_percent, files, remarks
            )
            return OperationResult(success=True, value=evidence.id, new_state=evidence.status)

        return self._execute(
            "submit_evidence", work, actor_id=actor_id, milestone_id=milestone_id
        )

    def review_evidence(
        self,
        evidence_id: UUID,
        actor_id: UUID,
        role: Role,
        approve: bool,
        note: str | None = None,
    ) -> OperationResult:
        def work() -> OperationResult:
            evidence = self._evidence.review_evidence(evidence_id, actor_id, role, approve, note)
            return OperationResult(
                success=True,
                value=evidence.id,
                new_state=evidence.status,
                previous_state="SUBMITTED",
            )

        return self._execute("review_evidence", work, actor_id=actor_id)

    # ------------------------------------------------------------------
    # Payment eligibility
    # ------------------------------------------------------------------

    def block_payment(
        self,
        milestone_id: UUID,
        reason_code: BlockingReasonCode | str,
        explanation: str | None,
        actor_id: UUID,
        role: Role,
    ) -> OperationResult:
        def work() -> OperationResult:
            record = self._engine.block(milestone_id, reason_code, explanation, actor_id, role)
            return OperationResult(success=True, value=record.id, new_state=record.state)

        return self._execute(
            "block_payment", work, actor_id=actor_id, milestone_id=milestone_id
        )

    def unblock_payment(
        self,
        milestone_id: UUID,
        reason: str | None,
        actor_id: UUID,
        role: Role,
    ) -> OperationResult:
        def work() -> OperationResult:
            result = self._engine.unblock(milestone_id, reason, actor_id, role)
            return OperationResult(
                success=True,
                value=result.eligibility_id,
                new_state=result.new_state.value,
                previous_state=result.previous_state.value if result.previous_state else None,
            )

        return self._execute(
            "unblock_payment", work, actor_id=actor_id, milestone_id=milestone_id
        )

    def mark_paid(
        self,
        milestone_id: UUID,
        explanation: str | None,
        actor_id: UUID,
        role: Role,
    ) -> OperationResult:
        def work() -> OperationResult:
            record = self._engine.mark_paid(milestone_id, explanation, actor_id, role)
            return OperationResult(success=True, value=record.id, new_state=record.state)

        return self._execute("mark_paid", work, actor_id=actor_id, milestone_id=milestone_id)

    def recalculate_eligibility(
        self,
        milestone_id: UUID,
        actor_id: UUID,
        role: Role,
    ) -> OperationResult:
        """
        Compensating recalculation for a milestone whose payment record may
        have drifted.  May override the table; never leaves MARKED_PAID.
        """

        def work() -> OperationResult:
            result = self._engine.recalculate(
                milestone_id=milestone_id,
                actor_id=actor_id,
                role=role,
                event_type=EligibilityEventType.RECALCULATION_TRIGGERED,
            )
            return OperationResult(
                success=True,
                value=result,
                new_state=result.new_state.value,
                previous_state=result.previous_state.value if result.previous_state else None,
            )

        return self._execute(
            "recalculate_eligibility",
            work,
            max_attempts=self._policy.max_recalculation_retries,
            actor_id=actor_id,
            milestone_id=milestone_id,
        )

    def get_eligibility(self, milestone_id: UUID) -> OperationResult:
        """Canonical record + derived indicator + recent events.  Role-independent."""
        return self._read(
            "get_eligibility",
            lambda: self._eligibility_selector.get_eligibility(milestone_id),
            milestone_id=milestone_id,
        )

    def get_project_eligibilities(self, project_id: UUID) -> OperationResult:
        return self._read(
            "get_project_eligibilities",
            lambda: self._eligibility_selector.get_project_eligibilities(project_id),
            project_id=project_id,
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def query_audit_log(self, project_id: UUID, **filters: Any) -> OperationResult:
        filters.setdefault("limit", self._policy.audit_page_limit)
        return self._read(
            "query_audit_log",
            lambda: self._audit_selector.query_project_logs(project_id, **filters),
            project_id=project_id,
        )

    def export_audit_log_csv(self, project_id: UUID, **filters: Any) -> OperationResult:
        return self._read(
            "export_audit_log_csv",
            lambda: self._audit_selector.export_project_logs_csv(project_id, **filters),
            project_id=project_id,
        )

    def validate_audit_chain(self) -> bool:
        """Raises AuditChainBrokenError on tampering; never a result failure."""
        return AuditLogger(self._session, self._clock).validate_chain()
