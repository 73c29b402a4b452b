"""
Typed Exception Hierarchy for the Governance Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Payment governance decisions must be machine-checkable. A caller that has to
parse "cannot verify" out of a message string is one wording change away
from approving a payment it should have rejected.

Every exception in this module therefore:
  1. Has its own class (catch by type, not by message)
  2. Has a CODE class attribute (machine-readable, API-safe)
  3. Carries structured DATA as attributes (milestone_id, role, states)

Rejections (the caller asked for something the rules forbid) additionally
carry a KIND: the failure category returned by the orchestrator in an
OperationResult.  Rejections never escape the public operation surface;
the orchestrator converts them into typed failures.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from GovernanceKernelError:

    GovernanceKernelError (base)
    |
    +-- RejectionError                  (caller-facing, mapped to a result)
    |   +-- NotFoundError
    |   |   +-- MilestoneNotFoundError
    |   |   +-- EvidenceNotFoundError
    |   +-- InvalidTransitionError
    |   +-- ForbiddenRoleError
    |   |   +-- SelfReviewError
    |   +-- PreconditionFailedError
    |   +-- ReasonRequiredError
    |   +-- AlreadyInStateError
    |   +-- ValidationError
    |
    +-- AuditError
    |   +-- AuditChainBrokenError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |   +-- RetryExhaustedError
    |
    +-- IntegrityGuardError             (invariant violations, never retried)
        +-- ImmutabilityViolationError
        +-- SingleWriterViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                     | Kind                | When Raised
-------------|--------------------------|---------------------|---------------------------
Rejection    | MILESTONE_NOT_FOUND      | NOT_FOUND           | Unknown milestone id
             | EVIDENCE_NOT_FOUND       | NOT_FOUND           | Unknown evidence id
             | INVALID_TRANSITION       | INVALID_TRANSITION  | Edge not in adjacency
             | FORBIDDEN_ROLE           | FORBIDDEN           | Unknown or disallowed role
             | SELF_REVIEW              | FORBIDDEN           | Reviewer is submitter
             | PRECONDITION_FAILED      | PRECONDITION_FAILED | Evidence missing, etc.
             | REASON_REQUIRED          | REASON_REQUIRED     | Empty reason/explanation
             | ALREADY_IN_STATE         | ALREADY_IN_STATE    | Double block, paid, etc.
             | VALIDATION_FAILED        | VALIDATION_FAILED   | Bad creation input
-------------|--------------------------|---------------------|---------------------------
Audit        | AUDIT_CHAIN_BROKEN       |                     | Hash chain mismatch
-------------|--------------------------|---------------------|---------------------------
Concurrency  | OPTIMISTIC_LOCK_CONFLICT |                     | Stale version on flush
             | RETRY_EXHAUSTED          |                     | Bounded retries used up
-------------|--------------------------|---------------------|---------------------------
Integrity    | IMMUTABILITY_VIOLATION   |                     | Append-only row touched
             | SINGLE_WRITER_VIOLATION  |                     | State written off-engine
"""


class GovernanceKernelError(Exception):
    """
    Base exception for all governance kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "GOVERNANCE_KERNEL_ERROR"


# Caller-facing rejections


class RejectionError(GovernanceKernelError):
    """Base for requests the governance rules refuse."""

    code: str = "REJECTED"
    kind: str = "REJECTED"


class NotFoundError(RejectionError):
    """Base for missing records."""

    code: str = "NOT_FOUND"
    kind: str = "NOT_FOUND"


class MilestoneNotFoundError(NotFoundError):
    """Milestone with given ID was not found."""

    code: str = "MILESTONE_NOT_FOUND"

    def __init__(self, milestone_id: str):
        self.milestone_id = milestone_id
        super().__init__(f"Milestone not found: {milestone_id}")


class EvidenceNotFoundError(NotFoundError):
    """Evidence with given ID was not found."""

    code: str = "EVIDENCE_NOT_FOUND"

    def __init__(self, evidence_id: str):
        self.evidence_id = evidence_id
        super().__init__(f"Evidence not found: {evidence_id}")


class InvalidTransitionError(RejectionError):
    """Requested edge is not in the fixed transition graph."""

    code: str = "INVALID_TRANSITION"
    kind: str = "INVALID_TRANSITION"

    def __init__(self, entity_type: str, from_state: str, to_state: str):
        self.entity_type = entity_type
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid {entity_type} transition from {from_state} to {to_state}"
        )


class ForbiddenRoleError(RejectionError):
    """Role is not permitted to perform the action."""

    code: str = "FORBIDDEN_ROLE"
    kind: str = "FORBIDDEN"

    def __init__(self, role: str, action: str, allowed: tuple[str, ...] = ()):
        self.role = role
        self.action = action
        self.allowed = allowed
        detail = f" (allowed: {', '.join(allowed)})" if allowed else ""
        super().__init__(f"Role {role} cannot {action}{detail}")


class SelfReviewError(ForbiddenRoleError):
    """Evidence reviewer is the same person who submitted it."""

    code: str = "SELF_REVIEW"

    def __init__(self, evidence_id: str, actor_id: str, role: str):
        self.evidence_id = evidence_id
        self.actor_id = actor_id
        super().__init__(role=role, action="review their own evidence")


class PreconditionFailedError(RejectionError):
    """A required fact does not hold (e.g. no submitted evidence)."""

    code: str = "PRECONDITION_FAILED"
    kind: str = "PRECONDITION_FAILED"

    def __init__(self, entity_id: str, reason: str):
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(reason)


class ReasonRequiredError(RejectionError):
    """A reason, explanation, or review note is mandatory but empty."""

    code: str = "REASON_REQUIRED"
    kind: str = "REASON_REQUIRED"

    def __init__(self, action: str, field_name: str = "reason"):
        self.action = action
        self.field_name = field_name
        super().__init__(f"A non-empty {field_name} is required to {action}")


class AlreadyInStateError(RejectionError):
    """The record is already in, or past, the requested state."""

    code: str = "ALREADY_IN_STATE"
    kind: str = "ALREADY_IN_STATE"

    def __init__(self, entity_type: str, entity_id: str, state: str, message: str | None = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.state = state
        super().__init__(message or f"{entity_type} {entity_id} is already {state}")


class ValidationError(RejectionError):
    """Input field failed validation."""

    code: str = "VALIDATION_FAILED"
    kind: str = "VALIDATION_FAILED"

    def __init__(self, field_name: str, message: str):
        self.field_name = field_name
        super().__init__(f"{field_name}: {message}")


# Audit-related exceptions


class AuditError(GovernanceKernelError):
    """Base exception for audit-trail errors."""

    code: str = "AUDIT_ERROR"


class AuditChainBrokenError(AuditError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_entry_id: str, expected_hash: str, actual_hash: str):
        self.audit_entry_id = audit_entry_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_entry_id}: "
            f"expected {expected_hash}, found {actual_hash}"
        )


# Concurrency-related exceptions


class ConcurrencyError(GovernanceKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


class RetryExhaustedError(ConcurrencyError):
    """A bounded retry loop ran out of attempts."""

    code: str = "RETRY_EXHAUSTED"

    def __init__(self, operation: str, attempts: int, last_error: str):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}"
        )


# Integrity guards


class IntegrityGuardError(GovernanceKernelError):
    """Base for structural invariant violations (programming errors)."""

    code: str = "INTEGRITY_GUARD"


class ImmutabilityViolationError(IntegrityGuardError):
    """
    Attempted to modify or delete an immutable record.

    MilestoneTransition, EligibilityEvent, and AuditLogEntry are append-only
    from creation.  Evidence is frozen from creation except for its single
    review.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class SingleWriterViolationError(IntegrityGuardError):
    """Guarded state was written outside its owning component."""

    code: str = "SINGLE_WRITER_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, required_grant: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.required_grant = required_grant
        super().__init__(
            f"{entity_type} {entity_id} may only be written while holding "
            f"the {required_grant} grant"
        )
