"""Services for the governance kernel (write side)."""

from governance_kernel.services.audit_logger import AuditLogger
from governance_kernel.services.eligibility_engine import (
    PaymentEligibilityEngine,
    RecalculationResult,
    retained_transition_counts,
)
from governance_kernel.services.evidence_service import EvidenceFileSpec, EvidenceService
from governance_kernel.services.governance_orchestrator import (
    FailureKind,
    GovernanceOrchestrator,
    OperationResult,
)
from governance_kernel.services.milestone_state_machine import (
    MilestoneStateMachine,
    TransitionResult,
)
from governance_kernel.services.sequence_service import SequenceService

__all__ = [
    "AuditLogger",
    "EvidenceFileSpec",
    "EvidenceService",
    "FailureKind",
    "GovernanceOrchestrator",
    "MilestoneStateMachine",
    "OperationResult",
    "PaymentEligibilityEngine",
    "RecalculationResult",
    "SequenceService",
    "TransitionResult",
    "retained_transition_counts",
]
