"""ORM models for the governance kernel."""

from governance_kernel.models.audit_log import AuditActionType, AuditLogEntry
from governance_kernel.models.eligibility import EligibilityEvent, PaymentEligibility
from governance_kernel.models.evidence import Evidence, EvidenceFile, EvidenceStatus
from governance_kernel.models.milestone import Milestone, MilestoneTransition
from governance_kernel.models.sequence import SequenceCounter

__all__ = [
    "AuditActionType",
    "AuditLogEntry",
    "EligibilityEvent",
    "Evidence",
    "EvidenceFile",
    "EvidenceStatus",
    "Milestone",
    "MilestoneTransition",
    "PaymentEligibility",
    "SequenceCounter",
]
