"""Selectors for the governance kernel (read side)."""

from governance_kernel.selectors.audit_selector import AuditSelector
from governance_kernel.selectors.eligibility_selector import EligibilitySelector
from governance_kernel.selectors.milestone_selector import MilestoneSelector

__all__ = [
    "AuditSelector",
    "EligibilitySelector",
    "MilestoneSelector",
]
