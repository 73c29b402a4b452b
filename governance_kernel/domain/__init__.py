"""
Pure domain layer.

Value objects and decision functions with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

The only sanctioned source of time is an injected Clock.
"""

from governance_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from governance_kernel.domain.eligibility import (
    BlockingReasonCode,
    DerivedState,
    EligibilityEventType,
    EligibilityState,
    HumanOverride,
    MilestoneFacts,
    RawEligibility,
    ResolutionOutcome,
    StateResolution,
    classify,
    compute_raw,
    is_valid_eligibility_transition,
    resolve_state,
)
from governance_kernel.domain.indicator import (
    DisplayColor,
    EligibilitySnapshot,
    IndicatorResult,
    PaymentIndicator,
    derive_indicator,
)
from governance_kernel.domain.lifecycle import (
    MilestoneState,
    MilestoneStateChanged,
    Role,
    coerce_role,
    is_valid_transition,
    valid_next_states,
)
from governance_kernel.domain.policy import GovernancePolicy

__all__ = [
    "BlockingReasonCode",
    "Clock",
    "DerivedState",
    "DeterministicClock",
    "DisplayColor",
    "EligibilityEventType",
    "EligibilitySnapshot",
    "EligibilityState",
    "GovernancePolicy",
    "HumanOverride",
    "IndicatorResult",
    "MilestoneFacts",
    "MilestoneState",
    "MilestoneStateChanged",
    "PaymentIndicator",
    "RawEligibility",
    "ResolutionOutcome",
    "Role",
    "StateResolution",
    "SystemClock",
    "classify",
    "coerce_role",
    "compute_raw",
    "derive_indicator",
    "is_valid_eligibility_transition",
    "is_valid_transition",
    "resolve_state",
    "valid_next_states",
]
