"""
Payment eligibility domain logic (``governance_kernel.domain.eligibility``).

Responsibility
--------------
Pure, deterministic core of the payment eligibility engine:

* the 7-value ``EligibilityState`` set and its transition table,
* the tagged split between auto-derived states and human overrides,
* ``compute_raw`` -- amounts and candidate state from milestone facts,
* ``resolve_state`` -- stickiness and table validation of a candidate.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  May import only from
``domain/lifecycle``.  The persistence half lives in
``services/eligibility_engine.py``, which is the only caller that turns a
``StateResolution`` into a stored row.

Invariants enforced
-------------------
* Amounts depend only on milestone facts, never on who is asking.
* ``MARKED_PAID`` is absorbing: nothing leaves it, overrides included.
* A human override (``BLOCKED``, ``MARKED_PAID``) survives every
  automatic recalculation unless the triggering event releases it.
* A candidate outside the table is retained-not-raised on the automatic
  path.  The caller is told why so it can log and count the retention.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum

from governance_kernel.domain.lifecycle import MilestoneState

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class EligibilityState(str, Enum):
    """Canonical payment state of one milestone."""

    NOT_DUE = "NOT_DUE"
    DUE_PENDING_VERIFICATION = "DUE_PENDING_VERIFICATION"
    VERIFIED_NOT_ELIGIBLE = "VERIFIED_NOT_ELIGIBLE"
    PARTIALLY_ELIGIBLE = "PARTIALLY_ELIGIBLE"
    FULLY_ELIGIBLE = "FULLY_ELIGIBLE"
    BLOCKED = "BLOCKED"
    MARKED_PAID = "MARKED_PAID"


_ELIGIBLE_TARGETS = frozenset({
    EligibilityState.PARTIALLY_ELIGIBLE,
    EligibilityState.FULLY_ELIGIBLE,
})

ELIGIBILITY_TRANSITIONS: dict[EligibilityState, frozenset[EligibilityState]] = {
    EligibilityState.NOT_DUE: frozenset({
        EligibilityState.DUE_PENDING_VERIFICATION,
        EligibilityState.VERIFIED_NOT_ELIGIBLE,
        EligibilityState.PARTIALLY_ELIGIBLE,
        EligibilityState.FULLY_ELIGIBLE,
    }),
    EligibilityState.DUE_PENDING_VERIFICATION: frozenset({
        EligibilityState.VERIFIED_NOT_ELIGIBLE,
        EligibilityState.PARTIALLY_ELIGIBLE,
        EligibilityState.FULLY_ELIGIBLE,
    }),
    EligibilityState.VERIFIED_NOT_ELIGIBLE: _ELIGIBLE_TARGETS,
    EligibilityState.PARTIALLY_ELIGIBLE: frozenset({
        EligibilityState.FULLY_ELIGIBLE,
        EligibilityState.BLOCKED,
        EligibilityState.MARKED_PAID,
    }),
    EligibilityState.FULLY_ELIGIBLE: frozenset({
        EligibilityState.PARTIALLY_ELIGIBLE,
        EligibilityState.BLOCKED,
        EligibilityState.MARKED_PAID,
    }),
    EligibilityState.BLOCKED: _ELIGIBLE_TARGETS,
    EligibilityState.MARKED_PAID: frozenset(),
}

TERMINAL_ELIGIBILITY_STATES: frozenset[EligibilityState] = frozenset({
    EligibilityState.MARKED_PAID,
})

HUMAN_OVERRIDE_STATES: frozenset[EligibilityState] = frozenset({
    EligibilityState.BLOCKED,
    EligibilityState.MARKED_PAID,
})

ELIGIBLE_STATES: frozenset[EligibilityState] = _ELIGIBLE_TARGETS


class EligibilityEventType(str, Enum):
    """Why an eligibility record was touched."""

    MILESTONE_STATE_CHANGED = "MILESTONE_STATE_CHANGED"
    EVIDENCE_APPROVED = "EVIDENCE_APPROVED"
    EVIDENCE_REJECTED = "EVIDENCE_REJECTED"
    RECALCULATION_TRIGGERED = "RECALCULATION_TRIGGERED"
    BLOCKED_BY_OWNER = "BLOCKED_BY_OWNER"
    BLOCKED_BY_PMC = "BLOCKED_BY_PMC"
    UNBLOCKED_BY_OWNER = "UNBLOCKED_BY_OWNER"
    MARKED_PAID_BY_OWNER = "MARKED_PAID_BY_OWNER"
    MARKED_PAID_BY_PMC = "MARKED_PAID_BY_PMC"


# Events allowed to move a record out of a human override.
STICKINESS_RELEASE_EVENTS: frozenset[EligibilityEventType] = frozenset({
    EligibilityEventType.UNBLOCKED_BY_OWNER,
    EligibilityEventType.MARKED_PAID_BY_OWNER,
    EligibilityEventType.MARKED_PAID_BY_PMC,
})

# Events allowed to apply a candidate the table does not list.
TABLE_OVERRIDE_EVENTS: frozenset[EligibilityEventType] = frozenset({
    EligibilityEventType.RECALCULATION_TRIGGERED,
    EligibilityEventType.UNBLOCKED_BY_OWNER,
})


class BlockingReasonCode(str, Enum):
    """Structured reason for a payment block."""

    QUALITY_ISSUE = "QUALITY_ISSUE"
    DOCUMENTATION_INCOMPLETE = "DOCUMENTATION_INCOMPLETE"
    DISPUTE_PENDING = "DISPUTE_PENDING"
    COMPLIANCE_ISSUE = "COMPLIANCE_ISSUE"
    BUDGET_HOLD = "BUDGET_HOLD"
    VENDOR_ISSUE = "VENDOR_ISSUE"
    OTHER = "OTHER"


# =========================================================================
# Tagged stored state
# =========================================================================


@dataclass(frozen=True)
class DerivedState:
    """A state the engine computed from milestone facts."""

    state: EligibilityState

    def __post_init__(self) -> None:
        if self.state in HUMAN_OVERRIDE_STATES:
            raise ValueError(f"{self.state.value} is a human override, not a derived state")


@dataclass(frozen=True)
class HumanOverride:
    """A state only a human event can enter or leave."""

    state: EligibilityState

    def __post_init__(self) -> None:
        if self.state not in HUMAN_OVERRIDE_STATES:
            raise ValueError(f"{self.state.value} is not a human override state")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_ELIGIBILITY_STATES


StoredState = DerivedState | HumanOverride


def classify(state: EligibilityState) -> StoredState:
    """Wrap a flat stored state in its tagged variant."""
    if state in HUMAN_OVERRIDE_STATES:
        return HumanOverride(state)
    return DerivedState(state)


def is_valid_eligibility_transition(
    from_state: EligibilityState,
    to_state: EligibilityState,
) -> bool:
    """Table lookup.  Staying in the same state is always valid."""
    if from_state == to_state:
        return True
    return to_state in ELIGIBILITY_TRANSITIONS.get(from_state, frozenset())


# =========================================================================
# Raw computation
# =========================================================================


@dataclass(frozen=True)
class MilestoneFacts:
    """The only inputs the canonical calculation may read."""

    lifecycle_state: MilestoneState
    value: Decimal
    advance_percent: Decimal
    planned_end: date | None = None


@dataclass(frozen=True)
class RawEligibility:
    """Amounts and candidate state before stickiness and table checks."""

    candidate_state: EligibilityState
    eligible_amount: Decimal
    advance_amount: Decimal
    remaining_amount: Decimal
    boq_value_completed: Decimal
    due_date: date | None


_VERIFIED_LIFECYCLE = frozenset({MilestoneState.VERIFIED, MilestoneState.CLOSED})


def compute_raw(facts: MilestoneFacts) -> RawEligibility:
    """Derive amounts and a candidate state from milestone facts only."""
    value = Decimal(facts.value)
    advance_amount = value * Decimal(facts.advance_percent) / HUNDRED
    remaining_amount = value - advance_amount

    if facts.lifecycle_state in _VERIFIED_LIFECYCLE:
        eligible_amount = value
        candidate = EligibilityState.FULLY_ELIGIBLE
    else:
        eligible_amount = ZERO
        candidate = EligibilityState.NOT_DUE

    return RawEligibility(
        candidate_state=candidate,
        eligible_amount=eligible_amount,
        advance_amount=advance_amount,
        remaining_amount=remaining_amount,
        boq_value_completed=eligible_amount,
        due_date=facts.planned_end,
    )


def blocked_amount_for(state: EligibilityState, eligible_amount: Decimal) -> Decimal:
    """Blocked amount mirrors the eligible amount only while blocked."""
    return eligible_amount if state == EligibilityState.BLOCKED else ZERO


# =========================================================================
# Resolution
# =========================================================================


class ResolutionOutcome(str, Enum):
    APPLIED = "APPLIED"
    UNCHANGED = "UNCHANGED"
    STICKY_RETAINED = "STICKY_RETAINED"
    INVALID_RETAINED = "INVALID_RETAINED"


@dataclass(frozen=True)
class StateResolution:
    """Outcome of checking a candidate against the stored state."""

    final_state: EligibilityState
    candidate_state: EligibilityState
    outcome: ResolutionOutcome
    overridden: bool = False

    @property
    def retained(self) -> bool:
        return self.outcome in (
            ResolutionOutcome.STICKY_RETAINED,
            ResolutionOutcome.INVALID_RETAINED,
        )


def resolve_state(
    current: EligibilityState | None,
    candidate: EligibilityState,
    event_type: EligibilityEventType,
) -> StateResolution:
    """Decide the state to store for an automatic recalculation.

    ``current`` is None when no eligibility record exists yet; the
    candidate is then applied as-is.
    """
    if current is None:
        return StateResolution(candidate, candidate, ResolutionOutcome.APPLIED)

    if candidate == current:
        return StateResolution(current, candidate, ResolutionOutcome.UNCHANGED)

    stored = classify(current)
    if isinstance(stored, HumanOverride):
        if stored.is_terminal or event_type not in STICKINESS_RELEASE_EVENTS:
            return StateResolution(current, candidate, ResolutionOutcome.STICKY_RETAINED)

    if is_valid_eligibility_transition(current, candidate):
        return StateResolution(candidate, candidate, ResolutionOutcome.APPLIED)

    if event_type in TABLE_OVERRIDE_EVENTS:
        return StateResolution(
            candidate, candidate, ResolutionOutcome.APPLIED, overridden=True
        )

    return StateResolution(current, candidate, ResolutionOutcome.INVALID_RETAINED)
