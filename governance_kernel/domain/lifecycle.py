"""
Milestone lifecycle domain types (``governance_kernel.domain.lifecycle``).

Responsibility
--------------
Pure definition of the milestone delivery lifecycle: the five states, the
fixed adjacency list, the per-edge role allow-lists, and the typed
``MilestoneStateChanged`` domain event handed to the eligibility engine.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* The graph is fixed: ``MILESTONE_TRANSITIONS`` is the only source of
  legal edges.  ``CLOSED`` has no outgoing edges.
* Edge legality is decided before role: a request for an edge that does
  not exist is invalid regardless of who asks.
* The only backward edge is the rejection edge SUBMITTED -> IN_PROGRESS,
  and it requires a reason.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from governance_kernel.exceptions import ForbiddenRoleError


class MilestoneState(str, Enum):
    """Milestone delivery lifecycle states."""

    DRAFT = "DRAFT"
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    VERIFIED = "VERIFIED"
    CLOSED = "CLOSED"


class Role(str, Enum):
    """Project roles.  Role lookup itself is an external concern."""

    OWNER = "OWNER"
    PMC = "PMC"
    VENDOR = "VENDOR"
    VIEWER = "VIEWER"


# Tuples rather than sets so valid_next_states() has a stable order.
MILESTONE_TRANSITIONS: dict[MilestoneState, tuple[MilestoneState, ...]] = {
    MilestoneState.DRAFT: (MilestoneState.IN_PROGRESS,),
    MilestoneState.IN_PROGRESS: (MilestoneState.SUBMITTED,),
    MilestoneState.SUBMITTED: (MilestoneState.VERIFIED, MilestoneState.IN_PROGRESS),
    MilestoneState.VERIFIED: (MilestoneState.CLOSED,),
    MilestoneState.CLOSED: (),
}

TRANSITION_ROLES: dict[tuple[MilestoneState, MilestoneState], frozenset[Role]] = {
    (MilestoneState.DRAFT, MilestoneState.IN_PROGRESS): frozenset({
        Role.OWNER, Role.PMC, Role.VENDOR,
    }),
    (MilestoneState.IN_PROGRESS, MilestoneState.SUBMITTED): frozenset({Role.VENDOR}),
    (MilestoneState.SUBMITTED, MilestoneState.VERIFIED): frozenset({Role.OWNER, Role.PMC}),
    (MilestoneState.SUBMITTED, MilestoneState.IN_PROGRESS): frozenset({Role.OWNER, Role.PMC}),
    (MilestoneState.VERIFIED, MilestoneState.CLOSED): frozenset({Role.OWNER, Role.PMC}),
}

REJECTION_EDGE: tuple[MilestoneState, MilestoneState] = (
    MilestoneState.SUBMITTED,
    MilestoneState.IN_PROGRESS,
)

# Roles allowed to create milestones or review evidence.
MANAGING_ROLES: frozenset[Role] = frozenset({Role.OWNER, Role.PMC})


def is_valid_transition(from_state: MilestoneState, to_state: MilestoneState) -> bool:
    """True if ``to_state`` is in the fixed adjacency list of ``from_state``."""
    return to_state in MILESTONE_TRANSITIONS.get(from_state, ())


def allowed_roles(from_state: MilestoneState, to_state: MilestoneState) -> frozenset[Role]:
    """Roles permitted to drive the edge; empty for non-edges."""
    return TRANSITION_ROLES.get((from_state, to_state), frozenset())


def can_perform_transition(
    from_state: MilestoneState,
    to_state: MilestoneState,
    role: Role,
) -> bool:
    return is_valid_transition(from_state, to_state) and role in allowed_roles(
        from_state, to_state
    )


def valid_next_states(state: MilestoneState, role: Role) -> tuple[MilestoneState, ...]:
    """Filter the adjacency list for ``state`` by each edge's role allow-list.

    Pure; drives UI affordances and cheap pre-validation.
    """
    return tuple(
        candidate
        for candidate in MILESTONE_TRANSITIONS.get(state, ())
        if role in allowed_roles(state, candidate)
    )


def coerce_role(role: Role | str, action: str) -> Role:
    """The caller's role as a ``Role``.  Unknown names are refused like a wrong role."""
    try:
        return Role(role)
    except ValueError:
        raise ForbiddenRoleError(str(role), action) from None


def requires_reason(from_state: MilestoneState, to_state: MilestoneState) -> bool:
    return (from_state, to_state) == REJECTION_EDGE


@dataclass(frozen=True)
class MilestoneStateChanged:
    """Domain event emitted by a successful lifecycle transition.

    The eligibility engine consumes this instead of being called as a hidden
    side effect, so the coupling between the two state machines is explicit.
    """

    milestone_id: UUID
    from_state: MilestoneState
    to_state: MilestoneState
    actor_id: UUID
    role: Role
    occurred_at: datetime
    transition_id: UUID | None = None
    reason: str | None = None
