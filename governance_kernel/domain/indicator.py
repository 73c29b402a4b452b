"""
Payment indicator derivation (``governance_kernel.domain.indicator``).

``derive_indicator`` is the only way any presentation layer may render
payment status.  It is a pure function of the canonical record plus an
explicit ``today``; it reads no clock and touches no storage, so two calls
with the same input always agree, whoever the viewer is.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum

from governance_kernel.domain.eligibility import (
    ELIGIBLE_STATES,
    ZERO,
    EligibilityState,
)

DEFAULT_DUE_SOON_DAYS = 7
DEFAULT_URGENT_DAYS = 3


class PaymentIndicator(str, Enum):
    NOT_DUE = "NOT_DUE"
    ELIGIBLE_NOT_DUE = "ELIGIBLE_NOT_DUE"
    ELIGIBLE_DUE = "ELIGIBLE_DUE"
    OVERDUE = "OVERDUE"
    BLOCKED = "BLOCKED"
    PAID = "PAID"


class DisplayColor(str, Enum):
    GRAY = "gray"
    YELLOW = "yellow"
    GREEN = "green"
    RED = "red"
    PURPLE = "purple"


@dataclass(frozen=True)
class EligibilitySnapshot:
    """The four fields the indicator is allowed to depend on."""

    state: EligibilityState
    eligible_amount: Decimal
    blocked_amount: Decimal
    due_date: date | None


@dataclass(frozen=True)
class IndicatorResult:
    indicator: PaymentIndicator
    display_label: str
    display_color: DisplayColor
    eligible_amount: Decimal
    blocked_amount: Decimal
    is_urgent: bool
    days_until_due: int | None = None
    days_overdue: int | None = None


def derive_indicator(
    snapshot: EligibilitySnapshot,
    today: date,
    due_soon_days: int = DEFAULT_DUE_SOON_DAYS,
    urgent_days: int = DEFAULT_URGENT_DAYS,
) -> IndicatorResult:
    """Map a canonical eligibility snapshot to a display-ready indicator."""
    state = snapshot.state

    if state == EligibilityState.MARKED_PAID:
        return IndicatorResult(
            indicator=PaymentIndicator.PAID,
            display_label="Paid",
            display_color=DisplayColor.PURPLE,
            eligible_amount=snapshot.eligible_amount,
            blocked_amount=ZERO,
            is_urgent=False,
        )

    if state == EligibilityState.BLOCKED:
        return IndicatorResult(
            indicator=PaymentIndicator.BLOCKED,
            display_label="Blocked",
            display_color=DisplayColor.RED,
            eligible_amount=ZERO,
            blocked_amount=snapshot.blocked_amount,
            is_urgent=True,
        )

    if state in ELIGIBLE_STATES:
        return _derive_eligible(snapshot, today, due_soon_days, urgent_days)

    if state == EligibilityState.DUE_PENDING_VERIFICATION:
        return IndicatorResult(
            indicator=PaymentIndicator.ELIGIBLE_NOT_DUE,
            display_label="Pending Verification",
            display_color=DisplayColor.YELLOW,
            eligible_amount=snapshot.eligible_amount,
            blocked_amount=ZERO,
            is_urgent=False,
        )

    # NOT_DUE, VERIFIED_NOT_ELIGIBLE
    return IndicatorResult(
        indicator=PaymentIndicator.NOT_DUE,
        display_label="Not Due",
        display_color=DisplayColor.GRAY,
        eligible_amount=ZERO,
        blocked_amount=ZERO,
        is_urgent=False,
    )


def _derive_eligible(
    snapshot: EligibilitySnapshot,
    today: date,
    due_soon_days: int,
    urgent_days: int,
) -> IndicatorResult:
    if snapshot.due_date is None:
        return IndicatorResult(
            indicator=PaymentIndicator.ELIGIBLE_NOT_DUE,
            display_label="Eligible",
            display_color=DisplayColor.YELLOW,
            eligible_amount=snapshot.eligible_amount,
            blocked_amount=ZERO,
            is_urgent=False,
        )

    days_until_due = (snapshot.due_date - today).days

    if days_until_due < 0:
        days_overdue = -days_until_due
        return IndicatorResult(
            indicator=PaymentIndicator.OVERDUE,
            display_label=f"Overdue by {days_overdue}d",
            display_color=DisplayColor.RED,
            eligible_amount=snapshot.eligible_amount,
            blocked_amount=ZERO,
            is_urgent=True,
            days_until_due=None,
            days_overdue=days_overdue,
        )

    if days_until_due <= due_soon_days:
        label = "Due Today" if days_until_due == 0 else f"Due in {days_until_due}d"
        return IndicatorResult(
            indicator=PaymentIndicator.ELIGIBLE_DUE,
            display_label=label,
            display_color=DisplayColor.GREEN,
            eligible_amount=snapshot.eligible_amount,
            blocked_amount=ZERO,
            is_urgent=days_until_due <= urgent_days,
            days_until_due=days_until_due,
        )

    return IndicatorResult(
        indicator=PaymentIndicator.ELIGIBLE_NOT_DUE,
        display_label=f"Due in {days_until_due}d",
        display_color=DisplayColor.YELLOW,
        eligible_amount=snapshot.eligible_amount,
        blocked_amount=ZERO,
        is_urgent=False,
        days_until_due=days_until_due,
    )
