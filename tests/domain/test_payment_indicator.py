"""
Payment indicator derivation.

Verifies:
- Every canonical state maps to exactly one indicator and colour
- Due-date arithmetic against an explicit ``today``
- Urgency thresholds are inclusive
- Purity: equal inputs produce equal results
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from governance_kernel.domain.eligibility import EligibilityState
from governance_kernel.domain.indicator import (
    DisplayColor,
    EligibilitySnapshot,
    PaymentIndicator,
    derive_indicator,
)

TODAY = date(2024, 6, 15)
AMOUNT = Decimal("1000")


def snap(state, due_in=None, eligible=AMOUNT, blocked=Decimal("0")):
    due = TODAY + timedelta(days=due_in) if due_in is not None else None
    return EligibilitySnapshot(
        state=state, eligible_amount=eligible, blocked_amount=blocked, due_date=due
    )


class TestTerminalAndOverrideStates:

    def test_paid(self):
        result = derive_indicator(snap(EligibilityState.MARKED_PAID, due_in=-30), TODAY)
        assert result.indicator == PaymentIndicator.PAID
        assert result.display_label == "Paid"
        assert result.display_color == DisplayColor.PURPLE
        assert result.is_urgent is False

    def test_blocked_reports_blocked_amount_only(self):
        result = derive_indicator(
            snap(EligibilityState.BLOCKED, due_in=5, blocked=AMOUNT), TODAY
        )
        assert result.indicator == PaymentIndicator.BLOCKED
        assert result.display_color == DisplayColor.RED
        assert result.is_urgent is True
        assert result.eligible_amount == Decimal("0")
        assert result.blocked_amount == AMOUNT


class TestNotYetEligible:

    @pytest.mark.parametrize(
        "state", [EligibilityState.NOT_DUE, EligibilityState.VERIFIED_NOT_ELIGIBLE]
    )
    def test_not_due(self, state):
        result = derive_indicator(snap(state, due_in=-3, eligible=Decimal("0")), TODAY)
        assert result.indicator == PaymentIndicator.NOT_DUE
        assert result.display_color == DisplayColor.GRAY
        assert result.eligible_amount == Decimal("0")

    def test_pending_verification(self):
        result = derive_indicator(snap(EligibilityState.DUE_PENDING_VERIFICATION), TODAY)
        assert result.indicator == PaymentIndicator.ELIGIBLE_NOT_DUE
        assert result.display_label == "Pending Verification"
        assert result.display_color == DisplayColor.YELLOW


class TestEligibleStates:

    @pytest.mark.parametrize(
        "state", [EligibilityState.FULLY_ELIGIBLE, EligibilityState.PARTIALLY_ELIGIBLE]
    )
    def test_no_due_date(self, state):
        result = derive_indicator(snap(state), TODAY)
        assert result.indicator == PaymentIndicator.ELIGIBLE_NOT_DUE
        assert result.display_label == "Eligible"
        assert result.days_until_due is None

    def test_overdue(self):
        result = derive_indicator(snap(EligibilityState.FULLY_ELIGIBLE, due_in=-4), TODAY)
        assert result.indicator == PaymentIndicator.OVERDUE
        assert result.display_label == "Overdue by 4d"
        assert result.days_overdue == 4
        assert result.days_until_due is None
        assert result.is_urgent is True

    def test_due_today(self):
        result = derive_indicator(snap(EligibilityState.FULLY_ELIGIBLE, due_in=0), TODAY)
        assert result.indicator == PaymentIndicator.ELIGIBLE_DUE
        assert result.display_label == "Due Today"
        assert result.display_color == DisplayColor.GREEN
        assert result.is_urgent is True

    @pytest.mark.parametrize(
        "due_in,urgent", [(1, True), (3, True), (4, False), (7, False)]
    )
    def test_due_soon_window(self, due_in, urgent):
        result = derive_indicator(snap(EligibilityState.FULLY_ELIGIBLE, due_in=due_in), TODAY)
        assert result.indicator == PaymentIndicator.ELIGIBLE_DUE
        assert result.display_label == f"Due in {due_in}d"
        assert result.days_until_due == due_in
        assert result.is_urgent is urgent

    def test_beyond_due_soon_window(self):
        result = derive_indicator(snap(EligibilityState.FULLY_ELIGIBLE, due_in=8), TODAY)
        assert result.indicator == PaymentIndicator.ELIGIBLE_NOT_DUE
        assert result.display_color == DisplayColor.YELLOW
        assert result.days_until_due == 8

    def test_thresholds_are_parameters(self):
        result = derive_indicator(
            snap(EligibilityState.FULLY_ELIGIBLE, due_in=10),
            TODAY,
            due_soon_days=14,
            urgent_days=10,
        )
        assert result.indicator == PaymentIndicator.ELIGIBLE_DUE
        assert result.is_urgent is True


@given(
    st.sampled_from(list(EligibilityState)),
    st.one_of(st.none(), st.integers(min_value=-400, max_value=400)),
    st.decimals(min_value=0, max_value=10**8, places=2, allow_nan=False),
)
def test_derivation_is_pure(state, due_in, amount):
    snapshot = snap(state, due_in=due_in, eligible=amount)
    first = derive_indicator(snapshot, TODAY)
    assert derive_indicator(snapshot, TODAY) == first
    if first.indicator == PaymentIndicator.OVERDUE:
        assert first.days_overdue > 0 and first.is_urgent
