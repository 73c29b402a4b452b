"""
Module: governance_kernel.selectors.eligibility_selector
Responsibility: The single read path for payment status.  Combines the
    canonical PaymentEligibility record with the derived indicator and the
    most recent events.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - The indicator is derived from the stored record only, via
      derive_indicator(); nothing here recomputes amounts.
    - The payload does not depend on who is asking.  Roles change which
      actions a caller is offered, never which data they see.
"""

from datetime import date
from uuid import UUID

from sqlalchemy import select

from governance_kernel.domain.clock import Clock, SystemClock
from governance_kernel.domain.dtos import (
    EligibilityEventRecord,
    EligibilityRecord,
    EligibilityView,
)
from governance_kernel.domain.indicator import derive_indicator
from governance_kernel.domain.policy import GovernancePolicy
from governance_kernel.exceptions import MilestoneNotFoundError
from governance_kernel.models.eligibility import EligibilityEvent, PaymentEligibility
from governance_kernel.models.milestone import Milestone
from governance_kernel.selectors.base import BaseSelector


class EligibilitySelector(BaseSelector):
    """Canonical payment views for milestones and projects."""

    def __init__(self, session, clock: Clock | None = None, policy: GovernancePolicy | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._policy = policy or GovernancePolicy()

    def _view(self, record: PaymentEligibility, today: date) -> EligibilityView:
        dto = EligibilityRecord.from_model(record)
        events = self.session.execute(
            select(EligibilityEvent)
            .where(EligibilityEvent.eligibility_id == record.id)
            .order_by(EligibilityEvent.seq.desc())
            .limit(self._policy.recent_events_limit)
        ).scalars()
        return EligibilityView(
            record=dto,
            indicator=derive_indicator(
                dto.snapshot(),
                today,
                due_soon_days=self._policy.due_soon_threshold_days,
                urgent_days=self._policy.urgent_threshold_days,
            ),
            recent_events=tuple(EligibilityEventRecord.from_model(e) for e in events),
        )

    def get_eligibility(self, milestone_id: UUID) -> EligibilityView:
        """
        Raises:
            MilestoneNotFoundError: No eligibility record for the milestone.
        """
        record = self.session.execute(
            select(PaymentEligibility).where(PaymentEligibility.milestone_id == milestone_id)
        ).scalar_one_or_none()
        if record is None:
            raise MilestoneNotFoundError(str(milestone_id))
        return self._view(record, self._clock.today())

    def get_project_eligibilities(self, project_id: UUID) -> list[EligibilityView]:
        today = self._clock.today()
        records = self.session.execute(
            select(PaymentEligibility)
            .join(Milestone, Milestone.id == PaymentEligibility.milestone_id)
            .where(PaymentEligibility.project_id == project_id)
            .order_by(Milestone.title, Milestone.id)
        ).scalars()
        return [self._view(record, today) for record in records]
