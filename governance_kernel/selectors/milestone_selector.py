"""Read access to milestones and their lifecycle history."""

from uuid import UUID

from sqlalchemy import select

from governance_kernel.domain.dtos import MilestoneRecord, TransitionRecord
from governance_kernel.domain.lifecycle import MilestoneState
from governance_kernel.exceptions import MilestoneNotFoundError
from governance_kernel.models.milestone import Milestone, MilestoneTransition
from governance_kernel.selectors.base import BaseSelector


class MilestoneSelector(BaseSelector):

    def get(self, milestone_id: UUID) -> MilestoneRecord:
        milestone = self.session.get(Milestone, milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(str(milestone_id))
        return MilestoneRecord.from_model(milestone)

    def list_for_project(
        self,
        project_id: UUID,
        state: MilestoneState | None = None,
    ) -> list[MilestoneRecord]:
        stmt = select(Milestone).where(Milestone.project_id == project_id)
        if state is not None:
            stmt = stmt.where(Milestone.state == MilestoneState(state).value)
        stmt = stmt.order_by(Milestone.planned_end.is_(None), Milestone.planned_end, Milestone.title)
        return [MilestoneRecord.from_model(m) for m in self.session.execute(stmt).scalars()]

    def history(self, milestone_id: UUID) -> list[TransitionRecord]:
        """Ordered transitions, oldest first."""
        if self.session.get(Milestone, milestone_id) is None:
            raise MilestoneNotFoundError(str(milestone_id))
        rows = self.session.execute(
            select(MilestoneTransition)
            .where(MilestoneTransition.milestone_id == milestone_id)
            .order_by(MilestoneTransition.seq)
        ).scalars()
        return [TransitionRecord.from_model(t) for t in rows]
