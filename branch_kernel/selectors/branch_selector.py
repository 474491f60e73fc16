"""
Module: branch_kernel.selectors.branch_selector
Responsibility: Read access to branches and their transition history.
Architecture position: Kernel > Selectors.
"""

from uuid import UUID

from sqlalchemy import select

from branch_kernel.domain.workflow import BranchRecord, BranchState, TransitionRecord
from branch_kernel.exceptions import BranchNotFoundError
from branch_kernel.models.branch import BranchMemberModel, BranchModel
from branch_kernel.models.transition import BranchTransitionModel
from branch_kernel.selectors.base import BaseSelector


class BranchSelector(BaseSelector):
    """Branch lookups and ordered history."""

    def get(self, branch_id: UUID) -> BranchRecord:
        model = self.session.get(BranchModel, branch_id)
        if model is None:
            raise BranchNotFoundError(branch_id)
        return model.to_dto()

    def list_branches(
        self,
        owner_id: UUID | None = None,
        state: BranchState | None = None,
        member_id: UUID | None = None,
    ) -> list[BranchRecord]:
        stmt = select(BranchModel).order_by(BranchModel.created_at, BranchModel.id)
        if owner_id is not None:
            stmt = stmt.where(BranchModel.owner_id == owner_id)
        if state is not None:
            stmt = stmt.where(BranchModel.state == BranchState(state).value)
        if member_id is not None:
            stmt = stmt.where(
                BranchModel.id.in_(
                    select(BranchMemberModel.branch_id).where(
                        BranchMemberModel.user_id == member_id
                    )
                )
            )
        return [m.to_dto() for m in self.session.scalars(stmt)]

    def history(self, branch_id: UUID) -> list[TransitionRecord]:
        """Transition history in acceptance order.

        Works for force-deleted branches too; their history is kept.
        """
        rows = self.session.scalars(
            select(BranchTransitionModel)
            .where(BranchTransitionModel.branch_id == branch_id)
            .order_by(BranchTransitionModel.sequence)
        )
        return [row.to_dto() for row in rows]
