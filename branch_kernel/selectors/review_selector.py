"""
Module: branch_kernel.selectors.review_selector
Responsibility: Review tally and review history for a branch.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - The tally counts only the branch's current review cycle, computed from
      stored review rows; it never caches or fabricates a verdict.
"""

from uuid import UUID

from sqlalchemy import select

from branch_kernel.domain.review import (
    ACTIVE_REVIEW_STATUSES,
    ReviewCycleSummary,
    ReviewRecord,
    ReviewStats,
    ReviewTally,
    review_stats,
    summarize_cycles,
    tally_reviews,
)
from branch_kernel.exceptions import BranchNotFoundError
from branch_kernel.models.branch import BranchModel
from branch_kernel.models.review import ReviewModel
from branch_kernel.selectors.base import BaseSelector


class ReviewSelector(BaseSelector):
    """Read side of the review process."""

    def _branch(self, branch_id: UUID) -> BranchModel:
        branch = self.session.get(BranchModel, branch_id)
        if branch is None:
            raise BranchNotFoundError(branch_id)
        return branch

    def reviews(self, branch_id: UUID, cycle: int | None = None) -> list[ReviewRecord]:
        stmt = (
            select(ReviewModel)
            .where(ReviewModel.branch_id == branch_id)
            .order_by(ReviewModel.cycle, ReviewModel.created_at, ReviewModel.reviewer_id)
        )
        if cycle is not None:
            stmt = stmt.where(ReviewModel.cycle == cycle)
        return [r.to_dto() for r in self.session.scalars(stmt)]

    def active_review(self, branch_id: UUID, reviewer_id: UUID) -> ReviewRecord | None:
        row = self.session.scalars(
            select(ReviewModel).where(
                ReviewModel.branch_id == branch_id,
                ReviewModel.reviewer_id == reviewer_id,
                ReviewModel.status.in_([s.value for s in ACTIVE_REVIEW_STATUSES]),
            )
        ).one_or_none()
        return row.to_dto() if row is not None else None

    def tally(self, branch_id: UUID) -> ReviewTally:
        branch = self._branch(branch_id)
        return tally_reviews(
            self.reviews(branch_id, cycle=branch.review_cycle),
            branch.required_approvals,
            branch.review_cycle,
        )

    def review_cycles(self, branch_id: UUID) -> list[ReviewCycleSummary]:
        branch = self._branch(branch_id)
        return summarize_cycles(self.reviews(branch_id), branch.required_approvals)

    def stats(self, branch_id: UUID) -> ReviewStats:
        self._branch(branch_id)
        return review_stats(self.reviews(branch_id))

    def pending_for_reviewer(self, reviewer_id: UUID) -> list[ReviewRecord]:
        rows = self.session.scalars(
            select(ReviewModel)
            .where(
                ReviewModel.reviewer_id == reviewer_id,
                ReviewModel.status.in_([s.value for s in ACTIVE_REVIEW_STATUSES]),
            )
            .order_by(ReviewModel.created_at)
        )
        return [r.to_dto() for r in rows]
