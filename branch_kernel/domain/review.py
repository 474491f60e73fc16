"""
Review domain types and the review tally (``branch_kernel.domain.review``).

Responsibility
--------------
Per-reviewer review records, the review lifecycle, and the pure tally that
turns the current cycle's decisions into a consensus verdict.

Architecture position
---------------------
**Kernel domain layer** -- pure functions and frozen dataclasses.  ZERO I/O.
The selector layer loads rows and hands them to :func:`tally_reviews`.

Invariants enforced
-------------------
* Only reviews of the current cycle that are not cancelled are counted.
* A single ``changes_requested`` decision is a veto: consensus is
  ``changes_requested`` regardless of how many approvals were recorded.
* ``approved`` requires ``approved_count >= required_approvals`` AND at least
  one approval from a reviewer who is not an automation actor.
* A threshold above the number of reviewers is a valid, stuck ``pending``
  state, never an error.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from branch_kernel.exceptions import InvalidReviewTransitionError


class ReviewStatus(str, Enum):
    """Review lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


REVIEW_TRANSITIONS: dict[ReviewStatus, frozenset[ReviewStatus]] = {
    ReviewStatus.PENDING: frozenset({
        ReviewStatus.IN_PROGRESS,
        ReviewStatus.COMPLETED,
        ReviewStatus.CANCELLED,
    }),
    ReviewStatus.IN_PROGRESS: frozenset({
        ReviewStatus.COMPLETED,
        ReviewStatus.CANCELLED,
    }),
    ReviewStatus.COMPLETED: frozenset(),
    ReviewStatus.CANCELLED: frozenset(),
}

ACTIVE_REVIEW_STATUSES: frozenset[ReviewStatus] = frozenset({
    ReviewStatus.PENDING,
    ReviewStatus.IN_PROGRESS,
})

TERMINAL_REVIEW_STATUSES: frozenset[ReviewStatus] = frozenset({
    ReviewStatus.COMPLETED,
    ReviewStatus.CANCELLED,
})


def can_move_review(current: ReviewStatus | str, target: ReviewStatus | str) -> bool:
    return ReviewStatus(target) in REVIEW_TRANSITIONS[ReviewStatus(current)]


def require_review_transition(
    review_id: UUID,
    current: ReviewStatus | str,
    target: ReviewStatus | str,
) -> ReviewStatus:
    """Return ``target`` if the review may move there, else raise.

    Completed and cancelled reviews never move again.
    """
    if not can_move_review(current, target):
        raise InvalidReviewTransitionError(
            review_id, ReviewStatus(current).value, ReviewStatus(target).value
        )
    return ReviewStatus(target)


class ReviewDecision(str, Enum):
    """Decision recorded when a review completes."""

    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"


class Consensus(str, Enum):
    """Aggregate verdict of the current review cycle."""

    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    PENDING = "pending"


class CycleOutcome(str, Enum):
    """How a finished (or unfinished) review cycle ended."""

    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    WITHDRAWN = "withdrawn"
    PENDING = "pending"


@dataclass(frozen=True)
class ReviewRecord:
    """Immutable snapshot of one review row."""

    id: UUID
    branch_id: UUID
    reviewer_id: UUID
    requested_by_id: UUID
    cycle: int
    status: ReviewStatus
    decision: ReviewDecision | None = None
    comment: str | None = None
    automated: bool = False
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_REVIEW_STATUSES


@dataclass(frozen=True)
class ReviewTally:
    """Counts and verdict for the current review cycle."""

    approved_count: int
    changes_requested_count: int
    pending_count: int
    required_approvals: int
    consensus: Consensus
    human_approved_count: int = 0

    @property
    def progress(self) -> str:
        return f"{self.approved_count} of {self.required_approvals} required approvals"

    @property
    def missing_conditions(self) -> list[str]:
        """Human-readable conditions still blocking approval."""
        if self.consensus is Consensus.APPROVED:
            return []
        if self.consensus is Consensus.CHANGES_REQUESTED:
            return [f"{self.changes_requested_count} reviewer(s) requested changes"]
        if self.approved_count < self.required_approvals:
            return [self.progress]
        return [self.progress, "an approval from a non-automated reviewer"]


def tally_reviews(
    reviews: Iterable[ReviewRecord],
    required_approvals: int,
    cycle: int,
) -> ReviewTally:
    """Aggregate the ``cycle``'s non-cancelled reviews into a verdict."""
    approved = 0
    human_approved = 0
    changes_requested = 0
    pending = 0
    for review in reviews:
        if review.cycle != cycle or review.status is ReviewStatus.CANCELLED:
            continue
        if review.status in ACTIVE_REVIEW_STATUSES:
            pending += 1
        elif review.decision is ReviewDecision.APPROVED:
            approved += 1
            if not review.automated:
                human_approved += 1
        elif review.decision is ReviewDecision.CHANGES_REQUESTED:
            changes_requested += 1

    if changes_requested:
        consensus = Consensus.CHANGES_REQUESTED
    elif approved >= required_approvals and human_approved:
        consensus = Consensus.APPROVED
    else:
        consensus = Consensus.PENDING

    return ReviewTally(
        approved_count=approved,
        changes_requested_count=changes_requested,
        pending_count=pending,
        required_approvals=required_approvals,
        consensus=consensus,
        human_approved_count=human_approved,
    )


@dataclass(frozen=True)
class ReviewCycleSummary:
    """One review round: who was asked, what they said, how it ended."""

    cycle: int
    reviewer_ids: tuple[UUID, ...]
    approved_count: int
    changes_requested_count: int
    cancelled_count: int
    outcome: CycleOutcome
    started_at: datetime | None = None
    completed_at: datetime | None = None


def summarize_cycles(
    reviews: Iterable[ReviewRecord],
    required_approvals: int,
) -> list[ReviewCycleSummary]:
    """Group reviews by cycle, oldest first."""
    by_cycle: dict[int, list[ReviewRecord]] = {}
    for review in reviews:
        by_cycle.setdefault(review.cycle, []).append(review)

    summaries = []
    for cycle in sorted(by_cycle):
        members = by_cycle[cycle]
        tally = tally_reviews(members, required_approvals, cycle)
        cancelled = sum(1 for r in members if r.status is ReviewStatus.CANCELLED)
        if tally.consensus is Consensus.CHANGES_REQUESTED:
            outcome = CycleOutcome.CHANGES_REQUESTED
        elif tally.consensus is Consensus.APPROVED:
            outcome = CycleOutcome.APPROVED
        elif cancelled == len(members):
            outcome = CycleOutcome.WITHDRAWN
        else:
            outcome = CycleOutcome.PENDING

        created = [r.created_at for r in members if r.created_at is not None]
        completed = [r.completed_at for r in members if r.completed_at is not None]
        summaries.append(
            ReviewCycleSummary(
                cycle=cycle,
                reviewer_ids=tuple(r.reviewer_id for r in members),
                approved_count=tally.approved_count,
                changes_requested_count=tally.changes_requested_count,
                cancelled_count=cancelled,
                outcome=outcome,
                started_at=min(created) if created else None,
                completed_at=(
                    max(completed)
                    if completed and outcome is not CycleOutcome.PENDING
                    else None
                ),
            )
        )
    return summaries


@dataclass(frozen=True)
class ReviewStats:
    """Totals across every cycle of a branch."""

    total: int
    pending: int
    in_progress: int
    completed: int
    cancelled: int
    approved: int
    changes_requested: int


def review_stats(reviews: Iterable[ReviewRecord]) -> ReviewStats:
    reviews = list(reviews)

    def count_status(status: ReviewStatus) -> int:
        return sum(1 for r in reviews if r.status is status)

    def count_decision(decision: ReviewDecision) -> int:
        return sum(1 for r in reviews if r.decision is decision)

    return ReviewStats(
        total=len(reviews),
        pending=count_status(ReviewStatus.PENDING),
        in_progress=count_status(ReviewStatus.IN_PROGRESS),
        completed=count_status(ReviewStatus.COMPLETED),
        cancelled=count_status(ReviewStatus.CANCELLED),
        approved=count_decision(ReviewDecision.APPROVED),
        changes_requested=count_decision(ReviewDecision.CHANGES_REQUESTED),
    )


@dataclass(frozen=True)
class ReviewDecisionResult:
    """What recording one decision did to the branch."""

    review: ReviewRecord
    tally: ReviewTally
    from_state: str
    to_state: str
    transition_id: UUID | None = None

    @property
    def transitioned(self) -> bool:
        return self.transition_id is not None
