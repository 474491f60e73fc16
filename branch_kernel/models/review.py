"""
Module: branch_kernel.models.review
Responsibility: ORM persistence for per-reviewer reviews.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain value types only.

Invariants enforced:
    - At most one active (pending/in_progress) review per (branch, reviewer):
      partial unique index on PostgreSQL and SQLite.
    - A decision is present iff the review is completed (CHECK constraint).
    - Completed and cancelled reviews are immutable (before_update hook).

Failure modes:
    - IntegrityError on a second active review for the same reviewer.
    - ImmutabilityViolationError when a finished review is modified.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
    inspect,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from branch_kernel.db.base import Base, UTCDateTime, UUIDString
from branch_kernel.domain.review import (
    TERMINAL_REVIEW_STATUSES,
    ReviewDecision,
    ReviewRecord,
    ReviewStatus,
)
from branch_kernel.exceptions import ImmutabilityViolationError

_ACTIVE_REVIEW_PREDICATE = "status IN ('pending', 'in_progress')"


class ReviewModel(Base):
    """One reviewer's review of one review cycle of a branch."""

    __tablename__ = "reviews"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'in_progress', 'completed', 'cancelled')",
            name="ck_reviews_valid_status",
        ),
        CheckConstraint(
            "(status = 'completed' AND decision IS NOT NULL) "
            "OR (status <> 'completed' AND decision IS NULL)",
            name="ck_reviews_decision_iff_completed",
        ),
        CheckConstraint(
            "decision IS NULL OR decision IN ('approved', 'changes_requested')",
            name="ck_reviews_valid_decision",
        ),
        Index(
            "ix_reviews_active_unique",
            "branch_id",
            "reviewer_id",
            unique=True,
            postgresql_where=text(_ACTIVE_REVIEW_PREDICATE),
            sqlite_where=text(_ACTIVE_REVIEW_PREDICATE),
        ),
        Index("ix_reviews_branch_cycle", "branch_id", "cycle"),
        Index("ix_reviews_reviewer_status", "reviewer_id", "status"),
    )

    branch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("branches.id", ondelete="CASCADE"),
        nullable=False,
    )
    reviewer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    requested_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    cycle: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    decision: Mapped[str | None] = mapped_column(String(30), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    automated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Review {self.id} branch={self.branch_id} "
            f"reviewer={self.reviewer_id} status={self.status}>"
        )

    def to_dto(self) -> ReviewRecord:
        """Convert ORM model to frozen domain DTO."""
        return ReviewRecord(
            id=self.id,
            branch_id=self.branch_id,
            reviewer_id=self.reviewer_id,
            requested_by_id=self.requested_by_id,
            cycle=self.cycle,
            status=ReviewStatus(self.status),
            decision=ReviewDecision(self.decision) if self.decision else None,
            comment=self.comment,
            automated=self.automated,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


@event.listens_for(ReviewModel, "before_update")
def prevent_finished_review_update(mapper, connection, target):
    """Completed and cancelled reviews are frozen."""
    history = inspect(target).attrs["status"].history
    previous = history.deleted[0] if history.deleted else target.status
    if ReviewStatus(previous) in TERMINAL_REVIEW_STATUSES:
        raise ImmutabilityViolationError(
            entity_type="Review",
            entity_id=str(target.id),
            reason=f"review is {previous} and can no longer change",
        )
