"""
Module: branch_kernel.models.convergence
Responsibility: ORM persistence for convergence (publish/merge) operations.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain value types only.

Invariants enforced:
    - At most one active (pending/in_progress) operation per branch: partial
      unique index on PostgreSQL and SQLite.
    - Status values constrained by CHECK; terminal operations are frozen by a
      before_update hook.

Failure modes:
    - IntegrityError on a second active operation for the same branch.
    - ImmutabilityViolationError when a finished operation is modified.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    event,
    inspect,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from branch_kernel.db.base import Base, UTCDateTime, UUIDString
from branch_kernel.domain.convergence import (
    TERMINAL_CONVERGENCE_STATUSES,
    ConvergenceOperationRecord,
    ConvergenceStatus,
)
from branch_kernel.exceptions import ImmutabilityViolationError

_ACTIVE_OPERATION_PREDICATE = "status IN ('pending', 'in_progress')"


class ConvergenceOperationModel(Base):
    """One attempt to merge a branch into its target ref."""

    __tablename__ = "convergence_operations"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'in_progress', 'succeeded', 'failed', 'cancelled')",
            name="ck_convergence_operations_valid_status",
        ),
        Index(
            "ix_convergence_operations_active_unique",
            "branch_id",
            unique=True,
            postgresql_where=text(_ACTIVE_OPERATION_PREDICATE),
            sqlite_where=text(_ACTIVE_OPERATION_PREDICATE),
        ),
        Index("ix_convergence_operations_branch_created", "branch_id", "created_at"),
    )

    branch_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("branches.id"), nullable=False
    )
    publisher_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    target_ref: Mapped[str] = mapped_column(String(200), nullable=False)
    validation_results: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    conflict_detected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    conflict_details: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    merge_commit: Mapped[str | None] = mapped_column(String(64), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    claim_token: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ConvergenceOperation {self.id} branch={self.branch_id} "
            f"status={self.status}>"
        )

    def to_dto(self) -> ConvergenceOperationRecord:
        """Convert ORM model to frozen domain DTO."""
        return ConvergenceOperationRecord(
            id=self.id,
            branch_id=self.branch_id,
            publisher_id=self.publisher_id,
            status=ConvergenceStatus(self.status),
            target_ref=self.target_ref,
            validation_results=tuple(self.validation_results or ()),
            conflict_detected=self.conflict_detected,
            conflict_details=tuple(self.conflict_details or ()),
            merge_commit=self.merge_commit,
            failure_reason=self.failure_reason,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


@event.listens_for(ConvergenceOperationModel, "before_update")
def prevent_finished_operation_update(mapper, connection, target):
    """Succeeded, failed and cancelled operations are frozen."""
    history = inspect(target).attrs["status"].history
    previous = history.deleted[0] if history.deleted else target.status
    if ConvergenceStatus(previous) in TERMINAL_CONVERGENCE_STATUSES:
        raise ImmutabilityViolationError(
            entity_type="ConvergenceOperation",
            entity_id=str(target.id),
            reason=f"operation is {previous} and can no longer change",
        )
