"""
Module: branch_kernel.models.transition
Responsibility: Append-only transition history for branches.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain value types only.

Invariants enforced:
    - UNIQUE(branch_id, sequence): history is totally ordered per branch.
    - No foreign key to branches: history outlives a force-deleted draft.
    - Append-only: UPDATE and DELETE are rejected by ORM hooks.

Failure modes:
    - IntegrityError if two writers append the same sequence (only possible
      when the branch lock was bypassed).
    - ImmutabilityViolationError on modification or deletion.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Index, Integer, String, Text, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from branch_kernel.db.base import Base, UTCDateTime, UUIDString
from branch_kernel.domain.workflow import ActorType, BranchState, TransitionRecord
from branch_kernel.exceptions import ImmutabilityViolationError


class BranchTransitionModel(Base):
    """One accepted event.  Never mutated or deleted."""

    __tablename__ = "branch_transitions"

    __table_args__ = (
        UniqueConstraint("branch_id", "sequence", name="uq_branch_transitions_sequence"),
        Index("ix_branch_transitions_actor", "actor_id"),
    )

    branch_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    from_state: Mapped[str] = mapped_column(String(20), nullable=False)
    to_state: Mapped[str] = mapped_column(String(20), nullable=False)
    event: Mapped[str] = mapped_column(String(40), nullable=False)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False, default="user")
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    transition_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<BranchTransition {self.branch_id}#{self.sequence} "
            f"{self.from_state}->{self.to_state} {self.event}>"
        )

    def to_dto(self) -> TransitionRecord:
        """Convert ORM model to frozen domain DTO."""
        return TransitionRecord(
            id=self.id,
            branch_id=self.branch_id,
            sequence=self.sequence,
            from_state=BranchState(self.from_state),
            to_state=BranchState(self.to_state),
            event=self.event,
            actor_id=self.actor_id,
            actor_type=ActorType(self.actor_type),
            reason=self.reason,
            metadata=dict(self.transition_metadata or {}),
            created_at=self.created_at,
        )


# =============================================================================
# ORM-Level Immutability (Append-Only)
# =============================================================================


@event.listens_for(BranchTransitionModel, "before_update")
def prevent_transition_update(mapper, connection, target):
    """Prevent updates to transition history records."""
    raise ImmutabilityViolationError(
        entity_type="BranchTransition",
        entity_id=str(target.id),
        reason="Transition history is append-only -- cannot modify",
    )


@event.listens_for(BranchTransitionModel, "before_delete")
def prevent_transition_delete(mapper, connection, target):
    """Prevent deletion of transition history records."""
    raise ImmutabilityViolationError(
        entity_type="BranchTransition",
        entity_id=str(target.id),
        reason="Transition history is append-only -- cannot delete",
    )
