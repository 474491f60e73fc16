"""
Module: branch_kernel.models.branch
Responsibility: ORM persistence for branches and their reviewer/collaborator
    memberships.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain value types only.

Invariants enforced:
    - State, visibility and threshold values are constrained by CHECK
      constraints.
    - UNIQUE(branch_id, user_id) on memberships: a user holds at most one
      relation per branch, so reviewer and collaborator can never coexist.
    - ``version`` is SQLAlchemy's version_id_col: an UPDATE that does not
      match the version read raises StaleDataError.
    - ORM listeners reject mutation of archived branches, any change to a
      published branch other than archiving it, threshold changes outside
      draft, and deletion outside draft.

Failure modes:
    - IntegrityError on a second membership row for the same user.
    - ImmutabilityViolationError from the before_update/before_delete hooks.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from branch_kernel.db.base import Base, UTCDateTime, UUIDString
from branch_kernel.domain.workflow import (
    PUBLISHED_MUTABLE_FIELDS,
    BranchRecord,
    BranchState,
    Visibility,
)
from branch_kernel.exceptions import ImmutabilityViolationError


class BranchModel(Base):
    """Persistent branch aggregate root.

    Contract:
        Mutated only by the branch state machine and the convergence engine,
        each holding the branch row lock.

    Guarantees:
        - required_approvals is 1..10 and frozen once the branch leaves draft.
        - archived branches are fully immutable.
    """

    __tablename__ = "branches"

    __table_args__ = (
        CheckConstraint(
            "state IN ('draft', 'review', 'approved', 'published', 'archived')",
            name="ck_branches_valid_state",
        ),
        CheckConstraint(
            "visibility IN ('private', 'team', 'public')",
            name="ck_branches_valid_visibility",
        ),
        CheckConstraint(
            "required_approvals BETWEEN 1 AND 10",
            name="ck_branches_required_approvals_range",
        ),
        Index("ix_branches_owner_state", "owner_id", "state"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    owner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    base_ref: Mapped[str] = mapped_column(String(200), nullable=False)
    content_ref: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    base_commit: Mapped[str | None] = mapped_column(String(64), nullable=True)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    visibility: Mapped[str] = mapped_column(String(20), nullable=False, default="private")
    required_approvals: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    review_cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_convergence_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    members: Mapped[list["BranchMemberModel"]] = relationship(
        "BranchMemberModel",
        back_populates="branch",
        order_by="BranchMemberModel.created_at",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Branch {self.id} {self.name!r} state={self.state}>"

    def relation_of(self, user_id: UUID) -> BranchMemberModel | None:
        for member in self.members:
            if member.user_id == user_id:
                return member
        return None

    def to_dto(self) -> BranchRecord:
        """Convert ORM model to frozen domain DTO."""
        return BranchRecord(
            id=self.id,
            name=self.name,
            owner_id=self.owner_id,
            base_ref=self.base_ref,
            content_ref=self.content_ref,
            state=BranchState(self.state),
            visibility=Visibility(self.visibility),
            required_approvals=self.required_approvals,
            review_cycle=self.review_cycle,
            base_commit=self.base_commit,
            active_convergence_id=self.active_convergence_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
            submitted_at=self.submitted_at,
            approved_at=self.approved_at,
            published_at=self.published_at,
            archived_at=self.archived_at,
            reviewer_ids=tuple(
                m.user_id for m in self.members if m.relation == "reviewer"
            ),
            collaborator_ids=tuple(
                m.user_id for m in self.members if m.relation == "collaborator"
            ),
        )


class BranchMemberModel(Base):
    """A reviewer or collaborator relation on a branch."""

    __tablename__ = "branch_members"

    __table_args__ = (
        UniqueConstraint("branch_id", "user_id", name="uq_branch_members_user"),
        CheckConstraint(
            "relation IN ('reviewer', 'collaborator')",
            name="ck_branch_members_valid_relation",
        ),
        Index("ix_branch_members_user", "user_id"),
    )

    branch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("branches.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    relation: Mapped[str] = mapped_column(String(20), nullable=False)
    added_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    branch: Mapped[BranchModel] = relationship("BranchModel", back_populates="members")

    def __repr__(self) -> str:
        return f"<BranchMember {self.user_id} {self.relation} on {self.branch_id}>"


# =============================================================================
# ORM-Level Immutability for Terminal Branches
# =============================================================================


def _changed_columns(target: BranchModel) -> set[str]:
    state = inspect(target)
    return {
        attr.key
        for attr in state.mapper.column_attrs
        if state.attrs[attr.key].history.has_changes()
    }


def _previous_state(target: BranchModel) -> str:
    history = inspect(target).attrs["state"].history
    if history.deleted:
        return history.deleted[0]
    return target.state


@event.listens_for(BranchModel, "before_update")
def prevent_terminal_branch_mutation(mapper, connection, target):
    """Reject changes to terminal branches and late threshold changes."""
    changed = _changed_columns(target)
    if not changed:
        return
    previous = _previous_state(target)

    if previous == BranchState.ARCHIVED.value:
        raise ImmutabilityViolationError(
            entity_type="Branch",
            entity_id=str(target.id),
            reason="archived branches cannot be modified",
        )
    if previous == BranchState.PUBLISHED.value and changed - PUBLISHED_MUTABLE_FIELDS:
        raise ImmutabilityViolationError(
            entity_type="Branch",
            entity_id=str(target.id),
            reason=(
                "published branches may only be archived; attempted to change "
                + ", ".join(sorted(changed - PUBLISHED_MUTABLE_FIELDS))
            ),
        )
    if "required_approvals" in changed and previous != BranchState.DRAFT.value:
        raise ImmutabilityViolationError(
            entity_type="Branch",
            entity_id=str(target.id),
            reason="required approvals are frozen once the branch leaves draft",
        )


@event.listens_for(BranchModel, "before_delete")
def prevent_non_draft_branch_delete(mapper, connection, target):
    """Only draft branches may be physically deleted."""
    if _previous_state(target) != BranchState.DRAFT.value:
        raise ImmutabilityViolationError(
            entity_type="Branch",
            entity_id=str(target.id),
            reason=f"branch in state {target.state} cannot be deleted",
        )
