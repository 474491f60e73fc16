"""
Module: branch_kernel.models.content
Responsibility: Tables behind the bundled SQL content store: materialized
    nodes per ref, and the commit/change log used for change detection.

Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - UNIQUE(name) on refs; a ref row is the lock for commits on that ref.
    - UNIQUE(ref, path) on nodes: one body per path per ref.
    - UNIQUE(ref, sequence) on commits: each ref's history is totally ordered.
    - Commits and changes are append-only (before_update/before_delete hooks).
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from branch_kernel.db.base import Base, UTCDateTime, UUIDString
from branch_kernel.exceptions import ImmutabilityViolationError


class ContentRefModel(Base):
    """A named ref and its head.  Locked FOR UPDATE while committing."""

    __tablename__ = "content_refs"

    name: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    head_commit: Mapped[str | None] = mapped_column(String(64), nullable=True)
    head_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    forked_from: Mapped[str | None] = mapped_column(String(300), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<ContentRef {self.name} head={self.head_commit}>"


class ContentNodeModel(Base):
    """Current body of one path on one ref."""

    __tablename__ = "content_nodes"

    __table_args__ = (
        UniqueConstraint("ref", "path", name="uq_content_nodes_ref_path"),
    )

    ref: Mapped[str] = mapped_column(String(300), nullable=False)
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<ContentNode {self.ref}:{self.path}>"


class ContentCommitModel(Base):
    """One commit on a ref."""

    __tablename__ = "content_commits"

    __table_args__ = (
        UniqueConstraint("ref", "sequence", name="uq_content_commits_ref_sequence"),
    )

    commit_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    ref: Mapped[str] = mapped_column(String(300), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    parent_commit: Mapped[str | None] = mapped_column(String(64), nullable=True)
    author_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<ContentCommit {self.ref}#{self.sequence} {self.commit_id[:12]}>"


class ContentChangeModel(Base):
    """One path-level change inside a commit."""

    __tablename__ = "content_changes"

    __table_args__ = (
        Index("ix_content_changes_commit", "commit_id", "position"),
    )

    commit_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("content_commits.commit_id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    previous_path: Mapped[str | None] = mapped_column(String(500), nullable=True)


@event.listens_for(ContentCommitModel, "before_update")
@event.listens_for(ContentChangeModel, "before_update")
def prevent_content_log_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type=type(target).__name__,
        entity_id=str(target.id),
        reason="content history is append-only -- cannot modify",
    )


@event.listens_for(ContentCommitModel, "before_delete")
@event.listens_for(ContentChangeModel, "before_delete")
def prevent_content_log_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type=type(target).__name__,
        entity_id=str(target.id),
        reason="content history is append-only -- cannot delete",
    )
