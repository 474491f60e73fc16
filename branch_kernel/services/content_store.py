"""
branch_kernel.services.content_store -- SQL-backed content store.

Responsibility:
    A small, transactional implementation of the ``ContentStore`` protocol.
    Each ref has materialized nodes plus an append-only commit log; a branch
    ref is a fork of its base ref.  Changes are read from the log and
    collapsed with :func:`net_changes`.

Architecture position:
    Kernel > Services.  Shares the caller's Session, so a merge joins the
    convergence transaction: either every node lands and the branch is
    published, or nothing does.

Invariants enforced:
    - Commits on a ref are serialized by locking the ref row FOR UPDATE.
    - Commit ids are content hashes (see ``utils.hashing.hash_commit``).
    - ``flush()`` only; never commits.

Failure modes:
    - UnknownRefError for a ref that was never created.
    - ContentNotFoundError / ContentPathExistsError for bad paths.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from branch_kernel.domain.clock import Clock, SystemClock
from branch_kernel.domain.convergence import ChangeKind, ContentChange, net_changes
from branch_kernel.exceptions import (
    ContentNotFoundError,
    ContentPathExistsError,
    UnknownRefError,
)
from branch_kernel.logging_config import get_logger
from branch_kernel.models.content import (
    ContentChangeModel,
    ContentCommitModel,
    ContentNodeModel,
    ContentRefModel,
)
from branch_kernel.utils.hashing import hash_commit, hash_payload

logger = get_logger("services.content_store")


class SqlContentStore:
    """Content refs, nodes and commits stored alongside the workflow tables."""

    def __init__(self, session: Session, clock: Clock | None = None) -> None:
        self._session = session
        self._clock = clock or SystemClock()

    # -----------------------------------------------------------------
    # Refs
    # -----------------------------------------------------------------

    def _ref(self, name: str, for_update: bool = False) -> ContentRefModel:
        stmt = select(ContentRefModel).where(ContentRefModel.name == name)
        if for_update:
            stmt = stmt.with_for_update()
        ref = self._session.scalars(stmt).one_or_none()
        if ref is None:
            raise UnknownRefError(name)
        return ref

    def has_ref(self, name: str) -> bool:
        return (
            self._session.scalars(
                select(ContentRefModel.id).where(ContentRefModel.name == name)
            ).first()
            is not None
        )

    def ensure_ref(self, name: str) -> None:
        """Create an empty ref if it does not exist yet."""
        if not self.has_ref(name):
            self._session.add(
                ContentRefModel(name=name, head_sequence=0, created_at=self._clock.now())
            )
            self._session.flush()

    def fork(self, name: str, from_ref: str) -> None:
        """Create ``name`` as a copy of ``from_ref``'s current nodes."""
        source = self._ref(from_ref)
        now = self._clock.now()
        self._session.add(
            ContentRefModel(
                name=name,
                head_sequence=0,
                forked_from=source.name,
                created_at=now,
            )
        )
        for node in self._nodes(from_ref):
            self._session.add(
                ContentNodeModel(ref=name, path=node.path, body=node.body, updated_at=now)
            )
        self._session.flush()

    def drop(self, name: str) -> None:
        """Remove a branch ref's nodes.  Its commit log is kept."""
        self._session.execute(delete(ContentNodeModel).where(ContentNodeModel.ref == name))

    def lock_ref(self, ref: str) -> None:
        self._ref(ref, for_update=True)

    def head_commit(self, ref: str) -> str | None:
        return self._ref(ref).head_commit

    # -----------------------------------------------------------------
    # Nodes
    # -----------------------------------------------------------------

    def _nodes(self, ref: str) -> list[ContentNodeModel]:
        return list(
            self._session.scalars(
                select(ContentNodeModel)
                .where(ContentNodeModel.ref == ref)
                .order_by(ContentNodeModel.path)
            )
        )

    def _node(self, ref: str, path: str) -> ContentNodeModel | None:
        return self._session.scalars(
            select(ContentNodeModel).where(
                ContentNodeModel.ref == ref, ContentNodeModel.path == path
            )
        ).one_or_none()

    def read(self, ref: str, path: str) -> str:
        node = self._node(ref, path)
        if node is None:
            raise ContentNotFoundError(ref, path)
        return node.body

    def snapshot(self, ref: str) -> dict[str, str]:
        self._ref(ref)
        return {node.path: node.body for node in self._nodes(ref)}

    # -----------------------------------------------------------------
    # Authoring
    # -----------------------------------------------------------------

    def write(self, ref: str, path: str, body: str, author_id: UUID, message: str = "") -> str:
        ref_row = self._ref(ref, for_update=True)
        node = self._node(ref, path)
        now = self._clock.now()
        if node is None:
            self._session.add(ContentNodeModel(ref=ref, path=path, body=body, updated_at=now))
            change = ContentChange(path, ChangeKind.ADDED)
        else:
            node.body = body
            node.updated_at = now
            change = ContentChange(path, ChangeKind.MODIFIED)
        return self._commit(ref_row, [(change, body)], author_id, message or f"Update {path}")

    def delete(self, ref: str, path: str, author_id: UUID, message: str = "") -> str:
        ref_row = self._ref(ref, for_update=True)
        node = self._node(ref, path)
        if node is None:
            raise ContentNotFoundError(ref, path)
        self._session.delete(node)
        change = ContentChange(path, ChangeKind.DELETED)
        return self._commit(ref_row, [(change, None)], author_id, message or f"Delete {path}")

    def rename(
        self, ref: str, old_path: str, new_path: str, author_id: UUID, message: str = ""
    ) -> str:
        ref_row = self._ref(ref, for_update=True)
        node = self._node(ref, old_path)
        if node is None:
            raise ContentNotFoundError(ref, old_path)
        if self._node(ref, new_path) is not None:
            raise ContentPathExistsError(ref, new_path)
        node.path = new_path
        node.updated_at = self._clock.now()
        change = ContentChange(new_path, ChangeKind.RENAMED, old_path)
        return self._commit(
            ref_row, [(change, node.body)], author_id, message or f"Rename {old_path} to {new_path}"
        )

    def _commit(
        self,
        ref_row: ContentRefModel,
        changes: list[tuple[ContentChange, str | None]],
        author_id: UUID,
        message: str,
    ) -> str:
        sequence = ref_row.head_sequence + 1
        described = [
            {
                "path": change.path,
                "kind": change.kind.value,
                "previous_path": change.previous_path,
                "body": hash_payload({"body": body}) if body is not None else None,
            }
            for change, body in changes
        ]
        commit_id = hash_commit(
            ref_row.name, sequence, ref_row.head_commit, described, author_id, message
        )
        self._session.add(
            ContentCommitModel(
                commit_id=commit_id,
                ref=ref_row.name,
                sequence=sequence,
                parent_commit=ref_row.head_commit,
                author_id=author_id,
                message=message,
                created_at=self._clock.now(),
            )
        )
        # Commit row must exist before its change rows reference it.
        self._session.flush()
        for position, (change, _body) in enumerate(changes):
            self._session.add(
                ContentChangeModel(
                    commit_id=commit_id,
                    position=position,
                    path=change.path,
                    kind=change.kind.value,
                    previous_path=change.previous_path,
                )
            )
        ref_row.head_commit = commit_id
        ref_row.head_sequence = sequence
        self._session.flush()
        logger.debug(
            "content_committed",
            extra={"ref": ref_row.name, "commit": commit_id, "changes": len(changes)},
        )
        return commit_id

    # -----------------------------------------------------------------
    # Change detection
    # -----------------------------------------------------------------

    def _log(self, ref: str, after_sequence: int = 0) -> list[ContentChange]:
        rows = self._session.execute(
            select(ContentChangeModel)
            .join(
                ContentCommitModel,
                ContentCommitModel.commit_id == ContentChangeModel.commit_id,
            )
            .where(
                ContentCommitModel.ref == ref,
                ContentCommitModel.sequence > after_sequence,
            )
            .order_by(ContentCommitModel.sequence, ContentChangeModel.position)
        ).scalars()
        return [
            ContentChange(row.path, ChangeKind(row.kind), row.previous_path) for row in rows
        ]

    def branch_changes(self, content_ref: str) -> tuple[ContentChange, ...]:
        self._ref(content_ref)
        return net_changes(self._log(content_ref))

    def target_changes(self, ref: str, since_commit: str | None) -> tuple[ContentChange, ...]:
        self._ref(ref)
        after = 0
        if since_commit is not None:
            commit = self._session.scalars(
                select(ContentCommitModel).where(
                    ContentCommitModel.commit_id == since_commit,
                    ContentCommitModel.ref == ref,
                )
            ).one_or_none()
            # An unknown base means every target change counts.
            after = commit.sequence if commit is not None else 0
        return net_changes(self._log(ref, after))

    def refresh(self, content_ref: str, base_ref: str, since_commit: str | None) -> str | None:
        """Copy target changes the branch never touched into the branch ref.

        The copies are not recorded as branch commits, so they never show up
        in ``branch_changes``.  Paths touched on both sides keep the branch
        body.  Returns the target head the branch is now based on.
        """
        ours: set[str] = set()
        for change in self.branch_changes(content_ref):
            ours |= change.touched_paths
        now = self._clock.now()
        synced = 0
        for change in self.target_changes(base_ref, since_commit):
            if change.touched_paths & ours:
                continue
            if change.previous_path:
                stale = self._node(content_ref, change.previous_path)
                if stale is not None:
                    self._session.delete(stale)
                    self._session.flush()
            node = self._node(content_ref, change.path)
            if change.kind is ChangeKind.DELETED:
                if node is not None:
                    self._session.delete(node)
            else:
                body = self.read(base_ref, change.path)
                if node is None:
                    self._session.add(
                        ContentNodeModel(ref=content_ref, path=change.path, body=body, updated_at=now)
                    )
                else:
                    node.body = body
                    node.updated_at = now
            synced += 1
        self._session.flush()
        logger.info(
            "content_refreshed",
            extra={"content_ref": content_ref, "base_ref": base_ref, "synced_paths": synced},
        )
        return self.head_commit(base_ref)

    # -----------------------------------------------------------------
    # Merge
    # -----------------------------------------------------------------

    def merge(self, content_ref: str, target_ref: str, author_id: UUID, message: str) -> str:
        target = self._ref(target_ref, for_update=True)
        changes = self.branch_changes(content_ref)
        now = self._clock.now()
        applied: list[tuple[ContentChange, str | None]] = []

        for change in changes:
            if change.kind is ChangeKind.DELETED:
                node = self._node(target_ref, change.path)
                if node is not None:
                    self._session.delete(node)
                applied.append((change, None))
                continue

            body = self.read(content_ref, change.path)
            if change.kind is ChangeKind.RENAMED:
                stale = self._node(target_ref, change.previous_path)
                if stale is not None:
                    self._session.delete(stale)
                    self._session.flush()
            node = self._node(target_ref, change.path)
            if node is None:
                self._session.add(
                    ContentNodeModel(ref=target_ref, path=change.path, body=body, updated_at=now)
                )
            else:
                node.body = body
                node.updated_at = now
            applied.append((change, body))

        commit_id = self._commit(target, applied, author_id, message)
        logger.info(
            "content_merged",
            extra={
                "source_ref": content_ref,
                "target_ref": target_ref,
                "merge_commit": commit_id,
                "changes": len(applied),
            },
        )
        return commit_id
