"""
Convergence domain types (``branch_kernel.domain.convergence``).

Responsibility
--------------
The convergence operation lifecycle, the ``ContentStore`` collaborator
protocol, conflict classification between a branch and its target, and the
fixed validation battery run before every merge.

Architecture position
---------------------
**Kernel domain layer** -- pure.  The convergence engine service gathers
changes from a ``ContentStore`` and calls :func:`build_validation_report`.

Invariants enforced
-------------------
* ``CONVERGENCE_TRANSITIONS`` is the only source of legal status moves;
  ``succeeded``, ``failed`` and ``cancelled`` are terminal.
* Validation is deterministic: results come in a fixed check order and
  conflicts are sorted by (path, type), so two runs over the same content
  produce equal reports.
* A conflict blocks the merge; it is reported, never resolved silently.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from branch_kernel.domain.workflow import BranchRecord, BranchState


class ConvergenceStatus(str, Enum):
    """Convergence operation lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


CONVERGENCE_TRANSITIONS: dict[ConvergenceStatus, frozenset[ConvergenceStatus]] = {
    ConvergenceStatus.PENDING: frozenset({
        ConvergenceStatus.IN_PROGRESS,
        ConvergenceStatus.CANCELLED,
    }),
    ConvergenceStatus.IN_PROGRESS: frozenset({
        ConvergenceStatus.SUCCEEDED,
        ConvergenceStatus.FAILED,
        ConvergenceStatus.CANCELLED,
    }),
    ConvergenceStatus.SUCCEEDED: frozenset(),
    ConvergenceStatus.FAILED: frozenset(),
    ConvergenceStatus.CANCELLED: frozenset(),
}

ACTIVE_CONVERGENCE_STATUSES: frozenset[ConvergenceStatus] = frozenset({
    ConvergenceStatus.PENDING,
    ConvergenceStatus.IN_PROGRESS,
})

TERMINAL_CONVERGENCE_STATUSES: frozenset[ConvergenceStatus] = frozenset({
    ConvergenceStatus.SUCCEEDED,
    ConvergenceStatus.FAILED,
    ConvergenceStatus.CANCELLED,
})


def can_transition(current: ConvergenceStatus, target: ConvergenceStatus) -> bool:
    return ConvergenceStatus(target) in CONVERGENCE_TRANSITIONS[ConvergenceStatus(current)]


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class ConflictType(str, Enum):
    """Why a branch change cannot be merged as-is."""

    CONTENT = "content"
    RENAME = "rename"
    DELETE = "delete"


class ValidationCheck(str, Enum):
    """The fixed validation battery, in execution order."""

    BRANCH_APPROVED = "branch_approved"
    REQUIRED_METADATA = "required_metadata"
    HAS_CHANGES = "has_changes"
    TARGET_UNCHANGED_SINCE_BASE = "target_unchanged_since_base"
    NO_CONTENT_CONFLICTS = "no_content_conflicts"
    NO_RENAME_CONFLICTS = "no_rename_conflicts"
    NO_DELETE_CONFLICTS = "no_delete_conflicts"


_CONFLICT_CHECKS: dict[ConflictType, ValidationCheck] = {
    ConflictType.CONTENT: ValidationCheck.NO_CONTENT_CONFLICTS,
    ConflictType.RENAME: ValidationCheck.NO_RENAME_CONFLICTS,
    ConflictType.DELETE: ValidationCheck.NO_DELETE_CONFLICTS,
}


@dataclass(frozen=True)
class ContentChange:
    """A net change to one node path."""

    path: str
    kind: ChangeKind
    previous_path: str | None = None

    @property
    def touched_paths(self) -> frozenset[str]:
        if self.previous_path:
            return frozenset({self.path, self.previous_path})
        return frozenset({self.path})


@dataclass(frozen=True)
class Conflict:
    path: str
    type: ConflictType
    description: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "type": self.type.value, "description": self.description}


@dataclass(frozen=True)
class CheckResult:
    check: ValidationCheck
    passed: bool
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"check": self.check.value, "passed": self.passed, "message": self.message}


@dataclass(frozen=True)
class ValidationReport:
    """Outcome of the validation battery for one branch."""

    branch_id: UUID
    results: tuple[CheckResult, ...]
    conflicts: tuple[Conflict, ...] = ()
    target_head: str | None = None

    @property
    def is_valid(self) -> bool:
        return all(r.passed for r in self.results)

    @property
    def failed_checks(self) -> tuple[CheckResult, ...]:
        return tuple(r for r in self.results if not r.passed)


@dataclass(frozen=True)
class ConvergenceOperationRecord:
    """Immutable snapshot of a convergence operation row."""

    id: UUID
    branch_id: UUID
    publisher_id: UUID
    status: ConvergenceStatus
    target_ref: str
    validation_results: tuple[dict[str, Any], ...] = ()
    conflict_detected: bool = False
    conflict_details: tuple[dict[str, Any], ...] = ()
    merge_commit: str | None = None
    failure_reason: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_CONVERGENCE_STATUSES


@dataclass(frozen=True)
class ConvergenceStatusReport:
    """Polling view of an operation."""

    operation: ConvergenceOperationRecord
    elapsed_seconds: float | None
    is_overdue: bool
    poll_interval_seconds: int
    extra: dict[str, Any] = field(default_factory=dict)


class ContentStore(Protocol):
    """External content collaborator.

    Provides the changed paths used for conflict detection and performs the
    merge write.  Implementations must perform the merge inside the caller's
    transaction, or otherwise guarantee all-or-nothing application.
    """

    def head_commit(self, ref: str) -> str | None:
        """Latest commit id of ``ref``; None for an empty ref."""
        ...

    def branch_changes(self, content_ref: str) -> tuple[ContentChange, ...]:
        """Net changes made on a branch's content ref."""
        ...

    def target_changes(self, ref: str, since_commit: str | None) -> tuple[ContentChange, ...]:
        """Changes recorded on ``ref`` after ``since_commit``."""
        ...

    def fork(self, name: str, from_ref: str) -> None:
        """Create a branch ref holding a copy of ``from_ref``."""
        ...

    def drop(self, name: str) -> None:
        """Discard a branch ref's working content."""
        ...

    def refresh(self, content_ref: str, base_ref: str, since_commit: str | None) -> str | None:
        """Bring untouched target changes into the branch; return the new base."""
        ...

    def lock_ref(self, ref: str) -> None:
        """Hold ``ref`` against concurrent commits until the transaction ends."""
        ...

    def merge(self, content_ref: str, target_ref: str, author_id: UUID, message: str) -> str:
        """Apply the branch's changes to ``target_ref``; return the merge commit."""
        ...

    def write(self, ref: str, path: str, body: str, author_id: UUID, message: str = "") -> str:
        ...

    def delete(self, ref: str, path: str, author_id: UUID, message: str = "") -> str:
        ...

    def rename(
        self, ref: str, old_path: str, new_path: str, author_id: UUID, message: str = ""
    ) -> str:
        ...

    def snapshot(self, ref: str) -> dict[str, str]:
        ...


def net_changes(changes: list[ContentChange] | tuple[ContentChange, ...]) -> tuple[ContentChange, ...]:
    """Collapse an ordered change log into one net change per path.

    Add-then-delete cancels out, delete-then-add becomes a modification, and
    chained renames keep the original path as ``previous_path``.
    """
    net: dict[str, ContentChange] = {}
    for change in changes:
        existing = net.get(change.path)
        if change.kind is ChangeKind.ADDED:
            if existing is not None and existing.kind is ChangeKind.DELETED:
                net[change.path] = ContentChange(change.path, ChangeKind.MODIFIED)
            else:
                net[change.path] = change
        elif change.kind is ChangeKind.MODIFIED:
            if existing is None or existing.kind is ChangeKind.DELETED:
                net[change.path] = change
        elif change.kind is ChangeKind.DELETED:
            if existing is not None and existing.kind is ChangeKind.ADDED:
                del net[change.path]
            elif existing is not None and existing.kind is ChangeKind.RENAMED:
                del net[change.path]
                net[existing.previous_path] = ContentChange(existing.previous_path, ChangeKind.DELETED)
            else:
                net[change.path] = ContentChange(change.path, ChangeKind.DELETED)
        elif change.kind is ChangeKind.RENAMED:
            source = net.pop(change.previous_path, None)
            if source is not None and source.kind is ChangeKind.ADDED:
                net[change.path] = ContentChange(change.path, ChangeKind.ADDED)
            elif source is not None and source.kind is ChangeKind.RENAMED:
                if source.previous_path == change.path:
                    net[change.path] = ContentChange(change.path, ChangeKind.MODIFIED)
                else:
                    net[change.path] = ContentChange(
                        change.path, ChangeKind.RENAMED, source.previous_path
                    )
            else:
                net[change.path] = change
    return tuple(net[path] for path in sorted(net))


# =========================================================================
# Conflict detection and validation
# =========================================================================


def _classify(ours: ContentChange, theirs: ContentChange) -> Conflict | None:
    if ours.kind is ChangeKind.RENAMED or theirs.kind is ChangeKind.RENAMED:
        renamed = ours if ours.kind is ChangeKind.RENAMED else theirs
        side = "branch" if renamed is ours else "target"
        return Conflict(
            path=ours.path,
            type=ConflictType.RENAME,
            description=(
                f"{side} renamed {renamed.previous_path} to {renamed.path}, "
                "colliding with a concurrent change on the other side"
            ),
        )
    if ours.kind is ChangeKind.DELETED and theirs.kind is ChangeKind.DELETED:
        return None
    if theirs.kind is ChangeKind.DELETED:
        return Conflict(
            path=ours.path,
            type=ConflictType.DELETE,
            description=f"{ours.path} was removed from the target since the branch base",
        )
    if ours.kind is ChangeKind.DELETED:
        return Conflict(
            path=ours.path,
            type=ConflictType.DELETE,
            description=f"branch deletes {ours.path}, which was modified in the target since base",
        )
    return Conflict(
        path=ours.path,
        type=ConflictType.CONTENT,
        description=f"{ours.path} was edited on both the branch and the target since base",
    )


def detect_conflicts(
    branch_changes: tuple[ContentChange, ...] | list[ContentChange],
    target_changes: tuple[ContentChange, ...] | list[ContentChange],
) -> tuple[Conflict, ...]:
    """Pair every branch change with overlapping target changes."""
    found: dict[tuple[str, ConflictType], Conflict] = {}
    for ours in branch_changes:
        for theirs in target_changes:
            if not ours.touched_paths & theirs.touched_paths:
                continue
            conflict = _classify(ours, theirs)
            if conflict is not None:
                found.setdefault((conflict.path, conflict.type), conflict)
    return tuple(found[key] for key in sorted(found, key=lambda k: (k[0], k[1].value)))


def build_validation_report(
    branch: BranchRecord,
    branch_changes: tuple[ContentChange, ...],
    target_changes: tuple[ContentChange, ...],
    target_head: str | None,
) -> ValidationReport:
    """Run the fixed validation battery against gathered content facts."""
    results: list[CheckResult] = []

    results.append(
        CheckResult(
            ValidationCheck.BRANCH_APPROVED,
            branch.state is BranchState.APPROVED,
            "branch is approved"
            if branch.state is BranchState.APPROVED
            else f"branch is {branch.state.value}; convergence requires approved",
        )
    )

    missing = [
        name
        for name, value in (
            ("name", branch.name),
            ("base_ref", branch.base_ref),
            ("content_ref", branch.content_ref),
        )
        if not value
    ]
    results.append(
        CheckResult(
            ValidationCheck.REQUIRED_METADATA,
            not missing,
            "required metadata present"
            if not missing
            else f"missing metadata: {', '.join(missing)}",
        )
    )

    results.append(
        CheckResult(
            ValidationCheck.HAS_CHANGES,
            bool(branch_changes),
            f"{len(branch_changes)} changed path(s)"
            if branch_changes
            else "branch has no changes to converge",
        )
    )

    conflicts = detect_conflicts(branch_changes, target_changes)

    if target_head == branch.base_commit:
        target_message = "target ref unchanged since branch base"
        target_ok = True
    else:
        target_ok = not conflicts
        target_message = (
            f"target advanced by {len(target_changes)} change(s) since base; "
            + ("none overlap this branch" if target_ok else f"{len(conflicts)} overlap this branch")
        )
    results.append(
        CheckResult(ValidationCheck.TARGET_UNCHANGED_SINCE_BASE, target_ok, target_message)
    )

    for conflict_type, check in _CONFLICT_CHECKS.items():
        of_type = [c for c in conflicts if c.type is conflict_type]
        results.append(
            CheckResult(
                check,
                not of_type,
                f"no {conflict_type.value} conflicts"
                if not of_type
                else f"{len(of_type)} {conflict_type.value} conflict(s): "
                + ", ".join(c.path for c in of_type),
            )
        )

    return ValidationReport(
        branch_id=branch.id,
        results=tuple(results),
        conflicts=conflicts,
        target_head=target_head,
    )
