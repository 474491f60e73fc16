"""
Branch workflow domain types (``branch_kernel.domain.workflow``).

Responsibility
--------------
The branch lifecycle: states, events, the transition table that maps
``(state, event)`` to the next state, and the value objects returned by
transition commands (history records, outcomes, dry-run checks).

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports from
``db/``, ``models/``, ``services/``, or outer layers.

Invariants enforced
-------------------
* ``TRANSITION_TABLE`` is the only source of legal lifecycle moves.  Any
  ``(state, event)`` pair absent from it is rejected with
  ``InvalidTransitionError``.
* ``published`` and ``archived`` are terminal: ``archived`` has no outgoing
  edge and ``published`` only accepts ARCHIVE.
* APPROVE from ``review`` is accepted unconditionally by the table; whether
  the branch actually reaches ``approved`` is decided by the review tally.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from branch_kernel.exceptions import InvalidTransitionError


class BranchState(str, Enum):
    """Branch lifecycle states."""

    DRAFT = "draft"
    REVIEW = "review"
    APPROVED = "approved"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class BranchEvent(str, Enum):
    """Events an actor can apply to a branch."""

    SUBMIT_FOR_REVIEW = "SUBMIT_FOR_REVIEW"
    REQUEST_CHANGES = "REQUEST_CHANGES"
    APPROVE = "APPROVE"
    PUBLISH = "PUBLISH"
    ARCHIVE = "ARCHIVE"


class Visibility(str, Enum):
    """Who may see a branch."""

    PRIVATE = "private"
    TEAM = "team"
    PUBLIC = "public"


class ActorType(str, Enum):
    """Whether a history record was produced by a person or by the engine."""

    USER = "user"
    SYSTEM = "system"


TRANSITION_TABLE: dict[BranchState, dict[BranchEvent, BranchState]] = {
    BranchState.DRAFT: {
        BranchEvent.SUBMIT_FOR_REVIEW: BranchState.REVIEW,
    },
    BranchState.REVIEW: {
        BranchEvent.REQUEST_CHANGES: BranchState.DRAFT,
        BranchEvent.APPROVE: BranchState.APPROVED,
    },
    BranchState.APPROVED: {
        BranchEvent.REQUEST_CHANGES: BranchState.DRAFT,
        BranchEvent.PUBLISH: BranchState.PUBLISHED,
        BranchEvent.ARCHIVE: BranchState.ARCHIVED,
    },
    BranchState.PUBLISHED: {
        BranchEvent.ARCHIVE: BranchState.ARCHIVED,
    },
    BranchState.ARCHIVED: {},
}

TERMINAL_STATES: frozenset[BranchState] = frozenset({
    BranchState.PUBLISHED,
    BranchState.ARCHIVED,
})

# Branch fields a published branch may still change on its way to archived.
PUBLISHED_MUTABLE_FIELDS: frozenset[str] = frozenset({
    "state",
    "archived_at",
    "updated_at",
    "version",
    "active_convergence_id",
})


def next_state(state: BranchState, event: BranchEvent) -> BranchState | None:
    """Look up the target state, or None when the pair is not in the table."""
    return TRANSITION_TABLE[BranchState(state)].get(BranchEvent(event))


def require_next_state(
    state: BranchState,
    event: BranchEvent,
    conditions: list[str] | None = None,
) -> BranchState:
    """Like :func:`next_state` but raises ``InvalidTransitionError``."""
    target = next_state(state, event)
    if target is None:
        raise InvalidTransitionError(
            BranchState(state).value,
            BranchEvent(event).value,
            conditions=conditions,
        )
    return target


def allowed_events(state: BranchState) -> frozenset[BranchEvent]:
    """Events the table accepts from ``state`` (ignoring guards)."""
    return frozenset(TRANSITION_TABLE[BranchState(state)])


def is_terminal(state: BranchState) -> bool:
    return BranchState(state) in TERMINAL_STATES


# =========================================================================
# Value objects
# =========================================================================


@dataclass(frozen=True)
class BranchRecord:
    """Immutable snapshot of a branch row."""

    id: UUID
    name: str
    owner_id: UUID
    base_ref: str
    content_ref: str
    state: BranchState
    visibility: Visibility
    required_approvals: int
    review_cycle: int
    base_commit: str | None = None
    active_convergence_id: UUID | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    published_at: datetime | None = None
    archived_at: datetime | None = None
    reviewer_ids: tuple[UUID, ...] = ()
    collaborator_ids: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class TransitionRecord:
    """One accepted event in a branch's append-only history."""

    id: UUID
    branch_id: UUID
    sequence: int
    from_state: BranchState
    to_state: BranchState
    event: str
    actor_id: UUID
    actor_type: ActorType
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of applying an event through the generic transition entry."""

    success: bool
    from_state: BranchState
    to_state: BranchState | None = None
    transition_id: UUID | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def accepted(
        cls,
        from_state: BranchState,
        to_state: BranchState,
        transition_id: UUID | None,
    ) -> TransitionOutcome:
        return cls(
            success=True,
            from_state=from_state,
            to_state=to_state,
            transition_id=transition_id,
        )

    @classmethod
    def rejected(
        cls, from_state: BranchState, error: str, error_code: str
    ) -> TransitionOutcome:
        return cls(
            success=False,
            from_state=from_state,
            error=error,
            error_code=error_code,
        )


@dataclass(frozen=True)
class TransitionCheck:
    """Dry-run answer to "could this actor apply this event now?"."""

    allowed: bool
    reason: str | None = None
