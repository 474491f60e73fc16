"""
Role & Assignment Guard (``branch_kernel.domain.guard``).

Responsibility
--------------
The single place that decides whether an actor may act on a branch.  Every
state-machine entry point asks the guard; the guard answers from three
inputs only: the actor's global roles, the actor's relation to the branch
(owner, reviewer, collaborator, active review) and the branch state.

Architecture position
---------------------
**Kernel domain layer** -- pure.  Role lookup happens behind the
``IdentityProvider`` protocol; the state machine assembles an
``ActorContext`` and hands it in.

Invariants enforced
-------------------
* Reviewer and collaborator relations are mutually exclusive per branch,
  checked in both insertion orders.  The owner holds neither.
* ``required_approvals`` stays within ``MIN_REQUIRED_APPROVALS`` ..
  ``MAX_REQUIRED_APPROVALS``.
* An owner never reviews their own branch.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol
from uuid import UUID

from branch_kernel.domain.workflow import BranchRecord, BranchState
from branch_kernel.exceptions import (
    DuplicateAssignmentError,
    NotAuthorizedError,
    NotOwnerError,
    RoleConflictError,
    ThresholdOutOfRangeError,
)

MIN_REQUIRED_APPROVALS = 1
MAX_REQUIRED_APPROVALS = 10


class Role(str, Enum):
    """Global roles resolved by the identity provider."""

    VIEWER = "viewer"
    CONTRIBUTOR = "contributor"
    REVIEWER = "reviewer"
    PUBLISHER = "publisher"
    ADMINISTRATOR = "administrator"
    SYSTEM = "system"


class MemberRelation(str, Enum):
    """Per-branch relation of a non-owner user."""

    REVIEWER = "reviewer"
    COLLABORATOR = "collaborator"


class GuardAction(str, Enum):
    """Actions the guard authorizes."""

    EDIT = "edit"
    UPDATE = "update"
    SUBMIT_FOR_REVIEW = "submit_for_review"
    REVIEW = "review"
    REQUEST_CHANGES = "request_changes"
    PUBLISH = "publish"
    ARCHIVE = "archive"
    MANAGE_MEMBERS = "manage_members"
    SET_THRESHOLD = "set_threshold"
    DELETE = "delete"


# States in which each action is meaningful.
ACTION_STATES: dict[GuardAction, frozenset[BranchState]] = {
    GuardAction.EDIT: frozenset({BranchState.DRAFT}),
    GuardAction.UPDATE: frozenset({BranchState.DRAFT}),
    GuardAction.SUBMIT_FOR_REVIEW: frozenset({BranchState.DRAFT}),
    GuardAction.REVIEW: frozenset({BranchState.REVIEW}),
    GuardAction.REQUEST_CHANGES: frozenset({BranchState.REVIEW, BranchState.APPROVED}),
    GuardAction.PUBLISH: frozenset({BranchState.APPROVED}),
    GuardAction.ARCHIVE: frozenset({BranchState.APPROVED, BranchState.PUBLISHED}),
    GuardAction.MANAGE_MEMBERS: frozenset({BranchState.DRAFT}),
    GuardAction.SET_THRESHOLD: frozenset({BranchState.DRAFT}),
    GuardAction.DELETE: frozenset({BranchState.DRAFT}),
}

OWNER_ONLY_ACTIONS: frozenset[GuardAction] = frozenset({
    GuardAction.SUBMIT_FOR_REVIEW,
    GuardAction.UPDATE,
    GuardAction.DELETE,
})


class IdentityProvider(Protocol):
    """Resolves an actor's global roles.

    Implementations may query an IdP, a directory, or static config.
    """

    def get_actor_roles(self, actor_id: UUID) -> frozenset[Role]:
        """Return the roles held by ``actor_id`` (empty when unknown)."""
        ...


@dataclass(frozen=True)
class RolePolicy:
    """Which global roles unlock the privileged actions."""

    publish_roles: frozenset[Role] = frozenset({Role.PUBLISHER, Role.ADMINISTRATOR})
    threshold_roles: frozenset[Role] = frozenset({Role.ADMINISTRATOR})
    archive_any_roles: frozenset[Role] = frozenset({Role.ADMINISTRATOR})
    manage_any_roles: frozenset[Role] = frozenset({Role.ADMINISTRATOR})
    automated_roles: frozenset[Role] = frozenset({Role.SYSTEM})


@dataclass(frozen=True)
class ActorContext:
    """Everything the guard needs to know about one actor on one branch."""

    actor_id: UUID
    roles: frozenset[Role] = frozenset()
    relation: MemberRelation | None = None
    has_active_review: bool = False


@dataclass(frozen=True)
class Authorization:
    allowed: bool
    reason: str = ""


@dataclass(frozen=True)
class Capabilities:
    """What the actor may do with the branch right now."""

    can_edit: bool
    can_update: bool
    can_submit_for_review: bool
    can_approve: bool
    can_request_changes: bool
    can_publish: bool
    can_archive: bool
    can_manage_members: bool
    can_set_threshold: bool
    can_delete: bool


class RoleAssignmentGuard:
    """
    Authorizes branch actions and validates assignments.

    Contract:
        ``authorize`` judges the actor only (roles and relations);
        ``capabilities`` additionally gates every action on the branch state.
        ``require`` raises the typed error for a denied action.

    Guarantees:
        - Pure: no I/O, no mutation.
        - Owner-only actions raise ``NotOwnerError``; every other denial
          raises ``NotAuthorizedError``.
    """

    def __init__(self, policy: RolePolicy | None = None):
        self.policy = policy or RolePolicy()

    def is_automated(self, roles: frozenset[Role]) -> bool:
        return bool(roles & self.policy.automated_roles)

    def authorize(
        self,
        actor: ActorContext,
        branch: BranchRecord,
        action: GuardAction,
    ) -> Authorization:
        is_owner = actor.actor_id == branch.owner_id
        roles = actor.roles

        if action is GuardAction.EDIT:
            if is_owner or actor.relation is MemberRelation.COLLABORATOR:
                return Authorization(True)
            return Authorization(False, "only the owner or a collaborator can edit")

        if action in OWNER_ONLY_ACTIONS:
            if is_owner:
                return Authorization(True)
            return Authorization(False, "only the branch owner can do this")

        if action is GuardAction.REVIEW or (
            action is GuardAction.REQUEST_CHANGES and branch.state is BranchState.REVIEW
        ):
            if is_owner:
                return Authorization(False, "the owner cannot review their own branch")
            if not actor.has_active_review:
                return Authorization(False, "actor has no active review on this branch")
            return Authorization(True)

        if action is GuardAction.REQUEST_CHANGES:
            if actor.relation is MemberRelation.REVIEWER or roles & self.policy.manage_any_roles:
                return Authorization(True)
            return Authorization(
                False, "only an assigned reviewer or an administrator can reopen an approved branch"
            )

        if action is GuardAction.PUBLISH:
            return self._role_gate(roles, self.policy.publish_roles, "publish")

        if action is GuardAction.ARCHIVE:
            if is_owner:
                return Authorization(True)
            return self._role_gate(roles, self.policy.archive_any_roles, "archive another user's branch")

        if action is GuardAction.MANAGE_MEMBERS:
            if is_owner:
                return Authorization(True)
            return self._role_gate(roles, self.policy.manage_any_roles, "manage reviewers and collaborators")

        if action is GuardAction.SET_THRESHOLD:
            return self._role_gate(roles, self.policy.threshold_roles, "change the approval threshold")

        return Authorization(False, f"unknown action {action}")

    @staticmethod
    def _role_gate(
        roles: frozenset[Role], required: frozenset[Role], what: str
    ) -> Authorization:
        if roles & required:
            return Authorization(True)
        names = ", ".join(sorted(r.value for r in required))
        return Authorization(False, f"requires one of [{names}] to {what}")

    def check(
        self,
        actor: ActorContext,
        branch: BranchRecord,
        action: GuardAction,
    ) -> Authorization:
        """State gate plus :meth:`authorize`."""
        required_states = ACTION_STATES[action]
        if branch.state not in required_states:
            states = " or ".join(s.value for s in sorted(required_states, key=lambda s: s.value))
            return Authorization(False, f"branch is {branch.state.value}; requires {states}")
        return self.authorize(actor, branch, action)

    def require(
        self,
        actor: ActorContext,
        branch: BranchRecord,
        action: GuardAction,
    ) -> None:
        result = self.authorize(actor, branch, action)
        if result.allowed:
            return
        if action in OWNER_ONLY_ACTIONS:
            raise NotOwnerError(actor.actor_id, branch.id, action.value)
        raise NotAuthorizedError(actor.actor_id, action.value, result.reason)

    def capabilities(self, actor: ActorContext, branch: BranchRecord) -> Capabilities:
        def can(action: GuardAction) -> bool:
            return self.check(actor, branch, action).allowed

        return Capabilities(
            can_edit=can(GuardAction.EDIT),
            can_update=can(GuardAction.UPDATE),
            can_submit_for_review=can(GuardAction.SUBMIT_FOR_REVIEW),
            can_approve=can(GuardAction.REVIEW),
            can_request_changes=can(GuardAction.REQUEST_CHANGES),
            can_publish=can(GuardAction.PUBLISH),
            can_archive=can(GuardAction.ARCHIVE),
            can_manage_members=can(GuardAction.MANAGE_MEMBERS),
            can_set_threshold=can(GuardAction.SET_THRESHOLD),
            can_delete=can(GuardAction.DELETE),
        )

    # -----------------------------------------------------------------
    # Assignment validation
    # -----------------------------------------------------------------

    def check_assignment(
        self,
        branch: BranchRecord,
        user_id: UUID,
        relation: MemberRelation,
        existing: MemberRelation | None,
    ) -> None:
        """Raise when ``user_id`` cannot take ``relation`` on ``branch``."""
        if user_id == branch.owner_id:
            raise RoleConflictError(branch.id, user_id, relation.value, "owner")
        if existing is relation:
            raise DuplicateAssignmentError(branch.id, user_id, relation.value)
        if existing is not None:
            raise RoleConflictError(branch.id, user_id, relation.value, existing.value)

    @staticmethod
    def check_threshold(value: int) -> None:
        if (
            isinstance(value, bool)
            or not isinstance(value, int)
            or not MIN_REQUIRED_APPROVALS <= value <= MAX_REQUIRED_APPROVALS
        ):
            raise ThresholdOutOfRangeError(
                value, MIN_REQUIRED_APPROVALS, MAX_REQUIRED_APPROVALS
            )
