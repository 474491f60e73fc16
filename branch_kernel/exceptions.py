"""
Typed Exception Hierarchy for the Branch Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Workflow guards reject events for many different reasons: the event is not
legal from the current state, the actor is not the owner, a reviewer is also
a collaborator, the approval threshold is out of range.  Callers (the HTTP
layer, automation, tests) must distinguish these without parsing messages:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        machine.submit_for_review(branch_id, actor_id, reviewer_ids)
    except RoleConflictError as e:
        return {"error": e.code, "user_id": str(e.user_id)}

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BranchKernelError (base)
    |
    +-- TransitionError
    |   +-- InvalidTransitionError
    |   |   +-- InvalidStateError
    |   |   +-- InvalidConvergenceTransitionError
    |   |   +-- InvalidReviewTransitionError
    |   +-- NoReviewersAssignedError
    |
    +-- AuthorizationError
    |   +-- NotAuthorizedError
    |       +-- NotOwnerError
    |       +-- NotInitiatorError
    |
    +-- AssignmentError
    |   +-- RoleConflictError
    |   +-- DuplicateAssignmentError
    |   +-- AssignmentNotFoundError
    |   +-- ThresholdOutOfRangeError
    |
    +-- ConvergenceError
    |   +-- ConflictDetectedError
    |   +-- ConcurrentOperationInProgressError
    |   +-- StaleOperationError
    |
    +-- NotFoundError
    |   +-- BranchNotFoundError
    |   +-- ReviewNotFoundError
    |   +-- ConvergenceOperationNotFoundError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- ContentError
    |   +-- ContentNotFoundError
    |   +-- ContentPathExistsError
    |   +-- UnknownRefError
    |
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                              | When Raised
--------------|-----------------------------------|------------------------------------
Transition    | INVALID_TRANSITION                | Event not allowed from current state
              | INVALID_STATE                     | Operation requires a different state
              | INVALID_CONVERGENCE_TRANSITION    | Operation status forbids the action
              | INVALID_REVIEW_TRANSITION         | Review status forbids the action
              | NO_REVIEWERS_ASSIGNED             | Submit with an empty reviewer set
--------------|-----------------------------------|------------------------------------
Authorization | NOT_AUTHORIZED                    | Actor lacks role or relation
              | NOT_OWNER                         | Owner-only operation
              | NOT_INITIATOR                     | Cancel by someone other than publisher
--------------|-----------------------------------|------------------------------------
Assignment    | ROLE_CONFLICT                     | Reviewer/collaborator mutual exclusion
              | DUPLICATE_ASSIGNMENT              | User already holds the relation
              | ASSIGNMENT_NOT_FOUND              | Removing a relation the user lacks
              | THRESHOLD_OUT_OF_RANGE            | requiredApprovals outside 1..10
--------------|-----------------------------------|------------------------------------
Convergence   | CONFLICT_DETECTED                 | Strict validation found conflicts
              | CONCURRENT_OPERATION_IN_PROGRESS  | Second publish of the same branch
              | OPERATION_NOT_STALE               | Resume of a live operation
--------------|-----------------------------------|------------------------------------
Not found     | BRANCH_NOT_FOUND / REVIEW_NOT_FOUND / CONVERGENCE_OPERATION_NOT_FOUND
--------------|-----------------------------------|------------------------------------
Concurrency   | OPTIMISTIC_LOCK_CONFLICT          | Version counter mismatch on flush
Immutability  | IMMUTABILITY_VIOLATION            | Mutating history, a completed review,
              |                                   | or a terminal branch
Configuration | CONFIGURATION_ERROR               | Invalid YAML configuration

===============================================================================
DESIGN DECISIONS
===============================================================================

1. Every guard failure is raised BEFORE the first write, so a rejected event
   leaves no partial state behind.  The orchestrator additionally rolls back
   the whole unit of work on any exception.

2. Convergence conflicts are NOT exceptions.  ``execute`` finishes the
   operation as ``failed`` with conflict details.  ConflictDetectedError is
   raised only by ``require_clean`` for callers that demand a clean report.

3. ``conditions`` on transition errors carries the satisfied/missing
   conditions (e.g. "1 of 2 required approvals") for user-facing messages.

===============================================================================
"""

from typing import Any
from uuid import UUID


class BranchKernelError(Exception):
    """
    Base exception for all branch kernel errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "BRANCH_KERNEL_ERROR"


# Transition-related exceptions


class TransitionError(BranchKernelError):
    """Base exception for lifecycle transition errors."""

    code: str = "TRANSITION_ERROR"


class InvalidTransitionError(TransitionError):
    """Event is not allowed from the branch's current state."""

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        current_state: str,
        event: str,
        reason: str | None = None,
        conditions: list[str] | None = None,
    ):
        self.current_state = current_state
        self.event = event
        self.reason = reason
        self.conditions = list(conditions or [])
        message = f"Event {event} is not allowed from state {current_state}"
        if reason:
            message = f"{message}: {reason}"
        if self.conditions:
            message = f"{message} ({'; '.join(self.conditions)})"
        super().__init__(message)


class InvalidStateError(InvalidTransitionError):
    """Operation requires the branch to be in a different state."""

    code: str = "INVALID_STATE"

    def __init__(
        self,
        branch_id: UUID,
        current_state: str,
        required_states: tuple[str, ...],
        operation: str,
    ):
        self.branch_id = branch_id
        self.required_states = required_states
        self.operation = operation
        super().__init__(
            current_state,
            operation,
            reason=f"branch {branch_id} must be {' or '.join(required_states)}",
        )


class InvalidConvergenceTransitionError(InvalidTransitionError):
    """Convergence operation status does not permit the requested action."""

    code: str = "INVALID_CONVERGENCE_TRANSITION"

    def __init__(self, operation_id: UUID, current_status: str, target: str):
        self.operation_id = operation_id
        self.current_status = current_status
        self.target = target
        super().__init__(
            current_status,
            target,
            reason=f"convergence operation {operation_id} is {current_status}",
        )


class InvalidReviewTransitionError(InvalidTransitionError):
    """A review cannot move from its current status to the requested one."""

    code: str = "INVALID_REVIEW_TRANSITION"

    def __init__(self, review_id: UUID, current_status: str, target_status: str):
        self.review_id = review_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            current_status,
            target_status,
            reason=f"review {review_id} is {current_status}",
        )


class NoReviewersAssignedError(TransitionError):
    """A branch cannot be submitted for review without reviewers."""

    code: str = "NO_REVIEWERS_ASSIGNED"

    def __init__(self, branch_id: UUID):
        self.branch_id = branch_id
        super().__init__(
            f"Branch {branch_id} has no reviewers assigned; "
            "at least one reviewer is required to submit for review"
        )


# Authorization-related exceptions


class AuthorizationError(BranchKernelError):
    """Base exception for authorization errors."""

    code: str = "AUTHORIZATION_ERROR"


class NotAuthorizedError(AuthorizationError):
    """Actor lacks the role or relation required by the operation."""

    code: str = "NOT_AUTHORIZED"

    def __init__(self, actor_id: UUID, action: str, reason: str):
        self.actor_id = actor_id
        self.action = action
        self.reason = reason
        super().__init__(f"Actor {actor_id} may not {action}: {reason}")


class NotOwnerError(NotAuthorizedError):
    """Operation is restricted to the branch owner."""

    code: str = "NOT_OWNER"

    def __init__(self, actor_id: UUID, branch_id: UUID, action: str):
        self.branch_id = branch_id
        super().__init__(
            actor_id, action, f"only the owner of branch {branch_id} can do this"
        )


class NotInitiatorError(NotAuthorizedError):
    """Only the publisher who created a convergence operation may cancel it."""

    code: str = "NOT_INITIATOR"

    def __init__(self, actor_id: UUID, operation_id: UUID):
        self.operation_id = operation_id
        super().__init__(
            actor_id,
            "cancel",
            f"only the initiating publisher can cancel operation {operation_id}",
        )


# Assignment-related exceptions


class AssignmentError(BranchKernelError):
    """Base exception for reviewer/collaborator assignment errors."""

    code: str = "ASSIGNMENT_ERROR"


class RoleConflictError(AssignmentError):
    """Reviewer and collaborator relations are mutually exclusive per branch."""

    code: str = "ROLE_CONFLICT"

    def __init__(
        self,
        branch_id: UUID,
        user_id: UUID,
        requested_relation: str,
        existing_relation: str,
    ):
        self.branch_id = branch_id
        self.user_id = user_id
        self.requested_relation = requested_relation
        self.existing_relation = existing_relation
        super().__init__(
            f"User {user_id} cannot be {requested_relation} on branch {branch_id}: "
            f"already {existing_relation}"
        )


class DuplicateAssignmentError(AssignmentError):
    """User already holds the requested relation on the branch."""

    code: str = "DUPLICATE_ASSIGNMENT"

    def __init__(self, branch_id: UUID, user_id: UUID, relation: str):
        self.branch_id = branch_id
        self.user_id = user_id
        self.relation = relation
        super().__init__(
            f"User {user_id} is already a {relation} on branch {branch_id}"
        )


class AssignmentNotFoundError(AssignmentError):
    """User does not hold the relation being removed."""

    code: str = "ASSIGNMENT_NOT_FOUND"

    def __init__(self, branch_id: UUID, user_id: UUID, relation: str):
        self.branch_id = branch_id
        self.user_id = user_id
        self.relation = relation
        super().__init__(f"User {user_id} is not a {relation} on branch {branch_id}")


class ThresholdOutOfRangeError(AssignmentError):
    """requiredApprovals must stay within the configured bounds."""

    code: str = "THRESHOLD_OUT_OF_RANGE"

    def __init__(self, value: int, minimum: int, maximum: int):
        self.value = value
        self.minimum = minimum
        self.maximum = maximum
        super().__init__(
            f"Required approvals {value} out of range; must be between "
            f"{minimum} and {maximum}"
        )


# Convergence-related exceptions


class ConvergenceError(BranchKernelError):
    """Base exception for convergence errors."""

    code: str = "CONVERGENCE_ERROR"


class ConflictDetectedError(ConvergenceError):
    """Validation found conflicts between the branch and its target."""

    code: str = "CONFLICT_DETECTED"

    def __init__(self, branch_id: UUID, conflicts: list[dict[str, Any]]):
        self.branch_id = branch_id
        self.conflicts = conflicts
        super().__init__(
            f"Branch {branch_id} has {len(conflicts)} conflict(s) with its target"
        )


class ConcurrentOperationInProgressError(ConvergenceError):
    """Another convergence operation already holds the branch."""

    code: str = "CONCURRENT_OPERATION_IN_PROGRESS"

    def __init__(self, branch_id: UUID, operation_id: UUID | None = None):
        self.branch_id = branch_id
        self.operation_id = operation_id
        detail = f" (operation {operation_id})" if operation_id else ""
        super().__init__(
            f"A convergence operation is already in progress for branch "
            f"{branch_id}{detail}"
        )


class StaleOperationError(ConvergenceError):
    """Resume was requested for an operation that is still within its window."""

    code: str = "OPERATION_NOT_STALE"

    def __init__(self, operation_id: UUID, age_seconds: float, stale_after: int):
        self.operation_id = operation_id
        self.age_seconds = age_seconds
        self.stale_after = stale_after
        super().__init__(
            f"Operation {operation_id} has been in progress for "
            f"{age_seconds:.0f}s; it can be resumed after {stale_after}s"
        )


# Not-found exceptions


class NotFoundError(BranchKernelError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class BranchNotFoundError(NotFoundError):
    """Branch with given ID was not found."""

    code: str = "BRANCH_NOT_FOUND"

    def __init__(self, branch_id: UUID):
        self.branch_id = branch_id
        super().__init__(f"Branch not found: {branch_id}")


class ReviewNotFoundError(NotFoundError):
    """No active review exists for the reviewer on this branch."""

    code: str = "REVIEW_NOT_FOUND"

    def __init__(self, branch_id: UUID, reviewer_id: UUID):
        self.branch_id = branch_id
        self.reviewer_id = reviewer_id
        super().__init__(
            f"No active review for reviewer {reviewer_id} on branch {branch_id}"
        )


class ConvergenceOperationNotFoundError(NotFoundError):
    """Convergence operation with given ID was not found."""

    code: str = "CONVERGENCE_OPERATION_NOT_FOUND"

    def __init__(self, operation_id: UUID):
        self.operation_id = operation_id
        super().__init__(f"Convergence operation not found: {operation_id}")


# Concurrency-related exceptions


class ConcurrencyError(BranchKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Immutability-related exceptions


class ImmutabilityError(BranchKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete an immutable record.

    Transition history is append-only, completed reviews are frozen, and
    terminal branches accept no further mutation.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Configuration


class ConfigurationError(BranchKernelError):
    """Engine configuration is missing or invalid."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration for {key}: {reason}")


# Content store


class ContentError(BranchKernelError):
    """Base exception for content store errors."""

    code: str = "CONTENT_ERROR"


class ContentNotFoundError(ContentError):
    """No node at the given path on the ref."""

    code: str = "CONTENT_NOT_FOUND"

    def __init__(self, ref: str, path: str):
        self.ref = ref
        self.path = path
        super().__init__(f"No content at {path} on {ref}")


class ContentPathExistsError(ContentError):
    """Target path of a rename already holds a node."""

    code: str = "CONTENT_PATH_EXISTS"

    def __init__(self, ref: str, path: str):
        self.ref = ref
        self.path = path
        super().__init__(f"Content already exists at {path} on {ref}")


class UnknownRefError(ContentError):
    """The content ref has never been created."""

    code: str = "UNKNOWN_REF"

    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Unknown content ref: {ref}")
