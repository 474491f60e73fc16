"""Pure domain layer: lifecycle tables, tally, guard, convergence rules."""

from branch_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from branch_kernel.domain.convergence import (
    ContentChange,
    ContentStore,
    ConvergenceStatus,
    ValidationReport,
)
from branch_kernel.domain.guard import (
    Capabilities,
    IdentityProvider,
    MemberRelation,
    Role,
    RoleAssignmentGuard,
    RolePolicy,
)
from branch_kernel.domain.review import Consensus, ReviewDecision, ReviewStatus, ReviewTally
from branch_kernel.domain.workflow import (
    TRANSITION_TABLE,
    ActorType,
    BranchEvent,
    BranchRecord,
    BranchState,
    TransitionRecord,
    Visibility,
)

__all__ = [
    "ActorType",
    "BranchEvent",
    "BranchRecord",
    "BranchState",
    "Capabilities",
    "Clock",
    "Consensus",
    "ContentChange",
    "ContentStore",
    "ConvergenceStatus",
    "DeterministicClock",
    "IdentityProvider",
    "MemberRelation",
    "ReviewDecision",
    "ReviewStatus",
    "ReviewTally",
    "Role",
    "RoleAssignmentGuard",
    "RolePolicy",
    "SystemClock",
    "TRANSITION_TABLE",
    "TransitionRecord",
    "ValidationReport",
    "Visibility",
]
