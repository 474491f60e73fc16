"""ORM models for the branch kernel."""

from branch_kernel.models.branch import BranchMemberModel, BranchModel
from branch_kernel.models.content import (
    ContentRefModel,
    ContentChangeModel,
    ContentCommitModel,
    ContentNodeModel,
)
from branch_kernel.models.convergence import ConvergenceOperationModel
from branch_kernel.models.review import ReviewModel
from branch_kernel.models.transition import BranchTransitionModel

__all__ = [
    "BranchMemberModel",
    "BranchModel",
    "BranchTransitionModel",
    "ContentChangeModel",
    "ContentCommitModel",
    "ContentNodeModel",
    "ContentRefModel",
    "ConvergenceOperationModel",
    "ReviewModel",
]
