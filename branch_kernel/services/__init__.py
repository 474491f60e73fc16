"""Services for the branch kernel (write side)."""

from branch_kernel.services.branch_state_machine import BranchStateMachine
from branch_kernel.services.content_store import SqlContentStore
from branch_kernel.services.convergence_engine import ConvergenceEngine

__all__ = [
    "BranchStateMachine",
    "ConvergenceEngine",
    "SqlContentStore",
]
