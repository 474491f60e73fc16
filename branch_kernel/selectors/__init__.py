"""Read-only selectors for the branch kernel."""

from branch_kernel.selectors.branch_selector import BranchSelector
from branch_kernel.selectors.convergence_selector import ConvergenceSelector
from branch_kernel.selectors.review_selector import ReviewSelector

__all__ = ["BranchSelector", "ConvergenceSelector", "ReviewSelector"]
