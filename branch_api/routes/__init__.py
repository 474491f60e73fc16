"""HTTP routers."""

from branch_api.routes.branches import router as branches_router
from branch_api.routes.convergence import router as convergence_router

__all__ = ["branches_router", "convergence_router"]
