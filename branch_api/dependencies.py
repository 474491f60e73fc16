"""Request-scoped dependencies: the acting user and the orchestrator."""

from __future__ import annotations

from uuid import UUID

from fastapi import Header, HTTPException, Request, status

from branch_services.workflow_orchestrator import BranchWorkflowOrchestrator

ACTOR_HEADER = "X-Actor-Id"


def get_orchestrator(request: Request) -> BranchWorkflowOrchestrator:
    return request.app.state.orchestrator


def get_actor_id(x_actor_id: str | None = Header(default=None, alias=ACTOR_HEADER)) -> UUID:
    """The acting user, taken on trust from the ``X-Actor-Id`` header."""
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"{ACTOR_HEADER} header required",
        )
    try:
        return UUID(x_actor_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{ACTOR_HEADER} must be a UUID",
        ) from None
