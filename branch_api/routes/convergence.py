"""Convergence routes: validate, create, execute, publish, cancel, resume, poll."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from branch_api.dependencies import get_actor_id, get_orchestrator
from branch_api.schemas import (
    BranchReference,
    ConvergenceOperationOut,
    ConvergenceStatusOut,
    ValidationReportOut,
)
from branch_services.workflow_orchestrator import BranchWorkflowOrchestrator

router = APIRouter(prefix="/convergence", tags=["convergence"])

Actor = Annotated[UUID, Depends(get_actor_id)]
Orchestrator = Annotated[BranchWorkflowOrchestrator, Depends(get_orchestrator)]


@router.post("/validate", response_model=ValidationReportOut)
def validate(
    body: BranchReference,
    orchestrator: Orchestrator,
    require_clean: Annotated[bool, Query(alias="requireClean")] = False,
):
    """Run the validation battery; never writes.

    With ``requireClean=true`` any conflict is a 409 ``CONFLICT_DETECTED``.
    """
    report = orchestrator.validate(body.branch_id, require_clean=require_clean)
    return ValidationReportOut.model_validate(report)


@router.post("", response_model=ConvergenceOperationOut, status_code=status.HTTP_201_CREATED)
def create_operation(body: BranchReference, actor_id: Actor, orchestrator: Orchestrator):
    operation = orchestrator.create_convergence(body.branch_id, actor_id)
    return ConvergenceOperationOut.model_validate(operation)


@router.post("/publish", response_model=ConvergenceOperationOut)
def publish(body: BranchReference, actor_id: Actor, orchestrator: Orchestrator):
    """Create and execute in one call."""
    return ConvergenceOperationOut.model_validate(orchestrator.publish(body.branch_id, actor_id))


@router.get("/{operation_id}", response_model=ConvergenceOperationOut)
def get_operation(operation_id: UUID, orchestrator: Orchestrator):
    return ConvergenceOperationOut.model_validate(orchestrator.get_operation(operation_id))


@router.post("/{operation_id}/execute", response_model=ConvergenceOperationOut)
def execute(operation_id: UUID, actor_id: Actor, orchestrator: Orchestrator):
    return ConvergenceOperationOut.model_validate(orchestrator.execute(operation_id, actor_id))


@router.post("/{operation_id}/cancel", response_model=ConvergenceOperationOut)
def cancel(operation_id: UUID, actor_id: Actor, orchestrator: Orchestrator):
    return ConvergenceOperationOut.model_validate(orchestrator.cancel(operation_id, actor_id))


@router.post("/{operation_id}/resume", response_model=ConvergenceOperationOut)
def resume(operation_id: UUID, actor_id: Actor, orchestrator: Orchestrator):
    return ConvergenceOperationOut.model_validate(orchestrator.resume(operation_id, actor_id))


@router.get("/{operation_id}/status", response_model=ConvergenceStatusOut)
def operation_status(operation_id: UUID, orchestrator: Orchestrator):
    return ConvergenceStatusOut.model_validate(orchestrator.status(operation_id))
