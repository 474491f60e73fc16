"""Branch routes: bookkeeping, review workflow, transitions and membership."""

from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status

from branch_api.dependencies import get_actor_id, get_orchestrator
from branch_api.schemas import (
    BranchCreate,
    BranchOut,
    BranchUpdate,
    CapabilitiesOut,
    ContentCommitOut,
    ContentRename,
    ContentWrite,
    ConvergenceOperationOut,
    ReviewCycleOut,
    ReviewDecisionOut,
    ReviewDecisionRequest,
    ReviewOut,
    ReviewStatsOut,
    SubmissionOut,
    SubmitForReview,
    TallyOut,
    ThresholdUpdate,
    TransitionCheckOut,
    TransitionOut,
    TransitionOutcomeOut,
    TransitionRequest,
)
from branch_kernel.domain.workflow import BranchEvent, BranchState
from branch_services.workflow_orchestrator import BranchWorkflowOrchestrator

router = APIRouter(prefix="/branches", tags=["branches"])

Actor = Annotated[UUID, Depends(get_actor_id)]
Orchestrator = Annotated[BranchWorkflowOrchestrator, Depends(get_orchestrator)]


# ---------------------------------------------------------------------------
# Bookkeeping
# ---------------------------------------------------------------------------


@router.post("", response_model=BranchOut, status_code=status.HTTP_201_CREATED)
def create_branch(body: BranchCreate, actor_id: Actor, orchestrator: Orchestrator):
    branch = orchestrator.create_branch(
        actor_id,
        body.name,
        base_ref=body.base_ref,
        visibility=body.visibility,
        required_approvals=body.required_approvals,
        reviewer_ids=body.reviewer_ids,
        collaborator_ids=body.collaborator_ids,
    )
    return BranchOut.model_validate(branch)


@router.get("", response_model=list[BranchOut])
def list_branches(
    orchestrator: Orchestrator,
    owner_id: Annotated[UUID | None, Query(alias="ownerId")] = None,
    state: BranchState | None = None,
    member_id: Annotated[UUID | None, Query(alias="memberId")] = None,
):
    branches = orchestrator.list_branches(owner_id=owner_id, state=state, member_id=member_id)
    return [BranchOut.model_validate(b) for b in branches]


@router.get("/{branch_id}", response_model=BranchOut)
def get_branch(branch_id: UUID, orchestrator: Orchestrator):
    return BranchOut.model_validate(orchestrator.get_branch(branch_id))


@router.patch("/{branch_id}", response_model=BranchOut)
def update_branch(
    branch_id: UUID, body: BranchUpdate, actor_id: Actor, orchestrator: Orchestrator
):
    branch = orchestrator.update_branch(
        branch_id, actor_id, name=body.name, visibility=body.visibility
    )
    return BranchOut.model_validate(branch)


@router.delete("/{branch_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_branch(branch_id: UUID, actor_id: Actor, orchestrator: Orchestrator):
    orchestrator.delete_branch(branch_id, actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{branch_id}/rebase", response_model=BranchOut)
def rebase(branch_id: UUID, actor_id: Actor, orchestrator: Orchestrator):
    return BranchOut.model_validate(orchestrator.rebase(branch_id, actor_id))


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------


@router.get("/{branch_id}/content", response_model=dict[str, str])
def content_snapshot(branch_id: UUID, orchestrator: Orchestrator):
    return orchestrator.content_snapshot(branch_id)


@router.put("/{branch_id}/content/{path:path}", response_model=ContentCommitOut)
def write_content(
    branch_id: UUID, path: str, body: ContentWrite, actor_id: Actor, orchestrator: Orchestrator
):
    commit_id = orchestrator.write_content(branch_id, actor_id, path, body.body, body.message)
    return ContentCommitOut(commit_id=commit_id)


@router.delete("/{branch_id}/content/{path:path}", response_model=ContentCommitOut)
def delete_content(branch_id: UUID, path: str, actor_id: Actor, orchestrator: Orchestrator):
    return ContentCommitOut(commit_id=orchestrator.delete_content(branch_id, actor_id, path))


@router.post("/{branch_id}/content-renames", response_model=ContentCommitOut)
def rename_content(
    branch_id: UUID, body: ContentRename, actor_id: Actor, orchestrator: Orchestrator
):
    commit_id = orchestrator.rename_content(
        branch_id, actor_id, body.from_path, body.to_path, body.message
    )
    return ContentCommitOut(commit_id=commit_id)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


@router.post("/{branch_id}/submit-for-review", response_model=SubmissionOut)
def submit_for_review(
    branch_id: UUID, body: SubmitForReview, actor_id: Actor, orchestrator: Orchestrator
):
    result = orchestrator.submit_for_review(
        branch_id, actor_id, body.reviewer_ids, reason=body.reason
    )
    return SubmissionOut.model_validate(result)


@router.post("/{branch_id}/transitions", response_model=TransitionOutcomeOut)
def apply_transition(
    branch_id: UUID, body: TransitionRequest, actor_id: Actor, orchestrator: Orchestrator
):
    outcome = orchestrator.apply_event(
        branch_id, actor_id, body.event, reason=body.reason, metadata=body.metadata
    )
    return TransitionOutcomeOut.model_validate(outcome)


@router.get("/{branch_id}/transitions", response_model=list[TransitionOut])
def transition_history(branch_id: UUID, orchestrator: Orchestrator):
    return [TransitionOut.model_validate(r) for r in orchestrator.history(branch_id)]


@router.get("/{branch_id}/can-transition", response_model=TransitionCheckOut)
def can_transition(
    branch_id: UUID, event: BranchEvent, actor_id: Actor, orchestrator: Orchestrator
):
    return TransitionCheckOut.model_validate(
        orchestrator.can_transition(branch_id, actor_id, event)
    )


@router.patch("/{branch_id}/approval-threshold", response_model=BranchOut)
def set_approval_threshold(
    branch_id: UUID, body: ThresholdUpdate, actor_id: Actor, orchestrator: Orchestrator
):
    branch = orchestrator.set_approval_threshold(branch_id, actor_id, body.required_approvals)
    return BranchOut.model_validate(branch)


@router.get("/{branch_id}/capabilities", response_model=CapabilitiesOut)
def capabilities(branch_id: UUID, actor_id: Actor, orchestrator: Orchestrator):
    return CapabilitiesOut.model_validate(orchestrator.capabilities(branch_id, actor_id))


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------


@router.get("/{branch_id}/reviews", response_model=list[ReviewOut])
def list_reviews(
    branch_id: UUID, orchestrator: Orchestrator, cycle: int | None = None
):
    return [ReviewOut.model_validate(r) for r in orchestrator.reviews(branch_id, cycle)]


@router.post("/{branch_id}/reviews/start", response_model=ReviewOut)
def start_review(branch_id: UUID, actor_id: Actor, orchestrator: Orchestrator):
    return ReviewOut.model_validate(orchestrator.start_review(branch_id, actor_id))


@router.post("/{branch_id}/reviews/decision", response_model=ReviewDecisionOut)
def record_review_decision(
    branch_id: UUID, body: ReviewDecisionRequest, actor_id: Actor, orchestrator: Orchestrator
):
    result = orchestrator.record_review_decision(
        branch_id, actor_id, body.decision, comment=body.comment
    )
    return ReviewDecisionOut.model_validate(result)


@router.get("/{branch_id}/reviews/tally", response_model=TallyOut)
def review_tally(branch_id: UUID, orchestrator: Orchestrator):
    return TallyOut.model_validate(orchestrator.tally(branch_id))


@router.get("/{branch_id}/reviews/cycles", response_model=list[ReviewCycleOut])
def review_cycles(branch_id: UUID, orchestrator: Orchestrator):
    return [ReviewCycleOut.model_validate(c) for c in orchestrator.review_cycles(branch_id)]


@router.get("/{branch_id}/reviews/stats", response_model=ReviewStatsOut)
def review_stats(branch_id: UUID, orchestrator: Orchestrator):
    return ReviewStatsOut.model_validate(orchestrator.review_stats(branch_id))


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------


@router.post("/{branch_id}/reviewers/{user_id}", response_model=BranchOut)
def add_reviewer(branch_id: UUID, user_id: UUID, actor_id: Actor, orchestrator: Orchestrator):
    return BranchOut.model_validate(orchestrator.add_reviewer(branch_id, actor_id, user_id))


@router.delete("/{branch_id}/reviewers/{user_id}", response_model=BranchOut)
def remove_reviewer(branch_id: UUID, user_id: UUID, actor_id: Actor, orchestrator: Orchestrator):
    return BranchOut.model_validate(orchestrator.remove_reviewer(branch_id, actor_id, user_id))


@router.post("/{branch_id}/collaborators/{user_id}", response_model=BranchOut)
def add_collaborator(
    branch_id: UUID, user_id: UUID, actor_id: Actor, orchestrator: Orchestrator
):
    return BranchOut.model_validate(orchestrator.add_collaborator(branch_id, actor_id, user_id))


@router.delete("/{branch_id}/collaborators/{user_id}", response_model=BranchOut)
def remove_collaborator(
    branch_id: UUID, user_id: UUID, actor_id: Actor, orchestrator: Orchestrator
):
    return BranchOut.model_validate(
        orchestrator.remove_collaborator(branch_id, actor_id, user_id)
    )


# ---------------------------------------------------------------------------
# Convergence history
# ---------------------------------------------------------------------------


@router.get("/{branch_id}/convergence", response_model=list[ConvergenceOperationOut])
def list_operations(branch_id: UUID, orchestrator: Orchestrator):
    return [
        ConvergenceOperationOut.model_validate(op)
        for op in orchestrator.list_operations(branch_id)
    ]
