"""Request and response bodies for the HTTP surface.

JSON keys are camelCase; Python attributes stay snake_case.  Response
models are built straight from the kernel DTOs (``from_attributes``).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from branch_kernel.domain.convergence import ConflictType, ConvergenceStatus, ValidationCheck
from branch_kernel.domain.review import Consensus, CycleOutcome, ReviewDecision, ReviewStatus
from branch_kernel.domain.workflow import ActorType, BranchEvent, BranchState, Visibility


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class BranchCreate(ApiModel):
    name: str = Field(min_length=1, max_length=200)
    base_ref: str | None = None
    visibility: Visibility = Visibility.PRIVATE
    required_approvals: int | None = None
    reviewer_ids: list[UUID] = Field(default_factory=list)
    collaborator_ids: list[UUID] = Field(default_factory=list)


class BranchUpdate(ApiModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    visibility: Visibility | None = None


class SubmitForReview(ApiModel):
    reviewer_ids: list[UUID] = Field(default_factory=list)
    reason: str | None = None


class TransitionRequest(ApiModel):
    event: BranchEvent
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ThresholdUpdate(ApiModel):
    required_approvals: int


class ReviewDecisionRequest(ApiModel):
    decision: ReviewDecision
    comment: str | None = None


class ContentWrite(ApiModel):
    body: str
    message: str = ""


class ContentRename(ApiModel):
    from_path: str
    to_path: str
    message: str = ""


class BranchReference(ApiModel):
    branch_id: UUID


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class BranchOut(ApiModel):
    id: UUID
    name: str
    owner_id: UUID
    base_ref: str
    content_ref: str
    state: BranchState
    visibility: Visibility
    required_approvals: int
    review_cycle: int
    base_commit: str | None = None
    active_convergence_id: UUID | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    published_at: datetime | None = None
    archived_at: datetime | None = None
    reviewer_ids: list[UUID] = Field(default_factory=list)
    collaborator_ids: list[UUID] = Field(default_factory=list)


class TransitionOut(ApiModel):
    id: UUID
    branch_id: UUID
    sequence: int
    from_state: BranchState
    to_state: BranchState
    event: str
    actor_id: UUID
    actor_type: ActorType
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class SubmissionOut(ApiModel):
    transition: TransitionOut
    branch: BranchOut


class TransitionOutcomeOut(ApiModel):
    success: bool
    from_state: BranchState
    to_state: BranchState | None = None
    transition_id: UUID | None = None
    error: str | None = None
    error_code: str | None = None


class TransitionCheckOut(ApiModel):
    allowed: bool
    reason: str | None = None


class ReviewOut(ApiModel):
    id: UUID
    branch_id: UUID
    reviewer_id: UUID
    requested_by_id: UUID
    cycle: int
    status: ReviewStatus
    decision: ReviewDecision | None = None
    comment: str | None = None
    automated: bool = False
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class TallyOut(ApiModel):
    approved_count: int
    changes_requested_count: int
    pending_count: int
    required_approvals: int
    consensus: Consensus
    human_approved_count: int
    progress: str
    missing_conditions: list[str]


class ReviewDecisionOut(ApiModel):
    review: ReviewOut
    tally: TallyOut
    from_state: BranchState
    to_state: BranchState
    transition_id: UUID | None = None
    transitioned: bool


class ReviewCycleOut(ApiModel):
    cycle: int
    reviewer_ids: list[UUID]
    approved_count: int
    changes_requested_count: int
    cancelled_count: int
    outcome: CycleOutcome
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ReviewStatsOut(ApiModel):
    total: int
    pending: int
    in_progress: int
    completed: int
    cancelled: int
    approved: int
    changes_requested: int


class CapabilitiesOut(ApiModel):
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


class CheckResultOut(ApiModel):
    check: ValidationCheck
    passed: bool
    message: str


class ConflictOut(ApiModel):
    path: str
    type: ConflictType
    description: str


class ValidationReportOut(ApiModel):
    branch_id: UUID
    is_valid: bool
    results: list[CheckResultOut]
    conflicts: list[ConflictOut]
    target_head: str | None = None


class ConvergenceOperationOut(ApiModel):
    id: UUID
    branch_id: UUID
    publisher_id: UUID
    status: ConvergenceStatus
    target_ref: str
    validation_results: list[dict[str, Any]] = Field(default_factory=list)
    conflict_detected: bool = False
    conflict_details: list[dict[str, Any]] = Field(default_factory=list)
    merge_commit: str | None = None
    failure_reason: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ConvergenceStatusOut(ApiModel):
    operation: ConvergenceOperationOut
    elapsed_seconds: float | None = None
    is_overdue: bool
    poll_interval_seconds: int


class ContentCommitOut(ApiModel):
    commit_id: str


class ErrorBody(ApiModel):
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(ApiModel):
    error: ErrorBody
