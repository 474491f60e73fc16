"""
branch_kernel.services.branch_state_machine -- Branch lifecycle commands.

Responsibility:
    Applies lifecycle events to a branch: submit for review, review
    decisions, reopen, archive, threshold and membership changes, and the
    branch bookkeeping commands (create, update, rebase, delete).  Every
    accepted command appends one history record.

Architecture position:
    Kernel > Services.  May import from domain/, models/, selectors/, db/.
    Authorization is delegated to ``RoleAssignmentGuard``; legal moves come
    from ``TRANSITION_TABLE``.

Invariants enforced:
    - Every mutation locks the branch row (SELECT ... FOR UPDATE) before
      reading state; the ORM version counter catches any writer that did not.
    - All guards run before the first write, so a rejected command leaves no
      partial state.
    - History sequence numbers are dense and monotonic per branch.
    - ``flush()`` only; the orchestrator owns commit and rollback.

Failure modes:
    - BranchNotFoundError, ReviewNotFoundError.
    - InvalidTransitionError / InvalidStateError for illegal moves.
    - NotOwnerError / NotAuthorizedError from the guard.
    - RoleConflictError, DuplicateAssignmentError, AssignmentNotFoundError,
      ThresholdOutOfRangeError, NoReviewersAssignedError.
    - ConcurrentOperationInProgressError when a convergence holds the branch.
"""

from __future__ import annotations

import re
from dataclasses import replace
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from branch_kernel.domain.clock import Clock, SystemClock
from branch_kernel.domain.convergence import ContentStore
from branch_kernel.domain.guard import (
    ActorContext,
    Capabilities,
    GuardAction,
    IdentityProvider,
    MemberRelation,
    RoleAssignmentGuard,
)
from branch_kernel.domain.review import (
    ACTIVE_REVIEW_STATUSES,
    Consensus,
    ReviewDecision,
    ReviewDecisionResult,
    ReviewRecord,
    ReviewStatus,
    ReviewTally,
    require_review_transition,
    tally_reviews,
)
from branch_kernel.domain.workflow import (
    ActorType,
    BranchEvent,
    BranchRecord,
    BranchState,
    TransitionCheck,
    TransitionOutcome,
    TransitionRecord,
    Visibility,
    next_state,
    require_next_state,
)
from branch_kernel.exceptions import (
    AssignmentNotFoundError,
    BranchNotFoundError,
    ConcurrentOperationInProgressError,
    InvalidStateError,
    InvalidTransitionError,
    NoReviewersAssignedError,
    ReviewNotFoundError,
)
from branch_kernel.logging_config import get_logger
from branch_kernel.models.branch import BranchMemberModel, BranchModel
from branch_kernel.models.convergence import ConvergenceOperationModel
from branch_kernel.models.review import ReviewModel
from branch_kernel.models.transition import BranchTransitionModel

logger = get_logger("services.branch_state_machine")

_EVENT_ACTIONS: dict[BranchEvent, GuardAction] = {
    BranchEvent.SUBMIT_FOR_REVIEW: GuardAction.SUBMIT_FOR_REVIEW,
    BranchEvent.APPROVE: GuardAction.REVIEW,
    BranchEvent.REQUEST_CHANGES: GuardAction.REQUEST_CHANGES,
    BranchEvent.PUBLISH: GuardAction.PUBLISH,
    BranchEvent.ARCHIVE: GuardAction.ARCHIVE,
}

# Events that only the convergence engine can apply.
_CONVERGENCE_EVENTS = frozenset({BranchEvent.PUBLISH})


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")[:60] or "branch"


class BranchStateMachine:
    """
    Lifecycle commands for branches.

    Contract:
        Each public command takes a branch id and an acting user, locks the
        branch, checks the transition table and the guard, then writes.
        Accepted history records are collected in ``emitted`` so the caller
        can hand them to the audit sink after commit.

    Guarantees:
        - Commands never commit.
        - A raised error means nothing was written by this command.
    """

    def __init__(
        self,
        session: Session,
        identity: IdentityProvider,
        content_store: ContentStore,
        clock: Clock | None = None,
        guard: RoleAssignmentGuard | None = None,
        default_required_approvals: int = 1,
        default_base_ref: str = "main",
    ) -> None:
        self._session = session
        self._identity = identity
        self._content = content_store
        self._clock = clock or SystemClock()
        self.guard = guard or RoleAssignmentGuard()
        self._default_required_approvals = default_required_approvals
        self._default_base_ref = default_base_ref
        self.emitted: list[TransitionRecord] = []

    # =================================================================
    # Loading, locking and actor resolution
    # =================================================================

    def lock_branch(self, branch_id: UUID) -> BranchModel:
        """Load the branch row under an exclusive lock."""
        model = self._session.scalars(
            select(BranchModel)
            .where(BranchModel.id == branch_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).one_or_none()
        if model is None:
            raise BranchNotFoundError(branch_id)
        return model

    def load_branch(self, branch_id: UUID) -> BranchModel:
        model = self._session.get(BranchModel, branch_id)
        if model is None:
            raise BranchNotFoundError(branch_id)
        return model

    def _active_review(self, branch_id: UUID, reviewer_id: UUID) -> ReviewModel | None:
        return self._session.scalars(
            select(ReviewModel).where(
                ReviewModel.branch_id == branch_id,
                ReviewModel.reviewer_id == reviewer_id,
                ReviewModel.status.in_([s.value for s in ACTIVE_REVIEW_STATUSES]),
            )
        ).one_or_none()

    def _active_reviews(self, branch_id: UUID) -> list[ReviewModel]:
        return list(
            self._session.scalars(
                select(ReviewModel).where(
                    ReviewModel.branch_id == branch_id,
                    ReviewModel.status.in_([s.value for s in ACTIVE_REVIEW_STATUSES]),
                )
            )
        )

    def actor_context(self, model: BranchModel, actor_id: UUID) -> ActorContext:
        member = model.relation_of(actor_id)
        return ActorContext(
            actor_id=actor_id,
            roles=frozenset(self._identity.get_actor_roles(actor_id)),
            relation=MemberRelation(member.relation) if member is not None else None,
            has_active_review=self._active_review(model.id, actor_id) is not None,
        )

    def _require_state(
        self, model: BranchModel, states: tuple[BranchState, ...], operation: str
    ) -> None:
        if BranchState(model.state) not in states:
            raise InvalidStateError(
                model.id, model.state, tuple(s.value for s in states), operation
            )

    def authorize(self, model: BranchModel, actor_id: UUID, action: GuardAction) -> BranchRecord:
        branch = model.to_dto()
        self.guard.require(self.actor_context(model, actor_id), branch, action)
        return branch

    def _tally(self, model: BranchModel) -> ReviewTally:
        rows = self._session.scalars(
            select(ReviewModel).where(
                ReviewModel.branch_id == model.id,
                ReviewModel.cycle == model.review_cycle,
            )
        )
        return tally_reviews(
            [r.to_dto() for r in rows], model.required_approvals, model.review_cycle
        )

    def conditions_for(self, model: BranchModel, event: BranchEvent) -> list[str]:
        """Satisfied/missing conditions quoted in rejection messages."""
        state = BranchState(model.state)
        if state is BranchState.REVIEW and event in (BranchEvent.PUBLISH, BranchEvent.ARCHIVE):
            return self._tally(model).missing_conditions
        if state is BranchState.DRAFT and event in (BranchEvent.APPROVE, BranchEvent.PUBLISH):
            return ["branch has not been submitted for review"]
        return []

    def _require_no_convergence(self, model: BranchModel) -> None:
        if model.active_convergence_id is not None:
            raise ConcurrentOperationInProgressError(model.id, model.active_convergence_id)

    # =================================================================
    # History
    # =================================================================

    def advance(
        self,
        model: BranchModel,
        to_state: BranchState,
        event: str,
        actor_id: UUID,
        actor_type: ActorType = ActorType.USER,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionRecord:
        """Move a locked branch to ``to_state`` and append its history record."""
        from_state = BranchState(model.state)
        now = self._clock.now()
        model.state = BranchState(to_state).value
        model.updated_at = now
        self._session.flush()

        sequence = (
            self._session.scalar(
                select(func.max(BranchTransitionModel.sequence)).where(
                    BranchTransitionModel.branch_id == model.id
                )
            )
            or 0
        ) + 1
        row = BranchTransitionModel(
            branch_id=model.id,
            sequence=sequence,
            from_state=from_state.value,
            to_state=model.state,
            event=event,
            actor_id=actor_id,
            actor_type=ActorType(actor_type).value,
            reason=reason,
            transition_metadata=metadata or {},
            created_at=now,
        )
        self._session.add(row)
        self._session.flush()

        record = row.to_dto()
        self.emitted.append(record)
        logger.info(
            "branch_transition",
            extra={
                "branch_id": str(model.id),
                "from_state": from_state.value,
                "to_state": model.state,
                "event": event,
                "actor_id": str(actor_id),
                "sequence": sequence,
            },
        )
        return record

    def _record(
        self,
        model: BranchModel,
        event: str,
        actor_id: UUID,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionRecord:
        """History entry for a change that keeps the branch in its state."""
        return self.advance(
            model, BranchState(model.state), event, actor_id, reason=reason, metadata=metadata
        )

    # =================================================================
    # Branch bookkeeping
    # =================================================================

    def create_branch(
        self,
        owner_id: UUID,
        name: str,
        base_ref: str | None = None,
        visibility: Visibility = Visibility.PRIVATE,
        required_approvals: int | None = None,
        content_ref: str | None = None,
    ) -> BranchRecord:
        required = (
            self._default_required_approvals if required_approvals is None else required_approvals
        )
        self.guard.check_threshold(required)
        base_ref = base_ref or self._default_base_ref
        branch_id = uuid4()
        content_ref = content_ref or f"branches/{_slug(name)}-{branch_id.hex[:8]}"

        base_commit = self._content.head_commit(base_ref)
        self._content.fork(content_ref, base_ref)

        now = self._clock.now()
        model = BranchModel(
            id=branch_id,
            name=name,
            owner_id=owner_id,
            base_ref=base_ref,
            content_ref=content_ref,
            base_commit=base_commit,
            state=BranchState.DRAFT.value,
            visibility=Visibility(visibility).value,
            required_approvals=required,
            review_cycle=0,
            created_at=now,
            updated_at=now,
        )
        self._session.add(model)
        self._session.flush()
        self._record(
            model,
            "CREATE",
            owner_id,
            reason="Branch created",
            metadata={"base_ref": base_ref, "base_commit": base_commit, "content_ref": content_ref},
        )
        return model.to_dto()

    def update_branch(
        self,
        branch_id: UUID,
        actor_id: UUID,
        name: str | None = None,
        visibility: Visibility | None = None,
    ) -> BranchRecord:
        model = self.lock_branch(branch_id)
        self._require_state(model, (BranchState.DRAFT,), "update")
        self.authorize(model, actor_id, GuardAction.UPDATE)

        changes: dict[str, Any] = {}
        if name is not None and name != model.name:
            changes["name"] = name
            model.name = name
        if visibility is not None and Visibility(visibility).value != model.visibility:
            changes["visibility"] = Visibility(visibility).value
            model.visibility = Visibility(visibility).value
        if changes:
            self._record(model, "UPDATE", actor_id, metadata=changes)
        return model.to_dto()

    def rebase(self, branch_id: UUID, actor_id: UUID) -> BranchRecord:
        """Move the branch base to the current head of its base ref."""
        model = self.lock_branch(branch_id)
        self._require_state(model, (BranchState.DRAFT,), "rebase")
        self.authorize(model, actor_id, GuardAction.UPDATE)

        previous = model.base_commit
        model.base_commit = self._content.refresh(model.content_ref, model.base_ref, previous)
        self._record(
            model,
            "REBASE",
            actor_id,
            metadata={"previous_base_commit": previous, "base_commit": model.base_commit},
        )
        return model.to_dto()

    def delete_branch(self, branch_id: UUID, actor_id: UUID) -> None:
        """Force-delete a draft branch.  Its history stays behind."""
        model = self.lock_branch(branch_id)
        self._require_state(model, (BranchState.DRAFT,), "delete")
        self.authorize(model, actor_id, GuardAction.DELETE)

        self._record(model, "DELETE", actor_id, reason="Branch force-deleted")
        self._session.execute(delete(ReviewModel).where(ReviewModel.branch_id == model.id))
        self._session.execute(
            delete(ConvergenceOperationModel).where(
                ConvergenceOperationModel.branch_id == model.id
            )
        )
        self._content.drop(model.content_ref)
        self._session.delete(model)
        self._session.flush()
        logger.info("branch_deleted", extra={"branch_id": str(branch_id)})

    # =================================================================
    # Content editing
    # =================================================================

    def _editable(self, branch_id: UUID, actor_id: UUID) -> BranchModel:
        model = self.lock_branch(branch_id)
        self._require_state(model, (BranchState.DRAFT,), "edit")
        self.authorize(model, actor_id, GuardAction.EDIT)
        model.updated_at = self._clock.now()
        return model

    def write_content(
        self, branch_id: UUID, actor_id: UUID, path: str, body: str, message: str = ""
    ) -> str:
        """Write one node on the branch; owner or collaborator, draft only."""
        model = self._editable(branch_id, actor_id)
        return self._content.write(model.content_ref, path, body, actor_id, message)

    def delete_content(
        self, branch_id: UUID, actor_id: UUID, path: str, message: str = ""
    ) -> str:
        model = self._editable(branch_id, actor_id)
        return self._content.delete(model.content_ref, path, actor_id, message)

    def rename_content(
        self, branch_id: UUID, actor_id: UUID, old_path: str, new_path: str, message: str = ""
    ) -> str:
        model = self._editable(branch_id, actor_id)
        return self._content.rename(model.content_ref, old_path, new_path, actor_id, message)

    # =================================================================
    # Review workflow
    # =================================================================

    def submit_for_review(
        self,
        branch_id: UUID,
        actor_id: UUID,
        reviewer_ids: list[UUID] | tuple[UUID, ...] = (),
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionRecord:
        model = self.lock_branch(branch_id)
        require_next_state(
            BranchState(model.state),
            BranchEvent.SUBMIT_FOR_REVIEW,
            self.conditions_for(model, BranchEvent.SUBMIT_FOR_REVIEW),
        )
        branch = self.authorize(model, actor_id, GuardAction.SUBMIT_FOR_REVIEW)

        assigned = list(branch.reviewer_ids)
        new_reviewers: list[UUID] = []
        for user_id in dict.fromkeys(reviewer_ids):
            if user_id in assigned:
                continue
            member = model.relation_of(user_id)
            self.guard.check_assignment(
                branch,
                user_id,
                MemberRelation.REVIEWER,
                MemberRelation(member.relation) if member is not None else None,
            )
            new_reviewers.append(user_id)

        reviewers = assigned + new_reviewers
        if not reviewers:
            raise NoReviewersAssignedError(model.id)

        now = self._clock.now()
        for user_id in new_reviewers:
            model.members.append(
                BranchMemberModel(
                    user_id=user_id,
                    relation=MemberRelation.REVIEWER.value,
                    added_by_id=actor_id,
                    created_at=now,
                )
            )

        stale = self._cancel_reviews(self._active_reviews(model.id))

        model.review_cycle += 1
        model.submitted_at = now
        model.approved_at = None
        for user_id in reviewers:
            self._session.add(
                ReviewModel(
                    branch_id=model.id,
                    reviewer_id=user_id,
                    requested_by_id=actor_id,
                    cycle=model.review_cycle,
                    status=ReviewStatus.PENDING.value,
                    automated=self.guard.is_automated(
                        frozenset(self._identity.get_actor_roles(user_id))
                    ),
                    created_at=now,
                )
            )

        return self.advance(
            model,
            BranchState.REVIEW,
            BranchEvent.SUBMIT_FOR_REVIEW.value,
            actor_id,
            reason=reason,
            metadata={
                **(metadata or {}),
                "review_cycle": model.review_cycle,
                "reviewer_ids": [str(r) for r in reviewers],
                "cancelled_stale_reviews": stale,
            },
        )

    def _move_review(self, review: ReviewModel, target: ReviewStatus) -> None:
        review.status = require_review_transition(review.id, review.status, target).value

    def _cancel_reviews(self, reviews: list[ReviewModel]) -> int:
        now = self._clock.now()
        for review in reviews:
            self._move_review(review, ReviewStatus.CANCELLED)
            review.completed_at = now
        if reviews:
            # Free the active-review slots before new rows are inserted.
            self._session.flush()
        return len(reviews)

    def start_review(self, branch_id: UUID, reviewer_id: UUID) -> ReviewRecord:
        """Mark the reviewer's pending review as in progress."""
        model = self.lock_branch(branch_id)
        self._require_state(model, (BranchState.REVIEW,), "start_review")
        review = self._active_review(model.id, reviewer_id)
        if review is None:
            raise ReviewNotFoundError(model.id, reviewer_id)
        if review.status == ReviewStatus.PENDING.value:
            self._move_review(review, ReviewStatus.IN_PROGRESS)
            review.started_at = self._clock.now()
            self._session.flush()
            logger.info(
                "review_started",
                extra={"branch_id": str(model.id), "reviewer_id": str(reviewer_id)},
            )
        return review.to_dto()

    def record_review_decision(
        self,
        branch_id: UUID,
        reviewer_id: UUID,
        decision: ReviewDecision | str,
        comment: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ReviewDecisionResult:
        decision = ReviewDecision(decision)
        model = self.lock_branch(branch_id)
        self._require_state(model, (BranchState.REVIEW,), "record_review_decision")

        review = self._active_review(model.id, reviewer_id)
        member = model.relation_of(reviewer_id)
        if review is None and member is not None and member.relation == MemberRelation.REVIEWER.value:
            raise ReviewNotFoundError(model.id, reviewer_id)
        self.authorize(model, reviewer_id, GuardAction.REVIEW)

        now = self._clock.now()
        self._move_review(review, ReviewStatus.COMPLETED)
        review.decision = decision.value
        review.comment = comment
        review.started_at = review.started_at or now
        review.completed_at = now
        self._session.flush()

        from_state = model.state
        transition: TransitionRecord | None = None
        if decision is ReviewDecision.CHANGES_REQUESTED:
            cancelled = self._cancel_reviews(self._active_reviews(model.id))
            tally = self._tally(model)
            transition = self.advance(
                model,
                BranchState.DRAFT,
                BranchEvent.REQUEST_CHANGES.value,
                reviewer_id,
                reason=comment,
                metadata={
                    **(metadata or {}),
                    "review_id": str(review.id),
                    "review_cycle": model.review_cycle,
                    "cancelled_reviews": cancelled,
                },
            )
        else:
            tally = self._tally(model)
            if tally.consensus is Consensus.APPROVED:
                model.approved_at = now
                cancelled = self._cancel_reviews(self._active_reviews(model.id))
                transition = self.advance(
                    model,
                    BranchState.APPROVED,
                    BranchEvent.APPROVE.value,
                    reviewer_id,
                    reason=comment,
                    metadata={
                        **(metadata or {}),
                        "review_id": str(review.id),
                        "review_cycle": model.review_cycle,
                        "progress": tally.progress,
                        "cancelled_reviews": cancelled,
                    },
                )
            else:
                logger.info(
                    "approval_recorded",
                    extra={
                        "branch_id": str(model.id),
                        "reviewer_id": str(reviewer_id),
                        "progress": tally.progress,
                    },
                )

        return ReviewDecisionResult(
            review=review.to_dto(),
            tally=tally,
            from_state=from_state,
            to_state=model.state,
            transition_id=transition.id if transition is not None else None,
        )

    def reopen(
        self,
        branch_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionRecord:
        """REQUEST_CHANGES on an approved branch: back to draft."""
        model = self.lock_branch(branch_id)
        self._require_state(model, (BranchState.APPROVED,), "reopen")
        self.authorize(model, actor_id, GuardAction.REQUEST_CHANGES)
        self._require_no_convergence(model)
        model.approved_at = None
        return self.advance(
            model,
            BranchState.DRAFT,
            BranchEvent.REQUEST_CHANGES.value,
            actor_id,
            reason=reason,
            metadata={**(metadata or {}), "review_cycle": model.review_cycle},
        )

    # =================================================================
    # Terminal moves and settings
    # =================================================================

    def archive(
        self,
        branch_id: UUID,
        actor_id: UUID,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionRecord:
        model = self.lock_branch(branch_id)
        require_next_state(
            BranchState(model.state),
            BranchEvent.ARCHIVE,
            self.conditions_for(model, BranchEvent.ARCHIVE),
        )
        self.authorize(model, actor_id, GuardAction.ARCHIVE)
        self._require_no_convergence(model)
        model.archived_at = self._clock.now()
        return self.advance(
            model,
            BranchState.ARCHIVED,
            BranchEvent.ARCHIVE.value,
            actor_id,
            reason=reason,
            metadata=metadata,
        )

    def set_approval_threshold(
        self, branch_id: UUID, actor_id: UUID, required_approvals: int
    ) -> BranchRecord:
        model = self.lock_branch(branch_id)
        self._require_state(model, (BranchState.DRAFT,), "set_approval_threshold")
        self.authorize(model, actor_id, GuardAction.SET_THRESHOLD)
        self.guard.check_threshold(required_approvals)

        previous = model.required_approvals
        model.required_approvals = required_approvals
        self._record(
            model,
            "SET_APPROVAL_THRESHOLD",
            actor_id,
            metadata={"previous": previous, "required_approvals": required_approvals},
        )
        return model.to_dto()

    def add_reviewer(self, branch_id: UUID, actor_id: UUID, user_id: UUID) -> BranchRecord:
        return self._add_member(branch_id, actor_id, user_id, MemberRelation.REVIEWER)

    def add_collaborator(self, branch_id: UUID, actor_id: UUID, user_id: UUID) -> BranchRecord:
        return self._add_member(branch_id, actor_id, user_id, MemberRelation.COLLABORATOR)

    def remove_reviewer(self, branch_id: UUID, actor_id: UUID, user_id: UUID) -> BranchRecord:
        return self._remove_member(branch_id, actor_id, user_id, MemberRelation.REVIEWER)

    def remove_collaborator(self, branch_id: UUID, actor_id: UUID, user_id: UUID) -> BranchRecord:
        return self._remove_member(branch_id, actor_id, user_id, MemberRelation.COLLABORATOR)

    def _add_member(
        self, branch_id: UUID, actor_id: UUID, user_id: UUID, relation: MemberRelation
    ) -> BranchRecord:
        model = self.lock_branch(branch_id)
        self._require_state(model, (BranchState.DRAFT,), f"add_{relation.value}")
        branch = self.authorize(model, actor_id, GuardAction.MANAGE_MEMBERS)
        member = model.relation_of(user_id)
        self.guard.check_assignment(
            branch,
            user_id,
            relation,
            MemberRelation(member.relation) if member is not None else None,
        )
        model.members.append(
            BranchMemberModel(
                user_id=user_id,
                relation=relation.value,
                added_by_id=actor_id,
                created_at=self._clock.now(),
            )
        )
        self._record(
            model,
            f"ADD_{relation.name}",
            actor_id,
            metadata={"user_id": str(user_id)},
        )
        return model.to_dto()

    def _remove_member(
        self, branch_id: UUID, actor_id: UUID, user_id: UUID, relation: MemberRelation
    ) -> BranchRecord:
        model = self.lock_branch(branch_id)
        self._require_state(model, (BranchState.DRAFT,), f"remove_{relation.value}")
        self.authorize(model, actor_id, GuardAction.MANAGE_MEMBERS)
        member = model.relation_of(user_id)
        if member is None or member.relation != relation.value:
            raise AssignmentNotFoundError(model.id, user_id, relation.value)
        model.members.remove(member)
        self._record(
            model,
            f"REMOVE_{relation.name}",
            actor_id,
            metadata={"user_id": str(user_id)},
        )
        return model.to_dto()

    # =================================================================
    # Generic event entry and dry runs
    # =================================================================

    def apply_event(
        self,
        branch_id: UUID,
        actor_id: UUID,
        event: BranchEvent | str,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionOutcome:
        """Apply ``event`` through the matching command.

        PUBLISH is not handled here; it needs the convergence engine.
        """
        event = BranchEvent(event)
        model = self.lock_branch(branch_id)
        from_state = BranchState(model.state)
        require_next_state(from_state, event, self.conditions_for(model, event))

        if event in _CONVERGENCE_EVENTS:
            raise InvalidTransitionError(
                from_state.value,
                event.value,
                reason="publishing runs through the convergence engine",
            )

        if event is BranchEvent.SUBMIT_FOR_REVIEW:
            record = self.submit_for_review(branch_id, actor_id, (), reason, metadata)
        elif event is BranchEvent.ARCHIVE:
            record = self.archive(branch_id, actor_id, reason, metadata)
        elif event is BranchEvent.REQUEST_CHANGES and from_state is BranchState.APPROVED:
            record = self.reopen(branch_id, actor_id, reason, metadata)
        else:
            decision = (
                ReviewDecision.APPROVED
                if event is BranchEvent.APPROVE
                else ReviewDecision.CHANGES_REQUESTED
            )
            result = self.record_review_decision(
                branch_id, actor_id, decision, reason, metadata
            )
            return TransitionOutcome.accepted(
                from_state, BranchState(result.to_state), result.transition_id
            )

        return TransitionOutcome.accepted(from_state, record.to_state, record.id)

    def can_transition(
        self, branch_id: UUID, actor_id: UUID, event: BranchEvent | str
    ) -> TransitionCheck:
        """Dry run of :meth:`apply_event`.  Never writes."""
        event = BranchEvent(event)
        model = self.load_branch(branch_id)
        state = BranchState(model.state)
        if next_state(state, event) is None:
            rejection = InvalidTransitionError(
                state.value, event.value, conditions=self.conditions_for(model, event)
            )
            return TransitionCheck(False, str(rejection))

        branch = model.to_dto()
        actor = self.actor_context(model, actor_id)
        authorization = self.guard.authorize(actor, branch, _EVENT_ACTIONS[event])
        if not authorization.allowed:
            return TransitionCheck(False, authorization.reason)

        if event is BranchEvent.SUBMIT_FOR_REVIEW and not branch.reviewer_ids:
            return TransitionCheck(False, "no reviewers assigned")
        if model.active_convergence_id is not None and event is not BranchEvent.APPROVE:
            return TransitionCheck(
                False, f"convergence operation {model.active_convergence_id} is in flight"
            )
        if event is BranchEvent.APPROVE:
            tally = self._tally(model)
            return TransitionCheck(True, tally.progress)
        return TransitionCheck(True)

    def capabilities(self, branch_id: UUID, actor_id: UUID) -> Capabilities:
        model = self.load_branch(branch_id)
        capabilities = self.guard.capabilities(
            self.actor_context(model, actor_id), model.to_dto()
        )
        if model.active_convergence_id is not None:
            capabilities = replace(
                capabilities, can_publish=False, can_archive=False, can_request_changes=False
            )
        return capabilities
