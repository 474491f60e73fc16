"""
branch_kernel.services.convergence_engine -- Validate and merge approved branches.

Responsibility:
    Runs the validation battery, manages convergence operations through
    pending -> in_progress -> succeeded/failed (or cancelled), and performs
    the merge through the ``ContentStore``.  A successful merge publishes the
    branch, and optionally archives it, via the branch state machine.

Architecture position:
    Kernel > Services.  Uses ``BranchStateMachine`` for branch locking,
    authorization and history; never writes branch state on its own.

Invariants enforced:
    - At most one active operation per branch: the branch in-flight flag
      (``active_convergence_id``) under the branch lock, with the partial
      unique index as backstop.
    - ``execute`` is split in two units by the orchestrator: ``claim`` is a
      compare-and-set pending -> in_progress that commits on its own;
      ``complete`` validates, merges and publishes in one transaction.  A
      crash inside ``complete`` leaves the operation in_progress with the
      target untouched.
    - Conflicts finish the operation as ``failed``; the branch stays approved.
    - ``flush()`` only.

Failure modes:
    - ConvergenceOperationNotFoundError, BranchNotFoundError.
    - ConcurrentOperationInProgressError for a second create or execute.
    - InvalidConvergenceTransitionError for commands on finished operations.
    - NotInitiatorError when someone else cancels.
    - StaleOperationError when resuming an operation that is still live.
"""

from __future__ import annotations

from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from branch_kernel.domain.clock import Clock, SystemClock
from branch_kernel.domain.convergence import (
    TERMINAL_CONVERGENCE_STATUSES,
    ContentStore,
    ConvergenceOperationRecord,
    ConvergenceStatus,
    ValidationReport,
    build_validation_report,
)
from branch_kernel.domain.guard import GuardAction
from branch_kernel.domain.workflow import ActorType, BranchEvent, BranchState, require_next_state
from branch_kernel.exceptions import (
    ConcurrentOperationInProgressError,
    ConflictDetectedError,
    ConvergenceOperationNotFoundError,
    InvalidConvergenceTransitionError,
    NotInitiatorError,
    StaleOperationError,
)
from branch_kernel.logging_config import get_logger
from branch_kernel.models.branch import BranchModel
from branch_kernel.models.convergence import ConvergenceOperationModel
from branch_kernel.services.branch_state_machine import BranchStateMachine

logger = get_logger("services.convergence_engine")


class ConvergenceEngine:
    """
    Convergence (publish) operations for approved branches.

    Contract:
        Shares the session of the ``BranchStateMachine`` it is given.  Every
        method runs inside the caller's transaction.

    Guarantees:
        - ``validate`` never writes and returns equal reports for equal
          content.
        - ``complete`` either merges and publishes, or records a failure, or
          (for a cancelled operation) does nothing.
    """

    def __init__(
        self,
        session: Session,
        machine: BranchStateMachine,
        content_store: ContentStore,
        clock: Clock | None = None,
        stale_after_seconds: int = 300,
        archive_after_publish: bool = True,
    ) -> None:
        self._session = session
        self._machine = machine
        self._content = content_store
        self._clock = clock or SystemClock()
        self._stale_after_seconds = stale_after_seconds
        self._archive_after_publish = archive_after_publish

    # -----------------------------------------------------------------
    # Validation
    # -----------------------------------------------------------------

    def _report(self, branch: BranchModel) -> ValidationReport:
        target_head = self._content.head_commit(branch.base_ref)
        if target_head == branch.base_commit:
            target_changes = ()
        else:
            target_changes = self._content.target_changes(branch.base_ref, branch.base_commit)
        return build_validation_report(
            branch.to_dto(),
            self._content.branch_changes(branch.content_ref),
            target_changes,
            target_head,
        )

    def validate(self, branch_id: UUID) -> ValidationReport:
        """Run the validation battery without writing anything."""
        report = self._report(self._machine.load_branch(branch_id))
        logger.info(
            "convergence_validated",
            extra={
                "branch_id": str(branch_id),
                "is_valid": report.is_valid,
                "failed_checks": [r.check.value for r in report.failed_checks],
                "conflicts": len(report.conflicts),
            },
        )
        return report

    def require_clean(self, branch_id: UUID) -> ValidationReport:
        """Validate, raising ``ConflictDetectedError`` if any conflict was found.

        Failed non-conflict checks (say, an unapproved branch) are left in the
        report for the caller to read.
        """
        report = self.validate(branch_id)
        if report.conflicts:
            raise ConflictDetectedError(
                branch_id, [conflict.to_dict() for conflict in report.conflicts]
            )
        return report

    # -----------------------------------------------------------------
    # Operation lifecycle
    # -----------------------------------------------------------------

    def _operation(self, operation_id: UUID, for_update: bool = False) -> ConvergenceOperationModel:
        stmt = select(ConvergenceOperationModel).where(
            ConvergenceOperationModel.id == operation_id
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        operation = self._session.scalars(stmt).one_or_none()
        if operation is None:
            raise ConvergenceOperationNotFoundError(operation_id)
        return operation

    def create(self, branch_id: UUID, publisher_id: UUID) -> ConvergenceOperationRecord:
        branch = self._machine.lock_branch(branch_id)
        require_next_state(
            BranchState(branch.state),
            BranchEvent.PUBLISH,
            self._machine.conditions_for(branch, BranchEvent.PUBLISH),
        )
        self._machine.authorize(branch, publisher_id, GuardAction.PUBLISH)
        if branch.active_convergence_id is not None:
            raise ConcurrentOperationInProgressError(branch.id, branch.active_convergence_id)

        now = self._clock.now()
        operation = ConvergenceOperationModel(
            id=uuid4(),
            branch_id=branch.id,
            publisher_id=publisher_id,
            status=ConvergenceStatus.PENDING.value,
            target_ref=branch.base_ref,
            validation_results=[],
            conflict_detected=False,
            conflict_details=[],
            created_at=now,
        )
        self._session.add(operation)
        try:
            self._session.flush()
        except IntegrityError as exc:
            raise ConcurrentOperationInProgressError(branch.id) from exc

        branch.active_convergence_id = operation.id
        branch.updated_at = now
        self._session.flush()

        logger.info(
            "convergence_created",
            extra={
                "branch_id": str(branch.id),
                "operation_id": str(operation.id),
                "target_ref": operation.target_ref,
            },
        )
        return operation.to_dto()

    def claim(self, operation_id: UUID) -> UUID:
        """Move a pending operation to in_progress; return the claim token.

        Runs in its own transaction so the claim is visible to every other
        worker before the merge starts.
        """
        operation = self._operation(operation_id)
        status = ConvergenceStatus(operation.status)
        if status in (
            ConvergenceStatus.IN_PROGRESS,
            ConvergenceStatus.SUCCEEDED,
            ConvergenceStatus.FAILED,
        ):
            # Another execute got here first.
            raise ConcurrentOperationInProgressError(operation.branch_id, operation.id)
        if status is not ConvergenceStatus.PENDING:
            raise InvalidConvergenceTransitionError(
                operation.id, status.value, ConvergenceStatus.IN_PROGRESS.value
            )

        token = uuid4()
        result = self._session.execute(
            update(ConvergenceOperationModel)
            .where(
                ConvergenceOperationModel.id == operation_id,
                ConvergenceOperationModel.status == ConvergenceStatus.PENDING.value,
            )
            .values(
                status=ConvergenceStatus.IN_PROGRESS.value,
                claim_token=token,
                started_at=self._clock.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentOperationInProgressError(operation.branch_id, operation.id)

        logger.info(
            "convergence_claimed",
            extra={"operation_id": str(operation_id), "branch_id": str(operation.branch_id)},
        )
        return token

    def resume(self, operation_id: UUID, actor_id: UUID) -> UUID:
        """Re-claim an in_progress operation abandoned by a crashed worker."""
        operation = self._operation(operation_id)
        status = ConvergenceStatus(operation.status)
        if status is not ConvergenceStatus.IN_PROGRESS:
            raise InvalidConvergenceTransitionError(
                operation.id, status.value, ConvergenceStatus.IN_PROGRESS.value
            )
        branch = self._machine.load_branch(operation.branch_id)
        self._machine.authorize(branch, actor_id, GuardAction.PUBLISH)

        now = self._clock.now()
        age = (now - operation.started_at).total_seconds() if operation.started_at else 0.0
        if age < self._stale_after_seconds:
            raise StaleOperationError(operation.id, age, self._stale_after_seconds)

        token = uuid4()
        result = self._session.execute(
            update(ConvergenceOperationModel)
            .where(
                ConvergenceOperationModel.id == operation_id,
                ConvergenceOperationModel.status == ConvergenceStatus.IN_PROGRESS.value,
                ConvergenceOperationModel.claim_token == operation.claim_token,
            )
            .values(claim_token=token, started_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentOperationInProgressError(operation.branch_id, operation.id)

        logger.warning(
            "convergence_resumed",
            extra={
                "operation_id": str(operation_id),
                "branch_id": str(operation.branch_id),
                "stale_seconds": age,
                "actor_id": str(actor_id),
            },
        )
        return token

    def complete(self, operation_id: UUID, claim_token: UUID) -> ConvergenceOperationRecord:
        """Validate, merge and publish under the branch, operation and target locks."""
        branch_id = self._operation(operation_id).branch_id
        branch = self._machine.lock_branch(branch_id)
        operation = self._operation(operation_id, for_update=True)
        self._content.lock_ref(operation.target_ref)

        status = ConvergenceStatus(operation.status)
        if status is ConvergenceStatus.CANCELLED:
            logger.info(
                "convergence_cancelled_before_merge",
                extra={"operation_id": str(operation_id), "branch_id": str(branch_id)},
            )
            return operation.to_dto()
        if status is not ConvergenceStatus.IN_PROGRESS or operation.claim_token != claim_token:
            raise ConcurrentOperationInProgressError(branch_id, operation.id)

        report = self._report(branch)
        now = self._clock.now()
        operation.validation_results = [r.to_dict() for r in report.results]
        operation.conflict_details = [c.to_dict() for c in report.conflicts]
        operation.conflict_detected = bool(report.conflicts)

        if not report.is_valid:
            operation.status = ConvergenceStatus.FAILED.value
            operation.failure_reason = "; ".join(r.message for r in report.failed_checks)
            operation.completed_at = now
            branch.active_convergence_id = None
            branch.updated_at = now
            self._session.flush()
            logger.warning(
                "convergence_failed",
                extra={
                    "operation_id": str(operation_id),
                    "branch_id": str(branch_id),
                    "failed_checks": [r.check.value for r in report.failed_checks],
                    "conflicts": operation.conflict_details,
                },
            )
            return operation.to_dto()

        merge_commit = self._content.merge(
            branch.content_ref,
            operation.target_ref,
            operation.publisher_id,
            f"Converge branch {branch.name} ({branch.id})",
        )
        operation.status = ConvergenceStatus.SUCCEEDED.value
        operation.merge_commit = merge_commit
        operation.completed_at = now
        self._session.flush()

        branch.active_convergence_id = None
        branch.published_at = now
        self._machine.advance(
            branch,
            BranchState.PUBLISHED,
            BranchEvent.PUBLISH.value,
            operation.publisher_id,
            metadata={"operation_id": str(operation.id), "merge_commit": merge_commit},
        )
        if self._archive_after_publish:
            branch.archived_at = now
            self._machine.advance(
                branch,
                BranchState.ARCHIVED,
                BranchEvent.ARCHIVE.value,
                operation.publisher_id,
                actor_type=ActorType.SYSTEM,
                reason="Archived after publish",
                metadata={"operation_id": str(operation.id)},
            )

        logger.info(
            "convergence_succeeded",
            extra={
                "operation_id": str(operation_id),
                "branch_id": str(branch_id),
                "merge_commit": merge_commit,
                "branch_state": branch.state,
            },
        )
        return operation.to_dto()

    def cancel(self, operation_id: UUID, actor_id: UUID) -> ConvergenceOperationRecord:
        branch_id = self._operation(operation_id).branch_id
        branch = self._machine.lock_branch(branch_id)
        operation = self._operation(operation_id, for_update=True)

        status = ConvergenceStatus(operation.status)
        if status in TERMINAL_CONVERGENCE_STATUSES:
            raise InvalidConvergenceTransitionError(
                operation.id, status.value, ConvergenceStatus.CANCELLED.value
            )
        if actor_id != operation.publisher_id:
            raise NotInitiatorError(actor_id, operation.id)

        now = self._clock.now()
        operation.status = ConvergenceStatus.CANCELLED.value
        operation.failure_reason = f"cancelled while {status.value}"
        operation.completed_at = now
        if branch.active_convergence_id == operation.id:
            branch.active_convergence_id = None
            branch.updated_at = now
        self._session.flush()

        logger.info(
            "convergence_cancelled",
            extra={
                "operation_id": str(operation_id),
                "branch_id": str(branch_id),
                "previous_status": status.value,
            },
        )
        return operation.to_dto()
