"""
branch_services.workflow_orchestrator -- Transaction boundaries for branch commands.

Responsibility:
    Owns the unit of work for every command: opens a session, wires the
    kernel services for it exactly once, commits or rolls back, logs the
    outcome with its duration, and hands committed history records to the
    audit sink.  This is the only place in the system that commits.

Architecture position:
    Services -- above ``branch_kernel`` and ``branch_config``, below
    ``branch_api``.  ``BranchServices`` is the per-session DI container;
    ``BranchWorkflowOrchestrator`` drives it one command at a time.

Invariants enforced:
    - One command, one transaction.  ``execute`` and ``resume`` are the
      exceptions by construction: the claim commits on its own so every
      other worker sees it before the merge starts.
    - Audit delivery happens after commit; a rolled-back command never
      reaches the sink.
    - ``StaleDataError`` from the ORM version counter surfaces as
      ``OptimisticLockError``.
    - Read-only commands open a read-only transaction and never commit.

Failure modes:
    - Every ``BranchKernelError`` from the kernel propagates unchanged after
      rollback, except in ``apply_event`` which reports it as a rejected
      ``TransitionOutcome``.
    - Database errors propagate after rollback.

Usage:
    from branch_services.workflow_orchestrator import BranchWorkflowOrchestrator

    orchestrator = BranchWorkflowOrchestrator.from_config(config, identity)
    orchestrator.bootstrap()
    branch = orchestrator.create_branch(owner_id, "Quarterly update")
    orchestrator.submit_for_review(branch.id, owner_id, [reviewer_id])
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from branch_config.bridges import build_role_policy, engine_options
from branch_config.schema import EngineConfig
from branch_kernel.db import create_tables, get_session_factory, init_engine_from_url, mark_read_only
from branch_kernel.domain.clock import Clock, SystemClock
from branch_kernel.domain.convergence import (
    ConvergenceOperationRecord,
    ConvergenceStatus,
    ConvergenceStatusReport,
    ValidationReport,
)
from branch_kernel.domain.guard import Capabilities, IdentityProvider, RoleAssignmentGuard
from branch_kernel.domain.review import (
    ReviewCycleSummary,
    ReviewDecision,
    ReviewDecisionResult,
    ReviewRecord,
    ReviewStats,
    ReviewTally,
)
from branch_kernel.domain.workflow import (
    BranchEvent,
    BranchRecord,
    BranchState,
    TransitionCheck,
    TransitionOutcome,
    TransitionRecord,
    Visibility,
)
from branch_kernel.exceptions import BranchKernelError, NotFoundError, OptimisticLockError
from branch_kernel.logging_config import LogContext, get_logger
from branch_kernel.selectors import BranchSelector, ConvergenceSelector, ReviewSelector
from branch_kernel.services import BranchStateMachine, ConvergenceEngine, SqlContentStore
from branch_services.audit import AuditSink, LoggingAuditSink

logger = get_logger("services.workflow_orchestrator")


@dataclass(frozen=True)
class SubmissionResult:
    """What ``submit_for_review`` hands back: the history record and the branch after it."""

    transition: TransitionRecord
    branch: BranchRecord


class BranchServices:
    """Per-session factory for kernel services.

    Contract:
        Receives a Session, an IdentityProvider, the EngineConfig and a
        Clock.  Constructs every kernel service exactly once, in dependency
        order, and exposes them as public attributes.

    Non-goals:
        - Does NOT manage transaction boundaries.
    """

    def __init__(
        self,
        session: Session,
        identity: IdentityProvider,
        config: EngineConfig,
        clock: Clock,
    ) -> None:
        self.session = session

        # Content first; the state machine forks refs through it.
        self.content_store = SqlContentStore(session, clock)
        self.guard = RoleAssignmentGuard(build_role_policy(config))
        self.machine = BranchStateMachine(
            session,
            identity,
            self.content_store,
            clock=clock,
            guard=self.guard,
            default_required_approvals=config.approvals.default_required,
            default_base_ref=config.convergence.default_target_ref,
        )
        self.convergence = ConvergenceEngine(
            session,
            self.machine,
            self.content_store,
            clock=clock,
            stale_after_seconds=config.convergence.stale_after_seconds,
            archive_after_publish=config.convergence.archive_after_publish,
        )

        # Read side
        self.branches = BranchSelector(session)
        self.reviews = ReviewSelector(session)
        self.operations = ConvergenceSelector(session)


class BranchWorkflowOrchestrator:
    """Runs branch commands, one unit of work each.

    Contract:
        Every public method is one command.  Mutating commands commit on
        success; read commands never write.  Returned values are frozen
        DTOs, safe to use after the session closes.

    Guarantees:
        - A raised error means the command's transaction was rolled back.
        - Audit records are delivered in acceptance order, after commit.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        identity: IdentityProvider,
        config: EngineConfig,
        clock: Clock | None = None,
        audit_sink: AuditSink | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._identity = identity
        self._config = config
        self._clock = clock or SystemClock()
        self._audit = audit_sink or LoggingAuditSink()

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        identity: IdentityProvider,
        clock: Clock | None = None,
        audit_sink: AuditSink | None = None,
    ) -> BranchWorkflowOrchestrator:
        """Initialize the module-level engine from ``config`` and wrap its session factory."""
        init_engine_from_url(config.database.url, **engine_options(config))
        return cls(get_session_factory(), identity, config, clock, audit_sink)

    @property
    def config(self) -> EngineConfig:
        return self._config

    # =================================================================
    # Unit of work
    # =================================================================

    @contextmanager
    def _unit_of_work(
        self,
        command: str,
        actor_id: UUID | None = None,
        branch_id: UUID | None = None,
        operation_id: UUID | None = None,
        read_only: bool = False,
    ) -> Iterator[BranchServices]:
        correlation_id = LogContext.get_all().get("correlation_id") or str(uuid4())
        with LogContext.bind(
            correlation_id=correlation_id,
            actor_id=actor_id,
            branch_id=branch_id,
            operation_id=operation_id,
            command=command,
        ):
            session = self._session_factory()
            if read_only:
                mark_read_only(session)
            services = BranchServices(session, self._identity, self._config, self._clock)
            t0 = time.monotonic()
            try:
                yield services
                if read_only:
                    session.rollback()
                else:
                    session.commit()
            except StaleDataError as exc:
                session.rollback()
                logger.error(
                    "command_failed",
                    extra={"duration_ms": round((time.monotonic() - t0) * 1000, 2)},
                    exc_info=True,
                )
                raise OptimisticLockError("branch", str(branch_id or operation_id)) from exc
            except BranchKernelError as exc:
                session.rollback()
                logger.warning(
                    "command_rejected",
                    extra={
                        "error_code": exc.code,
                        "error": str(exc),
                        "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                    },
                )
                raise
            except Exception:
                session.rollback()
                logger.error(
                    "command_failed",
                    extra={"duration_ms": round((time.monotonic() - t0) * 1000, 2)},
                    exc_info=True,
                )
                raise
            finally:
                session.close()

            if not read_only:
                logger.info(
                    "command_completed",
                    extra={
                        "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                        "transitions": len(services.machine.emitted),
                    },
                )
                for record in services.machine.emitted:
                    self._audit.record_transition(record)

    def bootstrap(self) -> None:
        """Create the tables and the default target ref."""
        with self._unit_of_work("bootstrap") as svc:
            create_tables(svc.session.get_bind())
            svc.content_store.ensure_ref(self._config.convergence.default_target_ref)

    # =================================================================
    # Branches
    # =================================================================

    def create_branch(
        self,
        owner_id: UUID,
        name: str,
        base_ref: str | None = None,
        visibility: Visibility | str = Visibility.PRIVATE,
        required_approvals: int | None = None,
        reviewer_ids: list[UUID] | tuple[UUID, ...] = (),
        collaborator_ids: list[UUID] | tuple[UUID, ...] = (),
    ) -> BranchRecord:
        with self._unit_of_work("create_branch", actor_id=owner_id) as svc:
            branch = svc.machine.create_branch(
                owner_id,
                name,
                base_ref=base_ref,
                visibility=Visibility(visibility),
                required_approvals=required_approvals,
            )
            for user_id in reviewer_ids:
                branch = svc.machine.add_reviewer(branch.id, owner_id, user_id)
            for user_id in collaborator_ids:
                branch = svc.machine.add_collaborator(branch.id, owner_id, user_id)
            return branch

    def get_branch(self, branch_id: UUID) -> BranchRecord:
        with self._unit_of_work("get_branch", branch_id=branch_id, read_only=True) as svc:
            return svc.branches.get(branch_id)

    def list_branches(
        self,
        owner_id: UUID | None = None,
        state: BranchState | str | None = None,
        member_id: UUID | None = None,
    ) -> list[BranchRecord]:
        with self._unit_of_work("list_branches", read_only=True) as svc:
            return svc.branches.list_branches(
                owner_id=owner_id,
                state=BranchState(state) if state is not None else None,
                member_id=member_id,
            )

    def update_branch(
        self,
        branch_id: UUID,
        actor_id: UUID,
        name: str | None = None,
        visibility: Visibility | str | None = None,
    ) -> BranchRecord:
        with self._unit_of_work("update_branch", actor_id, branch_id) as svc:
            return svc.machine.update_branch(
                branch_id,
                actor_id,
                name=name,
                visibility=Visibility(visibility) if visibility is not None else None,
            )

    def rebase(self, branch_id: UUID, actor_id: UUID) -> BranchRecord:
        with self._unit_of_work("rebase", actor_id, branch_id) as svc:
            return svc.machine.rebase(branch_id, actor_id)

    def delete_branch(self, branch_id: UUID, actor_id: UUID) -> None:
        with self._unit_of_work("delete_branch", actor_id, branch_id) as svc:
            svc.machine.delete_branch(branch_id, actor_id)

    # =================================================================
    # Content
    # =================================================================

    def write_content(
        self, branch_id: UUID, actor_id: UUID, path: str, body: str, message: str = ""
    ) -> str:
        with self._unit_of_work("write_content", actor_id, branch_id) as svc:
            return svc.machine.write_content(branch_id, actor_id, path, body, message)

    def delete_content(
        self, branch_id: UUID, actor_id: UUID, path: str, message: str = ""
    ) -> str:
        with self._unit_of_work("delete_content", actor_id, branch_id) as svc:
            return svc.machine.delete_content(branch_id, actor_id, path, message)

    def rename_content(
        self, branch_id: UUID, actor_id: UUID, old_path: str, new_path: str, message: str = ""
    ) -> str:
        with self._unit_of_work("rename_content", actor_id, branch_id) as svc:
            return svc.machine.rename_content(branch_id, actor_id, old_path, new_path, message)

    def content_snapshot(self, branch_id: UUID) -> dict[str, str]:
        with self._unit_of_work("content_snapshot", branch_id=branch_id, read_only=True) as svc:
            return svc.content_store.snapshot(svc.branches.get(branch_id).content_ref)

    def write_ref_content(
        self, ref: str, path: str, body: str, author_id: UUID, message: str = ""
    ) -> str:
        """Commit straight onto a shared ref, outside any branch.

        Maintenance entry for seeding a baseline or mirroring edits made by
        another system.
        """
        with self._unit_of_work("write_ref_content", actor_id=author_id) as svc:
            return svc.content_store.write(ref, path, body, author_id, message)

    def ref_snapshot(self, ref: str) -> dict[str, str]:
        with self._unit_of_work("ref_snapshot", read_only=True) as svc:
            return svc.content_store.snapshot(ref)

    # =================================================================
    # Review workflow
    # =================================================================

    def submit_for_review(
        self,
        branch_id: UUID,
        actor_id: UUID,
        reviewer_ids: list[UUID] | tuple[UUID, ...] = (),
        reason: str | None = None,
    ) -> SubmissionResult:
        with self._unit_of_work("submit_for_review", actor_id, branch_id) as svc:
            transition = svc.machine.submit_for_review(
                branch_id, actor_id, reviewer_ids, reason=reason
            )
            return SubmissionResult(transition=transition, branch=svc.branches.get(branch_id))

    def start_review(self, branch_id: UUID, reviewer_id: UUID) -> ReviewRecord:
        with self._unit_of_work("start_review", reviewer_id, branch_id) as svc:
            return svc.machine.start_review(branch_id, reviewer_id)

    def record_review_decision(
        self,
        branch_id: UUID,
        reviewer_id: UUID,
        decision: ReviewDecision | str,
        comment: str | None = None,
    ) -> ReviewDecisionResult:
        with self._unit_of_work("record_review_decision", reviewer_id, branch_id) as svc:
            return svc.machine.record_review_decision(branch_id, reviewer_id, decision, comment)

    def reopen(self, branch_id: UUID, actor_id: UUID, reason: str | None = None) -> TransitionRecord:
        with self._unit_of_work("reopen", actor_id, branch_id) as svc:
            return svc.machine.reopen(branch_id, actor_id, reason)

    def archive(self, branch_id: UUID, actor_id: UUID, reason: str | None = None) -> TransitionRecord:
        with self._unit_of_work("archive", actor_id, branch_id) as svc:
            return svc.machine.archive(branch_id, actor_id, reason)

    def set_approval_threshold(
        self, branch_id: UUID, actor_id: UUID, required_approvals: int
    ) -> BranchRecord:
        with self._unit_of_work("set_approval_threshold", actor_id, branch_id) as svc:
            return svc.machine.set_approval_threshold(branch_id, actor_id, required_approvals)

    def add_reviewer(self, branch_id: UUID, actor_id: UUID, user_id: UUID) -> BranchRecord:
        with self._unit_of_work("add_reviewer", actor_id, branch_id) as svc:
            return svc.machine.add_reviewer(branch_id, actor_id, user_id)

    def remove_reviewer(self, branch_id: UUID, actor_id: UUID, user_id: UUID) -> BranchRecord:
        with self._unit_of_work("remove_reviewer", actor_id, branch_id) as svc:
            return svc.machine.remove_reviewer(branch_id, actor_id, user_id)

    def add_collaborator(self, branch_id: UUID, actor_id: UUID, user_id: UUID) -> BranchRecord:
        with self._unit_of_work("add_collaborator", actor_id, branch_id) as svc:
            return svc.machine.add_collaborator(branch_id, actor_id, user_id)

    def remove_collaborator(self, branch_id: UUID, actor_id: UUID, user_id: UUID) -> BranchRecord:
        with self._unit_of_work("remove_collaborator", actor_id, branch_id) as svc:
            return svc.machine.remove_collaborator(branch_id, actor_id, user_id)

    # =================================================================
    # Generic transitions
    # =================================================================

    def apply_event(
        self,
        branch_id: UUID,
        actor_id: UUID,
        event: BranchEvent | str,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionOutcome:
        """Apply ``event`` and report the outcome instead of raising.

        A missing branch still raises ``BranchNotFoundError``.
        """
        event = BranchEvent(event)
        from_state = self.get_branch(branch_id).state
        try:
            if event is BranchEvent.PUBLISH:
                return self._publish_outcome(branch_id, actor_id, from_state)
            with self._unit_of_work("apply_event", actor_id, branch_id) as svc:
                return svc.machine.apply_event(branch_id, actor_id, event, reason, metadata)
        except NotFoundError:
            raise
        except BranchKernelError as exc:
            return TransitionOutcome.rejected(from_state, str(exc), exc.code)

    def _publish_outcome(
        self, branch_id: UUID, actor_id: UUID, from_state: BranchState
    ) -> TransitionOutcome:
        operation = self.publish(branch_id, actor_id)
        if operation.status is not ConvergenceStatus.SUCCEEDED:
            return TransitionOutcome.rejected(
                from_state,
                operation.failure_reason or f"convergence finished as {operation.status.value}",
                "CONVERGENCE_FAILED",
            )
        published = next(
            r
            for r in self.history(branch_id)
            if r.event == BranchEvent.PUBLISH.value
            and r.metadata.get("operation_id") == str(operation.id)
        )
        return TransitionOutcome.accepted(from_state, published.to_state, published.id)

    def can_transition(
        self, branch_id: UUID, actor_id: UUID, event: BranchEvent | str
    ) -> TransitionCheck:
        with self._unit_of_work("can_transition", actor_id, branch_id, read_only=True) as svc:
            return svc.machine.can_transition(branch_id, actor_id, event)

    def capabilities(self, branch_id: UUID, actor_id: UUID) -> Capabilities:
        with self._unit_of_work("capabilities", actor_id, branch_id, read_only=True) as svc:
            return svc.machine.capabilities(branch_id, actor_id)

    # =================================================================
    # Read side
    # =================================================================

    def history(self, branch_id: UUID) -> list[TransitionRecord]:
        with self._unit_of_work("history", branch_id=branch_id, read_only=True) as svc:
            return svc.branches.history(branch_id)

    def tally(self, branch_id: UUID) -> ReviewTally:
        with self._unit_of_work("tally", branch_id=branch_id, read_only=True) as svc:
            return svc.reviews.tally(branch_id)

    def reviews(self, branch_id: UUID, cycle: int | None = None) -> list[ReviewRecord]:
        with self._unit_of_work("reviews", branch_id=branch_id, read_only=True) as svc:
            return svc.reviews.reviews(branch_id, cycle)

    def review_cycles(self, branch_id: UUID) -> list[ReviewCycleSummary]:
        with self._unit_of_work("review_cycles", branch_id=branch_id, read_only=True) as svc:
            return svc.reviews.review_cycles(branch_id)

    def review_stats(self, branch_id: UUID) -> ReviewStats:
        with self._unit_of_work("review_stats", branch_id=branch_id, read_only=True) as svc:
            return svc.reviews.stats(branch_id)

    def pending_reviews(self, reviewer_id: UUID) -> list[ReviewRecord]:
        with self._unit_of_work("pending_reviews", actor_id=reviewer_id, read_only=True) as svc:
            return svc.reviews.pending_for_reviewer(reviewer_id)

    # =================================================================
    # Convergence
    # =================================================================

    def validate(self, branch_id: UUID, require_clean: bool = False) -> ValidationReport:
        with self._unit_of_work("validate", branch_id=branch_id, read_only=True) as svc:
            if require_clean:
                return svc.convergence.require_clean(branch_id)
            return svc.convergence.validate(branch_id)

    def create_convergence(self, branch_id: UUID, publisher_id: UUID) -> ConvergenceOperationRecord:
        with self._unit_of_work("create_convergence", publisher_id, branch_id) as svc:
            return svc.convergence.create(branch_id, publisher_id)

    def execute(
        self, operation_id: UUID, actor_id: UUID | None = None
    ) -> ConvergenceOperationRecord:
        """Claim the operation, then validate, merge and publish it.

        Two transactions: the claim commits first, the completion second.
        """
        with self._unit_of_work(
            "convergence_claim", actor_id, operation_id=operation_id
        ) as svc:
            token = svc.convergence.claim(operation_id)
        return self._complete(operation_id, token, actor_id)

    def resume(self, operation_id: UUID, actor_id: UUID) -> ConvergenceOperationRecord:
        """Re-claim a stale in_progress operation and complete it."""
        with self._unit_of_work(
            "convergence_resume", actor_id, operation_id=operation_id
        ) as svc:
            token = svc.convergence.resume(operation_id, actor_id)
        return self._complete(operation_id, token, actor_id)

    def _complete(
        self, operation_id: UUID, claim_token: UUID, actor_id: UUID | None
    ) -> ConvergenceOperationRecord:
        with self._unit_of_work(
            "convergence_complete", actor_id, operation_id=operation_id
        ) as svc:
            return svc.convergence.complete(operation_id, claim_token)

    def publish(self, branch_id: UUID, publisher_id: UUID) -> ConvergenceOperationRecord:
        """Create and execute a convergence operation in one call."""
        operation = self.create_convergence(branch_id, publisher_id)
        return self.execute(operation.id, publisher_id)

    def cancel(self, operation_id: UUID, actor_id: UUID) -> ConvergenceOperationRecord:
        with self._unit_of_work("convergence_cancel", actor_id, operation_id=operation_id) as svc:
            return svc.convergence.cancel(operation_id, actor_id)

    def get_operation(self, operation_id: UUID) -> ConvergenceOperationRecord:
        with self._unit_of_work(
            "get_operation", operation_id=operation_id, read_only=True
        ) as svc:
            return svc.operations.get(operation_id)

    def list_operations(self, branch_id: UUID) -> list[ConvergenceOperationRecord]:
        with self._unit_of_work("list_operations", branch_id=branch_id, read_only=True) as svc:
            return svc.operations.list_for_branch(branch_id)

    def latest_operation(self, branch_id: UUID) -> ConvergenceOperationRecord | None:
        with self._unit_of_work("latest_operation", branch_id=branch_id, read_only=True) as svc:
            return svc.operations.latest_for_branch(branch_id)

    def status(self, operation_id: UUID) -> ConvergenceStatusReport:
        convergence = self._config.convergence
        with self._unit_of_work(
            "convergence_status", operation_id=operation_id, read_only=True
        ) as svc:
            report = svc.operations.status(
                operation_id,
                now=self._clock.now(),
                alert_after_seconds=convergence.in_progress_alert_seconds,
                poll_interval_seconds=convergence.poll_interval_seconds,
            )
        if report.is_overdue:
            logger.warning(
                "convergence_overdue",
                extra={
                    "operation_id": str(operation_id),
                    "elapsed_seconds": report.elapsed_seconds,
                    "alert_after_seconds": convergence.in_progress_alert_seconds,
                },
            )
        return report
