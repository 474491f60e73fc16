"""
Tests for BranchWorkflowOrchestrator -- units of work, audit delivery,
structured logging and the outcome-returning event entry.
"""

from uuid import uuid4

import pytest

from branch_kernel.domain.convergence import ConvergenceStatus
from branch_kernel.domain.review import CycleOutcome, ReviewDecision
from branch_kernel.domain.workflow import BranchEvent, BranchState
from branch_kernel.exceptions import (
    BranchNotFoundError,
    NotOwnerError,
    StaleOperationError,
)
from branch_kernel.logging_config import LogContext
from branch_services.workflow_orchestrator import BranchWorkflowOrchestrator


def by_message(logs, message):
    return [r for r in logs if r["message"] == message]


class TestUnitOfWork:

    def test_commands_commit(self, orchestrator, actors):
        branch = orchestrator.create_branch(actors.owner, "persisted")
        assert orchestrator.get_branch(branch.id).name == "persisted"

    def test_rejected_command_rolls_back(self, orchestrator, actors):
        branch = orchestrator.create_branch(actors.owner, "rollback")
        with pytest.raises(NotOwnerError):
            orchestrator.submit_for_review(branch.id, actors.outsider, [actors.reviewer])
        assert orchestrator.get_branch(branch.id).reviewer_ids == ()

    def test_create_with_members_is_one_unit(self, orchestrator, actors):
        from branch_kernel.exceptions import RoleConflictError

        with pytest.raises(RoleConflictError):
            orchestrator.create_branch(
                actors.owner,
                "half built",
                reviewer_ids=[actors.reviewer],
                collaborator_ids=[actors.reviewer],
            )
        assert orchestrator.list_branches(owner_id=actors.owner) == []

    def test_missing_branch(self, orchestrator):
        with pytest.raises(BranchNotFoundError):
            orchestrator.get_branch(uuid4())


class TestAuditDelivery:

    def test_committed_transitions_are_delivered_in_order(
        self, orchestrator, actors, audit_sink
    ):
        branch = orchestrator.create_branch(
            actors.owner, "audited", reviewer_ids=[actors.reviewer]
        )
        orchestrator.submit_for_review(branch.id, actors.owner)

        events = [r.event for r in audit_sink.records if r.branch_id == branch.id]
        assert events == ["CREATE", "ADD_REVIEWER", "SUBMIT_FOR_REVIEW"]
        assert [r.id for r in audit_sink.records if r.branch_id == branch.id] == [
            r.id for r in orchestrator.history(branch.id)
        ]

    def test_rejected_commands_deliver_nothing(self, orchestrator, actors, audit_sink):
        branch = orchestrator.create_branch(actors.owner, "quiet")
        delivered = len(audit_sink.records)
        with pytest.raises(NotOwnerError):
            orchestrator.delete_branch(branch.id, actors.outsider)
        assert len(audit_sink.records) == delivered


class TestLogging:

    def test_completed_command_is_logged_with_context(self, orchestrator, actors, captured_logs):
        branch = orchestrator.create_branch(actors.owner, "logged")
        (completed,) = [
            r for r in by_message(captured_logs(), "command_completed")
            if r.get("command") == "create_branch"
        ]
        assert completed["actor_id"] == str(actors.owner)
        assert completed["transitions"] == 1
        assert "correlation_id" in completed
        assert "duration_ms" in completed
        assert branch.id

    def test_rejection_is_logged_as_warning(self, orchestrator, actors, captured_logs):
        branch = orchestrator.create_branch(actors.owner, "rejected")
        with pytest.raises(NotOwnerError):
            orchestrator.update_branch(branch.id, actors.outsider, name="x")
        (rejected,) = by_message(captured_logs(), "command_rejected")
        assert rejected["level"] == "WARNING"
        assert rejected["error_code"] == "NOT_OWNER"
        assert rejected["branch_id"] == str(branch.id)

    def test_existing_correlation_id_is_reused(self, orchestrator, actors, captured_logs):
        with LogContext.bind(correlation_id="req-42"):
            orchestrator.create_branch(actors.owner, "correlated")
        transitions = by_message(captured_logs(), "branch_transition")
        assert transitions
        assert all(r["correlation_id"] == "req-42" for r in transitions)


class TestApplyEvent:

    def test_accepted(self, orchestrator, actors):
        branch = orchestrator.create_branch(actors.owner, "apply", reviewer_ids=[actors.reviewer])
        outcome = orchestrator.apply_event(branch.id, actors.owner, BranchEvent.SUBMIT_FOR_REVIEW)
        assert outcome.success
        assert outcome.to_state is BranchState.REVIEW

    def test_rejected_outcome_instead_of_error(self, orchestrator, actors):
        branch = orchestrator.create_branch(actors.owner, "apply")
        outcome = orchestrator.apply_event(branch.id, actors.owner, BranchEvent.ARCHIVE)
        assert not outcome.success
        assert outcome.from_state is BranchState.DRAFT
        assert outcome.error_code == "INVALID_TRANSITION"

    def test_missing_branch_still_raises(self, orchestrator, actors):
        with pytest.raises(BranchNotFoundError):
            orchestrator.apply_event(uuid4(), actors.owner, BranchEvent.ARCHIVE)

    def test_publish_runs_convergence(self, orchestrator, actors, approved_via_orchestrator):
        branch = approved_via_orchestrator()
        outcome = orchestrator.apply_event(branch.id, actors.publisher, "PUBLISH")
        assert outcome.success
        assert outcome.from_state is BranchState.APPROVED
        assert outcome.to_state is BranchState.PUBLISHED
        assert orchestrator.get_branch(branch.id).state is BranchState.ARCHIVED

    def test_failed_convergence_is_a_rejection(
        self, orchestrator, actors, approved_via_orchestrator
    ):
        branch = approved_via_orchestrator()
        orchestrator.write_ref_content("main", "docs/intro.md", "moved on", actors.admin)
        outcome = orchestrator.apply_event(branch.id, actors.publisher, "PUBLISH")
        assert not outcome.success
        assert outcome.error_code == "CONVERGENCE_FAILED"
        assert orchestrator.get_branch(branch.id).state is BranchState.APPROVED

    def test_unauthorized_publish(self, orchestrator, actors, approved_via_orchestrator):
        branch = approved_via_orchestrator()
        outcome = orchestrator.apply_event(branch.id, actors.owner, "PUBLISH")
        assert not outcome.success
        assert outcome.error_code == "NOT_AUTHORIZED"


class TestReadSide:

    def test_list_branches_filters(self, orchestrator, actors):
        mine = orchestrator.create_branch(actors.owner, "mine", reviewer_ids=[actors.reviewer])
        orchestrator.create_branch(actors.collaborator, "theirs")
        orchestrator.submit_for_review(mine.id, actors.owner)

        assert [b.id for b in orchestrator.list_branches(owner_id=actors.owner)] == [mine.id]
        assert [b.id for b in orchestrator.list_branches(state="review")] == [mine.id]
        assert [b.id for b in orchestrator.list_branches(member_id=actors.reviewer)] == [mine.id]

    def test_pending_reviews_for_reviewer(self, orchestrator, actors):
        branch = orchestrator.create_branch(actors.owner, "queue", reviewer_ids=[actors.reviewer])
        orchestrator.submit_for_review(branch.id, actors.owner)
        (pending,) = orchestrator.pending_reviews(actors.reviewer)
        assert pending.branch_id == branch.id
        assert orchestrator.pending_reviews(actors.second_reviewer) == []

    def test_review_cycles_and_stats(self, orchestrator, actors):
        branch = orchestrator.create_branch(actors.owner, "cycles", reviewer_ids=[actors.reviewer])
        orchestrator.submit_for_review(branch.id, actors.owner)
        orchestrator.record_review_decision(
            branch.id, actors.reviewer, ReviewDecision.CHANGES_REQUESTED, "nope"
        )
        orchestrator.submit_for_review(branch.id, actors.owner)
        orchestrator.record_review_decision(branch.id, actors.reviewer, ReviewDecision.APPROVED)

        cycles = orchestrator.review_cycles(branch.id)
        assert [c.outcome for c in cycles] == [CycleOutcome.CHANGES_REQUESTED, CycleOutcome.APPROVED]
        stats = orchestrator.review_stats(branch.id)
        assert stats.total == 2
        assert stats.approved == 1
        assert stats.changes_requested == 1

    def test_content_snapshot(self, orchestrator, actors, seed_content):
        branch = orchestrator.create_branch(actors.owner, "snapshot")
        orchestrator.write_content(branch.id, actors.owner, "docs/new.md", "new")
        snapshot = orchestrator.content_snapshot(branch.id)
        assert snapshot == {**seed_content, "docs/new.md": "new"}
        assert orchestrator.ref_snapshot("main") == seed_content


class TestBookkeeping:

    def test_delete_keeps_history(self, orchestrator, actors):
        branch = orchestrator.create_branch(actors.owner, "gone")
        orchestrator.delete_branch(branch.id, actors.owner)
        with pytest.raises(BranchNotFoundError):
            orchestrator.get_branch(branch.id)
        assert [r.event for r in orchestrator.history(branch.id)] == ["CREATE", "DELETE"]

    def test_rebase_picks_up_target_changes(self, orchestrator, actors):
        branch = orchestrator.create_branch(actors.owner, "rebased")
        orchestrator.write_ref_content("main", "README.md", "fresh readme", actors.admin)

        rebased = orchestrator.rebase(branch.id, actors.owner)

        assert rebased.base_commit != branch.base_commit
        assert orchestrator.content_snapshot(branch.id)["README.md"] == "fresh readme"
        assert orchestrator.history(branch.id)[-1].event == "REBASE"

    def test_rebase_clears_conflict_from_validation(
        self, orchestrator, actors
    ):
        branch = orchestrator.create_branch(actors.owner, "stale", reviewer_ids=[actors.reviewer])
        orchestrator.write_content(branch.id, actors.owner, "docs/new.md", "new")
        orchestrator.write_ref_content("main", "README.md", "fresh readme", actors.admin)
        orchestrator.rebase(branch.id, actors.owner)
        orchestrator.submit_for_review(branch.id, actors.owner)
        orchestrator.record_review_decision(branch.id, actors.reviewer, "approved")

        report = orchestrator.validate(branch.id)
        assert report.is_valid
        assert report.target_head == orchestrator.get_branch(branch.id).base_commit


class TestConvergenceCommands:

    def test_publish_reports_status(self, orchestrator, actors, approved_via_orchestrator):
        branch = approved_via_orchestrator()
        operation = orchestrator.publish(branch.id, actors.publisher)
        status = orchestrator.status(operation.id)
        assert status.operation.status is ConvergenceStatus.SUCCEEDED
        assert not status.is_overdue
        assert status.poll_interval_seconds == 2
        assert orchestrator.latest_operation(branch.id).id == operation.id

    def test_stuck_operation_is_overdue_and_resumable(
        self, orchestrator, actors, clock, captured_logs, approved_via_orchestrator
    ):
        branch = approved_via_orchestrator()
        operation = orchestrator.create_convergence(branch.id, actors.publisher)
        # Simulate a worker that claimed the operation and died.
        with orchestrator._unit_of_work("convergence_claim") as svc:
            svc.convergence.claim(operation.id)

        with pytest.raises(StaleOperationError):
            orchestrator.resume(operation.id, actors.publisher)

        clock.advance(601)
        status = orchestrator.status(operation.id)
        assert status.is_overdue
        assert by_message(captured_logs(), "convergence_overdue")

        resumed = orchestrator.resume(operation.id, actors.publisher)
        assert resumed.status is ConvergenceStatus.SUCCEEDED

    def test_cancel(self, orchestrator, actors, approved_via_orchestrator):
        branch = approved_via_orchestrator()
        operation = orchestrator.create_convergence(branch.id, actors.publisher)
        cancelled = orchestrator.cancel(operation.id, actors.publisher)
        assert cancelled.status is ConvergenceStatus.CANCELLED
        assert orchestrator.get_branch(branch.id).active_convergence_id is None


class TestLoggingAuditSink:

    def test_transitions_become_audit_log_lines(
        self, session_factory, identity, config, clock, actors, captured_logs
    ):
        from branch_services.audit import LoggingAuditSink

        orchestrator = BranchWorkflowOrchestrator(
            session_factory, identity, config, clock=clock, audit_sink=LoggingAuditSink()
        )
        orchestrator.bootstrap()
        branch = orchestrator.create_branch(actors.owner, "logged audit")

        (audit,) = by_message(captured_logs(), "branch_audit")
        assert audit["audit_event"] == "CREATE"
        assert audit["branch_id"] == str(branch.id)
        assert audit["to_state"] == "draft"
        assert audit["logger"] == "branch_kernel.audit"
