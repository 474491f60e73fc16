"""
Tests for ConvergenceEngine -- validation, the operation lifecycle, merge and
publish.

All commands share one session here; the two-transaction claim/complete
split is exercised through the orchestrator in tests/concurrency.
"""

import pytest

from branch_kernel.domain.convergence import ConvergenceStatus, ValidationCheck
from branch_kernel.domain.workflow import ActorType, BranchEvent, BranchState
from branch_kernel.exceptions import (
    ConcurrentOperationInProgressError,
    ConflictDetectedError,
    ImmutabilityViolationError,
    InvalidConvergenceTransitionError,
    InvalidTransitionError,
    NotAuthorizedError,
    NotInitiatorError,
    StaleOperationError,
)
from branch_kernel.selectors.branch_selector import BranchSelector
from branch_kernel.services.convergence_engine import ConvergenceEngine

MAIN = "main"


@pytest.fixture
def history(session):
    return BranchSelector(session).history


@pytest.fixture
def keep_published(session, machine, content_store, clock):
    """Engine that leaves a converged branch published instead of archiving it."""
    return ConvergenceEngine(
        session, machine, content_store, clock=clock, archive_after_publish=False
    )


def run(engine, branch_id, publisher_id):
    operation = engine.create(branch_id, publisher_id)
    token = engine.claim(operation.id)
    return engine.complete(operation.id, token)


class TestValidate:

    def test_approved_branch_is_valid(self, convergence, approved_branch):
        report = convergence.validate(approved_branch().id)
        assert report.is_valid
        assert len(report.results) == len(ValidationCheck)

    def test_draft_branch_fails_approval_check(self, convergence, draft_branch):
        report = convergence.validate(draft_branch().id)
        assert not report.is_valid
        assert report.failed_checks[0].check is ValidationCheck.BRANCH_APPROVED

    def test_conflicting_target_edit(self, convergence, content_store, actors, approved_branch):
        branch = approved_branch()
        content_store.write(MAIN, "docs/intro.md", "main edit", actors.admin)
        report = convergence.validate(branch.id)
        assert not report.is_valid
        assert [(c.path, c.type.value) for c in report.conflicts] == [("docs/intro.md", "content")]

    def test_validation_is_repeatable(self, convergence, approved_branch):
        branch = approved_branch()
        assert convergence.validate(branch.id) == convergence.validate(branch.id)

    def test_require_clean_raises_on_conflicts(
        self, convergence, content_store, actors, approved_branch
    ):
        branch = approved_branch()
        content_store.write(MAIN, "docs/intro.md", "main edit", actors.admin)
        with pytest.raises(ConflictDetectedError) as exc_info:
            convergence.require_clean(branch.id)
        assert exc_info.value.branch_id == branch.id
        assert [(c["path"], c["type"]) for c in exc_info.value.conflicts] == [
            ("docs/intro.md", "content")
        ]
        assert exc_info.value.code == "CONFLICT_DETECTED"

    def test_require_clean_returns_report_without_conflicts(self, convergence, draft_branch):
        # Failed non-conflict checks are reported, not raised.
        report = convergence.require_clean(draft_branch().id)
        assert report.conflicts == ()
        assert not report.is_valid


class TestCreate:

    def test_publisher_creates_pending_operation(self, convergence, machine, actors, approved_branch):
        branch = approved_branch()
        operation = convergence.create(branch.id, actors.publisher)
        assert operation.status is ConvergenceStatus.PENDING
        assert operation.target_ref == MAIN
        assert machine.load_branch(branch.id).active_convergence_id == operation.id

    def test_owner_without_publish_role(self, convergence, actors, approved_branch):
        with pytest.raises(NotAuthorizedError):
            convergence.create(approved_branch().id, actors.owner)

    def test_branch_must_be_approved(self, convergence, actors, draft_branch):
        with pytest.raises(InvalidTransitionError):
            convergence.create(draft_branch().id, actors.publisher)

    def test_one_active_operation_per_branch(self, convergence, actors, approved_branch):
        branch = approved_branch()
        convergence.create(branch.id, actors.publisher)
        with pytest.raises(ConcurrentOperationInProgressError):
            convergence.create(branch.id, actors.admin)

    def test_in_flight_operation_blocks_archive_and_reopen(
        self, convergence, machine, actors, approved_branch
    ):
        branch = approved_branch()
        convergence.create(branch.id, actors.publisher)
        with pytest.raises(ConcurrentOperationInProgressError):
            machine.archive(branch.id, actors.owner)
        with pytest.raises(ConcurrentOperationInProgressError):
            machine.reopen(branch.id, actors.reviewer)


class TestExecute:

    def test_success_merges_publishes_and_archives(
        self, convergence, machine, content_store, actors, history, approved_branch
    ):
        branch = approved_branch()
        operation = run(convergence, branch.id, actors.publisher)

        assert operation.status is ConvergenceStatus.SUCCEEDED
        assert operation.merge_commit == content_store.head_commit(MAIN)
        assert content_store.read(MAIN, "docs/intro.md") == "# Intro v2\n"

        model = machine.load_branch(branch.id)
        assert model.state == BranchState.ARCHIVED.value
        assert model.active_convergence_id is None
        assert model.published_at is not None

        publish, archive = history(branch.id)[-2:]
        assert publish.event == BranchEvent.PUBLISH.value
        assert publish.to_state is BranchState.PUBLISHED
        assert publish.metadata["operation_id"] == str(operation.id)
        assert archive.to_state is BranchState.ARCHIVED
        assert archive.actor_type is ActorType.SYSTEM

    def test_publish_without_archive(self, keep_published, machine, actors, approved_branch):
        branch = approved_branch()
        run(keep_published, branch.id, actors.publisher)
        assert machine.load_branch(branch.id).state == BranchState.PUBLISHED.value

        archived = machine.archive(branch.id, actors.owner)
        assert archived.from_state is BranchState.PUBLISHED

    def test_published_branch_content_is_frozen(
        self, keep_published, machine, session, actors, approved_branch
    ):
        branch = approved_branch()
        run(keep_published, branch.id, actors.publisher)
        model = machine.load_branch(branch.id)
        model.name = "renamed after publish"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_conflict_fails_operation_and_keeps_branch_approved(
        self, convergence, machine, content_store, actors, approved_branch
    ):
        branch = approved_branch()
        content_store.write(MAIN, "docs/intro.md", "main edit", actors.admin)
        operation = run(convergence, branch.id, actors.publisher)

        assert operation.status is ConvergenceStatus.FAILED
        assert operation.conflict_detected
        assert operation.conflict_details[0]["type"] == "content"
        assert "1 content conflict(s): docs/intro.md" in operation.failure_reason
        assert content_store.read(MAIN, "docs/intro.md") == "main edit"

        model = machine.load_branch(branch.id)
        assert model.state == BranchState.APPROVED.value
        assert model.active_convergence_id is None

    def test_non_overlapping_target_change_still_merges(
        self, convergence, content_store, actors, approved_branch
    ):
        branch = approved_branch()
        content_store.write(MAIN, "README.md", "main readme", actors.admin)
        operation = run(convergence, branch.id, actors.publisher)
        assert operation.status is ConvergenceStatus.SUCCEEDED
        assert content_store.read(MAIN, "README.md") == "main readme"
        assert content_store.read(MAIN, "docs/intro.md") == "# Intro v2\n"

    def test_second_claim_is_rejected(self, convergence, actors, approved_branch):
        operation = convergence.create(approved_branch().id, actors.publisher)
        convergence.claim(operation.id)
        with pytest.raises(ConcurrentOperationInProgressError):
            convergence.claim(operation.id)

    def test_wrong_claim_token(self, convergence, actors, approved_branch):
        from uuid import uuid4

        operation = convergence.create(approved_branch().id, actors.publisher)
        convergence.claim(operation.id)
        with pytest.raises(ConcurrentOperationInProgressError):
            convergence.complete(operation.id, uuid4())

    def test_finished_operation_is_frozen(self, convergence, session, actors, approved_branch):
        from branch_kernel.models.convergence import ConvergenceOperationModel

        operation = run(convergence, approved_branch().id, actors.publisher)
        model = session.get(ConvergenceOperationModel, operation.id)
        model.failure_reason = "tampered"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestCancel:

    def test_initiator_cancels_pending(self, convergence, machine, actors, approved_branch):
        branch = approved_branch()
        operation = convergence.create(branch.id, actors.publisher)
        cancelled = convergence.cancel(operation.id, actors.publisher)

        assert cancelled.status is ConvergenceStatus.CANCELLED
        assert cancelled.failure_reason == "cancelled while pending"
        assert machine.load_branch(branch.id).active_convergence_id is None

    def test_only_initiator_cancels(self, convergence, actors, approved_branch):
        operation = convergence.create(approved_branch().id, actors.publisher)
        with pytest.raises(NotInitiatorError):
            convergence.cancel(operation.id, actors.admin)

    def test_cancel_finished_operation(self, convergence, actors, approved_branch):
        operation = run(convergence, approved_branch().id, actors.publisher)
        with pytest.raises(InvalidConvergenceTransitionError):
            convergence.cancel(operation.id, actors.publisher)

    def test_cancelled_operation_cannot_be_claimed(self, convergence, actors, approved_branch):
        operation = convergence.create(approved_branch().id, actors.publisher)
        convergence.cancel(operation.id, actors.publisher)
        with pytest.raises(InvalidConvergenceTransitionError):
            convergence.claim(operation.id)

    def test_cancel_between_claim_and_complete_skips_merge(
        self, convergence, machine, content_store, actors, approved_branch
    ):
        branch = approved_branch()
        head = content_store.head_commit(MAIN)
        operation = convergence.create(branch.id, actors.publisher)
        token = convergence.claim(operation.id)
        convergence.cancel(operation.id, actors.publisher)

        result = convergence.complete(operation.id, token)
        assert result.status is ConvergenceStatus.CANCELLED
        assert content_store.head_commit(MAIN) == head
        assert machine.load_branch(branch.id).state == BranchState.APPROVED.value

    def test_branch_can_be_republished_after_cancel(self, convergence, actors, approved_branch):
        branch = approved_branch()
        first = convergence.create(branch.id, actors.publisher)
        convergence.cancel(first.id, actors.publisher)
        second = run(convergence, branch.id, actors.publisher)
        assert second.status is ConvergenceStatus.SUCCEEDED


class TestResume:

    def test_fresh_operation_is_not_resumable(
        self, convergence, session, actors, approved_branch
    ):
        operation = convergence.create(approved_branch().id, actors.publisher)
        convergence.claim(operation.id)
        # The claim is a bulk UPDATE; reload the row as a new transaction would.
        session.expire_all()
        with pytest.raises(StaleOperationError):
            convergence.resume(operation.id, actors.publisher)

    def test_stale_operation_is_reclaimed(
        self, convergence, session, clock, actors, approved_branch
    ):
        operation = convergence.create(approved_branch().id, actors.publisher)
        old_token = convergence.claim(operation.id)
        session.expire_all()
        clock.advance(301)

        new_token = convergence.resume(operation.id, actors.publisher)
        assert new_token != old_token
        session.expire_all()

        with pytest.raises(ConcurrentOperationInProgressError):
            convergence.complete(operation.id, old_token)
        result = convergence.complete(operation.id, new_token)
        assert result.status is ConvergenceStatus.SUCCEEDED

    def test_pending_operation_cannot_be_resumed(self, convergence, actors, approved_branch):
        operation = convergence.create(approved_branch().id, actors.publisher)
        with pytest.raises(InvalidConvergenceTransitionError):
            convergence.resume(operation.id, actors.publisher)
