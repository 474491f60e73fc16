"""
Change collapsing, conflict detection and the validation battery.

Pure functions over ContentChange values; the content store is covered in
tests/services/test_content_store.py.
"""

from uuid import uuid4

from branch_kernel.domain.convergence import (
    ChangeKind,
    ConflictType,
    ContentChange,
    ValidationCheck,
    build_validation_report,
    detect_conflicts,
    net_changes,
)
from branch_kernel.domain.workflow import BranchRecord, BranchState, Visibility

A = ChangeKind.ADDED
M = ChangeKind.MODIFIED
D = ChangeKind.DELETED
R = ChangeKind.RENAMED


def change(path, kind, previous=None):
    return ContentChange(path, kind, previous)


def make_branch(state=BranchState.APPROVED, base_commit="c1", name="feature"):
    return BranchRecord(
        id=uuid4(),
        name=name,
        owner_id=uuid4(),
        base_ref="main",
        content_ref="branches/feature",
        state=state,
        visibility=Visibility.PRIVATE,
        required_approvals=1,
        review_cycle=1,
        base_commit=base_commit,
    )


class TestNetChanges:

    def test_add_then_delete_cancels(self):
        assert net_changes([change("a", A), change("a", D)]) == ()

    def test_delete_then_add_is_modification(self):
        assert net_changes([change("a", D), change("a", A)]) == (change("a", M),)

    def test_repeated_modifications_collapse(self):
        assert net_changes([change("a", M), change("a", M)]) == (change("a", M),)

    def test_add_then_modify_stays_added(self):
        assert net_changes([change("a", A), change("a", M)]) == (change("a", A),)

    def test_renames_chain_to_original_path(self):
        log = [change("b", R, "a"), change("c", R, "b")]
        assert net_changes(log) == (change("c", R, "a"),)

    def test_rename_back_is_modification(self):
        log = [change("b", R, "a"), change("a", R, "b")]
        assert net_changes(log) == (change("a", M),)

    def test_renamed_then_deleted_deletes_original(self):
        log = [change("b", R, "a"), change("b", D)]
        assert net_changes(log) == (change("a", D),)

    def test_added_then_renamed_is_added_at_new_path(self):
        log = [change("a", A), change("b", R, "a")]
        assert net_changes(log) == (change("b", A),)

    def test_output_is_sorted_by_path(self):
        log = [change("z", M), change("a", M), change("m", A)]
        assert [c.path for c in net_changes(log)] == ["a", "m", "z"]


class TestDetectConflicts:

    def test_disjoint_paths_do_not_conflict(self):
        assert detect_conflicts([change("a", M)], [change("b", M)]) == ()

    def test_both_modified_is_content_conflict(self):
        (conflict,) = detect_conflicts([change("a", M)], [change("a", M)])
        assert conflict.type is ConflictType.CONTENT
        assert conflict.path == "a"

    def test_target_deleted_is_delete_conflict(self):
        (conflict,) = detect_conflicts([change("a", M)], [change("a", D)])
        assert conflict.type is ConflictType.DELETE

    def test_branch_deleted_modified_target_is_delete_conflict(self):
        (conflict,) = detect_conflicts([change("a", D)], [change("a", M)])
        assert conflict.type is ConflictType.DELETE

    def test_both_deleted_is_not_a_conflict(self):
        assert detect_conflicts([change("a", D)], [change("a", D)]) == ()

    def test_rename_over_modified_source_is_rename_conflict(self):
        (conflict,) = detect_conflicts([change("b", R, "a")], [change("a", M)])
        assert conflict.type is ConflictType.RENAME
        assert conflict.path == "b"

    def test_target_rename_collides_with_branch_edit(self):
        (conflict,) = detect_conflicts([change("a", M)], [change("c", R, "a")])
        assert conflict.type is ConflictType.RENAME

    def test_results_are_sorted_and_deduplicated(self):
        ours = [change("b", M), change("a", M)]
        theirs = [change("a", M), change("b", D), change("a", M)]
        conflicts = detect_conflicts(ours, theirs)
        assert [(c.path, c.type) for c in conflicts] == [
            ("a", ConflictType.CONTENT),
            ("b", ConflictType.DELETE),
        ]


class TestValidationReport:

    def test_check_order_is_fixed(self):
        report = build_validation_report(make_branch(), (change("a", M),), (), "c1")
        assert [r.check for r in report.results] == list(ValidationCheck)

    def test_clean_branch_is_valid(self):
        report = build_validation_report(make_branch(), (change("a", M),), (), "c1")
        assert report.is_valid
        assert report.failed_checks == ()

    def test_unapproved_branch_fails_first_check(self):
        report = build_validation_report(
            make_branch(BranchState.REVIEW), (change("a", M),), (), "c1"
        )
        assert [r.check for r in report.failed_checks] == [ValidationCheck.BRANCH_APPROVED]

    def test_no_changes_fails(self):
        report = build_validation_report(make_branch(), (), (), "c1")
        assert [r.check for r in report.failed_checks] == [ValidationCheck.HAS_CHANGES]

    def test_missing_name_fails_metadata(self):
        report = build_validation_report(make_branch(name=""), (change("a", M),), (), "c1")
        assert ValidationCheck.REQUIRED_METADATA in [r.check for r in report.failed_checks]

    def test_advanced_target_without_overlap_passes(self):
        report = build_validation_report(
            make_branch(), (change("a", M),), (change("b", M),), "c2"
        )
        assert report.is_valid
        assert report.conflicts == ()

    def test_overlapping_target_change_fails_two_checks(self):
        report = build_validation_report(
            make_branch(), (change("a", M),), (change("a", M),), "c2"
        )
        assert not report.is_valid
        assert [r.check for r in report.failed_checks] == [
            ValidationCheck.TARGET_UNCHANGED_SINCE_BASE,
            ValidationCheck.NO_CONTENT_CONFLICTS,
        ]
        assert report.target_head == "c2"

    def test_results_serialize(self):
        report = build_validation_report(make_branch(), (change("a", M),), (), "c1")
        assert report.results[0].to_dict() == {
            "check": "branch_approved",
            "passed": True,
            "message": "branch is approved",
        }
