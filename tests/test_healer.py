"""
Tests for the self-healer and repair fixer.
"""

import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from project_guard.checker import FixAction, IssueCategory
from project_guard.config import RepairPolicy
from project_guard.errors import ConfigError, RestoreFailure
from project_guard.healer import RepairOutcome, SelfHealer
from project_guard.models import TransactionStatus


def outcomes(report):
    return [(a.issue.category, a.outcome) for a in report.actions]


class TestRepairScenarios:
    """End-to-end repair runs."""

    def test_automatic_repair_of_dangling_child(self, healer, checker, sample_project):
        """Scenario: one dangling child is repaired, the orphaned file stays unresolved."""
        sample_project.add_dangling_child()
        sample_project.add_file("MyApp/Orphan.swift")
        assert len(checker.check(str(sample_project.root), "normal")) == 2

        report = healer.repair(str(sample_project.root), "automatic", mode="normal")

        assert report.applied == 1
        assert report.unresolved == 1
        assert report.exit_code == 1
        assert sample_project.GHOST_ID not in sample_project.read_manifest()
        remaining = checker.check(str(sample_project.root), "normal")
        assert [i.category for i in remaining] == [IssueCategory.ORPHANED_RESOURCE]

    def test_undecodable_manifest_is_left_untouched(self, healer, sample_project):
        """Test a manifest with non-UTF-8 bytes is reported unresolved and never rewritten."""
        sample_project.add_dangling_child()
        data = sample_project.manifest.read_bytes()
        corrupted = data.replace(b"/* Begin PBXProject section */",
                                 b"/* Begin PBXProject section \xe9 */", 1)
        sample_project.manifest.write_bytes(corrupted)

        report = healer.repair(str(sample_project.root), "automatic", mode="normal")

        assert outcomes(report) == [(IssueCategory.MALFORMED_SECTION, RepairOutcome.UNRESOLVED)]
        assert report.exit_code == 1
        assert sample_project.manifest.read_bytes() == corrupted

    def test_clean_project(self, healer, sample_project):
        report = healer.repair(str(sample_project.root), "guided")

        assert report.actions == []
        assert report.exit_code == 0

    def test_repaired_manifest_is_clean(self, healer, checker, sample_project):
        sample_project.add_dangling_child()
        sample_project.add_missing_file_reference()

        report = healer.repair(str(sample_project.root), RepairPolicy.AUTOMATIC)

        assert report.exit_code == 0
        assert checker.check(str(sample_project.root), "detailed") == []
        assert "Missing.swift" not in sample_project.read_manifest()

    def test_each_fix_is_a_committed_transaction(self, healer, manager, sample_project, log_events):
        sample_project.add_dangling_child()

        report = healer.repair(str(sample_project.root), "automatic")

        txn_id = report.actions[0].transaction_id
        assert manager.load(txn_id).status is TransactionStatus.COMMITTED
        assert manager.load(txn_id).kind == "REPAIR"
        assert log_events(txn_id) == ["BEGIN", "BACKUP", "COMMIT", "REPAIR"]

    def test_repair_records_are_logged(self, healer, sample_project, log_events):
        sample_project.add_file("MyApp/Orphan.swift")

        healer.repair(str(sample_project.root), "automatic")

        assert log_events() == ["REPAIR"]


class TestPolicies:
    """Tests for approval gating."""

    def test_guided_defers_structural_fix_without_approver(self, healer, sample_project):
        sample_project.add_dangling_child()
        sample_project.add_missing_file_reference()

        report = healer.repair(str(sample_project.root), "guided")

        by_category = {a.issue.category: a.outcome for a in report.actions}
        assert by_category == {
            IssueCategory.DANGLING_OBJECT: RepairOutcome.APPLIED,
            IssueCategory.MISSING_REFERENCE: RepairOutcome.DEFERRED,
        }
        assert report.exit_code == 1
        assert "Missing.swift" in sample_project.read_manifest()

    def test_guided_with_approval(self, healer, sample_project):
        sample_project.add_missing_file_reference()
        asked = []

        def approve(issue, preview):
            asked.append((issue.suggested_fix.action, preview))
            return True

        report = healer.repair(str(sample_project.root), "guided", approver=approve)

        assert outcomes(report) == [(IssueCategory.MISSING_REFERENCE, RepairOutcome.APPLIED)]
        assert asked[0][0] is FixAction.REMOVE_REFERENCE
        assert "Missing.swift" in asked[0][1]
        assert report.exit_code == 0

    def test_guided_denied(self, healer, sample_project):
        sample_project.add_missing_file_reference()

        report = healer.repair(str(sample_project.root), "guided", approver=lambda issue, preview: False)

        assert outcomes(report) == [(IssueCategory.MISSING_REFERENCE, RepairOutcome.SKIPPED)]
        assert report.exit_code == 1
        assert "Missing.swift" in sample_project.read_manifest()

    def test_interactive_without_approver(self, healer, sample_project):
        sample_project.add_dangling_child()

        report = healer.repair(str(sample_project.root), "interactive")

        assert outcomes(report) == [(IssueCategory.DANGLING_OBJECT, RepairOutcome.DEFERRED)]
        assert sample_project.GHOST_ID in sample_project.read_manifest()

    def test_critical_issue_without_fix_is_unresolved(self, healer, sample_project):
        """Test a CRITICAL issue with no known fix is reported, not repaired."""
        sample_project.remove_main_group()

        report = healer.repair(str(sample_project.root), "guided")

        assert outcomes(report) == [(IssueCategory.MALFORMED_SECTION, RepairOutcome.UNRESOLVED)]
        assert report.exit_code == 1

    def test_unknown_policy(self, healer, sample_project):
        with pytest.raises(ConfigError):
            healer.repair(str(sample_project.root), "reckless")

    def test_disabled(self, disabled_config, healer, sample_project, state_dir):
        sample_project.add_dangling_child()

        report = healer.repair(str(sample_project.root), "automatic")

        assert report.disabled is True
        assert report.actions == []
        assert report.summary()["disabled"] is True
        assert sample_project.GHOST_ID in sample_project.read_manifest()
        assert not state_dir.exists()


class TestFixActions:
    """Tests for each manifest fix applied through a repair run."""

    def test_add_missing_archive_version(self, healer, checker, sample_project):
        sample_project.replace("\tarchiveVersion = 1;\n", "")

        report = healer.repair(str(sample_project.root), "automatic", mode="minimal")

        assert report.applied == 1
        assert "archiveVersion = 1;" in sample_project.read_manifest()
        assert checker.check(str(sample_project.root), "minimal") == []

    def test_deduplicate_objects(self, healer, checker, sample_project):
        line = (f'\t\t{sample_project.APP_DELEGATE_BUILD_FILE} /* AppDelegate.swift in Sources */ = '
                f'{{isa = PBXBuildFile; fileRef = {sample_project.APP_DELEGATE_REF} /* AppDelegate.swift */; }};\n')
        sample_project.replace(line, line + line)

        report = healer.repair(str(sample_project.root), "automatic")

        assert report.applied == 1
        assert checker.check(str(sample_project.root), "normal") == []

    def test_remove_unreachable_object(self, healer, checker, sample_project):
        sample_project.replace(
            "/* End PBXFileReference section */",
            f'\t\t{sample_project.MISSING_REF} = {{isa = PBXFileReference; path = Unused.swift; '
            f'sourceTree = BUILT_PRODUCTS_DIR; }};\n/* End PBXFileReference section */'
        )

        report = healer.repair(str(sample_project.root), "automatic")

        assert report.applied == 1
        assert sample_project.MISSING_REF not in sample_project.read_manifest()
        assert checker.check(str(sample_project.root), "normal") == []

    def test_preview_is_a_diff(self, healer, checker, sample_project):
        sample_project.add_dangling_child()
        issue = checker.check(str(sample_project.root), "normal")[0]

        diff = healer.fixer.preview(issue, sample_project.manifest)

        assert diff.startswith("--- a/project.pbxproj")
        removed = [line for line in diff.splitlines() if line.startswith("-") and not line.startswith("---")]
        added = [line for line in diff.splitlines() if line.startswith("+") and not line.startswith("+++")]
        assert any(sample_project.GHOST_ID in line for line in removed)
        assert not any(sample_project.GHOST_ID in line for line in added)
        # Previewing changes nothing
        assert sample_project.GHOST_ID in sample_project.read_manifest()

    def test_fix_no_longer_applicable(self, healer, checker, sample_project):
        sample_project.add_dangling_child()
        issue = checker.check(str(sample_project.root), "normal")[0]
        assert healer.fixer.is_applicable(issue, sample_project.manifest)

        healer.repair(str(sample_project.root), "automatic")

        assert not healer.fixer.is_applicable(issue, sample_project.manifest)
        assert healer.fixer.preview(issue, sample_project.manifest) is None


class TestFailureHandling:
    """Tests for fixes that fail."""

    def test_failed_fix_is_rolled_back_and_run_continues(self, healer, sample_project):
        """Test one failing fix does not stop the others."""
        sample_project.add_dangling_child()
        sample_project.add_missing_file_reference()
        real_apply = healer.fixer.apply
        calls = []

        def flaky(issue, txn, manifest_path):
            calls.append(issue.id)
            if len(calls) == 1:
                healer.manager.write_file(txn, str(manifest_path), "garbage")
                raise RuntimeError("disk full")
            return real_apply(issue, txn, manifest_path)

        with patch.object(healer.fixer, "apply", side_effect=flaky):
            report = healer.repair(str(sample_project.root), "automatic")

        assert [a.outcome for a in report.actions] == [RepairOutcome.FAILED, RepairOutcome.APPLIED]
        assert "disk full" in report.actions[0].message
        assert report.exit_code == 1
        manifest = sample_project.read_manifest()
        assert sample_project.GHOST_ID in manifest
        assert "Missing.swift" not in manifest

    def test_busy_manifest_fails_the_fix(self, healer, manager, sample_project):
        sample_project.add_dangling_child()
        holder = manager.begin("FILE_UPDATE", [str(sample_project.manifest)])

        report = healer.repair(str(sample_project.root), "automatic", mode="normal")

        assert outcomes(report) == [(IssueCategory.DANGLING_OBJECT, RepairOutcome.FAILED)]
        manager.commit(holder)

    def test_failed_restore_stops_the_run(self, healer, sample_project):
        """Test a rollback that cannot restore makes the run unrecoverable."""
        sample_project.add_dangling_child()
        sample_project.add_missing_file_reference()

        def broken(issue, txn, manifest_path):
            healer.manager.write_file(txn, str(manifest_path), "garbage")
            raise RuntimeError("disk full")

        failure = RestoreFailure("txn", [str(sample_project.manifest)], "device gone")
        with patch.object(healer.fixer, "apply", side_effect=broken), \
                patch.object(healer.manager.backups, "restore", side_effect=failure):
            report = healer.repair(str(sample_project.root), "automatic")

        assert report.unrecoverable is True
        assert [a.outcome for a in report.actions] == [RepairOutcome.FAILED, RepairOutcome.DEFERRED]
        assert report.exit_code == 3
        assert healer.manager.load(report.actions[0].transaction_id).status is TransactionStatus.FAILED
        assert report.summary()["unrecoverable"] is True


def test_needs_approval():
    """Test the approval table for each policy."""
    from project_guard.checker import IntegrityIssue, Severity, SuggestedFix

    def issue(severity, action):
        return IntegrityIssue(IssueCategory.DANGLING_OBJECT, severity, "/p", "d", SuggestedFix(action, "x"))

    low_risk = issue(Severity.ERROR, FixAction.DROP_DANGLING_ID)
    structural = issue(Severity.WARNING, FixAction.REMOVE_OBJECT)
    critical = issue(Severity.CRITICAL, FixAction.DROP_DANGLING_ID)

    assert not SelfHealer.needs_approval(low_risk, RepairPolicy.GUIDED)
    assert SelfHealer.needs_approval(structural, RepairPolicy.GUIDED)
    assert SelfHealer.needs_approval(critical, RepairPolicy.GUIDED)
    assert SelfHealer.needs_approval(low_risk, RepairPolicy.INTERACTIVE)
    assert not SelfHealer.needs_approval(structural, RepairPolicy.AUTOMATIC)
