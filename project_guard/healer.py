"""
Self-Healer for Project Guard
=============================

Converts integrity issues into repairs under an approval policy. Every
applied fix runs in its own REPAIR transaction, so one failing fix is
rolled back on its own and the run moves on to the next issue.

Workflow:
---------
1. Integrity check -> issues sorted by severity
2. Policy gate     -> apply, ask the approver, or defer
3. Fix             -> REPAIR transaction (backup, rewrite, commit)
4. Report          -> one RepairAction per issue, REPAIR record in the log

Policies:
---------
- INTERACTIVE: every fix needs approval
- GUIDED: low-risk fixes apply on their own; CRITICAL issues and
  structural fixes need approval
- AUTOMATIC: every issue with a suggested fix is repaired
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .checker import (
    STRUCTURAL_ACTIONS, IntegrityChecker, IntegrityIssue, Severity, severity_counts
)
from .config import CheckMode, GuardConfig, RepairPolicy, get_config
from .errors import (
    EXIT_OK, EXIT_PARTIAL, EXIT_UNRECOVERABLE, BackupFailure, MutationFailure,
    ResourceBusy, RestoreFailure
)
from .fixer import RepairFixer, TargetMissing
from .logger import GuardLogger, get_event_logger
from .manifest import find_manifest
from .transactions import TransactionManager

logger = logging.getLogger(__name__)

# Called with the issue and a diff preview (None if unavailable); returns approval
Approver = Callable[[IntegrityIssue, Optional[str]], bool]


class RepairOutcome(Enum):
    """What happened to one issue during a repair run."""
    APPLIED = "APPLIED"
    SKIPPED = "SKIPPED"          # Denied, or the target had already gone
    DEFERRED = "DEFERRED"        # Needs approval nobody could give
    UNRESOLVED = "UNRESOLVED"    # No known fix
    FAILED = "FAILED"            # The fix's transaction rolled back


@dataclass
class RepairAction:
    """The outcome of one issue in a repair run."""
    issue: IntegrityIssue
    outcome: RepairOutcome
    transaction_id: Optional[str] = None
    message: str = ""
    already_resolved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue": self.issue.to_dict(),
            "outcome": self.outcome.value,
            "transaction_id": self.transaction_id,
            "message": self.message,
        }


@dataclass
class RepairReport:
    """Aggregated result of a repair run."""
    path: str
    policy: RepairPolicy
    actions: List[RepairAction] = field(default_factory=list)
    unrecoverable: bool = False
    disabled: bool = False

    def count(self, outcome: RepairOutcome) -> int:
        return sum(1 for a in self.actions if a.outcome is outcome)

    @property
    def counts(self) -> Dict[str, int]:
        return {o.value.lower(): self.count(o) for o in RepairOutcome}

    @property
    def applied(self) -> int:
        return self.count(RepairOutcome.APPLIED)

    @property
    def unresolved(self) -> int:
        return self.count(RepairOutcome.UNRESOLVED)

    @property
    def exit_code(self) -> int:
        if self.unrecoverable:
            return EXIT_UNRECOVERABLE
        for action in self.actions:
            if action.outcome is RepairOutcome.APPLIED or action.already_resolved:
                continue
            return EXIT_PARTIAL
        return EXIT_OK

    def summary(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.counts)
        data["issues"] = len(self.actions)
        data["by_severity"] = severity_counts([a.issue for a in self.actions])
        data["unrecoverable"] = self.unrecoverable
        if self.disabled:
            data["disabled"] = True
        return data

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "policy": self.policy.value,
            "summary": self.summary(),
            "actions": [a.to_dict() for a in self.actions],
            "exit_code": self.exit_code,
        }


class SelfHealer:
    """
    Policy-gated repairs executed as transactions.

    Usage:
        healer = SelfHealer()
        report = healer.repair("MyApp/", "guided", approver=ask_user)
        sys.exit(report.exit_code)
    """

    def __init__(
        self,
        config: Optional[GuardConfig] = None,
        manager: Optional[TransactionManager] = None,
        checker: Optional[IntegrityChecker] = None,
        fixer: Optional[RepairFixer] = None,
        logger: Optional[GuardLogger] = None
    ):
        self.config = config or get_config()
        self.logger = logger or get_event_logger()
        self.manager = manager or TransactionManager(self.config, self.logger)
        self.checker = checker or IntegrityChecker(self.config, self.logger)
        self.fixer = fixer or RepairFixer(self.manager, self.logger)

    @staticmethod
    def needs_approval(issue: IntegrityIssue, policy: RepairPolicy) -> bool:
        """Whether a fix must be approved before it is applied under a policy."""
        if policy is RepairPolicy.INTERACTIVE:
            return True
        if policy is RepairPolicy.AUTOMATIC:
            return False
        return issue.severity is Severity.CRITICAL or issue.suggested_fix.action in STRUCTURAL_ACTIONS

    def repair(
        self,
        path: str,
        policy: Union[str, RepairPolicy],
        approver: Optional[Approver] = None,
        mode: Union[str, CheckMode, None] = None
    ) -> RepairReport:
        """
        Check a project and repair what the policy allows.

        Args:
            path: Project directory, .xcodeproj bundle or manifest file
            policy: interactive, guided or automatic
            approver: Asked about fixes that need approval (None defers them)
            mode: Integrity check depth (defaults to INTEGRITY_CHECK_MODE)

        Returns:
            RepairReport with one action per issue

        Raises:
            ConfigError: If the policy or mode is unknown or the path does not exist
        """
        if not isinstance(policy, RepairPolicy):
            policy = RepairPolicy.parse(policy)

        report = RepairReport(path=str(path), policy=policy)
        if not self.config.enabled:
            report.disabled = True
            return report

        issues = self.checker.check(path, mode)
        manifest_path, _ = find_manifest(path)
        run_id = f"repair_{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S%fZ')}_{uuid.uuid4().hex[:8]}"

        for issue in issues:
            if report.unrecoverable:
                action = RepairAction(issue, RepairOutcome.DEFERRED,
                                      message="Repair run stopped after a failed rollback")
            else:
                action = self._process(issue, policy, approver, manifest_path, report)
            report.actions.append(action)
            self._record(run_id, action)

        logger.info(
            "Repair of %s (%s): %s", path, policy.value,
            ", ".join(f"{k}={v}" for k, v in report.counts.items())
        )
        return report

    def _process(
        self,
        issue: IntegrityIssue,
        policy: RepairPolicy,
        approver: Optional[Approver],
        manifest_path: Optional[Path],
        report: RepairReport
    ) -> RepairAction:
        if issue.suggested_fix is None or manifest_path is None:
            return RepairAction(issue, RepairOutcome.UNRESOLVED, message="No known fix")

        if not self.fixer.is_applicable(issue, manifest_path):
            return RepairAction(issue, RepairOutcome.SKIPPED, message="Already resolved",
                                already_resolved=True)

        if self.needs_approval(issue, policy):
            if approver is None:
                return RepairAction(issue, RepairOutcome.DEFERRED, message="Needs approval")
            if not approver(issue, self.fixer.preview(issue, manifest_path)):
                return RepairAction(issue, RepairOutcome.SKIPPED, message="Not approved")

        return self._apply(issue, manifest_path, report)

    def _apply(self, issue: IntegrityIssue, manifest_path: Path, report: RepairReport) -> RepairAction:
        resources = self.fixer.resources_for(issue, manifest_path)
        txn_id = None
        try:
            with self.manager.transaction("REPAIR", resources) as txn:
                txn_id = txn.id
                result = self.fixer.apply(issue, txn, manifest_path)
        except MutationFailure as e:
            if isinstance(e.cause, TargetMissing):
                return RepairAction(issue, RepairOutcome.SKIPPED, e.transaction_id,
                                    f"Already resolved: {e.cause}", already_resolved=True)
            self.logger.event("REPAIR_FAILED", f"{issue.id}: {e.cause}", level=logging.WARNING)
            return RepairAction(issue, RepairOutcome.FAILED, e.transaction_id, str(e.cause))
        except RestoreFailure as e:
            report.unrecoverable = True
            self.logger.event("MANUAL_INTERVENTION_REQUIRED", str(e), level=logging.ERROR)
            return RepairAction(issue, RepairOutcome.FAILED, txn_id or e.transaction_id, str(e))
        except (ResourceBusy, BackupFailure) as e:
            self.logger.event("REPAIR_FAILED", f"{issue.id}: {e}", level=logging.WARNING)
            return RepairAction(issue, RepairOutcome.FAILED, txn_id, str(e))

        self.logger.event("REPAIR_APPLIED", f"{issue.id}: {result.description}")
        return RepairAction(issue, RepairOutcome.APPLIED, txn_id, result.description)

    def _record(self, run_id: str, action: RepairAction) -> None:
        self.manager.record_repair(action.transaction_id or run_id, {
            "run_id": run_id,
            "issue_id": action.issue.id,
            "category": action.issue.category.value,
            "severity": action.issue.severity.value,
            "path": action.issue.affected_path,
            "outcome": action.outcome.value,
            "message": action.message,
        })
