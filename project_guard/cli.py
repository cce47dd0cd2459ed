"""Command-line interface for Project Guard.

Provides:
- project-guard transaction begin|backup_file|commit|rollback|list|log|status|recover|prune|touch
- project-guard integrity check PROJECT_PATH [minimal|normal|detailed]
- project-guard repair PROJECT_PATH interactive|guided|automatic

Every command ends with a ``SUMMARY {json}`` line (or only the JSON with
``--json``) and exits with 0 (ok), 1 (issues remain, retry-safe failure),
2 (invalid arguments or configuration), 3 (manual recovery required) or
4 (internal failure).
"""

import functools
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click

from .checker import IntegrityChecker, IntegrityIssue, Severity, severity_counts
from .config import GuardConfig, RepairPolicy, set_config
from .errors import EXIT_INTERNAL, EXIT_OK, EXIT_PARTIAL, GuardError
from .healer import RepairReport, SelfHealer
from .logger import GuardLogger
from .notifier import Notifier
from .transactions import TransactionManager

logger = logging.getLogger(__name__)


class CliState:
    """Configuration and components shared by the commands of one invocation."""

    def __init__(self, as_json: bool, config_file: Optional[str]):
        self.as_json = as_json
        self.config_file = config_file
        self._config: Optional[GuardConfig] = None
        self._logger: Optional[GuardLogger] = None
        self._manager: Optional[TransactionManager] = None

    @property
    def config(self) -> GuardConfig:
        if self._config is None:
            if self.config_file:
                self._config = GuardConfig.from_file(self.config_file)
            else:
                self._config = GuardConfig.from_env()
            set_config(self._config)
        return self._config

    @property
    def logger(self) -> GuardLogger:
        if self._logger is None:
            self._logger = GuardLogger.from_config(self.config)
        return self._logger

    @property
    def manager(self) -> TransactionManager:
        if self._manager is None:
            self._manager = TransactionManager(
                self.config, self.logger, notifier=Notifier.from_config(self.config)
            )
        return self._manager

    def healer(self) -> SelfHealer:
        return SelfHealer(self.config, manager=self.manager, logger=self.logger)

    def emit(self, lines: List[str], summary: Dict[str, Any]) -> None:
        """Print human-readable lines followed by the structured summary."""
        if self.as_json:
            click.echo(json.dumps(summary, sort_keys=True))
            return
        for line in lines:
            click.echo(line)
        click.echo("SUMMARY " + json.dumps(summary, sort_keys=True))

    def close(self) -> None:
        if self._logger is not None:
            self._logger.close()


def guarded(func):
    """Run a command, mapping errors to exit codes and an error summary."""
    @functools.wraps(func)
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        state: CliState = ctx.find_object(CliState)
        try:
            code = func(state, *args, **kwargs) or EXIT_OK
        except GuardError as e:
            click.echo(f"Error: {e}", err=True)
            state.emit([], {"error": type(e).__name__, "message": str(e), "exit_code": e.exit_code})
            code = e.exit_code
        except (click.ClickException, click.exceptions.Exit):
            raise
        except Exception as e:
            logger.exception("Unexpected failure")
            click.echo(f"Internal error: {e}", err=True)
            state.emit([], {"error": type(e).__name__, "message": str(e), "exit_code": EXIT_INTERNAL})
            code = EXIT_INTERNAL
        finally:
            state.close()
        ctx.exit(code)
    return wrapper


@click.group()
@click.option("--json", "as_json", is_flag=True, help="Print only the JSON summary")
@click.option("--config", "config_file", type=click.Path(dir_okay=False),
              help="JSON config file (instead of environment variables)")
@click.pass_context
def cli(ctx, as_json: bool, config_file: Optional[str]) -> None:
    """Transactional edits, integrity checks and repairs for Xcode projects."""
    ctx.obj = CliState(as_json, config_file)


# =============================================================================
# transaction
# =============================================================================

@cli.group()
def transaction() -> None:
    """Atomic, revertible file mutations.

    Examples:

        txn=$(project-guard transaction begin FILE_UPDATE -r App.xcodeproj/project.pbxproj | head -1)
        project-guard transaction backup_file "$txn" App.xcodeproj/project.pbxproj
        ... edit the file ...
        project-guard transaction commit "$txn"     # or rollback
    """


@transaction.command()
@click.argument("kind")
@click.option("--resource", "-r", "resources", multiple=True, help="Path to lock (repeatable)")
@click.option("--owner-pid", type=int, default=None,
              help="Process whose exit abandons the transaction (default: the calling shell)")
@click.option("--timeout-ms", type=click.IntRange(min=0), default=None, help="Lock wait (default LOCK_TIMEOUT_MS)")
@guarded
def begin(state: CliState, kind: str, resources, owner_pid: Optional[int], timeout_ms: Optional[int]) -> int:
    """Open a transaction and print its id."""
    manager = state.manager
    manager.startup()
    owner = owner_pid if owner_pid is not None else os.getppid()
    timeout = timeout_ms / 1000.0 if timeout_ms is not None else None
    txn = manager.begin(kind, resources, owner_pid=owner, timeout=timeout)
    state.emit([txn.id], {
        "transaction_id": txn.id,
        "kind": txn.kind,
        "status": txn.status.value,
        "resources": txn.resources,
    })
    return EXIT_OK


@transaction.command("backup_file")
@click.argument("txn_id")
@click.argument("path")
@click.option("--optional", is_flag=True, help="The file may not exist yet")
@guarded
def backup_file(state: CliState, txn_id: str, path: str, optional: bool) -> int:
    """Back up PATH before it is modified."""
    handle = state.manager.backup_file(txn_id, path, optional=optional)
    state.emit([handle.backup_path or f"(absent) {handle.original_path}"], {
        "transaction_id": txn_id,
        "path": handle.original_path,
        "backup_path": handle.backup_path,
        "original_existed": handle.original_existed,
    })
    return EXIT_OK


@transaction.command()
@click.argument("txn_id")
@guarded
def commit(state: CliState, txn_id: str) -> int:
    """Commit a transaction."""
    txn = state.manager.commit(txn_id)
    state.emit([f"{txn.id} {txn.status.value}"], {
        "transaction_id": txn.id, "status": txn.status.value, "files": len(txn.backed_up_files),
    })
    return EXIT_OK


@transaction.command()
@click.argument("txn_id")
@click.option("--reason", default="requested", help="Recorded in the log")
@guarded
def rollback(state: CliState, txn_id: str, reason: str) -> int:
    """Restore every file backed up by a transaction."""
    txn = state.manager.rollback(txn_id, reason=reason)
    state.emit([f"{txn.id} {txn.status.value}"], {
        "transaction_id": txn.id, "status": txn.status.value, "restored": len(txn.backed_up_files),
    })
    return EXIT_OK


@transaction.command("list")
@guarded
def list_transactions(state: CliState) -> int:
    """List open transactions."""
    open_txns = state.manager.list_open()
    lines = [
        f"{t.id}  {t.kind:<12} started {t.started_at}  pid {t.owner_pid}  files {len(t.backed_up_files)}"
        for t in open_txns
    ]
    state.emit(lines, {"open": len(open_txns), "transactions": [t.to_dict() for t in open_txns]})
    return EXIT_OK


@transaction.command("log")
@click.option("-n", "count", type=click.IntRange(min=0), default=20, help="Number of records")
@guarded
def show_log(state: CliState, count: int) -> int:
    """Show the last records of the transaction log."""
    records = state.manager.log.tail(count)
    lines = [f"{r.timestamp}  {r.event:<8} {r.txn_id}  {json.dumps(r.detail, sort_keys=True)}" for r in records]
    state.emit(lines, {"records": len(records)})
    return EXIT_OK


@transaction.command()
@click.argument("resource")
@guarded
def status(state: CliState, resource: str) -> int:
    """Show READY, ACTIVE or ERROR for a resource."""
    current = state.manager.current_status(resource)
    state.emit([current.value], {"resource": resource, "status": current.value})
    return EXIT_OK


@transaction.command()
@guarded
def recover(state: CliState) -> int:
    """Resolve transactions left open by processes that exited."""
    manager = state.manager
    committed = manager.expire_idle()
    recovered = manager.recover()
    lines = [f"{t.id} AUTO_COMMITTED" for t in committed] + [f"{t.id} ROLLED_BACK" for t in recovered]
    state.emit(lines, {"recovered": len(recovered), "auto_committed": len(committed)})
    return EXIT_OK


@transaction.command()
@click.option("--days", type=click.IntRange(min=0), default=None, help="Retention (default KEEP_BACKUP_DAYS)")
@guarded
def prune(state: CliState, days: Optional[int]) -> int:
    """Delete backups of transactions that ended more than N days ago."""
    removed = state.manager.prune_backups(days)
    state.emit(removed, {"pruned": len(removed)})
    return EXIT_OK


@transaction.command()
@click.argument("kind")
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
@guarded
def touch(state: CliState, kind: str, manifest: str) -> int:
    """Mark the manifest changed (inside a transaction) so the build tool reloads it."""
    manager = state.manager
    with manager.transaction(kind, [manifest]) as txn:
        manager.backup_file(txn, manifest)
        os.utime(manifest, None)
    state.emit([f"{txn.id} {txn.status.value}"], {
        "transaction_id": txn.id, "status": txn.status.value, "path": str(Path(manifest).resolve()),
    })
    return EXIT_OK


# =============================================================================
# integrity / repair
# =============================================================================

def _issue_lines(issues: List[IntegrityIssue]) -> List[str]:
    lines = []
    for issue in issues:
        fix = issue.suggested_fix.action.value if issue.suggested_fix else "manual"
        lines.append(f"[{issue.severity.value}] {issue.category.value} {issue.affected_path}: "
                     f"{issue.description} (fix: {fix})")
    return lines


def _report_lines(report: RepairReport) -> List[str]:
    return [
        f"{a.outcome.value:<10} {a.issue.category.value} {a.issue.affected_path}: {a.message}"
        for a in report.actions
    ]


def _prompt_approver(issue: IntegrityIssue, preview: Optional[str]) -> bool:
    click.echo(f"\n[{issue.severity.value}] {issue.description}", err=True)
    if preview:
        click.echo(preview, err=True)
    return click.confirm("Apply this repair?", default=False, err=True)


@cli.group()
def integrity() -> None:
    """Structural checks of the project manifest and resources."""


@integrity.command()
@click.argument("project_path")
@click.argument("mode", required=False)
@guarded
def check(state: CliState, project_path: str, mode: Optional[str]) -> int:
    """Check PROJECT_PATH at minimal, normal or detailed depth."""
    config = state.config
    checker = IntegrityChecker(config, state.logger)
    issues = checker.check(project_path, mode)
    used_mode = mode or config.integrity.default_mode.value

    summary: Dict[str, Any] = {
        "mode": used_mode,
        "issues": len(issues),
        "by_severity": severity_counts(issues),
    }
    lines = _issue_lines(issues)
    code = EXIT_PARTIAL if any(i.severity is not Severity.INFO for i in issues) else EXIT_OK

    if config.repair.auto_repair and config.enabled and code != EXIT_OK:
        report = state.healer().repair(project_path, RepairPolicy.GUIDED, approver=None, mode=used_mode)
        lines.extend(_report_lines(report))
        summary["repair"] = report.summary()
        code = report.exit_code

    state.emit(lines, summary)
    return code


@cli.command()
@click.argument("project_path")
@click.argument("policy")
@guarded
def repair(state: CliState, project_path: str, policy: str) -> int:
    """Repair PROJECT_PATH under an interactive, guided or automatic policy."""
    parsed = RepairPolicy.parse(policy)
    approver = None
    if parsed is not RepairPolicy.AUTOMATIC and sys.stdin.isatty() and not state.as_json:
        approver = _prompt_approver
    report = state.healer().repair(project_path, parsed, approver=approver)
    summary = report.summary()
    summary["policy"] = parsed.value
    state.emit(_report_lines(report), summary)
    return report.exit_code


def main() -> None:
    cli(prog_name="project-guard")


if __name__ == "__main__":
    main()
