"""
Transaction Manager for Project Guard
=====================================

This module provides the atomicity contract for every mutation of the
project manifest and its satellite resource files.

Workflow:
---------
1. begin()        -> lock the declared resources, append BEGIN
2. backup_file()  -> copy each file before it is touched, append BACKUP
3. mutate         -> the caller's callback or write_file()/delete_file()
4. commit()       -> append COMMIT, keep backups for retention, unlock
   rollback()     -> restore backups in reverse order, append ROLLBACK
                     (or FAIL naming the files that could not be restored)

Features:
---------
- Context manager and callback runner that commit on success and roll back
  on any exception
- Cross-process use: transactions are rebuilt from the log by id
- Crash recovery: open transactions whose owner process died are rolled back
- Opt-in auto-commit of abandoned transactions (heartbeat + liveness gated)
- Pass-through mode when error handling is disabled
"""

import logging
import os
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, List, Optional, Union

import psutil

from .backup_store import BackupStore
from .config import GuardConfig, get_config
from .errors import (
    BackupFailure, ConfigError, MutationFailure, ResourceBusy, RestoreFailure,
    TransactionStateError
)
from .locks import LockInfo, LockTable
from .logger import GuardLogger, get_event_logger
from .models import BackupHandle, ResourceStatus, Transaction, TransactionStatus, canonical_path
from .transaction_log import EventType, LogRecord, TransactionLog

# A lock whose transaction is not open in the log is only broken after this
# long, so a begin() that has locked but not yet logged is left alone.
LOCK_SETTLE_SECONDS = 2.0

TransactionRef = Union[Transaction, str]


def new_transaction_id() -> str:
    """Generate a unique, time-sortable transaction id."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    return f"txn_{stamp}_{uuid.uuid4().hex[:8]}"


class TransactionManager:
    """
    Orchestrates begin -> backup -> mutate -> commit/rollback.

    Usage:
        manager = TransactionManager()

        # Option 1: Context manager
        with manager.transaction("FILE_UPDATE", [manifest]) as txn:
            manager.write_file(txn, manifest, new_text)

        # Option 2: Callback
        manager.run("FILE_UPDATE", mutate, resources=[manifest], backup_paths=[manifest])

        # Option 3: Explicit calls (what the command line does across processes)
        txn = manager.begin("FILE_UPDATE", [manifest])
        manager.backup_file(txn.id, manifest)
        manager.commit(txn.id)
    """

    def __init__(
        self,
        config: Optional[GuardConfig] = None,
        logger: Optional[GuardLogger] = None,
        notifier=None
    ):
        """
        Initialize the transaction manager.

        Args:
            config: Configuration settings (uses global config if None)
            logger: Event logger (reuses configured handlers if None)
            notifier: Optional object with transaction_state_changed(txn)
        """
        self.config = config or get_config()
        self.logger = logger or get_event_logger()
        self.notifier = notifier
        self.log = TransactionLog(self.config.transaction_log_path)

        # Built on first use so a disabled manager never touches the state directory
        self._backups: Optional[BackupStore] = None
        self._locks: Optional[LockTable] = None
        self._lock = threading.RLock()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def backups(self) -> BackupStore:
        if self._backups is None:
            self._backups = BackupStore(self.config.backup_directory)
        return self._backups

    @property
    def locks(self) -> LockTable:
        if self._locks is None:
            self._locks = LockTable(
                self.config.lock_directory,
                poll_interval=self.config.transactions.lock_poll_interval_ms / 1000.0
            )
        return self._locks

    # =========================================================================
    # Helpers
    # =========================================================================

    def _lock_timeout(self, timeout: Optional[float]) -> float:
        if timeout is not None:
            return timeout
        return self.config.transactions.lock_timeout_ms / 1000.0

    def _is_stale(self, info: LockInfo) -> bool:
        if self.log.is_open(info.txn_id):
            return False
        return info.age > LOCK_SETTLE_SECONDS

    def _resolve(self, txn: TransactionRef) -> Transaction:
        if isinstance(txn, Transaction):
            return txn
        if not self.enabled:
            return Transaction(id=txn, kind="UNKNOWN", status=TransactionStatus.OPEN,
                               started_at=datetime.now().isoformat())
        return self.log.load(txn)

    @staticmethod
    def _require_open(txn: Transaction, operation: str) -> None:
        if not txn.is_open:
            raise TransactionStateError(
                f"Cannot {operation} transaction {txn.id}: it is {txn.status.value}"
            )

    def _notify(self, txn: Transaction) -> None:
        if self.notifier is not None:
            self.notifier.transaction_state_changed(txn)

    @staticmethod
    def owner_alive(txn: Transaction) -> bool:
        """Whether the process that owns a transaction is still running."""
        if not txn.owner_pid:
            return False
        return psutil.pid_exists(txn.owner_pid)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def begin(
        self,
        kind: str,
        resources: Iterable[str] = (),
        owner_pid: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> Transaction:
        """
        Open a transaction and lock its resources.

        Args:
            kind: Caller label such as FILE_UPDATE, FILE_DELETE or REPAIR
            resources: Paths the transaction intends to touch
            owner_pid: Process whose exit marks the transaction abandoned
                (defaults to the current process)
            timeout: Seconds to wait for the locks (defaults to LOCK_TIMEOUT_MS)

        Returns:
            The open transaction

        Raises:
            ConfigError: If kind is empty
            ResourceBusy: If a lock cannot be acquired in time
        """
        if not kind or not kind.strip():
            raise ConfigError("Transaction kind must not be empty")

        txn_id = new_transaction_id()
        owner = owner_pid if owner_pid is not None else os.getpid()
        paths = sorted({canonical_path(r) for r in resources})

        if not self.enabled:
            return Transaction(id=txn_id, kind=kind, status=TransactionStatus.OPEN,
                               started_at=datetime.now().isoformat(),
                               resources=paths, owner_pid=owner)

        self.locks.acquire(paths, txn_id, owner, self._lock_timeout(timeout), self._is_stale)

        record = LogRecord(txn_id, EventType.BEGIN.value, kind=kind,
                           detail={"resources": paths, "owner_pid": owner})
        try:
            offset = self.log.append(record)
        except OSError:
            self.locks.release(txn_id)
            raise

        txn = Transaction(
            id=txn_id,
            kind=kind,
            status=TransactionStatus.OPEN,
            started_at=record.timestamp,
            log_offset=offset,
            resources=paths,
            owner_pid=owner,
        )
        self.logger.event("BEGIN", f"{txn_id} ({kind}) locked {len(paths)} resource(s)")
        self._notify(txn)
        return txn

    def backup_file(
        self,
        txn: TransactionRef,
        path: str,
        optional: bool = False,
        timeout: Optional[float] = None
    ) -> BackupHandle:
        """
        Back up a file before the transaction mutates it.

        A path not declared at begin() is locked here with the same bounded
        wait. Backing up the same path twice returns the first handle.

        Args:
            txn: Transaction or its id
            path: File about to be mutated or deleted
            optional: The file may not exist yet (rollback deletes it)
            timeout: Seconds to wait for a lazily acquired lock

        Returns:
            The backup handle

        Raises:
            TransactionStateError: If the transaction is not open
            ResourceBusy: If a lazily acquired lock is held elsewhere
            BackupFailure: If the copy cannot be made
        """
        txn = self._resolve(txn)
        self._require_open(txn, "back up a file in")
        key = canonical_path(path)

        if not self.enabled:
            return BackupHandle(txn.id, key, None, os.path.exists(key))

        existing = txn.handle_for(key)
        if existing is not None:
            self.locks.touch(txn.id)
            return existing

        newly_locked = key not in txn.resources
        if newly_locked:
            self.locks.acquire([key], txn.id, txn.owner_pid or os.getpid(),
                               self._lock_timeout(timeout), self._is_stale)

        with self._lock:
            handle = self.backups.backup(txn.id, key, optional=optional)
            detail = {"handle": handle.to_dict()}
            if newly_locked:
                detail["resource"] = key
            self.log.append(LogRecord(txn.id, EventType.BACKUP.value, detail=detail))
            txn.backed_up_files.append(handle)
            if newly_locked:
                txn.resources.append(key)

        self.locks.touch(txn.id)
        self.logger.event("BACKUP", f"{txn.id} saved {key}")
        return handle

    def write_file(self, txn: TransactionRef, path: str, data: Union[str, bytes]) -> BackupHandle:
        """
        Back up a file, then replace its content atomically.

        Args:
            txn: Transaction or its id
            path: File to write (created if missing)
            data: New content; str is written as UTF-8

        Returns:
            The backup handle covering the write
        """
        handle = self.backup_file(txn, path, optional=True)
        target = Path(canonical_path(path))
        payload = data.encode("utf-8") if isinstance(data, str) else data

        tmp_path = target.parent / f".{target.name}.tmp-{uuid.uuid4().hex[:8]}"
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(tmp_path, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            if target.exists():
                os.chmod(tmp_path, target.stat().st_mode & 0o7777)
            os.replace(tmp_path, target)
        finally:
            tmp_path.unlink(missing_ok=True)
        return handle

    def delete_file(self, txn: TransactionRef, path: str) -> BackupHandle:
        """Back up a file, then delete it."""
        handle = self.backup_file(txn, path)
        Path(canonical_path(path)).unlink()
        return handle

    def commit(self, txn: TransactionRef) -> Transaction:
        """
        Finalize a transaction, keeping its backups for the retention window.

        Raises:
            TransactionStateError: If the transaction is not open
        """
        txn = self._resolve(txn)
        with self._lock:
            self._require_open(txn, "commit")
            if not self.enabled:
                txn.status = TransactionStatus.COMMITTED
                return txn

            record = LogRecord(txn.id, EventType.COMMIT.value,
                               detail={"files": len(txn.backed_up_files)})
            self.log.append(record)
            txn.status = TransactionStatus.COMMITTED
            txn.ended_at = record.timestamp

        self.backups.mark_ended(txn.id, TransactionStatus.COMMITTED)
        self.locks.release(txn.id)
        self.logger.event("COMMIT", f"{txn.id} committed {len(txn.backed_up_files)} file(s)")
        self._notify(txn)
        return txn

    def rollback(self, txn: TransactionRef, reason: str = "") -> Transaction:
        """
        Restore every backed-up file in reverse backup order.

        Every restore is attempted even after one fails. If any fails the
        transaction is FAILED, its backups are kept for manual recovery and
        RestoreFailure names exactly the files that were not restored.

        Raises:
            TransactionStateError: If the transaction is not open
            RestoreFailure: If any file could not be restored
        """
        txn = self._resolve(txn)
        with self._lock:
            self._require_open(txn, "roll back")
            if not self.enabled:
                txn.status = TransactionStatus.ROLLED_BACK
                return txn

            failed: List[str] = []
            errors: List[str] = []
            for handle in reversed(txn.backed_up_files):
                try:
                    self.backups.restore(handle)
                except RestoreFailure as e:
                    failed.extend(e.failed_paths)
                    errors.append(e.reason)
                    self.logger.event("FAIL", f"{txn.id} could not restore {handle.original_path}: {e.reason}",
                                      level=logging.ERROR)

            if failed:
                record = LogRecord(txn.id, EventType.FAIL.value,
                                   detail={"reason": reason, "unrestored": failed, "errors": errors})
                self.log.append(record)
                txn.status = TransactionStatus.FAILED
                txn.ended_at = record.timestamp
            else:
                record = LogRecord(txn.id, EventType.ROLLBACK.value,
                                   detail={"reason": reason, "restored": len(txn.backed_up_files)})
                self.log.append(record)
                txn.status = TransactionStatus.ROLLED_BACK
                txn.ended_at = record.timestamp

        self.locks.release(txn.id)
        self._notify(txn)

        if failed:
            self.logger.event(
                "MANUAL_INTERVENTION_REQUIRED",
                f"{txn.id} FAILED; restore manually from {self.config.backup_directory}",
                level=logging.ERROR
            )
            raise RestoreFailure(txn.id, failed, "; ".join(errors))

        self.backups.mark_ended(txn.id, TransactionStatus.ROLLED_BACK)
        self.logger.event("ROLLBACK", f"{txn.id} rolled back" + (f": {reason}" if reason else ""))
        return txn

    @contextmanager
    def transaction(
        self,
        kind: str,
        resources: Iterable[str] = (),
        owner_pid: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> Iterator[Transaction]:
        """
        Context manager that commits on success and rolls back on error.

        Raises:
            MutationFailure: If the block raised (after rolling back)
            BackupFailure, ResourceBusy: Propagated after rolling back
            RestoreFailure: If the rollback itself failed
        """
        txn = self.begin(kind, resources, owner_pid=owner_pid, timeout=timeout)
        if not self.enabled:
            yield txn
            return

        try:
            yield txn
        except (BackupFailure, ResourceBusy) as e:
            if txn.is_open:
                self.rollback(txn, reason=str(e))
            raise
        except Exception as e:
            if txn.is_open:
                self.rollback(txn, reason=str(e))
            raise MutationFailure(txn.id, e) from e
        else:
            if txn.is_open:
                self.commit(txn)

    def run(
        self,
        kind: str,
        mutation: Callable[[Transaction], Any],
        resources: Iterable[str] = (),
        backup_paths: Iterable[str] = ()
    ) -> Any:
        """
        Run a callback inside a transaction.

        Every path in backup_paths is backed up (optionally, so new files
        are removed on rollback) before the callback runs.

        Returns:
            Whatever the callback returns
        """
        with self.transaction(kind, resources) as txn:
            for path in backup_paths:
                self.backup_file(txn, path, optional=True)
            return mutation(txn)

    # =========================================================================
    # Recovery and maintenance
    # =========================================================================

    def recover(self) -> List[Transaction]:
        """
        Roll back open transactions whose owner process is gone.

        Every candidate is attempted; if any restore fails, RestoreFailure
        is raised after the sweep naming every unrestored file.

        Returns:
            Transactions that were rolled back
        """
        if not self.enabled:
            return []

        recovered: List[Transaction] = []
        failures: List[RestoreFailure] = []
        for txn in self.log.list_open_transactions(self.config.transactions.recovery_window):
            if self.owner_alive(txn):
                continue
            self.logger.event("RECOVER", f"{txn.id} ({txn.kind}) was left open by pid {txn.owner_pid}")
            try:
                self.rollback(txn, reason="owner process exited before finishing")
            except RestoreFailure as e:
                failures.append(e)
                continue
            recovered.append(txn)

        if failures:
            paths = [p for f in failures for p in f.failed_paths]
            ids = ", ".join(f.transaction_id for f in failures)
            raise RestoreFailure(ids, paths, "recovery could not restore every file")
        return recovered

    def expire_idle(self) -> List[Transaction]:
        """
        Auto-commit abandoned transactions (best-effort escape hatch).

        Only active when AUTO_COMMIT_DELAY_MS is positive. A transaction is
        committed only if its heartbeat is older than the delay and its
        owner process is no longer running.

        Returns:
            Transactions that were auto-committed
        """
        delay_ms = self.config.transactions.auto_commit_delay_ms
        if not self.enabled or delay_ms <= 0:
            return []

        committed: List[Transaction] = []
        for txn in self.log.list_open_transactions(self.config.transactions.recovery_window):
            idle = self.locks.heartbeat_age(txn.id)
            if idle is None:
                started = datetime.fromisoformat(txn.started_at)
                idle = (datetime.now() - started).total_seconds()
            if idle * 1000 < delay_ms or self.owner_alive(txn):
                continue
            self.commit(txn)
            self.logger.event("AUTO_COMMIT", f"{txn.id} idle for {idle:.1f}s with no live owner")
            committed.append(txn)
        return committed

    def startup(self) -> None:
        """Resolve transactions left behind by earlier processes."""
        self.expire_idle()
        self.recover()

    def heartbeat(self, txn: TransactionRef) -> None:
        """Refresh the lock heartbeat of a long-running transaction."""
        txn = self._resolve(txn)
        self._require_open(txn, "refresh")
        if self.enabled:
            self.locks.touch(txn.id)

    def load(self, txn_id: str) -> Transaction:
        return self.log.load(txn_id)

    def list_open(self) -> List[Transaction]:
        if not self.enabled:
            return []
        return self.log.list_open_transactions(self.config.transactions.recovery_window)

    def current_status(self, resource: str) -> ResourceStatus:
        """Status of a resource derived from the transaction log."""
        return self.log.current_status(resource)

    def record_repair(self, txn_id: str, detail: dict) -> None:
        """Summarize a processed integrity issue in the log."""
        if self.enabled:
            self.log.append(LogRecord(txn_id, EventType.REPAIR.value, detail=detail))

    def prune_backups(self, older_than_days: Optional[int] = None) -> List[str]:
        """
        Delete backups past the retention window.

        Args:
            older_than_days: Retention in days (defaults to KEEP_BACKUP_DAYS)

        Returns:
            Ids of transactions whose backups were removed
        """
        if not self.enabled:
            return []
        days = self.config.backups.keep_backup_days if older_than_days is None else older_than_days
        protected = [t.id for t in self.log.list_open_transactions()]
        return self.backups.prune(days, protected_ids=protected)
