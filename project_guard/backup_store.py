"""
Backup Store for Project Guard
==============================

Preserves a byte-exact copy of every file before a transaction mutates or
deletes it, and restores it on rollback.

Layout:
-------
    <backups>/
        20250122_080000_txn_20250122T080000Z_1a2b3c4d/
            backup.json            # handles, status, ended_at
            0000_project.pbxproj   # copies, numbered in backup order
            0001_Info.plist

A file that did not exist when it was backed up gets a placeholder handle
with no copy; restoring it deletes whatever the transaction created.
"""

import json
import logging
import os
import shutil
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import BackupFailure, BackupNotFound, RestoreFailure
from .models import BackupHandle, TransactionStatus, canonical_path

logger = logging.getLogger(__name__)

METADATA_FILE = "backup.json"


class BackupStore:
    """
    Per-transaction file copies with retention-based pruning.

    Usage:
        store = BackupStore(Path(".vscode-xcode-integration/backups"))
        handle = store.backup(txn_id, "App.xcodeproj/project.pbxproj")
        ...
        store.restore(handle)
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    # =========================================================================
    # Layout helpers
    # =========================================================================

    def _find_transaction_dir(self, txn_id: str) -> Optional[Path]:
        matches = sorted(self.root.glob(f"*_{txn_id}"))
        return matches[0] if matches else None

    def _transaction_dir(self, txn_id: str) -> Path:
        existing = self._find_transaction_dir(txn_id)
        if existing is not None:
            return existing
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = self.root / f"{timestamp}_{txn_id}"
        path.mkdir(parents=True, exist_ok=True)
        self._write_metadata(path, {
            "transaction_id": txn_id,
            "created_at": datetime.now().isoformat(),
            "ended_at": None,
            "status": TransactionStatus.OPEN.value,
            "handles": [],
        })
        return path

    @staticmethod
    def _read_metadata(txn_dir: Path) -> Dict[str, Any]:
        with open(txn_dir / METADATA_FILE, "r", encoding="utf-8") as f:
            return json.load(f)

    @staticmethod
    def _write_metadata(txn_dir: Path, metadata: Dict[str, Any]) -> None:
        tmp_path = txn_dir / f".{METADATA_FILE}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(metadata, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, txn_dir / METADATA_FILE)

    # =========================================================================
    # Backup / restore
    # =========================================================================

    def backup(self, txn_id: str, path: str, optional: bool = False) -> BackupHandle:
        """
        Copy a file into the transaction's backup directory.

        Args:
            txn_id: Owning transaction
            path: File about to be mutated or deleted
            optional: Record absence instead of failing when the file is missing

        Returns:
            BackupHandle for restoring the file

        Raises:
            BackupNotFound: If the file is missing and not optional
            BackupFailure: If the copy cannot be made
        """
        original = canonical_path(path)
        source = Path(original)

        if not source.exists():
            if not optional:
                raise BackupNotFound(original, "file does not exist")
            handle = BackupHandle(txn_id, original, None, False)
            self._record_handle(txn_id, handle)
            logger.debug("Recorded absence of %s for %s", original, txn_id)
            return handle

        if source.is_dir():
            raise BackupFailure(original, "directories cannot be backed up")

        try:
            txn_dir = self._transaction_dir(txn_id)
            index = len(self._read_metadata(txn_dir)["handles"])
            destination = txn_dir / f"{index:04d}_{source.name}"
            shutil.copy2(original, destination)
            with open(destination, "rb") as f:
                os.fsync(f.fileno())
        except OSError as e:
            raise BackupFailure(original, str(e))

        handle = BackupHandle(txn_id, original, str(destination), True)
        self._record_handle(txn_id, handle)
        logger.debug("Backed up %s to %s", original, destination)
        return handle

    def _record_handle(self, txn_id: str, handle: BackupHandle) -> None:
        try:
            txn_dir = self._transaction_dir(txn_id)
            metadata = self._read_metadata(txn_dir)
            metadata["handles"].append(handle.to_dict())
            self._write_metadata(txn_dir, metadata)
        except OSError as e:
            raise BackupFailure(handle.original_path, f"cannot record backup metadata: {e}")

    def restore(self, handle: BackupHandle) -> None:
        """
        Put a file back the way it was when it was backed up.

        Restoring the same handle twice leaves the same state as once.

        Args:
            handle: Handle returned by backup()

        Raises:
            RestoreFailure: If the file cannot be restored
        """
        target = Path(handle.original_path)

        if not handle.original_existed:
            try:
                if target.is_dir() and not target.is_symlink():
                    shutil.rmtree(target)
                else:
                    target.unlink(missing_ok=True)
            except OSError as e:
                raise RestoreFailure(handle.transaction_id, [str(target)], str(e))
            logger.debug("Removed %s (did not exist before %s)", target, handle.transaction_id)
            return

        source = Path(handle.backup_path) if handle.backup_path else None
        if source is None or not source.exists():
            raise RestoreFailure(handle.transaction_id, [str(target)], "backup copy is missing")

        tmp_path = target.parent / f".{target.name}.restore-{uuid.uuid4().hex[:8]}"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, tmp_path)
            os.replace(tmp_path, target)
        except OSError as e:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Could not remove temporary restore file %s", tmp_path)
            raise RestoreFailure(handle.transaction_id, [str(target)], str(e))

        logger.debug("Restored %s from %s", target, source)

    # =========================================================================
    # Lifecycle and retention
    # =========================================================================

    def handles_for(self, txn_id: str) -> List[BackupHandle]:
        """Return the handles recorded for a transaction, in backup order."""
        txn_dir = self._find_transaction_dir(txn_id)
        if txn_dir is None:
            return []
        return [BackupHandle.from_dict(h) for h in self._read_metadata(txn_dir)["handles"]]

    def mark_ended(self, txn_id: str, status: TransactionStatus) -> None:
        """Stamp a transaction's backups with its end time, starting the retention clock."""
        txn_dir = self._find_transaction_dir(txn_id)
        if txn_dir is None:
            return
        metadata = self._read_metadata(txn_dir)
        metadata["ended_at"] = datetime.now().isoformat()
        metadata["status"] = status.value
        self._write_metadata(txn_dir, metadata)

    def prune(self, older_than_days: int, protected_ids: Iterable[str] = ()) -> List[str]:
        """
        Delete backups of transactions that ended more than N days ago.

        Backups without an end time (open or crash-interrupted transactions),
        of FAILED transactions (needed for manual recovery), or whose id is
        protected are never pruned.

        Args:
            older_than_days: Retention window in days
            protected_ids: Transaction ids that must be kept

        Returns:
            Ids of transactions whose backups were removed
        """
        protected = set(protected_ids)
        cutoff = datetime.now() - timedelta(days=older_than_days)
        removed: List[str] = []

        for txn_dir in sorted(self.root.iterdir()):
            if not txn_dir.is_dir():
                continue
            try:
                metadata = self._read_metadata(txn_dir)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Skipping unreadable backup directory %s: %s", txn_dir, e)
                continue

            txn_id = metadata.get("transaction_id")
            ended_at = metadata.get("ended_at")
            if txn_id in protected or not ended_at:
                continue
            if metadata.get("status") == TransactionStatus.FAILED.value:
                continue
            if datetime.fromisoformat(ended_at) > cutoff:
                continue

            shutil.rmtree(txn_dir)
            removed.append(txn_id)
            logger.info("Pruned backups of %s (ended %s)", txn_id, ended_at)

        return removed
