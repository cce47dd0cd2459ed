"""
Resource Locks for Project Guard
================================

Advisory, path-keyed lock files that keep two transactions from touching the
same resource at once, across processes.

Each canonical resource path maps to one lock file under the lock directory,
named by the SHA-256 of the path. A lock is taken by creating that file with
O_CREAT|O_EXCL and writing ``{path, txn_id, pid, acquired_at}`` into it; the
file's mtime is the owner's heartbeat.

Deadlock prevention:
    - Locks are always acquired in sorted path order
    - Every wait is bounded by a deadline and ends in ResourceBusy
    - Stale locks (owner transaction no longer open) are broken before waiting
"""

import hashlib
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from .errors import ResourceBusy
from .models import canonical_path

logger = logging.getLogger(__name__)

# A lock file whose content is not readable yet is being written by its
# creator; only treat it as abandoned after this long.
INCOMPLETE_LOCK_GRACE_SECONDS = 5.0


@dataclass
class LockInfo:
    """Contents and heartbeat of one lock file."""
    path: str
    txn_id: Optional[str]
    pid: Optional[int]
    acquired_at: Optional[str]
    lock_file: Path
    heartbeat: float

    @property
    def age(self) -> float:
        """Seconds since the owner last refreshed the lock."""
        return max(0.0, time.time() - self.heartbeat)

    @property
    def is_complete(self) -> bool:
        return self.txn_id is not None


class LockTable:
    """
    Filesystem-visible lock table shared by every process.

    Usage:
        locks = LockTable(Path(".vscode-xcode-integration/locks"))
        locks.acquire(["App.xcodeproj/project.pbxproj"], txn_id, os.getpid(), timeout=5.0)
        try:
            ...
        finally:
            locks.release(txn_id)
    """

    def __init__(self, lock_dir: Path, poll_interval: float = 0.05, create: bool = True):
        """
        Initialize the lock table.

        Args:
            lock_dir: Directory holding the lock files
            poll_interval: Seconds between attempts while waiting
            create: Create the directory if it does not exist
        """
        self.lock_dir = Path(lock_dir)
        self.poll_interval = poll_interval
        if create:
            self.lock_dir.mkdir(parents=True, exist_ok=True)

    def lock_file_for(self, path: str) -> Path:
        digest = hashlib.sha256(canonical_path(path).encode("utf-8")).hexdigest()
        return self.lock_dir / f"{digest}.lock"

    # =========================================================================
    # Reading
    # =========================================================================

    def _read(self, lock_file: Path) -> Optional[LockInfo]:
        try:
            heartbeat = lock_file.stat().st_mtime
            with open(lock_file, "r", encoding="utf-8") as f:
                content = f.read()
        except FileNotFoundError:
            return None

        try:
            data = json.loads(content)
            return LockInfo(
                path=data["path"],
                txn_id=data["txn_id"],
                pid=data.get("pid"),
                acquired_at=data.get("acquired_at"),
                lock_file=lock_file,
                heartbeat=heartbeat,
            )
        except (json.JSONDecodeError, KeyError, TypeError):
            return LockInfo("", None, None, None, lock_file, heartbeat)

    def owner_of(self, path: str) -> Optional[LockInfo]:
        """Return the current holder of a resource's lock, if any."""
        return self._read(self.lock_file_for(path))

    def holders(self) -> List[LockInfo]:
        """Return every lock currently on disk, sorted by resource path."""
        if not self.lock_dir.exists():
            return []
        found = []
        for lock_file in self.lock_dir.glob("*.lock"):
            info = self._read(lock_file)
            if info is not None:
                found.append(info)
        return sorted(found, key=lambda i: i.path)

    def held_by(self, txn_id: str) -> List[LockInfo]:
        return [info for info in self.holders() if info.txn_id == txn_id]

    def heartbeat_age(self, txn_id: str) -> Optional[float]:
        """Seconds since the transaction last refreshed any of its locks."""
        ages = [info.age for info in self.held_by(txn_id)]
        return min(ages) if ages else None

    # =========================================================================
    # Acquire / release
    # =========================================================================

    def _try_create(self, path: str, txn_id: str, pid: int) -> bool:
        lock_file = self.lock_file_for(path)
        try:
            fd = os.open(str(lock_file), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False

        payload = json.dumps({
            "path": path,
            "txn_id": txn_id,
            "pid": pid,
            "acquired_at": datetime.now().isoformat(),
        })
        try:
            os.write(fd, payload.encode("utf-8"))
            os.fsync(fd)
        finally:
            os.close(fd)
        return True

    def _break(self, info: LockInfo) -> None:
        """Remove an abandoned lock without clobbering a fresh one."""
        tombstone = info.lock_file.with_name(f"{info.lock_file.name}.stale-{uuid.uuid4().hex[:8]}")
        try:
            os.rename(info.lock_file, tombstone)
        except FileNotFoundError:
            return

        moved = self._read(tombstone)
        if moved is not None and moved.txn_id != info.txn_id:
            # Someone re-acquired between our read and the rename; put it back
            try:
                os.link(tombstone, info.lock_file)
            except FileExistsError:
                logger.warning("Lock for %s changed hands while breaking it", info.path)
        tombstone.unlink(missing_ok=True)
        logger.info("Broke stale lock on %s (held by %s)", info.path, info.txn_id)

    def _acquire_one(
        self,
        path: str,
        txn_id: str,
        pid: int,
        deadline: float,
        started: float,
        is_stale: Optional[Callable[[LockInfo], bool]],
    ) -> None:
        while True:
            if self._try_create(path, txn_id, pid):
                logger.debug("Locked %s for %s", path, txn_id)
                return

            info = self.owner_of(path)
            if info is None:
                # Released between our attempt and the read
                continue
            if info.txn_id == txn_id:
                return
            if self._abandoned(info, is_stale):
                self._break(info)
                continue

            if time.monotonic() >= deadline:
                raise ResourceBusy(path, holder=info.txn_id, waited=time.monotonic() - started)

            time.sleep(self.poll_interval)

    @staticmethod
    def _abandoned(info: LockInfo, is_stale: Optional[Callable[[LockInfo], bool]]) -> bool:
        if not info.is_complete:
            return info.age > INCOMPLETE_LOCK_GRACE_SECONDS
        return bool(is_stale and is_stale(info))

    def acquire(
        self,
        paths: Iterable[str],
        txn_id: str,
        pid: int,
        timeout: float,
        is_stale: Optional[Callable[[LockInfo], bool]] = None,
    ) -> List[str]:
        """
        Lock every path for a transaction, in sorted order.

        Args:
            paths: Resource paths to lock
            txn_id: Owning transaction
            pid: Owner process recorded in the lock file
            timeout: Seconds to wait across all locks before giving up
            is_stale: Predicate deciding whether an existing lock may be broken

        Returns:
            Canonical paths that are now locked

        Raises:
            ResourceBusy: If any lock cannot be acquired in time; locks taken
                by this call are released first
        """
        ordered = sorted({canonical_path(p) for p in paths})
        started = time.monotonic()
        deadline = started + max(0.0, timeout)
        acquired: List[str] = []

        try:
            for path in ordered:
                already_held = self._owned(path, txn_id)
                self._acquire_one(path, txn_id, pid, deadline, started, is_stale)
                if not already_held:
                    acquired.append(path)
        except ResourceBusy:
            for path in acquired:
                self._release_path(path, txn_id)
            raise

        return ordered

    def _owned(self, path: str, txn_id: str) -> bool:
        info = self.owner_of(path)
        return info is not None and info.txn_id == txn_id

    def _release_path(self, path: str, txn_id: str) -> None:
        info = self.owner_of(path)
        if info is not None and info.txn_id == txn_id:
            info.lock_file.unlink(missing_ok=True)

    def release(self, txn_id: str) -> List[str]:
        """
        Release every lock held by a transaction.

        Returns:
            Resource paths that were unlocked
        """
        released = []
        for info in self.held_by(txn_id):
            info.lock_file.unlink(missing_ok=True)
            released.append(info.path)
            logger.debug("Unlocked %s for %s", info.path, txn_id)
        return released

    def touch(self, txn_id: str) -> None:
        """Refresh the heartbeat of every lock held by a transaction."""
        for info in self.held_by(txn_id):
            try:
                os.utime(info.lock_file, None)
            except FileNotFoundError:
                logger.warning("Lock on %s vanished while %s held it", info.path, txn_id)

    def probe(
        self,
        path: str,
        timeout: float,
        is_stale: Optional[Callable[[LockInfo], bool]] = None,
    ) -> Optional[LockInfo]:
        """
        Wait briefly for a resource to become free without taking its lock.

        Args:
            path: Resource path
            timeout: Seconds to wait
            is_stale: Predicate for locks that should be ignored

        Returns:
            The live holder if the resource is still locked after the wait
        """
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            info = self.owner_of(path)
            if info is None or self._abandoned(info, is_stale):
                return None
            if time.monotonic() >= deadline:
                return info
            time.sleep(self.poll_interval)
