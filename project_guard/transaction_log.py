"""
Transaction Log for Project Guard
=================================

Append-only, durable record of transaction lifecycle events. It is the
single source of truth for which transactions are open, what they backed
up, and what state a resource is in.

Log format: one JSON object per line (JSONL)
```
{"txn_id": "txn_...", "event": "BEGIN", "timestamp": "...", "kind": "FILE_UPDATE", "pid": 123, "detail": {...}}
```

Durability: each append is written under an exclusive flock, flushed and
fsynced before returning, so a crash leaves a consistent prefix. A torn
final line (crash mid-write) is skipped when reading and terminated before
the next append.

Recovery: BEGIN records with no COMMIT/ROLLBACK/FAIL are the transactions
interrupted by a crash.
"""

import fcntl
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import TransactionNotFound
from .models import (
    BackupHandle, ResourceStatus, Transaction, TransactionStatus, canonical_path
)

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of records in the transaction log."""
    BEGIN = "BEGIN"
    BACKUP = "BACKUP"
    COMMIT = "COMMIT"
    ROLLBACK = "ROLLBACK"
    FAIL = "FAIL"
    REPAIR = "REPAIR"


TERMINAL_EVENTS = {
    EventType.COMMIT.value: TransactionStatus.COMMITTED,
    EventType.ROLLBACK.value: TransactionStatus.ROLLED_BACK,
    EventType.FAIL.value: TransactionStatus.FAILED,
}


@dataclass
class LogRecord:
    """A single record in the transaction log."""
    txn_id: str
    event: str                          # Value of EventType
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    kind: Optional[str] = None          # Transaction kind (BEGIN records)
    pid: Optional[int] = field(default_factory=os.getpid)
    detail: Dict[str, Any] = field(default_factory=dict)
    offset: int = -1                    # Byte offset in the log, not serialized

    def to_json(self) -> str:
        """Serialize to a single JSON line (no trailing newline)."""
        return json.dumps({
            "txn_id": self.txn_id,
            "event": self.event,
            "timestamp": self.timestamp,
            "kind": self.kind,
            "pid": self.pid,
            "detail": self.detail,
        }, ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_json(cls, line: str, offset: int = -1) -> "LogRecord":
        data = json.loads(line)
        return cls(
            txn_id=data["txn_id"],
            event=data["event"],
            timestamp=data["timestamp"],
            kind=data.get("kind"),
            pid=data.get("pid"),
            detail=data.get("detail") or {},
            offset=offset,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = json.loads(self.to_json())
        data["offset"] = self.offset
        return data


class TransactionLog:
    """
    Append-only transaction journal shared by every process.

    Usage:
        log = TransactionLog(Path(".vscode-xcode-integration/logs/transactions.jsonl"))
        offset = log.append(LogRecord(txn_id, EventType.BEGIN.value, kind="FILE_UPDATE"))
        for txn in log.list_open_transactions():
            ...
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, record: LogRecord) -> int:
        """
        Append a record durably.

        Args:
            record: The record to write

        Returns:
            Byte offset at which the record begins
        """
        line = (record.to_json() + "\n").encode("utf-8")

        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Read access is needed to inspect the last byte of the tail
            with open(self.path, "a+b") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    f.seek(0, os.SEEK_END)
                    offset = f.tell()
                    if offset > 0 and not self._ends_with_newline(f.fileno(), offset):
                        # Terminate a torn record left by a crashed writer
                        f.write(b"\n")
                        offset += 1
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)

        record.offset = offset
        logger.debug("Logged %s for %s at offset %d", record.event, record.txn_id, offset)
        return offset

    @staticmethod
    def _ends_with_newline(fd: int, size: int) -> bool:
        return os.pread(fd, 1, size - 1) == b"\n"

    def size(self) -> int:
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0

    def records(self, since_offset: int = 0) -> List[LogRecord]:
        """
        Read records from the log.

        Args:
            since_offset: Byte offset to start reading from

        Returns:
            Records in append order; malformed lines are skipped
        """
        if not self.path.exists():
            return []

        records: List[LogRecord] = []
        with open(self.path, "rb") as f:
            f.seek(since_offset)
            offset = since_offset
            for raw in f:
                line_offset = offset
                offset += len(raw)
                text = raw.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    records.append(LogRecord.from_json(text, offset=line_offset))
                except (json.JSONDecodeError, KeyError, TypeError) as e:
                    logger.warning(
                        "Skipping malformed transaction log record at offset %d: %s",
                        line_offset, e
                    )
        return records

    def tail(self, n: int = 20) -> List[LogRecord]:
        """Return the last n records for display."""
        if n <= 0:
            return []
        return self.records()[-n:]

    def transactions(self, records: Optional[Iterable[LogRecord]] = None) -> Dict[str, Transaction]:
        """
        Fold log records into transactions, keyed by id in BEGIN order.

        Args:
            records: Records to fold (defaults to the whole log)
        """
        if records is None:
            records = self.records()

        folded: Dict[str, Transaction] = {}
        for record in records:
            if record.event == EventType.BEGIN.value:
                folded[record.txn_id] = Transaction(
                    id=record.txn_id,
                    kind=record.kind or "UNKNOWN",
                    status=TransactionStatus.OPEN,
                    started_at=record.timestamp,
                    log_offset=record.offset,
                    resources=list(record.detail.get("resources", [])),
                    owner_pid=record.detail.get("owner_pid", record.pid),
                )
                continue

            txn = folded.get(record.txn_id)
            if txn is None:
                continue

            if record.event == EventType.BACKUP.value:
                handle = BackupHandle.from_dict(record.detail["handle"])
                if txn.handle_for(handle.original_path) is None:
                    txn.backed_up_files.append(handle)
                resource = record.detail.get("resource")
                if resource and resource not in txn.resources:
                    txn.resources.append(resource)
            elif record.event in TERMINAL_EVENTS and txn.is_open:
                txn.status = TERMINAL_EVENTS[record.event]
                txn.ended_at = record.timestamp

        return folded

    def list_open_transactions(self, window: Optional[int] = None) -> List[Transaction]:
        """
        Find transactions with a BEGIN but no terminal record.

        Args:
            window: Only scan the last N records (None scans the whole log)

        Returns:
            Open transactions in the order they began
        """
        records = self.records()
        if window is not None:
            records = records[-window:]
        return [t for t in self.transactions(records).values() if t.is_open]

    def load(self, txn_id: str) -> Transaction:
        """
        Rebuild a single transaction from its records.

        Raises:
            TransactionNotFound: If the log has no BEGIN for txn_id
        """
        records = [r for r in self.records() if r.txn_id == txn_id]
        txn = self.transactions(records).get(txn_id)
        if txn is None:
            raise TransactionNotFound(f"Unknown transaction: {txn_id}")
        return txn

    def is_open(self, txn_id: str) -> bool:
        try:
            return self.load(txn_id).is_open
        except TransactionNotFound:
            return False

    def current_status(self, resource: str) -> ResourceStatus:
        """
        Derive the status of a resource from the latest transaction touching it.

        Args:
            resource: File path of the resource

        Returns:
            ACTIVE while a transaction holds it, ERROR if the latest one
            FAILED, READY otherwise
        """
        key = canonical_path(resource)
        for txn in reversed(list(self.transactions().values())):
            if key not in txn.touched_paths():
                continue
            if txn.status is TransactionStatus.OPEN:
                return ResourceStatus.ACTIVE
            if txn.status is TransactionStatus.FAILED:
                return ResourceStatus.ERROR
            return ResourceStatus.READY
        return ResourceStatus.READY
