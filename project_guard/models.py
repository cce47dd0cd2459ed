"""Transaction-related data models and enums."""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class TransactionStatus(Enum):
    """Enumeration of possible transaction states."""

    OPEN = "OPEN"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.OPEN


class ResourceStatus(Enum):
    """Status of a resource as shown by status indicators."""

    READY = "READY"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"


def canonical_path(path) -> str:
    """Absolute, symlink-resolved form of a path used as a lock/backup key."""
    return os.path.realpath(os.path.abspath(os.fspath(path)))


@dataclass
class BackupHandle:
    """A preserved copy of one file (or a record of its absence)."""

    transaction_id: str
    original_path: str
    backup_path: Optional[str]
    original_existed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "original_path": self.original_path,
            "backup_path": self.backup_path,
            "original_existed": self.original_existed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupHandle":
        return cls(
            transaction_id=data["transaction_id"],
            original_path=data["original_path"],
            backup_path=data.get("backup_path"),
            original_existed=bool(data["original_existed"]),
        )


@dataclass
class Transaction:
    """A bounded, atomic unit of file mutation with backup-based rollback."""

    id: str
    kind: str
    status: TransactionStatus
    started_at: str
    ended_at: Optional[str] = None
    backed_up_files: List[BackupHandle] = field(default_factory=list)
    log_offset: int = 0
    resources: List[str] = field(default_factory=list)
    owner_pid: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.status is TransactionStatus.OPEN

    def handle_for(self, path: str) -> Optional[BackupHandle]:
        """Return the backup handle already recorded for a path, if any."""
        key = canonical_path(path)
        for handle in self.backed_up_files:
            if handle.original_path == key:
                return handle
        return None

    def touched_paths(self) -> List[str]:
        paths = list(self.resources)
        for handle in self.backed_up_files:
            if handle.original_path not in paths:
                paths.append(handle.original_path)
        return paths

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "backed_up_files": [h.to_dict() for h in self.backed_up_files],
            "log_offset": self.log_offset,
            "resources": list(self.resources),
            "owner_pid": self.owner_pid,
        }
