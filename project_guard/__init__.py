"""
Project Guard
=============

Transactional file mutations, integrity checks and self-healing repairs for
Xcode projects edited from outside Xcode.

Components:
-----------
- TransactionManager: Atomic, revertible groups of file mutations with
  per-resource locks, backups and crash recovery
- TransactionLog: Append-only JSONL audit trail of every transaction
- IntegrityChecker: Structural checks of the project manifest and resources
- SelfHealer: Policy-gated repairs, each applied in its own transaction
- Notifier: Pushes transaction state changes to the editor

Usage:
------
    from project_guard import TransactionManager

    manager = TransactionManager()
    with manager.transaction("FILE_UPDATE", ["App.xcodeproj/project.pbxproj"]) as txn:
        manager.write_file(txn, "App.xcodeproj/project.pbxproj", new_text)

Version: 1.0.0
"""

from .config import GuardConfig, CheckMode, RepairPolicy
from .errors import (
    GuardError, ConfigError, ResourceBusy, TransactionStateError, TransactionNotFound,
    BackupFailure, BackupNotFound, MutationFailure, RestoreFailure, ManifestParseError
)
from .logger import GuardLogger
from .models import Transaction, TransactionStatus, ResourceStatus, BackupHandle
from .transaction_log import TransactionLog
from .transactions import TransactionManager
from .checker import IntegrityChecker, IntegrityIssue, Severity
from .healer import SelfHealer, RepairReport
from .notifier import Notifier

__version__ = "1.0.0"
__all__ = [
    "GuardConfig",
    "CheckMode",
    "RepairPolicy",
    "GuardError",
    "ConfigError",
    "ResourceBusy",
    "TransactionStateError",
    "TransactionNotFound",
    "BackupFailure",
    "BackupNotFound",
    "MutationFailure",
    "RestoreFailure",
    "ManifestParseError",
    "GuardLogger",
    "Transaction",
    "TransactionStatus",
    "ResourceStatus",
    "BackupHandle",
    "TransactionLog",
    "TransactionManager",
    "IntegrityChecker",
    "IntegrityIssue",
    "Severity",
    "SelfHealer",
    "RepairReport",
    "Notifier",
]
