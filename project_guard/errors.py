"""
Error Taxonomy for Project Guard
================================

Every failure the subsystem can surface maps to one of these exceptions.
Each carries the process exit code the command-line boundary reports for it.

Exit codes:
-----------
- 0: success
- 1: completed with unresolved issues, partial repair, or a retry-safe
     failure (lock contention, aborted backup, rolled-back mutation)
- 2: invalid arguments or configuration
- 3: rollback could not restore a file (manual recovery required)
- 4: unexpected internal failure
"""

from typing import List, Optional


EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_INVALID = 2
EXIT_UNRECOVERABLE = 3
EXIT_INTERNAL = 4


class GuardError(Exception):
    """Base class for all project guard errors."""
    exit_code = EXIT_INTERNAL


class ConfigError(GuardError):
    """Bad mode, policy, argument or environment value. No side effects."""
    exit_code = EXIT_INVALID


class ResourceBusy(GuardError):
    """A resource lock could not be acquired within the bounded wait."""
    exit_code = EXIT_PARTIAL

    def __init__(self, resource: str, holder: Optional[str] = None, waited: float = 0.0):
        self.resource = resource
        self.holder = holder
        self.waited = waited
        message = f"Resource busy: {resource}"
        if holder:
            message += f" (held by {holder})"
        super().__init__(message)


class TransactionStateError(GuardError):
    """An operation was attempted on a transaction in the wrong state."""
    exit_code = EXIT_INVALID


class TransactionNotFound(GuardError):
    """No BEGIN record exists for the requested transaction id."""
    exit_code = EXIT_INVALID


class BackupFailure(GuardError):
    """A file could not be backed up; the mutation must not proceed."""
    exit_code = EXIT_PARTIAL

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Backup failed for {path}: {reason}")


class BackupNotFound(BackupFailure):
    """The file to back up does not exist and was not marked optional."""


class MutationFailure(GuardError):
    """The caller's mutation raised; the transaction was rolled back."""
    exit_code = EXIT_PARTIAL

    def __init__(self, transaction_id: str, cause: BaseException):
        self.transaction_id = transaction_id
        self.cause = cause
        super().__init__(
            f"Mutation failed in transaction {transaction_id}: {cause}"
        )


class RestoreFailure(GuardError):
    """
    Rollback could not restore one or more files.

    The transaction is FAILED and the listed paths need manual recovery
    from the backups that are still on disk.
    """
    exit_code = EXIT_UNRECOVERABLE

    def __init__(self, transaction_id: str, failed_paths: List[str], reason: str = ""):
        self.transaction_id = transaction_id
        self.failed_paths = list(failed_paths)
        self.reason = reason
        paths = ", ".join(self.failed_paths)
        message = f"Transaction {transaction_id} could not restore: {paths}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class ManifestParseError(GuardError):
    """The manifest text is not a well-formed property list."""
    exit_code = EXIT_PARTIAL

    def __init__(self, message: str, line: Optional[int] = None):
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)
