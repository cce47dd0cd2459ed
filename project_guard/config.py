"""
Configuration Module for Project Guard
======================================

This module provides configuration management for the transaction,
integrity and repair subsystem. It defines all configurable parameters
including lock timeouts, backup retention, logging options, integrity
check depth and repair policy.

Configuration can be loaded from environment variables (the contract the
editor tooling and git hooks use), a JSON config file, or set
programmatically.
"""

import os
import json
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any
from enum import Enum
from pathlib import Path

from .errors import ConfigError


class CheckMode(Enum):
    """Depth of an integrity check."""
    MINIMAL = "minimal"     # Manifest parses, top-level groups resolve
    NORMAL = "normal"       # + file references and orphans
    DETAILED = "detailed"   # + section shape, resource validators, permissions

    @classmethod
    def parse(cls, value: str) -> "CheckMode":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(m.value for m in cls)
            raise ConfigError(f"Invalid integrity check mode '{value}' (expected one of: {choices})")


class RepairPolicy(Enum):
    """Approval policy for the self-healer."""
    INTERACTIVE = "interactive"  # Approve every repair
    GUIDED = "guided"            # Approve critical/structural repairs only
    AUTOMATIC = "automatic"      # Apply every known fix

    @classmethod
    def parse(cls, value: str) -> "RepairPolicy":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(p.value for p in cls)
            raise ConfigError(f"Invalid repair policy '{value}' (expected one of: {choices})")


LOG_LEVELS = ["ERROR", "WARNING", "INFO", "DEBUG", "TRACE"]

DEFAULT_STATE_DIRECTORY = ".vscode-xcode-integration"


@dataclass
class TransactionConfig:
    """Configuration for transactions and resource locks."""
    lock_timeout_ms: int = 5000        # Bounded wait in begin() before ResourceBusy
    lock_poll_interval_ms: int = 50    # Polling interval while waiting for a lock
    auto_commit_delay_ms: int = 0      # 0 disables the auto-commit escape hatch
    recovery_window: Optional[int] = None  # Log records scanned on recovery (None = all)


@dataclass
class BackupConfig:
    """Configuration for the backup store."""
    keep_backup_days: int = 7          # Retention for backups of ended transactions
    backup_directory: Optional[str] = None  # Defaults to <state>/backups


@dataclass
class LoggingConfig:
    """Configuration for diagnostics and the transaction log."""
    log_level: str = "INFO"
    log_file: Optional[str] = None              # Diagnostic log (defaults to <state>/logs/project_guard.log)
    transaction_log_file: Optional[str] = None  # Defaults to <state>/logs/transactions.jsonl
    log_to_console: bool = True
    log_to_file: bool = True


@dataclass
class IntegrityConfig:
    """Configuration for integrity checks."""
    default_mode: CheckMode = CheckMode.NORMAL
    min_object_version: int = 46       # Older manifests are flagged as stale
    lock_probe_timeout_ms: int = 500   # Short wait on the manifest lock before a detailed check
    ignored_directories: List[str] = field(default_factory=lambda: [
        ".git", ".build", "build", "DerivedData", "Pods", "Carthage",
        ".swiftpm", "node_modules", DEFAULT_STATE_DIRECTORY, ".vscode",
    ])
    resource_extensions: List[str] = field(default_factory=lambda: [
        ".swift", ".m", ".mm", ".h", ".c", ".cpp", ".hpp",
        ".storyboard", ".xib", ".xcassets", ".strings", ".plist",
    ])


@dataclass
class RepairConfig:
    """Configuration for the self-healer."""
    auto_repair: bool = False          # Follow integrity checks with a guided repair
    default_policy: RepairPolicy = RepairPolicy.GUIDED


@dataclass
class NotifyConfig:
    """Configuration for pushing state changes to the editor."""
    enabled: bool = True
    url: Optional[str] = None          # Explicit endpoint; otherwise read the port file
    port_file: str = ".vscode/vscode_xcode_port"
    timeout_seconds: float = 2.0


@dataclass
class GuardConfig:
    """
    Main configuration class for Project Guard.

    This class aggregates all configuration sections and provides
    methods to load/save configuration from various sources.

    Attributes:
        enabled: Master switch for transactional error handling
        state_directory: Root of logs, backups and lock files
        transactions: Lock and auto-commit configuration
        backups: Backup retention configuration
        logging: Logging and transaction log configuration
        integrity: Integrity check configuration
        repair: Self-healer configuration
        notify: Editor notification configuration
    """
    enabled: bool = True
    state_directory: str = DEFAULT_STATE_DIRECTORY
    transactions: TransactionConfig = field(default_factory=TransactionConfig)
    backups: BackupConfig = field(default_factory=BackupConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    integrity: IntegrityConfig = field(default_factory=IntegrityConfig)
    repair: RepairConfig = field(default_factory=RepairConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)

    # Derived locations

    @property
    def log_directory(self) -> Path:
        return Path(self.state_directory) / "logs"

    @property
    def transaction_log_path(self) -> Path:
        if self.logging.transaction_log_file:
            return Path(self.logging.transaction_log_file)
        return self.log_directory / "transactions.jsonl"

    @property
    def diagnostic_log_path(self) -> Path:
        if self.logging.log_file:
            return Path(self.logging.log_file)
        return self.log_directory / "project_guard.log"

    @property
    def backup_directory(self) -> Path:
        if self.backups.backup_directory:
            return Path(self.backups.backup_directory)
        return Path(self.state_directory) / "backups"

    @property
    def lock_directory(self) -> Path:
        return Path(self.state_directory) / "locks"

    @classmethod
    def from_file(cls, config_path: str) -> "GuardConfig":
        """
        Load configuration from a JSON file.

        Args:
            config_path: Path to the configuration file

        Returns:
            GuardConfig instance with loaded settings
        """
        path = Path(config_path)
        if not path.exists():
            # Return default config if file doesn't exist
            return cls()

        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid config file {config_path}: {e}")

        return cls._from_dict(data)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "GuardConfig":
        """
        Load configuration from environment variables.

        Recognized variables: LOG_LEVEL, LOG_FILE, TRANSACTION_LOG_FILE,
        ERROR_HANDLING_ENABLED, AUTO_REPAIR, AUTO_COMMIT_DELAY_MS,
        KEEP_BACKUP_DAYS, INTEGRITY_CHECK_MODE, PROJECT_GUARD_STATE_DIR,
        LOCK_TIMEOUT_MS and NOTIFY_URL.

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            GuardConfig instance with settings from environment

        Raises:
            ConfigError: If a variable holds an unusable value
        """
        env = os.environ if environ is None else environ
        config = cls()

        if env.get("PROJECT_GUARD_STATE_DIR"):
            config.state_directory = env["PROJECT_GUARD_STATE_DIR"]

        if env.get("ERROR_HANDLING_ENABLED"):
            config.enabled = _parse_bool("ERROR_HANDLING_ENABLED", env["ERROR_HANDLING_ENABLED"])

        if env.get("LOG_LEVEL"):
            level = env["LOG_LEVEL"].strip().upper()
            if level not in LOG_LEVELS:
                raise ConfigError(f"Invalid LOG_LEVEL '{env['LOG_LEVEL']}' (expected one of: {', '.join(LOG_LEVELS)})")
            config.logging.log_level = level

        if env.get("LOG_FILE"):
            config.logging.log_file = env["LOG_FILE"]

        if env.get("TRANSACTION_LOG_FILE"):
            config.logging.transaction_log_file = env["TRANSACTION_LOG_FILE"]

        if env.get("AUTO_REPAIR"):
            config.repair.auto_repair = _parse_bool("AUTO_REPAIR", env["AUTO_REPAIR"])

        if env.get("AUTO_COMMIT_DELAY_MS"):
            config.transactions.auto_commit_delay_ms = _parse_int("AUTO_COMMIT_DELAY_MS", env["AUTO_COMMIT_DELAY_MS"])

        if env.get("LOCK_TIMEOUT_MS"):
            config.transactions.lock_timeout_ms = _parse_int("LOCK_TIMEOUT_MS", env["LOCK_TIMEOUT_MS"])

        if env.get("KEEP_BACKUP_DAYS"):
            config.backups.keep_backup_days = _parse_int("KEEP_BACKUP_DAYS", env["KEEP_BACKUP_DAYS"])

        if env.get("INTEGRITY_CHECK_MODE"):
            config.integrity.default_mode = CheckMode.parse(env["INTEGRITY_CHECK_MODE"])

        if env.get("NOTIFY_URL"):
            config.notify.url = env["NOTIFY_URL"]

        return config

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "GuardConfig":
        """Convert a dictionary to GuardConfig."""
        config = cls()

        try:
            if "enabled" in data:
                config.enabled = data["enabled"]

            if "state_directory" in data:
                config.state_directory = data["state_directory"]

            if "transactions" in data:
                config.transactions = TransactionConfig(**data["transactions"])

            if "backups" in data:
                config.backups = BackupConfig(**data["backups"])

            if "logging" in data:
                config.logging = LoggingConfig(**data["logging"])

            if "integrity" in data:
                section = dict(data["integrity"])
                if "default_mode" in section:
                    section["default_mode"] = CheckMode.parse(section["default_mode"])
                config.integrity = IntegrityConfig(**section)

            if "repair" in data:
                section = dict(data["repair"])
                if "default_policy" in section:
                    section["default_policy"] = RepairPolicy.parse(section["default_policy"])
                config.repair = RepairConfig(**section)

            if "notify" in data:
                config.notify = NotifyConfig(**data["notify"])
        except TypeError as e:
            raise ConfigError(f"Unknown configuration key: {e}")

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a dictionary."""
        return {
            "enabled": self.enabled,
            "state_directory": self.state_directory,
            "transactions": {
                "lock_timeout_ms": self.transactions.lock_timeout_ms,
                "lock_poll_interval_ms": self.transactions.lock_poll_interval_ms,
                "auto_commit_delay_ms": self.transactions.auto_commit_delay_ms,
                "recovery_window": self.transactions.recovery_window
            },
            "backups": {
                "keep_backup_days": self.backups.keep_backup_days,
                "backup_directory": self.backups.backup_directory
            },
            "logging": {
                "log_level": self.logging.log_level,
                "log_file": self.logging.log_file,
                "transaction_log_file": self.logging.transaction_log_file,
                "log_to_console": self.logging.log_to_console,
                "log_to_file": self.logging.log_to_file
            },
            "integrity": {
                "default_mode": self.integrity.default_mode.value,
                "min_object_version": self.integrity.min_object_version,
                "lock_probe_timeout_ms": self.integrity.lock_probe_timeout_ms,
                "ignored_directories": self.integrity.ignored_directories,
                "resource_extensions": self.integrity.resource_extensions
            },
            "repair": {
                "auto_repair": self.repair.auto_repair,
                "default_policy": self.repair.default_policy.value
            },
            "notify": {
                "enabled": self.notify.enabled,
                "url": self.notify.url,
                "port_file": self.notify.port_file,
                "timeout_seconds": self.notify.timeout_seconds
            }
        }

    def save_to_file(self, config_path: str) -> None:
        """
        Save configuration to a JSON file.

        Args:
            config_path: Path where to save the configuration
        """
        path = Path(config_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def is_ignored_directory(self, name: str) -> bool:
        """
        Check if a directory is skipped when scanning for orphaned resources.

        Args:
            name: Directory name (not a full path)

        Returns:
            True if the directory should not be descended into
        """
        if name.startswith(".") and name != ".":
            return True
        return name in self.integrity.ignored_directories or name.endswith((".xcodeproj", ".xcworkspace"))


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"Invalid boolean for {name}: '{value}'")


def _parse_int(name: str, value: str) -> int:
    try:
        number = int(value.strip())
    except ValueError:
        raise ConfigError(f"Invalid integer for {name}: '{value}'")
    if number < 0:
        raise ConfigError(f"{name} must not be negative: {number}")
    return number


# Singleton instance for global configuration
_global_config: Optional[GuardConfig] = None


def get_config() -> GuardConfig:
    """
    Get the global configuration instance.

    Returns:
        The global GuardConfig instance
    """
    global _global_config
    if _global_config is None:
        _global_config = GuardConfig.from_env()
    return _global_config


def set_config(config: Optional[GuardConfig]) -> None:
    """
    Set the global configuration instance.

    Args:
        config: The configuration to use globally (None resets to lazy env loading)
    """
    global _global_config
    _global_config = config
