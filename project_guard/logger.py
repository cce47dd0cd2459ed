"""
Logging Module for Project Guard
================================

This module configures diagnostic logging for the subsystem. Components log
through module loggers under the ``project_guard`` namespace; this module
attaches the console and file handlers to that namespace and provides the
``GuardLogger`` used for user-facing lifecycle events.

The durable audit trail is the transaction log (see transaction_log.py);
the diagnostic log configured here is for humans.

Features:
---------
- Levels ERROR, WARNING, INFO, DEBUG and TRACE (below DEBUG)
- Human-readable console output with indicators per event
- Diagnostic file log alongside the transaction log
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from .config import GuardConfig


TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOGGER_NAME = "project_guard"

_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def level_from_name(name: str) -> int:
    """Map a LOG_LEVEL value to a logging level number."""
    if name.upper() == "TRACE":
        return TRACE
    return getattr(logging, name.upper(), logging.INFO)


class GuardLogger:
    """
    Logger for project guard lifecycle events.

    Usage:
        logger = GuardLogger.from_config(config)
        logger.event("BEGIN", "Transaction txn_... started")
    """

    # Indicators for different event types
    INDICATORS = {
        "BEGIN": "🔒",
        "BACKUP": "💾",
        "COMMIT": "✅",
        "ROLLBACK": "↩️",
        "FAIL": "❌",
        "RECOVER": "🔄",
        "AUTO_COMMIT": "⏱️",
        "ISSUE": "🔍",
        "REPAIR_APPLIED": "🔧",
        "REPAIR_FAILED": "⚠️",
        "MANUAL_INTERVENTION_REQUIRED": "👤",
    }

    def __init__(
        self,
        log_level: str = "INFO",
        log_file: Optional[str] = None,
        log_to_console: bool = True,
        log_to_file: bool = True,
        configure_handlers: bool = True
    ):
        """
        Initialize the guard logger.

        Args:
            log_level: One of ERROR, WARNING, INFO, DEBUG, TRACE
            log_file: Diagnostic log file path
            log_to_console: Whether to output logs to the console (stderr)
            log_to_file: Whether to write logs to the file
            configure_handlers: False reuses the handlers already attached
        """
        self.level = level_from_name(log_level)
        self.log_file = Path(log_file) if log_file else None
        self.log_to_console = log_to_console
        self.log_to_file = log_to_file and self.log_file is not None

        if configure_handlers:
            self._setup_python_logging()
        else:
            self.python_logger = logging.getLogger(LOGGER_NAME)

    @classmethod
    def from_config(cls, config: GuardConfig) -> "GuardLogger":
        return cls(
            log_level=config.logging.log_level,
            log_file=str(config.diagnostic_log_path),
            log_to_console=config.logging.log_to_console,
            log_to_file=config.logging.log_to_file
        )

    def _setup_python_logging(self) -> None:
        """Configure Python's logging module for console and file output."""
        self.python_logger = logging.getLogger(LOGGER_NAME)
        self.python_logger.setLevel(self.level)

        # Remove existing handlers to avoid duplicates
        for handler in list(self.python_logger.handlers):
            self.python_logger.removeHandler(handler)
            handler.close()

        formatter = logging.Formatter(_FORMAT, datefmt=_DATEFMT)

        # stdout is reserved for command results (e.g. transaction ids)
        if self.log_to_console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(self.level)
            console_handler.setFormatter(formatter)
            self.python_logger.addHandler(console_handler)

        if self.log_to_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_file)
            file_handler.setLevel(min(self.level, logging.DEBUG))
            file_handler.setFormatter(formatter)
            self.python_logger.addHandler(file_handler)
            self.python_logger.setLevel(min(self.level, logging.DEBUG))

    def event(self, event_type: str, message: str, level: int = logging.INFO) -> None:
        """
        Log a lifecycle event with its indicator.

        Args:
            event_type: Key into INDICATORS
            message: Human-readable description
            level: Logging level to emit at
        """
        indicator = self.INDICATORS.get(event_type, "📝")
        self.python_logger.log(level, f"{indicator} [{event_type}] {message}")

    def trace(self, message: str, *args) -> None:
        self.python_logger.log(TRACE, message, *args)

    def close(self) -> None:
        """Detach and close all handlers."""
        for handler in list(self.python_logger.handlers):
            self.python_logger.removeHandler(handler)
            handler.close()


def get_event_logger() -> GuardLogger:
    """
    Get a GuardLogger that reuses whatever handlers are already configured.

    Components call this when no logger was injected; it never reconfigures
    handlers.
    """
    return GuardLogger(log_to_console=False, log_to_file=False, configure_handlers=False)
