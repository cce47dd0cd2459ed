"""
Tests for configuration loading.

Covers the environment-variable contract, JSON config files and the
derived state-directory layout.
"""

import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from project_guard.config import (
    CheckMode, GuardConfig, RepairPolicy, get_config, set_config
)
from project_guard.errors import ConfigError


class TestDefaults:
    """Tests for default configuration values."""

    def test_default_config(self):
        """Test default configuration values."""
        config = GuardConfig()

        assert config.enabled is True
        assert config.transactions.auto_commit_delay_ms == 0
        assert config.backups.keep_backup_days == 7
        assert config.integrity.default_mode is CheckMode.NORMAL
        assert config.repair.auto_repair is False

    def test_state_layout(self, tmp_path):
        """Test derived log, backup and lock locations."""
        config = GuardConfig(state_directory=str(tmp_path))

        assert config.transaction_log_path == tmp_path / "logs" / "transactions.jsonl"
        assert config.diagnostic_log_path == tmp_path / "logs" / "project_guard.log"
        assert config.backup_directory == tmp_path / "backups"
        assert config.lock_directory == tmp_path / "locks"

    def test_ignored_directories(self):
        """Test directories skipped by the orphan scan."""
        config = GuardConfig()

        assert config.is_ignored_directory("DerivedData") is True
        assert config.is_ignored_directory(".git") is True
        assert config.is_ignored_directory("MyApp.xcodeproj") is True
        assert config.is_ignored_directory("Sources") is False


class TestFromEnv:
    """Tests for environment variable loading."""

    def test_recognized_variables(self):
        """Test every recognized variable is applied."""
        config = GuardConfig.from_env({
            "LOG_LEVEL": "trace",
            "LOG_FILE": "/tmp/guard.log",
            "TRANSACTION_LOG_FILE": "/tmp/txn.jsonl",
            "ERROR_HANDLING_ENABLED": "false",
            "AUTO_REPAIR": "true",
            "AUTO_COMMIT_DELAY_MS": "30000",
            "KEEP_BACKUP_DAYS": "3",
            "INTEGRITY_CHECK_MODE": "Detailed",
            "PROJECT_GUARD_STATE_DIR": "/tmp/state",
            "LOCK_TIMEOUT_MS": "250",
            "NOTIFY_URL": "http://127.0.0.1:9000/notify",
        })

        assert config.logging.log_level == "TRACE"
        assert config.diagnostic_log_path == Path("/tmp/guard.log")
        assert config.transaction_log_path == Path("/tmp/txn.jsonl")
        assert config.enabled is False
        assert config.repair.auto_repair is True
        assert config.transactions.auto_commit_delay_ms == 30000
        assert config.backups.keep_backup_days == 3
        assert config.integrity.default_mode is CheckMode.DETAILED
        assert config.state_directory == "/tmp/state"
        assert config.transactions.lock_timeout_ms == 250
        assert config.notify.url == "http://127.0.0.1:9000/notify"

    def test_empty_environment_gives_defaults(self):
        """Test that no variables leaves the defaults in place."""
        assert GuardConfig.from_env({}).to_dict() == GuardConfig().to_dict()

    @pytest.mark.parametrize("name,value", [
        ("LOG_LEVEL", "VERBOSE"),
        ("ERROR_HANDLING_ENABLED", "maybe"),
        ("AUTO_COMMIT_DELAY_MS", "soon"),
        ("KEEP_BACKUP_DAYS", "-1"),
        ("INTEGRITY_CHECK_MODE", "paranoid"),
    ])
    def test_invalid_values_raise(self, name, value):
        """Test unusable values are rejected as configuration errors."""
        with pytest.raises(ConfigError):
            GuardConfig.from_env({name: value})


class TestFromFile:
    """Tests for JSON config files."""

    def test_save_and_load(self, tmp_path):
        """Test a saved config loads back with the same settings."""
        config = GuardConfig(state_directory=str(tmp_path / "state"))
        config.transactions.lock_timeout_ms = 1234
        config.repair.default_policy = RepairPolicy.AUTOMATIC
        config.integrity.default_mode = CheckMode.MINIMAL

        path = tmp_path / "guard.json"
        config.save_to_file(str(path))
        loaded = GuardConfig.from_file(str(path))

        assert loaded.to_dict() == config.to_dict()

    def test_missing_file_gives_defaults(self, tmp_path):
        """Test a missing config file falls back to defaults."""
        config = GuardConfig.from_file(str(tmp_path / "absent.json"))
        assert config.to_dict() == GuardConfig().to_dict()

    def test_invalid_json_raises(self, tmp_path):
        """Test a malformed config file is a configuration error."""
        path = tmp_path / "guard.json"
        path.write_text("{invalid json")

        with pytest.raises(ConfigError):
            GuardConfig.from_file(str(path))

    def test_unknown_key_raises(self, tmp_path):
        """Test unknown section keys are rejected."""
        path = tmp_path / "guard.json"
        path.write_text('{"transactions": {"lock_timeout": 5}}')

        with pytest.raises(ConfigError):
            GuardConfig.from_file(str(path))


class TestParsing:
    """Tests for mode and policy parsing."""

    def test_mode_and_policy_are_case_insensitive(self):
        assert CheckMode.parse(" NORMAL ") is CheckMode.NORMAL
        assert RepairPolicy.parse("Guided") is RepairPolicy.GUIDED

    def test_unknown_policy(self):
        with pytest.raises(ConfigError, match="interactive, guided, automatic"):
            RepairPolicy.parse("yolo")


class TestGlobalConfig:
    """Tests for the module-level configuration singleton."""

    def test_set_and_reset(self, monkeypatch, tmp_path):
        """Test set_config overrides and None falls back to the environment."""
        custom = GuardConfig(state_directory=str(tmp_path))
        set_config(custom)
        try:
            assert get_config() is custom

            monkeypatch.setenv("KEEP_BACKUP_DAYS", "11")
            set_config(None)
            assert get_config().backups.keep_backup_days == 11
        finally:
            set_config(None)
