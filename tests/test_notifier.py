"""
Tests for the editor notifier.
"""

import sys
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from project_guard.config import GuardConfig
from project_guard.models import Transaction, TransactionStatus
from project_guard.notifier import ENDPOINT_PATH, PAYLOAD_TYPE, Notifier


@pytest.fixture
def txn():
    return Transaction(
        id="txn_20260101T000000Z_abcd1234",
        kind="FILE_UPDATE",
        status=TransactionStatus.COMMITTED,
        started_at=datetime.now().isoformat(),
        resources=["/tmp/App.xcodeproj/project.pbxproj"],
    )


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


class TestEndpoint:
    """Tests for locating the listener."""

    def test_explicit_url(self, tmp_path):
        notifier = Notifier(url="http://localhost:9999/hook", port_file=str(tmp_path / "port"))
        assert notifier.endpoint() == "http://localhost:9999/hook"

    def test_port_file(self, tmp_path):
        port_file = tmp_path / "vscode_xcode_port"
        port_file.write_text("51234\n")

        assert Notifier(port_file=str(port_file)).endpoint() == "http://127.0.0.1:51234/notify/git-state-change"
        assert ENDPOINT_PATH == "/notify/git-state-change"

    def test_missing_or_garbled_port_file(self, tmp_path):
        port_file = tmp_path / "vscode_xcode_port"
        assert Notifier(port_file=str(port_file)).endpoint() is None

        port_file.write_text("not-a-port")
        assert Notifier(port_file=str(port_file)).endpoint() is None

    def test_from_config(self):
        config = GuardConfig()
        config.notify.url = "http://localhost:1/x"
        config.notify.timeout_seconds = 0.5

        notifier = Notifier.from_config(config)

        assert notifier.url == "http://localhost:1/x"
        assert notifier.timeout == 0.5


class TestDelivery:
    """Tests for posting state changes."""

    def test_posts_payload(self, session, txn):
        notifier = Notifier(url="http://localhost:9999/hook", timeout=1.5, session=session)

        assert notifier.transaction_state_changed(txn) is True

        session.post.assert_called_once()
        args, kwargs = session.post.call_args
        assert args == ("http://localhost:9999/hook",)
        assert kwargs["timeout"] == 1.5
        assert kwargs["json"]["type"] == PAYLOAD_TYPE
        assert kwargs["json"]["transactionId"] == txn.id
        assert kwargs["json"]["status"] == "COMMITTED"
        assert kwargs["json"]["resources"] == txn.resources

    def test_failure_is_not_raised(self, session, txn):
        """Test a refused connection is reported as undelivered, never raised."""
        session.post.side_effect = requests.ConnectionError("refused")
        notifier = Notifier(url="http://localhost:9999/hook", session=session)

        assert notifier.transaction_state_changed(txn) is False

    def test_http_error_status(self, session, txn):
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("500")
        notifier = Notifier(url="http://localhost:9999/hook", session=session)

        assert notifier.transaction_state_changed(txn) is False

    def test_disabled_or_unconfigured(self, session, txn, tmp_path):
        assert Notifier(url="http://localhost:9999/hook", enabled=False, session=session) \
            .transaction_state_changed(txn) is False
        assert Notifier(port_file=str(tmp_path / "none"), session=session) \
            .transaction_state_changed(txn) is False
        session.post.assert_not_called()
