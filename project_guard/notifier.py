"""
Editor Notifier
===============

Pushes transaction state changes to the editor extension's local HTTP
listener so status indicators update without polling the log.

The endpoint is NOTIFY_URL when set; otherwise the port written by the
editor to ``.vscode/vscode_xcode_port`` is used with
``/notify/git-state-change`` on localhost, the route the extension already
serves; the ``type`` field marks the body as a transaction update.
Delivery is best-effort: failures are logged and never affect the
transaction.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from .config import GuardConfig
from .models import Transaction

logger = logging.getLogger(__name__)

ENDPOINT_PATH = "/notify/git-state-change"
PAYLOAD_TYPE = "transaction_state"


class Notifier:
    """
    Best-effort HTTP notifier for transaction state changes.

    Usage:
        notifier = Notifier.from_config(config)
        manager = TransactionManager(config, notifier=notifier)
    """

    def __init__(
        self,
        url: Optional[str] = None,
        port_file: Optional[str] = None,
        timeout: float = 2.0,
        enabled: bool = True,
        session: Optional[requests.Session] = None
    ):
        self.url = url
        self.port_file = Path(port_file) if port_file else None
        self.timeout = timeout
        self.enabled = enabled
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: GuardConfig) -> "Notifier":
        return cls(
            url=config.notify.url,
            port_file=config.notify.port_file,
            timeout=config.notify.timeout_seconds,
            enabled=config.notify.enabled,
        )

    def endpoint(self) -> Optional[str]:
        """URL to post to, or None when no listener is configured."""
        if self.url:
            return self.url
        if self.port_file is None or not self.port_file.exists():
            return None
        try:
            port = int(self.port_file.read_text().strip())
        except (OSError, ValueError) as e:
            logger.debug("Ignoring unreadable port file %s: %s", self.port_file, e)
            return None
        return f"http://127.0.0.1:{port}{ENDPOINT_PATH}"

    @staticmethod
    def payload(txn: Transaction) -> Dict[str, Any]:
        return {
            "type": PAYLOAD_TYPE,
            "transactionId": txn.id,
            "kind": txn.kind,
            "status": txn.status.value,
            "resources": list(txn.resources),
            "timestamp": datetime.now().isoformat(),
        }

    def transaction_state_changed(self, txn: Transaction) -> bool:
        """
        Post a transaction's new state.

        Returns:
            True if the listener accepted the notification
        """
        if not self.enabled:
            return False
        url = self.endpoint()
        if url is None:
            return False

        try:
            response = self.session.post(url, json=self.payload(txn), timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.debug("Notification to %s failed: %s", url, e)
            return False
        return True
