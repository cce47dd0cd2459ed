"""
Tests for the path-keyed lock table.
"""

import os
import sys
import time
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from project_guard.errors import ResourceBusy
from project_guard.locks import INCOMPLETE_LOCK_GRACE_SECONDS, LockTable
from project_guard.models import canonical_path


@pytest.fixture
def table(tmp_path):
    return LockTable(tmp_path / "locks", poll_interval=0.01)


@pytest.fixture
def resources(tmp_path):
    return [str(tmp_path / "b.txt"), str(tmp_path / "a.txt")]


class TestAcquire:
    """Tests for acquiring and releasing locks."""

    def test_acquire_in_sorted_order(self, table, resources):
        """Test locks are taken on canonical paths in sorted order."""
        locked = table.acquire(resources, "txn_1", os.getpid(), timeout=0.1)

        assert locked == sorted(canonical_path(r) for r in resources)
        assert [i.txn_id for i in table.holders()] == ["txn_1", "txn_1"]

    def test_lock_file_content(self, table, resources):
        table.acquire(resources[:1], "txn_1", 1234, timeout=0.1)

        info = table.owner_of(resources[0])
        assert info.path == canonical_path(resources[0])
        assert info.pid == 1234
        assert info.lock_file.name == info.lock_file.stem + ".lock"
        assert len(info.lock_file.stem) == 64

    def test_reacquire_by_same_transaction(self, table, resources):
        table.acquire(resources, "txn_1", os.getpid(), timeout=0.1)
        table.acquire(resources, "txn_1", os.getpid(), timeout=0.1)

        assert len(table.held_by("txn_1")) == 2

    def test_release(self, table, resources):
        table.acquire(resources, "txn_1", os.getpid(), timeout=0.1)

        released = table.release("txn_1")

        assert sorted(released) == sorted(canonical_path(r) for r in resources)
        assert table.holders() == []


class TestContention:
    """Tests for bounded waits."""

    def test_busy_within_timeout(self, table, resources):
        """Test a held lock yields ResourceBusy naming the holder."""
        table.acquire(resources, "txn_1", os.getpid(), timeout=0.1)

        started = time.monotonic()
        with pytest.raises(ResourceBusy) as exc_info:
            table.acquire(resources, "txn_2", os.getpid(), timeout=0.2)

        assert time.monotonic() - started < 2.0
        assert exc_info.value.holder == "txn_1"
        assert exc_info.value.exit_code == 1

    def test_partial_set_released_on_busy(self, table, tmp_path):
        """Test locks taken before the busy one are given back."""
        free = str(tmp_path / "a.txt")
        held = str(tmp_path / "z.txt")
        table.acquire([held], "txn_1", os.getpid(), timeout=0.1)

        with pytest.raises(ResourceBusy):
            table.acquire([free, held], "txn_2", os.getpid(), timeout=0.05)

        assert table.owner_of(free) is None
        assert table.owner_of(held).txn_id == "txn_1"

    def test_stale_lock_is_broken(self, table, resources):
        """Test a lock the predicate declares stale is taken over."""
        table.acquire(resources, "txn_dead", os.getpid(), timeout=0.1)

        table.acquire(resources, "txn_2", os.getpid(), timeout=0.1,
                      is_stale=lambda info: info.txn_id == "txn_dead")

        assert {i.txn_id for i in table.holders()} == {"txn_2"}
        assert list(table.lock_dir.glob("*.stale-*")) == []

    def test_incomplete_lock_broken_after_grace(self, table, resources):
        """Test an unreadable lock file only counts as abandoned once it is old."""
        lock_file = table.lock_file_for(resources[0])
        lock_file.write_text("")

        with pytest.raises(ResourceBusy):
            table.acquire(resources[:1], "txn_2", os.getpid(), timeout=0.05)

        old = time.time() - INCOMPLETE_LOCK_GRACE_SECONDS - 1
        os.utime(lock_file, (old, old))
        table.acquire(resources[:1], "txn_2", os.getpid(), timeout=0.05)

        assert table.owner_of(resources[0]).txn_id == "txn_2"


class TestHeartbeat:
    """Tests for heartbeats and probing."""

    def test_touch_refreshes_heartbeat(self, table, resources):
        table.acquire(resources, "txn_1", os.getpid(), timeout=0.1)
        old = time.time() - 100
        for info in table.held_by("txn_1"):
            os.utime(info.lock_file, (old, old))
        assert table.heartbeat_age("txn_1") >= 99

        table.touch("txn_1")

        assert table.heartbeat_age("txn_1") < 5
        assert table.heartbeat_age("txn_unknown") is None

    def test_probe(self, table, resources):
        """Test probe reports a live holder and ignores free or stale locks."""
        assert table.probe(resources[0], timeout=0.01) is None

        table.acquire(resources[:1], "txn_1", os.getpid(), timeout=0.1)
        assert table.probe(resources[0], timeout=0.02).txn_id == "txn_1"
        assert table.probe(resources[0], timeout=0.02, is_stale=lambda info: True) is None
        # Probing never takes the lock
        assert table.owner_of(resources[0]).txn_id == "txn_1"
