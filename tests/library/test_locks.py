"""
Unit tests for the Lock Manager.

Tests reader/writer exclusion, owner reentrancy, title/version nesting and
idle cleanup.
"""

import threading
import time

import pytest

from xolo_library.exceptions import ConflictError
from xolo_library.locks.manager import LockManager


@pytest.fixture
def locks() -> LockManager:
    return LockManager()


@pytest.mark.unit
class TestLockManager:
    """Test keyed read/write locks."""

    def test_write_lock_excludes_other_owner(self, locks: LockManager) -> None:
        """Test a write lock refuses other owners until released."""
        with locks.with_write_lock("foo", owner="op-a"):
            with pytest.raises(ConflictError, match="being modified by another admin"):
                locks.acquire("foo", "op-b")
            assert locks.is_locked("foo")

        assert not locks.is_locked("foo")

    def test_readers_share(self, locks: LockManager) -> None:
        """Test readers share a key and keep writers out."""
        with locks.with_read_lock("foo", owner="op-a"), locks.with_read_lock("foo", owner="op-b"):
            with pytest.raises(ConflictError):
                locks.acquire("foo", "op-c", write=True)

    def test_same_owner_reenters(self, locks: LockManager) -> None:
        """Test an owner holding the write lock can take it, and the read lock, again."""
        with locks.with_write_lock("foo", owner="op-a"):
            with locks.with_write_lock("foo", owner="op-a"):
                pass
            with locks.with_read_lock("foo", owner="op-a"):
                pass
            assert locks.is_locked("foo")

        assert not locks.is_locked("foo")

    def test_versions_of_one_title_lock_independently(self, locks: LockManager) -> None:
        """Test two versions of one title can be written at once."""
        with locks.with_write_lock(("foo", "1.0"), owner="op-a"):
            with locks.with_write_lock(("foo", "2.0"), owner="op-b"):
                assert locks.is_locked(("foo", "1.0"))
                assert locks.is_locked(("foo", "2.0"))

    def test_version_lock_blocks_title_write(self, locks: LockManager) -> None:
        """Test a version lock holds a read lock on its title."""
        with locks.with_write_lock(("foo", "1.0"), owner="op-a"):
            with pytest.raises(ConflictError):
                locks.acquire("foo", "op-b", write=True)

    def test_title_write_blocks_version_lock(self, locks: LockManager) -> None:
        """Test a title write lock keeps version locks out."""
        with locks.with_write_lock("foo", owner="op-a"):
            with pytest.raises(ConflictError, match="Title 'foo'"):
                locks.acquire(("foo", "1.0"), "op-b")
            # The failed attempt must not leave a stray read lock on the title
        assert not locks.is_locked("foo")

    def test_title_write_holder_can_lock_versions(self, locks: LockManager) -> None:
        """Test the title's writer can also lock its versions."""
        with locks.with_write_lock("foo", owner="op-a"):
            with locks.with_write_lock(("foo", "1.0"), owner="op-a"):
                assert locks.is_locked(("foo", "1.0"))

    def test_failed_version_lock_releases_title_read(self, locks: LockManager) -> None:
        """Test a refused version lock leaves the title free."""
        with locks.with_write_lock(("foo", "1.0"), owner="op-a"):
            with pytest.raises(ConflictError, match="Version '1.0'"):
                locks.acquire(("foo", "1.0"), "op-b")

        with locks.with_write_lock("foo", owner="op-c"):
            pass

    def test_blocking_acquire_waits_for_release(self, locks: LockManager) -> None:
        """Test a blocking acquire waits for the holder."""
        locks.acquire("foo", "op-a")
        acquired = threading.Event()

        def waiter() -> None:
            with locks.with_write_lock("foo", owner="op-b", blocking=True):
                acquired.set()

        thread = threading.Thread(target=waiter)
        thread.start()
        time.sleep(0.1)
        assert not acquired.is_set()

        locks.release("foo", "op-a")
        thread.join(timeout=5)
        assert acquired.is_set()

    def test_release_by_non_holder_raises(self, locks: LockManager) -> None:
        """Test only the holder can release a lock."""
        locks.acquire("foo", "op-a")
        with pytest.raises(RuntimeError):
            locks.release("foo", "op-b")

    def test_held_locks_reports_admin(self, locks: LockManager) -> None:
        """Test held locks are reported with mode and admin."""
        locks.acquire(("foo", "1.0"), "op-a", admin="alice")

        held = {entry["key"]: entry for entry in locks.held_locks()}

        assert held["foo/1.0"]["mode"] == "write"
        assert held["foo/1.0"]["admin"] == "alice"
        assert held["foo"]["mode"] == "read"
        assert held["foo"]["readers"] == ["op-a"]

    def test_cleanup_idle_locks_keeps_held(self, locks: LockManager) -> None:
        """Test idle cleanup removes only unheld locks."""
        with locks.with_write_lock("idle", owner="op-a"):
            pass
        locks.acquire("busy", "op-b")

        removed = locks.cleanup_idle_locks(idle_seconds=0)

        assert removed == 1
        assert locks.is_locked("busy")

    def test_wait_until_idle(self, locks: LockManager) -> None:
        """Test waiting for every lock to be released."""
        locks.acquire("foo", "op-a")
        assert locks.wait_until_idle(timeout=0.2, poll_interval=0.05) is False

        locks.release("foo", "op-a")
        assert locks.wait_until_idle(timeout=0.2, poll_interval=0.05) is True
