"""Keyed read/write locks over titles and versions.

Two key spaces:
- title: "mytitle"
- version: ("mytitle", "1.2.3")

A version lock always takes a read lock on its title first, so any number of
versions of one title can be modified at once, but a title-wide write lock
excludes all of them.

Locks are reentrant per owner, not per thread. An owner is any hashable
token, normally the operation id, so a request thread can claim a lock and
hand the operation to a worker thread that re-enters it.

By default acquisition does not wait: a lock held by another owner raises
ConflictError at once, so a second admin is told immediately rather than
queued behind a long-running operation.
"""

import logging
import threading
import time
from collections.abc import Hashable
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC
from datetime import datetime

from ..exceptions import ConflictError

logger = logging.getLogger(__name__)

LockKey = str | tuple[str, str]


class ReadWriteLock:
    """Reentrant reader/writer lock keyed by owner token."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._writer: Hashable | None = None
        self._write_depth = 0
        self._readers: dict[Hashable, int] = {}
        self.acquired_at: datetime | None = None
        self.last_used: float = time.monotonic()

    def acquire_read(self, owner: Hashable, blocking: bool = False, timeout: float | None = None) -> bool:
        with self._cond:
            ok = self._cond.wait_for(lambda: self._writer is None or self._writer == owner, timeout if blocking else 0)
            if not ok:
                return False
            self._readers[owner] = self._readers.get(owner, 0) + 1
            self._touch()
            return True

    def acquire_write(self, owner: Hashable, blocking: bool = False, timeout: float | None = None) -> bool:
        def free() -> bool:
            if self._writer is not None and self._writer != owner:
                return False
            return all(reader == owner for reader in self._readers)

        with self._cond:
            ok = self._cond.wait_for(free, timeout if blocking else 0)
            if not ok:
                return False
            self._writer = owner
            self._write_depth += 1
            self._touch()
            return True

    def release_read(self, owner: Hashable) -> None:
        with self._cond:
            count = self._readers.get(owner, 0)
            if count == 0:
                raise RuntimeError(f"Read lock not held by {owner}")
            if count == 1:
                del self._readers[owner]
            else:
                self._readers[owner] = count - 1
            self._after_release()

    def release_write(self, owner: Hashable) -> None:
        with self._cond:
            if self._writer != owner:
                raise RuntimeError(f"Write lock not held by {owner}")
            self._write_depth -= 1
            if self._write_depth == 0:
                self._writer = None
            self._after_release()

    @property
    def held(self) -> bool:
        with self._cond:
            return self._writer is not None or bool(self._readers)

    def describe(self) -> dict:
        with self._cond:
            return {
                "writer": self._writer,
                "readers": list(self._readers),
                "since": self.acquired_at.isoformat() if self.acquired_at else None,
            }

    def _touch(self) -> None:
        if self.acquired_at is None:
            self.acquired_at = datetime.now(UTC)
        self.last_used = time.monotonic()

    def _after_release(self) -> None:
        self.last_used = time.monotonic()
        if self._writer is None and not self._readers:
            self.acquired_at = None
        self._cond.notify_all()


class LockManager:
    """Lazily created, never persisted, locks for titles and versions."""

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._title_locks: dict[str, ReadWriteLock] = {}
        self._version_locks: dict[tuple[str, str], ReadWriteLock] = {}
        self._owners: dict[Hashable, str] = {}

    # --- Public API ---

    @contextmanager
    def with_read_lock(self, key: LockKey, owner: Hashable | None = None, blocking: bool = False) -> Iterator[None]:
        """Hold a read lock on key for the duration of the block.

        Raises:
            ConflictError: If another owner holds a conflicting lock and blocking is False
        """
        owner = _owner(owner)
        self.acquire(key, owner, write=False, blocking=blocking)
        try:
            yield
        finally:
            self.release(key, owner, write=False)

    @contextmanager
    def with_write_lock(self, key: LockKey, owner: Hashable | None = None, blocking: bool = False) -> Iterator[None]:
        """Hold a write lock on key for the duration of the block.

        Raises:
            ConflictError: If another owner holds a conflicting lock and blocking is False
        """
        owner = _owner(owner)
        self.acquire(key, owner, write=True, blocking=blocking)
        try:
            yield
        finally:
            self.release(key, owner, write=True)

    def acquire(
        self,
        key: LockKey,
        owner: Hashable,
        write: bool = True,
        blocking: bool = False,
        admin: str | None = None,
    ) -> None:
        """Acquire a lock without a context manager.

        Every successful acquire must be paired with release(key, owner, write).

        Raises:
            ConflictError: If the lock is held by another owner and blocking is False
        """
        if admin is not None:
            self._owners[owner] = admin

        if isinstance(key, tuple):
            title, version = key
            self._acquire_one(self._title_lock(title), owner, write=False, blocking=blocking, key=title)
            try:
                self._acquire_one(self._version_lock(title, version), owner, write=write, blocking=blocking, key=key)
            except ConflictError:
                self._title_lock(title).release_read(owner)
                raise
        else:
            self._acquire_one(self._title_lock(key), owner, write=write, blocking=blocking, key=key)

        logger.debug(f"Lock acquired: {_describe_key(key)} ({'write' if write else 'read'}) by {owner}")

    def release(self, key: LockKey, owner: Hashable, write: bool = True) -> None:
        """Release a lock taken with acquire()."""
        if isinstance(key, tuple):
            title, version = key
            self._release_one(self._version_lock(title, version), owner, write)
            self._title_lock(title).release_read(owner)
        else:
            self._release_one(self._title_lock(key), owner, write)

        logger.debug(f"Lock released: {_describe_key(key)} by {owner}")

    def is_locked(self, key: LockKey) -> bool:
        with self._registry_lock:
            if isinstance(key, tuple):
                lock = self._version_locks.get(key)
            else:
                lock = self._title_locks.get(key)
        return lock is not None and lock.held

    def held_locks(self) -> list[dict]:
        """Describe every currently held lock, for the maint state report."""
        with self._registry_lock:
            entries = [(t, lock) for t, lock in self._title_locks.items()]
            entries += [(k, lock) for k, lock in self._version_locks.items()]

        held = []
        for key, lock in entries:
            if not lock.held:
                continue
            info = lock.describe()
            writer = info["writer"]
            held.append(
                {
                    "key": _describe_key(key),
                    "mode": "write" if writer is not None else "read",
                    "admin": self._owners.get(writer) if writer is not None else None,
                    "owner": str(writer) if writer is not None else None,
                    "readers": [str(r) for r in info["readers"]],
                    "since": info["since"],
                }
            )
        return held

    def forget_owner(self, owner: Hashable) -> None:
        self._owners.pop(owner, None)

    def cleanup_idle_locks(self, idle_seconds: float = 300) -> int:
        """Discard lock objects that are not held and have been idle long enough.

        Fetching a lock from the registry counts as use, so a lock about to be
        acquired is never discarded.

        Returns:
            Number of lock objects removed
        """
        cutoff = time.monotonic() - idle_seconds
        removed = 0
        with self._registry_lock:
            for registry in (self._version_locks, self._title_locks):
                for key in list(registry):
                    lock = registry[key]
                    if not lock.held and lock.last_used <= cutoff:
                        del registry[key]
                        removed += 1
        if removed:
            logger.info(f"Removed {removed} idle locks")
        return removed

    def wait_until_idle(self, timeout: float, poll_interval: float = 0.5) -> bool:
        """Block until no lock is held, or the timeout passes.

        Returns:
            True if every lock was released in time
        """
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not self.held_locks():
                return True
            time.sleep(poll_interval)
        return not self.held_locks()

    # --- Helpers ---

    def _title_lock(self, title: str) -> ReadWriteLock:
        with self._registry_lock:
            lock = self._title_locks.get(title)
            if lock is None:
                lock = self._title_locks[title] = ReadWriteLock()
            lock.last_used = time.monotonic()
            return lock

    def _version_lock(self, title: str, version: str) -> ReadWriteLock:
        with self._registry_lock:
            lock = self._version_locks.get((title, version))
            if lock is None:
                lock = self._version_locks[(title, version)] = ReadWriteLock()
            lock.last_used = time.monotonic()
            return lock

    def _release_one(self, lock: ReadWriteLock, owner: Hashable, write: bool) -> None:
        if write:
            lock.release_write(owner)
        else:
            lock.release_read(owner)

    def _acquire_one(self, lock: ReadWriteLock, owner: Hashable, write: bool, blocking: bool, key: LockKey) -> None:
        acquired = lock.acquire_write(owner, blocking) if write else lock.acquire_read(owner, blocking)
        if not acquired:
            raise ConflictError(_locked_message(key))


def _owner(owner: Hashable | None) -> Hashable:
    return owner if owner is not None else threading.get_ident()


def _describe_key(key: LockKey) -> str:
    if isinstance(key, tuple):
        return f"{key[0]}/{key[1]}"
    return key


def _locked_message(key: LockKey) -> str:
    if isinstance(key, tuple):
        title, version = key
        return f"Version '{version}' of title '{title}' is being modified by another admin. Try again later."
    return f"Title '{key}' is being modified by another admin. Try again later."
