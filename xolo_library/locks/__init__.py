"""Lock Manager: keyed, owner-reentrant read/write locks."""

from .manager import LockKey
from .manager import LockManager
from .manager import ReadWriteLock

__all__ = ["LockKey", "LockManager", "ReadWriteLock"]
