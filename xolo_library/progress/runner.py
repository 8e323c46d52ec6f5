"""Runs mutating operations on worker threads.

The lock for an operation is taken in the calling (request) thread, so a
second admin gets a ConflictError synchronously instead of a stream that
fails. The worker thread re-enters the same lock, since locks are keyed by
the operation id, and the lock is always released before the stream's
completion sentinel is written.
"""

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC
from datetime import datetime
from typing import Any

from ..exceptions import ConflictError
from ..locks.manager import LockKey
from ..locks.manager import LockManager
from .channel import ProgressChannel
from .context import OperationContext

logger = logging.getLogger(__name__)

Operation = Callable[[OperationContext], Any]


class OperationRunner:
    """Starts streamed operations and tracks the ones in flight."""

    def __init__(self, channel: ProgressChannel, locks: LockManager) -> None:
        self.channel = channel
        self.locks = locks
        self._active: dict[str, dict] = {}
        self._active_lock = threading.Lock()
        self._accepting = True

    def start(
        self,
        ctx: OperationContext,
        description: str,
        operation: Operation,
        lock_key: LockKey | None = None,
        write: bool = True,
    ) -> str:
        """Lock, open a progress stream, and run operation(ctx) on a worker thread.

        Args:
            ctx: Operation context; its stream is set here
            description: Short name for logs and the maint state report
            operation: Callable doing the work, given ctx
            lock_key: Title or (title, version) to lock for the whole operation
            write: Whether the lock is a write lock

        Returns:
            URL path of the progress stream

        Raises:
            ConflictError: If the lock is held elsewhere or the server is shutting down
        """
        if not self._accepting:
            raise ConflictError("The server is shutting down, try again later.")

        if lock_key is not None:
            self.locks.acquire(lock_key, ctx.op_id, write=write, admin=ctx.admin)

        try:
            ctx.stream = self.channel.start_stream()
        except OSError:
            if lock_key is not None:
                self.locks.release(lock_key, ctx.op_id, write=write)
            raise

        thread = threading.Thread(
            target=self._run,
            args=(ctx, description, operation, lock_key, write),
            name=f"xolo-op-{description}",
            daemon=True,
        )
        with self._active_lock:
            self._active[ctx.op_id] = {
                "op_id": ctx.op_id,
                "description": description,
                "admin": ctx.admin,
                "stream_id": ctx.stream.stream_id,
                "started": datetime.now(UTC).isoformat(),
            }

        logger.info(f"Starting operation '{description}' for {ctx.admin} ({ctx.op_id})")
        thread.start()
        return ctx.stream.url_path

    def _run(
        self,
        ctx: OperationContext,
        description: str,
        operation: Operation,
        lock_key: LockKey | None,
        write: bool,
    ) -> None:
        try:
            operation(ctx)
        except Exception as e:
            logger.exception(f"Operation '{description}' ({ctx.op_id}) failed")
            ctx.stream.error(e)
        finally:
            if lock_key is not None:
                self.locks.release(lock_key, ctx.op_id, write=write)
            self.locks.forget_owner(ctx.op_id)
            with self._active_lock:
                self._active.pop(ctx.op_id, None)
            ctx.stream.complete()
            logger.info(f"Finished operation '{description}' ({ctx.op_id})")

    def active_operations(self) -> list[dict]:
        with self._active_lock:
            return list(self._active.values())

    def stop_accepting(self) -> None:
        """Refuse new operations; ones already running continue."""
        self._accepting = False

    def wait_for_idle(self, timeout: float, poll_interval: float = 0.5, ignore: str | None = None) -> bool:
        """Wait for in-flight operations to finish.

        Args:
            timeout: Seconds to wait
            poll_interval: Seconds between checks
            ignore: Operation id not to wait for, normally the caller's own

        Returns:
            True if no other operation is running
        """
        deadline = time.monotonic() + timeout
        while True:
            others = [op for op in self.active_operations() if op["op_id"] != ignore]
            if not others:
                return True
            if time.monotonic() >= deadline:
                logger.warning(f"Still waiting on {len(others)} operations after {timeout}s")
                return False
            time.sleep(poll_interval)
