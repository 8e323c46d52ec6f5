"""Per-operation context passed through every engine step."""

import logging
import threading
import uuid
from dataclasses import dataclass
from dataclasses import field

from ..exceptions import OperationCancelledError
from .channel import ProgressStream

logger = logging.getLogger(__name__)


@dataclass
class OperationContext:
    """Who is running an operation, and where its progress goes.

    Attributes:
        admin: Name of the calling admin, recorded in the change log
        host: Address the request came from
        stream: Progress sink; None for synchronous calls, which only log
        op_id: Lock owner token, unique per operation
        cancel_event: Checked between external steps
    """

    admin: str
    host: str | None = None
    stream: ProgressStream | None = None
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def progress(self, msg: str, log: int | None = logging.INFO) -> None:
        """Report a progress line to the stream (if any) and the log."""
        if self.stream is not None:
            self.stream.progress(msg, log=log)
        elif log is not None:
            logger.log(log, msg)

    def check_cancelled(self) -> None:
        """Raise if cancellation was requested.

        Raises:
            OperationCancelledError: If the cancel token is set
        """
        if self.cancel_event.is_set():
            raise OperationCancelledError(f"Operation {self.op_id} was cancelled")

    def cancel(self) -> None:
        self.cancel_event.set()
