"""Progress streams and the worker-thread operation runner."""

from .channel import KEEPALIVE
from .channel import PROGRESS_COMPLETE
from .channel import ProgressChannel
from .channel import ProgressStream
from .context import OperationContext
from .runner import OperationRunner

__all__ = [
    "KEEPALIVE",
    "PROGRESS_COMPLETE",
    "OperationContext",
    "OperationRunner",
    "ProgressChannel",
    "ProgressStream",
]
