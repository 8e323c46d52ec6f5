"""Change Log: append-only per-title history."""

from .log import UPDATE_FAILED_MSG
from .log import ChangeLog
from .log import format_value

__all__ = ["UPDATE_FAILED_MSG", "ChangeLog", "format_value"]
