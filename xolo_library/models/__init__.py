"""Models for xolo library."""

from .changelog import ChangeLogEntry
from .operations import DeployResult
from .operations import StreamingStarted
from .titles import TARGET_ALL
from .titles import Title
from .titles import TitleCreate
from .titles import TitleSpec
from .titles import TitleUpdate
from .versions import Version
from .versions import VersionCreate
from .versions import VersionSpec
from .versions import VersionStatus
from .versions import VersionUpdate

__all__ = [
    "ChangeLogEntry",
    "DeployResult",
    "StreamingStarted",
    "TARGET_ALL",
    "Title",
    "TitleCreate",
    "TitleSpec",
    "TitleUpdate",
    "Version",
    "VersionCreate",
    "VersionSpec",
    "VersionStatus",
    "VersionUpdate",
]
