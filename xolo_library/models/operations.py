"""Models for operation results returned by the API."""

from datetime import datetime

from pydantic import Field

from .base import CamelCaseModel
from .base import XoloModel


class StreamingStarted(XoloModel):
    """Returned immediately by endpoints that run in a worker thread."""

    status: str = "running"
    progress_stream_url_path: str = Field(description="Path to tail for real-time progress")


class MessageResponse(XoloModel):
    """Simple synchronous result."""

    title: str | None = None
    version: str | None = None
    result: str


class TargetsRequest(XoloModel):
    """Computers (or users, when users=true) to freeze or thaw."""

    targets: list[str] = Field(description="Computer names, user names, or 'all' (thaw only)")
    users: bool = Field(default=False, description="Targets are user names to expand to computers")


class DeployRequest(XoloModel):
    """Computers and groups to push a version to via MDM."""

    computers: list[str] = Field(default_factory=list)
    groups: list[str] = Field(default_factory=list)


class DeployRemoval(CamelCaseModel):
    device: str
    group: str | None = None
    reason: str


class QueuedCommand(CamelCaseModel):
    device: str
    command_uuid: str


class DeployError(CamelCaseModel):
    device: str
    reason: str


class DeployResult(CamelCaseModel):
    """Per-target outcome of an MDM deployment."""

    removals: list[DeployRemoval] = Field(default_factory=list)
    queued_commands: list[QueuedCommand] = Field(default_factory=list)
    errors: list[DeployError] = Field(default_factory=list)


class PatchReportEntry(XoloModel):
    """Installed version of a title on one computer."""

    computer: str
    version: str | None = None
    username: str | None = None
    last_contact: datetime | None = None
