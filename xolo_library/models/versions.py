"""Version models."""

from datetime import datetime
from enum import Enum

from pydantic import Field

from .base import XoloModel


class VersionStatus(str, Enum):
    """Version lifecycle states."""

    PILOT = "pilot"
    RELEASED = "released"
    SKIPPED = "skipped"
    DEPRECATED = "deprecated"


class VersionSpec(XoloModel):
    """Admin-editable attributes of a version."""

    min_os: str | None = Field(default=None, description="Minimum macOS version")
    max_os: str | None = Field(default=None, description="Maximum macOS version")
    killapps: list[str] = Field(default_factory=list, description="'AppName.app;bundle.id' entries to quit first")
    reboot: bool = Field(default=False, description="Install requires a reboot")
    standalone: bool = Field(default=True, description="Installer is a full install, not an update")
    pilot_groups: list[str] = Field(default_factory=list, description="Groups that get this version while in pilot")


class VersionCreate(VersionSpec):
    """Request body for creating a version."""

    version: str = Field(description="Version string, unique within the title")


class VersionUpdate(XoloModel):
    """Request body for updating a version. Only provided fields are applied."""

    min_os: str | None = None
    max_os: str | None = None
    killapps: list[str] | None = None
    reboot: bool | None = None
    standalone: bool | None = None
    pilot_groups: list[str] | None = None

    def changes(self) -> dict:
        changes = self.model_dump(exclude_unset=True)
        for key in ("killapps", "pilot_groups"):
            if key in changes and changes[key] is None:
                changes[key] = []
        for key in ("reboot", "standalone"):
            if key in changes and changes[key] is None:
                changes[key] = VersionSpec.model_fields[key].default
        return changes


class Version(VersionCreate):
    """Authoritative record of a version."""

    title: str = Field(description="Identifier of the owning title")
    status: VersionStatus = VersionStatus.PILOT
    ted_patch_id: int | None = None

    jamf_pkg_file: str | None = Field(default=None, description="Package filename on the distribution point")
    pkg_to_upload: str | None = Field(default=None, description="Filename the admin uploaded")
    sha_512: str | None = None
    manifest: str | None = None
    dist_pkg: bool = False
    upload_date: datetime | None = None
    uploaded_by: str | None = None
    reupload_date: datetime | None = None
    reuploaded_by: str | None = None

    created_by: str | None = None
    creation_date: datetime | None = None
    modified_by: str | None = None
    modification_date: datetime | None = None
    release_date: datetime | None = None
    released_by: str | None = None
    deprecation_date: datetime | None = None
    deprecated_by: str | None = None
    skipped_date: datetime | None = None
    skipped_by: str | None = None

    @property
    def uploaded(self) -> bool:
        return self.upload_date is not None
