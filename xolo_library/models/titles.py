"""Title models.

A Title is one software product. The admin-editable attributes live on
TitleSpec; Title adds identity and the server-maintained attributes.
Cross-field rules (install detection, expiration) are enforced by
xolo_library.engines.validation, not here.
"""

from datetime import datetime

from pydantic import Field

from .base import XoloModel

# release_groups sentinel meaning every managed computer
TARGET_ALL = "all"

LIST_FIELDS = {"release_groups", "excluded_groups", "uninstall_ids", "expire_paths"}

# Plain text attributes; null clears them to ""
TEXT_FIELDS = {"display_name", "description", "publisher", "contact_email"}


class TitleSpec(XoloModel):
    """Admin-editable attributes of a title."""

    display_name: str = Field(description="Human-readable name")
    description: str = Field(default="", description="What this title is")
    publisher: str = Field(default="", description="Who makes the software")
    contact_email: str = Field(default="", description="Who to contact about this title")

    app_name: str | None = Field(default=None, description="Installed .app name, used with app_bundle_id")
    app_bundle_id: str | None = Field(default=None, description="Bundle identifier of the installed .app")
    version_script: str | None = Field(default=None, description="Script reporting the installed version")

    release_groups: list[str] = Field(default_factory=list, description="Groups that get released versions")
    excluded_groups: list[str] = Field(default_factory=list, description="Groups never targeted")

    uninstall_script: str | None = Field(default=None, description="Script that removes the title")
    uninstall_ids: list[str] = Field(default_factory=list, description="Package identifiers to remove")

    expiration: int | None = Field(default=None, description="Days of disuse before auto-uninstall")
    expire_paths: list[str] = Field(default_factory=list, description="Paths whose use marks the title as used")

    self_service: bool = Field(default=False, description="Offer the released version in Self Service")
    self_service_category: str | None = Field(default=None, description="Self Service category")


class TitleCreate(TitleSpec):
    """Request body for creating a title."""

    title: str = Field(description="Unique lowercase alphanumeric-and-dash identifier")


class TitleUpdate(XoloModel):
    """Request body for updating a title.

    Only the fields present in the request are applied; send null to clear one.
    """

    display_name: str | None = None
    description: str | None = None
    publisher: str | None = None
    contact_email: str | None = None
    app_name: str | None = None
    app_bundle_id: str | None = None
    version_script: str | None = None
    release_groups: list[str] | None = None
    excluded_groups: list[str] | None = None
    uninstall_script: str | None = None
    uninstall_ids: list[str] | None = None
    expiration: int | None = None
    expire_paths: list[str] | None = None
    self_service: bool | None = None
    self_service_category: str | None = None

    def changes(self) -> dict:
        """Explicitly provided fields, with a null text, list or flag normalized to its empty value.

        A cleared display_name is then rejected by validate_title_spec.
        """
        changes = self.model_dump(exclude_unset=True)
        for key, value in changes.items():
            if value is None and key in TEXT_FIELDS:
                changes[key] = ""
            elif value is None and key in LIST_FIELDS:
                changes[key] = []
            elif value is None and key == "self_service":
                changes[key] = False
        return changes


class Title(TitleCreate):
    """Authoritative record of a title."""

    self_service_icon: str | None = Field(default=None, description="Filename of the stored Self Service icon")
    ssvc_icon_id: int | None = Field(default=None, description="Id of the uploaded icon in Jamf Pro")
    ted_id: int | None = Field(default=None, description="Id of the title on the patch-metadata service")

    created_by: str | None = None
    creation_date: datetime | None = None
    modified_by: str | None = None
    modification_date: datetime | None = None

    version_order: list[str] = Field(default_factory=list, description="Known versions, newest first")
    released_version: str | None = None

    @property
    def latest_version(self) -> str | None:
        """Newest known version, if any."""
        return self.version_order[0] if self.version_order else None

    @property
    def uses_version_script(self) -> bool:
        return bool(self.version_script)

    @property
    def release_to_all(self) -> bool:
        return TARGET_ALL in self.release_groups
