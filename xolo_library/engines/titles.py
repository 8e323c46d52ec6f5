"""Title lifecycle engine.

A title owns these remote objects:

Title Editor:
    the software title, its requirements, and (with a version script) the
    version-reporting extension attribute

Jamf Pro:
    the installed-version extension attribute (version script titles),
    the installed smart group, the frozen static group, the uninstall
    script and policy, the last-used extension attribute, expired group and
    expire policy (titles that expire), the Self Service policy, and the
    patch title subscription (created with the first version)

Every write to them goes through a Steps tracker, so a failure reports what
had already been done. The local record is saved only once every remote
object exists.
"""

import logging
from collections.abc import Iterable
from pathlib import Path

from ..clients.jamf import PolicySpec
from ..clients.title_editor import install_criteria
from ..exceptions import AlreadyExistsError
from ..exceptions import NotFoundError
from ..exceptions import UpstreamError
from ..exceptions import ValidationError
from ..models.changelog import ChangeLogEntry
from ..models.titles import TARGET_ALL
from ..models.titles import Title
from ..models.titles import TitleCreate
from ..models.titles import TitleUpdate
from ..models.versions import Version
from ..progress.context import OperationContext
from . import naming
from .base import EngineBase
from .base import Steps
from .base import now
from .base import smart_group_criteria
from .diff import Change
from .diff import apply_changes
from .diff import changed
from .diff import diff_attributes
from .scripts import last_used_ea_script
from .scripts import uninstall_script_for_ids
from .validation import validate_category_exists
from .validation import validate_groups_exist
from .validation import validate_release_to_all
from .validation import validate_title_id
from .validation import validate_title_spec
from .versions import NO_CHANGES
from .versions import VersionEngine

logger = logging.getLogger(__name__)

FREEZE_OK = "OK"
ALREADY_FROZEN = "ERROR: Already frozen"
NOT_FROZEN = "ERROR: Not frozen"
NO_SUCH_COMPUTER = "ERROR: No computer with that name"

ICON_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif")

# Attributes whose change means the title's remote objects must be re-applied
TED_ATTRIBS = ("display_name", "publisher", "app_name", "app_bundle_id", "version_script")
DETECTION_ATTRIBS = ("app_name", "app_bundle_id", "version_script")
SCOPE_ATTRIBS = ("release_groups", "excluded_groups")
UNINSTALL_ATTRIBS = ("uninstall_script", "uninstall_ids")
EXPIRE_ATTRIBS = ("expiration", "expire_paths")
SSVC_ATTRIBS = ("self_service", "self_service_category", "display_name", "description")


class TitleEngine(EngineBase):
    """Create, update, release, freeze, repair and delete titles."""

    def __init__(self, *args, versions: VersionEngine, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.versions = versions

    # --- Reads ---

    def get(self, title: str) -> Title:
        return self.store.get_title(title)

    def list_titles(self) -> list[Title]:
        return self.store.all_titles()

    def history(self, title: str) -> list[ChangeLogEntry]:
        """Change log entries of a title, oldest first."""
        self.store.get_title(title)
        return self.changelog.entries(title)

    def frozen(self, title: str) -> dict[str, str]:
        """Frozen computers of a title, with the user assigned to each."""
        self.store.get_title(title)
        members = self.jamf.group_members(naming.frozen_group(title))
        users = {c["name"]: c.get("username") for c in self.jamf.computers()}
        return {computer: users.get(computer) or "unknown" for computer in sorted(members)}

    # --- Create ---

    def check_create(self, ctx: OperationContext, spec: TitleCreate) -> None:
        """Validate a new title before any lock or remote write.

        Raises:
            AlreadyExistsError: If the title exists here or on the Title Editor
            ValidationError: If the title is invalid or names unknown groups or categories
        """
        validate_title_id(spec.title)
        if self.store.exists_title(spec.title):
            raise AlreadyExistsError(f"Title '{spec.title}' already exists")
        validate_title_spec(spec)
        self._check_references(ctx, spec, SCOPE_ATTRIBS + ("self_service_category",))
        if spec.title in self.ted.title_ids():
            raise AlreadyExistsError(f"Title '{spec.title}' already exists in the Title Editor")

    def create(self, ctx: OperationContext, spec: TitleCreate) -> Title:
        """Register a title on both services, then record it."""
        self.check_create(ctx, spec)

        with self.locks.with_write_lock(spec.title, owner=ctx.op_id):
            if self.store.exists_title(spec.title):
                raise AlreadyExistsError(f"Title '{spec.title}' already exists")

            title_obj = Title(**spec.model_dump(), created_by=ctx.admin, creation_date=now())
            steps = Steps(ctx, f"create title '{spec.title}'")

            with steps("Creating title in the Title Editor"):
                title_obj.ted_id = self.ted.create_title(title_obj)
                self._apply_ted_title(title_obj)

            self._apply_jamf_title(steps, title_obj)

            if title_obj.self_service:
                with steps("Creating Self Service policy"):
                    self.versions.apply_manual_install_policy(title_obj, None)

            self.store.save_title(title_obj)
            self.log_msg(ctx, title_obj.title, "Title Created")

        ctx.progress(f"Created title '{title_obj.title}'")
        return title_obj

    # --- Update ---

    def check_update(self, ctx: OperationContext, title: str, update: TitleUpdate) -> list[Change]:
        """Validate an update and compute its per-attribute changes."""
        current = self.store.get_title(title)
        diffs = diff_attributes(current, update.changes())
        if diffs:
            updated = apply_changes(current, diffs)
            validate_title_spec(updated)
            self._check_references(ctx, updated, [c.attrib for c in diffs])
        return diffs

    def update(self, ctx: OperationContext, title: str, update: TitleUpdate) -> list[Change]:
        """Apply changed attributes to whichever service owns them, then the local record.

        Returns:
            The changes made, empty if there were none
        """
        with self.locks.with_write_lock(title, owner=ctx.op_id):
            diffs = self.check_update(ctx, title, update)
            if not diffs:
                ctx.progress(NO_CHANGES)
                return []

            current = self.store.get_title(title)
            updated = apply_changes(current, diffs)
            updated.modified_by = ctx.admin
            updated.modification_date = now()
            steps = Steps(ctx, f"update title '{title}'")

            try:
                self._apply_update(ctx, steps, updated, diffs)
            except Exception:
                self.changelog.log_update_failure(title, ctx.admin, host=ctx.host)
                raise

            self.store.save_title(updated)
            self.changelog.log_changes(title, ctx.admin, diffs, host=ctx.host)

        ctx.progress(f"Updated title '{title}'")
        return diffs

    def _apply_update(
        self,
        ctx: OperationContext,
        steps: Steps,
        updated: Title,
        diffs: list[Change],
    ) -> None:
        title = updated.title

        if changed(diffs, *TED_ATTRIBS, "description"):
            with steps("Updating title in the Title Editor"):
                self._apply_ted_title(updated)

        if changed(diffs, *DETECTION_ATTRIBS):
            with steps("Updating patch components in the Title Editor"):
                for version in self.store.versions_of(title):
                    if version.ted_patch_id is not None:
                        self.ted.set_component(version.ted_patch_id, updated, version.version, naming.ted_ea_key(title))

            with steps("Updating install detection in Jamf Pro"):
                self._apply_detection(updated)

        if changed(diffs, *UNINSTALL_ATTRIBS, *SCOPE_ATTRIBS):
            with steps("Updating uninstall script and policy"):
                self._apply_uninstall(updated)

        if changed(diffs, *EXPIRE_ATTRIBS, *UNINSTALL_ATTRIBS, *SCOPE_ATTRIBS):
            with steps("Updating expiration"):
                self._apply_expiration(updated)

        if changed(diffs, *SCOPE_ATTRIBS, *DETECTION_ATTRIBS, "self_service_category"):
            for version in updated.version_order:
                with steps(f"Re-scoping version '{version}'"):
                    self.versions.rescope(ctx, updated, version)

        if changed(diffs, *SSVC_ATTRIBS, *SCOPE_ATTRIBS):
            with steps("Updating the Self Service policy"):
                self.versions.apply_manual_install_policy(updated, self._released(updated))

    # --- Release ---

    def release(self, ctx: OperationContext, title: str, version: str) -> Version:
        """Release a version of the title; see VersionEngine.release."""
        return self.versions.release(ctx, title, version)

    # --- Delete ---

    def delete(self, ctx: OperationContext, title: str) -> None:
        """Delete every version, then the title's remote objects and local record.

        The change log is kept in the backups directory.
        """
        with self.locks.with_write_lock(title, owner=ctx.op_id):
            title_obj = self.store.get_title(title)
            steps = Steps(ctx, f"delete title '{title}'")

            for version in list(title_obj.version_order):
                self.versions.delete(ctx, title, version)

            with steps("Deleting Jamf Pro policies and scripts"):
                for policy in (
                    naming.manual_install_policy(title),
                    naming.uninstall_policy(title),
                    naming.expire_policy(title),
                ):
                    self.jamf.delete_policy(policy)
                self.jamf.delete_script(naming.uninstall_script(title))

            with steps("Deleting Jamf Pro groups and extension attributes"):
                for group in (naming.installed_group(title), naming.frozen_group(title), naming.expired_group(title)):
                    self.jamf.delete_computer_group(group)
                self.jamf.delete_extension_attribute(naming.installed_version_ea(title))
                self.jamf.delete_extension_attribute(naming.last_used_ea(title))

            with steps("Deleting Jamf Pro patch title"):
                self.jamf.delete_patch_title(title)

            if title_obj.ted_id is not None:
                with steps("Deleting title from the Title Editor"):
                    self.ted.delete_title(title_obj.ted_id)

            self.changelog.finalize_deleted(title, ctx.admin, host=ctx.host)
            self.store.delete_title(title)

        ctx.progress(f"Deleted title '{title}'")

    # --- Freeze / thaw ---

    def freeze(self, ctx: OperationContext, title: str, targets: Iterable[str], users: bool = False) -> dict[str, str]:
        """Add computers (or the computers of users) to the title's frozen group.

        Returns:
            Result per computer: OK or an ERROR message
        """
        return self._change_frozen(ctx, title, targets, users, freeze=True)

    def thaw(self, ctx: OperationContext, title: str, targets: Iterable[str], users: bool = False) -> dict[str, str]:
        """Remove computers from the frozen group; the target 'all' thaws everything."""
        return self._change_frozen(ctx, title, targets, users, freeze=False)

    def _change_frozen(
        self,
        ctx: OperationContext,
        title: str,
        targets: Iterable[str],
        users: bool,
        freeze: bool,
    ) -> dict[str, str]:
        targets = list(targets)
        with self.locks.with_write_lock(title, owner=ctx.op_id):
            self.store.get_title(title)
            group = naming.frozen_group(title)
            frozen = set(self.jamf.group_members(group))

            if not freeze and TARGET_ALL in targets:
                computers = sorted(frozen)
            elif users:
                computers = []
                for user in targets:
                    computers.extend(self.jamf.computers_for_user(user))
            else:
                computers = targets

            known = set(self.jamf.computer_ids())
            results: dict[str, str] = {}
            to_change: list[str] = []
            for computer in computers:
                if computer in results:
                    continue
                if computer not in known and computer not in frozen:
                    results[computer] = NO_SUCH_COMPUTER
                elif freeze and computer in frozen:
                    results[computer] = ALREADY_FROZEN
                elif not freeze and computer not in frozen:
                    results[computer] = NOT_FROZEN
                else:
                    results[computer] = FREEZE_OK
                    to_change.append(computer)

            if to_change:
                if freeze:
                    self.jamf.change_static_group(group, add=to_change)
                    self.log_msg(ctx, title, f"Froze computers: {', '.join(to_change)}")
                else:
                    self.jamf.change_static_group(group, remove=to_change)
                    self.log_msg(ctx, title, f"Thawed computers: {', '.join(to_change)}")

        ctx.progress(f"{'Froze' if freeze else 'Thawed'} {len(to_change)} computers for title '{title}'")
        return results

    # --- Repair ---

    def repair(self, ctx: OperationContext, title: str, repair_versions: bool = False) -> None:
        """Re-apply every remote object of the title from the local record."""
        with self.locks.with_write_lock(title, owner=ctx.op_id):
            title_obj = self.store.get_title(title)
            steps = Steps(ctx, f"repair title '{title}'")

            with steps("Repairing title in the Title Editor"):
                if title_obj.ted_id is None or title_obj.ted_id not in self._ted_numeric_ids():
                    title_obj.ted_id = self.ted.create_title(title_obj)
                    self.store.save_title(title_obj)
                self._apply_ted_title(title_obj)
                if title_obj.version_order:
                    self.ted.enable_title(title_obj.ted_id)

            self._apply_jamf_title(steps, title_obj)

            if title_obj.version_order:
                with steps("Repairing Jamf Pro patch title"):
                    try:
                        self.jamf.create_patch_title(title, title_obj.display_name, title_obj.self_service_category)
                    except UpstreamError as e:
                        if e.upstream_status != 409:
                            raise

            with steps("Repairing the Self Service policy"):
                self.versions.apply_manual_install_policy(title_obj, self._released(title_obj))

            if repair_versions:
                for version in title_obj.version_order:
                    self.versions.repair(ctx, title, version)

            self.log_msg(ctx, title, "Repaired Title")

        ctx.progress(f"Repaired title '{title}'")

    # --- Self Service icon ---

    def save_ssvc_icon(self, ctx: OperationContext, title: str, filename: str, data: bytes) -> Title:
        """Store and upload a Self Service icon, and point the title's policy at it.

        Raises:
            ValidationError: If the file isn't an image xolo accepts
        """
        name = Path(filename).name
        if not name.lower().endswith(ICON_EXTENSIONS):
            raise ValidationError(f"Self Service icons must be one of: {', '.join(ICON_EXTENSIONS)}")
        if not data:
            raise ValidationError("The Self Service icon file is empty")

        with self.locks.with_write_lock(title, owner=ctx.op_id):
            title_obj = self.store.get_title(title)
            steps = Steps(ctx, f"save Self Service icon for title '{title}'")
            icon_path = self.store.save_ssvc_icon(title, name, data)

            with steps("Uploading icon to Jamf Pro"):
                icon_id = self.jamf.upload_icon(icon_path)

            old_icon = title_obj.self_service_icon
            title_obj.self_service_icon = name
            title_obj.ssvc_icon_id = icon_id
            title_obj.modified_by = ctx.admin
            title_obj.modification_date = now()

            if title_obj.self_service:
                with steps("Updating the Self Service policy"):
                    self.versions.apply_manual_install_policy(title_obj, self._released(title_obj))

            self.store.save_title(title_obj)
            self.changelog.log_change(
                title, ctx.admin, host=ctx.host, attrib="self_service_icon", old=old_icon, new=name
            )

        ctx.progress(f"Saved Self Service icon for title '{title}'")
        return title_obj

    # --- Remote objects ---

    def _check_references(self, ctx: OperationContext, spec: TitleCreate | Title, attribs: Iterable[str]) -> None:
        """Check the groups and category a spec names exist, and that the admin may release to all."""
        attribs = set(attribs)
        if attribs & set(SCOPE_ATTRIBS):
            known = self.jamf.computer_group_names()
            release_groups = [g for g in spec.release_groups if g != TARGET_ALL]
            validate_groups_exist(release_groups, known, "release_groups")
            validate_groups_exist(spec.excluded_groups, known, "excluded_groups")
            if TARGET_ALL in spec.release_groups:
                validate_release_to_all(ctx.admin, spec.release_groups, self.release_to_all_admins())
        if "self_service_category" in attribs and spec.self_service_category:
            validate_category_exists(spec.self_service_category, self.jamf.category_names())

    def _ted_numeric_ids(self) -> set[int]:
        return {t["softwareTitleId"] for t in self.ted.list_titles()}

    def _released(self, title_obj: Title) -> Version | None:
        if title_obj.released_version is None:
            return None
        try:
            return self.store.get_version(title_obj.title, title_obj.released_version)
        except NotFoundError:
            logger.warning(f"Title '{title_obj.title}' names missing released version '{title_obj.released_version}'")
            return None

    def _apply_ted_title(self, title_obj: Title) -> None:
        """Push the title's fields, requirements and extension attribute to the Title Editor."""
        ted_id = title_obj.ted_id
        ea_key = naming.ted_ea_key(title_obj.title)
        self.ted.update_title(ted_id, title_obj)
        if title_obj.uses_version_script:
            self.ted.set_extension_attribute(ted_id, ea_key, title_obj.version_script, ea_key)
        else:
            self.ted.delete_extension_attribute(ted_id, ea_key)
        self.ted.set_requirements(ted_id, install_criteria(title_obj, ea_key))

    def _apply_jamf_title(self, steps: Steps, title_obj: Title) -> None:
        with steps("Creating install detection in Jamf Pro"):
            self._apply_detection(title_obj)

        with steps("Creating frozen group"):
            self.jamf.ensure_static_group(naming.frozen_group(title_obj.title))

        with steps("Creating uninstall script and policy"):
            self._apply_uninstall(title_obj)

        with steps("Creating expiration"):
            self._apply_expiration(title_obj)

    def _apply_detection(self, title_obj: Title) -> None:
        title = title_obj.title
        ea_name = naming.installed_version_ea(title)
        if title_obj.uses_version_script:
            self.jamf.save_extension_attribute(
                ea_name, title_obj.version_script, f"Installed version of {title_obj.display_name}, reported by xolo"
            )
        else:
            self.jamf.delete_extension_attribute(ea_name)
        self.jamf.save_smart_group(naming.installed_group(title), smart_group_criteria(title_obj))

    def _uninstall_script(self, title_obj: Title) -> str | None:
        if title_obj.uninstall_script:
            return title_obj.uninstall_script
        if title_obj.uninstall_ids:
            return uninstall_script_for_ids(title_obj.uninstall_ids)
        return None

    def _apply_uninstall(self, title_obj: Title) -> None:
        title = title_obj.title
        script = self._uninstall_script(title_obj)
        if script is None:
            self.jamf.delete_policy(naming.uninstall_policy(title))
            self.jamf.delete_script(naming.uninstall_script(title))
            return

        self.jamf.save_script(naming.uninstall_script(title), script)
        self.jamf.save_policy(
            PolicySpec(
                name=naming.uninstall_policy(title),
                category=title_obj.self_service_category,
                checkin=False,
                frequency="Ongoing",
                scope_groups=[naming.installed_group(title)],
                exclusion_groups=self.exclusions(title_obj),
                script=naming.uninstall_script(title),
            )
        )

    def _apply_expiration(self, title_obj: Title) -> None:
        """Create the last-used EA, expired group and expire policy, or remove them."""
        title = title_obj.title
        if not title_obj.expiration or self._uninstall_script(title_obj) is None:
            self.jamf.delete_policy(naming.expire_policy(title))
            self.jamf.delete_computer_group(naming.expired_group(title))
            self.jamf.delete_extension_attribute(naming.last_used_ea(title))
            return

        self.jamf.save_extension_attribute(
            naming.last_used_ea(title),
            last_used_ea_script(title_obj.expire_paths),
            f"Last use of {title_obj.display_name}, for xolo expiration",
        )
        self.jamf.ensure_static_group(naming.expired_group(title))
        self.jamf.save_policy(
            PolicySpec(
                name=naming.expire_policy(title),
                category=title_obj.self_service_category,
                frequency="Ongoing",
                scope_groups=[naming.expired_group(title)],
                exclusion_groups=self.exclusions(title_obj, include_frozen=True),
                script=naming.uninstall_script(title),
            )
        )

