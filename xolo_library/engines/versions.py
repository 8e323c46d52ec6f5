"""Version lifecycle engine.

State machine:
    pilot -> released | skipped
    released -> deprecated
    any -> deleted

Releasing is exclusive across a title's versions. Versions are ordered by
their position in the title's version_order (newest first), and releasing
version V visits every sibling:
- older siblings that were released become deprecated, older pilots become
  skipped, and their policies are disabled;
- when V is older than the currently released version (a rollback), newer
  siblings go back to pilot and their policies are re-scoped to their
  pilot groups.
All resulting records are committed together, so readers never see two
released versions, or none while a release is in flight.
"""

import logging
import plistlib
import shutil
import subprocess
import threading
import uuid
from collections.abc import Iterable
from datetime import timedelta
from pathlib import Path
from typing import BinaryIO

from ..clients.jamf import PatchPolicySpec
from ..clients.jamf import PolicySpec
from ..exceptions import ActionRequiredError
from ..exceptions import AlreadyExistsError
from ..exceptions import ConflictError
from ..exceptions import NotFoundError
from ..exceptions import UpstreamError
from ..exceptions import ValidationError
from ..models.operations import DeployError
from ..models.operations import DeployRemoval
from ..models.operations import DeployResult
from ..models.operations import PatchReportEntry
from ..models.operations import QueuedCommand
from ..models.titles import Title
from ..models.versions import Version
from ..models.versions import VersionCreate
from ..models.versions import VersionStatus
from ..models.versions import VersionUpdate
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
from .packages import inspect_package
from .packages import needs_signing
from .packages import sign_package
from .validation import validate_groups_exist
from .validation import validate_pkg_filename
from .validation import validate_version_id
from .validation import validate_version_spec

logger = logging.getLogger(__name__)

NO_CHANGES = "No changes to make"


class VersionEngine(EngineBase):
    """Create, update, upload, release, skip, deprecate, deploy and delete versions."""

    def __init__(self, *args, uploads_dir: Path, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.uploads_dir = Path(uploads_dir)
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self._stop = threading.Event()
        self._timers: dict[tuple[str, str], threading.Timer] = {}
        self._watchers: dict[tuple[str, str], threading.Thread] = {}
        self._background_lock = threading.Lock()

    # --- Reads ---

    def get(self, title: str, version: str) -> Version:
        return self.store.get_version(title, version)

    def list_versions(self, title: str) -> list[Version]:
        """Versions of a title, newest first."""
        return self.store.versions_of(title)

    def patch_report(self, title: str, version: str | None = None) -> list[PatchReportEntry]:
        """Installed version of a title per computer, optionally only one version."""
        self.store.get_title(title)
        if version is not None:
            self.store.get_version(title, version)
        rows = self.jamf.patch_report(title)
        return [
            PatchReportEntry.model_validate(row)
            for row in rows
            if version is None or row.get("version") == version
        ]

    # --- Create ---

    def check_create(self, ctx: OperationContext, title: str, spec: VersionCreate) -> None:
        """Validate a new version before any lock or remote write.

        Raises:
            NotFoundError: If the title doesn't exist
            AlreadyExistsError: If the version exists
            ValidationError: If the version is invalid
        """
        self.store.get_title(title)
        validate_version_id(spec.version)
        if self.store.exists_version(title, spec.version):
            raise AlreadyExistsError(f"Version '{spec.version}' of title '{title}' already exists")
        validate_version_spec(spec)
        if spec.pilot_groups:
            validate_groups_exist(spec.pilot_groups, self.jamf.computer_group_names(), "pilot_groups")

    def create(self, ctx: OperationContext, title: str, spec: VersionCreate) -> Version:
        """Create a version in pilot.

        Raises:
            ActionRequiredError: If the title's extension attribute awaits acceptance in Jamf Pro
        """
        self.check_create(ctx, title, spec)
        key = (title, spec.version)

        with self.locks.with_write_lock(key, owner=ctx.op_id):
            if self.store.exists_version(title, spec.version):
                raise AlreadyExistsError(f"Version '{spec.version}' of title '{title}' already exists")

            title_obj = self.store.get_title(title)
            self._require_ea_accepted(ctx, title_obj)

            version = Version(
                **spec.model_dump(),
                title=title,
                status=VersionStatus.PILOT,
                created_by=ctx.admin,
                creation_date=now(),
            )
            if not version.min_os:
                version.min_os = self.settings.default_min_os

            steps = Steps(ctx, f"create version '{spec.version}' of title '{title}'")
            first_version = not title_obj.version_order

            with steps("Creating patch in the Title Editor"):
                version.ted_patch_id = self.ted.create_patch(title_obj.ted_id, version, position=0)
                self._apply_ted_patch(title_obj, version)
                self.ted.enable_patch(version.ted_patch_id)

            if first_version:
                with steps("Enabling title in the Title Editor"):
                    self.ted.enable_title(title_obj.ted_id)

            with self.title_record(title):
                title_obj = self.store.get_title(title)
                title_obj.version_order.insert(0, version.version)
                title_obj.modified_by = ctx.admin
                title_obj.modification_date = now()

                with steps("Updating title in the Title Editor"):
                    self.ted.update_title(title_obj.ted_id, title_obj)

                if first_version:
                    with steps("Subscribing Jamf Pro to the patch title"):
                        self.jamf.create_patch_title(title, title_obj.display_name, title_obj.self_service_category)

                self.store.commit(title_obj, version)

            self.changelog.log_change(title, ctx.admin, host=ctx.host, version=version.version, msg="Version Created")

        ctx.progress(f"Created version '{version.version}' of title '{title}'")
        self.start_patch_activation_watcher(title, version.version)
        return version

    # --- Update ---

    def check_update(self, ctx: OperationContext, title: str, version: str, update: VersionUpdate) -> list[Change]:
        """Validate an update and compute its per-attribute changes."""
        current = self.store.get_version(title, version)
        diffs = diff_attributes(current, update.changes())
        if diffs:
            validate_version_spec(apply_changes(current, diffs))
            if changed(diffs, "pilot_groups"):
                validate_groups_exist(
                    [c.new for c in diffs if c.attrib == "pilot_groups"][0],
                    self.jamf.computer_group_names(),
                    "pilot_groups",
                )
        return diffs

    def update(self, ctx: OperationContext, title: str, version: str, update: VersionUpdate) -> list[Change]:
        """Apply changed attributes to the remote services, then the local record.

        Returns:
            The changes made, empty if there were none
        """
        with self.locks.with_write_lock((title, version), owner=ctx.op_id):
            diffs = self.check_update(ctx, title, version, update)
            if not diffs:
                ctx.progress(NO_CHANGES)
                return []

            title_obj = self.store.get_title(title)
            current = self.store.get_version(title, version)
            updated = apply_changes(current, diffs)
            steps = Steps(ctx, f"update version '{version}' of title '{title}'")

            try:
                if changed(diffs, "min_os", "max_os", "killapps", "reboot", "standalone"):
                    with steps("Updating patch in the Title Editor"):
                        self._apply_ted_patch(title_obj, updated)

                if updated.uploaded and changed(diffs, "pilot_groups", "reboot"):
                    with steps("Updating Jamf Pro package and policies"):
                        self.jamf.save_package(
                            updated.jamf_pkg_file,
                            category=title_obj.self_service_category,
                            reboot=updated.reboot,
                            sha_512=updated.sha_512,
                        )
                        self._apply_jamf_policies(title_obj, updated)
            except Exception:
                self.changelog.log_update_failure(title, ctx.admin, host=ctx.host, version=version)
                raise

            updated.modified_by = ctx.admin
            updated.modification_date = now()
            self.store.save_version(updated)
            self.changelog.log_changes(title, ctx.admin, diffs, host=ctx.host, version=version)

        ctx.progress(f"Updated version '{version}' of title '{title}'")
        return diffs

    # --- Package upload ---

    def stage_upload(self, title: str, version: str, filename: str, fileobj: BinaryIO) -> Path:
        """Save an uploaded file to the staging directory.

        Raises:
            NotFoundError: If the version doesn't exist
            ValidationError: If the filename has the wrong extension
        """
        self.store.get_version(title, version)
        validate_pkg_filename(filename)
        staged = self.uploads_dir / f"{uuid.uuid4().hex}-{Path(filename).name}"
        with open(staged, "wb") as out:
            shutil.copyfileobj(fileobj, out)
        logger.info(f"Staged upload for {title}/{version} at {staged}")
        return staged

    def upload_package(self, ctx: OperationContext, title: str, version: str, staged: Path, upload_name: str) -> Version:
        """Sign if needed, inspect, upload and record a package.

        A re-upload doesn't re-enable the reinstall policy at once: Jamf Pro
        may still be replicating the file to distribution points, so that is
        deferred by reupload_reinstall_delay_secs.
        """
        validate_pkg_filename(upload_name)
        try:
            with self.locks.with_write_lock((title, version), owner=ctx.op_id):
                return self._upload_package(ctx, title, version, staged, upload_name)
        finally:
            staged.unlink(missing_ok=True)

    def _upload_package(self, ctx: OperationContext, title: str, version: str, staged: Path, upload_name: str) -> Version:
        title_obj = self.store.get_title(title)
        current = self.store.get_version(title, version)
        reupload = current.uploaded
        steps = Steps(ctx, f"upload package for version '{version}' of title '{title}'")

        if reupload:
            ctx.progress("Re-uploading pkg file")

        if needs_signing(staged, self.settings.sign_pkgs):
            if not self.settings.pkg_signing_identity:
                raise ValidationError("Package signing is enabled but no signing identity is configured")
            with steps("Signing package"):
                sign_package(staged, self.settings.pkg_signing_identity, self.settings.pkg_signing_keychain)

        jamf_pkg_file = naming.package_filename(title, version, upload_name)
        url = f"{self.settings.pkg_download_url.rstrip('/')}/{jamf_pkg_file}" if self.settings.pkg_download_url else ""

        with steps("Inspecting package"):
            info = inspect_package(staged, url, title_obj.display_name, version, title_obj.app_bundle_id)

        with steps(f"Creating Jamf Pro package '{jamf_pkg_file}'"):
            self.jamf.save_package(
                jamf_pkg_file,
                category=title_obj.self_service_category,
                reboot=current.reboot,
                sha_512=info.sha_512,
            )

        with steps(f"Uploading '{jamf_pkg_file}' to the distribution point"):
            self._upload_file(jamf_pkg_file, staged)

        updated = current.model_copy(deep=True)
        updated.jamf_pkg_file = jamf_pkg_file
        updated.pkg_to_upload = upload_name
        updated.sha_512 = info.sha_512
        updated.manifest = info.manifest
        updated.dist_pkg = info.dist_pkg
        if reupload:
            updated.reupload_date = now()
            updated.reuploaded_by = ctx.admin
        else:
            updated.upload_date = now()
            updated.uploaded_by = ctx.admin

        with steps("Updating Jamf Pro policies"):
            self._apply_jamf_policies(title_obj, updated)

        self.store.save_version(updated)
        verb = "Re-uploaded" if reupload else "Uploaded"
        self.changelog.log_change(
            title,
            ctx.admin,
            host=ctx.host,
            version=version,
            msg=f"{verb} pkg file '{upload_name}' as '{jamf_pkg_file}'",
        )

        if reupload:
            self._schedule_reinstall(title, version)
            ctx.progress(
                f"The auto-reinstall policy will be enabled in {self.settings.reupload_reinstall_delay_secs} seconds"
            )

        ctx.progress(f"{verb} package for version '{version}' of title '{title}'")
        return updated

    def _upload_file(self, jamf_pkg_file: str, path: Path) -> None:
        tool = self.settings.upload_tool
        if tool == "api":
            self.jamf.upload_package(jamf_pkg_file, path)
            return

        try:
            subprocess.run([tool, jamf_pkg_file, str(path)], capture_output=True, text=True, check=True)
        except FileNotFoundError as e:
            raise UpstreamError("upload tool", f"{tool} not found") from e
        except subprocess.CalledProcessError as e:
            raise UpstreamError("upload tool", f"{tool} exited {e.returncode}: {e.stderr.strip()}") from e

    def _schedule_reinstall(self, title: str, version: str) -> None:
        key = (title, version)
        timer = threading.Timer(self.settings.reupload_reinstall_delay_secs, self._enable_reinstall, args=key)
        timer.daemon = True
        timer.name = f"xolo-reinstall-{title}-{version}"
        with self._background_lock:
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous.cancel()
            self._timers[key] = timer
        timer.start()

    def _enable_reinstall(self, title: str, version: str) -> None:
        with self._background_lock:
            self._timers.pop((title, version), None)
        policy = naming.auto_reinstall_policy(title, version)
        try:
            self.jamf.set_policy_enabled(policy, True)
            self.jamf.flush_policy_logs(policy)
        except UpstreamError as e:
            logger.error(f"Could not enable re-install policy '{policy}': {e}")
            return
        logger.info(f"Enabled re-install policy '{policy}' after re-upload")

    # --- Release ---

    def release(self, ctx: OperationContext, title: str, version: str) -> Version:
        """Make a version the released one, demoting or resetting its siblings.

        Raises:
            ConflictError: If already released, or no package has been uploaded
        """
        with self.locks.with_write_lock(title, owner=ctx.op_id):
            with self.locks.with_write_lock((title, version), owner=ctx.op_id):
                target = self._release(ctx, title, version)

        ctx.progress(f"Released version '{version}' of title '{title}'")
        return target

    def check_release(self, title: str, version: str) -> Version:
        """Check a version can be released.

        Raises:
            NotFoundError: If the title or version doesn't exist
            ConflictError: If already released, or no package has been uploaded
        """
        self.store.get_title(title)
        target = self.store.get_version(title, version)
        if target.status == VersionStatus.RELEASED:
            raise ConflictError(f"Version '{version}' of title '{title}' is already released")
        if not target.uploaded:
            raise ConflictError(f"Version '{version}' of title '{title}' has no uploaded package, upload one first")
        return target

    def _release(self, ctx: OperationContext, title: str, version: str) -> Version:
        target = self.check_release(title, version)
        title_obj = self.store.get_title(title)

        position = title_obj.version_order.index(version)
        current = title_obj.released_version
        rollback = current is not None and title_obj.version_order.index(current) < position
        steps = Steps(ctx, f"release version '{version}' of title '{title}'")

        if rollback:
            ctx.progress(f"Rolling back from version '{current}' to '{version}'")

        changed_versions: list[tuple[Version, VersionStatus]] = []
        for sibling in self.store.versions_of(title):
            if sibling.version == version:
                continue
            old_status = sibling.status
            sib_position = title_obj.version_order.index(sibling.version)

            if sib_position > position:
                if sibling.status == VersionStatus.RELEASED:
                    sibling.status = VersionStatus.DEPRECATED
                    sibling.deprecation_date = now()
                    sibling.deprecated_by = ctx.admin
                elif sibling.status == VersionStatus.PILOT:
                    sibling.status = VersionStatus.SKIPPED
                    sibling.skipped_date = now()
                    sibling.skipped_by = ctx.admin
            elif rollback and sibling.status != VersionStatus.PILOT:
                sibling.status = VersionStatus.PILOT
                sibling.release_date = None
                sibling.released_by = None
                sibling.deprecation_date = None
                sibling.deprecated_by = None
                sibling.skipped_date = None
                sibling.skipped_by = None

            if sibling.status != old_status:
                with steps(f"Setting version '{sibling.version}' to {sibling.status.value}"):
                    self._apply_jamf_policies(title_obj, sibling)
                changed_versions.append((sibling, old_status))

        old_target_status = target.status
        target.status = VersionStatus.RELEASED
        target.release_date = now()
        target.released_by = ctx.admin
        target.deprecation_date = None
        target.deprecated_by = None
        target.skipped_date = None
        target.skipped_by = None

        with steps(f"Scoping version '{version}' to release groups"):
            self._apply_jamf_policies(title_obj, target)

        with self.title_record(title):
            title_obj = self.store.get_title(title)
            title_obj.released_version = version
            title_obj.modified_by = ctx.admin
            title_obj.modification_date = now()

            with steps("Updating the Self Service policy"):
                self.apply_manual_install_policy(title_obj, target)

            self.store.commit(title_obj, target, *(v for v, _ in changed_versions))

        for sibling, old_status in changed_versions:
            self.changelog.log_change(
                title,
                ctx.admin,
                host=ctx.host,
                version=sibling.version,
                attrib="status",
                old=old_status.value,
                new=sibling.status.value,
            )
        self.changelog.log_change(
            title,
            ctx.admin,
            host=ctx.host,
            version=version,
            attrib="status",
            old=old_target_status.value,
            new=VersionStatus.RELEASED.value,
        )
        self.changelog.log_change(title, ctx.admin, host=ctx.host, attrib="released_version", old=current, new=version)
        return target

    # --- Skip / deprecate ---

    def skip(self, ctx: OperationContext, title: str, version: str) -> Version:
        """Skip a pilot version that will never be released."""
        return self._transition(ctx, title, version, VersionStatus.PILOT, VersionStatus.SKIPPED)

    def deprecate(self, ctx: OperationContext, title: str, version: str) -> Version:
        """Deprecate the released version, leaving the title with none released."""
        return self._transition(ctx, title, version, VersionStatus.RELEASED, VersionStatus.DEPRECATED)

    def _transition(
        self,
        ctx: OperationContext,
        title: str,
        version: str,
        from_status: VersionStatus,
        to_status: VersionStatus,
    ) -> Version:
        with self.locks.with_write_lock((title, version), owner=ctx.op_id):
            title_obj = self.store.get_title(title)
            current = self.store.get_version(title, version)
            if current.status != from_status:
                raise ConflictError(
                    f"Version '{version}' of title '{title}' is {current.status.value}; "
                    f"only {from_status.value} versions can become {to_status.value}"
                )

            updated = current.model_copy(deep=True)
            updated.status = to_status
            if to_status == VersionStatus.SKIPPED:
                updated.skipped_date = now()
                updated.skipped_by = ctx.admin
            else:
                updated.deprecation_date = now()
                updated.deprecated_by = ctx.admin

            steps = Steps(ctx, f"set version '{version}' of title '{title}' to {to_status.value}")
            with steps("Disabling policies"):
                self._apply_jamf_policies(title_obj, updated)

            if to_status == VersionStatus.DEPRECATED:
                with self.title_record(title):
                    title_obj = self.store.get_title(title)
                    if title_obj.released_version == version:
                        title_obj.released_version = None
                        self.apply_manual_install_policy(title_obj, None)
                    self.store.commit(title_obj, updated)
            else:
                self.store.save_version(updated)

            self.changelog.log_change(
                title,
                ctx.admin,
                host=ctx.host,
                version=version,
                attrib="status",
                old=from_status.value,
                new=to_status.value,
            )

        ctx.progress(f"Version '{version}' of title '{title}' is now {to_status.value}")
        return updated

    # --- Delete ---

    def delete(self, ctx: OperationContext, title: str, version: str) -> None:
        """Remove a version from both remote services and the store."""
        with self.locks.with_write_lock((title, version), owner=ctx.op_id):
            title_obj = self.store.get_title(title)
            current = self.store.get_version(title, version)
            steps = Steps(ctx, f"delete version '{version}' of title '{title}'")

            with steps(f"Deleting Jamf Pro policies for version '{version}'"):
                self.jamf.delete_patch_policy(title, naming.patch_policy(title, version))
                self.jamf.delete_policy(naming.auto_install_policy(title, version))
                self.jamf.delete_policy(naming.auto_reinstall_policy(title, version))
                self.jamf.delete_computer_group(naming.version_installed_group(title, version))

            if current.jamf_pkg_file:
                with steps(f"Deleting Jamf Pro package '{current.jamf_pkg_file}'"):
                    self.jamf.delete_package(current.jamf_pkg_file)

            if current.ted_patch_id is not None:
                with steps("Deleting patch from the Title Editor"):
                    self.ted.delete_patch(current.ted_patch_id)

            self._cancel_background(title, version)

            with self.title_record(title):
                title_obj = self.store.get_title(title)
                if version in title_obj.version_order:
                    title_obj.version_order.remove(version)
                if title_obj.released_version == version:
                    title_obj.released_version = None
                    self.apply_manual_install_policy(title_obj, None)
                title_obj.modified_by = ctx.admin
                title_obj.modification_date = now()
                self.store.delete_version(title, version)
                self.store.save_title(title_obj)

            self.changelog.log_change(title, ctx.admin, host=ctx.host, version=version, msg="Deleted Version")

        ctx.progress(f"Deleted version '{version}' of title '{title}'")

    # --- MDM ---

    def deploy_via_mdm(
        self,
        ctx: OperationContext,
        title: str,
        version: str,
        computers: Iterable[str] = (),
        groups: Iterable[str] = (),
    ) -> DeployResult:
        """Push a version's package to computers with InstallEnterpriseApplication.

        Results are reported per target: removed before sending, queued, or
        rejected by Jamf Pro.

        Raises:
            ValidationError: If the package isn't a distribution package
            ConflictError: If no package has been uploaded
        """
        with self.locks.with_read_lock((title, version), owner=ctx.op_id):
            title_obj = self.store.get_title(title)
            current = self.store.get_version(title, version)
            if not current.uploaded:
                raise ConflictError(f"Version '{version}' of title '{title}' has no uploaded package")
            if not current.dist_pkg:
                raise ValidationError(
                    f"The package for version '{version}' of title '{title}' is not a distribution package, "
                    "which MDM deployment requires"
                )

            result = DeployResult()
            ids = self.jamf.computer_ids()

            targets: dict[str, str | None] = {}
            for computer in computers:
                targets.setdefault(computer, None)
            for group in groups:
                try:
                    members = self.jamf.group_members(group)
                except UpstreamError as e:
                    if e.upstream_status != 404:
                        raise
                    result.errors.append(DeployError(device=group, reason="No such computer group"))
                    continue
                for computer in members:
                    targets.setdefault(computer, group)

            excluded: dict[str, str] = {}
            for group in self.exclusions(title_obj, include_frozen=True):
                try:
                    members = self.jamf.group_members(group)
                except UpstreamError as e:
                    if e.upstream_status != 404:
                        raise
                    continue
                for computer in members:
                    excluded.setdefault(computer, group)

            to_deploy: dict[int, str] = {}
            for computer, via_group in targets.items():
                if computer not in ids:
                    reason = "No computer with that name"
                elif computer in excluded:
                    reason = f"Member of excluded group '{excluded[computer]}'"
                else:
                    to_deploy[ids[computer]] = computer
                    continue
                result.removals.append(DeployRemoval(device=computer, group=via_group, reason=reason))

            if to_deploy:
                queued, errors = self.jamf.deploy_package(self._mdm_manifest(current), sorted(to_deploy))
                for item in queued:
                    device = to_deploy.get(int(item["device"]), str(item["device"]))
                    result.queued_commands.append(QueuedCommand(device=device, command_uuid=item["commandUuid"]))
                for item in errors:
                    device = to_deploy.get(int(item["device"]), str(item["device"]))
                    result.errors.append(DeployError(device=device, reason=item.get("reason", "unknown")))

            self.log_msg(
                ctx,
                title,
                f"Deployed via MDM: {len(result.queued_commands)} queued, "
                f"{len(result.removals)} removed, {len(result.errors)} errors",
                version=version,
            )
        return result

    def _mdm_manifest(self, version: Version) -> dict:
        manifest = plistlib.loads(version.manifest.encode("utf-8"))
        item = manifest["items"][0]
        asset = item["assets"][0]
        metadata = item["metadata"]
        return {
            "url": asset["url"],
            "hash": version.sha_512,
            "hashType": "SHA512",
            "bundleId": metadata["bundle-identifier"],
            "bundleVersion": metadata["bundle-version"],
            "title": metadata["title"],
            "sizeInBytes": metadata["sizeInBytes"],
        }

    # --- Repair ---

    def repair(self, ctx: OperationContext, title: str, version: str) -> None:
        """Re-apply every remote resource of a version from the local record."""
        with self.locks.with_write_lock((title, version), owner=ctx.op_id):
            title_obj = self.store.get_title(title)
            current = self.store.get_version(title, version)
            steps = Steps(ctx, f"repair version '{version}' of title '{title}'")

            with steps("Repairing patch in the Title Editor"):
                if current.ted_patch_id is None:
                    current.ted_patch_id = self.ted.create_patch(
                        title_obj.ted_id, current, position=title_obj.version_order.index(version)
                    )
                    self.store.save_version(current)
                self._apply_ted_patch(title_obj, current)
                self.ted.enable_patch(current.ted_patch_id)

            if current.uploaded:
                with steps("Repairing Jamf Pro package and policies"):
                    self.jamf.save_package(
                        current.jamf_pkg_file,
                        category=title_obj.self_service_category,
                        reboot=current.reboot,
                        sha_512=current.sha_512,
                    )
                    self._apply_jamf_policies(title_obj, current)

            self.log_msg(ctx, title, "Repaired Version", version=version)
        ctx.progress(f"Repaired version '{version}' of title '{title}'")

    def rescope(self, ctx: OperationContext, title_obj: Title, version: str) -> None:
        """Re-apply a version's Jamf Pro scope after its title's targeting changed."""
        with self.locks.with_write_lock((title_obj.title, version), owner=ctx.op_id):
            current = self.store.get_version(title_obj.title, version)
            if not current.uploaded:
                return
            self._apply_jamf_policies(title_obj, current)

    # --- Patch activation ---

    def start_patch_activation_watcher(self, title: str, version: str) -> None:
        """Wait in the background for Jamf Pro to see the new patch, then activate it."""
        key = (title, version)
        thread = threading.Thread(
            target=self._watch_patch_activation,
            args=key,
            name=f"xolo-patch-watch-{title}-{version}",
            daemon=True,
        )
        with self._background_lock:
            self._watchers[key] = thread
        thread.start()

    def _watch_patch_activation(self, title: str, version: str) -> None:
        deadline = now() + timedelta(seconds=self.settings.patch_activation_timeout_secs)
        warned = False
        try:
            while not self._stop.is_set() and now() < deadline:
                try:
                    title_obj = self.store.get_title(title)
                    if title_obj.uses_version_script and self.jamf.patch_ea_awaiting_acceptance(title):
                        if self.settings.jamf_auto_accept_xolo_eas:
                            self.jamf.accept_patch_ea(title)
                        elif not warned:
                            url = self.jamf.patch_ea_approval_url(title)
                            logger.warning(
                                f"Patch for {title}/{version} will not activate until its extension attribute "
                                f"is accepted in Jamf Pro: {url}"
                            )
                            warned = True

                    if self.jamf.patch_version_visible(title, version):
                        owner = f"patch-watch-{uuid.uuid4().hex}"
                        with self.locks.with_write_lock((title, version), owner=owner, blocking=True):
                            current = self.store.get_version(title, version)
                            if current.uploaded:
                                self._activate_patch(self.store.get_title(title), current)
                        logger.info(f"Patch {title}/{version} is active in Jamf Pro")
                        return
                except NotFoundError:
                    logger.info(f"Stopped watching {title}/{version}: it no longer exists")
                    return
                except UpstreamError as e:
                    logger.warning(f"Checking patch activation for {title}/{version}: {e}")

                self._stop.wait(self.settings.patch_activation_poll_secs)

            if not self._stop.is_set():
                logger.error(
                    f"Patch {title}/{version} did not appear in Jamf Pro within "
                    f"{self.settings.patch_activation_timeout_secs} seconds; run repair on the version"
                )
        finally:
            with self._background_lock:
                self._watchers.pop((title, version), None)

    def _activate_patch(self, title_obj: Title, version: Version) -> None:
        """Point the Jamf patch title at the package and scope its patch policy."""
        title = title_obj.title
        self.jamf.assign_package_to_patch(title, version.version, version.jamf_pkg_file)
        scope_all, groups = self._scope_for(title_obj, version)
        self.jamf.save_patch_policy(
            title,
            PatchPolicySpec(
                name=naming.patch_policy(title, version.version),
                target_version=version.version,
                enabled=version.status in (VersionStatus.PILOT, VersionStatus.RELEASED) and (scope_all or bool(groups)),
                allow_downgrade=False,
                scope_all=scope_all,
                scope_groups=groups,
                exclusion_groups=self._exclusions_for(title_obj, version),
            ),
        )

    # --- Background work ---

    def background_tasks(self) -> list[str]:
        with self._background_lock:
            return [t.name for t in self._watchers.values()] + [t.name for t in self._timers.values()]

    def shutdown(self) -> None:
        """Stop watchers and cancel pending re-install timers."""
        self._stop.set()
        with self._background_lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()

    def _cancel_background(self, title: str, version: str) -> None:
        with self._background_lock:
            timer = self._timers.pop((title, version), None)
        if timer is not None:
            timer.cancel()

    # --- Remote resources ---

    def _apply_ted_patch(self, title_obj: Title, version: Version) -> None:
        self.ted.update_patch(version.ted_patch_id, version)
        self.ted.set_killapps(version.ted_patch_id, version.killapps)
        self.ted.set_capabilities(version.ted_patch_id, version.min_os or self.settings.default_min_os, version.max_os)
        self.ted.set_component(version.ted_patch_id, title_obj, version.version, naming.ted_ea_key(title_obj.title))

    def _scope_for(self, title_obj: Title, version: Version) -> tuple[bool, list[str]]:
        if version.status == VersionStatus.RELEASED:
            return self.release_scope(title_obj)
        if version.status == VersionStatus.PILOT:
            return False, list(version.pilot_groups)
        return False, []

    def _exclusions_for(self, title_obj: Title, version: Version) -> list[str]:
        if version.status == VersionStatus.RELEASED:
            return self.release_exclusions(title_obj)
        return self.exclusions(title_obj)

    def _apply_jamf_policies(self, title_obj: Title, version: Version) -> None:
        """Create or update a version's policies to match its status.

        Does nothing until a package has been uploaded.
        """
        if not version.uploaded and not version.jamf_pkg_file:
            return
        title = title_obj.title
        scope_all, groups = self._scope_for(title_obj, version)
        active = version.status in (VersionStatus.PILOT, VersionStatus.RELEASED) and (scope_all or bool(groups))

        installed_group = naming.version_installed_group(title, version.version)
        self.jamf.save_smart_group(installed_group, smart_group_criteria(title_obj, version.version))

        self.jamf.save_policy(
            PolicySpec(
                name=naming.auto_install_policy(title, version.version),
                category=title_obj.self_service_category,
                enabled=active,
                scope_all=scope_all,
                scope_groups=groups,
                exclusion_groups=self._exclusions_for(title_obj, version) + [naming.installed_group(title)],
                package=version.jamf_pkg_file,
                reboot=version.reboot,
            )
        )
        self.jamf.save_policy(
            PolicySpec(
                name=naming.auto_reinstall_policy(title, version.version),
                category=title_obj.self_service_category,
                enabled=False,
                scope_groups=[installed_group],
                exclusion_groups=self.exclusions(title_obj),
                package=version.jamf_pkg_file,
                reboot=version.reboot,
            )
        )
        if self.jamf.patch_version_visible(title, version.version):
            self._activate_patch(title_obj, version)

    def apply_manual_install_policy(self, title_obj: Title, released: Version | None) -> None:
        """Point the title's Self Service policy at the released version's package.

        The policy is disabled while nothing is released, and removed when the
        title doesn't use Self Service.
        """
        name = naming.manual_install_policy(title_obj.title)
        if not title_obj.self_service:
            self.jamf.delete_policy(name)
            return
        scope_all, groups = self.release_scope(title_obj)
        self.jamf.save_policy(
            PolicySpec(
                name=name,
                category=title_obj.self_service_category,
                enabled=released is not None,
                checkin=False,
                frequency="Ongoing",
                scope_all=scope_all,
                scope_groups=groups,
                exclusion_groups=self.exclusions(title_obj) + [naming.installed_group(title_obj.title)],
                package=released.jamf_pkg_file if released else None,
                self_service=True,
                self_service_name=title_obj.display_name,
                self_service_description=title_obj.description,
                icon_id=title_obj.ssvc_icon_id,
                reboot=released.reboot if released else False,
            )
        )

    def _require_ea_accepted(self, ctx: OperationContext, title_obj: Title) -> None:
        if not title_obj.uses_version_script:
            return
        if not self.jamf.patch_ea_awaiting_acceptance(title_obj.title):
            return
        if self.settings.jamf_auto_accept_xolo_eas:
            ctx.progress("Accepting the title's extension attribute in Jamf Pro")
            self.jamf.accept_patch_ea(title_obj.title)
            return
        raise ActionRequiredError(
            f"The version-script extension attribute for title '{title_obj.title}' must be accepted in Jamf Pro "
            "before new versions can be activated",
            approval_url=self.jamf.patch_ea_approval_url(title_obj.title),
        )

