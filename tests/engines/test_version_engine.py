"""
Tests for the version lifecycle engine: creation, uploads, the release
state machine, MDM deployment and deletion.
"""

from pathlib import Path

import pytest

from tests.conftest import TEST_TITLE
from tests.fakes import FakeJamf
from tests.fakes import FakeTitleEditor
from tests.fakes import build_flat_pkg
from xolo_library.engines import naming
from xolo_library.exceptions import ActionRequiredError
from xolo_library.exceptions import AlreadyExistsError
from xolo_library.exceptions import ConflictError
from xolo_library.exceptions import NotFoundError
from xolo_library.exceptions import ValidationError
from xolo_library.models.titles import TitleCreate
from xolo_library.models.versions import VersionCreate
from xolo_library.models.versions import VersionStatus
from xolo_library.models.versions import VersionUpdate
from xolo_library.progress.context import OperationContext
from xolod.services.container import XoloServices


def statuses(services: XoloServices) -> dict[str, str]:
    return {v.version: v.status.value for v in services.versions.list_versions(TEST_TITLE)}


@pytest.mark.unit
class TestCreateVersion:
    """Test version creation."""

    def test_create_in_pilot(
        self,
        services: XoloServices,
        app_title,
        add_version,
        fake_jamf: FakeJamf,
        fake_ted: FakeTitleEditor,
    ) -> None:
        """Test a new version starts in pilot and enables the patch title."""
        version = add_version("1.0.0", upload=False)

        assert version.status == VersionStatus.PILOT
        assert version.min_os == services.settings.default_min_os
        assert fake_ted.patches[version.ted_patch_id]["enabled"] is True
        assert fake_ted.titles[app_title.ted_id]["enabled"] is True
        assert TEST_TITLE in fake_jamf.patch_titles
        assert services.titles.get(TEST_TITLE).version_order == ["1.0.0"]

    def test_newest_first(self, services: XoloServices, app_title, add_version) -> None:
        """Test versions are kept newest first."""
        add_version("1.0.0", upload=False)
        add_version("1.1.0", upload=False)

        assert services.titles.get(TEST_TITLE).version_order == ["1.1.0", "1.0.0"]
        assert [v.version for v in services.versions.list_versions(TEST_TITLE)] == ["1.1.0", "1.0.0"]

    def test_duplicate_version(self, app_title, add_version) -> None:
        """Test creating an existing version fails."""
        add_version("1.0.0", upload=False)

        with pytest.raises(AlreadyExistsError):
            add_version("1.0.0", upload=False)

    def test_missing_title(self, services: XoloServices, ctx: OperationContext) -> None:
        """Test adding a version to an unknown title raises NotFoundError."""
        with pytest.raises(NotFoundError):
            services.versions.create(ctx, "nope", VersionCreate(version="1.0"))

    def test_unknown_pilot_group(self, services: XoloServices, ctx: OperationContext, app_title) -> None:
        """Test pilot groups must exist in Jamf Pro."""
        with pytest.raises(ValidationError, match="nobody"):
            services.versions.create(ctx, TEST_TITLE, VersionCreate(version="1.0", pilot_groups=["nobody"]))

    def test_extension_attribute_awaiting_acceptance(
        self,
        services: XoloServices,
        ctx: OperationContext,
        fake_jamf: FakeJamf,
    ) -> None:
        """Test an unaccepted version-script EA blocks the version and links to its approval."""
        services.titles.create(ctx, TitleCreate(title="scripted", display_name="Scripted", version_script="echo 1"))
        fake_jamf.awaiting_acceptance.add("scripted")

        with pytest.raises(ActionRequiredError) as exc_info:
            services.versions.create(ctx, "scripted", VersionCreate(version="1.0"))

        assert exc_info.value.approval_url == "https://jamf.example.com/patch/scripted"
        assert not services.store.exists_version("scripted", "1.0")

    def test_extension_attribute_auto_accepted(
        self,
        services: XoloServices,
        ctx: OperationContext,
        fake_jamf: FakeJamf,
    ) -> None:
        """Test the EA is accepted when auto-accept is on."""
        services.settings.jamf_auto_accept_xolo_eas = True
        services.titles.create(ctx, TitleCreate(title="scripted", display_name="Scripted", version_script="echo 1"))
        fake_jamf.awaiting_acceptance.add("scripted")

        services.versions.create(ctx, "scripted", VersionCreate(version="1.0"))

        assert fake_jamf.called("accept_patch_ea")


@pytest.mark.unit
class TestUpdateVersion:
    """Test version updates."""

    def test_update(self, services: XoloServices, ctx: OperationContext, app_title, add_version, fake_ted) -> None:
        """Test changed attributes reach the Title Editor patch."""
        version = add_version("1.0.0")

        diffs = services.versions.update(ctx, TEST_TITLE, "1.0.0", VersionUpdate(min_os="13", killapps=["X.app;com.x"]))

        assert {d.attrib for d in diffs} == {"min_os", "killapps"}
        assert services.versions.get(TEST_TITLE, "1.0.0").min_os == "13"
        assert ("set_killapps", version.ted_patch_id, ["X.app;com.x"]) in fake_ted.calls

    def test_no_changes(self, services: XoloServices, ctx: OperationContext, app_title, add_version) -> None:
        """Test an update matching the current values changes nothing."""
        add_version("1.0.0")
        assert services.versions.update(ctx, TEST_TITLE, "1.0.0", VersionUpdate(reboot=False)) == []

    def test_invalid_os_bounds(self, services: XoloServices, ctx: OperationContext, app_title, add_version) -> None:
        """Test min_os can't be later than max_os."""
        add_version("1.0.0")

        with pytest.raises(ValidationError):
            services.versions.update(ctx, TEST_TITLE, "1.0.0", VersionUpdate(min_os="15", max_os="14"))


@pytest.mark.unit
class TestUpload:
    """Test package uploads."""

    def test_upload_records_package(
        self,
        services: XoloServices,
        app_title,
        add_version,
        fake_jamf: FakeJamf,
    ) -> None:
        """Test an upload records the package and enables the pilot policy."""
        version = add_version("1.0.0")

        assert version.uploaded
        assert version.uploaded_by == "tester"
        assert version.jamf_pkg_file == "xolo-xolotest-1.0.0.pkg"
        assert version.pkg_to_upload == "xolotest-1.0.0.pkg"
        assert version.dist_pkg is True
        assert version.sha_512
        assert "xolo-xolotest-1.0.0.pkg" in fake_jamf.uploaded

        policy = fake_jamf.policies[naming.auto_install_policy(TEST_TITLE, "1.0.0")]
        assert policy.enabled is True
        assert policy.scope_groups == ["pilot-testers"]
        assert naming.installed_group(TEST_TITLE) in policy.exclusion_groups

    def test_staged_file_removed(self, services: XoloServices, app_title, add_version) -> None:
        """Test the staged upload is removed after sending it on."""
        add_version("1.0.0")
        assert list(services.versions.uploads_dir.iterdir()) == []

    def test_wrong_extension(self, services: XoloServices, app_title, add_version, temp_storage_dir: Path) -> None:
        """Test only .pkg and .zip uploads are staged."""
        add_version("1.0.0", upload=False)

        with open(build_flat_pkg(temp_storage_dir / "x.pkg"), "rb") as f:
            with pytest.raises(ValidationError):
                services.versions.stage_upload(TEST_TITLE, "1.0.0", "installer.dmg", f)

    def test_not_a_package(
        self,
        services: XoloServices,
        ctx: OperationContext,
        app_title,
        add_version,
        temp_storage_dir: Path,
    ) -> None:
        """Test a file that isn't a flat package is rejected."""
        add_version("1.0.0", upload=False)
        bogus = temp_storage_dir / "bogus.pkg"
        bogus.write_bytes(b"definitely not a xar archive")

        with open(bogus, "rb") as f:
            staged = services.versions.stage_upload(TEST_TITLE, "1.0.0", "bogus.pkg", f)
        with pytest.raises(ValidationError):
            services.versions.upload_package(ctx, TEST_TITLE, "1.0.0", staged, "bogus.pkg")

        assert not services.versions.get(TEST_TITLE, "1.0.0").uploaded

    def test_reupload_schedules_reinstall(
        self,
        services: XoloServices,
        ctx: OperationContext,
        app_title,
        add_version,
        temp_storage_dir: Path,
    ) -> None:
        """Test a re-upload schedules the delayed reinstall, cancelled on shutdown."""
        add_version("1.0.0")
        pkg = build_flat_pkg(temp_storage_dir / "again.pkg", payload=b"new payload")

        with open(pkg, "rb") as f:
            staged = services.versions.stage_upload(TEST_TITLE, "1.0.0", pkg.name, f)
        version = services.versions.upload_package(ctx, TEST_TITLE, "1.0.0", staged, pkg.name)

        assert version.reuploaded_by == "tester"
        assert version.upload_date is not None
        assert "xolo-reinstall-xolotest-1.0.0" in services.versions.background_tasks()

        services.versions.shutdown()
        assert "xolo-reinstall-xolotest-1.0.0" not in services.versions.background_tasks()


@pytest.mark.unit
class TestRelease:
    """Test the release state machine."""

    def test_release_without_package(self, services: XoloServices, ctx: OperationContext, app_title, add_version) -> None:
        """Test a version without a package can't be released."""
        add_version("1.0.0", upload=False)

        with pytest.raises(ConflictError, match="no uploaded package"):
            services.versions.release(ctx, TEST_TITLE, "1.0.0")

    def test_release(self, services: XoloServices, ctx: OperationContext, app_title, add_version, fake_jamf) -> None:
        """Test releasing scopes the install policy to the release groups."""
        add_version("1.0.0")

        version = services.versions.release(ctx, TEST_TITLE, "1.0.0")

        assert version.status == VersionStatus.RELEASED
        assert version.released_by == "tester"
        assert services.titles.get(TEST_TITLE).released_version == "1.0.0"
        policy = fake_jamf.policies[naming.auto_install_policy(TEST_TITLE, "1.0.0")]
        assert policy.scope_groups == ["engineering"]
        assert policy.enabled is True

    def test_rerelease_conflicts(self, services: XoloServices, ctx: OperationContext, app_title, add_version) -> None:
        """Test releasing the released version again is a conflict."""
        add_version("1.0.0")
        services.versions.release(ctx, TEST_TITLE, "1.0.0")

        with pytest.raises(ConflictError, match="already released"):
            services.versions.release(ctx, TEST_TITLE, "1.0.0")

    def test_newer_release_deprecates_older(
        self,
        services: XoloServices,
        ctx: OperationContext,
        app_title,
        add_version,
        fake_jamf: FakeJamf,
    ) -> None:
        """Test releasing a newer version deprecates the old one."""
        add_version("1.0.0")
        services.versions.release(ctx, TEST_TITLE, "1.0.0")
        add_version("1.0.1")

        services.versions.release(ctx, TEST_TITLE, "1.0.1")

        assert statuses(services) == {"1.0.1": "released", "1.0.0": "deprecated"}
        assert services.versions.get(TEST_TITLE, "1.0.0").deprecated_by == "tester"
        assert fake_jamf.policies[naming.auto_install_policy(TEST_TITLE, "1.0.0")].enabled is False

    def test_older_pilots_are_skipped(self, services: XoloServices, ctx: OperationContext, app_title, add_version) -> None:
        """Test older pilots are skipped when a newer version is released."""
        add_version("1.0.0")
        add_version("1.0.1", upload=False)
        add_version("1.0.2")

        services.versions.release(ctx, TEST_TITLE, "1.0.2")

        assert statuses(services) == {"1.0.2": "released", "1.0.1": "skipped", "1.0.0": "skipped"}

    def test_only_one_released(self, services: XoloServices, ctx: OperationContext, app_title, add_version) -> None:
        """Test at most one version is released at a time."""
        for version in ("1.0.0", "1.0.1", "1.0.2"):
            add_version(version)
            services.versions.release(ctx, TEST_TITLE, version)

        assert list(statuses(services).values()).count("released") == 1

    def test_rollback_resets_newer_versions(
        self,
        services: XoloServices,
        ctx: OperationContext,
        app_title,
        add_version,
        fake_jamf: FakeJamf,
    ) -> None:
        """Test releasing an older version returns newer ones to pilot."""
        add_version("1.0.0")
        services.versions.release(ctx, TEST_TITLE, "1.0.0")
        add_version("1.0.1")
        services.versions.release(ctx, TEST_TITLE, "1.0.1")
        add_version("1.0.2")

        services.versions.release(ctx, TEST_TITLE, "1.0.0")

        assert statuses(services) == {"1.0.2": "pilot", "1.0.1": "pilot", "1.0.0": "released"}
        assert services.titles.get(TEST_TITLE).released_version == "1.0.0"
        assert services.versions.get(TEST_TITLE, "1.0.1").released_by is None
        rolled_back = fake_jamf.policies[naming.auto_install_policy(TEST_TITLE, "1.0.1")]
        assert rolled_back.scope_groups == ["pilot-testers"]

    def test_release_logged(self, services: XoloServices, ctx: OperationContext, app_title, add_version) -> None:
        """Test the release lands in the change log."""
        add_version("1.0.0")
        services.versions.release(ctx, TEST_TITLE, "1.0.0")

        entry = services.titles.history(TEST_TITLE)[-1]
        assert (entry.attrib, entry.old, entry.new) == ("released_version", None, "1.0.0")

    def test_release_through_title_engine(
        self, services: XoloServices, ctx: OperationContext, app_title, add_version
    ) -> None:
        """Test the title engine delegates releases."""
        add_version("1.0.0")
        assert services.titles.release(ctx, TEST_TITLE, "1.0.0").status == VersionStatus.RELEASED


@pytest.mark.unit
class TestSkipDeprecate:
    """Test manual transitions."""

    def test_skip_pilot(self, services: XoloServices, ctx: OperationContext, app_title, add_version) -> None:
        """Test skipping a pilot, and only once."""
        add_version("1.0.0")

        version = services.versions.skip(ctx, TEST_TITLE, "1.0.0")

        assert version.status == VersionStatus.SKIPPED
        with pytest.raises(ConflictError):
            services.versions.skip(ctx, TEST_TITLE, "1.0.0")

    def test_deprecate_released(self, services: XoloServices, ctx: OperationContext, app_title, add_version) -> None:
        """Test deprecating the released version leaves nothing released."""
        add_version("1.0.0")
        services.versions.release(ctx, TEST_TITLE, "1.0.0")

        version = services.versions.deprecate(ctx, TEST_TITLE, "1.0.0")

        assert version.status == VersionStatus.DEPRECATED
        assert services.titles.get(TEST_TITLE).released_version is None

    def test_cannot_deprecate_pilot(self, services: XoloServices, ctx: OperationContext, app_title, add_version) -> None:
        """Test only released versions can be deprecated."""
        add_version("1.0.0")

        with pytest.raises(ConflictError, match="only released"):
            services.versions.deprecate(ctx, TEST_TITLE, "1.0.0")


@pytest.mark.unit
class TestDeleteVersion:
    """Test version deletion."""

    def test_delete_released_version(
        self,
        services: XoloServices,
        ctx: OperationContext,
        app_title,
        add_version,
        fake_jamf: FakeJamf,
        fake_ted: FakeTitleEditor,
    ) -> None:
        """Test deleting a released version removes its remote objects."""
        version = add_version("1.0.0")
        services.versions.release(ctx, TEST_TITLE, "1.0.0")

        services.versions.delete(ctx, TEST_TITLE, "1.0.0")

        title = services.titles.get(TEST_TITLE)
        assert title.version_order == []
        assert title.released_version is None
        assert version.ted_patch_id not in fake_ted.patches
        assert version.jamf_pkg_file not in fake_jamf.packages
        assert naming.auto_install_policy(TEST_TITLE, "1.0.0") not in fake_jamf.policies
        assert services.titles.history(TEST_TITLE)[-1].msg == "Deleted Version"

    def test_delete_locked_version(self, services: XoloServices, ctx: OperationContext, app_title, add_version) -> None:
        """Test a locked version can't be deleted."""
        add_version("1.0.0")
        services.locks.acquire((TEST_TITLE, "1.0.0"), "other-op")

        with pytest.raises(ConflictError):
            services.versions.delete(ctx, TEST_TITLE, "1.0.0")

        assert services.store.exists_version(TEST_TITLE, "1.0.0")
        services.locks.release((TEST_TITLE, "1.0.0"), "other-op")


@pytest.mark.unit
class TestDeployViaMdm:
    """Test MDM deployment."""

    def test_deploy_reports_each_target(
        self,
        services: XoloServices,
        ctx: OperationContext,
        app_title,
        add_version,
        fake_jamf: FakeJamf,
    ) -> None:
        """Test deployment reports queued, removed and failed targets."""
        add_version("1.0.0")
        fake_jamf.groups["engineering"] = ["mac02", "mac03"]
        services.titles.freeze(ctx, TEST_TITLE, ["mac02"])

        result = services.versions.deploy_via_mdm(
            ctx, TEST_TITLE, "1.0.0", computers=["mac01", "nosuch"], groups=["engineering", "missing-group"]
        )

        assert sorted(q.device for q in result.queued_commands) == ["mac01", "mac03"]
        assert {r.device: r.reason for r in result.removals} == {
            "nosuch": "No computer with that name",
            "mac02": f"Member of excluded group '{naming.frozen_group(TEST_TITLE)}'",
        }
        assert [(e.device, e.reason) for e in result.errors] == [("missing-group", "No such computer group")]
        assert fake_jamf.called("deploy_package")[0][2] == [1, 3]

    def test_component_package_rejected(
        self,
        services: XoloServices,
        ctx: OperationContext,
        app_title,
        add_version,
        temp_storage_dir: Path,
    ) -> None:
        """Test only distribution packages can be deployed."""
        add_version("1.0.0", upload=False)
        pkg = build_flat_pkg(temp_storage_dir / "component.pkg", distribution=False)
        with open(pkg, "rb") as f:
            staged = services.versions.stage_upload(TEST_TITLE, "1.0.0", pkg.name, f)
        services.versions.upload_package(ctx, TEST_TITLE, "1.0.0", staged, pkg.name)

        with pytest.raises(ValidationError, match="distribution package"):
            services.versions.deploy_via_mdm(ctx, TEST_TITLE, "1.0.0", computers=["mac01"])

    def test_deploy_without_package(self, services: XoloServices, ctx: OperationContext, app_title, add_version) -> None:
        """Test a version without a package can't be deployed."""
        add_version("1.0.0", upload=False)

        with pytest.raises(ConflictError):
            services.versions.deploy_via_mdm(ctx, TEST_TITLE, "1.0.0", computers=["mac01"])


@pytest.mark.unit
class TestPatches:
    """Test patch activation and reports."""

    def test_visible_patch_gets_activated_on_repair(
        self,
        services: XoloServices,
        ctx: OperationContext,
        app_title,
        add_version,
        fake_jamf: FakeJamf,
    ) -> None:
        """Test repair activates a patch Jamf Pro can already see."""
        add_version("1.0.0")
        services.versions.shutdown()
        fake_jamf.visible_patches.add((TEST_TITLE, "1.0.0"))

        services.versions.repair(ctx, TEST_TITLE, "1.0.0")

        policy = fake_jamf.patch_policies[naming.patch_policy(TEST_TITLE, "1.0.0")]
        assert policy.target_version == "1.0.0"
        assert policy.scope_groups == ["pilot-testers"]
        assert fake_jamf.called("assign_package_to_patch")

    def test_watcher_runs_until_shutdown(self, services: XoloServices, app_title, add_version) -> None:
        """Test a new version starts its patch watcher."""
        add_version("1.0.0", upload=False)
        assert "xolo-patch-watch-xolotest-1.0.0" in services.versions.background_tasks()

    def test_patch_report_filters_by_version(
        self,
        services: XoloServices,
        app_title,
        add_version,
        fake_jamf: FakeJamf,
    ) -> None:
        """Test the patch report for one version."""
        add_version("1.0.0", upload=False)
        fake_jamf.patch_rows[TEST_TITLE] = [
            {"computer": "mac01", "version": "1.0.0", "username": "alice"},
            {"computer": "mac02", "version": "0.9", "username": "bob"},
        ]

        assert len(services.versions.patch_report(TEST_TITLE)) == 2
        report = services.versions.patch_report(TEST_TITLE, "1.0.0")
        assert [(r.computer, r.username) for r in report] == [("mac01", "alice")]

        with pytest.raises(NotFoundError):
            services.versions.patch_report(TEST_TITLE, "9.9")
