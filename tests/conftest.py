"""
Shared pytest fixtures for the xolo test suite.

Provides fixtures for:
- Temporary storage directories
- Settings and services wired to in-memory Jamf Pro and Title Editor fakes
- The test title and a factory for its versions
"""

import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

from tests.fakes import FakeJamf
from tests.fakes import FakeTitleEditor
from tests.fakes import build_flat_pkg
from xolo_library.config.settings import XoloSettings
from xolo_library.models.titles import TitleCreate
from xolo_library.models.versions import VersionCreate
from xolo_library.progress.context import OperationContext
from xolod.services.container import XoloServices
from xolod.services.container import build_services

TEST_TITLE = "xolotest"


@pytest.fixture
def temp_storage_dir() -> Generator[Path, None, None]:
    """Create temporary storage directory for tests.

    Automatically cleaned up after test completes.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def mock_storage_env(temp_storage_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point XOLO_HOME at a temp directory.

    This ensures tests use isolated storage and don't interfere with
    real data or other tests.

    Example:
        >>> def test_with_isolated_storage(mock_storage_env):
        ...     from xolo_library.storage.paths import get_home_dir
        ...     assert get_home_dir() == mock_storage_env
    """
    monkeypatch.setenv("XOLO_HOME", str(temp_storage_dir))
    for var in ("XOLO_CONFIG_DIR", "XOLO_DATA_DIR", "XOLO_STATE_DIR", "XOLO_LOG_DIR", "XOLO_BACKUPS_DIR"):
        monkeypatch.delenv(var, raising=False)
    return temp_storage_dir


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings() -> XoloSettings:
    """Settings with background timers long enough never to fire during a test."""
    return XoloSettings(
        _env_file=None,
        reupload_reinstall_delay_secs=3600,
        patch_activation_poll_secs=3600,
        unreleased_pilots_notification_days=0,
    )


@pytest.fixture
def fake_jamf() -> FakeJamf:
    return FakeJamf()


@pytest.fixture
def fake_ted() -> FakeTitleEditor:
    return FakeTitleEditor()


@pytest.fixture
def services(
    mock_storage_env: Path,
    settings: XoloSettings,
    fake_jamf: FakeJamf,
    fake_ted: FakeTitleEditor,
) -> Generator[XoloServices, None, None]:
    """Every service, built on isolated storage and the fakes."""
    services = build_services(settings, jamf=fake_jamf, ted=fake_ted)
    yield services
    services.close()


@pytest.fixture
def ctx() -> OperationContext:
    return OperationContext(admin="tester", host="127.0.0.1")


@pytest.fixture
def app_title_spec() -> TitleCreate:
    """A title detected by its .app bundle."""
    return TitleCreate(
        title=TEST_TITLE,
        display_name="Xolo Test",
        publisher="Example Inc",
        app_name="XoloTest.app",
        app_bundle_id="com.example.xolotest",
        release_groups=["engineering"],
    )


@pytest.fixture
def app_title(services: XoloServices, ctx: OperationContext, app_title_spec: TitleCreate):
    """The test title, created on the fakes."""
    return services.titles.create(ctx, app_title_spec)


@pytest.fixture
def add_version(services: XoloServices, ctx: OperationContext, temp_storage_dir: Path):
    """Factory creating a version of the test title, optionally with an uploaded package.

    Example:
        >>> def test_release(add_version):
        ...     add_version("1.0.0", upload=True)
    """

    def _add(version: str, upload: bool = True, title: str = TEST_TITLE, **fields):
        services.versions.create(
            ctx, title, VersionCreate(version=version, pilot_groups=["pilot-testers"], **fields)
        )
        if upload:
            pkg = build_flat_pkg(temp_storage_dir / f"{title}-{version}.pkg")
            with open(pkg, "rb") as f:
                staged = services.versions.stage_upload(title, version, pkg.name, f)
            services.versions.upload_package(ctx, title, version, staged, pkg.name)
        return services.versions.get(title, version)

    return _add
