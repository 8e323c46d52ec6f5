"""Builds and holds the long-lived objects the daemon serves from.

One XoloServices instance lives on app.state for the life of the process.
Routes get it (or pieces of it) through the factories in xolod.dependencies.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from xolo_library.changelog.log import ChangeLog
from xolo_library.clients.jamf import JamfClient
from xolo_library.clients.title_editor import TitleEditorClient
from xolo_library.config.settings import XoloSettings
from xolo_library.engines.maintenance import MaintenanceService
from xolo_library.engines.titles import TitleEngine
from xolo_library.engines.versions import VersionEngine
from xolo_library.locks.manager import LockManager
from xolo_library.progress.channel import ProgressChannel
from xolo_library.progress.runner import OperationRunner
from xolo_library.storage import get_backups_dir
from xolo_library.storage import get_data_dir
from xolo_library.storage import get_progress_dir
from xolo_library.storage import get_titles_dir
from xolo_library.storage import get_uploads_dir
from xolo_library.store.object_store import ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class XoloServices:
    """Everything a request handler may need."""

    settings: XoloSettings
    store: ObjectStore
    locks: LockManager
    changelog: ChangeLog
    channel: ProgressChannel
    runner: OperationRunner
    jamf: JamfClient
    ted: TitleEditorClient
    titles: TitleEngine
    versions: VersionEngine
    maintenance: MaintenanceService

    def close(self) -> None:
        """Stop background work and close the service clients."""
        self.versions.shutdown()
        self.jamf.close()
        self.ted.close()


def create_jamf_client(settings: XoloSettings) -> JamfClient:
    return JamfClient(
        settings.jamf_base_url,
        settings.jamf_api_user,
        settings.jamf_api_pw.get_secret_value(),
        verify=settings.jamf_verify_cert,
        open_timeout=settings.jamf_open_timeout,
        timeout=settings.jamf_timeout,
        gui_url=settings.jamf_gui_url,
        patch_source_id=settings.jamf_patch_source_id,
    )


def create_ted_client(settings: XoloSettings) -> TitleEditorClient:
    return TitleEditorClient(
        settings.ted_base_url,
        settings.ted_api_user,
        settings.ted_api_pw.get_secret_value(),
        open_timeout=settings.ted_open_timeout,
        timeout=settings.ted_timeout,
        patch_source=settings.ted_patch_source,
    )


def build_services(
    settings: XoloSettings,
    jamf: JamfClient | None = None,
    ted: TitleEditorClient | None = None,
) -> XoloServices:
    """Create every service and load the Object Store from disk.

    Args:
        settings: Loaded configuration
        jamf: Jamf Pro client to use instead of one built from settings
        ted: Title Editor client to use instead of one built from settings

    Returns:
        Ready-to-serve services
    """
    if settings.data_path:
        data_dir = Path(settings.data_path)
        titles_dir = data_dir / "titles"
        titles_dir.mkdir(parents=True, exist_ok=True)
    else:
        data_dir = get_data_dir()
        titles_dir = get_titles_dir()

    store = ObjectStore(titles_dir)
    store.load_all()

    locks = LockManager()
    changelog = ChangeLog(titles_dir, get_backups_dir())
    channel = ProgressChannel(get_progress_dir(), retention_days=settings.progress_stream_retention_days)
    channel.close_interrupted_streams()
    runner = OperationRunner(channel, locks)

    jamf = jamf if jamf is not None else create_jamf_client(settings)
    ted = ted if ted is not None else create_ted_client(settings)

    engine_args = {
        "store": store,
        "locks": locks,
        "changelog": changelog,
        "jamf": jamf,
        "ted": ted,
        "settings": settings,
    }
    versions = VersionEngine(uploads_dir=get_uploads_dir(), **engine_args)
    titles = TitleEngine(versions=versions, **engine_args)
    maintenance = MaintenanceService(
        store=store,
        locks=locks,
        channel=channel,
        runner=runner,
        titles=titles,
        versions=versions,
        settings=settings,
        data_dir=str(data_dir),
    )

    logger.info("xolo services initialized")
    return XoloServices(
        settings=settings,
        store=store,
        locks=locks,
        changelog=changelog,
        channel=channel,
        runner=runner,
        jamf=jamf,
        ted=ted,
        titles=titles,
        versions=versions,
        maintenance=maintenance,
    )
