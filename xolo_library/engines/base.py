"""Shared plumbing for the title and version lifecycle engines."""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC
from datetime import datetime

from ..changelog.log import ChangeLog
from ..clients.jamf import JamfClient
from ..clients.title_editor import TitleEditorClient
from ..clients.title_editor import install_criteria
from ..config.settings import XoloSettings
from ..exceptions import XoloError
from ..locks.manager import LockManager
from ..models.titles import Title
from ..progress.context import OperationContext
from ..store.object_store import ObjectStore
from . import naming

logger = logging.getLogger(__name__)


def now() -> datetime:
    return datetime.now(UTC)


class Steps:
    """Tracks the external steps of one operation.

    Each step checks the cancel token, reports progress, and on failure logs
    which step broke and which ones had already gone through, then re-raises.

    Example:
        >>> steps = Steps(ctx, "create title 'foo'")
        >>> with steps("Creating title in the Title Editor"):
        ...     ted.create_title(title)
    """

    def __init__(self, ctx: OperationContext, operation: str) -> None:
        self.ctx = ctx
        self.operation = operation
        self.done: list[str] = []

    @contextmanager
    def __call__(self, description: str) -> Iterator[None]:
        self.ctx.check_cancelled()
        self.ctx.progress(f"{description}...")
        try:
            yield
        except XoloError as e:
            completed = "; ".join(self.done) if self.done else "nothing"
            logger.error(f"{self.operation} failed at step '{description}': {e}. Already completed: {completed}")
            raise
        self.done.append(description)


class EngineBase:
    """Collaborators and helpers common to both engines."""

    def __init__(
        self,
        store: ObjectStore,
        locks: LockManager,
        changelog: ChangeLog,
        jamf: JamfClient,
        ted: TitleEditorClient,
        settings: XoloSettings,
    ) -> None:
        self.store = store
        self.locks = locks
        self.changelog = changelog
        self.jamf = jamf
        self.ted = ted
        self.settings = settings
        self._record_locks: dict[str, threading.Lock] = {}
        self._record_locks_guard = threading.Lock()

    @contextmanager
    def title_record(self, title: str) -> Iterator[None]:
        """Serialize read-modify-write of one title's record.

        Version operations hold only a read lock on their title, so two of
        them may update the same title record (version_order, released_version)
        at once; this keeps those updates from overwriting each other.
        """
        with self._record_locks_guard:
            lock = self._record_locks.setdefault(title, threading.Lock())
        with lock:
            yield

    # --- Targeting ---

    def exclusions(self, title: Title, include_frozen: bool = False) -> list[str]:
        """Groups excluded from a title's policies."""
        groups = list(title.excluded_groups)
        if self.settings.forced_exclusion and self.settings.forced_exclusion not in groups:
            groups.append(self.settings.forced_exclusion)
        if include_frozen:
            groups.append(naming.frozen_group(title.title))
        return groups

    def release_scope(self, title: Title) -> tuple[bool, list[str]]:
        """(all computers, groups) targeted by released versions.

        Frozen computers are excluded only when releasing to all computers.
        """
        if title.release_to_all:
            return True, []
        return False, list(title.release_groups)

    def release_exclusions(self, title: Title) -> list[str]:
        return self.exclusions(title, include_frozen=title.release_to_all)

    def release_to_all_admins(self) -> list[str] | None:
        """Admins allowed to release to all computers, or None if anyone may."""
        group = self.settings.release_to_all_jamf_group
        if not group:
            return None
        return self.jamf.account_group_members(group)

    # --- Change log ---

    def log_msg(self, ctx: OperationContext, title: str, msg: str, version: str | None = None) -> None:
        self.changelog.log_change(title, ctx.admin, host=ctx.host, version=version, msg=msg)


def smart_group_criteria(title_obj: Title, version: str | None = None) -> list[dict]:
    """Jamf smart group criteria matching the title (or one version of it) being installed."""
    criteria = install_criteria(title_obj, naming.installed_version_ea(title_obj.title), version)
    return [{"name": c["name"], "search_type": c["operator"], "value": c["value"]} for c in criteria]
