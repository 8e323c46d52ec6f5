"""Server maintenance: nightly cleanup, expiration, housekeeping and the state report.

Each task takes the same title and version locks as admin operations before
touching a record. Locks are never waited for: a title that an admin is
working on is skipped and picked up on the next run.
"""

import logging
import os
import threading
import uuid
from collections.abc import Callable
from datetime import UTC
from datetime import datetime
from datetime import timedelta

import psutil

from .. import __version__
from .. import logs
from ..config.settings import XoloSettings
from ..exceptions import ConflictError
from ..exceptions import UpstreamError
from ..locks.manager import LockManager
from ..models.titles import Title
from ..models.versions import VersionStatus
from ..progress.channel import ProgressChannel
from ..progress.context import OperationContext
from ..progress.runner import OperationRunner
from ..store.object_store import ObjectStore
from . import naming
from .titles import TitleEngine
from .versions import VersionEngine

logger = logging.getLogger(__name__)

SERVER_ADMIN = "xoloserver"


class MaintenanceService:
    """Periodic and on-demand server upkeep."""

    def __init__(
        self,
        store: ObjectStore,
        locks: LockManager,
        channel: ProgressChannel,
        runner: OperationRunner,
        titles: TitleEngine,
        versions: VersionEngine,
        settings: XoloSettings,
        data_dir: str | None = None,
    ) -> None:
        self.store = store
        self.locks = locks
        self.channel = channel
        self.runner = runner
        self.titles = titles
        self.versions = versions
        self.jamf = versions.jamf
        self.changelog = versions.changelog
        self.settings = settings
        self.data_dir = data_dir
        self.started_at = datetime.now(UTC)
        self.shutting_down = False
        self._cleanup_mutex = threading.Lock()

    # --- Cleanup ---

    def cleanup(self, ctx: OperationContext) -> dict[str, list[str]]:
        """Delete old deprecated and skipped versions, accept EAs, and flag stale pilots.

        Only one cleanup runs at a time; a second request is skipped.

        Returns:
            Affected 'title/version' (or title) names, by kind of action
        """
        summary: dict[str, list[str]] = {"deleted": [], "eas_accepted": [], "stale_pilots": [], "skipped": []}
        if not self._cleanup_mutex.acquire(blocking=False):
            logger.warning("Cleanup requested while another cleanup is running; skipping")
            ctx.progress("Cleanup is already running, skipping", log=None)
            return summary

        try:
            ctx.progress("Starting cleanup")
            for title_obj in self.store.all_titles():
                ctx.check_cancelled()
                try:
                    self._cleanup_title(ctx, title_obj, summary)
                except ConflictError as e:
                    logger.info(f"Cleanup skipped title '{title_obj.title}': {e}")
                    summary["skipped"].append(title_obj.title)
                except UpstreamError as e:
                    logger.error(f"Cleanup of title '{title_obj.title}' failed: {e}")
                    summary["skipped"].append(title_obj.title)
        finally:
            self._cleanup_mutex.release()

        ctx.progress(
            f"Cleanup done: {len(summary['deleted'])} versions deleted, "
            f"{len(summary['eas_accepted'])} extension attributes accepted, "
            f"{len(summary['stale_pilots'])} stale pilots"
        )
        return summary

    def _cleanup_title(self, ctx: OperationContext, title_obj: Title, summary: dict[str, list[str]]) -> None:
        title = title_obj.title
        cutoff = datetime.now(UTC) - timedelta(days=self.settings.deprecated_lifetime_days)

        for version in self.store.versions_of(title):
            deletable = False
            if version.status == VersionStatus.DEPRECATED and self.settings.deprecated_lifetime_days > 0:
                deletable = version.deprecation_date is not None and version.deprecation_date < cutoff
            elif version.status == VersionStatus.SKIPPED:
                deletable = not self.settings.keep_skipped_versions
            if deletable:
                ctx.progress(f"Deleting {version.status.value} version '{version.version}' of title '{title}'")
                self.versions.delete(ctx, title, version.version)
                summary["deleted"].append(f"{title}/{version.version}")

        if (
            self.settings.jamf_auto_accept_xolo_eas
            and title_obj.uses_version_script
            and title_obj.version_order
            and self.jamf.patch_ea_awaiting_acceptance(title)
        ):
            self.jamf.accept_patch_ea(title)
            ctx.progress(f"Accepted the extension attribute for title '{title}'")
            summary["eas_accepted"].append(title)

        self._check_stale_pilot(ctx, title, summary)

    def _check_stale_pilot(self, ctx: OperationContext, title: str, summary: dict[str, list[str]]) -> None:
        days = self.settings.unreleased_pilots_notification_days
        if days <= 0:
            return
        title_obj = self.store.get_title(title)
        latest = title_obj.latest_version
        if latest is None:
            return
        version = self.store.get_version(title, latest)
        if version.status != VersionStatus.PILOT or version.creation_date is None:
            return
        if version.creation_date < datetime.now(UTC) - timedelta(days=days):
            msg = (
                f"Version '{latest}' of title '{title}' has been in pilot since "
                f"{version.creation_date:%Y-%m-%d} without being released"
            )
            logger.warning(msg)
            ctx.progress(msg, log=None)
            summary["stale_pilots"].append(f"{title}/{latest}")

    # --- Expiration ---

    def expiration_sweep(self) -> dict[str, int]:
        """Put computers that stopped using an expiring title into its expired group.

        The expire policy, scoped to that group, runs the uninstall. Frozen
        computers are never expired.

        Returns:
            Number of computers now expired, per title swept
        """
        results: dict[str, int] = {}
        owner = f"expiration-{uuid.uuid4().hex}"
        for title_obj in self.store.all_titles():
            if not title_obj.expiration:
                continue
            try:
                with self.locks.with_read_lock(title_obj.title, owner=owner):
                    results[title_obj.title] = self._expire_title(title_obj)
            except ConflictError:
                logger.info(f"Expiration sweep skipped busy title '{title_obj.title}'")
            except UpstreamError as e:
                logger.error(f"Expiration sweep of title '{title_obj.title}' failed: {e}")
        self.locks.forget_owner(owner)
        return results

    def _expire_title(self, title_obj: Title) -> int:
        title = title_obj.title
        cutoff = datetime.now(UTC) - timedelta(days=title_obj.expiration)
        last_used = self.jamf.extension_attribute_values(naming.last_used_ea(title))
        frozen = set(self.jamf.group_members(naming.frozen_group(title)))
        expired_group = naming.expired_group(title)
        already = set(self.jamf.group_members(expired_group))

        stale = set()
        for computer, value in last_used.items():
            if computer in frozen or not value or not value.strip().isdigit():
                continue
            if datetime.fromtimestamp(int(value.strip()), UTC) < cutoff:
                stale.add(computer)

        add = sorted(stale - already)
        remove = sorted(already - stale)
        if add or remove:
            self.jamf.change_static_group(expired_group, add=add, remove=remove)
        if add:
            self.changelog.log_change(title, SERVER_ADMIN, msg=f"Expired computers: {', '.join(add)}")
            logger.info(f"Expired {len(add)} computers for title '{title}'")
        return len(stale)

    # --- Housekeeping ---

    def cleanup_streams(self) -> int:
        return self.channel.cleanup_old_streams()

    def cleanup_locks(self) -> int:
        return self.locks.cleanup_idle_locks()

    def rotate_logs(self) -> bool:
        return logs.rotate_logs()

    # --- Reports ---

    def state(self, extended: bool = False) -> dict:
        """Server state for GET /maint/state; secrets in the config are masked."""
        process = psutil.Process(os.getpid())
        log_file = logs.current_log_file()
        state = {
            "start_time": self.started_at.isoformat(),
            "uptime": str(datetime.now(UTC) - self.started_at).split(".")[0],
            "app_version": __version__,
            "pid": process.pid,
            "memory_rss": process.memory_info().rss,
            "data_dir": self.data_dir,
            "log_file": str(log_file) if log_file else None,
            "log_level": logs.current_log_level(),
            "shutting_down": self.shutting_down,
            "config": self.settings.model_dump(mode="json"),
            "titles": len(self.store.all_titles()),
            "active_operations": self.runner.active_operations(),
            "background_tasks": self.versions.background_tasks(),
        }
        if extended:
            state["locks"] = self.locks.held_locks()
            state["threads"] = self.threads()
            state["streams"] = self.channel.list_streams()
        return state

    def threads(self) -> list[dict]:
        return [
            {"name": t.name, "ident": t.ident, "daemon": t.daemon, "alive": t.is_alive()}
            for t in threading.enumerate()
        ]

    # --- Shutdown ---

    def prepare_shutdown(
        self,
        ctx: OperationContext,
        timeout: float = 300,
        stop_scheduler: Callable[[], None] | None = None,
    ) -> bool:
        """Stop taking work and wait for what's running to finish.

        Returns:
            True if every other operation and lock was released within timeout
        """
        self.shutting_down = True
        self.runner.stop_accepting()
        ctx.progress("Server is shutting down, no new operations will start")

        if stop_scheduler is not None:
            ctx.progress("Stopping the maintenance scheduler")
            stop_scheduler()

        ctx.progress("Waiting for running operations to finish")
        idle = self.runner.wait_for_idle(timeout, ignore=ctx.op_id)
        if idle:
            idle = self.locks.wait_until_idle(timeout)
        if not idle:
            logger.warning("Shutting down with operations or locks still held")
            ctx.progress("Timed out waiting for running operations; shutting down anyway")

        self.versions.shutdown()
        ctx.progress("Ready to shut down")
        return idle
