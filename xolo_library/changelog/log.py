"""Per-title change history.

Each title's history is a JSON array in <title dir>/changelog.json. Entries
are only ever appended. Every write is preceded by a backup copy in
<backups>/changelogs/<title>-changelog.json, and when a title is deleted its
history is moved there rather than removed.

Appends are serialized by a lock per title, separate from the Lock Manager,
so reading one title's history never waits on another title's write.
"""

import json
import logging
import shutil
import threading
from collections.abc import Iterable
from datetime import UTC
from datetime import datetime
from pathlib import Path
from typing import Any

from ..models.changelog import ChangeLogEntry
from ..storage.atomic import atomic_write_text

logger = logging.getLogger(__name__)

CHANGELOG_FILENAME = "changelog.json"

UPDATE_FAILED_MSG = (
    "ERROR: The update failed and the changes didn't all go through! "
    "Run 'repair' on the title to bring the external systems back in line."
)


def format_value(value: Any) -> Any:
    """Render a logged value; lists become sorted, quoted, comma-joined strings."""
    if isinstance(value, list | tuple | set):
        return ", ".join(f"'{item}'" for item in sorted(str(v) for v in value))
    return value


class ChangeLog:
    """Append-only change history for every title."""

    def __init__(self, titles_dir: Path, backups_dir: Path) -> None:
        """Initialize with storage locations.

        Args:
            titles_dir: Directory holding one subdirectory per title
            backups_dir: Root backups directory; histories go in its changelogs/ subdir
        """
        self.titles_dir = Path(titles_dir)
        self.backups_dir = Path(backups_dir) / "changelogs"
        self.backups_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def changelog_file(self, title: str) -> Path:
        return self.titles_dir / title / CHANGELOG_FILENAME

    def backup_file(self, title: str) -> Path:
        return self.backups_dir / f"{title}-changelog.json"

    # --- Reading ---

    def entries(self, title: str) -> list[ChangeLogEntry]:
        """All entries for a title, oldest first. Empty if none were ever written."""
        path = self.changelog_file(title)
        if not path.exists():
            return []
        raw = json.loads(path.read_text(encoding="utf-8"))
        return [ChangeLogEntry.model_validate(item) for item in raw]

    # --- Writing ---

    def log_change(
        self,
        title: str,
        admin: str,
        host: str | None = None,
        version: str | None = None,
        msg: str | None = None,
        attrib: str | None = None,
        old: Any = None,
        new: Any = None,
    ) -> ChangeLogEntry:
        """Append one entry.

        Either msg, or attrib with old/new values, should be given.

        Returns:
            The appended entry
        """
        entry = ChangeLogEntry(
            time=datetime.now(UTC),
            admin=admin,
            host=host,
            version=version,
            msg=msg,
            attrib=attrib,
            old=format_value(old),
            new=format_value(new),
        )
        self._append(title, [entry])
        return entry

    def log_changes(
        self,
        title: str,
        admin: str,
        changes: Iterable[tuple[str, Any, Any]],
        host: str | None = None,
        version: str | None = None,
    ) -> list[ChangeLogEntry]:
        """Append one entry per (attribute, old, new) change, in order, in one write."""
        now = datetime.now(UTC)
        entries = [
            ChangeLogEntry(
                time=now,
                admin=admin,
                host=host,
                version=version,
                attrib=attrib,
                old=format_value(old),
                new=format_value(new),
            )
            for attrib, old, new in changes
        ]
        if entries:
            self._append(title, entries)
        return entries

    def log_update_failure(self, title: str, admin: str, host: str | None = None, version: str | None = None) -> None:
        self.log_change(title, admin, host=host, version=version, msg=UPDATE_FAILED_MSG)

    def finalize_deleted(self, title: str, admin: str, host: str | None = None) -> Path:
        """Record the deletion, then move the history into the backups directory.

        Returns:
            Path of the preserved history
        """
        self.log_change(title, admin, host=host, msg="Deleted Title")
        with self._title_lock(title):
            backup = self.backup_file(title)
            shutil.move(str(self.changelog_file(title)), backup)
        logger.info(f"Moved change log for deleted title '{title}' to {backup}")
        return backup

    # --- Helpers ---

    def _title_lock(self, title: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(title)
            if lock is None:
                lock = self._locks[title] = threading.Lock()
            return lock

    def _append(self, title: str, new_entries: list[ChangeLogEntry]) -> None:
        with self._title_lock(title):
            path = self.changelog_file(title)
            existing: list = []
            if path.exists():
                shutil.copy2(path, self.backup_file(title))
                existing = json.loads(path.read_text(encoding="utf-8"))

            existing.extend(entry.model_dump(mode="json") for entry in new_entries)
            atomic_write_text(path, json.dumps(existing, indent=2))

        for entry in new_entries:
            what = entry.msg or f"{entry.attrib}: {entry.old!r} -> {entry.new!r}"
            scope = f"{title}/{entry.version}" if entry.version else title
            logger.info(f"Change log [{scope}] by {entry.admin}: {what}")
