"""Durable record storage for titles and versions.

The in-memory cache is the source of truth while the server runs. Disk is
read once at startup (load_all) and written on every mutation. Callers that
mutate must hold the matching Lock Manager lock; the store's own lock only
protects the cache dictionaries and is never held during disk I/O. A second
lock serializes writers so disk is updated in the same order as the cache.

Layout under the titles directory:
    <title>/<title>.json
    <title>/version-script        (when the title has one)
    <title>/uninstall-script      (when the title has one)
    <title>/ssvc-icon-<filename>  (when an icon was uploaded)
    <title>/versions/<version>.json
"""

import json
import logging
import shutil
import threading
from enum import Enum
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from ..exceptions import NotFoundError
from ..models.titles import Title
from ..models.versions import Version
from ..storage.atomic import atomic_write_bytes
from ..storage.atomic import atomic_write_text

logger = logging.getLogger(__name__)

# Stored in the JSON record in place of a payload kept in a sibling file
ITEM_UPLOADED = "uploaded"

# title attribute -> sibling filename
TITLE_PAYLOAD_FILES = {
    "version_script": "version-script",
    "uninstall_script": "uninstall-script",
}

SSVC_ICON_PREFIX = "ssvc-icon-"

TitleKey = str
VersionKey = tuple[str, str]


class ObjectKind(str, Enum):
    """Kinds of record held by the store."""

    TITLE = "title"
    VERSION = "version"


class ObjectStore:
    """Cache-backed, crash-safe store of Title and Version records.

    Returned objects are copies: changing one has no effect until it is
    passed back to save() or commit().
    """

    def __init__(self, titles_dir: Path) -> None:
        """Initialize with the titles directory.

        Args:
            titles_dir: Directory holding one subdirectory per title
        """
        self.titles_dir = Path(titles_dir)
        self.titles_dir.mkdir(parents=True, exist_ok=True)
        self._titles: dict[TitleKey, Title] = {}
        self._versions: dict[VersionKey, Version] = {}
        self._lock = threading.RLock()
        self._write_lock = threading.Lock()

    # --- Paths ---

    def title_dir(self, title: str) -> Path:
        return self.titles_dir / title

    def title_file(self, title: str) -> Path:
        return self.title_dir(title) / f"{title}.json"

    def versions_dir(self, title: str) -> Path:
        return self.title_dir(title) / "versions"

    def version_file(self, title: str, version: str) -> Path:
        return self.versions_dir(title) / f"{version}.json"

    # --- Startup ---

    def load_all(self) -> int:
        """Rebuild the cache from disk.

        Unreadable records are logged and skipped so one corrupt file does not
        keep the server from starting.

        Returns:
            Number of records loaded
        """
        titles: dict[TitleKey, Title] = {}
        versions: dict[VersionKey, Version] = {}

        for title_dir in sorted(p for p in self.titles_dir.iterdir() if p.is_dir()):
            title_file = title_dir / f"{title_dir.name}.json"
            if not title_file.exists():
                logger.warning(f"Skipping title directory without a record: {title_dir}")
                continue
            try:
                titles[title_dir.name] = self._read_title(title_file)
            except (OSError, PydanticValidationError) as e:
                logger.error(f"Failed to load title record {title_file}: {e}")
                continue

            versions_dir = title_dir / "versions"
            if not versions_dir.is_dir():
                continue
            for version_file in sorted(versions_dir.glob("*.json")):
                try:
                    version = Version.model_validate_json(version_file.read_text(encoding="utf-8"))
                except (OSError, PydanticValidationError) as e:
                    logger.error(f"Failed to load version record {version_file}: {e}")
                    continue
                versions[(version.title, version.version)] = version

        with self._lock:
            self._titles = titles
            self._versions = versions

        count = len(titles) + len(versions)
        logger.info(f"Loaded {len(titles)} titles and {len(versions)} versions from {self.titles_dir}")
        return count

    # --- Contract ---

    def load(self, kind: ObjectKind, key: TitleKey | VersionKey) -> Title | Version:
        """Get a copy of one record.

        Raises:
            NotFoundError: If no such record exists
        """
        with self._lock:
            obj = self._cache(kind).get(key)
            if obj is None:
                raise NotFoundError(_not_found_message(kind, key))
            return obj.model_copy(deep=True)

    def exists(self, kind: ObjectKind, key: TitleKey | VersionKey) -> bool:
        with self._lock:
            return key in self._cache(kind)

    def all(self, kind: ObjectKind) -> list[Title] | list[Version]:
        """Copies of every record of a kind, sorted by key."""
        with self._lock:
            cache = self._cache(kind)
            return [cache[key].model_copy(deep=True) for key in sorted(cache)]

    def save(self, kind: ObjectKind, obj: Title | Version) -> None:
        """Persist one record and update the cache."""
        self.commit(obj)

    def commit(self, *objects: Title | Version) -> None:
        """Persist several records as one visible step.

        The cache is swapped for all objects together, so readers see either
        none or all of the changes. Disk writes follow outside the cache lock,
        each one atomic.
        """
        for obj in objects:
            if not isinstance(obj, Title | Version):
                raise TypeError(f"Cannot store {type(obj).__name__}")
        copies = [obj.model_copy(deep=True) for obj in objects]

        with self._write_lock:
            with self._lock:
                for obj in copies:
                    if isinstance(obj, Title):
                        self._titles[obj.title] = obj
                    else:
                        self._versions[(obj.title, obj.version)] = obj

            for obj in copies:
                if isinstance(obj, Title):
                    self._write_title(obj)
                else:
                    self._write_version(obj)

    def delete(self, kind: ObjectKind, key: TitleKey | VersionKey) -> None:
        """Remove a record from the cache and disk.

        Deleting a title removes its whole directory, so the caller must have
        deleted its versions and dealt with its change log first.

        Raises:
            NotFoundError: If no such record exists
        """
        with self._write_lock:
            with self._lock:
                cache = self._cache(kind)
                if key not in cache:
                    raise NotFoundError(_not_found_message(kind, key))
                del cache[key]

            if kind == ObjectKind.TITLE:
                title_dir = self.title_dir(key)
                if title_dir.exists():
                    shutil.rmtree(title_dir)
            else:
                title, version = key
                self.version_file(title, version).unlink(missing_ok=True)

        logger.info(f"Deleted {kind.value} record {_key_str(key)}")

    # --- Convenience ---

    def get_title(self, title: str) -> Title:
        return self.load(ObjectKind.TITLE, title)

    def get_version(self, title: str, version: str) -> Version:
        return self.load(ObjectKind.VERSION, (title, version))

    def exists_title(self, title: str) -> bool:
        return self.exists(ObjectKind.TITLE, title)

    def exists_version(self, title: str, version: str) -> bool:
        return self.exists(ObjectKind.VERSION, (title, version))

    def save_title(self, title: Title) -> None:
        self.save(ObjectKind.TITLE, title)

    def save_version(self, version: Version) -> None:
        self.save(ObjectKind.VERSION, version)

    def delete_title(self, title: str) -> None:
        self.delete(ObjectKind.TITLE, title)

    def delete_version(self, title: str, version: str) -> None:
        self.delete(ObjectKind.VERSION, (title, version))

    def all_titles(self) -> list[Title]:
        return self.all(ObjectKind.TITLE)

    def versions_of(self, title: str) -> list[Version]:
        """Copies of a title's versions, newest first per the title's version_order."""
        with self._lock:
            title_obj = self._titles.get(title)
            if title_obj is None:
                raise NotFoundError(_not_found_message(ObjectKind.TITLE, title))
            return [
                self._versions[(title, v)].model_copy(deep=True)
                for v in title_obj.version_order
                if (title, v) in self._versions
            ]

    def save_ssvc_icon(self, title: str, filename: str, data: bytes) -> Path:
        """Store a Self Service icon beside the title record, replacing any other."""
        title_dir = self.title_dir(title)
        for old_icon in title_dir.glob(f"{SSVC_ICON_PREFIX}*"):
            old_icon.unlink()
        icon_path = title_dir / f"{SSVC_ICON_PREFIX}{Path(filename).name}"
        atomic_write_bytes(icon_path, data)
        return icon_path

    def ssvc_icon_path(self, title: str) -> Path | None:
        icons = sorted(self.title_dir(title).glob(f"{SSVC_ICON_PREFIX}*"))
        return icons[0] if icons else None

    # --- Helpers ---

    def _cache(self, kind: ObjectKind) -> dict:
        return self._titles if kind == ObjectKind.TITLE else self._versions

    def _write_title(self, title: Title) -> None:
        title_dir = self.title_dir(title.title)
        title_dir.mkdir(parents=True, exist_ok=True)

        data = title.model_dump(mode="json")
        for attr, filename in TITLE_PAYLOAD_FILES.items():
            payload_path = title_dir / filename
            if data[attr]:
                atomic_write_text(payload_path, data[attr])
                data[attr] = ITEM_UPLOADED
            else:
                payload_path.unlink(missing_ok=True)

        atomic_write_text(self.title_file(title.title), json.dumps(data, indent=2))

    def _read_title(self, title_file: Path) -> Title:
        title = Title.model_validate_json(title_file.read_text(encoding="utf-8"))
        for attr, filename in TITLE_PAYLOAD_FILES.items():
            if getattr(title, attr) == ITEM_UPLOADED:
                setattr(title, attr, (title_file.parent / filename).read_text(encoding="utf-8"))
        return title

    def _write_version(self, version: Version) -> None:
        atomic_write_text(self.version_file(version.title, version.version), version.model_dump_json(indent=2))


def _key_str(key: TitleKey | VersionKey) -> str:
    return key if isinstance(key, str) else "/".join(key)


def _not_found_message(kind: ObjectKind, key: TitleKey | VersionKey) -> str:
    if kind == ObjectKind.TITLE:
        return f"No title '{key}'"
    title, version = key
    return f"No version '{version}' of title '{title}'"
