"""File-backed progress streams.

A long-running operation writes human-readable lines to its stream file;
any number of callers, possibly in another process or after reconnecting,
tail the file from the beginning until the completion sentinel appears.

Contract:
- Inputs: progress lines from operations
- Outputs: tailed lines for callers, keepalive markers while idle
- Side Effects: one file per stream in the progress directory, removed after
  the retention window
"""

import asyncio
import logging
import re
import threading
import time
import uuid
from collections.abc import AsyncIterator
from datetime import UTC
from datetime import datetime
from datetime import timedelta
from pathlib import Path
from urllib.parse import quote

from ..exceptions import FatalError
from ..exceptions import NotFoundError
from ..exceptions import ValidationError

logger = logging.getLogger(__name__)

# Final line of every stream; never sent to callers
PROGRESS_COMPLETE = "PROGRESS_COMPLETE"

STREAM_PREFIX = "xolo-progress-stream-"
STREAM_ID_RE = re.compile(r"^[0-9a-f]{32}$")

STREAM_URL_PATH = "/streamed_progress/"

# Yielded by tail() when nothing arrived within the keepalive interval
KEEPALIVE = ""

INTERRUPTED_MSG = "server restarted before the operation finished"


class ProgressStream:
    """Writer side of one stream."""

    def __init__(self, stream_id: str, path: Path) -> None:
        self.stream_id = stream_id
        self.path = path
        self._lock = threading.Lock()
        self._completed = False

    @property
    def url_path(self) -> str:
        return f"{STREAM_URL_PATH}?stream_file={quote(self.stream_id)}"

    @property
    def completed(self) -> bool:
        return self._completed

    def progress(self, msg: str, log: int | None = logging.DEBUG) -> None:
        """Append a line, optionally logging it.

        Args:
            msg: The line; trailing newlines are stripped
            log: Logging level to also log the line at, or None to not log it
        """
        line = msg.rstrip("\n")
        self._write(line)
        if log is not None:
            logger.log(log, line)

    def error(self, exc: BaseException) -> None:
        """Append the standard error line for a failed operation."""
        self.progress(f"ERROR: {type(exc).__name__}: {exc}", log=logging.ERROR)

    def complete(self) -> None:
        """Append the sentinel. Safe to call more than once."""
        with self._lock:
            if self._completed:
                return
            self._completed = True
        self._write(PROGRESS_COMPLETE)

    def _write(self, line: str) -> None:
        with self._lock, open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")


class ProgressChannel:
    """Creates, locates, tails, and expires progress streams."""

    def __init__(self, streams_dir: Path, retention_days: int = 7) -> None:
        """Initialize with storage directory.

        Args:
            streams_dir: Directory holding stream files
            retention_days: How long finished streams are kept
        """
        self.streams_dir = Path(streams_dir)
        self.streams_dir.mkdir(parents=True, exist_ok=True)
        self.retention_days = retention_days

    def start_stream(self) -> ProgressStream:
        """Create a new, empty stream."""
        stream_id = uuid.uuid4().hex
        path = self._path_for(stream_id)
        path.touch()
        logger.debug(f"Started progress stream {stream_id}")
        return ProgressStream(stream_id, path)

    def stream_path(self, stream_id: str) -> Path:
        """Locate an existing stream file.

        Raises:
            ValidationError: If the id is malformed
            NotFoundError: If no such stream exists
        """
        if not STREAM_ID_RE.match(stream_id or ""):
            raise ValidationError(f"Invalid progress stream id '{stream_id}'")
        path = self._path_for(stream_id)
        if not path.exists():
            raise NotFoundError(f"No progress stream '{stream_id}'")
        return path

    def read_lines(self, stream_id: str) -> tuple[list[str], bool]:
        """Everything written so far.

        Returns:
            (lines without the sentinel, whether the stream is complete)
        """
        lines = self.stream_path(stream_id).read_text(encoding="utf-8").splitlines()
        if PROGRESS_COMPLETE in lines:
            return lines[: lines.index(PROGRESS_COMPLETE)], True
        return lines, False

    async def tail(
        self,
        stream_id: str,
        poll_interval: float = 0.2,
        keepalive_interval: float = 30.0,
    ) -> AsyncIterator[str]:
        """Yield lines as they are written, from the start, until the sentinel.

        Yields KEEPALIVE whenever keepalive_interval passes with no new line.

        Raises:
            ValidationError, NotFoundError: As stream_path
        """
        path = self.stream_path(stream_id)
        buffer = ""
        last_sent = time.monotonic()

        with open(path, encoding="utf-8") as f:
            while True:
                chunk = f.read()
                if chunk:
                    buffer += chunk
                    *lines, buffer = buffer.split("\n")
                    for line in lines:
                        if line == PROGRESS_COMPLETE:
                            return
                        last_sent = time.monotonic()
                        yield line
                    continue

                if time.monotonic() - last_sent >= keepalive_interval:
                    last_sent = time.monotonic()
                    yield KEEPALIVE

                await asyncio.sleep(poll_interval)

    def list_streams(self) -> list[dict]:
        """Id, size and modification time of every stream file."""
        streams = []
        for path in sorted(self.streams_dir.glob(f"{STREAM_PREFIX}*")):
            stat = path.stat()
            streams.append(
                {
                    "stream_id": path.name.removeprefix(STREAM_PREFIX),
                    "size": stat.st_size,
                    "modified": datetime.fromtimestamp(stat.st_mtime, UTC).isoformat(),
                }
            )
        return streams

    def close_interrupted_streams(self) -> int:
        """Finish streams left open by a previous run of the server.

        Their operations died with that process, so each gets an error line
        and the sentinel, letting anyone tailing them stop.

        Returns:
            Number of streams closed
        """
        closed = 0
        for path in sorted(self.streams_dir.glob(f"{STREAM_PREFIX}*")):
            if PROGRESS_COMPLETE in path.read_text(encoding="utf-8").splitlines():
                continue
            stream = ProgressStream(path.name.removeprefix(STREAM_PREFIX), path)
            stream.error(FatalError(INTERRUPTED_MSG))
            stream.complete()
            closed += 1

        if closed > 0:
            logger.warning(f"Closed {closed} progress streams interrupted by a restart")
        return closed

    def cleanup_old_streams(self, older_than_days: int | None = None) -> int:
        """Remove stream files not modified within the retention window.

        Returns:
            Number of streams removed
        """
        if older_than_days is None:
            older_than_days = self.retention_days
        cutoff = (datetime.now(UTC) - timedelta(days=older_than_days)).timestamp()

        removed = 0
        for path in self.streams_dir.glob(f"{STREAM_PREFIX}*"):
            if path.stat().st_mtime < cutoff:
                path.unlink(missing_ok=True)
                removed += 1

        if removed > 0:
            logger.info(f"Cleaned up {removed} progress streams older than {older_than_days} days")
        return removed

    def _path_for(self, stream_id: str) -> Path:
        return self.streams_dir / f"{STREAM_PREFIX}{stream_id}"
