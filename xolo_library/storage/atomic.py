"""Crash-safe file writes."""

from pathlib import Path


def atomic_write_text(path: Path, text: str) -> None:
    """Write text so readers never observe a half-written file.

    Writes to a sibling tmp file then renames over the target.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(text, encoding="utf-8")
    tmp_path.replace(path)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Binary variant of atomic_write_text."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_bytes(data)
    tmp_path.replace(path)
