"""Logging setup for the xolo server.

Console plus a file handler on <log dir>/xoloserver.log. Rotation is driven
explicitly (nightly by the maintenance scheduler, or on demand through the
maint API) rather than by the handler itself.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .storage.paths import get_log_dir

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILENAME = "xoloserver.log"

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "fatal": logging.CRITICAL,
}

logger = logging.getLogger(__name__)

_file_handler: RotatingFileHandler | None = None


def level_from_name(name: str) -> int:
    """Translate a level name into a logging level.

    Raises:
        ValueError: If the name is not a known level
    """
    try:
        return LOG_LEVELS[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown log level '{name}', must be one of: {', '.join(sorted(LOG_LEVELS))}") from None


def setup_logging(level: str = "info", log_dir: Path | None = None, days_to_keep: int = 14) -> Path:
    """Configure root logging with console and file output.

    Args:
        level: Level name
        log_dir: Directory for the log file (default: get_log_dir())
        days_to_keep: Rotated files to keep, one per nightly rotation

    Returns:
        Path to the active log file
    """
    global _file_handler

    if log_dir is None:
        log_dir = get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILENAME

    logging.basicConfig(level=level_from_name(level), format=LOG_FORMAT)
    root = logging.getLogger()
    root.setLevel(level_from_name(level))

    if _file_handler is not None:
        root.removeHandler(_file_handler)
        _file_handler.close()

    # maxBytes=0 disables size-based rollover; we roll over explicitly
    _file_handler = RotatingFileHandler(log_file, maxBytes=0, backupCount=days_to_keep, encoding="utf-8")
    _file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(_file_handler)

    logger.info(f"Logging to {log_file} at level {level.upper()}")
    return log_file


def current_log_file() -> Path | None:
    """Path of the active log file, if file logging is configured."""
    if _file_handler is None:
        return None
    return Path(_file_handler.baseFilename)


def current_log_level() -> str:
    """Name of the root logger's level."""
    return logging.getLevelName(logging.getLogger().level)


def set_log_level(level: str) -> str:
    """Change the root log level at runtime.

    Returns:
        The new level name
    """
    new_level = level_from_name(level)
    logging.getLogger().setLevel(new_level)
    name = logging.getLevelName(new_level)
    logger.info(f"Log level set to {name}")
    return name


def rotate_logs() -> bool:
    """Roll the log file over.

    Returns:
        False if file logging isn't configured
    """
    if _file_handler is None:
        logger.warning("Log rotation requested but file logging is not configured")
        return False

    logger.info("Rotating logs")
    _file_handler.doRollover()
    logger.info("Log rotation complete")
    return True
