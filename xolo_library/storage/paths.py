"""Path resolution for xolo server storage locations.

All locations live under XOLO_HOME, each overridable by its own environment
variable.

Contract:
- Inputs: Environment variables (XOLO_HOME, XOLO_*_DIR)
- Outputs: Resolved Path objects
- Side Effects: Creates directories if they don't exist
"""

import os
from pathlib import Path


def get_home_dir() -> Path:
    """Get XOLO_HOME from environment.

    Returns:
        Path to root directory (default: .xolo)
    """
    root = os.environ.get("XOLO_HOME", ".xolo")
    return Path(root).resolve()


def _resolve_dir(default: Path, env_var: str) -> Path:
    directory = default

    env_override: str | None = os.environ.get(env_var)
    if env_override is not None:
        directory = Path(env_override).resolve()

    directory.mkdir(parents=True, exist_ok=True)
    return directory


def get_config_dir() -> Path:
    """Get configuration directory.

    Returns:
        Path to config directory ($XOLO_HOME/config)
    """
    return _resolve_dir(get_home_dir() / "config", "XOLO_CONFIG_DIR")


def get_data_dir() -> Path:
    """Get the durable data directory holding title and version records.

    Returns:
        Path to data directory ($XOLO_HOME/data)

    Environment Variables:
        XOLO_DATA_DIR: Override data directory location
    """
    return _resolve_dir(get_home_dir() / "data", "XOLO_DATA_DIR")


def get_state_dir() -> Path:
    """Get transient state directory.

    Returns:
        Path to state directory ($XOLO_HOME/state)
    """
    return _resolve_dir(get_home_dir() / "state", "XOLO_STATE_DIR")


def get_log_dir() -> Path:
    """Get log directory.

    Returns:
        Path to log directory ($XOLO_HOME/logs)

    Environment Variables:
        XOLO_LOG_DIR: Override log directory location
    """
    return _resolve_dir(get_home_dir() / "logs", "XOLO_LOG_DIR")


def get_backups_dir() -> Path:
    """Get backups directory.

    Returns:
        Path to backups directory ($XOLO_HOME/backups)
    """
    return _resolve_dir(get_home_dir() / "backups", "XOLO_BACKUPS_DIR")


def get_titles_dir() -> Path:
    """Get directory holding one subdirectory per title.

    Returns:
        Path to titles directory ($XOLO_HOME/data/titles)
    """
    titles_dir = get_data_dir() / "titles"
    titles_dir.mkdir(parents=True, exist_ok=True)
    return titles_dir


def get_progress_dir() -> Path:
    """Get directory holding progress stream files.

    Returns:
        Path to progress directory ($XOLO_HOME/state/progress)
    """
    progress_dir = get_state_dir() / "progress"
    progress_dir.mkdir(parents=True, exist_ok=True)
    return progress_dir


def get_uploads_dir() -> Path:
    """Get staging directory for uploaded packages.

    Returns:
        Path to uploads directory ($XOLO_HOME/state/uploads)
    """
    uploads_dir = get_state_dir() / "uploads"
    uploads_dir.mkdir(parents=True, exist_ok=True)
    return uploads_dir
