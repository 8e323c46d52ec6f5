"""Configuration loading for the xolo server.

Contract:
- Inputs: Config file paths, environment variables
- Outputs: XoloSettings objects
- Side Effects: Creates default config file if missing
"""

import logging
import os
from pathlib import Path

import yaml

from ..storage.paths import get_config_dir
from .settings import XoloSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = """# xolo server configuration
# Environment variables prefixed with XOLO_ override anything set here,
# e.g. XOLO_PORT=9000

# Server settings
host: "127.0.0.1"
port: 8430
log_level: "info"
log_days_to_keep: 14

# Title Editor (patch-metadata service)
ted_hostname: "localhost"
ted_patch_source: "Xolo"
# ted_api_user: ""
# ted_api_pw: ""   # better set via XOLO_TED_API_PW

# Jamf Pro (device-management service)
jamf_hostname: "localhost"
jamf_port: 443
jamf_verify_cert: true
# jamf_api_user: ""
# jamf_api_pw: ""  # better set via XOLO_JAMF_API_PW
jamf_auto_accept_xolo_eas: false

# Packages: 'api' uploads through Jamf Pro, anything else is run as
# '<tool> <jamf package name> <path to pkg>'
upload_tool: "api"
sign_pkgs: false
# pkg_signing_identity: "Developer ID Installer: Example Inc (ABCDE12345)"

# Targeting
# release_to_all_jamf_group: "xolo-release-to-all-admins"
# forced_exclusion: "no-xolo"

# Maintenance
deprecated_lifetime_days: 30
keep_skipped_versions: false
unreleased_pilots_notification_days: 180
progress_stream_retention_days: 7
"""


def get_config_path() -> Path:
    """Get path to config file.

    Returns:
        Path to xolo-server.yaml in config directory
    """
    return get_config_dir() / "xolo-server.yaml"


def create_default_config() -> None:
    """Create default config file if it doesn't exist."""
    config_path = get_config_path()

    if config_path.exists():
        logger.debug(f"Config file already exists: {config_path}")
        return

    config_path.write_text(DEFAULT_CONFIG, encoding="utf-8")
    logger.info(f"Created default config: {config_path}")


def load_config(config_path: Path | None = None) -> XoloSettings:
    """Load server configuration from YAML and environment.

    Precedence is defaults < YAML < environment variables (XOLO_*).

    Args:
        config_path: Optional config file path (default: xolo-server.yaml in config dir)

    Returns:
        Validated server settings
    """
    if config_path is None:
        config_path = get_config_path()
        if not config_path.exists():
            create_default_config()

    yaml_settings = {}
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                yaml_settings = yaml.safe_load(f) or {}
            logger.debug(f"Loaded config from {config_path}")
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {config_path}: {e}")
            logger.info("Using default settings and environment variables")

    # Only pass YAML values that don't have corresponding env vars
    filtered_yaml = {}
    for key, value in yaml_settings.items():
        env_key = f"XOLO_{key.upper()}"
        if env_key not in os.environ:
            filtered_yaml[key] = value

    settings = XoloSettings(**filtered_yaml)

    logger.info(f"Server configuration loaded: host={settings.host}, port={settings.port}, log_level={settings.log_level}")

    return settings
