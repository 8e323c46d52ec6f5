"""Settings model for the xolo server.

Contract:
- Inputs: Environment variables, YAML files
- Outputs: Validated settings objects
- Side Effects: None (read-only)
"""

from pathlib import Path

from pydantic import SecretStr
from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict


class XoloSettings(BaseSettings):
    """Configuration for the xolo server.

    Attributes:
        host: Listen address (default: 127.0.0.1)
        port: Listen port (default: 8430)
        log_level: Logging level (default: info)
        data_path: Optional override for the data directory

    Example:
        >>> settings = XoloSettings()
        >>> assert settings.port == 8430
    """

    model_config = SettingsConfigDict(
        env_prefix="XOLO_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "127.0.0.1"
    port: int = 8430
    log_level: str = "info"
    log_days_to_keep: int = 14

    data_path: str | None = None

    @field_validator("data_path")
    @classmethod
    def expand_and_resolve_path(cls, v: str | None) -> str | None:
        """Expand ~ and resolve to an absolute path."""
        if v is None:
            return v
        return str(Path(v).expanduser().resolve())

    # Title Editor (patch-metadata service)
    ted_hostname: str = "localhost"
    ted_patch_source: str = "Xolo"
    ted_api_user: str = ""
    ted_api_pw: SecretStr = SecretStr("")
    ted_open_timeout: float = 10.0
    ted_timeout: float = 60.0

    # Jamf Pro (device-management service)
    jamf_hostname: str = "localhost"
    jamf_port: int = 443
    jamf_gui_hostname: str | None = None
    jamf_gui_port: int | None = None
    jamf_verify_cert: bool = True
    jamf_api_user: str = ""
    jamf_api_pw: SecretStr = SecretStr("")
    jamf_open_timeout: float = 10.0
    jamf_timeout: float = 60.0
    jamf_auto_accept_xolo_eas: bool = False
    jamf_patch_source_id: int = 1

    # Packages
    upload_tool: str = "api"
    # Base URL the MDM manifest points at, where computers download packages
    pkg_download_url: str | None = None
    sign_pkgs: bool = False
    pkg_signing_identity: str | None = None
    pkg_signing_keychain: str | None = None
    reupload_reinstall_delay_secs: int = 900
    patch_activation_timeout_secs: int = 3600
    patch_activation_poll_secs: int = 15

    # Targeting
    release_to_all_jamf_group: str | None = None
    forced_exclusion: str | None = None
    default_min_os: str = "10.9"

    # Maintenance
    deprecated_lifetime_days: int = 30
    keep_skipped_versions: bool = False
    unreleased_pilots_notification_days: int = 180
    progress_stream_retention_days: int = 7
    cleanup_hour: int = 2
    expiration_sweep_interval: str = "6h"
    stream_cleanup_interval: str = "1h"
    lock_cleanup_interval: str = "30m"
    log_rotation_hour: int = 0

    @property
    def jamf_base_url(self) -> str:
        """Base URL of the Jamf Pro server."""
        return f"https://{self.jamf_hostname}:{self.jamf_port}"

    @property
    def jamf_gui_url(self) -> str:
        """Base URL for links into the Jamf Pro web UI."""
        host = self.jamf_gui_hostname or self.jamf_hostname
        port = self.jamf_gui_port or self.jamf_port
        return f"https://{host}:{port}"

    @property
    def ted_base_url(self) -> str:
        """Base URL of the Title Editor API."""
        return f"https://{self.ted_hostname}"
