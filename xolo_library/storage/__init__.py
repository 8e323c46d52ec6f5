"""Storage module for xolo_library.

Public Interface:
    - atomic_write_text / atomic_write_bytes: tmp + rename writes
    - get_home_dir: Get XOLO_HOME
    - get_config_dir, get_data_dir, get_state_dir, get_log_dir,
      get_backups_dir, get_titles_dir, get_progress_dir, get_uploads_dir
"""

from .atomic import atomic_write_bytes
from .atomic import atomic_write_text
from .paths import get_backups_dir
from .paths import get_config_dir
from .paths import get_data_dir
from .paths import get_home_dir
from .paths import get_log_dir
from .paths import get_progress_dir
from .paths import get_state_dir
from .paths import get_titles_dir
from .paths import get_uploads_dir

__all__ = [
    "atomic_write_bytes",
    "atomic_write_text",
    "get_home_dir",
    "get_config_dir",
    "get_data_dir",
    "get_state_dir",
    "get_log_dir",
    "get_backups_dir",
    "get_titles_dir",
    "get_progress_dir",
    "get_uploads_dir",
]
