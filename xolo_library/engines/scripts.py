"""Scripts xolo generates for Jamf Pro."""

import shlex
from importlib.resources import files

PKG_IDS_PLACEHOLDER = "PKG_IDS_FROM_XOLO_GO_HERE"

UNINSTALL_TEMPLATE = "uninstall-pkgs-by-id.zsh"


def uninstall_script_for_ids(pkg_ids: list[str]) -> str:
    """Uninstall script removing everything installed by the given package ids."""
    template = files("xolo_library.data").joinpath(UNINSTALL_TEMPLATE).read_text(encoding="utf-8")
    return template.replace(PKG_IDS_PLACEHOLDER, " ".join(shlex.quote(pkg_id) for pkg_id in pkg_ids))


def last_used_ea_script(expire_paths: list[str]) -> str:
    """Extension attribute reporting, in epoch seconds, the latest use of any of the paths.

    Reports nothing when none of the paths exist, so computers without the
    title never look stale.
    """
    quoted = " ".join(shlex.quote(path) for path in expire_paths)
    return f"""#!/bin/zsh
latest=""
for item in {quoted} ; do
  [[ -e "$item" ]] || continue
  used=$(/usr/bin/stat -f %a "$item")
  if [[ -z "$latest" || "$used" -gt "$latest" ]] ; then
    latest=$used
  fi
done
echo "<result>$latest</result>"
"""

