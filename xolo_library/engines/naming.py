"""Names of the objects xolo maintains on the remote services.

Every object xolo owns in Jamf Pro starts with 'xolo-', so admins can tell
them apart from hand-made objects, and the names can be derived from the
title and version alone.
"""

PREFIX = "xolo"


def ted_ea_key(title: str) -> str:
    """Key of the version-reporting extension attribute on the Title Editor.

    Jamf Pro shows patch extension attributes under this name too.
    """
    return f"{PREFIX}-{title}"


def installed_group(title: str) -> str:
    return f"{PREFIX}-{title}-installed"


def frozen_group(title: str) -> str:
    return f"{PREFIX}-{title}-frozen"


def expired_group(title: str) -> str:
    return f"{PREFIX}-{title}-expired"


def installed_version_ea(title: str) -> str:
    """Normal (non-patch) extension attribute running the version script."""
    return f"{PREFIX}-{title}-installed-version"


def last_used_ea(title: str) -> str:
    return f"{PREFIX}-{title}-last-used"


def manual_install_policy(title: str) -> str:
    """Self Service / manual install policy for the released version."""
    return f"{PREFIX}-{title}-install"


def uninstall_policy(title: str) -> str:
    return f"{PREFIX}-{title}-uninstall"


def uninstall_script(title: str) -> str:
    return f"{PREFIX}-{title}-uninstall"


def expire_policy(title: str) -> str:
    return f"{PREFIX}-{title}-expire"


def version_prefix(title: str, version: str) -> str:
    return f"{PREFIX}-{title}-{version}"


def auto_install_policy(title: str, version: str) -> str:
    return f"{version_prefix(title, version)}-auto-install"


def auto_reinstall_policy(title: str, version: str) -> str:
    return f"{version_prefix(title, version)}-auto-reinstall"


def version_installed_group(title: str, version: str) -> str:
    return f"{version_prefix(title, version)}-installed"


def patch_policy(title: str, version: str) -> str:
    return version_prefix(title, version)


def package_filename(title: str, version: str, upload_name: str) -> str:
    """Filename on the distribution point, keeping the uploaded extension."""
    ext = ".pkg.zip" if upload_name.endswith(".pkg.zip") else "." + upload_name.rsplit(".", 1)[-1]
    return f"{version_prefix(title, version)}{ext}"
