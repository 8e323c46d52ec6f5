"""Input validation for titles and versions.

Everything here runs before any lock is taken or any remote call is made,
and raises ValidationError with a message meant for the admin.
"""

import re

from ..exceptions import ValidationError
from ..models.titles import TARGET_ALL
from ..models.titles import TitleSpec
from ..models.versions import VersionSpec

TITLE_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")
VERSION_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")
OS_RE = re.compile(r"^\d+(\.\d+){0,2}$")
KILLAPP_RE = re.compile(r"^[^;/]+\.app;[A-Za-z0-9.-]+$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

PKG_EXTENSIONS = (".pkg", ".zip")


def validate_title_id(title: str) -> None:
    if not TITLE_RE.match(title or ""):
        raise ValidationError(
            f"Invalid title '{title}': use only lowercase letters, digits and dashes, starting with a letter or digit"
        )


def validate_version_id(version: str) -> None:
    if not VERSION_RE.match(version or ""):
        raise ValidationError(f"Invalid version '{version}'")


def validate_title_spec(spec: TitleSpec) -> None:
    """Check a title's fields on their own and against each other."""
    if not spec.display_name or not spec.display_name.strip():
        raise ValidationError("display_name is required")

    if spec.contact_email and not EMAIL_RE.match(spec.contact_email):
        raise ValidationError(f"Invalid contact_email '{spec.contact_email}'")

    has_app = bool(spec.app_name or spec.app_bundle_id)
    if has_app and spec.version_script:
        raise ValidationError("app_name/app_bundle_id and version_script are mutually exclusive")
    if not has_app and not spec.version_script:
        raise ValidationError("Either app_name and app_bundle_id, or version_script, is required")
    if has_app and not (spec.app_name and spec.app_bundle_id):
        raise ValidationError("app_name and app_bundle_id must be given together")
    if spec.app_name and not spec.app_name.endswith(".app"):
        raise ValidationError(f"app_name must end with .app: '{spec.app_name}'")

    if spec.uninstall_script and spec.uninstall_ids:
        raise ValidationError("uninstall_script and uninstall_ids are mutually exclusive")

    if (spec.expiration is None) != (not spec.expire_paths):
        raise ValidationError("expiration and expire_paths must be set together")
    if spec.expiration is not None:
        if spec.expiration <= 0:
            raise ValidationError("expiration must be a positive number of days")
        if not (spec.uninstall_script or spec.uninstall_ids):
            raise ValidationError("expiration requires uninstall_script or uninstall_ids")
        for path in spec.expire_paths:
            if not path.startswith("/"):
                raise ValidationError(f"expire_paths must be absolute: '{path}'")

    if TARGET_ALL in spec.release_groups and len(spec.release_groups) > 1:
        raise ValidationError(f"release_groups '{TARGET_ALL}' cannot be combined with other groups")
    if TARGET_ALL in spec.excluded_groups:
        raise ValidationError(f"excluded_groups cannot include '{TARGET_ALL}'")
    overlap = set(spec.release_groups) & set(spec.excluded_groups)
    if overlap:
        raise ValidationError(f"Groups both released to and excluded: {', '.join(sorted(overlap))}")


def validate_groups_exist(groups: list[str], known_groups: list[str], attrib: str) -> None:
    """All groups other than the 'all' sentinel must exist on Jamf Pro."""
    missing = sorted(set(groups) - set(known_groups) - {TARGET_ALL})
    if missing:
        raise ValidationError(f"{attrib}: no such computer group(s) in Jamf Pro: {', '.join(missing)}")


def validate_category_exists(category: str | None, known_categories: list[str]) -> None:
    if category and category not in known_categories:
        raise ValidationError(f"No such category in Jamf Pro: '{category}'")


def validate_release_to_all(admin: str, release_groups: list[str], allowed_admins: list[str] | None) -> None:
    """Releasing to all computers may be limited to members of a Jamf group.

    Args:
        admin: Requesting admin
        release_groups: Requested release groups
        allowed_admins: Members of the configured group, or None if not limited
    """
    if TARGET_ALL in release_groups and allowed_admins is not None and admin not in allowed_admins:
        raise ValidationError(f"Admin '{admin}' is not allowed to release titles to all computers")


def parse_os_version(value: str) -> tuple[int, ...]:
    if not OS_RE.match(value or ""):
        raise ValidationError(f"Invalid macOS version '{value}'")
    return tuple(int(part) for part in value.split("."))


def validate_version_spec(spec: VersionSpec) -> None:
    """Check OS bounds and kill apps."""
    if spec.min_os:
        parse_os_version(spec.min_os)
    if spec.max_os:
        parse_os_version(spec.max_os)
    if spec.min_os and spec.max_os and parse_os_version(spec.min_os) > parse_os_version(spec.max_os):
        raise ValidationError(f"min_os {spec.min_os} is later than max_os {spec.max_os}")

    for killapp in spec.killapps:
        if not KILLAPP_RE.match(killapp):
            raise ValidationError(f"Invalid killapp '{killapp}': use 'AppName.app;com.bundle.id'")


def validate_pkg_filename(filename: str) -> None:
    if not filename.lower().endswith(PKG_EXTENSIONS):
        raise ValidationError(f"Package file must be one of {', '.join(PKG_EXTENSIONS)}: '{filename}'")
