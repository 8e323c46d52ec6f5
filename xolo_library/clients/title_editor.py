"""Client for the patch-metadata service (Jamf Title Editor).

Only the calls the lifecycle engines make are implemented. Titles and
patches are addressed by the numeric ids the service assigns, which the
engines keep on the local Title and Version records.
"""

import base64
import logging
from datetime import UTC
from datetime import datetime

import httpx

from ..models.titles import Title
from ..models.versions import Version
from .base import ServiceClient

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = 1800

# Criteria 'type' values
RECON = "recon"
EXT_ATTR = "extensionAttribute"


def criterion(name: str, operator: str, value: str, kind: str = RECON) -> dict:
    """One requirement/capability/component criterion."""
    return {"name": name, "operator": operator, "value": value, "type": kind, "and": True}


def install_criteria(title: Title, ea_key: str, value: str | None = None) -> list[dict]:
    """Criteria matching computers that have the title, or a given version of it.

    Args:
        title: The title; its app or version script decides the criteria
        ea_key: Key of the version-script extension attribute
        value: Version to match, or None for any installed version
    """
    if title.uses_version_script:
        if value is None:
            return [criterion(ea_key, "is not", "", EXT_ATTR)]
        return [criterion(ea_key, "is", value, EXT_ATTR)]

    criteria = [criterion("Application Bundle ID", "is", title.app_bundle_id)]
    if value is not None:
        criteria.append(criterion("Application Version", "is", value))
    return criteria


class TitleEditorClient(ServiceClient):
    """Title Editor API v2."""

    service_name = "Title Editor"

    def __init__(self, *args, patch_source: str = "Xolo", **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.patch_source = patch_source

    def _fetch_token(self) -> tuple[str, float]:
        data = self.request(
            "POST",
            "/v2/auth/tokens",
            authenticate=False,
            auth=httpx.BasicAuth(self.username, self._password),
        ).json()
        lifetime = DEFAULT_TOKEN_LIFETIME
        if data.get("expires"):
            expires = datetime.fromisoformat(data["expires"].replace("Z", "+00:00"))
            lifetime = (expires - datetime.now(UTC)).total_seconds()
        return data["token"], lifetime

    # --- Titles ---

    def list_titles(self) -> list[dict]:
        return self.get_json("/v2/softwaretitles")

    def title_ids(self) -> list[str]:
        """The string ids of every title on the service."""
        return sorted(t["id"] for t in self.list_titles())

    def create_title(self, title: Title) -> int:
        """Create a disabled software title.

        Returns:
            The service's numeric id for the title
        """
        body = self._title_body(title)
        body["id"] = title.title
        body["currentVersion"] = "0"
        body["enabled"] = False
        data = self.post_json("/v2/softwaretitles", body)
        logger.info(f"Created Title Editor title '{title.title}' ({data['softwareTitleId']})")
        return data["softwareTitleId"]

    def update_title(self, ted_id: int, title: Title) -> None:
        body = self._title_body(title)
        if title.latest_version:
            body["currentVersion"] = title.latest_version
        self.put_json(f"/v2/softwaretitles/{ted_id}", body)

    def delete_title(self, ted_id: int) -> None:
        self.delete(f"/v2/softwaretitles/{ted_id}")

    def enable_title(self, ted_id: int) -> None:
        self.request("POST", f"/v2/softwaretitles/{ted_id}/enable")

    def set_requirements(self, ted_id: int, criteria: list[dict]) -> None:
        """Replace the title's requirements."""
        for req in self.get_json(f"/v2/softwaretitles/{ted_id}/requirements"):
            self.delete(f"/v2/requirements/{req['requirementId']}")
        for order, crit in enumerate(criteria):
            self.post_json(f"/v2/softwaretitles/{ted_id}/requirements", {**crit, "absoluteOrderId": order})

    def set_extension_attribute(self, ted_id: int, key: str, script: str, display_name: str) -> None:
        """Create or replace the title's version-reporting extension attribute."""
        body = {
            "key": key,
            "displayName": display_name,
            "value": base64.b64encode(script.encode("utf-8")).decode("ascii"),
        }
        existing = self._extension_attribute(ted_id, key)
        if existing is None:
            self.post_json(f"/v2/softwaretitles/{ted_id}/extensionattributes", body)
        else:
            self.put_json(f"/v2/extensionattributes/{existing['extensionAttributeId']}", body)

    def delete_extension_attribute(self, ted_id: int, key: str) -> None:
        existing = self._extension_attribute(ted_id, key)
        if existing is not None:
            self.delete(f"/v2/extensionattributes/{existing['extensionAttributeId']}")

    # --- Patches ---

    def create_patch(self, ted_id: int, version: Version, position: int = 0) -> int:
        """Add a patch to a title.

        Args:
            ted_id: Numeric title id
            version: The version the patch describes
            position: Order among the title's patches, 0 being newest

        Returns:
            The service's numeric id for the patch
        """
        body = self._patch_body(version)
        body["absoluteOrderId"] = position
        data = self.post_json(f"/v2/softwaretitles/{ted_id}/patches", body)
        logger.info(f"Created Title Editor patch {version.title}/{version.version} ({data['patchId']})")
        return data["patchId"]

    def update_patch(self, patch_id: int, version: Version) -> None:
        self.put_json(f"/v2/patches/{patch_id}", self._patch_body(version))

    def delete_patch(self, patch_id: int) -> None:
        self.delete(f"/v2/patches/{patch_id}")

    def enable_patch(self, patch_id: int) -> None:
        self.request("POST", f"/v2/patches/{patch_id}/enable")

    def set_killapps(self, patch_id: int, killapps: list[str]) -> None:
        """Replace the patch's kill apps, given as 'AppName.app;bundle.id' entries."""
        for killapp in self.get_json(f"/v2/patches/{patch_id}/killapps"):
            self.delete(f"/v2/killapps/{killapp['killAppId']}")
        for entry in killapps:
            app_name, bundle_id = entry.split(";", 1)
            self.post_json(f"/v2/patches/{patch_id}/killapps", {"appName": app_name, "bundleId": bundle_id})

    def set_capabilities(self, patch_id: int, min_os: str, max_os: str | None = None) -> None:
        """Replace the patch's OS capabilities."""
        for cap in self.get_json(f"/v2/patches/{patch_id}/capabilities"):
            self.delete(f"/v2/capabilities/{cap['capabilityId']}")
        criteria = [criterion("Operating System Version", "greater than or equal", min_os)]
        if max_os:
            criteria.append(criterion("Operating System Version", "less than or equal", max_os))
        for order, crit in enumerate(criteria):
            self.post_json(f"/v2/patches/{patch_id}/capabilities", {**crit, "absoluteOrderId": order})

    def set_component(self, patch_id: int, title: Title, version: str, ea_key: str) -> None:
        """Replace the patch's component, which tells the installed version apart."""
        for component in self.get_json(f"/v2/patches/{patch_id}/components"):
            self.delete(f"/v2/components/{component['componentId']}")
        data = self.post_json(f"/v2/patches/{patch_id}/components", {"name": title.display_name, "version": version})
        for order, crit in enumerate(install_criteria(title, ea_key, version)):
            self.post_json(f"/v2/components/{data['componentId']}/criteria", {**crit, "absoluteOrderId": order})

    # --- Helpers ---

    def _extension_attribute(self, ted_id: int, key: str) -> dict | None:
        for ea in self.get_json(f"/v2/softwaretitles/{ted_id}/extensionattributes"):
            if ea.get("key") == key:
                return ea
        return None

    def _title_body(self, title: Title) -> dict:
        return {
            "name": title.display_name,
            "publisher": title.publisher or self.patch_source,
            "appName": title.app_name,
            "bundleId": title.app_bundle_id,
        }

    def _patch_body(self, version: Version) -> dict:
        return {
            "version": version.version,
            "releaseDate": (version.creation_date or datetime.now(UTC)).isoformat(),
            "standalone": version.standalone,
            "minimumOperatingSystem": version.min_os,
            "reboot": version.reboot,
        }
