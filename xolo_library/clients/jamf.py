"""Client for the device-management service (Jamf Pro).

Inventory, packages, scripts, extension attributes, patch titles and MDM
deployment go through the Jamf Pro API (JSON). Policies, patch policies and
computer groups go through the Classic API (XML), which is the only API
that manages their scope.

All objects are addressed by name; ids are looked up as needed.
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from urllib.parse import quote

import httpx

from ..exceptions import UpstreamError
from .base import ServiceClient

logger = logging.getLogger(__name__)

PAGE_SIZE = 2000

XML_HEADERS = {"Content-Type": "application/xml", "Accept": "application/xml"}
JSON_ACCEPT = {"Accept": "application/json"}


@dataclass
class PolicySpec:
    """Everything xolo sets on a Jamf policy."""

    name: str
    category: str | None = None
    enabled: bool = True
    checkin: bool = True
    frequency: str = "Once per computer"
    scope_all: bool = False
    scope_groups: list[str] = field(default_factory=list)
    exclusion_groups: list[str] = field(default_factory=list)
    package: str | None = None
    script: str | None = None
    self_service: bool = False
    self_service_name: str | None = None
    self_service_description: str | None = None
    icon_id: int | None = None
    reboot: bool = False


@dataclass
class PatchPolicySpec:
    """Everything xolo sets on a Jamf patch policy."""

    name: str
    target_version: str
    enabled: bool = True
    self_service: bool = False
    allow_downgrade: bool = False
    scope_all: bool = False
    scope_groups: list[str] = field(default_factory=list)
    exclusion_groups: list[str] = field(default_factory=list)


class JamfClient(ServiceClient):
    """Jamf Pro and Classic API access."""

    service_name = "Jamf Pro"

    def __init__(self, *args, gui_url: str | None = None, patch_source_id: int = 1, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.gui_url = gui_url or self.base_url
        self.patch_source_id = patch_source_id

    def _fetch_token(self) -> tuple[str, float]:
        data = self.request(
            "POST",
            "/api/v1/auth/token",
            authenticate=False,
            auth=httpx.BasicAuth(self.username, self._password),
        ).json()
        # Jamf tokens last 30 minutes unless the server says otherwise
        return data["token"], 1800

    # --- Inventory lookups ---

    def computer_group_names(self) -> list[str]:
        return sorted(g["name"] for g in self.get_json("/api/v1/computer-groups"))

    def category_names(self) -> list[str]:
        return sorted(c["name"] for c in self._paged("/api/v1/categories"))

    def package_names(self) -> list[str]:
        return sorted(p["packageName"] for p in self._paged("/api/v1/packages"))

    def computers(self) -> list[dict]:
        """Every managed computer as {id, name, username, last_contact}."""
        results = self._paged(
            "/api/v1/computers-inventory",
            params={"section": ["GENERAL", "USER_AND_LOCATION"]},
        )
        return [
            {
                "id": int(c["id"]),
                "name": c["general"]["name"],
                "username": (c.get("userAndLocation") or {}).get("username"),
                "last_contact": c["general"].get("lastContactTime"),
            }
            for c in results
        ]

    def computer_ids(self) -> dict[str, int]:
        return {c["name"]: c["id"] for c in self.computers()}

    def computers_for_user(self, username: str) -> list[str]:
        return sorted(c["name"] for c in self.computers() if c["username"] == username)

    def group_members(self, group: str) -> list[str]:
        data = self.get_json(f"/JSSResource/computergroups/name/{quote(group)}", headers=JSON_ACCEPT)
        return sorted(c["name"] for c in data["computer_group"].get("computers", []))

    def account_group_members(self, group: str) -> list[str]:
        """Jamf Pro admin accounts in an account group."""
        data = self.get_json(f"/JSSResource/accounts/groupname/{quote(group)}", headers=JSON_ACCEPT)
        return sorted(m["name"] for m in data["group"].get("members", []))

    # --- Groups ---

    def group_exists(self, name: str) -> bool:
        return name in self.computer_group_names()

    def ensure_static_group(self, name: str) -> None:
        """Create an empty static group unless it exists."""
        if self.group_exists(name):
            return
        root = ET.Element("computer_group")
        ET.SubElement(root, "name").text = name
        ET.SubElement(root, "is_smart").text = "false"
        self._post_xml("/JSSResource/computergroups/id/0", root)
        logger.info(f"Created static group '{name}'")

    def change_static_group(self, name: str, add: list[str] | None = None, remove: list[str] | None = None) -> None:
        """Add and remove computers, by name, from a static group."""
        root = ET.Element("computer_group")
        for tag, names in (("computer_additions", add), ("computer_deletions", remove)):
            if names:
                changes = ET.SubElement(root, tag)
                for computer in names:
                    ET.SubElement(ET.SubElement(changes, "computer"), "name").text = computer
        self._put_xml(f"/JSSResource/computergroups/name/{quote(name)}", root)

    def save_smart_group(self, name: str, criteria: list[dict]) -> None:
        """Create or replace a smart group.

        Args:
            name: Group name
            criteria: Dicts with name, search_type and value
        """
        root = ET.Element("computer_group")
        ET.SubElement(root, "name").text = name
        ET.SubElement(root, "is_smart").text = "true"
        crit_el = ET.SubElement(root, "criteria")
        for priority, crit in enumerate(criteria):
            c = ET.SubElement(crit_el, "criterion")
            ET.SubElement(c, "name").text = crit["name"]
            ET.SubElement(c, "priority").text = str(priority)
            ET.SubElement(c, "and_or").text = "and"
            ET.SubElement(c, "search_type").text = crit["search_type"]
            ET.SubElement(c, "value").text = crit["value"]

        if self.group_exists(name):
            self._put_xml(f"/JSSResource/computergroups/name/{quote(name)}", root)
        else:
            self._post_xml("/JSSResource/computergroups/id/0", root)
            logger.info(f"Created smart group '{name}'")

    def delete_computer_group(self, name: str) -> None:
        self.delete(f"/JSSResource/computergroups/name/{quote(name)}")

    # --- Extension attributes ---

    def save_extension_attribute(self, name: str, script: str, description: str = "") -> None:
        body = {
            "name": name,
            "description": description,
            "dataType": "STRING",
            "enabled": True,
            "inventoryDisplayType": "EXTENSION_ATTRIBUTES",
            "inputType": "SCRIPT",
            "scriptContents": script,
        }
        ea_id = self._find_id("/api/v1/computer-extension-attributes", "name", name)
        if ea_id is None:
            self.post_json("/api/v1/computer-extension-attributes", body)
            logger.info(f"Created extension attribute '{name}'")
        else:
            self.put_json(f"/api/v1/computer-extension-attributes/{ea_id}", body)

    def delete_extension_attribute(self, name: str) -> None:
        ea_id = self._find_id("/api/v1/computer-extension-attributes", "name", name)
        if ea_id is not None:
            self.delete(f"/api/v1/computer-extension-attributes/{ea_id}")

    def extension_attribute_values(self, name: str) -> dict[str, str]:
        """Reported value of an extension attribute, per computer name."""
        results = self._paged(
            "/api/v1/computers-inventory",
            params={"section": ["GENERAL", "EXTENSION_ATTRIBUTES"]},
        )
        values = {}
        for computer in results:
            for ea in computer.get("extensionAttributes") or []:
                if ea.get("name") == name and ea.get("values"):
                    values[computer["general"]["name"]] = ea["values"][0]
        return values

    # --- Scripts ---

    def save_script(self, name: str, contents: str) -> None:
        body = {"name": name, "scriptContents": contents, "priority": "AFTER"}
        script_id = self._find_id("/api/v1/scripts", "name", name)
        if script_id is None:
            self.post_json("/api/v1/scripts", body)
            logger.info(f"Created script '{name}'")
        else:
            self.put_json(f"/api/v1/scripts/{script_id}", body)

    def delete_script(self, name: str) -> None:
        script_id = self._find_id("/api/v1/scripts", "name", name)
        if script_id is not None:
            self.delete(f"/api/v1/scripts/{script_id}")

    # --- Policies ---

    def policy_exists(self, name: str) -> bool:
        return self._classic_id(f"/JSSResource/policies/name/{quote(name)}", "policy") is not None

    def save_policy(self, spec: PolicySpec) -> None:
        """Create or replace a policy."""
        root = _policy_xml(spec)
        if self.policy_exists(spec.name):
            self._put_xml(f"/JSSResource/policies/name/{quote(spec.name)}", root)
        else:
            self._post_xml("/JSSResource/policies/id/0", root)
            logger.info(f"Created policy '{spec.name}'")

    def set_policy_enabled(self, name: str, enabled: bool) -> None:
        root = ET.Element("policy")
        ET.SubElement(ET.SubElement(root, "general"), "enabled").text = _bool(enabled)
        self._put_xml(f"/JSSResource/policies/name/{quote(name)}", root)

    def flush_policy_logs(self, name: str) -> None:
        """Clear a policy's logs so it runs again on computers that already ran it."""
        policy_id = self._classic_id(f"/JSSResource/policies/name/{quote(name)}", "policy")
        if policy_id is not None:
            self.request("DELETE", f"/JSSResource/logflush/policy/id/{policy_id}/interval/Zero+Days")

    def delete_policy(self, name: str) -> None:
        self.delete(f"/JSSResource/policies/name/{quote(name)}")

    def upload_icon(self, path: Path) -> int:
        with open(path, "rb") as f:
            data = self.request("POST", "/api/v1/icon", files={"file": (path.name, f)}).json()
        return int(data["id"])

    # --- Packages ---

    def save_package(self, filename: str, category: str | None = None, reboot: bool = False, sha_512: str | None = None) -> int:
        """Create or update the package record for a file.

        Returns:
            The package id
        """
        body = {
            "packageName": filename,
            "fileName": filename,
            "categoryId": self._category_id(category),
            "priority": 10,
            "rebootRequired": reboot,
            "fillUserTemplate": False,
            "fillExistingUsers": False,
            "osInstall": False,
            "suppressUpdates": False,
            "suppressFromDock": False,
            "suppressEula": False,
            "suppressRegistration": False,
        }
        if sha_512:
            body["hashType"] = "SHA_512"
            body["hashValue"] = sha_512

        pkg_id = self._find_id("/api/v1/packages", "fileName", filename)
        if pkg_id is None:
            pkg_id = int(self.post_json("/api/v1/packages", body)["id"])
            logger.info(f"Created package record '{filename}'")
        else:
            self.put_json(f"/api/v1/packages/{pkg_id}", body)
        return pkg_id

    def upload_package(self, filename: str, path: Path) -> None:
        """Upload the file for an existing package record to the distribution point."""
        pkg_id = self._find_id("/api/v1/packages", "fileName", filename)
        if pkg_id is None:
            raise UpstreamError(self.service_name, f"No package record for '{filename}'")
        with open(path, "rb") as f:
            self.request("POST", f"/api/v1/packages/{pkg_id}/upload", files={"file": (filename, f)})
        logger.info(f"Uploaded '{filename}' to Jamf Pro")

    def delete_package(self, filename: str) -> None:
        pkg_id = self._find_id("/api/v1/packages", "fileName", filename)
        if pkg_id is not None:
            self.delete(f"/api/v1/packages/{pkg_id}")

    # --- Patch management ---

    def create_patch_title(self, title: str, display_name: str, category: str | None = None) -> None:
        """Subscribe Jamf Pro to a title from the xolo patch source."""
        if self._patch_config(title) is not None:
            return
        body = {
            "displayName": display_name,
            "softwareTitleNameId": title,
            "sourceId": str(self.patch_source_id),
            "categoryId": self._category_id(category),
            "uiNotifications": False,
            "emailNotifications": False,
        }
        self.post_json("/api/v2/patch-software-title-configurations", body)
        logger.info(f"Created patch title '{title}'")

    def delete_patch_title(self, title: str) -> None:
        config = self._patch_config(title)
        if config is not None:
            self.delete(f"/api/v2/patch-software-title-configurations/{config['id']}")

    def patch_ea_awaiting_acceptance(self, title: str) -> bool:
        config = self._patch_config(title)
        if config is None:
            return False
        return any(not ea.get("accepted") for ea in config.get("extensionAttributes") or [])

    def accept_patch_ea(self, title: str) -> None:
        config = self._require_patch_config(title)
        eas = [{**ea, "accepted": True} for ea in config.get("extensionAttributes") or []]
        self.patch_json(f"/api/v2/patch-software-title-configurations/{config['id']}", {"extensionAttributes": eas})
        logger.info(f"Accepted extension attribute for patch title '{title}'")

    def patch_ea_approval_url(self, title: str) -> str:
        config = self._patch_config(title)
        config_id = config["id"] if config else ""
        return f"{self.gui_url}/view/computers/patch/{config_id}?tab=extension"

    def patch_version_visible(self, title: str, version: str) -> bool:
        """Whether Jamf Pro has picked up a version from the patch source yet."""
        config = self._patch_config(title)
        if config is None:
            return False
        definitions = self._paged(f"/api/v2/patch-software-title-configurations/{config['id']}/definitions")
        return any(d.get("version") == version for d in definitions)

    def assign_package_to_patch(self, title: str, version: str, filename: str) -> None:
        config = self._require_patch_config(title)
        pkg_id = self._find_id("/api/v1/packages", "fileName", filename)
        if pkg_id is None:
            raise UpstreamError(self.service_name, f"No package record for '{filename}'")
        packages = [p for p in config.get("packages") or [] if p.get("version") != version]
        packages.append({"packageId": str(pkg_id), "version": version})
        self.patch_json(f"/api/v2/patch-software-title-configurations/{config['id']}", {"packages": packages})

    def save_patch_policy(self, title: str, spec: PatchPolicySpec) -> None:
        config = self._require_patch_config(title)
        root = _patch_policy_xml(spec)
        policy_id = self._patch_policy_id(config["id"], spec.name)
        if policy_id is None:
            self._post_xml(f"/JSSResource/patchpolicies/softwaretitleconfig/id/{config['id']}", root)
            logger.info(f"Created patch policy '{spec.name}'")
        else:
            self._put_xml(f"/JSSResource/patchpolicies/id/{policy_id}", root)

    def delete_patch_policy(self, title: str, name: str) -> None:
        config = self._patch_config(title)
        if config is None:
            return
        policy_id = self._patch_policy_id(config["id"], name)
        if policy_id is not None:
            self.delete(f"/JSSResource/patchpolicies/id/{policy_id}")

    def patch_report(self, title: str) -> list[dict]:
        """Installed version per computer, as {computer, version, username, last_contact}."""
        config = self._require_patch_config(title)
        results = self._paged(f"/api/v2/patch-software-title-configurations/{config['id']}/patch-report")
        return [
            {
                "computer": r["computerName"],
                "version": r.get("version"),
                "username": r.get("username"),
                "last_contact": r.get("lastContactTime"),
            }
            for r in results
        ]

    # --- MDM ---

    def deploy_package(self, manifest: dict, computer_ids: list[int]) -> tuple[list[dict], list[dict]]:
        """Send an InstallEnterpriseApplication command to computers.

        Returns:
            (queued commands as {device, commandUuid}, errors as {device, reason})
        """
        body = {"manifest": manifest, "installAsManaged": False, "devices": computer_ids}
        data = self.post_json("/api/v1/deploy-package?verbose=true", body) or {}
        return data.get("queuedCommands", []), data.get("errors", [])

    # --- Helpers ---

    def _paged(self, path: str, params: dict | None = None) -> list[dict]:
        results: list[dict] = []
        page = 0
        while True:
            data = self.get_json(path, params={**(params or {}), "page": page, "page-size": PAGE_SIZE})
            batch = data.get("results", [])
            results.extend(batch)
            if len(batch) < PAGE_SIZE or len(results) >= data.get("totalCount", 0):
                return results
            page += 1

    def _find_id(self, path: str, key: str, value: str) -> int | None:
        for item in self._paged(path, params={"filter": f'{key}=="{value}"'}):
            if item.get(key) == value:
                return int(item["id"])
        return None

    def _category_id(self, category: str | None) -> str:
        if not category:
            return "-1"
        category_id = self._find_id("/api/v1/categories", "name", category)
        return str(category_id) if category_id is not None else "-1"

    def _classic_id(self, path: str, kind: str) -> int | None:
        try:
            data = self.get_json(path, headers=JSON_ACCEPT)
        except UpstreamError as e:
            if e.upstream_status == 404:
                return None
            raise
        return int(data[kind]["general"]["id"])

    def _patch_config(self, title: str) -> dict | None:
        for config in self.get_json("/api/v2/patch-software-title-configurations"):
            if config.get("softwareTitleNameId") == title:
                return config
        return None

    def _require_patch_config(self, title: str) -> dict:
        config = self._patch_config(title)
        if config is None:
            raise UpstreamError(self.service_name, f"No patch title for '{title}'")
        return config

    def _patch_policy_id(self, config_id: int, name: str) -> int | None:
        data = self.get_json(f"/JSSResource/patchpolicies/softwaretitleconfig/id/{config_id}", headers=JSON_ACCEPT)
        for policy in data.get("patch_policies", []):
            if policy.get("name") == name:
                return int(policy["id"])
        return None

    def _post_xml(self, path: str, root: ET.Element) -> None:
        self.request("POST", path, content=ET.tostring(root, encoding="unicode"), headers=XML_HEADERS)

    def _put_xml(self, path: str, root: ET.Element) -> None:
        self.request("PUT", path, content=ET.tostring(root, encoding="unicode"), headers=XML_HEADERS)


def _bool(value: bool) -> str:
    return "true" if value else "false"


def _scope_xml(parent: ET.Element, scope_all: bool, groups: list[str], exclusions: list[str]) -> None:
    scope = ET.SubElement(parent, "scope")
    ET.SubElement(scope, "all_computers").text = _bool(scope_all)
    group_el = ET.SubElement(scope, "computer_groups")
    for group in groups:
        ET.SubElement(ET.SubElement(group_el, "computer_group"), "name").text = group
    excl_groups = ET.SubElement(ET.SubElement(scope, "exclusions"), "computer_groups")
    for group in exclusions:
        ET.SubElement(ET.SubElement(excl_groups, "computer_group"), "name").text = group


def _policy_xml(spec: PolicySpec) -> ET.Element:
    root = ET.Element("policy")
    general = ET.SubElement(root, "general")
    ET.SubElement(general, "name").text = spec.name
    ET.SubElement(general, "enabled").text = _bool(spec.enabled)
    ET.SubElement(general, "trigger_checkin").text = _bool(spec.checkin)
    ET.SubElement(general, "frequency").text = spec.frequency
    if spec.category:
        ET.SubElement(ET.SubElement(general, "category"), "name").text = spec.category

    _scope_xml(root, spec.scope_all, spec.scope_groups, spec.exclusion_groups)

    ssvc = ET.SubElement(root, "self_service")
    ET.SubElement(ssvc, "use_for_self_service").text = _bool(spec.self_service)
    if spec.self_service:
        ET.SubElement(ssvc, "self_service_display_name").text = spec.self_service_name or spec.name
        ET.SubElement(ssvc, "self_service_description").text = spec.self_service_description or ""
        if spec.icon_id is not None:
            ET.SubElement(ET.SubElement(ssvc, "self_service_icon"), "id").text = str(spec.icon_id)

    if spec.package:
        packages = ET.SubElement(ET.SubElement(root, "package_configuration"), "packages")
        pkg = ET.SubElement(packages, "package")
        ET.SubElement(pkg, "name").text = spec.package
        ET.SubElement(pkg, "action").text = "Install"

    if spec.script:
        scr = ET.SubElement(ET.SubElement(root, "scripts"), "script")
        ET.SubElement(scr, "name").text = spec.script
        ET.SubElement(scr, "priority").text = "After"

    if spec.reboot:
        reboot = ET.SubElement(root, "reboot")
        ET.SubElement(reboot, "no_user_logged_in").text = "Restart immediately"
        ET.SubElement(reboot, "user_logged_in").text = "Restart"

    ET.SubElement(ET.SubElement(root, "maintenance"), "recon").text = "true"
    return root


def _patch_policy_xml(spec: PatchPolicySpec) -> ET.Element:
    root = ET.Element("patch_policy")
    general = ET.SubElement(root, "general")
    ET.SubElement(general, "name").text = spec.name
    ET.SubElement(general, "enabled").text = _bool(spec.enabled)
    ET.SubElement(general, "target_version").text = spec.target_version
    ET.SubElement(general, "allow_downgrade").text = _bool(spec.allow_downgrade)
    ET.SubElement(general, "distribution_method").text = "selfservice" if spec.self_service else "prompt"
    _scope_xml(root, spec.scope_all, spec.scope_groups, spec.exclusion_groups)
    return root
