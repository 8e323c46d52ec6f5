"""
Integration tests for title API endpoints.

Tests cover:
- Streamed operations: create, update, release, repair, delete
- Synchronous validation and conflicts before a stream starts
- Freeze, thaw, change log and patch report queries
- Error bodies for 400, 404 and 409
"""

import pytest
from fastapi.testclient import TestClient

from tests.conftest import TEST_TITLE
from tests.fakes import FakeJamf
from tests.fakes import wait_for_stream
from xolo_library.engines.versions import NO_CHANGES
from xolod.services.container import XoloServices

TITLE_BODY = {
    "title": TEST_TITLE,
    "display_name": "Xolo Test",
    "publisher": "Example Inc",
    "app_name": "XoloTest.app",
    "app_bundle_id": "com.example.xolotest",
    "release_groups": ["engineering"],
}


def run(client: TestClient, services: XoloServices, method: str, url: str, **kwargs) -> list[str]:
    """Start a streamed operation and wait for it, returning its progress lines."""
    response = client.request(method, url, **kwargs)
    assert response.status_code == 202, response.text
    data = response.json()
    assert data["status"] == "running"
    return wait_for_stream(services.channel, data["progress_stream_url_path"])


@pytest.mark.integration
class TestCreateTitleAPI:
    """Test POST /titles."""

    def test_create_streams_progress(self, client: TestClient, services: XoloServices) -> None:
        """Test POST /titles streams progress and records the title."""
        lines = run(client, services, "POST", "/titles", json=TITLE_BODY)

        assert lines[-1] == f"Created title '{TEST_TITLE}'"
        response = client.get(f"/titles/{TEST_TITLE}")
        assert response.status_code == 200
        assert response.json()["created_by"] == "tester"
        assert [t["title"] for t in client.get("/titles").json()] == [TEST_TITLE]

    def test_every_field_round_trips(self, client: TestClient, services: XoloServices) -> None:
        """Test each attribute sent on create comes back from GET unchanged."""
        body = {
            **TITLE_BODY,
            "description": "A title used by the tests",
            "contact_email": "mac-admins@example.com",
            "release_groups": ["engineering"],
            "excluded_groups": ["pilot-testers"],
            "uninstall_ids": ["com.example.xolotest", "com.example.xolotest.helper"],
            "expiration": 30,
            "expire_paths": ["/Applications/XoloTest.app"],
            "self_service": True,
            "self_service_category": "Utilities",
        }

        run(client, services, "POST", "/titles", json=body)

        data = client.get(f"/titles/{TEST_TITLE}").json()
        for field, value in body.items():
            assert data[field] == value, field
        assert data["version_script"] is None
        assert data["uninstall_script"] is None

    def test_admin_and_host_recorded(self, client: TestClient, services: XoloServices) -> None:
        """Test the requesting admin and host land in the change log."""
        run(client, services, "POST", "/titles", json=TITLE_BODY)

        entry = client.get(f"/titles/{TEST_TITLE}/changelog").json()[0]
        assert entry["admin"] == "tester"
        assert entry["host"] == "testclient"
        assert entry["msg"] == "Title Created"

    def test_invalid_title_is_400(self, client: TestClient) -> None:
        """Test a malformed title identifier is rejected before streaming."""
        response = client.post("/titles", json={**TITLE_BODY, "title": "Not Valid"})

        assert response.status_code == 400
        assert response.json()["status"] == 400
        assert "Invalid title" in response.json()["error"]

    def test_missing_field_is_400(self, client: TestClient) -> None:
        """Test a body without display_name is a 400."""
        response = client.post("/titles", json={"title": TEST_TITLE})

        assert response.status_code == 400
        assert "display_name" in response.json()["error"]

    def test_unknown_group_is_400(self, client: TestClient) -> None:
        """Test release groups must exist in Jamf Pro."""
        response = client.post("/titles", json={**TITLE_BODY, "release_groups": ["ghosts"]})

        assert response.status_code == 400
        assert "ghosts" in response.json()["error"]

    def test_duplicate_is_409(self, client: TestClient, services: XoloServices, app_title) -> None:
        """Test creating an existing title is a conflict."""
        response = client.post("/titles", json=TITLE_BODY)

        assert response.status_code == 409
        assert response.json() == {"status": 409, "error": f"Title '{TEST_TITLE}' already exists"}

    def test_remote_failure_reported_on_stream(
        self,
        client: TestClient,
        services: XoloServices,
        fake_jamf: FakeJamf,
    ) -> None:
        """Test a remote failure ends the stream with an ERROR line."""
        from xolo_library.exceptions import UpstreamError

        fake_jamf.fail_on["save_smart_group"] = UpstreamError("Jamf Pro", "boom", upstream_status=500)

        lines = run(client, services, "POST", "/titles", json=TITLE_BODY)

        assert lines[-1] == "ERROR: UpstreamError: Jamf Pro: boom"
        assert client.get(f"/titles/{TEST_TITLE}").status_code == 404


@pytest.mark.integration
class TestTitleAPI:
    """Test reads, updates and deletion of a title."""

    def test_missing_title_is_404(self, client: TestClient) -> None:
        """Test GET of an unknown title is a 404."""
        response = client.get("/titles/nope")

        assert response.status_code == 404
        assert response.json()["status"] == 404
        assert "nope" in response.json()["error"]

    def test_update(self, client: TestClient, services: XoloServices, app_title) -> None:
        """Test PUT /titles/{title} applies the change."""
        run(client, services, "PUT", f"/titles/{TEST_TITLE}", json={"publisher": "Someone Else"})

        assert client.get(f"/titles/{TEST_TITLE}").json()["publisher"] == "Someone Else"

    def test_update_without_changes(self, client: TestClient, app_title) -> None:
        """Test an update that changes nothing answers without a stream."""
        response = client.put(f"/titles/{TEST_TITLE}", json={"publisher": "Example Inc"})

        assert response.status_code == 202
        assert response.json()["result"] == NO_CHANGES
        assert "progress_stream_url_path" not in response.json()

    @pytest.mark.parametrize("field", ["description", "publisher", "contact_email"])
    def test_null_clears_text(self, client: TestClient, services: XoloServices, app_title, field: str) -> None:
        """Test a null text attribute clears it rather than failing."""
        run(client, services, "PUT", f"/titles/{TEST_TITLE}", json={field: "admin@example.com"})

        run(client, services, "PUT", f"/titles/{TEST_TITLE}", json={field: None})

        assert client.get(f"/titles/{TEST_TITLE}").json()[field] == ""

    def test_null_display_name_is_400(self, client: TestClient, app_title) -> None:
        """Test clearing the display name is rejected before streaming."""
        response = client.put(f"/titles/{TEST_TITLE}", json={"display_name": None})

        assert response.status_code == 400
        assert response.json() == {"status": 400, "error": "display_name is required"}
        assert client.get(f"/titles/{TEST_TITLE}").json()["display_name"] == "Xolo Test"

    def test_update_while_locked_is_409(self, client: TestClient, services: XoloServices, app_title) -> None:
        """Test updating a title another admin holds is a conflict."""
        services.locks.acquire(TEST_TITLE, "someone-else", admin="bob")
        try:
            response = client.put(f"/titles/{TEST_TITLE}", json={"publisher": "Someone Else"})
        finally:
            services.locks.release(TEST_TITLE, "someone-else")

        assert response.status_code == 409
        assert "another admin" in response.json()["error"]

    def test_release_without_package_is_409(self, client: TestClient, app_title, add_version) -> None:
        """Test a version without a package can't be released."""
        add_version("1.0.0", upload=False)

        response = client.patch(f"/titles/{TEST_TITLE}/release/1.0.0")

        assert response.status_code == 409

    def test_release(self, client: TestClient, services: XoloServices, app_title, add_version) -> None:
        """Test PATCH /titles/{title}/release/{version} releases it."""
        add_version("1.0.0")

        lines = run(client, services, "PATCH", f"/titles/{TEST_TITLE}/release/1.0.0")

        assert lines[-1] == f"Released version '1.0.0' of title '{TEST_TITLE}'"
        assert client.get(f"/titles/{TEST_TITLE}").json()["released_version"] == "1.0.0"

    def test_repair(self, client: TestClient, services: XoloServices, app_title) -> None:
        """Test repairing a title and its versions."""
        lines = run(client, services, "POST", f"/titles/{TEST_TITLE}/repair", params={"versions": True})

        assert lines[-1] == f"Repaired title '{TEST_TITLE}'"

    def test_delete(self, client: TestClient, services: XoloServices, app_title, add_version) -> None:
        """Test DELETE /titles/{title} removes it."""
        add_version("1.0.0")

        run(client, services, "DELETE", f"/titles/{TEST_TITLE}")

        assert client.get(f"/titles/{TEST_TITLE}").status_code == 404
        assert client.get("/titles").json() == []

    def test_delete_removes_versions(
        self,
        client: TestClient,
        services: XoloServices,
        app_title,
        add_version,
    ) -> None:
        """Test deleting a title makes each of its former versions a 404."""
        add_version("1.0.0")
        add_version("1.0.1", upload=False)

        run(client, services, "DELETE", f"/titles/{TEST_TITLE}")

        for version in ("1.0.0", "1.0.1"):
            response = client.get(f"/titles/{TEST_TITLE}/versions/{version}")
            assert response.status_code == 404
            assert response.json()["status"] == 404
        assert client.get(f"/titles/{TEST_TITLE}/versions").status_code == 404


@pytest.mark.integration
class TestFreezeAPI:
    """Test freeze, thaw and frozen."""

    def test_freeze_thaw(self, client: TestClient, app_title) -> None:
        """Test freezing computers, listing them and thawing all."""
        response = client.put(f"/titles/{TEST_TITLE}/freeze", json={"targets": ["mac01", "nope"]})

        assert response.status_code == 200
        assert response.json() == {"mac01": "OK", "nope": "ERROR: No computer with that name"}
        assert client.get(f"/titles/{TEST_TITLE}/frozen").json() == {"mac01": "alice"}

        response = client.put(f"/titles/{TEST_TITLE}/thaw", json={"targets": ["all"]})
        assert response.json() == {"mac01": "OK"}

    def test_freeze_by_user(self, client: TestClient, app_title) -> None:
        """Test freezing the computers of a user."""
        response = client.put(f"/titles/{TEST_TITLE}/freeze", json={"targets": ["bob"], "users": True})

        assert response.json() == {"mac02": "OK"}


@pytest.mark.integration
class TestTitleReportsAPI:
    """Test patch report and Self Service icon upload."""

    def test_patch_report(self, client: TestClient, app_title, fake_jamf: FakeJamf) -> None:
        """Test GET /titles/{title}/patch-report."""
        fake_jamf.patch_rows[TEST_TITLE] = [{"computer": "mac01", "version": "1.0.0", "username": "alice"}]

        response = client.get(f"/titles/{TEST_TITLE}/patch-report")

        assert response.status_code == 200
        assert response.json()[0]["computer"] == "mac01"

    def test_ssvc_icon(self, client: TestClient, app_title) -> None:
        """Test uploading a Self Service icon."""
        response = client.post(
            f"/titles/{TEST_TITLE}/ssvc-icon",
            files={"file": ("icon.png", b"\x89PNG fake", "image/png")},
        )

        assert response.status_code == 200
        assert response.json()["self_service_icon"] == "icon.png"

    def test_lookups(self, client: TestClient, app_title) -> None:
        """Test the Jamf Pro and Title Editor lookup lists."""
        assert client.get("/jamf/computer-group-names").json()[:2] == ["engineering", "pilot-testers"]
        assert client.get("/jamf/category-names").json() == ["Productivity", "Utilities"]
        assert client.get("/title-editor/titles").json() == [TEST_TITLE]
