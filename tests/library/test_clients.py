"""
Unit tests for the remote service clients, using httpx.MockTransport.
"""

import httpx
import pytest

from xolo_library.clients.jamf import JamfClient
from xolo_library.clients.title_editor import TitleEditorClient
from xolo_library.clients.title_editor import install_criteria
from xolo_library.exceptions import UpstreamError
from xolo_library.models.titles import Title


class Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, routes: dict) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []
        self.tokens_issued = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path in ("/api/v1/auth/token", "/v2/auth/tokens"):
            self.tokens_issued += 1
            return httpx.Response(200, json={"token": f"token-{self.tokens_issued}"})

        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"httpStatus": 404, "errors": [{"description": "Not found"}]})
        if callable(handler):
            return handler(request)
        return handler

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def jamf_with(routes: dict) -> tuple[JamfClient, Recorder]:
    recorder = Recorder(routes)
    client = JamfClient("https://jamf.example.com", "api", "secret", transport=httpx.MockTransport(recorder))
    return client, recorder


@pytest.mark.unit
class TestServiceClient:
    """Test auth, retries and error mapping shared by both clients."""

    def test_token_fetched_once_and_sent(self) -> None:
        """Test the bearer token is fetched once and reused."""
        client, recorder = jamf_with(
            {("GET", "/api/v1/computer-groups"): httpx.Response(200, json=[{"name": "b"}, {"name": "a"}])}
        )

        assert client.computer_group_names() == ["a", "b"]
        assert client.computer_group_names() == ["a", "b"]

        assert recorder.tokens_issued == 1
        assert recorder.requests[-1].headers["Authorization"] == "Bearer token-1"

    def test_basic_auth_used_for_token(self) -> None:
        """Test the token request uses basic auth."""
        client, recorder = jamf_with({("GET", "/api/v1/computer-groups"): httpx.Response(200, json=[])})

        client.computer_group_names()

        assert recorder.requests[0].headers["Authorization"].startswith("Basic ")

    def test_401_refreshes_token_once(self) -> None:
        """Test a 401 fetches a new token and retries."""
        seen: list[str] = []

        def groups(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["Authorization"])
            if len(seen) == 1:
                return httpx.Response(401)
            return httpx.Response(200, json=[{"name": "g"}])

        client, recorder = jamf_with({("GET", "/api/v1/computer-groups"): groups})

        assert client.computer_group_names() == ["g"]
        assert seen == ["Bearer token-1", "Bearer token-2"]

    def test_error_becomes_upstream_error(self) -> None:
        """Test an error answer becomes an UpstreamError with its description."""
        client, _ = jamf_with(
            {
                ("GET", "/api/v1/computer-groups"): httpx.Response(
                    500, json={"errors": [{"description": "database on fire"}]}
                )
            }
        )

        with pytest.raises(UpstreamError) as exc_info:
            client.computer_group_names()

        assert exc_info.value.upstream_status == 500
        assert exc_info.value.status_code == 502
        assert "database on fire" in exc_info.value.message
        assert "Jamf Pro" in exc_info.value.message

    def test_transport_failure_becomes_upstream_error(self) -> None:
        """Test a connection failure becomes an UpstreamError."""
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = JamfClient("https://jamf.example.com", "api", "secret", transport=httpx.MockTransport(refuse))

        with pytest.raises(UpstreamError) as exc_info:
            client.category_names()

        assert exc_info.value.upstream_status is None

    def test_delete_missing_ok(self) -> None:
        """Test deleting something already gone is fine unless asked otherwise."""
        client, _ = jamf_with({})

        client.delete("/api/v1/scripts/42")

        with pytest.raises(UpstreamError):
            client.delete("/api/v1/scripts/42", missing_ok=False)


@pytest.mark.unit
class TestJamfClient:
    """Test Jamf Pro lookups."""

    def test_paged_results(self) -> None:
        """Test paged results are read from the results key."""
        client, recorder = jamf_with(
            {
                ("GET", "/api/v1/categories"): httpx.Response(
                    200, json={"totalCount": 2, "results": [{"name": "Utilities"}, {"name": "Games"}]}
                )
            }
        )

        assert client.category_names() == ["Games", "Utilities"]
        assert recorder.requests[-1].url.params["page"] == "0"

    def test_group_members(self) -> None:
        """Test group members come from the Classic API as JSON."""
        client, recorder = jamf_with(
            {
                ("GET", "/JSSResource/computergroups/name/pilot testers"): httpx.Response(
                    200, json={"computer_group": {"computers": [{"name": "mac02"}, {"name": "mac01"}]}}
                )
            }
        )

        assert client.group_members("pilot testers") == ["mac01", "mac02"]
        assert recorder.requests[-1].headers["Accept"] == "application/json"

    def test_gui_url_defaults_to_base_url(self) -> None:
        """Test the GUI url falls back to the API url."""
        client, _ = jamf_with({})
        assert client.gui_url == "https://jamf.example.com"


@pytest.mark.unit
class TestTitleEditorClient:
    """Test Title Editor calls."""

    def test_title_ids(self) -> None:
        """Test listing Title Editor title ids."""
        recorder = Recorder(
            {("GET", "/v2/softwaretitles"): httpx.Response(200, json=[{"id": "foo"}, {"id": "bar"}])}
        )
        client = TitleEditorClient("https://ted.example.com", "api", "secret", transport=httpx.MockTransport(recorder))

        assert client.title_ids() == ["bar", "foo"]
        assert "/v2/auth/tokens" in recorder.paths()

    def test_install_criteria_for_app_title(self) -> None:
        """Test app titles are detected by bundle id and version."""
        title = Title(title="foo", display_name="Foo", app_name="Foo.app", app_bundle_id="com.example.foo")

        criteria = install_criteria(title, "xolo-foo", "1.0")

        assert [c["name"] for c in criteria] == ["Application Bundle ID", "Application Version"]
        assert criteria[1]["value"] == "1.0"

    def test_install_criteria_for_version_script_title(self) -> None:
        """Test scripted titles are detected by their extension attribute."""
        title = Title(title="foo", display_name="Foo", version_script="echo 1.0")

        any_version = install_criteria(title, "xolo-foo")
        one_version = install_criteria(title, "xolo-foo", "1.0")

        assert any_version[0]["operator"] == "is not"
        assert one_version[0]["value"] == "1.0"
        assert one_version[0]["type"] == "extensionAttribute"
