"""Shared plumbing for the remote service clients.

Every transport failure and non-2xx response becomes an UpstreamError naming
the service, so engines and routes only ever deal with the xolo taxonomy.
"""

import logging
import threading
import time

import httpx

from ..exceptions import UpstreamError

logger = logging.getLogger(__name__)

# Refresh bearer tokens this many seconds before they expire
TOKEN_REFRESH_MARGIN = 60


class ServiceClient:
    """Bearer-token authenticated httpx client for one remote service.

    Subclasses implement _fetch_token().
    """

    service_name = "remote service"

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        verify: bool = True,
        open_timeout: float = 10.0,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client. No connection is made until the first request.

        Args:
            base_url: Scheme, host and port of the service
            username: API user
            password: API password
            verify: Verify the server's TLS certificate
            open_timeout: Connect timeout in seconds
            timeout: Read/write timeout in seconds
            transport: Optional httpx transport, e.g. httpx.MockTransport in tests
        """
        self.base_url = base_url
        self.username = username
        self._password = password
        self._http = httpx.Client(
            base_url=base_url,
            verify=verify,
            timeout=httpx.Timeout(timeout, connect=open_timeout),
            transport=transport,
        )
        self._token: str | None = None
        self._token_expires = 0.0
        self._token_lock = threading.Lock()

    def close(self) -> None:
        self._http.close()

    # --- Auth ---

    def _fetch_token(self) -> tuple[str, float]:
        """Get a new bearer token.

        Returns:
            (token, lifetime in seconds)
        """
        raise NotImplementedError

    def _auth_headers(self) -> dict[str, str]:
        with self._token_lock:
            if self._token is None or time.monotonic() >= self._token_expires:
                token, lifetime = self._fetch_token()
                self._token = token
                self._token_expires = time.monotonic() + max(lifetime - TOKEN_REFRESH_MARGIN, 0)
                logger.debug(f"Got new {self.service_name} API token")
            return {"Authorization": f"Bearer {self._token}"}

    def _invalidate_token(self) -> None:
        with self._token_lock:
            self._token = None

    # --- Requests ---

    def request(self, method: str, path: str, authenticate: bool = True, **kwargs) -> httpx.Response:
        """Send a request, refreshing the token once on a 401.

        Raises:
            UpstreamError: On transport failure or a non-2xx response
        """
        extra_headers = kwargs.pop("headers", None) or {}
        for attempt in range(2):
            headers = dict(extra_headers)
            if authenticate:
                headers.update(self._auth_headers())
            try:
                response = self._http.request(method, path, headers=headers, **kwargs)
            except httpx.HTTPError as e:
                raise UpstreamError(self.service_name, f"{method} {path} failed: {e}") from e

            if response.status_code == 401 and authenticate and attempt == 0:
                logger.debug(f"{self.service_name} token rejected, re-authenticating")
                self._invalidate_token()
                continue
            break

        if response.is_error:
            raise UpstreamError(
                self.service_name,
                f"{method} {path} returned {response.status_code}: {_error_detail(response)}",
                upstream_status=response.status_code,
            )
        return response

    def get_json(self, path: str, **kwargs):
        return self.request("GET", path, **kwargs).json()

    def post_json(self, path: str, body=None, **kwargs):
        response = self.request("POST", path, json=body, **kwargs)
        return response.json() if response.content else None

    def put_json(self, path: str, body=None, **kwargs):
        response = self.request("PUT", path, json=body, **kwargs)
        return response.json() if response.content else None

    def patch_json(self, path: str, body=None, **kwargs):
        response = self.request("PATCH", path, json=body, **kwargs)
        return response.json() if response.content else None

    def delete(self, path: str, missing_ok: bool = True) -> None:
        """DELETE a resource. A 404 is ignored when missing_ok is True."""
        try:
            self.request("DELETE", path)
        except UpstreamError as e:
            if not (missing_ok and e.upstream_status == 404):
                raise
            logger.debug(f"{self.service_name}: {path} was already gone")


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            return "; ".join(str(err.get("description", err)) if isinstance(err, dict) else str(err) for err in errors)
        for key in ("message", "error", "httpStatus"):
            if key in body:
                return str(body[key])
    return str(body)[:500]
