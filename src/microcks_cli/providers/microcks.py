"""HTTP client for the Microcks REST API."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path

import httpx

from ..auth import refresh_auth_token
from ..errors import NotFoundError, UpstreamError
from ..settings import ClientSettings
from ..state.local_config import read_local_config
from .http import build_http_client, json_body, send
from .keycloak import KeycloakClient

KEYCLOAK_DISABLED = "null"


def api_url(server_url: str) -> str:
    """Return the ``/api/`` root for a Microcks server address."""
    if server_url.endswith("/api/"):
        return server_url
    return server_url.rstrip("/") + "/api/"


@dataclass(frozen=True, slots=True)
class TestResultSummary:
    """Condensed view of a Microcks test result."""

    __test__ = False

    id: str
    version: int = 0
    test_number: int = 0
    test_date: int = 0
    tested_endpoint: str = ""
    service_id: str = ""
    elapsed_time: int = 0
    success: bool = False
    in_progress: bool = False

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> TestResultSummary:
        return cls(
            id=str(raw.get("id") or ""),
            version=int(raw.get("version") or 0),
            test_number=int(raw.get("testNumber") or 0),
            test_date=int(raw.get("testDate") or 0),
            tested_endpoint=str(raw.get("testedEndpoint") or ""),
            service_id=str(raw.get("serviceId") or ""),
            elapsed_time=int(raw.get("elapsedTime") or 0),
            success=bool(raw.get("success", False)),
            in_progress=bool(raw.get("inProgress", False)),
        )


class MicrocksClient:
    """Client bound to one Microcks server and, optionally, a bearer token."""

    def __init__(
        self,
        server_url: str,
        *,
        auth_token: str = "",
        refresh_token: str = "",
        keycloak_enabled: bool = False,
        settings: ClientSettings | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server_url = server_url
        self.api_url = api_url(server_url)
        self.auth_token = auth_token
        self.refresh_token = refresh_token
        self.keycloak_enabled = keycloak_enabled
        self.context_name = ""
        self.settings = settings or ClientSettings()
        self._transport = transport
        self._http = build_http_client(self.settings, transport=transport)

    @classmethod
    def from_local_config(
        cls,
        config_path: Path,
        context: str = "",
        *,
        settings: ClientSettings | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> MicrocksClient:
        """Build a client for *context* (or the current context) of the local config.

        An expired access token is refreshed, and the new token pair persisted,
        before the client is returned.
        """
        local_config = read_local_config(config_path)
        if local_config is None:
            raise NotFoundError(
                f"No local configuration found at {config_path}. Run 'microcks login' first."
            )
        resolved = local_config.resolve_context(context)
        settings = settings or ClientSettings()
        if resolved.server.insecure_tls and not settings.insecure_tls:
            settings = replace(settings, insecure_tls=True)
        client = cls(
            resolved.server.server,
            auth_token=resolved.user.auth_token,
            refresh_token=resolved.user.refresh_token,
            keycloak_enabled=resolved.server.keycloak_enabled,
            settings=settings,
            transport=transport,
        )
        client.context_name = resolved.name
        try:
            refresh_auth_token(client, local_config, resolved.name, config_path)
        except BaseException:
            client.close()
            raise
        return client

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> MicrocksClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def set_oauth_token(self, token: str) -> None:
        """Use *token* as bearer for subsequent calls."""
        self.auth_token = token

    def keycloak_client(
        self,
        realm_url: str,
        client_id: str = "",
        client_secret: str = "",
    ) -> KeycloakClient:
        """Return a Keycloak client sharing this client's transport settings."""
        return KeycloakClient(
            realm_url,
            client_id,
            client_secret,
            settings=self.settings,
            transport=self._transport,
        )

    def get_keycloak_url(self) -> str:
        """Return the Keycloak realm URL guarding this server, or ``"null"``."""
        action = "Fetching Keycloak config from Microcks"
        response = send(
            self._http,
            "GET",
            self.api_url + "keycloak/config",
            action=action,
            headers={"Accept": "application/json"},
        )
        payload = json_body(response, action=action)
        if not payload.get("enabled"):
            return KEYCLOAK_DISABLED
        server_url = payload.get("auth-server-url")
        realm = payload.get("realm")
        if not isinstance(server_url, str) or not isinstance(realm, str):
            raise UpstreamError(f"{action}: response lacks 'auth-server-url' or 'realm'")
        return f"{server_url}/realms/{realm}/"

    def upload_artifact(self, path: str | Path, main_artifact: bool) -> str:
        """Upload a local artifact file and return the server's description of it."""
        artifact = Path(path)
        try:
            handle = artifact.open("rb")
        except FileNotFoundError as exc:
            raise NotFoundError(f"Artifact file {artifact} does not exist") from exc
        with handle:
            response = send(
                self._http,
                "POST",
                self.api_url + "artifact/upload",
                action=f"Uploading {artifact.name}",
                expected=(201,),
                files={"file": (artifact.name, handle)},
                data={"mainArtifact": _format_bool(main_artifact)},
                headers=self._auth_headers(),
            )
        return response.text

    def download_artifact(self, url: str, main_artifact: bool, secret: str = "") -> str:
        """Ask Microcks to fetch and import the artifact published at *url*."""
        fields: dict[str, tuple[None, str]] = {
            "url": (None, url),
            "mainArtifact": (None, _format_bool(main_artifact)),
        }
        if secret:
            fields["secret"] = (None, secret)
        response = send(
            self._http,
            "POST",
            self.api_url + "artifact/download",
            action=f"Importing {url}",
            expected=(201,),
            files=fields,
            headers=self._auth_headers(),
        )
        return response.text

    def create_test_result(
        self,
        service_id: str,
        test_endpoint: str,
        runner_type: str,
        *,
        timeout: int,
        secret_name: str = "",
        filtered_operations: Sequence[str] | None = None,
        operations_headers: Mapping[str, object] | None = None,
        oauth2_context: Mapping[str, object] | None = None,
    ) -> str:
        """Launch a conformance test and return its id."""
        payload: dict[str, object] = {
            "serviceId": service_id,
            "testEndpoint": test_endpoint,
            "runnerType": runner_type,
            "timeout": timeout,
        }
        if secret_name:
            payload["secretName"] = secret_name
        if filtered_operations is not None:
            payload["filteredOperations"] = list(filtered_operations)
        if operations_headers is not None:
            payload["operationsHeaders"] = dict(operations_headers)
        if oauth2_context is not None:
            payload["oAuth2Context"] = dict(oauth2_context)

        action = f"Launching test on {service_id}"
        response = send(
            self._http,
            "POST",
            self.api_url + "tests",
            action=action,
            expected=(200, 201),
            json=payload,
            headers={"Accept": "application/json", **self._auth_headers()},
        )
        test_id = json_body(response, action=action).get("id")
        if not isinstance(test_id, str) or not test_id:
            raise UpstreamError(f"{action}: response carries no test id")
        return test_id

    def get_test_result(self, test_id: str) -> TestResultSummary:
        """Return the current summary of test *test_id*."""
        action = f"Fetching test result {test_id}"
        response = send(
            self._http,
            "GET",
            self.api_url + f"tests/{test_id}",
            action=action,
            headers={"Accept": "application/json", **self._auth_headers()},
        )
        return TestResultSummary.from_mapping(json_body(response, action=action))

    def _auth_headers(self) -> dict[str, str]:
        if not self.auth_token:
            return {}
        return {"Authorization": f"Bearer {self.auth_token}"}


def _format_bool(value: bool) -> str:
    return "true" if value else "false"


__all__ = ["KEYCLOAK_DISABLED", "MicrocksClient", "TestResultSummary", "api_url"]
