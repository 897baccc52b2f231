"""Browser-based single sign-on against the Keycloak realm guarding Microcks.

The flow is the OAuth 2.0 authorization-code grant with PKCE (S256): a
one-shot HTTP server on ``localhost`` receives the redirect, and the code is
exchanged for tokens with :meth:`KeycloakClient.exchange_code`.
"""
from __future__ import annotations

import base64
import hashlib
import http.server
import secrets
import threading
import time
import urllib.parse
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass

from .errors import TokenError
from .providers.keycloak import KeycloakClient, TokenPair

SSO_CLIENT_ID = "microcks-app-js"
DEFAULT_CALLBACK_PORT = 8085
CALLBACK_PATH = "/auth/callback"
SSO_TIMEOUT_SECONDS = 120.0


@dataclass
class AuthResult:
    """Result delivered to the callback server."""

    code: str | None = None
    state: str | None = None
    error: str | None = None


class OAuthCallbackHandler(http.server.BaseHTTPRequestHandler):
    """HTTP handler for the OAuth redirect."""

    server: _CallbackServer

    def do_GET(self) -> None:  # noqa: N802 - name fixed by BaseHTTPRequestHandler
        parsed = urllib.parse.urlparse(self.path)
        if parsed.path != CALLBACK_PATH:
            self.send_error(404)
            return
        params = urllib.parse.parse_qs(parsed.query)
        if "code" in params:
            self.server.result = AuthResult(
                code=params["code"][0],
                state=params.get("state", [None])[0],
            )
            self._respond(200, "Login Successful", "You can close this window and return to the terminal.")
        else:
            error = params.get("error", ["invalid_response"])[0]
            description = params.get("error_description", ["No authorization code received"])[0]
            self.server.result = AuthResult(error=f"{error}: {description}")
            self._respond(400, "Login Failed", f"{error}: {description}")

    def _respond(self, status: int, title: str, message: str) -> None:
        self.send_response(status)
        self.send_header("Content-type", "text/html")
        self.end_headers()
        html = (
            f"<html><head><title>Microcks - {title}</title></head>"
            '<body style="font-family: sans-serif; text-align: center; padding: 50px;">'
            f"<h1>{title}</h1><p>{message}</p></body></html>"
        )
        self.wfile.write(html.encode())

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        """Suppress default request logging."""


class _CallbackServer(http.server.HTTPServer):
    result: AuthResult | None = None


def generate_pkce() -> tuple[str, str]:
    """Generate a PKCE code verifier and its S256 challenge."""
    verifier = secrets.token_urlsafe(32)
    digest = hashlib.sha256(verifier.encode()).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
    return verifier, challenge


def build_authorization_url(
    authorization_endpoint: str,
    *,
    client_id: str,
    redirect_uri: str,
    state: str,
    code_challenge: str,
) -> str:
    """Return the URL the user opens to authenticate."""
    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "scope": "openid",
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{authorization_endpoint}?{urllib.parse.urlencode(params)}"


def run_sso_login(
    keycloak: KeycloakClient,
    *,
    port: int = DEFAULT_CALLBACK_PORT,
    launch_browser: bool = True,
    echo: Callable[[str], None] = print,
    timeout: float = SSO_TIMEOUT_SECONDS,
) -> TokenPair:
    """Authenticate interactively and return the issued token pair."""
    oidc = keycloak.get_oidc_config()
    verifier, challenge = generate_pkce()
    state = secrets.token_urlsafe(16)
    redirect_uri = f"http://localhost:{port}{CALLBACK_PATH}"

    try:
        server = _CallbackServer(("localhost", port), OAuthCallbackHandler)
    except OSError as exc:
        raise TokenError(f"Cannot listen for the SSO callback on port {port}: {exc}") from exc
    server.timeout = 0.5
    stop = threading.Event()

    def _serve() -> None:
        while server.result is None and not stop.is_set():
            server.handle_request()

    worker = threading.Thread(target=_serve, name="microcks-sso-callback", daemon=True)
    worker.start()
    try:
        auth_url = build_authorization_url(
            oidc.authorization_endpoint,
            client_id=keycloak.client_id,
            redirect_uri=redirect_uri,
            state=state,
            code_challenge=challenge,
        )
        if launch_browser:
            echo("Opening browser for authentication...")
            webbrowser.open(auth_url)
        echo(f"If the browser doesn't open, visit: {auth_url}")
        echo("Waiting for authentication...")

        deadline = time.monotonic() + timeout
        while server.result is None and time.monotonic() < deadline:
            time.sleep(0.5)
    finally:
        stop.set()
        worker.join(timeout=2.0)
        server.server_close()

    result = server.result
    if result is None:
        raise TokenError("SSO login timed out waiting for the browser callback")
    if result.error:
        raise TokenError(f"SSO login failed: {result.error}")
    if result.state != state:
        raise TokenError("SSO login failed: state mismatch in callback")
    if not result.code:
        raise TokenError("SSO login failed: no authorization code received")
    return keycloak.exchange_code(oidc.token_endpoint, result.code, verifier, redirect_uri)


__all__ = [
    "DEFAULT_CALLBACK_PORT",
    "SSO_CLIENT_ID",
    "build_authorization_url",
    "generate_pkce",
    "run_sso_login",
]
