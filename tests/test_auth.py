"""Tests for token inspection and refresh."""
from __future__ import annotations

import time
import urllib.parse
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from microcks_cli.auth import decode_claims, refresh_auth_token, token_expired
from microcks_cli.errors import TokenError
from microcks_cli.providers import MicrocksClient
from microcks_cli.state import LocalConfig, read_local_config

KEYCLOAK_CONFIG = {"enabled": True, "auth-server-url": "https://sso.example.com", "realm": "microcks"}
DISCOVERY = {
    "authorization_endpoint": "https://sso.example.com/realms/microcks/protocol/openid-connect/auth",
    "token_endpoint": "https://sso.example.com/realms/microcks/protocol/openid-connect/token",
}


def test_decode_claims(make_jwt: Callable[..., str]) -> None:
    token = make_jwt(preferred_username="admin", exp=42)

    assert decode_claims(token) == {"preferred_username": "admin", "exp": 42}


@pytest.mark.parametrize("token", ["", "only.two", "a.%%%.c", "a.WzFd.c"])
def test_decode_claims_rejects_malformed_tokens(token: str) -> None:
    with pytest.raises(TokenError):
        decode_claims(token)


def test_token_expired() -> None:
    assert token_expired({}, now=1_000) is False
    assert token_expired({"exp": 999}, now=1_000) is True
    assert token_expired({"exp": 1_001}, now=1_000) is False
    with pytest.raises(TokenError):
        token_expired({"exp": "soon"})


class _Recorder:
    def __init__(self, access_token: str) -> None:
        self.access_token = access_token
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/api/keycloak/config":
            return httpx.Response(200, json=KEYCLOAK_CONFIG)
        if request.url.path.endswith("/.well-known/openid-configuration"):
            return httpx.Response(200, json=DISCOVERY)
        if request.url.path.endswith("/protocol/openid-connect/token"):
            return httpx.Response(200, json={"access_token": self.access_token, "refresh_token": "refresh-2"})
        return httpx.Response(404)

    def token_calls(self) -> list[httpx.Request]:
        return [item for item in self.requests if item.url.path.endswith("/token")]


def _prod_config(sample_config: LocalConfig, token: str) -> LocalConfig:
    sample_config.get_user("https://mocks.example.com").auth_token = token
    sample_config.current_context = "prod"
    return sample_config


def test_expired_token_is_redeemed_once_and_persisted(
    sample_config: LocalConfig,
    write_config: Callable[[LocalConfig], Path],
    make_jwt: Callable[..., str],
) -> None:
    """Building a client refreshes an expired token and stores the new pair."""
    fresh = make_jwt(exp=int(time.time()) + 3600)
    recorder = _Recorder(fresh)
    path = write_config(_prod_config(sample_config, make_jwt(exp=1)))

    client = MicrocksClient.from_local_config(path, transport=httpx.MockTransport(recorder))
    client.close()

    assert client.auth_token == fresh
    assert len(recorder.token_calls()) == 1
    form = urllib.parse.parse_qs(recorder.token_calls()[0].content.decode())
    assert form["grant_type"] == ["refresh_token"]
    assert form["refresh_token"] == ["refresh"]
    assert form["client_id"] == ["cli"]
    assert form["client_secret"] == ["s3cret"]

    stored = read_local_config(path)
    assert stored is not None
    user = stored.get_user("https://mocks.example.com")
    assert (user.auth_token, user.refresh_token) == (fresh, "refresh-2")


def test_valid_token_is_left_alone(
    sample_config: LocalConfig,
    write_config: Callable[[LocalConfig], Path],
    make_jwt: Callable[..., str],
) -> None:
    current = make_jwt(exp=int(time.time()) + 3600)
    recorder = _Recorder("unused")
    path = write_config(_prod_config(sample_config, current))

    with MicrocksClient.from_local_config(path, transport=httpx.MockTransport(recorder)) as client:
        assert client.auth_token == current

    assert recorder.requests == []


def test_refresh_skipped_without_refresh_token(sample_config: LocalConfig, config_path: Path) -> None:
    """No HTTP traffic happens for users without a refresh token."""

    def explode(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected request to {request.url}")

    with MicrocksClient("http://localhost:8585", transport=httpx.MockTransport(explode)) as client:
        assert refresh_auth_token(client, sample_config, "dev", config_path) is False
    assert not config_path.exists()


def test_refresh_fails_when_keycloak_disappears(
    sample_config: LocalConfig,
    config_path: Path,
    make_jwt: Callable[..., str],
) -> None:
    config = _prod_config(sample_config, make_jwt(exp=1))

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"enabled": False})

    with MicrocksClient(
        "https://mocks.example.com",
        auth_token=make_jwt(exp=1),
        refresh_token="refresh",
        keycloak_enabled=True,
        transport=httpx.MockTransport(handler),
    ) as client:
        with pytest.raises(TokenError, match="no longer advertises Keycloak"):
            refresh_auth_token(client, config, "prod", config_path)
