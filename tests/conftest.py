"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import base64
import json
import os
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from microcks_cli.state import (
    Auth,
    ContextRef,
    Instance,
    LocalConfig,
    Server,
    User,
    write_local_config,
)

Handler = Callable[[httpx.Request], httpx.Response]


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def _segment(payload: dict[str, object]) -> str:
    return base64.urlsafe_b64encode(json.dumps(payload).encode()).rstrip(b"=").decode()


@pytest.fixture
def make_jwt() -> Callable[..., str]:
    """Return a factory for unsigned JWTs carrying the given claims."""

    def _make(**claims: object) -> str:
        return f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{_segment(claims)}.signature"

    return _make


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    """Location of the local configuration inside a throwaway config dir."""
    return tmp_path / "config"


@pytest.fixture
def sample_config() -> LocalConfig:
    """Two contexts: ``dev`` (current, plain) and ``prod`` (Keycloak protected)."""
    return LocalConfig(
        current_context="dev",
        contexts=[
            ContextRef(name="dev", server="http://localhost:8585", user="http://localhost:8585", instance="dev"),
            ContextRef(name="prod", server="https://mocks.example.com", user="https://mocks.example.com"),
        ],
        servers=[
            Server(server="http://localhost:8585", name="dev"),
            Server(server="https://mocks.example.com", name="https://mocks.example.com", keycloak_enabled=True),
        ],
        users=[
            User(name="http://localhost:8585"),
            User(name="https://mocks.example.com", auth_token="access", refresh_token="refresh"),
        ],
        instances=[
            Instance(
                name="dev",
                image="quay.io/microcks/microcks-uber:latest-native",
                status="Running",
                port="8585",
                container_id="c0ffee",
                driver="docker",
            )
        ],
        auths=[Auth(server="https://mocks.example.com", client_id="cli", client_secret="s3cret")],
    )


@pytest.fixture
def write_config(config_path: Path) -> Callable[[LocalConfig], Path]:
    """Persist a :class:`LocalConfig` at ``config_path`` and return the path."""

    def _write(config: LocalConfig) -> Path:
        write_local_config(config, config_path)
        return config_path

    return _write


@pytest.fixture
def mock_http(monkeypatch: pytest.MonkeyPatch) -> Callable[[Handler], None]:
    """Route every client built by the providers through an ``httpx.MockTransport``."""

    def _install(handler: Handler) -> None:
        transport = httpx.MockTransport(handler)

        def _build(settings: object, **_: object) -> httpx.Client:
            return httpx.Client(transport=transport)

        monkeypatch.setattr("microcks_cli.providers.microcks.build_http_client", _build)
        monkeypatch.setattr("microcks_cli.providers.keycloak.build_http_client", _build)

    return _install
