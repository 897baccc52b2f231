"""Tests for the microcks CLI commands."""
from __future__ import annotations

import json
import subprocess
import time
from collections.abc import Callable, Sequence
from pathlib import Path

import httpx
import pytest
import yaml
from typer.testing import CliRunner, Result

from microcks_cli import __version__, conformance
from microcks_cli.cli import app
from microcks_cli.state import LocalConfig, load_registry, read_local_config, write_local_config

runner = CliRunner()

Handler = Callable[[httpx.Request], httpx.Response]


def _invoke(tmp_path: Path, *args: str, env: dict[str, str] | None = None) -> Result:
    merged = {"MICROCKS_CONFIG_DIR": str(tmp_path), **(env or {})}
    return runner.invoke(app, list(args), env=merged)


def _microcks_server(
    *,
    keycloak: bool = False,
    upload_status: int = 201,
    test_result: dict[str, object] | None = None,
    access_token: str = "",
) -> tuple[Handler, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        path = request.url.path
        if path == "/api/keycloak/config":
            if not keycloak:
                return httpx.Response(200, json={"enabled": False})
            return httpx.Response(
                200,
                json={"enabled": True, "auth-server-url": "https://sso.test", "realm": "microcks"},
            )
        if path.endswith("/protocol/openid-connect/token"):
            return httpx.Response(200, json={"access_token": access_token, "refresh_token": "refresh"})
        if path in ("/api/artifact/upload", "/api/artifact/download"):
            return httpx.Response(upload_status, text="Petstore API:1.0.0")
        if path == "/api/tests" and request.method == "POST":
            return httpx.Response(201, json={"id": "t-1"})
        if path == "/api/tests/t-1":
            return httpx.Response(200, json=test_result or {"id": "t-1", "success": True})
        return httpx.Response(404)

    return handler, seen


def test_version_flag(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "--version")

    assert result.exit_code == 0
    assert f"microcks-cli {__version__}" in result.stdout

    record = json.loads((tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8"))
    assert record["command"] == "root --version"


def test_version_command(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "version")

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invalid_setting_exits_generic(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "version", env={"MICROCKS_PORT": "not-a-port"})

    assert result.exit_code == 20


def test_context_list_without_config(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "context")

    assert result.exit_code == 0
    assert "No contexts defined" in result.stdout


def test_context_list_marks_current(
    tmp_path: Path,
    sample_config: LocalConfig,
    write_config: Callable[[LocalConfig], Path],
) -> None:
    write_config(sample_config)

    result = _invoke(tmp_path, "context")

    assert result.exit_code == 0
    assert "dev" in result.stdout
    assert "prod" in result.stdout
    assert "*" in result.stdout


def test_context_switch(
    tmp_path: Path,
    sample_config: LocalConfig,
    write_config: Callable[[LocalConfig], Path],
) -> None:
    path = write_config(sample_config)

    result = _invoke(tmp_path, "context", "prod")

    assert result.exit_code == 0
    assert "Switched to context 'prod'" in result.stdout
    stored = read_local_config(path)
    assert stored is not None and stored.current_context == "prod"


def test_context_switch_unknown(
    tmp_path: Path,
    sample_config: LocalConfig,
    write_config: Callable[[LocalConfig], Path],
) -> None:
    write_config(sample_config)

    result = _invoke(tmp_path, "context", "staging")

    assert result.exit_code == 13
    assert "undefined" in result.stdout


def test_context_delete_last_removes_file(
    tmp_path: Path,
    sample_config: LocalConfig,
    write_config: Callable[[LocalConfig], Path],
) -> None:
    path = write_config(sample_config)

    first = _invoke(tmp_path, "context", "prod", "--delete")
    stored = read_local_config(path)
    assert first.exit_code == 0
    assert stored is not None
    assert [ref.name for ref in stored.contexts] == ["dev"]

    second = _invoke(tmp_path, "context", "dev", "--delete")
    assert second.exit_code == 0
    assert not path.exists()


def test_context_delete_requires_name(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "context", "--delete")

    assert result.exit_code == 1


def test_world_readable_config_is_refused(
    tmp_path: Path,
    sample_config: LocalConfig,
    write_config: Callable[[LocalConfig], Path],
) -> None:
    path = write_config(sample_config)
    path.chmod(0o644)

    result = _invoke(tmp_path, "context")

    assert result.exit_code == 20
    assert "permission" in result.stdout


def test_logout_clears_tokens(
    tmp_path: Path,
    sample_config: LocalConfig,
    write_config: Callable[[LocalConfig], Path],
) -> None:
    path = write_config(sample_config)

    result = _invoke(tmp_path, "logout", "prod")

    assert result.exit_code == 0
    stored = read_local_config(path)
    assert stored is not None
    user = stored.get_user("https://mocks.example.com")
    assert (user.auth_token, user.refresh_token) == ("", "")


def test_login_without_keycloak(tmp_path: Path, mock_http: Callable[[Handler], None]) -> None:
    handler, _ = _microcks_server()
    mock_http(handler)

    result = _invoke(tmp_path, "login", "http://mocks.test", "--name", "local")

    assert result.exit_code == 0, result.stdout
    stored = read_local_config(tmp_path / "config")
    assert stored is not None
    assert stored.current_context == "local"
    resolved = stored.resolve_context()
    assert resolved.server.keycloak_enabled is False
    assert resolved.user.name == "http://mocks.test"
    assert stored.auths == []


def test_login_with_password(
    tmp_path: Path,
    mock_http: Callable[[Handler], None],
    make_jwt: Callable[..., str],
) -> None:
    token = make_jwt(preferred_username="admin", exp=int(time.time()) + 600)
    handler, seen = _microcks_server(keycloak=True, access_token=token)
    mock_http(handler)

    result = _invoke(
        tmp_path,
        "login",
        "http://mocks.test",
        "--username",
        "admin",
        "--password",
        "microcks123",
        env={"MICROCKS_CLIENT_ID": "microcks-serviceaccount", "MICROCKS_CLIENT_SECRET": "s3cret"},
    )

    assert result.exit_code == 0, result.stdout
    assert "'admin' logged in successfully" in result.stdout
    raw = yaml.safe_load((tmp_path / "config").read_text(encoding="utf-8"))
    assert raw["current-context"] == "http://mocks.test"
    assert raw["auths"] == [
        {"server": "http://mocks.test", "clientid": "microcks-serviceaccount", "clientsecret": "s3cret"}
    ]
    assert raw["users"][0]["auth-token"] == token
    assert raw["users"][0]["refresh-token"] == "refresh"
    assert any(request.url.path.endswith("/token") for request in seen)
    assert "microcks123" not in (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8")


def test_login_with_password_requires_client_credentials(
    tmp_path: Path,
    mock_http: Callable[[Handler], None],
) -> None:
    handler, _ = _microcks_server(keycloak=True)
    mock_http(handler)

    result = _invoke(
        tmp_path,
        "login",
        "http://mocks.test",
        "--username",
        "admin",
        "--password",
        "pw",
        env={"MICROCKS_CLIENT_ID": "", "MICROCKS_CLIENT_SECRET": ""},
    )

    assert result.exit_code == 1
    assert not (tmp_path / "config").exists()


def test_login_connection_refused(tmp_path: Path, mock_http: Callable[[Handler], None]) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    mock_http(refuse)

    result = _invoke(tmp_path, "login", "http://mocks.test")

    assert result.exit_code == 11


def _local_context(tmp_path: Path, sample_config: LocalConfig) -> None:
    sample_config.get_server("http://localhost:8585").server = "http://mocks.test"
    for ref in sample_config.contexts:
        if ref.name == "dev":
            ref.server = "http://mocks.test"
    write_local_config(sample_config, tmp_path / "config")


def test_import_with_watch_registers_files(
    tmp_path: Path,
    sample_config: LocalConfig,
    mock_http: Callable[[Handler], None],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _local_context(tmp_path, sample_config)
    handler, seen = _microcks_server()
    mock_http(handler)
    monkeypatch.chdir(tmp_path)
    (tmp_path / "petstore-openapi.yaml").write_text("openapi: 3.0.0\n", encoding="utf-8")
    (tmp_path / "petstore-postman.json").write_text("{}", encoding="utf-8")

    result = _invoke(
        tmp_path,
        "import",
        "./petstore-openapi.yaml,petstore-postman.json:false",
        "--watch",
    )

    assert result.exit_code == 0, result.stdout
    assert "Petstore API:1.0.0" in result.stdout
    assert [request.url.path for request in seen] == ["/api/artifact/upload", "/api/artifact/upload"]
    registry = load_registry(tmp_path / "watch")
    assert [entry.file_path for entry in registry.entries] == [
        "petstore-openapi.yaml",
        "petstore-postman.json",
    ]
    assert registry.entries[0].context == ["dev"]
    assert registry.entries[1].main_artifact is False


def test_import_missing_file_is_not_found(
    tmp_path: Path,
    sample_config: LocalConfig,
    mock_http: Callable[[Handler], None],
) -> None:
    _local_context(tmp_path, sample_config)
    handler, _ = _microcks_server()
    mock_http(handler)

    result = _invoke(tmp_path, "import", str(tmp_path / "absent.yaml"))

    assert result.exit_code == 13


def test_import_rejected_by_server(
    tmp_path: Path,
    sample_config: LocalConfig,
    mock_http: Callable[[Handler], None],
) -> None:
    _local_context(tmp_path, sample_config)
    handler, _ = _microcks_server(upload_status=400)
    mock_http(handler)
    artifact = tmp_path / "api.yaml"
    artifact.write_text("openapi: 3.0.0\n", encoding="utf-8")

    result = _invoke(tmp_path, "import", str(artifact))

    assert result.exit_code == 12


def test_import_without_login(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "import", "api.yaml")

    assert result.exit_code == 13


def test_import_direct_mode_uses_client_credentials(
    tmp_path: Path,
    mock_http: Callable[[Handler], None],
) -> None:
    handler, seen = _microcks_server(keycloak=True, access_token="svc-token")
    mock_http(handler)
    artifact = tmp_path / "api.yaml"
    artifact.write_text("openapi: 3.0.0\n", encoding="utf-8")

    result = _invoke(
        tmp_path,
        "import",
        str(artifact),
        "--microcks-url",
        "http://mocks.test/api/",
        "--keycloak-client-id",
        "svc",
        "--keycloak-client-secret",
        "s3cret",
    )

    assert result.exit_code == 0, result.stdout
    upload = [request for request in seen if request.url.path == "/api/artifact/upload"][0]
    assert upload.headers["Authorization"] == "Bearer svc-token"
    assert not (tmp_path / "config").exists()


def test_import_url(
    tmp_path: Path,
    sample_config: LocalConfig,
    mock_http: Callable[[Handler], None],
) -> None:
    _local_context(tmp_path, sample_config)
    handler, seen = _microcks_server()
    mock_http(handler)

    result = _invoke(tmp_path, "import-url", "https://specs.test/api.yaml:true:gh")

    assert result.exit_code == 0, result.stdout
    assert seen[-1].url.path == "/api/artifact/download"


def test_import_url_rejects_paths(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "import-url", "specs/api.yaml")

    assert result.exit_code == 1


def test_import_dir(
    tmp_path: Path,
    sample_config: LocalConfig,
    mock_http: Callable[[Handler], None],
) -> None:
    _local_context(tmp_path, sample_config)
    handler, seen = _microcks_server()
    mock_http(handler)
    specs = tmp_path / "specs"
    specs.mkdir()
    (specs / "a-openapi.yaml").write_text("{}", encoding="utf-8")
    (specs / "b-collection.json").write_text("{}", encoding="utf-8")

    result = _invoke(tmp_path, "import-dir", str(specs))

    assert result.exit_code == 0, result.stdout
    assert "Imported 2 of 2" in result.stdout
    assert len([request for request in seen if request.url.path == "/api/artifact/upload"]) == 2


def test_import_dir_empty(
    tmp_path: Path,
    sample_config: LocalConfig,
    mock_http: Callable[[Handler], None],
) -> None:
    _local_context(tmp_path, sample_config)
    handler, _ = _microcks_server()
    mock_http(handler)
    (tmp_path / "empty").mkdir()

    result = _invoke(tmp_path, "import-dir", str(tmp_path / "empty"))

    assert result.exit_code == 1


@pytest.fixture
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(conformance.time, "sleep", lambda seconds: None)


def test_test_command_success(
    tmp_path: Path,
    sample_config: LocalConfig,
    mock_http: Callable[[Handler], None],
    no_sleep: None,
) -> None:
    _local_context(tmp_path, sample_config)
    handler, seen = _microcks_server()
    mock_http(handler)

    result = _invoke(
        tmp_path,
        "test",
        "Petstore API:1.0.0",
        "http://impl.test",
        "OPEN_API_SCHEMA",
        "--wait-for",
        "3sec",
        "--filtered-operations",
        '["GET /pets"]',
    )

    assert result.exit_code == 0, result.stdout
    assert "/#/tests/t-1" in result.stdout
    payload = json.loads(seen[0].content)
    assert payload["timeout"] == 3000
    assert payload["filteredOperations"] == ["GET /pets"]


def test_test_command_failure(
    tmp_path: Path,
    sample_config: LocalConfig,
    mock_http: Callable[[Handler], None],
    no_sleep: None,
) -> None:
    _local_context(tmp_path, sample_config)
    handler, _ = _microcks_server(test_result={"id": "t-1", "success": False, "inProgress": False})
    mock_http(handler)

    result = _invoke(tmp_path, "test", "Petstore API:1.0.0", "http://impl.test", "HTTP")

    assert result.exit_code == 1
    assert "failed" in result.stdout


def test_test_command_rejects_unknown_runner(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "test", "Petstore API:1.0.0", "http://impl.test", "CURL")

    assert result.exit_code == 1
    assert "Runner must be one of" in result.stdout


class _FakeRuntime:
    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    def __call__(self, command: Sequence[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(command))
        stdout = "deadbeef\n" if command[1] == "create" else ""
        return subprocess.CompletedProcess(list(command), 0, stdout=stdout, stderr="")


def test_start_creates_instance_and_context(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeRuntime()
    monkeypatch.setattr(subprocess, "run", fake)

    result = _invoke(tmp_path, "start", "--name", "local", "--port", "9090")

    assert result.exit_code == 0, result.stdout
    assert [call[1] for call in fake.calls] == ["pull", "create", "start"]
    assert "127.0.0.1:9090:8080" in fake.calls[1]
    stored = read_local_config(tmp_path / "config")
    assert stored is not None
    resolved = stored.resolve_context()
    assert resolved.name == "local"
    assert resolved.server.server == "http://localhost:9090"
    assert resolved.instance.status == "Running"
    assert resolved.instance.container_id == "deadbeef"


def test_start_twice_reports_running(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeRuntime()
    monkeypatch.setattr(subprocess, "run", fake)
    _invoke(tmp_path, "start")

    result = _invoke(tmp_path, "start")

    assert result.exit_code == 0
    assert "already running" in result.stdout
    assert [call[1] for call in fake.calls] == ["pull", "create", "start"]


def test_stop_marks_instance_stopped(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeRuntime()
    monkeypatch.setattr(subprocess, "run", fake)
    _invoke(tmp_path, "start", "--name", "local")

    result = _invoke(tmp_path, "stop")

    assert result.exit_code == 0, result.stdout
    assert fake.calls[-1] == ["docker", "stop", "--time", "0", "deadbeef"]
    stored = read_local_config(tmp_path / "config")
    assert stored is not None
    assert stored.get_instance("local").status == "Stopped"

    restart = _invoke(tmp_path, "start", "--name", "local")
    assert restart.exit_code == 0
    assert fake.calls[-1] == ["docker", "start", "deadbeef"]


def test_stop_auto_removed_instance_cleans_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(subprocess, "run", _FakeRuntime())
    _invoke(tmp_path, "start", "--name", "ephemeral", "--rm")

    result = _invoke(tmp_path, "stop", "ephemeral")

    assert result.exit_code == 0, result.stdout
    assert not (tmp_path / "config").exists()


def test_stop_unknown_instance(
    tmp_path: Path,
    sample_config: LocalConfig,
    write_config: Callable[[LocalConfig], Path],
) -> None:
    write_config(sample_config)

    result = _invoke(tmp_path, "stop", "ghost")

    assert result.exit_code == 13


class _InterruptedManager:
    instances: list[_InterruptedManager] = []

    def __init__(self, registry_path: Path, *, importer: object) -> None:
        self.registry_path = registry_path
        self.closed = False
        _InterruptedManager.instances.append(self)

    def run(self) -> None:
        raise KeyboardInterrupt

    def close(self) -> None:
        self.closed = True


def test_watch_creates_registry_and_stops_on_interrupt(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr("microcks_cli.cli.WatchManager", _InterruptedManager)
    _InterruptedManager.instances.clear()

    result = _invoke(tmp_path, "watch")

    assert result.exit_code == 0, result.stdout
    assert "Watcher stopped" in result.stdout
    assert load_registry(tmp_path / "watch").entries == []
    (manager,) = _InterruptedManager.instances
    assert manager.closed is True
