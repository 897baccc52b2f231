"""Runtime settings for the microcks CLI.

Values are layered in this order:

1. Built-in defaults.
2. Environment variables prefixed with ``MICROCKS_``.
3. Explicit overrides supplied programmatically (CLI flags).

For example::

    export MICROCKS_CONFIG_DIR=/tmp/microcks
    export MICROCKS_INSECURE_TLS=true
    export MICROCKS_CA_CERTS=/etc/ssl/corp-root.pem,/etc/ssl/corp-int.pem

Boolean and numeric values are coerced via PyYAML's ``safe_load`` so that
``true``/``no``/``30`` parse naturally. Unknown ``MICROCKS_*`` variables are
ignored because other Microcks tooling shares the prefix.
"""
from __future__ import annotations

import logging
import os
import ssl
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load microcks settings. Install with "
        "`pip install microcks-cli` or ensure PyYAML>=6.0 is available."
    ) from exc

from .errors import MicrocksCliError

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "MICROCKS_"
CONFIG_DIR_ENV_VAR = f"{ENV_PREFIX}CONFIG_DIR"
DEFAULT_IMAGE = "quay.io/microcks/microcks-uber:latest-native"
SUPPORTED_DRIVERS = ("docker", "podman")


class SettingsError(MicrocksCliError):
    """Raised when settings cannot be parsed."""


@dataclass(frozen=True)
class ClientSettings:
    """Transport options shared by every HTTP client the CLI builds."""

    insecure_tls: bool = False
    ca_cert_paths: tuple[Path, ...] = ()
    verbose: bool = False
    timeout: float = 30.0

    def verify(self) -> ssl.SSLContext | bool:
        """Return the value handed to ``httpx`` as its ``verify`` argument.

        Extra CA files are added on top of the default trust store. A file
        that cannot be loaded is reported and skipped.
        """
        if self.insecure_tls:
            return False
        if not self.ca_cert_paths:
            return True
        context = ssl.create_default_context()
        for path in self.ca_cert_paths:
            try:
                context.load_verify_locations(cafile=str(path))
            except (OSError, ssl.SSLError) as exc:
                LOGGER.warning("Ignoring CA certificate %s: %s", path, exc)
        return context

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "insecure_tls": self.insecure_tls,
            "ca_cert_paths": [str(path) for path in self.ca_cert_paths],
            "verbose": self.verbose,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class AppSettings:
    """Top-level settings for a CLI invocation."""

    config_dir: Path
    client: ClientSettings
    image: str
    port: int
    driver: str
    sso_port: int
    client_id: str
    client_secret: str

    @property
    def config_file(self) -> Path:
        """Return the path of the local configuration file."""
        return self.config_dir / "config"

    @property
    def watch_file(self) -> Path:
        """Return the path of the watch registry."""
        return self.config_dir / "watch"

    @property
    def logs_dir(self) -> Path:
        """Return the directory holding the operations log."""
        return self.config_dir / "logs"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation with secrets masked."""
        return {
            "config_dir": str(self.config_dir),
            "client": self.client.to_dict(),
            "image": self.image,
            "port": self.port,
            "driver": self.driver,
            "sso_port": self.sso_port,
            "client_id": self.client_id,
            "client_secret": "***" if self.client_secret else "",
        }


DEFAULTS: dict[str, object] = {
    "config_dir": None,  # derived from the home directory when absent
    "insecure_tls": False,
    "ca_certs": "",
    "verbose": False,
    "http_timeout": 30.0,
    "image": DEFAULT_IMAGE,
    "port": 8585,
    "driver": "docker",
    "sso_port": 8085,
    "client_id": "",
    "client_secret": "",
}

ALLOWED_KEYS = set(DEFAULTS.keys())
_COERCED_KEYS = {"insecure_tls", "verbose", "http_timeout", "port", "sso_port"}


def default_config_dir(env: Mapping[str, str] | None = None) -> Path:
    """Return ``$MICROCKS_CONFIG_DIR`` or ``~/.config/microcks``."""
    resolved_env = os.environ if env is None else env
    override = resolved_env.get(CONFIG_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "microcks"


def default_local_config_path(env: Mapping[str, str] | None = None) -> Path:
    """Return the default location of the local configuration file."""
    return default_config_dir(env) / "config"


def default_watch_path(env: Mapping[str, str] | None = None) -> Path:
    """Return the default location of the watch registry."""
    return default_config_dir(env) / "watch"


def load_settings(
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppSettings:
    """Merge defaults, environment and overrides into :class:`AppSettings`."""
    merged: dict[str, object] = dict(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    merged.update(_build_env_overrides(resolved_env))
    if overrides:
        merged.update({key: value for key, value in overrides.items() if value is not None})

    _validate_structure(merged)
    if merged["config_dir"] is None:
        merged["config_dir"] = default_config_dir(resolved_env)

    return _build_settings(merged)


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :].lower()
        if suffix not in ALLOWED_KEYS:
            continue
        overrides[suffix] = _coerce_value(value) if suffix in _COERCED_KEYS else value
    return overrides


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_KEYS
    if unknown_keys:
        formatted = ", ".join(sorted(unknown_keys))
        raise SettingsError(f"Unknown settings key(s): {formatted}.")


def _build_settings(raw: Mapping[str, object]) -> AppSettings:
    client = ClientSettings(
        insecure_tls=_expect_bool(raw["insecure_tls"], "insecure_tls"),
        ca_cert_paths=_to_paths(raw["ca_certs"]),
        verbose=_expect_bool(raw["verbose"], "verbose"),
        timeout=_expect_positive_float(raw["http_timeout"], "http_timeout", default=30.0),
    )
    driver = _expect_str(raw["driver"], "driver").strip().lower()
    if driver not in SUPPORTED_DRIVERS:
        allowed = ", ".join(SUPPORTED_DRIVERS)
        raise SettingsError(f"Unsupported driver {driver!r}. Expected one of: {allowed}.")
    return AppSettings(
        config_dir=_to_path(raw["config_dir"]),
        client=client,
        image=_expect_str(raw["image"], "image"),
        port=_expect_port(raw["port"], "port"),
        driver=driver,
        sso_port=_expect_port(raw["sso_port"], "sso_port"),
        client_id=_expect_str(raw["client_id"], "client_id"),
        client_secret=_expect_str(raw["client_secret"], "client_secret"),
    )


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str) and value:
        return Path(value).expanduser()
    raise SettingsError(f"Cannot convert value {value!r} to Path.")


def _to_paths(value: object) -> tuple[Path, ...]:
    if value is None or value == "":
        return ()
    if isinstance(value, str):
        items: list[object] = [item.strip() for item in value.split(",") if item.strip()]
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        raise SettingsError(f"Expected ca_certs to be a list of paths. Got {type(value).__name__}.")
    return tuple(_to_path(item) for item in items)


def _expect_bool(value: object, label: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        parsed = _coerce_value(value)
        if isinstance(parsed, bool):
            return parsed
    raise SettingsError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, label: str) -> str:
    if isinstance(value, str):
        return value
    raise SettingsError(f"Expected {label} to resolve to a string. Got {value!r}.")


def _expect_port(value: object, label: str) -> int:
    if isinstance(value, bool):
        raise SettingsError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        port = value
    elif isinstance(value, str):
        try:
            port = int(value, 10)
        except ValueError as exc:
            raise SettingsError(f"Invalid integer for {label}: {value!r}.") from exc
    else:
        raise SettingsError(f"Expected {label} to be an integer. Got {type(value).__name__}.")
    if not 0 < port < 65536:
        raise SettingsError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise SettingsError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise SettingsError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise SettingsError(f"Expected {label} to be numeric. Got {type(value).__name__}.")
    if numeric <= 0:
        raise SettingsError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


__all__ = [
    "AppSettings",
    "ClientSettings",
    "DEFAULT_IMAGE",
    "SUPPORTED_DRIVERS",
    "SettingsError",
    "default_config_dir",
    "default_local_config_path",
    "default_watch_path",
    "load_settings",
]
