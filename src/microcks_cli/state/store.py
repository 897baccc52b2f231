"""Atomic YAML persistence for files under the Microcks config directory.

The local configuration and the watch registry both live in
``~/.config/microcks`` by default and may carry cached credentials. Files are
therefore written with ``0600`` permissions (set before any content reaches
disk) and refused on read when their mode is anything other than ``0600`` or
``0400``.
"""
from __future__ import annotations

import os
import stat
import tempfile
from collections.abc import Mapping
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage microcks config files. Install with `pip install microcks-cli`."
    ) from exc

from ..errors import ConfigIOError, ConfigPermissionError, StoreError

FILE_MODE = 0o600
ALLOWED_MODES = frozenset({0o600, 0o400})


def check_permissions(path: Path) -> None:
    """Raise :class:`ConfigPermissionError` when *path* is open to group or others.

    Missing files are ignored; callers decide what absence means.
    """
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        return
    except OSError as exc:
        raise ConfigIOError(f"Unable to inspect {path}: {exc}") from exc
    if mode not in ALLOWED_MODES:
        raise ConfigPermissionError(
            f"config file {path} has incorrect permission flags {mode:04o}; "
            "change the file permission either to 0400 or 0600."
        )


def read_yaml(path: Path) -> dict[str, object] | None:
    """Return the mapping stored at *path*, or ``None`` when the file is absent."""
    check_permissions(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise ConfigIOError(f"Unable to read {path}: {exc}") from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise StoreError(f"Failed to parse {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise StoreError(f"{path} must contain a mapping at the top level.")
    return dict(data)


def write_yaml(path: Path, payload: Mapping[str, object]) -> None:
    """Atomically write *payload* to *path* with owner-only permissions."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    except OSError as exc:
        raise ConfigIOError(f"Unable to prepare {path} for writing: {exc}") from exc

    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            os.chmod(tmp_path, FILE_MODE)
            yaml.safe_dump(dict(payload), handle, sort_keys=False)
        os.replace(tmp_path, path)
    except OSError as exc:
        raise ConfigIOError(f"Failed to write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


def delete_file(path: Path) -> None:
    """Remove *path*; a file that is already gone is not an error."""
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        raise ConfigIOError(f"Unable to remove {path}: {exc}") from exc


__all__ = [
    "ALLOWED_MODES",
    "FILE_MODE",
    "check_permissions",
    "delete_file",
    "read_yaml",
    "write_yaml",
]
