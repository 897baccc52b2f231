"""Tests for the persisted watch registry."""
from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from microcks_cli.errors import NotFoundError, StoreError
from microcks_cli.state import (
    WatchConfig,
    WatchEntry,
    load_registry,
    normalize_watch_path,
    read_watch_config,
    write_watch_config,
)


def test_upsert_merges_contexts_new_first() -> None:
    """Re-registering a file keeps one entry with the new contexts ahead."""
    config = WatchConfig()
    config.upsert_entry(WatchEntry(file_path="api.yaml", context=["dev", "qa"], main_artifact=True))

    config.upsert_entry(WatchEntry(file_path="api.yaml", context=["prod", "dev"], main_artifact=False))

    assert config.entries == [
        WatchEntry(file_path="api.yaml", context=["prod", "dev", "qa"], main_artifact=False)
    ]


def test_remove_and_get_entry() -> None:
    config = WatchConfig(entries=[WatchEntry(file_path="api.yaml", context=["dev"])])

    assert config.get_entry("api.yaml").context == ["dev"]
    assert config.remove_entry("api.yaml") is True
    assert config.remove_entry("api.yaml") is False
    with pytest.raises(NotFoundError):
        config.get_entry("api.yaml")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("./api.yaml", "api.yaml"), ("././specs/api.yaml", "specs/api.yaml"), ("/abs/api.yaml", "/abs/api.yaml")],
)
def test_normalize_watch_path(raw: str, expected: str) -> None:
    assert normalize_watch_path(raw) == expected


def test_missing_registry_loads_empty(tmp_path: Path) -> None:
    assert read_watch_config(tmp_path / "watch") is None
    assert load_registry(tmp_path / "watch") == WatchConfig()


def test_registry_file_layout(tmp_path: Path) -> None:
    path = tmp_path / "watch"
    write_watch_config(
        WatchConfig(entries=[WatchEntry(file_path="api.yaml", context=["dev"], main_artifact=True)]),
        path,
    )

    assert yaml.safe_load(path.read_text(encoding="utf-8")) == {
        "entries": [{"filePath": "api.yaml", "context": ["dev"], "mainartifact": True}]
    }
    assert load_registry(path).get_entry("api.yaml").main_artifact is True


def test_registry_with_bad_entries_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "watch"
    path.write_text("entries: nope\n", encoding="utf-8")
    path.chmod(0o600)

    with pytest.raises(StoreError):
        load_registry(path)


def test_registry_with_quoted_boolean_is_rejected(tmp_path: Path) -> None:
    """A hand-edited ``"false"`` string is not silently read as true."""
    path = tmp_path / "watch"
    path.write_text(
        'entries:\n- filePath: api.yaml\n  context: [dev]\n  mainartifact: "false"\n',
        encoding="utf-8",
    )
    path.chmod(0o600)

    with pytest.raises(StoreError, match="mainartifact"):
        load_registry(path)
