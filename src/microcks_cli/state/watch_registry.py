"""Persistent registry of artifact files to re-import when they change.

``microcks import --watch`` records each imported file here, together with the
contexts it was imported into. ``microcks watch`` reads the same file and keeps
its set of watched paths in sync with it.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import NotFoundError, StoreError
from .store import read_yaml, write_yaml


@dataclass(slots=True)
class WatchEntry:
    """A watched artifact file and the contexts it is imported into."""

    file_path: str = ""
    context: list[str] = field(default_factory=list)
    main_artifact: bool = False

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> WatchEntry:
        contexts = raw.get("context") or []
        if not isinstance(contexts, list):
            raise StoreError("Watch entry 'context' must be a list.")
        main_artifact = raw.get("mainartifact", False)
        if main_artifact is None:
            main_artifact = False
        if not isinstance(main_artifact, bool):
            raise StoreError(
                f"Watch entry 'mainartifact' must be true or false, got {main_artifact!r}."
            )
        return cls(
            file_path=str(raw.get("filePath") or ""),
            context=[str(item) for item in contexts],
            main_artifact=main_artifact,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "filePath": self.file_path,
            "context": list(self.context),
            "mainartifact": self.main_artifact,
        }


@dataclass(slots=True)
class WatchConfig:
    """Ordered collection of :class:`WatchEntry` values keyed by file path."""

    entries: list[WatchEntry] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> WatchConfig:
        items = raw.get("entries") or []
        if not isinstance(items, list):
            raise StoreError("Watch registry 'entries' must be a list.")
        entries: list[WatchEntry] = []
        for item in items:
            if not isinstance(item, Mapping):
                raise StoreError("Watch registry entries must be mappings.")
            entries.append(WatchEntry.from_mapping(item))
        return cls(entries=entries)

    def to_dict(self) -> dict[str, object]:
        return {"entries": [entry.to_dict() for entry in self.entries]}

    def upsert_entry(self, entry: WatchEntry) -> None:
        """Add *entry* or merge it into the entry for the same file.

        Merging keeps the new entry's contexts first, followed by existing
        contexts it did not name; ``main_artifact`` takes the new value.
        """
        for index, existing in enumerate(self.entries):
            if existing.file_path == entry.file_path:
                self.entries[index] = WatchEntry(
                    file_path=entry.file_path,
                    context=_unique([*entry.context, *existing.context]),
                    main_artifact=entry.main_artifact,
                )
                return
        self.entries.append(
            WatchEntry(
                file_path=entry.file_path,
                context=_unique(entry.context),
                main_artifact=entry.main_artifact,
            )
        )

    def remove_entry(self, file_path: str) -> bool:
        """Remove the entry for *file_path*, returning whether it existed."""
        for index, existing in enumerate(self.entries):
            if existing.file_path == file_path:
                del self.entries[index]
                return True
        return False

    def get_entry(self, file_path: str) -> WatchEntry:
        """Return the entry for *file_path*."""
        for existing in self.entries:
            if existing.file_path == file_path:
                return existing
        raise NotFoundError(f"Watch entry for '{file_path}' not found")


def normalize_watch_path(path: str | Path) -> str:
    """Return the key used for *path* in the registry (leading ``./`` stripped)."""
    value = str(path)
    while value.startswith("./"):
        value = value[2:]
    return value


def read_watch_config(path: Path) -> WatchConfig | None:
    """Load the watch registry at *path*, or ``None`` when it does not exist."""
    data = read_yaml(path)
    if data is None:
        return None
    return WatchConfig.from_mapping(data)


def load_registry(path: Path) -> WatchConfig:
    """Load the watch registry at *path*, treating a missing file as empty."""
    config = read_watch_config(path)
    return config if config is not None else WatchConfig()


def write_watch_config(config: WatchConfig, path: Path) -> None:
    """Atomically persist *config* to *path*."""
    write_yaml(path, config.to_dict())


def _unique(values: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(values))


__all__ = [
    "WatchConfig",
    "WatchEntry",
    "load_registry",
    "normalize_watch_path",
    "read_watch_config",
    "write_watch_config",
]
