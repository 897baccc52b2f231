"""Re-import watched artifacts when they change on disk.

:class:`WatchManager` keeps the set of watched files in sync with the watch
registry: a change to the registry triggers a reload, a change to a watched
artifact triggers a re-import into every context listed for it. File system
notifications come from a :class:`FileWatcher` backend; the default one is
built on ``watchdog``.
"""
from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Protocol

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import MicrocksCliError, NotFoundError
from .providers.microcks import MicrocksClient
from .settings import ClientSettings
from .state.watch_registry import WatchEntry, load_registry

LOGGER = logging.getLogger(__name__)

Importer = Callable[[WatchEntry, str], None]
Spawner = Callable[[Callable[[], None]], None]


@dataclass(frozen=True, slots=True)
class WatchEvent:
    """A write to a watched path, or an error reported by the backend."""

    path: str = ""
    error: BaseException | None = None


class FileWatcher(Protocol):
    """File notification backend used by :class:`WatchManager`."""

    def add(self, path: str) -> None: ...

    def remove(self, path: str) -> None: ...

    def next_event(self, timeout: float | None = None) -> WatchEvent | None: ...

    def close(self) -> None: ...


class WatchdogFileWatcher(FileSystemEventHandler):
    """Watch individual files with a ``watchdog`` observer.

    Observers work on directories, so the parent directory of each file is
    scheduled once (reference counted) and events are filtered down to the
    exact files added. Events are reported under every path given to
    :meth:`add` for a file, since those paths are the registry keys.

    ``_keys`` is replaced, never mutated, so the observer thread reads it
    without taking ``_lock``.
    """

    def __init__(self, observer: Observer | None = None) -> None:
        super().__init__()
        self._observer = observer if observer is not None else Observer()
        self._events: queue.Queue[WatchEvent] = queue.Queue()
        self._lock = threading.Lock()
        self._keys: dict[str, frozenset[str]] = {}
        self._directories: dict[str, tuple[object, int]] = {}
        self._observer.start()

    def add(self, path: str) -> None:
        """Start watching *path*; raise ``FileNotFoundError`` if it is not a file."""
        target = Path(path).resolve()
        if not target.is_file():
            raise FileNotFoundError(f"no such file: {path}")
        resolved = str(target)
        directory = str(target.parent)
        with self._lock:
            keys = self._keys.get(resolved, frozenset())
            if path in keys:
                return
            if not keys:
                watch, count = self._directories.get(directory, (None, 0))
                if watch is None:
                    watch = self._observer.schedule(self, directory, recursive=False)
                self._directories[directory] = (watch, count + 1)
            self._keys = {**self._keys, resolved: keys | {path}}

    def remove(self, path: str) -> None:
        """Stop watching *path*; unknown paths are ignored."""
        target = Path(path).resolve()
        resolved = str(target)
        directory = str(target.parent)
        with self._lock:
            keys = self._keys.get(resolved, frozenset())
            if path not in keys:
                return
            updated = dict(self._keys)
            remaining = keys - {path}
            if remaining:
                updated[resolved] = remaining
                self._keys = updated
                return
            del updated[resolved]
            self._keys = updated
            watch, count = self._directories[directory]
            if count > 1:
                self._directories[directory] = (watch, count - 1)
                return
            del self._directories[directory]
            self._observer.unschedule(watch)

    def next_event(self, timeout: float | None = None) -> WatchEvent | None:
        """Return the next event, or ``None`` when *timeout* elapses first."""
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._observer.stop()
        self._observer.join()

    def dispatch(self, event: FileSystemEvent) -> None:
        """Route observer events, reporting handler failures as error events."""
        try:
            super().dispatch(event)
        except Exception as exc:  # noqa: BLE001 - surfaced to the manager loop
            self._events.put(WatchEvent(error=exc))

    def on_modified(self, event: FileSystemEvent) -> None:
        self._publish(event, event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        self._publish(event, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic saves (editors, our own registry writes) land as a rename.
        self._publish(event, event.dest_path)

    def _publish(self, event: FileSystemEvent, raw_path: str | bytes) -> None:
        # Runs on the observer thread while it holds the observer lock.
        if event.is_directory:
            return
        if isinstance(raw_path, bytes):
            raw_path = raw_path.decode()
        keys = self._keys.get(str(Path(raw_path).resolve()))
        if not keys:
            return
        for key in sorted(keys):
            self._events.put(WatchEvent(path=key))


class WatchManager:
    """Keep watched artifacts in sync with the registry and re-import on change."""

    def __init__(
        self,
        registry_path: str | Path,
        *,
        importer: Importer,
        watcher: FileWatcher | None = None,
        spawn: Spawner | None = None,
    ) -> None:
        self.registry_path = str(registry_path)
        self._importer = importer
        self._watcher = watcher if watcher is not None else WatchdogFileWatcher()
        self._spawn = spawn if spawn is not None else _spawn_daemon
        self._lock = threading.Lock()
        self._entries: dict[str, WatchEntry] = {}
        self._watcher.add(self.registry_path)
        self.reload()

    @property
    def watched_paths(self) -> set[str]:
        """Return the artifact paths currently watched."""
        with self._lock:
            return set(self._entries)

    def reload(self) -> None:
        """Re-read the registry and reconcile the watched set with it.

        Registry read errors propagate. Artifacts that cannot be watched are
        logged and retried on the next reload.
        """
        config = load_registry(Path(self.registry_path))
        wanted = {entry.file_path: entry for entry in config.entries}
        with self._lock:
            for path in set(self._entries) - set(wanted):
                self._watcher.remove(path)
                LOGGER.info("Stopped watching %s", path)
            current: dict[str, WatchEntry] = {}
            for path, entry in wanted.items():
                if path not in self._entries:
                    try:
                        self._watcher.add(path)
                    except OSError as exc:
                        LOGGER.warning("Cannot watch %s: %s", path, exc)
                        continue
                    LOGGER.info("Watching %s", path)
                current[path] = entry
            self._entries = current

    def handle_event(self, event: WatchEvent) -> None:
        """React to a single backend event."""
        if event.error is not None:
            LOGGER.error("Watcher error: %s", event.error)
            return
        if event.path == self.registry_path:
            LOGGER.info("Watch registry changed, reloading")
            self.reload()
            return
        with self._lock:
            entry = self._entries.get(event.path)
        if entry is None:
            return
        LOGGER.info("Detected change in %s", entry.file_path)
        for context in entry.context:
            self._spawn(partial(self._importer, entry, context))

    def run(self, stop: threading.Event | None = None, *, poll_interval: float = 0.5) -> None:
        """Consume events until *stop* is set (forever when ``None``)."""
        while stop is None or not stop.is_set():
            event = self._watcher.next_event(timeout=poll_interval)
            if event is not None:
                self.handle_event(event)

    def close(self) -> None:
        self._watcher.close()


def trigger_import(
    entry: WatchEntry,
    context: str,
    *,
    config_path: Path,
    settings: ClientSettings | None = None,
) -> None:
    """Upload *entry* into *context*, logging rather than raising on failure.

    *context* names a context of the local configuration. When no such
    context exists and it looks like a server URL, the file is uploaded to
    that server anonymously.
    """
    LOGGER.info("Re-importing %s into context '%s'", entry.file_path, context)
    try:
        try:
            client = MicrocksClient.from_local_config(config_path, context, settings=settings)
        except NotFoundError:
            if not context.startswith(("http://", "https://")):
                raise
            client = MicrocksClient(context, settings=settings)
        with client:
            client.upload_artifact(entry.file_path, entry.main_artifact)
    except (MicrocksCliError, OSError) as exc:
        LOGGER.warning("Re-import of %s into '%s' failed: %s", entry.file_path, context, exc)
        return
    LOGGER.info("Re-imported %s into context '%s'", entry.file_path, context)


def make_importer(config_path: Path, settings: ClientSettings | None = None) -> Importer:
    """Return an importer bound to the local configuration at *config_path*."""
    return partial(trigger_import, config_path=config_path, settings=settings)


def _spawn_daemon(target: Callable[[], None]) -> None:
    threading.Thread(target=target, name="microcks-reimport", daemon=True).start()


__all__ = [
    "FileWatcher",
    "WatchEvent",
    "WatchManager",
    "WatchdogFileWatcher",
    "make_importer",
    "trigger_import",
]
