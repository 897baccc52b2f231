"""Persistence helpers for the local configuration and watch registry."""
from __future__ import annotations

from .local_config import (
    Auth,
    Context,
    ContextRef,
    Instance,
    InstanceStatus,
    LocalConfig,
    Server,
    User,
    delete_local_config,
    read_local_config,
    write_local_config,
)
from .watch_registry import (
    WatchConfig,
    WatchEntry,
    load_registry,
    normalize_watch_path,
    read_watch_config,
    write_watch_config,
)

__all__ = [
    "Auth",
    "Context",
    "ContextRef",
    "Instance",
    "InstanceStatus",
    "LocalConfig",
    "Server",
    "User",
    "WatchConfig",
    "WatchEntry",
    "delete_local_config",
    "load_registry",
    "normalize_watch_path",
    "read_local_config",
    "read_watch_config",
    "write_local_config",
    "write_watch_config",
]
