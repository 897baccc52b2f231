"""Typed model of the local Microcks configuration file.

The file (``~/.config/microcks/config`` by default) keeps named contexts that
bind a Microcks server to the user credentials used against it, plus the
instances started locally through a container runtime and the OAuth client
credentials needed to refresh tokens. Keys mirror the layout other Microcks
tooling reads, so files written here stay interchangeable.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from ..errors import ConfigValidationError, NotFoundError, StoreError
from .store import delete_file, read_yaml, write_yaml


class InstanceStatus(str, Enum):
    """Lifecycle states recorded for locally managed instances."""

    NONE = ""
    CREATED = "Created"
    RUNNING = "Running"
    STOPPED = "Stopped"
    EXITED = "Exited"


@dataclass(slots=True)
class Server:
    """A Microcks server endpoint."""

    server: str = ""
    name: str = ""
    insecure_tls: bool = False
    keycloak_enabled: bool = False

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> Server:
        return cls(
            server=_as_str(raw.get("server")),
            name=_as_str(raw.get("name")),
            insecure_tls=_as_bool(raw, "insecureTLS"),
            keycloak_enabled=_as_bool(raw, "keycloakEnable"),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "server": self.server,
            "insecureTLS": self.insecure_tls,
            "keycloakEnable": self.keycloak_enabled,
        }


@dataclass(slots=True)
class User:
    """Cached credentials for a Microcks server."""

    name: str = ""
    auth_token: str = ""
    refresh_token: str = ""

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> User:
        return cls(
            name=_as_str(raw.get("name")),
            auth_token=_as_str(raw.get("auth-token")),
            refresh_token=_as_str(raw.get("refresh-token")),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "auth-token": self.auth_token,
            "refresh-token": self.refresh_token,
        }


@dataclass(slots=True)
class Instance:
    """A Microcks container started by ``microcks start``."""

    name: str = ""
    image: str = ""
    status: str = InstanceStatus.NONE.value
    port: str = ""
    container_id: str = ""
    auto_remove: bool = False
    driver: str = ""

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> Instance:
        return cls(
            name=_as_str(raw.get("name")),
            image=_as_str(raw.get("image")),
            status=_as_str(raw.get("status")),
            port=_as_str(raw.get("port")),
            container_id=_as_str(raw.get("containerID")),
            auto_remove=_as_bool(raw, "autoRemove"),
            driver=_as_str(raw.get("driver")),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "image": self.image,
            "status": self.status,
            "port": self.port,
            "containerID": self.container_id,
            "autoRemove": self.auto_remove,
            "driver": self.driver,
        }

    def reset(self) -> Instance:
        """Clear every field in place and return the now empty instance."""
        self.name = ""
        self.image = ""
        self.status = InstanceStatus.NONE.value
        self.port = ""
        self.container_id = ""
        self.auto_remove = False
        self.driver = ""
        return self


@dataclass(slots=True)
class Auth:
    """OAuth client credentials registered for a server."""

    server: str = ""
    client_id: str = ""
    client_secret: str = ""

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> Auth:
        return cls(
            server=_as_str(raw.get("server")),
            client_id=_as_str(raw.get("clientid")),
            client_secret=_as_str(raw.get("clientsecret")),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "server": self.server,
            "clientid": self.client_id,
            "clientsecret": self.client_secret,
        }


@dataclass(slots=True)
class ContextRef:
    """A named binding of server, user and optional instance."""

    name: str = ""
    server: str = ""
    user: str = ""
    instance: str = ""

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> ContextRef:
        return cls(
            name=_as_str(raw.get("name")),
            server=_as_str(raw.get("server")),
            user=_as_str(raw.get("user")),
            instance=_as_str(raw.get("instance")),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "server": self.server,
            "user": self.user,
            "instance": self.instance,
        }


@dataclass(frozen=True, slots=True)
class Context:
    """A fully resolved context. Members are copies of the stored entries."""

    name: str
    server: Server
    user: User
    instance: Instance


@dataclass(slots=True)
class LocalConfig:
    """The whole local configuration document."""

    current_context: str = ""
    contexts: list[ContextRef] = field(default_factory=list)
    servers: list[Server] = field(default_factory=list)
    users: list[User] = field(default_factory=list)
    instances: list[Instance] = field(default_factory=list)
    auths: list[Auth] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> LocalConfig:
        return cls(
            current_context=_as_str(raw.get("current-context")),
            contexts=[ContextRef.from_mapping(item) for item in _as_entries(raw, "contexts")],
            servers=[Server.from_mapping(item) for item in _as_entries(raw, "servers")],
            users=[User.from_mapping(item) for item in _as_entries(raw, "users")],
            instances=[Instance.from_mapping(item) for item in _as_entries(raw, "instances")],
            auths=[Auth.from_mapping(item) for item in _as_entries(raw, "auths")],
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "current-context": self.current_context,
            "contexts": [item.to_dict() for item in self.contexts],
            "servers": [item.to_dict() for item in self.servers],
            "users": [item.to_dict() for item in self.users],
            "instances": [item.to_dict() for item in self.instances],
            "auths": [item.to_dict() for item in self.auths],
        }

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    def resolve_context(self, name: str = "") -> Context:
        """Return the context called *name*, or the current context when empty.

        An instance reference that does not resolve yields an empty
        :class:`Instance` rather than an error.
        """
        if not name:
            name = self.current_context
        if not name:
            raise NotFoundError("local config: current-context unset")
        ref = self.get_context(name)
        server = self.get_server(ref.server)
        user = self.get_user(ref.user)
        try:
            instance = replace(self.get_instance(ref.instance))
        except NotFoundError:
            instance = Instance()
        return Context(name=ref.name, server=replace(server), user=replace(user), instance=instance)

    def validate(self) -> None:
        """Ensure a non-empty ``current_context`` resolves to a stored server and user."""
        if not self.current_context:
            return
        try:
            self.resolve_context(self.current_context)
        except NotFoundError as exc:
            raise ConfigValidationError(f"Local config invalid: {exc}") from exc

    def is_empty(self) -> bool:
        """Return ``True`` once the last server has been removed."""
        return not self.servers

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_context(self, name: str) -> ContextRef:
        """Return the stored context called *name*."""
        found = self._find(self.contexts, name)
        if found is None:
            raise NotFoundError(f"Context '{name}' undefined")
        return found

    def get_server(self, server: str) -> Server:
        """Return the stored server whose address is *server*."""
        for item in self.servers:
            if item.server == server:
                return item
        raise NotFoundError(f"Server '{server}' undefined")

    def get_user(self, name: str) -> User:
        """Return the stored user called *name*."""
        found = self._find(self.users, name)
        if found is None:
            raise NotFoundError(f"User '{name}' undefined")
        return found

    def get_instance(self, name: str) -> Instance:
        """Return the stored instance called *name*."""
        found = self._find(self.instances, name)
        if found is None:
            raise NotFoundError(f"Instance '{name}' undefined")
        return found

    def get_auth(self, server: str) -> Auth:
        """Return the OAuth client credentials registered for *server*."""
        for item in self.auths:
            if item.server == server:
                return item
        raise NotFoundError(f"Auth for server '{server}' undefined")

    # ------------------------------------------------------------------
    # Upserts
    # ------------------------------------------------------------------
    def upsert_context(self, context: ContextRef) -> None:
        """Replace the context with the same name, or append it."""
        _upsert(self.contexts, context, lambda item: item.name == context.name)

    def upsert_server(self, server: Server) -> None:
        """Replace the server with the same address, or append it."""
        _upsert(self.servers, server, lambda item: item.server == server.server)

    def upsert_user(self, user: User) -> None:
        """Replace the user with the same name, or append it."""
        _upsert(self.users, user, lambda item: item.name == user.name)

    def upsert_instance(self, instance: Instance) -> None:
        """Replace the instance with the same container id, or append it."""
        _upsert(self.instances, instance, lambda item: item.container_id == instance.container_id)

    def upsert_auth(self, auth: Auth) -> None:
        """Replace the credentials registered for the same server, or append them."""
        _upsert(self.auths, auth, lambda item: item.server == auth.server)

    # ------------------------------------------------------------------
    # Removals
    # ------------------------------------------------------------------
    def remove_context(self, name: str) -> bool:
        """Remove the context called *name*, clearing the pointer if it was current."""
        removed = _remove(self.contexts, lambda item: item.name == name)
        if removed and self.current_context == name:
            self.current_context = ""
        return removed

    def remove_server(self, server: str) -> bool:
        return _remove(self.servers, lambda item: item.server == server)

    def remove_user(self, name: str) -> bool:
        return _remove(self.users, lambda item: item.name == name)

    def remove_auth(self, server: str) -> bool:
        return _remove(self.auths, lambda item: item.server == server)

    def remove_instance(self, name: str) -> bool:
        """Remove the instance called *name*; an empty name is a successful no-op."""
        if not name:
            return True
        return _remove(self.instances, lambda item: item.name == name)

    def remove_token(self, user: str) -> bool:
        """Clear both tokens cached for *user* without deleting the entry."""
        found = self._find(self.users, user)
        if found is None:
            return False
        found.auth_token = ""
        found.refresh_token = ""
        return True

    def delete_context(self, name: str) -> bool:
        """Remove a context along with the server and user only it referenced."""
        ref = self._find(self.contexts, name)
        if ref is None:
            return False
        self.remove_context(name)
        if not any(item.user == ref.user for item in self.contexts):
            self.remove_user(ref.user)
        if not any(item.server == ref.server for item in self.contexts):
            self.remove_server(ref.server)
            self.remove_auth(ref.server)
        return True

    @staticmethod
    def _find(entries: Sequence[object], name: str):
        for item in entries:
            if getattr(item, "name", None) == name:
                return item
        return None


def read_local_config(path: Path) -> LocalConfig | None:
    """Load the local configuration at *path*.

    Returns ``None`` when the file does not exist. Files with permissions other
    than ``0600``/``0400`` are refused before their content is parsed.
    """
    data = read_yaml(path)
    if data is None:
        return None
    config = LocalConfig.from_mapping(data)
    config.validate()
    return config


def write_local_config(config: LocalConfig, path: Path) -> None:
    """Validate and atomically persist *config* to *path*."""
    config.validate()
    write_yaml(path, config.to_dict())


def delete_local_config(path: Path) -> None:
    """Remove the local configuration file at *path*."""
    delete_file(path)


def _upsert(entries: list, entry: object, matches) -> None:
    for index, existing in enumerate(entries):
        if matches(existing):
            entries[index] = entry
            return
    entries.append(entry)


def _remove(entries: list, matches) -> bool:
    for index, existing in enumerate(entries):
        if matches(existing):
            del entries[index]
            return True
    return False


def _as_str(value: object) -> str:
    if value is None:
        return ""
    return str(value)


def _as_bool(raw: Mapping[str, object], key: str) -> bool:
    value = raw.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise StoreError(f"Local config '{key}' must be true or false, got {value!r}.")
    return value


def _as_entries(raw: Mapping[str, object], key: str) -> list[Mapping[str, object]]:
    value = raw.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise StoreError(f"Local config '{key}' must be a list.")
    entries: list[Mapping[str, object]] = []
    for item in value:
        if not isinstance(item, Mapping):
            raise StoreError(f"Local config '{key}' entries must be mappings.")
        entries.append(item)
    return entries


__all__ = [
    "Auth",
    "Context",
    "ContextRef",
    "Instance",
    "InstanceStatus",
    "LocalConfig",
    "Server",
    "User",
    "delete_local_config",
    "read_local_config",
    "write_local_config",
]
