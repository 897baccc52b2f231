"""Error types shared across the microcks CLI.

Every failure surfaced to the user derives from :class:`MicrocksCliError` so the
command layer can map it onto an :class:`~microcks_cli.exit_codes.ExitCode`.
"""
from __future__ import annotations


class MicrocksCliError(RuntimeError):
    """Base class for all expected CLI failures."""


class NotFoundError(MicrocksCliError):
    """Raised when a named context, server, user, instance or auth is missing."""


class ConfigValidationError(MicrocksCliError):
    """Raised when the local configuration is inconsistent."""


class ConfigPermissionError(ConfigValidationError):
    """Raised when a configuration file is readable by group or others."""


class ConfigIOError(MicrocksCliError):
    """Raised when a configuration file cannot be read, written or removed."""


class StoreError(MicrocksCliError):
    """Raised when a persisted YAML document cannot be parsed."""


class UpstreamError(MicrocksCliError):
    """Raised when the Microcks or Keycloak server rejects a request.

    ``status_code`` is ``None`` when the request never produced a response
    (connection refused, DNS failure, timeout).
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TokenError(UpstreamError):
    """Raised when a token cannot be obtained, decoded or refreshed."""


class ContainerError(MicrocksCliError):
    """Raised when the container runtime fails to manage an instance."""


__all__ = [
    "ConfigIOError",
    "ConfigPermissionError",
    "ConfigValidationError",
    "ContainerError",
    "MicrocksCliError",
    "NotFoundError",
    "StoreError",
    "TokenError",
    "UpstreamError",
]
