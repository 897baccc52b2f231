"""Process exit codes returned by the ``microcks`` command."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit codes shared by every command.

    ``CONNECTION`` covers requests that never got a response; ``API_RESPONSE``
    covers non-success HTTP answers from Microcks or Keycloak.
    """

    OK = 0
    COMMAND = 1
    CONNECTION = 11
    API_RESPONSE = 12
    NOT_FOUND = 13
    GENERIC = 20


__all__ = ["ExitCode"]
