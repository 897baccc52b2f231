"""Clients for the external systems the CLI talks to."""
from __future__ import annotations

from .containers import ContainerClient, ContainerOpts
from .keycloak import KeycloakClient, OIDCConfig, TokenPair
from .microcks import KEYCLOAK_DISABLED, MicrocksClient, TestResultSummary

__all__ = [
    "ContainerClient",
    "ContainerOpts",
    "KEYCLOAK_DISABLED",
    "KeycloakClient",
    "MicrocksClient",
    "OIDCConfig",
    "TestResultSummary",
    "TokenPair",
]
