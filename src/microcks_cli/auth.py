"""Access-token lifecycle for OAuth-protected Microcks servers.

Tokens are inspected locally to decide whether a refresh is due. The JWT
signature is deliberately **not** verified here: the token was issued to us
by Keycloak and the Microcks server validates it on every call. Never use
:func:`decode_claims` to make authorisation decisions.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import time
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import TokenError
from .state.local_config import LocalConfig, User, write_local_config

if TYPE_CHECKING:
    from .providers.microcks import MicrocksClient

LOGGER = logging.getLogger(__name__)


def decode_claims(token: str) -> dict[str, object]:
    """Return the claims carried by a JWT without verifying its signature."""
    parts = token.split(".")
    if len(parts) != 3:
        raise TokenError(f"Malformed token: expected 3 segments, got {len(parts)}")
    payload = parts[1]
    payload += "=" * ((4 - len(payload) % 4) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (binascii.Error, ValueError) as exc:
        raise TokenError(f"Malformed token payload: {exc}") from exc
    if not isinstance(claims, dict):
        raise TokenError("Malformed token payload: claims must be a JSON object")
    return claims


def token_expired(claims: Mapping[str, object], *, now: float | None = None) -> bool:
    """Return ``True`` when the ``exp`` claim lies in the past.

    Tokens without an ``exp`` claim never expire.
    """
    expiry = claims.get("exp")
    if expiry is None:
        return False
    if isinstance(expiry, bool) or not isinstance(expiry, (int, float)):
        raise TokenError(f"Malformed token: 'exp' claim is {expiry!r}")
    current = time.time() if now is None else now
    return expiry <= current


def refresh_auth_token(
    client: MicrocksClient,
    local_config: LocalConfig,
    context_name: str,
    config_path: Path,
    *,
    now: float | None = None,
) -> bool:
    """Refresh the client's access token when it has expired.

    The new token pair is stored on the context's user and the whole local
    configuration is written back before returning. Returns ``True`` when a
    refresh happened. A single redeem attempt is made; failures propagate.
    """
    if not client.refresh_token or not client.keycloak_enabled:
        return False

    context = local_config.resolve_context(context_name)
    if not token_expired(decode_claims(context.user.auth_token), now=now):
        return False

    LOGGER.info("Auth token no longer valid. Refreshing")
    auth = local_config.get_auth(context.server.server)
    realm_url = client.get_keycloak_url()
    if realm_url == "null":
        raise TokenError(
            f"Server {context.server.server} no longer advertises Keycloak; cannot refresh token"
        )
    with client.keycloak_client(realm_url, auth.client_id, auth.client_secret) as keycloak:
        oidc = keycloak.get_oidc_config()
        tokens = keycloak.redeem_refresh_token(oidc.token_endpoint, client.refresh_token)

    client.set_oauth_token(tokens.access_token)
    client.refresh_token = tokens.refresh_token
    local_config.upsert_user(
        User(
            name=context.user.name,
            auth_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
        )
    )
    write_local_config(local_config, config_path)
    return True


__all__ = ["decode_claims", "refresh_auth_token", "token_expired"]
