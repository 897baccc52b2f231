"""Keycloak realm client used to obtain and refresh Microcks access tokens."""
from __future__ import annotations

from dataclasses import dataclass

import httpx

from ..errors import TokenError, UpstreamError
from ..settings import ClientSettings
from .http import build_http_client, json_body, send

TOKEN_PATH = "protocol/openid-connect/token"
DISCOVERY_PATH = ".well-known/openid-configuration"


@dataclass(frozen=True, slots=True)
class OIDCConfig:
    """Endpoints advertised by the realm's discovery document."""

    authorization_endpoint: str
    token_endpoint: str


@dataclass(frozen=True, slots=True)
class TokenPair:
    """Access token and the refresh token issued alongside it."""

    access_token: str
    refresh_token: str = ""


class KeycloakClient:
    """Talk to the OpenID Connect endpoints of a single Keycloak realm.

    ``realm_url`` is the realm root as advertised by Microcks, e.g.
    ``https://keycloak.example.com/realms/microcks/``.
    """

    def __init__(
        self,
        realm_url: str,
        client_id: str = "",
        client_secret: str = "",
        *,
        settings: ClientSettings | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.realm_url = realm_url if realm_url.endswith("/") else realm_url + "/"
        self.client_id = client_id
        self.client_secret = client_secret
        self._http = build_http_client(settings or ClientSettings(), transport=transport)

    @property
    def token_url(self) -> str:
        """Return the realm token endpoint."""
        return self.realm_url + TOKEN_PATH

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> KeycloakClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def connect_and_get_token(self) -> str:
        """Run a client-credentials grant and return the access token."""
        response = send(
            self._http,
            "POST",
            self.token_url,
            action="Keycloak client-credentials grant",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
            headers={"Accept": "application/json"},
        )
        return self._token_pair(response, action="Keycloak client-credentials grant").access_token

    def connect_and_get_token_and_refresh_token(self, username: str, password: str) -> TokenPair:
        """Run a resource-owner password grant for *username*."""
        response = send(
            self._http,
            "POST",
            self.token_url,
            action="Keycloak password grant",
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "username": username,
                "password": password,
                "grant_type": "password",
            },
        )
        return self._token_pair(response, action="Keycloak password grant")

    def get_oidc_config(self) -> OIDCConfig:
        """Read the realm's OpenID Connect discovery document."""
        action = "Keycloak OIDC discovery"
        response = send(self._http, "GET", self.realm_url + DISCOVERY_PATH, action=action)
        payload = json_body(response, action=action)
        authorization = payload.get("authorization_endpoint")
        token = payload.get("token_endpoint")
        if not isinstance(authorization, str) or not isinstance(token, str):
            raise UpstreamError(f"{action} is missing authorization or token endpoint")
        return OIDCConfig(authorization_endpoint=authorization, token_endpoint=token)

    def redeem_refresh_token(self, token_endpoint: str, refresh_token: str) -> TokenPair:
        """Exchange *refresh_token* for a new token pair.

        When the server does not rotate the refresh token the previous one is
        kept in the returned pair.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
        }
        if self.client_secret:
            data["client_secret"] = self.client_secret
        response = send(
            self._http,
            "POST",
            token_endpoint,
            action="Keycloak refresh-token grant",
            data=data,
        )
        pair = self._token_pair(response, action="Keycloak refresh-token grant")
        if not pair.refresh_token:
            return TokenPair(access_token=pair.access_token, refresh_token=refresh_token)
        return pair

    def exchange_code(
        self,
        token_endpoint: str,
        code: str,
        code_verifier: str,
        redirect_uri: str,
    ) -> TokenPair:
        """Exchange an authorization code obtained with PKCE for tokens."""
        response = send(
            self._http,
            "POST",
            token_endpoint,
            action="Keycloak authorization-code exchange",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": self.client_id,
                "code_verifier": code_verifier,
            },
        )
        return self._token_pair(response, action="Keycloak authorization-code exchange")

    @staticmethod
    def _token_pair(response: httpx.Response, *, action: str) -> TokenPair:
        payload = json_body(response, action=action)
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise TokenError(f"{action} did not return an access token")
        refresh_token = payload.get("refresh_token")
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) else "",
        )


__all__ = ["KeycloakClient", "OIDCConfig", "TokenPair"]
