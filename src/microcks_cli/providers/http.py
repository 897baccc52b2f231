"""Shared ``httpx`` plumbing for the Microcks and Keycloak providers."""
from __future__ import annotations

import logging
from collections.abc import Collection

import httpx

from ..errors import UpstreamError
from ..settings import ClientSettings

LOGGER = logging.getLogger(__name__)


def build_http_client(
    settings: ClientSettings,
    *,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """Return an ``httpx.Client`` honouring TLS, timeout and verbosity settings."""
    event_hooks: dict[str, list] = {"request": [], "response": []}
    if settings.verbose:
        event_hooks["request"].append(_dump_request)
        event_hooks["response"].append(_dump_response)
    return httpx.Client(
        verify=settings.verify(),
        timeout=settings.timeout,
        transport=transport,
        event_hooks=event_hooks,
    )


def send(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    action: str,
    expected: Collection[int] = (200,),
    **kwargs: object,
) -> httpx.Response:
    """Send a request and raise :class:`UpstreamError` unless it returns *expected*."""
    try:
        response = client.request(method, url, **kwargs)  # type: ignore[arg-type]
    except httpx.HTTPError as exc:
        raise UpstreamError(f"{action} failed: {exc}") from exc
    if response.status_code not in expected:
        body = response.text.strip() or "no body"
        raise UpstreamError(
            f"{action} failed (HTTP {response.status_code}): {body}",
            status_code=response.status_code,
        )
    return response


def json_body(response: httpx.Response, *, action: str) -> dict[str, object]:
    """Return the JSON object carried by *response*."""
    try:
        payload = response.json()
    except ValueError as exc:
        raise UpstreamError(
            f"{action} returned an invalid JSON body: {exc}",
            status_code=response.status_code,
        ) from exc
    if not isinstance(payload, dict):
        raise UpstreamError(
            f"{action} returned {type(payload).__name__} instead of a JSON object",
            status_code=response.status_code,
        )
    return payload


def _dump_request(request: httpx.Request) -> None:
    LOGGER.debug(">>> %s %s", request.method, request.url)
    for name, value in request.headers.items():
        if name.lower() == "authorization":
            value = value.split(" ", 1)[0] + " ***"
        LOGGER.debug(">>> %s: %s", name, value)


def _dump_response(response: httpx.Response) -> None:
    LOGGER.debug("<<< %s %s", response.status_code, response.reason_phrase)
    for name, value in response.headers.items():
        LOGGER.debug("<<< %s: %s", name, value)


__all__ = ["build_http_client", "json_body", "send"]
