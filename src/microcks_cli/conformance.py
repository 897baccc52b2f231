"""Conformance test launching and polling for ``microcks test``."""
from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Protocol

from .providers.microcks import TestResultSummary

LOGGER = logging.getLogger(__name__)

RUNNER_CHOICES = (
    "HTTP",
    "SOAP_HTTP",
    "SOAP_UI",
    "POSTMAN",
    "OPEN_API_SCHEMA",
    "ASYNC_API_SCHEMA",
    "GRPC_PROTOBUF",
    "GRAPHQL_SCHEMA",
)
GRANT_TYPE_CHOICES = frozenset({"PASSWORD", "CLIENT_CREDENTIALS", "REFRESH_TOKEN"})
DEFAULT_WAIT_MS = 5000
SERVER_GRACE_MS = 10_000
INITIAL_DELAY_SECONDS = 1.0
POLL_INTERVAL_SECONDS = 2.0

_WAIT_UNITS = (("milli", 1), ("sec", 1000), ("min", 60_000))


class ResultSource(Protocol):
    def get_test_result(self, test_id: str) -> TestResultSummary: ...


def parse_wait_for(value: str) -> int:
    """Convert ``500milli``, ``5sec`` or ``1min`` to milliseconds.

    Anything else falls back to five seconds with a warning.
    """
    for suffix, factor in _WAIT_UNITS:
        if value.endswith(suffix):
            amount = value[: -len(suffix)]
            try:
                return int(amount, 10) * factor
            except ValueError:
                break
    LOGGER.warning("--wait-for format is wrong. Applying default 5sec")
    return DEFAULT_WAIT_MS


def parse_filtered_operations(raw: str) -> list[str] | None:
    """Return the operations list encoded in *raw*, or ``None`` when unusable."""
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError as exc:
        LOGGER.warning("Error parsing JSON in filteredOperations: %s", exc)
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        LOGGER.warning("Error parsing JSON in filteredOperations: expected a list of strings")
        return None
    return value


def parse_operations_headers(raw: str) -> dict[str, list[dict[str, str]]] | None:
    """Return per-operation header overrides encoded in *raw*, or ``None``.

    The expected shape is ``{"operation": [{"name": "...", "values": "..."}]}``.
    """
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError as exc:
        LOGGER.warning("Error parsing JSON in operationsHeaders: %s", exc)
        return None
    if not isinstance(value, dict) or not all(
        isinstance(headers, list) and all(_is_header(header) for header in headers)
        for headers in value.values()
    ):
        LOGGER.warning("Error parsing JSON in operationsHeaders: unexpected structure")
        return None
    return value


def parse_oauth2_context(raw: str) -> dict[str, object] | None:
    """Return the OAuth2 client context encoded in *raw*, or ``None``.

    A context whose ``grantType`` is not supported turns OAuth2 off.
    """
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError as exc:
        LOGGER.warning("Error parsing JSON in oAuth2Context: %s", exc)
        return None
    if not isinstance(value, dict):
        LOGGER.warning("Error parsing JSON in oAuth2Context: expected an object")
        return None
    if value.get("grantType") not in GRANT_TYPE_CHOICES:
        LOGGER.warning("grantType in oAuth2Context is not supported. OAuth2 is turned off.")
        return None
    return value


def wait_for_result(
    client: ResultSource,
    test_id: str,
    wait_ms: int,
    *,
    on_status: Callable[[TestResultSummary], None] | None = None,
    sleep: Callable[[float], None] | None = None,
    clock: Callable[[], float] | None = None,
) -> TestResultSummary:
    """Poll *test_id* until it completes or the wait window closes.

    The window is *wait_ms* plus ten seconds, since *wait_ms* is also the
    timeout the server applies to the test itself.
    """
    sleep = sleep or time.sleep
    clock = clock or time.monotonic
    sleep(INITIAL_DELAY_SECONDS)
    deadline = clock() + (wait_ms + SERVER_GRACE_MS) / 1000
    summary = client.get_test_result(test_id)
    while True:
        if on_status is not None:
            on_status(summary)
        if not summary.in_progress:
            return summary
        sleep(POLL_INTERVAL_SECONDS)
        if clock() >= deadline:
            return summary
        summary = client.get_test_result(test_id)


def result_url(server_url: str, test_id: str) -> str:
    """Return the UI link for a test result."""
    return f"{server_url.rstrip('/')}/#/tests/{test_id}"


def _is_header(value: object) -> bool:
    return (
        isinstance(value, dict)
        and isinstance(value.get("name"), str)
        and isinstance(value.get("values", ""), str)
    )


__all__ = [
    "GRANT_TYPE_CHOICES",
    "RUNNER_CHOICES",
    "parse_filtered_operations",
    "parse_oauth2_context",
    "parse_operations_headers",
    "parse_wait_for",
    "result_url",
    "wait_for_result",
]
