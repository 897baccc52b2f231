"""Structured operation logging for the microcks CLI.

Every command runs inside :meth:`StructuredLogger.operation`. When the block
exits, one JSON record describing the command, its arguments, the steps it
performed and its outcome is appended to ``<config dir>/logs/operations.jsonl``.

The log is a convenience for troubleshooting, never a requirement: when the
directory cannot be created or a write fails the logger disables itself and
the command carries on.
"""
from __future__ import annotations

import json
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

OPERATIONS_LOG_NAME = "operations.jsonl"
REDACTED = "***"
SENSITIVE_KEYS = frozenset(
    {
        "password",
        "secret",
        "client_secret",
        "token",
        "auth_token",
        "refresh_token",
        "keycloak_client_secret",
    }
)


class OperationScope:
    """Mutable record of a single CLI operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        self.op_id = uuid.uuid4().hex
        self.command = command
        self.args = _redact(args or {})
        self.target = _sanitize(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started = time.monotonic()
        self._timestamp = datetime.now(UTC).isoformat()

    def add_step(self, name: str, *, status: str = "success", detail: object | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self.result = {
            "status": "success",
            "message": message,
            "changed": changed,
            "context": _sanitize(context or {}),
        }

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self.result = {
            "status": "warning",
            "message": message,
            "warnings": list(warnings or [message]),
            "errors": list(errors or []),
            "changed": changed,
            "context": _sanitize(context or {}),
        }

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self.result = {
            "status": "error",
            "message": message,
            "errors": list(errors or [message]),
            "rc": rc,
            "context": _sanitize(context or {}),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON-safe record for this operation."""
        return {
            "ts": self._timestamp,
            "op_id": self.op_id,
            "command": self.command,
            "args": self.args,
            "target": self.target,
            "steps": self.steps,
            "result": self.result or {"status": "success", "message": "", "changed": 0},
            "duration_ms": int((time.monotonic() - self._started) * 1000),
        }


class StructuredLogger:
    """Append-only JSON-lines logger for CLI operations."""

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = log_dir
        self._operations_log_path = log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log location."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Run a block as a logged operation.

        An exception escaping the block is recorded as an error unless the
        block already recorded an outcome; the exception is then re-raised.
        """
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                code = getattr(exc, "exit_code", None)
                if code == 0:
                    scope.success("Completed.")
                else:
                    scope.error(str(exc) or type(exc).__name__, rc=code)
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError:
            self._enabled = False


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _redact(args: Mapping[str, object]) -> dict[str, object]:
    redacted: dict[str, object] = {}
    for key, value in args.items():
        if key.lower() in SENSITIVE_KEYS and value:
            redacted[key] = REDACTED
        else:
            redacted[key] = _sanitize(value)
    return redacted


__all__ = ["OperationScope", "StructuredLogger"]
