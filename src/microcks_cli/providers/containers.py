"""Container runtime integration for locally started Microcks instances.

Docker and Podman are driven through their command-line clients, which share
the subset of verbs used here (``pull``, ``create``, ``start``, ``stop``).
"""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import ContainerError

SUPPORTED_DRIVERS = ("docker", "podman")
MICROCKS_CONTAINER_PORT = "8080"
LOCALHOST_IP = "127.0.0.1"


@dataclass(frozen=True, slots=True)
class ContainerOpts:
    """Options for creating a Microcks container."""

    image: str
    port: str
    auto_remove: bool = False
    name: str = ""


@dataclass(slots=True)
class ContainerClient:
    """Manage Microcks containers through the ``docker`` or ``podman`` CLI."""

    driver: str = "docker"
    binary: str | None = None
    pull_output: bool = True

    def __post_init__(self) -> None:
        """Validate the driver and default the binary to the driver name."""
        if self.driver not in SUPPORTED_DRIVERS:
            raise ContainerError(f"unsupported container driver: {self.driver}")
        if self.binary is None:
            self.binary = self.driver

    def create_container(self, opts: ContainerOpts) -> str:
        """Pull *opts.image* and create a container from it, returning its id."""
        self._run(
            ["pull", opts.image],
            error_prefix=f"{self.binary} pull {opts.image}",
            capture_output=not self.pull_output,
        )
        args = [
            "create",
            "--publish",
            f"{LOCALHOST_IP}:{opts.port}:{MICROCKS_CONTAINER_PORT}",
        ]
        if opts.name:
            args.extend(["--name", opts.name])
        if opts.auto_remove:
            args.append("--rm")
        args.append(opts.image)
        result = self._run(args, error_prefix=f"{self.binary} create")
        container_id = (result.stdout or "").strip().splitlines()
        if not container_id:
            raise ContainerError(f"{self.binary} create returned no container id")
        return container_id[-1].strip()

    def start_container(self, container_id: str) -> None:
        """Start an existing container."""
        self._run(["start", container_id], error_prefix=f"{self.binary} start {container_id}")

    def stop_container(self, container_id: str) -> None:
        """Stop a container immediately, without a grace period."""
        self._run(
            ["stop", "--time", "0", container_id],
            error_prefix=f"{self.binary} stop {container_id}",
        )

    def close(self) -> None:
        """Release runtime resources. The CLI clients keep no connection open."""

    def _run(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [str(self.binary), *args]
        try:
            if capture_output:
                result = subprocess.run(  # noqa: S603
                    command,
                    capture_output=True,
                    text=True,
                    check=False,
                )
            else:
                result = subprocess.run(  # noqa: S603
                    command,
                    text=True,
                    check=False,
                )
        except FileNotFoundError as exc:
            raise ContainerError(f"{command[0]} not found: {exc}") from exc
        if result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise ContainerError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["ContainerClient", "ContainerOpts", "SUPPORTED_DRIVERS"]
