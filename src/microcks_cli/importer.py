"""Artifact import helpers shared by ``import``, ``import-url`` and ``import-dir``."""
from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .errors import MicrocksCliError

LOGGER = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = frozenset({".yaml", ".yml", ".json", ".xml"})
_TRUE_LITERALS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_LITERALS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


class ImportDirectoryError(MicrocksCliError):
    """Raised when a directory cannot be scanned for artifacts."""


class ArtifactUploader(Protocol):
    def upload_artifact(self, path: str | Path, main_artifact: bool) -> str: ...


@dataclass(frozen=True, slots=True)
class ArtifactSpec:
    """A local artifact and whether it is the primary one."""

    path: str
    main_artifact: bool = True


@dataclass(frozen=True, slots=True)
class UrlSpec:
    """A remote artifact, its primary flag and the Microcks secret to fetch it with."""

    url: str
    main_artifact: bool = True
    secret: str = ""


@dataclass(frozen=True, slots=True)
class FileType:
    extension: str
    is_primary: bool


@dataclass(slots=True)
class ImportResult:
    """Outcome of importing every artifact found in a directory."""

    total_files: int = 0
    success_files: list[str] = field(default_factory=list)
    failed_files: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.success_files)

    @property
    def failed_count(self) -> int:
        return len(self.failed_files)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "total_files": self.total_files,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "success_files": list(self.success_files),
            "failed_files": list(self.failed_files),
            "errors": list(self.errors),
        }


def parse_bool(value: str) -> bool | None:
    """Parse the boolean literals accepted on the command line, or return ``None``."""
    if value in _TRUE_LITERALS:
        return True
    if value in _FALSE_LITERALS:
        return False
    return None


def _is_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


def parse_artifact_specs(raw: str) -> list[ArtifactSpec]:
    """Parse ``file1[:primary],file2[:primary]`` into :class:`ArtifactSpec` values.

    An unparseable primary flag is reported and treated as ``true``.
    """
    specs: list[ArtifactSpec] = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        main_artifact = True
        if ":" in item and not _is_url(item):
            item, flag = item.split(":", 1)
            parsed = parse_bool(flag)
            if parsed is None:
                LOGGER.warning("Cannot parse '%s' as Bool, default to true", flag)
            else:
                main_artifact = parsed
        specs.append(ArtifactSpec(path=item, main_artifact=main_artifact))
    return specs


def parse_url_specs(raw: str) -> list[UrlSpec]:
    """Parse ``url1[:primary[:secret]],...`` into :class:`UrlSpec` values.

    Trailing segments are only taken as the primary flag (and secret) when the
    flag is a boolean literal, so URLs carrying an explicit port survive.
    """
    specs: list[UrlSpec] = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        scheme, separator, rest = item.partition("://")
        if not separator:
            raise ValueError(f"'{item}' is not an http(s) URL")
        tokens = rest.split(":")
        main_artifact = True
        secret = ""
        if len(tokens) >= 3 and parse_bool(tokens[-2]) is not None and "/" not in tokens[-1]:
            main_artifact = bool(parse_bool(tokens[-2]))
            secret = tokens[-1]
            tokens = tokens[:-2]
        elif len(tokens) >= 2 and parse_bool(tokens[-1]) is not None:
            main_artifact = bool(parse_bool(tokens[-1]))
            tokens = tokens[:-1]
        specs.append(UrlSpec(url=f"{scheme}://{':'.join(tokens)}", main_artifact=main_artifact, secret=secret))
    return specs


def detect_file_type(path: str | Path) -> FileType:
    """Guess whether *path* is a primary artifact from its file name.

    Postman collections are secondary unless the name also mentions OpenAPI
    or Swagger.
    """
    candidate = Path(path)
    name = candidate.name.lower()
    is_primary = True
    if "postman" in name or "collection" in name:
        is_primary = False
    if "openapi" in name or "swagger" in name:
        is_primary = True
    return FileType(extension=candidate.suffix, is_primary=is_primary)


def find_specification_files(
    directory: Path,
    *,
    recursive: bool = False,
    pattern: str = "",
) -> list[Path]:
    """Return artifact files under *directory*, sorted for a stable import order."""
    candidates = directory.rglob("*") if recursive else directory.iterdir()
    files: list[Path] = []
    for candidate in candidates:
        if not candidate.is_file():
            continue
        if candidate.suffix.lower() not in SUPPORTED_EXTENSIONS:
            continue
        if pattern and not fnmatch.fnmatchcase(candidate.name, pattern):
            continue
        files.append(candidate)
    return sorted(files)


def import_directory(
    client: ArtifactUploader,
    directory: Path,
    *,
    recursive: bool = False,
    pattern: str = "",
) -> ImportResult:
    """Upload every artifact found in *directory*.

    Individual upload failures are collected in the result; only an unusable
    directory raises.
    """
    if not directory.exists():
        raise ImportDirectoryError(f"directory does not exist: {directory}")
    if not directory.is_dir():
        raise ImportDirectoryError(f"path is not a directory: {directory}")
    try:
        files = find_specification_files(directory, recursive=recursive, pattern=pattern)
    except OSError as exc:
        raise ImportDirectoryError(f"error scanning directory {directory}: {exc}") from exc
    if not files:
        raise ImportDirectoryError(f"no specification files found in directory: {directory}")

    result = ImportResult(total_files=len(files))
    for file in files:
        file_type = detect_file_type(file)
        try:
            client.upload_artifact(file, file_type.is_primary)
        except MicrocksCliError as exc:
            result.failed_files.append(str(file))
            result.errors.append(f"error importing {file}: {exc}")
            continue
        result.success_files.append(str(file))
    return result


__all__ = [
    "ArtifactSpec",
    "FileType",
    "ImportDirectoryError",
    "ImportResult",
    "UrlSpec",
    "detect_file_type",
    "find_specification_files",
    "import_directory",
    "parse_artifact_specs",
    "parse_bool",
    "parse_url_specs",
]
