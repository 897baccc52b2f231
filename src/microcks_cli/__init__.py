"""Command-line client for Microcks.

Imports API artifacts, launches conformance tests and manages the local
contexts and containers the ``microcks`` command works against.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# Keep in sync with ``version`` in pyproject.toml.
__version__ = "0.1.0a0"


def get_version() -> str:
    """Return the installed microcks-cli version string."""
    return __version__
