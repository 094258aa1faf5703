"""samlconf package bootstrap.

Exposes the package version. The running version is also the default value
the release feed check compares against.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "1.2.1"


def get_version() -> str:
    """Return the current package version."""
    return __version__
