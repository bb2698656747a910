"""siderdb package bootstrap.

Exposes the package version for the CLI and packaging metadata. Everything
else lives in the submodules (``lifecycle`` for the instance rules, ``storage``
for the on-disk registry, ``providers.engine`` for process supervision).
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "0.3.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
