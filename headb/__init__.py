"""headb - identity and permission services for the JSON document store."""

from __future__ import annotations

import tomllib
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path


def _get_version() -> str:
    """Installed distribution version, else the one in a source checkout's pyproject."""
    try:
        return version("headb")
    except PackageNotFoundError:
        pass

    pyproject_path = Path(__file__).parent.parent / "pyproject.toml"
    try:
        with open(pyproject_path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"
    return data.get("project", {}).get("version", "unknown")


__version__ = _get_version()
