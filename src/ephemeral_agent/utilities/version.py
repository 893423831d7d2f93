"""Runtime version resolution helpers."""

from __future__ import annotations

from importlib import metadata

DISTRIBUTION_NAME = "ephemeral-agent"


def get_runtime_version() -> str:
    """Installed distribution version, or a dev marker when running from source."""
    try:
        return metadata.version(DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        return "dev+unknown"
