"""Loads orchestrator settings from the environment and `.env` files."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import os
from pathlib import Path

from dotenv import load_dotenv


@dataclass(frozen=True)
class EnvSetting:
    """Describes one environment variable the orchestrator reads."""

    name: str
    env_var: str
    description: str
    default: str | None = None
    secret: bool = False


SETTING_REGISTRY: tuple[EnvSetting, ...] = (
    EnvSetting(
        "ledger_dir",
        "EPHEMERAL_AGENT_LEDGER_DIR",
        "Directory holding one JSON ledger entry per lifecycle instance",
        default="artifacts/ledger",
    ),
    EnvSetting(
        "aws_region",
        "EPHEMERAL_AGENT_AWS_REGION",
        "Region used for STS and EC2 clients",
    ),
    EnvSetting(
        "jenkins_url",
        "EPHEMERAL_AGENT_JENKINS_URL",
        "Base URL of the work-receiving Jenkins controller",
    ),
    EnvSetting(
        "jenkins_user",
        "EPHEMERAL_AGENT_JENKINS_USER",
        "User for Jenkins API calls",
    ),
    EnvSetting(
        "jenkins_token",
        "EPHEMERAL_AGENT_JENKINS_TOKEN",
        "API token for Jenkins API calls",
        secret=True,
    ),
    EnvSetting(
        "log_level",
        "EPHEMERAL_AGENT_LOG_LEVEL",
        "Log level for the orchestrator loggers",
        default="INFO",
    ),
)


def load_environment(dotenv_path: str | Path | None = None) -> None:
    """Load `.env` files when available to seed setting lookups."""
    path = Path(dotenv_path) if dotenv_path else Path(".env")
    if path.exists():
        load_dotenv(dotenv_path=path)


def _spec_for(name: str) -> EnvSetting:
    spec = next((spec for spec in SETTING_REGISTRY if spec.name == name), None)
    if spec is None:
        raise KeyError(f"Unknown setting: {name}")
    return spec


def setting(name: str) -> str | None:
    """Return the configured value for a setting, or its default."""
    spec = _spec_for(name)
    return os.getenv(spec.env_var) or spec.default


def require_setting(name: str) -> str:
    value = setting(name)
    if not value:
        spec = _spec_for(name)
        raise RuntimeError(f"Setting {name} ({spec.env_var}) is not configured")
    return value


def configured_settings() -> Iterable[str]:
    """List settings that currently have a non-default value."""
    return [spec.name for spec in SETTING_REGISTRY if os.getenv(spec.env_var)]


def redacted_snapshot() -> dict[str, str | None]:
    """Snapshot of all settings with secrets masked, safe to log."""
    snapshot: dict[str, str | None] = {}
    for spec in SETTING_REGISTRY:
        value = setting(spec.name)
        snapshot[spec.name] = "***" if spec.secret and value else value
    return snapshot


__all__ = [
    "SETTING_REGISTRY",
    "EnvSetting",
    "load_environment",
    "setting",
    "require_setting",
    "configured_settings",
    "redacted_snapshot",
]
