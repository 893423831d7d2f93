"""Configuration helpers for the orchestrator."""

from __future__ import annotations

from .defaults import LIFECYCLE_DEFAULTS
from .env import (
    SETTING_REGISTRY,
    EnvSetting,
    configured_settings,
    load_environment,
    redacted_snapshot,
    require_setting,
    setting,
)

__all__ = [
    "LIFECYCLE_DEFAULTS",
    "EnvSetting",
    "SETTING_REGISTRY",
    "load_environment",
    "setting",
    "require_setting",
    "configured_settings",
    "redacted_snapshot",
]
