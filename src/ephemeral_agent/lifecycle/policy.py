"""Retry, polling and deadline rules parsed from a lifecycle policy YAML file."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import random

import yaml

from ephemeral_agent.config.defaults import LIFECYCLE_DEFAULTS


def _default(key: str) -> float:
    return float(LIFECYCLE_DEFAULTS[key])  # type: ignore[arg-type]


@dataclass
class BackoffPolicy:
    """Bounded exponential backoff with full jitter."""

    max_attempts: int = 5
    base_delay_s: float = field(default_factory=lambda: _default("backoff_base_delay_s"))
    max_delay_s: float = field(default_factory=lambda: _default("backoff_max_delay_s"))
    multiplier: float = 2.0

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay before retry number `attempt` (1-indexed)."""
        ceiling = min(
            self.max_delay_s, self.base_delay_s * self.multiplier ** max(attempt - 1, 0)
        )
        return (rng or random).uniform(0.0, ceiling)


@dataclass
class CredentialPolicy:
    grace_window_s: float = field(
        default_factory=lambda: _default("credential_grace_window_s")
    )
    session_duration_s: int = field(
        default_factory=lambda: int(_default("credential_session_duration_s"))
    )
    retry: BackoffPolicy = field(
        default_factory=lambda: BackoffPolicy(
            max_attempts=int(_default("auth_max_attempts"))
        )
    )


@dataclass
class ProvisionPolicy:
    retry: BackoffPolicy = field(
        default_factory=lambda: BackoffPolicy(
            max_attempts=int(_default("provision_max_attempts"))
        )
    )


@dataclass
class ReadinessPolicy:
    poll_interval_s: float = field(
        default_factory=lambda: _default("readiness_poll_interval_s")
    )
    jitter_ratio: float = field(
        default_factory=lambda: _default("readiness_jitter_ratio")
    )

    def next_delay(self, rng: random.Random | None = None) -> float:
        spread = self.poll_interval_s * self.jitter_ratio
        return max(0.0, self.poll_interval_s + (rng or random).uniform(-spread, spread))


@dataclass
class TeardownPolicy:
    wait_timeout_s: float = field(
        default_factory=lambda: _default("teardown_wait_timeout_s")
    )
    retry: BackoffPolicy = field(
        default_factory=lambda: BackoffPolicy(
            max_attempts=int(_default("teardown_max_attempts"))
        )
    )


@dataclass
class ControllerPolicy:
    ready_deadline_s: float = field(default_factory=lambda: _default("ready_deadline_s"))
    job_deadline_s: float | None = None
    handoff_poll_interval_s: float = field(
        default_factory=lambda: _default("handoff_poll_interval_s")
    )


def _backoff_from(raw: dict[str, object] | None, fallback: BackoffPolicy) -> BackoffPolicy:
    if not raw:
        return fallback
    merged = {
        "max_attempts": fallback.max_attempts,
        "base_delay_s": fallback.base_delay_s,
        "max_delay_s": fallback.max_delay_s,
        "multiplier": fallback.multiplier,
        **raw,
    }
    return BackoffPolicy(**merged)  # type: ignore[arg-type]


def _section(raw: dict[str, object], key: str) -> dict[str, object]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Policy section '{key}' must be a mapping")
    return dict(value)


@dataclass
class LifecyclePolicy:
    """Aggregates credential/provision/readiness/teardown/controller behavior."""

    credentials: CredentialPolicy = field(default_factory=CredentialPolicy)
    provision: ProvisionPolicy = field(default_factory=ProvisionPolicy)
    readiness: ReadinessPolicy = field(default_factory=ReadinessPolicy)
    teardown: TeardownPolicy = field(default_factory=TeardownPolicy)
    controller: ControllerPolicy = field(default_factory=ControllerPolicy)

    @classmethod
    def from_mapping(cls, raw: dict[str, object]) -> LifecyclePolicy:
        credentials = _section(raw, "credentials")
        provision = _section(raw, "provision")
        teardown = _section(raw, "teardown")
        defaults = cls()
        return cls(
            credentials=CredentialPolicy(
                retry=_backoff_from(
                    credentials.pop("retry", None),  # type: ignore[arg-type]
                    defaults.credentials.retry,
                ),
                **credentials,  # type: ignore[arg-type]
            ),
            provision=ProvisionPolicy(
                retry=_backoff_from(
                    provision.pop("retry", None),  # type: ignore[arg-type]
                    defaults.provision.retry,
                )
            ),
            readiness=ReadinessPolicy(**_section(raw, "readiness")),  # type: ignore[arg-type]
            teardown=TeardownPolicy(
                retry=_backoff_from(
                    teardown.pop("retry", None),  # type: ignore[arg-type]
                    defaults.teardown.retry,
                ),
                **teardown,  # type: ignore[arg-type]
            ),
            controller=ControllerPolicy(**_section(raw, "controller")),  # type: ignore[arg-type]
        )

    @classmethod
    def load(cls, path: Path | str) -> LifecyclePolicy:
        """Load overrides from a YAML policy file if it exists."""
        resolved = Path(path)
        if not resolved.is_file():
            return cls()
        raw = yaml.safe_load(resolved.read_text(encoding="utf-8")) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Policy file {resolved} must contain a mapping")
        return cls.from_mapping(raw)
