"""Explicit default settings for lifecycle policies."""

from __future__ import annotations

LIFECYCLE_DEFAULTS: dict[str, object] = {
    "ready_deadline_s": 600.0,
    "job_deadline_s": None,
    "credential_grace_window_s": 300.0,
    "credential_session_duration_s": 3600,
    "auth_max_attempts": 5,
    "provision_max_attempts": 3,
    "readiness_poll_interval_s": 10.0,
    "readiness_jitter_ratio": 0.25,
    "teardown_max_attempts": 6,
    "teardown_wait_timeout_s": 300.0,
    "backoff_base_delay_s": 1.0,
    "backoff_max_delay_s": 30.0,
    "handoff_poll_interval_s": 15.0,
}

TAG_KEY_LIFECYCLE_ID = "ephemeral-agent:lifecycle-id"
TAG_KEY_MANAGED_BY = "ephemeral-agent:managed-by"
MANAGED_BY_VALUE = "ephemeral-agent"
