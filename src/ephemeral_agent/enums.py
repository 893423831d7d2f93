"""Centralized semantic enums for the ephemeral agent orchestrator."""

from __future__ import annotations

from enum import Enum


class LifecycleState(str, Enum):
    """States an ephemeral agent run moves through, in forward order."""

    PENDING = "PENDING"
    PROVISIONING = "PROVISIONING"
    AWAITING_READY = "AWAITING_READY"
    READY = "READY"
    IN_USE = "IN_USE"
    TEARING_DOWN = "TEARING_DOWN"
    TERMINATED = "TERMINATED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)


_STATE_ORDER: tuple[LifecycleState, ...] = tuple(LifecycleState)

TERMINAL_STATES: frozenset[LifecycleState] = frozenset(
    {LifecycleState.TERMINATED, LifecycleState.FAILED}
)

# States from which a resource may exist and teardown is owed.
TEARDOWN_OWED_STATES: frozenset[LifecycleState] = frozenset(
    {
        LifecycleState.PROVISIONING,
        LifecycleState.AWAITING_READY,
        LifecycleState.READY,
        LifecycleState.IN_USE,
        LifecycleState.TEARING_DOWN,
    }
)

CANCELLABLE_STATES: frozenset[LifecycleState] = frozenset(
    {
        LifecycleState.PENDING,
        LifecycleState.PROVISIONING,
        LifecycleState.AWAITING_READY,
        LifecycleState.READY,
        LifecycleState.IN_USE,
    }
)


class TerminationReason(str, Enum):
    """Why a lifecycle instance left the active set."""

    COMPLETED = "completed"
    TIMEOUT = "timeout"
    PROVISION_ERROR = "provision_error"
    CALLER_CANCELLED = "caller_cancelled"
    ORCHESTRATOR_RECOVERY = "orchestrator_recovery"
    AUTH_DENIED = "auth_denied"
    INTERNAL_ERROR = "internal_error"

    @property
    def is_success(self) -> bool:
        """Reasons that end in TERMINATED rather than FAILED."""
        return self in (TerminationReason.COMPLETED, TerminationReason.CALLER_CANCELLED)


class AgentPresence(str, Enum):
    """Registration status reported by the work-receiving system."""

    ONLINE = "online"
    OFFLINE = "offline"


class ResourceStatus(str, Enum):
    """Provider-neutral view of a compute unit's state."""

    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    TERMINATED = "terminated"
    FAILED = "failed"
    NOT_FOUND = "not_found"

    @property
    def is_gone(self) -> bool:
        return self in (ResourceStatus.TERMINATED, ResourceStatus.NOT_FOUND)
