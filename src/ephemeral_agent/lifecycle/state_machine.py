"""Enum-driven lifecycle state machine."""

from __future__ import annotations

from dataclasses import dataclass, field

from ephemeral_agent.enums import LifecycleState
from ephemeral_agent.errors import InvalidTransition

ALLOWED_TRANSITIONS: dict[LifecycleState, tuple[LifecycleState, ...]] = {
    # PENDING -> FAILED closes runs that never obtained credentials.
    LifecycleState.PENDING: (
        LifecycleState.PROVISIONING,
        LifecycleState.TEARING_DOWN,
        LifecycleState.FAILED,
    ),
    LifecycleState.PROVISIONING: (
        LifecycleState.AWAITING_READY,
        LifecycleState.TEARING_DOWN,
    ),
    LifecycleState.AWAITING_READY: (LifecycleState.READY, LifecycleState.TEARING_DOWN),
    LifecycleState.READY: (LifecycleState.IN_USE, LifecycleState.TEARING_DOWN),
    LifecycleState.IN_USE: (LifecycleState.TEARING_DOWN,),
    LifecycleState.TEARING_DOWN: (LifecycleState.TERMINATED, LifecycleState.FAILED),
    LifecycleState.TERMINATED: (),
    LifecycleState.FAILED: (),
}


def is_allowed(source: LifecycleState, target: LifecycleState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, ())


@dataclass
class LifecycleStateMachine:
    state: LifecycleState = LifecycleState.PENDING
    _transitions: dict[LifecycleState, tuple[LifecycleState, ...]] = field(
        init=False, repr=False
    )

    def __post_init__(self) -> None:
        self._transitions = ALLOWED_TRANSITIONS

    def can_transition(self, target: LifecycleState) -> bool:
        return target in self._transitions.get(self.state, ())

    def transition_to(self, target: LifecycleState) -> None:
        """Advance to the requested state if the transition is allowed."""
        if not self.can_transition(target):
            raise InvalidTransition(
                f"Invalid transition {self.state.value} -> {target.value}"
            )
        self.state = target
