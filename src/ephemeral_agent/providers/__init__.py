"""Provider interfaces and adapters consumed by the lifecycle components."""

from __future__ import annotations

from .handoff import PresenceWorkHandoff, SignalledWorkHandoff
from .interfaces import (
    AssumedRole,
    CompletionSignal,
    ComputeProvider,
    IdentityProvider,
    WorkHandoff,
    WorkRegistry,
)
from .simulated import (
    SimulatedComputeProvider,
    SimulatedIdentityProvider,
    SimulatedWorkRegistry,
)

__all__ = [
    "AssumedRole",
    "CompletionSignal",
    "ComputeProvider",
    "IdentityProvider",
    "PresenceWorkHandoff",
    "SignalledWorkHandoff",
    "SimulatedComputeProvider",
    "SimulatedIdentityProvider",
    "SimulatedWorkRegistry",
    "WorkHandoff",
    "WorkRegistry",
]
