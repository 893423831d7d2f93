"""Immutable schema models shared by every lifecycle component."""

from __future__ import annotations

from .models import (
    EscalationRecord,
    InstanceStatus,
    LifecycleInstance,
    NetworkPlacement,
    ResourceHandle,
    ResourceSpec,
    ScopedCredential,
    StatusEvent,
    TransitionRecord,
)

__all__ = [
    "EscalationRecord",
    "InstanceStatus",
    "LifecycleInstance",
    "NetworkPlacement",
    "ResourceHandle",
    "ResourceSpec",
    "ScopedCredential",
    "StatusEvent",
    "TransitionRecord",
]
