"""Lifecycle components: credentials, provisioning, readiness, teardown, ledger."""

from __future__ import annotations

from .controller import LifecycleController
from .credentials import CredentialBroker
from .ledger import FileLedger, InMemoryLedger, Ledger
from .policy import (
    BackoffPolicy,
    ControllerPolicy,
    CredentialPolicy,
    LifecyclePolicy,
    ProvisionPolicy,
    ReadinessPolicy,
    TeardownPolicy,
)
from .provisioner import ResourceProvisioner
from .readiness import ReadinessWatcher, ReadySignal, TimedOut
from .reaper import Confirmed, Reaper
from .state_machine import LifecycleStateMachine

__all__ = [
    "BackoffPolicy",
    "Confirmed",
    "ControllerPolicy",
    "CredentialBroker",
    "CredentialPolicy",
    "FileLedger",
    "InMemoryLedger",
    "Ledger",
    "LifecycleController",
    "LifecyclePolicy",
    "LifecycleStateMachine",
    "ProvisionPolicy",
    "ReadinessPolicy",
    "ReadinessWatcher",
    "ReadySignal",
    "Reaper",
    "ResourceProvisioner",
    "TeardownPolicy",
    "TimedOut",
]
