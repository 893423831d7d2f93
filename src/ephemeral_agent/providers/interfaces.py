"""Narrow async interfaces for the systems the orchestrator consumes.

Adapters translate provider-native failures into the error taxonomy in
`ephemeral_agent.errors` so the lifecycle components can classify them:

- `IdentityProvider.assume_role` raises `AuthDenied` or `AuthTransient`.
- `ComputeProvider.create_resource` raises `ProvisionError` for definite
  refusals and `ProvisionAmbiguous` when the request may have succeeded.
- `ComputeProvider.terminate_resource` raises `ResourceNotFound` when the
  resource is already gone and `TeardownTransient` for retryable failures.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable

from ephemeral_agent.enums import AgentPresence, ResourceStatus
from ephemeral_agent.schema.models import (
    LifecycleInstance,
    ResourceHandle,
    ResourceSpec,
    ScopedCredential,
)


@dataclass(frozen=True)
class AssumedRole:
    access_key: str
    secret_key: str
    session_token: str
    expires_at: datetime


@dataclass(frozen=True)
class CompletionSignal:
    """Reported by the work handoff once the job on a resource has ended."""

    succeeded: bool
    detail: str | None = None


@runtime_checkable
class IdentityProvider(Protocol):
    async def assume_role(
        self,
        role_ref: str,
        session_label: str,
        external_id: str | None = None,
        duration_s: int | None = None,
    ) -> AssumedRole: ...


@runtime_checkable
class ComputeProvider(Protocol):
    name: str

    async def create_resource(
        self,
        credential: ScopedCredential,
        spec: ResourceSpec,
        tags: Mapping[str, str],
        client_token: str,
        user_data: str | None = None,
    ) -> str: ...

    async def describe_resource(
        self, credential: ScopedCredential, resource_id: str
    ) -> ResourceStatus: ...

    async def terminate_resource(
        self, credential: ScopedCredential, resource_id: str
    ) -> None: ...

    async def wait_terminated(
        self, credential: ScopedCredential, resource_id: str, timeout_s: float
    ) -> bool: ...

    async def find_resources(
        self, credential: ScopedCredential, tags: Mapping[str, str]
    ) -> Mapping[str, Mapping[str, str]]:
        """Live resources matching every tag in `tags`, keyed by id, with their tags."""
        ...


@runtime_checkable
class WorkRegistry(Protocol):
    async def describe_status(self, agent_label: str) -> AgentPresence: ...


@runtime_checkable
class WorkHandoff(Protocol):
    async def hand_off(
        self, instance: LifecycleInstance, handle: ResourceHandle
    ) -> None: ...

    async def wait_for_completion(self, instance: LifecycleInstance) -> CompletionSignal: ...
