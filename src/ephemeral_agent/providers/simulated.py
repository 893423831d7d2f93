"""In-memory providers for dry runs (`--simulate`) and tests.

The simulated compute provider honours client tokens, enforces an optional
quota of live resources, and can boot agents into a `SimulatedWorkRegistry`
after a configurable delay. Failures are injected through plain attributes.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
import itertools

from ephemeral_agent.config.defaults import TAG_KEY_LIFECYCLE_ID
from ephemeral_agent.enums import AgentPresence, ResourceStatus
from ephemeral_agent.errors import (
    AuthDenied,
    AuthTransient,
    EphemeralAgentError,
    ProvisionError,
    RegistryUnavailable,
    ResourceNotFound,
    TeardownTransient,
)
from ephemeral_agent.providers.interfaces import AssumedRole
from ephemeral_agent.schema.models import ResourceSpec, ScopedCredential, agent_label_for
from ephemeral_agent.utilities.clock import Clock, SystemClock


class SimulatedIdentityProvider:
    def __init__(
        self,
        clock: Clock | None = None,
        denied_roles: set[str] | None = None,
        transient_failures: int = 0,
    ) -> None:
        self.clock = clock or SystemClock()
        self.denied_roles = set(denied_roles or ())
        self.transient_failures = transient_failures
        self.calls: list[tuple[str, str, str | None]] = []
        self._serial = itertools.count(1)

    async def assume_role(
        self,
        role_ref: str,
        session_label: str,
        external_id: str | None = None,
        duration_s: int | None = None,
    ) -> AssumedRole:
        self.calls.append((role_ref, session_label, external_id))
        if role_ref in self.denied_roles:
            raise AuthDenied(f"{role_ref} does not trust this orchestrator")
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise AuthTransient("simulated throttling")
        serial = next(self._serial)
        return AssumedRole(
            access_key=f"ASIASIM{serial:08d}",
            secret_key=f"sim-secret-{serial}",
            session_token=f"sim-token-{serial}",
            expires_at=self.clock.now() + timedelta(seconds=duration_s or 3600),
        )


class SimulatedWorkRegistry:
    def __init__(self) -> None:
        self.presence: dict[str, AgentPresence] = {}
        self.unavailable_polls = 0
        self.polls = 0

    def set_online(self, agent_label: str) -> None:
        self.presence[agent_label] = AgentPresence.ONLINE

    def set_offline(self, agent_label: str) -> None:
        if agent_label in self.presence:
            self.presence[agent_label] = AgentPresence.OFFLINE

    async def describe_status(self, agent_label: str) -> AgentPresence:
        self.polls += 1
        if self.unavailable_polls > 0:
            self.unavailable_polls -= 1
            raise RegistryUnavailable("simulated registry outage")
        return self.presence.get(agent_label, AgentPresence.OFFLINE)


@dataclass
class SimulatedResource:
    resource_id: str
    tags: dict[str, str]
    client_token: str
    status: ResourceStatus = ResourceStatus.RUNNING
    user_data: str | None = None

    @property
    def agent_label(self) -> str | None:
        correlation_id = self.tags.get(TAG_KEY_LIFECYCLE_ID)
        return agent_label_for(correlation_id) if correlation_id else None


@dataclass
class SimulatedComputeProvider:
    """Compute provider backed by a dict of `SimulatedResource`.

    Failure injection:
    - `create_failures`: exceptions raised, in order, by the next creates.
    - `terminate_failures`: number of terminate calls that raise `TeardownTransient`.
    - `stuck`: resource ids that never confirm termination.
    """

    name: str = "simulated"
    quota: int | None = None
    clock: Clock = field(default_factory=SystemClock)
    registry: SimulatedWorkRegistry | None = None
    boot_delay_s: float | None = None
    create_failures: list[EphemeralAgentError] = field(default_factory=list)
    terminate_failures: int = 0
    stuck: set[str] = field(default_factory=set)
    resources: dict[str, SimulatedResource] = field(default_factory=dict)
    create_calls: list[str] = field(default_factory=list)
    terminate_calls: list[str] = field(default_factory=list)
    _serial: itertools.count = field(default_factory=lambda: itertools.count(1))
    _boots: set[asyncio.Task[None]] = field(default_factory=set)

    @property
    def live_count(self) -> int:
        return sum(1 for res in self.resources.values() if not res.status.is_gone)

    def adopt(self, tags: Mapping[str, str], client_token: str = "") -> str:
        """Create a resource directly, as if an earlier request had succeeded."""
        resource_id = f"sim-{next(self._serial):06d}"
        self.resources[resource_id] = SimulatedResource(
            resource_id=resource_id, tags=dict(tags), client_token=client_token
        )
        return resource_id

    async def create_resource(
        self,
        credential: ScopedCredential,
        spec: ResourceSpec,
        tags: Mapping[str, str],
        client_token: str,
        user_data: str | None = None,
    ) -> str:
        self.create_calls.append(client_token)
        if self.create_failures:
            raise self.create_failures.pop(0)
        for resource in self.resources.values():
            if resource.client_token == client_token:
                return resource.resource_id
        if self.quota is not None and self.live_count >= self.quota:
            raise ProvisionError("quota_exhausted", f"quota of {self.quota} reached")
        resource_id = self.adopt(tags, client_token)
        resource = self.resources[resource_id]
        resource.user_data = user_data
        if self.registry is not None and self.boot_delay_s is not None:
            task = asyncio.create_task(self._boot(resource))
            self._boots.add(task)
            task.add_done_callback(self._boots.discard)
        return resource_id

    async def _boot(self, resource: SimulatedResource) -> None:
        await self.clock.sleep(self.boot_delay_s or 0.0)
        if resource.status.is_gone or self.registry is None or resource.agent_label is None:
            return
        self.registry.set_online(resource.agent_label)

    async def describe_resource(
        self, credential: ScopedCredential, resource_id: str
    ) -> ResourceStatus:
        resource = self.resources.get(resource_id)
        return resource.status if resource is not None else ResourceStatus.NOT_FOUND

    async def terminate_resource(
        self, credential: ScopedCredential, resource_id: str
    ) -> None:
        self.terminate_calls.append(resource_id)
        if self.terminate_failures > 0:
            self.terminate_failures -= 1
            raise TeardownTransient(f"simulated terminate failure for {resource_id}")
        resource = self.resources.get(resource_id)
        if resource is None or resource.status.is_gone:
            raise ResourceNotFound(resource_id)
        if resource_id in self.stuck:
            resource.status = ResourceStatus.STOPPING
            return
        resource.status = ResourceStatus.TERMINATED
        if self.registry is not None and resource.agent_label is not None:
            self.registry.set_offline(resource.agent_label)

    async def wait_terminated(
        self, credential: ScopedCredential, resource_id: str, timeout_s: float
    ) -> bool:
        resource = self.resources.get(resource_id)
        return resource is None or resource.status.is_gone

    async def find_resources(
        self, credential: ScopedCredential, tags: Mapping[str, str]
    ) -> dict[str, dict[str, str]]:
        return {
            resource.resource_id: dict(resource.tags)
            for resource in self.resources.values()
            if not resource.status.is_gone
            and all(resource.tags.get(key) == value for key, value in tags.items())
        }
