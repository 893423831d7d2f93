"""Bounded wait for a provisioned resource to self-register."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import random

from ephemeral_agent.enums import AgentPresence, ResourceStatus
from ephemeral_agent.errors import EphemeralAgentError, RegistryUnavailable
from ephemeral_agent.lifecycle.policy import ReadinessPolicy
from ephemeral_agent.providers.interfaces import ComputeProvider, WorkRegistry
from ephemeral_agent.schema.models import ResourceHandle, ScopedCredential, agent_label_for
from ephemeral_agent.utilities.clock import Clock, SystemClock
from ephemeral_agent.utilities.logger_manager import LoggerManager, component_logger


@dataclass(frozen=True)
class ReadySignal:
    agent_label: str
    observed_at: datetime
    polls: int


@dataclass(frozen=True)
class TimedOut:
    agent_label: str
    polls: int
    reason: str = "deadline"


ReadinessOutcome = ReadySignal | TimedOut


class ReadinessWatcher:
    """Polls the work-receiving system until the agent is online or time runs out.

    Readiness comes only from the resource's own registration; a successful
    create says nothing about whether the machine booted. Each watch starts
    with a random stagger and every interval carries jitter, so many instances
    provisioned together do not poll in lockstep.
    """

    def __init__(
        self,
        registry: WorkRegistry,
        policy: ReadinessPolicy | None = None,
        clock: Clock | None = None,
        compute: ComputeProvider | None = None,
        logger_manager: LoggerManager | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.registry = registry
        self.policy = policy or ReadinessPolicy()
        self.clock = clock or SystemClock()
        self.compute = compute
        self.logger = component_logger(logger_manager, __name__)
        self._rng = rng or random.Random()

    async def await_ready(
        self,
        handle: ResourceHandle,
        deadline: float,
        credential: ScopedCredential | None = None,
    ) -> ReadinessOutcome:
        """Wait until `deadline` (a `clock.monotonic()` value) for registration."""
        label = agent_label_for(handle.correlation_id)
        polls = 0
        stagger = self._rng.uniform(
            0.0, self.policy.poll_interval_s * self.policy.jitter_ratio
        )
        await self.clock.sleep(min(stagger, max(0.0, deadline - self.clock.monotonic())))
        while True:
            polls += 1
            if await self._is_online(label):
                self.logger.info(f"{label} registered after {polls} polls")
                return ReadySignal(
                    agent_label=label, observed_at=self.clock.now(), polls=polls
                )
            if credential is not None and await self._resource_lost(credential, handle):
                self.logger.warning(
                    f"{handle.resource_id} stopped before {label} registered"
                )
                return TimedOut(agent_label=label, polls=polls, reason="resource_lost")
            remaining = deadline - self.clock.monotonic()
            if remaining <= 0:
                self.logger.warning(f"{label} not registered after {polls} polls")
                return TimedOut(agent_label=label, polls=polls)
            await self.clock.sleep(min(self.policy.next_delay(self._rng), remaining))

    async def _is_online(self, label: str) -> bool:
        try:
            presence = await self.registry.describe_status(label)
        except RegistryUnavailable as exc:
            self.logger.warning(f"Registry lookup for {label} failed: {exc}")
            return False
        return presence == AgentPresence.ONLINE

    async def _resource_lost(
        self, credential: ScopedCredential, handle: ResourceHandle
    ) -> bool:
        if self.compute is None:
            return False
        try:
            status = await self.compute.describe_resource(credential, handle.resource_id)
        except EphemeralAgentError as exc:
            self.logger.debug(f"describe {handle.resource_id} failed: {exc}")
            return False
        return status.is_gone or status == ResourceStatus.FAILED
