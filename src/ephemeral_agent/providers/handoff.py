"""Work handoff strategies: how a READY agent gets its job and reports completion."""

from __future__ import annotations

import asyncio
from collections import defaultdict

from ephemeral_agent.enums import AgentPresence
from ephemeral_agent.errors import RegistryUnavailable
from ephemeral_agent.providers.interfaces import CompletionSignal, WorkRegistry
from ephemeral_agent.schema.models import LifecycleInstance, ResourceHandle
from ephemeral_agent.utilities.clock import Clock, SystemClock
from ephemeral_agent.utilities.logger_manager import LoggerManager, component_logger


class SignalledWorkHandoff:
    """Completion is reported programmatically through `complete()`.

    Used when the CI front-end (or a test) knows when the job has finished.
    A completion reported before the wait starts is kept and returned.
    """

    def __init__(self) -> None:
        self._events: defaultdict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self._results: dict[str, CompletionSignal] = {}
        self.handed_off: list[str] = []

    async def hand_off(self, instance: LifecycleInstance, handle: ResourceHandle) -> None:
        self.handed_off.append(instance.id)

    def complete(
        self, instance_id: str, succeeded: bool = True, detail: str | None = None
    ) -> None:
        self._results[instance_id] = CompletionSignal(succeeded=succeeded, detail=detail)
        self._events[instance_id].set()

    async def wait_for_completion(self, instance: LifecycleInstance) -> CompletionSignal:
        try:
            await self._events[instance.id].wait()
            return self._results[instance.id]
        finally:
            self._events.pop(instance.id, None)
            self._results.pop(instance.id, None)

    @property
    def pending(self) -> set[str]:
        """Instance ids with a wait or an unclaimed completion outstanding."""
        return set(self._events) | set(self._results)


class PresenceWorkHandoff:
    """For single-job agents that disconnect once their job is done.

    Completion is the agent going offline after it has been seen online.
    """

    def __init__(
        self,
        registry: WorkRegistry,
        poll_interval_s: float = 15.0,
        clock: Clock | None = None,
        logger_manager: LoggerManager | None = None,
    ) -> None:
        self.registry = registry
        self.poll_interval_s = poll_interval_s
        self.clock = clock or SystemClock()
        self.logger = component_logger(logger_manager, __name__)

    async def hand_off(self, instance: LifecycleInstance, handle: ResourceHandle) -> None:
        self.logger.info(
            f"{instance.agent_label} on {handle.resource_id} is open for its labelled job"
        )

    async def wait_for_completion(self, instance: LifecycleInstance) -> CompletionSignal:
        label = instance.agent_label
        seen_online = False
        while True:
            try:
                presence = await self.registry.describe_status(label)
            except RegistryUnavailable as exc:
                self.logger.debug(f"presence check for {label}: {exc}")
            else:
                if presence == AgentPresence.ONLINE:
                    seen_online = True
                elif seen_online:
                    return CompletionSignal(succeeded=True, detail="agent disconnected")
            await self.clock.sleep(self.poll_interval_s)
