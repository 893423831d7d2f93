from __future__ import annotations

import asyncio

import pytest

from ephemeral_agent.enums import AgentPresence
from ephemeral_agent.errors import RegistryUnavailable
from ephemeral_agent.providers.handoff import PresenceWorkHandoff, SignalledWorkHandoff
from ephemeral_agent.schema.models import LifecycleInstance, ResourceHandle
from tests.utils.lifecycle_harness import TARGET_ACCOUNT_REF, sample_spec
from tests.utils.virtual_clock import VirtualClock


def _instance() -> LifecycleInstance:
    return LifecycleInstance(
        target_account_ref=TARGET_ACCOUNT_REF, resource_spec=sample_spec(), ready_deadline_s=60
    )


class _ScriptedRegistry:
    def __init__(self, *answers: object) -> None:
        self.answers = list(answers)
        self.labels: list[str] = []

    async def describe_status(self, agent_label: str) -> AgentPresence:
        self.labels.append(agent_label)
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.mark.asyncio
async def test_signalled_completion_before_and_after_wait() -> None:
    handoff = SignalledWorkHandoff()
    early, late = _instance(), _instance()
    handle = ResourceHandle(resource_id="sim-1", provider="simulated", correlation_id=early.id)
    await handoff.hand_off(early, handle)
    handoff.complete(early.id, succeeded=False, detail="tests failed")
    signal = await handoff.wait_for_completion(early)
    assert signal.succeeded is False
    assert signal.detail == "tests failed"

    waiter = asyncio.create_task(handoff.wait_for_completion(late))
    await asyncio.sleep(0)
    assert not waiter.done()
    handoff.complete(late.id)
    assert (await waiter).succeeded is True
    assert handoff.handed_off == [early.id]


@pytest.mark.asyncio
async def test_presence_handoff_completes_when_agent_disconnects() -> None:
    instance = _instance()
    registry = _ScriptedRegistry(
        AgentPresence.OFFLINE,
        AgentPresence.ONLINE,
        RegistryUnavailable("blip"),
        AgentPresence.ONLINE,
        AgentPresence.OFFLINE,
    )
    async with VirtualClock() as clock:
        handoff = PresenceWorkHandoff(registry, poll_interval_s=30, clock=clock)
        signal = await handoff.wait_for_completion(instance)
        waited = clock.monotonic()
    assert signal.succeeded is True
    assert signal.detail == "agent disconnected"
    assert registry.labels == [instance.agent_label] * 5
    assert waited == pytest.approx(120.0)


@pytest.mark.asyncio
async def test_signalled_handoff_forgets_finished_and_abandoned_waits() -> None:
    handoff = SignalledWorkHandoff()
    finished, abandoned = _instance(), _instance()
    handoff.complete(finished.id)
    assert handoff.pending == {finished.id}
    await handoff.wait_for_completion(finished)

    waiter = asyncio.create_task(handoff.wait_for_completion(abandoned))
    await asyncio.sleep(0)
    assert handoff.pending == {abandoned.id}
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert handoff.pending == set()
