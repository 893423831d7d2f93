from __future__ import annotations

import random

import pytest

from ephemeral_agent.config.defaults import (
    MANAGED_BY_VALUE,
    TAG_KEY_LIFECYCLE_ID,
    TAG_KEY_MANAGED_BY,
)
from ephemeral_agent.errors import ProvisionAmbiguous, ProvisionError
from ephemeral_agent.lifecycle.credentials import CredentialBroker
from ephemeral_agent.lifecycle.policy import BackoffPolicy, ProvisionPolicy
from ephemeral_agent.lifecycle.provisioner import (
    ResourceProvisioner,
    correlation_tags,
    render_boot_config,
)
from ephemeral_agent.providers.simulated import (
    SimulatedComputeProvider,
    SimulatedIdentityProvider,
)
from tests.utils.lifecycle_harness import TARGET_ACCOUNT_REF, sample_spec
from tests.utils.virtual_clock import VirtualClock


def _provisioner(clock: VirtualClock, compute: SimulatedComputeProvider) -> ResourceProvisioner:
    policy = ProvisionPolicy(retry=BackoffPolicy(max_attempts=3, base_delay_s=1.0))
    return ResourceProvisioner(compute, policy, clock, rng=random.Random(11))


async def _credential(clock: VirtualClock):
    broker = CredentialBroker(SimulatedIdentityProvider(clock=clock), clock=clock)
    return await broker.acquire(TARGET_ACCOUNT_REF, "provisioner-test")


def test_render_boot_config_fills_label_and_correlation_id() -> None:
    spec = sample_spec(boot_template="label={agent_label} id={correlation_id}")
    assert render_boot_config(spec, "abc") == "label=ephemeral-abc id=abc"
    assert render_boot_config(sample_spec(boot_template=None), "abc") is None


@pytest.mark.asyncio
async def test_provision_tags_resource_and_uses_correlation_id_as_token() -> None:
    async with VirtualClock() as clock:
        compute = SimulatedComputeProvider(clock=clock)
        handle = await _provisioner(clock, compute).provision(
            await _credential(clock), sample_spec(), "corr-1"
        )
    resource = compute.resources[handle.resource_id]
    assert handle.correlation_id == "corr-1"
    assert handle.provider == "simulated"
    assert resource.client_token == "corr-1"
    assert resource.tags[TAG_KEY_LIFECYCLE_ID] == "corr-1"
    assert resource.tags[TAG_KEY_MANAGED_BY] == MANAGED_BY_VALUE
    assert resource.tags["Name"] == "ephemeral-corr-1"
    assert resource.tags["team"] == "ci"
    assert "ephemeral-corr-1" in (resource.user_data or "")


@pytest.mark.asyncio
async def test_ambiguous_create_adopts_the_tagged_resource() -> None:
    async with VirtualClock() as clock:
        compute = SimulatedComputeProvider(clock=clock)
        existing = compute.adopt(correlation_tags("corr-2"), client_token="corr-2")
        compute.create_failures.append(ProvisionAmbiguous("connection reset"))
        handle = await _provisioner(clock, compute).provision(
            await _credential(clock), sample_spec(), "corr-2"
        )
    assert handle.resource_id == existing
    assert compute.create_calls == ["corr-2"]
    assert len(compute.resources) == 1


@pytest.mark.asyncio
async def test_ambiguous_create_without_resource_retries_with_same_token() -> None:
    async with VirtualClock() as clock:
        compute = SimulatedComputeProvider(clock=clock)
        compute.create_failures.append(ProvisionAmbiguous("timed out"))
        handle = await _provisioner(clock, compute).provision(
            await _credential(clock), sample_spec(), "corr-3"
        )
    assert compute.create_calls == ["corr-3", "corr-3"]
    assert list(compute.resources) == [handle.resource_id]


@pytest.mark.asyncio
async def test_persistent_ambiguity_becomes_provision_error() -> None:
    async with VirtualClock() as clock:
        compute = SimulatedComputeProvider(clock=clock)
        compute.create_failures.extend(ProvisionAmbiguous("timed out") for _ in range(3))
        with pytest.raises(ProvisionError) as excinfo:
            await _provisioner(clock, compute).provision(
                await _credential(clock), sample_spec(), "corr-4"
            )
    assert excinfo.value.code == "provision_ambiguous"
    assert len(compute.create_calls) == 3
    assert compute.resources == {}


@pytest.mark.asyncio
async def test_quota_refusal_is_fatal() -> None:
    async with VirtualClock() as clock:
        compute = SimulatedComputeProvider(clock=clock, quota=1)
        provisioner = _provisioner(clock, compute)
        credential = await _credential(clock)
        await provisioner.provision(credential, sample_spec(), "first")
        with pytest.raises(ProvisionError) as excinfo:
            await provisioner.provision(credential, sample_spec(), "second")
    assert excinfo.value.code == "quota_exhausted"


@pytest.mark.asyncio
async def test_locate_all_finds_only_matching_live_resources() -> None:
    async with VirtualClock() as clock:
        compute = SimulatedComputeProvider(clock=clock)
        provisioner = _provisioner(clock, compute)
        credential = await _credential(clock)
        first = compute.adopt(correlation_tags("dup"))
        second = compute.adopt(correlation_tags("dup"))
        compute.adopt(correlation_tags("other"))
        handles = await provisioner.locate_all(credential, "dup")
        located = await provisioner.locate(credential, "dup")
        missing = await provisioner.locate(credential, "nobody")
    assert sorted(handle.resource_id for handle in handles) == sorted([first, second])
    assert located is not None and located.correlation_id == "dup"
    assert missing is None
