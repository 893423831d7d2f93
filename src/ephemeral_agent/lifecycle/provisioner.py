"""Creates exactly one compute unit per lifecycle instance.

A create request that fails ambiguously (timed out, connection dropped) is
never blindly re-sent. The provisioner first looks for a resource carrying the
instance's correlation tag and adopts it when found. Only when none exists is
the request retried, with the same idempotency token, so a provider that
honours client tokens cannot produce a second resource either way.
"""

from __future__ import annotations

import random

from ephemeral_agent.config.defaults import (
    MANAGED_BY_VALUE,
    TAG_KEY_LIFECYCLE_ID,
    TAG_KEY_MANAGED_BY,
)
from ephemeral_agent.errors import ProvisionAmbiguous, ProvisionError
from ephemeral_agent.lifecycle.policy import ProvisionPolicy
from ephemeral_agent.providers.interfaces import ComputeProvider
from ephemeral_agent.schema.models import (
    ResourceHandle,
    ResourceSpec,
    ScopedCredential,
    agent_label_for,
)
from ephemeral_agent.utilities.clock import Clock, SystemClock
from ephemeral_agent.utilities.logger_manager import (
    LoggerManager,
    component_logger,
    record_metric,
)


def correlation_tags(correlation_id: str) -> dict[str, str]:
    return {TAG_KEY_LIFECYCLE_ID: correlation_id, TAG_KEY_MANAGED_BY: MANAGED_BY_VALUE}


def render_boot_config(spec: ResourceSpec, correlation_id: str) -> str | None:
    """Fill the `{agent_label}` and `{correlation_id}` tokens of the boot template."""
    if spec.boot_template is None:
        return None
    return spec.boot_template.replace(
        "{agent_label}", agent_label_for(correlation_id)
    ).replace("{correlation_id}", correlation_id)


class ResourceProvisioner:
    def __init__(
        self,
        compute: ComputeProvider,
        policy: ProvisionPolicy | None = None,
        clock: Clock | None = None,
        logger_manager: LoggerManager | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.compute = compute
        self.policy = policy or ProvisionPolicy()
        self.clock = clock or SystemClock()
        self.logger_manager = logger_manager
        self.logger = component_logger(logger_manager, __name__)
        self._rng = rng

    def _handle(self, resource_id: str, correlation_id: str) -> ResourceHandle:
        return ResourceHandle(
            resource_id=resource_id,
            provider=self.compute.name,
            correlation_id=correlation_id,
        )

    async def provision(
        self,
        credential: ScopedCredential,
        resource_spec: ResourceSpec,
        correlation_id: str,
    ) -> ResourceHandle:
        tags = {
            **resource_spec.extra_tags,
            **correlation_tags(correlation_id),
            "Name": agent_label_for(correlation_id),
        }
        user_data = render_boot_config(resource_spec, correlation_id)
        max_attempts = max(1, self.policy.retry.max_attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                resource_id = await self.compute.create_resource(
                    credential,
                    resource_spec,
                    tags,
                    client_token=correlation_id,
                    user_data=user_data,
                )
            except ProvisionError as exc:
                record_metric(
                    self.logger_manager, "provision_errors", tags={"code": exc.code}
                )
                self.logger.error(f"Provisioning for {correlation_id} refused: {exc.code}")
                raise
            except ProvisionAmbiguous as exc:
                self.logger.warning(
                    f"Ambiguous create for {correlation_id} (attempt {attempt}): {exc}"
                )
                existing = await self.locate(credential, correlation_id)
                if existing is not None:
                    self.logger.info(
                        f"Adopting {existing.resource_id} created by an ambiguous request"
                    )
                    return existing
                if attempt >= max_attempts:
                    raise ProvisionError(
                        "provision_ambiguous",
                        f"Create for {correlation_id} stayed ambiguous after "
                        f"{attempt} attempts: {exc}",
                    ) from exc
                await self.clock.sleep(self.policy.retry.delay_for(attempt, self._rng))
                continue
            record_metric(self.logger_manager, "resources_provisioned")
            self.logger.info(f"Provisioned {resource_id} for {correlation_id}")
            return self._handle(resource_id, correlation_id)

    async def locate_all(
        self, credential: ScopedCredential, correlation_id: str
    ) -> list[ResourceHandle]:
        """Live resources tagged with `correlation_id`."""
        resource_ids = await self.compute.find_resources(
            credential, {TAG_KEY_LIFECYCLE_ID: correlation_id}
        )
        return [self._handle(resource_id, correlation_id) for resource_id in resource_ids]

    async def locate(
        self, credential: ScopedCredential, correlation_id: str
    ) -> ResourceHandle | None:
        handles = await self.locate_all(credential, correlation_id)
        if len(handles) > 1:
            self.logger.error(
                f"{len(handles)} resources carry lifecycle id {correlation_id}: "
                + ", ".join(handle.resource_id for handle in handles)
            )
        return handles[0] if handles else None
