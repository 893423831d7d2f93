"""Guaranteed, idempotent termination of compute units."""

from __future__ import annotations

from dataclasses import dataclass
import random

from ephemeral_agent.config.defaults import TAG_KEY_LIFECYCLE_ID
from ephemeral_agent.errors import (
    EphemeralAgentError,
    ResourceNotFound,
    TeardownUnconfirmed,
    is_retryable,
)
from ephemeral_agent.lifecycle.credentials import CredentialBroker
from ephemeral_agent.lifecycle.policy import TeardownPolicy
from ephemeral_agent.providers.interfaces import ComputeProvider
from ephemeral_agent.schema.models import ResourceHandle, ScopedCredential
from ephemeral_agent.utilities.clock import Clock, SystemClock
from ephemeral_agent.utilities.logger_manager import (
    LoggerManager,
    component_logger,
    record_metric,
)
from ephemeral_agent.utilities.retry import RetryExhausted, retry_async


@dataclass(frozen=True)
class Confirmed:
    """Every targeted resource is gone, or there was nothing to tear down."""

    resource_ids: tuple[str, ...] = ()
    attempts: int = 0
    nothing_to_do: bool = False


class Reaper:
    """Terminates a resource and blocks until the provider confirms it is gone.

    A resource that is already gone counts as confirmed, so calling `terminate`
    twice is safe. Transient provider failures are retried with backoff; when
    the budget runs out `TeardownUnconfirmed` is raised for the caller to
    escalate.
    """

    def __init__(
        self,
        compute: ComputeProvider,
        policy: TeardownPolicy | None = None,
        clock: Clock | None = None,
        broker: CredentialBroker | None = None,
        logger_manager: LoggerManager | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.compute = compute
        self.policy = policy or TeardownPolicy()
        self.clock = clock or SystemClock()
        self.broker = broker
        self.logger_manager = logger_manager
        self.logger = component_logger(logger_manager, __name__)
        self._rng = rng

    async def terminate(
        self,
        credential: ScopedCredential,
        handle: ResourceHandle | None,
        correlation_id: str | None = None,
    ) -> Confirmed:
        """Tear down `handle`, or every live resource tagged with `correlation_id`.

        With neither a handle nor a tagged resource there is nothing to do and
        the result is still `Confirmed`.
        """
        if handle is not None:
            resource_ids = [handle.resource_id]
        elif correlation_id is not None:
            resource_ids = await self._locate(credential, correlation_id)
        else:
            resource_ids = []
        if not resource_ids:
            self.logger.info(
                f"Nothing to tear down for {correlation_id or 'unbound instance'}"
            )
            return Confirmed(nothing_to_do=True)

        total_attempts = 0
        for resource_id in resource_ids:
            attempts, credential = await self._terminate_one(credential, resource_id)
            total_attempts += attempts
        record_metric(self.logger_manager, "teardowns_confirmed", len(resource_ids))
        return Confirmed(resource_ids=tuple(resource_ids), attempts=total_attempts)

    async def _locate(self, credential: ScopedCredential, correlation_id: str) -> list[str]:
        async def _find() -> list[str]:
            return list(
                await self.compute.find_resources(
                    credential, {TAG_KEY_LIFECYCLE_ID: correlation_id}
                )
            )

        try:
            return await retry_async(
                _find,
                policy=self.policy.retry,
                clock=self.clock,
                description=f"locate resources for {correlation_id}",
                logger=self.logger,
                rng=self._rng,
            )
        except RetryExhausted as exc:
            raise TeardownUnconfirmed(
                None,
                exc.attempts,
                f"could not list resources tagged {correlation_id}: {exc.last_error}",
            ) from exc.last_error

    async def _terminate_one(
        self, credential: ScopedCredential, resource_id: str
    ) -> tuple[int, ScopedCredential]:
        max_attempts = max(1, self.policy.retry.max_attempts)
        last_error = "no attempt made"
        for attempt in range(1, max_attempts + 1):
            if self.broker is not None:
                credential = await self.broker.ensure_valid(credential)
            try:
                await self.compute.terminate_resource(credential, resource_id)
                gone = await self.compute.wait_terminated(
                    credential, resource_id, self.policy.wait_timeout_s
                )
            except ResourceNotFound:
                self.logger.info(f"{resource_id} already gone")
                return attempt, credential
            except EphemeralAgentError as exc:
                if not is_retryable(exc):
                    raise
                last_error = str(exc) or type(exc).__name__
                self.logger.warning(
                    f"Teardown of {resource_id} attempt {attempt}/{max_attempts} "
                    f"failed: {last_error}"
                )
            else:
                if gone:
                    self.logger.info(f"{resource_id} terminated")
                    return attempt, credential
                last_error = (
                    f"not terminated within {self.policy.wait_timeout_s:.0f}s"
                )
                self.logger.warning(
                    f"{resource_id} {last_error} (attempt {attempt}/{max_attempts})"
                )
            if attempt < max_attempts:
                await self.clock.sleep(self.policy.retry.delay_for(attempt, self._rng))
        record_metric(self.logger_manager, "teardowns_unconfirmed")
        raise TeardownUnconfirmed(resource_id, max_attempts, last_error)
