"""Short-lived, scoped credentials for the target trust domain."""

from __future__ import annotations

from datetime import timedelta
import random

from pydantic import SecretStr

from ephemeral_agent.errors import AuthTransient
from ephemeral_agent.lifecycle.policy import CredentialPolicy
from ephemeral_agent.providers.interfaces import IdentityProvider
from ephemeral_agent.schema.models import ScopedCredential
from ephemeral_agent.utilities.clock import Clock, SystemClock
from ephemeral_agent.utilities.logger_manager import (
    LoggerManager,
    component_logger,
    record_metric,
)
from ephemeral_agent.utilities.retry import RetryExhausted, retry_async

EXTERNAL_ID_SEPARATOR = "#"


def split_account_ref(target_account_ref: str) -> tuple[str, str | None]:
    """Split `role_ref#external_id` into its parts."""
    role_ref, sep, external_id = target_account_ref.partition(EXTERNAL_ID_SEPARATOR)
    return role_ref, (external_id if sep and external_id else None)


class CredentialBroker:
    """Assumes roles through the identity provider and refreshes near expiry.

    Credentials live only in memory; nothing here touches the ledger.
    """

    def __init__(
        self,
        identity_provider: IdentityProvider,
        policy: CredentialPolicy | None = None,
        clock: Clock | None = None,
        logger_manager: LoggerManager | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.identity_provider = identity_provider
        self.policy = policy or CredentialPolicy()
        self.clock = clock or SystemClock()
        self.logger_manager = logger_manager
        self.logger = component_logger(logger_manager, __name__)
        self._rng = rng

    async def acquire(
        self, target_account_ref: str, session_label: str
    ) -> ScopedCredential:
        """Assume the role behind `target_account_ref`.

        `AuthDenied` propagates on the first attempt. `AuthTransient` is
        retried; once the budget is spent the last `AuthTransient` is raised.
        """
        role_ref, external_id = split_account_ref(target_account_ref)

        async def _assume() -> ScopedCredential:
            assumed = await self.identity_provider.assume_role(
                role_ref,
                session_label,
                external_id=external_id,
                duration_s=self.policy.session_duration_s,
            )
            return ScopedCredential(
                access_key=assumed.access_key,
                secret_key=SecretStr(assumed.secret_key),
                session_token=SecretStr(assumed.session_token),
                expires_at=assumed.expires_at,
                target_account_ref=target_account_ref,
                session_label=session_label,
            )

        try:
            credential = await retry_async(
                _assume,
                policy=self.policy.retry,
                clock=self.clock,
                description=f"assume_role {role_ref}",
                logger=self.logger,
                rng=self._rng,
            )
        except RetryExhausted as exc:
            raise AuthTransient(str(exc)) from exc.last_error
        record_metric(self.logger_manager, "credentials_acquired")
        self.logger.info(
            f"Assumed {role_ref} as {session_label}, expires {credential.expires_at.isoformat()}"
        )
        return credential

    def needs_refresh(self, credential: ScopedCredential) -> bool:
        remaining = credential.expires_at - self.clock.now()
        return remaining <= timedelta(seconds=self.policy.grace_window_s)

    async def ensure_valid(self, credential: ScopedCredential) -> ScopedCredential:
        """Return `credential` unchanged, or a fresh one if it is near expiry."""
        if not self.needs_refresh(credential):
            return credential
        self.logger.info(
            f"Refreshing credential for {credential.session_label} "
            f"(expires {credential.expires_at.isoformat()})"
        )
        record_metric(self.logger_manager, "credentials_refreshed")
        return await self.acquire(
            credential.target_account_ref, credential.session_label
        )
