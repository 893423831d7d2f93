"""Bounded async retry loop shared by the credential and teardown paths."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
import logging
import random
from typing import TYPE_CHECKING, Any, TypeVar

from ephemeral_agent.errors import is_retryable

if TYPE_CHECKING:
    from ephemeral_agent.lifecycle.policy import BackoffPolicy
    from ephemeral_agent.utilities.clock import Clock

T = TypeVar("T")


class RetryExhausted(Exception):
    """Raised by `retry_async` with the last transient error as `__cause__`."""

    def __init__(self, description: str, attempts: int, last_error: BaseException):
        super().__init__(f"{description} failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: BackoffPolicy,
    clock: Clock,
    description: str,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    logger: Any | None = None,
    rng: random.Random | None = None,
) -> T:
    """Run `operation`, retrying errors accepted by `should_retry` with jittered backoff.

    By default the decision comes from the error's failure profile. Other
    errors propagate immediately. When the attempt budget is spent,
    `RetryExhausted` is raised from the last transient error.
    """
    log = logger or logging.getLogger(__name__)
    attempts = max(1, policy.max_attempts)
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if not should_retry(exc):
                raise
            if attempt >= attempts:
                raise RetryExhausted(description, attempt, exc) from exc
            delay = policy.delay_for(attempt, rng)
            log.warning(
                f"{description} attempt {attempt}/{attempts} failed: {exc}; "
                f"retrying in {delay:.2f}s"
            )
            await clock.sleep(delay)
