"""Error taxonomy for the lifecycle orchestrator.

Every error carries a `FailureProfile` that tells the owning component whether
to retry locally and tells the controller whether the instance is lost:

- Transient classes (`AuthTransient`, `TeardownTransient`, `ProvisionAmbiguous`)
  are retried inside the component that raised them, with bounded backoff.
- Fatal classes (`AuthDenied`, `ProvisionError`) propagate to the controller,
  which routes the instance through TEARING_DOWN.
- `TeardownUnconfirmed` needs an operator: the controller writes an escalation
  record and reports orphan risk instead of dropping it.
"""

from __future__ import annotations

from dataclasses import dataclass


class EphemeralAgentError(Exception):
    """Base exception for the orchestrator."""


class AuthDenied(EphemeralAgentError):
    """The trust relationship rejected the role assumption."""


class AuthTransient(EphemeralAgentError):
    """Throttling or a transient network failure while assuming a role."""


class ProvisionError(EphemeralAgentError):
    """The provider refused to create the compute unit."""

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or code)
        self.code = code


class ProvisionAmbiguous(EphemeralAgentError):
    """A create request failed in a way that may still have created a resource."""


class ReadinessTimeout(EphemeralAgentError):
    """The resource never registered with the work-receiving system."""


class TeardownTransient(EphemeralAgentError):
    """The provider failed a terminate or describe call transiently."""


class TeardownUnconfirmed(EphemeralAgentError):
    """Termination could not be confirmed after exhausting retries."""

    def __init__(self, resource_id: str | None, attempts: int, last_error: str) -> None:
        target = resource_id or "untracked resources"
        super().__init__(
            f"Teardown of {target} unconfirmed after {attempts} attempts: {last_error}"
        )
        self.resource_id = resource_id
        self.attempts = attempts
        self.last_error = last_error


class ResourceNotFound(EphemeralAgentError):
    """The provider has no record of the resource."""


class RegistryUnavailable(EphemeralAgentError):
    """The work-receiving system could not be queried."""


class LedgerError(EphemeralAgentError):
    """The durable ledger could not read or write a record."""


class InvalidTransition(EphemeralAgentError):
    """A lifecycle transition outside the allowed table was requested."""


class HandleAlreadyBound(EphemeralAgentError):
    """A second resource handle was offered for an instance or handle reuse."""


class UnknownInstance(EphemeralAgentError, KeyError):
    """No lifecycle instance exists with the requested id."""


@dataclass(frozen=True)
class FailureProfile:
    retryable: bool
    fatal_for_instance: bool
    operator_attention: bool


FAILURE_PROFILES: dict[type[EphemeralAgentError], FailureProfile] = {
    EphemeralAgentError: FailureProfile(
        retryable=False, fatal_for_instance=True, operator_attention=False
    ),
    AuthDenied: FailureProfile(
        retryable=False, fatal_for_instance=True, operator_attention=True
    ),
    AuthTransient: FailureProfile(
        retryable=True, fatal_for_instance=False, operator_attention=False
    ),
    ProvisionError: FailureProfile(
        retryable=False, fatal_for_instance=True, operator_attention=False
    ),
    ProvisionAmbiguous: FailureProfile(
        retryable=True, fatal_for_instance=False, operator_attention=False
    ),
    ReadinessTimeout: FailureProfile(
        retryable=False, fatal_for_instance=True, operator_attention=False
    ),
    TeardownTransient: FailureProfile(
        retryable=True, fatal_for_instance=False, operator_attention=False
    ),
    TeardownUnconfirmed: FailureProfile(
        retryable=False, fatal_for_instance=True, operator_attention=True
    ),
    ResourceNotFound: FailureProfile(
        retryable=False, fatal_for_instance=False, operator_attention=False
    ),
    RegistryUnavailable: FailureProfile(
        retryable=True, fatal_for_instance=False, operator_attention=False
    ),
    LedgerError: FailureProfile(
        retryable=False, fatal_for_instance=True, operator_attention=True
    ),
    InvalidTransition: FailureProfile(
        retryable=False, fatal_for_instance=True, operator_attention=False
    ),
    HandleAlreadyBound: FailureProfile(
        retryable=False, fatal_for_instance=True, operator_attention=True
    ),
    UnknownInstance: FailureProfile(
        retryable=False, fatal_for_instance=False, operator_attention=False
    ),
}


def failure_profile_for(error: BaseException | type[BaseException]) -> FailureProfile:
    """Return the profile of the closest taxonomy class in the error's MRO."""
    error_type = error if isinstance(error, type) else type(error)
    for klass in error_type.__mro__:
        profile = FAILURE_PROFILES.get(klass)  # type: ignore[arg-type]
        if profile is not None:
            return profile
    raise RuntimeError(f"Missing failure profile for {error_type.__name__}")


def is_retryable(error: BaseException) -> bool:
    if not isinstance(error, EphemeralAgentError):
        return False
    return failure_profile_for(error).retryable


def _taxonomy_classes() -> set[type[EphemeralAgentError]]:
    pending: list[type[EphemeralAgentError]] = [EphemeralAgentError]
    seen: set[type[EphemeralAgentError]] = set()
    while pending:
        klass = pending.pop()
        if klass in seen:
            continue
        seen.add(klass)
        pending.extend(klass.__subclasses__())
    return seen


if _taxonomy_classes() != set(FAILURE_PROFILES):
    missing = _taxonomy_classes() - set(FAILURE_PROFILES)
    raise RuntimeError(
        "Failure profiles must cover all error classes: "
        f"missing={sorted(klass.__name__ for klass in missing)}"
    )
