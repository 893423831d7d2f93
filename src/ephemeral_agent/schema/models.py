"""Strict Pydantic schemas for lifecycle instances and their collaborators."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated
import uuid

from pydantic import ConfigDict, Field, SecretStr, field_validator

from ephemeral_agent.enums import LifecycleState, TerminationReason
from ephemeral_agent.errors import HandleAlreadyBound
from ephemeral_agent.schema.base import TypedBaseModel

AGENT_LABEL_PREFIX = "ephemeral-"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def new_instance_id() -> str:
    return uuid.uuid4().hex


def agent_label_for(correlation_id: str) -> str:
    return f"{AGENT_LABEL_PREFIX}{correlation_id}"


class NetworkPlacement(TypedBaseModel):
    subnet_id: str | None = None
    security_group_ids: tuple[str, ...] = ()
    assign_public_ip: bool = False


class ResourceSpec(TypedBaseModel):
    """Immutable description of the compute unit to create for one run."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    image_ref: Annotated[str, Field(min_length=1)]
    size_class: Annotated[str, Field(min_length=1)]
    identity_profile: str | None = None
    network: NetworkPlacement = Field(default_factory=NetworkPlacement)
    boot_template: str | None = Field(
        None,
        description=(
            "Boot configuration rendered with {agent_label} and {correlation_id} "
            "so the resource can self-register."
        ),
    )
    extra_tags: dict[str, str] = Field(default_factory=dict)


class ScopedCredential(TypedBaseModel):
    """Short-lived credentials for one trust domain. Held in memory only."""

    access_key: str
    secret_key: SecretStr
    session_token: SecretStr
    expires_at: datetime
    target_account_ref: str
    session_label: str

    @field_validator("expires_at")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class ResourceHandle(TypedBaseModel):
    resource_id: Annotated[str, Field(min_length=1)]
    provider: str
    correlation_id: str


class TransitionRecord(TypedBaseModel):
    from_state: LifecycleState | None
    to_state: LifecycleState
    at: datetime = Field(default_factory=_utcnow)
    reason: TerminationReason | None = None
    detail: str | None = None


class LifecycleInstance(TypedBaseModel):
    """One ephemeral agent run, as persisted in the ledger."""

    id: str = Field(default_factory=new_instance_id)
    target_account_ref: Annotated[str, Field(min_length=1)]
    resource_spec: ResourceSpec
    state: LifecycleState = LifecycleState.PENDING
    resource_handle: ResourceHandle | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    ready_at: datetime | None = None
    terminated_at: datetime | None = None
    termination_reason: TerminationReason | None = None
    ready_deadline_s: float = Field(..., gt=0)
    job_deadline_s: float | None = Field(None, gt=0)
    orphan_risk: bool = False
    history: tuple[TransitionRecord, ...] = ()

    @property
    def agent_label(self) -> str:
        """Label the resource registers under with the work-receiving system."""
        return agent_label_for(self.id)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def bind_handle(self, handle: ResourceHandle) -> LifecycleInstance:
        if handle.correlation_id != self.id:
            raise HandleAlreadyBound(
                f"Handle {handle.resource_id} is tagged for {handle.correlation_id}, "
                f"not {self.id}"
            )
        if self.resource_handle is not None and self.resource_handle != handle:
            raise HandleAlreadyBound(
                f"Instance {self.id} is already bound to "
                f"{self.resource_handle.resource_id}"
            )
        return self.model_copy(update={"resource_handle": handle})

    def status(self) -> InstanceStatus:
        return InstanceStatus(
            instance_id=self.id,
            state=self.state,
            termination_reason=self.termination_reason,
            orphan_risk=self.orphan_risk,
            resource_id=self.resource_handle.resource_id
            if self.resource_handle
            else None,
        )


class InstanceStatus(TypedBaseModel):
    instance_id: str
    state: LifecycleState
    termination_reason: TerminationReason | None = None
    orphan_risk: bool = False
    resource_id: str | None = None


class StatusEvent(TypedBaseModel):
    """Pushed to subscribers after every durable transition."""

    instance_id: str
    from_state: LifecycleState | None
    to_state: LifecycleState
    termination_reason: TerminationReason | None = None
    orphan_risk: bool = False
    at: datetime = Field(default_factory=_utcnow)


class EscalationRecord(TypedBaseModel):
    """Durable "needs manual intervention" record for an unconfirmed teardown."""

    instance_id: str
    resource_id: str | None
    target_account_ref: str
    attempts: int = Field(..., ge=0)
    last_error: str
    recorded_at: datetime = Field(default_factory=_utcnow)
