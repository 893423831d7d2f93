"""API v1 request/response schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from ephemeral_agent.enums import LifecycleState, TerminationReason
from ephemeral_agent.schema.models import LifecycleInstance, ResourceSpec


class CreateInstanceRequestV1(BaseModel):
    """Input for starting one ephemeral agent lifecycle."""

    model_config = ConfigDict(extra="forbid")

    resource_spec: ResourceSpec
    target_account_ref: str = Field(
        ...,
        min_length=1,
        max_length=2048,
        description="Role reference in the target account, optionally suffixed with #external-id.",
    )
    ready_deadline_s: float | None = Field(
        None, gt=0, description="Seconds allowed for the agent to register."
    )
    job_deadline_s: float | None = Field(
        None, gt=0, description="Seconds allowed for the job once handed off."
    )


class ErrorResponseV1(BaseModel):
    """Structured error response for API consumers."""

    code: str
    message: str
    http_status: int


class InstanceResponseV1(BaseModel):
    """Externally visible status of a lifecycle instance."""

    instance_id: str
    state: LifecycleState
    termination_reason: TerminationReason | None = None
    orphan_risk: bool = False
    resource_id: str | None = None
    created_at: datetime
    ready_at: datetime | None = None
    terminated_at: datetime | None = None

    @classmethod
    def from_instance(cls, instance: LifecycleInstance) -> InstanceResponseV1:
        return cls(
            instance_id=instance.id,
            state=instance.state,
            termination_reason=instance.termination_reason,
            orphan_risk=instance.orphan_risk,
            resource_id=instance.resource_handle.resource_id
            if instance.resource_handle
            else None,
            created_at=instance.created_at,
            ready_at=instance.ready_at,
            terminated_at=instance.terminated_at,
        )
