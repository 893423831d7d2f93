"""API v1 request handlers.

Each handler returns `(http_status, response_model)` so the transport layer
only serializes.
"""

from __future__ import annotations

from pydantic import BaseModel

from ephemeral_agent.api.v1.errors import HTTP_STATUS_BY_CODE, APIErrorCode
from ephemeral_agent.api.v1.schemas import (
    CreateInstanceRequestV1,
    ErrorResponseV1,
    InstanceResponseV1,
)
from ephemeral_agent.errors import LedgerError, UnknownInstance
from ephemeral_agent.lifecycle.controller import LifecycleController

HandlerResult = tuple[int, BaseModel]


def error_response(code: APIErrorCode, message: str) -> ErrorResponseV1:
    return ErrorResponseV1(
        code=code.value,
        message=message,
        http_status=HTTP_STATUS_BY_CODE[code],
    )


def _error(code: APIErrorCode, message: str) -> HandlerResult:
    response = error_response(code, message)
    return response.http_status, response


async def create_instance_v1(
    controller: LifecycleController, request: CreateInstanceRequestV1
) -> HandlerResult:
    try:
        instance_id = await controller.create_instance(
            request.resource_spec,
            request.target_account_ref,
            ready_deadline=request.ready_deadline_s,
            job_deadline=request.job_deadline_s,
        )
        instance = await controller.get_instance(instance_id)
    except RuntimeError as exc:
        return _error(APIErrorCode.UNAVAILABLE, str(exc))
    except LedgerError as exc:
        return _error(APIErrorCode.INTERNAL_ERROR, str(exc))
    return 202, InstanceResponseV1.from_instance(instance)


async def get_instance_v1(controller: LifecycleController, instance_id: str) -> HandlerResult:
    try:
        instance = await controller.get_instance(instance_id)
    except UnknownInstance:
        return _error(APIErrorCode.NOT_FOUND, f"unknown instance {instance_id}")
    except LedgerError as exc:
        return _error(APIErrorCode.INTERNAL_ERROR, str(exc))
    return 200, InstanceResponseV1.from_instance(instance)


async def cancel_instance_v1(
    controller: LifecycleController, instance_id: str
) -> HandlerResult:
    """Request cancellation; answers with the status at the time of the request."""
    try:
        await controller.cancel(instance_id)
        instance = await controller.get_instance(instance_id)
    except UnknownInstance:
        return _error(APIErrorCode.NOT_FOUND, f"unknown instance {instance_id}")
    except LedgerError as exc:
        return _error(APIErrorCode.INTERNAL_ERROR, str(exc))
    return 202, InstanceResponseV1.from_instance(instance)
