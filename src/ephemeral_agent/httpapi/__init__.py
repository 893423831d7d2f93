"""
Minimal ASGI HTTP adapter.

A framework-free ASGI application in front of a `LifecycleController`, so a
CI front-end can start, inspect and cancel ephemeral agents over HTTP.

Routes (accepted with or without the `/v1` prefix):
- GET  /health                  -> {"status": "ok", "version": "..."}
- POST /instances               -> start a lifecycle, 202 with its status
- GET  /instances/{id}          -> current status
- POST /instances/{id}/cancel   -> request cancellation, 202 with its status

Error semantics:
- Request parse/validation errors -> structured `ErrorResponseV1` with the
  corresponding HTTP status from `HTTP_STATUS_BY_CODE`.
- Unknown instance ids -> `NOT_FOUND`.
- Unexpected internal failures -> structured `ErrorResponseV1`.

The app must run on the same event loop as the controller it wraps.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
import json
from typing import Any

from pydantic import BaseModel, ValidationError

from ephemeral_agent.api.v1.errors import APIErrorCode
from ephemeral_agent.api.v1.handlers import (
    cancel_instance_v1,
    create_instance_v1,
    error_response,
    get_instance_v1,
)
from ephemeral_agent.api.v1.schemas import CreateInstanceRequestV1
from ephemeral_agent.lifecycle.controller import LifecycleController
from ephemeral_agent.utilities.version import get_runtime_version

ASGIApp = Callable[
    [
        dict[str, Any],
        Callable[[], Awaitable[dict[str, Any]]],
        Callable[[dict[str, Any]], Awaitable[None]],
    ],
    Awaitable[None],
]
Headers = list[tuple[bytes, bytes]]
Send = Callable[[dict[str, Any]], Awaitable[None]]


def _normalize_path(path: str) -> str:
    """Strip the `/v1` prefix and any trailing slash: `/v1/instances/` -> `/instances`."""
    if not path:
        return "/"
    while path.startswith("/v1/"):
        path = path[len("/v1") :]
    if path == "/v1":
        return "/"
    if not path.startswith("/"):
        path = f"/{path}"
    return path.rstrip("/") or "/"


def _json_dumps(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


def _response_messages(
    status: int,
    payload: dict[str, Any],
    headers: Headers | None = None,
) -> Iterable[dict[str, Any]]:
    body = _json_dumps(payload)
    response_headers: Headers = [(b"content-type", b"application/json")]
    if headers:
        response_headers.extend(headers)

    yield {"type": "http.response.start", "status": status, "headers": response_headers}
    yield {"type": "http.response.body", "body": body}


async def _send_json(
    send: Send,
    status: int,
    payload: dict[str, Any],
    headers: Headers | None = None,
) -> None:
    """Send a JSON response via ASGI `send`."""
    for message in _response_messages(status=status, payload=payload, headers=headers):
        await send(message)


async def _send_model(send: Send, status: int, model: BaseModel) -> None:
    await _send_json(send, status=status, payload=model.model_dump(mode="json"))


async def _method_not_allowed(send: Send, allowed: str) -> None:
    await _send_json(
        send,
        status=405,
        payload={"error": "method not allowed"},
        headers=[(b"allow", allowed.encode("ascii"))],
    )


async def _read_body(receive: Callable[[], Awaitable[dict[str, Any]]]) -> bytes:
    """Read the full HTTP request body from ASGI `receive`."""
    chunks: list[bytes] = []
    while True:
        message = await receive()
        if message.get("type") != "http.request":
            continue
        chunks.append(message.get("body", b""))
        if not message.get("more_body", False):
            break
    return b"".join(chunks)


async def _handle_health(method: str, send: Send) -> None:
    if method != "GET":
        await _method_not_allowed(send, "GET")
        return
    await _send_json(
        send,
        status=200,
        payload={"status": "ok", "version": get_runtime_version()},
    )


async def _handle_create(
    controller: LifecycleController,
    method: str,
    receive: Callable[[], Awaitable[dict[str, Any]]],
    send: Send,
) -> None:
    if method != "POST":
        await _method_not_allowed(send, "POST")
        return

    body = await _read_body(receive)
    try:
        raw = json.loads(body.decode("utf-8") or "{}")
        request = CreateInstanceRequestV1.model_validate(raw)
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
        error = error_response(APIErrorCode.VALIDATION_ERROR, str(exc))
        await _send_model(send, error.http_status, error)
        return

    status, response = await create_instance_v1(controller, request)
    await _send_model(send, status, response)


async def _handle_instance(
    controller: LifecycleController,
    method: str,
    parts: list[str],
    send: Send,
) -> None:
    instance_id = parts[0]
    if len(parts) == 1:
        if method != "GET":
            await _method_not_allowed(send, "GET")
            return
        status, response = await get_instance_v1(controller, instance_id)
    elif parts[1:] == ["cancel"]:
        if method != "POST":
            await _method_not_allowed(send, "POST")
            return
        status, response = await cancel_instance_v1(controller, instance_id)
    else:
        await _send_json(send, status=404, payload={"error": "not found"})
        return
    await _send_model(send, status, response)


def create_app(controller: LifecycleController) -> ASGIApp:
    """
    Create the ASGI application bound to `controller`.

    Only `scope["type"] == "http"` is handled; other scope types are ignored.
    """

    async def app(
        scope: dict[str, Any],
        receive: Callable[[], Awaitable[dict[str, Any]]],
        send: Send,
    ) -> None:
        if scope.get("type") != "http":
            return

        method = str(scope.get("method", "GET")).upper()
        path = _normalize_path(str(scope.get("path", "/")))
        segments = [segment for segment in path.split("/") if segment]

        try:
            if path == "/health":
                await _handle_health(method=method, send=send)
            elif path == "/instances":
                await _handle_create(controller, method, receive, send)
            elif segments[:1] == ["instances"] and len(segments) >= 2:
                await _handle_instance(controller, method, segments[1:], send)
            else:
                await _send_json(send, status=404, payload={"error": "not found"})
        except Exception as exc:  # pragma: no cover
            error = error_response(APIErrorCode.INTERNAL_ERROR, str(exc))
            await _send_model(send, error.http_status, error)

    return app


__all__ = ["create_app"]
