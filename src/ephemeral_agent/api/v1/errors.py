"""API v1 error taxonomy and HTTP mapping."""

from __future__ import annotations

from enum import Enum


class APIErrorCode(str, Enum):
    """Stable error codes exposed by the API layer."""

    INVALID_REQUEST = "INVALID_REQUEST"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNAVAILABLE = "UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


HTTP_STATUS_BY_CODE: dict[APIErrorCode, int] = {
    APIErrorCode.INVALID_REQUEST: 400,
    APIErrorCode.VALIDATION_ERROR: 400,
    APIErrorCode.NOT_FOUND: 404,
    APIErrorCode.UNAVAILABLE: 503,
    APIErrorCode.INTERNAL_ERROR: 500,
}
