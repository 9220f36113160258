from __future__ import annotations

from typing import Any

from dataroom.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", code="INVALID_QUERY", message="start_date must not be after end_date"),
    401: _response("Unauthenticated", code="AUTH_UNAUTHORIZED", message="Missing tenant or user identity"),
    403: _response(
        "Forbidden",
        code="PERMISSION_DENIED",
        message="Permission denied: ROOM_DOWNLOAD_DISABLED",
        details={"reason": "ROOM_DOWNLOAD_DISABLED"},
    ),
    404: _response("Not found", code="NOT_FOUND", message="Data room not found"),
    409: _response("Conflict", code="DUPLICATE_VIEWER", message="a@x.com already has access to this data room"),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    503: _response("Storage unavailable", code="STORAGE_UNAVAILABLE", message="Object store temporarily unavailable"),
}

# The public share route answers every refusal the same way.
SHARE_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    403: _response("Access denied", code="ACCESS_DENIED", message="Access denied"),
    422: DEFAULT_ERROR_RESPONSES[422],
}
