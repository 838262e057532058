from __future__ import annotations

from typing import Any

from stsaccess.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Invalid admin token"),
    404: _response("Not found", code="NOT_FOUND", message="Manual task not found"),
    409: _response("Conflict", code="TASK_NOT_PENDING", message="Manual task is already completed"),
    422: _response("Validation error", code="VALIDATION_ERROR", message="Unsupported provisioning mode"),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    503: _response("Service unavailable", code="QUEUE_UNAVAILABLE", message="Provisioning queue unavailable"),
}
