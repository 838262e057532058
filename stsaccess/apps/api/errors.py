from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from stsaccess.apps.api.response import error_response, is_versioned_request
from stsaccess.core.errors import (
    CredentialEncryptionError,
    InvalidTaskStateError,
    NotFoundError,
    ProviderConfigError,
    ProvisioningStateConflictError,
    QueueUnavailableError,
    StsAccessError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors mapped to (status, code).
_DOMAIN_ERRORS: list[tuple[type[StsAccessError], int, str]] = [
    (ValidationError, 422, "VALIDATION_ERROR"),
    (NotFoundError, 404, "NOT_FOUND"),
    (InvalidTaskStateError, 409, "TASK_NOT_PENDING"),
    (ProvisioningStateConflictError, 409, "STATE_CONFLICT"),
    (ProviderConfigError, 503, "PROVIDER_NOT_CONFIGURED"),
    (CredentialEncryptionError, 500, "CREDENTIAL_KEY_ERROR"),
    (QueueUnavailableError, 503, "QUEUE_UNAVAILABLE"),
]


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def domain_http_exception(exc: StsAccessError) -> HTTPException:
    # Translate service errors at the route boundary so services stay HTTP-agnostic.
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail={"code": code, "message": str(exc)})
    return HTTPException(status_code=500, detail={"code": "INTERNAL_ERROR", "message": "Provisioning error"})


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def domain_exception_handler(request: Request, exc: StsAccessError) -> JSONResponse:
    http_exc = domain_http_exception(exc)
    return await http_exception_handler(request, http_exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for admin tooling.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_api_error path=%s", request.url.path)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
