from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantinfra.apps.api.response import error_response
from tenantinfra.core.errors import TenantInfraError, WorkflowFailedError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_FAILURE",
    503: "SERVICE_UNAVAILABLE",
}

# Caller-facing mapping for terminal workflow failures. Messages stay generic so
# credential and template details never reach API clients.
_PROVISIONING_FAILURES: dict[str, tuple[int, str, str]] = {
    "TRUST_DENIED": (
        403,
        "TENANT_PROVISIONING_FORBIDDEN",
        "Tenant provisioning failed: the target account refused access",
    ),
    "OPERATION_IN_PROGRESS": (
        409,
        "TENANT_OPERATION_IN_PROGRESS",
        "Another infrastructure operation is already running for this tenant",
    ),
    "VALIDATION_ERROR": (
        422,
        "TENANT_PROVISIONING_INVALID",
        "Tenant provisioning request is invalid",
    ),
}
_DEFAULT_PROVISIONING_FAILURE = (
    502,
    "TENANT_PROVISIONING_FAILED",
    "Tenant infrastructure provisioning failed",
)


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


def provisioning_failure_response(exc: WorkflowFailedError) -> HTTPException:
    status_code, code, message = _PROVISIONING_FAILURES.get(
        exc.error_code or "", _DEFAULT_PROVISIONING_FAILURE
    )
    result = exc.payload.get("result", {})
    details: dict[str, Any] = {
        "tenant_id": result.get("tenantId"),
        "operation": result.get("operation"),
        "reason": exc.error_code,
    }
    if status_code == 422:
        # Validation messages are built from request fields only.
        details["message"] = str(exc)
    return HTTPException(status_code=status_code, detail={"code": code, "message": message, **details})


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def tenant_infra_exception_handler(request: Request, exc: TenantInfraError) -> JSONResponse:
    # Domain errors that escape a route (registry reads, early validation).
    if isinstance(exc, WorkflowFailedError):
        http_exc = provisioning_failure_response(exc)
        return await http_exception_handler(request, http_exc)
    status_code = 422 if exc.code == "VALIDATION_ERROR" else 503 if exc.retryable else 500
    message = str(exc) if status_code == 422 else "Infrastructure registry unavailable"
    payload = error_response(request=request, code=exc.code, message=message)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_api_error path=%s", request.url.path)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
