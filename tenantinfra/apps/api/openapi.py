from __future__ import annotations

from typing import Any

from tenantinfra.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
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
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    404: _response("Not found", code="NOT_FOUND", message="No infrastructure record for tenant"),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}

PROVISIONING_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    403: _response(
        "Target account refused the cross-account role",
        code="TENANT_PROVISIONING_FORBIDDEN",
        message="Tenant provisioning failed: the target account refused access",
        details={"tenant_id": "t1", "operation": "CREATE", "reason": "TRUST_DENIED"},
    ),
    409: _response(
        "Another operation owns the tenant record",
        code="TENANT_OPERATION_IN_PROGRESS",
        message="Another infrastructure operation is already running for this tenant",
    ),
    502: _response(
        "Deployment failed or could not be confirmed",
        code="TENANT_PROVISIONING_FAILED",
        message="Tenant infrastructure provisioning failed",
        details={"tenant_id": "t1", "operation": "CREATE", "reason": "STACK_FAILED"},
    ),
}
