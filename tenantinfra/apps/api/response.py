from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION
    # Set on operation responses so callers can correlate queue jobs and registry events.
    execution_id: str | None = None


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def _meta(request: Request, execution_id: str | None = None) -> dict[str, Any]:
    # The middleware assigns request ids; direct handler calls fall back to a fresh one.
    request_id = getattr(request.state, "request_id", None) or str(uuid4())
    meta = ResponseMeta(request_id=request_id, execution_id=execution_id)
    return meta.model_dump(exclude_none=True)


def success_response(*, request: Request, data: Any, execution_id: str | None = None) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    return {"data": data, "meta": _meta(request, execution_id)}


def operation_response(*, request: Request, data: Any, execution_id: str, accepted: bool) -> JSONResponse:
    # 202 when the first step was queued, 200 when the workflow ran inline to completion.
    return JSONResponse(
        status_code=202 if accepted else 200,
        content=success_response(request=request, data=data, execution_id=execution_id),
    )


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
