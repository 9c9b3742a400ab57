from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantinfra.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    tenant_infra_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantinfra.apps.api.response import API_VERSION
from tenantinfra.apps.api.routes.health import router as health_router
from tenantinfra.apps.api.routes.infrastructure import router as infrastructure_router
from tenantinfra.core.errors import TenantInfraError
from tenantinfra.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Tenant Infrastructure API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(TenantInfraError)
    async def _tenant_infra_exception_handler(request: Request, exc: TenantInfraError):
        return await tenant_infra_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(infrastructure_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
