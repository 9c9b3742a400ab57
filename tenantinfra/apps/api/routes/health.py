from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from tenantinfra.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantinfra.apps.api.response import SuccessEnvelope, success_response
from tenantinfra.core.config import get_settings

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    execution_mode: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    payload = HealthResponse(
        status="ok",
        execution_mode=get_settings().provisioning_execution_mode.lower(),
    )
    return success_response(request=request, data=payload)
