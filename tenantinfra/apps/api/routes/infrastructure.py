from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tenantinfra.apps.api.deps import get_registry, get_workflow
from tenantinfra.apps.api.errors import provisioning_failure_response
from tenantinfra.apps.api.openapi import DEFAULT_ERROR_RESPONSES, PROVISIONING_ERROR_RESPONSES
from tenantinfra.apps.api.response import SuccessEnvelope, operation_response, success_response
from tenantinfra.core.errors import ProvisioningValidationError, WorkflowFailedError
from tenantinfra.services.provisioning.payload import normalize_request
from tenantinfra.services.provisioning.queue import start_workflow
from tenantinfra.services.provisioning.workflow import ProvisioningWorkflow
from tenantinfra.services.registry import RegistryWriter


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/infrastructure", tags=["infrastructure"], responses=DEFAULT_ERROR_RESPONSES)


class OperationAccepted(BaseModel):
    execution_id: str
    tenant_id: str
    operation: str
    status: str = "ACCEPTED"


class InfrastructureRecordResponse(BaseModel):
    tenantId: str
    subscriptionTier: str | None = None
    targetAccountId: str | None = None
    stackHandle: str | None = None
    stackName: str | None = None
    tableName: str | None = None
    status: str
    statusReason: str | None = None
    operation: str | None = None
    pollAttempts: int | None = None
    activeExecutionId: str | None = None
    lastExecutionId: str | None = None
    completedAt: str | None = None
    lastModified: str | None = None
    createdAt: str | None = None


class InfrastructureEventResponse(BaseModel):
    id: int
    tenantId: str
    executionId: str | None = None
    operation: str | None = None
    status: str
    statusReason: str | None = None
    stackHandle: str | None = None
    pollAttempts: int | None = None
    recordedAt: str | None = None


@router.post("/operations", responses=PROVISIONING_ERROR_RESPONSES)
async def start_operation(
    request: Request,
    payload: dict[str, Any] = Body(...),
    workflow: ProvisioningWorkflow = Depends(get_workflow),
) -> JSONResponse:
    # Reject malformed input before anything is enqueued.
    try:
        provisioning_request = normalize_request(payload)
    except ProvisioningValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail={"code": "TENANT_PROVISIONING_INVALID", "message": str(exc)},
        ) from exc

    try:
        execution, output = await start_workflow(payload, workflow=workflow)
    except WorkflowFailedError as exc:
        logger.warning(
            "provisioning_request_failed tenant_id=%s operation=%s reason=%s",
            provisioning_request.tenant_id,
            provisioning_request.operation.value,
            exc.error_code,
        )
        raise provisioning_failure_response(exc) from exc

    if output is not None:
        return operation_response(
            request=request, data=output, execution_id=execution.execution_id, accepted=False
        )
    accepted = OperationAccepted(
        execution_id=execution.execution_id,
        tenant_id=provisioning_request.tenant_id,
        operation=provisioning_request.operation.value,
    )
    return operation_response(
        request=request, data=accepted, execution_id=execution.execution_id, accepted=True
    )


@router.get("/{tenant_id}", response_model=SuccessEnvelope[InfrastructureRecordResponse])
async def get_infrastructure(
    tenant_id: str,
    request: Request,
    registry: RegistryWriter = Depends(get_registry),
) -> dict:
    record = await registry.get_infrastructure(tenant_id)
    if record is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_FOUND", "message": "No infrastructure record for tenant"},
        )
    return success_response(request=request, data=InfrastructureRecordResponse(**record))


@router.get("/{tenant_id}/events", response_model=SuccessEnvelope[list[InfrastructureEventResponse]])
async def list_infrastructure_events(
    tenant_id: str,
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    registry: RegistryWriter = Depends(get_registry),
) -> dict:
    events = await registry.list_events(tenant_id, limit=limit)
    data = [InfrastructureEventResponse(**event).model_dump() for event in events]
    return success_response(request=request, data=data)
