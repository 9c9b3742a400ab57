from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from tenantinfra.core.errors import ProvisioningValidationError
from tenantinfra.domain.state import Operation, SubscriptionTier, WorkflowState


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProvisioningRequest(BaseModel):
    """One normalized CREATE/DELETE request; immutable once built."""

    model_config = ConfigDict(frozen=True)

    operation: Operation
    tenant_id: str
    tenant_name: str | None = None
    subscription_tier: SubscriptionTier
    target_account_id: str | None = None
    email: str | None = None
    actor: str | None = None
    timestamp: str
    stack_handle: str | None = None


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _section(raw: dict[str, Any], *names: str) -> dict[str, Any]:
    for name in names:
        value = raw.get(name)
        if isinstance(value, dict):
            return value
    return {}


def normalize_request(raw: dict[str, Any]) -> ProvisioningRequest:
    """Accept the nested (tenant/infrastructure/metadata) or flat workflow input.

    Flat inputs may use the registry-era aliases (tenantAccountId, createdBy,
    deletedBy, registeredOn, deletedOn, stackId, accountId ...).
    """
    if not isinstance(raw, dict):
        raise ProvisioningValidationError("Workflow input must be a JSON object")

    tenant = _section(raw, "tenant", "account")
    infrastructure = _section(raw, "infrastructure")
    metadata = _section(raw, "metadata")

    raw_operation = _first(raw.get("operation"), metadata.get("operation"))
    if raw_operation is None:
        raise ProvisioningValidationError("operation is required")
    try:
        operation = Operation(str(raw_operation).upper())
    except ValueError as exc:
        raise ProvisioningValidationError(f"Unsupported operation: {raw_operation!r}") from exc

    tenant_id = _first(tenant.get("id"), tenant.get("tenantId"), raw.get("tenantId"), raw.get("accountId"))
    if not tenant_id or not str(tenant_id).strip():
        raise ProvisioningValidationError("tenantId is required")

    raw_tier = _first(tenant.get("subscriptionTier"), raw.get("subscriptionTier"))
    if raw_tier is None:
        raise ProvisioningValidationError("subscriptionTier is required")
    try:
        tier = SubscriptionTier(str(raw_tier).lower())
    except ValueError as exc:
        raise ProvisioningValidationError('subscriptionTier must be "public" or "private"') from exc

    stack_handle = _first(
        raw.get("stackHandle"),
        raw.get("stackId"),
        infrastructure.get("stackHandle"),
        infrastructure.get("stackId"),
    )
    if stack_handle and tier == SubscriptionTier.PUBLIC:
        raise ProvisioningValidationError("stackHandle is only valid for private tier tenants")

    actor = _first(
        raw.get("actor"),
        metadata.get("initiatedBy"),
        metadata.get("actor"),
        raw.get("createdBy") if operation == Operation.CREATE else raw.get("deletedBy"),
    )
    timestamp = _first(
        raw.get("timestamp"),
        metadata.get("timestamp"),
        raw.get("registeredOn") if operation == Operation.CREATE else raw.get("deletedOn"),
    )
    if isinstance(timestamp, datetime):
        timestamp = timestamp.isoformat()

    return ProvisioningRequest(
        operation=operation,
        tenant_id=str(tenant_id).strip(),
        tenant_name=_first(tenant.get("name"), raw.get("tenantName"), raw.get("accountName")),
        subscription_tier=tier,
        target_account_id=_first(
            infrastructure.get("targetAccountId"),
            raw.get("targetAccountId"),
            raw.get("tenantAccountId"),
            raw.get("accountAccountId"),
        ),
        email=_first(tenant.get("email"), raw.get("email")),
        actor=actor,
        timestamp=str(timestamp) if timestamp else _utc_now().isoformat(),
        stack_handle=stack_handle,
    )


class WorkflowExecution(BaseModel):
    """Everything a step needs, carried between steps; credentials never ride along."""

    execution_id: str = Field(default_factory=lambda: uuid4().hex)
    input: dict[str, Any]
    request: ProvisioningRequest | None = None
    state: WorkflowState = WorkflowState.DETERMINE_OPERATION
    # Attempt number of the current task state, reset on every transition.
    attempt: int = 1
    seq: int = 0
    claimed: bool = False
    started_at: datetime = Field(default_factory=_utc_now)
    poll_started_at: datetime | None = None
    poll_iterations: int = 0
    stack_handle: str | None = None
    stack_name: str | None = None
    table_name: str | None = None
    submitted_status: str | None = None
    final_status: str | None = None
    poll_status: str | None = None
    poll_detail: dict[str, Any] = Field(default_factory=dict)
    error: dict[str, Any] | None = None
    output: dict[str, Any] | None = None

    @property
    def finished(self) -> bool:
        return self.output is not None

    @property
    def tenant_id(self) -> str | None:
        if self.request is not None:
            return self.request.tenant_id
        value = self.input.get("tenantId") if isinstance(self.input, dict) else None
        return str(value) if value else None

    @property
    def operation_name(self) -> str | None:
        if self.request is not None:
            return self.request.operation.value
        value = self.input.get("operation") if isinstance(self.input, dict) else None
        return str(value) if value else None


def build_output(execution: WorkflowExecution, *, success: bool, completed_at: datetime) -> dict[str, Any]:
    # Mirror the caller's input and add the infrastructure and result sections.
    request = execution.request
    elapsed_ms = int((completed_at - execution.started_at).total_seconds() * 1000)
    output: dict[str, Any] = dict(execution.input)
    output["infrastructure"] = {
        "stackHandle": execution.stack_handle,
        "stackName": execution.stack_name,
        "status": execution.submitted_status or execution.final_status or "UNKNOWN",
    }
    result: dict[str, Any] = {
        "success": success,
        "executionId": execution.execution_id,
        "operation": execution.operation_name,
        "tenantId": execution.tenant_id,
        "tableName": execution.table_name,
        "stackHandle": execution.stack_handle,
        "subscriptionTier": request.subscription_tier.value if request else execution.input.get("subscriptionTier"),
        "status": execution.final_status,
        "completedAt": completed_at.isoformat(),
        "executionTimeMs": max(elapsed_ms, 0),
        "pollAttempts": execution.poll_iterations,
    }
    if not success:
        result["error"] = execution.error or {"code": "INTERNAL_ERROR", "message": "Tenant infrastructure workflow failed"}
    output["result"] = result
    return output
