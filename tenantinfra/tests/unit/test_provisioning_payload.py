from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tenantinfra.core.errors import ProvisioningValidationError
from tenantinfra.domain.state import Operation, SubscriptionTier, WorkflowState
from tenantinfra.services.provisioning.payload import WorkflowExecution, build_output, normalize_request


def test_flat_input_is_normalized() -> None:
    request = normalize_request(
        {
            "operation": "create",
            "tenantId": " t1 ",
            "tenantName": "Acme",
            "subscriptionTier": "PUBLIC",
            "targetAccountId": "111111111111",
            "email": "ops@acme.test",
            "createdBy": "admin",
            "registeredOn": "2026-01-01T00:00:00+00:00",
        }
    )

    assert request.operation == Operation.CREATE
    assert request.tenant_id == "t1"
    assert request.tenant_name == "Acme"
    assert request.subscription_tier == SubscriptionTier.PUBLIC
    assert request.actor == "admin"
    assert request.timestamp == "2026-01-01T00:00:00+00:00"
    assert request.stack_handle is None


def test_nested_input_is_normalized() -> None:
    request = normalize_request(
        {
            "operation": "DELETE",
            "tenant": {"id": "t1", "name": "Acme", "subscriptionTier": "private"},
            "infrastructure": {"targetAccountId": "111111111111", "stackHandle": "stack-1"},
            "metadata": {"initiatedBy": "ops", "timestamp": "2026-02-01T00:00:00+00:00"},
        }
    )

    assert request.operation == Operation.DELETE
    assert request.tenant_id == "t1"
    assert request.subscription_tier == SubscriptionTier.PRIVATE
    assert request.target_account_id == "111111111111"
    assert request.stack_handle == "stack-1"
    assert request.actor == "ops"


def test_registry_era_aliases_are_accepted() -> None:
    request = normalize_request(
        {
            "operation": "DELETE",
            "accountId": "t1",
            "accountName": "Acme",
            "subscriptionTier": "private",
            "tenantAccountId": "111111111111",
            "stackId": "stack-1",
            "deletedBy": "admin",
            "deletedOn": "2026-03-01T00:00:00+00:00",
        }
    )

    assert request.tenant_id == "t1"
    assert request.tenant_name == "Acme"
    assert request.target_account_id == "111111111111"
    assert request.stack_handle == "stack-1"
    assert request.actor == "admin"
    assert request.timestamp == "2026-03-01T00:00:00+00:00"


@pytest.mark.parametrize(
    "raw",
    [
        {"tenantId": "t1", "subscriptionTier": "public"},
        {"operation": "UPDATE", "tenantId": "t1", "subscriptionTier": "public"},
        {"operation": "CREATE", "subscriptionTier": "public"},
        {"operation": "CREATE", "tenantId": "   ", "subscriptionTier": "public"},
        {"operation": "CREATE", "tenantId": "t1"},
        {"operation": "CREATE", "tenantId": "t1", "subscriptionTier": "gold"},
        {"operation": "DELETE", "tenantId": "t1", "subscriptionTier": "public", "stackHandle": "stack-1"},
    ],
)
def test_invalid_input_is_rejected(raw) -> None:
    with pytest.raises(ProvisioningValidationError):
        normalize_request(raw)


def test_execution_payload_round_trips_without_credentials() -> None:
    execution = WorkflowExecution(input={"operation": "CREATE", "tenantId": "t1", "subscriptionTier": "public"})
    execution.request = normalize_request(execution.input)

    dumped = execution.model_dump(mode="json")
    restored = WorkflowExecution.model_validate(dumped)

    assert restored.state == WorkflowState.DETERMINE_OPERATION
    assert restored.request == execution.request
    assert not any("secret" in key.lower() or "token" in key.lower() for key in dumped)


def test_failure_output_mirrors_input_and_carries_error() -> None:
    started = datetime(2026, 1, 1, tzinfo=timezone.utc)
    execution = WorkflowExecution(
        input={"operation": "CREATE", "tenantId": "t1", "subscriptionTier": "private", "requestId": "r1"},
        started_at=started,
        error={"code": "TRUST_DENIED", "message": "denied"},
    )
    execution.request = normalize_request(execution.input)

    output = build_output(execution, success=False, completed_at=started + timedelta(seconds=2))

    assert output["requestId"] == "r1"
    assert output["infrastructure"] == {"stackHandle": None, "stackName": None, "status": "UNKNOWN"}
    assert output["result"]["success"] is False
    assert output["result"]["subscriptionTier"] == "private"
    assert output["result"]["executionTimeMs"] == 2000
    assert output["result"]["executionId"] == execution.execution_id
    assert output["result"]["error"] == {"code": "TRUST_DENIED", "message": "denied"}
