from __future__ import annotations

from typing import Any


class TenantInfraError(Exception):
    """Base error for tenantinfra."""

    code = "INTERNAL_ERROR"
    retryable = False


class ProvisioningValidationError(TenantInfraError):
    """Bad or missing request field; fail fast without retry."""

    code = "VALIDATION_ERROR"


class TrustDeniedError(TenantInfraError):
    """Target account rejected the cross-account role assumption."""

    code = "TRUST_DENIED"


class TrustUnavailableError(TenantInfraError):
    """Transient STS/network failure while assuming the role."""

    code = "TRUST_UNAVAILABLE"
    retryable = True


class DeploymentSubmissionError(TenantInfraError):
    """Stack service or shared table rejected the request."""

    code = "DEPLOYMENT_REJECTED"


class DeploymentTransientError(TenantInfraError):
    """Transient failure talking to the stack service or shared table."""

    code = "DEPLOYMENT_UNAVAILABLE"
    retryable = True

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class StackNotFoundError(TenantInfraError):
    """Referenced stack does not exist; meaning depends on the operation."""

    code = "STACK_NOT_FOUND"

    def __init__(self, stack_handle: str) -> None:
        super().__init__(f"Stack not found: {stack_handle}")
        self.stack_handle = stack_handle


class PollExhaustedError(TenantInfraError):
    """Polling budget spent while the stack was still in progress."""

    code = "POLL_EXHAUSTED"


class OperationInProgressError(TenantInfraError):
    """Another execution already owns this tenant's infrastructure record."""

    code = "OPERATION_IN_PROGRESS"


class InvalidStatusTransitionError(TenantInfraError):
    """Status write would regress a terminal status within one execution."""

    code = "INVALID_STATUS_TRANSITION"


class RegistryError(TenantInfraError):
    """Control-plane registry read/write failure."""

    code = "REGISTRY_ERROR"
    retryable = True


class WorkflowFailedError(TenantInfraError):
    """Terminal workflow failure carrying the full output payload."""

    code = "WORKFLOW_FAILED"

    def __init__(self, payload: dict[str, Any]) -> None:
        error = payload.get("result", {}).get("error") or {}
        super().__init__(error.get("message") or "Tenant infrastructure workflow failed")
        self.payload = payload

    @property
    def error_code(self) -> str | None:
        error = self.payload.get("result", {}).get("error") or {}
        return error.get("code")
