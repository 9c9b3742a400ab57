"""Tenant infrastructure lifecycle state machine.

Each state is one step. A step reads the execution payload, does its work, and
returns the next state plus how long to wait before running it. Steps never
sleep themselves, so a queue driver can turn every wait into a deferred job and
release the worker in between.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from tenantinfra.core.config import Settings, get_settings
from tenantinfra.core.errors import (
    InvalidStatusTransitionError,
    OperationInProgressError,
    PollExhaustedError,
    ProvisioningValidationError,
    TenantInfraError,
)
from tenantinfra.domain.state import (
    InfrastructureStatus,
    Operation,
    PollOutcome,
    SubscriptionTier,
    WorkflowState,
)
from tenantinfra.providers.stacks.base import DeploymentTarget, StackStatusPoller
from tenantinfra.providers.stacks.poller import CloudFormationStatusPoller
from tenantinfra.providers.stacks.router import StackDeployerRouter
from tenantinfra.providers.trust.base import ScopedCredential, TrustBroker
from tenantinfra.providers.trust.sts import StsTrustBroker
from tenantinfra.services.provisioning.payload import (
    ProvisioningRequest,
    WorkflowExecution,
    build_output,
    normalize_request,
)
from tenantinfra.services.redaction import sanitize_metadata
from tenantinfra.services.registry import InfrastructureUpdate, RegistryWriter
from tenantinfra.services.resilience import (
    RetryPolicy,
    is_retryable_error,
    deploy_retry_policy,
    poll_retry_policy,
)
from tenantinfra.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StepOutcome:
    execution: WorkflowExecution
    # Seconds to wait before running the next step.
    delay_s: float = 0.0


@dataclass
class ProvisioningServices:
    trust_broker: TrustBroker
    deployers: StackDeployerRouter
    poller: StackStatusPoller
    registry: RegistryWriter


def build_default_services() -> ProvisioningServices:
    return ProvisioningServices(
        trust_broker=StsTrustBroker(),
        deployers=StackDeployerRouter(),
        poller=CloudFormationStatusPoller(),
        registry=RegistryWriter(),
    )


def error_from_exception(exc: BaseException) -> dict[str, Any]:
    # Only domain errors carry caller-safe messages; everything else is generic.
    if isinstance(exc, TenantInfraError):
        error: dict[str, Any] = {"code": exc.code, "message": str(exc) or exc.code}
        details = getattr(exc, "details", None)
        if details:
            error["details"] = sanitize_metadata(details)
        return error
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return {"code": "STEP_TIMEOUT", "message": "Provisioning step timed out"}
    return {"code": "INTERNAL_ERROR", "message": "Unexpected error while provisioning tenant infrastructure"}


class ProvisioningWorkflow:
    def __init__(
        self,
        services: ProvisioningServices | None = None,
        *,
        settings: Settings | None = None,
        deploy_policy: RetryPolicy | None = None,
        poll_policy: RetryPolicy | None = None,
        wait_interval_s: float | None = None,
        poll_max_iterations: int | None = None,
        poll_max_duration_s: float | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        settings = settings or get_settings()
        self._settings = settings
        self._services = services or build_default_services()
        self._deploy_policy = deploy_policy or deploy_retry_policy(settings)
        self._poll_policy = poll_policy or poll_retry_policy(settings)
        self._wait_interval_s = (
            settings.poll_wait_interval_s if wait_interval_s is None else wait_interval_s
        )
        self._poll_max_iterations = (
            settings.poll_max_iterations if poll_max_iterations is None else poll_max_iterations
        )
        self._poll_max_duration_s = (
            settings.poll_max_duration_s if poll_max_duration_s is None else poll_max_duration_s
        )
        self._clock = clock
        self._handlers: dict[WorkflowState, Callable[[WorkflowExecution], Awaitable[StepOutcome]]] = {
            WorkflowState.DETERMINE_OPERATION: self._determine_operation,
            WorkflowState.CREATE_INFRASTRUCTURE: self._deploy,
            WorkflowState.DELETE_INFRASTRUCTURE: self._deploy,
            WorkflowState.POLL_INFRASTRUCTURE: self._poll_infrastructure,
            WorkflowState.CHECK_STATUS: self._check_status,
            WorkflowState.WAIT_AND_POLL: self._wait_and_poll,
            WorkflowState.SUCCESS: self._succeed,
            WorkflowState.FAIL_OPERATION: self._fail,
        }

    @property
    def services(self) -> ProvisioningServices:
        return self._services

    def new_execution(self, raw_input: dict[str, Any], *, execution_id: str | None = None) -> WorkflowExecution:
        execution = WorkflowExecution(input=dict(raw_input or {}), started_at=self._clock())
        if execution_id:
            execution.execution_id = execution_id
        return execution

    def _policy_for(self, state: WorkflowState) -> RetryPolicy:
        if state in (WorkflowState.POLL_INFRASTRUCTURE, WorkflowState.CHECK_STATUS):
            return self._poll_policy
        return self._deploy_policy

    async def advance(self, execution: WorkflowExecution) -> StepOutcome:
        """Run the step for the current state and return the transition it produced."""
        if execution.finished:
            return StepOutcome(execution=execution)
        state = execution.state
        execution = execution.model_copy(deep=True)
        execution.seq += 1
        handler = self._handlers[state]
        policy = self._policy_for(state)
        try:
            return await asyncio.wait_for(handler(execution), timeout=policy.timeout_s)
        except Exception as exc:  # noqa: BLE001 - every step error is classified here
            return self._handle_step_error(execution, state, policy, exc)

    def _handle_step_error(
        self,
        execution: WorkflowExecution,
        state: WorkflowState,
        policy: RetryPolicy,
        exc: Exception,
    ) -> StepOutcome:
        if is_retryable_error(exc) and policy.allows_retry(execution.attempt):
            delay = policy.delay_for(execution.attempt)
            increment_counter("provisioning_step_retries_total")
            logger.warning(
                "provisioning_step_retry execution_id=%s tenant_id=%s state=%s attempt=%s delay_s=%.1f error=%s",
                execution.execution_id,
                execution.tenant_id,
                state.value,
                execution.attempt,
                delay,
                exc.__class__.__name__,
            )
            execution.attempt += 1
            return StepOutcome(execution=execution, delay_s=delay)

        error = error_from_exception(exc)
        if state == WorkflowState.FAIL_OPERATION:
            # The failure write itself failed; finish without touching the registry again.
            logger.error(
                "provisioning_failure_unrecorded execution_id=%s tenant_id=%s error=%s",
                execution.execution_id,
                execution.tenant_id,
                exc,
            )
            execution.error = execution.error or error
            execution.output = build_output(execution, success=False, completed_at=self._clock())
            return StepOutcome(execution=execution)

        if isinstance(exc, TenantInfraError):
            logger.warning(
                "provisioning_step_failed execution_id=%s tenant_id=%s state=%s code=%s error=%s",
                execution.execution_id,
                execution.tenant_id,
                state.value,
                exc.code,
                exc,
            )
        else:
            logger.exception(
                "provisioning_step_crashed execution_id=%s tenant_id=%s state=%s",
                execution.execution_id,
                execution.tenant_id,
                state.value,
            )
        return self._to_fail(execution, error)

    def _transition(self, execution: WorkflowExecution, state: WorkflowState, *, delay_s: float = 0.0) -> StepOutcome:
        execution.state = state
        execution.attempt = 1
        return StepOutcome(execution=execution, delay_s=delay_s)

    def _to_fail(self, execution: WorkflowExecution, error: dict[str, Any]) -> StepOutcome:
        execution.error = error
        return self._transition(execution, WorkflowState.FAIL_OPERATION)

    def _request(self, execution: WorkflowExecution) -> ProvisioningRequest:
        if execution.request is None:
            raise ProvisioningValidationError("Workflow execution has no normalized request")
        return execution.request

    async def _credential(self, request: ProvisioningRequest) -> ScopedCredential:
        # Assume a fresh role per step; credentials never travel in the payload.
        return await self._services.trust_broker.assume_scoped_role(
            request.target_account_id or "",
            request.tenant_id,
        )

    async def _determine_operation(self, execution: WorkflowExecution) -> StepOutcome:
        request = normalize_request(execution.input)
        registry = self._services.registry

        existing = await registry.get_infrastructure(request.tenant_id)
        updates: dict[str, Any] = {}
        if not request.target_account_id:
            recorded = existing.get("targetAccountId") if existing else None
            updates["target_account_id"] = recorded or self._settings.default_target_account_id
            if not updates["target_account_id"]:
                raise ProvisioningValidationError("targetAccountId is required")
        if (
            request.operation == Operation.DELETE
            and request.subscription_tier == SubscriptionTier.PRIVATE
            and not request.stack_handle
            and existing
            and existing.get("stackHandle")
        ):
            # Prefer the handle recorded at CREATE over a derived one.
            updates["stack_handle"] = existing["stackHandle"]
        if updates:
            request = request.model_copy(update=updates)
        execution.request = request

        await registry.claim_operation(
            request.tenant_id,
            execution_id=execution.execution_id,
            operation=request.operation,
            subscription_tier=request.subscription_tier,
            target_account_id=request.target_account_id,
        )
        execution.claimed = True
        logger.info(
            "provisioning_started execution_id=%s tenant_id=%s operation=%s tier=%s",
            execution.execution_id,
            request.tenant_id,
            request.operation.value,
            request.subscription_tier.value,
        )
        if request.operation == Operation.CREATE:
            return self._transition(execution, WorkflowState.CREATE_INFRASTRUCTURE)
        return self._transition(execution, WorkflowState.DELETE_INFRASTRUCTURE)

    async def _deploy(self, execution: WorkflowExecution) -> StepOutcome:
        request = self._request(execution)
        credential = await self._credential(request)
        deployer = self._services.deployers.for_tier(request.subscription_tier)
        target = DeploymentTarget(
            tenant_id=request.tenant_id,
            tenant_name=request.tenant_name,
            target_account_id=request.target_account_id or "",
            email=request.email,
            actor=request.actor,
            timestamp=request.timestamp,
            stack_handle=request.stack_handle,
        )
        if execution.state == WorkflowState.CREATE_INFRASTRUCTURE:
            result = await deployer.create(target, credential)
        else:
            result = await deployer.delete(target, credential)

        if result.stack_handle and request.subscription_tier == SubscriptionTier.PRIVATE:
            execution.stack_handle = result.stack_handle
        execution.stack_name = result.stack_name
        execution.table_name = result.table_name
        execution.submitted_status = result.status.value

        if not result.requires_polling:
            # Public tier and already-deleted stacks are terminal on submission.
            return self._transition(execution, WorkflowState.SUCCESS)

        update = InfrastructureUpdate(
            status=result.status,
            stack_name=result.stack_name,
            table_name=result.table_name,
            operation=request.operation,
            poll_attempts=0,
        )
        if execution.stack_handle:
            update.stack_handle = execution.stack_handle
        await self._services.registry.update_infrastructure(
            request.tenant_id,
            update,
            execution_id=execution.execution_id,
        )
        execution.poll_started_at = self._clock()
        execution.poll_iterations = 0
        return self._transition(execution, WorkflowState.POLL_INFRASTRUCTURE)

    async def _poll_infrastructure(self, execution: WorkflowExecution) -> StepOutcome:
        request = self._request(execution)
        if not execution.stack_handle:
            raise ProvisioningValidationError("No stack handle to poll")
        credential = await self._credential(request)
        result = await self._services.poller.poll_status(
            execution.stack_handle,
            credential,
            request.operation,
        )
        execution.poll_iterations += 1
        execution.poll_status = result.status.value if isinstance(result.status, PollOutcome) else str(result.status)
        execution.poll_detail = sanitize_metadata(result.detail)
        return self._transition(execution, WorkflowState.CHECK_STATUS)

    async def _check_status(self, execution: WorkflowExecution) -> StepOutcome:
        status = execution.poll_status
        if status == PollOutcome.COMPLETE.value:
            return self._transition(execution, WorkflowState.SUCCESS)
        if status == PollOutcome.IN_PROGRESS.value:
            return self._transition(execution, WorkflowState.WAIT_AND_POLL)
        if status == PollOutcome.FAILED.value:
            reason = execution.poll_detail.get("reason") or execution.poll_detail.get("stackStatus")
            error: dict[str, Any] = {
                "code": "STACK_FAILED",
                "message": f"Stack reached a failed state: {reason or 'unknown reason'}",
            }
            if execution.poll_detail.get("events"):
                error["details"] = {"events": execution.poll_detail["events"]}
            return self._to_fail(execution, error)
        return self._to_fail(
            execution,
            {"code": "UNRECOGNIZED_STATUS", "message": f"Unrecognized stack status: {status}"},
        )

    async def _wait_and_poll(self, execution: WorkflowExecution) -> StepOutcome:
        started = execution.poll_started_at or execution.started_at
        elapsed_s = (self._clock() - started).total_seconds()
        # Budget is checked before waiting so the loop can never run unbounded.
        if (
            execution.poll_iterations >= self._poll_max_iterations
            or elapsed_s + self._wait_interval_s > self._poll_max_duration_s
        ):
            exc = PollExhaustedError(
                f"Stack still in progress after {execution.poll_iterations} polls "
                f"({int(elapsed_s)}s); outcome unconfirmed and may still complete out of band"
            )
            increment_counter("provisioning_poll_exhausted_total")
            logger.warning(
                "provisioning_poll_exhausted execution_id=%s tenant_id=%s iterations=%s elapsed_s=%.0f",
                execution.execution_id,
                execution.tenant_id,
                execution.poll_iterations,
                elapsed_s,
            )
            return self._to_fail(execution, error_from_exception(exc))
        return self._transition(execution, WorkflowState.POLL_INFRASTRUCTURE, delay_s=self._wait_interval_s)

    async def _succeed(self, execution: WorkflowExecution) -> StepOutcome:
        request = self._request(execution)
        final_status = InfrastructureStatus.complete(request.operation)
        update = InfrastructureUpdate(
            status=final_status,
            stack_name=execution.stack_name,
            table_name=execution.table_name,
            operation=request.operation,
            status_reason=None,
            poll_attempts=execution.poll_iterations,
        )
        if execution.stack_handle:
            update.stack_handle = execution.stack_handle
        await self._services.registry.update_infrastructure(
            request.tenant_id,
            update,
            execution_id=execution.execution_id,
            release=True,
        )
        execution.final_status = final_status.value
        completed_at = self._clock()
        execution.output = build_output(execution, success=True, completed_at=completed_at)
        increment_counter("provisioning_succeeded_total")
        logger.info(
            "provisioning_succeeded execution_id=%s tenant_id=%s operation=%s status=%s",
            execution.execution_id,
            request.tenant_id,
            request.operation.value,
            final_status.value,
        )
        return StepOutcome(execution=execution)

    async def _fail(self, execution: WorkflowExecution) -> StepOutcome:
        request = execution.request
        error = execution.error or {"code": "INTERNAL_ERROR", "message": "Tenant infrastructure workflow failed"}
        execution.error = error
        if execution.claimed and request is not None:
            final_status = InfrastructureStatus.failed(request.operation)
            # Stack handle is left as recorded; a failure never rewrites it.
            try:
                await self._services.registry.update_infrastructure(
                    request.tenant_id,
                    InfrastructureUpdate(
                        status=final_status,
                        status_reason=f"{error.get('code')}: {error.get('message')}",
                        operation=request.operation,
                        poll_attempts=execution.poll_iterations,
                    ),
                    execution_id=execution.execution_id,
                    release=True,
                )
            except (InvalidStatusTransitionError, OperationInProgressError) as exc:
                logger.error(
                    "provisioning_failure_not_recorded execution_id=%s tenant_id=%s error=%s",
                    execution.execution_id,
                    request.tenant_id,
                    exc,
                )
            else:
                execution.final_status = final_status.value
        execution.output = build_output(execution, success=False, completed_at=self._clock())
        increment_counter("provisioning_failed_total")
        logger.error(
            "provisioning_failed execution_id=%s tenant_id=%s operation=%s code=%s",
            execution.execution_id,
            execution.tenant_id,
            execution.operation_name,
            error.get("code"),
        )
        return StepOutcome(execution=execution)
