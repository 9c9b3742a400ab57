from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from tenantinfra.core.config import get_settings
from tenantinfra.core.errors import (
    DeploymentSubmissionError,
    DeploymentTransientError,
    StackNotFoundError,
)
from tenantinfra.domain.state import InfrastructureStatus, Operation
from tenantinfra.providers.aws import errors as aws_errors
from tenantinfra.providers.aws.clients import ClientFactory, scoped_client
from tenantinfra.providers.stacks.base import DeploymentResult, DeploymentTarget
from tenantinfra.providers.stacks.templates import (
    derive_stack_name,
    derive_table_name,
    render_tenant_table_template,
    template_body,
)
from tenantinfra.providers.trust.base import ScopedCredential
from tenantinfra.services.resilience import RetryPolicy, retry_async
from tenantinfra.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


async def call_cloudformation(func: Callable[..., Any], **kwargs: Any) -> Any:
    # Offload blocking boto3 calls and record latency for every stack API call.
    start = time.monotonic()
    try:
        response = await asyncio.to_thread(func, **kwargs)
    except Exception:
        record_external_call(
            integration="aws.cloudformation",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=False,
        )
        raise
    record_external_call(
        integration="aws.cloudformation",
        latency_ms=(time.monotonic() - start) * 1000.0,
        success=True,
    )
    return response


async def describe_stack(client: Any, name_or_id: str) -> dict:
    try:
        response = await call_cloudformation(client.describe_stacks, StackName=name_or_id)
    except Exception as exc:
        if aws_errors.is_stack_missing(exc):
            raise StackNotFoundError(name_or_id) from exc
        raise
    stacks = response.get("Stacks") or []
    if not stacks:
        raise StackNotFoundError(name_or_id)
    return stacks[0]


class CloudFormationStackDeployer:
    """Submits and deletes per-tenant private table stacks without waiting on them."""

    def __init__(
        self,
        *,
        stack_name_prefix: str | None = None,
        workspace: str | None = None,
        environment: str | None = None,
        timeout_minutes: int | None = None,
        client_factory: ClientFactory | None = None,
        lookup_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self._prefix = stack_name_prefix or settings.stack_name_prefix
        self._workspace = workspace or settings.workspace
        self._environment = environment or settings.environment
        self._timeout_minutes = timeout_minutes or settings.stack_timeout_minutes
        self._client_factory = client_factory or scoped_client
        self._lookup_policy = lookup_policy or RetryPolicy(
            max_attempts=3,
            base_delay_s=1.0,
            backoff_factor=2.0,
            timeout_s=settings.step_timeout_s,
        )
        self._sleep = sleep

    def stack_name_for(self, tenant_id: str) -> str:
        return derive_stack_name(tenant_id, prefix=self._prefix)

    def table_name_for(self, tenant_id: str) -> str:
        return derive_table_name(tenant_id, prefix=self._prefix, workspace=self._workspace)

    def _classify(self, exc: Exception, action: str) -> Exception:
        if aws_errors.is_transient(exc):
            return DeploymentTransientError(f"Stack {action} temporarily unavailable")
        return DeploymentSubmissionError(
            f"Stack {action} rejected: {aws_errors.error_code(exc) or exc.__class__.__name__}"
        )

    async def _describe_existing(self, client: Any, stack_name: str) -> dict:
        # Describe can briefly lag behind an AlreadyExists answer.
        try:
            return await describe_stack(client, stack_name)
        except StackNotFoundError as exc:
            raise DeploymentTransientError(
                f"Stack {stack_name} reported as existing but could not be described"
            ) from exc
        except Exception as exc:
            raise self._classify(exc, "lookup") from exc

    async def create(self, target: DeploymentTarget, credential: ScopedCredential) -> DeploymentResult:
        credential.ensure_scope(tenant_id=target.tenant_id, target_account_id=target.target_account_id)
        stack_name = self.stack_name_for(target.tenant_id)
        table_name = self.table_name_for(target.tenant_id)
        document = render_tenant_table_template(
            target.tenant_id,
            table_name=table_name,
            environment=self._environment,
            workspace=self._workspace,
        )
        tags = [
            {"Key": "TenantId", "Value": target.tenant_id},
            {"Key": "SubscriptionTier", "Value": "private"},
            {"Key": "Environment", "Value": self._environment},
            {"Key": "CreatedBy", "Value": target.actor or "tenantinfra"},
        ]
        if target.tenant_name:
            tags.append({"Key": "TenantName", "Value": target.tenant_name})

        client = self._client_factory(credential, "cloudformation")
        already_existed = False
        try:
            response = await call_cloudformation(
                client.create_stack,
                StackName=stack_name,
                TemplateBody=template_body(document),
                Tags=tags,
                OnFailure="ROLLBACK",
                TimeoutInMinutes=self._timeout_minutes,
            )
            stack_id = response["StackId"]
        except Exception as exc:
            if aws_errors.error_code(exc) != "AlreadyExistsException":
                raise self._classify(exc, "submission") from exc
            # A previous attempt already submitted this stack; resume from its id.
            existing = await retry_async(
                lambda: self._describe_existing(client, stack_name),
                policy=self._lookup_policy,
                sleep=self._sleep,
            )
            stack_id = existing["StackId"]
            already_existed = True

        logger.info(
            "stack_create_submitted tenant_id=%s stack_name=%s stack_id=%s already_existed=%s",
            target.tenant_id,
            stack_name,
            stack_id,
            already_existed,
        )
        return DeploymentResult(
            operation=Operation.CREATE,
            status=InfrastructureStatus.CREATE_IN_PROGRESS,
            stack_name=stack_name,
            table_name=table_name,
            stack_handle=stack_id,
            requires_polling=True,
            detail={"alreadyExisted": already_existed},
        )

    async def delete(self, target: DeploymentTarget, credential: ScopedCredential) -> DeploymentResult:
        credential.ensure_scope(tenant_id=target.tenant_id, target_account_id=target.target_account_id)
        stack_name = self.stack_name_for(target.tenant_id)
        table_name = self.table_name_for(target.tenant_id)
        # Without a recorded handle, fall back to the deterministic stack name.
        lookup = target.stack_handle or stack_name
        derived = target.stack_handle is None
        if derived:
            logger.info("stack_handle_derived tenant_id=%s stack_name=%s", target.tenant_id, stack_name)

        client = self._client_factory(credential, "cloudformation")
        try:
            existing = await describe_stack(client, lookup)
        except StackNotFoundError:
            existing = None
        except Exception as exc:
            raise self._classify(exc, "lookup") from exc

        if existing is None or existing.get("StackStatus") == "DELETE_COMPLETE":
            logger.info("stack_already_deleted tenant_id=%s stack=%s", target.tenant_id, lookup)
            return DeploymentResult(
                operation=Operation.DELETE,
                status=InfrastructureStatus.DELETE_COMPLETE,
                stack_name=stack_name,
                table_name=table_name,
                stack_handle=existing.get("StackId") if existing else target.stack_handle,
                requires_polling=False,
                detail={"alreadyDeleted": True, "derivedHandle": derived},
            )

        stack_id = existing.get("StackId") or lookup
        if existing.get("StackStatus") != "DELETE_IN_PROGRESS":
            try:
                await call_cloudformation(client.delete_stack, StackName=stack_id)
            except Exception as exc:
                raise self._classify(exc, "deletion") from exc

        logger.info(
            "stack_delete_submitted tenant_id=%s stack_id=%s derived=%s",
            target.tenant_id,
            stack_id,
            derived,
        )
        return DeploymentResult(
            operation=Operation.DELETE,
            status=InfrastructureStatus.DELETE_IN_PROGRESS,
            stack_name=existing.get("StackName") or stack_name,
            table_name=table_name,
            stack_handle=stack_id,
            requires_polling=True,
            detail={"alreadyDeleted": False, "derivedHandle": derived},
        )
