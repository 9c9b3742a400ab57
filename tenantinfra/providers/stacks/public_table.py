from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from tenantinfra.core.config import get_settings
from tenantinfra.core.errors import (
    DeploymentSubmissionError,
    DeploymentTransientError,
    ProvisioningValidationError,
)
from tenantinfra.domain.state import InfrastructureStatus, Operation
from tenantinfra.providers.aws import errors as aws_errors
from tenantinfra.providers.aws.clients import ClientFactory, scoped_client
from tenantinfra.providers.stacks.base import DeploymentResult, DeploymentTarget
from tenantinfra.providers.stacks.templates import public_partition_key
from tenantinfra.providers.trust.base import ScopedCredential
from tenantinfra.services.resilience import RetryPolicy, batch_retry_policy
from tenantinfra.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

# BatchWriteItem accepts at most 25 requests per call.
BATCH_SIZE = 25
INIT_SORT_KEY = "init"


def _chunks(items: list[dict], size: int) -> list[list[dict]]:
    return [items[idx : idx + size] for idx in range(0, len(items), size)]


class PublicTableDeployer:
    """Writes and removes tenant rows in the shared public-tier table."""

    def __init__(
        self,
        *,
        table_name: str | None = None,
        client_factory: ClientFactory | None = None,
        batch_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._table_name = table_name or get_settings().public_table_name
        self._client_factory = client_factory or scoped_client
        self._batch_policy = batch_policy or batch_retry_policy()
        self._sleep = sleep

    @property
    def table_name(self) -> str:
        return self._table_name

    async def _call(self, func: Callable[..., Any], **kwargs: Any) -> Any:
        start = time.monotonic()
        try:
            response = await asyncio.to_thread(func, **kwargs)
        except Exception:
            record_external_call(
                integration="aws.dynamodb",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise
        record_external_call(
            integration="aws.dynamodb",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        return response

    def _classify(self, exc: Exception, action: str) -> Exception:
        if aws_errors.is_transient(exc):
            return DeploymentTransientError(f"Shared table {action} temporarily unavailable")
        return DeploymentSubmissionError(
            f"Shared table {action} rejected: {aws_errors.error_code(exc) or exc.__class__.__name__}"
        )

    def _result(self, operation: Operation, status: InfrastructureStatus, **detail: Any) -> DeploymentResult:
        return DeploymentResult(
            operation=operation,
            status=status,
            stack_name=self._table_name,
            table_name=self._table_name,
            stack_handle=None,
            requires_polling=False,
            detail=detail,
        )

    async def create(self, target: DeploymentTarget, credential: ScopedCredential) -> DeploymentResult:
        credential.ensure_scope(tenant_id=target.tenant_id, target_account_id=target.target_account_id)
        now = datetime.now(timezone.utc).isoformat()
        item: dict[str, dict[str, str]] = {
            "pk": {"S": public_partition_key(target.tenant_id)},
            "sk": {"S": INIT_SORT_KEY},
            "tenantId": {"S": target.tenant_id},
            "name": {"S": target.tenant_name or target.tenant_id},
            "subscriptionTier": {"S": "public"},
            "targetAccountId": {"S": target.target_account_id},
            "status": {"S": "ACTIVE"},
            "createdAt": {"S": target.timestamp or now},
        }
        if target.email:
            item["email"] = {"S": target.email}
        if target.actor:
            item["createdBy"] = {"S": target.actor}

        client = self._client_factory(credential, "dynamodb")
        try:
            await self._call(
                client.put_item,
                TableName=self._table_name,
                Item=item,
                ConditionExpression="attribute_not_exists(pk)",
            )
        except Exception as exc:
            if aws_errors.error_code(exc) == "ConditionalCheckFailedException":
                # Row already written by an earlier attempt; CREATE is idempotent.
                logger.info("public_row_exists tenant_id=%s table=%s", target.tenant_id, self._table_name)
                return self._result(Operation.CREATE, InfrastructureStatus.CREATE_COMPLETE, alreadyExisted=True)
            raise self._classify(exc, "write") from exc

        logger.info("public_row_created tenant_id=%s table=%s", target.tenant_id, self._table_name)
        return self._result(Operation.CREATE, InfrastructureStatus.CREATE_COMPLETE, alreadyExisted=False)

    async def _query_keys(self, client: Any, tenant_id: str) -> list[dict]:
        keys: list[dict] = []
        request: dict[str, Any] = {
            "TableName": self._table_name,
            "KeyConditionExpression": "pk = :pk",
            "ExpressionAttributeValues": {":pk": {"S": public_partition_key(tenant_id)}},
            "ProjectionExpression": "pk, sk",
        }
        while True:
            response = await self._call(client.query, **request)
            for item in response.get("Items", []):
                keys.append({"pk": item["pk"], "sk": item["sk"]})
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return keys
            request["ExclusiveStartKey"] = last_key

    async def _delete_batch(self, client: Any, keys: list[dict]) -> tuple[int, int]:
        pending = [{"DeleteRequest": {"Key": key}} for key in keys]
        deleted = 0
        attempt = 1
        while pending:
            response = await self._call(
                client.batch_write_item,
                RequestItems={self._table_name: pending},
            )
            unprocessed = (response.get("UnprocessedItems") or {}).get(self._table_name) or []
            deleted += len(pending) - len(unprocessed)
            pending = list(unprocessed)
            if not pending or not self._batch_policy.allows_retry(attempt):
                break
            # Back off before re-submitting throttled rows.
            increment_counter("public_batch_retries_total")
            await self._sleep(self._batch_policy.delay_for(attempt))
            attempt += 1
        return deleted, len(pending)

    async def delete(self, target: DeploymentTarget, credential: ScopedCredential) -> DeploymentResult:
        credential.ensure_scope(tenant_id=target.tenant_id, target_account_id=target.target_account_id)
        if target.stack_handle:
            raise ProvisioningValidationError("Public tier tenants have no stack handle")
        client = self._client_factory(credential, "dynamodb")
        try:
            keys = await self._query_keys(client, target.tenant_id)
            deleted = 0
            unprocessed = 0
            for batch in _chunks(keys, BATCH_SIZE):
                batch_deleted, batch_unprocessed = await self._delete_batch(client, batch)
                deleted += batch_deleted
                unprocessed += batch_unprocessed
        except Exception as exc:
            raise self._classify(exc, "delete") from exc

        if unprocessed:
            logger.warning(
                "public_rows_partially_deleted tenant_id=%s deleted=%s unprocessed=%s",
                target.tenant_id,
                deleted,
                unprocessed,
            )
            # Deleting already-deleted keys is harmless, so the whole step can be retried.
            raise DeploymentTransientError(
                f"Deleted {deleted} of {deleted + unprocessed} public rows",
                details={"deleted_count": deleted, "unprocessed_count": unprocessed},
            )

        logger.info("public_rows_deleted tenant_id=%s deleted=%s", target.tenant_id, deleted)
        return self._result(Operation.DELETE, InfrastructureStatus.DELETE_COMPLETE, deletedCount=deleted)
