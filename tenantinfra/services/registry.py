from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantinfra.core.config import get_settings
from tenantinfra.core.errors import (
    InvalidStatusTransitionError,
    OperationInProgressError,
    ProvisioningValidationError,
    RegistryError,
)
from tenantinfra.domain.models import InfrastructureEvent, InfrastructureRecord
from tenantinfra.domain.state import InfrastructureStatus, Operation, SubscriptionTier
from tenantinfra.persistence.repos import infrastructure as infrastructure_repo


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _iso(value: datetime | None) -> str | None:
    value = _as_utc(value)
    return value.isoformat() if value else None


class InfrastructureUpdate(BaseModel):
    """Partial update for one infrastructure record; only explicitly set fields are written."""

    status: InfrastructureStatus | None = None
    stack_handle: str | None = None
    stack_name: str | None = None
    table_name: str | None = None
    subscription_tier: SubscriptionTier | None = None
    target_account_id: str | None = None
    status_reason: str | None = None
    operation: Operation | None = None
    poll_attempts: int | None = None
    timestamp: datetime | None = None


def record_to_dict(record: InfrastructureRecord) -> dict[str, Any]:
    return {
        "tenantId": record.tenant_id,
        "subscriptionTier": record.subscription_tier,
        "targetAccountId": record.target_account_id,
        "stackHandle": record.stack_handle,
        "stackName": record.stack_name,
        "tableName": record.table_name,
        "status": record.status,
        "statusReason": record.status_reason,
        "operation": record.operation,
        "pollAttempts": record.poll_attempts,
        "activeExecutionId": record.active_execution_id,
        "lastExecutionId": record.last_execution_id,
        "completedAt": _iso(record.completed_at),
        "lastModified": _iso(record.last_modified),
        "createdAt": _iso(record.created_at),
    }


def event_to_dict(event: InfrastructureEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "tenantId": event.tenant_id,
        "executionId": event.execution_id,
        "operation": event.operation,
        "status": event.status,
        "statusReason": event.status_reason,
        "stackHandle": event.stack_handle,
        "pollAttempts": event.poll_attempts,
        "recordedAt": _iso(event.recorded_at),
    }


class RegistryWriter:
    """Sole writer of tenant infrastructure status in the control-plane registry.

    All writes are partial updates against one row per tenant, and every status write
    appends an event so the full transition history survives later operations.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] | None = None,
        *,
        lease_s: int | None = None,
    ) -> None:
        if session_factory is None:
            from tenantinfra.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._lease_s = lease_s if lease_s is not None else get_settings().operation_lease_s

    async def claim_operation(
        self,
        tenant_id: str,
        *,
        execution_id: str,
        operation: Operation,
        subscription_tier: SubscriptionTier,
        target_account_id: str | None,
    ) -> None:
        # Serialize operations per tenant: only one execution may own the record at a time.
        now = _utc_now()
        try:
            async with self._session_factory() as session:
                record = await infrastructure_repo.get_record(session, tenant_id, for_update=True)
                if record is None:
                    try:
                        await infrastructure_repo.insert_record(session, tenant_id, now=now)
                    except IntegrityError:
                        # Another execution inserted the row first; fall through to the claim.
                        await session.rollback()
                claimed = await infrastructure_repo.claim_record(
                    session,
                    tenant_id,
                    execution_id=execution_id,
                    operation=operation.value,
                    now=now,
                    lease_s=self._lease_s,
                )
                if not claimed:
                    await session.rollback()
                    logger.warning(
                        "operation_claim_rejected tenant_id=%s execution_id=%s operation=%s",
                        tenant_id,
                        execution_id,
                        operation.value,
                    )
                    raise OperationInProgressError(
                        f"Another infrastructure operation is in progress for tenant {tenant_id}"
                    )
                fields: dict[str, Any] = {
                    "subscription_tier": subscription_tier.value,
                    "target_account_id": target_account_id,
                }
                if subscription_tier == SubscriptionTier.PUBLIC:
                    # Public tenants never own a stack; drop any handle left from a private tier.
                    fields["stack_handle"] = None
                await infrastructure_repo.apply_fields(session, tenant_id, fields)
                await session.commit()
        except SQLAlchemyError as exc:
            raise RegistryError("Failed to claim infrastructure record") from exc
        logger.info(
            "operation_claimed tenant_id=%s execution_id=%s operation=%s",
            tenant_id,
            execution_id,
            operation.value,
        )

    async def update_infrastructure(
        self,
        tenant_id: str,
        update: InfrastructureUpdate,
        *,
        execution_id: str | None = None,
        release: bool = False,
    ) -> dict[str, Any]:
        fields = update.model_dump(include=update.model_fields_set - {"timestamp"})
        for key in ("status", "subscription_tier", "operation"):
            if fields.get(key) is not None:
                fields[key] = fields[key].value
        now = _utc_now()
        stamp = update.timestamp or now

        try:
            async with self._session_factory() as session:
                record = await infrastructure_repo.get_record(session, tenant_id, for_update=True)
                if record is None:
                    record = await infrastructure_repo.insert_record(session, tenant_id, now=stamp)
                self._check_owner(record, execution_id, now)
                self._check_transition(record, update, execution_id)
                self._check_stack_handle(record, update)

                fields["last_modified"] = stamp
                if update.status is not None and update.status.is_terminal:
                    fields["completed_at"] = stamp
                if execution_id is not None:
                    fields["last_execution_id"] = execution_id
                if release:
                    fields["active_execution_id"] = None
                    fields["active_since"] = None
                await infrastructure_repo.apply_fields(session, tenant_id, fields)

                await infrastructure_repo.add_event(
                    session,
                    tenant_id=tenant_id,
                    execution_id=execution_id,
                    operation=fields.get("operation") or record.operation,
                    status=fields.get("status") or record.status,
                    status_reason=fields.get("status_reason"),
                    stack_handle=fields.get("stack_handle", record.stack_handle),
                    poll_attempts=fields.get("poll_attempts"),
                    recorded_at=stamp,
                )
                await session.commit()
                session.expire_all()
                refreshed = await infrastructure_repo.get_record(session, tenant_id)
                snapshot = record_to_dict(refreshed)
        except SQLAlchemyError as exc:
            raise RegistryError("Failed to update infrastructure record") from exc

        logger.info(
            "infrastructure_updated tenant_id=%s execution_id=%s status=%s fields=%s",
            tenant_id,
            execution_id,
            snapshot["status"],
            sorted(fields),
        )
        return snapshot

    def _check_owner(self, record: InfrastructureRecord, execution_id: str | None, now: datetime) -> None:
        owner = record.active_execution_id
        if owner is None or execution_id is None or owner == execution_id:
            return
        since = _as_utc(record.active_since)
        if since is not None and since < now - timedelta(seconds=self._lease_s):
            return
        raise OperationInProgressError(
            f"Infrastructure record for tenant {record.tenant_id} is owned by another execution"
        )

    def _check_transition(
        self,
        record: InfrastructureRecord,
        update: InfrastructureUpdate,
        execution_id: str | None,
    ) -> None:
        if update.status is None:
            return
        try:
            current = InfrastructureStatus(record.status)
        except ValueError:
            return
        # A terminal status is final for the execution that wrote it.
        same_execution = execution_id is None or record.last_execution_id == execution_id
        if same_execution and current.is_terminal and update.status != current:
            raise InvalidStatusTransitionError(
                f"Cannot move tenant {record.tenant_id} from {current.value} to {update.status.value}"
            )

    def _check_stack_handle(self, record: InfrastructureRecord, update: InfrastructureUpdate) -> None:
        if not update.stack_handle:
            return
        tier = update.subscription_tier.value if update.subscription_tier else record.subscription_tier
        if tier == SubscriptionTier.PUBLIC.value:
            raise ProvisioningValidationError("Public tier tenants cannot carry a stack handle")

    async def get_infrastructure(self, tenant_id: str) -> dict[str, Any] | None:
        try:
            async with self._session_factory() as session:
                record = await infrastructure_repo.get_record(session, tenant_id)
                return record_to_dict(record) if record else None
        except SQLAlchemyError as exc:
            raise RegistryError("Failed to read infrastructure record") from exc

    async def list_events(self, tenant_id: str, *, limit: int = 100) -> list[dict[str, Any]]:
        try:
            async with self._session_factory() as session:
                events = await infrastructure_repo.list_events(session, tenant_id, limit=limit)
                return [event_to_dict(event) for event in events]
        except SQLAlchemyError as exc:
            raise RegistryError("Failed to read infrastructure events") from exc
