from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantinfra.domain.models import InfrastructureEvent, InfrastructureRecord


async def get_record(
    session: AsyncSession,
    tenant_id: str,
    *,
    for_update: bool = False,
) -> InfrastructureRecord | None:
    stmt = select(InfrastructureRecord).where(InfrastructureRecord.tenant_id == tenant_id)
    if for_update:
        # Row lock on Postgres; ignored by SQLite which serializes writers anyway.
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def insert_record(session: AsyncSession, tenant_id: str, *, now: datetime) -> InfrastructureRecord:
    record = InfrastructureRecord(tenant_id=tenant_id, status="UNKNOWN", last_modified=now)
    session.add(record)
    await session.flush()
    return record


async def claim_record(
    session: AsyncSession,
    tenant_id: str,
    *,
    execution_id: str,
    operation: str,
    now: datetime,
    lease_s: int,
) -> bool:
    # Conditional update: succeed only when unclaimed, already ours, or the lease went stale.
    stale_before = now - timedelta(seconds=lease_s)
    result = await session.execute(
        update(InfrastructureRecord)
        .where(
            InfrastructureRecord.tenant_id == tenant_id,
            or_(
                InfrastructureRecord.active_execution_id.is_(None),
                InfrastructureRecord.active_execution_id == execution_id,
                InfrastructureRecord.active_since < stale_before,
            ),
        )
        .values(
            active_execution_id=execution_id,
            active_since=now,
            operation=operation,
            last_modified=now,
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def apply_fields(
    session: AsyncSession,
    tenant_id: str,
    fields: dict[str, Any],
) -> None:
    # Partial attribute update; columns absent from `fields` are left untouched.
    await session.execute(
        update(InfrastructureRecord)
        .where(InfrastructureRecord.tenant_id == tenant_id)
        .values(**fields)
        .execution_options(synchronize_session=False)
    )


async def add_event(
    session: AsyncSession,
    *,
    tenant_id: str,
    execution_id: str | None,
    operation: str | None,
    status: str,
    status_reason: str | None,
    stack_handle: str | None,
    recorded_at: datetime,
    poll_attempts: int | None = None,
) -> InfrastructureEvent:
    event = InfrastructureEvent(
        tenant_id=tenant_id,
        execution_id=execution_id,
        operation=operation,
        status=status,
        status_reason=status_reason,
        stack_handle=stack_handle,
        poll_attempts=poll_attempts,
        recorded_at=recorded_at,
    )
    session.add(event)
    return event


async def list_events(session: AsyncSession, tenant_id: str, *, limit: int = 100) -> list[InfrastructureEvent]:
    # Stable ordering keeps status history deterministic for readers and tests.
    result = await session.execute(
        select(InfrastructureEvent)
        .where(InfrastructureEvent.tenant_id == tenant_id)
        .order_by(InfrastructureEvent.recorded_at, InfrastructureEvent.id)
        .limit(limit)
    )
    return list(result.scalars().all())
