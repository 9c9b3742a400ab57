from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class InfrastructureRecord(Base):
    __tablename__ = "infrastructure_records"

    # One row per tenant; the primary key enforces the single-record invariant.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    subscription_tier: Mapped[str | None] = mapped_column(String, nullable=True)
    target_account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Only private-tier tenants with a submitted stack carry a handle.
    stack_handle: Mapped[str | None] = mapped_column(String, nullable=True)
    stack_name: Mapped[str | None] = mapped_column(String, nullable=True)
    table_name: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="UNKNOWN", nullable=False)
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    operation: Mapped[str | None] = mapped_column(String, nullable=True)
    # Stack status polls made by the last execution; 0 when nothing needed polling.
    poll_attempts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Single-active-workflow claim; cleared when the owning execution terminates.
    active_execution_id: Mapped[str | None] = mapped_column(String, nullable=True)
    active_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_execution_id: Mapped[str | None] = mapped_column(String, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_modified: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class InfrastructureEvent(Base):
    __tablename__ = "infrastructure_events"
    __table_args__ = (
        Index("ix_infrastructure_events_tenant_recorded", "tenant_id", "recorded_at"),
    )

    # Append-only status history; records are never rewritten.
    # SQLite only autoincrements INTEGER primary keys.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    execution_id: Mapped[str | None] = mapped_column(String, nullable=True)
    operation: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False)
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    stack_handle: Mapped[str | None] = mapped_column(String, nullable=True)
    poll_attempts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
