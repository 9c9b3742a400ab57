"""infrastructure registry

Revision ID: 0001_infrastructure_registry
Revises: 
Create Date: 2026-10-16 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_infrastructure_registry"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "infrastructure_records",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("subscription_tier", sa.String(), nullable=True),
        sa.Column("target_account_id", sa.String(), nullable=True),
        sa.Column("stack_handle", sa.String(), nullable=True),
        sa.Column("stack_name", sa.String(), nullable=True),
        sa.Column("table_name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="UNKNOWN"),
        sa.Column("status_reason", sa.Text(), nullable=True),
        sa.Column("operation", sa.String(), nullable=True),
        sa.Column("poll_attempts", sa.Integer(), nullable=True),
        # Claim columns serialize operations per tenant.
        sa.Column("active_execution_id", sa.String(), nullable=True),
        sa.Column("active_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_execution_id", sa.String(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_modified", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "infrastructure_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("execution_id", sa.String(), nullable=True),
        sa.Column("operation", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("status_reason", sa.Text(), nullable=True),
        sa.Column("stack_handle", sa.String(), nullable=True),
        sa.Column("poll_attempts", sa.Integer(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_infrastructure_events_tenant_recorded",
        "infrastructure_events",
        ["tenant_id", "recorded_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_infrastructure_events_tenant_recorded", table_name="infrastructure_events")
    op.drop_table("infrastructure_events")
    op.drop_table("infrastructure_records")
