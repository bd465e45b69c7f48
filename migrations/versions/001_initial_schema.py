"""Hosts, servers, executions, and payments

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "hosts",
        sa.Column("host_id", sa.Text(), primary_key=True),
        sa.Column("owner_id", sa.Text(), nullable=False, server_default=""),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="online"),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("server_type", sa.Text(), nullable=False, server_default="misc"),
        sa.Column("compatible_server_types", JSONB(), nullable=False,
                  server_default=sa.text("'[]'::jsonb")),
        sa.Column("capabilities", JSONB(), nullable=False,
                  server_default=sa.text("'[]'::jsonb")),
        sa.Column("profit_share_percentage", sa.Numeric(7, 4), nullable=False,
                  server_default="70"),
        # Counters are only ever moved by single-statement increments
        sa.Column("total_executions", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("successful_executions", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("total_earnings_units", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("registered_at", sa.Float(), nullable=False),
        sa.Column("last_seen_at", sa.Float(), nullable=True),
        sa.CheckConstraint("successful_executions >= 0", name="ck_hosts_successful_nonneg"),
        sa.CheckConstraint("successful_executions <= total_executions",
                           name="ck_hosts_successful_le_total"),
        sa.CheckConstraint("total_earnings_units >= 0", name="ck_hosts_earnings_nonneg"),
    )
    op.create_index("idx_hosts_status", "hosts", ["status", "host_id"])
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_hosts_compat_gin "
        "ON hosts USING GIN (compatible_server_types)"
    )

    op.create_table(
        "servers",
        sa.Column("server_id", sa.Text(), primary_key=True),
        sa.Column("owner_id", sa.Text(), nullable=False, server_default=""),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("server_type", sa.Text(), nullable=False, server_default="misc"),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("code", sa.Text(), nullable=True),
        sa.Column("app_url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
    )
    op.create_index("idx_servers_name", "servers", ["name"])

    op.create_table(
        "executions",
        sa.Column("execution_id", sa.Text(), primary_key=True),
        sa.Column("requester_id", sa.Text(), nullable=False),
        sa.Column("host_id", sa.Text(), sa.ForeignKey("hosts.host_id"), nullable=True),
        sa.Column("server_name", sa.Text(), nullable=False),
        sa.Column("server_type", sa.Text(), nullable=False, server_default="misc"),
        sa.Column("function_name", sa.Text(), nullable=False),
        sa.Column("parameters", JSONB(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("cost_units", sa.BigInteger(), nullable=False),
        sa.Column("host_earnings_units", sa.BigInteger(), nullable=True),
        sa.Column("platform_earnings_units", sa.BigInteger(), nullable=True),
        sa.Column("result", JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("execution_time_ms", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("started_at", sa.Float(), nullable=True),
        sa.Column("completed_at", sa.Float(), nullable=True),
        sa.Column("settled_at", sa.Float(), nullable=True),
    )
    op.create_index(
        "idx_executions_requester",
        "executions",
        [sa.text("requester_id"), sa.text("created_at DESC")],
    )
    op.create_index("idx_executions_host", "executions", ["host_id"])

    op.create_table(
        "payments",
        sa.Column("payment_id", sa.Text(), primary_key=True),
        sa.Column("host_id", sa.Text(), sa.ForeignKey("hosts.host_id"), nullable=False),
        sa.Column("execution_id", sa.Text(), sa.ForeignKey("executions.execution_id"),
                  nullable=False, unique=True),
        sa.Column("amount_units", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("paid_at", sa.Float(), nullable=True),
    )
    op.create_index("idx_payments_host", "payments", ["host_id", "status"])


def downgrade() -> None:
    op.drop_index("idx_payments_host")
    op.drop_table("payments")
    op.drop_index("idx_executions_host")
    op.drop_index("idx_executions_requester")
    op.drop_table("executions")
    op.drop_index("idx_servers_name")
    op.drop_table("servers")
    op.execute("DROP INDEX IF EXISTS idx_hosts_compat_gin")
    op.drop_index("idx_hosts_status")
    op.drop_table("hosts")
