"""Initial PostgreSQL schema: catalog, instances, wallets, billing drivers, SSH keys, activity

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

MONEY = sa.Numeric(14, 4)


def upgrade() -> None:
    # Provider accounts (API token encrypted at rest)
    op.create_table(
        "providers",
        sa.Column("provider_id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("api_token_encrypted", sa.Text(), nullable=False, server_default=""),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        sa.Column("allowed_regions", JSONB(), nullable=False,
                  server_default=sa.text("'[]'::jsonb")),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.Float(), nullable=False),
    )
    op.create_index("idx_providers_kind", "providers", ["kind", "active"])

    op.create_table(
        "plans",
        sa.Column("plan_id", sa.Text(), primary_key=True),
        sa.Column("provider_id", sa.Text(), sa.ForeignKey("providers.provider_id"),
                  nullable=False),
        sa.Column("upstream_plan_id", sa.Text(), nullable=False),
        sa.Column("label", sa.Text(), nullable=False, server_default=""),
        sa.Column("vcpus", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("memory_mb", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("disk_gb", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("transfer_gb", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("base_hourly", MONEY, nullable=False, server_default="0"),
        sa.Column("markup_hourly", MONEY, nullable=False, server_default="0"),
        sa.Column("stopped_rate_factor", sa.Numeric(6, 4), nullable=False, server_default="1"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.Float(), nullable=False),
        sa.CheckConstraint("base_hourly >= 0", name="ck_plans_base_hourly"),
        sa.CheckConstraint("markup_hourly >= 0", name="ck_plans_markup_hourly"),
    )
    op.create_index("idx_plans_provider", "plans", ["provider_id"])

    # Provisioned servers; last_billed_at is the billing checkpoint
    op.create_table(
        "resource_instances",
        sa.Column("instance_id", sa.Text(), primary_key=True),
        sa.Column("organization_id", sa.Text(), nullable=False),
        sa.Column("provider_id", sa.Text(), nullable=False),
        sa.Column("external_id", sa.Text(), nullable=False),
        sa.Column("plan_id", sa.Text(), nullable=False),
        sa.Column("label", sa.Text(), nullable=False, server_default=""),
        sa.Column("region", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("ipv4", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("ipv6", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("last_billed_at", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.Float(), nullable=False),
        sa.UniqueConstraint("provider_id", "external_id"),
    )
    op.create_index("idx_instances_billing", "resource_instances", ["status", "last_billed_at"])
    op.create_index("idx_instances_org", "resource_instances", ["organization_id"])

    op.create_table(
        "wallets",
        sa.Column("organization_id", sa.Text(), primary_key=True),
        sa.Column("balance", MONEY, nullable=False, server_default="0"),
        sa.Column("currency", sa.Text(), nullable=False, server_default="USD"),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.Float(), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_wallets_balance"),
    )

    op.create_table(
        "wallet_transactions",
        sa.Column("tx_id", sa.Text(), primary_key=True),
        sa.Column("organization_id", sa.Text(), nullable=False),
        sa.Column("tx_type", sa.Text(), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("balance_after", MONEY, nullable=False),
        sa.Column("instance_id", sa.Text(), nullable=True),
        sa.Column("hours", MONEY, nullable=True),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.Float(), nullable=False),
    )
    op.create_index("idx_wallet_tx_org", "wallet_transactions", ["organization_id", "created_at"])
    op.create_index("idx_wallet_tx_instance", "wallet_transactions", ["instance_id"])

    # One row per billing driver (standalone daemon or builtin fallback)
    op.create_table(
        "billing_daemon_status",
        sa.Column("daemon_instance_id", sa.Text(), primary_key=True),
        sa.Column("driver_kind", sa.Text(), nullable=False, server_default="daemon"),
        sa.Column("status", sa.Text(), nullable=False, server_default="running"),
        sa.Column("started_at", sa.Float(), nullable=False),
        sa.Column("heartbeat_at", sa.Float(), nullable=False),
        sa.Column("last_run_at", sa.Float(), nullable=True),
        sa.Column("last_run_success", sa.Boolean(), nullable=True),
        sa.Column("instances_billed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("total_hours", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("run_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_run_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("updated_at", sa.Float(), nullable=False),
    )
    op.create_index("idx_daemon_heartbeat", "billing_daemon_status",
                    ["driver_kind", "heartbeat_at"])

    op.create_table(
        "user_ssh_keys",
        sa.Column("key_id", sa.Text(), primary_key=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("public_key", sa.Text(), nullable=False),
        sa.Column("fingerprint", sa.Text(), nullable=False),
        sa.Column("provider_key_ids", JSONB(), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("updated_at", sa.Float(), nullable=False),
        sa.UniqueConstraint("user_id", "fingerprint"),
    )
    op.create_index("idx_ssh_keys_user", "user_ssh_keys", ["user_id"])

    # Append-only, hash-chained activity log
    op.create_table(
        "activity_events",
        sa.Column("event_id", sa.Text(), primary_key=True),
        sa.Column("seq", sa.Integer(), nullable=False, unique=True),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("entity_type", sa.Text(), nullable=False, server_default=""),
        sa.Column("entity_id", sa.Text(), nullable=False, server_default=""),
        sa.Column("actor", sa.Text(), nullable=False, server_default="system"),
        sa.Column("organization_id", sa.Text(), nullable=False, server_default=""),
        sa.Column("user_id", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.Text(), nullable=False, server_default="info"),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        sa.Column("data", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("timestamp", sa.Float(), nullable=False),
        sa.Column("prev_hash", sa.Text(), nullable=False, server_default=""),
        sa.Column("event_hash", sa.Text(), nullable=False, server_default=""),
    )
    op.create_index("idx_activity_entity", "activity_events",
                    ["entity_type", "entity_id", "timestamp"])
    op.create_index("idx_activity_type", "activity_events", ["event_type", "timestamp"])


def downgrade() -> None:
    op.drop_index("idx_activity_type")
    op.drop_index("idx_activity_entity")
    op.drop_table("activity_events")
    op.drop_index("idx_ssh_keys_user")
    op.drop_table("user_ssh_keys")
    op.drop_index("idx_daemon_heartbeat")
    op.drop_table("billing_daemon_status")
    op.drop_index("idx_wallet_tx_instance")
    op.drop_index("idx_wallet_tx_org")
    op.drop_table("wallet_transactions")
    op.drop_table("wallets")
    op.drop_index("idx_instances_org")
    op.drop_index("idx_instances_billing")
    op.drop_table("resource_instances")
    op.drop_index("idx_plans_provider")
    op.drop_table("plans")
    op.drop_index("idx_providers_kind")
    op.drop_table("providers")
