"""create_sync_tables

Revision ID: 5b3e8d21c0a4
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "5b3e8d21c0a4"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    op.create_table(
        "product_mappings",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("sku", sa.Text(), nullable=False),
        sa.Column("platform_a_product_id", sa.Text(), nullable=False),
        sa.Column("platform_a_variant_id", sa.Text(), nullable=True),
        sa.Column("platform_b_product_id", sa.Text(), nullable=False),
        sa.Column("platform_b_variant_id", sa.Text(), nullable=True),
        sa.Column("product_name", sa.Text(), nullable=True),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("brand", sa.Text(), nullable=True),
        sa.Column("margin_rate", sa.Float(), nullable=False, server_default="1.15"),
        sa.Column("rounding_strategy", sa.Text(), nullable=False, server_default="nearest"),
        sa.Column("min_price", sa.Numeric(18, 2), nullable=True),
        sa.Column("max_price", sa.Numeric(18, 2), nullable=True),
        sa.Column("sync_direction", sa.Text(), nullable=False, server_default="bidirectional"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sync_status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("sync_error", sa.Text(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_price_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("inventory_discrepancy", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("platform_a_quantity", sa.Integer(), nullable=True),
        sa.Column("platform_b_quantity", sa.Integer(), nullable=True),
        sa.Column("last_price", sa.Numeric(18, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sku"),
    )

    op.create_table(
        "inventory_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("sku", sa.Text(), nullable=False),
        sa.Column("platform", sa.Text(), nullable=False),
        sa.Column("transaction_type", sa.Text(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("previous_quantity", sa.Integer(), nullable=False),
        sa.Column("new_quantity", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Text(), nullable=True),
        sa.Column("line_item_id", sa.Text(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("performed_by", sa.Text(), nullable=False, server_default="system"),
        sa.Column("status", sa.Text(), nullable=False, server_default="completed"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("meta", JSONType, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id", "line_item_id", "transaction_type", name="uq_inventory_tx_order_line_type"),
    )
    op.create_index("ix_inventory_tx_sku_created", "inventory_transactions", ["sku", "created_at"])

    op.create_table(
        "price_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("sku", sa.Text(), nullable=False),
        sa.Column("source_price", sa.Numeric(18, 4), nullable=False),
        sa.Column("exchange_rate", sa.Float(), nullable=False),
        sa.Column("margin_rate", sa.Float(), nullable=False),
        sa.Column("calculated_price", sa.Numeric(18, 2), nullable=False),
        sa.Column("previous_price", sa.Numeric(18, 2), nullable=True),
        sa.Column("applied_rule", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="completed"),
        sa.Column("warnings", JSONType, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_price_history_sku_created", "price_history", ["sku", "created_at"])

    op.create_table(
        "exchange_rates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("base_currency", sa.Text(), nullable=False),
        sa.Column("target_currency", sa.Text(), nullable=False),
        sa.Column("rate", sa.Float(), nullable=False),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("provider", sa.Text(), nullable=True),
        sa.Column("valid_from", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("meta", JSONType, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_exchange_rates_pair_valid", "exchange_rates", ["base_currency", "target_currency", "valid_until"]
    )

    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_type", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Text(), nullable=False, server_default="normal"),
        sa.Column("priority_rank", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors", JSONType, nullable=False),
        sa.Column("warnings", JSONType, nullable=False),
        sa.Column("params", JSONType, nullable=False),
        sa.Column("results", JSONType, nullable=True),
        sa.Column("checkpoint", JSONType, nullable=True),
        sa.Column("retry_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sync_jobs_status_priority", "sync_jobs", ["status", "priority", "created_at"])

    op.create_table(
        "conflict_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("conflict_type", sa.Text(), nullable=False),
        sa.Column("sku", sa.Text(), nullable=False),
        sa.Column("conflict", JSONType, nullable=True),
        sa.Column("resolution", JSONType, nullable=True),
        sa.Column("strategy", sa.Text(), nullable=False),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.Text(), nullable=True),
        sa.Column("meta", JSONType, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_conflict_logs_type_created", "conflict_logs", ["conflict_type", "created_at"])

    op.create_table(
        "sync_locks",
        sa.Column("key", sa.Text(), nullable=False),
        sa.Column("owner", sa.Text(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "price_sync_rules",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("rule_type", sa.Text(), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("margin_rate", sa.Float(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("min_price", sa.Numeric(18, 4), nullable=True),
        sa.Column("max_price", sa.Numeric(18, 4), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("price_sync_rules")
    op.drop_table("sync_locks")
    op.drop_index("ix_conflict_logs_type_created", table_name="conflict_logs")
    op.drop_table("conflict_logs")
    op.drop_index("ix_sync_jobs_status_priority", table_name="sync_jobs")
    op.drop_table("sync_jobs")
    op.drop_index("ix_exchange_rates_pair_valid", table_name="exchange_rates")
    op.drop_table("exchange_rates")
    op.drop_index("ix_price_history_sku_created", table_name="price_history")
    op.drop_table("price_history")
    op.drop_index("ix_inventory_tx_sku_created", table_name="inventory_transactions")
    op.drop_table("inventory_transactions")
    op.drop_table("product_mappings")
