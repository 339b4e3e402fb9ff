"""Create accounts, listings, price_history and sync_errors tables

Revision ID: 001_price_reduction_schema
Revises:
Create Date: 2026-10-18

Money columns are integer minor units (pence). Listings are never deleted:
archived rows keep their history, and the live-row uniqueness of
(account_id, external_item_id) is a partial index that ignores them.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001_price_reduction_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def table_exists(table_name: str) -> bool:
    """Check if a table exists in the database."""
    return sa.inspect(op.get_bind()).has_table(table_name)


def upgrade() -> None:
    if not table_exists("accounts"):
        op.create_table(
            "accounts",
            sa.Column("account_id", sa.String(100), primary_key=True),
            sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
            sa.Column("connection_status", sa.String(20), nullable=False, server_default="disconnected"),
            sa.Column("connected_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("ebay_user_id", sa.String(100), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("ix_accounts_connection_status", "accounts", ["connection_status"])

    if not table_exists("listings"):
        op.create_table(
            "listings",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("account_id", sa.String(100), sa.ForeignKey("accounts.account_id"), nullable=False),
            sa.Column("external_item_id", sa.String(50), nullable=False),
            sa.Column("sku", sa.String(100), nullable=True),
            sa.Column("title", sa.String(255), nullable=True),
            sa.Column("current_price", sa.BigInteger(), nullable=False),
            sa.Column("floor_price", sa.BigInteger(), nullable=True),
            sa.Column("reduction_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("reduction_strategy", sa.String(30), nullable=False, server_default="fixed_percentage"),
            sa.Column("strategy_params", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
            sa.Column("status", sa.String(20), nullable=False, server_default="active"),
            sa.Column("listed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("next_reduction_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_reduction_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("claim_token", sa.String(64), nullable=True),
            sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("pending_price", sa.BigInteger(), nullable=True),
            sa.Column("pending_reason", sa.String(255), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("ix_listings_account_id", "listings", ["account_id"])
        op.create_index("ix_listings_status", "listings", ["status"])
        op.create_index("ix_listings_next_reduction_at", "listings", ["next_reduction_at"])
        op.create_index("ix_listings_claim_token", "listings", ["claim_token"])
        op.create_index(
            "ix_listings_eligibility", "listings", ["status", "reduction_enabled", "next_reduction_at"]
        )
        op.create_index(
            "uq_listings_account_item_live",
            "listings",
            ["account_id", "external_item_id"],
            unique=True,
            postgresql_where=sa.text("status <> 'archived'"),
            sqlite_where=sa.text("status <> 'archived'"),
        )

    if not table_exists("price_history"):
        op.create_table(
            "price_history",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
            sa.Column("account_id", sa.String(100), nullable=False),
            sa.Column("external_item_id", sa.String(50), nullable=False),
            sa.Column("old_price", sa.BigInteger(), nullable=False),
            sa.Column("new_price", sa.BigInteger(), nullable=False),
            sa.Column("reduction_amount", sa.BigInteger(), nullable=False),
            sa.Column("strategy", sa.String(30), nullable=True),
            sa.Column("reason", sa.String(255), nullable=True),
            sa.Column("reduction_type", sa.String(20), nullable=False),
            sa.Column("tick_id", sa.String(64), nullable=True),
            sa.Column("change_key", sa.String(64), nullable=False),
            sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("listing_id", "change_key", name="uq_price_history_change"),
        )
        op.create_index("ix_price_history_listing_id", "price_history", ["listing_id"])
        op.create_index("ix_price_history_account_id", "price_history", ["account_id"])
        op.create_index("ix_price_history_external_item_id", "price_history", ["external_item_id"])
        op.create_index("ix_price_history_tick_id", "price_history", ["tick_id"])
        op.create_index("ix_price_history_applied_at", "price_history", ["applied_at"])

    if not table_exists("sync_errors"):
        op.create_table(
            "sync_errors",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("account_id", sa.String(100), nullable=False),
            sa.Column("listing_id", sa.Integer(), nullable=True),
            sa.Column("operation", sa.String(30), nullable=False),
            sa.Column("error_classification", sa.String(60), nullable=False),
            sa.Column("error_code", sa.String(30), nullable=True),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("tick_id", sa.String(64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("ix_sync_errors_account_id", "sync_errors", ["account_id"])
        op.create_index("ix_sync_errors_listing_id", "sync_errors", ["listing_id"])
        op.create_index("ix_sync_errors_operation", "sync_errors", ["operation"])
        op.create_index("ix_sync_errors_error_classification", "sync_errors", ["error_classification"])
        op.create_index("ix_sync_errors_tick_id", "sync_errors", ["tick_id"])
        op.create_index("ix_sync_errors_created_at", "sync_errors", ["created_at"])


def downgrade() -> None:
    op.drop_table("sync_errors")
    op.drop_table("price_history")
    op.drop_table("listings")
    op.drop_table("accounts")
