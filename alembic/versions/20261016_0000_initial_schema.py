"""Initial escrow schema: users, deals, wallets, ledger, audit and stats.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-16 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("external_id", sa.String(64), nullable=False),
        sa.Column("username", sa.String(64), nullable=True),
        sa.Column("reputation", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("successful_deals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("referral_code", sa.String(16), nullable=False),
        sa.Column("referred_by_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["referred_by_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_id"),
        sa.UniqueConstraint("referral_code"),
    )

    op.create_table(
        "user_volumes",
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("asset", sa.String(8), nullable=False),
        sa.Column("volume_sats", sa.BigInteger(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("user_id", "asset"),
    )

    op.create_table(
        "referral_groups",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("title", sa.String(128), nullable=False),
        sa.Column("group_ref", sa.String(64), nullable=True),
        sa.Column("fee_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("total_deals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("group_ref"),
    )

    op.create_table(
        "referral_group_wallets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column("asset", sa.String(8), nullable=False),
        sa.Column("address", sa.String(100), nullable=True),
        sa.Column("earned_sats", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["group_id"], ["referral_groups.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("group_id", "asset", name="uq_referral_group_wallets_asset"),
    )

    op.create_table(
        "deals",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("deal_number", sa.String(40), nullable=False),
        sa.Column("buyer_id", sa.Integer(), nullable=True),
        sa.Column("seller_id", sa.Integer(), nullable=True),
        sa.Column("asset", sa.String(8), nullable=False),
        sa.Column("amount_sats", sa.BigInteger(), nullable=False),
        sa.Column("fee_percentage", sa.Numeric(8, 2), nullable=False),
        sa.Column("fee_sats", sa.BigInteger(), nullable=False),
        sa.Column("terms", sa.Text(), nullable=True),
        sa.Column("referral_group_id", sa.Integer(), nullable=True),
        sa.Column("group_ref", sa.String(64), nullable=True),
        sa.Column("escrow_address", sa.String(100), nullable=True),
        sa.Column("escrow_key_blob", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("is_disputed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("dispute_reason", sa.Text(), nullable=True),
        sa.Column("disputed_by_id", sa.Integer(), nullable=True),
        sa.Column("disputed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("required_confirmations", sa.Integer(), nullable=False),
        sa.Column("observed_confirmations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("funded_sats", sa.BigInteger(), nullable=True),
        sa.Column("release_token", sa.String(64), nullable=True),
        sa.Column("release_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("timeout_minutes", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("funded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("late_payment_detected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["buyer_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["seller_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["disputed_by_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["referral_group_id"], ["referral_groups.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("deal_number"),
        sa.UniqueConstraint("escrow_address"),
    )
    op.create_index("idx_deals_status_expires", "deals", ["status", "expires_at"])
    op.create_index("idx_deals_buyer", "deals", ["buyer_id"])
    op.create_index("idx_deals_seller", "deals", ["seller_id"])

    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("asset", sa.String(8), nullable=False),
        sa.Column("address", sa.String(100), nullable=False),
        sa.Column("label", sa.String(64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "address", name="uq_wallets_user_address"),
    )

    op.create_table(
        "deal_wallets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("deal_id", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(10), nullable=False),
        sa.Column("wallet_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deal_id"], ["deals.id"]),
        sa.ForeignKeyConstraint(["wallet_id"], ["wallets.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("deal_id", "role", name="uq_deal_wallets_role"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("deal_id", sa.Integer(), nullable=False),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("asset", sa.String(8), nullable=False),
        sa.Column("amount_sats", sa.BigInteger(), nullable=False),
        sa.Column("from_address", sa.String(100), nullable=True),
        sa.Column("to_address", sa.String(100), nullable=True),
        sa.Column("tx_hash", sa.String(64), nullable=True),
        sa.Column("network_fee_sats", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("confirmations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(10), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deal_id"], ["deals.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("deal_id", "direction", name="uq_transactions_deal_direction"),
    )
    op.create_index("idx_transactions_status", "transactions", ["status"])
    op.create_index("idx_transactions_hash", "transactions", ["tx_hash"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("deal_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(40), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_audit_log_deal", "audit_log", ["deal_id"])
    op.create_index("idx_audit_log_created", "audit_log", ["created_at"])

    op.create_table(
        "payout_wallets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("asset", sa.String(8), nullable=False),
        sa.Column("address", sa.String(100), nullable=False),
        sa.Column("label", sa.String(64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("asset", "address", name="uq_payout_wallets_asset_address"),
    )
    # At most one default payout wallet per asset.
    op.create_index(
        "uq_payout_wallets_default",
        "payout_wallets",
        ["asset"],
        unique=True,
        postgresql_where=sa.text("is_default"),
        sqlite_where=sa.text("is_default = 1"),
    )

    op.create_table(
        "daily_stats",
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("total_users", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("new_users", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_deals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("new_deals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("released_deals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cancelled_deals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expired_deals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("day"),
    )

    op.create_table(
        "daily_asset_stats",
        sa.Column("day", sa.Date(), nullable=False),
        sa.Column("asset", sa.String(8), nullable=False),
        sa.Column("released_deals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("volume_sats", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("fees_sats", sa.BigInteger(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("day", "asset"),
    )


def downgrade() -> None:
    op.drop_table("daily_asset_stats")
    op.drop_table("daily_stats")
    op.drop_index("uq_payout_wallets_default", table_name="payout_wallets")
    op.drop_table("payout_wallets")
    op.drop_index("idx_audit_log_created", table_name="audit_log")
    op.drop_index("idx_audit_log_deal", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("idx_transactions_hash", table_name="transactions")
    op.drop_index("idx_transactions_status", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("deal_wallets")
    op.drop_table("wallets")
    op.drop_index("idx_deals_seller", table_name="deals")
    op.drop_index("idx_deals_buyer", table_name="deals")
    op.drop_index("idx_deals_status_expires", table_name="deals")
    op.drop_table("deals")
    op.drop_table("referral_group_wallets")
    op.drop_table("referral_groups")
    op.drop_table("user_volumes")
    op.drop_table("users")
