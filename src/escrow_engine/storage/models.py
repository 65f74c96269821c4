"""SQLAlchemy models for persistent storage.

This module defines the database schema for deals, parties and their
wallets, the on-chain transaction ledger, the audit trail, platform payout
configuration, referral groups and daily statistics.

Money columns hold integer minor units (``*_sats``); deals are never
hard-deleted.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from escrow_engine.storage.types import UTCDateTime


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class UserModel(Base):
    """A trading party identified by the command layer's external id."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reputation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_deals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    referral_code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    referred_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)


class UserVolumeModel(Base):
    """Cumulative released volume per user and asset."""

    __tablename__ = "user_volumes"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), primary_key=True)
    asset: Mapped[str] = mapped_column(String(8), primary_key=True)
    volume_sats: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class ReferralGroupModel(Base):
    """A group that earns a share of the platform fee on deals it refers."""

    __tablename__ = "referral_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    group_ref: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    fee_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    total_deals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)


class ReferralGroupWalletModel(Base):
    """Per-asset payout address and accrued earnings of a referral group."""

    __tablename__ = "referral_group_wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("referral_groups.id"), nullable=False)
    asset: Mapped[str] = mapped_column(String(8), nullable=False)
    address: Mapped[str | None] = mapped_column(String(100), nullable=True)
    earned_sats: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (UniqueConstraint("group_id", "asset", name="uq_referral_group_wallets_asset"),)


class DealModel(Base):
    """An escrow deal and its custody state."""

    __tablename__ = "deals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_number: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)

    buyer_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    seller_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    asset: Mapped[str] = mapped_column(String(8), nullable=False)
    amount_sats: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee_percentage: Mapped[Decimal] = mapped_column(Numeric(8, 2), nullable=False)
    fee_sats: Mapped[int] = mapped_column(BigInteger, nullable=False)
    terms: Mapped[str | None] = mapped_column(Text, nullable=True)
    referral_group_id: Mapped[int | None] = mapped_column(ForeignKey("referral_groups.id"), nullable=True)
    group_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)

    escrow_address: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)
    escrow_key_blob: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    is_disputed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    disputed_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    disputed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    required_confirmations: Mapped[int] = mapped_column(Integer, nullable=False)
    observed_confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    funded_sats: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    release_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    release_claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    timeout_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    funded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expired_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    late_payment_detected_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_deals_status_expires", "status", "expires_at"),
        Index("idx_deals_buyer", "buyer_id"),
        Index("idx_deals_seller", "seller_id"),
    )


class WalletModel(Base):
    """A user-owned receiving address."""

    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    asset: Mapped[str] = mapped_column(String(8), nullable=False)
    address: Mapped[str] = mapped_column(String(100), nullable=False)
    label: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (UniqueConstraint("user_id", "address", name="uq_wallets_user_address"),)


class DealWalletModel(Base):
    """Binding of a wallet to a deal role; one per (deal, role)."""

    __tablename__ = "deal_wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(ForeignKey("deals.id"), nullable=False)
    role: Mapped[str] = mapped_column(String(10), nullable=False)
    wallet_id: Mapped[int] = mapped_column(ForeignKey("wallets.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (UniqueConstraint("deal_id", "role", name="uq_deal_wallets_role"),)


class TransactionModel(Base):
    """Ledger row for one on-chain movement of a deal."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(ForeignKey("deals.id"), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    asset: Mapped[str] = mapped_column(String(8), nullable=False)
    amount_sats: Mapped[int] = mapped_column(BigInteger, nullable=False)
    from_address: Mapped[str | None] = mapped_column(String(100), nullable=True)
    to_address: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    network_fee_sats: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(10), nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("deal_id", "direction", name="uq_transactions_deal_direction"),
        Index("idx_transactions_status", "status"),
        Index("idx_transactions_hash", "tx_hash"),
    )


class AuditLogModel(Base):
    """Append-only audit trail."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    deal_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_audit_log_deal", "deal_id"),
        Index("idx_audit_log_created", "created_at"),
    )


class PayoutWalletModel(Base):
    """Platform receiving address for fees; one default per asset."""

    __tablename__ = "payout_wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    asset: Mapped[str] = mapped_column(String(8), nullable=False)
    address: Mapped[str] = mapped_column(String(100), nullable=False)
    label: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("asset", "address", name="uq_payout_wallets_asset_address"),
        Index(
            "uq_payout_wallets_default",
            "asset",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
    )


class DailyStatsModel(Base):
    """Platform-wide counters for one UTC day."""

    __tablename__ = "daily_stats"

    day: Mapped[date] = mapped_column(Date, primary_key=True)
    total_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_deals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_deals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    released_deals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancelled_deals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expired_deals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    computed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)


class DailyAssetStatsModel(Base):
    """Released volume and fees for one UTC day and asset."""

    __tablename__ = "daily_asset_stats"

    day: Mapped[date] = mapped_column(Date, primary_key=True)
    asset: Mapped[str] = mapped_column(String(8), primary_key=True)
    released_deals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    volume_sats: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    fees_sats: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
