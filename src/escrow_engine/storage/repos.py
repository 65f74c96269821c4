"""Repository pattern implementations for data access.

This module provides data access for deals, users, wallets, the
transaction ledger, the audit trail, payout configuration, referral groups
and statistics.

Deal state changes go through :meth:`DealRepository._compare_and_set`: a
single conditional ``UPDATE ... WHERE id = :id AND <expected state>`` whose
rowcount tells the caller whether it won. Callers never read-modify-write a
deal's status.
"""

from __future__ import annotations

import logging
import secrets
import string
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import ColumnElement, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from escrow_engine.assets import Asset, from_minor_units
from escrow_engine.domain import (
    CANCELLABLE_STATUSES,
    DISPUTABLE_STATUSES,
    AuditAction,
    DealStatus,
    PartyRole,
    TxDirection,
    TxStatus,
)
from escrow_engine.storage.models import (
    AuditLogModel,
    DailyAssetStatsModel,
    DailyStatsModel,
    DealModel,
    DealWalletModel,
    PayoutWalletModel,
    ReferralGroupModel,
    ReferralGroupWalletModel,
    TransactionModel,
    UserModel,
    UserVolumeModel,
    WalletModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_LENGTH = 8


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ``on_conflict_do_update``."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=UTC)
    return start, start + timedelta(days=1)


# ============================================================================
# DTOs
# ============================================================================


@dataclass
class UserDTO:
    """Data transfer object for users."""

    id: int
    external_id: str
    username: str | None
    reputation: int
    successful_deals: int
    referral_code: str
    referred_by_id: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: UserModel) -> UserDTO:
        return cls(
            id=model.id,
            external_id=model.external_id,
            username=model.username,
            reputation=model.reputation,
            successful_deals=model.successful_deals,
            referral_code=model.referral_code,
            referred_by_id=model.referred_by_id,
            created_at=model.created_at,
        )


@dataclass
class DealDTO:
    """Data transfer object for deals.

    The sealed key blob is deliberately not part of the DTO; only the
    release path reads it, through :meth:`DealRepository.get_key_blob`.
    """

    id: int
    deal_number: str
    buyer_id: int | None
    seller_id: int | None
    asset: Asset
    amount_sats: int
    fee_percentage: Decimal
    fee_sats: int
    status: DealStatus
    required_confirmations: int
    observed_confirmations: int
    timeout_minutes: int
    created_at: datetime
    terms: str | None = None
    referral_group_id: int | None = None
    group_ref: str | None = None
    escrow_address: str | None = None
    is_disputed: bool = False
    dispute_reason: str | None = None
    disputed_at: datetime | None = None
    cancel_reason: str | None = None
    funded_sats: int | None = None
    release_token: str | None = field(default=None, repr=False)
    release_claimed_at: datetime | None = None
    expires_at: datetime | None = None
    funded_at: datetime | None = None
    released_at: datetime | None = None
    cancelled_at: datetime | None = None
    expired_at: datetime | None = None
    reminder_sent_at: datetime | None = None
    late_payment_detected_at: datetime | None = None

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_sats)

    @property
    def fee_amount(self) -> Decimal:
        return from_minor_units(self.fee_sats)

    @property
    def net_amount(self) -> Decimal:
        return from_minor_units(self.amount_sats - self.fee_sats)

    @property
    def funded_amount(self) -> Decimal | None:
        return from_minor_units(self.funded_sats) if self.funded_sats is not None else None

    @property
    def release_in_progress(self) -> bool:
        return self.release_token is not None

    @classmethod
    def from_model(cls, model: DealModel) -> DealDTO:
        return cls(
            id=model.id,
            deal_number=model.deal_number,
            buyer_id=model.buyer_id,
            seller_id=model.seller_id,
            asset=Asset(model.asset),
            amount_sats=model.amount_sats,
            fee_percentage=Decimal(model.fee_percentage),
            fee_sats=model.fee_sats,
            status=DealStatus(model.status),
            required_confirmations=model.required_confirmations,
            observed_confirmations=model.observed_confirmations,
            timeout_minutes=model.timeout_minutes,
            created_at=model.created_at,
            terms=model.terms,
            referral_group_id=model.referral_group_id,
            group_ref=model.group_ref,
            escrow_address=model.escrow_address,
            is_disputed=model.is_disputed,
            dispute_reason=model.dispute_reason,
            disputed_at=model.disputed_at,
            cancel_reason=model.cancel_reason,
            funded_sats=model.funded_sats,
            release_token=model.release_token,
            release_claimed_at=model.release_claimed_at,
            expires_at=model.expires_at,
            funded_at=model.funded_at,
            released_at=model.released_at,
            cancelled_at=model.cancelled_at,
            expired_at=model.expired_at,
            reminder_sent_at=model.reminder_sent_at,
            late_payment_detected_at=model.late_payment_detected_at,
        )


@dataclass
class WalletDTO:
    id: int
    user_id: int
    asset: Asset
    address: str
    label: str | None = None
    is_active: bool = True

    @classmethod
    def from_model(cls, model: WalletModel) -> WalletDTO:
        return cls(
            id=model.id,
            user_id=model.user_id,
            asset=Asset(model.asset),
            address=model.address,
            label=model.label,
            is_active=model.is_active,
        )


@dataclass
class TransactionDTO:
    """Data transfer object for ledger rows."""

    id: int
    deal_id: int
    direction: TxDirection
    asset: Asset
    amount_sats: int
    status: TxStatus
    from_address: str | None = None
    to_address: str | None = None
    tx_hash: str | None = None
    network_fee_sats: int = 0
    confirmations: int = 0
    error: str | None = None
    created_at: datetime | None = None

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_sats)

    @classmethod
    def from_model(cls, model: TransactionModel) -> TransactionDTO:
        return cls(
            id=model.id,
            deal_id=model.deal_id,
            direction=TxDirection(model.direction),
            asset=Asset(model.asset),
            amount_sats=model.amount_sats,
            status=TxStatus(model.status),
            from_address=model.from_address,
            to_address=model.to_address,
            tx_hash=model.tx_hash,
            network_fee_sats=model.network_fee_sats,
            confirmations=model.confirmations,
            error=model.error,
            created_at=model.created_at,
        )


@dataclass
class AuditLogDTO:
    id: int
    action: str
    details: dict[str, Any]
    created_at: datetime
    user_id: int | None = None
    deal_id: int | None = None

    @classmethod
    def from_model(cls, model: AuditLogModel) -> AuditLogDTO:
        return cls(
            id=model.id,
            action=model.action,
            details=dict(model.details or {}),
            created_at=model.created_at,
            user_id=model.user_id,
            deal_id=model.deal_id,
        )


@dataclass
class PayoutWalletDTO:
    id: int
    asset: Asset
    address: str
    is_default: bool
    label: str | None = None

    @classmethod
    def from_model(cls, model: PayoutWalletModel) -> PayoutWalletDTO:
        return cls(
            id=model.id,
            asset=Asset(model.asset),
            address=model.address,
            is_default=model.is_default,
            label=model.label,
        )


@dataclass
class ReferralGroupDTO:
    id: int
    title: str
    fee_percentage: Decimal
    total_deals: int
    is_active: bool
    group_ref: str | None = None

    @classmethod
    def from_model(cls, model: ReferralGroupModel) -> ReferralGroupDTO:
        return cls(
            id=model.id,
            title=model.title,
            fee_percentage=Decimal(model.fee_percentage),
            total_deals=model.total_deals,
            is_active=model.is_active,
            group_ref=model.group_ref,
        )


@dataclass
class ReferralGroupWalletDTO:
    group_id: int
    asset: Asset
    address: str | None
    earned_sats: int

    @classmethod
    def from_model(cls, model: ReferralGroupWalletModel) -> ReferralGroupWalletDTO:
        return cls(
            group_id=model.group_id,
            asset=Asset(model.asset),
            address=model.address,
            earned_sats=model.earned_sats,
        )


@dataclass
class DailyStatsDTO:
    day: date
    total_users: int
    new_users: int
    total_deals: int
    new_deals: int
    released_deals: int
    cancelled_deals: int
    expired_deals: int
    volume_sats: dict[str, int] = field(default_factory=dict)
    fees_sats: dict[str, int] = field(default_factory=dict)


# ============================================================================
# Repositories
# ============================================================================


class UserRepository:
    """Repository for users and their per-asset volume."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, user_id: int) -> UserDTO | None:
        model = await self.session.get(UserModel, user_id, populate_existing=True)
        return UserDTO.from_model(model) if model else None

    async def get_by_external_id(self, external_id: str) -> UserDTO | None:
        result = await self.session.execute(select(UserModel).where(UserModel.external_id == external_id))
        model = result.scalar_one_or_none()
        return UserDTO.from_model(model) if model else None

    async def get_by_referral_code(self, code: str) -> UserDTO | None:
        result = await self.session.execute(select(UserModel).where(UserModel.referral_code == code.upper()))
        model = result.scalar_one_or_none()
        return UserDTO.from_model(model) if model else None

    async def get_or_create(
        self,
        external_id: str,
        *,
        username: str | None = None,
        referred_by_id: int | None = None,
    ) -> tuple[UserDTO, bool]:
        """Return the user for ``external_id``, creating it if needed.

        Returns:
            Tuple of (user, created).
        """
        existing = await self.get_by_external_id(external_id)
        if existing is not None:
            return existing, False

        model = UserModel(
            external_id=external_id,
            username=username,
            reputation=0,
            successful_deals=0,
            referral_code=await self._new_referral_code(),
            referred_by_id=referred_by_id,
        )
        self.session.add(model)
        await self.session.flush()
        return UserDTO.from_model(model), True

    async def _new_referral_code(self) -> str:
        while True:
            code = "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
            if await self.get_by_referral_code(code) is None:
                return code

    async def record_successful_deal(self, user_id: int, asset: Asset, amount_sats: int) -> None:
        """Bump reputation, successful deal count and cumulative volume."""
        await self.session.execute(
            update(UserModel)
            .where(UserModel.id == user_id)
            .values(
                reputation=UserModel.reputation + 1,
                successful_deals=UserModel.successful_deals + 1,
            )
        )
        stmt = _insert_for(self.session, UserVolumeModel).values(
            user_id=user_id, asset=asset.value, volume_sats=amount_sats
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "asset"],
            set_={"volume_sats": UserVolumeModel.volume_sats + stmt.excluded.volume_sats},
        )
        await self.session.execute(stmt)

    async def get_volume(self, user_id: int) -> dict[Asset, Decimal]:
        result = await self.session.execute(select(UserVolumeModel).where(UserVolumeModel.user_id == user_id))
        return {Asset(row.asset): from_minor_units(row.volume_sats) for row in result.scalars()}


class DealRepository:
    """Repository for deals with compare-and-set state transitions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, model: DealModel) -> DealDTO:
        self.session.add(model)
        await self.session.flush()
        return DealDTO.from_model(model)

    async def get(self, deal_id: int) -> DealDTO | None:
        result = await self.session.execute(
            select(DealModel).where(DealModel.id == deal_id).execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return DealDTO.from_model(model) if model else None

    async def get_by_number(self, deal_number: str) -> DealDTO | None:
        result = await self.session.execute(select(DealModel).where(DealModel.deal_number == deal_number))
        model = result.scalar_one_or_none()
        return DealDTO.from_model(model) if model else None

    async def get_key_blob(self, deal_id: int) -> str | None:
        result = await self.session.execute(select(DealModel.escrow_key_blob).where(DealModel.id == deal_id))
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: int,
        *,
        statuses: Iterable[DealStatus] | None = None,
        limit: int = 50,
    ) -> list[DealDTO]:
        stmt = select(DealModel).where((DealModel.buyer_id == user_id) | (DealModel.seller_id == user_id))
        if statuses is not None:
            stmt = stmt.where(DealModel.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(DealModel.created_at.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [DealDTO.from_model(m) for m in result.scalars()]

    async def list_ids_by_status(self, status: DealStatus, *, limit: int = 500) -> list[int]:
        result = await self.session.execute(
            select(DealModel.id).where(DealModel.status == status.value).order_by(DealModel.id).limit(limit)
        )
        return list(result.scalars())

    async def list_overdue_ids(self, now: datetime, *, limit: int = 500) -> list[int]:
        result = await self.session.execute(
            select(DealModel.id)
            .where(DealModel.status == DealStatus.WAITING_PAYMENT.value, DealModel.expires_at < now)
            .order_by(DealModel.expires_at)
            .limit(limit)
        )
        return list(result.scalars())

    async def list_reminder_due_ids(self, now: datetime, window_end: datetime, *, limit: int = 500) -> list[int]:
        result = await self.session.execute(
            select(DealModel.id)
            .where(
                DealModel.status == DealStatus.WAITING_PAYMENT.value,
                DealModel.expires_at > now,
                DealModel.expires_at <= window_end,
                DealModel.reminder_sent_at.is_(None),
            )
            .order_by(DealModel.expires_at)
            .limit(limit)
        )
        return list(result.scalars())

    async def list_stuck_release_ids(self, claimed_before: datetime) -> list[int]:
        """FUNDED deals whose release claim outlived any plausible broadcast."""
        result = await self.session.execute(
            select(DealModel.id).where(
                DealModel.status == DealStatus.FUNDED.value,
                DealModel.release_token.is_not(None),
                DealModel.release_claimed_at < claimed_before,
            )
        )
        return list(result.scalars())

    async def _compare_and_set(
        self,
        deal_id: int,
        conditions: Sequence[ColumnElement[bool]],
        values: dict[str, Any],
    ) -> bool:
        values.setdefault("updated_at", _utcnow())
        result = await self.session.execute(
            update(DealModel)
            .where(DealModel.id == deal_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_terms(
        self,
        deal_id: int,
        *,
        amount_sats: int,
        fee_sats: int,
        fee_percentage: Decimal,
        terms: str | None,
    ) -> bool:
        return await self._compare_and_set(
            deal_id,
            [DealModel.status == DealStatus.PENDING.value],
            {
                "amount_sats": amount_sats,
                "fee_sats": fee_sats,
                "fee_percentage": fee_percentage,
                "terms": terms,
            },
        )

    async def assign_party(self, deal_id: int, role: PartyRole, user_id: int) -> bool:
        column = DealModel.buyer_id if role is PartyRole.BUYER else DealModel.seller_id
        return await self._compare_and_set(
            deal_id,
            [column.is_(None), DealModel.status == DealStatus.PENDING.value],
            {column.key: user_id},
        )

    async def assign_escrow(
        self,
        deal_id: int,
        *,
        address: str,
        key_blob: str,
        expires_at: datetime,
    ) -> bool:
        """PENDING -> WAITING_PAYMENT with a one-time address and sealed key."""
        return await self._compare_and_set(
            deal_id,
            [DealModel.status == DealStatus.PENDING.value, DealModel.escrow_address.is_(None)],
            {
                "escrow_address": address,
                "escrow_key_blob": key_blob,
                "expires_at": expires_at,
                "status": DealStatus.WAITING_PAYMENT.value,
            },
        )

    async def update_observed_confirmations(self, deal_id: int, confirmations: int) -> bool:
        return await self._compare_and_set(
            deal_id,
            [DealModel.status == DealStatus.WAITING_PAYMENT.value],
            {"observed_confirmations": confirmations},
        )

    async def mark_funded(self, deal_id: int, *, funded_sats: int, confirmations: int, now: datetime) -> bool:
        return await self._compare_and_set(
            deal_id,
            [DealModel.status == DealStatus.WAITING_PAYMENT.value],
            {
                "status": DealStatus.FUNDED.value,
                "funded_sats": funded_sats,
                "observed_confirmations": confirmations,
                "funded_at": now,
            },
        )

    async def claim_release(self, deal_id: int, token: str, now: datetime) -> bool:
        """Reserve a FUNDED, undisputed deal for exactly one release attempt."""
        return await self._compare_and_set(
            deal_id,
            [
                DealModel.status == DealStatus.FUNDED.value,
                DealModel.is_disputed.is_(False),
                DealModel.release_token.is_(None),
            ],
            {"release_token": token, "release_claimed_at": now},
        )

    async def clear_release_claim(self, deal_id: int, token: str) -> bool:
        return await self._compare_and_set(
            deal_id,
            [DealModel.status == DealStatus.FUNDED.value, DealModel.release_token == token],
            {"release_token": None, "release_claimed_at": None},
        )

    async def mark_released(self, deal_id: int, token: str, now: datetime) -> bool:
        return await self._compare_and_set(
            deal_id,
            [DealModel.status == DealStatus.FUNDED.value, DealModel.release_token == token],
            {"status": DealStatus.RELEASED.value, "released_at": now, "release_token": None},
        )

    async def cancel(self, deal_id: int, *, expected: DealStatus, reason: str | None, now: datetime) -> bool:
        if expected not in CANCELLABLE_STATUSES:
            return False
        return await self._compare_and_set(
            deal_id,
            [DealModel.status == expected.value],
            {"status": DealStatus.CANCELLED.value, "cancelled_at": now, "cancel_reason": reason},
        )

    async def mark_expired(self, deal_id: int, now: datetime) -> bool:
        return await self._compare_and_set(
            deal_id,
            [DealModel.status == DealStatus.WAITING_PAYMENT.value, DealModel.expires_at < now],
            {"status": DealStatus.EXPIRED.value, "expired_at": now},
        )

    async def extend(self, deal_id: int, *, current_expires_at: datetime, new_expires_at: datetime) -> bool:
        return await self._compare_and_set(
            deal_id,
            [
                DealModel.status == DealStatus.WAITING_PAYMENT.value,
                DealModel.expires_at == current_expires_at,
            ],
            {"expires_at": new_expires_at, "reminder_sent_at": None},
        )

    async def open_dispute(self, deal_id: int, *, user_id: int | None, reason: str, now: datetime) -> bool:
        return await self._compare_and_set(
            deal_id,
            [
                DealModel.status.in_([s.value for s in DISPUTABLE_STATUSES]),
                DealModel.is_disputed.is_(False),
                DealModel.release_token.is_(None),
            ],
            {
                "is_disputed": True,
                "dispute_reason": reason,
                "disputed_by_id": user_id,
                "disputed_at": now,
            },
        )

    async def resolve_dispute(self, deal_id: int) -> bool:
        return await self._compare_and_set(deal_id, [DealModel.is_disputed.is_(True)], {"is_disputed": False})

    async def mark_reminder_sent(self, deal_id: int, now: datetime) -> bool:
        return await self._compare_and_set(
            deal_id,
            [DealModel.status == DealStatus.WAITING_PAYMENT.value, DealModel.reminder_sent_at.is_(None)],
            {"reminder_sent_at": now},
        )

    async def mark_late_payment(self, deal_id: int, now: datetime) -> bool:
        return await self._compare_and_set(
            deal_id,
            [
                DealModel.status.in_([DealStatus.EXPIRED.value, DealStatus.CANCELLED.value]),
                DealModel.late_payment_detected_at.is_(None),
            ],
            {"late_payment_detected_at": now},
        )


class WalletRepository:
    """Repository for user wallets and their deal bindings."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_or_create(
        self,
        user_id: int,
        asset: Asset,
        address: str,
        *,
        label: str | None = None,
    ) -> WalletDTO:
        result = await self.session.execute(
            select(WalletModel).where(WalletModel.user_id == user_id, WalletModel.address == address)
        )
        model = result.scalar_one_or_none()
        if model is None:
            model = WalletModel(user_id=user_id, asset=asset.value, address=address, label=label, is_active=True)
            self.session.add(model)
            await self.session.flush()
        return WalletDTO.from_model(model)

    async def list_for_user(self, user_id: int, *, asset: Asset | None = None) -> list[WalletDTO]:
        stmt = select(WalletModel).where(WalletModel.user_id == user_id, WalletModel.is_active.is_(True))
        if asset is not None:
            stmt = stmt.where(WalletModel.asset == asset.value)
        result = await self.session.execute(stmt.order_by(WalletModel.created_at.desc()))
        return [WalletDTO.from_model(m) for m in result.scalars()]

    async def bind(self, deal_id: int, role: PartyRole, wallet_id: int) -> None:
        """Bind a wallet to a deal role.

        Raises:
            sqlalchemy.exc.IntegrityError: If the role is already bound.
        """
        self.session.add(DealWalletModel(deal_id=deal_id, role=role.value, wallet_id=wallet_id))
        await self.session.flush()

    async def bound_wallets(self, deal_id: int) -> dict[PartyRole, WalletDTO]:
        result = await self.session.execute(
            select(DealWalletModel.role, WalletModel)
            .join(WalletModel, WalletModel.id == DealWalletModel.wallet_id)
            .where(DealWalletModel.deal_id == deal_id)
        )
        return {PartyRole(role): WalletDTO.from_model(wallet) for role, wallet in result.all()}


class TransactionRepository:
    """Repository for the append-only transaction ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(
        self,
        *,
        deal_id: int,
        direction: TxDirection,
        asset: Asset,
        amount_sats: int,
        status: TxStatus,
        from_address: str | None = None,
        to_address: str | None = None,
        tx_hash: str | None = None,
        network_fee_sats: int = 0,
        confirmations: int = 0,
        error: str | None = None,
    ) -> TransactionDTO:
        model = TransactionModel(
            deal_id=deal_id,
            direction=direction.value,
            asset=asset.value,
            amount_sats=amount_sats,
            status=status.value,
            from_address=from_address,
            to_address=to_address,
            tx_hash=tx_hash,
            network_fee_sats=network_fee_sats,
            confirmations=confirmations,
            error=error,
        )
        self.session.add(model)
        await self.session.flush()
        return TransactionDTO.from_model(model)

    async def get(self, tx_id: int) -> TransactionDTO | None:
        model = await self.session.get(TransactionModel, tx_id, populate_existing=True)
        return TransactionDTO.from_model(model) if model else None

    async def list_for_deal(self, deal_id: int) -> list[TransactionDTO]:
        result = await self.session.execute(
            select(TransactionModel).where(TransactionModel.deal_id == deal_id).order_by(TransactionModel.id)
        )
        return [TransactionDTO.from_model(m) for m in result.scalars()]

    async def list_unconfirmed_ids(self, *, limit: int = 500) -> list[int]:
        result = await self.session.execute(
            select(TransactionModel.id)
            .where(TransactionModel.status == TxStatus.PENDING.value, TransactionModel.tx_hash.is_not(None))
            .order_by(TransactionModel.id)
            .limit(limit)
        )
        return list(result.scalars())

    async def advance(self, tx_id: int, *, confirmations: int, status: TxStatus) -> bool:
        """Move confirmations/status forward; never backwards."""
        result = await self.session.execute(
            update(TransactionModel)
            .where(
                TransactionModel.id == tx_id,
                TransactionModel.status == TxStatus.PENDING.value,
                TransactionModel.confirmations <= confirmations,
            )
            .values(confirmations=confirmations, status=status.value, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class AuditRepository:
    """Repository for the append-only audit trail."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(
        self,
        action: AuditAction,
        *,
        deal_id: int | None = None,
        user_id: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.session.add(
            AuditLogModel(action=action.value, deal_id=deal_id, user_id=user_id, details=details or {})
        )
        await self.session.flush()

    async def list_for_deal(self, deal_id: int) -> list[AuditLogDTO]:
        result = await self.session.execute(
            select(AuditLogModel).where(AuditLogModel.deal_id == deal_id).order_by(AuditLogModel.id)
        )
        return [AuditLogDTO.from_model(m) for m in result.scalars()]

    async def prune(self, before: datetime) -> int:
        result = await self.session.execute(delete(AuditLogModel).where(AuditLogModel.created_at < before))
        return result.rowcount or 0


class PayoutWalletRepository:
    """Repository for platform payout wallets."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_default(self, asset: Asset) -> PayoutWalletDTO | None:
        result = await self.session.execute(
            select(PayoutWalletModel).where(
                PayoutWalletModel.asset == asset.value,
                PayoutWalletModel.is_default.is_(True),
                PayoutWalletModel.is_active.is_(True),
            )
        )
        model = result.scalar_one_or_none()
        return PayoutWalletDTO.from_model(model) if model else None

    async def list_active(self, *, asset: Asset | None = None) -> list[PayoutWalletDTO]:
        stmt = select(PayoutWalletModel).where(PayoutWalletModel.is_active.is_(True))
        if asset is not None:
            stmt = stmt.where(PayoutWalletModel.asset == asset.value)
        result = await self.session.execute(stmt.order_by(PayoutWalletModel.asset, PayoutWalletModel.id))
        return [PayoutWalletDTO.from_model(m) for m in result.scalars()]

    async def set_default(self, asset: Asset, address: str, *, label: str | None = None) -> PayoutWalletDTO:
        """Make ``address`` the only default payout wallet for ``asset``."""
        now = _utcnow()
        await self.session.execute(
            update(PayoutWalletModel)
            .where(PayoutWalletModel.asset == asset.value, PayoutWalletModel.is_default.is_(True))
            .values(is_default=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()

        result = await self.session.execute(
            select(PayoutWalletModel).where(
                PayoutWalletModel.asset == asset.value, PayoutWalletModel.address == address
            ).execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        if model is None:
            model = PayoutWalletModel(asset=asset.value, address=address)
            self.session.add(model)
        model.label = label if label is not None else model.label
        model.is_active = True
        model.is_default = True
        model.updated_at = now
        await self.session.flush()
        return PayoutWalletDTO.from_model(model)


class ReferralGroupRepository:
    """Repository for referral groups and their per-asset earnings."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, title: str, fee_percentage: Decimal, *, group_ref: str | None = None) -> ReferralGroupDTO:
        model = ReferralGroupModel(
            title=title, fee_percentage=fee_percentage, group_ref=group_ref, total_deals=0, is_active=True
        )
        self.session.add(model)
        await self.session.flush()
        return ReferralGroupDTO.from_model(model)

    async def get(self, group_id: int) -> ReferralGroupDTO | None:
        model = await self.session.get(ReferralGroupModel, group_id, populate_existing=True)
        return ReferralGroupDTO.from_model(model) if model else None

    async def get_by_group_ref(self, group_ref: str) -> ReferralGroupDTO | None:
        result = await self.session.execute(
            select(ReferralGroupModel).where(ReferralGroupModel.group_ref == group_ref)
        )
        model = result.scalar_one_or_none()
        return ReferralGroupDTO.from_model(model) if model else None

    async def get_wallet(self, group_id: int, asset: Asset) -> ReferralGroupWalletDTO | None:
        result = await self.session.execute(
            select(ReferralGroupWalletModel).where(
                ReferralGroupWalletModel.group_id == group_id,
                ReferralGroupWalletModel.asset == asset.value,
            )
        )
        model = result.scalar_one_or_none()
        return ReferralGroupWalletDTO.from_model(model) if model else None

    async def set_wallet(self, group_id: int, asset: Asset, address: str) -> None:
        stmt = _insert_for(self.session, ReferralGroupWalletModel).values(
            group_id=group_id, asset=asset.value, address=address, earned_sats=0, updated_at=_utcnow()
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["group_id", "asset"],
            set_={"address": stmt.excluded.address, "updated_at": stmt.excluded.updated_at},
        )
        await self.session.execute(stmt)

    async def accrue(self, group_id: int, asset: Asset, earned_sats: int) -> None:
        """Count a referred deal and add the group's share of its fee."""
        await self.session.execute(
            update(ReferralGroupModel)
            .where(ReferralGroupModel.id == group_id)
            .values(total_deals=ReferralGroupModel.total_deals + 1)
        )
        stmt = _insert_for(self.session, ReferralGroupWalletModel).values(
            group_id=group_id, asset=asset.value, address=None, earned_sats=earned_sats, updated_at=_utcnow()
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["group_id", "asset"],
            set_={
                "earned_sats": ReferralGroupWalletModel.earned_sats + stmt.excluded.earned_sats,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)


class StatsRepository:
    """Repository for daily statistics roll-ups."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _count(self, *conditions: ColumnElement[bool], model: type[Any] = DealModel) -> int:
        result = await self.session.execute(select(func.count()).select_from(model).where(*conditions))
        return int(result.scalar_one())

    async def rollup_day(self, day: date) -> DailyStatsDTO:
        """Compute and upsert the statistics for one UTC day."""
        start, end = _day_bounds(day)
        stats = DailyStatsDTO(
            day=day,
            total_users=await self._count(UserModel.created_at < end, model=UserModel),
            new_users=await self._count(UserModel.created_at >= start, UserModel.created_at < end, model=UserModel),
            total_deals=await self._count(DealModel.created_at < end),
            new_deals=await self._count(DealModel.created_at >= start, DealModel.created_at < end),
            released_deals=await self._count(DealModel.released_at >= start, DealModel.released_at < end),
            cancelled_deals=await self._count(DealModel.cancelled_at >= start, DealModel.cancelled_at < end),
            expired_deals=await self._count(DealModel.expired_at >= start, DealModel.expired_at < end),
        )

        values = {
            "total_users": stats.total_users,
            "new_users": stats.new_users,
            "total_deals": stats.total_deals,
            "new_deals": stats.new_deals,
            "released_deals": stats.released_deals,
            "cancelled_deals": stats.cancelled_deals,
            "expired_deals": stats.expired_deals,
            "computed_at": _utcnow(),
        }
        stmt = _insert_for(self.session, DailyStatsModel).values(day=day, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["day"], set_=values)
        await self.session.execute(stmt)

        per_asset = await self.session.execute(
            select(
                DealModel.asset,
                func.count(),
                func.coalesce(func.sum(DealModel.amount_sats), 0),
                func.coalesce(func.sum(DealModel.fee_sats), 0),
            )
            .where(DealModel.released_at >= start, DealModel.released_at < end)
            .group_by(DealModel.asset)
        )
        for asset, count, volume, fees in per_asset.all():
            asset_values = {"released_deals": int(count), "volume_sats": int(volume), "fees_sats": int(fees)}
            asset_stmt = _insert_for(self.session, DailyAssetStatsModel).values(
                day=day, asset=asset, **asset_values
            )
            asset_stmt = asset_stmt.on_conflict_do_update(index_elements=["day", "asset"], set_=asset_values)
            await self.session.execute(asset_stmt)
            stats.volume_sats[asset] = int(volume)
            stats.fees_sats[asset] = int(fees)

        await self.session.flush()
        return stats

    async def get_day(self, day: date) -> DailyStatsModel | None:
        return await self.session.get(DailyStatsModel, day)

    async def prune(self, before: date) -> int:
        result = await self.session.execute(delete(DailyStatsModel).where(DailyStatsModel.day < before))
        asset_result = await self.session.execute(
            delete(DailyAssetStatsModel).where(DailyAssetStatsModel.day < before)
        )
        return (result.rowcount or 0) + (asset_result.rowcount or 0)
