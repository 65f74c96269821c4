"""Read-only projections over deals for front ends and operators."""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal
from typing import TYPE_CHECKING

from escrow_engine.assets import from_minor_units
from escrow_engine.domain import DealStatus, PartyRole
from escrow_engine.storage.repos import (
    AuditLogDTO,
    AuditRepository,
    DealDTO,
    DealRepository,
    TransactionDTO,
    TransactionRepository,
    UserRepository,
    WalletDTO,
    WalletRepository,
)

if TYPE_CHECKING:
    from escrow_engine.chain.gateway import ChainGateway
    from escrow_engine.storage.database import DatabaseManager


class DealQueries:
    """Lookups that never change state.

    Unknown ids and users yield ``None`` or empty collections instead of
    errors.
    """

    def __init__(self, db: DatabaseManager, gateway: ChainGateway | None = None) -> None:
        self._db = db
        self._gateway = gateway

    async def get_deal(self, deal_id: int) -> DealDTO | None:
        async with self._db.get_async_session() as session:
            return await DealRepository(session).get(deal_id)

    async def get_deal_by_number(self, deal_number: str) -> DealDTO | None:
        async with self._db.get_async_session() as session:
            return await DealRepository(session).get_by_number(deal_number.strip().upper())

    async def list_user_deals(
        self,
        user_ref: str,
        *,
        statuses: Iterable[DealStatus] | None = None,
        limit: int = 50,
    ) -> list[DealDTO]:
        async with self._db.get_async_session() as session:
            user = await UserRepository(session).get_by_external_id(user_ref)
            if user is None:
                return []
            return await DealRepository(session).list_for_user(user.id, statuses=statuses, limit=limit)

    async def get_role(self, deal_id: int, user_ref: str) -> PartyRole | None:
        """Which side of the deal ``user_ref`` is on, if any."""
        async with self._db.get_async_session() as session:
            deal = await DealRepository(session).get(deal_id)
            user = await UserRepository(session).get_by_external_id(user_ref)
        if deal is None or user is None:
            return None
        if deal.buyer_id == user.id:
            return PartyRole.BUYER
        if deal.seller_id == user.id:
            return PartyRole.SELLER
        return None

    async def get_bound_wallets(self, deal_id: int) -> dict[PartyRole, WalletDTO]:
        async with self._db.get_async_session() as session:
            return await WalletRepository(session).bound_wallets(deal_id)

    async def list_transactions(self, deal_id: int) -> list[TransactionDTO]:
        async with self._db.get_async_session() as session:
            return await TransactionRepository(session).list_for_deal(deal_id)

    async def list_audit(self, deal_id: int) -> list[AuditLogDTO]:
        async with self._db.get_async_session() as session:
            return await AuditRepository(session).list_for_deal(deal_id)

    async def get_escrow_balance(self, deal_id: int) -> Decimal | None:
        """Live confirmed + unconfirmed balance of the deal's escrow address.

        Raises:
            ChainGatewayError: If the provider cannot be read.
        """
        if self._gateway is None:
            raise RuntimeError("DealQueries was created without a chain gateway")
        deal = await self.get_deal(deal_id)
        if deal is None or deal.escrow_address is None:
            return None
        balance = await self._gateway.get_balance(deal.escrow_address, deal.asset)
        return from_minor_units(balance.total_sats)
