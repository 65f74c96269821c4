"""Operator actions: payout configuration, referral groups, users, disputes."""

from __future__ import annotations

import logging
from decimal import Decimal

from escrow_engine.assets import Asset
from escrow_engine.custody.addresses import validate_address
from escrow_engine.domain import AuditAction
from escrow_engine.engine.base import EngineService, coerce_amount, coerce_asset
from escrow_engine.engine.errors import DealValidationError, ErrorKind, NotAuthorizedError, StateConflictError
from escrow_engine.engine.events import DealEvent, DealEventKind
from escrow_engine.engine.results import OperationResult
from escrow_engine.storage.repos import (
    AuditRepository,
    DealDTO,
    DealRepository,
    PayoutWalletDTO,
    PayoutWalletRepository,
    ReferralGroupDTO,
    ReferralGroupRepository,
    UserDTO,
    UserRepository,
)

logger = logging.getLogger(__name__)

MAX_REFERRAL_PERCENTAGE = Decimal(100)


class AdminService(EngineService):
    """Administrative operations; admins are listed in ``ADMIN_USER_IDS``."""

    def _require_admin(self, admin_ref: str, deal_id: int | None = None) -> None:
        if not self.is_admin(admin_ref):
            raise NotAuthorizedError(deal_id=deal_id, requester_ref=admin_ref)

    def _checked_address(self, address: str, asset: Asset) -> str:
        address = address.strip()
        if not validate_address(address, asset):
            raise DealValidationError(f"not a valid {asset.value} address", kind=ErrorKind.INVALID_ADDRESS)
        return address

    async def set_payout_wallet(
        self,
        admin_ref: str,
        asset: Asset | str,
        address: str,
        label: str | None = None,
    ) -> OperationResult[PayoutWalletDTO]:
        """Make ``address`` the default platform payout wallet for ``asset``.

        Takes effect for releases started afterwards.
        """

        async def action() -> OperationResult[PayoutWalletDTO]:
            self._require_admin(admin_ref)
            asset_ = coerce_asset(asset)
            checked = self._checked_address(address, asset_)
            async with self._db.get_async_session() as session:
                wallet = await PayoutWalletRepository(session).set_default(asset_, checked, label=label)
                await AuditRepository(session).append(
                    AuditAction.PAYOUT_WALLET_SET,
                    details={"asset": asset_.value, "address": checked, "by": admin_ref},
                )
            logger.info("Default %s payout wallet set to %s", asset_.value, checked)
            return OperationResult.ok(wallet)

        return await self._run("set_payout_wallet", action)

    async def list_payout_wallets(self, admin_ref: str) -> OperationResult[list[PayoutWalletDTO]]:
        async def action() -> OperationResult[list[PayoutWalletDTO]]:
            self._require_admin(admin_ref)
            async with self._db.get_async_session() as session:
                return OperationResult.ok(await PayoutWalletRepository(session).list_active())

        return await self._run("list_payout_wallets", action)

    async def create_referral_group(
        self,
        admin_ref: str,
        title: str,
        fee_percentage: Decimal | str | int,
        group_ref: str | None = None,
    ) -> OperationResult[ReferralGroupDTO]:
        """Register a referring group entitled to a share of platform fees."""

        async def action() -> OperationResult[ReferralGroupDTO]:
            self._require_admin(admin_ref)
            percentage = coerce_amount(fee_percentage)
            if not 0 <= percentage <= MAX_REFERRAL_PERCENTAGE:
                raise DealValidationError(
                    "referral percentage must be between 0 and 100", kind=ErrorKind.INVALID_REFERRAL_GROUP
                )
            if not title.strip():
                raise DealValidationError("referral group needs a title", kind=ErrorKind.INVALID_REFERRAL_GROUP)
            async with self._db.get_async_session() as session:
                groups = ReferralGroupRepository(session)
                if group_ref is not None and await groups.get_by_group_ref(group_ref) is not None:
                    raise DealValidationError(
                        f"group {group_ref} is already registered", kind=ErrorKind.INVALID_REFERRAL_GROUP
                    )
                group = await groups.create(title.strip(), percentage, group_ref=group_ref)
                await AuditRepository(session).append(
                    AuditAction.REFERRAL_GROUP_CREATED,
                    details={"group_id": group.id, "title": group.title, "percentage": str(percentage)},
                )
            return OperationResult.ok(group)

        return await self._run("create_referral_group", action)

    async def set_referral_group_wallet(
        self,
        admin_ref: str,
        group_id: int,
        asset: Asset | str,
        address: str,
    ) -> OperationResult[ReferralGroupDTO]:
        async def action() -> OperationResult[ReferralGroupDTO]:
            self._require_admin(admin_ref)
            asset_ = coerce_asset(asset)
            checked = self._checked_address(address, asset_)
            async with self._db.get_async_session() as session:
                groups = ReferralGroupRepository(session)
                group = await groups.get(group_id)
                if group is None:
                    raise DealValidationError(
                        f"referral group {group_id} not found", kind=ErrorKind.INVALID_REFERRAL_GROUP
                    )
                await groups.set_wallet(group.id, asset_, checked)
            return OperationResult.ok(group)

        return await self._run("set_referral_group_wallet", action)

    async def register_user(
        self,
        external_id: str,
        username: str | None = None,
        referral_code: str | None = None,
    ) -> OperationResult[UserDTO]:
        """Create a user record, crediting the referrer when a code is given.

        Registering an existing user returns it unchanged.
        """

        async def action() -> OperationResult[UserDTO]:
            if not external_id or not external_id.strip():
                raise DealValidationError("external id is required", kind=ErrorKind.INVALID_PARTICIPANTS)
            async with self._db.get_async_session() as session:
                users = UserRepository(session)
                referrer = await users.get_by_referral_code(referral_code) if referral_code else None
                user, created = await users.get_or_create(
                    external_id.strip(),
                    username=username,
                    referred_by_id=referrer.id if referrer else None,
                )
                if created:
                    await AuditRepository(session).append(
                        AuditAction.USER_REGISTERED,
                        user_id=user.id,
                        details={"referred_by": referrer.id if referrer else None},
                    )
            return OperationResult.ok(user)

        return await self._run("register_user", action)

    async def resolve_dispute(self, deal_id: int, admin_ref: str, note: str | None = None) -> OperationResult[DealDTO]:
        """Clear a deal's dispute flag so release or cancellation can proceed."""

        async def action() -> OperationResult[DealDTO]:
            self._require_admin(admin_ref, deal_id)
            async with self._db.get_async_session() as session:
                deal = await self._load_deal(session, deal_id)
                if not deal.is_disputed:
                    raise StateConflictError("deal is not disputed")
                if not await DealRepository(session).resolve_dispute(deal.id):
                    raise StateConflictError("deal is not disputed")
                await AuditRepository(session).append(
                    AuditAction.DISPUTE_RESOLVED,
                    deal_id=deal.id,
                    details={"note": note, "by": admin_ref, "reason": deal.dispute_reason},
                )
                resolved = await self._load_deal(session, deal.id)
            logger.info("Dispute on deal %s resolved by %s", resolved.deal_number, admin_ref)
            await self._publish(DealEvent.for_deal(DealEventKind.DISPUTE_RESOLVED, resolved, note=note))
            return OperationResult.ok(resolved)

        return await self._run("resolve_dispute", action)
