"""Deal lifecycle engine.

Owns every state transition of a deal:

    PENDING -> WAITING_PAYMENT -> FUNDED -> RELEASED
    PENDING | WAITING_PAYMENT -> CANCELLED
    WAITING_PAYMENT -> EXPIRED

Each transition is a compare-and-set against the expected state, and the
rows it touches (ledger, counters, audit) are committed in the same
database transaction. Chain calls never happen inside a transaction. The
release path reserves the deal with a claim token before the irreversible
broadcast so concurrent releases cannot both pay the seller.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from escrow_engine.assets import Asset, from_minor_units, get_params, to_minor_units
from escrow_engine.chain.gateway import AddressBalance, ChainGatewayError
from escrow_engine.custody.addresses import script_for_address, validate_address
from escrow_engine.custody.keys import DecryptionError, KeyGenerationError, derive_address
from escrow_engine.custody.transactions import (
    SignedTransaction,
    TransactionBuildError,
    TxInput,
    TxOutput,
    sign_p2pkh_transaction,
)
from escrow_engine.domain import (
    CANCELLABLE_STATUSES,
    DISPUTABLE_STATUSES,
    WALLET_BINDING_STATUSES,
    AuditAction,
    DealStatus,
    PartyRole,
    TxDirection,
    TxStatus,
)
from escrow_engine.engine.base import Clock, EngineService, coerce_amount, coerce_asset, coerce_role
from escrow_engine.engine.errors import (
    CustodyFailure,
    DealNotFoundError,
    DealValidationError,
    ErrorKind,
    EscrowError,
    NotAuthorizedError,
    StaleStateError,
    StateConflictError,
    UpstreamError,
)
from escrow_engine.engine.events import DealEvent, DealEventKind
from escrow_engine.engine.payouts import ReleasePlan, plan_release
from escrow_engine.engine.results import (
    ExpiryOutcome,
    OperationResult,
    PaymentStatus,
    ReleaseReceipt,
    WalletBinding,
)
from escrow_engine.fees import calculate_fees, referral_share, schedule_for
from escrow_engine.storage.models import DealModel
from escrow_engine.storage.repos import (
    AuditRepository,
    DealDTO,
    DealRepository,
    PayoutWalletRepository,
    ReferralGroupRepository,
    TransactionDTO,
    TransactionRepository,
    UserRepository,
    WalletRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_engine.chain.gateway import ChainGateway
    from escrow_engine.config import Settings
    from escrow_engine.custody.keys import KeyCustodyService
    from escrow_engine.engine.events import EventPublisher
    from escrow_engine.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_TIMEOUT_MINUTES = 5
DEAL_NUMBER_ALPHABET = string.digits + string.ascii_uppercase


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(DEAL_NUMBER_ALPHABET[rem])
    return "".join(reversed(digits)) or "0"


def generate_deal_number(now: datetime) -> str:
    """Human-facing deal reference, e.g. ``DEAL-LQ2K8Z1A-3F9C1B``."""
    return f"DEAL-{_base36(int(now.timestamp() * 1000))}-{secrets.token_hex(3).upper()}"


@dataclass(frozen=True)
class DealOptions:
    """Optional parameters for :meth:`DealLifecycleEngine.create_deal`."""

    terms: str | None = None
    timeout_minutes: int | None = None
    referral_group_id: int | None = None
    group_ref: str | None = None


@dataclass(frozen=True)
class _ReleaseContext:
    key_blob: str
    seller_address: str
    refund_address: str | None
    platform_address: str | None
    referral_group_id: int | None
    referral_address: str | None
    referral_share_sats: int


@dataclass(frozen=True)
class _SellerPayout:
    private_key: bytes
    transaction: SignedTransaction
    plan: ReleasePlan
    tx_hash: str


class DealLifecycleEngine(EngineService):
    """State machine for escrow deals.

    Public operations never raise: they return an ``OperationResult`` whose
    ``error`` is a stable kind string.

    Example:
        ```python
        engine = DealLifecycleEngine(db, custody, gateway, settings=settings)
        result = await engine.create_deal("buyer-1", "seller-1", Decimal("0.5"), "BTC")
        if result.success:
            print(result.data.deal_number)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        custody: KeyCustodyService,
        gateway: ChainGateway,
        *,
        settings: Settings,
        publisher: EventPublisher | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(db, settings, publisher=publisher, clock=clock)
        self._custody = custody
        self._gateway = gateway
        chain = settings.chain
        self._read_timeout = chain.request_timeout_seconds * (chain.max_retries + 1)
        self._broadcast_timeout = chain.broadcast_timeout_seconds

    # ------------------------------------------------------------------
    # Chain access
    # ------------------------------------------------------------------

    async def _chain_read(self, call: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._read_timeout)
        except TimeoutError as e:
            raise UpstreamError(f"{what} timed out") from e
        except ChainGatewayError as e:
            raise UpstreamError(f"{what} failed: {e}") from e

    async def _broadcast(self, raw_tx_hex: str, asset: Asset) -> str:
        try:
            result = await asyncio.wait_for(
                self._gateway.broadcast(raw_tx_hex, asset), timeout=self._broadcast_timeout
            )
        except TimeoutError as e:
            raise UpstreamError("broadcast timed out", kind=ErrorKind.BROADCAST_FAILED) from e
        except ChainGatewayError as e:
            raise UpstreamError(f"broadcast failed: {e}", kind=ErrorKind.BROADCAST_FAILED) from e
        return result.tx_hash

    # ------------------------------------------------------------------
    # Creation and terms
    # ------------------------------------------------------------------

    def _validated_amount(self, amount: Decimal | str | int, asset: Asset) -> tuple[int, int, Decimal]:
        """Return (amount_sats, fee_sats, fee_percentage) for a proposed amount."""
        value = coerce_amount(amount)
        if value <= 0:
            raise DealValidationError("amount must be positive")
        if value > self._settings.deal.max_amount:
            raise DealValidationError(f"amount exceeds the maximum of {self._settings.deal.max_amount}")
        try:
            amount_sats = to_minor_units(value)
        except ValueError as e:
            raise DealValidationError(str(e)) from e

        breakdown = calculate_fees(value, schedule_for(asset, self._settings.fee))
        if breakdown.net_amount <= 0:
            raise DealValidationError("amount does not cover the platform fee")
        return amount_sats, to_minor_units(breakdown.fee_amount), breakdown.fee_percentage

    async def create_deal(
        self,
        buyer_ref: str | None,
        seller_ref: str | None,
        amount: Decimal | str | int,
        asset: Asset | str,
        options: DealOptions | None = None,
    ) -> OperationResult[DealDTO]:
        """Create a PENDING deal between two parties (either may be unknown yet)."""
        return await self._run(
            "create_deal", lambda: self._create_deal(buyer_ref, seller_ref, amount, asset, options or DealOptions())
        )

    async def _create_deal(
        self,
        buyer_ref: str | None,
        seller_ref: str | None,
        amount: Decimal | str | int,
        asset: Asset | str,
        options: DealOptions,
    ) -> OperationResult[DealDTO]:
        if buyer_ref is not None and buyer_ref == seller_ref:
            raise DealValidationError("buyer and seller must differ", kind=ErrorKind.INVALID_PARTICIPANTS)
        asset_ = coerce_asset(asset)
        amount_sats, fee_sats, fee_percentage = self._validated_amount(amount, asset_)

        timeout = options.timeout_minutes or self._settings.deal.timeout_minutes
        if not MIN_TIMEOUT_MINUTES <= timeout <= self._settings.deal.max_extension_minutes:
            raise DealValidationError(
                f"timeout must be between {MIN_TIMEOUT_MINUTES} and "
                f"{self._settings.deal.max_extension_minutes} minutes",
                kind=ErrorKind.INVALID_EXTENSION,
            )

        now = self._now()
        async with self._db.get_async_session() as session:
            users = UserRepository(session)
            buyer = (await users.get_or_create(buyer_ref))[0] if buyer_ref else None
            seller = (await users.get_or_create(seller_ref))[0] if seller_ref else None

            group_id = options.referral_group_id
            groups = ReferralGroupRepository(session)
            if group_id is not None:
                group = await groups.get(group_id)
                if group is None or not group.is_active:
                    raise DealValidationError(
                        f"referral group {group_id} not found", kind=ErrorKind.INVALID_REFERRAL_GROUP
                    )
            elif options.group_ref is not None:
                group = await groups.get_by_group_ref(options.group_ref)
                if group is not None and group.is_active:
                    group_id = group.id

            deal = await DealRepository(session).insert(
                DealModel(
                    deal_number=generate_deal_number(now),
                    buyer_id=buyer.id if buyer else None,
                    seller_id=seller.id if seller else None,
                    asset=asset_.value,
                    amount_sats=amount_sats,
                    fee_percentage=fee_percentage,
                    fee_sats=fee_sats,
                    terms=options.terms,
                    referral_group_id=group_id,
                    group_ref=options.group_ref,
                    status=DealStatus.PENDING.value,
                    is_disputed=False,
                    required_confirmations=self._settings.deal.confirmations_for(asset_),
                    observed_confirmations=0,
                    timeout_minutes=timeout,
                    created_at=now,
                    updated_at=now,
                )
            )
            await AuditRepository(session).append(
                AuditAction.DEAL_CREATED,
                deal_id=deal.id,
                user_id=buyer.id if buyer else (seller.id if seller else None),
                details={
                    "deal_number": deal.deal_number,
                    "asset": asset_.value,
                    "amount": str(deal.amount),
                    "fee": str(deal.fee_amount),
                    "fee_percentage": str(fee_percentage),
                },
            )

        logger.info("Created deal %s: %s %s", deal.deal_number, deal.amount, asset_.value)
        await self._publish(DealEvent.for_deal(DealEventKind.DEAL_CREATED, deal, amount=str(deal.amount)))
        return OperationResult.ok(deal)

    async def update_deal_terms(
        self,
        deal_id: int,
        requester_ref: str,
        amount: Decimal | str | int | None = None,
        terms: str | None = None,
    ) -> OperationResult[DealDTO]:
        """Change the amount and/or free-text terms of a PENDING deal."""
        return await self._run("update_deal_terms", lambda: self._update_deal_terms(deal_id, requester_ref, amount, terms))

    async def _update_deal_terms(
        self,
        deal_id: int,
        requester_ref: str,
        amount: Decimal | str | int | None,
        terms: str | None,
    ) -> OperationResult[DealDTO]:
        async with self._db.get_async_session() as session:
            deals = DealRepository(session)
            deal = await self._load_deal(session, deal_id)
            user = await self._authorize(session, deal, requester_ref)
            if deal.status is not DealStatus.PENDING:
                raise StateConflictError(f"terms can only change while PENDING, deal is {deal.status.value}")

            if amount is not None:
                amount_sats, fee_sats, fee_percentage = self._validated_amount(amount, deal.asset)
            else:
                amount_sats, fee_sats, fee_percentage = deal.amount_sats, deal.fee_sats, deal.fee_percentage
            new_terms = terms if terms is not None else deal.terms

            if not await deals.update_terms(
                deal.id,
                amount_sats=amount_sats,
                fee_sats=fee_sats,
                fee_percentage=fee_percentage,
                terms=new_terms,
            ):
                raise StaleStateError()
            await AuditRepository(session).append(
                AuditAction.DEAL_UPDATED,
                deal_id=deal.id,
                user_id=user.id if user else None,
                details={
                    "old_amount": str(deal.amount),
                    "new_amount": str(from_minor_units(amount_sats)),
                    "terms_changed": new_terms != deal.terms,
                },
            )
            updated = await self._load_deal(session, deal.id)
        return OperationResult.ok(updated)

    # ------------------------------------------------------------------
    # Wallets and escrow address
    # ------------------------------------------------------------------

    async def set_party_wallet(
        self,
        deal_id: int,
        role: PartyRole | str,
        address: str,
        user_ref: str | None = None,
        *,
        label: str | None = None,
    ) -> OperationResult[WalletBinding]:
        """Bind a payout/refund address to a role, claiming the role if unowned.

        Once both roles are bound on a PENDING deal, the escrow address is
        generated. A failure to generate it leaves the binding in place and
        is reported as a warning; ``generate_escrow_address`` can be retried.
        """
        return await self._run(
            "set_party_wallet", lambda: self._set_party_wallet(deal_id, role, address, user_ref, label)
        )

    async def _set_party_wallet(
        self,
        deal_id: int,
        role: PartyRole | str,
        address: str,
        user_ref: str | None,
        label: str | None,
    ) -> OperationResult[WalletBinding]:
        role_ = coerce_role(role)
        address = address.strip()

        async with self._db.get_async_session() as session:
            deal = await self._load_deal(session, deal_id)
            if not validate_address(address, deal.asset):
                raise DealValidationError(
                    f"not a valid {deal.asset.value} address", kind=ErrorKind.INVALID_ADDRESS
                )
            if deal.status not in WALLET_BINDING_STATUSES:
                raise StateConflictError(f"wallets cannot change on a {deal.status.value} deal")

            wallets = WalletRepository(session)
            if role_ in await wallets.bound_wallets(deal.id):
                raise StateConflictError(f"{role_.value} wallet already set", kind=ErrorKind.ROLE_ALREADY_BOUND)

            party_id = deal.buyer_id if role_ is PartyRole.BUYER else deal.seller_id
            other_id = deal.seller_id if role_ is PartyRole.BUYER else deal.buyer_id
            user = (await UserRepository(session).get_or_create(user_ref))[0] if user_ref else None

            if party_id is None:
                if user is None:
                    raise DealValidationError(
                        f"{role_.value} role is unclaimed; a user is required",
                        kind=ErrorKind.INVALID_PARTICIPANTS,
                    )
                if other_id == user.id:
                    raise DealValidationError(
                        "a user cannot be both buyer and seller", kind=ErrorKind.INVALID_PARTICIPANTS
                    )
                if not await DealRepository(session).assign_party(deal.id, role_, user.id):
                    raise StaleStateError()
                party_id = user.id
            elif user is None:
                raise NotAuthorizedError(f"{role_.value} role is claimed; a requester is required", deal_id=deal.id)
            elif user.id != party_id and not self.is_admin(user_ref):
                raise NotAuthorizedError(deal_id=deal.id, requester_ref=user_ref)

            wallet = await wallets.get_or_create(party_id, deal.asset, address, label=label)
            try:
                await wallets.bind(deal.id, role_, wallet.id)
            except IntegrityError as e:
                raise StateConflictError(
                    f"{role_.value} wallet already set", kind=ErrorKind.ROLE_ALREADY_BOUND
                ) from e
            await AuditRepository(session).append(
                AuditAction.WALLET_SET,
                deal_id=deal.id,
                user_id=party_id,
                details={"role": role_.value, "address": address},
            )

        # Re-read after commit: the other party may have bound concurrently.
        async with self._db.get_async_session() as session:
            deal = await self._load_deal(session, deal_id)
            both_bound = len(await WalletRepository(session).bound_wallets(deal.id)) == len(PartyRole)

        warnings: tuple[str, ...] = ()
        escrow_assigned = False
        if both_bound and deal.status is DealStatus.PENDING and deal.escrow_address is None:
            try:
                deal = await self._generate_escrow(deal.id)
                escrow_assigned = True
            except StateConflictError as e:
                if e.kind is not ErrorKind.ESCROW_ALREADY_ASSIGNED:
                    warnings = (f"escrow address not generated: {e}",)
            except EscrowError as e:
                logger.error("Escrow generation failed for deal %s: %s", deal.deal_number, e)
                warnings = (f"escrow address not generated: {e}",)

        logger.info("Bound %s wallet on deal %s", role_.value, deal.deal_number)
        return OperationResult.ok(
            WalletBinding(deal=deal, role=role_, wallet=wallet, escrow_assigned=escrow_assigned),
            warnings=warnings,
        )

    async def generate_escrow_address(self, deal_id: int) -> OperationResult[DealDTO]:
        """Assign the deal's one-time escrow address and start the payment window."""
        return await self._run("generate_escrow_address", lambda: self._generate_escrow_result(deal_id))

    async def _generate_escrow_result(self, deal_id: int) -> OperationResult[DealDTO]:
        return OperationResult.ok(await self._generate_escrow(deal_id))

    async def _generate_escrow(self, deal_id: int) -> DealDTO:
        async with self._db.get_async_session() as session:
            deal = await self._load_deal(session, deal_id)
        if deal.escrow_address is not None:
            raise StateConflictError("escrow address already assigned", kind=ErrorKind.ESCROW_ALREADY_ASSIGNED)
        if deal.status is not DealStatus.PENDING:
            raise StateConflictError(f"cannot assign escrow to a {deal.status.value} deal")

        try:
            keypair = self._custody.generate_keypair(deal.asset)
        except KeyGenerationError as e:
            raise CustodyFailure(str(e), kind=ErrorKind.KEY_GENERATION_FAILED) from e
        blob = self._custody.encrypt(keypair.private_key, associated_data=keypair.address.encode())

        now = self._now()
        expires_at = now + timedelta(minutes=deal.timeout_minutes)
        async with self._db.get_async_session() as session:
            deals = DealRepository(session)
            if not await deals.assign_escrow(deal.id, address=keypair.address, key_blob=blob, expires_at=expires_at):
                current = await self._load_deal(session, deal.id)
                if current.escrow_address is not None:
                    raise StateConflictError(
                        "escrow address already assigned", kind=ErrorKind.ESCROW_ALREADY_ASSIGNED
                    )
                raise StaleStateError()
            await AuditRepository(session).append(
                AuditAction.ESCROW_GENERATED,
                deal_id=deal.id,
                details={
                    "address": keypair.address,
                    "expires_at": expires_at.isoformat(),
                    "key_id": self._custody.key_id,
                    "blob_sha256": self._custody.blob_checksum(blob),
                },
            )
            deal = await self._load_deal(session, deal.id)

        logger.info("Escrow address %s assigned to deal %s", keypair.address, deal.deal_number)
        await self._publish(
            DealEvent.for_deal(
                DealEventKind.ESCROW_ASSIGNED,
                deal,
                address=keypair.address,
                amount=str(deal.amount),
                expires_at=expires_at.isoformat(),
            )
        )
        return deal

    # ------------------------------------------------------------------
    # Payment detection
    # ------------------------------------------------------------------

    async def check_payment(self, deal_id: int) -> OperationResult[PaymentStatus]:
        """Compare the escrow address balance against the deal amount."""
        return await self._run("check_payment", lambda: self._check_payment_result(deal_id))

    async def _check_payment_result(self, deal_id: int) -> OperationResult[PaymentStatus]:
        return OperationResult.ok(await self._check_payment(deal_id))

    @staticmethod
    def _payment_status(
        deal: DealDTO,
        *,
        balance: AddressBalance | None,
        confirmations: int,
        funded: bool,
        late_payment: bool = False,
    ) -> PaymentStatus:
        if balance is None:
            confirmed = deal.funded_sats or 0
            unconfirmed = 0
        else:
            confirmed, unconfirmed = balance.confirmed_sats, balance.unconfirmed_sats
        total = confirmed + unconfirmed
        pending = not funded and total > 0
        return PaymentStatus(
            deal_id=deal.id,
            status=deal.status,
            funded=funded,
            pending=pending,
            underpaid=pending and total < deal.amount_sats,
            required_amount=deal.amount,
            confirmed_amount=from_minor_units(confirmed),
            unconfirmed_amount=from_minor_units(unconfirmed),
            confirmations=confirmations,
            required_confirmations=deal.required_confirmations,
            overpaid_amount=from_minor_units(max(confirmed - deal.amount_sats, 0)) if funded else Decimal(0),
            late_payment=late_payment,
        )

    async def _check_payment(self, deal_id: int, *, fresh: bool = False) -> PaymentStatus:
        async with self._db.get_async_session() as session:
            deal = await self._load_deal(session, deal_id)

        if deal.status in (DealStatus.FUNDED, DealStatus.RELEASED):
            return self._payment_status(deal, balance=None, confirmations=deal.observed_confirmations, funded=True)
        if deal.escrow_address is None:
            raise StateConflictError("deal has no escrow address yet")

        balance = await self._read_balance(deal, fresh=fresh)

        if deal.status in (DealStatus.EXPIRED, DealStatus.CANCELLED):
            return await self._record_late_payment(deal, balance)

        if balance.confirmed_sats >= deal.amount_sats and not fresh:
            # Funding is recorded from an uncached balance.
            balance = await self._read_balance(deal, fresh=True)

        confirmations = 0
        if balance.confirmed_sats >= deal.amount_sats:
            utxos = await self._chain_read(self._gateway.get_utxos(deal.escrow_address, deal.asset), "UTXO lookup")
            confirmed_utxos = [u for u in utxos if u.confirmations > 0]
            if confirmed_utxos:
                confirmations = min(u.confirmations for u in confirmed_utxos)
            if confirmed_utxos and confirmations >= deal.required_confirmations:
                deposit_txid = max(confirmed_utxos, key=lambda u: u.value_sats).txid
                return await self._mark_funded(deal, balance, confirmations, deposit_txid)

        if confirmations != deal.observed_confirmations:
            async with self._db.get_async_session() as session:
                await DealRepository(session).update_observed_confirmations(deal.id, confirmations)
        if balance.total_sats > 0:
            logger.info(
                "Deal %s: observed %s of %s sats (%s confirmations)",
                deal.deal_number,
                balance.total_sats,
                deal.amount_sats,
                confirmations,
            )
        return self._payment_status(deal, balance=balance, confirmations=confirmations, funded=False)

    async def _read_balance(self, deal: DealDTO, *, fresh: bool) -> AddressBalance:
        return await self._chain_read(
            self._gateway.get_balance(deal.escrow_address, deal.asset, fresh=fresh), "balance lookup"
        )

    async def _mark_funded(
        self,
        deal: DealDTO,
        balance: AddressBalance,
        confirmations: int,
        deposit_txid: str,
    ) -> PaymentStatus:
        now = self._now()
        overpaid = balance.confirmed_sats - deal.amount_sats
        async with self._db.get_async_session() as session:
            deals = DealRepository(session)
            if not await deals.mark_funded(
                deal.id, funded_sats=balance.confirmed_sats, confirmations=confirmations, now=now
            ):
                current = await self._load_deal(session, deal.id)
                if current.status in (DealStatus.FUNDED, DealStatus.RELEASED):
                    return self._payment_status(
                        current, balance=None, confirmations=current.observed_confirmations, funded=True
                    )
                raise StaleStateError()
            await TransactionRepository(session).insert(
                deal_id=deal.id,
                direction=TxDirection.DEPOSIT,
                asset=deal.asset,
                amount_sats=balance.confirmed_sats,
                status=TxStatus.CONFIRMED,
                to_address=deal.escrow_address,
                tx_hash=deposit_txid,
                confirmations=confirmations,
            )
            audit = AuditRepository(session)
            await audit.append(
                AuditAction.DEAL_FUNDED,
                deal_id=deal.id,
                details={
                    "funded": str(from_minor_units(balance.confirmed_sats)),
                    "confirmations": confirmations,
                    "tx_hash": deposit_txid,
                },
            )
            if overpaid > 0:
                await audit.append(
                    AuditAction.OVERPAYMENT_DETECTED,
                    deal_id=deal.id,
                    details={"overpaid": str(from_minor_units(overpaid))},
                )
            funded = await self._load_deal(session, deal.id)

        logger.info("Deal %s funded with %s sats", funded.deal_number, balance.confirmed_sats)
        await self._publish(
            DealEvent.for_deal(
                DealEventKind.DEAL_FUNDED,
                funded,
                amount=str(funded.funded_amount),
                overpaid=str(from_minor_units(max(overpaid, 0))),
            )
        )
        return self._payment_status(funded, balance=balance, confirmations=confirmations, funded=True)

    async def _record_late_payment(self, deal: DealDTO, balance: AddressBalance) -> PaymentStatus:
        late = balance.total_sats > 0
        if late:
            async with self._db.get_async_session() as session:
                first_sighting = await DealRepository(session).mark_late_payment(deal.id, self._now())
                if first_sighting:
                    await AuditRepository(session).append(
                        AuditAction.LATE_PAYMENT_DETECTED,
                        deal_id=deal.id,
                        details={
                            "status": deal.status.value,
                            "observed": str(from_minor_units(balance.total_sats)),
                        },
                    )
            if first_sighting:
                logger.warning(
                    "Late payment of %s sats on %s deal %s",
                    balance.total_sats,
                    deal.status.value,
                    deal.deal_number,
                )
                await self._publish(
                    DealEvent.for_deal(
                        DealEventKind.LATE_PAYMENT,
                        deal,
                        observed=str(from_minor_units(balance.total_sats)),
                        address=deal.escrow_address,
                    )
                )
        return self._payment_status(deal, balance=balance, confirmations=0, funded=False, late_payment=late)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release_funds(self, deal_id: int, requester_ref: str) -> OperationResult[ReleaseReceipt]:
        """Pay the seller from escrow; only the buyer may authorize this."""
        return await self._run("release_funds", lambda: self._release_funds(deal_id, requester_ref))

    @staticmethod
    def _ensure_releasable(deal: DealDTO) -> None:
        if deal.is_disputed:
            raise StateConflictError("deal is under dispute", kind=ErrorKind.DEAL_DISPUTED)
        if deal.status is not DealStatus.FUNDED:
            raise StateConflictError(f"cannot release a {deal.status.value} deal")
        if deal.release_in_progress:
            raise StateConflictError("release already in progress")

    async def _release_context(self, session: AsyncSession, deal: DealDTO) -> _ReleaseContext:
        wallets = await WalletRepository(session).bound_wallets(deal.id)
        seller_wallet = wallets.get(PartyRole.SELLER)
        if seller_wallet is None:
            raise StateConflictError("seller wallet is not set", kind=ErrorKind.SELLER_WALLET_MISSING)
        buyer_wallet = wallets.get(PartyRole.BUYER)

        key_blob = await DealRepository(session).get_key_blob(deal.id)
        if key_blob is None:
            raise CustodyFailure("no sealed key stored for this deal")

        payout = await PayoutWalletRepository(session).get_default(deal.asset)

        group_id = None
        referral_address = None
        share_sats = 0
        if deal.referral_group_id is not None:
            groups = ReferralGroupRepository(session)
            group = await groups.get(deal.referral_group_id)
            if group is not None and group.is_active:
                group_id = group.id
                share_sats = to_minor_units(referral_share(deal.fee_amount, group.fee_percentage))
                group_wallet = await groups.get_wallet(group.id, deal.asset)
                referral_address = group_wallet.address if group_wallet else None

        return _ReleaseContext(
            key_blob=key_blob,
            seller_address=seller_wallet.address,
            refund_address=buyer_wallet.address if buyer_wallet else None,
            platform_address=payout.address if payout else None,
            referral_group_id=group_id,
            referral_address=referral_address,
            referral_share_sats=share_sats,
        )

    async def _release_funds(self, deal_id: int, requester_ref: str) -> OperationResult[ReleaseReceipt]:
        async with self._db.get_async_session() as session:
            deal = await self._load_deal(session, deal_id)
            await self._authorize(session, deal, requester_ref, roles=(PartyRole.BUYER,), allow_admin=False)
            self._ensure_releasable(deal)
            context = await self._release_context(session, deal)

        token = secrets.token_hex(16)
        async with self._db.get_async_session() as session:
            if not await DealRepository(session).claim_release(deal.id, token, self._now()):
                self._ensure_releasable(await self._load_deal(session, deal.id))
                raise StaleStateError("release already claimed")

        try:
            payout = await self._pay_seller(deal, context)
        except Exception as e:
            await self._abandon_release(deal, token, e)
            raise

        released = await self._record_release(deal, token, context, payout)
        fee_tx_hash, fee_pending, notes = await self._transfer_fees(released, context, payout)

        plan = payout.plan
        receipt = ReleaseReceipt(
            deal=released,
            release_tx_hash=payout.tx_hash,
            seller_amount=from_minor_units(plan.seller_amount_sats),
            fee_tx_hash=fee_tx_hash,
            fee_transfer_pending=fee_pending,
            platform_amount=from_minor_units(plan.leg_amount(TxDirection.FEE)),
            referral_amount=from_minor_units(plan.leg_amount(TxDirection.REFERRAL)),
            refund_amount=from_minor_units(plan.leg_amount(TxDirection.REFUND)),
            notes=tuple(notes),
        )
        await self._publish(
            DealEvent.for_deal(
                DealEventKind.FUNDS_RELEASED,
                released,
                tx_hash=payout.tx_hash,
                seller_amount=str(receipt.seller_amount),
            )
        )
        warnings = tuple(notes) if fee_pending else ()
        return OperationResult.ok(receipt, warnings=warnings)

    async def _pay_seller(self, deal: DealDTO, context: _ReleaseContext) -> _SellerPayout:
        """Decrypt the escrow key, build and broadcast the seller transaction."""
        if deal.escrow_address is None:
            raise StateConflictError("funded deal has no escrow address")
        try:
            private_key = self._custody.decrypt(context.key_blob, associated_data=deal.escrow_address.encode())
        except DecryptionError as e:
            raise CustodyFailure(str(e)) from e
        if derive_address(private_key, deal.asset) != deal.escrow_address:
            raise CustodyFailure("decrypted key does not control the escrow address")

        utxos = await self._chain_read(self._gateway.get_utxos(deal.escrow_address, deal.asset), "UTXO lookup")
        spendable = [u for u in utxos if u.confirmations > 0]
        params = get_params(deal.asset)
        plan = plan_release(
            escrow_total_sats=sum(u.value_sats for u in spendable),
            amount_sats=deal.amount_sats,
            fee_sats=deal.fee_sats,
            network_fee_sats=params.network_fee_sats,
            dust_limit_sats=params.dust_limit_sats,
            platform_address=context.platform_address,
            referral_address=context.referral_address,
            referral_share_sats=context.referral_share_sats,
            refund_address=context.refund_address,
        )

        outputs = [TxOutput(script_for_address(context.seller_address, deal.asset), plan.seller_amount_sats)]
        if plan.change_sats:
            outputs.append(TxOutput(script_for_address(deal.escrow_address, deal.asset), plan.change_sats))
        inputs = [TxInput(txid=u.txid, vout=u.vout, value_sats=u.value_sats) for u in spendable]
        try:
            transaction = sign_p2pkh_transaction(private_key, inputs, outputs)
        except TransactionBuildError as e:
            raise EscrowError(f"could not build seller transaction: {e}") from e

        tx_hash = await self._broadcast(transaction.raw_hex, deal.asset)
        if tx_hash != transaction.txid:
            logger.warning("Provider reported tx hash %s, computed %s", tx_hash, transaction.txid)
        logger.info("Seller payout %s broadcast for deal %s", tx_hash, deal.deal_number)
        return _SellerPayout(private_key=private_key, transaction=transaction, plan=plan, tx_hash=tx_hash)

    async def _abandon_release(self, deal: DealDTO, token: str, error: Exception) -> None:
        kind = error.kind if isinstance(error, EscrowError) else ErrorKind.INTERNAL_ERROR
        logger.warning("Release of deal %s failed before payout (%s): %s", deal.deal_number, kind.value, error)

        async def clear(session: AsyncSession) -> None:
            await DealRepository(session).clear_release_claim(deal.id, token)
            await AuditRepository(session).append(
                AuditAction.RELEASE_FAILED,
                deal_id=deal.id,
                user_id=deal.buyer_id,
                details={"kind": kind.value, "error": str(error)[:500]},
            )

        try:
            await self._db.run_transaction(clear, description=f"release claim cleanup for {deal.deal_number}")
        except SQLAlchemyError as e:
            logger.error("Could not clear release claim on deal %s: %s", deal.deal_number, e)

    async def _record_release(
        self,
        deal: DealDTO,
        token: str,
        context: _ReleaseContext,
        payout: _SellerPayout,
    ) -> DealDTO:
        plan = payout.plan

        async def record(session: AsyncSession) -> DealDTO:
            if not await DealRepository(session).mark_released(deal.id, token, self._now()):
                raise StaleStateError("release claim lost after broadcast")
            await TransactionRepository(session).insert(
                deal_id=deal.id,
                direction=TxDirection.RELEASE,
                asset=deal.asset,
                amount_sats=plan.seller_amount_sats,
                status=TxStatus.PENDING,
                from_address=deal.escrow_address,
                to_address=context.seller_address,
                tx_hash=payout.tx_hash,
                network_fee_sats=plan.seller_network_fee_sats,
            )
            users = UserRepository(session)
            for party_id in (deal.buyer_id, deal.seller_id):
                if party_id is not None:
                    await users.record_successful_deal(party_id, deal.asset, deal.amount_sats)
            if context.referral_group_id is not None:
                await ReferralGroupRepository(session).accrue(
                    context.referral_group_id, deal.asset, plan.referral_share_sats
                )
            await AuditRepository(session).append(
                AuditAction.FUNDS_RELEASED,
                deal_id=deal.id,
                user_id=deal.buyer_id,
                details={
                    "tx_hash": payout.tx_hash,
                    "seller_amount": str(from_minor_units(plan.seller_amount_sats)),
                    "network_fee": str(from_minor_units(plan.seller_network_fee_sats)),
                },
            )
            return await self._load_deal(session, deal.id)

        try:
            return await self._db.run_transaction(record, description=f"release bookkeeping for {deal.deal_number}")
        except (SQLAlchemyError, EscrowError) as e:
            logger.critical(
                "Seller payout %s for deal %s was broadcast but not recorded: %s",
                payout.tx_hash,
                deal.deal_number,
                e,
            )
            await self._publish(
                DealEvent.for_deal(DealEventKind.RELEASE_NEEDS_REVIEW, deal, tx_hash=payout.tx_hash, error=str(e))
            )
            raise EscrowError(
                f"seller payout {payout.tx_hash} was broadcast but could not be recorded",
                kind=ErrorKind.PERSISTENCE_ERROR,
                partial_effect=True,
            ) from e

    async def _transfer_fees(
        self,
        deal: DealDTO,
        context: _ReleaseContext,
        payout: _SellerPayout,
    ) -> tuple[str | None, bool, list[str]]:
        """Best-effort fee transaction spending the seller transaction's change.

        Returns:
            Tuple of (fee tx hash, transfer pending, notes).
        """
        plan = payout.plan
        notes = list(plan.notes)
        if plan.fee_transfer_blocked:
            notes.append(f"fee transfer pending: {plan.fee_transfer_blocked}")
            await self._record_fee_failure(deal, plan, plan.fee_transfer_blocked, to_address=None)
            return None, True, notes
        if not plan.has_fee_transfer:
            return None, False, notes

        change_input = payout.transaction.output_as_input(1)
        try:
            outputs = [TxOutput(script_for_address(leg.address, deal.asset), leg.amount_sats) for leg in plan.fee_legs]
            fee_tx = sign_p2pkh_transaction(payout.private_key, [change_input], outputs)
            fee_hash = await self._broadcast(fee_tx.raw_hex, deal.asset)
        except (EscrowError, ValueError) as e:
            logger.warning("Fee transfer for deal %s failed: %s", deal.deal_number, e)
            notes.append(f"fee transfer failed: {e}")
            await self._record_fee_failure(deal, plan, str(e), to_address=context.platform_address)
            return None, True, notes

        try:
            async with self._db.get_async_session() as session:
                txs = TransactionRepository(session)
                for index, leg in enumerate(plan.fee_legs):
                    await txs.insert(
                        deal_id=deal.id,
                        direction=leg.direction,
                        asset=deal.asset,
                        amount_sats=leg.amount_sats,
                        status=TxStatus.PENDING,
                        from_address=deal.escrow_address,
                        to_address=leg.address,
                        tx_hash=fee_hash,
                        network_fee_sats=plan.fee_network_fee_sats if index == 0 else 0,
                    )
                await AuditRepository(session).append(
                    AuditAction.FEE_TRANSFERRED,
                    deal_id=deal.id,
                    details={
                        "tx_hash": fee_hash,
                        "legs": {leg.direction.value: str(from_minor_units(leg.amount_sats)) for leg in plan.fee_legs},
                    },
                )
        except SQLAlchemyError as e:
            logger.error("Fee transfer %s for deal %s broadcast but not recorded: %s", fee_hash, deal.deal_number, e)
            notes.append(f"fee transfer {fee_hash} broadcast but not recorded")
        logger.info("Fee transfer %s broadcast for deal %s", fee_hash, deal.deal_number)
        return fee_hash, False, notes

    async def _record_fee_failure(
        self,
        deal: DealDTO,
        plan: ReleasePlan,
        reason: str,
        *,
        to_address: str | None,
    ) -> None:
        amount_sats = plan.leg_amount(TxDirection.FEE) or max(plan.change_sats - plan.fee_network_fee_sats, 0)
        try:
            async with self._db.get_async_session() as session:
                await TransactionRepository(session).insert(
                    deal_id=deal.id,
                    direction=TxDirection.FEE,
                    asset=deal.asset,
                    amount_sats=amount_sats,
                    status=TxStatus.FAILED,
                    from_address=deal.escrow_address,
                    to_address=to_address,
                    error=reason[:500],
                )
                await AuditRepository(session).append(
                    AuditAction.FEE_TRANSFER_FAILED,
                    deal_id=deal.id,
                    details={"reason": reason[:500], "change_sats": plan.change_sats},
                )
        except SQLAlchemyError as e:
            logger.error("Could not record failed fee transfer for deal %s: %s", deal.deal_number, e)
        await self._publish(
            DealEvent.for_deal(
                DealEventKind.FEE_TRANSFER_FAILED,
                deal,
                reason=reason,
                amount=str(from_minor_units(plan.change_sats)),
                address=deal.escrow_address,
            )
        )

    # ------------------------------------------------------------------
    # Cancellation, disputes, expiry
    # ------------------------------------------------------------------

    async def cancel_deal(self, deal_id: int, requester_ref: str, reason: str | None = None) -> OperationResult[DealDTO]:
        """Cancel a PENDING or WAITING_PAYMENT deal (buyer, seller or admin)."""
        return await self._run("cancel_deal", lambda: self._cancel_deal(deal_id, requester_ref, reason))

    async def _cancel_deal(self, deal_id: int, requester_ref: str, reason: str | None) -> OperationResult[DealDTO]:
        async with self._db.get_async_session() as session:
            deals = DealRepository(session)
            deal = await self._load_deal(session, deal_id)
            user = await self._authorize(session, deal, requester_ref)
            self._ensure_cancellable(deal)
            if not await deals.cancel(deal.id, expected=deal.status, reason=reason, now=self._now()):
                self._ensure_cancellable(await self._load_deal(session, deal.id))
                raise StaleStateError()
            await AuditRepository(session).append(
                AuditAction.DEAL_CANCELLED,
                deal_id=deal.id,
                user_id=user.id if user else None,
                details={"from_status": deal.status.value, "reason": reason, "by": requester_ref},
            )
            cancelled = await self._load_deal(session, deal.id)

        logger.info("Deal %s cancelled by %s", cancelled.deal_number, requester_ref)
        await self._publish(DealEvent.for_deal(DealEventKind.DEAL_CANCELLED, cancelled, reason=reason))
        return OperationResult.ok(cancelled)

    @staticmethod
    def _ensure_cancellable(deal: DealDTO) -> None:
        if deal.status is DealStatus.FUNDED:
            raise StateConflictError(
                "funded deals cannot be cancelled; open a dispute instead", kind=ErrorKind.CANNOT_CANCEL_FUNDED
            )
        if deal.status not in CANCELLABLE_STATUSES:
            raise StateConflictError(f"cannot cancel a {deal.status.value} deal")

    async def open_dispute(self, deal_id: int, requester_ref: str, reason: str) -> OperationResult[DealDTO]:
        """Flag a deal as disputed; blocks release until an admin resolves it."""
        return await self._run("open_dispute", lambda: self._open_dispute(deal_id, requester_ref, reason))

    async def _open_dispute(self, deal_id: int, requester_ref: str, reason: str) -> OperationResult[DealDTO]:
        reason = (reason or "").strip() or "No reason given"
        async with self._db.get_async_session() as session:
            deal = await self._load_deal(session, deal_id)
            user = await self._authorize(session, deal, requester_ref)
            self._ensure_disputable(deal)
            if not await DealRepository(session).open_dispute(
                deal.id, user_id=user.id if user else None, reason=reason, now=self._now()
            ):
                self._ensure_disputable(await self._load_deal(session, deal.id))
                raise StaleStateError()
            await AuditRepository(session).append(
                AuditAction.DISPUTE_OPENED,
                deal_id=deal.id,
                user_id=user.id if user else None,
                details={"reason": reason, "status": deal.status.value},
            )
            disputed = await self._load_deal(session, deal.id)

        logger.warning("Dispute opened on deal %s by %s", disputed.deal_number, requester_ref)
        await self._publish(
            DealEvent.for_deal(DealEventKind.DISPUTE_OPENED, disputed, reason=reason, opened_by=requester_ref)
        )
        return OperationResult.ok(disputed)

    @staticmethod
    def _ensure_disputable(deal: DealDTO) -> None:
        if deal.is_disputed:
            raise StateConflictError("deal is already disputed", kind=ErrorKind.ALREADY_DISPUTED)
        if deal.status not in DISPUTABLE_STATUSES:
            raise StateConflictError(f"cannot dispute a {deal.status.value} deal")
        if deal.release_in_progress:
            raise StateConflictError("release already in progress")

    async def expire_deal(self, deal_id: int) -> OperationResult[ExpiryOutcome]:
        """Expire an overdue deal, unless the chain shows a payment."""
        return await self._run("expire_deal", lambda: self._expire_deal(deal_id))

    async def _expire_deal(self, deal_id: int) -> OperationResult[ExpiryOutcome]:
        now = self._now()
        async with self._db.get_async_session() as session:
            deal = await self._load_deal(session, deal_id)
        if deal.status is not DealStatus.WAITING_PAYMENT:
            raise StateConflictError(f"cannot expire a {deal.status.value} deal")
        if deal.expires_at is None or deal.expires_at >= now:
            raise StateConflictError("deal has not reached its expiry time")

        # An unreadable provider aborts the expiry: the payment wins ties.
        payment = await self._check_payment(deal.id, fresh=True)
        if payment.funded:
            async with self._db.get_async_session() as session:
                current = await self._load_deal(session, deal.id)
            return OperationResult.ok(ExpiryOutcome(deal=current, expired=False, reason="payment_confirmed"))
        if payment.pending:
            logger.warning(
                "Deal %s is past expiry but has %s unconfirmed/partial funds; not expiring",
                deal.deal_number,
                payment.confirmed_amount + payment.unconfirmed_amount,
            )
            return OperationResult.ok(ExpiryOutcome(deal=deal, expired=False, reason="payment_detected"))

        async with self._db.get_async_session() as session:
            if not await DealRepository(session).mark_expired(deal.id, now):
                raise StaleStateError()
            await AuditRepository(session).append(
                AuditAction.DEAL_EXPIRED,
                deal_id=deal.id,
                details={"expires_at": deal.expires_at.isoformat()},
            )
            expired = await self._load_deal(session, deal.id)

        logger.info("Deal %s expired", expired.deal_number)
        await self._publish(DealEvent.for_deal(DealEventKind.DEAL_EXPIRED, expired))
        return OperationResult.ok(ExpiryOutcome(deal=expired, expired=True))

    async def extend_deal(
        self,
        deal_id: int,
        requester_ref: str,
        extension_minutes: int | None = None,
    ) -> OperationResult[DealDTO]:
        """Push back the payment deadline of a WAITING_PAYMENT deal."""
        return await self._run("extend_deal", lambda: self._extend_deal(deal_id, requester_ref, extension_minutes))

    async def _extend_deal(
        self,
        deal_id: int,
        requester_ref: str,
        extension_minutes: int | None,
    ) -> OperationResult[DealDTO]:
        minutes = extension_minutes if extension_minutes is not None else self._settings.deal.extension_minutes
        limit = self._settings.deal.max_extension_minutes
        if not 0 < minutes <= limit:
            raise DealValidationError(
                f"extension must be between 1 and {limit} minutes", kind=ErrorKind.INVALID_EXTENSION
            )

        now = self._now()
        async with self._db.get_async_session() as session:
            deal = await self._load_deal(session, deal_id)
            user = await self._authorize(session, deal, requester_ref)
            if deal.status is not DealStatus.WAITING_PAYMENT:
                raise StateConflictError(f"cannot extend a {deal.status.value} deal")
            if deal.expires_at is None or deal.expires_at <= now:
                raise StateConflictError("deal has already expired", kind=ErrorKind.DEAL_EXPIRED)

            new_expires_at = deal.expires_at + timedelta(minutes=minutes)
            if not await DealRepository(session).extend(
                deal.id, current_expires_at=deal.expires_at, new_expires_at=new_expires_at
            ):
                raise StaleStateError()
            await AuditRepository(session).append(
                AuditAction.DEAL_EXTENDED,
                deal_id=deal.id,
                user_id=user.id if user else None,
                details={
                    "minutes": minutes,
                    "old_expires_at": deal.expires_at.isoformat(),
                    "new_expires_at": new_expires_at.isoformat(),
                },
            )
            extended = await self._load_deal(session, deal.id)

        await self._publish(
            DealEvent.for_deal(DealEventKind.DEAL_EXTENDED, extended, expires_at=new_expires_at.isoformat())
        )
        return OperationResult.ok(extended)

    async def send_expiry_reminder(self, deal_id: int) -> OperationResult[bool]:
        """Emit one reminder for a deal close to expiry; ``data`` is False if already sent."""
        return await self._run("send_expiry_reminder", lambda: self._send_expiry_reminder(deal_id))

    async def _send_expiry_reminder(self, deal_id: int) -> OperationResult[bool]:
        now = self._now()
        async with self._db.get_async_session() as session:
            deal = await self._load_deal(session, deal_id)
            if deal.status is not DealStatus.WAITING_PAYMENT or deal.expires_at is None:
                raise StateConflictError(f"no reminder for a {deal.status.value} deal")
            if deal.expires_at <= now:
                raise StateConflictError("deal has already expired", kind=ErrorKind.DEAL_EXPIRED)
            if not await DealRepository(session).mark_reminder_sent(deal.id, now):
                return OperationResult.ok(False)

        minutes_left = int((deal.expires_at - now).total_seconds() // 60)
        await self._publish(
            DealEvent.for_deal(
                DealEventKind.EXPIRY_REMINDER,
                deal,
                minutes_left=minutes_left,
                address=deal.escrow_address,
                amount=str(deal.amount),
            )
        )
        return OperationResult.ok(True)

    # ------------------------------------------------------------------
    # Ledger maintenance
    # ------------------------------------------------------------------

    async def refresh_transaction_confirmations(self, tx_id: int) -> OperationResult[TransactionDTO]:
        """Advance a broadcast ledger row's confirmation count from the chain."""
        return await self._run(
            "refresh_transaction_confirmations", lambda: self._refresh_transaction_confirmations(tx_id)
        )

    async def _refresh_transaction_confirmations(self, tx_id: int) -> OperationResult[TransactionDTO]:
        async with self._db.get_async_session() as session:
            tx = await TransactionRepository(session).get(tx_id)
            if tx is None:
                raise DealNotFoundError(f"transaction {tx_id} not found")
            deal = await self._load_deal(session, tx.deal_id)
        if tx.status is not TxStatus.PENDING or tx.tx_hash is None:
            return OperationResult.ok(tx)

        confirmations = await self._chain_read(
            self._gateway.get_confirmations(tx.tx_hash, tx.asset), "confirmation lookup"
        )
        if confirmations <= tx.confirmations:
            return OperationResult.ok(tx)

        status = TxStatus.CONFIRMED if confirmations >= deal.required_confirmations else TxStatus.PENDING
        async with self._db.get_async_session() as session:
            txs = TransactionRepository(session)
            await txs.advance(tx.id, confirmations=confirmations, status=status)
            updated = await txs.get(tx.id)
        if updated is None:
            raise DealNotFoundError(f"transaction {tx_id} disappeared during refresh")
        if status is TxStatus.CONFIRMED:
            logger.info("%s tx %s confirmed for deal %s", tx.direction.value, tx.tx_hash, deal.deal_number)
        return OperationResult.ok(updated)
