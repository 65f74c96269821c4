"""Tests for releasing escrowed funds and the follow-up fee transfer."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from escrow_engine.assets import Asset
from escrow_engine.chain.gateway import BroadcastRejectedError
from escrow_engine.custody.keys import KeyCustodyService
from escrow_engine.domain import AuditAction, DealStatus, TxDirection, TxStatus
from escrow_engine.engine import DealEventKind, DealLifecycleEngine, DealOptions, ErrorKind
from escrow_engine.storage.models import DealModel
from escrow_engine.storage.repos import (
    DealRepository,
    ReferralGroupRepository,
    TransactionRepository,
    UserRepository,
)

BUYER = "buyer-1"
SELLER = "seller-1"
ADMIN = "admin-1"


def ledger_by_direction(transactions) -> dict:
    return {tx.direction: tx for tx in transactions}


def outpoint(tx_hash: str, vout: int) -> str:
    """Serialized outpoint as it appears in a raw transaction."""
    return bytes.fromhex(tx_hash)[::-1].hex() + vout.to_bytes(4, "little").hex()


# ============================================================================
# Happy path
# ============================================================================


class TestReleaseFunds:
    """Tests for a successful release."""

    @pytest.mark.asyncio
    async def test_pays_seller_and_platform(
        self, engine, gateway, funded_deal, payout_wallet, seller_address, publisher, queries
    ) -> None:
        deal = await funded_deal()

        result = await engine.release_funds(deal.id, BUYER)

        assert result.success, result.message
        receipt = result.data
        assert receipt.deal.status is DealStatus.RELEASED
        assert receipt.deal.released_at is not None
        assert not receipt.deal.release_in_progress
        assert receipt.seller_amount == Decimal("0.0099")
        assert receipt.platform_amount == Decimal("0.00008")
        assert receipt.referral_amount == Decimal(0)
        assert receipt.refund_amount == Decimal(0)
        assert not receipt.fee_transfer_pending
        assert receipt.fee_tx_hash is not None
        assert result.warnings == ()

        assert len(gateway.broadcasts) == 2
        assert outpoint(receipt.release_tx_hash, 1) in gateway.broadcasts[1]

        ledger = ledger_by_direction(await queries.list_transactions(deal.id))
        release = ledger[TxDirection.RELEASE]
        assert release.amount_sats == 990_000
        assert release.to_address == seller_address
        assert release.tx_hash == receipt.release_tx_hash
        assert release.status is TxStatus.PENDING
        assert release.network_fee_sats == 1_000
        fee = ledger[TxDirection.FEE]
        assert fee.amount_sats == 8_000
        assert fee.to_address == payout_wallet
        assert fee.tx_hash == receipt.fee_tx_hash
        assert fee.network_fee_sats == 1_000

        assert DealEventKind.FUNDS_RELEASED in publisher.kinds()
        actions = [entry.action for entry in await queries.list_audit(deal.id)]
        assert AuditAction.FUNDS_RELEASED.value in actions
        assert AuditAction.FEE_TRANSFERRED.value in actions

    @pytest.mark.asyncio
    async def test_release_credits_both_parties(self, engine, db, funded_deal, payout_wallet) -> None:
        deal = await funded_deal()

        await engine.release_funds(deal.id, BUYER)

        async with db.get_async_session() as session:
            users = UserRepository(session)
            for ref in (BUYER, SELLER):
                user = await users.get_by_external_id(ref)
                assert user.successful_deals == 1
                assert user.reputation == 1
                assert await users.get_volume(user.id) == {Asset.BTC: Decimal("0.01")}

    @pytest.mark.asyncio
    async def test_cannot_release_twice(self, engine, gateway, funded_deal, payout_wallet) -> None:
        deal = await funded_deal()
        await engine.release_funds(deal.id, BUYER)

        again = await engine.release_funds(deal.id, BUYER)

        assert again.error is ErrorKind.INVALID_STATE
        assert len(gateway.broadcasts) == 2

    @pytest.mark.asyncio
    async def test_only_one_concurrent_release_wins(self, engine, gateway, funded_deal, queries) -> None:
        deal = await funded_deal()
        gateway.broadcast_delay = 0.05

        results = await asyncio.gather(
            engine.release_funds(deal.id, BUYER),
            engine.release_funds(deal.id, BUYER),
        )

        winners = [r for r in results if r.success]
        losers = [r for r in results if not r.success]
        assert len(winners) == 1
        assert losers[0].error is ErrorKind.INVALID_STATE
        assert len(gateway.broadcasts) == 1
        releases = [tx for tx in await queries.list_transactions(deal.id) if tx.direction is TxDirection.RELEASE]
        assert len(releases) == 1


# ============================================================================
# Authorization and state
# ============================================================================


class TestReleaseGuards:
    """Release is refused unless the buyer asks for a FUNDED, undisputed deal."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("requester", [SELLER, "mallory", ADMIN])
    async def test_only_buyer_may_release(self, engine, gateway, funded_deal, queries, requester) -> None:
        deal = await funded_deal()

        result = await engine.release_funds(deal.id, requester)

        assert result.error is ErrorKind.NOT_AUTHORIZED
        assert gateway.broadcasts == []
        assert (await queries.get_deal(deal.id)).status is DealStatus.FUNDED
        denied = [e for e in await queries.list_audit(deal.id) if e.action == AuditAction.ACCESS_DENIED.value]
        assert denied[-1].details["operation"] == "release_funds"

    @pytest.mark.asyncio
    async def test_unfunded_deal(self, engine, open_deal) -> None:
        deal = await open_deal()

        result = await engine.release_funds(deal.id, BUYER)

        assert result.error is ErrorKind.INVALID_STATE

    @pytest.mark.asyncio
    async def test_disputed_deal_blocked_until_resolved(self, engine, admin, gateway, funded_deal) -> None:
        deal = await funded_deal()
        await engine.open_dispute(deal.id, SELLER, "buyer claims non-delivery")

        blocked = await engine.release_funds(deal.id, BUYER)
        await admin.resolve_dispute(deal.id, ADMIN, note="delivered")
        released = await engine.release_funds(deal.id, BUYER)

        assert blocked.error is ErrorKind.DEAL_DISPUTED
        assert released.success
        assert len(gateway.broadcasts) == 1

    @pytest.mark.asyncio
    async def test_dispute_refused_during_release(self, engine, db, funded_deal) -> None:
        deal = await funded_deal()
        async with db.get_async_session() as session:
            await DealRepository(session).claim_release(deal.id, "token", deal.created_at)

        result = await engine.open_dispute(deal.id, SELLER, "too late")

        assert result.error is ErrorKind.INVALID_STATE


# ============================================================================
# Failures before the payout
# ============================================================================


class TestReleaseFailures:
    """A failure before the seller broadcast leaves the deal FUNDED and retryable."""

    @pytest.mark.asyncio
    async def test_rejected_broadcast_clears_claim(self, engine, gateway, funded_deal, queries) -> None:
        deal = await funded_deal()
        gateway.broadcast_failures = [BroadcastRejectedError("missing inputs")]

        failed = await engine.release_funds(deal.id, BUYER)

        assert failed.error is ErrorKind.BROADCAST_FAILED
        assert not failed.partial_effect
        stored = await queries.get_deal(deal.id)
        assert stored.status is DealStatus.FUNDED
        assert not stored.release_in_progress
        actions = [entry.action for entry in await queries.list_audit(deal.id)]
        assert AuditAction.RELEASE_FAILED.value in actions

        retried = await engine.release_funds(deal.id, BUYER)
        assert retried.success

    @pytest.mark.asyncio
    async def test_broadcast_timeout_clears_claim(self, engine, gateway, funded_deal, queries) -> None:
        deal = await funded_deal()
        engine._broadcast_timeout = 0.05
        gateway.broadcast_delay = 0.5

        result = await engine.release_funds(deal.id, BUYER)

        assert result.error is ErrorKind.BROADCAST_FAILED
        assert gateway.broadcasts == []
        assert not (await queries.get_deal(deal.id)).release_in_progress

    @pytest.mark.asyncio
    async def test_retry_signs_identical_transaction(self, engine, gateway, funded_deal) -> None:
        deal = await funded_deal()
        attempts: list[str] = []
        original = gateway.broadcast

        async def flaky(raw_tx_hex: str, asset: Asset):
            attempts.append(raw_tx_hex)
            if len(attempts) == 1:
                raise BroadcastRejectedError("node busy")
            return await original(raw_tx_hex, asset)

        gateway.broadcast = flaky

        await engine.release_funds(deal.id, BUYER)
        await engine.release_funds(deal.id, BUYER)

        assert attempts[0] == attempts[1]

    @pytest.mark.asyncio
    async def test_wrong_master_key(self, db, gateway, settings, publisher, clock, funded_deal, queries) -> None:
        deal = await funded_deal()
        other = KeyCustodyService(bytes.fromhex("11" * 32))
        engine = DealLifecycleEngine(db, other, gateway, settings=settings, publisher=publisher, clock=clock)

        result = await engine.release_funds(deal.id, BUYER)

        assert result.error is ErrorKind.DECRYPTION_FAILED
        assert gateway.broadcasts == []
        assert not (await queries.get_deal(deal.id)).release_in_progress

    @pytest.mark.asyncio
    async def test_escrow_emptied_on_chain(self, engine, gateway, funded_deal, queries) -> None:
        deal = await funded_deal()
        gateway.utxos[deal.escrow_address] = []

        result = await engine.release_funds(deal.id, BUYER)

        assert result.error is ErrorKind.INSUFFICIENT_ESCROW_BALANCE
        assert (await queries.get_deal(deal.id)).status is DealStatus.FUNDED

    @pytest.mark.asyncio
    async def test_missing_escrow_address_clears_claim(self, engine, db, gateway, funded_deal, queries) -> None:
        deal = await funded_deal()
        async with db.get_async_session() as session:
            await session.execute(update(DealModel).where(DealModel.id == deal.id).values(escrow_address=None))

        result = await engine.release_funds(deal.id, BUYER)

        assert result.error is ErrorKind.INVALID_STATE
        current = await queries.get_deal(deal.id)
        assert current.status is DealStatus.FUNDED
        assert not current.release_in_progress
        assert gateway.broadcasts == []

    @pytest.mark.asyncio
    async def test_provider_down_during_release(self, engine, gateway, funded_deal) -> None:
        deal = await funded_deal()
        gateway.fail_reads = True

        result = await engine.release_funds(deal.id, BUYER)

        assert result.error is ErrorKind.PROVIDER_UNAVAILABLE
        assert gateway.broadcasts == []

    @pytest.mark.asyncio
    async def test_locked_bookkeeping_is_replayed(self, engine, gateway, funded_deal, queries, monkeypatch) -> None:
        deal = await funded_deal()
        original = DealRepository.mark_released
        attempts: list[int] = []

        async def locked_once(self, deal_id, token, now):
            attempts.append(deal_id)
            if len(attempts) == 1:
                raise OperationalError("UPDATE deals", {}, Exception("database is locked"))
            return await original(self, deal_id, token, now)

        monkeypatch.setattr(DealRepository, "mark_released", locked_once)

        result = await engine.release_funds(deal.id, BUYER)

        assert result.success, result.message
        assert len(attempts) == 2
        assert len(gateway.broadcasts) == 1
        ledger = ledger_by_direction(await queries.list_transactions(deal.id))
        assert ledger[TxDirection.RELEASE].tx_hash == result.data.release_tx_hash

    @pytest.mark.asyncio
    async def test_unrecorded_payout_is_partial_effect(
        self, engine, gateway, funded_deal, publisher, monkeypatch
    ) -> None:
        deal = await funded_deal()
        monkeypatch.setattr(DealRepository, "mark_released", AsyncMock(return_value=False))

        result = await engine.release_funds(deal.id, BUYER)

        assert result.error is ErrorKind.PERSISTENCE_ERROR
        assert result.partial_effect
        assert len(gateway.broadcasts) == 1
        assert DealEventKind.RELEASE_NEEDS_REVIEW in publisher.kinds()


# ============================================================================
# Fee transfer
# ============================================================================


class TestFeeTransfer:
    """Tests for the best-effort fee transaction."""

    @pytest.mark.asyncio
    async def test_missing_payout_wallet_leaves_fee_pending(
        self, engine, gateway, funded_deal, publisher, queries
    ) -> None:
        deal = await funded_deal()

        result = await engine.release_funds(deal.id, BUYER)

        assert result.success
        assert result.data.deal.status is DealStatus.RELEASED
        assert result.data.fee_transfer_pending
        assert result.data.fee_tx_hash is None
        assert any("no default payout wallet" in w for w in result.warnings)
        assert len(gateway.broadcasts) == 1
        fee = ledger_by_direction(await queries.list_transactions(deal.id))[TxDirection.FEE]
        assert fee.status is TxStatus.FAILED
        assert fee.amount_sats == 8_000
        assert fee.to_address is None
        failed = [e for e in publisher.events if e.kind is DealEventKind.FEE_TRANSFER_FAILED]
        assert failed[0].needs_admin_attention
        assert failed[0].payload["address"] == deal.escrow_address

    @pytest.mark.asyncio
    async def test_rejected_fee_broadcast_does_not_undo_release(
        self, engine, gateway, funded_deal, payout_wallet, queries
    ) -> None:
        deal = await funded_deal()
        gateway.broadcast_failures = [None, BroadcastRejectedError("fee too low")]

        result = await engine.release_funds(deal.id, BUYER)

        assert result.success
        assert result.data.fee_transfer_pending
        assert result.data.deal.status is DealStatus.RELEASED
        fee = ledger_by_direction(await queries.list_transactions(deal.id))[TxDirection.FEE]
        assert fee.status is TxStatus.FAILED
        assert fee.to_address == payout_wallet
        assert "fee too low" in fee.error

    @pytest.mark.asyncio
    async def test_overpayment_refunded_to_buyer(
        self, engine, funded_deal, payout_wallet, buyer_address, queries
    ) -> None:
        deal = await funded_deal(paid_sats=1_100_000)

        result = await engine.release_funds(deal.id, BUYER)

        assert result.data.refund_amount == Decimal("0.001")
        assert result.data.platform_amount == Decimal("0.00008")
        assert result.data.seller_amount == Decimal("0.0099")
        refund = ledger_by_direction(await queries.list_transactions(deal.id))[TxDirection.REFUND]
        assert refund.amount_sats == 100_000
        assert refund.to_address == buyer_address

    @pytest.mark.asyncio
    async def test_dust_overpayment_kept(self, engine, funded_deal, payout_wallet) -> None:
        deal = await funded_deal(paid_sats=1_000_300)

        result = await engine.release_funds(deal.id, BUYER)

        assert result.data.refund_amount == Decimal(0)
        assert result.data.platform_amount == Decimal("0.000083")
        assert any("overpayment of 300 sats" in note for note in result.data.notes)

    @pytest.mark.asyncio
    async def test_referral_group_paid_its_share(
        self, engine, admin, db, funded_deal, payout_wallet, address_for, queries
    ) -> None:
        group = (await admin.create_referral_group(ADMIN, "Traders", "10")).data
        referral_address = address_for("referral-wallet")
        await admin.set_referral_group_wallet(ADMIN, group.id, "BTC", referral_address)
        deal = await funded_deal(options=DealOptions(referral_group_id=group.id))

        result = await engine.release_funds(deal.id, BUYER)

        assert result.data.referral_amount == Decimal("0.00001")
        assert result.data.platform_amount == Decimal("0.00007")
        referral = ledger_by_direction(await queries.list_transactions(deal.id))[TxDirection.REFERRAL]
        assert referral.to_address == referral_address
        async with db.get_async_session() as session:
            groups = ReferralGroupRepository(session)
            assert (await groups.get(group.id)).total_deals == 1
            assert (await groups.get_wallet(group.id, Asset.BTC)).earned_sats == 1_000

    @pytest.mark.asyncio
    async def test_referral_without_wallet_accrues_only(
        self, engine, admin, db, funded_deal, payout_wallet
    ) -> None:
        group = (await admin.create_referral_group(ADMIN, "Lurkers", "10")).data
        deal = await funded_deal(options=DealOptions(referral_group_id=group.id))

        result = await engine.release_funds(deal.id, BUYER)

        assert result.data.referral_amount == Decimal(0)
        assert result.data.platform_amount == Decimal("0.00008")
        async with db.get_async_session() as session:
            wallet = await ReferralGroupRepository(session).get_wallet(group.id, Asset.BTC)
        assert wallet.earned_sats == 1_000
        assert wallet.address is None


# ============================================================================
# Confirmation tracking
# ============================================================================


class TestRefreshConfirmations:
    """Tests for refresh_transaction_confirmations."""

    @pytest.mark.asyncio
    async def test_confirms_release(self, engine, gateway, funded_deal, payout_wallet, queries) -> None:
        deal = await funded_deal()
        receipt = (await engine.release_funds(deal.id, BUYER)).data
        release = ledger_by_direction(await queries.list_transactions(deal.id))[TxDirection.RELEASE]

        unchanged = await engine.refresh_transaction_confirmations(release.id)
        gateway.confirmations[receipt.release_tx_hash] = 2
        confirmed = await engine.refresh_transaction_confirmations(release.id)

        assert unchanged.data.status is TxStatus.PENDING
        assert confirmed.data.status is TxStatus.CONFIRMED
        assert confirmed.data.confirmations == 2

    @pytest.mark.asyncio
    async def test_settled_rows_skip_chain(self, engine, gateway, funded_deal, queries) -> None:
        deal = await funded_deal()
        [deposit] = await queries.list_transactions(deal.id)
        reads = gateway.read_calls

        result = await engine.refresh_transaction_confirmations(deposit.id)

        assert result.data.status is TxStatus.CONFIRMED
        assert gateway.read_calls == reads

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, engine) -> None:
        result = await engine.refresh_transaction_confirmations(999)

        assert result.error is ErrorKind.DEAL_NOT_FOUND

    @pytest.mark.asyncio
    async def test_row_removed_mid_refresh(
        self, engine, gateway, funded_deal, payout_wallet, queries, monkeypatch
    ) -> None:
        deal = await funded_deal()
        receipt = (await engine.release_funds(deal.id, BUYER)).data
        release = ledger_by_direction(await queries.list_transactions(deal.id))[TxDirection.RELEASE]
        gateway.confirmations[receipt.release_tx_hash] = 2
        original_get = TransactionRepository.get
        lookups: list[int] = []

        async def get_once(self, tx_id: int):
            lookups.append(tx_id)
            return await original_get(self, tx_id) if len(lookups) == 1 else None

        monkeypatch.setattr(TransactionRepository, "get", get_once)

        result = await engine.refresh_transaction_confirmations(release.id)

        assert result.error is ErrorKind.DEAL_NOT_FOUND
        assert lookups == [release.id, release.id]
