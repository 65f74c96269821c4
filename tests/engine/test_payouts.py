"""Tests for release planning arithmetic."""

import pytest

from escrow_engine.domain import TxDirection
from escrow_engine.engine.errors import ErrorKind, EscrowError
from escrow_engine.engine.payouts import plan_release

PLATFORM = "platform-address"
REFERRAL = "referral-address"
BUYER = "buyer-address"


def plan(**overrides):
    kwargs = {
        "escrow_total_sats": 1_000_000,
        "amount_sats": 1_000_000,
        "fee_sats": 10_000,
        "network_fee_sats": 1_000,
        "dust_limit_sats": 546,
        "platform_address": PLATFORM,
    }
    kwargs.update(overrides)
    return plan_release(**kwargs)


class TestPlanRelease:
    """Tests for plan_release."""

    def test_exact_payment(self) -> None:
        result = plan()

        assert result.seller_amount_sats == 990_000
        assert result.seller_network_fee_sats == 1_000
        assert result.change_sats == 9_000
        assert [(leg.direction, leg.amount_sats) for leg in result.fee_legs] == [(TxDirection.FEE, 8_000)]
        assert result.fee_network_fee_sats == 1_000
        assert result.has_fee_transfer
        assert result.fee_transfer_blocked is None

    def test_every_satoshi_accounted_for(self) -> None:
        result = plan(
            escrow_total_sats=1_250_000,
            refund_address=BUYER,
            referral_address=REFERRAL,
            referral_share_sats=2_500,
        )

        paid = result.seller_amount_sats + sum(leg.amount_sats for leg in result.fee_legs)
        fees = result.seller_network_fee_sats + result.fee_network_fee_sats
        assert paid + fees == 1_250_000

    def test_legs_ordered_refund_referral_fee(self) -> None:
        result = plan(
            escrow_total_sats=1_100_000,
            refund_address=BUYER,
            referral_address=REFERRAL,
            referral_share_sats=1_000,
        )

        assert [leg.direction for leg in result.fee_legs] == [
            TxDirection.REFUND,
            TxDirection.REFERRAL,
            TxDirection.FEE,
        ]
        assert result.leg_amount(TxDirection.REFUND) == 100_000
        assert result.leg_amount(TxDirection.REFERRAL) == 1_000
        assert result.leg_amount(TxDirection.FEE) == 7_000

    def test_seller_never_pays_network_fee(self) -> None:
        result = plan(fee_sats=1_500)

        assert result.seller_amount_sats == 998_500

    def test_small_change_left_to_miners(self) -> None:
        result = plan(fee_sats=2_000)

        assert result.change_sats == 0
        assert not result.has_fee_transfer
        assert result.seller_network_fee_sats == 2_000
        assert "left to miners" in result.notes[0]

    def test_no_payout_wallet_blocks_transfer(self) -> None:
        result = plan(platform_address=None)

        assert result.change_sats == 9_000
        assert result.fee_legs == ()
        assert result.fee_network_fee_sats == 1_000
        assert result.fee_transfer_blocked == "no default payout wallet configured"

    def test_dust_refund_kept_by_platform(self) -> None:
        result = plan(escrow_total_sats=1_000_200, refund_address=BUYER)

        assert result.leg(TxDirection.REFUND) is None
        assert result.leg_amount(TxDirection.FEE) == 8_200
        assert "overpayment of 200 sats kept by the platform" in result.notes

    def test_referral_without_address_is_noted(self) -> None:
        result = plan(referral_share_sats=1_000)

        assert result.leg(TxDirection.REFERRAL) is None
        assert result.referral_share_sats == 1_000
        assert result.leg_amount(TxDirection.FEE) == 8_000
        assert any("not paid out" in note for note in result.notes)

    def test_platform_remainder_below_dust_goes_to_fee(self) -> None:
        result = plan(referral_address=REFERRAL, referral_share_sats=7_800)

        assert result.leg_amount(TxDirection.REFERRAL) == 7_800
        assert result.leg(TxDirection.FEE) is None
        assert result.fee_network_fee_sats == 1_200

    def test_underfunded_escrow(self) -> None:
        with pytest.raises(EscrowError) as exc_info:
            plan(escrow_total_sats=999_999)

        assert exc_info.value.kind is ErrorKind.INSUFFICIENT_ESCROW_BALANCE

    def test_fee_side_cannot_cover_network_fee(self) -> None:
        with pytest.raises(EscrowError) as exc_info:
            plan(fee_sats=500)

        assert exc_info.value.kind is ErrorKind.INSUFFICIENT_ESCROW_BALANCE

    def test_dust_net_amount_rejected(self) -> None:
        with pytest.raises(EscrowError) as exc_info:
            plan(amount_sats=10_500, escrow_total_sats=10_500)

        assert exc_info.value.kind is ErrorKind.INVALID_AMOUNT
