"""Release planning: how the escrow balance is split between outputs.

A release is two transactions. The seller transaction pays the net amount
to the seller and returns everything else to the escrow address as a
change output. The fee transaction then spends that change output to the
buyer (overpayment refund), the referral group and the platform.

Planning is pure integer arithmetic on satoshis so it can be tested
without a chain or a database.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from escrow_engine.domain import TxDirection
from escrow_engine.engine.errors import DealValidationError, ErrorKind, UpstreamError


@dataclass(frozen=True)
class PayoutLeg:
    direction: TxDirection
    address: str
    amount_sats: int


@dataclass(frozen=True)
class ReleasePlan:
    """Outputs for the seller transaction and the follow-up fee transaction."""

    seller_amount_sats: int
    seller_network_fee_sats: int
    change_sats: int
    fee_legs: tuple[PayoutLeg, ...] = ()
    fee_network_fee_sats: int = 0
    referral_share_sats: int = 0
    fee_transfer_blocked: str | None = None
    notes: tuple[str, ...] = field(default_factory=tuple)

    @property
    def has_fee_transfer(self) -> bool:
        return bool(self.fee_legs) and self.change_sats > 0

    def leg(self, direction: TxDirection) -> PayoutLeg | None:
        for leg in self.fee_legs:
            if leg.direction is direction:
                return leg
        return None

    def leg_amount(self, direction: TxDirection) -> int:
        leg = self.leg(direction)
        return leg.amount_sats if leg else 0


def plan_release(
    *,
    escrow_total_sats: int,
    amount_sats: int,
    fee_sats: int,
    network_fee_sats: int,
    dust_limit_sats: int,
    platform_address: str | None,
    referral_address: str | None = None,
    referral_share_sats: int = 0,
    refund_address: str | None = None,
) -> ReleasePlan:
    """Split the escrow balance for a release.

    The seller always receives ``amount - fee``. Network fees for both
    transactions come out of the platform side, never out of the seller's net.

    Raises:
        UpstreamError: ``insufficient_escrow_balance`` if the escrow holds
            less than the deal amount or its platform side cannot pay the
            seller transaction's network fee.
        DealValidationError: If the net amount would be dust.
    """
    net_sats = amount_sats - fee_sats
    if net_sats <= dust_limit_sats:
        raise DealValidationError("net amount is below the dust limit", kind=ErrorKind.INVALID_AMOUNT)
    if escrow_total_sats < amount_sats:
        raise UpstreamError(
            f"escrow holds {escrow_total_sats} sats, deal requires {amount_sats}",
            kind=ErrorKind.INSUFFICIENT_ESCROW_BALANCE,
        )

    notes: list[str] = []
    seller_amount = net_sats
    change = escrow_total_sats - net_sats - network_fee_sats
    if change < 0:
        raise UpstreamError(
            "platform side of the escrow cannot cover the network fee",
            kind=ErrorKind.INSUFFICIENT_ESCROW_BALANCE,
        )

    surplus = escrow_total_sats - amount_sats
    share = max(referral_share_sats, 0)

    # A change output must itself fund a second transaction and leave
    # something worth sending; otherwise it goes to miners.
    spendable = change - network_fee_sats
    if change == 0 or spendable <= dust_limit_sats:
        if change > 0:
            notes.append(f"{change} sats of fee change is uneconomical to transfer and was left to miners")
        return ReleasePlan(
            seller_amount_sats=seller_amount,
            seller_network_fee_sats=escrow_total_sats - seller_amount,
            change_sats=0,
            referral_share_sats=share,
            notes=tuple(notes),
        )

    seller_network_fee = escrow_total_sats - seller_amount - change
    if platform_address is None:
        # Leave the change at the escrow address; a manual sweep pays one network fee.
        return ReleasePlan(
            seller_amount_sats=seller_amount,
            seller_network_fee_sats=seller_network_fee,
            change_sats=change,
            fee_network_fee_sats=network_fee_sats,
            referral_share_sats=share,
            fee_transfer_blocked="no default payout wallet configured",
            notes=tuple(notes),
        )

    remaining = spendable
    legs: list[PayoutLeg] = []

    refund = min(surplus, remaining) if refund_address else 0
    if refund > dust_limit_sats:
        legs.append(PayoutLeg(TxDirection.REFUND, refund_address, refund))  # type: ignore[arg-type]
        remaining -= refund
    elif surplus > 0:
        notes.append(f"overpayment of {surplus} sats kept by the platform")

    referral = min(share, remaining) if referral_address else 0
    if referral > dust_limit_sats:
        legs.append(PayoutLeg(TxDirection.REFERRAL, referral_address, referral))  # type: ignore[arg-type]
        remaining -= referral
    elif share > 0:
        notes.append(f"referral share of {share} sats accrued but not paid out")

    fee_network_fee = network_fee_sats
    if remaining > dust_limit_sats:
        legs.append(PayoutLeg(TxDirection.FEE, platform_address, remaining))
    else:
        fee_network_fee += remaining

    return ReleasePlan(
        seller_amount_sats=seller_amount,
        seller_network_fee_sats=seller_network_fee,
        change_sats=change,
        fee_legs=tuple(legs),
        fee_network_fee_sats=fee_network_fee,
        referral_share_sats=share,
        notes=tuple(notes),
    )
