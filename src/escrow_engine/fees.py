"""Platform fee policy.

Pure functions: no I/O, no state. Amounts are ``Decimal`` with 8 fractional
digits; the fee is truncated toward zero so the seller never receives less
than the published policy implies, and ``net_amount`` is exact.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from escrow_engine.assets import QUANTUM, Asset

if TYPE_CHECKING:
    from escrow_engine.config import FeeSettings

_PERCENT_QUANTUM = Decimal("0.01")
_HUNDRED = Decimal(100)


@dataclass(frozen=True)
class FeeSchedule:
    """Flat fee below ``flat_threshold``, ``percentage`` of the amount otherwise."""

    flat_amount: Decimal = Decimal("5")
    flat_threshold: Decimal = Decimal("100")
    percentage: Decimal = Decimal("5")


DEFAULT_FEE_SCHEDULE = FeeSchedule()


@dataclass(frozen=True)
class FeeBreakdown:
    fee_amount: Decimal
    net_amount: Decimal
    fee_percentage: Decimal


def calculate_fees(amount: Decimal, schedule: FeeSchedule = DEFAULT_FEE_SCHEDULE) -> FeeBreakdown:
    """Compute the platform fee for a deal amount.

    For amounts below the threshold the fee is flat and the reported
    percentage is the effective one (``fee / amount * 100``, 2 dp).

    Raises:
        ValueError: If the amount is not positive.
    """
    if amount <= 0:
        raise ValueError("amount must be positive")

    if amount < schedule.flat_threshold:
        fee = schedule.flat_amount.quantize(QUANTUM, rounding=ROUND_DOWN)
        percentage = (fee / amount * _HUNDRED).quantize(_PERCENT_QUANTUM, rounding=ROUND_HALF_UP)
    else:
        fee = (amount * schedule.percentage / _HUNDRED).quantize(QUANTUM, rounding=ROUND_DOWN)
        percentage = schedule.percentage.quantize(_PERCENT_QUANTUM)

    return FeeBreakdown(fee_amount=fee, net_amount=amount - fee, fee_percentage=percentage)


def referral_share(fee_amount: Decimal, group_percentage: Decimal) -> Decimal:
    """Portion of the platform fee owed to a referring group."""
    if fee_amount <= 0 or group_percentage <= 0:
        return Decimal(0).quantize(QUANTUM)
    share = (fee_amount * group_percentage / _HUNDRED).quantize(QUANTUM, rounding=ROUND_DOWN)
    return min(share, fee_amount)


def schedule_for(asset: Asset, settings: FeeSettings) -> FeeSchedule:
    """Build the fee schedule for an asset from configuration."""
    base = {
        "flat_amount": settings.flat_amount,
        "flat_threshold": settings.flat_threshold,
        "percentage": settings.percentage,
    }
    base.update(settings.asset_overrides.get(asset.value, {}))
    return FeeSchedule(**base)
