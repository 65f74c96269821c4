"""Supported assets and their chain parameters.

Everything asset specific (address version bytes, bech32 prefixes, WIF
prefix, confirmation policy, network fee) lives in ``ASSET_PARAMS`` so the
rest of the engine stays asset agnostic.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from enum import Enum

DECIMALS = 8
MINOR_UNITS_PER_COIN = 10**DECIMALS
QUANTUM = Decimal(1).scaleb(-DECIMALS)


class Asset(str, Enum):
    """Assets the engine can hold in escrow."""

    BTC = "BTC"
    LTC = "LTC"


@dataclass(frozen=True)
class AssetParams:
    """Chain parameters for one asset."""

    asset: Asset
    p2pkh_version: int
    p2sh_versions: tuple[int, ...]
    wif_version: int
    bech32_hrp: str
    provider_coin: str
    required_confirmations: int
    network_fee_sats: int
    dust_limit_sats: int


ASSET_PARAMS: dict[Asset, AssetParams] = {
    Asset.BTC: AssetParams(
        asset=Asset.BTC,
        p2pkh_version=0x00,
        p2sh_versions=(0x05,),
        wif_version=0x80,
        bech32_hrp="bc",
        provider_coin="btc",
        required_confirmations=1,
        network_fee_sats=1_000,
        dust_limit_sats=546,
    ),
    Asset.LTC: AssetParams(
        asset=Asset.LTC,
        p2pkh_version=0x30,
        # 0x32 ("M...") is current, 0x05 ("3...") is the legacy P2SH prefix still in use.
        p2sh_versions=(0x32, 0x05),
        wif_version=0xB0,
        bech32_hrp="ltc",
        provider_coin="ltc",
        required_confirmations=1,
        network_fee_sats=100_000,
        dust_limit_sats=5_460,
    ),
}


def parse_asset(value: str | Asset) -> Asset:
    """Parse an asset code, case insensitive.

    Raises:
        ValueError: If the asset is not supported.
    """
    if isinstance(value, Asset):
        return value
    try:
        return Asset(value.strip().upper())
    except ValueError:
        raise ValueError(f"Unsupported asset: {value!r}") from None


def get_params(asset: str | Asset) -> AssetParams:
    return ASSET_PARAMS[parse_asset(asset)]


def to_minor_units(amount: Decimal) -> int:
    """Convert a coin amount to integer minor units.

    Raises:
        ValueError: If the amount has more than 8 fractional digits.
    """
    quantized = amount.quantize(QUANTUM, rounding=ROUND_DOWN)
    if quantized != amount:
        raise ValueError(f"Amount {amount} has more than {DECIMALS} decimal places")
    return int(quantized * MINOR_UNITS_PER_COIN)


def from_minor_units(units: int) -> Decimal:
    """Convert integer minor units to a coin amount with 8 decimal places."""
    return (Decimal(units) / MINOR_UNITS_PER_COIN).quantize(QUANTUM)


def format_amount(amount: Decimal, asset: str | Asset) -> str:
    """Format an amount for display, trimming trailing zeros."""
    text = format(amount.quantize(QUANTUM).normalize(), "f")
    return f"{text} {parse_asset(asset).value}"
