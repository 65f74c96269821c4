"""Chain gateway interface.

The engine talks to the blockchain only through :class:`ChainGateway`.
Read failures are transient (the caller retries later); a broadcast
rejection is fatal for that attempt and is never assumed to have succeeded.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from escrow_engine.assets import Asset


class ChainGatewayError(Exception):
    """Base exception for chain gateway errors."""

    transient = True


class ProviderUnavailableError(ChainGatewayError):
    """Raised when the provider cannot be reached or keeps failing."""


class RateLimitedError(ChainGatewayError):
    """Raised when the provider rate limit is exhausted."""


class MalformedResponseError(ChainGatewayError):
    """Raised when the provider answers with an unexpected payload."""


class BroadcastRejectedError(ChainGatewayError):
    """Raised when a raw transaction is refused by the provider."""

    transient = False


@dataclass(frozen=True)
class AddressBalance:
    """Balance of an address in minor units."""

    confirmed_sats: int
    unconfirmed_sats: int

    @property
    def total_sats(self) -> int:
        return self.confirmed_sats + self.unconfirmed_sats


@dataclass(frozen=True)
class Utxo:
    txid: str
    vout: int
    value_sats: int
    confirmations: int


@dataclass(frozen=True)
class BroadcastResult:
    tx_hash: str


class ChainGateway(Protocol):
    """Blockchain access used by the lifecycle engine."""

    async def get_balance(self, address: str, asset: Asset, *, fresh: bool = False) -> AddressBalance:
        """Confirmed and unconfirmed balance; ``fresh`` bypasses any cache."""
        ...

    async def get_utxos(self, address: str, asset: Asset) -> list[Utxo]: ...

    async def broadcast(self, raw_tx_hex: str, asset: Asset) -> BroadcastResult: ...

    async def get_confirmations(self, tx_hash: str, asset: Asset) -> int: ...
