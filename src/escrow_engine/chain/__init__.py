"""Blockchain access - gateway protocol and provider adapters."""

from escrow_engine.chain.blockcypher import BlockCypherGateway
from escrow_engine.chain.gateway import (
    AddressBalance,
    BroadcastRejectedError,
    BroadcastResult,
    ChainGateway,
    ChainGatewayError,
    MalformedResponseError,
    ProviderUnavailableError,
    RateLimitedError,
    Utxo,
)

__all__ = [
    "AddressBalance",
    "BlockCypherGateway",
    "BroadcastRejectedError",
    "BroadcastResult",
    "ChainGateway",
    "ChainGatewayError",
    "MalformedResponseError",
    "ProviderUnavailableError",
    "RateLimitedError",
    "Utxo",
]
