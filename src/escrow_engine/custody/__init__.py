"""Escrow key custody - keypairs, sealed keys, addresses and signing."""

from escrow_engine.custody.addresses import (
    InvalidAddressError,
    decode_address,
    script_for_address,
    validate_address,
)
from escrow_engine.custody.keys import (
    CustodyError,
    DecryptionError,
    EscrowKeypair,
    KeyCustodyService,
    KeyGenerationError,
    derive_address,
)
from escrow_engine.custody.transactions import (
    SignedTransaction,
    TransactionBuildError,
    TxInput,
    TxOutput,
    sign_p2pkh_transaction,
)

__all__ = [
    "CustodyError",
    "DecryptionError",
    "EscrowKeypair",
    "InvalidAddressError",
    "KeyCustodyService",
    "KeyGenerationError",
    "SignedTransaction",
    "TransactionBuildError",
    "TxInput",
    "TxOutput",
    "decode_address",
    "derive_address",
    "script_for_address",
    "sign_p2pkh_transaction",
    "validate_address",
]
