"""Address encoding and validation for the supported UTXO chains.

Legacy addresses are Base58Check (``base58``), segwit addresses are
bech32/bech32m (``bech32``). RIPEMD-160 comes from pycryptodome, since
OpenSSL 3 builds no longer expose it through ``hashlib``.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum

import base58
import bech32
from Crypto.Hash import RIPEMD160

from escrow_engine.assets import Asset, get_params

OP_DUP = 0x76
OP_HASH160 = 0xA9
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_CHECKSIG = 0xAC
OP_0 = 0x00
OP_1 = 0x51


class InvalidAddressError(ValueError):
    """Raised when an address is malformed or belongs to another network."""


class AddressKind(str, Enum):
    P2PKH = "p2pkh"
    P2SH = "p2sh"
    WITNESS = "witness"


@dataclass(frozen=True)
class DecodedAddress:
    kind: AddressKind
    payload: bytes
    witness_version: int | None = None


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def double_sha256(data: bytes) -> bytes:
    return sha256(sha256(data))


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))."""
    return RIPEMD160.new(sha256(data)).digest()


def p2pkh_address(pubkey_hash: bytes, asset: Asset) -> str:
    if len(pubkey_hash) != 20:
        raise ValueError("public key hash must be 20 bytes")
    version = get_params(asset).p2pkh_version
    return base58.b58encode_check(bytes([version]) + pubkey_hash).decode("ascii")


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    return bytes([OP_DUP, OP_HASH160, 0x14]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def decode_address(address: str, asset: Asset) -> DecodedAddress:
    """Decode an address for ``asset``.

    Raises:
        InvalidAddressError: If the address is not valid on the asset's network.
    """
    params = get_params(asset)
    candidate = address.strip() if isinstance(address, str) else ""
    if not candidate or candidate != address:
        raise InvalidAddressError("address is empty or has surrounding whitespace")

    if candidate.lower().startswith(params.bech32_hrp + "1"):
        witness_version, program = bech32.decode(params.bech32_hrp, candidate)
        if witness_version is None or program is None:
            raise InvalidAddressError(f"invalid {asset.value} segwit address")
        return DecodedAddress(AddressKind.WITNESS, bytes(program), witness_version)

    try:
        raw = base58.b58decode_check(candidate)
    except ValueError as e:
        raise InvalidAddressError(f"invalid base58 address: {e}") from None
    if len(raw) != 21:
        raise InvalidAddressError("base58 address payload must be 21 bytes")

    version, payload = raw[0], raw[1:]
    if version == params.p2pkh_version:
        return DecodedAddress(AddressKind.P2PKH, payload)
    if version in params.p2sh_versions:
        return DecodedAddress(AddressKind.P2SH, payload)
    raise InvalidAddressError(f"address version byte 0x{version:02x} is not a {asset.value} address")


def validate_address(address: str, asset: Asset) -> bool:
    try:
        decode_address(address, asset)
    except InvalidAddressError:
        return False
    return True


def script_for_address(address: str, asset: Asset) -> bytes:
    """Output script paying to ``address``."""
    decoded = decode_address(address, asset)
    if decoded.kind is AddressKind.P2PKH:
        return p2pkh_script(decoded.payload)
    if decoded.kind is AddressKind.P2SH:
        return bytes([OP_HASH160, 0x14]) + decoded.payload + bytes([OP_EQUAL])
    if decoded.witness_version is None:
        raise InvalidAddressError(f"{address} has no witness version")
    version_op = OP_0 if decoded.witness_version == 0 else OP_1 + decoded.witness_version - 1
    return bytes([version_op, len(decoded.payload)]) + decoded.payload
