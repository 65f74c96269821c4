"""Escrow key custody.

Generates one-time secp256k1 keypairs for escrow addresses and keeps their
private keys encrypted at rest with AES-256-GCM under a configured master
key. Plaintext keys exist only in memory for the duration of a signing
operation; nothing in this module logs key material or blobs.

Blob format::

    v1:<key id>:<nonce hex>:<ciphertext+tag hex>

The key id is a short fingerprint of the master key that produced the blob,
so retired keys can still decrypt old blobs after a rotation.
"""

from __future__ import annotations

import hashlib
import logging
import re
import secrets
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import base58
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from eth_keys import keys
from eth_keys.exceptions import ValidationError as EthKeysValidationError

from escrow_engine.assets import Asset, get_params
from escrow_engine.custody.addresses import hash160, p2pkh_address

if TYPE_CHECKING:
    from escrow_engine.config import CustodySettings

logger = logging.getLogger(__name__)

SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

BLOB_VERSION = "v1"
NONCE_SIZE = 12
MASTER_KEY_SIZE = 32
MAX_GENERATION_ATTEMPTS = 16

_PRIVATE_KEY_HEX_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class CustodyError(Exception):
    """Base exception for key custody errors."""


class KeyGenerationError(CustodyError):
    """Raised when a valid keypair could not be produced."""


class DecryptionError(CustodyError):
    """Raised when a key blob cannot be decrypted or authenticated."""


@dataclass(frozen=True)
class EscrowKeypair:
    """A freshly generated escrow keypair."""

    asset: Asset
    address: str
    public_key: bytes
    private_key: bytes = field(repr=False)

    def to_wif(self) -> str:
        """Export the private key in compressed WIF for manual recovery."""
        version = get_params(self.asset).wif_version
        return base58.b58encode_check(bytes([version]) + self.private_key + b"\x01").decode("ascii")


def key_fingerprint(master_key: bytes) -> str:
    return hashlib.sha256(b"escrow-engine/master-key-id" + master_key).hexdigest()[:8]


def is_valid_scalar(private_key: bytes) -> bool:
    if len(private_key) != 32:
        return False
    value = int.from_bytes(private_key, "big")
    return 1 <= value < SECP256K1_ORDER


def compressed_public_key(private_key: bytes) -> bytes:
    return keys.PrivateKey(private_key).public_key.to_compressed_bytes()


def derive_address(private_key: bytes, asset: Asset) -> str:
    """P2PKH address of the compressed public key for ``private_key``."""
    return p2pkh_address(hash160(compressed_public_key(private_key)), asset)


class KeyCustodyService:
    """Generates escrow keypairs and seals their private keys.

    Example:
        ```python
        custody = KeyCustodyService(bytes.fromhex(master_key_hex))
        keypair = custody.generate_keypair(Asset.BTC)
        blob = custody.encrypt(keypair.private_key, associated_data=keypair.address.encode())
        ```
    """

    def __init__(self, master_key: bytes, *, previous_keys: Sequence[bytes] = ()) -> None:
        if len(master_key) != MASTER_KEY_SIZE:
            raise ValueError("master key must be 32 bytes")
        for old_key in previous_keys:
            if len(old_key) != MASTER_KEY_SIZE:
                raise ValueError("previous master keys must be 32 bytes")

        self._current_id = key_fingerprint(master_key)
        self._ciphers: dict[str, AESGCM] = {self._current_id: AESGCM(master_key)}
        for old_key in previous_keys:
            self._ciphers.setdefault(key_fingerprint(old_key), AESGCM(old_key))

    @classmethod
    def from_settings(cls, settings: CustodySettings) -> KeyCustodyService:
        return cls(settings.master_key_bytes(), previous_keys=settings.previous_master_key_bytes())

    @property
    def key_id(self) -> str:
        """Fingerprint of the master key used for new blobs."""
        return self._current_id

    def generate_keypair(self, asset: Asset) -> EscrowKeypair:
        """Generate a keypair and P2PKH address for ``asset``.

        Raises:
            KeyGenerationError: If no valid scalar could be drawn or derived.
        """
        for _ in range(MAX_GENERATION_ATTEMPTS):
            candidate = secrets.token_bytes(32)
            if not is_valid_scalar(candidate):
                continue
            try:
                public_key = compressed_public_key(candidate)
                address = p2pkh_address(hash160(public_key), asset)
            except EthKeysValidationError as e:
                raise KeyGenerationError(f"public key derivation failed: {e}") from e
            except Exception as e:
                raise KeyGenerationError(f"address derivation failed: {e}") from e
            logger.debug("Generated %s escrow address %s", asset.value, address)
            return EscrowKeypair(asset=asset, address=address, public_key=public_key, private_key=candidate)
        raise KeyGenerationError("could not draw a valid secp256k1 scalar")

    def encrypt(self, private_key: bytes, *, associated_data: bytes = b"") -> str:
        """Seal a private key with a fresh random nonce."""
        if not is_valid_scalar(private_key):
            raise ValueError("refusing to encrypt an invalid private key")
        nonce = secrets.token_bytes(NONCE_SIZE)
        ciphertext = self._ciphers[self._current_id].encrypt(nonce, private_key, associated_data)
        return f"{BLOB_VERSION}:{self._current_id}:{nonce.hex()}:{ciphertext.hex()}"

    def decrypt(self, blob: str, *, associated_data: bytes = b"") -> bytes:
        """Open a sealed private key.

        Raises:
            DecryptionError: If the blob is malformed, was sealed under an
                unknown master key, or fails authentication.
        """
        parts = blob.split(":") if isinstance(blob, str) else []
        if len(parts) != 4 or parts[0] != BLOB_VERSION:
            raise DecryptionError("malformed key blob")

        _, key_id, nonce_hex, ciphertext_hex = parts
        cipher = self._ciphers.get(key_id)
        if cipher is None:
            raise DecryptionError(f"key blob sealed under unknown master key {key_id}")

        try:
            nonce = bytes.fromhex(nonce_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
        except ValueError:
            raise DecryptionError("malformed key blob") from None
        if len(nonce) != NONCE_SIZE:
            raise DecryptionError("malformed key blob")

        try:
            private_key = cipher.decrypt(nonce, ciphertext, associated_data)
        except InvalidTag:
            raise DecryptionError("key blob failed authentication") from None

        if not is_valid_scalar(private_key):
            raise DecryptionError("decrypted key is not a valid secp256k1 scalar")
        return private_key

    @staticmethod
    def validate_private_key(private_key_hex: str) -> bool:
        """Check a hex private key is 32 bytes and within [1, n-1]."""
        if not isinstance(private_key_hex, str) or not _PRIVATE_KEY_HEX_RE.match(private_key_hex):
            return False
        return is_valid_scalar(bytes.fromhex(private_key_hex))

    @staticmethod
    def blob_checksum(blob: str) -> str:
        """SHA-256 of a blob, stored alongside backups to detect corruption."""
        return hashlib.sha256(blob.encode("ascii")).hexdigest()
