"""Tests for escrow key custody."""

import pytest

from escrow_engine.assets import Asset
from escrow_engine.custody.addresses import decode_address
from escrow_engine.custody.keys import (
    SECP256K1_ORDER,
    DecryptionError,
    EscrowKeypair,
    KeyCustodyService,
    KeyGenerationError,
    derive_address,
    is_valid_scalar,
    key_fingerprint,
)

MASTER = bytes.fromhex("4f3c2a1b" * 8)
OLD_MASTER = bytes.fromhex("a5" * 32)
KEY_ONE = (1).to_bytes(32, "big")


@pytest.fixture
def custody() -> KeyCustodyService:
    return KeyCustodyService(MASTER)


class TestKeyGeneration:
    """Tests for keypair generation and address derivation."""

    def test_known_vector(self) -> None:
        assert derive_address(KEY_ONE, Asset.BTC) == "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"
        ltc = decode_address(derive_address(KEY_ONE, Asset.LTC), Asset.LTC)
        assert ltc.payload.hex() == "751e76e8199196d454941c45d1b3a323f1433bd6"

    def test_wif_export(self) -> None:
        keypair = EscrowKeypair(
            asset=Asset.BTC,
            address=derive_address(KEY_ONE, Asset.BTC),
            public_key=b"",
            private_key=KEY_ONE,
        )

        assert keypair.to_wif() == "KwDiBf89QgGbjEhKnhXJuH7LrciVrZi3qYjgd9M7rFU73sVHnoWn"

    @pytest.mark.parametrize("asset", list(Asset))
    def test_generated_keypair_controls_address(self, custody: KeyCustodyService, asset: Asset) -> None:
        keypair = custody.generate_keypair(asset)

        assert keypair.asset is asset
        assert len(keypair.public_key) == 33
        assert derive_address(keypair.private_key, asset) == keypair.address

    def test_keypairs_are_unique(self, custody: KeyCustodyService) -> None:
        addresses = {custody.generate_keypair(Asset.BTC).address for _ in range(20)}

        assert len(addresses) == 20

    def test_derivation_failure_is_wrapped(self, custody: KeyCustodyService, monkeypatch: pytest.MonkeyPatch) -> None:
        def broken_hash(data: bytes) -> bytes:
            raise AttributeError("no ripemd160")

        monkeypatch.setattr("escrow_engine.custody.keys.hash160", broken_hash)

        with pytest.raises(KeyGenerationError, match="no ripemd160"):
            custody.generate_keypair(Asset.BTC)

    def test_private_key_not_in_repr(self, custody: KeyCustodyService) -> None:
        keypair = custody.generate_keypair(Asset.BTC)

        assert keypair.private_key.hex() not in repr(keypair)

    @pytest.mark.parametrize(
        ("candidate", "valid"),
        [
            ("00" * 32, False),
            ("00" * 31 + "01", True),
            (f"{SECP256K1_ORDER - 1:064x}", True),
            (f"{SECP256K1_ORDER:064x}", False),
            ("zz" * 32, False),
            ("01", False),
        ],
    )
    def test_validate_private_key(self, candidate: str, valid: bool) -> None:
        assert KeyCustodyService.validate_private_key(candidate) is valid

    def test_is_valid_scalar_length(self) -> None:
        assert not is_valid_scalar(b"\x01" * 31)


class TestSealing:
    """Tests for encrypting private keys at rest."""

    def test_round_trip(self, custody: KeyCustodyService) -> None:
        keypair = custody.generate_keypair(Asset.BTC)
        aad = keypair.address.encode()

        blob = custody.encrypt(keypair.private_key, associated_data=aad)

        assert blob.startswith(f"v1:{custody.key_id}:")
        assert keypair.private_key.hex() not in blob
        assert custody.decrypt(blob, associated_data=aad) == keypair.private_key

    def test_fresh_nonce_per_blob(self, custody: KeyCustodyService) -> None:
        assert custody.encrypt(KEY_ONE) != custody.encrypt(KEY_ONE)

    def test_refuses_invalid_key(self, custody: KeyCustodyService) -> None:
        with pytest.raises(ValueError):
            custody.encrypt(b"\x00" * 32)

    def test_tampered_blob(self, custody: KeyCustodyService) -> None:
        blob = custody.encrypt(KEY_ONE)
        prefix, last = blob[:-1], blob[-1]
        tampered = prefix + ("0" if last != "0" else "1")

        with pytest.raises(DecryptionError, match="authentication"):
            custody.decrypt(tampered)

    def test_blob_bound_to_address(self, custody: KeyCustodyService) -> None:
        blob = custody.encrypt(KEY_ONE, associated_data=b"1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH")

        with pytest.raises(DecryptionError):
            custody.decrypt(blob, associated_data=b"1OtherAddress")

    @pytest.mark.parametrize("blob", ["", "garbage", "v2:abc:00:00", "v1:abc:zz:00", "v1:abc"])
    def test_malformed_blob(self, custody: KeyCustodyService, blob: str) -> None:
        with pytest.raises(DecryptionError):
            custody.decrypt(blob)

    def test_unknown_master_key(self, custody: KeyCustodyService) -> None:
        blob = KeyCustodyService(OLD_MASTER).encrypt(KEY_ONE)

        with pytest.raises(DecryptionError, match="unknown master key"):
            custody.decrypt(blob)

    def test_rotation_keeps_old_blobs_readable(self) -> None:
        old_blob = KeyCustodyService(OLD_MASTER).encrypt(KEY_ONE)
        rotated = KeyCustodyService(MASTER, previous_keys=[OLD_MASTER])

        assert rotated.decrypt(old_blob) == KEY_ONE
        assert rotated.encrypt(KEY_ONE).split(":")[1] == key_fingerprint(MASTER)

    def test_master_key_size_checked(self) -> None:
        with pytest.raises(ValueError):
            KeyCustodyService(b"short")
        with pytest.raises(ValueError):
            KeyCustodyService(MASTER, previous_keys=[b"short"])

    def test_blob_checksum_is_stable(self, custody: KeyCustodyService) -> None:
        blob = custody.encrypt(KEY_ONE)

        assert KeyCustodyService.blob_checksum(blob) == KeyCustodyService.blob_checksum(blob)
        assert len(KeyCustodyService.blob_checksum(blob)) == 64
