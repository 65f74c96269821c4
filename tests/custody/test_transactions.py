"""Tests for raw transaction signing."""

import pytest

from escrow_engine.assets import Asset
from escrow_engine.custody.addresses import double_sha256, script_for_address
from escrow_engine.custody.keys import SECP256K1_ORDER, compressed_public_key, derive_address
from escrow_engine.custody.transactions import (
    TransactionBuildError,
    TxInput,
    TxOutput,
    _der_encode,
    sign_p2pkh_transaction,
)

PRIVATE_KEY = bytes.fromhex("1e99423a4ed27608a15a2616a2b0e9e52ced330ac530edcc32c8ffc6a526aedd")
FUNDING_TXID = "aa" * 32


@pytest.fixture
def escrow_script() -> bytes:
    return script_for_address(derive_address(PRIVATE_KEY, Asset.BTC), Asset.BTC)


@pytest.fixture
def seller_script() -> bytes:
    return script_for_address("1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH", Asset.BTC)


class TestSignTransaction:
    """Tests for sign_p2pkh_transaction."""

    def test_structure(self, seller_script: bytes, escrow_script: bytes) -> None:
        inputs = [TxInput(FUNDING_TXID, 0, 1_000_000)]
        outputs = [TxOutput(seller_script, 990_000), TxOutput(escrow_script, 9_000)]

        tx = sign_p2pkh_transaction(PRIVATE_KEY, inputs, outputs)
        raw = bytes.fromhex(tx.raw_hex)

        assert raw[:4] == b"\x01\x00\x00\x00"
        assert raw[4] == 1
        assert raw[5:37] == bytes.fromhex(FUNDING_TXID)[::-1]
        assert compressed_public_key(PRIVATE_KEY).hex() in tx.raw_hex
        assert raw[-4:] == b"\x00\x00\x00\x00"
        assert tx.txid == double_sha256(raw)[::-1].hex()
        assert tx.fee_sats == 1_000

    def test_signing_is_deterministic(self, seller_script: bytes) -> None:
        inputs = [TxInput(FUNDING_TXID, 0, 50_000), TxInput("bb" * 32, 3, 25_000)]
        outputs = [TxOutput(seller_script, 70_000)]

        first = sign_p2pkh_transaction(PRIVATE_KEY, inputs, outputs)
        second = sign_p2pkh_transaction(PRIVATE_KEY, inputs, outputs)

        assert first.raw_hex == second.raw_hex
        assert first.txid == second.txid

    def test_output_as_input(self, seller_script: bytes, escrow_script: bytes) -> None:
        tx = sign_p2pkh_transaction(
            PRIVATE_KEY,
            [TxInput(FUNDING_TXID, 0, 1_000_000)],
            [TxOutput(seller_script, 990_000), TxOutput(escrow_script, 9_000)],
        )

        change = tx.output_as_input(1)

        assert change == TxInput(tx.txid, 1, 9_000)

    @pytest.mark.parametrize(
        ("inputs", "outputs", "message"),
        [
            ([], [TxOutput(b"\x51", 1)], "no inputs"),
            ([TxInput(FUNDING_TXID, 0, 10)], [], "no outputs"),
            ([TxInput(FUNDING_TXID, 0, 10)], [TxOutput(b"\x51", 0)], "positive"),
            ([TxInput(FUNDING_TXID, 0, 10)], [TxOutput(b"\x51", 11)], "exceed"),
        ],
    )
    def test_rejects_unspendable(self, inputs, outputs, message: str) -> None:
        with pytest.raises(TransactionBuildError, match=message):
            sign_p2pkh_transaction(PRIVATE_KEY, inputs, outputs)

    def test_signatures_are_low_s(self, seller_script: bytes) -> None:
        tx = sign_p2pkh_transaction(PRIVATE_KEY, [TxInput(FUNDING_TXID, 0, 10_000)], [TxOutput(seller_script, 9_000)])
        raw = bytes.fromhex(tx.raw_hex)
        # version(4) + count(1) + outpoint(36) + script len(1) + push len(1)
        sig_len = raw[42]
        der = raw[43 : 43 + sig_len - 1]
        r_len = der[3]
        s_len = der[5 + r_len]
        s = int.from_bytes(der[6 + r_len : 6 + r_len + s_len], "big")

        assert s <= SECP256K1_ORDER // 2
        assert raw[43 + sig_len - 1] == 0x01


class TestDerEncode:
    def test_high_bit_padded(self) -> None:
        assert _der_encode(0x80, 0x01).hex() == "3007020200800201" + "01"

    def test_minimal_length(self) -> None:
        assert _der_encode(1, 1).hex() == "3006020101020101"
