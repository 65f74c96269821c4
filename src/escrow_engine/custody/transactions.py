"""Raw transaction building and signing for escrow spends.

Escrow addresses are always compressed-key P2PKH, so only legacy
(pre-segwit) signing is needed: SIGHASH_ALL over the classic serialization,
low-S DER signatures from ``eth_keys``. Outputs may pay to any address type
accepted by :func:`escrow_engine.custody.addresses.script_for_address`.
"""

from __future__ import annotations

import struct
from collections.abc import Sequence
from dataclasses import dataclass

from eth_keys import keys

from escrow_engine.custody.addresses import double_sha256, hash160, p2pkh_script
from escrow_engine.custody.keys import SECP256K1_ORDER

SIGHASH_ALL = 0x01
TX_VERSION = 1
SEQUENCE_FINAL = 0xFFFFFFFF
LOCKTIME = 0


class TransactionBuildError(ValueError):
    """Raised when inputs/outputs do not form a spendable transaction."""


@dataclass(frozen=True)
class TxInput:
    txid: str
    vout: int
    value_sats: int


@dataclass(frozen=True)
class TxOutput:
    script: bytes
    value_sats: int


@dataclass(frozen=True)
class SignedTransaction:
    raw_hex: str
    txid: str
    inputs: tuple[TxInput, ...]
    outputs: tuple[TxOutput, ...]

    @property
    def fee_sats(self) -> int:
        return sum(i.value_sats for i in self.inputs) - sum(o.value_sats for o in self.outputs)

    def output_as_input(self, index: int) -> TxInput:
        """Reference one of this transaction's outputs as a new input."""
        return TxInput(txid=self.txid, vout=index, value_sats=self.outputs[index].value_sats)


def _varint(n: int) -> bytes:
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def _push(data: bytes) -> bytes:
    if len(data) >= 0x4C:
        raise TransactionBuildError("push data too long for a direct push")
    return bytes([len(data)]) + data


def _serialize(inputs: Sequence[TxInput], scripts: Sequence[bytes], outputs: Sequence[TxOutput]) -> bytes:
    parts = [struct.pack("<I", TX_VERSION), _varint(len(inputs))]
    for tx_input, script in zip(inputs, scripts, strict=True):
        parts.append(bytes.fromhex(tx_input.txid)[::-1])
        parts.append(struct.pack("<I", tx_input.vout))
        parts.append(_varint(len(script)) + script)
        parts.append(struct.pack("<I", SEQUENCE_FINAL))
    parts.append(_varint(len(outputs)))
    for output in outputs:
        parts.append(struct.pack("<q", output.value_sats))
        parts.append(_varint(len(output.script)) + output.script)
    parts.append(struct.pack("<I", LOCKTIME))
    return b"".join(parts)


def _der_encode(r: int, s: int) -> bytes:
    def encode_int(value: int) -> bytes:
        body = value.to_bytes((value.bit_length() + 7) // 8 or 1, "big")
        if body[0] & 0x80:
            body = b"\x00" + body
        return b"\x02" + bytes([len(body)]) + body

    payload = encode_int(r) + encode_int(s)
    return b"\x30" + bytes([len(payload)]) + payload


def signature_hash(
    inputs: Sequence[TxInput],
    outputs: Sequence[TxOutput],
    index: int,
    prev_script: bytes,
) -> bytes:
    """Legacy SIGHASH_ALL digest for input ``index``."""
    scripts = [prev_script if i == index else b"" for i in range(len(inputs))]
    preimage = _serialize(inputs, scripts, outputs) + struct.pack("<I", SIGHASH_ALL)
    return double_sha256(preimage)


def sign_p2pkh_transaction(
    private_key: bytes,
    inputs: Sequence[TxInput],
    outputs: Sequence[TxOutput],
) -> SignedTransaction:
    """Sign a transaction spending P2PKH outputs owned by ``private_key``.

    Raises:
        TransactionBuildError: If there are no inputs/outputs, an output is
            not positive, or outputs exceed inputs.
    """
    if not inputs:
        raise TransactionBuildError("transaction has no inputs")
    if not outputs:
        raise TransactionBuildError("transaction has no outputs")
    if any(o.value_sats <= 0 for o in outputs):
        raise TransactionBuildError("output values must be positive")
    if sum(o.value_sats for o in outputs) > sum(i.value_sats for i in inputs):
        raise TransactionBuildError("outputs exceed inputs")

    signer = keys.PrivateKey(private_key)
    public_key = signer.public_key.to_compressed_bytes()
    prev_script = p2pkh_script(hash160(public_key))

    script_sigs = []
    for index in range(len(inputs)):
        digest = signature_hash(inputs, outputs, index, prev_script)
        signature = signer.sign_msg_hash(digest)
        s = signature.s
        if s > SECP256K1_ORDER // 2:
            s = SECP256K1_ORDER - s
        der = _der_encode(signature.r, s) + bytes([SIGHASH_ALL])
        script_sigs.append(_push(der) + _push(public_key))

    raw = _serialize(inputs, script_sigs, outputs)
    return SignedTransaction(
        raw_hex=raw.hex(),
        txid=double_sha256(raw)[::-1].hex(),
        inputs=tuple(inputs),
        outputs=tuple(outputs),
    )
