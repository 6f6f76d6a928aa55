"""
Bitcoin transaction model, serialization and BIP-341 signature hashing.
"""

from __future__ import annotations

import copy
import struct
from dataclasses import dataclass, field

from arkcore.constants import (
    SIGHASH_ALL,
    SIGHASH_ANYONECANPAY,
    SIGHASH_DEFAULT,
    SIGHASH_NONE,
    SIGHASH_SINGLE,
    TX_FINAL_SEQUENCE,
)
from arkcore.crypto import double_sha256, sha256, tagged_hash


class TransactionError(Exception):
    pass


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Read a compact size integer. Returns (value, new offset)."""
    if offset >= len(data):
        raise TransactionError("Truncated varint")
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    size = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    if offset + size > len(data):
        raise TransactionError("Truncated varint")
    return int.from_bytes(data[offset : offset + size], "little"), offset + size


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", value)
    if value <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", value)
    return b"\xff" + struct.pack("<Q", value)


def encode_bytes(data: bytes) -> bytes:
    """Length-prefixed byte string."""
    return encode_varint(len(data)) + data


@dataclass(frozen=True)
class OutPoint:
    txid: str
    vout: int

    def serialize(self) -> bytes:
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass
class TxIn:
    txid: str
    vout: int
    sequence: int = TX_FINAL_SEQUENCE
    script_sig: bytes = b""
    witness: list[bytes] = field(default_factory=list)

    @property
    def outpoint(self) -> OutPoint:
        return OutPoint(self.txid, self.vout)


@dataclass
class TxOut:
    value: int
    script: bytes

    def serialize(self) -> bytes:
        return struct.pack("<Q", self.value) + encode_bytes(self.script)


@dataclass
class Transaction:
    version: int = 2
    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        witness = include_witness and self.has_witness
        result = struct.pack("<I", self.version)
        if witness:
            result += b"\x00\x01"

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.outpoint.serialize()
            result += encode_bytes(inp.script_sig)
            result += struct.pack("<I", inp.sequence)

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += out.serialize()

        if witness:
            for inp in self.inputs:
                result += encode_varint(len(inp.witness))
                for item in inp.witness:
                    result += encode_bytes(item)

        result += struct.pack("<I", self.locktime)
        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        """Transaction id (double SHA256 of the non-witness serialization, reversed)."""
        return double_sha256(self.serialize(include_witness=False))[::-1].hex()

    def copy(self) -> Transaction:
        return copy.deepcopy(self)

    @classmethod
    def from_hex(cls, tx_hex: str) -> Transaction:
        return cls.deserialize(bytes.fromhex(tx_hex))

    @classmethod
    def deserialize(cls, data: bytes) -> Transaction:
        try:
            tx, offset = cls._parse(data)
        except TransactionError:
            raise
        except (IndexError, KeyError, struct.error) as e:
            raise TransactionError(f"Failed to parse transaction: {e}") from e
        if offset != len(data):
            raise TransactionError(f"Trailing data after transaction: {len(data) - offset} bytes")
        return tx

    @classmethod
    def _parse(cls, data: bytes) -> tuple[Transaction, int]:
        offset = 0
        version = struct.unpack("<I", data[offset : offset + 4])[0]
        offset += 4

        has_witness = False
        if data[offset] == 0x00 and data[offset + 1] == 0x01:
            has_witness = True
            offset += 2

        input_count, offset = read_varint(data, offset)
        inputs: list[TxIn] = []
        for _ in range(input_count):
            txid = data[offset : offset + 32][::-1].hex()
            offset += 32
            vout = struct.unpack("<I", data[offset : offset + 4])[0]
            offset += 4
            script_len, offset = read_varint(data, offset)
            script_sig = data[offset : offset + script_len]
            offset += script_len
            sequence = struct.unpack("<I", data[offset : offset + 4])[0]
            offset += 4
            inputs.append(TxIn(txid, vout, sequence, bytes(script_sig)))

        output_count, offset = read_varint(data, offset)
        outputs: list[TxOut] = []
        for _ in range(output_count):
            value = struct.unpack("<Q", data[offset : offset + 8])[0]
            offset += 8
            script_len, offset = read_varint(data, offset)
            if offset + script_len > len(data):
                raise TransactionError("Truncated output script")
            outputs.append(TxOut(value, bytes(data[offset : offset + script_len])))
            offset += script_len

        if has_witness:
            for inp in inputs:
                stack_count, offset = read_varint(data, offset)
                for _ in range(stack_count):
                    item_len, offset = read_varint(data, offset)
                    inp.witness.append(bytes(data[offset : offset + item_len]))
                    offset += item_len

        if offset + 4 > len(data):
            raise TransactionError("Truncated locktime")
        locktime = struct.unpack("<I", data[offset : offset + 4])[0]
        return cls(version, inputs, outputs, locktime), offset + 4


def taproot_sighash(
    tx: Transaction,
    input_index: int,
    prevouts: list[TxOut],
    sighash_type: int = SIGHASH_DEFAULT,
    leaf_hash: bytes | None = None,
) -> bytes:
    """
    Compute the BIP-341 signature message hash.

    Args:
        tx: Transaction being signed
        input_index: Index of the input being signed
        prevouts: Spent outputs, one per input
        sighash_type: SIGHASH_DEFAULT, ALL, NONE, SINGLE, optionally | ANYONECANPAY
        leaf_hash: Tapleaf hash for script path spends, None for key path

    Returns:
        32-byte sighash

    Raises:
        TransactionError: On inconsistent inputs
    """
    if len(prevouts) != len(tx.inputs):
        raise TransactionError(
            f"Need one prevout per input: {len(prevouts)} != {len(tx.inputs)}"
        )
    if not 0 <= input_index < len(tx.inputs):
        raise TransactionError(f"Input index out of range: {input_index}")
    if sighash_type not in (0x00, 0x01, 0x02, 0x03, 0x81, 0x82, 0x83):
        raise TransactionError(f"Invalid taproot sighash type: {sighash_type:#x}")

    output_type = SIGHASH_ALL if sighash_type == SIGHASH_DEFAULT else sighash_type & 0x03
    anyone_can_pay = bool(sighash_type & SIGHASH_ANYONECANPAY)

    msg = bytes([0x00, sighash_type])
    msg += struct.pack("<I", tx.version)
    msg += struct.pack("<I", tx.locktime)

    if not anyone_can_pay:
        msg += sha256(b"".join(inp.outpoint.serialize() for inp in tx.inputs))
        msg += sha256(b"".join(struct.pack("<Q", p.value) for p in prevouts))
        msg += sha256(b"".join(encode_bytes(p.script) for p in prevouts))
        msg += sha256(b"".join(struct.pack("<I", inp.sequence) for inp in tx.inputs))

    if output_type not in (SIGHASH_NONE, SIGHASH_SINGLE):
        msg += sha256(b"".join(out.serialize() for out in tx.outputs))

    ext_flag = 1 if leaf_hash is not None else 0
    msg += bytes([ext_flag * 2])

    if anyone_can_pay:
        inp = tx.inputs[input_index]
        prevout = prevouts[input_index]
        msg += inp.outpoint.serialize()
        msg += struct.pack("<Q", prevout.value)
        msg += encode_bytes(prevout.script)
        msg += struct.pack("<I", inp.sequence)
    else:
        msg += struct.pack("<I", input_index)

    if output_type == SIGHASH_SINGLE:
        if input_index >= len(tx.outputs):
            raise TransactionError("SIGHASH_SINGLE without matching output")
        msg += sha256(tx.outputs[input_index].serialize())

    if leaf_hash is not None:
        msg += leaf_hash + b"\x00" + struct.pack("<I", 0xFFFFFFFF)

    return tagged_hash("TapSighash", msg)
