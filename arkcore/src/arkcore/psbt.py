"""
BIP-174 PSBT (version 0) codec for taproot spends.

Only the fields Ark transactions use are decoded into attributes; every other
key/value pair is preserved verbatim in ``unknown`` so that PSBTs round-trip
through this codec without losing data. Ark-specific fields use the
proprietary key type ``0xff`` followed by an ASCII field name.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field

from arkcore.constants import SIGHASH_DEFAULT
from arkcore.crypto import (
    CryptoError,
    public_key_from_private,
    schnorr_sign,
    taproot_tweak_private_key,
    x_only,
)
from arkcore.script import (
    Opcode,
    ScriptParseError,
    decode_script,
    script_num_decode,
    script_num_encode,
)
from arkcore.taproot import ControlBlock, TapLeafScript
from arkcore.transaction import (
    Transaction,
    TransactionError,
    TxIn,
    TxOut,
    encode_bytes,
    encode_varint,
    read_varint,
    taproot_sighash,
)

PSBT_MAGIC = b"psbt\xff"

PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08
PSBT_IN_TAP_KEY_SIG = 0x13
PSBT_IN_TAP_SCRIPT_SIG = 0x14
PSBT_IN_TAP_LEAF_SCRIPT = 0x15
PSBT_IN_TAP_INTERNAL_KEY = 0x17
PSBT_IN_TAP_MERKLE_ROOT = 0x18
PSBT_OUT_TAP_INTERNAL_KEY = 0x05

ARK_PSBT_KEY_TYPE = 0xFF
ARK_FIELD_TAPTREE = b"taptree"
ARK_FIELD_CONDITION = b"condition"
ARK_FIELD_COSIGNER = b"cosigner"
ARK_FIELD_EXPIRY = b"expiry"


class PsbtError(Exception):
    """Raised for malformed PSBTs or PSBT operations that cannot be completed."""

    pass


def encode_witness(items: list[bytes]) -> bytes:
    return encode_varint(len(items)) + b"".join(encode_bytes(item) for item in items)


def decode_witness(data: bytes) -> list[bytes]:
    try:
        count, offset = read_varint(data, 0)
        items = []
        for _ in range(count):
            length, offset = read_varint(data, offset)
            if offset + length > len(data):
                raise PsbtError("Truncated witness item")
            items.append(bytes(data[offset : offset + length]))
            offset += length
    except TransactionError as e:
        raise PsbtError(f"Invalid witness: {e}") from e
    if offset != len(data):
        raise PsbtError("Trailing data after witness")
    return items


@dataclass
class PsbtInput:
    witness_utxo: TxOut | None = None
    sighash_type: int | None = None
    final_script_witness: list[bytes] | None = None
    tap_key_sig: bytes | None = None
    tap_script_sigs: dict[tuple[bytes, bytes], bytes] = field(default_factory=dict)
    tap_leaf_scripts: list[TapLeafScript] = field(default_factory=list)
    tap_internal_key: bytes | None = None
    tap_merkle_root: bytes | None = None
    unknown: list[tuple[bytes, bytes]] = field(default_factory=list)

    def serialize(self) -> bytes:
        out = b""
        if self.witness_utxo is not None:
            out += _kv(bytes([PSBT_IN_WITNESS_UTXO]), self.witness_utxo.serialize())
        if self.sighash_type is not None:
            out += _kv(bytes([PSBT_IN_SIGHASH_TYPE]), self.sighash_type.to_bytes(4, "little"))
        if self.final_script_witness is not None:
            out += _kv(
                bytes([PSBT_IN_FINAL_SCRIPTWITNESS]), encode_witness(self.final_script_witness)
            )
        if self.tap_key_sig is not None:
            out += _kv(bytes([PSBT_IN_TAP_KEY_SIG]), self.tap_key_sig)
        for (pubkey, leaf_hash), sig in self.tap_script_sigs.items():
            out += _kv(bytes([PSBT_IN_TAP_SCRIPT_SIG]) + pubkey + leaf_hash, sig)
        for leaf in self.tap_leaf_scripts:
            out += _kv(
                bytes([PSBT_IN_TAP_LEAF_SCRIPT]) + leaf.control_block.encode(),
                leaf.script + bytes([leaf.leaf_version]),
            )
        if self.tap_internal_key is not None:
            out += _kv(bytes([PSBT_IN_TAP_INTERNAL_KEY]), self.tap_internal_key)
        if self.tap_merkle_root is not None:
            out += _kv(bytes([PSBT_IN_TAP_MERKLE_ROOT]), self.tap_merkle_root)
        for key, value in self.unknown:
            out += _kv(key, value)
        return out + b"\x00"

    def set_field(self, key_type: int, key_data: bytes, value: bytes) -> None:
        if key_type == PSBT_IN_WITNESS_UTXO:
            self.witness_utxo = _parse_txout(value)
        elif key_type == PSBT_IN_SIGHASH_TYPE:
            self.sighash_type = int.from_bytes(value, "little")
        elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS:
            self.final_script_witness = decode_witness(value)
        elif key_type == PSBT_IN_TAP_KEY_SIG:
            self.tap_key_sig = value
        elif key_type == PSBT_IN_TAP_SCRIPT_SIG:
            if len(key_data) != 64:
                raise PsbtError("Invalid tap script sig key")
            self.tap_script_sigs[(key_data[:32], key_data[32:])] = value
        elif key_type == PSBT_IN_TAP_LEAF_SCRIPT:
            if not value:
                raise PsbtError("Empty tap leaf script")
            try:
                control_block = ControlBlock.decode(key_data)
            except ValueError as e:
                raise PsbtError(str(e)) from e
            self.tap_leaf_scripts.append(TapLeafScript(control_block, value[:-1], value[-1]))
        elif key_type == PSBT_IN_TAP_INTERNAL_KEY:
            self.tap_internal_key = value
        elif key_type == PSBT_IN_TAP_MERKLE_ROOT:
            self.tap_merkle_root = value
        else:
            self.unknown.append((bytes([key_type]) + key_data, value))


@dataclass
class PsbtOutput:
    tap_internal_key: bytes | None = None
    unknown: list[tuple[bytes, bytes]] = field(default_factory=list)

    def serialize(self) -> bytes:
        out = b""
        if self.tap_internal_key is not None:
            out += _kv(bytes([PSBT_OUT_TAP_INTERNAL_KEY]), self.tap_internal_key)
        for key, value in self.unknown:
            out += _kv(key, value)
        return out + b"\x00"

    def set_field(self, key_type: int, key_data: bytes, value: bytes) -> None:
        if key_type == PSBT_OUT_TAP_INTERNAL_KEY:
            self.tap_internal_key = value
        else:
            self.unknown.append((bytes([key_type]) + key_data, value))


def _kv(key: bytes, value: bytes) -> bytes:
    return encode_bytes(key) + encode_bytes(value)


def _parse_txout(data: bytes) -> TxOut:
    if len(data) < 9:
        raise PsbtError("Truncated witness utxo")
    value = int.from_bytes(data[:8], "little")
    length, offset = read_varint(data, 8)
    if offset + length != len(data):
        raise PsbtError("Invalid witness utxo length")
    return TxOut(value, bytes(data[offset:]))


def _read_map(data: bytes, offset: int) -> tuple[list[tuple[bytes, bytes]], int]:
    pairs: list[tuple[bytes, bytes]] = []
    seen: set[bytes] = set()
    while True:
        key_len, offset = read_varint(data, offset)
        if key_len == 0:
            return pairs, offset
        key = bytes(data[offset : offset + key_len])
        offset += key_len
        value_len, offset = read_varint(data, offset)
        if offset + value_len > len(data):
            raise PsbtError("Truncated PSBT value")
        value = bytes(data[offset : offset + value_len])
        offset += value_len
        if key in seen:
            raise PsbtError(f"Duplicate PSBT key {key.hex()}")
        seen.add(key)
        pairs.append((key, value))


@dataclass
class Psbt:
    tx: Transaction
    inputs: list[PsbtInput] = field(default_factory=list)
    outputs: list[PsbtOutput] = field(default_factory=list)
    unknown: list[tuple[bytes, bytes]] = field(default_factory=list)

    def __post_init__(self) -> None:
        while len(self.inputs) < len(self.tx.inputs):
            self.inputs.append(PsbtInput())
        while len(self.outputs) < len(self.tx.outputs):
            self.outputs.append(PsbtOutput())

    @property
    def txid(self) -> str:
        return self.tx.txid

    def add_input(self, txin: TxIn, psbt_input: PsbtInput | None = None) -> int:
        self.tx.inputs.append(TxIn(txin.txid, txin.vout, txin.sequence))
        self.inputs.append(psbt_input or PsbtInput())
        return len(self.inputs) - 1

    def add_output(self, txout: TxOut) -> int:
        self.tx.outputs.append(txout)
        self.outputs.append(PsbtOutput())
        return len(self.outputs) - 1

    def serialize(self) -> bytes:
        unsigned = Transaction(
            self.tx.version,
            [TxIn(i.txid, i.vout, i.sequence) for i in self.tx.inputs],
            list(self.tx.outputs),
            self.tx.locktime,
        )
        out = PSBT_MAGIC + _kv(bytes([PSBT_GLOBAL_UNSIGNED_TX]), unsigned.serialize())
        for key, value in self.unknown:
            out += _kv(key, value)
        out += b"\x00"
        out += b"".join(inp.serialize() for inp in self.inputs)
        out += b"".join(o.serialize() for o in self.outputs)
        return out

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    def copy(self) -> Psbt:
        return Psbt.deserialize(self.serialize())

    @classmethod
    def from_base64(cls, value: str) -> Psbt:
        try:
            raw = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise PsbtError(f"Invalid base64 PSBT: {e}") from e
        return cls.deserialize(raw)

    @classmethod
    def deserialize(cls, data: bytes) -> Psbt:
        """
        Parse a serialized PSBT.

        Raises:
            PsbtError: On any structural error
        """
        if not data.startswith(PSBT_MAGIC):
            raise PsbtError("Invalid PSBT magic")
        try:
            global_map, offset = _read_map(data, len(PSBT_MAGIC))
            tx: Transaction | None = None
            unknown: list[tuple[bytes, bytes]] = []
            for key, value in global_map:
                if key == bytes([PSBT_GLOBAL_UNSIGNED_TX]):
                    tx = Transaction.deserialize(value)
                else:
                    unknown.append((key, value))
            if tx is None:
                raise PsbtError("PSBT is missing the unsigned transaction")

            psbt = cls(tx, [], [], unknown)
            psbt.inputs.clear()
            psbt.outputs.clear()
            for _ in tx.inputs:
                pairs, offset = _read_map(data, offset)
                psbt_input = PsbtInput()
                for key, value in pairs:
                    psbt_input.set_field(key[0], key[1:], value)
                psbt.inputs.append(psbt_input)
            for _ in tx.outputs:
                pairs, offset = _read_map(data, offset)
                psbt_output = PsbtOutput()
                for key, value in pairs:
                    psbt_output.set_field(key[0], key[1:], value)
                psbt.outputs.append(psbt_output)
        except TransactionError as e:
            raise PsbtError(f"Invalid PSBT: {e}") from e
        except IndexError as e:
            raise PsbtError("Truncated PSBT") from e
        if offset != len(data):
            raise PsbtError("Trailing data after PSBT")
        return psbt

    def prevouts(self) -> list[TxOut]:
        result = []
        for i, inp in enumerate(self.inputs):
            if inp.witness_utxo is None:
                raise PsbtError(f"Input {i} is missing its witness utxo")
            result.append(inp.witness_utxo)
        return result

    def sighash(
        self, index: int, leaf_hash: bytes | None = None, sighash_type: int | None = None
    ) -> bytes:
        if sighash_type is None:
            sighash_type = self.inputs[index].sighash_type
        return taproot_sighash(
            self.tx,
            index,
            self.prevouts(),
            SIGHASH_DEFAULT if sighash_type is None else sighash_type,
            leaf_hash,
        )

    def sign_input(
        self,
        index: int,
        private_key: bytes,
        leaf: TapLeafScript | None = None,
    ) -> bool:
        """
        Sign one input with a BIP-340 signature.

        With ``leaf`` (or when the input carries exactly the leaves the key is
        part of) a tapscript signature is added; otherwise a key path signature
        with the BIP-86 tweak of ``tap_internal_key``.

        Returns:
            True if a signature was added
        """
        psbt_input = self.inputs[index]
        pubkey = x_only(public_key_from_private(private_key))
        sighash_type = psbt_input.sighash_type or SIGHASH_DEFAULT
        suffix = b"" if sighash_type == SIGHASH_DEFAULT else bytes([sighash_type])

        leaves = [leaf] if leaf is not None else list(psbt_input.tap_leaf_scripts)
        signed = False
        for candidate in leaves:
            if pubkey not in leaf_pubkeys(candidate.script):
                continue
            leaf_hash = candidate.leaf_hash
            sig = schnorr_sign(self.sighash(index, leaf_hash), private_key)
            psbt_input.tap_script_sigs[(pubkey, leaf_hash)] = sig + suffix
            signed = True

        if not signed and leaf is None and psbt_input.tap_internal_key == pubkey:
            tweaked = taproot_tweak_private_key(private_key, psbt_input.tap_merkle_root or b"")
            psbt_input.tap_key_sig = schnorr_sign(self.sighash(index), tweaked) + suffix
            signed = True
        return signed

    def finalize_input(self, index: int, leaf: TapLeafScript | None = None) -> None:
        """
        Build the final witness of an input.

        Key path inputs use ``tap_key_sig``. Script path inputs need a signature
        for every key of the leaf; condition witness items are pushed on top of
        the signatures.

        Raises:
            PsbtError: If signatures are missing
        """
        psbt_input = self.inputs[index]
        if psbt_input.final_script_witness is not None:
            return
        if psbt_input.tap_key_sig is not None and leaf is None:
            psbt_input.final_script_witness = [psbt_input.tap_key_sig]
            return

        candidates = [leaf] if leaf is not None else psbt_input.tap_leaf_scripts
        for candidate in candidates:
            leaf_hash = candidate.leaf_hash
            sigs = []
            for pubkey in leaf_pubkeys(candidate.script):
                sig = psbt_input.tap_script_sigs.get((pubkey, leaf_hash))
                if sig is None:
                    break
                sigs.append(sig)
            else:
                condition = get_condition_witness(psbt_input) or []
                psbt_input.final_script_witness = (
                    list(reversed(sigs))
                    + condition
                    + [candidate.script, candidate.control_block.encode()]
                )
                return
        raise PsbtError(f"Input {index}: missing signatures to finalize")

    def finalize(self) -> None:
        for i in range(len(self.inputs)):
            self.finalize_input(i)

    def extract(self) -> Transaction:
        tx = self.tx.copy()
        for i, psbt_input in enumerate(self.inputs):
            if psbt_input.final_script_witness is None:
                raise PsbtError(f"Input {i} is not finalized")
            tx.inputs[i].witness = list(psbt_input.final_script_witness)
        return tx


def leaf_pubkeys(script: bytes) -> list[bytes]:
    """x-only keys checked by CHECKSIG, CHECKSIGVERIFY or CHECKSIGADD in a leaf, in script order."""
    try:
        items = decode_script(script)
    except ScriptParseError:
        return []
    checks = (Opcode.OP_CHECKSIG, Opcode.OP_CHECKSIGVERIFY, Opcode.OP_CHECKSIGADD)
    return [
        item
        for item, nxt in zip(items, items[1:])
        if isinstance(item, bytes) and len(item) == 32 and nxt in checks and isinstance(nxt, Opcode)
    ]


# Ark proprietary fields


def ark_key(name: bytes, suffix: bytes = b"") -> bytes:
    return bytes([ARK_PSBT_KEY_TYPE]) + name + suffix


def set_ark_field(psbt_input: PsbtInput, key: bytes, value: bytes) -> None:
    psbt_input.unknown = [(k, v) for k, v in psbt_input.unknown if k != key]
    psbt_input.unknown.append((key, value))


def get_ark_fields(psbt_input: PsbtInput, name: bytes) -> list[tuple[bytes, bytes]]:
    """(key suffix, value) of every Ark field whose name starts with ``name``."""
    prefix = ark_key(name)
    return [(k[len(prefix) :], v) for k, v in psbt_input.unknown if k.startswith(prefix)]


def set_vtxo_tap_tree(psbt_input: PsbtInput, tap_tree: bytes) -> None:
    set_ark_field(psbt_input, ark_key(ARK_FIELD_TAPTREE), tap_tree)


def get_vtxo_tap_tree(psbt_input: PsbtInput) -> bytes | None:
    fields = get_ark_fields(psbt_input, ARK_FIELD_TAPTREE)
    return fields[0][1] if fields else None


def set_condition_witness(psbt_input: PsbtInput, witness: list[bytes]) -> None:
    set_ark_field(psbt_input, ark_key(ARK_FIELD_CONDITION), encode_witness(witness))


def get_condition_witness(psbt_input: PsbtInput) -> list[bytes] | None:
    fields = get_ark_fields(psbt_input, ARK_FIELD_CONDITION)
    return decode_witness(fields[0][1]) if fields else None


def set_cosigner_keys(psbt_input: PsbtInput, pubkeys: list[bytes]) -> None:
    for i, pubkey in enumerate(pubkeys):
        if len(pubkey) != 33:
            raise PsbtError(f"Cosigner key must be compressed, got {len(pubkey)} bytes")
        set_ark_field(psbt_input, ark_key(ARK_FIELD_COSIGNER, bytes([i])), pubkey)


def get_cosigner_keys(psbt_input: PsbtInput) -> list[bytes]:
    return [value for _, value in get_ark_fields(psbt_input, ARK_FIELD_COSIGNER)]


def set_vtxo_tree_expiry(psbt_input: PsbtInput, sequence: int) -> None:
    set_ark_field(psbt_input, ark_key(ARK_FIELD_EXPIRY), script_num_encode(sequence))


def get_vtxo_tree_expiry(psbt_input: PsbtInput) -> int | None:
    """BIP-68 sequence of the tree expiry, if present."""
    fields = get_ark_fields(psbt_input, ARK_FIELD_EXPIRY)
    if not fields:
        return None
    try:
        return script_num_decode(fields[0][1], max_size=6, require_minimal=False)
    except ScriptParseError as e:
        raise PsbtError(f"Invalid expiry field: {e}") from e


def sign_key_path(psbt: Psbt, index: int, private_key: bytes) -> None:
    """Key path signature for inputs whose internal key is the signer's key."""
    try:
        if not psbt.sign_input(index, private_key):
            raise PsbtError(f"Key does not match input {index}")
    except CryptoError as e:
        raise PsbtError(f"Signing input {index} failed: {e}") from e
