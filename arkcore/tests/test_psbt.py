"""
Tests for the transaction and PSBT codecs.
"""

from __future__ import annotations

import pytest

from arkcore.constants import SIGHASH_ALL, SIGHASH_ANYONECANPAY, SIGHASH_DEFAULT
from arkcore.crypto import public_key_from_private, schnorr_verify, x_only
from arkcore.psbt import (
    Psbt,
    PsbtError,
    PsbtInput,
    get_condition_witness,
    get_cosigner_keys,
    get_vtxo_tap_tree,
    get_vtxo_tree_expiry,
    leaf_pubkeys,
    set_condition_witness,
    set_cosigner_keys,
    set_vtxo_tap_tree,
    set_vtxo_tree_expiry,
    sign_key_path,
)
from arkcore.taproot import taproot_tweak_pubkey
from arkcore.transaction import Transaction, TransactionError, TxIn, TxOut, taproot_sighash
from arkcore.vtxo_script import DefaultVtxoScript


def _tx() -> Transaction:
    return Transaction(
        version=3,
        inputs=[TxIn("aa" * 32, 1, 0xFFFFFFFE), TxIn("bb" * 32, 0)],
        outputs=[TxOut(1_000, b"\x51\x20" + b"\x01" * 32), TxOut(0, b"\x51\x02\x4e\x73")],
        locktime=850_000,
    )


class TestTransaction:
    """Tests for raw transaction serialization."""

    def test_roundtrip(self) -> None:
        tx = _tx()
        assert Transaction.from_hex(tx.to_hex()) == tx

    def test_witness_roundtrip_keeps_txid(self) -> None:
        tx = _tx()
        txid = tx.txid
        tx.inputs[0].witness = [b"\x01" * 64, b"\x02\x03"]
        parsed = Transaction.from_hex(tx.to_hex())
        assert parsed.inputs[0].witness == [b"\x01" * 64, b"\x02\x03"]
        assert parsed.txid == txid

    def test_trailing_data(self) -> None:
        with pytest.raises(TransactionError, match="Trailing"):
            Transaction.from_hex(_tx().to_hex() + "00")

    def test_truncated(self) -> None:
        with pytest.raises(TransactionError):
            Transaction.from_hex(_tx().to_hex()[:-10])


class TestSighash:
    """Sanity checks for BIP-341 signature hashes."""

    def _prevouts(self) -> list[TxOut]:
        return [TxOut(5_000, b"\x51\x20" + b"\x03" * 32), TxOut(700, b"\x51\x20" + b"\x04" * 32)]

    def test_types_differ(self) -> None:
        tx, prevouts = _tx(), self._prevouts()
        default = taproot_sighash(tx, 0, prevouts, SIGHASH_DEFAULT)
        sighash_all = taproot_sighash(tx, 0, prevouts, SIGHASH_ALL)
        acp = taproot_sighash(tx, 0, prevouts, SIGHASH_ALL | SIGHASH_ANYONECANPAY)
        assert len({default, sighash_all, acp}) == 3
        assert taproot_sighash(tx, 0, prevouts, SIGHASH_DEFAULT, b"\x00" * 32) != default

    def test_commits_to_prevout_amounts(self) -> None:
        tx, prevouts = _tx(), self._prevouts()
        changed = [TxOut(5_001, prevouts[0].script), prevouts[1]]
        assert taproot_sighash(tx, 1, prevouts) != taproot_sighash(tx, 1, changed)

    def test_invalid_inputs(self) -> None:
        tx = _tx()
        with pytest.raises(TransactionError):
            taproot_sighash(tx, 0, self._prevouts()[:1])
        with pytest.raises(TransactionError):
            taproot_sighash(tx, 2, self._prevouts())
        with pytest.raises(TransactionError):
            taproot_sighash(tx, 0, self._prevouts(), 0x04)


class TestPsbt:
    """Tests for the PSBT codec and Ark proprietary fields."""

    def test_roundtrip_preserves_fields(self, alice_pub: bytes, server_pub: bytes) -> None:
        script = DefaultVtxoScript(alice_pub, server_pub)
        psbt = Psbt(_tx())
        psbt.inputs[0] = PsbtInput(
            witness_utxo=TxOut(5_000, script.pk_script),
            sighash_type=SIGHASH_ALL,
            tap_leaf_scripts=[script.forfeit()],
        )
        set_vtxo_tap_tree(psbt.inputs[0], script.encode())
        set_condition_witness(psbt.inputs[0], [b"preimage"])
        set_cosigner_keys(psbt.inputs[1], [alice_pub, server_pub])
        set_vtxo_tree_expiry(psbt.inputs[1], 1024)
        psbt.inputs[1].unknown.append((b"\xfc\x01", b"opaque"))

        parsed = Psbt.from_base64(psbt.to_base64())
        assert parsed.to_base64() == psbt.to_base64()
        assert parsed.inputs[0].witness_utxo == TxOut(5_000, script.pk_script)
        assert parsed.inputs[0].tap_leaf_scripts == [script.forfeit()]
        assert get_vtxo_tap_tree(parsed.inputs[0]) == script.encode()
        assert get_condition_witness(parsed.inputs[0]) == [b"preimage"]
        assert get_cosigner_keys(parsed.inputs[1]) == [alice_pub, server_pub]
        assert get_vtxo_tree_expiry(parsed.inputs[1]) == 1024
        assert (b"\xfc\x01", b"opaque") in parsed.inputs[1].unknown

    def test_set_field_replaces(self) -> None:
        psbt_input = PsbtInput()
        set_vtxo_tap_tree(psbt_input, b"\x01")
        set_vtxo_tap_tree(psbt_input, b"\x02")
        assert get_vtxo_tap_tree(psbt_input) == b"\x02"
        assert len(psbt_input.unknown) == 1

    def test_cosigner_keys_must_be_compressed(self, alice_pub: bytes) -> None:
        with pytest.raises(PsbtError):
            set_cosigner_keys(PsbtInput(), [x_only(alice_pub)])

    def test_invalid_magic(self) -> None:
        with pytest.raises(PsbtError, match="magic"):
            Psbt.deserialize(b"nope")

    def test_invalid_base64(self) -> None:
        with pytest.raises(PsbtError):
            Psbt.from_base64("***")

    def test_trailing_data(self) -> None:
        with pytest.raises(PsbtError, match="Trailing"):
            Psbt.deserialize(Psbt(_tx()).serialize() + b"\x00")

    def test_extract_requires_finalized_inputs(self) -> None:
        with pytest.raises(PsbtError, match="not finalized"):
            Psbt(_tx()).extract()

    def test_key_path_sign_and_extract(self, alice_key: bytes) -> None:
        internal_key = x_only(public_key_from_private(alice_key))
        output_key, _ = taproot_tweak_pubkey(internal_key, b"")
        prevout = TxOut(2_000, b"\x51\x20" + output_key)
        psbt = Psbt(Transaction(version=2, inputs=[TxIn("cc" * 32, 0)], outputs=[prevout]))
        psbt.inputs[0].witness_utxo = prevout
        psbt.inputs[0].tap_internal_key = internal_key

        sign_key_path(psbt, 0, alice_key)
        assert schnorr_verify(psbt.sighash(0), psbt.inputs[0].tap_key_sig, output_key)
        psbt.finalize()
        tx = psbt.extract()
        assert tx.inputs[0].witness == [psbt.inputs[0].tap_key_sig]

    def test_key_path_wrong_key(self, alice_key: bytes, bob_key: bytes) -> None:
        psbt = Psbt(Transaction(version=2, inputs=[TxIn("cc" * 32, 0)], outputs=[]))
        psbt.inputs[0].witness_utxo = TxOut(1, b"\x51\x20" + b"\x05" * 32)
        psbt.inputs[0].tap_internal_key = x_only(public_key_from_private(alice_key))
        with pytest.raises(PsbtError, match="does not match"):
            sign_key_path(psbt, 0, bob_key)

    def test_leaf_pubkeys(self, alice_pub: bytes, server_pub: bytes) -> None:
        script = DefaultVtxoScript(alice_pub, server_pub)
        assert leaf_pubkeys(script.forfeit_script) == [x_only(alice_pub), x_only(server_pub)]
        assert leaf_pubkeys(script.exit_script) == [x_only(alice_pub)]
        assert leaf_pubkeys(b"\xbb") == []
