"""
Intent proofs and BIP-322 message signatures.

An intent proof is a deliberately invalid transaction modelled on BIP-322:
its first input spends a virtual "to_spend" transaction committing to the
intent message, and the remaining inputs are the coins being registered.
Signing it proves ownership of the coins and authenticates the message.
"""

from __future__ import annotations

import base64
import binascii
import time
from typing import Literal, Union

from pydantic import BaseModel, Field

from arkcore.address import AddressError, address_to_script
from arkcore.constants import (
    INTENT_EXPIRY_SECONDS,
    SIGHASH_ALL,
    SIGHASH_DEFAULT,
    TX_FINAL_SEQUENCE,
)
from arkcore.crypto import public_key_from_private, schnorr_verify, tagged_hash, x_only
from arkcore.models import ExtendedCoin, ExtendedVirtualCoin
from arkcore.psbt import (
    Psbt,
    PsbtError,
    PsbtInput,
    decode_witness,
    encode_witness,
    set_condition_witness,
    set_vtxo_tap_tree,
)
from arkcore.taproot import taproot_tweak_pubkey
from arkcore.tapscript import csv_sequence
from arkcore.transaction import Transaction, TransactionError, TxIn, TxOut, taproot_sighash
from arkcore.vtxo_script import VtxoScript

INTENT_PROOF_TAG = "ark-intent-proof-message"
BIP322_TAG = "BIP0322-signed-message"

OP_RETURN_EMPTY_SCRIPT = b"\x6a"
_ZERO_TXID = "00" * 32
_MAX_INDEX = 0xFFFFFFFF


class IntentProofError(Exception):
    """Raised when an intent proof cannot be built or does not verify."""

    pass


class RegisterMessage(BaseModel):
    type: Literal["register"] = "register"
    onchain_output_indexes: list[int] = Field(default_factory=list)
    valid_at: int
    expire_at: int
    cosigners_public_keys: list[str] = Field(default_factory=list)


class DeleteMessage(BaseModel):
    type: Literal["delete"] = "delete"
    expire_at: int


class GetPendingTxMessage(BaseModel):
    type: Literal["get-pending-tx"] = "get-pending-tx"
    expire_at: int


IntentMessage = Union[RegisterMessage, DeleteMessage, GetPendingTxMessage]


def encode_message(message: IntentMessage | str) -> str:
    """Canonical JSON of an intent message (compact, fields in declaration order)."""
    if isinstance(message, str):
        return message
    return message.model_dump_json()


def register_message(
    cosigners_public_keys: list[str],
    onchain_output_indexes: list[int] | None = None,
    now: int | None = None,
) -> RegisterMessage:
    now = int(time.time()) if now is None else now
    return RegisterMessage(
        onchain_output_indexes=onchain_output_indexes or [],
        valid_at=now,
        expire_at=now + INTENT_EXPIRY_SECONDS,
        cosigners_public_keys=cosigners_public_keys,
    )


def delete_message(now: int | None = None) -> DeleteMessage:
    now = int(time.time()) if now is None else now
    return DeleteMessage(expire_at=now + INTENT_EXPIRY_SECONDS)


def hash_message(message: str, tag: str = INTENT_PROOF_TAG) -> bytes:
    return tagged_hash(tag, message.encode("utf-8"))


def craft_to_spend_tx(message: str, pk_script: bytes, tag: str = INTENT_PROOF_TAG) -> Transaction:
    """Virtual transaction whose only output is spent by the proof's first input."""
    script_sig = b"\x00\x20" + hash_message(message, tag)
    return Transaction(
        version=0,
        inputs=[TxIn(_ZERO_TXID, _MAX_INDEX, 0, script_sig)],
        outputs=[TxOut(0, pk_script)],
        locktime=0,
    )


def _coin_input(coin: ExtendedCoin | ExtendedVirtualCoin) -> tuple[TxIn, PsbtInput]:
    vtxo_script = VtxoScript.decode(coin.tap_tree)
    sequence = csv_sequence(coin.intent_tap_leaf_script.script)
    psbt_input = PsbtInput(
        witness_utxo=TxOut(coin.value, vtxo_script.pk_script),
        sighash_type=SIGHASH_ALL,
        tap_leaf_scripts=[coin.intent_tap_leaf_script],
    )
    set_vtxo_tap_tree(psbt_input, coin.tap_tree)
    if coin.extra_witness:
        set_condition_witness(psbt_input, coin.extra_witness)
    txin = TxIn(coin.txid, coin.vout, TX_FINAL_SEQUENCE if sequence is None else sequence)
    return txin, psbt_input


def create_intent_proof(
    message: IntentMessage | str,
    coins: list[ExtendedCoin | ExtendedVirtualCoin],
    outputs: list[TxOut] | None = None,
) -> Psbt:
    """
    Build the unsigned proof for ``message`` over ``coins``.

    Args:
        message: Intent message or already-encoded message
        coins: Coins whose ownership is proven, in order
        outputs: Requested on-chain outputs (an empty OP_RETURN if none)

    Returns:
        Unsigned proof PSBT; every input uses SIGHASH_ALL

    Raises:
        IntentProofError: If no coin is given
    """
    if not coins:
        raise IntentProofError("intent proof requires at least one input")
    encoded = encode_message(message)
    inputs = [_coin_input(coin) for coin in coins]
    first_txin, first_input = inputs[0]

    to_spend = craft_to_spend_tx(encoded, first_input.witness_utxo.script)
    locktime = max(
        (txin.sequence for txin, _ in inputs if txin.sequence != TX_FINAL_SEQUENCE), default=0
    )
    proof = Psbt(Transaction(version=2, inputs=[], outputs=[], locktime=locktime))

    to_spend_input = PsbtInput(
        witness_utxo=TxOut(0, first_input.witness_utxo.script),
        sighash_type=SIGHASH_ALL,
        tap_leaf_scripts=list(first_input.tap_leaf_scripts),
        unknown=list(first_input.unknown),
    )
    proof.add_input(TxIn(to_spend.txid, 0, first_txin.sequence), to_spend_input)
    for txin, psbt_input in inputs:
        proof.add_input(txin, psbt_input)

    for output in outputs or [TxOut(0, OP_RETURN_EMPTY_SCRIPT)]:
        proof.add_output(output)
    return proof


def intent_fee(proof: Psbt) -> int:
    """Inputs minus outputs of a proof, in satoshis."""
    total_in = 0
    for i, psbt_input in enumerate(proof.inputs):
        if psbt_input.witness_utxo is None:
            raise IntentProofError(f"intent proof input {i} requires witness utxo")
        total_in += psbt_input.witness_utxo.value
    total_out = sum(out.value for out in proof.tx.outputs)
    if total_out > total_in:
        raise IntentProofError(
            f"intent proof output amount is greater than input amount: {total_out} > {total_in}"
        )
    return total_in - total_out


def verify_intent_proof_message(proof: Psbt, message: IntentMessage | str) -> bool:
    """Check that the proof's first input commits to ``message``."""
    if not proof.tx.inputs or proof.inputs[0].witness_utxo is None:
        return False
    to_spend = craft_to_spend_tx(encode_message(message), proof.inputs[0].witness_utxo.script)
    first = proof.tx.inputs[0]
    return first.txid == to_spend.txid and first.vout == 0


def _bip322_to_sign(to_spend: Transaction) -> Transaction:
    return Transaction(
        version=0,
        inputs=[TxIn(to_spend.txid, 0, 0)],
        outputs=[TxOut(0, OP_RETURN_EMPTY_SCRIPT)],
        locktime=0,
    )


def bip322_sign(message: str, private_key: bytes) -> str:
    """
    BIP-322 simple signature for the P2TR (BIP-86) address of ``private_key``.

    Returns:
        Base64 encoded witness stack
    """
    internal_key = x_only(public_key_from_private(private_key))
    output_key, _ = taproot_tweak_pubkey(internal_key, b"")
    pk_script = b"\x51\x20" + output_key
    to_spend = craft_to_spend_tx(message, pk_script, BIP322_TAG)
    to_sign = Psbt(_bip322_to_sign(to_spend))
    to_sign.inputs[0].witness_utxo = TxOut(0, pk_script)
    to_sign.inputs[0].tap_internal_key = internal_key
    if not to_sign.sign_input(0, private_key):
        raise IntentProofError("BIP-322: failed to sign")
    to_sign.finalize_input(0)
    return base64.b64encode(encode_witness(to_sign.inputs[0].final_script_witness)).decode("ascii")


def bip322_verify(message: str, signature: str, address: str) -> bool:
    """Verify a BIP-322 simple signature made by a P2TR address."""
    try:
        pk_script = address_to_script(address)
    except AddressError as e:
        raise IntentProofError(f"BIP-322 verify: invalid address {address}") from e
    if len(pk_script) != 34 or pk_script[0] != 0x51:
        raise IntentProofError("BIP-322 verify: only P2TR addresses are supported")
    try:
        witness = decode_witness(base64.b64decode(signature, validate=True))
    except (PsbtError, binascii.Error, ValueError):
        return False
    if not witness or len(witness[0]) not in (64, 65):
        return False
    sig = witness[0]
    sighash_type = sig[64] if len(sig) == 65 else SIGHASH_DEFAULT
    to_spend = craft_to_spend_tx(message, pk_script, BIP322_TAG)
    to_sign = _bip322_to_sign(to_spend)
    try:
        sighash = taproot_sighash(to_sign, 0, [TxOut(0, pk_script)], sighash_type)
    except TransactionError:
        return False
    return schnorr_verify(sighash, sig[:64], pk_script[2:])
