"""
Offchain (Ark) transaction construction and validation.

An offchain spend is one Ark transaction plus one checkpoint transaction per
spent VTXO. Each checkpoint spends its VTXO into an output locked by
``VtxoScript([server_unroll_script, collaborative_leaf])`` with the same
amount, and the Ark transaction spends the checkpoint outputs into the
requested outputs. Every transaction also carries a zero-value P2A anchor.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_CEILING, Decimal

from loguru import logger

from arkcore.constants import (
    ANCHOR_VALUE,
    ARK_TX_VERSION,
    LOCKTIME_THRESHOLD,
    P2A_SCRIPT,
    SIGHASH_DEFAULT,
    TX_FINAL_SEQUENCE,
    TX_LOCKTIME_SEQUENCE,
)
from arkcore.crypto import schnorr_verify
from arkcore.models import ExtendedCoin
from arkcore.psbt import Psbt, PsbtInput, get_vtxo_tap_tree, set_vtxo_tap_tree
from arkcore.script import ScriptParseError
from arkcore.tapscript import (
    CLTVMultisigTapscript,
    CSVMultisigTapscript,
    RelativeTimelock,
    TimelockType,
    decode_tapscript,
)
from arkcore.taproot import TapLeafScript
from arkcore.transaction import Transaction, TxIn, TxOut
from arkcore.vtxo_script import VtxoScript, decode_tap_tree

P2A = TxOut(ANCHOR_VALUE, P2A_SCRIPT)


class OffchainTxError(Exception):
    """Raised when an offchain transaction cannot be built or fails validation."""

    pass


class SignatureVerificationError(Exception):
    pass


@dataclass
class ArkTxInput:
    """A VTXO spent by an offchain transaction."""

    txid: str
    vout: int
    value: int
    tap_leaf_script: TapLeafScript
    tap_tree: bytes
    # Leaf used to spend the checkpoint output, defaults to tap_leaf_script
    checkpoint_tap_leaf_script: bytes | None = None


@dataclass
class OffchainTx:
    ark_tx: Psbt
    checkpoints: list[Psbt]


def is_seconds_locktime(locktime: int) -> bool:
    return locktime >= LOCKTIME_THRESHOLD


def _cltv_locktime(leaf: TapLeafScript) -> int:
    try:
        tapscript = decode_tapscript(leaf.script)
    except ScriptParseError:
        return 0
    if isinstance(tapscript, CLTVMultisigTapscript):
        return tapscript.locktime
    return 0


def _build_virtual_tx(inputs: list[ArkTxInput], outputs: list[TxOut]) -> Psbt:
    locktime = 0
    for inp in inputs:
        cltv = _cltv_locktime(inp.tap_leaf_script)
        if not cltv:
            continue
        if locktime and is_seconds_locktime(locktime) != is_seconds_locktime(cltv):
            raise OffchainTxError("cannot mix seconds and blocks locktime")
        locktime = max(locktime, cltv)

    psbt = Psbt(Transaction(version=ARK_TX_VERSION, locktime=locktime))
    sequence = TX_LOCKTIME_SEQUENCE if locktime else TX_FINAL_SEQUENCE
    for inp in inputs:
        psbt_input = PsbtInput(
            witness_utxo=TxOut(inp.value, VtxoScript.decode(inp.tap_tree).pk_script),
            tap_leaf_scripts=[inp.tap_leaf_script],
        )
        set_vtxo_tap_tree(psbt_input, inp.tap_tree)
        psbt.add_input(TxIn(inp.txid, inp.vout, sequence), psbt_input)

    for out in outputs:
        psbt.add_output(out)
    psbt.add_output(P2A)
    return psbt


def checkpoint_vtxo_script(
    vtxo: ArkTxInput, server_unroll_script: CSVMultisigTapscript
) -> tuple[VtxoScript, bytes]:
    """Checkpoint output script and the collaborative leaf it carries."""
    collaborative = vtxo.checkpoint_tap_leaf_script or vtxo.tap_leaf_script.script
    return VtxoScript([server_unroll_script.script, collaborative]), collaborative


def _build_checkpoint_tx(
    vtxo: ArkTxInput, server_unroll_script: CSVMultisigTapscript
) -> tuple[Psbt, ArkTxInput]:
    script, collaborative = checkpoint_vtxo_script(vtxo, server_unroll_script)
    checkpoint = _build_virtual_tx([vtxo], [TxOut(vtxo.value, script.pk_script)])
    checkpoint_input = ArkTxInput(
        txid=checkpoint.txid,
        vout=0,
        value=vtxo.value,
        tap_leaf_script=script.find_leaf(collaborative),
        tap_tree=script.encode(),
    )
    return checkpoint, checkpoint_input


def build_offchain_tx(
    inputs: list[ArkTxInput],
    outputs: list[TxOut],
    server_unroll_script: CSVMultisigTapscript,
) -> OffchainTx:
    """
    Build an Ark transaction and its checkpoint transactions.

    Args:
        inputs: VTXOs to spend with the leaf used to spend each
        outputs: Requested outputs (the P2A anchor is appended)
        server_unroll_script: Unroll closure published by the server

    Returns:
        OffchainTx with exactly one checkpoint per input

    Raises:
        OffchainTxError: If inputs mix block and second locktimes
    """
    if not inputs:
        raise OffchainTxError("offchain tx requires at least one input")
    checkpoints = [_build_checkpoint_tx(inp, server_unroll_script) for inp in inputs]
    ark_tx = _build_virtual_tx([c[1] for c in checkpoints], outputs)
    logger.debug(
        f"Built offchain tx {ark_tx.txid} with {len(checkpoints)} checkpoints "
        f"and {len(outputs)} outputs"
    )
    return OffchainTx(ark_tx, [c[0] for c in checkpoints])


def validate_offchain_tx(
    offchain_tx: OffchainTx,
    inputs: list[ArkTxInput],
    outputs: list[TxOut],
    server_unroll_script: CSVMultisigTapscript,
    fee: int = 0,
) -> None:
    """
    Re-derive the shape of an offchain transaction and compare.

    Raises:
        OffchainTxError: On the first mismatch
    """
    ark_tx = offchain_tx.ark_tx.tx
    checkpoints = offchain_tx.checkpoints
    if len(checkpoints) != len(inputs):
        raise OffchainTxError(
            f"expected {len(inputs)} checkpoints, got {len(checkpoints)}"
        )
    if len(ark_tx.inputs) != len(checkpoints):
        raise OffchainTxError("ark tx must spend exactly one output per checkpoint")
    if ark_tx.version != ARK_TX_VERSION:
        raise OffchainTxError(f"invalid ark tx version {ark_tx.version}")

    for i, (inp, checkpoint) in enumerate(zip(inputs, checkpoints)):
        tx = checkpoint.tx
        if len(tx.inputs) != 1:
            raise OffchainTxError(f"checkpoint {i} must have exactly one input")
        if tx.inputs[0].outpoint != TxIn(inp.txid, inp.vout).outpoint:
            raise OffchainTxError(f"checkpoint {i} does not spend {inp.txid}:{inp.vout}")
        if len(tx.outputs) != 2 or tx.outputs[1] != P2A:
            raise OffchainTxError(f"checkpoint {i} must have one output plus the anchor")

        expected_script, _ = checkpoint_vtxo_script(inp, server_unroll_script)
        if tx.outputs[0].script != expected_script.pk_script:
            raise OffchainTxError(f"checkpoint {i} output does not commit to the unroll script")
        if tx.outputs[0].value != inp.value:
            raise OffchainTxError(
                f"checkpoint {i} amount mismatch: {tx.outputs[0].value} != {inp.value}"
            )

        ark_input = ark_tx.inputs[i]
        if ark_input.txid != checkpoint.txid or ark_input.vout != 0:
            raise OffchainTxError(f"ark tx input {i} does not spend checkpoint {checkpoint.txid}")
        tap_tree = get_vtxo_tap_tree(offchain_tx.ark_tx.inputs[i])
        if tap_tree is None:
            raise OffchainTxError(f"ark tx input {i} is missing its tap tree")
        if server_unroll_script.script not in decode_tap_tree(tap_tree):
            raise OffchainTxError(f"ark tx input {i} tap tree lacks the unroll leaf")

    if len(ark_tx.outputs) != len(outputs) + 1 or ark_tx.outputs[-1] != P2A:
        raise OffchainTxError("ark tx outputs must be the requested outputs plus the anchor")
    for i, (actual, expected) in enumerate(zip(ark_tx.outputs, outputs)):
        if actual != expected:
            raise OffchainTxError(f"ark tx output {i} mismatch")

    total_in = sum(inp.value for inp in inputs)
    total_out = sum(out.value for out in ark_tx.outputs)
    if total_in != total_out + fee:
        raise OffchainTxError(
            f"amounts do not balance: inputs {total_in} != outputs {total_out} + fee {fee}"
        )


def verify_tapscript_signatures(
    psbt: Psbt,
    input_index: int,
    required_signers: list[bytes],
    exclude_pubkeys: list[bytes] | None = None,
    allowed_sighash_types: tuple[int, ...] = (SIGHASH_DEFAULT,),
) -> None:
    """
    Verify the tapscript signatures of one input.

    Args:
        psbt: Transaction to verify
        input_index: Input to verify
        required_signers: x-only keys that must have signed
        exclude_pubkeys: Keys to skip (e.g. the server before it co-signs)
        allowed_sighash_types: Accepted sighash types

    Raises:
        SignatureVerificationError: On an invalid, disallowed or missing signature
    """
    exclude = set(exclude_pubkeys or [])
    psbt_input = psbt.inputs[input_index]
    if not psbt_input.tap_script_sigs:
        raise SignatureVerificationError(f"Input {input_index} is missing tapScriptSig")

    leaves = {leaf.leaf_hash: leaf for leaf in psbt_input.tap_leaf_scripts}
    for (pubkey, leaf_hash), signature in psbt_input.tap_script_sigs.items():
        if pubkey in exclude:
            continue
        sighash_type = signature[64] if len(signature) == 65 else SIGHASH_DEFAULT
        if sighash_type not in allowed_sighash_types:
            raise SignatureVerificationError(
                f"Unallowed sighash type {sighash_type:#04x} for input {input_index}, "
                f"pubkey {pubkey.hex()}."
            )
        if leaf_hash not in leaves:
            raise SignatureVerificationError(
                f"Input {input_index}: No tapLeafScript found matching leafHash {leaf_hash.hex()}"
            )
        message = psbt.sighash(input_index, leaf_hash, sighash_type)
        if not schnorr_verify(message, signature[:64], pubkey):
            raise SignatureVerificationError(
                f"Invalid signature for input {input_index}, pubkey {pubkey.hex()}"
            )

    signed = {pubkey for pubkey, _ in psbt_input.tap_script_sigs}
    missing = [pk for pk in required_signers if pk not in exclude and pk not in signed]
    if missing:
        raise SignatureVerificationError(
            f"Missing signatures from: {', '.join(pk.hex()[:16] for pk in missing)}..."
        )


def combine_tapscript_signatures(signed: Psbt, original: Psbt) -> Psbt:
    """
    Merge the tapscript signatures of ``signed`` into ``original``.

    Raises:
        OffchainTxError: If the two PSBTs are not the same transaction
    """
    if signed.txid != original.txid:
        raise OffchainTxError(f"cannot combine signatures of {signed.txid} into {original.txid}")
    combined = original.copy()
    for i, psbt_input in enumerate(signed.inputs):
        combined.inputs[i].tap_script_sigs.update(psbt_input.tap_script_sigs)
    return combined


def build_forfeit_tx(
    inputs: list[tuple[TxIn, PsbtInput]],
    forfeit_pk_script: bytes,
    locktime: int = 0,
) -> Psbt:
    """
    Forfeit transaction: spend a VTXO and a connector into the server's forfeit output.

    The output amount is the sum of the inputs; a P2A anchor is appended.
    """
    amount = 0
    for txin, psbt_input in inputs:
        if psbt_input.witness_utxo is None:
            raise OffchainTxError("input needs witness utxo")
        amount += psbt_input.witness_utxo.value

    psbt = Psbt(Transaction(version=ARK_TX_VERSION, locktime=locktime))
    for txin, psbt_input in inputs:
        psbt.add_input(txin, psbt_input)
    psbt.add_output(TxOut(amount, forfeit_pk_script))
    psbt.add_output(P2A)
    return psbt


def find_p2a_output(tx: Transaction) -> int:
    """Index of the anchor output. Raises OffchainTxError if missing or non-zero."""
    for i, out in enumerate(tx.outputs):
        if out.script == P2A_SCRIPT:
            if out.value != ANCHOR_VALUE:
                raise OffchainTxError(
                    f"P2A output has wrong amount, expected {ANCHOR_VALUE} got {out.value}"
                )
            return i
    raise OffchainTxError("P2A output not found")


def has_boarding_tx_expired(
    coin: ExtendedCoin,
    boarding_timelock: RelativeTimelock,
    now: datetime | None = None,
    chain_tip: int | None = None,
) -> bool:
    """
    Whether the unilateral exit of a boarding output is already spendable.

    Block timelocks need ``chain_tip``; time timelocks compare against the
    confirmation block time.
    """
    if not coin.status.confirmed:
        return False
    if boarding_timelock.value == 0:
        return True
    if boarding_timelock.type == TimelockType.BLOCKS:
        if chain_tip is None or coin.status.block_height is None:
            return False
        return coin.status.block_height + boarding_timelock.value <= chain_tip
    if coin.status.block_time is None:
        return False
    now = now or datetime.now(UTC)
    return coin.status.block_time + boarding_timelock.value <= int(now.timestamp())


def ceil_sats(amount: float | int | str | Decimal) -> int:
    """Round a fee estimate up to a whole number of satoshis."""
    value = Decimal(str(amount))
    if value.is_nan() or value.is_infinite():
        raise ValueError(f"Invalid fee amount: {amount}")
    if value < 0:
        raise ValueError(f"Negative fee amount: {amount}")
    return int(value.to_integral_value(rounding=ROUND_CEILING))
