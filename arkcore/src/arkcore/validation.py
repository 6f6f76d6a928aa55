"""
Validation of the trees the server sends during a batch.

A tree that fails any check is rejected as a whole; nothing from it is used.
"""

from __future__ import annotations

from arkcore.address import AddressError, ArkAddress
from arkcore.constants import BATCH_OUTPUT_CONNECTORS_INDEX, BATCH_OUTPUT_VTXO_INDEX
from arkcore.models import Output
from arkcore.musig2 import Musig2Error, aggregate_keys
from arkcore.psbt import Psbt, PsbtError, get_cosigner_keys
from arkcore.transaction import Transaction
from arkcore.tree import TxTree, TxTreeError


class TreeValidationError(Exception):
    """Base class for rejected batch trees."""

    message = "invalid tree"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class InvalidSettlementTxOutputsError(TreeValidationError):
    message = "invalid settlement transaction outputs"


class EmptyTreeError(TreeValidationError):
    message = "empty tree"


class NumberOfInputsError(TreeValidationError):
    message = "invalid number of inputs"


class WrongSettlementTxidError(TreeValidationError):
    message = "wrong settlement txid"


class WrongCommitmentTxidError(TreeValidationError):
    message = "wrong commitment txid"


class InvalidAmountError(TreeValidationError):
    message = "invalid amount"


class NoLeavesError(TreeValidationError):
    message = "no leaves"


class InvalidTaprootScriptError(TreeValidationError):
    message = "invalid taproot script"


class MissingCosignersPublicKeysError(TreeValidationError):
    message = "missing cosigners public keys"


class OffchainOutputNotFoundError(TreeValidationError):
    def __init__(self, address: str) -> None:
        super().__init__(f"offchain send output not found: {address}")
        self.address = address


def _as_transaction(tx: Psbt | Transaction) -> Transaction:
    return tx.tx if isinstance(tx, Psbt) else tx


def validate_connectors_tx_graph(commitment_tx_b64: str, graph: TxTree) -> None:
    """
    Check that the connectors tree hangs off the commitment tx connector output.

    Raises:
        TreeValidationError: On any mismatch
    """
    try:
        graph.validate()
    except TxTreeError as e:
        raise TreeValidationError(str(e)) from e

    if len(graph.root.tx.inputs) != 1:
        raise NumberOfInputsError()
    root_input = graph.root.tx.inputs[0]

    try:
        commitment = Psbt.from_base64(commitment_tx_b64)
    except PsbtError as e:
        raise TreeValidationError(f"invalid settlement transaction: {e}") from e
    if len(commitment.tx.outputs) <= BATCH_OUTPUT_CONNECTORS_INDEX:
        raise InvalidSettlementTxOutputsError()

    if root_input.txid != commitment.txid or root_input.vout != BATCH_OUTPUT_CONNECTORS_INDEX:
        raise WrongSettlementTxidError()


def validate_vtxo_tx_graph(
    graph: TxTree | None, commitment_tx: Psbt | Transaction, sweep_tap_tree_root: bytes
) -> None:
    """
    Validate a VTXO tree against its commitment transaction.

    Checks the batch output amount, the root linkage, the parent/child
    structure and, for every edge, that the parent output key is the
    MuSig2 aggregate of the child's cosigners tweaked with the sweep tree.

    Args:
        graph: The VTXO tree
        commitment_tx: Commitment (settlement) transaction
        sweep_tap_tree_root: Merkle root of the batch sweep script tree

    Raises:
        TreeValidationError: On the first failed check
    """
    tx = _as_transaction(commitment_tx)
    if len(tx.outputs) < BATCH_OUTPUT_VTXO_INDEX + 1:
        raise InvalidSettlementTxOutputsError("invalid round transaction outputs")
    batch_amount = tx.outputs[BATCH_OUTPUT_VTXO_INDEX].value
    if not batch_amount:
        raise InvalidSettlementTxOutputsError("invalid round transaction outputs")

    if graph is None:
        raise EmptyTreeError()

    if not graph.root.tx.inputs:
        raise NumberOfInputsError()
    root_input = graph.root.tx.inputs[0]
    if root_input.txid != tx.txid or root_input.vout != BATCH_OUTPUT_VTXO_INDEX:
        raise WrongCommitmentTxidError()

    if sum(out.value for out in graph.root.tx.outputs) != batch_amount:
        raise InvalidAmountError()

    if not graph.leaves():
        raise NoLeavesError()

    try:
        graph.validate()
    except TxTreeError as e:
        raise TreeValidationError(str(e)) from e

    for node in graph.iter_nodes():
        for index, child in node.children.items():
            script = node.root.tx.outputs[index].script
            previous_key = script[2:]
            if len(previous_key) != 32:
                raise TreeValidationError(f"parent output {index} has invalid script")

            cosigners = get_cosigner_keys(child.root.inputs[0])
            if not cosigners:
                raise MissingCosignersPublicKeysError()
            try:
                agg = aggregate_keys(cosigners, sort=True, taproot_tweak=sweep_tap_tree_root)
            except Musig2Error as e:
                raise InvalidTaprootScriptError(str(e)) from e
            if agg.final_key[1:] != previous_key:
                raise InvalidTaprootScriptError()


def validate_receivers(tree: TxTree, receivers: list[Output]) -> None:
    """
    Check that every offchain receiver has a matching leaf output.

    On-chain addresses are skipped; they are paid by the commitment tx.

    Raises:
        OffchainOutputNotFoundError: For the first missing receiver
    """
    leaf_outputs = [out for leaf in tree.leaves() for out in leaf.tx.outputs]
    for receiver in receivers:
        try:
            address = ArkAddress.decode(receiver.address)
        except AddressError:
            continue
        if not any(
            out.script[2:] == address.vtxo_taproot_key and out.value == receiver.amount
            for out in leaf_outputs
        ):
            raise OffchainOutputNotFoundError(receiver.address)
