"""
Tests for transaction trees and batch tree validation.
"""

from __future__ import annotations

import pytest

from arkcore.constants import P2A_SCRIPT
from arkcore.models import Output
from arkcore.psbt import Psbt
from arkcore.transaction import Transaction, TxIn, TxOut
from arkcore.tree import TxTree, TxTreeChunk, TxTreeError
from arkcore.validation import (
    EmptyTreeError,
    InvalidAmountError,
    InvalidSettlementTxOutputsError,
    InvalidTaprootScriptError,
    MissingCosignersPublicKeysError,
    OffchainOutputNotFoundError,
    TreeValidationError,
    WrongCommitmentTxidError,
    WrongSettlementTxidError,
    validate_connectors_tx_graph,
    validate_receivers,
    validate_vtxo_tx_graph,
)


def _chunk(psbt: Psbt, children: dict[int, str] | None = None) -> TxTreeChunk:
    return TxTreeChunk(psbt.txid, psbt.to_base64(), children or {})


def _rebuild(batch_tree, mutate) -> TxTree:
    """Serialize the fixture tree, let ``mutate`` edit one node, then rebuild."""
    chunks = batch_tree.tree.serialize()
    mutate(chunks)
    return TxTree.from_chunks(chunks)


class TestTxTree:
    """Tests for chunk decoding and tree traversal."""

    def test_from_chunks_shape(self, batch_tree) -> None:
        tree = batch_tree.tree
        assert set(tree.children) == {0, 1}
        assert len(tree.leaves()) == 2
        assert len(list(tree.iter_nodes())) == 3
        tree.validate()

    def test_serialize_roundtrip(self, batch_tree) -> None:
        chunks = batch_tree.tree.serialize()
        restored = [TxTreeChunk.from_dict(chunk.to_dict()) for chunk in chunks]
        rebuilt = TxTree.from_chunks(list(reversed(restored)))
        assert [n.txid for n in rebuilt.iter_nodes()] == [
            n.txid for n in batch_tree.tree.iter_nodes()
        ]

    def test_chunk_children_keys_are_strings(self, batch_tree) -> None:
        data = batch_tree.tree.serialize()[0].to_dict()
        assert set(data["children"]) == {"0", "1"}

    def test_find_and_update(self, batch_tree) -> None:
        leaf = batch_tree.tree.leaves()[1]
        node = batch_tree.tree.find(leaf.txid)
        assert node is not None and node.root is leaf
        assert batch_tree.tree.find("00" * 32) is None

        batch_tree.tree.update(leaf.txid, lambda psbt: psbt.unknown.append((b"\xfe", b"x")))
        assert leaf.unknown == [(b"\xfe", b"x")]
        with pytest.raises(TxTreeError):
            batch_tree.tree.update("00" * 32, lambda psbt: None)

    def test_subtree(self, batch_tree) -> None:
        leaf = batch_tree.tree.leaves()[0]
        sub = batch_tree.tree.subtree([leaf.txid])
        assert sub.txid == batch_tree.tree.txid
        assert list(sub.children) == [0]
        assert [p.txid for p in sub.leaves()] == [leaf.txid]
        with pytest.raises(TxTreeError):
            batch_tree.tree.subtree(["00" * 32])

    def test_two_roots(self, batch_tree) -> None:
        chunks = batch_tree.tree.serialize()
        chunks[0].children = {0: chunks[1].txid}
        with pytest.raises(TxTreeError, match="exactly one root"):
            TxTree.from_chunks(chunks)

    def test_missing_child(self, batch_tree) -> None:
        chunks = batch_tree.tree.serialize()
        with pytest.raises(TxTreeError, match="missing chunk"):
            TxTree.from_chunks(chunks[:2])

    def test_duplicate_chunk(self, batch_tree) -> None:
        chunks = batch_tree.tree.serialize()
        with pytest.raises(TxTreeError, match="duplicate"):
            TxTree.from_chunks(chunks + [chunks[1]])

    def test_empty(self) -> None:
        with pytest.raises(TxTreeError):
            TxTree.from_chunks([])

    def test_invalid_psbt(self) -> None:
        with pytest.raises(TxTreeError, match="invalid tx"):
            TxTree.from_chunks([TxTreeChunk("aa" * 32, "bm90IGEgcHNidA==")])

    def test_validate_amount_mismatch(self, batch_tree) -> None:
        root = batch_tree.tree.root
        leaf = Psbt(
            Transaction(
                version=3,
                inputs=[TxIn(root.txid, 0)],
                outputs=[TxOut(11_000, b"\x51\x20" + b"\x01" * 32), TxOut(0, P2A_SCRIPT)],
            )
        )
        tree = TxTree(root, {0: TxTree(leaf)})
        with pytest.raises(TxTreeError, match="sum of child's outputs"):
            tree.validate()

    def test_validate_wrong_parent(self, batch_tree) -> None:
        leaf = Psbt(
            Transaction(version=3, inputs=[TxIn("22" * 32, 0)], outputs=[TxOut(12_000, b"\x51")])
        )
        tree = TxTree(batch_tree.tree.root, {0: TxTree(leaf)})
        with pytest.raises(TxTreeError, match="not the output 0"):
            tree.validate()

    def test_validate_index_out_of_bounds(self, batch_tree) -> None:
        tree = TxTree(batch_tree.tree.root, {7: batch_tree.tree.children[0]})
        with pytest.raises(TxTreeError, match="out of bounds"):
            tree.validate()


class TestValidateVtxoTxGraph:
    """Tests for validate_vtxo_tx_graph."""

    def test_valid_tree(self, batch_tree) -> None:
        validate_vtxo_tx_graph(batch_tree.tree, batch_tree.commitment, batch_tree.sweep_root)
        validate_vtxo_tx_graph(batch_tree.tree, batch_tree.commitment.tx, batch_tree.sweep_root)

    def test_empty_tree(self, batch_tree) -> None:
        with pytest.raises(EmptyTreeError):
            validate_vtxo_tx_graph(None, batch_tree.commitment, batch_tree.sweep_root)

    def test_wrong_commitment(self, batch_tree) -> None:
        other = batch_tree.commitment.tx.copy()
        other.locktime = 1
        with pytest.raises(WrongCommitmentTxidError):
            validate_vtxo_tx_graph(batch_tree.tree, other, batch_tree.sweep_root)

    def test_batch_amount_mismatch(self, batch_tree) -> None:
        commitment = batch_tree.commitment.tx.copy()
        commitment.outputs[0] = TxOut(20_001, commitment.outputs[0].script)
        root = batch_tree.tree.root.copy()
        root.tx.inputs[0].txid = commitment.txid
        tree = TxTree(root, {})
        with pytest.raises(InvalidAmountError):
            validate_vtxo_tx_graph(tree, commitment, batch_tree.sweep_root)

    def test_zero_batch_output(self, batch_tree) -> None:
        commitment = Transaction(version=3, outputs=[TxOut(0, b"\x51")])
        with pytest.raises(InvalidSettlementTxOutputsError):
            validate_vtxo_tx_graph(batch_tree.tree, commitment, batch_tree.sweep_root)

    def test_wrong_sweep_root(self, batch_tree) -> None:
        with pytest.raises(InvalidTaprootScriptError):
            validate_vtxo_tx_graph(batch_tree.tree, batch_tree.commitment, b"\x00" * 32)

    def test_missing_cosigners(self, batch_tree) -> None:
        leaf_txid = batch_tree.tree.leaves()[0].txid

        def strip(chunks: list[TxTreeChunk]) -> None:
            for chunk in chunks:
                if chunk.txid == leaf_txid:
                    psbt = Psbt.from_base64(chunk.tx)
                    psbt.inputs[0].unknown.clear()
                    chunk.tx = psbt.to_base64()

        tree = _rebuild(batch_tree, strip)
        with pytest.raises(MissingCosignersPublicKeysError):
            validate_vtxo_tx_graph(tree, batch_tree.commitment, batch_tree.sweep_root)

    def test_errors_share_a_base(self) -> None:
        assert issubclass(WrongCommitmentTxidError, TreeValidationError)
        assert str(InvalidAmountError()) == "invalid amount"
        assert str(InvalidAmountError("custom")) == "custom"


class TestValidateConnectors:
    """Tests for validate_connectors_tx_graph."""

    def _connectors(self, parent_txid: str, vout: int) -> TxTree:
        root = Psbt(
            Transaction(
                version=3,
                inputs=[TxIn(parent_txid, vout)],
                outputs=[
                    TxOut(500, b"\x51\x20" + b"\x03" * 32),
                    TxOut(500, b"\x51\x20" + b"\x04" * 32),
                ],
            )
        )
        return TxTree.from_chunks([_chunk(root)])

    def test_valid(self, batch_tree) -> None:
        tree = self._connectors(batch_tree.commitment.txid, 1)
        validate_connectors_tx_graph(batch_tree.commitment.to_base64(), tree)

    def test_wrong_output(self, batch_tree) -> None:
        tree = self._connectors(batch_tree.commitment.txid, 0)
        with pytest.raises(WrongSettlementTxidError):
            validate_connectors_tx_graph(batch_tree.commitment.to_base64(), tree)

    def test_wrong_txid(self, batch_tree) -> None:
        tree = self._connectors("33" * 32, 1)
        with pytest.raises(WrongSettlementTxidError):
            validate_connectors_tx_graph(batch_tree.commitment.to_base64(), tree)

    def test_commitment_without_connector_output(self, batch_tree) -> None:
        commitment = Psbt(
            Transaction(version=3, inputs=[TxIn("11" * 32, 0)], outputs=[TxOut(1, b"\x51")])
        )
        tree = self._connectors(commitment.txid, 1)
        with pytest.raises(InvalidSettlementTxOutputsError):
            validate_connectors_tx_graph(commitment.to_base64(), tree)


class TestValidateReceivers:
    """Tests for validate_receivers."""

    def test_receiver_found(self, batch_tree, server_pub: bytes) -> None:
        address = batch_tree.receiver_scripts[0].address("tark", server_pub).encode()
        validate_receivers(batch_tree.tree, [Output(address=address, amount=12_000)])

    def test_wrong_amount(self, batch_tree, server_pub: bytes) -> None:
        address = batch_tree.receiver_scripts[0].address("tark", server_pub).encode()
        with pytest.raises(OffchainOutputNotFoundError) as exc:
            validate_receivers(batch_tree.tree, [Output(address=address, amount=8_000)])
        assert exc.value.address == address

    def test_onchain_receivers_skipped(self, batch_tree) -> None:
        onchain = batch_tree.receiver_scripts[0].onchain_address("regtest")
        validate_receivers(batch_tree.tree, [Output(address=onchain, amount=1)])
