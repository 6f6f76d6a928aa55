"""
MuSig2 signing of a VTXO tree.

Every tree transaction has one input, spent with a key path signature by the
MuSig2 aggregate of the cosigners recorded on that input, tweaked with the
batch sweep script tree. A participant signs only the nodes it cosigns.

``TreeSignerSession`` is one participant's view: it owns the secret nonces,
collects the other cosigners' public nonces per node and produces partial
signatures. ``TreeSignatureCoordinator`` collects partial signatures (in any
order) and combines them into the final key path signatures.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from arkcore.constants import SIGHASH_DEFAULT
from arkcore.crypto import public_key_from_private, random_private_key, schnorr_verify
from arkcore.musig2 import (
    AggregateKey,
    Musig2Error,
    SecretNonce,
    aggregate_keys,
    nonce_agg,
    nonce_gen,
    partial_sig_agg,
    partial_sig_verify,
    partial_sign,
)
from arkcore.psbt import get_cosigner_keys
from arkcore.transaction import TxOut, taproot_sighash
from arkcore.tree import TxTree


class SigningSessionError(Exception):
    """Raised when the tree signing protocol is used out of order or fails."""

    pass


def node_cosigners(node: TxTree) -> list[bytes]:
    keys = get_cosigner_keys(node.root.inputs[0])
    if not keys:
        raise SigningSessionError(f"missing cosigners for tx {node.txid}")
    return keys


def node_aggregate_key(node: TxTree, script_root: bytes) -> AggregateKey:
    return aggregate_keys(node_cosigners(node), sort=True, taproot_tweak=script_root)


def _find_parent(tree: TxTree, txid: str) -> tuple[TxTree, int] | None:
    for node in tree.iter_nodes():
        for index, child in node.children.items():
            if child.txid == txid:
                return node, index
    return None


def node_prevout(
    tree: TxTree, node: TxTree, agg: AggregateKey, root_input_amount: int
) -> TxOut:
    """Output spent by ``node``: the parent's output, or the batch output for the root."""
    script = b"\x51\x20" + agg.final_key[1:]
    parent = _find_parent(tree, node.txid)
    if parent is None:
        return TxOut(root_input_amount, script)
    parent_node, index = parent
    return TxOut(parent_node.root.tx.outputs[index].value, script)


def node_sighash(tree: TxTree, node: TxTree, agg: AggregateKey, root_input_amount: int) -> bytes:
    prevout = node_prevout(tree, node, agg, root_input_amount)
    return taproot_sighash(node.root.tx, 0, [prevout], SIGHASH_DEFAULT)


@dataclass
class _NodeState:
    agg: AggregateKey
    message: bytes
    cosigners: list[bytes]
    secnonce: SecretNonce | None = None
    pubnonce: bytes | None = None
    pubnonces: dict[str, bytes] = field(default_factory=dict)
    aggnonce: bytes | None = None


class TreeSignerSession:
    """One cosigner's MuSig2 session over a VTXO tree."""

    def __init__(self, secret_key: bytes) -> None:
        self._secret_key = secret_key
        self._pubkey = public_key_from_private(secret_key)
        self._tree: TxTree | None = None
        self._nodes: dict[str, _NodeState] = {}

    @classmethod
    def random(cls) -> TreeSignerSession:
        return cls(random_private_key())

    def get_public_key(self) -> bytes:
        return self._pubkey

    def init(self, tree: TxTree, script_root: bytes, root_input_amount: int) -> None:
        """
        Attach the unsigned tree and precompute the message of every node
        this key cosigns.
        """
        self._tree = tree
        self._nodes = {}
        for node in tree.iter_nodes():
            cosigners = node_cosigners(node)
            if self._pubkey not in cosigners:
                continue
            try:
                agg = node_aggregate_key(node, script_root)
            except Musig2Error as e:
                raise SigningSessionError(f"cannot aggregate keys of {node.txid}: {e}") from e
            message = node_sighash(tree, node, agg, root_input_amount)
            self._nodes[node.txid] = _NodeState(agg=agg, message=message, cosigners=cosigners)
        logger.debug(f"Signer session initialized for {len(self._nodes)} tree nodes")

    def _require_tree(self) -> TxTree:
        if self._tree is None:
            raise SigningSessionError("missing vtxo tree")
        return self._tree

    def get_nonces(self) -> dict[str, bytes]:
        """Public nonces (66 bytes) per cosigned txid, generated once."""
        self._require_tree()
        nonces = {}
        for txid, state in self._nodes.items():
            if state.pubnonce is None:
                state.secnonce, state.pubnonce = nonce_gen(
                    self._pubkey, self._secret_key, state.agg.final_key[1:]
                )
                state.pubnonces[self._pubkey.hex()] = state.pubnonce
            nonces[txid] = state.pubnonce
        return nonces

    def add_nonces(self, txid: str, nonces_by_pubkey: dict[str, bytes]) -> bool:
        """
        Record public nonces for one node, keyed by hex cosigner key.

        The node's aggregate nonce is computed once its whole cosigner set
        has submitted.

        Returns:
            True once every cosigned node has an aggregate nonce
        """
        self._require_tree()
        state = self._nodes.get(txid)
        if state is None:
            return self.has_all_nonces()
        allowed = {key.hex() for key in state.cosigners}
        for pubkey_hex, pubnonce in nonces_by_pubkey.items():
            if pubkey_hex.lower() not in allowed:
                raise SigningSessionError(f"{pubkey_hex} is not a cosigner of {txid}")
            state.pubnonces[pubkey_hex.lower()] = pubnonce
        if state.aggnonce is None and allowed <= state.pubnonces.keys():
            state.aggnonce = nonce_agg([state.pubnonces[key.hex()] for key in state.cosigners])
        return self.has_all_nonces()

    def has_all_nonces(self) -> bool:
        return all(state.aggnonce is not None for state in self._nodes.values())

    def set_aggregated_nonces(self, nonces: dict[str, bytes]) -> None:
        """Use aggregate nonces computed by the server."""
        self._require_tree()
        for txid, aggnonce in nonces.items():
            state = self._nodes.get(txid)
            if state is not None:
                state.aggnonce = aggnonce

    def sign(self) -> dict[str, bytes]:
        """
        Partial signatures per cosigned txid.

        Secret nonces are consumed; calling ``sign`` twice raises.

        Raises:
            SigningSessionError: If nonces are missing or already used
        """
        self._require_tree()
        sigs = {}
        for txid, state in self._nodes.items():
            if state.secnonce is None:
                raise SigningSessionError(f"nonces not generated for {txid}")
            if state.aggnonce is None:
                raise SigningSessionError(f"missing aggregated nonce for {txid}")
            try:
                sigs[txid] = partial_sign(
                    state.secnonce,
                    self._secret_key,
                    state.agg.context,
                    state.aggnonce,
                    state.message,
                )
            except Musig2Error as e:
                raise SigningSessionError(f"cannot sign {txid}: {e}") from e
        logger.debug(f"Produced {len(sigs)} partial tree signatures")
        return sigs


class TreeSignatureCoordinator:
    """
    Combines every cosigner's partial signatures into the signed tree.

    Partial signatures arriving before the node's public nonces are complete
    are buffered and verified once the nonces are known.
    """

    def __init__(self, tree: TxTree, script_root: bytes, root_input_amount: int) -> None:
        self.tree = tree
        self._nodes: dict[str, _NodeState] = {}
        self._sigs: dict[str, dict[str, bytes]] = {}
        self._pending: dict[str, dict[str, bytes]] = {}
        for node in tree.iter_nodes():
            agg = node_aggregate_key(node, script_root)
            self._nodes[node.txid] = _NodeState(
                agg=agg,
                message=node_sighash(tree, node, agg, root_input_amount),
                cosigners=node_cosigners(node),
            )
            self._sigs[node.txid] = {}
            self._pending[node.txid] = {}

    def _state(self, txid: str) -> _NodeState:
        state = self._nodes.get(txid)
        if state is None:
            raise SigningSessionError(f"tx not found in tree: {txid}")
        return state

    def add_nonce(self, txid: str, pubkey: bytes, pubnonce: bytes) -> None:
        state = self._state(txid)
        if pubkey not in state.cosigners:
            raise SigningSessionError(f"{pubkey.hex()} is not a cosigner of {txid}")
        state.pubnonces[pubkey.hex()] = pubnonce
        if state.aggnonce is None and len(state.pubnonces) == len(set(state.cosigners)):
            state.aggnonce = nonce_agg([state.pubnonces[key.hex()] for key in state.cosigners])
            for pending_key, psig in list(self._pending[txid].items()):
                del self._pending[txid][pending_key]
                self._accept(txid, bytes.fromhex(pending_key), psig)

    def aggregated_nonces(self) -> dict[str, bytes]:
        return {txid: s.aggnonce for txid, s in self._nodes.items() if s.aggnonce is not None}

    def add_partial_signature(self, txid: str, pubkey: bytes, psig: bytes) -> None:
        """
        Record a partial signature.

        Raises:
            SigningSessionError: If the signer is not a cosigner or the
                signature does not verify
        """
        state = self._state(txid)
        if pubkey not in state.cosigners:
            raise SigningSessionError(f"{pubkey.hex()} is not a cosigner of {txid}")
        if state.aggnonce is None:
            self._pending[txid][pubkey.hex()] = psig
            return
        self._accept(txid, pubkey, psig)

    def _accept(self, txid: str, pubkey: bytes, psig: bytes) -> None:
        state = self._nodes[txid]
        valid = partial_sig_verify(
            psig,
            state.pubnonces[pubkey.hex()],
            pubkey,
            state.agg.context,
            state.aggnonce,
            state.message,
        )
        if not valid:
            raise SigningSessionError(f"invalid partial signature from {pubkey.hex()} for {txid}")
        self._sigs[txid][pubkey.hex()] = psig

    def has_all_signatures(self, txid: str) -> bool:
        state = self._state(txid)
        return all(key.hex() in self._sigs[txid] for key in state.cosigners)

    def combine(self) -> TxTree:
        """
        Aggregate the partial signatures of every node into its key path signature.

        Raises:
            SigningSessionError: If any node is missing signatures
        """
        for txid, state in self._nodes.items():
            if not self.has_all_signatures(txid):
                raise SigningSessionError(f"missing partial signatures for {txid}")
            psigs = [self._sigs[txid][key.hex()] for key in state.cosigners]
            signature = partial_sig_agg(psigs, state.agg.context, state.aggnonce, state.message)
            if not schnorr_verify(state.message, signature, state.agg.final_key[1:]):
                raise SigningSessionError(f"aggregated signature for {txid} is invalid")
            node = self.tree.find(txid)
            node.root.inputs[0].tap_key_sig = signature
        logger.info(f"Combined signatures for {len(self._nodes)} tree nodes")
        return self.tree


def validate_tree_sigs(tree: TxTree, script_root: bytes, root_input_amount: int) -> None:
    """
    Check every node of a signed tree carries a valid key path signature.

    Raises:
        SigningSessionError: On an unsigned node or an invalid signature
    """
    for node in tree.iter_nodes():
        signature = node.root.inputs[0].tap_key_sig
        if not signature:
            raise SigningSessionError(f"unsigned tree input: {node.txid}")
        agg = node_aggregate_key(node, script_root)
        message = node_sighash(tree, node, agg, root_input_amount)
        if not schnorr_verify(message, signature, agg.final_key[1:]):
            raise SigningSessionError(f"invalid signature for {node.txid}")
