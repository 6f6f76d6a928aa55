"""
Test configuration for arkcore tests.
"""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from arkcore.constants import P2A_SCRIPT
from arkcore.crypto import public_key_from_private, x_only
from arkcore.musig2 import aggregate_keys
from arkcore.psbt import Psbt, set_cosigner_keys
from arkcore.tapscript import CSVMultisigTapscript, RelativeTimelock
from arkcore.taproot import tap_leaf_hash
from arkcore.transaction import Transaction, TxIn, TxOut
from arkcore.tree import TxTree, TxTreeChunk
from arkcore.vtxo_script import DefaultVtxoScript


def _key(n: int) -> bytes:
    return n.to_bytes(32, "big")


@pytest.fixture
def alice_key() -> bytes:
    return _key(0xA11CE)


@pytest.fixture
def bob_key() -> bytes:
    return _key(0xB0B)


@pytest.fixture
def server_key() -> bytes:
    return _key(0x5E4E4)


@pytest.fixture
def alice_pub(alice_key: bytes) -> bytes:
    return public_key_from_private(alice_key)


@pytest.fixture
def bob_pub(bob_key: bytes) -> bytes:
    return public_key_from_private(bob_key)


@pytest.fixture
def server_pub(server_key: bytes) -> bytes:
    return public_key_from_private(server_key)


@pytest.fixture
def unroll_script(server_pub: bytes) -> CSVMultisigTapscript:
    """Server unroll closure published at session start."""
    return CSVMultisigTapscript(RelativeTimelock(10), (x_only(server_pub),))


@dataclass
class BatchTree:
    commitment: Psbt
    tree: TxTree
    sweep_root: bytes
    batch_amount: int
    receiver_scripts: list[DefaultVtxoScript]


@pytest.fixture
def batch_tree(alice_pub: bytes, bob_pub: bytes, server_pub: bytes) -> BatchTree:
    """
    A two-leaf VTXO tree cosigned by alice and the server.

    commitment:0 -> root -> (leaf paying alice, leaf paying bob)
    """
    sweep_script = CSVMultisigTapscript(RelativeTimelock(1024), (x_only(server_pub),)).script
    sweep_root = tap_leaf_hash(sweep_script)
    cosigners = [alice_pub, server_pub]
    shared_key = aggregate_keys(cosigners, sort=True, taproot_tweak=sweep_root).final_key[1:]
    shared_script = b"\x51\x20" + shared_key

    batch_amount = 20_000
    commitment = Psbt(
        Transaction(
            version=3,
            inputs=[TxIn("11" * 32, 0)],
            outputs=[
                TxOut(batch_amount, shared_script),
                TxOut(1_000, b"\x51\x20" + b"\x02" * 32),
            ],
        )
    )

    root = Psbt(
        Transaction(
            version=3,
            inputs=[TxIn(commitment.txid, 0)],
            outputs=[
                TxOut(12_000, shared_script),
                TxOut(8_000, shared_script),
                TxOut(0, P2A_SCRIPT),
            ],
        )
    )
    set_cosigner_keys(root.inputs[0], cosigners)

    receivers = [DefaultVtxoScript(alice_pub, server_pub), DefaultVtxoScript(bob_pub, server_pub)]
    leaves = []
    for index, (amount, receiver) in enumerate(zip((12_000, 8_000), receivers)):
        leaf = Psbt(
            Transaction(
                version=3,
                inputs=[TxIn(root.txid, index)],
                outputs=[TxOut(amount, receiver.pk_script), TxOut(0, P2A_SCRIPT)],
            )
        )
        set_cosigner_keys(leaf.inputs[0], cosigners)
        leaves.append(leaf)

    chunks = [
        TxTreeChunk(root.txid, root.to_base64(), {0: leaves[0].txid, 1: leaves[1].txid}),
        TxTreeChunk(leaves[0].txid, leaves[0].to_base64()),
        TxTreeChunk(leaves[1].txid, leaves[1].to_base64()),
    ]
    return BatchTree(
        commitment=commitment,
        tree=TxTree.from_chunks(chunks),
        sweep_root=sweep_root,
        batch_amount=batch_amount,
        receiver_scripts=receivers,
    )
