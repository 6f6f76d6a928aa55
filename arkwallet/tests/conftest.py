"""
Test configuration for arkwallet tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from arkcore.address import script_to_address
from arkcore.constants import P2A_SCRIPT
from arkcore.crypto import public_key_from_private, x_only
from arkcore.models import ArkInfo, NetworkType, VirtualCoin, VirtualStatus, VtxoState
from arkcore.musig2 import aggregate_keys
from arkcore.psbt import Psbt, set_cosigner_keys
from arkcore.tapscript import CSVMultisigTapscript, RelativeTimelock
from arkcore.taproot import tap_leaf_hash
from arkcore.transaction import Transaction, TxIn, TxOut
from arkcore.tree import TxTree, TxTreeChunk
from arkcore.vtxo_script import DefaultVtxoScript

from arkwallet.identity import SingleKey
from arkwallet.providers.base import ArkProvider, IndexerProvider, SubmitTxResponse

NOW = datetime(2026, 1, 1, tzinfo=UTC)


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
def alice(alice_key: bytes) -> SingleKey:
    return SingleKey(alice_key)


@pytest.fixture
def checkpoint_tapscript(server_pub: bytes) -> CSVMultisigTapscript:
    return CSVMultisigTapscript(RelativeTimelock(10), (x_only(server_pub),))


@pytest.fixture
def ark_info(server_pub: bytes, checkpoint_tapscript: CSVMultisigTapscript) -> ArkInfo:
    return ArkInfo(
        signer_pubkey=server_pub.hex(),
        forfeit_pubkey=server_pub.hex(),
        forfeit_address=script_to_address(b"\x51\x20" + x_only(server_pub), "regtest"),
        checkpoint_tapscript=checkpoint_tapscript.script.hex(),
        network=NetworkType.REGTEST,
        unilateral_exit_delay=512,
        boarding_exit_delay=1024,
        dust=1_000,
        version="test",
    )


def _make_vtxo(
    txid_byte: str,
    value: int,
    state: VtxoState = VtxoState.SETTLED,
    batch_expiry: int | None = None,
    script: str = "",
    spent: bool = False,
    vout: int = 0,
) -> VirtualCoin:
    return VirtualCoin(
        txid=txid_byte * 32,
        vout=vout,
        value=value,
        virtual_status=VirtualStatus(state=state, batch_expiry=batch_expiry),
        script=script,
        is_spent=spent,
    )


@pytest.fixture
def make_vtxo():
    return _make_vtxo


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def ark_provider() -> AsyncMock:
    """Ark server mock; ``get_event_stream`` is set per test."""
    provider = AsyncMock(spec=ArkProvider)
    provider.register_intent = AsyncMock(return_value="intent-1")
    provider.submit_tx = AsyncMock(
        return_value=SubmitTxResponse(
            ark_txid="ab" * 32, final_ark_tx="", signed_checkpoint_txs=[]
        )
    )
    return provider


@pytest.fixture
def indexer() -> AsyncMock:
    indexer = AsyncMock(spec=IndexerProvider)
    indexer.get_vtxos = AsyncMock(return_value=[])
    return indexer


@dataclass
class BatchTree:
    commitment: Psbt
    tree: TxTree
    chunks: list[TxTreeChunk]
    sweep_root: bytes
    batch_amount: int


@pytest.fixture
def batch_tree(alice_pub: bytes, bob_pub: bytes, server_pub: bytes) -> BatchTree:
    """
    A two-leaf VTXO tree cosigned by alice and the server, swept after 144
    blocks by the server key.
    """
    sweep_script = CSVMultisigTapscript(RelativeTimelock(144), (x_only(server_pub),)).script
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
        chunks=chunks,
        sweep_root=sweep_root,
        batch_amount=batch_amount,
    )
