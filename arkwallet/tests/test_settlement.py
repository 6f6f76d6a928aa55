"""
Tests for the wallet's settlement batch handler.
"""

from __future__ import annotations

import pytest

from arkcore.address import address_to_script
from arkcore.models import ExtendedCoin, ExtendedVirtualCoin, VirtualStatus, VtxoState
from arkcore.psbt import Psbt
from arkcore.signing_session import TreeSignerSession
from arkcore.transaction import OutPoint, Transaction, TxIn, TxOut
from arkcore.tree import TxTree, TxTreeChunk
from arkcore.validation import TreeValidationError
from arkcore.vtxo_script import DefaultVtxoScript

from arkwallet.batch import BatchSessionError
from arkwallet.providers.base import (
    BatchFinalizationEvent,
    BatchStartedEvent,
    TreeNoncesEvent,
    TreeSigningStartedEvent,
)
from arkwallet.settlement import SettlementHandler, intent_id_hash, sweep_tap_tree_root


@pytest.fixture
def alice_script(alice_pub: bytes, server_pub: bytes) -> DefaultVtxoScript:
    return DefaultVtxoScript(alice_pub, server_pub)


def _extended_vtxo(
    script: DefaultVtxoScript, txid_byte: str, value: int, state: VtxoState = VtxoState.SETTLED
) -> ExtendedVirtualCoin:
    return ExtendedVirtualCoin(
        txid=txid_byte * 32,
        vout=0,
        value=value,
        virtual_status=VirtualStatus(state=state),
        forfeit_tap_leaf_script=script.forfeit(),
        intent_tap_leaf_script=script.forfeit(),
        tap_tree=script.encode(),
    )


def _connector_tree(commitment: Psbt, amount: int = 1_000) -> TxTree:
    """Single connector spending the commitment's connector output."""
    root = Psbt(
        Transaction(
            version=3,
            inputs=[TxIn(commitment.txid, 1)],
            outputs=[TxOut(amount, b"\x51\x20" + b"\x05" * 32)],
        )
    )
    return TxTree.from_chunks([TxTreeChunk(root.txid, root.to_base64())])


def _handler(ark_provider, alice, alice_key, ark_info, **coins) -> SettlementHandler:
    return SettlementHandler(
        ark_provider, alice, TreeSignerSession(alice_key), ark_info, "intent-1", **coins
    )


class TestSweepRoot:
    def test_block_expiry(self, server_pub: bytes, batch_tree) -> None:
        assert sweep_tap_tree_root(server_pub, 144) == batch_tree.sweep_root

    def test_seconds_expiry_differs(self, server_pub: bytes) -> None:
        assert sweep_tap_tree_root(server_pub, 1024) != sweep_tap_tree_root(server_pub, 144)


class TestBatchStarted:
    @pytest.mark.asyncio
    async def test_joins_batch_with_own_intent(
        self, ark_provider, alice, alice_key, ark_info, batch_tree
    ) -> None:
        handler = _handler(ark_provider, alice, alice_key, ark_info)
        event = BatchStartedEvent("b1", ["00" * 32, intent_id_hash("intent-1")], 144)

        assert await handler.on_batch_started(event)
        ark_provider.confirm_registration.assert_awaited_once_with("intent-1")
        assert handler.sweep_root == batch_tree.sweep_root

    @pytest.mark.asyncio
    async def test_skips_other_batches(self, ark_provider, alice, alice_key, ark_info) -> None:
        handler = _handler(ark_provider, alice, alice_key, ark_info)
        event = BatchStartedEvent("b1", [intent_id_hash("intent-2")], 144)

        assert not await handler.on_batch_started(event)
        ark_provider.confirm_registration.assert_not_awaited()


class TestTreeSigning:
    @pytest.mark.asyncio
    async def test_nonce_and_signature_round(
        self,
        ark_provider,
        alice,
        alice_key,
        alice_pub,
        server_key,
        server_pub,
        ark_info,
        batch_tree,
    ) -> None:
        handler = _handler(ark_provider, alice, alice_key, ark_info)
        await handler.on_batch_started(BatchStartedEvent("b1", [intent_id_hash("intent-1")], 144))

        signing = TreeSigningStartedEvent(
            "b1", [alice_pub.hex(), server_pub.hex()], batch_tree.commitment.to_base64()
        )
        assert await handler.on_tree_signing_started(signing, batch_tree.tree)

        ark_provider.submit_tree_nonces.assert_awaited_once()
        batch_id, pubkey, alice_nonces = ark_provider.submit_tree_nonces.await_args.args
        assert (batch_id, pubkey) == ("b1", alice_pub.hex())
        assert set(alice_nonces) == {node.txid for node in batch_tree.tree.iter_nodes()}

        server = TreeSignerSession(server_key)
        server.init(batch_tree.tree, batch_tree.sweep_root, batch_tree.batch_amount)
        server_nonces = server.get_nonces()

        txids = list(alice_nonces)
        results = []
        for txid in txids:
            event = TreeNoncesEvent(
                "b1",
                [],
                txid,
                {alice_pub.hex(): alice_nonces[txid], server_pub.hex(): server_nonces[txid]},
            )
            results.append(await handler.on_tree_nonces(event))

        assert results == [False] * (len(txids) - 1) + [True]
        ark_provider.submit_tree_signatures.assert_awaited_once()
        batch_id, pubkey, signatures = ark_provider.submit_tree_signatures.await_args.args
        assert (batch_id, pubkey) == ("b1", alice_pub.hex())
        assert set(signatures) == set(txids)

    @pytest.mark.asyncio
    async def test_not_a_cosigner(
        self, ark_provider, alice, alice_key, bob_pub, ark_info, batch_tree
    ) -> None:
        handler = _handler(ark_provider, alice, alice_key, ark_info)
        await handler.on_batch_started(BatchStartedEvent("b1", [intent_id_hash("intent-1")], 144))

        signing = TreeSigningStartedEvent("b1", [bob_pub.hex()], batch_tree.commitment.to_base64())
        assert not await handler.on_tree_signing_started(signing, batch_tree.tree)
        ark_provider.submit_tree_nonces.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejects_invalid_tree(
        self, ark_provider, alice, alice_key, alice_pub, server_pub, ark_info, batch_tree
    ) -> None:
        handler = _handler(ark_provider, alice, alice_key, ark_info)
        # a seconds expiry tweaks the batch outputs with another sweep leaf
        await handler.on_batch_started(
            BatchStartedEvent("b1", [intent_id_hash("intent-1")], 1024)
        )
        signing = TreeSigningStartedEvent(
            "b1", [alice_pub.hex(), server_pub.hex()], batch_tree.commitment.to_base64()
        )
        with pytest.raises(TreeValidationError):
            await handler.on_tree_signing_started(signing, batch_tree.tree)
        ark_provider.submit_tree_nonces.assert_not_awaited()


class TestBatchFinalization:
    @pytest.mark.asyncio
    async def test_signs_forfeit_with_indexed_connector(
        self, ark_provider, alice, alice_key, ark_info, alice_script, batch_tree
    ) -> None:
        vtxo = _extended_vtxo(alice_script, "aa", 5_000)
        handler = _handler(ark_provider, alice, alice_key, ark_info, vtxos=[vtxo])
        connectors = _connector_tree(batch_tree.commitment)
        event = BatchFinalizationEvent(
            "b1",
            batch_tree.commitment.to_base64(),
            {f"{vtxo.txid}:0": OutPoint(connectors.txid, 0)},
        )

        await handler.on_batch_finalization(event, batch_tree.tree, connectors)

        forfeits, signed_commitment = ark_provider.submit_signed_forfeit_txs.await_args.args
        assert signed_commitment is None
        assert len(forfeits) == 1
        forfeit = Psbt.from_base64(forfeits[0])
        assert forfeit.tx.inputs[0].txid == vtxo.txid
        assert forfeit.tx.inputs[1].txid == connectors.txid
        assert forfeit.tx.outputs[0].value == 6_000
        assert forfeit.tx.outputs[0].script == address_to_script(ark_info.forfeit_address)
        assert forfeit.tx.locktime == 0
        assert forfeit.inputs[0].tap_script_sigs

    @pytest.mark.asyncio
    async def test_connector_leaves_without_index(
        self, ark_provider, alice, alice_key, ark_info, alice_script, batch_tree
    ) -> None:
        vtxo = _extended_vtxo(alice_script, "aa", 5_000)
        handler = _handler(ark_provider, alice, alice_key, ark_info, vtxos=[vtxo])
        connectors = _connector_tree(batch_tree.commitment)
        event = BatchFinalizationEvent("b1", batch_tree.commitment.to_base64())

        await handler.on_batch_finalization(event, batch_tree.tree, connectors)

        forfeits, _ = ark_provider.submit_signed_forfeit_txs.await_args.args
        assert Psbt.from_base64(forfeits[0]).tx.inputs[1].txid == connectors.txid

    @pytest.mark.asyncio
    async def test_swept_and_subdust_are_not_forfeited(
        self, ark_provider, alice, alice_key, ark_info, alice_script, batch_tree
    ) -> None:
        vtxos = [
            _extended_vtxo(alice_script, "aa", 5_000, VtxoState.SWEPT),
            _extended_vtxo(alice_script, "bb", 500),
        ]
        handler = _handler(ark_provider, alice, alice_key, ark_info, vtxos=vtxos)
        event = BatchFinalizationEvent("b1", batch_tree.commitment.to_base64())

        await handler.on_batch_finalization(event, batch_tree.tree, None)
        ark_provider.submit_signed_forfeit_txs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_connector_tree(
        self, ark_provider, alice, alice_key, ark_info, alice_script, batch_tree
    ) -> None:
        vtxo = _extended_vtxo(alice_script, "aa", 5_000)
        handler = _handler(ark_provider, alice, alice_key, ark_info, vtxos=[vtxo])
        event = BatchFinalizationEvent("b1", batch_tree.commitment.to_base64())

        with pytest.raises(BatchSessionError, match="missing connector tree"):
            await handler.on_batch_finalization(event, batch_tree.tree, None)

    @pytest.mark.asyncio
    async def test_signs_boarding_input_of_commitment(
        self, ark_provider, alice, alice_key, alice_pub, server_pub, ark_info
    ) -> None:
        boarding_script = DefaultVtxoScript(alice_pub, server_pub)
        coin = ExtendedCoin(
            txid="bb" * 32,
            vout=1,
            value=10_000,
            forfeit_tap_leaf_script=boarding_script.forfeit(),
            intent_tap_leaf_script=boarding_script.forfeit(),
            tap_tree=boarding_script.encode(),
        )
        commitment = Psbt(
            Transaction(
                version=3,
                inputs=[TxIn("bb" * 32, 1)],
                outputs=[TxOut(9_000, b"\x51\x20" + b"\x06" * 32)],
            )
        )
        handler = _handler(ark_provider, alice, alice_key, ark_info, boarding=[coin])
        event = BatchFinalizationEvent("b1", commitment.to_base64())

        await handler.on_batch_finalization(event, None, None)

        forfeits, signed_commitment = ark_provider.submit_signed_forfeit_txs.await_args.args
        assert forfeits == []
        signed = Psbt.from_base64(signed_commitment)
        assert signed.inputs[0].witness_utxo.value == 10_000
        assert signed.inputs[0].tap_script_sigs

    @pytest.mark.asyncio
    async def test_boarding_input_not_in_commitment(
        self, ark_provider, alice, alice_key, alice_pub, server_pub, ark_info, batch_tree
    ) -> None:
        boarding_script = DefaultVtxoScript(alice_pub, server_pub)
        coin = ExtendedCoin(
            txid="bb" * 32,
            vout=1,
            value=10_000,
            forfeit_tap_leaf_script=boarding_script.forfeit(),
            intent_tap_leaf_script=boarding_script.forfeit(),
            tap_tree=boarding_script.encode(),
        )
        handler = _handler(ark_provider, alice, alice_key, ark_info, boarding=[coin])
        event = BatchFinalizationEvent("b1", batch_tree.commitment.to_base64())

        with pytest.raises(BatchSessionError, match="not in commitment tx"):
            await handler.on_batch_finalization(event, None, None)
