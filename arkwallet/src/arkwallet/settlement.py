"""
Batch handler used by the wallet to settle its own coins.
"""

from __future__ import annotations

from arkcore.address import address_to_script
from arkcore.constants import SIGHASH_DEFAULT, TX_FINAL_SEQUENCE, TX_LOCKTIME_SEQUENCE
from arkcore.crypto import sha256, x_only
from arkcore.models import ArkInfo, ExtendedCoin, ExtendedVirtualCoin
from arkcore.offchain import build_forfeit_tx
from arkcore.psbt import Psbt, PsbtInput
from arkcore.script import ScriptParseError
from arkcore.signing_session import TreeSignerSession
from arkcore.taproot import tap_leaf_hash
from arkcore.tapscript import (
    CLTVMultisigTapscript,
    CSVMultisigTapscript,
    RelativeTimelock,
    TimelockType,
    decode_tapscript,
)
from arkcore.transaction import TxIn, TxOut
from arkcore.tree import TxTree
from arkcore.validation import validate_connectors_tx_graph, validate_vtxo_tx_graph
from arkcore.vtxo_script import VtxoScript
from loguru import logger

from arkwallet.batch import BatchHandler, BatchSessionError
from arkwallet.identity import Identity
from arkwallet.providers.base import (
    ArkProvider,
    BatchFinalizationEvent,
    BatchStartedEvent,
    TreeNoncesAggregatedEvent,
    TreeNoncesEvent,
    TreeSigningStartedEvent,
)

# BIP-68: relative timelocks of 512 and above are expressed in seconds
SECONDS_TIMELOCK_MIN = 512


def intent_id_hash(intent_id: str) -> str:
    return sha256(intent_id.encode("utf-8")).hex()


def sweep_tap_tree_root(forfeit_pubkey: bytes, batch_expiry: int) -> bytes:
    """Leaf hash of the server sweep closure every batch output is tweaked with."""
    timelock_type = (
        TimelockType.SECONDS if batch_expiry >= SECONDS_TIMELOCK_MIN else TimelockType.BLOCKS
    )
    sweep = CSVMultisigTapscript(
        RelativeTimelock(batch_expiry, timelock_type), (x_only(forfeit_pubkey),)
    )
    return tap_leaf_hash(sweep.script)


def _forfeit_locktime(script: bytes) -> int:
    try:
        closure = decode_tapscript(script)
    except ScriptParseError:
        return 0
    if isinstance(closure, CLTVMultisigTapscript):
        return closure.locktime
    return 0


class SettlementHandler(BatchHandler):
    """
    Settles a set of wallet coins in the batch that includes ``intent_id``.

    Args:
        provider: Ark server
        identity: Owner of the coins
        session: Ephemeral MuSig2 session; its key is the registered cosigner
        info: Server parameters (forfeit key and address, dust)
        intent_id: ID returned by intent registration
        vtxos: Offchain coins to forfeit
        boarding: On-chain coins signed into the commitment tx
    """

    def __init__(
        self,
        provider: ArkProvider,
        identity: Identity,
        session: TreeSignerSession,
        info: ArkInfo,
        intent_id: str,
        vtxos: list[ExtendedVirtualCoin] | None = None,
        boarding: list[ExtendedCoin] | None = None,
    ):
        self.provider = provider
        self.identity = identity
        self.session = session
        self.info = info
        self.intent_id = intent_id
        self.vtxos = vtxos or []
        self.boarding = boarding or []
        self.batch_id: str | None = None
        self.sweep_root: bytes | None = None

    @property
    def pubkey_hex(self) -> str:
        return self.session.get_public_key().hex()

    async def on_batch_started(self, event: BatchStartedEvent) -> bool:
        if intent_id_hash(self.intent_id) not in event.intent_id_hashes:
            return False
        await self.provider.confirm_registration(self.intent_id)
        self.batch_id = event.id
        self.sweep_root = sweep_tap_tree_root(
            bytes.fromhex(self.info.forfeit_pubkey), event.batch_expiry
        )
        logger.info(f"Intent {self.intent_id} selected for batch {event.id}")
        return True

    def _is_cosigner(self, cosigners: list[str]) -> bool:
        own = x_only(self.session.get_public_key()).hex()
        for key in cosigners:
            try:
                if x_only(bytes.fromhex(key)).hex() == own:
                    return True
            except ValueError:
                continue
        return False

    async def on_tree_signing_started(
        self, event: TreeSigningStartedEvent, vtxo_tree: TxTree
    ) -> bool:
        if not self._is_cosigner(event.cosigners_pubkeys):
            return False
        if self.sweep_root is None:
            raise BatchSessionError("tree signing started before batch started")

        commitment = Psbt.from_base64(event.unsigned_commitment_tx)
        validate_vtxo_tx_graph(vtxo_tree, commitment, self.sweep_root)
        batch_amount = commitment.tx.outputs[0].value

        self.session.init(vtxo_tree, self.sweep_root, batch_amount)
        nonces = self.session.get_nonces()
        await self.provider.submit_tree_nonces(event.id, self.pubkey_hex, nonces)
        logger.debug(f"Submitted {len(nonces)} tree nonces for batch {event.id}")
        return True

    async def _submit_signatures(self, batch_id: str) -> None:
        signatures = self.session.sign()
        await self.provider.submit_tree_signatures(batch_id, self.pubkey_hex, signatures)
        logger.debug(f"Submitted {len(signatures)} tree signatures for batch {batch_id}")

    async def on_tree_nonces(self, event: TreeNoncesEvent) -> bool:
        if not self.session.add_nonces(event.txid, event.nonces):
            return False
        await self._submit_signatures(event.id)
        return True

    async def on_tree_nonces_aggregated(self, event: TreeNoncesAggregatedEvent) -> bool:
        self.session.set_aggregated_nonces(event.tree_nonces)
        await self._submit_signatures(event.id)
        return True

    def _needs_forfeit(self, vtxo: ExtendedVirtualCoin) -> bool:
        # Swept and subdust coins are not backed by a batch output
        dust = self.info.dust
        return not vtxo.is_recoverable and not vtxo.is_subdust(dust)

    def _connector_output(
        self,
        event: BatchFinalizationEvent,
        connector_tree: TxTree,
        vtxo: ExtendedVirtualCoin,
        fallback: list[Psbt],
    ) -> tuple[TxIn, TxOut]:
        outpoint = event.connectors_index.get(f"{vtxo.txid}:{vtxo.vout}")
        if outpoint is not None:
            node = connector_tree.find(outpoint.txid)
            if node is None:
                raise BatchSessionError(f"connector {outpoint} not in connector tree")
            return TxIn(outpoint.txid, outpoint.vout), node.root.tx.outputs[outpoint.vout]
        if not fallback:
            raise BatchSessionError("not enough connectors received")
        leaf = fallback.pop(0)
        return TxIn(leaf.txid, 0), leaf.tx.outputs[0]

    async def _sign_forfeit(
        self, vtxo: ExtendedVirtualCoin, connector_in: TxIn, connector_out: TxOut
    ) -> str:
        forfeit_script = address_to_script(self.info.forfeit_address)
        locktime = _forfeit_locktime(vtxo.forfeit_tap_leaf_script.script)
        vtxo_input = PsbtInput(
            witness_utxo=TxOut(vtxo.value, VtxoScript.decode(vtxo.tap_tree).pk_script),
            sighash_type=SIGHASH_DEFAULT,
            tap_leaf_scripts=[vtxo.forfeit_tap_leaf_script],
        )
        sequence = TX_LOCKTIME_SEQUENCE if locktime else TX_FINAL_SEQUENCE
        forfeit = build_forfeit_tx(
            [
                (TxIn(vtxo.txid, vtxo.vout, sequence), vtxo_input),
                (connector_in, PsbtInput(witness_utxo=connector_out)),
            ],
            forfeit_script,
            locktime=locktime,
        )
        signed = await self.identity.sign(forfeit, [0])
        return signed.to_base64()

    async def _sign_boarding(self, commitment_b64: str) -> str:
        commitment = Psbt.from_base64(commitment_b64)
        indexes = []
        for coin in self.boarding:
            for i, txin in enumerate(commitment.tx.inputs):
                if txin.txid == coin.txid and txin.vout == coin.vout:
                    psbt_input = commitment.inputs[i]
                    psbt_input.tap_leaf_scripts = [coin.forfeit_tap_leaf_script]
                    if psbt_input.witness_utxo is None:
                        psbt_input.witness_utxo = TxOut(
                            coin.value, VtxoScript.decode(coin.tap_tree).pk_script
                        )
                    indexes.append(i)
                    break
            else:
                raise BatchSessionError(f"boarding input {coin.outpoint} not in commitment tx")
        signed = await self.identity.sign(commitment, indexes)
        return signed.to_base64()

    async def on_batch_finalization(
        self,
        event: BatchFinalizationEvent,
        vtxo_tree: TxTree | None,
        connector_tree: TxTree | None,
    ) -> None:
        forfeits: list[str] = []
        to_forfeit = [vtxo for vtxo in self.vtxos if self._needs_forfeit(vtxo)]
        if to_forfeit:
            if connector_tree is None:
                raise BatchSessionError("missing connector tree")
            validate_connectors_tx_graph(event.commitment_tx, connector_tree)
            fallback = connector_tree.leaves()
            for vtxo in to_forfeit:
                connector_in, connector_out = self._connector_output(
                    event, connector_tree, vtxo, fallback
                )
                forfeits.append(await self._sign_forfeit(vtxo, connector_in, connector_out))

        signed_commitment = None
        if self.boarding:
            signed_commitment = await self._sign_boarding(event.commitment_tx)

        if not forfeits and signed_commitment is None:
            logger.debug(f"Nothing to sign for batch {event.id}")
            return
        await self.provider.submit_signed_forfeit_txs(forfeits, signed_commitment)
        logger.info(f"Submitted {len(forfeits)} forfeit txs for batch {event.id}")
