"""
REST client for the Ark server.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

from arkcore.models import ArkInfo, FeeInfo
from arkcore.transaction import OutPoint
from arkcore.tree import TxTreeChunk
from loguru import logger

from arkwallet.providers.base import (
    ArkProvider,
    BatchFailedEvent,
    BatchFinalizationEvent,
    BatchFinalizedEvent,
    BatchStartedEvent,
    Intent,
    SettlementEvent,
    SubmitTxResponse,
    TreeNoncesAggregatedEvent,
    TreeNoncesEvent,
    TreeSignatureEvent,
    TreeSigningStartedEvent,
    TreeTxEvent,
)
from arkwallet.providers.errors import ProviderError
from arkwallet.providers.http import RestClient


def encode_musig2_nonces(nonces: dict[str, bytes]) -> dict[str, str]:
    return {key: value.hex() for key, value in nonces.items()}


def decode_musig2_nonces(raw: dict[str, Any] | str) -> dict[str, bytes]:
    """Nonce maps arrive either as an object or as its JSON string."""
    if isinstance(raw, str):
        raw = json.loads(raw) if raw else {}
    nonces = {}
    for key, value in raw.items():
        if not isinstance(value, str):
            raise ProviderError(f"Invalid nonce for {key}")
        nonces[key] = bytes.fromhex(value)
    return nonces


NETWORK_ALIASES = {"bitcoin": "mainnet", "testnet3": "testnet"}


def parse_ark_info(data: dict[str, Any]) -> ArkInfo:
    fees = data.get("fees") or {}
    network = data.get("network") or "regtest"
    return ArkInfo(
        signer_pubkey=data["signerPubkey"],
        forfeit_pubkey=data.get("forfeitPubkey", ""),
        forfeit_address=data.get("forfeitAddress", ""),
        checkpoint_tapscript=data.get("checkpointTapscript", ""),
        network=NETWORK_ALIASES.get(network, network),
        session_duration=int(data.get("sessionDuration", 0)),
        unilateral_exit_delay=int(data.get("unilateralExitDelay", 0)),
        boarding_exit_delay=int(data.get("boardingExitDelay", 0)),
        dust=int(data.get("dust", 0)),
        vtxo_min_amount=int(data.get("vtxoMinAmount", -1)),
        vtxo_max_amount=int(data.get("vtxoMaxAmount", -1)),
        utxo_min_amount=int(data.get("utxoMinAmount", -1)),
        utxo_max_amount=int(data.get("utxoMaxAmount", -1)),
        version=data.get("version", ""),
        fees=FeeInfo(
            intent_fee={k: str(v) for k, v in (fees.get("intentFee") or {}).items()},
            tx_fee_rate=str(fees.get("txFeeRate", "0")),
        ),
    )


def parse_settlement_event(data: dict[str, Any]) -> SettlementEvent | None:
    """Decode one ``result`` object of the batch event stream."""
    if "batchStarted" in data:
        e = data["batchStarted"]
        return BatchStartedEvent(
            id=e["id"],
            intent_id_hashes=list(e.get("intentIdHashes") or []),
            batch_expiry=int(e.get("batchExpiry", 0)),
        )
    if "batchFinalization" in data:
        e = data["batchFinalization"]
        connectors = {
            key: OutPoint(value["txid"], int(value["vout"]))
            for key, value in (e.get("connectorsIndex") or {}).items()
        }
        return BatchFinalizationEvent(
            id=e["id"], commitment_tx=e["commitmentTx"], connectors_index=connectors
        )
    if "batchFinalized" in data:
        e = data["batchFinalized"]
        return BatchFinalizedEvent(id=e["id"], commitment_txid=e["commitmentTxid"])
    if "batchFailed" in data:
        e = data["batchFailed"]
        return BatchFailedEvent(id=e["id"], reason=e.get("reason", ""))
    if "treeSigningStarted" in data:
        e = data["treeSigningStarted"]
        return TreeSigningStartedEvent(
            id=e["id"],
            cosigners_pubkeys=list(e.get("cosignersPubkeys") or []),
            unsigned_commitment_tx=e["unsignedCommitmentTx"],
        )
    if "treeNonces" in data:
        e = data["treeNonces"]
        return TreeNoncesEvent(
            id=e["id"],
            topic=list(e.get("topic") or []),
            txid=e["txid"],
            nonces=decode_musig2_nonces(e.get("nonces") or {}),
        )
    if "treeNoncesAggregated" in data:
        e = data["treeNoncesAggregated"]
        return TreeNoncesAggregatedEvent(
            id=e["id"], tree_nonces=decode_musig2_nonces(e.get("treeNonces") or {})
        )
    if "treeTx" in data:
        e = data["treeTx"]
        return TreeTxEvent(
            id=e["id"],
            topic=list(e.get("topic") or []),
            batch_index=int(e.get("batchIndex", 0)),
            chunk=TxTreeChunk.from_dict(
                {"txid": e["txid"], "tx": e["tx"], "children": e.get("children") or {}}
            ),
        )
    if "treeSignature" in data:
        e = data["treeSignature"]
        return TreeSignatureEvent(
            id=e["id"],
            topic=list(e.get("topic") or []),
            batch_index=int(e.get("batchIndex", 0)),
            txid=e["txid"],
            signature=e["signature"],
        )
    if "heartbeat" not in data:
        logger.warning(f"Unknown settlement event: {list(data)}")
    return None


class RestArkProvider(RestClient, ArkProvider):
    """Ark server over the REST gateway."""

    async def get_info(self) -> ArkInfo:
        return parse_ark_info(await self._api_call("GET", "v1/info"))

    async def register_intent(self, intent: Intent) -> str:
        data = await self._api_call(
            "POST",
            "v1/batch/registerIntent",
            data={"intent": {"proof": intent.proof, "message": intent.message}},
        )
        intent_id = data.get("intentId")
        if not intent_id:
            raise ProviderError("registerIntent response has no intentId")
        logger.debug(f"Registered intent {intent_id}")
        return intent_id

    async def delete_intent(self, intent: Intent) -> None:
        await self._api_call(
            "POST",
            "v1/batch/deleteIntent",
            data={"intent": {"proof": intent.proof, "message": intent.message}},
        )

    async def confirm_registration(self, intent_id: str) -> None:
        await self._api_call("POST", "v1/batch/ack", data={"intentId": intent_id})

    async def submit_tree_nonces(
        self, batch_id: str, pubkey: str, nonces: dict[str, bytes]
    ) -> None:
        await self._api_call(
            "POST",
            "v1/batch/tree/submitNonces",
            data={
                "batchId": batch_id,
                "pubkey": pubkey,
                "treeNonces": encode_musig2_nonces(nonces),
            },
        )

    async def submit_tree_signatures(
        self, batch_id: str, pubkey: str, signatures: dict[str, bytes]
    ) -> None:
        await self._api_call(
            "POST",
            "v1/batch/tree/submitSignatures",
            data={
                "batchId": batch_id,
                "pubkey": pubkey,
                "treeSignatures": {txid: sig.hex() for txid, sig in signatures.items()},
            },
        )

    async def submit_signed_forfeit_txs(
        self, signed_forfeit_txs: list[str], signed_commitment_tx: str | None = None
    ) -> None:
        data: dict[str, Any] = {"signedForfeitTxs": signed_forfeit_txs}
        if signed_commitment_tx:
            data["signedCommitmentTx"] = signed_commitment_tx
        await self._api_call("POST", "v1/batch/submitForfeitTxs", data=data)

    async def submit_tx(self, signed_ark_tx: str, checkpoint_txs: list[str]) -> SubmitTxResponse:
        data = await self._api_call(
            "POST",
            "v1/tx/submit",
            data={"signedArkTx": signed_ark_tx, "checkpointTxs": checkpoint_txs},
        )
        return SubmitTxResponse(
            ark_txid=data["arkTxid"],
            final_ark_tx=data["finalArkTx"],
            signed_checkpoint_txs=list(data.get("signedCheckpointTxs") or []),
        )

    async def finalize_tx(self, ark_txid: str, final_checkpoint_txs: list[str]) -> None:
        await self._api_call(
            "POST",
            "v1/tx/finalize",
            data={"arkTxid": ark_txid, "finalCheckpointTxs": final_checkpoint_txs},
        )

    async def get_event_stream(
        self, cancel: asyncio.Event | None = None, topics: list[str] | None = None
    ) -> AsyncIterator[SettlementEvent]:
        params = {"topics": topics} if topics else None
        async for result in self._stream("v1/batch/events", params=params, cancel=cancel):
            event = parse_settlement_event(result)
            if event is not None:
                logger.debug(f"Settlement event {event.type.value} for batch {event.id}")
                yield event
