"""
Base provider interfaces and the settlement event types.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from arkcore.models import ArkInfo, VirtualCoin
from arkcore.transaction import OutPoint
from arkcore.tree import TxTreeChunk


class SettlementEventType(str, Enum):
    BATCH_STARTED = "batch_started"
    BATCH_FINALIZATION = "batch_finalization"
    BATCH_FINALIZED = "batch_finalized"
    BATCH_FAILED = "batch_failed"
    TREE_SIGNING_STARTED = "tree_signing_started"
    TREE_NONCES = "tree_nonces"
    TREE_NONCES_AGGREGATED = "tree_nonces_aggregated"
    TREE_TX = "tree_tx"
    TREE_SIGNATURE = "tree_signature"


@dataclass
class BatchStartedEvent:
    id: str
    intent_id_hashes: list[str]
    batch_expiry: int
    type: SettlementEventType = field(default=SettlementEventType.BATCH_STARTED, init=False)


@dataclass
class BatchFinalizationEvent:
    id: str
    commitment_tx: str  # base64 PSBT
    # "vtxo_txid:vout" -> connector outpoint
    connectors_index: dict[str, OutPoint] = field(default_factory=dict)
    type: SettlementEventType = field(
        default=SettlementEventType.BATCH_FINALIZATION, init=False
    )


@dataclass
class BatchFinalizedEvent:
    id: str
    commitment_txid: str
    type: SettlementEventType = field(default=SettlementEventType.BATCH_FINALIZED, init=False)


@dataclass
class BatchFailedEvent:
    id: str
    reason: str
    type: SettlementEventType = field(default=SettlementEventType.BATCH_FAILED, init=False)


@dataclass
class TreeSigningStartedEvent:
    id: str
    cosigners_pubkeys: list[str]
    unsigned_commitment_tx: str  # base64 PSBT
    type: SettlementEventType = field(
        default=SettlementEventType.TREE_SIGNING_STARTED, init=False
    )


@dataclass
class TreeNoncesEvent:
    """Public nonces submitted by the cosigners of one tree node."""

    id: str
    topic: list[str]
    txid: str
    nonces: dict[str, bytes]  # cosigner pubkey hex -> public nonce
    type: SettlementEventType = field(default=SettlementEventType.TREE_NONCES, init=False)


@dataclass
class TreeNoncesAggregatedEvent:
    id: str
    tree_nonces: dict[str, bytes]  # txid -> aggregated nonce
    type: SettlementEventType = field(
        default=SettlementEventType.TREE_NONCES_AGGREGATED, init=False
    )


@dataclass
class TreeTxEvent:
    id: str
    topic: list[str]
    batch_index: int  # 0 = vtxo tree, 1 = connector tree
    chunk: TxTreeChunk
    type: SettlementEventType = field(default=SettlementEventType.TREE_TX, init=False)


@dataclass
class TreeSignatureEvent:
    id: str
    topic: list[str]
    batch_index: int
    txid: str
    signature: str  # hex
    type: SettlementEventType = field(default=SettlementEventType.TREE_SIGNATURE, init=False)


SettlementEvent = Union[
    BatchStartedEvent,
    BatchFinalizationEvent,
    BatchFinalizedEvent,
    BatchFailedEvent,
    TreeSigningStartedEvent,
    TreeNoncesEvent,
    TreeNoncesAggregatedEvent,
    TreeTxEvent,
    TreeSignatureEvent,
]


@dataclass
class Intent:
    """Signed intent proof (base64 PSBT) with its encoded message."""

    proof: str
    message: str


@dataclass
class SubmitTxResponse:
    ark_txid: str
    final_ark_tx: str
    signed_checkpoint_txs: list[str]


@dataclass
class VtxoFilter:
    scripts: list[str] = field(default_factory=list)
    outpoints: list[OutPoint] = field(default_factory=list)
    spendable_only: bool = False
    spent_only: bool = False
    recoverable_only: bool = False


@dataclass
class SubscriptionUpdate:
    scripts: list[str] = field(default_factory=list)
    new_vtxos: list[VirtualCoin] = field(default_factory=list)
    spent_vtxos: list[VirtualCoin] = field(default_factory=list)
    swept_vtxos: list[VirtualCoin] = field(default_factory=list)


class ArkProvider(ABC):
    """Abstract Ark server interface."""

    @abstractmethod
    async def get_info(self) -> ArkInfo:
        """Get server parameters"""

    @abstractmethod
    async def register_intent(self, intent: Intent) -> str:
        """Register an intent, returns the intent id"""

    @abstractmethod
    async def delete_intent(self, intent: Intent) -> None:
        """Delete the intents registered for the proof's inputs"""

    @abstractmethod
    async def confirm_registration(self, intent_id: str) -> None:
        """Confirm participation in the batch that includes the intent"""

    @abstractmethod
    async def submit_tree_nonces(
        self, batch_id: str, pubkey: str, nonces: dict[str, bytes]
    ) -> None:
        """Submit public nonces for each tree node cosigned by ``pubkey``"""

    @abstractmethod
    async def submit_tree_signatures(
        self, batch_id: str, pubkey: str, signatures: dict[str, bytes]
    ) -> None:
        """Submit partial signatures for each tree node cosigned by ``pubkey``"""

    @abstractmethod
    async def submit_signed_forfeit_txs(
        self, signed_forfeit_txs: list[str], signed_commitment_tx: str | None = None
    ) -> None:
        """Submit signed forfeits and, for boarding inputs, the signed commitment tx"""

    @abstractmethod
    async def submit_tx(
        self, signed_ark_tx: str, checkpoint_txs: list[str]
    ) -> SubmitTxResponse:
        """Submit an offchain transaction"""

    @abstractmethod
    async def finalize_tx(self, ark_txid: str, final_checkpoint_txs: list[str]) -> None:
        """Finalize an offchain transaction with counter-signed checkpoints"""

    @abstractmethod
    def get_event_stream(
        self, cancel: asyncio.Event | None = None, topics: list[str] | None = None
    ) -> AsyncIterator[SettlementEvent]:
        """Stream of batch events for the given topics"""


class IndexerProvider(ABC):
    """Abstract indexer interface."""

    @abstractmethod
    async def get_vtxos(self, vtxo_filter: VtxoFilter) -> list[VirtualCoin]:
        """Get VTXOs by script or outpoint"""

    @abstractmethod
    async def subscribe_for_scripts(
        self, scripts: list[str], subscription_id: str | None = None
    ) -> str:
        """Create or extend a script subscription, returns its id"""

    @abstractmethod
    async def unsubscribe_for_scripts(
        self, subscription_id: str, scripts: list[str] | None = None
    ) -> None:
        """Remove scripts from a subscription, or drop it entirely"""

    @abstractmethod
    def get_subscription(
        self, subscription_id: str, cancel: asyncio.Event | None = None
    ) -> AsyncIterator[SubscriptionUpdate]:
        """Stream of VTXO updates for a subscription"""
