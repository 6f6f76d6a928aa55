"""
Batch session state machine.

``join`` consumes the server's settlement event stream and drives one round
for a registered intent::

    REGISTERED -> NONCES_REQUESTED -> NONCES_SUBMITTED -> SIGNING_REQUESTED
        -> SIGNATURES_SUBMITTED -> FINALIZING -> FINALIZED | FAILED

What to do at each step (confirm registration, submit nonces and partial
signatures, sign forfeits) is delegated to a ``BatchHandler``. Events that do
not fit the current state, or that belong to another batch, are ignored.

``follow_batch`` only watches the stream for the batch that commits a set of
outpoints, for coins registered by an intent another client owns.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from arkcore.psbt import Psbt
from arkcore.tree import TxTree, TxTreeChunk
from loguru import logger

from arkwallet.providers.base import (
    BatchFailedEvent,
    BatchFinalizationEvent,
    BatchFinalizedEvent,
    BatchStartedEvent,
    SettlementEvent,
    SettlementEventType,
    TreeNoncesAggregatedEvent,
    TreeNoncesEvent,
    TreeSignatureEvent,
    TreeSigningStartedEvent,
    TreeTxEvent,
)
from arkwallet.streams import next_or_cancel

VTXO_TREE_BATCH_INDEX = 0


class RoundState(str, Enum):
    REGISTERED = "registered"
    NONCES_REQUESTED = "nonces_requested"
    NONCES_SUBMITTED = "nonces_submitted"
    SIGNING_REQUESTED = "signing_requested"
    SIGNATURES_SUBMITTED = "signatures_submitted"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"
    FAILED = "failed"


class BatchSessionError(Exception):
    """The batch session could not complete."""

    pass


class BatchCancelledError(BatchSessionError):
    """The cancel event was set while waiting for batch events."""

    pass


class BatchFailedError(Exception):
    """The server aborted the batch."""

    def __init__(self, batch_id: str, reason: str):
        super().__init__(reason or f"batch {batch_id} failed")
        self.batch_id = batch_id
        self.reason = reason


class BatchHandler(ABC):
    """Reactions to the events of a batch the caller takes part in."""

    @abstractmethod
    async def on_batch_started(self, event: BatchStartedEvent) -> bool:
        """Return True to take part in the batch"""

    @abstractmethod
    async def on_tree_signing_started(
        self, event: TreeSigningStartedEvent, vtxo_tree: TxTree
    ) -> bool:
        """Validate the unsigned tree and submit nonces; return True if nonces were sent"""

    @abstractmethod
    async def on_tree_nonces(self, event: TreeNoncesEvent) -> bool:
        """Record one node's nonces; return True once partial signatures were sent"""

    @abstractmethod
    async def on_tree_nonces_aggregated(self, event: TreeNoncesAggregatedEvent) -> bool:
        """Use server-aggregated nonces; return True once partial signatures were sent"""

    @abstractmethod
    async def on_batch_finalization(
        self,
        event: BatchFinalizationEvent,
        vtxo_tree: TxTree | None,
        connector_tree: TxTree | None,
    ) -> None:
        """Sign and submit forfeits (and the commitment tx for boarding inputs)"""

    async def on_batch_finalized(self, event: BatchFinalizedEvent) -> None:
        pass

    async def on_batch_failed(self, event: BatchFailedEvent) -> bool:
        """Return True to keep listening for another batch instead of raising."""
        return False

    async def on_tree_tx(self, event: TreeTxEvent) -> None:
        pass

    async def on_tree_signature(self, event: TreeSignatureEvent) -> None:
        pass


@dataclass
class JoinOptions:
    cancel: asyncio.Event | None = None
    # Skip the MuSig2 tree signing steps (no offchain outputs to cosign)
    skip_vtxo_tree_signing: bool = False
    # Called for every event; failures are logged and ignored
    event_callback: Callable[[SettlementEvent], Awaitable[None]] | None = None


class EventNotifier:
    """Runs the event callback in the background; failures are logged and ignored."""

    def __init__(self, callback: Callable[[SettlementEvent], Awaitable[None]] | None):
        self.callback = callback
        self._tasks: set[asyncio.Task] = set()

    def notify(self, event: SettlementEvent) -> None:
        if self.callback is None:
            return
        task = asyncio.ensure_future(self.callback(event))
        self._tasks.add(task)
        task.add_done_callback(self._done)

    def _done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Settlement event callback failed: {task.exception()}")


class BatchSession:
    """State of one join attempt. A failed or finished session is not reused."""

    def __init__(self, handler: BatchHandler, options: JoinOptions):
        self.handler = handler
        self.options = options
        self.state = RoundState.REGISTERED
        self.batch_id: str | None = None
        self.vtxo_chunks: list[TxTreeChunk] = []
        self.connector_chunks: list[TxTreeChunk] = []
        self.vtxo_tree: TxTree | None = None
        self.connector_tree: TxTree | None = None
        self.commitment_txid: str | None = None
        self._notifier = EventNotifier(options.event_callback)

    def _reset(self) -> None:
        self.state = RoundState.REGISTERED
        self.batch_id = None
        self.vtxo_chunks = []
        self.connector_chunks = []
        self.vtxo_tree = None
        self.connector_tree = None

    def _set_state(self, state: RoundState) -> None:
        logger.debug(f"Batch {self.batch_id}: {self.state.value} -> {state.value}")
        self.state = state

    async def run(self, events: AsyncIterator[SettlementEvent]) -> str:
        cancel = self.options.cancel
        while True:
            if cancel is not None and cancel.is_set():
                raise BatchCancelledError("canceled")
            event = await next_or_cancel(events, cancel)
            if event is None:
                if cancel is not None and cancel.is_set():
                    raise BatchCancelledError("canceled")
                raise BatchSessionError("event stream closed")

            self._notifier.notify(event)
            if self.batch_id is not None and event.id != self.batch_id:
                continue

            try:
                await self._dispatch(event)
            except Exception:
                self.state = RoundState.FAILED
                raise
            if self.state == RoundState.FINALIZED and self.commitment_txid is not None:
                return self.commitment_txid

    async def _dispatch(self, event: SettlementEvent) -> None:
        if event.type == SettlementEventType.BATCH_STARTED:
            await self._on_batch_started(event)
        elif event.type == SettlementEventType.BATCH_FAILED:
            await self._on_batch_failed(event)
        elif self.batch_id is None:
            return
        elif event.type == SettlementEventType.TREE_TX:
            await self._on_tree_tx(event)
        elif event.type == SettlementEventType.TREE_SIGNING_STARTED:
            await self._on_tree_signing_started(event)
        elif event.type == SettlementEventType.TREE_NONCES:
            if self.state in (RoundState.NONCES_SUBMITTED, RoundState.SIGNING_REQUESTED):
                self._set_state(RoundState.SIGNING_REQUESTED)
                if await self.handler.on_tree_nonces(event):
                    self._set_state(RoundState.SIGNATURES_SUBMITTED)
        elif event.type == SettlementEventType.TREE_NONCES_AGGREGATED:
            if self.state in (RoundState.NONCES_SUBMITTED, RoundState.SIGNING_REQUESTED):
                self._set_state(RoundState.SIGNING_REQUESTED)
                if await self.handler.on_tree_nonces_aggregated(event):
                    self._set_state(RoundState.SIGNATURES_SUBMITTED)
        elif event.type == SettlementEventType.TREE_SIGNATURE:
            await self._on_tree_signature(event)
        elif event.type == SettlementEventType.BATCH_FINALIZATION:
            await self._on_batch_finalization(event)
        elif event.type == SettlementEventType.BATCH_FINALIZED:
            if self.state == RoundState.FINALIZING:
                await self.handler.on_batch_finalized(event)
                self.commitment_txid = event.commitment_txid
                self._set_state(RoundState.FINALIZED)
                logger.info(f"Batch {event.id} finalized: {event.commitment_txid}")

    async def _on_batch_started(self, event: BatchStartedEvent) -> None:
        if self.batch_id is not None:
            return
        if not await self.handler.on_batch_started(event):
            logger.debug(f"Skipping batch {event.id}")
            return
        self.batch_id = event.id
        logger.info(f"Joined batch {event.id}")
        if self.options.skip_vtxo_tree_signing:
            self._set_state(RoundState.SIGNATURES_SUBMITTED)

    async def _on_batch_failed(self, event: BatchFailedEvent) -> None:
        if self.batch_id is None:
            logger.debug(f"Ignoring failure of batch {event.id}: {event.reason}")
            return
        logger.warning(f"Batch {event.id} failed: {event.reason}")
        if await self.handler.on_batch_failed(event):
            self._reset()
            return
        self._set_state(RoundState.FAILED)
        raise BatchFailedError(event.id, event.reason)

    async def _on_tree_tx(self, event: TreeTxEvent) -> None:
        if self.state not in (RoundState.REGISTERED, RoundState.SIGNATURES_SUBMITTED):
            return
        if event.batch_index == VTXO_TREE_BATCH_INDEX:
            self.vtxo_chunks.append(event.chunk)
        else:
            self.connector_chunks.append(event.chunk)
        await self.handler.on_tree_tx(event)

    async def _on_tree_signing_started(self, event: TreeSigningStartedEvent) -> None:
        if self.state != RoundState.REGISTERED:
            return
        if not self.vtxo_chunks:
            raise BatchSessionError("tree signing started before any vtxo tree tx")
        self.vtxo_tree = TxTree.from_chunks(self.vtxo_chunks)
        self._set_state(RoundState.NONCES_REQUESTED)
        if await self.handler.on_tree_signing_started(event, self.vtxo_tree):
            self._set_state(RoundState.NONCES_SUBMITTED)
        else:
            # Not a cosigner of this tree: nothing left to do in the batch
            logger.info(f"Not signing the vtxo tree of batch {event.id}")
            self._reset()

    async def _on_tree_signature(self, event: TreeSignatureEvent) -> None:
        if self.state != RoundState.SIGNATURES_SUBMITTED:
            return
        if self.vtxo_tree is None:
            raise BatchSessionError("vtxo tree not initialized")
        signature = bytes.fromhex(event.signature)

        def set_signature(psbt) -> None:
            psbt.inputs[0].tap_key_sig = signature

        self.vtxo_tree.update(event.txid, set_signature)
        await self.handler.on_tree_signature(event)

    async def _on_batch_finalization(self, event: BatchFinalizationEvent) -> None:
        if self.state != RoundState.SIGNATURES_SUBMITTED:
            return
        if self.vtxo_tree is None and self.vtxo_chunks:
            self.vtxo_tree = TxTree.from_chunks(self.vtxo_chunks)
        if self.vtxo_tree is None and not self.options.skip_vtxo_tree_signing:
            raise BatchSessionError("vtxo tree not initialized")
        if self.connector_chunks:
            self.connector_tree = TxTree.from_chunks(self.connector_chunks)

        self._set_state(RoundState.FINALIZING)
        await self.handler.on_batch_finalization(event, self.vtxo_tree, self.connector_tree)


async def join(
    events: AsyncIterator[SettlementEvent],
    handler: BatchHandler,
    options: JoinOptions | None = None,
) -> str:
    """
    Take part in the next batch that includes the handler's intent.

    Args:
        events: Settlement event stream subscribed to the session topics
        handler: Reactions to each step
        options: Cancel event, tree-signing skip and event callback

    Returns:
        Commitment txid of the finalized batch

    Raises:
        BatchCancelledError: If the cancel event is set
        BatchFailedError: If the joined batch fails and the handler does not retry
        BatchSessionError: If the stream ends before finalization
    """
    session = BatchSession(handler, options or JoinOptions())
    return await session.run(events)


def _commits_outpoints(event: BatchFinalizationEvent, outpoints: frozenset[str]) -> bool:
    """Forfeited VTXOs are keyed in the connectors index, boarding coins are tx inputs."""
    if outpoints & event.connectors_index.keys():
        return True
    if not event.commitment_tx:
        return False
    commitment = Psbt.from_base64(event.commitment_tx)
    return any(str(tx_input.outpoint) in outpoints for tx_input in commitment.tx.inputs)


async def follow_batch(
    events: AsyncIterator[SettlementEvent],
    outpoints: frozenset[str],
    options: JoinOptions | None = None,
) -> str:
    """
    Wait for the batch that commits ``outpoints`` without taking part in it.

    Used when the coins are already registered by an intent this client does
    not own: the owner signs, this call only reports the outcome.

    Returns:
        Commitment txid of the batch spending the outpoints

    Raises:
        BatchCancelledError: If the cancel event is set
        BatchSessionError: If the stream ends before finalization
    """
    options = options or JoinOptions()
    cancel = options.cancel
    notifier = EventNotifier(options.event_callback)
    batch_id: str | None = None
    while True:
        if cancel is not None and cancel.is_set():
            raise BatchCancelledError("canceled")
        event = await next_or_cancel(events, cancel)
        if event is None:
            if cancel is not None and cancel.is_set():
                raise BatchCancelledError("canceled")
            raise BatchSessionError("event stream closed")
        notifier.notify(event)

        if event.type == SettlementEventType.BATCH_FINALIZATION:
            if _commits_outpoints(event, outpoints):
                batch_id = event.id
                logger.info(f"Batch {event.id} commits the registered coins")
        elif event.type == SettlementEventType.BATCH_FAILED and event.id == batch_id:
            logger.warning(f"Followed batch {event.id} failed: {event.reason}")
            batch_id = None
        elif event.type == SettlementEventType.BATCH_FINALIZED and event.id == batch_id:
            logger.info(f"Batch {event.id} finalized: {event.commitment_txid}")
            return event.commitment_txid

