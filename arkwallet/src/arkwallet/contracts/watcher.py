"""
Contract watcher.

Keeps one indexer subscription covering every active contract script plus
inactive scripts that still hold VTXOs, and turns indexer updates into
contract events. Subscription or stream failures are never raised to the
caller: each one emits a single ``connection_reset`` event, the watcher
reconnects with exponential backoff and resyncs with a full poll. A failsafe
task polls periodically in case notifications are lost.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from arkcore.models import VirtualCoin, VtxoState
from loguru import logger

from arkwallet.config import WatcherConfig
from arkwallet.contracts.models import (
    Contract,
    ContractEvent,
    ContractEventType,
    ContractState,
)
from arkwallet.providers.base import IndexerProvider, SubscriptionUpdate, VtxoFilter

ContractEventCallback = Callable[[ContractEvent], Awaitable[None] | None]


@dataclass
class WatchedContract:
    contract: Contract
    # outpoint -> last known state
    vtxos: dict[str, VirtualCoin] = field(default_factory=dict)
    expired_notified: bool = False

    def has_unspent_vtxos(self) -> bool:
        return any(vtxo.is_spendable for vtxo in self.vtxos.values())


class ContractWatcher:
    """
    Watch contract scripts through an indexer.

    Args:
        indexer: Indexer provider
        config: Poll interval and reconnect backoff
        on_event: Called for every event; may be async, errors are logged
    """

    def __init__(
        self,
        indexer: IndexerProvider,
        config: WatcherConfig | None = None,
        on_event: ContractEventCallback | None = None,
    ):
        self.indexer = indexer
        self.config = config or WatcherConfig()
        self.on_event = on_event
        self._contracts: dict[str, WatchedContract] = {}
        self._subscription_id: str | None = None
        self._subscribed: set[str] = set()
        self._stopped = asyncio.Event()
        self._listen_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None
        self._needs_resync = False

    @property
    def running(self) -> bool:
        return self._listen_task is not None and not self._listen_task.done()

    def watched_scripts(self) -> list[str]:
        """Active contract scripts and inactive ones that still hold unspent VTXOs."""
        scripts = []
        for watched in self._contracts.values():
            contract = watched.contract
            if contract.state == ContractState.ACTIVE or watched.has_unspent_vtxos():
                scripts.append(contract.script)
        return sorted(set(scripts))

    def get_vtxos(self, contract_id: str) -> list[VirtualCoin]:
        for watched in self._contracts.values():
            if watched.contract.id == contract_id:
                return list(watched.vtxos.values())
        return []

    async def add_contract(self, contract: Contract) -> None:
        existing = self._contracts.get(contract.script)
        if existing is not None:
            existing.contract = contract
        else:
            self._contracts[contract.script] = WatchedContract(contract)
        logger.debug(f"Watching contract {contract.id} ({contract.state.value})")
        if self.running:
            await self._sync_subscription()

    async def update_contract(self, contract: Contract) -> None:
        await self.add_contract(contract)

    async def remove_contract(self, contract_id: str) -> None:
        for script, watched in list(self._contracts.items()):
            if watched.contract.id == contract_id:
                del self._contracts[script]
        if self.running:
            await self._sync_subscription()

    async def start(self) -> None:
        if self.running:
            return
        self._stopped.clear()
        try:
            await self.poll()
        except Exception as e:
            logger.warning(f"Initial poll failed, will resync once connected: {e}")
            self._needs_resync = True
        self._listen_task = asyncio.create_task(self._listen_loop())
        self._poll_task = asyncio.create_task(self._failsafe_poll_loop())
        logger.info(f"Contract watcher started for {len(self.watched_scripts())} scripts")

    async def stop(self) -> None:
        self._stopped.set()
        for task in (self._listen_task, self._poll_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._listen_task = None
        self._poll_task = None

        if self._subscription_id is not None:
            try:
                await self.indexer.unsubscribe_for_scripts(self._subscription_id)
            except Exception as e:
                logger.warning(f"Failed to unsubscribe {self._subscription_id}: {e}")
            self._subscription_id = None
            self._subscribed = set()
        logger.info("Contract watcher stopped")

    async def _emit(self, event: ContractEvent) -> None:
        if self.on_event is None:
            return
        try:
            result = self.on_event(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Contract event callback failed on {event.type.value}: {e}")

    async def _sync_subscription(self) -> None:
        """Bring the live subscription in line with the watched scripts."""
        if self._subscription_id is None:
            return
        scripts = set(self.watched_scripts())
        added = sorted(scripts - self._subscribed)
        removed = sorted(self._subscribed - scripts)
        try:
            if added:
                self._subscription_id = await self.indexer.subscribe_for_scripts(
                    added, self._subscription_id
                )
            if removed:
                await self.indexer.unsubscribe_for_scripts(self._subscription_id, removed)
        except Exception as e:
            logger.warning(f"Failed to update subscription: {e}")
            return
        self._subscribed = scripts

    async def _subscribe(self) -> str:
        scripts = self.watched_scripts()
        self._subscription_id = await self.indexer.subscribe_for_scripts(
            scripts, self._subscription_id
        )
        self._subscribed = set(scripts)
        return self._subscription_id

    async def _listen_loop(self) -> None:
        attempt = 0
        while not self._stopped.is_set():
            try:
                subscription_id = await self._subscribe()
                if attempt or self._needs_resync:
                    logger.info(f"Connected to indexer after {attempt} failed attempts")
                    await self.poll()
                    self._needs_resync = False
                    attempt = 0
                async for update in self.indexer.get_subscription(
                    subscription_id, cancel=self._stopped
                ):
                    await self._handle_update(update)
                if self._stopped.is_set():
                    return
                logger.warning("Indexer subscription stream closed")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Indexer subscription failed: {e}")

            await self._emit(ContractEvent(type=ContractEventType.CONNECTION_RESET))
            attempt += 1
            max_attempts = self.config.max_reconnect_attempts
            if max_attempts and attempt > max_attempts:
                logger.error(f"Giving up on indexer subscription after {max_attempts} attempts")
                return
            delay = self.config.backoff(attempt)
            logger.debug(f"Reconnecting to indexer in {delay:.1f}s (attempt {attempt})")
            if await self._wait_stopped(delay):
                return

    async def _failsafe_poll_loop(self) -> None:
        while not await self._wait_stopped(self.config.failsafe_poll_interval):
            try:
                await self.poll()
            except Exception as e:
                logger.warning(f"Failsafe poll failed: {e}")

    async def _wait_stopped(self, timeout: float) -> bool:
        """Sleep up to ``timeout``; True if the watcher was stopped meanwhile."""
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def poll(self) -> None:
        """Fetch every watched script's VTXOs and emit what changed."""
        scripts = self.watched_scripts()
        if scripts:
            vtxos = await self.indexer.get_vtxos(VtxoFilter(scripts=scripts))
            by_script: dict[str, list[VirtualCoin]] = {script: [] for script in scripts}
            for vtxo in vtxos:
                by_script.setdefault(vtxo.script.lower(), []).append(vtxo)
            for script, script_vtxos in by_script.items():
                await self._apply(script, script_vtxos)
        await self._check_expired()

    async def _apply(self, script: str, vtxos: list[VirtualCoin]) -> None:
        watched = self._contracts.get(script)
        if watched is None:
            return
        received, spent, swept = [], [], []
        for vtxo in vtxos:
            key = str(vtxo.outpoint)
            previous = watched.vtxos.get(key)
            if previous is None:
                if vtxo.is_spendable:
                    received.append(vtxo)
            else:
                if previous.is_spendable and not vtxo.is_spendable:
                    spent.append(vtxo)
                if (
                    vtxo.virtual_status.state == VtxoState.SWEPT
                    and previous.virtual_status.state != VtxoState.SWEPT
                ):
                    swept.append(vtxo)
            watched.vtxos[key] = vtxo

        contract = watched.contract
        for event_type, changed in (
            (ContractEventType.VTXO_RECEIVED, received),
            (ContractEventType.VTXO_SPENT, spent),
            (ContractEventType.VTXO_SWEPT, swept),
        ):
            if changed:
                logger.debug(f"{event_type.value}: {len(changed)} VTXOs on contract {contract.id}")
                await self._emit(
                    ContractEvent(
                        type=event_type, contract_id=contract.id, vtxos=changed, contract=contract
                    )
                )

    async def _handle_update(self, update: SubscriptionUpdate) -> None:
        by_script: dict[str, list[VirtualCoin]] = {}
        for vtxo in update.new_vtxos + update.spent_vtxos + update.swept_vtxos:
            by_script.setdefault(vtxo.script.lower(), []).append(vtxo)
        for script, vtxos in by_script.items():
            await self._apply(script, vtxos)

    async def _check_expired(self) -> None:
        now = int(time.time())
        # Callbacks may add or remove contracts
        for watched in list(self._contracts.values()):
            contract = watched.contract
            if watched.expired_notified or contract.state == ContractState.EXPIRED:
                continue
            if contract.is_expired(now):
                watched.expired_notified = True
                logger.info(f"Contract {contract.id} expired")
                await self._emit(
                    ContractEvent(
                        type=ContractEventType.CONTRACT_EXPIRED,
                        contract_id=contract.id,
                        contract=contract,
                    )
                )
