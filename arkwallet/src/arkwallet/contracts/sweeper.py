"""
Contract sweeper.

Moves VTXOs that became spendable on auto-sweep contracts (a revealed VHTLC
preimage, a passed refund locktime) to the wallet. Checks run on a timer and
whenever the watcher reports a VTXO received on an auto-sweep contract. The
transaction itself is built by an injected executor.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable

from loguru import logger

from arkwallet.config import SweeperConfig
from arkwallet.contracts.manager import ContractManager
from arkwallet.contracts.models import (
    Contract,
    ContractEvent,
    ContractEventType,
    ContractFilter,
    ContractNotFoundError,
    ContractState,
    ContractVtxo,
    PathContext,
    SweepEvent,
    SweepEventType,
    SweepResult,
)

# (vtxos, destination address) -> txid
SweepExecutor = Callable[[list[ContractVtxo], str], Awaitable[str]]
SweepEventCallback = Callable[[SweepEvent], Awaitable[None] | None]


class ContractSweeper:
    """
    Sweep spendable contract VTXOs back to the wallet.

    Args:
        manager: Contract manager whose contracts are swept
        get_default_address: Returns the wallet's receive address
        execute_sweep: Builds and submits the sweep transaction, returns its txid
        config: Interval, value floor and batching
        wallet_pubkey: x-only hex key used to pick the contract role
        get_block_height: Optional chain tip lookup for block-based timelocks
    """

    def __init__(
        self,
        manager: ContractManager,
        get_default_address: Callable[[], Awaitable[str]],
        execute_sweep: SweepExecutor,
        config: SweeperConfig | None = None,
        wallet_pubkey: str | None = None,
        get_block_height: Callable[[], Awaitable[int]] | None = None,
    ):
        self.manager = manager
        self.get_default_address = get_default_address
        self.execute_sweep = execute_sweep
        self.config = config or SweeperConfig()
        self.wallet_pubkey = wallet_pubkey
        self.get_block_height = get_block_height
        self.on_event: SweepEventCallback | None = None
        self._lock = asyncio.Lock()
        self._stopped = asyncio.Event()
        self._poll_task: asyncio.Task | None = None
        self._checks: set[asyncio.Task] = set()
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def active(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def start(self, on_event: SweepEventCallback | None = None) -> None:
        """Poll and react to received VTXOs; does nothing unless ``config.enabled``."""
        if self.active or not self.config.enabled:
            return
        self.on_event = on_event
        self._stopped.clear()
        self._unsubscribe = self.manager.on_contract_event(self._on_contract_event)
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(f"Contract sweeper started, checking every {self.config.poll_interval}s")

    async def stop(self) -> None:
        self._stopped.set()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        tasks = [t for t in (self._poll_task, *self._checks) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = None
        self._checks.clear()
        self.on_event = None

    async def _poll_loop(self) -> None:
        while not self._stopped.is_set():
            await self.check_and_sweep()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.config.poll_interval)
            except TimeoutError:
                continue

    async def _on_contract_event(self, event: ContractEvent) -> None:
        if event.type != ContractEventType.VTXO_RECEIVED or event.contract is None:
            return
        if not event.contract.auto_sweep:
            return
        task = asyncio.create_task(self.check_and_sweep())
        self._checks.add(task)
        task.add_done_callback(self._checks.discard)

    async def _emit(self, event: SweepEvent) -> None:
        if self.on_event is None:
            return
        try:
            result = self.on_event(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Sweep event callback failed on {event.type.value}: {e}")

    async def _path_context(self) -> PathContext:
        context = PathContext(collaborative=True, wallet_pubkey=self.wallet_pubkey)
        if self.get_block_height is not None:
            try:
                context.block_height = await self.get_block_height()
            except Exception as e:
                logger.debug(f"Block height unavailable, block timelocks stay locked: {e}")
        return context

    async def get_pending_sweeps(
        self, contract_ids: list[str] | None = None
    ) -> dict[str, list[ContractVtxo]]:
        """Spendable VTXOs per auto-sweep contract, without sweeping them."""
        contracts = await self.manager.get_contracts(
            ContractFilter(state=ContractState.ACTIVE, ids=contract_ids)
        )
        contracts = [c for c in contracts if c.auto_sweep]
        if not contracts:
            return {}

        context = await self._path_context()
        pending: dict[str, list[ContractVtxo]] = {}
        for contract in contracts:
            if not self.manager.registry.has(contract.type):
                logger.warning(f"No handler for '{contract.type}', not sweeping {contract.id}")
                continue
            if not await self.manager.can_spend(contract.id, context):
                continue
            vtxos = await self.manager.get_contract_vtxos(contract.id)
            if vtxos:
                pending[contract.id] = vtxos
        return pending

    async def check_and_sweep(self) -> list[SweepResult]:
        """
        Sweep whatever is spendable now.

        Background entry point: failures are logged and reported through
        ``sweep_failed`` events, never raised.
        """
        async with self._lock:
            try:
                pending = await self.get_pending_sweeps()
                for contract_id, vtxos in pending.items():
                    await self._emit(
                        SweepEvent(SweepEventType.VTXO_SPENDABLE, [contract_id], vtxos)
                    )
                return await self._sweep(pending)
            except Exception as e:
                logger.error(f"Sweep check failed: {e}")
                return []

    async def sweep_all(self) -> list[SweepResult]:
        async with self._lock:
            return await self._sweep(await self.get_pending_sweeps())

    async def sweep_contract(self, contract_id: str) -> SweepResult | None:
        """
        Sweep one contract now, to its own sweep destination if it has one.

        Raises:
            ContractNotFoundError: If the contract does not exist
        """
        contract = await self.manager.get_contract(contract_id)
        if contract is None:
            raise ContractNotFoundError(contract_id)
        async with self._lock:
            pending = await self.get_pending_sweeps([contract_id])
            vtxos = pending.get(contract_id)
            if not vtxos:
                return None
            return await self._execute([contract], vtxos)

    async def _sweep(self, pending: dict[str, list[ContractVtxo]]) -> list[SweepResult]:
        if not pending:
            return []
        contracts = {
            c.id: c
            for c in await self.manager.get_contracts(ContractFilter(ids=list(pending)))
        }
        if self.config.batch_sweeps:
            vtxos = [vtxo for contract_vtxos in pending.values() for vtxo in contract_vtxos]
            result = await self._execute(
                [contracts[cid] for cid in pending if cid in contracts], vtxos, batched=True
            )
            return [result] if result else []

        results = []
        for contract_id, vtxos in pending.items():
            if contract_id not in contracts:
                continue
            result = await self._execute([contracts[contract_id]], vtxos)
            if result:
                results.append(result)
        return results

    async def _execute(
        self, contracts: list[Contract], vtxos: list[ContractVtxo], batched: bool = False
    ) -> SweepResult | None:
        contract_ids = [c.id for c in contracts]
        if sum(v.value for v in vtxos) < self.config.min_sweep_value:
            logger.debug(f"Not sweeping {contract_ids}: below {self.config.min_sweep_value} sats")
            return None
        to_sweep = vtxos[: self.config.max_vtxos_per_sweep]

        # Batched sweeps mix contracts, so they always go to the wallet
        destination = None if batched else contracts[0].sweep_destination
        destination = destination or await self.get_default_address()

        await self._emit(SweepEvent(SweepEventType.SWEEP_STARTED, contract_ids))
        try:
            txid = await self.execute_sweep(to_sweep, destination)
        except Exception as e:
            logger.warning(f"Sweep of {contract_ids} failed: {e}")
            await self._emit(SweepEvent(SweepEventType.SWEEP_FAILED, contract_ids, error=e))
            return None

        result = SweepResult(
            txid=txid,
            contract_ids=contract_ids,
            total_value=sum(v.value for v in to_sweep),
            vtxo_count=len(to_sweep),
            destination=destination,
        )
        logger.info(f"Swept {result.total_value} sats from {len(contract_ids)} contracts: {txid}")
        await self._emit(SweepEvent(SweepEventType.SWEEP_COMPLETED, contract_ids, result=result))
        return result
