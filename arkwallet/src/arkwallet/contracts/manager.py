"""
Contract manager: the entry point for creating, querying and spending
contracts. Persists them in a repository and keeps the watcher in sync.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable
from typing import Any

from arkcore.vtxo_script import VtxoScript
from loguru import logger

from arkwallet.config import WatcherConfig
from arkwallet.contracts.handlers import ContractHandlerRegistry, default_registry
from arkwallet.contracts.models import (
    Contract,
    ContractBalance,
    ContractError,
    ContractEvent,
    ContractEventType,
    ContractFilter,
    ContractNotFoundError,
    ContractState,
    ContractVtxo,
    PathContext,
    PathSelection,
)
from arkwallet.contracts.repository import ContractRepository, InMemoryContractRepository
from arkwallet.contracts.watcher import ContractEventCallback, ContractWatcher
from arkwallet.providers.base import IndexerProvider, VtxoFilter

IMMUTABLE_FIELDS = frozenset({"id", "type", "params", "script"})


class ContractManager:
    """
    Manage contracts for one wallet.

    Use ``ContractManager.create`` to load stored contracts and start watching.

    Args:
        indexer: Indexer provider
        server_pubkey: Ark server key, used to derive contract addresses
        hrp: Ark address prefix (``ark`` or ``tark``)
        repository: Contract storage, in-memory by default
        registry: Contract handlers, default and vhtlc by default
        config: Watcher settings
    """

    def __init__(
        self,
        indexer: IndexerProvider,
        server_pubkey: bytes,
        hrp: str = "tark",
        repository: ContractRepository | None = None,
        registry: ContractHandlerRegistry | None = None,
        config: WatcherConfig | None = None,
    ):
        self.indexer = indexer
        self.server_pubkey = server_pubkey
        self.hrp = hrp
        self.repository = repository or InMemoryContractRepository()
        self.registry = registry or default_registry()
        self.watcher = ContractWatcher(indexer, config, on_event=self._handle_event)
        self._callbacks: list[ContractEventCallback] = []

    @classmethod
    async def create(
        cls,
        indexer: IndexerProvider,
        server_pubkey: bytes,
        hrp: str = "tark",
        repository: ContractRepository | None = None,
        registry: ContractHandlerRegistry | None = None,
        config: WatcherConfig | None = None,
        watch: bool = True,
    ) -> ContractManager:
        manager = cls(indexer, server_pubkey, hrp, repository, registry, config)
        contracts = await manager.repository.get_contracts()
        for contract in contracts:
            await manager.watcher.add_contract(contract)
        logger.info(f"Loaded {len(contracts)} contracts")
        if watch:
            await manager.watcher.start()
        return manager

    async def close(self) -> None:
        await self.watcher.stop()

    def _script(self, contract: Contract) -> VtxoScript:
        return self.registry.get_or_raise(contract.type).create_script(contract.params)

    async def _require(self, contract_id: str) -> Contract:
        contract = await self.repository.get_contract(contract_id)
        if contract is None:
            raise ContractNotFoundError(contract_id)
        return contract

    async def create_contract(
        self,
        contract_type: str,
        params: dict[str, str],
        script: str | None = None,
        contract_id: str | None = None,
        label: str | None = None,
        expires_at: int | None = None,
        auto_sweep: bool = False,
        sweep_destination: str | None = None,
        data: dict[str, str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Contract:
        """
        Create and start watching a contract.

        The script is derived from ``params``; a given ``script`` must match it.
        Creating a contract that already exists with the same type returns the
        stored one.

        Raises:
            UnknownContractTypeError: If no handler is registered for ``contract_type``
            ContractError: On a script mismatch or a type conflict
        """
        handler = self.registry.get_or_raise(contract_type)
        vtxo_script = handler.create_script(params)
        derived = vtxo_script.pk_script.hex()
        if script is not None and script.lower() != derived:
            raise ContractError(f"Script mismatch: params derive {derived}, got {script}")

        existing = await self.repository.get_contract(contract_id or derived)
        if existing is not None:
            if existing.type != contract_type:
                raise ContractError(
                    f"Contract {existing.id} already exists with type '{existing.type}'"
                )
            return existing

        contract = Contract(
            id=contract_id or derived,
            label=label,
            type=contract_type,
            params=params,
            script=derived,
            address=vtxo_script.address(self.hrp, self.server_pubkey).encode(),
            expires_at=expires_at,
            auto_sweep=auto_sweep,
            sweep_destination=sweep_destination,
            data=data or {},
            metadata=metadata or {},
        )
        await self.repository.save_contract(contract)
        await self.watcher.add_contract(contract)
        logger.info(f"Created {contract_type} contract {contract.id}")
        return contract

    async def get_contract(self, contract_id: str) -> Contract | None:
        return await self.repository.get_contract(contract_id)

    async def get_contracts(self, contract_filter: ContractFilter | None = None) -> list[Contract]:
        return await self.repository.get_contracts(contract_filter)

    async def update_contract(self, contract_id: str, **changes: Any) -> Contract:
        """
        Update mutable fields (label, state, expires_at, auto_sweep, data, ...).

        Raises:
            ContractError: If an identity field is changed
        """
        forbidden = IMMUTABLE_FIELDS & changes.keys()
        if forbidden:
            raise ContractError(f"Cannot update {', '.join(sorted(forbidden))}")

        def apply(contract: Contract) -> Contract:
            return contract.model_copy(update=changes)

        updated = await self.repository.update_contract(contract_id, apply)
        await self.watcher.update_contract(updated)
        return updated

    async def update_contract_data(self, contract_id: str, data: dict[str, str]) -> Contract:
        """Merge ``data`` into the contract's runtime data."""

        def merge(contract: Contract) -> Contract:
            contract.data = {**contract.data, **data}
            return contract

        updated = await self.repository.update_contract(contract_id, merge)
        await self.watcher.update_contract(updated)
        return updated

    async def set_contract_state(self, contract_id: str, state: ContractState) -> Contract:
        return await self.update_contract(contract_id, state=ContractState(state))

    async def delete_contract(self, contract_id: str) -> bool:
        deleted = await self.repository.delete_contract(contract_id)
        await self.watcher.remove_contract(contract_id)
        return deleted

    async def get_spendable_paths(
        self, contract_id: str, context: PathContext
    ) -> list[PathSelection]:
        contract = await self._require(contract_id)
        handler = self.registry.get_or_raise(contract.type)
        return handler.get_spendable_paths(self._script(contract), contract, context)

    async def can_spend(self, contract_id: str, context: PathContext) -> bool:
        return bool(await self.get_spendable_paths(contract_id, context))

    async def get_spending_path(
        self, contract_id: str, context: PathContext
    ) -> PathSelection | None:
        contract = await self._require(contract_id)
        handler = self.registry.get_or_raise(contract.type)
        return handler.select_path(self._script(contract), contract, context)

    async def get_contract_vtxos(
        self, contract_id: str, include_spent: bool = False
    ) -> list[ContractVtxo]:
        contract = await self._require(contract_id)
        vtxos = await self.indexer.get_vtxos(VtxoFilter(scripts=[contract.script]))
        return [
            ContractVtxo(**vtxo.model_dump(), contract_id=contract.id)
            for vtxo in vtxos
            if include_spent or vtxo.is_spendable
        ]

    async def get_contract_balance(self, contract_id: str) -> ContractBalance:
        """Unspent total, the part of it not swept, and the unspent VTXO count."""
        vtxos = await self.get_contract_vtxos(contract_id)
        return ContractBalance(
            total=sum(v.value for v in vtxos),
            spendable=sum(v.value for v in vtxos if not v.is_recoverable),
            vtxo_count=len(vtxos),
        )

    def on_contract_event(self, callback: ContractEventCallback) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    async def _handle_event(self, event: ContractEvent) -> None:
        if event.type == ContractEventType.CONTRACT_EXPIRED and event.contract_id:
            try:
                event.contract = await self.set_contract_state(
                    event.contract_id, ContractState.EXPIRED
                )
            except ContractNotFoundError:
                logger.debug(f"Expired contract {event.contract_id} no longer stored")

        for callback in list(self._callbacks):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Contract event callback failed on {event.type.value}: {e}")
