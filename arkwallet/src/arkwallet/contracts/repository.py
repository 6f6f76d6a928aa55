"""
Contract storage.
"""

from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from arkwallet.contracts.models import (
    Contract,
    ContractError,
    ContractFilter,
    ContractNotFoundError,
)

ContractUpdate = Callable[[Contract], Contract | Awaitable[Contract]]


class ContractRepository(ABC):
    """Abstract contract store."""

    @abstractmethod
    async def save_contract(self, contract: Contract) -> None:
        """Insert or replace a contract"""

    @abstractmethod
    async def get_contract(self, contract_id: str) -> Contract | None:
        """Get a contract by ID"""

    @abstractmethod
    async def get_contracts(self, contract_filter: ContractFilter | None = None) -> list[Contract]:
        """List contracts matching the filter"""

    @abstractmethod
    async def update_contract(self, contract_id: str, update: ContractUpdate) -> Contract:
        """Atomically replace a contract with ``update(current)``"""

    @abstractmethod
    async def delete_contract(self, contract_id: str) -> bool:
        """Delete a contract, returning whether it existed"""


class InMemoryContractRepository(ContractRepository):
    """
    Process-local repository.

    Writers are serialized by one lock, so ``update_contract`` is a
    read-modify-write that no concurrent writer can interleave with.
    Stored and returned contracts are copies.
    """

    def __init__(self) -> None:
        self._contracts: dict[str, Contract] = {}
        self._lock = asyncio.Lock()

    async def save_contract(self, contract: Contract) -> None:
        async with self._lock:
            self._contracts[contract.id] = contract.model_copy(deep=True)

    async def get_contract(self, contract_id: str) -> Contract | None:
        contract = self._contracts.get(contract_id)
        return contract.model_copy(deep=True) if contract is not None else None

    async def get_contracts(self, contract_filter: ContractFilter | None = None) -> list[Contract]:
        return [
            contract.model_copy(deep=True)
            for contract in self._contracts.values()
            if contract_filter is None or contract_filter.matches(contract)
        ]

    async def update_contract(self, contract_id: str, update: ContractUpdate) -> Contract:
        async with self._lock:
            current = self._contracts.get(contract_id)
            if current is None:
                raise ContractNotFoundError(contract_id)
            updated = update(current.model_copy(deep=True))
            if inspect.isawaitable(updated):
                updated = await updated
            if updated.id != contract_id or updated.script != current.script:
                raise ContractError(f"Update must not change the identity of {contract_id}")
            self._contracts[contract_id] = updated.model_copy(deep=True)
            return updated

    async def delete_contract(self, contract_id: str) -> bool:
        async with self._lock:
            return self._contracts.pop(contract_id, None) is not None
