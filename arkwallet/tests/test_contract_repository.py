"""
Tests for the in-memory contract repository.
"""

from __future__ import annotations

import asyncio

import pytest

from arkwallet.contracts.models import (
    Contract,
    ContractError,
    ContractFilter,
    ContractNotFoundError,
    ContractState,
)
from arkwallet.contracts.repository import InMemoryContractRepository


def _contract(script: str, contract_type: str = "default", **kwargs) -> Contract:
    return Contract(type=contract_type, script=script, **kwargs)


@pytest.fixture
def repository() -> InMemoryContractRepository:
    return InMemoryContractRepository()


def test_id_defaults_to_lowercase_script() -> None:
    contract = _contract("5120AB")
    assert contract.script == "5120ab"
    assert contract.id == "5120ab"


@pytest.mark.asyncio
async def test_save_and_get_copies(repository) -> None:
    contract = _contract("5120aa", data={"k": "v"})
    await repository.save_contract(contract)
    contract.data["k"] = "changed"

    stored = await repository.get_contract("5120aa")
    assert stored.data == {"k": "v"}
    stored.data["k"] = "changed again"
    assert (await repository.get_contract("5120aa")).data == {"k": "v"}


@pytest.mark.asyncio
async def test_get_missing(repository) -> None:
    assert await repository.get_contract("nope") is None
    assert not await repository.delete_contract("nope")


@pytest.mark.asyncio
async def test_filter(repository) -> None:
    await repository.save_contract(_contract("5120aa"))
    await repository.save_contract(_contract("5120bb", "vhtlc"))
    await repository.save_contract(_contract("5120cc", state=ContractState.INACTIVE))

    active = await repository.get_contracts(ContractFilter(state=ContractState.ACTIVE))
    assert sorted(c.id for c in active) == ["5120aa", "5120bb"]

    vhtlcs = await repository.get_contracts(ContractFilter(type="vhtlc"))
    assert [c.id for c in vhtlcs] == ["5120bb"]

    both = await repository.get_contracts(
        ContractFilter(state=[ContractState.ACTIVE, ContractState.INACTIVE], ids=["5120cc"])
    )
    assert [c.id for c in both] == ["5120cc"]

    assert len(await repository.get_contracts()) == 3


@pytest.mark.asyncio
async def test_concurrent_updates_are_not_lost(repository) -> None:
    await repository.save_contract(_contract("5120aa", metadata={"count": 0}))

    async def increment(contract: Contract) -> Contract:
        count = contract.metadata["count"]
        await asyncio.sleep(0)
        contract.metadata["count"] = count + 1
        return contract

    await asyncio.gather(
        *(repository.update_contract("5120aa", increment) for _ in range(20))
    )
    assert (await repository.get_contract("5120aa")).metadata["count"] == 20


@pytest.mark.asyncio
async def test_sync_update(repository) -> None:
    await repository.save_contract(_contract("5120aa"))

    def deactivate(contract: Contract) -> Contract:
        contract.state = ContractState.INACTIVE
        return contract

    updated = await repository.update_contract("5120aa", deactivate)
    assert updated.state == ContractState.INACTIVE
    assert (await repository.get_contract("5120aa")).state == ContractState.INACTIVE


@pytest.mark.asyncio
async def test_update_missing(repository) -> None:
    with pytest.raises(ContractNotFoundError) as exc_info:
        await repository.update_contract("nope", lambda c: c)
    assert exc_info.value.contract_id == "nope"


@pytest.mark.asyncio
async def test_update_cannot_change_identity(repository) -> None:
    await repository.save_contract(_contract("5120aa"))

    def change_script(contract: Contract) -> Contract:
        contract.script = "5120bb"
        return contract

    with pytest.raises(ContractError):
        await repository.update_contract("5120aa", change_script)
    assert (await repository.get_contract("5120aa")).script == "5120aa"


@pytest.mark.asyncio
async def test_delete(repository) -> None:
    await repository.save_contract(_contract("5120aa"))
    assert await repository.delete_contract("5120aa")
    assert await repository.get_contract("5120aa") is None
