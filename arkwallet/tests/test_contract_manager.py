"""
Tests for the contract manager.
"""

from __future__ import annotations

import pytest
import pytest_asyncio

from arkcore.address import ArkAddress
from arkcore.models import VtxoState
from arkcore.vtxo_script import DefaultVtxoScript

from arkwallet.contracts.handlers import DefaultContractParams, DefaultHandler
from arkwallet.contracts.manager import ContractManager
from arkwallet.contracts.models import (
    ContractError,
    ContractEventType,
    ContractFilter,
    ContractState,
    PathContext,
    UnknownContractTypeError,
)
from arkwallet.contracts.repository import InMemoryContractRepository


class _OtherDefault(DefaultHandler):
    type = "other"


@pytest.fixture
def params(alice_pub: bytes, server_pub: bytes) -> dict[str, str]:
    return DefaultHandler().serialize_params(DefaultContractParams(alice_pub, server_pub))


@pytest.fixture
def script_hex(alice_pub: bytes, server_pub: bytes) -> str:
    return DefaultVtxoScript(alice_pub, server_pub).pk_script.hex()


@pytest_asyncio.fixture
async def manager(indexer, server_pub):
    manager = await ContractManager.create(indexer, server_pub, watch=False)
    yield manager
    await manager.close()


@pytest.mark.asyncio
async def test_create_contract(manager, params, script_hex, server_pub) -> None:
    contract = await manager.create_contract("default", params, label="receive")

    assert contract.id == script_hex
    assert contract.script == script_hex
    assert contract.state == ContractState.ACTIVE
    address = ArkAddress.decode(contract.address)
    assert address.hrp == "tark"
    assert address.server_pubkey == server_pub[1:]
    assert address.pk_script.hex() == script_hex

    assert await manager.get_contract(contract.id) == contract
    assert manager.watcher.watched_scripts() == [script_hex]


@pytest.mark.asyncio
async def test_create_is_idempotent(manager, params) -> None:
    first = await manager.create_contract("default", params, label="first")
    second = await manager.create_contract("default", params, label="second")
    assert second.label == "first"
    assert len(await manager.get_contracts()) == 1
    assert first.id == second.id


@pytest.mark.asyncio
async def test_create_type_conflict(manager, params, script_hex) -> None:
    await manager.create_contract("default", params)
    with pytest.raises(UnknownContractTypeError):
        await manager.create_contract("swap", params, contract_id=script_hex)

    manager.registry.register(_OtherDefault())
    with pytest.raises(ContractError, match="already exists"):
        await manager.create_contract("other", params, contract_id=script_hex)


@pytest.mark.asyncio
async def test_create_script_mismatch(manager, params) -> None:
    with pytest.raises(ContractError, match="Script mismatch"):
        await manager.create_contract("default", params, script="5120" + "00" * 32)


@pytest.mark.asyncio
async def test_loads_stored_contracts(indexer, server_pub, params) -> None:
    repository = InMemoryContractRepository()
    first = await ContractManager.create(indexer, server_pub, repository=repository, watch=False)
    contract = await first.create_contract("default", params)

    second = await ContractManager.create(indexer, server_pub, repository=repository, watch=False)
    assert second.watcher.watched_scripts() == [contract.script]


@pytest.mark.asyncio
async def test_update_contract(manager, params) -> None:
    contract = await manager.create_contract("default", params)

    updated = await manager.update_contract(contract.id, label="savings")
    assert updated.label == "savings"

    with pytest.raises(ContractError, match="Cannot update params"):
        await manager.update_contract(contract.id, params={})

    inactive = await manager.set_contract_state(contract.id, ContractState.INACTIVE)
    assert inactive.state == ContractState.INACTIVE
    assert manager.watcher.watched_scripts() == []
    active = await manager.get_contracts(ContractFilter(state=ContractState.ACTIVE))
    assert active == []


@pytest.mark.asyncio
async def test_update_contract_data_merges(manager, params) -> None:
    contract = await manager.create_contract("default", params, data={"a": "1"})
    await manager.update_contract_data(contract.id, {"b": "2"})
    updated = await manager.update_contract_data(contract.id, {"a": "3"})
    assert updated.data == {"a": "3", "b": "2"}


@pytest.mark.asyncio
async def test_delete_contract(manager, params) -> None:
    contract = await manager.create_contract("default", params)
    assert await manager.delete_contract(contract.id)
    assert await manager.get_contract(contract.id) is None
    assert manager.watcher.watched_scripts() == []
    assert not await manager.delete_contract(contract.id)


@pytest.mark.asyncio
async def test_spending_paths(manager, params, alice_pub, server_pub) -> None:
    contract = await manager.create_contract("default", params)
    script = DefaultVtxoScript(alice_pub, server_pub)

    collaborative = PathContext(True)
    path = await manager.get_spending_path(contract.id, collaborative)
    assert path.leaf == script.forfeit()
    assert await manager.can_spend(contract.id, collaborative)

    unilateral = PathContext(False, block_height=1_010, confirmation_height=1_000)
    assert await manager.get_spendable_paths(contract.id, unilateral) == []
    assert not await manager.can_spend(contract.id, unilateral)

    with pytest.raises(ContractError):
        await manager.get_spending_path("missing", collaborative)


@pytest.mark.asyncio
async def test_vtxos_and_balance(manager, indexer, params, make_vtxo) -> None:
    contract = await manager.create_contract("default", params)
    indexer.get_vtxos.return_value = [
        make_vtxo("aa", 5_000, script=contract.script),
        make_vtxo("bb", 3_000, VtxoState.SWEPT, script=contract.script),
        make_vtxo("cc", 2_000, script=contract.script, spent=True),
    ]

    vtxos = await manager.get_contract_vtxos(contract.id)
    assert [v.txid[:2] for v in vtxos] == ["aa", "bb"]
    assert all(v.contract_id == contract.id for v in vtxos)
    assert len(await manager.get_contract_vtxos(contract.id, include_spent=True)) == 3

    balance = await manager.get_contract_balance(contract.id)
    assert balance.total == 8_000
    assert balance.spendable == 5_000
    assert balance.vtxo_count == 2


@pytest.mark.asyncio
async def test_event_callbacks(manager, indexer, params, make_vtxo) -> None:
    contract = await manager.create_contract("default", params)
    received = []
    unsubscribe = manager.on_contract_event(received.append)

    indexer.get_vtxos.return_value = [make_vtxo("aa", 5_000, script=contract.script)]
    await manager.watcher.poll()
    assert [e.type for e in received] == [ContractEventType.VTXO_RECEIVED]
    assert received[0].contract_id == contract.id

    unsubscribe()
    indexer.get_vtxos.return_value = [make_vtxo("bb", 5_000, script=contract.script)]
    await manager.watcher.poll()
    assert len(received) == 1


@pytest.mark.asyncio
async def test_expiry_marks_contract_expired(manager, params) -> None:
    contract = await manager.create_contract("default", params, expires_at=1)
    received = []
    manager.on_contract_event(received.append)

    await manager.watcher.poll()

    assert [e.type for e in received] == [ContractEventType.CONTRACT_EXPIRED]
    assert received[0].contract.state == ContractState.EXPIRED
    assert (await manager.get_contract(contract.id)).state == ContractState.EXPIRED
    await manager.watcher.poll()
    assert len(received) == 1
