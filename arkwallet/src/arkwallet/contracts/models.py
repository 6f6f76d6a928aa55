"""
Contract records, spending paths and watcher events.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from arkcore.models import VirtualCoin
from arkcore.taproot import TapLeafScript
from pydantic import BaseModel, Field, model_validator


class ContractError(Exception):
    """Invalid contract operation."""

    pass


class ContractNotFoundError(ContractError):
    def __init__(self, contract_id: str):
        super().__init__(f"Contract {contract_id} not found")
        self.contract_id = contract_id


class UnknownContractTypeError(ContractError):
    def __init__(self, contract_type: str):
        super().__init__(f"No contract handler registered for type '{contract_type}'")
        self.contract_type = contract_type


class ContractState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"


class Contract(BaseModel):
    """
    A script the wallet can receive VTXOs on.

    ``type`` and ``params`` fully determine the VTXO script; ``script`` is the
    derived output script in hex and identifies the contract (``id`` defaults
    to it). Timestamps are unix seconds.
    """

    id: str = ""
    label: str | None = None
    type: str
    params: dict[str, str] = Field(default_factory=dict)
    script: str
    address: str = ""
    state: ContractState = ContractState.ACTIVE
    created_at: int = Field(default_factory=lambda: int(time.time()))
    expires_at: int | None = None
    # Move spendable VTXOs to the wallet (or sweep_destination) automatically
    auto_sweep: bool = False
    sweep_destination: str | None = None
    # Values learned after creation, e.g. a revealed preimage
    data: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def default_id(self) -> Contract:
        self.script = self.script.lower()
        if not self.id:
            self.id = self.script
        return self

    def is_expired(self, now: int | None = None) -> bool:
        if self.expires_at is None:
            return False
        now = int(time.time()) if now is None else now
        return self.expires_at <= now


class ContractVtxo(VirtualCoin):
    contract_id: str


@dataclass
class PathSelection:
    leaf: TapLeafScript
    extra_witness: list[bytes] | None = None
    # nSequence for CSV paths
    sequence: int | None = None


@dataclass
class PathContext:
    """
    What is known when picking a spending path.

    ``confirmation_height`` / ``confirmation_time`` describe when the VTXO
    became unilaterally spendable; CSV paths count from there.
    """

    collaborative: bool
    current_time: int = field(default_factory=lambda: int(time.time()))
    block_height: int | None = None
    confirmation_height: int | None = None
    confirmation_time: int | None = None
    # x-only hex
    wallet_pubkey: str | None = None
    role: str | None = None


class ContractEventType(str, Enum):
    VTXO_RECEIVED = "vtxo_received"
    VTXO_SPENT = "vtxo_spent"
    VTXO_SWEPT = "vtxo_swept"
    CONTRACT_EXPIRED = "contract_expired"
    CONNECTION_RESET = "connection_reset"


@dataclass
class ContractEvent:
    type: ContractEventType
    contract_id: str | None = None
    vtxos: list[VirtualCoin] = field(default_factory=list)
    contract: Contract | None = None
    timestamp: int = field(default_factory=lambda: int(time.time()))


@dataclass
class ContractFilter:
    state: ContractState | list[ContractState] | None = None
    type: str | list[str] | None = None
    ids: list[str] | None = None

    def matches(self, contract: Contract) -> bool:
        if self.state is not None:
            states = self.state if isinstance(self.state, list) else [self.state]
            if contract.state not in states:
                return False
        if self.type is not None:
            types = self.type if isinstance(self.type, list) else [self.type]
            if contract.type not in types:
                return False
        if self.ids is not None and contract.id not in self.ids:
            return False
        return True


@dataclass
class ContractBalance:
    total: int = 0
    spendable: int = 0
    vtxo_count: int = 0


class SweepEventType(str, Enum):
    VTXO_SPENDABLE = "vtxo_spendable"
    SWEEP_STARTED = "sweep_started"
    SWEEP_COMPLETED = "sweep_completed"
    SWEEP_FAILED = "sweep_failed"


@dataclass
class SweepResult:
    txid: str
    contract_ids: list[str]
    total_value: int
    vtxo_count: int
    destination: str


@dataclass
class SweepEvent:
    type: SweepEventType
    contract_ids: list[str] = field(default_factory=list)
    vtxos: list[ContractVtxo] = field(default_factory=list)
    result: SweepResult | None = None
    error: Exception | None = None
