"""
Contracts: scripts the wallet receives on, their spending paths and an
indexer-backed watcher.
"""

from arkwallet.contracts.handlers import (
    ContractHandler,
    ContractHandlerRegistry,
    DefaultHandler,
    VHTLCHandler,
    default_registry,
)
from arkwallet.contracts.manager import ContractManager
from arkwallet.contracts.models import (
    Contract,
    ContractBalance,
    ContractError,
    ContractEvent,
    ContractEventType,
    ContractFilter,
    ContractNotFoundError,
    ContractState,
    PathContext,
    PathSelection,
    SweepEvent,
    SweepEventType,
    SweepResult,
    UnknownContractTypeError,
)
from arkwallet.contracts.repository import ContractRepository, InMemoryContractRepository
from arkwallet.contracts.sweeper import ContractSweeper
from arkwallet.contracts.watcher import ContractWatcher

__all__ = [
    "Contract",
    "ContractBalance",
    "ContractError",
    "ContractEvent",
    "ContractEventType",
    "ContractFilter",
    "ContractHandler",
    "ContractHandlerRegistry",
    "ContractManager",
    "ContractNotFoundError",
    "ContractRepository",
    "ContractState",
    "ContractSweeper",
    "ContractWatcher",
    "DefaultHandler",
    "InMemoryContractRepository",
    "PathContext",
    "PathSelection",
    "SweepEvent",
    "SweepEventType",
    "SweepResult",
    "UnknownContractTypeError",
    "VHTLCHandler",
    "default_registry",
]
