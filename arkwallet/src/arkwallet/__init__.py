"""
arkwallet - Async Ark client

Provides the wallet (send, settle), VTXO recovery, the batch session state
machine, contracts and the server/indexer providers.
"""

__version__ = "0.1.0"

from arkwallet.batch import (
    BatchCancelledError,
    BatchFailedError,
    BatchHandler,
    BatchSessionError,
    JoinOptions,
    RoundState,
    follow_batch,
    join,
)
from arkwallet.config import ArkSettings, get_settings
from arkwallet.identity import Identity, SingleKey
from arkwallet.logs import setup_logging
from arkwallet.settlement import SettlementHandler
from arkwallet.vtxo_manager import NoRecoverableVtxosError, VtxoManager
from arkwallet.wallet import InsufficientFundsError, Wallet

__all__ = [
    "ArkSettings",
    "BatchCancelledError",
    "BatchFailedError",
    "BatchHandler",
    "BatchSessionError",
    "Identity",
    "InsufficientFundsError",
    "JoinOptions",
    "NoRecoverableVtxosError",
    "RoundState",
    "SettlementHandler",
    "SingleKey",
    "VtxoManager",
    "Wallet",
    "follow_batch",
    "get_settings",
    "join",
    "setup_logging",
]
