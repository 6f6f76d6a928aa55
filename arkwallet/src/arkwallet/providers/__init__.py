"""
Ark server and indexer providers.

Available providers:
- RestArkProvider: Ark server over the REST gateway
- RestIndexerProvider: Ark indexer over the REST gateway
"""

from arkwallet.providers.ark import RestArkProvider
from arkwallet.providers.base import (
    ArkProvider,
    IndexerProvider,
    Intent,
    SettlementEvent,
    SettlementEventType,
    SubscriptionUpdate,
    VtxoFilter,
)
from arkwallet.providers.errors import (
    ArkError,
    ProviderError,
    is_duplicate_intent_error,
    maybe_ark_error,
)
from arkwallet.providers.indexer import RestIndexerProvider

__all__ = [
    "ArkError",
    "ArkProvider",
    "IndexerProvider",
    "Intent",
    "ProviderError",
    "RestArkProvider",
    "RestIndexerProvider",
    "SettlementEvent",
    "SettlementEventType",
    "SubscriptionUpdate",
    "VtxoFilter",
    "is_duplicate_intent_error",
    "maybe_ark_error",
]
