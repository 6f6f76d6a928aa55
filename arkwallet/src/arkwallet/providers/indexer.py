"""
REST client for the Ark indexer.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

from arkcore.models import TxStatus, VirtualCoin, VirtualStatus, VtxoState
from loguru import logger

from arkwallet.providers.base import (
    IndexerProvider,
    SubscriptionUpdate,
    VtxoFilter,
)
from arkwallet.providers.errors import ProviderError
from arkwallet.providers.http import RestClient


def parse_vtxo(data: dict[str, Any]) -> VirtualCoin:
    if data.get("isSwept"):
        state = VtxoState.SWEPT
    elif data.get("isSpent"):
        state = VtxoState.SPENT
    elif data.get("isPreconfirmed"):
        state = VtxoState.PRECONFIRMED
    else:
        state = VtxoState.SETTLED

    commitment_txids = list(data.get("commitmentTxids") or [])
    expires_at = int(data.get("expiresAt") or 0)
    created_at = int(data.get("createdAt") or 0)
    return VirtualCoin(
        txid=data["outpoint"]["txid"],
        vout=int(data["outpoint"]["vout"]),
        value=int(data.get("amount", 0)),
        status=TxStatus(confirmed=bool(commitment_txids)),
        virtual_status=VirtualStatus(
            state=state,
            commitment_txids=commitment_txids,
            batch_expiry=expires_at or None,
        ),
        script=data.get("script", ""),
        spent_by=data.get("spentBy") or None,
        settled_by=data.get("settledBy") or None,
        ark_txid=data.get("arkTxid") or None,
        created_at=datetime.fromtimestamp(created_at, UTC),
        is_unrolled=bool(data.get("isUnrolled")),
        is_spent=bool(data.get("isSpent")),
    )


def _filter_params(vtxo_filter: VtxoFilter) -> dict[str, Any]:
    params: dict[str, Any] = {}
    if vtxo_filter.scripts:
        params["scripts"] = vtxo_filter.scripts
    if vtxo_filter.outpoints:
        params["outpoints"] = [str(o) for o in vtxo_filter.outpoints]
    if vtxo_filter.spendable_only:
        params["spendableOnly"] = "true"
    if vtxo_filter.spent_only:
        params["spentOnly"] = "true"
    if vtxo_filter.recoverable_only:
        params["recoverableOnly"] = "true"
    return params


class RestIndexerProvider(RestClient, IndexerProvider):
    """Indexer over the REST gateway."""

    page_size = 500

    async def get_vtxos(self, vtxo_filter: VtxoFilter) -> list[VirtualCoin]:
        if not vtxo_filter.scripts and not vtxo_filter.outpoints:
            raise ValueError("Either scripts or outpoints must be provided")
        if vtxo_filter.scripts and vtxo_filter.outpoints:
            raise ValueError("Scripts and outpoints are mutually exclusive")

        params = _filter_params(vtxo_filter)
        vtxos: list[VirtualCoin] = []
        page = 0
        while True:
            params.update({"page.size": self.page_size, "page.index": page})
            data = await self._api_call("GET", "v1/indexer/vtxos", params=params)
            vtxos.extend(parse_vtxo(v) for v in data.get("vtxos") or [])
            next_page = (data.get("page") or {}).get("next")
            total = (data.get("page") or {}).get("total")
            if next_page is None or total is None or int(next_page) >= int(total):
                break
            page = int(next_page)
        return vtxos

    async def subscribe_for_scripts(
        self, scripts: list[str], subscription_id: str | None = None
    ) -> str:
        payload: dict[str, Any] = {"scripts": scripts}
        if subscription_id:
            payload["subscriptionId"] = subscription_id
        data = await self._api_call("POST", "v1/indexer/script/subscribe", data=payload)
        new_id = data.get("subscriptionId")
        if not new_id:
            raise ProviderError("Subscription ID not found")
        logger.debug(f"Subscription {new_id} watches {len(scripts)} scripts")
        return new_id

    async def unsubscribe_for_scripts(
        self, subscription_id: str, scripts: list[str] | None = None
    ) -> None:
        payload: dict[str, Any] = {"subscriptionId": subscription_id}
        if scripts:
            payload["scripts"] = scripts
        await self._api_call("POST", "v1/indexer/script/unsubscribe", data=payload)

    async def get_subscription(
        self, subscription_id: str, cancel: asyncio.Event | None = None
    ) -> AsyncIterator[SubscriptionUpdate]:
        endpoint = f"v1/indexer/script/subscription/{subscription_id}"
        async for result in self._stream(endpoint, cancel=cancel):
            if "heartbeat" in result:
                continue
            yield SubscriptionUpdate(
                scripts=list(result.get("scripts") or []),
                new_vtxos=[parse_vtxo(v) for v in result.get("newVtxos") or []],
                spent_vtxos=[parse_vtxo(v) for v in result.get("spentVtxos") or []],
                swept_vtxos=[parse_vtxo(v) for v in result.get("sweptVtxos") or []],
            )
