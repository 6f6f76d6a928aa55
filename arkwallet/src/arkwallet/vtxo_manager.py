"""
VTXO recovery and renewal.

Swept or expired VTXOs can only be reclaimed by settling them into a new
batch; VTXOs close to their batch expiry are renewed the same way before the
server sweeps them.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from arkcore.models import ExtendedVirtualCoin, Output, VirtualCoin
from loguru import logger

from arkwallet.providers.base import SettlementEvent
from arkwallet.wallet import InsufficientFundsError, Wallet


class NoRecoverableVtxosError(Exception):
    """The wallet holds no VTXO that can be recovered."""

    pass


@dataclass
class RecoverableVtxos:
    vtxos: list[VirtualCoin] = field(default_factory=list)
    total_amount: int = 0
    include_subdust: bool = False
    subdust_amount: int = 0


def is_recovery_candidate(vtxo: VirtualCoin, dust: int, now: datetime) -> bool:
    """Swept, expired, or a preconfirmed VTXO below dust, and not spent."""
    if not vtxo.is_spendable:
        return False
    if vtxo.is_recoverable or vtxo.is_expired(now):
        return True
    return vtxo.is_preconfirmed and vtxo.is_subdust(dust)


def get_recoverable_with_subdust(
    vtxos: list[VirtualCoin], dust: int, now: datetime | None = None
) -> RecoverableVtxos:
    """
    Select the VTXOs worth recovering.

    Subdust VTXOs are only included when, together with the other candidates,
    they reach the dust floor; below it nothing is recovered.

    Example with dust 1000: swept 5000 and subdust 600 + 500 recover 6100;
    subdust 500 + 400 alone recovers nothing.
    """
    now = now or datetime.now(UTC)
    candidates = [v for v in vtxos if is_recovery_candidate(v, dust, now)]
    regular = [v for v in candidates if not v.is_subdust(dust)]
    subdust = [v for v in candidates if v.is_subdust(dust)]

    regular_amount = sum(v.value for v in regular)
    subdust_amount = sum(v.value for v in subdust)
    if subdust and regular_amount + subdust_amount >= dust:
        return RecoverableVtxos(
            vtxos=regular + subdust,
            total_amount=regular_amount + subdust_amount,
            include_subdust=True,
            subdust_amount=subdust_amount,
        )
    return RecoverableVtxos(vtxos=regular, total_amount=regular_amount)


def get_expiring_vtxos(
    vtxos: list[VirtualCoin], threshold: int, now: datetime | None = None
) -> list[VirtualCoin]:
    """Unspent, unswept VTXOs whose batch expires within ``threshold`` seconds."""
    now_ts = int((now or datetime.now(UTC)).timestamp())
    expiring = []
    for vtxo in vtxos:
        expiry = vtxo.virtual_status.batch_expiry
        if not vtxo.is_spendable or vtxo.is_recoverable or expiry is None:
            continue
        if expiry - now_ts <= threshold:
            expiring.append(vtxo)
    return expiring


class VtxoManager:
    """Recovers swept VTXOs and renews expiring ones for a wallet."""

    def __init__(self, wallet: Wallet):
        self.wallet = wallet

    async def _all_vtxos(self) -> list[ExtendedVirtualCoin]:
        return await self.wallet.get_vtxos(spendable_only=False)

    async def get_recoverable_balance(self, now: datetime | None = None) -> RecoverableVtxos:
        return get_recoverable_with_subdust(await self._all_vtxos(), self.wallet.dust, now)

    async def get_expiring_vtxos(
        self, threshold: int | None = None, now: datetime | None = None
    ) -> list[VirtualCoin]:
        if threshold is None:
            threshold = self.wallet.config.renewal_threshold
        return get_expiring_vtxos(await self._all_vtxos(), threshold, now)

    async def _settle_to_self(
        self,
        vtxos: list[VirtualCoin],
        event_callback: Callable[[SettlementEvent], Awaitable[None]] | None,
    ) -> str:
        total = sum(v.value for v in vtxos)
        outputs = [Output(address=self.wallet.get_address(), amount=total)]
        return await self.wallet.settle(vtxos, outputs, event_callback=event_callback)

    async def recover_vtxos(
        self,
        event_callback: Callable[[SettlementEvent], Awaitable[None]] | None = None,
        now: datetime | None = None,
    ) -> str:
        """
        Settle every recoverable VTXO back to the wallet.

        Returns:
            Commitment txid

        Raises:
            NoRecoverableVtxosError: If nothing reaches the dust floor
        """
        recoverable = await self.get_recoverable_balance(now)
        if not recoverable.vtxos:
            raise NoRecoverableVtxosError("No recoverable VTXOs found")
        logger.info(
            f"Recovering {len(recoverable.vtxos)} VTXOs ({recoverable.total_amount} sats)"
        )
        return await self._settle_to_self(recoverable.vtxos, event_callback)

    async def renew_vtxos(
        self,
        event_callback: Callable[[SettlementEvent], Awaitable[None]] | None = None,
        now: datetime | None = None,
    ) -> str:
        """
        Settle expiring and recoverable VTXOs into a fresh batch.

        Raises:
            InsufficientFundsError: If the selected total is below dust
        """
        vtxos = await self._all_vtxos()
        dust = self.wallet.dust
        selected = {
            str(v.outpoint): v
            for v in get_expiring_vtxos(vtxos, self.wallet.config.renewal_threshold, now)
        }
        for vtxo in get_recoverable_with_subdust(vtxos, dust, now).vtxos:
            selected.setdefault(str(vtxo.outpoint), vtxo)

        total = sum(v.value for v in selected.values())
        if total < dust:
            raise InsufficientFundsError(dust, total)
        logger.info(f"Renewing {len(selected)} VTXOs ({total} sats)")
        return await self._settle_to_self(list(selected.values()), event_callback)
