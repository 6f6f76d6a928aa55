"""
Ark wallet: offchain sends and batch settlement for one identity.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from arkcore.address import AddressError, ArkAddress, address_to_script
from arkcore.constants import DEFAULT_DUST_AMOUNT
from arkcore.intent import (
    IntentMessage,
    create_intent_proof,
    delete_message,
    encode_message,
    register_message,
)
from arkcore.models import ArkInfo, ExtendedCoin, ExtendedVirtualCoin, Output, VirtualCoin
from arkcore.offchain import ArkTxInput, build_offchain_tx, combine_tapscript_signatures
from arkcore.psbt import Psbt
from arkcore.signing_session import TreeSignerSession
from arkcore.tapscript import CSVMultisigTapscript, RelativeTimelock, TimelockType
from arkcore.transaction import TxOut
from arkcore.vtxo_script import DefaultVtxoScript
from loguru import logger

from arkwallet.batch import JoinOptions, follow_batch, join
from arkwallet.config import SettlementConfig
from arkwallet.identity import Identity
from arkwallet.providers.base import (
    ArkProvider,
    IndexerProvider,
    Intent,
    SettlementEvent,
    VtxoFilter,
)
from arkwallet.providers.errors import ProviderError, is_duplicate_intent_error
from arkwallet.settlement import SECONDS_TIMELOCK_MIN, SettlementHandler

SettleInput = ExtendedCoin | ExtendedVirtualCoin


class InsufficientFundsError(Exception):
    """Not enough spendable value for the requested amount."""

    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient funds: need {required} sats, have {available} sats")
        self.required = required
        self.available = available


def relative_timelock(value: int) -> RelativeTimelock:
    """Server delays of 512 and above are seconds, below are blocks."""
    if value >= SECONDS_TIMELOCK_MIN:
        return RelativeTimelock(value, TimelockType.SECONDS)
    return RelativeTimelock(value, TimelockType.BLOCKS)


def select_coins(coins: list[VirtualCoin], amount: int) -> list[VirtualCoin]:
    """
    Pick coins covering ``amount``, soonest-expiring first, then largest.

    Raises:
        InsufficientFundsError: If all coins together are not enough
    """
    ordered = sorted(
        coins,
        key=lambda c: (c.virtual_status.batch_expiry or float("inf"), -c.value),
    )
    selected = []
    total = 0
    for coin in ordered:
        if total >= amount:
            break
        selected.append(coin)
        total += coin.value
    if total < amount:
        raise InsufficientFundsError(amount, total)
    return selected


def _outpoint_key(coins: list[SettleInput]) -> frozenset[str]:
    return frozenset(str(coin.outpoint) for coin in coins)


class Wallet:
    """
    Single-key Ark wallet.

    Use ``Wallet.create`` so the server parameters are fetched once.

    Args:
        identity: Signer owning the wallet's coins
        ark_provider: Ark server
        indexer_provider: Indexer used to list VTXOs
        info: Server parameters
        config: Settlement settings
    """

    def __init__(
        self,
        identity: Identity,
        ark_provider: ArkProvider,
        indexer_provider: IndexerProvider,
        info: ArkInfo,
        config: SettlementConfig | None = None,
    ):
        self.identity = identity
        self.ark_provider = ark_provider
        self.indexer_provider = indexer_provider
        self.info = info
        self.config = config or SettlementConfig()

        self.server_pubkey = bytes.fromhex(info.signer_pubkey)
        self.offchain_script = DefaultVtxoScript(
            identity.x_only_public_key(),
            self.server_pubkey,
            relative_timelock(info.unilateral_exit_delay) if info.unilateral_exit_delay else None,
        )
        self.boarding_script = DefaultVtxoScript(
            identity.x_only_public_key(),
            self.server_pubkey,
            relative_timelock(info.boarding_exit_delay) if info.boarding_exit_delay else None,
        )
        # Settlements in flight, keyed by the outpoints they spend
        self._settlements: dict[frozenset[str], asyncio.Future[str]] = {}

    @classmethod
    async def create(
        cls,
        identity: Identity,
        ark_provider: ArkProvider,
        indexer_provider: IndexerProvider,
        config: SettlementConfig | None = None,
    ) -> Wallet:
        info = await ark_provider.get_info()
        logger.info(f"Connected to Ark server {info.version or '?'} on {info.network.value}")
        return cls(identity, ark_provider, indexer_provider, info, config)

    @property
    def dust(self) -> int:
        return self.info.dust or self.config.default_dust or DEFAULT_DUST_AMOUNT

    def get_address(self) -> str:
        return self.offchain_script.address(self.info.network.ark_hrp, self.server_pubkey).encode()

    def get_boarding_address(self) -> str:
        return self.boarding_script.onchain_address(self.info.network.value)

    def _extend(self, coin: VirtualCoin) -> ExtendedVirtualCoin:
        return ExtendedVirtualCoin(
            **coin.model_dump(),
            forfeit_tap_leaf_script=self.offchain_script.forfeit(),
            intent_tap_leaf_script=self.offchain_script.forfeit(),
            tap_tree=self.offchain_script.encode(),
        )

    def extend_boarding(self, coin: ExtendedCoin | VirtualCoin) -> ExtendedCoin:
        return ExtendedCoin(
            txid=coin.txid,
            vout=coin.vout,
            value=coin.value,
            status=coin.status,
            forfeit_tap_leaf_script=self.boarding_script.forfeit(),
            intent_tap_leaf_script=self.boarding_script.forfeit(),
            tap_tree=self.boarding_script.encode(),
        )

    async def get_vtxos(self, spendable_only: bool = True) -> list[ExtendedVirtualCoin]:
        vtxos = await self.indexer_provider.get_vtxos(
            VtxoFilter(
                scripts=[self.offchain_script.pk_script.hex()],
                spendable_only=spendable_only,
            )
        )
        return [self._extend(vtxo) for vtxo in vtxos]

    async def get_balance(self) -> int:
        return sum(vtxo.value for vtxo in await self.get_vtxos() if vtxo.is_spendable)

    def _output_script(self, address: str, amount: int) -> bytes:
        ark_address = ArkAddress.decode(address)
        if amount < self.dust:
            return ark_address.subdust_pk_script
        return ark_address.pk_script

    async def send(self, address: str, amount: int) -> str:
        """
        Send ``amount`` sats offchain to an Ark address.

        Returns:
            Ark txid

        Raises:
            InsufficientFundsError: If spendable VTXOs do not cover ``amount``
            ProviderError: If the server rejects the transaction
        """
        if amount <= 0:
            raise ValueError("Amount must be positive")
        if not self.info.checkpoint_tapscript:
            raise ValueError("Server did not publish a checkpoint tapscript")

        spendable = [v for v in await self.get_vtxos() if v.is_spendable]
        selected = select_coins(spendable, amount)
        change = sum(coin.value for coin in selected) - amount

        outputs = [TxOut(amount, self._output_script(address, amount))]
        if change > 0:
            outputs.append(TxOut(change, self._output_script(self.get_address(), change)))

        inputs = [
            ArkTxInput(
                txid=coin.txid,
                vout=coin.vout,
                value=coin.value,
                tap_leaf_script=coin.forfeit_tap_leaf_script,
                tap_tree=coin.tap_tree,
            )
            for coin in selected
        ]
        unroll = CSVMultisigTapscript.decode(bytes.fromhex(self.info.checkpoint_tapscript))
        offchain_tx = build_offchain_tx(inputs, outputs, unroll)

        signed_ark_tx = await self.identity.sign(offchain_tx.ark_tx)
        response = await self.ark_provider.submit_tx(
            signed_ark_tx.to_base64(), [c.to_base64() for c in offchain_tx.checkpoints]
        )
        logger.info(f"Submitted ark tx {response.ark_txid} sending {amount} sats")

        final_checkpoints = []
        for server_signed in response.signed_checkpoint_txs:
            checkpoint = Psbt.from_base64(server_signed)
            signed = await self.identity.sign(checkpoint, [0])
            final_checkpoints.append(
                combine_tapscript_signatures(signed, checkpoint).to_base64()
            )
        await self.ark_provider.finalize_tx(response.ark_txid, final_checkpoints)
        return response.ark_txid

    async def _make_intent(
        self,
        message: IntentMessage,
        coins: list[SettleInput],
        outputs: list[TxOut] | None = None,
    ) -> Intent:
        proof = create_intent_proof(message, coins, outputs)
        signed = await self.identity.sign(proof)
        return Intent(proof=signed.to_base64(), message=encode_message(message))

    def _settle_outputs(self, outputs: list[Output]) -> tuple[list[TxOut], list[int]]:
        """Proof outputs plus the indexes of the on-chain ones."""
        txouts = []
        onchain_indexes = []
        for index, output in enumerate(outputs):
            try:
                script = ArkAddress.decode(output.address).pk_script
            except AddressError:
                script = address_to_script(output.address)
                onchain_indexes.append(index)
            txouts.append(TxOut(output.amount, script))
        return txouts, onchain_indexes

    def _overlapping_settlement(self, key: frozenset[str]) -> asyncio.Future[str] | None:
        for other_key, future in self._settlements.items():
            if other_key != key and other_key & key and not future.done():
                return future
        return None

    async def settle(
        self,
        inputs: list[SettleInput] | None = None,
        outputs: list[Output] | None = None,
        event_callback: Callable[[SettlementEvent], Awaitable[None]] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> str:
        """
        Settle coins in the next batch.

        Concurrent calls for the same coins share one round. Coins already
        registered by another client are not re-registered: the call returns
        the commitment txid of the batch that spends them.

        Args:
            inputs: Coins to settle, default all spendable VTXOs
            outputs: Requested outputs, default everything back to this wallet
            event_callback: Receives every settlement event
            cancel: Set to abort waiting for the batch

        Returns:
            Commitment txid of the batch
        """
        if inputs is None:
            inputs = [v for v in await self.get_vtxos() if v.is_spendable]
        if not inputs:
            raise ValueError("No inputs to settle")
        if outputs is None:
            total = sum(coin.value for coin in inputs)
            outputs = [Output(address=self.get_address(), amount=total)]

        key = _outpoint_key(inputs)
        in_flight = self._settlements.get(key)
        if in_flight is not None and not in_flight.done():
            logger.debug(f"Joining in-flight settlement of {len(key)} coins")
            return await asyncio.shield(in_flight)

        task = asyncio.ensure_future(
            self._settle(key, inputs, outputs, event_callback, cancel)
        )
        self._settlements[key] = task

        def forget(done: asyncio.Future[str]) -> None:
            if self._settlements.get(key) is done:
                del self._settlements[key]

        task.add_done_callback(forget)
        return await asyncio.shield(task)

    async def _settle(
        self,
        key: frozenset[str],
        inputs: list[SettleInput],
        outputs: list[Output],
        event_callback: Callable[[SettlementEvent], Awaitable[None]] | None,
        cancel: asyncio.Event | None,
    ) -> str:
        session = TreeSignerSession.random()
        pubkey_hex = session.get_public_key().hex()
        txouts, onchain_indexes = self._settle_outputs(outputs)

        register_intent = await self._make_intent(
            register_message([pubkey_hex], onchain_indexes), inputs, txouts
        )
        try:
            intent_id = await self.ark_provider.register_intent(register_intent)
        except ProviderError as e:
            if not is_duplicate_intent_error(e):
                raise
            other = self._overlapping_settlement(key)
            if other is not None:
                logger.info("Coins already registered by another settlement, joining it")
                return await asyncio.shield(other)
            # Registered by another client: its intent stays, we report its batch
            logger.info(f"Coins already registered elsewhere, following their batch: {e}")
            return await self._follow(key, event_callback, cancel)
        logger.info(f"Registered intent {intent_id} for {len(inputs)} inputs")

        delete_intent = await self._make_intent(delete_message(), inputs)
        handler = SettlementHandler(
            self.ark_provider,
            self.identity,
            session,
            self.info,
            intent_id,
            vtxos=[c for c in inputs if isinstance(c, ExtendedVirtualCoin)],
            boarding=[c for c in inputs if not isinstance(c, ExtendedVirtualCoin)],
        )
        topics = [pubkey_hex] + sorted(key)
        stream_cancel = cancel or asyncio.Event()
        events = self.ark_provider.get_event_stream(cancel=stream_cancel, topics=topics)
        options = JoinOptions(
            cancel=stream_cancel,
            skip_vtxo_tree_signing=len(onchain_indexes) == len(outputs),
            event_callback=event_callback,
        )
        try:
            return await join(events, handler, options)
        except Exception:
            try:
                await self.ark_provider.delete_intent(delete_intent)
            except ProviderError as e:
                logger.warning(f"Failed to delete intent {intent_id}: {e}")
            raise
        finally:
            await _close_stream(events)

    async def _follow(
        self,
        key: frozenset[str],
        event_callback: Callable[[SettlementEvent], Awaitable[None]] | None,
        cancel: asyncio.Event | None,
    ) -> str:
        stream_cancel = cancel or asyncio.Event()
        events = self.ark_provider.get_event_stream(cancel=stream_cancel, topics=sorted(key))
        try:
            return await follow_batch(
                events, key, JoinOptions(cancel=stream_cancel, event_callback=event_callback)
            )
        finally:
            await _close_stream(events)


async def _close_stream(events) -> None:
    aclose = getattr(events, "aclose", None)
    if aclose is not None:
        await aclose()
