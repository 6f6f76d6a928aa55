"""
Contract handlers: build the VTXO script of a contract type and pick its
spending paths.

Params are stored as strings: keys hex, timelocks as BIP-68 sequence numbers,
absolute locktimes as decimal.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar

from arkcore.crypto import x_only
from arkcore.tapscript import RelativeTimelock, TimelockType, decode_sequence, encode_sequence
from arkcore.vtxo_script import DefaultVtxoScript, VHTLCScript, VtxoScript

from arkwallet.contracts.models import (
    Contract,
    ContractError,
    PathContext,
    PathSelection,
    UnknownContractTypeError,
)


def is_csv_spendable(context: PathContext, sequence: int | None) -> bool:
    """
    Whether a relative timelock has elapsed since confirmation.

    Without a sequence there is nothing to wait for. Without the matching
    height or time in ``context`` the answer is no.
    """
    if sequence is None:
        return True
    timelock = decode_sequence(sequence)
    if timelock.type == TimelockType.BLOCKS:
        if context.block_height is None or context.confirmation_height is None:
            return False
        return context.block_height - context.confirmation_height >= timelock.value
    if context.confirmation_time is None:
        return False
    return context.current_time - context.confirmation_time >= timelock.value


def _key_hex(value: str) -> str:
    return x_only(bytes.fromhex(value)).hex()


class ContractHandler(ABC):
    """Knows one contract type."""

    type: ClassVar[str]

    @abstractmethod
    def create_script(self, params: dict[str, str]) -> VtxoScript:
        """Build the VTXO script from stored params"""

    @abstractmethod
    def serialize_params(self, params: Any) -> dict[str, str]:
        """Typed params to stored strings"""

    @abstractmethod
    def deserialize_params(self, params: dict[str, str]) -> Any:
        """Stored strings to typed params"""

    @abstractmethod
    def select_path(
        self, script: VtxoScript, contract: Contract, context: PathContext
    ) -> PathSelection | None:
        """Preferred spending path, or None if nothing is spendable now"""

    @abstractmethod
    def get_spendable_paths(
        self, script: VtxoScript, contract: Contract, context: PathContext
    ) -> list[PathSelection]:
        """Every path spendable now"""


@dataclass
class DefaultContractParams:
    pub_key: bytes
    server_pub_key: bytes
    csv_timelock: RelativeTimelock = DefaultVtxoScript.DEFAULT_TIMELOCK


class DefaultHandler(ContractHandler):
    """Wallet receive script: forfeit (owner + server) and a CSV exit."""

    type = "default"

    def serialize_params(self, params: DefaultContractParams) -> dict[str, str]:
        return {
            "pub_key": params.pub_key.hex(),
            "server_pub_key": params.server_pub_key.hex(),
            "csv_timelock": str(encode_sequence(params.csv_timelock)),
        }

    def deserialize_params(self, params: dict[str, str]) -> DefaultContractParams:
        try:
            csv = params.get("csv_timelock")
            return DefaultContractParams(
                pub_key=bytes.fromhex(params["pub_key"]),
                server_pub_key=bytes.fromhex(params["server_pub_key"]),
                csv_timelock=(
                    decode_sequence(int(csv)) if csv else DefaultVtxoScript.DEFAULT_TIMELOCK
                ),
            )
        except (KeyError, ValueError) as e:
            raise ContractError(f"Invalid default contract params: {e}") from e

    def create_script(self, params: dict[str, str]) -> DefaultVtxoScript:
        typed = self.deserialize_params(params)
        return DefaultVtxoScript(typed.pub_key, typed.server_pub_key, typed.csv_timelock)

    def _exit_sequence(self, script: DefaultVtxoScript) -> int:
        return encode_sequence(script.csv_timelock)

    def select_path(
        self, script: DefaultVtxoScript, contract: Contract, context: PathContext
    ) -> PathSelection | None:
        if context.collaborative:
            return PathSelection(script.forfeit())
        sequence = self._exit_sequence(script)
        if not is_csv_spendable(context, sequence):
            return None
        return PathSelection(script.exit(), sequence=sequence)

    def get_spendable_paths(
        self, script: DefaultVtxoScript, contract: Contract, context: PathContext
    ) -> list[PathSelection]:
        paths = []
        if context.collaborative:
            paths.append(PathSelection(script.forfeit()))
        sequence = self._exit_sequence(script)
        if is_csv_spendable(context, sequence):
            paths.append(PathSelection(script.exit(), sequence=sequence))
        return paths


@dataclass
class VHTLCContractParams:
    sender: bytes
    receiver: bytes
    server: bytes
    preimage_hash: bytes
    refund_locktime: int
    unilateral_claim_delay: RelativeTimelock
    unilateral_refund_delay: RelativeTimelock
    unilateral_refund_without_receiver_delay: RelativeTimelock


class VHTLCHandler(ContractHandler):
    """
    Virtual HTLC.

    The receiver claims with the preimage (recorded in ``contract.data`` once
    revealed); the sender refunds with the server after the refund locktime,
    or alone after the unilateral refund delay.
    """

    type = "vhtlc"

    def serialize_params(self, params: VHTLCContractParams) -> dict[str, str]:
        return {
            "sender": params.sender.hex(),
            "receiver": params.receiver.hex(),
            "server": params.server.hex(),
            "hash": params.preimage_hash.hex(),
            "refund_locktime": str(params.refund_locktime),
            "claim_delay": str(encode_sequence(params.unilateral_claim_delay)),
            "refund_delay": str(encode_sequence(params.unilateral_refund_delay)),
            "refund_no_receiver_delay": str(
                encode_sequence(params.unilateral_refund_without_receiver_delay)
            ),
        }

    def deserialize_params(self, params: dict[str, str]) -> VHTLCContractParams:
        try:
            return VHTLCContractParams(
                sender=bytes.fromhex(params["sender"]),
                receiver=bytes.fromhex(params["receiver"]),
                server=bytes.fromhex(params["server"]),
                preimage_hash=bytes.fromhex(params["hash"]),
                refund_locktime=int(params["refund_locktime"]),
                unilateral_claim_delay=decode_sequence(int(params["claim_delay"])),
                unilateral_refund_delay=decode_sequence(int(params["refund_delay"])),
                unilateral_refund_without_receiver_delay=decode_sequence(
                    int(params["refund_no_receiver_delay"])
                ),
            )
        except (KeyError, ValueError) as e:
            raise ContractError(f"Invalid vhtlc contract params: {e}") from e

    def create_script(self, params: dict[str, str]) -> VHTLCScript:
        typed = self.deserialize_params(params)
        return VHTLCScript(
            sender=typed.sender,
            receiver=typed.receiver,
            server=typed.server,
            preimage_hash=typed.preimage_hash,
            refund_locktime=typed.refund_locktime,
            unilateral_claim_delay=typed.unilateral_claim_delay,
            unilateral_refund_delay=typed.unilateral_refund_delay,
            unilateral_refund_without_receiver_delay=typed.unilateral_refund_without_receiver_delay,
        )

    @staticmethod
    def resolve_role(contract: Contract, context: PathContext) -> str | None:
        if context.role in ("sender", "receiver"):
            return context.role
        if context.wallet_pubkey:
            wallet = _key_hex(context.wallet_pubkey)
            if wallet == _key_hex(contract.params["sender"]):
                return "sender"
            if wallet == _key_hex(contract.params["receiver"]):
                return "receiver"
        return None

    @staticmethod
    def _preimage(contract: Contract) -> bytes | None:
        preimage = contract.data.get("preimage") or contract.params.get("preimage")
        return bytes.fromhex(preimage) if preimage else None

    def get_spendable_paths(
        self, script: VHTLCScript, contract: Contract, context: PathContext
    ) -> list[PathSelection]:
        role = self.resolve_role(contract, context)
        if role is None:
            return []
        preimage = self._preimage(contract)
        paths = []

        if context.collaborative:
            if role == "receiver" and preimage:
                paths.append(PathSelection(script.claim(), extra_witness=[preimage]))
            if role == "sender" and context.current_time >= script.refund_locktime:
                paths.append(PathSelection(script.refund_without_receiver()))
            return paths

        if role == "receiver" and preimage:
            sequence = encode_sequence(script.unilateral_claim_delay)
            if is_csv_spendable(context, sequence):
                paths.append(
                    PathSelection(
                        script.unilateral_claim(), extra_witness=[preimage], sequence=sequence
                    )
                )
        if role == "sender":
            sequence = encode_sequence(script.unilateral_refund_without_receiver_delay)
            if is_csv_spendable(context, sequence):
                paths.append(
                    PathSelection(script.unilateral_refund_without_receiver(), sequence=sequence)
                )
        return paths

    def select_path(
        self, script: VHTLCScript, contract: Contract, context: PathContext
    ) -> PathSelection | None:
        paths = self.get_spendable_paths(script, contract, context)
        return paths[0] if paths else None


class ContractHandlerRegistry:
    """Contract type -> handler."""

    def __init__(self, handlers: list[ContractHandler] | None = None):
        self._handlers: dict[str, ContractHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: ContractHandler) -> None:
        if handler.type in self._handlers:
            raise ContractError(f"Contract handler for type '{handler.type}' already registered")
        self._handlers[handler.type] = handler

    def get(self, contract_type: str) -> ContractHandler | None:
        return self._handlers.get(contract_type)

    def get_or_raise(self, contract_type: str) -> ContractHandler:
        handler = self._handlers.get(contract_type)
        if handler is None:
            raise UnknownContractTypeError(contract_type)
        return handler

    def has(self, contract_type: str) -> bool:
        return contract_type in self._handlers

    def registered_types(self) -> list[str]:
        return list(self._handlers)


def default_registry() -> ContractHandlerRegistry:
    return ContractHandlerRegistry([DefaultHandler(), VHTLCHandler()])
