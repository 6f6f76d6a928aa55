"""
Core data models using Pydantic for validation and serialization.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from arkcore.taproot import TapLeafScript
from arkcore.transaction import OutPoint


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    MUTINYNET = "mutinynet"
    REGTEST = "regtest"

    @property
    def ark_hrp(self) -> str:
        return "ark" if self == NetworkType.MAINNET else "tark"


class VtxoState(str, Enum):
    PRECONFIRMED = "preconfirmed"
    SETTLED = "settled"
    SWEPT = "swept"
    SPENT = "spent"


class TxStatus(BaseModel):
    confirmed: bool = False
    block_height: int | None = None
    block_hash: str | None = None
    block_time: int | None = None


class VirtualStatus(BaseModel):
    state: VtxoState
    commitment_txids: list[str] = Field(default_factory=list)
    batch_expiry: int | None = None  # unix seconds


class Coin(BaseModel):
    txid: str = Field(..., min_length=64, max_length=64)
    vout: int = Field(..., ge=0)
    value: int = Field(..., ge=0)
    status: TxStatus = Field(default_factory=TxStatus)

    @field_validator("txid")
    @classmethod
    def validate_txid(cls, v: str) -> str:
        bytes.fromhex(v)
        return v.lower()

    @property
    def outpoint(self) -> OutPoint:
        return OutPoint(self.txid, self.vout)


class VirtualCoin(Coin):
    virtual_status: VirtualStatus
    script: str = ""
    spent_by: str | None = None
    settled_by: str | None = None
    ark_txid: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    is_unrolled: bool = False
    is_spent: bool = False

    @property
    def is_spendable(self) -> bool:
        return not self.spent_by and not self.is_spent

    @property
    def is_recoverable(self) -> bool:
        """Swept by the server but not yet spent."""
        return self.virtual_status.state == VtxoState.SWEPT and self.is_spendable

    @property
    def is_preconfirmed(self) -> bool:
        return self.virtual_status.state == VtxoState.PRECONFIRMED

    @property
    def is_settled(self) -> bool:
        return self.virtual_status.state == VtxoState.SETTLED

    def is_subdust(self, dust: int) -> bool:
        return self.value < dust

    def is_expired(self, now: datetime | None = None) -> bool:
        expiry = self.virtual_status.batch_expiry
        if expiry is None:
            return False
        now = now or datetime.now(UTC)
        return expiry <= int(now.timestamp())


class TapLeaves(BaseModel):
    """Leaves a wallet-owned coin is spent with."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    forfeit_tap_leaf_script: TapLeafScript
    intent_tap_leaf_script: TapLeafScript
    tap_tree: bytes
    extra_witness: list[bytes] | None = None


class ExtendedCoin(Coin, TapLeaves):
    """On-chain (boarding) coin with its spending leaves."""


class ExtendedVirtualCoin(VirtualCoin, TapLeaves):
    """VTXO with its spending leaves."""


def is_vtxo(coin: Coin) -> bool:
    return isinstance(coin, VirtualCoin)


class Output(BaseModel):
    """Requested output of a settlement or send: an Ark or on-chain address and an amount."""

    address: str
    amount: int = Field(..., gt=0)


class FeeInfo(BaseModel):
    intent_fee: dict[str, str] = Field(default_factory=dict)
    tx_fee_rate: str = "0"


class ArkInfo(BaseModel):
    """Server parameters returned by GET /v1/info."""

    signer_pubkey: str
    forfeit_pubkey: str = ""
    forfeit_address: str = ""
    checkpoint_tapscript: str = ""
    network: NetworkType = NetworkType.REGTEST
    session_duration: int = 0
    unilateral_exit_delay: int = 0
    boarding_exit_delay: int = 0
    dust: int = 0
    vtxo_min_amount: int = -1
    vtxo_max_amount: int = -1
    utxo_min_amount: int = -1
    utxo_max_amount: int = -1
    version: str = ""
    fees: FeeInfo = Field(default_factory=FeeInfo)

    @field_validator("signer_pubkey")
    @classmethod
    def validate_signer_pubkey(cls, v: str) -> str:
        if len(bytes.fromhex(v)) not in (32, 33):
            raise ValueError("signer pubkey must be 32 or 33 bytes")
        return v
