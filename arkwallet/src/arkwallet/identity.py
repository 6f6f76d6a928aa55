"""
Signing identities.

An identity owns the wallet key: it signs PSBT inputs (offchain txs,
checkpoints, forfeits, intent proofs) and arbitrary messages.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from arkcore.crypto import (
    public_key_from_private,
    random_private_key,
    schnorr_sign,
    x_only,
)
from arkcore.psbt import Psbt
from loguru import logger


class Identity(ABC):
    """Abstract wallet identity."""

    @abstractmethod
    def x_only_public_key(self) -> bytes:
        """32-byte x-only public key"""

    @abstractmethod
    def compressed_public_key(self) -> bytes:
        """33-byte compressed public key"""

    @abstractmethod
    async def sign(self, psbt: Psbt, input_indexes: list[int] | None = None) -> Psbt:
        """Return a copy of ``psbt`` with this identity's signatures added"""

    @abstractmethod
    async def sign_message(self, message: bytes) -> bytes:
        """BIP-340 signature over a 32-byte message"""


class SingleKey(Identity):
    """Identity backed by one private key held in memory."""

    def __init__(self, private_key: bytes):
        if len(private_key) != 32:
            raise ValueError(f"Private key must be 32 bytes, got {len(private_key)}")
        self._private_key = private_key
        self._public_key = public_key_from_private(private_key)

    @classmethod
    def from_hex(cls, private_key_hex: str) -> SingleKey:
        return cls(bytes.fromhex(private_key_hex))

    @classmethod
    def from_random_bytes(cls) -> SingleKey:
        return cls(random_private_key())

    def x_only_public_key(self) -> bytes:
        return x_only(self._public_key)

    def compressed_public_key(self) -> bytes:
        return self._public_key

    async def sign(self, psbt: Psbt, input_indexes: list[int] | None = None) -> Psbt:
        signed = psbt.copy()
        indexes = range(len(signed.inputs)) if input_indexes is None else input_indexes
        for index in indexes:
            if not signed.sign_input(index, self._private_key):
                if input_indexes is not None:
                    raise ValueError(f"Cannot sign input {index} of {psbt.txid}")
                logger.debug(f"Skipping input {index} of {psbt.txid}: key not involved")
        return signed

    async def sign_message(self, message: bytes) -> bytes:
        return schnorr_sign(message, self._private_key)
