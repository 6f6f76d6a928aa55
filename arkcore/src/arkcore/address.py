"""
Ark addresses and on-chain segwit addresses.

An Ark address is a bech32m string (hrp ``ark`` or ``tark``) whose payload is
``version | server_xonly_key(32) | vtxo_taproot_key(32)``. It is longer than
the 90 characters allowed for segwit addresses, so it is encoded with the
bech32 primitives directly instead of ``bech32.encode``.
"""

from __future__ import annotations

from dataclasses import dataclass

import bech32

from arkcore.constants import ARK_ADDRESS_VERSION

BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3
ARK_ADDRESS_MAX_LENGTH = 1023

SEGWIT_HRPS = {
    "mainnet": "bc",
    "testnet": "tb",
    "signet": "tb",
    "mutinynet": "tb",
    "regtest": "bcrt",
}


class AddressError(ValueError):
    pass


def _create_checksum(hrp: str, data: list[int], const: int) -> list[int]:
    values = bech32.bech32_hrp_expand(hrp) + data
    polymod = bech32.bech32_polymod(values + [0, 0, 0, 0, 0, 0]) ^ const
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def bech32_encode_raw(hrp: str, data: list[int], const: int = BECH32M_CONST) -> str:
    combined = data + _create_checksum(hrp, data, const)
    return hrp + "1" + "".join(bech32.CHARSET[d] for d in combined)


def bech32_decode_raw(
    value: str, max_length: int = ARK_ADDRESS_MAX_LENGTH
) -> tuple[str, list[int], int]:
    """
    Decode a bech32/bech32m string without the segwit length limit.

    Returns:
        (hrp, 5-bit data without checksum, checksum constant)

    Raises:
        AddressError: On malformed input or a bad checksum
    """
    if any(ord(c) < 33 or ord(c) > 126 for c in value):
        raise AddressError("Invalid character in address")
    if value.lower() != value and value.upper() != value:
        raise AddressError("Mixed case address")
    if len(value) > max_length:
        raise AddressError(f"Address too long: {len(value)} > {max_length}")
    value = value.lower()
    pos = value.rfind("1")
    if pos < 1 or pos + 7 > len(value):
        raise AddressError("Invalid separator position")
    hrp = value[:pos]
    try:
        data = [bech32.CHARSET.index(c) for c in value[pos + 1 :]]
    except ValueError as e:
        raise AddressError(f"Invalid bech32 character: {e}") from e
    const = bech32.bech32_polymod(bech32.bech32_hrp_expand(hrp) + data)
    if const not in (BECH32_CONST, BECH32M_CONST):
        raise AddressError("Invalid checksum")
    return hrp, data[:-6], const


def _to_bytes(words: list[int]) -> bytes:
    decoded = bech32.convertbits(words, 5, 8, False)
    if decoded is None:
        raise AddressError("Invalid bech32 padding")
    return bytes(decoded)


@dataclass(frozen=True)
class ArkAddress:
    server_pubkey: bytes
    vtxo_taproot_key: bytes
    hrp: str
    version: int = ARK_ADDRESS_VERSION

    def __post_init__(self) -> None:
        if len(self.server_pubkey) != 32:
            raise AddressError(
                "Invalid server public key length, expected 32 bytes, "
                f"got {len(self.server_pubkey)}"
            )
        if len(self.vtxo_taproot_key) != 32:
            raise AddressError(
                "Invalid vtxo taproot public key length, expected 32 bytes, "
                f"got {len(self.vtxo_taproot_key)}"
            )

    def encode(self) -> str:
        payload = bytes([self.version]) + self.server_pubkey + self.vtxo_taproot_key
        return bech32_encode_raw(self.hrp, bech32.convertbits(payload, 8, 5))

    @classmethod
    def decode(cls, address: str) -> ArkAddress:
        hrp, words, const = bech32_decode_raw(address)
        if const != BECH32M_CONST:
            raise AddressError("Ark address must use bech32m")
        data = _to_bytes(words)
        if len(data) != 1 + 32 + 32:
            raise AddressError(f"Invalid data length, expected 65 bytes, got {len(data)}")
        return cls(data[1:33], data[33:65], hrp, data[0])

    @property
    def pk_script(self) -> bytes:
        """Output script for non-dust amounts: OP_1 <vtxo taproot key>."""
        return b"\x51\x20" + self.vtxo_taproot_key

    @property
    def subdust_pk_script(self) -> bytes:
        """Output script for amounts below dust: OP_RETURN <vtxo taproot key>."""
        return b"\x6a\x20" + self.vtxo_taproot_key

    def __str__(self) -> str:
        return self.encode()


def address_to_script(address: str) -> bytes:
    """
    Convert a segwit (v0 or taproot) address to its scriptPubKey.

    Raises:
        AddressError: For invalid or unsupported addresses
    """
    hrp, words, const = bech32_decode_raw(address, max_length=90)
    if hrp not in SEGWIT_HRPS.values():
        raise AddressError(f"Unknown segwit hrp: {hrp}")
    if not words:
        raise AddressError("Empty witness program")
    witver = words[0]
    witprog = _to_bytes(words[1:])
    if witver == 0:
        if const != BECH32_CONST:
            raise AddressError("Witness v0 address must use bech32")
        if len(witprog) in (20, 32):
            return bytes([0x00, len(witprog)]) + witprog
    elif witver == 1 and len(witprog) == 32:
        if const != BECH32M_CONST:
            raise AddressError("Witness v1 address must use bech32m")
        return bytes([0x51, 0x20]) + witprog
    raise AddressError(f"Unsupported witness program: version {witver}, {len(witprog)} bytes")


def script_to_address(script: bytes, network: str = "mainnet") -> str:
    """Convert a segwit scriptPubKey to an address."""
    hrp = SEGWIT_HRPS[network]
    if len(script) in (22, 34) and script[0] == 0x00 and script[1] == len(script) - 2:
        return bech32_encode_raw(hrp, [0] + bech32.convertbits(script[2:], 8, 5), BECH32_CONST)
    if len(script) == 34 and script[0] == 0x51 and script[1] == 0x20:
        return bech32_encode_raw(hrp, [1] + bech32.convertbits(script[2:], 8, 5), BECH32M_CONST)
    raise AddressError(f"Unsupported scriptPubKey: {script.hex()}")
