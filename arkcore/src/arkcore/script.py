"""
Script codec for Bitcoin tapscript and the Arkade opcode extensions.

Scripts are represented as lists of items:

- ``Opcode`` members for operations
- ``int`` for numbers (0 and 1..16 become small-int opcodes, anything else a
  minimal ScriptNum push)
- ``bytes`` for data pushes

Arkade programs use the exact same push encoding as Bitcoin Script
(direct length, PUSHDATA1, PUSHDATA2, PUSHDATA4), so a single decoder handles
both. Decoding an unassigned opcode byte or a truncated push raises
``ScriptParseError``.
"""

from __future__ import annotations

import struct
from enum import IntEnum
from typing import Union


class ScriptParseError(Exception):
    """Raised when script bytes or ASM cannot be parsed."""

    pass


class Opcode(IntEnum):
    # Constants
    OP_0 = 0x00
    OP_PUSHDATA1 = 0x4C
    OP_PUSHDATA2 = 0x4D
    OP_PUSHDATA4 = 0x4E
    OP_1NEGATE = 0x4F
    OP_RESERVED = 0x50
    OP_1 = 0x51
    OP_2 = 0x52
    OP_3 = 0x53
    OP_4 = 0x54
    OP_5 = 0x55
    OP_6 = 0x56
    OP_7 = 0x57
    OP_8 = 0x58
    OP_9 = 0x59
    OP_10 = 0x5A
    OP_11 = 0x5B
    OP_12 = 0x5C
    OP_13 = 0x5D
    OP_14 = 0x5E
    OP_15 = 0x5F
    OP_16 = 0x60

    # Flow control
    OP_NOP = 0x61
    OP_VER = 0x62
    OP_IF = 0x63
    OP_NOTIF = 0x64
    OP_VERIF = 0x65
    OP_VERNOTIF = 0x66
    OP_ELSE = 0x67
    OP_ENDIF = 0x68
    OP_VERIFY = 0x69
    OP_RETURN = 0x6A

    # Stack
    OP_TOALTSTACK = 0x6B
    OP_FROMALTSTACK = 0x6C
    OP_2DROP = 0x6D
    OP_2DUP = 0x6E
    OP_3DUP = 0x6F
    OP_2OVER = 0x70
    OP_2ROT = 0x71
    OP_2SWAP = 0x72
    OP_IFDUP = 0x73
    OP_DEPTH = 0x74
    OP_DROP = 0x75
    OP_DUP = 0x76
    OP_NIP = 0x77
    OP_OVER = 0x78
    OP_PICK = 0x79
    OP_ROLL = 0x7A
    OP_ROT = 0x7B
    OP_SWAP = 0x7C
    OP_TUCK = 0x7D

    # Splice
    OP_CAT = 0x7E
    OP_SUBSTR = 0x7F
    OP_LEFT = 0x80
    OP_RIGHT = 0x81
    OP_SIZE = 0x82

    # Bitwise logic
    OP_INVERT = 0x83
    OP_AND = 0x84
    OP_OR = 0x85
    OP_XOR = 0x86
    OP_EQUAL = 0x87
    OP_EQUALVERIFY = 0x88
    OP_RESERVED1 = 0x89
    OP_RESERVED2 = 0x8A

    # Arithmetic
    OP_1ADD = 0x8B
    OP_1SUB = 0x8C
    OP_2MUL = 0x8D
    OP_2DIV = 0x8E
    OP_NEGATE = 0x8F
    OP_ABS = 0x90
    OP_NOT = 0x91
    OP_0NOTEQUAL = 0x92
    OP_ADD = 0x93
    OP_SUB = 0x94
    OP_MUL = 0x95
    OP_DIV = 0x96
    OP_MOD = 0x97
    OP_LSHIFT = 0x98
    OP_RSHIFT = 0x99
    OP_BOOLAND = 0x9A
    OP_BOOLOR = 0x9B
    OP_NUMEQUAL = 0x9C
    OP_NUMEQUALVERIFY = 0x9D
    OP_NUMNOTEQUAL = 0x9E
    OP_LESSTHAN = 0x9F
    OP_GREATERTHAN = 0xA0
    OP_LESSTHANOREQUAL = 0xA1
    OP_GREATERTHANOREQUAL = 0xA2
    OP_MIN = 0xA3
    OP_MAX = 0xA4
    OP_WITHIN = 0xA5

    # Crypto
    OP_RIPEMD160 = 0xA6
    OP_SHA1 = 0xA7
    OP_SHA256 = 0xA8
    OP_HASH160 = 0xA9
    OP_HASH256 = 0xAA
    OP_CODESEPARATOR = 0xAB
    OP_CHECKSIG = 0xAC
    OP_CHECKSIGVERIFY = 0xAD
    OP_CHECKMULTISIG = 0xAE
    OP_CHECKMULTISIGVERIFY = 0xAF

    # Expansion
    OP_NOP1 = 0xB0
    OP_CHECKLOCKTIMEVERIFY = 0xB1
    OP_CHECKSEQUENCEVERIFY = 0xB2
    OP_NOP4 = 0xB3
    OP_NOP5 = 0xB4
    OP_NOP6 = 0xB5
    OP_NOP7 = 0xB6
    OP_NOP8 = 0xB7
    OP_NOP9 = 0xB8
    OP_NOP10 = 0xB9
    OP_CHECKSIGADD = 0xBA

    # Arkade: SHA256 streaming
    OP_SHA256INITIALIZE = 0xC4
    OP_SHA256UPDATE = 0xC5
    OP_SHA256FINALIZE = 0xC6

    # Arkade: input introspection
    OP_INSPECTINPUTOUTPOINT = 0xC7
    OP_INSPECTINPUTVALUE = 0xC9
    OP_INSPECTINPUTSCRIPTPUBKEY = 0xCA
    OP_INSPECTINPUTSEQUENCE = 0xCB

    # Arkade: signatures
    OP_CHECKSIGFROMSTACK = 0xCC
    OP_PUSHCURRENTINPUTINDEX = 0xCD

    # Arkade: output introspection
    OP_INSPECTOUTPUTVALUE = 0xCF
    OP_INSPECTOUTPUTSCRIPTPUBKEY = 0xD1

    # Arkade: transaction introspection
    OP_INSPECTVERSION = 0xD2
    OP_INSPECTLOCKTIME = 0xD3
    OP_INSPECTNUMINPUTS = 0xD4
    OP_INSPECTNUMOUTPUTS = 0xD5
    OP_TXWEIGHT = 0xD6

    # Arkade: 64-bit arithmetic
    OP_ADD64 = 0xD7
    OP_SUB64 = 0xD8
    OP_MUL64 = 0xD9
    OP_DIV64 = 0xDA
    OP_NEG64 = 0xDB
    OP_LESSTHAN64 = 0xDC
    OP_LESSTHANOREQUAL64 = 0xDD
    OP_GREATERTHAN64 = 0xDE
    OP_GREATERTHANOREQUAL64 = 0xDF

    # Arkade: conversions
    OP_SCRIPTNUMTOLE64 = 0xE0
    OP_LE64TOSCRIPTNUM = 0xE1
    OP_LE32TOLE64 = 0xE2

    # Arkade: EC operations
    OP_ECMULSCALARVERIFY = 0xE3
    OP_TWEAKVERIFY = 0xE4

    # Arkade: asset groups
    OP_INSPECTNUMASSETGROUPS = 0xE5
    OP_INSPECTASSETGROUPASSETID = 0xE6
    OP_INSPECTASSETGROUPCTRL = 0xE7
    OP_FINDASSETGROUPBYASSETID = 0xE8
    OP_INSPECTASSETGROUPMETADATAHASH = 0xE9
    OP_INSPECTASSETGROUPNUM = 0xEA
    OP_INSPECTASSETGROUP = 0xEB
    OP_INSPECTASSETGROUPSUM = 0xEC
    OP_INSPECTOUTASSETCOUNT = 0xED
    OP_INSPECTOUTASSETAT = 0xEE
    OP_INSPECTOUTASSETLOOKUP = 0xEF
    OP_INSPECTINASSETCOUNT = 0xF0
    OP_INSPECTINASSETAT = 0xF1
    OP_INSPECTINASSETLOOKUP = 0xF2

    # Aliases
    OP_FALSE = 0x00
    OP_TRUE = 0x51
    OP_NOP2 = 0xB1
    OP_NOP3 = 0xB2


ScriptItem = Union[Opcode, int, bytes]

# Canonical byte -> opcode and name -> opcode tables (aliases resolve by name only)
OPCODES_BY_VALUE: dict[int, Opcode] = {op.value: op for op in Opcode}
OPCODES_BY_NAME: dict[str, Opcode] = dict(Opcode.__members__)


def _check_opcode_table() -> None:
    for value, op in OPCODES_BY_VALUE.items():
        if OPCODES_BY_NAME[op.name] is not op:
            raise RuntimeError(f"Opcode table mismatch for {op.name}")
        if 0x01 <= value < Opcode.OP_PUSHDATA1:
            raise RuntimeError(f"Opcode {op.name} collides with direct push range")


_check_opcode_table()


def is_arkade_opcode(value: int) -> bool:
    return Opcode.OP_SHA256INITIALIZE <= value <= Opcode.OP_INSPECTINASSETLOOKUP and (
        value in OPCODES_BY_VALUE
    )


def opcode_name(value: int) -> str:
    """ASM name of an opcode byte, OP_DATA_N for direct pushes."""
    if 0x01 <= value <= 0x4B:
        return f"OP_DATA_{value}"
    op = OPCODES_BY_VALUE.get(value)
    if op is None:
        raise ScriptParseError(f"Unknown opcode={value:x}")
    return op.name


def script_num_encode(value: int) -> bytes:
    """Minimal little-endian sign-magnitude encoding (CScriptNum)."""
    if value == 0:
        return b""
    negative = value < 0
    magnitude = abs(value)
    out = bytearray()
    while magnitude:
        out.append(magnitude & 0xFF)
        magnitude >>= 8
    if out[-1] & 0x80:
        out.append(0x80 if negative else 0x00)
    elif negative:
        out[-1] |= 0x80
    return bytes(out)


def script_num_decode(data: bytes, max_size: int = 8, require_minimal: bool = True) -> int:
    if len(data) > max_size:
        raise ScriptParseError(f"Script number too long: {len(data)} > {max_size}")
    if not data:
        return 0
    if require_minimal and data[-1] & 0x7F == 0:
        if len(data) <= 1 or not data[-2] & 0x80:
            raise ScriptParseError(f"Non-minimal script number: {data.hex()}")
    result = int.from_bytes(data, "little")
    if data[-1] & 0x80:
        return -(result & ~(0x80 << (8 * (len(data) - 1))))
    return result


def encode_push(data: bytes) -> bytes:
    """Length-prefixed data push."""
    length = len(data)
    if length < Opcode.OP_PUSHDATA1:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([Opcode.OP_PUSHDATA1, length]) + data
    if length <= 0xFFFF:
        return bytes([Opcode.OP_PUSHDATA2]) + struct.pack("<H", length) + data
    return bytes([Opcode.OP_PUSHDATA4]) + struct.pack("<I", length) + data


def encode_script(items: list[ScriptItem]) -> bytes:
    """
    Serialize script items to bytes.

    Args:
        items: Opcodes, integers and byte pushes

    Returns:
        Raw script bytes
    """
    out = bytearray()
    for item in items:
        if isinstance(item, Opcode):
            out.append(item.value)
        elif isinstance(item, bool):
            raise ScriptParseError(f"Wrong script item: {item!r}")
        elif isinstance(item, int):
            if item == 0:
                out.append(Opcode.OP_0)
            elif item == -1:
                out.append(Opcode.OP_1NEGATE)
            elif 1 <= item <= 16:
                out.append(Opcode.OP_1 - 1 + item)
            else:
                out += encode_push(script_num_encode(item))
        elif isinstance(item, (bytes, bytearray)):
            out += encode_push(bytes(item))
        else:
            raise ScriptParseError(f"Wrong script item: {item!r} ({type(item).__name__})")
    return bytes(out)


def decode_script(data: bytes) -> list[ScriptItem]:
    """
    Parse raw script bytes into items.

    Raises:
        ScriptParseError: On unknown opcodes or truncated pushes
    """
    items: list[ScriptItem] = []
    pos = 0
    end = len(data)
    while pos < end:
        cur = data[pos]
        pos += 1
        if 0 < cur <= Opcode.OP_PUSHDATA4:
            if cur < Opcode.OP_PUSHDATA1:
                length = cur
            else:
                size = {Opcode.OP_PUSHDATA1: 1, Opcode.OP_PUSHDATA2: 2, Opcode.OP_PUSHDATA4: 4}[
                    Opcode(cur)
                ]
                if pos + size > end:
                    raise ScriptParseError(f"Truncated push length at offset {pos - 1}")
                length = int.from_bytes(data[pos : pos + size], "little")
                pos += size
            if pos + length > end:
                raise ScriptParseError(
                    f"Truncated push at offset {pos}: need {length} bytes, have {end - pos}"
                )
            items.append(bytes(data[pos : pos + length]))
            pos += length
        elif cur == Opcode.OP_0:
            items.append(0)
        elif cur == Opcode.OP_1NEGATE:
            items.append(-1)
        elif Opcode.OP_1 <= cur <= Opcode.OP_16:
            items.append(cur - (Opcode.OP_1 - 1))
        else:
            op = OPCODES_BY_VALUE.get(cur)
            if op is None:
                raise ScriptParseError(f"Unknown opcode={cur:x}")
            items.append(op)
    return items


def to_asm(items: list[ScriptItem]) -> str:
    parts: list[str] = []
    for item in items:
        if isinstance(item, Opcode):
            parts.append(item.name)
        elif isinstance(item, int):
            if item == 0:
                parts.append("OP_0")
            elif item == -1:
                parts.append("OP_1NEGATE")
            elif 1 <= item <= 16:
                parts.append(f"OP_{item}")
            else:
                parts.append(str(item))
        else:
            parts.append(bytes(item).hex())
    return " ".join(parts)


def from_asm(asm: str) -> list[ScriptItem]:
    """
    Parse an ASM string (``OP_DUP OP_HASH160 <hex> OP_ADD64``).

    Opcode names may omit the OP_ prefix. Hex tokens become data pushes.
    """
    items: list[ScriptItem] = []
    for token in asm.split():
        if token in ("OP_0", "OP_FALSE"):
            items.append(0)
            continue
        if token == "OP_1NEGATE":
            items.append(-1)
            continue
        if token.startswith("OP_") and token[3:].isdigit():
            n = int(token[3:])
            if 1 <= n <= 16:
                items.append(n)
                continue
        name = token if token.startswith("OP_") else f"OP_{token}"
        op = OPCODES_BY_NAME.get(name)
        if op is not None:
            items.append(op)
            continue
        if len(token) % 2 == 0:
            try:
                items.append(bytes.fromhex(token))
                continue
            except ValueError:
                pass
        raise ScriptParseError(f"Invalid ASM token: {token}")
    return items


def asm_to_bytes(asm: str) -> bytes:
    return encode_script(from_asm(asm))


def bytes_to_asm(script: bytes) -> str:
    return to_asm(decode_script(script))
