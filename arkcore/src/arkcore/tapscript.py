"""
Tapscript closures used as VTXO leaves.

Each closure is a frozen dataclass holding its parameters; ``.script`` gives
the encoded leaf and ``decode()`` parses raw leaf bytes back, raising
``ScriptParseError`` when the script does not have the closure's exact shape.

Layouts (x-only pubkeys):

- multisig (CHECKSIG):    <pk1> CHECKSIGVERIFY ... <pkN> CHECKSIG
- multisig (CHECKSIGADD): <pk1> CHECKSIG <pk2> CHECKSIGADD ... <N> NUMEQUAL
- csv-multisig:           <seq> CHECKSEQUENCEVERIFY DROP <multisig>
- cltv-multisig:          <locktime> CHECKLOCKTIMEVERIFY DROP <multisig>
- condition-multisig:     <condition> VERIFY <multisig>
- condition-csv-multisig: <condition> VERIFY <seq> CHECKSEQUENCEVERIFY DROP <multisig>
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import ClassVar, Union

from arkcore.constants import LOCKTIME_THRESHOLD
from arkcore.script import (
    Opcode,
    ScriptItem,
    ScriptParseError,
    decode_script,
    encode_script,
    script_num_decode,
    script_num_encode,
)

SEQUENCE_LOCKTIME_TYPE_FLAG = 1 << 22
SEQUENCE_LOCKTIME_MASK = 0x0000FFFF
SEQUENCE_LOCKTIME_GRANULARITY = 9
SEQUENCE_LOCKTIME_DISABLE_FLAG = 1 << 31


class TimelockType(str, Enum):
    BLOCKS = "blocks"
    SECONDS = "seconds"


class TapscriptType(str, Enum):
    MULTISIG = "multisig"
    CSV_MULTISIG = "csv-multisig"
    CLTV_MULTISIG = "cltv-multisig"
    CONDITION_MULTISIG = "condition-multisig"
    CONDITION_CSV_MULTISIG = "condition-csv-multisig"


class MultisigType(IntEnum):
    CHECKSIG = 0
    CHECKSIGADD = 1


@dataclass(frozen=True)
class RelativeTimelock:
    """BIP-68 relative timelock. Seconds must be a multiple of 512."""

    value: int
    type: TimelockType = TimelockType.BLOCKS

    @classmethod
    def from_string(cls, value: str) -> RelativeTimelock:
        """Parse the ``"blocks:144"`` / ``"seconds:1024"`` or bare number form."""
        if ":" in value:
            kind, raw = value.split(":", 1)
            return cls(int(raw), TimelockType(kind))
        return decode_sequence(int(value))

    def __str__(self) -> str:
        return f"{self.type.value}:{self.value}"


def encode_sequence(timelock: RelativeTimelock) -> int:
    """Encode a relative timelock as a BIP-68 nSequence value."""
    if timelock.value < 0:
        raise ValueError(f"Negative timelock: {timelock.value}")
    if timelock.type == TimelockType.BLOCKS:
        if timelock.value > SEQUENCE_LOCKTIME_MASK:
            raise ValueError(f"Block timelock too large: {timelock.value}")
        return timelock.value
    if timelock.value % (1 << SEQUENCE_LOCKTIME_GRANULARITY) != 0:
        raise ValueError(f"Seconds timelock must be a multiple of 512, got {timelock.value}")
    units = timelock.value >> SEQUENCE_LOCKTIME_GRANULARITY
    if units > SEQUENCE_LOCKTIME_MASK:
        raise ValueError(f"Seconds timelock too large: {timelock.value}")
    return SEQUENCE_LOCKTIME_TYPE_FLAG | units


def decode_sequence(sequence: int) -> RelativeTimelock:
    if sequence & SEQUENCE_LOCKTIME_DISABLE_FLAG:
        raise ValueError(f"Relative locktime disabled in sequence {sequence:#x}")
    if sequence & SEQUENCE_LOCKTIME_TYPE_FLAG:
        return RelativeTimelock(
            (sequence & SEQUENCE_LOCKTIME_MASK) << SEQUENCE_LOCKTIME_GRANULARITY,
            TimelockType.SECONDS,
        )
    return RelativeTimelock(sequence & SEQUENCE_LOCKTIME_MASK, TimelockType.BLOCKS)


def _check_pubkeys(pubkeys: tuple[bytes, ...]) -> None:
    if not pubkeys:
        raise ValueError("At least 1 pubkey is required")
    for pubkey in pubkeys:
        if len(pubkey) != 32:
            raise ValueError(f"Invalid pubkey length: {len(pubkey)}")


def _number_item(value: int) -> bytes:
    # Timelocks are pushed as ScriptNum bytes, never as small-int opcodes
    return script_num_encode(value)


def _read_number(item: ScriptItem) -> int:
    if isinstance(item, Opcode):
        raise ScriptParseError(f"Expected number, got {item.name}")
    if isinstance(item, int):
        return item
    return script_num_decode(item, max_size=5)


def _multisig_items(pubkeys: tuple[bytes, ...], multisig_type: MultisigType) -> list[ScriptItem]:
    items: list[ScriptItem] = []
    if multisig_type == MultisigType.CHECKSIGADD:
        for i, pubkey in enumerate(pubkeys):
            items += [pubkey, Opcode.OP_CHECKSIG if i == 0 else Opcode.OP_CHECKSIGADD]
        items += [len(pubkeys), Opcode.OP_NUMEQUAL]
        return items
    for i, pubkey in enumerate(pubkeys):
        last = i == len(pubkeys) - 1
        items += [pubkey, Opcode.OP_CHECKSIG if last else Opcode.OP_CHECKSIGVERIFY]
    return items


def _is_pubkey(item: ScriptItem) -> bool:
    return isinstance(item, bytes) and len(item) == 32


def _parse_multisig_tail(items: list[ScriptItem]) -> tuple[int, tuple[bytes, ...], MultisigType]:
    """
    Parse a multisig suffix.

    Returns:
        (start index of the multisig part, pubkeys, multisig type)
    """
    if len(items) >= 4 and items[-1] is Opcode.OP_NUMEQUAL:
        count = items[-2]
        if not isinstance(count, int) or isinstance(count, Opcode) or count < 1:
            raise ScriptParseError("Invalid CHECKSIGADD multisig count")
        start = len(items) - 2 - 2 * count
        if start < 0:
            raise ScriptParseError("Truncated CHECKSIGADD multisig")
        pubkeys = []
        for i in range(count):
            pubkey, op = items[start + 2 * i], items[start + 2 * i + 1]
            expected = Opcode.OP_CHECKSIG if i == 0 else Opcode.OP_CHECKSIGADD
            if not _is_pubkey(pubkey) or op is not expected:
                raise ScriptParseError("Invalid CHECKSIGADD multisig")
            pubkeys.append(pubkey)
        return start, tuple(pubkeys), MultisigType.CHECKSIGADD

    if len(items) < 2 or items[-1] is not Opcode.OP_CHECKSIG or not _is_pubkey(items[-2]):
        raise ScriptParseError("Invalid multisig: expected <pubkey> CHECKSIG")
    pubkeys = [items[-2]]
    start = len(items) - 2
    while start >= 2 and items[start - 1] is Opcode.OP_CHECKSIGVERIFY and _is_pubkey(
        items[start - 2]
    ):
        pubkeys.insert(0, items[start - 2])
        start -= 2
    return start, tuple(pubkeys), MultisigType.CHECKSIG


def _split_condition(prefix: list[ScriptItem]) -> bytes:
    if len(prefix) < 2 or prefix[-1] is not Opcode.OP_VERIFY:
        raise ScriptParseError("Invalid condition: expected <condition> VERIFY")
    return encode_script(prefix[:-1])


def _split_timelock(prefix: list[ScriptItem], opcode: Opcode) -> tuple[list[ScriptItem], int]:
    if len(prefix) < 3 or prefix[-2] is not opcode or prefix[-1] is not Opcode.OP_DROP:
        raise ScriptParseError(f"Invalid timelock: expected <n> {opcode.name} DROP")
    return prefix[:-3], _read_number(prefix[-3])


@dataclass(frozen=True)
class MultisigTapscript:
    pubkeys: tuple[bytes, ...]
    multisig_type: MultisigType = MultisigType.CHECKSIG

    type: ClassVar[TapscriptType] = TapscriptType.MULTISIG

    def __post_init__(self) -> None:
        object.__setattr__(self, "pubkeys", tuple(self.pubkeys))
        _check_pubkeys(self.pubkeys)

    @property
    def script(self) -> bytes:
        return encode_script(_multisig_items(self.pubkeys, self.multisig_type))

    @classmethod
    def decode(cls, script: bytes) -> MultisigTapscript:
        items = decode_script(script)
        start, pubkeys, multisig_type = _parse_multisig_tail(items)
        if start != 0:
            raise ScriptParseError("Invalid multisig: unexpected prefix")
        return cls(pubkeys, multisig_type)


@dataclass(frozen=True)
class CSVMultisigTapscript:
    """Multisig spendable only after a relative timelock (exit / unroll paths)."""

    timelock: RelativeTimelock
    pubkeys: tuple[bytes, ...]
    multisig_type: MultisigType = MultisigType.CHECKSIG

    type: ClassVar[TapscriptType] = TapscriptType.CSV_MULTISIG

    def __post_init__(self) -> None:
        object.__setattr__(self, "pubkeys", tuple(self.pubkeys))
        _check_pubkeys(self.pubkeys)
        encode_sequence(self.timelock)

    @property
    def sequence(self) -> int:
        return encode_sequence(self.timelock)

    @property
    def script(self) -> bytes:
        items: list[ScriptItem] = [
            _number_item(self.sequence),
            Opcode.OP_CHECKSEQUENCEVERIFY,
            Opcode.OP_DROP,
        ]
        return encode_script(items + _multisig_items(self.pubkeys, self.multisig_type))

    @classmethod
    def decode(cls, script: bytes) -> CSVMultisigTapscript:
        items = decode_script(script)
        start, pubkeys, multisig_type = _parse_multisig_tail(items)
        rest, sequence = _split_timelock(items[:start], Opcode.OP_CHECKSEQUENCEVERIFY)
        if rest:
            raise ScriptParseError("Invalid csv multisig: unexpected prefix")
        return cls(decode_sequence(sequence), pubkeys, multisig_type)


@dataclass(frozen=True)
class CLTVMultisigTapscript:
    """Multisig spendable only after an absolute locktime (block height or unix time)."""

    locktime: int
    pubkeys: tuple[bytes, ...]
    multisig_type: MultisigType = MultisigType.CHECKSIG

    type: ClassVar[TapscriptType] = TapscriptType.CLTV_MULTISIG

    def __post_init__(self) -> None:
        object.__setattr__(self, "pubkeys", tuple(self.pubkeys))
        _check_pubkeys(self.pubkeys)
        if self.locktime < 0:
            raise ValueError(f"Negative locktime: {self.locktime}")

    @property
    def is_seconds(self) -> bool:
        return self.locktime >= LOCKTIME_THRESHOLD

    @property
    def script(self) -> bytes:
        items: list[ScriptItem] = [
            _number_item(self.locktime),
            Opcode.OP_CHECKLOCKTIMEVERIFY,
            Opcode.OP_DROP,
        ]
        return encode_script(items + _multisig_items(self.pubkeys, self.multisig_type))

    @classmethod
    def decode(cls, script: bytes) -> CLTVMultisigTapscript:
        items = decode_script(script)
        start, pubkeys, multisig_type = _parse_multisig_tail(items)
        rest, locktime = _split_timelock(items[:start], Opcode.OP_CHECKLOCKTIMEVERIFY)
        if rest:
            raise ScriptParseError("Invalid cltv multisig: unexpected prefix")
        return cls(locktime, pubkeys, multisig_type)


@dataclass(frozen=True)
class ConditionMultisigTapscript:
    """Multisig gated by an arbitrary condition script evaluated on extra witness data."""

    condition_script: bytes
    pubkeys: tuple[bytes, ...]
    multisig_type: MultisigType = MultisigType.CHECKSIG

    type: ClassVar[TapscriptType] = TapscriptType.CONDITION_MULTISIG

    def __post_init__(self) -> None:
        object.__setattr__(self, "pubkeys", tuple(self.pubkeys))
        _check_pubkeys(self.pubkeys)
        if not self.condition_script:
            raise ValueError("Empty condition script")

    @property
    def script(self) -> bytes:
        return (
            self.condition_script
            + bytes([Opcode.OP_VERIFY])
            + encode_script(_multisig_items(self.pubkeys, self.multisig_type))
        )

    @classmethod
    def decode(cls, script: bytes) -> ConditionMultisigTapscript:
        items = decode_script(script)
        start, pubkeys, multisig_type = _parse_multisig_tail(items)
        return cls(_split_condition(items[:start]), pubkeys, multisig_type)


@dataclass(frozen=True)
class ConditionCSVMultisigTapscript:
    condition_script: bytes
    timelock: RelativeTimelock
    pubkeys: tuple[bytes, ...]
    multisig_type: MultisigType = MultisigType.CHECKSIG

    type: ClassVar[TapscriptType] = TapscriptType.CONDITION_CSV_MULTISIG

    def __post_init__(self) -> None:
        object.__setattr__(self, "pubkeys", tuple(self.pubkeys))
        _check_pubkeys(self.pubkeys)
        if not self.condition_script:
            raise ValueError("Empty condition script")
        encode_sequence(self.timelock)

    @property
    def sequence(self) -> int:
        return encode_sequence(self.timelock)

    @property
    def script(self) -> bytes:
        items: list[ScriptItem] = [
            _number_item(self.sequence),
            Opcode.OP_CHECKSEQUENCEVERIFY,
            Opcode.OP_DROP,
        ]
        return (
            self.condition_script
            + bytes([Opcode.OP_VERIFY])
            + encode_script(items + _multisig_items(self.pubkeys, self.multisig_type))
        )

    @classmethod
    def decode(cls, script: bytes) -> ConditionCSVMultisigTapscript:
        items = decode_script(script)
        start, pubkeys, multisig_type = _parse_multisig_tail(items)
        rest, sequence = _split_timelock(items[:start], Opcode.OP_CHECKSEQUENCEVERIFY)
        return cls(_split_condition(rest), decode_sequence(sequence), pubkeys, multisig_type)


Tapscript = Union[
    MultisigTapscript,
    CSVMultisigTapscript,
    CLTVMultisigTapscript,
    ConditionMultisigTapscript,
    ConditionCSVMultisigTapscript,
]

_DECODERS: tuple[type, ...] = (
    MultisigTapscript,
    CSVMultisigTapscript,
    CLTVMultisigTapscript,
    ConditionCSVMultisigTapscript,
    ConditionMultisigTapscript,
)


def decode_tapscript(script: bytes) -> Tapscript:
    """
    Decode a leaf script into its closure.

    Raises:
        ScriptParseError: If no closure matches the script
    """
    errors = []
    for decoder in _DECODERS:
        try:
            return decoder.decode(script)
        except (ScriptParseError, ValueError) as e:
            errors.append(f"{decoder.type.value}: {e}")
    raise ScriptParseError(f"Unknown tapscript {script.hex()}: {'; '.join(errors)}")


def csv_sequence(script: bytes) -> int | None:
    """BIP-68 sequence required by a leaf, or None if it has no relative timelock."""
    try:
        closure = decode_tapscript(script)
    except ScriptParseError:
        return None
    if isinstance(closure, (CSVMultisigTapscript, ConditionCSVMultisigTapscript)):
        return closure.sequence
    return None
