"""
Tests for arkcore.script
"""

from __future__ import annotations

import pytest

from arkcore.script import (
    OPCODES_BY_NAME,
    OPCODES_BY_VALUE,
    Opcode,
    ScriptParseError,
    asm_to_bytes,
    bytes_to_asm,
    decode_script,
    encode_push,
    encode_script,
    from_asm,
    is_arkade_opcode,
    opcode_name,
    script_num_decode,
    script_num_encode,
)


class TestNumbers:
    """Tests for small integers and ScriptNum pushes."""

    def test_small_ints_use_opcodes(self) -> None:
        assert encode_script([0]) == bytes([Opcode.OP_0])
        assert encode_script([1]) == bytes([Opcode.OP_1])
        assert encode_script([16]) == bytes([Opcode.OP_16])
        assert encode_script([-1]) == bytes([Opcode.OP_1NEGATE])

    def test_small_ints_decode_to_ints(self) -> None:
        items = [-1, 0, 1, 16, Opcode.OP_ADD]
        decoded = decode_script(encode_script(items))
        assert decoded == items
        assert not isinstance(decoded[0], Opcode)
        assert from_asm(bytes_to_asm(encode_script(items))) == items

    def test_larger_ints_are_pushes(self) -> None:
        assert encode_script([17]) == b"\x01\x11"
        assert encode_script([144]) == b"\x02\x90\x00"
        assert encode_script([-17]) == b"\x01\x91"

    def test_script_num_roundtrip_values(self) -> None:
        for value in (1, 127, 128, 255, 256, -1, -128, 2**31 - 1, -(2**31)):
            assert script_num_decode(script_num_encode(value)) == value

    def test_non_minimal_number_rejected(self) -> None:
        with pytest.raises(ScriptParseError):
            script_num_decode(b"\x01\x00")

    def test_bool_rejected(self) -> None:
        with pytest.raises(ScriptParseError):
            encode_script([True])


class TestPushes:
    """Tests for push encodings."""

    def test_direct_push(self) -> None:
        assert encode_push(b"\xaa" * 75)[:1] == b"\x4b"

    def test_pushdata1(self) -> None:
        assert encode_push(b"\xaa" * 76)[:2] == b"\x4c\x4c"

    def test_pushdata2(self) -> None:
        assert encode_push(b"\xaa" * 256)[:3] == b"\x4d\x00\x01"

    def test_pushdata_decodes(self) -> None:
        for size in (1, 75, 76, 255, 256, 520):
            data = bytes(range(256)) * 3
            data = data[:size]
            assert decode_script(encode_push(data)) == [data]


class TestDecode:
    """Tests for script decoding failures and results."""

    def test_decode_items(self) -> None:
        key = b"\x02" * 32
        script = encode_script([key, Opcode.OP_CHECKSIGVERIFY, 5, Opcode.OP_ADD64])
        assert decode_script(script) == [key, Opcode.OP_CHECKSIGVERIFY, 5, Opcode.OP_ADD64]

    def test_truncated_push(self) -> None:
        with pytest.raises(ScriptParseError):
            decode_script(b"\x05\x01\x02")

    def test_truncated_pushdata_length(self) -> None:
        with pytest.raises(ScriptParseError):
            decode_script(b"\x4d\x01")

    def test_unknown_opcode(self) -> None:
        with pytest.raises(ScriptParseError, match="Unknown opcode=bb"):
            decode_script(b"\xbb")

    def test_unassigned_arkade_gap(self) -> None:
        with pytest.raises(ScriptParseError):
            decode_script(b"\xc8")


class TestOpcodeTables:
    """Tests for the opcode name and value tables."""

    def test_tables_agree(self) -> None:
        for value, op in OPCODES_BY_VALUE.items():
            assert op.value == value
            assert OPCODES_BY_NAME[op.name] is op

    def test_aliases_resolve_by_name(self) -> None:
        assert OPCODES_BY_NAME["OP_NOP2"] is Opcode.OP_CHECKLOCKTIMEVERIFY
        assert OPCODES_BY_NAME["OP_NOP3"] is Opcode.OP_CHECKSEQUENCEVERIFY

    def test_arkade_range(self) -> None:
        assert is_arkade_opcode(Opcode.OP_SHA256INITIALIZE)
        assert is_arkade_opcode(Opcode.OP_INSPECTOUTPUTVALUE)
        assert not is_arkade_opcode(0xC8)
        assert not is_arkade_opcode(Opcode.OP_CHECKSIG)

    def test_opcode_name(self) -> None:
        assert opcode_name(0x14) == "OP_DATA_20"
        assert opcode_name(Opcode.OP_CHECKSIG) == "OP_CHECKSIG"
        with pytest.raises(ScriptParseError):
            opcode_name(0xFF)


class TestAsm:
    """Tests for ASM conversion."""

    def test_asm_roundtrip(self) -> None:
        asm = "OP_DUP OP_HASH160 " + "ab" * 20 + " OP_EQUALVERIFY OP_CHECKSIG"
        assert bytes_to_asm(asm_to_bytes(asm)) == asm

    def test_asm_without_prefix(self) -> None:
        assert from_asm("ADD64 OP_3") == [Opcode.OP_ADD64, 3]

    def test_invalid_token(self) -> None:
        with pytest.raises(ScriptParseError, match="Invalid ASM token"):
            from_asm("OP_NOT_A_THING")
