"""
Tests for tapscript closures, script trees and Ark addresses.
"""

from __future__ import annotations

import pytest

from arkcore.address import AddressError, ArkAddress, address_to_script, script_to_address
from arkcore.constants import TAPROOT_UNSPENDABLE_KEY
from arkcore.crypto import hash160
from arkcore.script import ScriptParseError
from arkcore.taproot import taproot_tweak_pubkey
from arkcore.tapscript import (
    CLTVMultisigTapscript,
    ConditionCSVMultisigTapscript,
    ConditionMultisigTapscript,
    CSVMultisigTapscript,
    MultisigTapscript,
    MultisigType,
    RelativeTimelock,
    TimelockType,
    csv_sequence,
    decode_sequence,
    decode_tapscript,
    encode_sequence,
)
from arkcore.vtxo_script import (
    ArkadeLeaf,
    ArkadeVtxoScript,
    DefaultVtxoScript,
    VHTLCScript,
    VtxoScript,
    arkade_script_tweak,
    decode_tap_tree,
    preimage_condition,
)

A = b"\x11" * 32
B = b"\x22" * 32
S = b"\x33" * 32


class TestTapscripts:
    """Tests for closure encoding and the decode dispatcher."""

    def test_multisig_roundtrip(self) -> None:
        closure = MultisigTapscript((A, B))
        assert decode_tapscript(closure.script) == closure

    def test_checksigadd_roundtrip(self) -> None:
        closure = MultisigTapscript((A, B, S), MultisigType.CHECKSIGADD)
        assert decode_tapscript(closure.script) == closure

    def test_csv_roundtrip(self) -> None:
        closure = CSVMultisigTapscript(RelativeTimelock(144), (A,))
        decoded = decode_tapscript(closure.script)
        assert isinstance(decoded, CSVMultisigTapscript)
        assert decoded.timelock == RelativeTimelock(144)
        assert csv_sequence(closure.script) == 144

    def test_cltv_roundtrip(self) -> None:
        closure = CLTVMultisigTapscript(800_000, (A, S))
        assert decode_tapscript(closure.script) == closure
        assert csv_sequence(closure.script) is None

    def test_condition_roundtrip(self) -> None:
        condition = preimage_condition(hash160(b"secret"))
        closure = ConditionMultisigTapscript(condition, (A, S))
        assert decode_tapscript(closure.script) == closure

    def test_condition_csv_roundtrip(self) -> None:
        condition = preimage_condition(hash160(b"secret"))
        timelock = RelativeTimelock(512, TimelockType.SECONDS)
        closure = ConditionCSVMultisigTapscript(condition, timelock, (A,))
        assert decode_tapscript(closure.script) == closure

    def test_unknown_script(self) -> None:
        with pytest.raises(ScriptParseError):
            decode_tapscript(b"\x51")

    def test_invalid_pubkey_length(self) -> None:
        with pytest.raises(ValueError):
            MultisigTapscript((b"\x01" * 33,))


class TestSequence:
    """Tests for BIP-68 sequence encoding."""

    def test_blocks(self) -> None:
        assert encode_sequence(RelativeTimelock(144)) == 144
        assert decode_sequence(144) == RelativeTimelock(144, TimelockType.BLOCKS)

    def test_seconds(self) -> None:
        timelock = RelativeTimelock(1024, TimelockType.SECONDS)
        sequence = encode_sequence(timelock)
        assert sequence == (1 << 22) | 2
        assert decode_sequence(sequence) == timelock

    def test_seconds_must_be_multiple_of_512(self) -> None:
        with pytest.raises(ValueError):
            encode_sequence(RelativeTimelock(1000, TimelockType.SECONDS))

    def test_from_string(self) -> None:
        assert RelativeTimelock.from_string("blocks:144") == RelativeTimelock(144)
        assert str(RelativeTimelock(512, TimelockType.SECONDS)) == "seconds:512"


class TestVtxoScript:
    """Tests for script tree construction and the tap tree codec."""

    def test_encode_decode_roundtrip(self) -> None:
        script = DefaultVtxoScript(A, S)
        decoded = VtxoScript.decode(script.encode())
        assert decoded == script
        assert decoded.tweaked_public_key == script.tweaked_public_key

    def test_output_key_is_stable(self) -> None:
        scripts = [
            MultisigTapscript((A, S)).script,
            CSVMultisigTapscript(RelativeTimelock(10), (A,)).script,
        ]
        rebuilt = VtxoScript(list(scripts))
        assert VtxoScript(scripts).tweaked_public_key == rebuilt.tweaked_public_key

    def test_reordering_changes_key(self) -> None:
        first = MultisigTapscript((A, S)).script
        second = CSVMultisigTapscript(RelativeTimelock(10), (A,)).script
        third = CSVMultisigTapscript(RelativeTimelock(20), (B,)).script
        original = VtxoScript([first, second, third])
        reordered = VtxoScript([third, first, second])
        assert original != reordered
        assert original.tweaked_public_key != reordered.tweaked_public_key

    def test_control_blocks_commit_to_output_key(self) -> None:
        script = VHTLCScript(
            A,
            B,
            S,
            hash160(b"preimage"),
            800_000,
            RelativeTimelock(10),
            RelativeTimelock(20),
            RelativeTimelock(30),
        )
        for leaf in script.leaves:
            root = leaf.control_block.merkle_root(leaf.script)
            output_key, parity = taproot_tweak_pubkey(TAPROOT_UNSPENDABLE_KEY, root)
            assert output_key == script.tweaked_public_key
            assert parity == leaf.control_block.parity

    def test_find_leaf(self) -> None:
        script = DefaultVtxoScript(A, S)
        assert script.find_leaf(script.exit_script.hex()).script == script.exit_script
        with pytest.raises(ValueError, match="not found"):
            script.find_leaf(b"\x51")

    def test_exit_paths(self) -> None:
        script = DefaultVtxoScript(A, S, RelativeTimelock(512, TimelockType.SECONDS))
        paths = script.exit_paths()
        assert len(paths) == 1
        assert paths[0].timelock == RelativeTimelock(512, TimelockType.SECONDS)

    def test_delegate_leaf(self) -> None:
        script = DefaultVtxoScript(A, S, delegate_pub_key=B)
        assert script.has_delegate()
        assert len(script.scripts) == 3
        assert not DefaultVtxoScript(A, S).has_delegate()

    def test_empty_leaf_rejected(self) -> None:
        with pytest.raises(ValueError):
            VtxoScript([b""])
        with pytest.raises(ValueError):
            VtxoScript([])

    def test_truncated_tap_tree(self) -> None:
        encoded = DefaultVtxoScript(A, S).encode()
        with pytest.raises(ScriptParseError):
            decode_tap_tree(encoded[:-1])

    def test_vhtlc_rejects_zero_delay(self) -> None:
        with pytest.raises(ValueError):
            VHTLCScript(
                A,
                B,
                S,
                hash160(b"x"),
                800_000,
                RelativeTimelock(0),
                RelativeTimelock(20),
                RelativeTimelock(30),
            )

    def test_arkade_leaf_appends_tweaked_key(self) -> None:
        program = b"\xc4\xc6"
        introspector = bytes.fromhex(
            "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
        )
        leaf = ArkadeLeaf(program, MultisigTapscript((A,)))
        exit_script = CSVMultisigTapscript(RelativeTimelock(5), (A,)).script
        script = ArkadeVtxoScript([leaf, exit_script], introspector)
        decoded = decode_tapscript(script.scripts[0])
        assert decoded.pubkeys == (A, arkade_script_tweak(introspector, program))
        assert script.arkade_scripts[0] == program


class TestArkAddress:
    """Tests for Ark and segwit addresses."""

    def test_roundtrip(self) -> None:
        script = DefaultVtxoScript(A, S)
        address = script.address("tark", S)
        encoded = address.encode()
        assert encoded.startswith("tark1")
        decoded = ArkAddress.decode(encoded)
        assert decoded == address
        assert decoded.pk_script == script.pk_script
        assert decoded.subdust_pk_script == b"\x6a\x20" + script.tweaked_public_key

    def test_bad_checksum(self) -> None:
        encoded = DefaultVtxoScript(A, S).address("ark", S).encode()
        tampered = encoded[:-1] + ("q" if encoded[-1] != "q" else "p")
        with pytest.raises(AddressError):
            ArkAddress.decode(tampered)

    def test_segwit_roundtrip(self) -> None:
        script = DefaultVtxoScript(A, S)
        address = script.onchain_address("regtest")
        assert address.startswith("bcrt1p")
        assert address_to_script(address) == script.pk_script

    def test_p2wpkh(self) -> None:
        script = b"\x00\x14" + b"\x01" * 20
        assert address_to_script(script_to_address(script, "testnet")) == script
