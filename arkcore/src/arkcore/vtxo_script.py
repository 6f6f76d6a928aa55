"""
VTXO script trees.

A ``VtxoScript`` is an ordered list of tapscript leaves committed to a taproot
output whose internal key is the unspendable point ``H``, so VTXOs can only be
spent through one of their leaves. Leaf order is part of the canonical form:
reordering leaves changes the tree shape and therefore the output key.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Union

from arkcore.address import ArkAddress, script_to_address
from arkcore.constants import (
    CURVE_ORDER,
    DEFAULT_EXIT_DELAY_BLOCKS,
    TAP_LEAF_VERSION,
    TAPROOT_UNSPENDABLE_KEY,
)
from arkcore.crypto import (
    int_from_bytes,
    lift_x,
    point_add,
    point_x,
    scalar_base_mul,
    tagged_hash,
    x_only,
)
from arkcore.script import Opcode, ScriptParseError, encode_script
from arkcore.tapscript import (
    CLTVMultisigTapscript,
    ConditionCSVMultisigTapscript,
    ConditionMultisigTapscript,
    CSVMultisigTapscript,
    MultisigTapscript,
    RelativeTimelock,
    Tapscript,
    TimelockType,
)
from arkcore.taproot import TapLeafScript, build_taproot
from arkcore.transaction import TransactionError, encode_bytes, read_varint


class VtxoScript:
    """
    Taproot script tree with the unspendable internal key.

    Args:
        scripts: Non-empty list of leaf scripts, in canonical order
    """

    def __init__(self, scripts: list[bytes]):
        if not scripts:
            raise ValueError("VtxoScript needs at least one leaf")
        for script in scripts:
            if not script:
                raise ValueError("Empty leaf script")
        self.scripts: tuple[bytes, ...] = tuple(bytes(s) for s in scripts)
        output = build_taproot(TAPROOT_UNSPENDABLE_KEY, list(self.scripts))
        self.leaves: list[TapLeafScript] = output.leaves
        self.tweaked_public_key: bytes = output.output_key
        self.merkle_root: bytes = output.merkle_root
        self.internal_key: bytes = output.internal_key

    def __eq__(self, other: object) -> bool:
        return isinstance(other, VtxoScript) and self.scripts == other.scripts

    def __hash__(self) -> int:
        return hash(self.scripts)

    def __repr__(self) -> str:
        key = self.tweaked_public_key.hex()
        return f"{type(self).__name__}(leaves={len(self.scripts)}, key={key})"

    @property
    def pk_script(self) -> bytes:
        return b"\x51\x20" + self.tweaked_public_key

    def encode(self) -> bytes:
        """PSBT tap tree encoding: depth(1) | leaf version | compact size | script per leaf."""
        return b"".join(bytes([1, TAP_LEAF_VERSION]) + encode_bytes(s) for s in self.scripts)

    @classmethod
    def decode(cls, tap_tree: bytes) -> VtxoScript:
        return VtxoScript(decode_tap_tree(tap_tree))

    def address(self, hrp: str, server_pubkey: bytes) -> ArkAddress:
        return ArkAddress(x_only(server_pubkey), self.tweaked_public_key, hrp)

    def onchain_address(self, network: str = "mainnet") -> str:
        return script_to_address(self.pk_script, network)

    def find_leaf(self, script: bytes | str) -> TapLeafScript:
        """
        Find the leaf for a script.

        Args:
            script: Leaf script bytes or hex

        Raises:
            ValueError: If the script is not a leaf of this tree
        """
        if isinstance(script, str):
            script = bytes.fromhex(script)
        for leaf in self.leaves:
            if leaf.script == script:
                return leaf
        raise ValueError(f"leaf '{script.hex()}' not found")

    def exit_paths(self) -> list[Union[CSVMultisigTapscript, ConditionCSVMultisigTapscript]]:
        """Leaves spendable unilaterally after a relative timelock."""
        paths: list[Union[CSVMultisigTapscript, ConditionCSVMultisigTapscript]] = []
        for script in self.scripts:
            for closure in (CSVMultisigTapscript, ConditionCSVMultisigTapscript):
                try:
                    paths.append(closure.decode(script))
                    break
                except (ScriptParseError, ValueError):
                    continue
        return paths


def decode_tap_tree(tap_tree: bytes) -> list[bytes]:
    """
    Parse the PSBT tap tree encoding into leaf scripts.

    Raises:
        ScriptParseError: On truncated data or unsupported leaf versions
    """
    scripts: list[bytes] = []
    offset = 0
    while offset < len(tap_tree):
        if offset + 2 > len(tap_tree):
            raise ScriptParseError("Truncated tap tree leaf header")
        leaf_version = tap_tree[offset + 1]
        if leaf_version & 0xFE != TAP_LEAF_VERSION:
            raise ScriptParseError(f"Unsupported leaf version {leaf_version:#x}")
        try:
            length, offset = read_varint(tap_tree, offset + 2)
        except TransactionError as e:
            raise ScriptParseError(f"Truncated tap tree: {e}") from e
        if offset + length > len(tap_tree):
            raise ScriptParseError(
                f"Truncated tap tree leaf: need {length} bytes, have {len(tap_tree) - offset}"
            )
        scripts.append(bytes(tap_tree[offset : offset + length]))
        offset += length
    if not scripts:
        raise ScriptParseError("Empty tap tree")
    return scripts


class DefaultVtxoScript(VtxoScript):
    """
    Default VTXO: forfeit = (owner + server), exit = owner after a CSV delay.

    An optional delegate leaf (owner + delegate + server) lets a delegate
    renew the VTXO on the owner's behalf.
    """

    DEFAULT_TIMELOCK = RelativeTimelock(DEFAULT_EXIT_DELAY_BLOCKS, TimelockType.BLOCKS)

    def __init__(
        self,
        pub_key: bytes,
        server_pub_key: bytes,
        csv_timelock: RelativeTimelock | None = None,
        delegate_pub_key: bytes | None = None,
    ):
        self.pub_key = x_only(pub_key)
        self.server_pub_key = x_only(server_pub_key)
        self.csv_timelock = csv_timelock or self.DEFAULT_TIMELOCK

        self.forfeit_script = MultisigTapscript((self.pub_key, self.server_pub_key)).script
        self.exit_script = CSVMultisigTapscript(self.csv_timelock, (self.pub_key,)).script
        scripts = [self.forfeit_script, self.exit_script]

        self.delegate_script: bytes | None = None
        if delegate_pub_key is not None:
            self.delegate_script = MultisigTapscript(
                (self.pub_key, x_only(delegate_pub_key), self.server_pub_key)
            ).script
            scripts.append(self.delegate_script)

        super().__init__(scripts)

    def forfeit(self) -> TapLeafScript:
        return self.find_leaf(self.forfeit_script)

    def exit(self) -> TapLeafScript:
        return self.find_leaf(self.exit_script)

    def has_delegate(self) -> bool:
        return self.delegate_script is not None

    def delegate(self) -> TapLeafScript:
        if self.delegate_script is None:
            raise ValueError("Delegator not configured")
        return self.find_leaf(self.delegate_script)


def preimage_condition(preimage_hash: bytes) -> bytes:
    """HASH160 <hash> EQUAL"""
    if len(preimage_hash) != 20:
        raise ValueError(f"Preimage hash must be 20 bytes, got {len(preimage_hash)}")
    return encode_script([Opcode.OP_HASH160, preimage_hash, Opcode.OP_EQUAL])


class VHTLCScript(VtxoScript):
    """
    Virtual hash time lock contract.

    Collaborative leaves (with server): claim, refund, refund_without_receiver.
    Unilateral leaves: unilateral_claim, unilateral_refund,
    unilateral_refund_without_receiver.
    """

    def __init__(
        self,
        sender: bytes,
        receiver: bytes,
        server: bytes,
        preimage_hash: bytes,
        refund_locktime: int,
        unilateral_claim_delay: RelativeTimelock,
        unilateral_refund_delay: RelativeTimelock,
        unilateral_refund_without_receiver_delay: RelativeTimelock,
    ):
        if refund_locktime <= 0:
            raise ValueError("refund locktime must be greater than 0")
        for name, delay in (
            ("unilateral claim delay", unilateral_claim_delay),
            ("unilateral refund delay", unilateral_refund_delay),
            ("unilateral refund without receiver delay", unilateral_refund_without_receiver_delay),
        ):
            if delay.value <= 0:
                raise ValueError(f"{name} must be greater than 0")

        self.sender = x_only(sender)
        self.receiver = x_only(receiver)
        self.server = x_only(server)
        self.preimage_hash = preimage_hash
        self.refund_locktime = refund_locktime
        self.unilateral_claim_delay = unilateral_claim_delay
        self.unilateral_refund_delay = unilateral_refund_delay
        self.unilateral_refund_without_receiver_delay = unilateral_refund_without_receiver_delay

        condition = preimage_condition(preimage_hash)
        self.claim_script = ConditionMultisigTapscript(
            condition, (self.receiver, self.server)
        ).script
        self.refund_script = MultisigTapscript((self.sender, self.receiver, self.server)).script
        self.refund_without_receiver_script = CLTVMultisigTapscript(
            refund_locktime, (self.sender, self.server)
        ).script
        self.unilateral_claim_script = ConditionCSVMultisigTapscript(
            condition, unilateral_claim_delay, (self.receiver,)
        ).script
        self.unilateral_refund_script = CSVMultisigTapscript(
            unilateral_refund_delay, (self.sender, self.receiver)
        ).script
        self.unilateral_refund_without_receiver_script = CSVMultisigTapscript(
            unilateral_refund_without_receiver_delay, (self.sender,)
        ).script

        super().__init__(
            [
                self.claim_script,
                self.refund_script,
                self.refund_without_receiver_script,
                self.unilateral_claim_script,
                self.unilateral_refund_script,
                self.unilateral_refund_without_receiver_script,
            ]
        )

    def claim(self) -> TapLeafScript:
        return self.find_leaf(self.claim_script)

    def refund(self) -> TapLeafScript:
        return self.find_leaf(self.refund_script)

    def refund_without_receiver(self) -> TapLeafScript:
        return self.find_leaf(self.refund_without_receiver_script)

    def unilateral_claim(self) -> TapLeafScript:
        return self.find_leaf(self.unilateral_claim_script)

    def unilateral_refund(self) -> TapLeafScript:
        return self.find_leaf(self.unilateral_refund_script)

    def unilateral_refund_without_receiver(self) -> TapLeafScript:
        return self.find_leaf(self.unilateral_refund_without_receiver_script)


ARKADE_SCRIPT_TAG = "ArkScriptHash"


def arkade_script_hash(program: bytes) -> bytes:
    return tagged_hash(ARKADE_SCRIPT_TAG, program)


def arkade_script_tweak(introspector_pubkey: bytes, program: bytes) -> bytes:
    """
    Bind an Arkade program to the introspector key.

    Returns lift_x(introspector) + tagged_hash("ArkScriptHash", program) * G as
    an x-only key. This is a plain point addition, not a taproot tweak.
    """
    scalar = int_from_bytes(arkade_script_hash(program)) % CURVE_ORDER or 1
    point = lift_x(x_only(introspector_pubkey))
    return point_x(point_add(point, scalar_base_mul(scalar)))


class ArkadeLeaf:
    """A tapscript leaf whose signer set is extended with an Arkade program key."""

    def __init__(self, arkade_script: bytes, tapscript: Tapscript):
        self.arkade_script = arkade_script
        self.tapscript = tapscript


class ArkadeVtxoScript(VtxoScript):
    """
    VtxoScript supporting Arkade leaves.

    For every ``ArkadeLeaf`` the introspector key tweaked with the program hash
    is appended to the leaf's pubkeys. Plain ``bytes`` leaves pass through.
    ``arkade_scripts`` maps leaf index to program.
    """

    def __init__(self, scripts: list[Union[ArkadeLeaf, bytes]], introspector_pubkey: bytes):
        processed: list[bytes] = []
        arkade_scripts: dict[int, bytes] = {}
        for item in scripts:
            if isinstance(item, ArkadeLeaf):
                tweaked = arkade_script_tweak(introspector_pubkey, item.arkade_script)
                pubkeys = tuple(item.tapscript.pubkeys) + (tweaked,)
                modified = replace(item.tapscript, pubkeys=pubkeys)
                arkade_scripts[len(processed)] = item.arkade_script
                processed.append(modified.script)
            else:
                processed.append(item)
        self.arkade_scripts = arkade_scripts
        super().__init__(processed)
