"""
BIP-341 Taproot helpers: leaf/branch hashing, tree construction, output key
tweaking and control blocks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from arkcore.constants import CURVE_ORDER, TAP_LEAF_VERSION
from arkcore.crypto import (
    CryptoError,
    has_even_y,
    int_from_bytes,
    lift_x,
    point_add,
    point_x,
    scalar_base_mul,
    tagged_hash,
)
from arkcore.transaction import encode_bytes


def tap_leaf_hash(script: bytes, leaf_version: int = TAP_LEAF_VERSION) -> bytes:
    return tagged_hash("TapLeaf", bytes([leaf_version]) + encode_bytes(script))


def tap_branch_hash(a: bytes, b: bytes) -> bytes:
    if b < a:
        a, b = b, a
    return tagged_hash("TapBranch", a + b)


@dataclass
class TapLeaf:
    script: bytes
    leaf_version: int = TAP_LEAF_VERSION

    @property
    def hash(self) -> bytes:
        return tap_leaf_hash(self.script, self.leaf_version)


@dataclass
class TapBranch:
    left: TapNode
    right: TapNode


TapNode = Union[TapLeaf, TapBranch]


@dataclass
class _Weighted:
    weight: int
    node: TapNode = field(compare=False)


def taproot_list_to_tree(leaves: list[TapLeaf]) -> TapNode:
    """
    Arrange leaves into a binary tree.

    The queue is stable-sorted by descending weight and the two last entries
    are joined until one node remains, so leaf order is part of the result:
    [L0, L1, L2] becomes [[L1, L2], L0].
    """
    if not leaves:
        raise ValueError("Cannot build a taproot tree without leaves")
    queue = [_Weighted(1, leaf) for leaf in leaves]
    while len(queue) >= 2:
        queue.sort(key=lambda w: w.weight, reverse=True)
        b = queue.pop()
        a = queue.pop()
        queue.append(_Weighted(a.weight + b.weight, TapBranch(a.node, b.node)))
    return queue[0].node


def node_hash(node: TapNode) -> bytes:
    if isinstance(node, TapLeaf):
        return node.hash
    return tap_branch_hash(node_hash(node.left), node_hash(node.right))


def merkle_paths(node: TapNode) -> list[tuple[TapLeaf, list[bytes]]]:
    """Every leaf of the tree with its merkle path (sibling hashes, deepest first)."""
    if isinstance(node, TapLeaf):
        return [(node, [])]
    left = merkle_paths(node.left)
    right = merkle_paths(node.right)
    left_hash = node_hash(node.left)
    right_hash = node_hash(node.right)
    return [(leaf, path + [right_hash]) for leaf, path in left] + [
        (leaf, path + [left_hash]) for leaf, path in right
    ]


def taproot_tweak_pubkey(internal_key: bytes, merkle_root: bytes = b"") -> tuple[bytes, int]:
    """
    Tweak an x-only internal key with a merkle root.

    Returns:
        (x-only output key, output key parity)
    """
    tweak = int_from_bytes(tagged_hash("TapTweak", internal_key + merkle_root))
    if tweak >= CURVE_ORDER:
        raise CryptoError("TapTweak out of range")
    output = point_add(lift_x(internal_key), scalar_base_mul(tweak))
    return point_x(output), 0 if has_even_y(output) else 1


@dataclass(frozen=True)
class ControlBlock:
    leaf_version: int
    parity: int
    internal_key: bytes
    merkle_path: tuple[bytes, ...] = ()

    def encode(self) -> bytes:
        return (
            bytes([self.leaf_version | self.parity])
            + self.internal_key
            + b"".join(self.merkle_path)
        )

    @classmethod
    def decode(cls, data: bytes) -> ControlBlock:
        if len(data) < 33 or (len(data) - 33) % 32 != 0 or len(data) > 33 + 128 * 32:
            raise ValueError(f"Invalid control block length: {len(data)}")
        path = tuple(data[33 + 32 * i : 65 + 32 * i] for i in range((len(data) - 33) // 32))
        return cls(data[0] & 0xFE, data[0] & 0x01, bytes(data[1:33]), path)

    def merkle_root(self, script: bytes) -> bytes:
        current = tap_leaf_hash(script, self.leaf_version)
        for sibling in self.merkle_path:
            current = tap_branch_hash(current, sibling)
        return current


@dataclass(frozen=True)
class TapLeafScript:
    """A leaf script with the control block proving its inclusion in the output key."""

    control_block: ControlBlock
    script: bytes
    leaf_version: int = TAP_LEAF_VERSION

    @property
    def leaf_hash(self) -> bytes:
        return tap_leaf_hash(self.script, self.leaf_version)


@dataclass
class TaprootOutput:
    internal_key: bytes
    output_key: bytes
    parity: int
    merkle_root: bytes
    leaves: list[TapLeafScript]

    @property
    def pk_script(self) -> bytes:
        return b"\x51\x20" + self.output_key


def build_taproot(internal_key: bytes, scripts: list[bytes]) -> TaprootOutput:
    """
    Commit scripts to a taproot output.

    Returns:
        TaprootOutput whose ``leaves`` follow the order of ``scripts``
    """
    tree = taproot_list_to_tree([TapLeaf(script) for script in scripts])
    root = node_hash(tree)
    output_key, parity = taproot_tweak_pubkey(internal_key, root)

    paths: dict[bytes, list[bytes]] = {}
    for leaf, path in merkle_paths(tree):
        paths.setdefault(leaf.script, path)

    leaves = [
        TapLeafScript(
            ControlBlock(TAP_LEAF_VERSION, parity, internal_key, tuple(paths[script])),
            script,
        )
        for script in scripts
    ]
    return TaprootOutput(internal_key, output_key, parity, root, leaves)
