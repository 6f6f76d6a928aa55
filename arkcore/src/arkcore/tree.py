"""
Transaction trees: the VTXO tree and the connectors tree of a batch.

The server ships a tree as a flat list of chunks, each naming its transaction
and, for every spent output index, the txid of the child spending it.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

from arkcore.psbt import Psbt, PsbtError


class TxTreeError(Exception):
    """Raised when a transaction tree is malformed."""

    pass


@dataclass
class TxTreeChunk:
    txid: str
    tx: str  # base64 PSBT
    children: dict[int, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> TxTreeChunk:
        children = {int(k): v for k, v in (data.get("children") or {}).items()}
        return cls(txid=data["txid"], tx=data["tx"], children=children)

    def to_dict(self) -> dict:
        return {
            "txid": self.txid,
            "tx": self.tx,
            "children": {str(k): v for k, v in self.children.items()},
        }


@dataclass
class TxTree:
    root: Psbt
    children: dict[int, TxTree] = field(default_factory=dict)

    @property
    def txid(self) -> str:
        return self.root.txid

    @classmethod
    def from_chunks(cls, chunks: list[TxTreeChunk]) -> TxTree:
        """
        Rebuild a tree from its chunks.

        Raises:
            TxTreeError: If there is not exactly one root, a child is missing,
                or a chunk does not decode
        """
        if not chunks:
            raise TxTreeError("empty chunks")
        by_txid: dict[str, TxTreeChunk] = {}
        for chunk in chunks:
            if chunk.txid in by_txid:
                raise TxTreeError(f"duplicate chunk {chunk.txid}")
            by_txid[chunk.txid] = chunk

        referenced = {child for chunk in chunks for child in chunk.children.values()}
        roots = [chunk.txid for chunk in chunks if chunk.txid not in referenced]
        if len(roots) != 1:
            raise TxTreeError(f"expected exactly one root, got {len(roots)}")

        def build(txid: str, seen: set[str]) -> TxTree:
            if txid in seen:
                raise TxTreeError(f"cycle detected at {txid}")
            seen.add(txid)
            chunk = by_txid.get(txid)
            if chunk is None:
                raise TxTreeError(f"missing chunk for child {txid}")
            try:
                psbt = Psbt.from_base64(chunk.tx)
            except PsbtError as e:
                raise TxTreeError(f"invalid tx for chunk {txid}: {e}") from e
            children = {index: build(child, seen) for index, child in chunk.children.items()}
            return cls(psbt, children)

        tree = build(roots[0], set())
        if sum(1 for _ in tree.iter_nodes()) != len(chunks):
            raise TxTreeError("some chunks are not reachable from the root")
        return tree

    def serialize(self) -> list[TxTreeChunk]:
        return [
            TxTreeChunk(
                txid=node.txid,
                tx=node.root.to_base64(),
                children={index: child.txid for index, child in node.children.items()},
            )
            for node in self.iter_nodes()
        ]

    def iter_nodes(self) -> Iterator[TxTree]:
        """Pre-order traversal of every node."""
        yield self
        for index in sorted(self.children):
            yield from self.children[index].iter_nodes()

    def leaves(self) -> list[Psbt]:
        return [node.root for node in self.iter_nodes() if not node.children]

    def find(self, txid: str) -> TxTree | None:
        for node in self.iter_nodes():
            if node.txid == txid:
                return node
        return None

    def update(self, txid: str, fn: Callable[[Psbt], None]) -> None:
        """Apply ``fn`` to the PSBT of node ``txid`` in place."""
        node = self.find(txid)
        if node is None:
            raise TxTreeError(f"tx not found: {txid}")
        fn(node.root)

    def subtree(self, txids: list[str]) -> TxTree:
        """
        Prune the tree to the branches leading to ``txids``.

        Raises:
            TxTreeError: If none of the txids is in the tree
        """
        wanted = set(txids)

        def prune(node: TxTree) -> TxTree | None:
            kept = {}
            for index, child in node.children.items():
                pruned = prune(child)
                if pruned is not None:
                    kept[index] = pruned
            if node.txid in wanted or kept:
                return TxTree(node.root, kept)
            return None

        result = prune(self)
        if result is None:
            raise TxTreeError("no requested txid found in tree")
        return result

    def validate(self) -> None:
        """
        Check the parent/child linkage of the whole tree.

        Every node has exactly one input. A child's input spends the parent's
        output at the child's index, and the child's outputs add up to that
        parent output.

        Raises:
            TxTreeError: On the first inconsistency
        """
        if len(self.root.tx.inputs) != 1:
            raise TxTreeError(f"unexpected number of inputs: {len(self.root.tx.inputs)}")
        outputs = self.root.tx.outputs
        for index, child in self.children.items():
            if index >= len(outputs):
                raise TxTreeError(f"output index {index} out of bounds for {self.txid}")
            child.validate()
            child_input = child.root.tx.inputs[0]
            if child_input.txid != self.txid or child_input.vout != index:
                raise TxTreeError(
                    f"input of child {child.txid} is not the output {index} of the parent"
                )
            child_total = sum(out.value for out in child.root.tx.outputs)
            if child_total != outputs[index].value:
                raise TxTreeError(
                    f"sum of child's outputs is not equal to the output of the parent: "
                    f"{child_total} != {outputs[index].value}"
                )
