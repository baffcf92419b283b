"""Binary Merkle tree over byte strings, with path proofs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .hashing import calculate_hash

__all__ = [
    "MerkleNode",
    "MerkleProof",
    "build_merkle_tree",
    "verify_proof",
    "find_merkle_path",
]

log = logging.getLogger(__name__)


@dataclass
class MerkleNode:
    """A node of a Merkle tree; leaves have no children."""

    hash: bytes
    left: Optional["MerkleNode"] = None
    right: Optional["MerkleNode"] = None

    @classmethod
    def leaf(cls, data: bytes) -> "MerkleNode":
        """Make a leaf holding the hash of ``data``."""
        return cls(hash=calculate_hash(data))

    @classmethod
    def join(cls, left: "MerkleNode", right: "MerkleNode") -> "MerkleNode":
        """Make an internal node over two children."""
        return cls(hash=calculate_hash(left.hash + right.hash), left=left, right=right)

    @property
    def is_leaf(self) -> bool:
        return self.left is None and self.right is None


@dataclass
class MerkleProof:
    """Sibling hashes along a path, and whether the path node was the left child."""

    siblings: list[bytes] = field(default_factory=list)
    is_left: list[bool] = field(default_factory=list)


def build_merkle_tree(data: Sequence[bytes]) -> MerkleNode:
    """Build a tree over ``data`` and return its root.

    An odd level is padded by repeating its last node. Empty input gives
    a single leaf over empty data.
    """
    if not data:
        log.info("Creating Merkle tree with no data")
        return MerkleNode.leaf(b"")

    nodes = [MerkleNode.leaf(datum) for datum in data]
    while len(nodes) > 1:
        if len(nodes) % 2:
            nodes.append(nodes[-1])
        pairs = zip(nodes[::2], nodes[1::2])
        nodes = [MerkleNode.join(left, right) for left, right in pairs]
    return nodes[0]


def verify_proof(leaf_hash: bytes, root_hash: Optional[bytes], proof: MerkleProof) -> bool:
    """Fold ``leaf_hash`` with the proof's siblings and compare to ``root_hash``."""
    if len(proof.siblings) != len(proof.is_left):
        log.error("Proof siblings count does not match position info count")
        return False
    if root_hash is None:
        return not proof.siblings and leaf_hash == calculate_hash(b"")
    if not proof.siblings:
        return leaf_hash == root_hash

    current = leaf_hash
    for step, (sibling, on_left) in enumerate(zip(proof.siblings, proof.is_left)):
        combined = current + sibling if on_left else sibling + current
        current = calculate_hash(combined)
        log.debug("Proof Step %d: Combined hash %s", step, current.hex())
    log.debug("Final calculated hash: %s, Expected root: %s", current.hex(), root_hash.hex())
    return current == root_hash


def find_merkle_path(root: Optional[MerkleNode], leaf_hash: bytes) -> tuple[MerkleProof, bool]:
    """Find the leaf with ``leaf_hash`` and return its proof and whether it was found.

    The siblings are ordered from the top of the tree down to the leaf.
    """
    proof = MerkleProof()

    def find(node: Optional[MerkleNode]) -> bool:
        if node is None:
            return False
        if node.is_leaf:
            return node.hash == leaf_hash
        if find(node.left):
            if node.right is not None:
                proof.siblings.append(node.right.hash)
                proof.is_left.append(True)
            else:
                log.warning("Potentially missing right sibling during path generation")
            return True
        if find(node.right):
            if node.left is not None:
                proof.siblings.append(node.left.hash)
                proof.is_left.append(False)
            else:
                log.warning("Potentially missing left sibling during path generation")
            return True
        return False

    found = find(root)
    if not found:
        return MerkleProof(), False
    proof.siblings.reverse()
    proof.is_left.reverse()
    return proof, True