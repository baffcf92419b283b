"""Sparse Merkle tree keyed by the SHA-256 of each key, with values at the leaves."""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

__all__ = [
    "SMT_DEPTH",
    "EMPTY_NODE_HASH",
    "KeyNotFoundError",
    "SMTProof",
    "SparseMerkleTree",
    "verify_smt_proof",
]

log = logging.getLogger(__name__)

SMT_DEPTH = 256
EMPTY_NODE_HASH = bytes(hashlib.sha256().digest_size)


class KeyNotFoundError(KeyError):
    """Raised when a key has never been written to the tree."""


@dataclass
class SMTProof:
    """Sibling hashes from the root (level 0) down, and the value found at the leaf."""

    siblings: list[bytes] = field(default_factory=list)
    value: Optional[bytes] = None


@dataclass
class _Node:
    hash: bytes = EMPTY_NODE_HASH
    value: Optional[bytes] = None
    left: Optional["_Node"] = None
    right: Optional["_Node"] = None


def _node_hash(node: Optional[_Node]) -> bytes:
    return EMPTY_NODE_HASH if node is None else node.hash


def _combine(left: Optional[bytes], right: Optional[bytes]) -> bytes:
    left_hash = EMPTY_NODE_HASH if left is None else left
    right_hash = EMPTY_NODE_HASH if right is None else right
    if left_hash == EMPTY_NODE_HASH and right_hash == EMPTY_NODE_HASH:
        return EMPTY_NODE_HASH
    return hashlib.sha256(left_hash + right_hash).digest()


def _leaf_hash(value: Optional[bytes]) -> bytes:
    if value is None:
        return EMPTY_NODE_HASH
    return hashlib.sha256(b"\x00" + value).digest()


def _path_bits(key: bytes) -> list[bool]:
    """Bits of the key's hash, most significant first; True means go right."""
    number = int.from_bytes(hashlib.sha256(bytes(key)).digest(), "big")
    return [bool((number >> (SMT_DEPTH - 1 - level)) & 1) for level in range(SMT_DEPTH)]


def _copy_node(node: Optional[_Node]) -> Optional[_Node]:
    if node is None:
        return None
    return _Node(
        hash=node.hash,
        value=node.value,
        left=_copy_node(node.left),
        right=_copy_node(node.right),
    )


class SparseMerkleTree:
    """A sparse Merkle tree of fixed depth 256.

    Deleting a key stores an empty leaf: the key is then still known to
    the tree, and :meth:`get` returns ``None`` for it.
    """

    def __init__(self) -> None:
        self._root: Optional[_Node] = None
        self._lock = threading.RLock()

    def root(self) -> bytes:
        """Return the root hash; an empty tree has the all-zero hash."""
        with self._lock:
            return _node_hash(self._root)

    def copy(self) -> "SparseMerkleTree":
        """Return an independent deep copy."""
        with self._lock:
            clone = SparseMerkleTree()
            clone._root = _copy_node(self._root)
            return clone

    def get(self, key: bytes) -> Optional[bytes]:
        """Return the value stored for ``key`` (``None`` if it was deleted).

        Raises :class:`KeyNotFoundError` if the key was never written.
        """
        bits = _path_bits(key)
        with self._lock:
            node = self._root
            for go_right in bits:
                if node is None:
                    break
                node = node.right if go_right else node.left
            if node is None:
                raise KeyNotFoundError("key not found in SMT")
            return node.value

    def update(self, key: bytes, value: Optional[bytes]) -> None:
        """Store ``value`` for ``key``; ``None`` empties the leaf."""
        bits = _path_bits(key)
        stored = None if value is None else bytes(value)
        with self._lock:
            if self._root is None:
                self._root = _Node()
            path: list[_Node] = []
            node = self._root
            for level, go_right in enumerate(bits):
                path.append(node)
                if level == SMT_DEPTH - 1:
                    child = _Node(hash=_leaf_hash(stored), value=stored)
                else:
                    existing = node.right if go_right else node.left
                    child = existing if existing is not None else _Node()
                if go_right:
                    node.right = child
                else:
                    node.left = child
                node = child
            for node in reversed(path):
                node.hash = _combine(_node_hash(node.left), _node_hash(node.right))

    def delete(self, key: bytes) -> None:
        """Empty the leaf for ``key``."""
        self.update(key, None)

    def generate_proof(self, key: bytes) -> SMTProof:
        """Return the inclusion or non-inclusion proof for ``key``."""
        bits = _path_bits(key)
        with self._lock:
            proof = SMTProof()
            node = self._root
            for go_right in bits:
                if node is None:
                    proof.siblings.append(EMPTY_NODE_HASH)
                    continue
                sibling = node.left if go_right else node.right
                proof.siblings.append(_node_hash(sibling))
                node = node.right if go_right else node.left
            proof.value = None if node is None else node.value
        if len(proof.siblings) != SMT_DEPTH:
            raise RuntimeError(
                f"generated proof has {len(proof.siblings)} siblings, expected {SMT_DEPTH}"
            )
        return proof

    def dump(self) -> str:
        """Return a readable listing of every node in the tree."""
        lines = ["--- SMT Structure ---"]
        with self._lock:
            stack: list[tuple[_Node, int, str]] = []
            if self._root is not None:
                stack.append((self._root, 0, ""))
            while stack:
                node, level, path = stack.pop()
                node_type, value_text = "I", ""
                if level == SMT_DEPTH:
                    node_type = "L"
                    value_text = (
                        " V: <nil>" if node.value is None else f" V: {node.value[:4].hex()}..."
                    )
                lines.append(
                    f"{'  ' * level}{path} [{node_type}] H: {node.hash[:4].hex()}...{value_text}"
                )
                if node.right is not None:
                    stack.append((node.right, level + 1, path + "1"))
                if node.left is not None:
                    stack.append((node.left, level + 1, path + "0"))
        lines.append("---------------------")
        return "\n".join(lines)


def verify_smt_proof(proof: Optional[SMTProof], root: bytes, key: bytes) -> bool:
    """Check that ``proof`` leads from ``key``'s leaf to ``root``."""
    if proof is None:
        log.error("VerifySMTProof failed: provided proof is nil")
        return False
    if len(proof.siblings) != SMT_DEPTH:
        log.error(
            "VerifySMTProof failed: proof contains %d siblings, expected %d",
            len(proof.siblings),
            SMT_DEPTH,
        )
        return False
    bits = _path_bits(key)
    current = _leaf_hash(proof.value)
    for level in reversed(range(SMT_DEPTH)):
        sibling = proof.siblings[level]
        current = _combine(sibling, current) if bits[level] else _combine(current, sibling)
    valid = current == root
    if valid:
        log.debug("VerifySMTProof successful for key %s...", bytes(key)[:4].hex())
    else:
        log.debug(
            "VerifySMTProof failed: Computed root %s != Expected root %s",
            current.hex(),
            bytes(root).hex(),
        )
    return valid