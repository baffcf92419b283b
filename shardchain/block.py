"""Blocks: a header, the transactions it commits to, and validator signatures."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .hashing import calculate_hash
from .merkle import build_merkle_tree
from .transaction import Transaction

__all__ = ["BlockHeader", "Block", "transaction_hashes"]

log = logging.getLogger(__name__)


def _length_prefixed(data: Optional[bytes]) -> bytes:
    data = bytes(data or b"")
    return len(data).to_bytes(4, "big") + data


def transaction_hashes(transactions: Iterable[Optional[Transaction]]) -> list[bytes]:
    """Return the ids of ``transactions`` in order."""
    hashes = []
    for index, tx in enumerate(transactions):
        if tx is None or not tx.id:
            raise ValueError(f"missing transaction or transaction id at index {index}")
        hashes.append(tx.id)
    return hashes


def _merkle_root(transactions: Iterable[Optional[Transaction]]) -> bytes:
    return build_merkle_tree(transaction_hashes(transactions)).hash


@dataclass
class BlockHeader:
    """Metadata of a block."""

    height: int
    timestamp: int
    prev_block_hash: bytes
    merkle_root: bytes
    state_root: bytes
    proposer: str
    vrf_output: Optional[bytes] = None
    vrf_proof: Optional[bytes] = None

    def encode(self) -> bytes:
        """Return the canonical byte encoding that the block hash covers."""
        return b"".join(
            (
                self.height.to_bytes(8, "big"),
                self.timestamp.to_bytes(8, "big", signed=True),
                _length_prefixed(self.prev_block_hash),
                _length_prefixed(self.merkle_root),
                _length_prefixed(self.state_root),
                _length_prefixed(self.proposer.encode("utf-8")),
                _length_prefixed(self.vrf_output),
                _length_prefixed(self.vrf_proof),
            )
        )


@dataclass
class Block:
    """A block of the chain. ``hash`` is set once the header is final."""

    header: BlockHeader
    transactions: list[Transaction] = field(default_factory=list)
    hash: Optional[bytes] = None
    signatures: dict[str, bytes] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        height: int,
        prev_hash: bytes,
        state_root: bytes,
        transactions: Iterable[Transaction],
        proposer: str,
    ) -> "Block":
        """Make an unhashed block stamped with the current time."""
        txs = list(transactions)
        header = BlockHeader(
            height=height,
            timestamp=time.time_ns(),
            prev_block_hash=bytes(prev_hash),
            merkle_root=_merkle_root(txs),
            state_root=bytes(state_root),
            proposer=proposer,
        )
        return cls(header=header, transactions=txs)

    def calculate_hash(self) -> bytes:
        """Hash the header."""
        return calculate_hash(self.header.encode())

    def verify_structure(self) -> bool:
        """Check that the header's Merkle root matches the transactions."""
        try:
            expected = _merkle_root(self.transactions)
        except ValueError as exc:
            log.warning("Block %d verify failed: %s", self.header.height, exc)
            return False
        if self.header.merkle_root != expected:
            log.warning(
                "Block %d (%s) verify failed: Merkle root mismatch (Header: %s, Calculated: %s)",
                self.header.height,
                (self.hash or b"").hex(),
                self.header.merkle_root.hex(),
                expected.hex(),
            )
            return False
        return True