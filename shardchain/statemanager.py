"""Sharded state: routes keys to shards, applies transactions, computes the global root."""

from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol, Sequence

from .block import Block
from .hashing import calculate_hash, calculate_shard_hint
from .merkle import build_merkle_tree
from .shard import NUM_SHARDS, Shard
from .transaction import Transaction

__all__ = [
    "StateError",
    "StateBackend",
    "StateManager",
    "encode_nonce",
    "decode_nonce",
]

log = logging.getLogger(__name__)

_UINT64_LIMIT = 1 << 64


class StateError(Exception):
    """Raised when state cannot be read, written or transitioned."""


def encode_nonce(value: int) -> bytes:
    """Encode an unsigned 64-bit integer as 8 big-endian bytes."""
    if not 0 <= value < _UINT64_LIMIT:
        raise StateError(f"value {value} does not fit in an unsigned 64-bit integer")
    return value.to_bytes(8, "big")


def decode_nonce(data: bytes) -> int:
    """Decode bytes written by :func:`encode_nonce`."""
    if data is None or len(data) != 8:
        raise StateError("stored nonce is not an 8-byte unsigned integer")
    return int.from_bytes(data, "big")


class StateBackend(Protocol):
    """What the blockchain needs from the state layer."""

    def apply_block(self, block: Block) -> None:
        """Apply a block's transactions to the committed state."""

    def global_state_root(self) -> bytes:
        """Return the root hash over all shards."""

    def num_shards(self) -> int:
        """Return the number of shards."""

    def get(self, key: str) -> Optional[bytes]:
        """Return the committed value for ``key``."""

    def simulate_apply_transactions(self, transactions: Sequence[Transaction]) -> bytes:
        """Return the root that applying ``transactions`` would produce."""


def _short_id(tx: Optional[Transaction]) -> str:
    return (tx.id[:4].hex() if tx is not None and tx.id else "")


class StateManager:
    """The state, split over :data:`NUM_SHARDS` shards."""

    def __init__(self) -> None:
        self.shards: dict[int, Shard] = {i: Shard(i) for i in range(NUM_SHARDS)}
        self._lock = threading.RLock()
        log.info("Initialized State Manager with %d shards", NUM_SHARDS)

    @classmethod
    def _with_shards(cls, shards: dict[int, Shard]) -> "StateManager":
        manager = cls.__new__(cls)
        manager.shards = shards
        manager._lock = threading.RLock()
        return manager

    def snapshot(self) -> "StateManager":
        """Return an independent copy of the whole state."""
        with self._lock:
            copies = {}
            for shard_id, shard in self.shards.items():
                try:
                    copies[shard_id] = shard.copy()
                except RuntimeError as exc:
                    raise StateError(f"failed to copy shard {shard_id} during snapshot: {exc}") from exc
        log.debug("Created StateManager snapshot.")
        return self._with_shards(copies)

    def apply_block(self, block: Optional[Block]) -> None:
        """Apply the block's transactions in order to the committed state.

        Transactions applied before a failing one stay applied.
        """
        if block is None:
            raise StateError("cannot apply nil block")
        height = block.header.height
        log.debug("ApplyBlock %d: Applying %d txs to committed state...", height, len(block.transactions))
        with self._lock:
            for index, tx in enumerate(block.transactions):
                try:
                    self._apply_transaction(tx)
                except StateError as exc:
                    log.error(
                        "CRITICAL: Failed to apply transaction %d (%s) in block %d: %s. "
                        "BLOCK APPLICATION FAILED. STATE MAY BE INCONSISTENT.",
                        index,
                        _short_id(tx),
                        height,
                        exc,
                    )
                    raise StateError(
                        f"block {height} application failed at tx {index} ({_short_id(tx)}): {exc}"
                    ) from exc
        log.debug(
            "Successfully applied all state changes for block %d (%s)",
            height,
            (block.hash or b"")[:6].hex(),
        )

    def global_state_root(self) -> bytes:
        """Return the Merkle root over the shard roots, in shard order."""
        with self._lock:
            if not self.shards:
                return calculate_hash(b"")
            if len(self.shards) != NUM_SHARDS:
                raise RuntimeError(
                    f"StateManager has {len(self.shards)} shards, but NUM_SHARDS is {NUM_SHARDS}"
                )
            try:
                roots = [self.shards[i].state_root() for i in range(NUM_SHARDS)]
            except KeyError as exc:
                raise RuntimeError(f"shard {exc.args[0]} not found") from exc
        return build_merkle_tree(roots).hash

    def num_shards(self) -> int:
        return NUM_SHARDS

    def get(self, key: str) -> Optional[bytes]:
        """Return the committed value for ``key``, or ``None``."""
        with self._lock:
            try:
                shard = self._shard_for(key)
            except StateError:
                return None
        return shard.get(key)

    def simulate_apply_transactions(self, transactions: Sequence[Transaction]) -> bytes:
        """Apply ``transactions`` to a snapshot and return the resulting root."""
        txs = list(transactions)
        log.debug("[SIM] Creating snapshot for simulating %d txs...", len(txs))
        try:
            snapshot = self.snapshot()
        except StateError as exc:
            raise StateError(f"simulation failed: could not create state snapshot: {exc}") from exc
        for index, tx in enumerate(txs):
            try:
                snapshot._apply_transaction(tx)
            except StateError as exc:
                log.warning("[SIM] Simulation failed applying tx %d (%s) to snapshot: %s", index, _short_id(tx), exc)
                raise StateError(f"simulation failed applying tx {_short_id(tx)}: {exc}") from exc
        root = snapshot.global_state_root()
        log.debug("[SIM] Simulation successful. Predicted root from snapshot: %s", root[:4].hex())
        return root

    def put(self, key: str, value: Optional[bytes]) -> None:
        """Write ``value`` under ``key`` in its shard."""
        with self._lock:
            shard = self._shard_for(key)
        shard.put(key, value)

    def delete(self, key: str) -> None:
        """Remove ``key`` from its shard."""
        with self._lock:
            shard = self._shard_for(key)
        shard.delete(key)

    def _shard_for(self, key: str) -> Shard:
        try:
            shard_id = calculate_shard_hint(key, NUM_SHARDS)
        except ValueError as exc:
            raise StateError(f"failed to determine shard for key '{key}': {exc}") from exc
        shard = self.shards.get(shard_id)
        if shard is None:
            raise StateError(f"internal error: shard {shard_id} instance not found (key: {key})")
        return shard

    def _apply_transaction(self, tx: Optional[Transaction]) -> None:
        if tx is None:
            raise StateError("cannot apply nil transaction")
        if not tx.sender:
            raise StateError("transaction has empty 'From' address")
        nonce_key = tx.sender + "_nonce"
        target_shard = self._shard_for(tx.to)
        nonce_shard = self._shard_for(nonce_key)

        stored = nonce_shard.get(nonce_key)
        current = 0 if stored is None else decode_nonce(stored)
        if tx.nonce != current:
            raise StateError(
                f"invalid nonce for tx {_short_id(tx)} from {tx.sender}: "
                f"expected {current}, got {tx.nonce}"
            )

        value = bytes(tx.data) if tx.data else encode_nonce(tx.value)
        target_shard.put(tx.to, value)
        nonce_shard.put(nonce_key, encode_nonce(current + 1))