"""The chain of blocks, the memory pool, and the checks that guard both."""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Optional

from .block import Block
from .statemanager import StateBackend, StateError, decode_nonce
from .transaction import Transaction

__all__ = ["ChainError", "PoolError", "TransactionPool", "Blockchain"]

log = logging.getLogger(__name__)


class ChainError(Exception):
    """Raised when a block or the chain itself is rejected."""


class PoolError(ChainError):
    """Raised when a transaction is not admitted to the memory pool."""


def _current_nonce(state: StateBackend, address: str) -> int:
    stored = state.get(address + "_nonce")
    return 0 if stored is None else decode_nonce(stored)


def _short(data: Optional[bytes], length: int = 4) -> str:
    return (data or b"")[:length].hex()


class TransactionPool:
    """Transactions waiting to be included in a block, keyed by id."""

    def __init__(self) -> None:
        self._pending: dict[str, Transaction] = {}
        self._lock = threading.RLock()

    def add(self, tx: Optional[Transaction]) -> None:
        """Add ``tx``; raise :class:`PoolError` if it is unusable or already present."""
        if tx is None or not tx.id:
            raise PoolError("cannot add nil transaction or transaction with nil ID")
        key = tx.id.hex()
        with self._lock:
            if key in self._pending:
                raise PoolError(f"transaction {key} already in pool")
            self._pending[key] = tx
            size = len(self._pending)
        log.debug("TxPool Add: Added %s... (Nonce %d) Pool size now %d", key[:8], tx.nonce, size)

    def remove(self, transactions: Iterable[Optional[Transaction]]) -> int:
        """Drop the given transactions from the pool; return how many were present."""
        removed = 0
        with self._lock:
            for tx in transactions:
                if tx is None or not tx.id:
                    continue
                if self._pending.pop(tx.id.hex(), None) is not None:
                    removed += 1
            size = len(self._pending)
        if removed:
            log.debug("TxPool: Removed %d confirmed transactions (Pool size: %d)", removed, size)
        return removed

    def pending(self, max_count: int, state: Optional[StateBackend]) -> list[Transaction]:
        """Return up to ``max_count`` transactions whose nonces follow the committed state.

        Transactions are considered in the order they entered the pool; a
        sender's transactions are taken only while their nonces run on
        without a gap.
        """
        if state is None:
            log.error("TxPool GetPending: Called without state manager, cannot check nonces.")
            return []
        with self._lock:
            candidates = list(self._pending.values())
        log.debug(
            "TxPool GetPending: Called. Pool size: %d. Max count: %d. Checking nonces...",
            len(candidates),
            max_count,
        )
        if max_count <= 0 or not candidates:
            return []

        executable: list[Transaction] = []
        next_nonce: dict[str, Optional[int]] = {}
        for tx in candidates:
            if tx is None or not tx.sender:
                continue
            if len(executable) >= max_count:
                break
            if tx.sender in next_nonce:
                expected = next_nonce[tx.sender]
                if expected is None:
                    continue
            else:
                try:
                    expected = _current_nonce(state, tx.sender)
                except StateError as exc:
                    log.error(
                        "TxPool GetPending: Failed decode nonce for %s, skipping sender's txs: %s",
                        tx.sender,
                        exc,
                    )
                    next_nonce[tx.sender] = None
                    continue
                next_nonce[tx.sender] = expected
            if tx.nonce == expected:
                executable.append(tx)
                next_nonce[tx.sender] = expected + 1
                log.debug("TxPool GetPending: Including Tx %s... (Nonce %d)", _short(tx.id), tx.nonce)
            else:
                log.debug(
                    "TxPool GetPending: Skipping Tx %s... (Nonce %d != Expected %d)",
                    _short(tx.id),
                    tx.nonce,
                    expected,
                )
        log.debug("TxPool GetPending: Returning %d executable transactions.", len(executable))
        return executable

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


class Blockchain:
    """An append-only list of validated blocks over a state backend."""

    def __init__(self, state: Optional[StateBackend], genesis: Optional[Block], node_id: str = "") -> None:
        if state is None:
            raise ChainError("state manager cannot be nil")
        if genesis is None:
            raise ChainError("genesis block cannot be nil")
        initial_root = state.global_state_root()
        if genesis.header.state_root != initial_root:
            log.error(
                "[%s] Genesis block state root (%s) does not match initial state manager root (%s)",
                node_id,
                genesis.header.state_root.hex(),
                initial_root.hex(),
            )
            raise ChainError(
                f"genesis state root mismatch (Header: {genesis.header.state_root.hex()}, "
                f"Calculated: {initial_root.hex()}). Ensure initial state is correct."
            )
        self.node_id = node_id
        self.genesis = genesis
        self.blocks: list[Block] = [genesis]
        self.tx_pool = TransactionPool()
        self._state = state
        self._lock = threading.RLock()
        log.info(
            "[%s] Blockchain initialized. Genesis: %s, Height: %d",
            node_id,
            (genesis.hash or b"").hex(),
            genesis.header.height,
        )

    def _check_admission(self, tx: Transaction) -> None:
        if not tx.sender:
            raise PoolError("transaction has empty 'From' address")
        try:
            current = _current_nonce(self._state, tx.sender)
        except StateError as exc:
            log.error("[%s] Mempool Validation: Failed to decode nonce for address %s: %s", self.node_id, tx.sender, exc)
            raise PoolError(f"failed to decode current nonce for sender {tx.sender}") from exc
        if tx.nonce != current:
            raise PoolError(f"invalid nonce for pool admission: expected {current}, got {tx.nonce}")

    def add_transaction(self, tx: Optional[Transaction]) -> None:
        """Verify ``tx`` and admit it to the pool; raise :class:`PoolError` otherwise."""
        if tx is None:
            raise PoolError("cannot add nil transaction to pool")
        if not tx.verify():
            raise PoolError("invalid transaction signature or data integrity")
        try:
            self._check_admission(tx)
        except PoolError as exc:
            log.warning("[%s] Tx %s... rejected from mempool: %s", self.node_id, _short(tx.id), exc)
            raise PoolError(f"transaction failed pool validation: {exc}") from exc
        try:
            self.tx_pool.add(tx)
        except PoolError as exc:
            if "already in pool" not in str(exc):
                log.warning("[%s] Failed to add Tx %s to pool: %s", self.node_id, tx.id.hex(), exc)
            raise
        log.debug(
            "[%s] Added Tx %s (Nonce %d) to mempool (Pool size: %d)",
            self.node_id,
            _short(tx.id),
            tx.nonce,
            len(self.tx_pool),
        )

    def pending_transactions(self, max_count: int) -> list[Transaction]:
        """Return up to ``max_count`` executable transactions from the pool."""
        return self.tx_pool.pending(max_count, self._state)

    def add_block(self, block: Optional[Block]) -> None:
        """Validate ``block``, apply it to the state and append it.

        Raises :class:`ChainError` if the block does not link to the tip,
        its hash or Merkle root is wrong, its transactions cannot be
        applied, or the resulting state root differs from the header's.
        """
        if block is None:
            raise ChainError("cannot add nil block")
        header = block.header
        block_hex = (block.hash or b"").hex()
        with self._lock:
            last = self.blocks[-1] if self.blocks else None
            if last is None and header.height != 0:
                raise ChainError(f"cannot add block {header.height} to empty chain (only genesis)")
            if last is not None:
                if header.prev_block_hash != last.hash:
                    raise ChainError(
                        f"[{self.node_id}] Block {header.height} ({block_hex}) links to invalid previous "
                        f"hash {header.prev_block_hash.hex()} (expected {(last.hash or b'').hex()})"
                    )
                if header.height != last.header.height + 1:
                    raise ChainError(
                        f"[{self.node_id}] Block {header.height} ({block_hex}) has invalid height "
                        f"(expected {last.header.height + 1})"
                    )
            calculated = block.calculate_hash()
            if block.hash != calculated:
                raise ChainError(
                    f"[{self.node_id}] Block {header.height} ({block_hex}) has inconsistent hash "
                    f"(header hash calculates to: {calculated.hex()})"
                )
            if not block.verify_structure():
                raise ChainError(
                    f"[{self.node_id}] Block {header.height} ({block_hex}) has invalid structure "
                    "(e.g., Merkle root mismatch)"
                )
            try:
                self._state.apply_block(block)
            except StateError as exc:
                raise ChainError(
                    f"[{self.node_id}] Block {header.height} ({block_hex}) failed state transition "
                    f"via state manager: {exc}"
                ) from exc
            new_root = self._state.global_state_root()
            if header.state_root != new_root:
                log.error(
                    "[%s] CRITICAL: Block %d (%s) State Root MISMATCH! Header: %s, Calculated After Apply: %s",
                    self.node_id,
                    header.height,
                    block_hex,
                    header.state_root.hex(),
                    new_root.hex(),
                )
                raise ChainError(
                    f"[{self.node_id}] Block {header.height} state root mismatch (header: "
                    f"{header.state_root.hex()}, calculated: {new_root.hex()}) - STATE MAY BE CORRUPT"
                )
            self.blocks.append(block)
        log.info(
            "[%s] === Appended Block %d (%s) | Prev: %s... | State: %s... | Txs: %d ===",
            self.node_id,
            header.height,
            _short(block.hash, 6),
            _short(header.prev_block_hash, 6),
            _short(header.state_root, 6),
            len(block.transactions),
        )
        self.tx_pool.remove(block.transactions)

    def last_block(self) -> Optional[Block]:
        """Return the tip of the chain."""
        with self._lock:
            return self.blocks[-1] if self.blocks else None

    def block_by_height(self, height: int) -> Optional[Block]:
        """Return the block at ``height``, or ``None``."""
        with self._lock:
            if 0 <= height < len(self.blocks):
                return self.blocks[height]
            return None

    def block_by_hash(self, block_hash: bytes) -> Optional[Block]:
        """Return the block whose hash is ``block_hash``, searching from the tip."""
        with self._lock:
            for block in reversed(self.blocks):
                if block is not None and block.hash == block_hash:
                    return block
            return None

    def height(self) -> int:
        """Return the tip's height, or -1 for an empty chain."""
        last = self.last_block()
        return -1 if last is None else last.header.height

    def num_shards(self) -> int:
        """Return the state backend's shard count."""
        return self._state.num_shards()