"""A shard of the state: key/value pairs committed to by a sparse Merkle tree."""

from __future__ import annotations

import logging
import threading
from typing import Mapping, Optional

from .smt import KeyNotFoundError, SparseMerkleTree

__all__ = ["NUM_SHARDS", "Shard"]

log = logging.getLogger(__name__)

NUM_SHARDS = 4


class Shard:
    """One shard of the state, identified by ``id``."""

    def __init__(self, shard_id: int) -> None:
        self.id = shard_id
        self._tree = SparseMerkleTree()
        self._entries: dict[str, Optional[bytes]] = {}
        self._lock = threading.RLock()
        log.debug("Shard %d initialized with SMT root: %s", shard_id, self._tree.root().hex())

    def copy(self) -> "Shard":
        """Return an independent copy with the same contents and root."""
        with self._lock:
            clone = Shard.__new__(Shard)
            clone.id = self.id
            clone._tree = self._tree.copy()
            clone._entries = dict(self._entries)
            clone._lock = threading.RLock()
            original_root = self._tree.root()
        if clone._tree.root() != original_root:
            log.error(
                "Shard %d: Root hash mismatch after SMT copy! Original: %s, Copy: %s",
                self.id,
                original_root.hex(),
                clone._tree.root().hex(),
            )
            raise RuntimeError(f"SMT copy failed root verification for shard {self.id}")
        log.debug("Shard %d copied.", self.id)
        return clone

    def get(self, key: str) -> Optional[bytes]:
        """Return the value for ``key``, or ``None`` if absent or deleted."""
        with self._lock:
            try:
                return self._tree.get(key.encode("utf-8"))
            except KeyNotFoundError:
                return None

    def put(self, key: str, value: Optional[bytes]) -> None:
        """Insert or replace the value for ``key``."""
        stored = None if value is None else bytes(value)
        with self._lock:
            self._tree.update(key.encode("utf-8"), stored)
            self._entries[key] = stored

    def delete(self, key: str) -> None:
        """Remove the value for ``key``."""
        with self._lock:
            self._tree.delete(key.encode("utf-8"))
            self._entries[key] = None

    def state_root(self) -> bytes:
        """Return the root hash of the shard's tree."""
        with self._lock:
            return self._tree.root()

    def state_data(self) -> dict[str, bytes]:
        """Return a copy of every live key/value pair in the shard."""
        with self._lock:
            return {key: value for key, value in self._entries.items() if value is not None}

    def set_state(self, new_state: Mapping[str, bytes]) -> None:
        """Replace the shard's contents with ``new_state`` and rebuild its tree."""
        tree = SparseMerkleTree()
        entries: dict[str, Optional[bytes]] = {}
        for key, value in new_state.items():
            stored = None if value is None else bytes(value)
            tree.update(key.encode("utf-8"), stored)
            entries[key] = stored
        with self._lock:
            self._tree = tree
            self._entries = entries
        log.debug(
            "Shard %d: Rebuilt SMT state from map (%d items). New root: %s",
            self.id,
            len(entries),
            tree.root().hex(),
        )

    def __repr__(self) -> str:
        return f"Shard(id={self.id}, root={self.state_root()[:4].hex()}...)"