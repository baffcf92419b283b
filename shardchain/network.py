"""An in-process network that delivers transactions and blocks with random delays."""

from __future__ import annotations

import logging
import random
import threading
from typing import Any, Optional, Protocol

from .block import Block
from .transaction import Transaction

__all__ = ["NetworkError", "Broadcaster", "Network"]

log = logging.getLogger(__name__)


class NetworkError(Exception):
    """Raised when a node cannot be registered."""


class Broadcaster(Protocol):
    """What a node needs to send messages to its peers."""

    def broadcast_transaction(self, sender: Any, tx: Transaction) -> Any:
        """Send ``tx`` to every peer except ``sender``."""

    def broadcast_block(self, sender: Any, block: Block) -> Any:
        """Send ``block`` to every peer except ``sender``."""


class Network:
    """Registered nodes by id, and delayed delivery between them.

    Each delivery runs on its own daemon thread after a short random
    delay; the broadcast methods return those threads.
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._nodes: dict[str, Any] = {}
        self._lock = threading.RLock()
        self._rng = rng or random.Random()

    def register(self, node: Any) -> None:
        """Add ``node``; raise :class:`NetworkError` if it has no id or is known."""
        node_id = getattr(node, "id", "") if node is not None else ""
        if not node_id:
            raise NetworkError("cannot register nil node or node with empty ID")
        with self._lock:
            if node_id in self._nodes:
                log.warning("Node %s already registered in network.", node_id)
                raise NetworkError(f"node {node_id} already registered")
            self._nodes[node_id] = node
            total = len(self._nodes)
        log.info("Network: Registered node %s (Total: %d)", node_id, total)

    def unregister(self, node_id: str) -> None:
        """Remove the node with ``node_id`` if it is registered."""
        with self._lock:
            if self._nodes.pop(node_id, None) is None:
                return
            total = len(self._nodes)
        log.info("Network: Unregistered node %s (Total: %d)", node_id, total)

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        with self._lock:
            return node_id in self._nodes

    def _peers_of(self, sender: Any) -> list[Any]:
        with self._lock:
            return [node for node in self._nodes.values() if node.id != sender.id]

    def _deliver(self, receivers: list[Any], handler: str, item: Any, low_ms: int, high_ms: int) -> list[threading.Timer]:
        timers = []
        for receiver in receivers:
            delay = self._rng.randint(low_ms, high_ms) / 1000
            timer = threading.Timer(delay, getattr(receiver, handler), args=(item,))
            timer.daemon = True
            timer.start()
            timers.append(timer)
        return timers

    def broadcast_transaction(self, sender: Any, tx: Optional[Transaction]) -> list[threading.Timer]:
        """Deliver ``tx`` to every registered node except ``sender`` after 5-49 ms."""
        if sender is None:
            log.warning("Network: BroadcastTransaction called with nil sender.")
            return []
        if tx is None or not tx.id:
            log.warning("Network: Attempted to broadcast nil transaction or transaction with nil ID.")
            return []
        receivers = self._peers_of(sender)
        log.debug("Network: Broadcasting Tx %s from %s...", tx.id[:4].hex(), sender.id)
        return self._deliver(receivers, "handle_transaction", tx, 5, 49)

    def broadcast_block(self, sender: Any, block: Optional[Block]) -> list[threading.Timer]:
        """Deliver ``block`` to every registered node except ``sender`` after 10-99 ms."""
        if sender is None:
            log.warning("Network: BroadcastBlock called with nil sender.")
            return []
        if block is None or not block.hash:
            log.warning("Network: Attempted to broadcast nil block or block with nil hash.")
            return []
        receivers = self._peers_of(sender)
        log.info(
            "Network: Broadcasting Block %d (%s...) from %s",
            block.header.height,
            block.hash[:6].hex(),
            sender.id,
        )
        return self._deliver(receivers, "handle_block", block, 10, 99)