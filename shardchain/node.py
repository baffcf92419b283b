"""Network participants: chain, state and consensus behind one node identity."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Optional, Sequence

from .block import Block
from .blockchain import Blockchain, ChainError, PoolError
from .consensus import ConsensusEngine, ConsensusError, SimplePoA
from .keys import Wallet, new_wallet
from .network import Broadcaster
from .statemanager import StateError, StateManager
from .transaction import Transaction

__all__ = [
    "GENESIS_PROPOSER",
    "GENESIS_PREV_HASH",
    "GENESIS_TIMESTAMP_NS",
    "MAX_BLOCK_TRANSACTIONS",
    "NodeError",
    "Node",
    "create_genesis_block",
]

log = logging.getLogger(__name__)

GENESIS_PROPOSER = "0xGENESIS"
GENESIS_PREV_HASH = b"genesis_prev_hash"
GENESIS_TIMESTAMP_NS = int(datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp()) * 1_000_000_000
MAX_BLOCK_TRANSACTIONS = 10

_QUIET_PROPOSAL_ERRORS = ("not validator's turn", "failed to determine VRF leader")
_QUIET_POOL_ERRORS = ("already in pool", "pool validation")


class NodeError(Exception):
    """Raised when a node cannot be created or reconfigured."""


def create_genesis_block(validators: Sequence[str]) -> Block:
    """Return the fixed first block, committing to the empty initial state."""
    state_root = StateManager().global_state_root()
    block = Block.create(0, GENESIS_PREV_HASH, state_root, [], GENESIS_PROPOSER)
    block.header.timestamp = GENESIS_TIMESTAMP_NS
    block.hash = block.calculate_hash()
    log.info(
        "Created Genesis Block: Hash %s, StateRoot: %s",
        block.hash.hex(),
        block.header.state_root.hex(),
    )
    return block


class Node:
    """A participant: its wallet, its copy of the chain and state, and its consensus engine."""

    def __init__(
        self,
        node_id: str,
        wallet: Wallet,
        blockchain: Blockchain,
        state_manager: StateManager,
        consensus: ConsensusEngine,
        broadcaster: Broadcaster,
        is_validator: bool,
    ) -> None:
        self.id = node_id
        self.wallet = wallet
        self.blockchain = blockchain
        self.state_manager = state_manager
        self.consensus = consensus
        self.broadcaster = broadcaster
        self.is_validator = is_validator
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def create(
        cls,
        id_prefix: str,
        broadcaster: Optional[Broadcaster],
        is_validator: bool,
        validators: Sequence[str],
        genesis_block: Optional[Block],
    ) -> "Node":
        """Make a node with a fresh wallet and empty state starting from ``genesis_block``."""
        if broadcaster is None:
            raise NodeError("network broadcaster cannot be nil")
        if genesis_block is None:
            raise NodeError("genesis block cannot be nil")
        wallet = new_wallet()
        node_id = f"{id_prefix}-{wallet.address[:6]}"
        state = StateManager()
        initial_root = state.global_state_root()
        if genesis_block.header.state_root != initial_root:
            raise NodeError(
                f"node {node_id}: Genesis block state root ({genesis_block.header.state_root.hex()}) "
                f"does not match initial state manager root ({initial_root.hex()})"
            )
        try:
            chain = Blockchain(state, genesis_block, node_id)
        except ChainError as exc:
            raise NodeError(f"failed to create blockchain for node {node_id}: {exc}") from exc
        try:
            engine = SimplePoA(validators, wallet, genesis_block)
        except ConsensusError as exc:
            raise NodeError(f"failed to create consensus engine for node {node_id}: {exc}") from exc
        node = cls(node_id, wallet, chain, state, engine, broadcaster, is_validator)
        log.info("Created Node: %s (Validator: %s, Addr: %s)", node.id, is_validator, wallet.address)
        return node

    def assign_validator_wallet(
        self,
        wallet: Optional[Wallet],
        validators: Sequence[str],
        genesis_block: Block,
    ) -> None:
        """Give a validator node its validator identity; its id becomes the wallet address."""
        if not self.is_validator:
            raise NodeError(f"cannot assign validator wallet to non-validator node {self.id}")
        if wallet is None:
            raise NodeError(f"provided validator wallet is nil for node {self.id}")
        old_id = self.id
        self.wallet = wallet
        self.id = wallet.address
        try:
            self.consensus = SimplePoA(validators, wallet, genesis_block)
        except ConsensusError as exc:
            raise NodeError(
                f"failed to re-initialize consensus for node {self.id} with new wallet: {exc}"
            ) from exc
        try:
            self.blockchain = Blockchain(self.state_manager, genesis_block, self.id)
        except ChainError as exc:
            raise NodeError(
                f"failed to re-initialize blockchain for node {self.id} with new wallet: {exc}"
            ) from exc
        log.info("Assigned validator wallet %s to node (previously %s)", self.id, old_id)

    @property
    def running(self) -> bool:
        """Whether the node's main loop is alive."""
        return self._thread is not None and self._thread.is_alive()

    def start(self, block_time: float) -> None:
        """Start the main loop: validators try to propose every ``block_time`` seconds."""
        log.info("Node %s starting...", self.id)
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, args=(block_time,), name=f"node-{self.id}", daemon=True
        )
        self._thread.start()

    def _run(self, block_time: float) -> None:
        if self.is_validator:
            log.info("Node %s (Validator) starting proposal loop (Block Time: %ss)...", self.id, block_time)
            while not self._stop.wait(block_time):
                self.try_propose_block()
            log.info("Node %s stopping proposal loop.", self.id)
        else:
            log.info("Node %s (Non-validator) started. Listening for network messages.", self.id)
            self._stop.wait()
            log.info("Node %s stopping listener.", self.id)

    def stop(self) -> None:
        """Signal the main loop to end and wait for it."""
        log.info("Node %s shutting down...", self.id)
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
        log.info("Node %s shutdown complete.", self.id)

    def try_propose_block(self) -> Optional[Block]:
        """Propose, apply and broadcast the next block if this node is the leader.

        Returns the block that was appended and broadcast, or ``None``.
        """
        with self._lock:
            last = self.blockchain.last_block()
            if last is None:
                log.warning("[%s] Cannot propose: Last block is nil.", self.id)
                return None
            prefix = f"[{self.id} H:{last.header.height + 1}]"
            pending = self.blockchain.pending_transactions(MAX_BLOCK_TRANSACTIONS)
            if pending:
                log.debug(
                    "%s tryProposeBlock: Got %d executable pending txs: %s",
                    prefix,
                    len(pending),
                    [tx.id[:4].hex() + "..." for tx in pending],
                )
            else:
                log.debug("%s tryProposeBlock: No executable pending txs found.", prefix)
            try:
                state_root = self.state_manager.simulate_apply_transactions(pending)
            except StateError as exc:
                log.error("%s CRITICAL: Simulation failed for already validated txs: %s. Skipping proposal.", prefix, exc)
                return None
            try:
                block = self.consensus.propose(pending, last, state_root, self.wallet)
            except ConsensusError as exc:
                if not any(text in str(exc) for text in _QUIET_PROPOSAL_ERRORS):
                    log.warning("%s Consensus proposal failed: %s", prefix, exc)
                return None
            try:
                self.blockchain.add_block(block)
            except ChainError as exc:
                log.error(
                    "%s CRITICAL: Self-proposed block (%s) REJECTED locally: %s",
                    prefix,
                    (block.hash or b"").hex(),
                    exc,
                )
                return None
            log.debug("%s Self-proposed block (%s) accepted locally.", prefix, block.hash[:4].hex())
        self.broadcaster.broadcast_block(self, block)
        return block

    def handle_transaction(self, tx: Optional[Transaction]) -> bool:
        """Admit a received transaction to the pool; return whether it was added."""
        if tx is None:
            return False
        try:
            self.blockchain.add_transaction(tx)
        except PoolError as exc:
            if not any(text in str(exc) for text in _QUIET_POOL_ERRORS):
                log.warning("[%s] Failed to add received Tx %s... to pool: %s", self.id, tx.id[:4].hex(), exc)
            return False
        return True

    def handle_block(self, block: Optional[Block]) -> bool:
        """Validate a received block and append it; return whether it was appended."""
        if block is None:
            return False
        prefix = f"[{self.id}]"
        header = block.header
        block_hex = (block.hash or b"").hex()
        log.debug("%s Received Block %d (%s) from network proposer %s", prefix, header.height, block_hex, header.proposer)
        with self._lock:
            if self.blockchain.block_by_hash(block.hash) is not None:
                log.debug("%s Ignoring block %d (%s): Already have this block.", prefix, header.height, block_hex)
                return False
            last = self.blockchain.last_block()
            if last is None:
                if header.height != 0:
                    log.warning(
                        "%s Received block %d (%s) but local chain is empty (expecting genesis).",
                        prefix,
                        header.height,
                        block_hex,
                    )
                    return False
            else:
                expected = last.header.height + 1
                if header.height != expected:
                    if header.height > expected:
                        log.warning(
                            "%s Received block %d (%s) from future? Current height %d. Needs sync.",
                            prefix,
                            header.height,
                            block_hex,
                            last.header.height,
                        )
                    else:
                        log.debug(
                            "%s Ignoring block %d (%s): not sequential (current: %d).",
                            prefix,
                            header.height,
                            block_hex,
                            last.header.height,
                        )
                    return False
                if header.prev_block_hash != last.hash:
                    log.warning(
                        "%s Ignoring block %d (%s): PrevHash %s does not match local last block hash %s.",
                        prefix,
                        header.height,
                        block_hex,
                        header.prev_block_hash.hex(),
                        (last.hash or b"").hex(),
                    )
                    return False
            try:
                self.consensus.validate(block, last)
            except ConsensusError as exc:
                log.warning(
                    "%s Block %d (%s) from proposer %s failed consensus validation: %s",
                    prefix,
                    header.height,
                    block_hex,
                    header.proposer,
                    exc,
                )
                return False
            try:
                self.blockchain.add_block(block)
            except ChainError as exc:
                log.warning(
                    "%s Failed to add block %d (%s) from proposer %s to chain: %s",
                    prefix,
                    header.height,
                    block_hex,
                    header.proposer,
                    exc,
                )
                return False
        return True

    def __repr__(self) -> str:
        return f"Node(id={self.id!r}, validator={self.is_validator})"