"""Runs a small network of nodes with a transaction generator until told to stop."""

from __future__ import annotations

import argparse
import logging
import random
import signal
import threading
import time
from typing import Optional, Sequence

from .keys import new_wallet
from .logs import close_log_file, setup_logging
from .network import Network, NetworkError
from .node import Node, NodeError, create_genesis_block
from .shard import NUM_SHARDS
from .transaction import Transaction, TransactionError

__all__ = [
    "DEFAULT_NUM_NODES",
    "DEFAULT_NUM_VALIDATORS",
    "DEFAULT_BLOCK_TIME",
    "MIN_VALIDATORS",
    "SimulationError",
    "run_simulation",
    "main",
]

log = logging.getLogger(__name__)

DEFAULT_NUM_NODES = 5
DEFAULT_NUM_VALIDATORS = 4
DEFAULT_BLOCK_TIME = 3.0
MIN_VALIDATORS = 4


class SimulationError(Exception):
    """Raised when the simulation is configured in a way it cannot run."""


def _generate_transactions(
    nodes: Sequence[Node],
    network: Network,
    stop_event: threading.Event,
    rng: random.Random,
) -> None:
    try:
        sender = rng.choice(nodes)
        wallet = sender.wallet
        log.info("Transaction simulator using sender: %s (%s)", sender.id, wallet.address)
        num_shards = nodes[0].blockchain.num_shards()
        if num_shards <= 0:
            log.warning("Warning: num_shards returned 0, falling back to NUM_SHARDS (%d)", NUM_SHARDS)
            num_shards = NUM_SHARDS
        log.info("Transaction simulator using Number of Shards: %d", num_shards)
        nonce = 0
        while not stop_event.wait(rng.randint(500, 1999) / 1000):
            recipient = rng.choice(nodes).wallet.address
            value = rng.randint(1, 100)
            data = f"Payload from {sender.id} @ {int(time.time())}".encode("utf-8")
            try:
                tx = Transaction.create(wallet, recipient, value, nonce, data, num_shards)
            except TransactionError as exc:
                log.error("[%s] Simulator: Failed to create transaction (Nonce: %d): %s", sender.id, nonce, exc)
                continue
            log.info(
                "==> [%s] Created Tx: %s... (To: %s..., Nonce: %d, Shard: %d)",
                sender.id,
                tx.id[:4].hex(),
                recipient[:8],
                tx.nonce,
                tx.shard_hint,
            )
            network.broadcast_transaction(sender, tx)
            nonce += 1
        log.info("Stopping transaction simulator.")
    finally:
        log.info("Transaction simulator loop exited.")


def run_simulation(
    num_nodes: int = DEFAULT_NUM_NODES,
    num_validators: int = DEFAULT_NUM_VALIDATORS,
    block_time: float = DEFAULT_BLOCK_TIME,
    stop_event: Optional[threading.Event] = None,
) -> list[Node]:
    """Build and run the network until ``stop_event`` is set; return the stopped nodes."""
    if num_validators < MIN_VALIDATORS:
        raise SimulationError(f"Number of validators must be at least {MIN_VALIDATORS} for f=1 BFT.")
    if num_validators > num_nodes:
        raise SimulationError("Number of validators cannot exceed number of nodes.")
    stop_event = stop_event or threading.Event()
    rng = random.Random()

    log.info("Creating %d Validator Wallets...", num_validators)
    validator_wallets = [new_wallet() for _ in range(num_validators)]
    addresses = [wallet.address for wallet in validator_wallets]
    log.info("Validator Set Addresses: %s", addresses)

    genesis = create_genesis_block(addresses)
    network = Network(rng)
    nodes: list[Node] = []
    log.info("Creating %d Network Nodes (%d Validators)...", num_nodes, num_validators)
    for index in range(num_nodes):
        is_validator = index < num_validators
        prefix = "Validator" if is_validator else "Node"
        try:
            node = Node.create(prefix, network, is_validator, addresses, genesis)
            if is_validator:
                node.assign_validator_wallet(validator_wallets[index], addresses, genesis)
        except NodeError as exc:
            raise SimulationError(f"Failed to create node {index}: {exc}") from exc
        nodes.append(node)
        try:
            network.register(node)
        except NetworkError as exc:
            log.error("Failed to register node %s: %s", node.id, exc)

    log.info("Starting all nodes...")
    for node in nodes:
        node.start(block_time)

    log.info("Starting transaction simulator...")
    generator = threading.Thread(
        target=_generate_transactions,
        args=(nodes, network, stop_event, rng),
        name="tx-simulator",
        daemon=True,
    )
    generator.start()

    log.info("Simulation running... Press Ctrl+C to stop.")
    stop_event.wait()
    log.info("--- Initiating Graceful Shutdown ---")
    generator.join()
    log.info("Stopping nodes...")
    for node in nodes:
        node.stop()
    log.info("Unregistering nodes...")
    for node in nodes:
        network.unregister(node.id)
    return nodes


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a simulated sharded blockchain network.")
    parser.add_argument("--nodes", type=int, default=DEFAULT_NUM_NODES, help="number of nodes")
    parser.add_argument("--validators", type=int, default=DEFAULT_NUM_VALIDATORS, help="number of validators")
    parser.add_argument("--block-time", type=float, default=DEFAULT_BLOCK_TIME, help="seconds between proposals")
    parser.add_argument("--log-level", default="DEBUG", help="DEBUG, INFO, WARN or ERROR")
    parser.add_argument("--log-file", default="blockchain.log", help="file that also receives the log")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the simulation until SIGINT or SIGTERM; return the exit status."""
    args = _parse_args(argv)
    setup_logging(args.log_level, args.log_file)
    log.info("--- Starting Simplified Blockchain Simulation ---")
    stop_event = threading.Event()

    def _on_signal(signum, frame):
        stop_event.set()

    previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        run_simulation(args.nodes, args.validators, args.block_time, stop_event)
    except SimulationError as exc:
        log.error("%s", exc)
        return 1
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        close_log_file()
    print("--- Simulation Finished ---")
    return 0