import random
import threading

import pytest

from shardchain.block import Block, BlockHeader
from shardchain.network import Network, NetworkError
from shardchain.transaction import Transaction


class FakeNode:
    def __init__(self, node_id):
        self.id = node_id
        self.transactions = []
        self.blocks = []
        self._lock = threading.Lock()

    def handle_transaction(self, tx):
        with self._lock:
            self.transactions.append(tx)

    def handle_block(self, block):
        with self._lock:
            self.blocks.append(block)


def make_tx():
    return Transaction(sender="0xa", to="0xb", value=1, nonce=0, id=b"\x01" * 32)


def make_block():
    header = BlockHeader(
        height=1,
        timestamp=1,
        prev_block_hash=b"\x00" * 32,
        merkle_root=b"\x00" * 32,
        state_root=b"\x00" * 32,
        proposer="0xa",
    )
    return Block(header=header, hash=b"\x02" * 32)


@pytest.fixture
def network():
    return Network(rng=random.Random(0))


@pytest.fixture
def nodes(network):
    members = [FakeNode(f"node-{n}") for n in range(3)]
    for node in members:
        network.register(node)
    return members


def join_all(timers):
    for timer in timers:
        timer.join(timeout=2)


def test_register_and_unregister(network, nodes):
    assert len(network) == 3
    assert "node-1" in network
    network.unregister("node-1")
    assert len(network) == 2
    assert "node-1" not in network
    network.unregister("missing")
    assert len(network) == 2


def test_register_rejects_duplicate(network, nodes):
    with pytest.raises(NetworkError, match="already registered"):
        network.register(FakeNode("node-0"))
    assert len(network) == 3


def test_register_rejects_empty_id(network):
    with pytest.raises(NetworkError):
        network.register(FakeNode(""))
    with pytest.raises(NetworkError):
        network.register(None)
    assert len(network) == 0


def test_broadcast_transaction_reaches_all_but_sender(network, nodes):
    tx = make_tx()
    timers = network.broadcast_transaction(nodes[0], tx)
    join_all(timers)
    assert len(timers) == 2
    assert nodes[0].transactions == []
    assert nodes[1].transactions == [tx]
    assert nodes[2].transactions == [tx]


def test_broadcast_block_reaches_all_but_sender(network, nodes):
    block = make_block()
    timers = network.broadcast_block(nodes[2], block)
    join_all(timers)
    assert nodes[2].blocks == []
    assert nodes[0].blocks == [block]
    assert nodes[1].blocks == [block]
    assert all(node.transactions == [] for node in nodes)


def test_broadcast_skips_unregistered(network, nodes):
    network.unregister("node-2")
    timers = network.broadcast_transaction(nodes[0], make_tx())
    join_all(timers)
    assert len(nodes[1].transactions) == 1
    assert nodes[2].transactions == []


def test_broadcast_without_sender_delivers_nothing(network, nodes):
    assert network.broadcast_transaction(None, make_tx()) == []
    assert network.broadcast_block(None, make_block()) == []
    assert all(not node.transactions and not node.blocks for node in nodes)


def test_broadcast_without_id_or_hash_delivers_nothing(network, nodes):
    unidentified = Transaction(sender="0xa", to="0xb", value=1, nonce=0)
    unhashed = make_block()
    unhashed.hash = None
    assert network.broadcast_transaction(nodes[0], unidentified) == []
    assert network.broadcast_block(nodes[0], unhashed) == []
    assert network.broadcast_transaction(nodes[0], None) == []
    assert all(not node.transactions and not node.blocks for node in nodes)