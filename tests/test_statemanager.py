import pytest

from shardchain.block import Block
from shardchain.keys import new_wallet
from shardchain.shard import NUM_SHARDS
from shardchain.statemanager import (
    StateError,
    StateManager,
    decode_nonce,
    encode_nonce,
)
from shardchain.transaction import Transaction


@pytest.fixture
def sender():
    return new_wallet()


@pytest.fixture
def recipient():
    return new_wallet().address


def make_block(txs):
    block = Block.create(1, b"prev", b"root", txs, "proposer")
    block.hash = block.calculate_hash()
    return block


def test_nonce_encoding():
    assert encode_nonce(1) == b"\x00\x00\x00\x00\x00\x00\x00\x01"
    assert decode_nonce(encode_nonce(123456789)) == 123456789


def test_nonce_decoding_errors():
    with pytest.raises(StateError):
        decode_nonce(b"\x01\x02")
    with pytest.raises(StateError):
        encode_nonce(-1)


def test_shard_count():
    manager = StateManager()
    assert manager.num_shards() == NUM_SHARDS
    assert sorted(manager.shards) == list(range(NUM_SHARDS))


def test_root_depends_on_contents_not_write_order():
    first = StateManager()
    first.put("alpha", b"one")
    first.put("beta", b"two")
    second = StateManager()
    second.put("beta", b"two")
    second.put("alpha", b"one")
    assert first.global_state_root() == second.global_state_root()
    assert first.global_state_root() != StateManager().global_state_root()


def test_put_get_delete_restores_root():
    manager = StateManager()
    initial = manager.global_state_root()
    manager.put("alpha", b"one")
    assert manager.get("alpha") == b"one"
    assert manager.global_state_root() != initial
    manager.delete("alpha")
    assert manager.get("alpha") is None
    assert manager.global_state_root() == initial


def test_snapshot_is_independent():
    manager = StateManager()
    manager.put("alpha", b"one")
    root = manager.global_state_root()
    snap = manager.snapshot()
    assert snap.global_state_root() == root
    snap.put("alpha", b"two")
    assert manager.get("alpha") == b"one"
    assert manager.global_state_root() == root


def test_apply_block_writes_data_and_nonce(sender, recipient):
    manager = StateManager()
    tx = Transaction.create(sender, recipient, 7, 0, b"hello", 4)
    manager.apply_block(make_block([tx]))
    assert manager.get(recipient) == b"hello"
    assert decode_nonce(manager.get(sender.address + "_nonce")) == 1


def test_apply_without_data_stores_value(sender, recipient):
    manager = StateManager()
    tx = Transaction.create(sender, recipient, 9, 0, b"", 4)
    manager.apply_block(make_block([tx]))
    assert decode_nonce(manager.get(recipient)) == 9


def test_simulation_matches_apply_and_does_not_commit(sender, recipient):
    manager = StateManager()
    before = manager.global_state_root()
    txs = [Transaction.create(sender, recipient, 1, n, b"", 4) for n in range(2)]
    predicted = manager.simulate_apply_transactions(txs)
    assert manager.global_state_root() == before
    manager.apply_block(make_block(txs))
    assert manager.global_state_root() == predicted


def test_bad_nonce_rejected(sender, recipient):
    manager = StateManager()
    tx = Transaction.create(sender, recipient, 1, 5, b"", 4)
    with pytest.raises(StateError):
        manager.apply_block(make_block([tx]))
    with pytest.raises(StateError):
        manager.simulate_apply_transactions([tx])
    assert manager.get(recipient) is None


def test_missing_block_or_sender_rejected(sender, recipient):
    manager = StateManager()
    with pytest.raises(StateError):
        manager.apply_block(None)
    tx = Transaction.create(sender, recipient, 1, 0, b"", 4)
    tx.sender = ""
    with pytest.raises(StateError):
        manager.simulate_apply_transactions([tx])