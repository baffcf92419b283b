import time

import pytest

from shardchain.block import Block
from shardchain.consensus import ConsensusEngine, ConsensusError, SimplePoA
from shardchain.hashing import calculate_hash
from shardchain.keys import new_wallet
from shardchain.transaction import Transaction

STATE_ROOT = calculate_hash(b"state")


def _genesis():
    block = Block.create(0, b"genesis_prev_hash", STATE_ROOT, [], "0xGENESIS")
    block.header.timestamp = 1_704_067_200_000_000_000
    block.hash = block.calculate_hash()
    return block


@pytest.fixture
def setup():
    wallets = [new_wallet() for _ in range(4)]
    addresses = [w.address for w in wallets]
    genesis = _genesis()
    engines = [SimplePoA(addresses, w, genesis) for w in wallets]
    return wallets, addresses, genesis, engines


def _propose(wallets, engines, transactions, last_block):
    blocks = []
    refusals = []
    for wallet, engine in zip(wallets, engines):
        try:
            blocks.append(engine.propose(transactions, last_block, STATE_ROOT, wallet))
        except ConsensusError as exc:
            refusals.append(str(exc))
    return blocks, refusals


def test_quorum_for_four_validators(setup):
    _, _, _, engines = setup
    assert engines[0].faulty == 1
    assert engines[0].quorum == 3


def test_zero_validators_quorum_zero_and_propose_fails():
    wallet = new_wallet()
    engine = SimplePoA([], wallet, _genesis())
    assert engine.quorum == 0
    with pytest.raises(ConsensusError, match="no validators"):
        engine.propose([], None, STATE_ROOT, wallet)


def test_constructor_rejects_missing_arguments():
    wallet = new_wallet()
    with pytest.raises(ConsensusError):
        SimplePoA([wallet.address], None, _genesis())
    with pytest.raises(ConsensusError):
        SimplePoA([wallet.address], wallet, None)


def test_name_and_engine_type(setup):
    engine = setup[3][0]
    assert engine.name() == "Simple PoA (Simulated VRF + Threshold Sig)"
    assert isinstance(engine, ConsensusEngine)


def test_current_validators_is_a_copy(setup):
    _, addresses, _, engines = setup
    listed = engines[0].current_validators()
    assert listed == addresses
    listed.append("0xother")
    assert engines[0].current_validators() == addresses


def test_exactly_one_leader_proposes(setup):
    wallets, addresses, genesis, engines = setup
    blocks, refusals = _propose(wallets, engines, [], None)
    assert len(blocks) == 1
    assert len(refusals) == 3
    assert all("not validator's turn" in r for r in refusals)
    block = blocks[0]
    assert block.header.height == 1
    assert block.header.prev_block_hash == genesis.hash
    assert block.header.proposer in addresses
    assert block.hash == block.calculate_hash()
    assert set(block.signatures) == set(addresses)


def test_proposed_block_validates_on_every_engine(setup):
    wallets, _, _, engines = setup
    tx = Transaction.create(wallets[0], "0xrecipient", 5, 0, b"", 4)
    blocks, _ = _propose(wallets, engines, [tx], None)
    block = blocks[0]
    assert block.transactions == [tx]
    for engine in engines:
        assert engine.validate(block, None) is None


def test_second_height_chains_on_first(setup):
    wallets, _, _, engines = setup
    first = _propose(wallets, engines, [], None)[0][0]
    blocks, _ = _propose(wallets, engines, [], first)
    assert len(blocks) == 1
    second = blocks[0]
    assert second.header.height == first.header.height + 1
    assert second.header.prev_block_hash == first.hash
    engines[0].validate(second, first)
    with pytest.raises(ConsensusError, match="height mismatch"):
        engines[0].validate(first, second)


def test_propose_with_foreign_wallet_fails(setup):
    wallets, _, _, engines = setup
    with pytest.raises(ConsensusError, match="incorrect validator wallet"):
        engines[0].propose([], None, STATE_ROOT, wallets[1])


def test_genesis_is_accepted(setup):
    _, _, genesis, engines = setup
    engines[0].validate(genesis, None)
    assert genesis.header.height == 0


def test_validate_rejects_none(setup):
    with pytest.raises(ConsensusError, match="nil block"):
        setup[3][0].validate(None, None)


def test_validate_needs_last_block_above_height_one(setup):
    wallets, _, _, engines = setup
    block = _propose(wallets, engines, [], None)[0][0]
    block.header.height = 2
    with pytest.raises(ConsensusError, match="last block cannot be nil"):
        engines[0].validate(block, None)


@pytest.fixture
def proposed(setup):
    wallets, addresses, genesis, engines = setup
    return _propose(wallets, engines, [], None)[0][0], engines[0], addresses


def test_invalid_vrf_proof(proposed):
    block, engine, _ = proposed
    block.header.vrf_proof = bytes(32)
    with pytest.raises(ConsensusError, match="invalid VRF proof"):
        engine.validate(block, None)


def test_missing_vrf_fields(proposed):
    block, engine, _ = proposed
    block.header.vrf_output = None
    with pytest.raises(ConsensusError, match="missing VRF"):
        engine.validate(block, None)


def test_empty_proposer(proposed):
    block, engine, _ = proposed
    block.header.proposer = ""
    with pytest.raises(ConsensusError, match="proposer is empty"):
        engine.validate(block, None)


def test_too_few_signatures(proposed):
    block, engine, addresses = proposed
    block.signatures = {a: block.signatures[a] for a in addresses[:2]}
    with pytest.raises(ConsensusError, match="insufficient signatures"):
        engine.validate(block, None)


def test_tampered_signature(proposed):
    block, engine, addresses = proposed
    block.signatures[addresses[0]] = block.signatures[addresses[1]]
    with pytest.raises(ConsensusError, match="invalid signature"):
        engine.validate(block, None)


def test_signature_from_non_validator(proposed):
    block, engine, _ = proposed
    outsider = new_wallet()
    block.signatures[outsider.address] = outsider.private_key.sign(block.hash)
    with pytest.raises(ConsensusError, match="non-validator"):
        engine.validate(block, None)


def test_timestamp_not_after_previous(proposed):
    block, engine, _ = proposed
    block.header.timestamp = 0
    with pytest.raises(ConsensusError, match="not after previous"):
        engine.validate(block, None)


def test_timestamp_too_far_in_future(proposed):
    block, engine, _ = proposed
    block.header.timestamp = time.time_ns() + 60 * 1_000_000_000
    with pytest.raises(ConsensusError, match="too far in the future"):
        engine.validate(block, None)


def test_missing_hash(proposed):
    block, engine, _ = proposed
    block.hash = None
    with pytest.raises(ConsensusError, match="hash is nil"):
        engine.validate(block, None)