import threading

import pytest

from shardchain.simulation import SimulationError, main, run_simulation


def _preset_event():
    event = threading.Event()
    event.set()
    return event


def test_too_few_validators():
    with pytest.raises(SimulationError):
        run_simulation(5, 3, 3.0, _preset_event())


def test_more_validators_than_nodes():
    with pytest.raises(SimulationError):
        run_simulation(4, 5, 3.0, _preset_event())


def test_immediate_stop_returns_stopped_nodes():
    nodes = run_simulation(5, 4, 3.0, _preset_event())
    assert len(nodes) == 5
    assert [node.is_validator for node in nodes] == [True, True, True, True, False]
    assert all(node.id == node.wallet.address for node in nodes[:4])
    assert nodes[4].id.startswith("Node-")
    assert not any(node.running for node in nodes)
    assert all(node.blockchain.height() == 0 for node in nodes)


def test_running_network_grows_a_consistent_chain():
    stop = threading.Event()
    timer = threading.Timer(2.0, stop.set)
    timer.start()
    try:
        nodes = run_simulation(5, 4, 0.2, stop)
    finally:
        timer.cancel()
    heights = [node.blockchain.height() for node in nodes]
    assert max(heights) >= 1
    first_blocks = {
        node.blockchain.block_by_height(1).hash
        for node in nodes
        if node.blockchain.height() >= 1
    }
    assert len(first_blocks) == 1
    assert not any(node.running for node in nodes)


def test_main_rejects_bad_configuration(tmp_path):
    log_file = tmp_path / "sim.log"
    status = main(["--validators", "3", "--log-level", "ERROR", "--log-file", str(log_file)])
    assert status == 1