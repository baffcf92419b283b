# shardchain

A small blockchain simulation that runs several nodes inside one process. Nodes
pass transactions and blocks to each other through an in-process network that
delivers each message on its own thread after a short random delay. For each
height, validators pick a leader with a simulated VRF. The leader gathers a
quorum of ECDSA (P-256) signatures on its block. Transactions are committed to
state that is split across four shards, and each shard is backed by a sparse
Merkle tree.

The VRF is a hash-based stand-in for illustration. It gives no security.

## Installation

```
pip install .
```

To include the test dependencies:

```
pip install .[test]
```

## Running the simulation

```
shardchain
```

By default this starts five nodes, four of which are validators, with a block
time of three seconds. A background generator sends signed transactions from
one randomly chosen node. Press Ctrl+C (or send SIGTERM) to stop. Logging runs
at DEBUG level. Log lines go to the console, with errors on stderr, and are
also appended to `blockchain.log`.

Options:

- `--nodes N`: number of nodes (default 5)
- `--validators N`: number of validators (default 4, at least 4, and no more than `--nodes`)
- `--block-time SECONDS`: seconds between proposal attempts (default 3.0)
- `--log-level LEVEL`: `DEBUG`, `INFO` or `WARN`. Any other value logs errors only. Default `DEBUG`.
- `--log-file PATH`: file that also receives the log (default `blockchain.log`)

The command exits with status 1 if the configuration is invalid.

## Using the library

To run the simulation from code:

```python
import threading

from shardchain.simulation import run_simulation

stop = threading.Event()
# Call stop.set() from another thread to end the run.
nodes = run_simulation(num_nodes=5, num_validators=4, block_time=3.0, stop_event=stop)
```

`run_simulation` blocks until the event is set. It then stops and unregisters
every node and returns the nodes. It raises `SimulationError` for an invalid
configuration.

The parts can also be used on their own.

Sharded state:

```python
from shardchain.statemanager import StateManager

state = StateManager()
state.put("alice", b"hello")
print(state.get("alice"))
print(state.global_state_root().hex())
```

Merkle trees and inclusion proofs:

```python
from shardchain.hashing import calculate_hash
from shardchain.merkle import build_merkle_tree, find_merkle_path, verify_proof

root = build_merkle_tree([b"a", b"b", b"c"])
proof, found = find_merkle_path(root, calculate_hash(b"b"))
assert found and verify_proof(calculate_hash(b"b"), root.hash, proof)
```

Sparse Merkle tree proofs:

```python
from shardchain.smt import SparseMerkleTree, verify_smt_proof

tree = SparseMerkleTree()
tree.update(b"key", b"value")
proof = tree.generate_proof(b"key")
assert verify_smt_proof(proof, tree.root(), b"key")
```

Wallets and signed transactions:

```python
from shardchain.keys import new_wallet
from shardchain.transaction import Transaction

sender, receiver = new_wallet(), new_wallet()
tx = Transaction.create(sender, receiver.address, 10, 0, b"", 4)
assert tx.verify()
```

## Modules

- `hashing`: SHA-256 helpers and the mapping from a key to its shard.
- `logs`: `setup_logging` and `close_log_file` for console and file output.
- `merkle`: transaction Merkle trees and path proofs.
- `smt`: a 256-level sparse Merkle tree with inclusion proofs.
- `keys`: P-256 key pairs, addresses and the in-process wallet registry.
- `vrf`: the simulated VRF.
- `shard` and `statemanager`: sharded state, snapshots and dry runs of transactions.
- `transaction` and `block`: the chain's data types.
- `blockchain`: the chain and the memory pool.
- `consensus`: `SimplePoA`, proof of authority with VRF leader election and a signature quorum.
- `network` and `node`: the simulated peer-to-peer layer.
- `simulation`: `run_simulation` and the `shardchain` command.

## What it does not do

- All nodes share one process. There is no real networking.
- Chains and state live only in memory. Nothing is stored between runs.
- A node that receives a block from a later height logs that it needs to sync
  and drops the block. There is no block synchronisation and no fork handling.
- Signatures are collected by looking up every validator's wallet in the
  in-process registry, not by exchanging messages.

## Tests

```
pytest
```