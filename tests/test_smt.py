import pytest

from shardchain.smt import (
    SMT_DEPTH,
    KeyNotFoundError,
    SMTProof,
    SparseMerkleTree,
    verify_smt_proof,
)

ZERO = bytes(32)


def test_empty_tree_root_is_zero_hash():
    assert SparseMerkleTree().root() == ZERO


def test_get_missing_key_raises():
    tree = SparseMerkleTree()
    with pytest.raises(KeyNotFoundError):
        tree.get(b"absent")
    tree.update(b"present", b"1")
    with pytest.raises(KeyNotFoundError):
        tree.get(b"absent")


def test_update_then_get():
    tree = SparseMerkleTree()
    tree.update(b"alice", b"100")
    tree.update(b"bob", b"200")
    assert tree.get(b"alice") == b"100"
    assert tree.get(b"bob") == b"200"
    assert len(tree.root()) == 32
    assert tree.root() != ZERO


def test_overwrite_matches_fresh_tree():
    tree = SparseMerkleTree()
    tree.update(b"k", b"old")
    tree.update(b"k", b"new")
    fresh = SparseMerkleTree()
    fresh.update(b"k", b"new")
    assert tree.get(b"k") == b"new"
    assert tree.root() == fresh.root()


def test_root_independent_of_insertion_order():
    items = [(b"a", b"1"), (b"b", b"2"), (b"c", b"3"), (b"d", b"4")]
    first, second = SparseMerkleTree(), SparseMerkleTree()
    for key, value in items:
        first.update(key, value)
    for key, value in reversed(items):
        second.update(key, value)
    assert first.root() == second.root()


def test_delete_empties_leaf_and_root():
    tree = SparseMerkleTree()
    tree.update(b"k", b"v")
    tree.delete(b"k")
    assert tree.get(b"k") is None
    assert tree.root() == ZERO


def test_empty_value_differs_from_deleted():
    tree = SparseMerkleTree()
    tree.update(b"k", b"")
    assert tree.get(b"k") == b""
    assert tree.root() != ZERO


def test_copy_is_independent():
    tree = SparseMerkleTree()
    tree.update(b"k", b"v")
    clone = tree.copy()
    assert clone.root() == tree.root()
    clone.update(b"k", b"changed")
    clone.update(b"other", b"x")
    assert tree.get(b"k") == b"v"
    with pytest.raises(KeyNotFoundError):
        tree.get(b"other")
    assert clone.root() != tree.root()


def test_inclusion_proof_verifies():
    tree = SparseMerkleTree()
    tree.update(b"alice", b"100")
    tree.update(b"bob", b"200")
    proof = tree.generate_proof(b"alice")
    assert len(proof.siblings) == SMT_DEPTH
    assert proof.value == b"100"
    assert verify_smt_proof(proof, tree.root(), b"alice")


def test_non_inclusion_proof_verifies():
    tree = SparseMerkleTree()
    tree.update(b"alice", b"100")
    proof = tree.generate_proof(b"carol")
    assert proof.value is None
    assert len(proof.siblings) == SMT_DEPTH
    assert verify_smt_proof(proof, tree.root(), b"carol")


def test_proof_on_empty_tree():
    tree = SparseMerkleTree()
    proof = tree.generate_proof(b"any")
    assert proof.siblings == [ZERO] * SMT_DEPTH
    assert verify_smt_proof(proof, ZERO, b"any")


def test_tampered_proof_value_fails():
    tree = SparseMerkleTree()
    tree.update(b"alice", b"100")
    proof = tree.generate_proof(b"alice")
    forged = SMTProof(siblings=list(proof.siblings), value=b"999")
    assert not verify_smt_proof(forged, tree.root(), b"alice")


def test_proof_for_other_key_fails():
    tree = SparseMerkleTree()
    tree.update(b"alice", b"100")
    tree.update(b"bob", b"200")
    proof = tree.generate_proof(b"alice")
    assert not verify_smt_proof(proof, tree.root(), b"bob")


def test_malformed_proofs_fail():
    tree = SparseMerkleTree()
    tree.update(b"alice", b"100")
    assert not verify_smt_proof(None, tree.root(), b"alice")
    short = SMTProof(siblings=[ZERO] * (SMT_DEPTH - 1), value=b"100")
    assert not verify_smt_proof(short, tree.root(), b"alice")


def test_dump_of_empty_tree():
    lines = SparseMerkleTree().dump().splitlines()
    assert lines == ["--- SMT Structure ---", "---------------------"]


def test_dump_lists_path_to_leaf():
    tree = SparseMerkleTree()
    tree.update(b"key", b"abcdef")
    lines = tree.dump().splitlines()
    assert len(lines) == SMT_DEPTH + 3
    assert lines[1].startswith(" [I] H: ")
    leaf = lines[-2]
    assert "[L]" in leaf
    assert leaf.endswith(" V: " + b"abcd".hex() + "...")


def test_dump_shows_deleted_leaf():
    tree = SparseMerkleTree()
    tree.update(b"key", b"abc")
    tree.delete(b"key")
    assert tree.dump().splitlines()[-2].endswith(" V: <nil>")