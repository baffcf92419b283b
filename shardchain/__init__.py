"""Simulated sharded blockchain with VRF leader election, threshold signatures and sparse Merkle state."""

__version__ = "0.1.0"