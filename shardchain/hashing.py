"""Hash helpers shared by the chain, the state layer and the key handling."""

from __future__ import annotations

import hashlib

__all__ = ["calculate_hash", "calculate_hash_string", "calculate_shard_hint"]


def calculate_hash(data: bytes) -> bytes:
    """Return the SHA-256 digest of ``data``."""
    return hashlib.sha256(bytes(data)).digest()


def calculate_hash_string(data: bytes) -> str:
    """Return the SHA-256 digest of ``data`` as a lower-case hex string."""
    return calculate_hash(data).hex()


def calculate_shard_hint(key: str, num_shards: int) -> int:
    """Map ``key`` to a shard id in ``range(num_shards)``.

    The first four bytes of the key's SHA-256 digest are read as a
    little-endian unsigned integer and reduced modulo ``num_shards``.
    """
    if num_shards <= 0:
        raise ValueError("number of shards cannot be zero")
    digest = calculate_hash(key.encode("utf-8"))
    return int.from_bytes(digest[:4], "little") % num_shards