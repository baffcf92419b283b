"""Signed transactions that write a value under a recipient key."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Optional

from .hashing import calculate_hash, calculate_shard_hint
from .keys import PublicKey, Wallet

__all__ = ["TransactionError", "Transaction"]

log = logging.getLogger(__name__)

_UINT64_LIMIT = 1 << 64


class TransactionError(ValueError):
    """Raised when a transaction cannot be built."""


def _length_prefixed(data: bytes) -> bytes:
    return len(data).to_bytes(4, "big") + data


@dataclass
class Transaction:
    """A state change sent from ``sender`` to the key ``to``."""

    sender: str
    to: str
    value: int
    nonce: int
    data: bytes = b""
    timestamp: int = 0
    public_key: bytes = b""
    shard_hint: int = 0
    id: bytes = b""
    signature: bytes = b""

    @classmethod
    def create(
        cls,
        wallet: Optional[Wallet],
        to: str,
        value: int,
        nonce: int,
        data: bytes,
        num_shards: int,
    ) -> "Transaction":
        """Build, hash and sign a transaction from ``wallet``."""
        if wallet is None or wallet.private_key is None:
            raise TransactionError("invalid sender wallet provided")
        if num_shards <= 0:
            raise TransactionError("number of shards cannot be zero")
        for name, number in (("value", value), ("nonce", nonce)):
            if not 0 <= number < _UINT64_LIMIT:
                raise TransactionError(f"{name} must fit in an unsigned 64-bit integer")
        tx = cls(
            sender=wallet.address,
            to=to,
            value=value,
            nonce=nonce,
            data=bytes(data or b""),
            timestamp=time.time_ns(),
            public_key=wallet.public_key.to_bytes(),
            shard_hint=calculate_shard_hint(to, num_shards),
        )
        tx.id = tx.calculate_hash()
        tx.signature = wallet.private_key.sign(tx.id)
        return tx

    def _encoded(self) -> bytes:
        return b"".join(
            (
                _length_prefixed(self.sender.encode("utf-8")),
                _length_prefixed(self.to.encode("utf-8")),
                self.value.to_bytes(8, "big"),
                _length_prefixed(bytes(self.data)),
                self.nonce.to_bytes(8, "big"),
                self.timestamp.to_bytes(8, "big", signed=True),
                _length_prefixed(bytes(self.public_key)),
                self.shard_hint.to_bytes(4, "big"),
            )
        )

    def calculate_hash(self) -> bytes:
        """Hash every field except the id and the signature."""
        return calculate_hash(replace(self, id=b"", signature=b"")._encoded())

    def verify(self) -> bool:
        """Check that the id matches the contents and the signature matches the key."""
        if not self.public_key or not self.signature or not self.id:
            return False
        try:
            key = PublicKey.from_bytes(self.public_key)
        except ValueError as exc:
            log.warning("Verify Tx %s... failed: Cannot reconstruct public key: %s", self.id[:4].hex(), exc)
            return False
        try:
            expected = self.calculate_hash()
        except (OverflowError, AttributeError, TypeError) as exc:
            log.warning("Verify Tx %s failed: Could not recalculate hash: %s", self.id.hex(), exc)
            return False
        if self.id != expected:
            log.warning(
                "Verify Tx %s... failed: Stored ID mismatch with calculated hash (%s...)",
                self.id[:4].hex(),
                expected[:4].hex(),
            )
            return False
        return key.verify(expected, self.signature)