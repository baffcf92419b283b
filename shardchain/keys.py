"""P-256 keys, signatures, addresses and an in-process wallet registry."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from .hashing import calculate_hash

__all__ = [
    "PrivateKey",
    "PublicKey",
    "Wallet",
    "generate_key_pair",
    "new_wallet",
    "get_wallet",
    "wallet_addresses",
]

log = logging.getLogger(__name__)

_CURVE = ec.SECP256R1()
_POINT_LENGTH = 65
_SIGNATURE_ALGORITHM = ec.ECDSA(Prehashed(hashes.SHA256()))


class PublicKey:
    """A P-256 public key."""

    __slots__ = ("_key",)

    def __init__(self, key: ec.EllipticCurvePublicKey) -> None:
        self._key = key

    def to_bytes(self) -> bytes:
        """Return the uncompressed point encoding (0x04 || X || Y)."""
        return self._key.public_bytes(
            serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "PublicKey":
        """Rebuild a key from its uncompressed point encoding."""
        if not data:
            raise ValueError("empty public key bytes")
        if len(data) != _POINT_LENGTH or data[0] != 0x04:
            raise ValueError("invalid public key bytes")
        try:
            key = ec.EllipticCurvePublicKey.from_encoded_point(_CURVE, bytes(data))
        except ValueError as exc:
            raise ValueError("invalid public key bytes") from exc
        return cls(key)

    def address(self) -> str:
        """Return ``0x`` and the hex of the last 20 bytes of the key's hash."""
        return "0x" + calculate_hash(self.to_bytes())[-20:].hex()

    def verify(self, data: bytes, signature: bytes) -> bool:
        """Check a DER signature made over the hash of ``data``."""
        if not signature:
            return False
        try:
            self._key.verify(bytes(signature), calculate_hash(data), _SIGNATURE_ALGORITHM)
        except (InvalidSignature, ValueError):
            return False
        return True

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PublicKey):
            return NotImplemented
        return self.to_bytes() == other.to_bytes()

    def __hash__(self) -> int:
        return hash(self.to_bytes())

    def __repr__(self) -> str:
        return f"PublicKey({self.address()})"


class PrivateKey:
    """A P-256 private key."""

    __slots__ = ("_key",)

    def __init__(self, key: ec.EllipticCurvePrivateKey) -> None:
        self._key = key

    def sign(self, data: bytes) -> bytes:
        """Sign the hash of ``data``; return a DER-encoded signature."""
        return self._key.sign(calculate_hash(data), _SIGNATURE_ALGORITHM)

    def public_key(self) -> PublicKey:
        return PublicKey(self._key.public_key())

    def scalar_bytes(self) -> bytes:
        """Return the secret scalar as minimal big-endian bytes."""
        value = self._key.private_numbers().private_value
        return value.to_bytes((value.bit_length() + 7) // 8, "big")

    def __repr__(self) -> str:
        return f"PrivateKey(public={self.public_key().address()})"


@dataclass(frozen=True)
class Wallet:
    """A key pair and the address derived from it."""

    private_key: PrivateKey
    public_key: PublicKey
    address: str


def generate_key_pair() -> tuple[PrivateKey, PublicKey]:
    """Generate a fresh P-256 key pair."""
    private = PrivateKey(ec.generate_private_key(_CURVE))
    return private, private.public_key()


_wallets: dict[str, Wallet] = {}
_wallets_lock = threading.RLock()


def new_wallet() -> Wallet:
    """Create a wallet, register it by address and return it."""
    private, public = generate_key_pair()
    wallet = Wallet(private_key=private, public_key=public, address=public.address())
    with _wallets_lock:
        _wallets[wallet.address] = wallet
    log.info("Created new wallet: %s", wallet.address)
    return wallet


def get_wallet(address: str) -> Optional[Wallet]:
    """Return the registered wallet for ``address``, or ``None``."""
    with _wallets_lock:
        return _wallets.get(address)


def wallet_addresses() -> list[str]:
    """Return the addresses of all registered wallets."""
    with _wallets_lock:
        return list(_wallets)