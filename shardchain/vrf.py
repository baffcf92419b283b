"""A hash-based stand-in for a verifiable random function.

This is not a secure VRF: the output and proof are plain hashes and the
public key plays no real part in verification.
"""

from __future__ import annotations

import logging
from typing import Optional

from .hashing import calculate_hash
from .keys import PrivateKey, PublicKey

__all__ = ["VRFError", "evaluate_vrf", "verify_vrf"]

log = logging.getLogger(__name__)


class VRFError(ValueError):
    """Raised when a VRF evaluation is given unusable arguments."""


def evaluate_vrf(private_key: Optional[PrivateKey], message: Optional[bytes]) -> tuple[bytes, bytes]:
    """Return ``(output, proof)`` for ``message`` under ``private_key``.

    The output is H(scalar || message) and the proof is H(output || message).
    """
    if private_key is None:
        raise VRFError("VRF evaluation requires a valid private key")
    if message is None:
        raise VRFError("VRF evaluation requires non-nil input")
    message = bytes(message)
    output = calculate_hash(private_key.scalar_bytes() + message)
    proof = calculate_hash(output + message)
    log.debug(
        "[VRF Sim] Evaluate(input: %s...) -> output: %s..., proof: %s...",
        message[:4].hex(),
        output[:4].hex(),
        proof[:4].hex(),
    )
    return output, proof


def verify_vrf(
    public_key: Optional[PublicKey],
    message: Optional[bytes],
    output: Optional[bytes],
    proof: Optional[bytes],
) -> bool:
    """Check that ``proof`` matches ``output`` and ``message``."""
    if public_key is None or message is None or output is None or proof is None:
        log.warning("[VRF Sim] Verify called with nil arguments.")
        return False
    message, output, proof = bytes(message), bytes(output), bytes(proof)
    expected = calculate_hash(output + message)
    proof_ok = expected == proof
    key_bytes = public_key.to_bytes()
    key_ok = calculate_hash(key_bytes + expected) == calculate_hash(key_bytes + proof)
    valid = proof_ok and key_ok
    if valid:
        log.debug(
            "[VRF Sim] Verify(input: %s..., output: %s...) SUCCEEDED.",
            message[:4].hex(),
            output[:4].hex(),
        )
    else:
        log.debug(
            "[VRF Sim] Verify(input: %s..., output: %s..., proof: %s...) FAILED. "
            "proofCheck: %s, pubKeyCheck: %s",
            message[:4].hex(),
            output[:4].hex(),
            proof[:4].hex(),
            proof_ok,
            key_ok,
        )
    return valid