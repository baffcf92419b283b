"""Consensus: leader election by a simulated VRF and threshold signatures."""

from __future__ import annotations

import abc
import logging
import time
from typing import Iterable, Optional, Sequence

from .block import Block
from .hashing import calculate_hash
from .keys import Wallet, get_wallet
from .transaction import Transaction
from .vrf import VRFError, evaluate_vrf, verify_vrf

__all__ = ["ConsensusError", "ConsensusEngine", "SimplePoA"]

log = logging.getLogger(__name__)

_MAX_CLOCK_SKEW_NS = 10 * 1_000_000_000


class ConsensusError(Exception):
    """Raised when a block cannot be proposed or fails consensus validation."""


class ConsensusEngine(abc.ABC):
    """What a node needs from a consensus algorithm."""

    @abc.abstractmethod
    def propose(
        self,
        transactions: Iterable[Transaction],
        last_block: Optional[Block],
        state_root: bytes,
        validator_wallet: Wallet,
    ) -> Block:
        """Return a signed block proposal, or raise :class:`ConsensusError`."""

    @abc.abstractmethod
    def validate(self, block: Block, last_block: Optional[Block]) -> None:
        """Raise :class:`ConsensusError` if ``block`` breaks the consensus rules."""

    @abc.abstractmethod
    def current_validators(self) -> list[str]:
        """Return the addresses of the active validators."""

    @abc.abstractmethod
    def name(self) -> str:
        """Return the engine's name."""


class SimplePoA(ConsensusEngine):
    """Proof of authority with a simulated VRF leader election and a BFT quorum.

    With ``n`` validators, up to ``f = (n - 1) // 3`` may be faulty and a
    block needs ``2f + 1`` signatures.
    """

    def __init__(
        self,
        validators: Sequence[str],
        node_wallet: Optional[Wallet],
        genesis_block: Optional[Block],
    ) -> None:
        if node_wallet is None or node_wallet.private_key is None:
            raise ConsensusError("node wallet cannot be nil or lack private key")
        if genesis_block is None:
            raise ConsensusError("genesis block cannot be nil")
        self.validators = list(validators)
        self.node_wallet = node_wallet
        self.genesis_hash = bytes(genesis_block.hash or b"")
        self.n = len(self.validators)
        if self.n > 0:
            if self.n < 4:
                log.warning(
                    "SimplePoA Warning: Configured with %d validators, need at least 4 for f=1 "
                    "BFT threshold. Quorum calculations might be insufficient for guarantees.",
                    self.n,
                )
            self.faulty = (self.n - 1) // 3
            self.quorum = 2 * self.faulty + 1
        else:
            log.warning("SimplePoA Warning: Initialized with zero validators, quorum set to 0.")
            self.faulty = 0
            self.quorum = 0

    def _vrf_seed(self, last_block: Optional[Block], height: int) -> bytes:
        height_bytes = height.to_bytes(8, "big")
        if last_block is None:
            if height != 1:
                raise ConsensusError(f"VRF seed needs the previous block for height {height} > 1")
            return calculate_hash(self.genesis_hash + height_bytes)
        return calculate_hash(bytes(last_block.hash or b"") + height_bytes)

    def _elect_leader(self, seed: bytes, height: int) -> tuple[str, bytes, bytes]:
        leader: Optional[tuple[str, bytes, bytes]] = None
        for address in self.validators:
            wallet = get_wallet(address)
            if wallet is None or wallet.private_key is None:
                log.error("[VRF Propose H:%d] Wallet/Key missing for validator %s. Skipping.", height, address)
                continue
            try:
                output, proof = evaluate_vrf(wallet.private_key, seed)
            except VRFError as exc:
                log.error("[VRF Propose H:%d] VRF eval failed for %s: %s", height, address, exc)
                continue
            if leader is None or output < leader[1]:
                leader = (address, output, proof)
        if leader is None:
            raise ConsensusError(f"failed to determine VRF leader for height {height}")
        log.debug("[VRF Propose H:%d] Leader determined: %s (Output: %s...)", height, leader[0], leader[1][:4].hex())
        return leader

    def propose(
        self,
        transactions: Iterable[Transaction],
        last_block: Optional[Block],
        state_root: bytes,
        validator_wallet: Wallet,
    ) -> Block:
        """Build and sign the next block if this node is the VRF leader.

        Raises :class:`ConsensusError` when it is not this node's turn, when
        the wallet is not the node's own, or when no quorum of signatures
        can be collected.
        """
        if not self.validators:
            raise ConsensusError("cannot propose: no validators defined")
        if self.quorum == 0:
            raise ConsensusError("cannot propose: quorum is zero")
        if validator_wallet is None or validator_wallet.address != self.node_wallet.address:
            raise ConsensusError("propose called with incorrect validator wallet")

        if last_block is None:
            height, prev_hash = 1, self.genesis_hash
        else:
            height, prev_hash = last_block.header.height + 1, bytes(last_block.hash or b"")
        seed = self._vrf_seed(last_block, height)

        leader, output, proof = self._elect_leader(seed, height)
        me = self.node_wallet.address
        if me != leader:
            raise ConsensusError(f"not validator's turn (VRF Leader: {leader})")

        block = Block.create(height, prev_hash, state_root, transactions, me)
        block.header.vrf_output = output
        block.header.vrf_proof = proof
        block.hash = block.calculate_hash()

        log.debug("[%s H:%d] Collecting signatures for block %s...", me, height, block.hash[:4].hex())
        signatures: dict[str, bytes] = {}
        for address in self.validators:
            wallet = get_wallet(address)
            if wallet is None or wallet.private_key is None:
                log.warning("[%s H:%d] Skipping signature from %s: Cannot find wallet/key.", me, height, address)
                continue
            if not block.verify_structure():
                log.warning("[%s H:%d] Validator %s found invalid structure, not signing.", me, height, address)
                continue
            signatures[address] = wallet.private_key.sign(block.hash)
            log.debug(
                "[%s H:%d] Collected signature from %s (%d/%d)", me, height, address, len(signatures), self.quorum
            )

        if len(signatures) < self.quorum:
            raise ConsensusError(
                f"failed to collect quorum ({len(signatures)}/{self.quorum}) signatures for block {height}"
            )
        block.signatures = signatures
        log.info(
            "[%s] Proposing Block %d (%s) as VRF Leader with %d signatures",
            me,
            height,
            block.hash.hex(),
            len(signatures),
        )
        return block

    def validate(self, block: Optional[Block], last_block: Optional[Block]) -> None:
        """Check the block's VRF proof, signatures and timestamp."""
        if block is None:
            raise ConsensusError("cannot validate nil block")
        header = block.header
        if header.height == 0 and block.hash == self.genesis_hash:
            return
        if last_block is None and header.height != 1:
            raise ConsensusError(
                f"last block cannot be nil for validating non-genesis block {header.height}"
            )
        if last_block is not None and header.height != last_block.header.height + 1:
            raise ConsensusError("block height mismatch")
        if not block.hash:
            raise ConsensusError("block hash is nil")

        if not header.proposer:
            raise ConsensusError("block proposer is empty")
        if header.vrf_output is None or header.vrf_proof is None:
            raise ConsensusError("block is missing VRF output or proof")
        proposer = get_wallet(header.proposer)
        if proposer is None or proposer.public_key is None:
            raise ConsensusError(f"cannot get public key for block proposer {header.proposer}")
        seed = self._vrf_seed(last_block, header.height)
        if not verify_vrf(proposer.public_key, seed, header.vrf_output, header.vrf_proof):
            raise ConsensusError(
                f"invalid VRF proof for proposer {header.proposer} and block {header.height}"
            )
        log.debug("Block %d VRF proof validated for proposer %s.", header.height, header.proposer)

        if block.signatures is None:
            raise ConsensusError("block has nil Signatures map")
        if len(block.signatures) < self.quorum:
            raise ConsensusError(
                f"insufficient signatures: got {len(block.signatures)}, require {self.quorum}"
            )
        valid = 0
        for address, signature in block.signatures.items():
            if address not in self.validators:
                raise ConsensusError(f"signature from non-validator {address}")
            signer = get_wallet(address)
            if signer is None or signer.public_key is None:
                raise ConsensusError(f"cannot get public key for signer {address}")
            if not signer.public_key.verify(block.hash, signature):
                raise ConsensusError(f"invalid signature from validator {address}")
            valid += 1
            log.debug("Block %d Sig %d/%d verified from %s", header.height, valid, self.quorum, address)
        if valid < self.quorum:
            raise ConsensusError(
                f"insufficient valid unique signatures: got {valid}, require {self.quorum}"
            )
        log.debug("Block %d Threshold Signature (%d/%d) validation passed.", header.height, valid, self.quorum)

        prev_timestamp = last_block.header.timestamp if last_block is not None else 0
        if header.timestamp <= prev_timestamp:
            raise ConsensusError(
                f"block {header.height} timestamp ({header.timestamp}) not after previous ({prev_timestamp})"
            )
        if header.timestamp > time.time_ns() + _MAX_CLOCK_SKEW_NS:
            raise ConsensusError(
                f"block {header.height} timestamp ({header.timestamp}) is too far in the future"
            )

    def current_validators(self) -> list[str]:
        """Return a copy of the validator addresses."""
        return list(self.validators)

    def name(self) -> str:
        return "Simple PoA (Simulated VRF + Threshold Sig)"