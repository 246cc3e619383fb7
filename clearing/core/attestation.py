"""
Attestation Engine

Produces and verifies signed proofs binding a claim's exact content to the
system signer.

    attest(claim)
        claim_hash = SHA256(canonical(claim))
        nonce      = 32 random bytes
        root       = Merkle([claim_hash, SHA256("nonce:" + nonce)])
        signature  = Ed25519(SHA256(canonical(statement)))

    verify(claim, attestation)
        recompute claim_hash from the CURRENT claim fields
        check nonce commitment, Merkle path, signer trust, signature, age

The engine is stateless and safe to call from any number of concurrent
tasks. verify() fails closed: any doubt is an InvalidAttestationError.
It must run before the ledger is touched.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from ..schemas import Attestation, AttestationProof, Claim
from .hasher import CanonicalSerializationError, Hasher
from .keys import SigningIdentity
from .merkle import MerkleTree
from .signer import Signer


class InvalidAttestationError(Exception):
    """Signature, hash or proof mismatch. Always pre-ledger, never retried."""

    def __init__(self, reason: str, claim_id: Optional[str] = None):
        self.reason = reason
        self.claim_id = claim_id
        super().__init__(f"Invalid attestation for claim {claim_id}: {reason}")


def nonce_commitment(nonce: str) -> str:
    """Merkle leaf that commits to the attestation nonce."""
    return Hasher.hash_text(f"nonce:{nonce}")


class AttestationEngine:
    """
    Attests claims with the system key and verifies attestations.

    Args:
        identity: System signer (id + keypair)
        trusted_public_keys: Additional signer keys accepted by verify()
            (e.g. the previous key during rotation)
        max_age: Reject attestations older than this (None disables)
    """

    def __init__(
        self,
        identity: SigningIdentity,
        trusted_public_keys: Iterable[str] = (),
        max_age: Optional[timedelta] = None,
    ):
        self._identity = identity
        self._trusted = {identity.keypair.public_key, *trusted_public_keys}
        self._max_age = max_age

    @property
    def signer_id(self) -> str:
        return self._identity.signer_id

    @property
    def public_key(self) -> str:
        return self._identity.keypair.public_key

    @staticmethod
    def hash_claim(claim: Claim) -> str:
        """Canonical SHA-256 over every field of the claim."""
        return Hasher.hash_data(claim)

    def attest(self, claim: Claim) -> Attestation:
        """
        Produce an attestation for a claim.

        Raises:
            CanonicalSerializationError: If the claim carries non-canonical
                data (e.g. floats in metadata)
        """
        claim_hash = self.hash_claim(claim)
        nonce = secrets.token_hex(32)
        tree = MerkleTree([claim_hash, nonce_commitment(nonce)])
        path, directions = tree.get_proof(claim_hash)

        proof = AttestationProof(
            claim_hash=claim_hash,
            nonce=nonce,
            path=path,
            directions=directions,
            root=tree.root_hash,
        )
        unsigned = Attestation(
            claim_id=claim.id,
            signer_id=self.signer_id,
            public_key=self.public_key,
            signature="",
            proof=proof,
            attested_at=datetime.now(timezone.utc),
        )
        signature = Signer.sign(
            Hasher.hash_data(unsigned.statement()),
            self._identity.keypair.private_key,
        )
        return unsigned.model_copy(update={"signature": signature})

    def verify(self, claim: Claim, attestation: Attestation) -> bool:
        """
        Verify an attestation against the claim as it is NOW.

        Returns:
            True when every check passes

        Raises:
            InvalidAttestationError: On the first failed check
        """
        def reject(reason: str) -> InvalidAttestationError:
            return InvalidAttestationError(reason, claim_id=claim.id)

        if attestation.claim_id != claim.id:
            raise reject("attestation references a different claim")

        try:
            current_hash = self.hash_claim(claim)
        except CanonicalSerializationError as e:
            raise reject(f"claim is not canonically serializable: {e}") from e

        proof = attestation.proof
        if not Hasher.constant_time_compare(current_hash, proof.claim_hash.lower()):
            raise reject("claim hash mismatch (claim modified after attestation)")

        if not proof.path or proof.path[0] != nonce_commitment(proof.nonce):
            raise reject("nonce commitment missing from proof path")

        if not MerkleTree.verify_proof(current_hash, proof.path, proof.directions, proof.root):
            raise reject("proof path does not resolve to root")

        if attestation.attested_at.tzinfo is None:
            raise reject("attested_at is timezone-naive")

        if attestation.public_key not in self._trusted:
            raise reject("signer is not trusted")

        statement_hash = Hasher.hash_data(attestation.statement())
        if not Signer.verify(statement_hash, attestation.signature, attestation.public_key):
            raise reject("signature does not verify")

        if self._max_age is not None:
            age = datetime.now(timezone.utc) - attestation.attested_at
            if age > self._max_age:
                raise reject(f"attestation is stale ({int(age.total_seconds())}s old)")

        return True

    def is_valid(self, claim: Claim, attestation: Attestation) -> bool:
        """Boolean form of verify()."""
        try:
            return self.verify(claim, attestation)
        except InvalidAttestationError:
            return False
