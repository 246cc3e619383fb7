"""
Attestation Schema

Cryptographic proof binding a claim's exact content to a signer.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class AttestationProof(BaseModel):
    """Merkle inclusion proof of the claim hash under the signed root."""
    model_config = ConfigDict(frozen=True)

    claim_hash: str = Field(..., min_length=64, max_length=64)
    nonce: str = Field(..., description="Hex-encoded 32-byte nonce")
    path: list[str] = Field(default_factory=list, description="Sibling hashes, leaf to root")
    directions: list[str] = Field(default_factory=list, description="'left'/'right' per sibling")
    root: str = Field(..., min_length=64, max_length=64)


class Attestation(BaseModel):
    """
    Signed statement that a specific claim was attested.

    The signature covers the canonical statement (see statement()).
    """
    model_config = ConfigDict(frozen=True)

    claim_id: str
    signer_id: str
    public_key: str = Field(..., description="Base64 Ed25519 public key of the signer")
    signature: str = Field(..., description="Base64 Ed25519 signature over the statement hash")
    proof: AttestationProof
    attested_at: datetime
    version: int = 1

    def statement(self) -> dict:
        """The fields covered by the signature."""
        return {
            "claim_id": self.claim_id,
            "claim_hash": self.proof.claim_hash,
            "root": self.proof.root,
            "signer_id": self.signer_id,
            "attested_at": self.attested_at,
            "version": self.version,
        }
