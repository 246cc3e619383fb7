"""
System Signing Key

Loads the Ed25519 keypair used to sign attestations.

- Production (CLEARING_PRODUCTION=1): keys MUST be configured, otherwise startup fails.
- Development: an ephemeral key is generated with a warning. Attestations
  signed with it stop verifying after a restart.

The keypair is passed explicitly to the AttestationEngine; there is no
process-wide key holder.

Generate a keypair with:
    python -m tools.manage generate-keypair
"""

import warnings
from dataclasses import dataclass

from .signer import Signer


@dataclass(frozen=True)
class KeyPair:
    """An Ed25519 keypair (base64 encoded)."""
    private_key: str
    public_key: str

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key[:12]}...)"


@dataclass(frozen=True)
class SigningIdentity:
    """The system signer: a stable id plus its keypair."""
    signer_id: str
    keypair: KeyPair
    is_ephemeral: bool = False


def validate_keypair(private_key: str, public_key: str) -> bool:
    """Check that the public key belongs to the private key."""
    try:
        return Signer.public_key_for(private_key) == public_key
    except ValueError:
        return False


def load_signing_identity(
    private_key: str,
    public_key: str,
    signer_id: str,
    production: bool,
) -> SigningIdentity:
    """
    Build the system signing identity from configured key material.

    Args:
        private_key: Base64 private key ("" if unset)
        public_key: Base64 public key ("" if unset, derived from private key)
        signer_id: Stable name recorded in every attestation
        production: Refuse to generate an ephemeral key when True

    Raises:
        RuntimeError: Keys missing in production, or the keypair does not match
    """
    if private_key:
        public_key = public_key or Signer.public_key_for(private_key)
        if not validate_keypair(private_key, public_key):
            raise RuntimeError(
                "Signing keypair validation failed. "
                "Private and public keys do not match."
            )
        return SigningIdentity(
            signer_id=signer_id,
            keypair=KeyPair(private_key=private_key, public_key=public_key),
        )

    if production:
        raise RuntimeError(
            "CLEARING_SIGNING_PRIVATE_KEY must be set in production. "
            "Generate one with: python -m tools.manage generate-keypair"
        )

    warnings.warn(
        "Signing key not configured. Generating ephemeral key for development. "
        "Attestations will not verify after a restart.",
        stacklevel=2,
    )
    private_key, public_key = Signer.generate_keypair()
    return SigningIdentity(
        signer_id=signer_id,
        keypair=KeyPair(private_key=private_key, public_key=public_key),
        is_ephemeral=True,
    )
