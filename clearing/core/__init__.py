# Core clearing services
from .hasher import CanonicalSerializationError, Hasher, derive_transfer_id
from .signer import Signer
from .keys import KeyPair, SigningIdentity, load_signing_identity, validate_keypair
from .merkle import MerkleTree
from .attestation import AttestationEngine, InvalidAttestationError
from .compliance import (
    ComplianceCode,
    ComplianceConfig,
    ComplianceDecision,
    ComplianceGate,
    ComplianceRejected,
    RiskLevel,
    RiskProfile,
)
from .mirror import (
    NarrativeMirror,
    clearing_entry,
    honoring_entry,
    rejection_entry,
    webhook_entry,
)
from .orchestrator import (
    ClearingConfig,
    ClearingFailed,
    ClearingOrchestrator,
    IllegalTransitionError,
)

__all__ = [
    "CanonicalSerializationError",
    "Hasher",
    "derive_transfer_id",
    "Signer",
    "KeyPair",
    "SigningIdentity",
    "load_signing_identity",
    "validate_keypair",
    "MerkleTree",
    "AttestationEngine",
    "InvalidAttestationError",
    "ComplianceCode",
    "ComplianceConfig",
    "ComplianceDecision",
    "ComplianceGate",
    "ComplianceRejected",
    "RiskLevel",
    "RiskProfile",
    "NarrativeMirror",
    "clearing_entry",
    "honoring_entry",
    "rejection_entry",
    "webhook_entry",
    "ClearingConfig",
    "ClearingFailed",
    "ClearingOrchestrator",
    "IllegalTransitionError",
]
