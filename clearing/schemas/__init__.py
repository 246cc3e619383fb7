# Canonical schemas for the attested clearing pipeline.
# These define the contract every stage exchanges.

from .claim import AnchorType, Claim, ClaimKind, FULFILLMENT_KINDS
from .attestation import Attestation, AttestationProof
from .transfer import (
    AccountResult,
    ClearedTransfer,
    LedgerAccount,
    LedgerAccountId,
    TransferOutcome,
    TransferStatus,
)
from .narrative import (
    Direction,
    MEMO_ACCOUNTS,
    NarrativeAccount,
    NarrativeEntry,
    NarrativeLine,
    NarrativeSource,
    NarrativeStatus,
    OBLIGATION_ACCOUNTS,
    SETTLEMENT_ACCOUNTS,
)
from .honoring import (
    HonoringResult,
    HonoringStatus,
    TERMINAL_HONORING_STATUSES,
    WebhookResult,
)
from .events import ClaimEvent, ClaimEventType
from .clearing import (
    CLEARING_TRANSITIONS,
    ClaimLifecycle,
    ClearingState,
    HONORING_TRANSITIONS,
    SpendResult,
    StateChange,
)

__all__ = [
    # Claim
    "AnchorType",
    "Claim",
    "ClaimKind",
    "FULFILLMENT_KINDS",
    # Attestation
    "Attestation",
    "AttestationProof",
    # Ledger
    "AccountResult",
    "ClearedTransfer",
    "LedgerAccount",
    "LedgerAccountId",
    "TransferOutcome",
    "TransferStatus",
    # Narrative
    "Direction",
    "MEMO_ACCOUNTS",
    "NarrativeAccount",
    "NarrativeEntry",
    "NarrativeLine",
    "NarrativeSource",
    "NarrativeStatus",
    "OBLIGATION_ACCOUNTS",
    "SETTLEMENT_ACCOUNTS",
    # Honoring
    "HonoringResult",
    "HonoringStatus",
    "TERMINAL_HONORING_STATUSES",
    "WebhookResult",
    # Events
    "ClaimEvent",
    "ClaimEventType",
    # Lifecycle
    "CLEARING_TRANSITIONS",
    "HONORING_TRANSITIONS",
    "ClaimLifecycle",
    "ClearingState",
    "SpendResult",
    "StateChange",
]
