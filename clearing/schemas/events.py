"""
Claim Event Schema

The claim event log records what happened to each claim at intake and
clearing. Nothing is edited: every finalize() call appends, and the log
is queryable by claim id, claim kind, subject and event type.

The log is a record of claims, not of value. Balances come from the
ledger alone.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .claim import AnchorType, Claim, ClaimKind


class ClaimEventType(str, Enum):
    """
    Things that happen to a claim.
    You can add more later, never remove.
    """
    RECEIVED = "RECEIVED"
    ATTESTATION_REJECTED = "ATTESTATION_REJECTED"
    COMPLIANCE_REJECTED = "COMPLIANCE_REJECTED"
    CLEARED = "CLEARED"
    REPLAYED = "REPLAYED"
    LEDGER_REJECTED = "LEDGER_REJECTED"
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"


class ClaimEvent(BaseModel):
    """One immutable record in the claim event log."""
    id: Optional[str] = Field(None, description="Assigned by the store on append")
    event_type: ClaimEventType
    claim_id: str
    kind: ClaimKind
    subject: str
    amount: int = Field(..., ge=0, description="Claim amount in micro-units")
    anchor_type: Optional[AnchorType] = None
    transfer_id: Optional[str] = Field(None, description="Ledger transfer id, hex")
    reason: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_claim(cls, event_type: ClaimEventType, claim: Claim, **fields: Any) -> "ClaimEvent":
        return cls(
            event_type=event_type,
            claim_id=claim.id,
            kind=claim.kind,
            subject=claim.subject,
            amount=claim.amount,
            anchor_type=claim.anchor_type,
            **fields,
        )
