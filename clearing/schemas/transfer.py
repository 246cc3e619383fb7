"""
Ledger-side Schemas

Accounts and transfers as the authoritative ledger sees them. Identifiers
are 128-bit integers, amounts are unsigned micro-units.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .claim import AnchorType


U128 = (1 << 128) - 1


class LedgerAccountId(int, Enum):
    """Well-known ledger accounts."""
    ODFI = 1000
    STABLECOIN = 1010
    ACH = 1050
    CARD = 1060


class LedgerAccount(BaseModel):
    """An account to create on the ledger."""
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., gt=0, lt=U128)
    ledger: int = Field(1, gt=0, description="Currency/ledger partition")
    code: int = Field(1, gt=0, description="Account category code")
    debits_must_not_exceed_credits: bool = Field(
        False,
        description="Reject transfers that would overdraw this account"
    )


class AccountResult(BaseModel):
    """Outcome of creating one account."""
    account_id: int
    created: bool
    exists: bool = False
    reason: Optional[str] = None


class ClearedTransfer(BaseModel):
    """
    A transfer that clears one claim.

    transfer_id is derived from the claim id, never random, so repeated
    submission always targets the same ledger record.
    """
    model_config = ConfigDict(frozen=True)

    transfer_id: int = Field(..., gt=0, lt=U128)
    claim_id: str
    subject: str
    debit_account_id: int = Field(..., gt=0, lt=U128)
    credit_account_id: int = Field(..., gt=0, lt=U128)
    amount: int = Field(..., ge=0, le=U128)
    ledger: int = Field(1, gt=0)
    code: int = Field(1, gt=0)
    anchor_type: Optional[AnchorType] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = Field(
        None,
        description="Assigned by the ledger once posted"
    )

    @property
    def transfer_id_hex(self) -> str:
        return f"{self.transfer_id:032x}"


class TransferStatus(str, Enum):
    """Closed set of outcomes of a transfer submission."""
    ACCEPTED = "accepted"
    EXISTS = "exists"
    REJECTED = "rejected"


class TransferOutcome(BaseModel):
    """Result of create_transfer."""
    status: TransferStatus
    transfer_id: int
    reason: Optional[str] = None
    timestamp: Optional[datetime] = None

    @property
    def cleared(self) -> bool:
        """Accepted and exists are both success."""
        return self.status in (TransferStatus.ACCEPTED, TransferStatus.EXISTS)
