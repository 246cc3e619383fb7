"""
Canonical Narrative Schema

The narrative mirror is an append-only, observational double-entry log.
Balances it implies are advisory only; the ledger is the truth.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .claim import AnchorType


class NarrativeStatus(str, Enum):
    RECORDED = "RECORDED"
    OBSERVED = "OBSERVED"
    FAILED = "FAILED"


class NarrativeSource(str, Enum):
    """Where an observation came from."""
    CLEARING_OBSERVATION = "CLEARING_OBSERVATION"
    ATTESTATION = "ATTESTATION"
    HONORING_ATTEMPT = "HONORING_ATTEMPT"
    HONORING_RESULT = "HONORING_RESULT"
    INTERSYSTEM = "INTERSYSTEM"


class Direction(str, Enum):
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


class NarrativeAccount(int, Enum):
    """
    Observational chart of accounts.

    1xxx mirror the ledger accounts, 25xx obligations per anchor,
    35xx authorization memos per anchor, 4xxx/6xxx observed income/expense.
    """
    HONORING_ADAPTER_ODFI = 1000
    HONORING_ADAPTER_STABLECOIN = 1010
    HONORING_ADAPTER_ACH = 1050
    HONORING_ADAPTER_CARD = 1060

    OBSERVED_AP = 2000
    OBSERVED_ANCHOR_GROCERY_OBLIGATION = 2500
    OBSERVED_ANCHOR_UTILITY_OBLIGATION = 2501
    OBSERVED_ANCHOR_FUEL_OBLIGATION = 2502
    OBSERVED_ANCHOR_MOBILE_OBLIGATION = 2503
    OBSERVED_ANCHOR_HOUSING_OBLIGATION = 2504
    OBSERVED_ANCHOR_MEDICAL_OBLIGATION = 2505

    ANCHOR_GROCERY_AUTHORIZATION_MEMO = 3500
    ANCHOR_UTILITY_AUTHORIZATION_MEMO = 3501
    ANCHOR_FUEL_AUTHORIZATION_MEMO = 3502
    ANCHOR_MOBILE_AUTHORIZATION_MEMO = 3503
    ANCHOR_HOUSING_AUTHORIZATION_MEMO = 3504
    ANCHOR_MEDICAL_AUTHORIZATION_MEMO = 3505

    OBSERVED_TOKEN_REALIZATION = 4000
    OBSERVED_OPS_EXPENSE = 6000
    OBSERVED_PURCHASE_EXPENSE = 6100
    OBSERVED_ANCHOR_FULFILLMENT_EXPENSE = 6300


# Cash-out has no dedicated obligation/memo pair; it settles through AP.
OBLIGATION_ACCOUNTS: dict[AnchorType, NarrativeAccount] = {
    AnchorType.GROCERY: NarrativeAccount.OBSERVED_ANCHOR_GROCERY_OBLIGATION,
    AnchorType.UTILITY: NarrativeAccount.OBSERVED_ANCHOR_UTILITY_OBLIGATION,
    AnchorType.FUEL: NarrativeAccount.OBSERVED_ANCHOR_FUEL_OBLIGATION,
    AnchorType.MOBILE: NarrativeAccount.OBSERVED_ANCHOR_MOBILE_OBLIGATION,
    AnchorType.HOUSING: NarrativeAccount.OBSERVED_ANCHOR_HOUSING_OBLIGATION,
    AnchorType.MEDICAL: NarrativeAccount.OBSERVED_ANCHOR_MEDICAL_OBLIGATION,
    AnchorType.CASH_OUT: NarrativeAccount.OBSERVED_AP,
}

MEMO_ACCOUNTS: dict[AnchorType, NarrativeAccount] = {
    AnchorType.GROCERY: NarrativeAccount.ANCHOR_GROCERY_AUTHORIZATION_MEMO,
    AnchorType.UTILITY: NarrativeAccount.ANCHOR_UTILITY_AUTHORIZATION_MEMO,
    AnchorType.FUEL: NarrativeAccount.ANCHOR_FUEL_AUTHORIZATION_MEMO,
    AnchorType.MOBILE: NarrativeAccount.ANCHOR_MOBILE_AUTHORIZATION_MEMO,
    AnchorType.HOUSING: NarrativeAccount.ANCHOR_HOUSING_AUTHORIZATION_MEMO,
    AnchorType.MEDICAL: NarrativeAccount.ANCHOR_MEDICAL_AUTHORIZATION_MEMO,
    AnchorType.CASH_OUT: NarrativeAccount.OBSERVED_TOKEN_REALIZATION,
}

SETTLEMENT_ACCOUNTS: dict[AnchorType, NarrativeAccount] = {
    AnchorType.CASH_OUT: NarrativeAccount.HONORING_ADAPTER_CARD,
    AnchorType.UTILITY: NarrativeAccount.HONORING_ADAPTER_ACH,
    AnchorType.HOUSING: NarrativeAccount.HONORING_ADAPTER_ACH,
}


class NarrativeLine(BaseModel):
    """One side of a double-entry observation."""
    account_id: int = Field(..., gt=0)
    direction: Direction
    amount: int = Field(..., ge=0)
    memo: Optional[str] = None


class NarrativeEntry(BaseModel):
    """
    An append-only observation.

    Never updated, never deleted. Debits must equal credits.
    """
    id: Optional[str] = Field(
        None,
        description="Assigned by the store on append"
    )
    description: str
    source: NarrativeSource
    status: NarrativeStatus
    claim_id: str
    transfer_id: Optional[str] = Field(
        None,
        description="Ledger transfer id (hex) when one exists"
    )
    lines: list[NarrativeLine] = Field(default_factory=list)
    dedupe_key: Optional[str] = Field(
        None,
        description="Repeated appends with the same key return the first entry"
    )
    metadata: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_debits(self) -> int:
        return sum(line.amount for line in self.lines if line.direction == Direction.DEBIT)

    @property
    def total_credits(self) -> int:
        return sum(line.amount for line in self.lines if line.direction == Direction.CREDIT)

    @property
    def is_balanced(self) -> bool:
        return self.total_debits == self.total_credits

    def touches(self, account_id: int) -> bool:
        return any(line.account_id == account_id for line in self.lines)
