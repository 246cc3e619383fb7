"""
Canonical Claim Schema

A claim is an unverified assertion that an obligation should exist.
Claims are immutable: a correction is a new claim with a new id.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


MAX_AMOUNT = (1 << 128) - 1


class ClaimKind(str, Enum):
    """
    Lifecycle event types a claim can carry.
    You can add more later, never remove.
    """
    # Deposits
    CREDIT_DEPOSITED = "CREDIT_DEPOSITED"
    VALUE_CREATED = "VALUE_CREATED"

    # Attestation
    CREDIT_PROOF_ATTESTED = "CREDIT_PROOF_ATTESTED"

    # Merchant value
    MERCHANT_VALUE_REQUESTED = "MERCHANT_VALUE_REQUESTED"
    MERCHANT_VALUE_ISSUED = "MERCHANT_VALUE_ISSUED"
    GIFT_CARD_CREATED = "GIFT_CARD_CREATED"

    # Spend
    SPEND_AUTHORIZED = "SPEND_AUTHORIZED"
    SPEND_EXECUTED = "SPEND_EXECUTED"
    SPEND_FINALIZED = "SPEND_FINALIZED"

    # Rewards
    USER_REWARD_EARNED = "USER_REWARD_EARNED"
    CASHBACK_ISSUED = "CASHBACK_ISSUED"


class AnchorType(str, Enum):
    """Category of obligation; selects the honoring adapter."""
    GROCERY = "GROCERY"
    UTILITY = "UTILITY"
    CASH_OUT = "CASH_OUT"
    FUEL = "FUEL"
    MOBILE = "MOBILE"
    HOUSING = "HOUSING"
    MEDICAL = "MEDICAL"


# Kinds that create a real-world obligation when an anchor type is present
FULFILLMENT_KINDS = frozenset({
    ClaimKind.SPEND_AUTHORIZED,
    ClaimKind.SPEND_EXECUTED,
    ClaimKind.MERCHANT_VALUE_REQUESTED,
    ClaimKind.GIFT_CARD_CREATED,
})


class Claim(BaseModel):
    """
    A claim (credit event) awaiting attestation and clearing.

    Every field is covered by the attestation hash; mutating any of them
    after signing invalidates the attestation.
    """
    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "id": "c1",
                "kind": "SPEND_AUTHORIZED",
                "subject": "user1",
                "amount": 50_000000,
                "created_at": "2026-01-15T10:30:00Z",
                "anchor_type": "GROCERY",
                "metadata": {"email": "user1@example.com"},
            }
        },
    )

    id: str = Field(
        ...,
        min_length=1,
        max_length=256,
        description="Unique claim identifier; source of the ledger idempotency id"
    )
    kind: ClaimKind = Field(
        ...,
        description="Lifecycle event type"
    )
    subject: str = Field(
        ...,
        min_length=1,
        description="User the obligation belongs to"
    )
    amount: int = Field(
        ...,
        ge=0,
        le=MAX_AMOUNT,
        description="Amount in micro-units (1 unit = 1e-6 currency)"
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the claim was created"
    )
    anchor_type: Optional[AnchorType] = Field(
        None,
        description="Obligation category; required for external honoring"
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form metadata (recipient details for honoring)"
    )

    @field_validator("created_at")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("created_at must be timezone-aware")
        return value

    @property
    def requires_honoring(self) -> bool:
        """True when clearing this claim creates an obligation to fulfill externally."""
        return self.anchor_type is not None and self.kind in FULFILLMENT_KINDS
