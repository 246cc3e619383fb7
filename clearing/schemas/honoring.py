"""
Honoring Schemas

Outcome of attempting external fulfillment of a cleared obligation.
An honoring result never mutates the ledger transfer it refers to.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class HonoringStatus(str, Enum):
    HONORED = "HONORED"
    PENDING = "PENDING"
    FAILED_EXTERNAL = "FAILED_EXTERNAL"
    REJECTED = "REJECTED"
    MANUAL_REVIEW = "MANUAL_REVIEW"


TERMINAL_HONORING_STATUSES = frozenset({
    HonoringStatus.HONORED,
    HonoringStatus.FAILED_EXTERNAL,
    HonoringStatus.REJECTED,
    HonoringStatus.MANUAL_REVIEW,
})


class HonoringResult(BaseModel):
    """What a provider (or the retry driver) concluded about one transfer."""
    status: HonoringStatus
    transfer_id: int
    adapter: str
    external_reference: str = Field(
        ...,
        description="Idempotent reference sent to the provider, derived from transfer_id"
    )
    external_id: Optional[str] = Field(None, description="Provider transaction id")
    proof_hash: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    completed_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.status == HonoringStatus.HONORED

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_HONORING_STATUSES


class WebhookResult(BaseModel):
    """What an adapter understood from a provider callback."""
    acknowledged: bool
    external_id: Optional[str] = None
    external_reference: Optional[str] = None
    status: Optional[HonoringStatus] = None
    event_type: Optional[str] = None
    message: Optional[str] = None
