"""
Clearing Lifecycle Schemas

States of one claim from intake to terminal honoring status.

    INTAKEN → ATTESTED_OK → CLEARED → HONORING_PENDING → HONORED
                                                       → FAILED_EXTERNAL
                                                       → MANUAL_REVIEW
    INTAKEN / ATTESTED_OK → REJECTED

The clearing state never leaves CLEARED once reached; honoring outcomes
move only the honoring sub-state.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .attestation import Attestation
from .honoring import HonoringResult


class ClearingState(str, Enum):
    INTAKEN = "INTAKEN"
    ATTESTED_OK = "ATTESTED_OK"
    CLEARED = "CLEARED"
    REJECTED = "REJECTED"
    HONORING_PENDING = "HONORING_PENDING"
    HONORED = "HONORED"
    FAILED_EXTERNAL = "FAILED_EXTERNAL"
    MANUAL_REVIEW = "MANUAL_REVIEW"


CLEARING_TRANSITIONS: dict[ClearingState, frozenset] = {
    ClearingState.INTAKEN: frozenset({ClearingState.ATTESTED_OK, ClearingState.REJECTED}),
    ClearingState.ATTESTED_OK: frozenset({ClearingState.CLEARED, ClearingState.REJECTED}),
    ClearingState.CLEARED: frozenset(),
    ClearingState.REJECTED: frozenset(),
}

HONORING_TRANSITIONS: dict[Optional[ClearingState], frozenset] = {
    None: frozenset({ClearingState.HONORING_PENDING}),
    ClearingState.HONORING_PENDING: frozenset({
        ClearingState.HONORED,
        ClearingState.FAILED_EXTERNAL,
        ClearingState.MANUAL_REVIEW,
    }),
    ClearingState.HONORED: frozenset(),
    ClearingState.FAILED_EXTERNAL: frozenset(),
    ClearingState.MANUAL_REVIEW: frozenset(),
}


class StateChange(BaseModel):
    state: ClearingState
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: Optional[str] = None


class ClaimLifecycle(BaseModel):
    """In-flight view of a claim, queryable while honoring runs."""
    claim_id: str
    transfer_id: Optional[int] = None
    clearing_state: ClearingState = ClearingState.INTAKEN
    honoring_state: Optional[ClearingState] = None
    honoring_result: Optional[HonoringResult] = None
    history: list[StateChange] = Field(default_factory=list)
    replayed: bool = False

    @property
    def state(self) -> ClearingState:
        """Most specific state: honoring sub-state once it exists."""
        return self.honoring_state or self.clearing_state


class SpendResult(BaseModel):
    """
    Return value of finalize().

    Always carries the ledger transfer id and the attestation used,
    regardless of downstream honoring.
    """
    success: bool
    claim_id: str
    transfer_id: int
    attestation: Attestation
    state: ClearingState
    replayed: bool = False

    @property
    def transfer_id_hex(self) -> str:
        return f"{self.transfer_id:032x}"
