"""
API Routes for the Clearing Pipeline

Command endpoints:
- POST /claims/attest           - Attest a claim with the system key
- POST /claims/finalize         - Verify and clear an attested claim

Query endpoints (observation only):
- GET /claims/{claim_id}        - Clearing lifecycle and honoring status
- GET /claims/{claim_id}/events - Claim event log for one claim
- GET /events                   - Claim event log (filters: kind, subject, event_type)
- GET /compliance/{subject}     - Compliance risk profile of a subject
- GET /narrative                - Narrative mirror entries (filters: claim_id, account_id, status, source)
- GET /balances/{account_id}    - Ledger balance plus advisory observed balance

Transfer ids are 128-bit; responses carry them as 32-char hex strings.
"""

import asyncio
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel

from ..core import (
    CanonicalSerializationError,
    ClearingFailed,
    ComplianceRejected,
    InvalidAttestationError,
)
from ..ledger import AccountNotFoundError, LedgerGatewayError
from ..observability import get_logger
from ..schemas import (
    Attestation,
    Claim,
    ClaimEvent,
    ClaimEventType,
    ClaimKind,
    ClearingState,
    HonoringStatus,
    NarrativeEntry,
    NarrativeSource,
    NarrativeStatus,
)
from ..wiring import Pipeline


router = APIRouter()
logger = get_logger(__name__)


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


# ============================================================
# Request/Response Models
# ============================================================

class AttestResponse(BaseModel):
    claim_id: str
    claim_hash: str
    attestation: Attestation


class FinalizeRequest(BaseModel):
    claim: Claim
    attestation: Attestation


class SpendResponse(BaseModel):
    success: bool
    claim_id: str
    transfer_id: str
    state: ClearingState
    replayed: bool
    attestation: Attestation


class HonoringView(BaseModel):
    status: HonoringStatus
    adapter: str
    external_reference: str
    external_id: Optional[str] = None
    error_code: Optional[str] = None
    attempts: int = 0
    completed_at: Optional[datetime] = None


class LifecycleResponse(BaseModel):
    claim_id: str
    transfer_id: Optional[str] = None
    state: ClearingState
    clearing_state: ClearingState
    honoring_state: Optional[ClearingState] = None
    replayed: bool
    honoring: Optional[HonoringView] = None
    history: list[dict[str, Any]]


class BalanceResponse(BaseModel):
    account_id: int
    ledger_balance: int
    observed_balance: int
    authoritative: str = "ledger"


# ============================================================
# Command Endpoints
# ============================================================

@router.post(
    "/claims/attest",
    response_model=AttestResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Clearing"],
    summary="Attest a claim",
)
async def attest_claim(claim: Claim, pipeline: Pipeline = Depends(get_pipeline)):
    """
    Hash, commit and sign a claim with the system key.

    The attestation is bound to the exact claim submitted; any later change
    to the claim makes it fail verification.
    """
    try:
        attestation = pipeline.engine.attest(claim)
    except CanonicalSerializationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Claim is not canonically serializable: {e}",
        )
    return AttestResponse(
        claim_id=claim.id,
        claim_hash=attestation.proof.claim_hash,
        attestation=attestation,
    )


@router.post(
    "/claims/finalize",
    response_model=SpendResponse,
    tags=["Clearing"],
    summary="Verify and clear a claim",
)
async def finalize_claim(request: FinalizeRequest, pipeline: Pipeline = Depends(get_pipeline)):
    """
    Verify the attestation, then post the claim's transfer on the ledger.

    Replaying a finalized claim returns the same transfer with replayed=true.
    Honoring runs in the background; poll GET /claims/{claim_id}.
    """
    try:
        result = await pipeline.orchestrator.finalize(request.claim, request.attestation)
    except InvalidAttestationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": "invalid_attestation", "reason": e.reason},
        )
    except ComplianceRejected as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "compliance_rejected", "code": e.code.value, "reason": e.reason},
        )
    except ClearingFailed as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "clearing_failed",
                "reason": e.reason,
                "transfer_id": f"{e.transfer_id:032x}" if e.transfer_id is not None else None,
            },
        )
    return SpendResponse(
        success=result.success,
        claim_id=result.claim_id,
        transfer_id=result.transfer_id_hex,
        state=result.state,
        replayed=result.replayed,
        attestation=result.attestation,
    )


# ============================================================
# Query Endpoints
# ============================================================

@router.get(
    "/claims/{claim_id}",
    response_model=LifecycleResponse,
    tags=["Clearing"],
    summary="Clearing and honoring status of a claim",
)
async def get_claim_status(claim_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    lifecycle = pipeline.orchestrator.lifecycle(claim_id)
    if lifecycle is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No finalize attempt recorded for claim {claim_id}",
        )

    honoring = None
    result = lifecycle.honoring_result
    if result is None and lifecycle.transfer_id is not None:
        result = pipeline.dispatcher.status(lifecycle.transfer_id)
    if result is not None:
        honoring = HonoringView(**result.model_dump(include=set(HonoringView.model_fields)))

    return LifecycleResponse(
        claim_id=lifecycle.claim_id,
        transfer_id=f"{lifecycle.transfer_id:032x}" if lifecycle.transfer_id is not None else None,
        state=lifecycle.state,
        clearing_state=lifecycle.clearing_state,
        honoring_state=lifecycle.honoring_state,
        replayed=lifecycle.replayed,
        honoring=honoring,
        history=[change.model_dump(mode="json") for change in lifecycle.history],
    )


@router.get(
    "/claims/{claim_id}/events",
    response_model=list[ClaimEvent],
    tags=["Claim Events"],
    summary="Claim event log for one claim",
)
async def get_claim_events(claim_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    events = await asyncio.to_thread(pipeline.claim_store.list_for_claim, claim_id)
    if not events:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No events recorded for claim {claim_id}",
        )
    return events


@router.get(
    "/events",
    response_model=list[ClaimEvent],
    tags=["Claim Events"],
    summary="List claim events",
)
async def list_claim_events(
    kind: Optional[ClaimKind] = Query(None),
    subject: Optional[str] = Query(None),
    event_type: Optional[ClaimEventType] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    pipeline: Pipeline = Depends(get_pipeline),
):
    events = await asyncio.to_thread(
        pipeline.claim_store.query,
        kind=kind,
        subject=subject,
        event_type=event_type,
    )
    return events[-limit:]


@router.get(
    "/compliance/{subject}",
    tags=["Compliance"],
    summary="Compliance risk profile of a subject",
)
async def get_compliance_profile(subject: str, pipeline: Pipeline = Depends(get_pipeline)):
    if pipeline.compliance is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Compliance gate is disabled",
        )
    return pipeline.compliance.profile(subject).to_dict()


@router.get(
    "/narrative",
    response_model=list[NarrativeEntry],
    tags=["Narrative Mirror"],
    summary="List narrative mirror entries",
)
async def list_narrative(
    claim_id: Optional[str] = Query(None),
    account_id: Optional[int] = Query(None),
    entry_status: Optional[NarrativeStatus] = Query(None, alias="status"),
    source: Optional[NarrativeSource] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """
    Observation log. Advisory only: nothing here is ledger truth.
    """
    mirror = pipeline.mirror
    if claim_id is not None:
        entries = await asyncio.to_thread(mirror.entries_for_claim, claim_id)
    elif account_id is not None:
        entries = await asyncio.to_thread(mirror.entries_for_account, account_id)
    elif entry_status is not None:
        entries = await asyncio.to_thread(mirror.entries_with_status, entry_status)
    elif source is not None:
        entries = await asyncio.to_thread(mirror.entries_from_source, source)
    else:
        entries = await asyncio.to_thread(mirror.all_entries)

    if account_id is not None:
        entries = [e for e in entries if e.touches(account_id)]
    if entry_status is not None:
        entries = [e for e in entries if e.status == entry_status]
    if source is not None:
        entries = [e for e in entries if e.source == source]
    return entries[-limit:]


@router.get(
    "/balances/{account_id}",
    response_model=BalanceResponse,
    tags=["Ledger"],
    summary="Ledger balance of an account",
)
async def get_balance(account_id: int, pipeline: Pipeline = Depends(get_pipeline)):
    """
    Live ledger balance (credits_posted - debits_posted).

    observed_balance comes from the narrative mirror and is for display only;
    it uses the mirror convention (debits add, credits subtract).
    """
    try:
        balance = await asyncio.to_thread(pipeline.ledger.lookup_balance, account_id)
    except AccountNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Account {account_id} not found on the ledger",
        )
    except LedgerGatewayError as e:
        logger.warning("Balance lookup failed", account_id=account_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger unavailable",
        )
    return BalanceResponse(
        account_id=account_id,
        ledger_balance=balance,
        observed_balance=pipeline.mirror.observed_balance(account_id),
    )
