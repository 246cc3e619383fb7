"""
Clearing Orchestrator

finalize(claim, attestation) is the single path from an attested claim to
a posted ledger transfer:

    RECEIVED (claim event log)
      │
    verify ──fail──> REJECTED (no ledger call)
      │
    compliance gate ──refused──> REJECTED (no ledger call)
      │
    derive transfer_id from claim.id
      │
    create_transfer ──rejected──> REJECTED, ClearingFailed
      │ accepted / exists
    CLEARED ──> mirror observation, claim event (background)
      │
    requires honoring? ──> HONORING_PENDING ──> dispatcher (background)

Clearing is final once CLEARED. Nothing downstream (mirror failures,
honoring failures, webhooks) ever reverses or re-posts a transfer; those
outcomes only move the honoring sub-state.

The orchestrator holds no lock. Concurrent finalize() calls for the same
claim derive the same transfer id, so the ledger serializes them: one
posts, the rest see "exists". They also share one lifecycle: a call only
starts a fresh lifecycle when none exists or the last one was REJECTED,
and a failing call leaves the lifecycle alone while another call for the
same claim is still in flight, so a tampered replay cannot mark a claim
REJECTED while a valid call is clearing it.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

from ..db.claims import ClaimStore, ClaimStoreError
from ..db.store import MirrorWriteError
from ..ledger.gateway import LedgerGateway, LedgerGatewayError, LedgerTimeoutError
from ..observability import MetricsCollector, claim_id_var, get_logger
from ..schemas import (
    Attestation,
    Claim,
    ClaimEvent,
    ClaimEventType,
    ClaimLifecycle,
    ClearedTransfer,
    ClearingState,
    CLEARING_TRANSITIONS,
    HONORING_TRANSITIONS,
    HonoringResult,
    HonoringStatus,
    LedgerAccountId,
    NarrativeEntry,
    SpendResult,
    StateChange,
    TransferOutcome,
    TransferStatus,
)
from .attestation import AttestationEngine, InvalidAttestationError
from .compliance import ComplianceGate, ComplianceRejected
from .hasher import derive_transfer_id
from .mirror import NarrativeMirror, clearing_entry, rejection_entry

if TYPE_CHECKING:
    from ..honoring.dispatcher import HonoringDispatcher


logger = get_logger(__name__)


class ClearingFailed(Exception):
    """The ledger refused the transfer, or could not be reached to post it."""

    def __init__(self, reason: str, claim_id: str, transfer_id: Optional[int] = None):
        self.reason = reason
        self.claim_id = claim_id
        self.transfer_id = transfer_id
        super().__init__(f"Clearing failed for claim {claim_id}: {reason}")


class IllegalTransitionError(Exception):
    """A lifecycle move the state machine does not allow."""
    pass


HONORING_STATES = {
    HonoringStatus.HONORED: ClearingState.HONORED,
    HonoringStatus.FAILED_EXTERNAL: ClearingState.FAILED_EXTERNAL,
    HonoringStatus.REJECTED: ClearingState.FAILED_EXTERNAL,
    HonoringStatus.MANUAL_REVIEW: ClearingState.MANUAL_REVIEW,
}

IDENTITY_FIELDS = ("debit_account_id", "credit_account_id", "amount", "ledger", "code")


@dataclass(frozen=True)
class ClearingConfig:
    """Where cleared value moves, and how long to wait for the ledger."""
    ledger_id: int = 1
    code: int = 1
    debit_account_id: int = int(LedgerAccountId.STABLECOIN)
    credit_account_id: int = int(LedgerAccountId.ODFI)
    ledger_timeout: float = 10.0
    resubmit_attempts: int = 1


class ClearingOrchestrator:
    """
    Drives claims through attestation verification and ledger clearing.

    Example:
        orchestrator = ClearingOrchestrator(engine, ledger, mirror, dispatcher)
        result = await orchestrator.finalize(claim, attestation)
        result.transfer_id   # always set on success
    """

    def __init__(
        self,
        engine: AttestationEngine,
        ledger: LedgerGateway,
        mirror: Optional[NarrativeMirror] = None,
        dispatcher: Optional["HonoringDispatcher"] = None,
        config: Optional[ClearingConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        compliance: Optional[ComplianceGate] = None,
        events: Optional[ClaimStore] = None,
    ):
        self._engine = engine
        self._ledger = ledger
        self._mirror = mirror
        self._dispatcher = dispatcher
        self._config = config or ClearingConfig()
        self._metrics = metrics
        self._compliance = compliance
        self._events = events
        self._lifecycles: dict[str, ClaimLifecycle] = {}
        self._inflight: dict[str, int] = {}
        self._event_tail: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self._ledger_calls: set[asyncio.Task] = set()

        if dispatcher is not None:
            dispatcher.on_result(self._on_honoring_result)

    @property
    def engine(self) -> AttestationEngine:
        return self._engine

    @property
    def ledger(self) -> LedgerGateway:
        return self._ledger

    @property
    def mirror(self) -> Optional[NarrativeMirror]:
        return self._mirror

    @property
    def dispatcher(self) -> Optional["HonoringDispatcher"]:
        return self._dispatcher

    @property
    def config(self) -> ClearingConfig:
        return self._config

    @property
    def compliance(self) -> Optional[ComplianceGate]:
        return self._compliance

    @property
    def events(self) -> Optional[ClaimStore]:
        return self._events

    # ============================================================
    # FINALIZE
    # ============================================================

    def build_transfer(self, claim: Claim) -> ClearedTransfer:
        """The one transfer that clears this claim."""
        return ClearedTransfer(
            transfer_id=derive_transfer_id(claim.id),
            claim_id=claim.id,
            subject=claim.subject,
            debit_account_id=self._config.debit_account_id,
            credit_account_id=self._config.credit_account_id,
            amount=claim.amount,
            ledger=self._config.ledger_id,
            code=self._config.code,
            anchor_type=claim.anchor_type,
            metadata=dict(claim.metadata),
        )

    async def finalize(self, claim: Claim, attestation: Attestation) -> SpendResult:
        """
        Verify, then clear a claim on the ledger.

        Returns:
            SpendResult with the ledger transfer id; replayed=True when the
            transfer was already posted by an earlier call

        Raises:
            InvalidAttestationError: Verification failed; the ledger was not called
            ComplianceRejected: The compliance gate refused; the ledger was not called
            ClearingFailed: The ledger rejected the transfer or stayed unreachable
        """
        token = claim_id_var.set(claim.id)
        started = time.perf_counter()
        lifecycle = self._enter(claim.id)
        try:
            self._log_event(ClaimEvent.for_claim(ClaimEventType.RECEIVED, claim))

            try:
                self._engine.verify(claim, attestation)
            except InvalidAttestationError as e:
                self._reject(lifecycle, e.reason)
                if self._metrics is not None:
                    self._metrics.record_rejection("attestation")
                logger.warning("Attestation rejected", claim_id=claim.id, reason=e.reason)
                self._observe(claim.id, rejection_entry(claim.id, "attestation", e.reason))
                self._log_event(ClaimEvent.for_claim(ClaimEventType.ATTESTATION_REJECTED, claim, reason=e.reason))
                raise

            if self._compliance is not None:
                try:
                    self._compliance.admit(claim)
                except ComplianceRejected as e:
                    self._reject(lifecycle, e.code.value)
                    if self._metrics is not None:
                        self._metrics.record_rejection("compliance")
                    self._observe(claim.id, rejection_entry(claim.id, "compliance", e.code.value))
                    self._log_event(
                        ClaimEvent.for_claim(
                            ClaimEventType.COMPLIANCE_REJECTED,
                            claim,
                            reason=e.code.value,
                            metadata={"detail": e.reason, "risk_level": e.risk_level.value},
                        )
                    )
                    raise

            if lifecycle.clearing_state == ClearingState.INTAKEN:
                self._move(lifecycle, ClearingState.ATTESTED_OK)
            transfer = self.build_transfer(claim)
            lifecycle.transfer_id = transfer.transfer_id

            try:
                outcome = await self._submit(transfer)
            except ClearingFailed as e:
                self._log_event(
                    ClaimEvent.for_claim(
                        ClaimEventType.LEDGER_UNAVAILABLE,
                        claim,
                        transfer_id=transfer.transfer_id_hex,
                        reason=e.reason,
                    )
                )
                raise

            if not outcome.cleared:
                self._reject(lifecycle, outcome.reason)
                if self._compliance is not None:
                    self._compliance.release(claim.id)
                if self._metrics is not None:
                    self._metrics.record_rejection("ledger")
                logger.warning(
                    "Ledger rejected transfer",
                    claim_id=claim.id,
                    transfer_id=transfer.transfer_id_hex,
                    reason=outcome.reason,
                )
                self._observe(
                    claim.id,
                    rejection_entry(claim.id, "ledger", outcome.reason or "rejected", transfer.transfer_id_hex),
                )
                self._log_event(
                    ClaimEvent.for_claim(
                        ClaimEventType.LEDGER_REJECTED,
                        claim,
                        transfer_id=transfer.transfer_id_hex,
                        reason=outcome.reason or "rejected",
                    )
                )
                raise ClearingFailed(outcome.reason or "rejected", claim.id, transfer.transfer_id)

            replayed = outcome.status == TransferStatus.EXISTS
            if lifecycle.clearing_state != ClearingState.CLEARED:
                self._move(lifecycle, ClearingState.CLEARED)
            lifecycle.replayed = lifecycle.replayed or replayed
            posted = transfer.model_copy(update={"timestamp": outcome.timestamp})

            latency_ms = (time.perf_counter() - started) * 1000
            if self._metrics is not None:
                self._metrics.record_clearing(latency_ms, replayed)
            logger.info(
                "Claim cleared",
                claim_id=claim.id,
                transfer_id=transfer.transfer_id_hex,
                replayed=replayed,
                duration_ms=round(latency_ms, 2),
            )

            self._observe(claim.id, clearing_entry(posted, replayed=replayed))
            self._log_event(
                ClaimEvent.for_claim(
                    ClaimEventType.REPLAYED if replayed else ClaimEventType.CLEARED,
                    claim,
                    transfer_id=transfer.transfer_id_hex,
                )
            )

            if claim.requires_honoring and self._dispatcher is not None:
                self._start_honoring(lifecycle, posted)

            return SpendResult(
                success=True,
                claim_id=claim.id,
                transfer_id=transfer.transfer_id,
                attestation=attestation,
                state=lifecycle.state,
                replayed=replayed,
            )
        finally:
            self._leave(claim.id)
            claim_id_var.reset(token)

    def _start_honoring(self, lifecycle: ClaimLifecycle, transfer: ClearedTransfer) -> None:
        if lifecycle.honoring_state is None:
            self._move_honoring(lifecycle, ClearingState.HONORING_PENDING)
        current = self._dispatcher.dispatch(transfer)
        if current.is_terminal:
            self._on_honoring_result(transfer, current)

    # ============================================================
    # LEDGER
    # ============================================================

    async def _ledger_call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """
        Run a blocking gateway call in a worker thread.

        The call is shielded: a caller timeout or cancellation stops the
        wait, never the in-flight write.
        """
        task = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        self._ledger_calls.add(task)
        task.add_done_callback(self._forget_ledger_call)
        return await asyncio.wait_for(asyncio.shield(task), timeout=self._config.ledger_timeout)

    def _forget_ledger_call(self, task: asyncio.Task) -> None:
        self._ledger_calls.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Abandoned ledger call finished with error", error=str(task.exception()))

    async def _submit(self, transfer: ClearedTransfer) -> TransferOutcome:
        """
        Submit the transfer; on a timeout or transport failure, look it up
        and resubmit the same idempotent transfer.

        Raises:
            ClearingFailed: ledger_unavailable once resubmissions are spent
        """
        attempts = 1 + max(self._config.resubmit_attempts, 0)
        for attempt in range(1, attempts + 1):
            try:
                return await self._ledger_call(self._ledger.create_transfer, transfer)
            except (asyncio.TimeoutError, LedgerTimeoutError) as e:
                if self._metrics is not None:
                    self._metrics.record_ledger_timeout()
                logger.warning(
                    "Ledger submission timed out",
                    transfer_id=transfer.transfer_id_hex,
                    attempt=attempt,
                    error=str(e) or type(e).__name__,
                )
            except LedgerGatewayError as e:
                logger.warning(
                    "Ledger submission failed in transport",
                    transfer_id=transfer.transfer_id_hex,
                    attempt=attempt,
                    error=str(e),
                )

            reconciled = await self._reconcile(transfer)
            if reconciled is not None:
                return reconciled

        logger.error(
            "Ledger unavailable, transfer not confirmed",
            claim_id=transfer.claim_id,
            transfer_id=transfer.transfer_id_hex,
            attempts=attempts,
        )
        raise ClearingFailed("ledger_unavailable", transfer.claim_id, transfer.transfer_id)

    async def _reconcile(self, transfer: ClearedTransfer) -> Optional[TransferOutcome]:
        """Outcome from lookup_transfer after an unknown result, or None if still unknown."""
        try:
            posted = await self._ledger_call(self._ledger.lookup_transfer, transfer.transfer_id)
        except (asyncio.TimeoutError, LedgerGatewayError) as e:
            logger.warning(
                "Ledger lookup failed during reconciliation",
                transfer_id=transfer.transfer_id_hex,
                error=str(e) or type(e).__name__,
            )
            return None

        if posted is None:
            return None
        for attr in IDENTITY_FIELDS:
            if getattr(posted, attr) != getattr(transfer, attr):
                return TransferOutcome(
                    status=TransferStatus.REJECTED,
                    transfer_id=transfer.transfer_id,
                    reason=f"exists_with_different_{attr}",
                )
        logger.info("Transfer found on ledger after unknown outcome", transfer_id=transfer.transfer_id_hex)
        return TransferOutcome(
            status=TransferStatus.ACCEPTED,
            transfer_id=transfer.transfer_id,
            reason="reconciled",
            timestamp=posted.timestamp,
        )

    # ============================================================
    # LIFECYCLE
    # ============================================================

    def _enter(self, claim_id: str) -> ClaimLifecycle:
        """The lifecycle this call drives. Shared with calls already in flight."""
        existing = self._lifecycles.get(claim_id)
        if existing is None or existing.clearing_state == ClearingState.REJECTED:
            existing = ClaimLifecycle(claim_id=claim_id, history=[StateChange(state=ClearingState.INTAKEN)])
            self._lifecycles[claim_id] = existing
        self._inflight[claim_id] = self._inflight.get(claim_id, 0) + 1
        return existing

    def _leave(self, claim_id: str) -> None:
        remaining = self._inflight.get(claim_id, 1) - 1
        if remaining > 0:
            self._inflight[claim_id] = remaining
        else:
            self._inflight.pop(claim_id, None)

    @staticmethod
    def _move(lifecycle: ClaimLifecycle, state: ClearingState, reason: Optional[str] = None) -> None:
        allowed = CLEARING_TRANSITIONS.get(lifecycle.clearing_state, frozenset())
        if state not in allowed:
            raise IllegalTransitionError(f"{lifecycle.clearing_state.value} -> {state.value}")
        lifecycle.clearing_state = state
        lifecycle.history.append(StateChange(state=state, reason=reason))

    def _reject(self, lifecycle: ClaimLifecycle, reason: Optional[str]) -> None:
        """
        REJECTED, unless the claim already cleared or another call for it
        is still in flight. The last call out decides.
        """
        if lifecycle.clearing_state in (ClearingState.CLEARED, ClearingState.REJECTED):
            return
        if self._inflight.get(lifecycle.claim_id, 0) > 1:
            logger.info("Rejection deferred to in-flight call", claim_id=lifecycle.claim_id, reason=reason)
            return
        self._move(lifecycle, ClearingState.REJECTED, reason)

    @staticmethod
    def _move_honoring(lifecycle: ClaimLifecycle, state: ClearingState, reason: Optional[str] = None) -> None:
        if lifecycle.clearing_state != ClearingState.CLEARED:
            raise IllegalTransitionError(f"honoring before clearing ({lifecycle.clearing_state.value})")
        allowed = HONORING_TRANSITIONS.get(lifecycle.honoring_state, frozenset())
        if state not in allowed:
            current = lifecycle.honoring_state.value if lifecycle.honoring_state else "none"
            raise IllegalTransitionError(f"{current} -> {state.value}")
        lifecycle.honoring_state = state
        lifecycle.history.append(StateChange(state=state, reason=reason))

    def _on_honoring_result(self, transfer: ClearedTransfer, result: HonoringResult) -> None:
        lifecycle = self._lifecycles.get(transfer.claim_id)
        if lifecycle is None or lifecycle.clearing_state != ClearingState.CLEARED:
            return
        lifecycle.honoring_result = result
        target = HONORING_STATES.get(result.status)
        if target is None or lifecycle.honoring_state != ClearingState.HONORING_PENDING:
            return
        reason = result.error_code or (result.status.value if result.status != HonoringStatus.HONORED else None)
        self._move_honoring(lifecycle, target, reason)

    def lifecycle(self, claim_id: str) -> Optional[ClaimLifecycle]:
        """Snapshot of a claim's clearing and honoring state."""
        lifecycle = self._lifecycles.get(claim_id)
        return lifecycle.model_copy(deep=True) if lifecycle is not None else None

    # ============================================================
    # SIDE CHANNELS
    # ============================================================

    def _observe(self, claim_id: str, entry: NarrativeEntry) -> None:
        """Schedule a mirror write. Never awaited by finalize()."""
        if self._mirror is None:
            return
        task = asyncio.get_running_loop().create_task(self._record(claim_id, entry))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _record(self, claim_id: str, entry: NarrativeEntry) -> None:
        try:
            await asyncio.to_thread(self._mirror.record, entry)
        except MirrorWriteError as e:
            if self._metrics is not None:
                self._metrics.record_mirror_failure()
            logger.warning("Narrative mirror write failed", claim_id=claim_id, error=str(e))
        except Exception:
            if self._metrics is not None:
                self._metrics.record_mirror_failure()
            logger.exception("Unexpected narrative mirror failure", claim_id=claim_id)

    def _log_event(self, event: ClaimEvent) -> None:
        """Schedule a claim event append. Appends run one at a time, in call order."""
        if self._events is None:
            return
        previous = self._event_tail
        if previous is not None and previous.done():
            previous = None
        task = asyncio.get_running_loop().create_task(self._append_event(event, previous))
        self._event_tail = task
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _append_event(self, event: ClaimEvent, previous: Optional[asyncio.Task]) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        try:
            await asyncio.to_thread(self._events.append, event)
        except ClaimStoreError as e:
            if self._metrics is not None:
                self._metrics.record_event_log_failure()
            logger.warning(
                "Claim event append failed",
                claim_id=event.claim_id,
                event_type=event.event_type.value,
                error=str(e),
            )
        except Exception:
            if self._metrics is not None:
                self._metrics.record_event_log_failure()
            logger.exception("Unexpected claim event log failure", claim_id=event.claim_id)

    async def drain(self) -> None:
        """Wait for pending ledger calls, background writes and honoring loops."""
        await self._settle(self._ledger_calls)
        await self._settle(self._background)
        if self._dispatcher is not None:
            await self._dispatcher.join()
            await self._settle(self._background)

    @staticmethod
    async def _settle(tasks: set) -> None:
        while True:
            pending = [task for task in tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel honoring loops and flush background writes. The ledger is left as-is."""
        if self._dispatcher is not None:
            await self._dispatcher.shutdown()
        await self._settle(self._background)
