"""
Honoring Dispatcher

Routes cleared transfers to the adapter registered for their anchor type
and runs each honoring loop as a background task.

Guarantees:
- One honoring loop per transfer id. A second dispatch while a loop is in
  flight, or after a terminal result, returns the existing state.
- A terminal result is never replaced, whether it came from the retry
  loop, a status check or a webhook.
- Different transfers run concurrently, bounded per provider by a
  RateLimiter (max concurrency and minimum spacing between calls).
- Nothing here writes to the ledger. Outcomes go to the status view, the
  narrative mirror and the registered result callbacks.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from ..core.mirror import NarrativeMirror, honoring_entry, webhook_entry
from ..db.store import MirrorWriteError
from ..observability import MetricsCollector, get_logger
from ..schemas import (
    AnchorType,
    ClearedTransfer,
    HonoringResult,
    HonoringStatus,
    NarrativeEntry,
    WebhookResult,
)
from .protocol import HonoringAdapter, HonoringError, external_reference
from .retry import RetryPolicy, Sleep, honor_with_retry


logger = get_logger(__name__)

ResultCallback = Callable[[ClearedTransfer, HonoringResult], None]


# ============================================================
# RATE LIMITING
# ============================================================

@dataclass(frozen=True)
class RateLimit:
    max_concurrency: int = 4
    min_interval: float = 0.0


class RateLimiter:
    """
    Per-provider concurrency cap plus minimum spacing between call starts.

    Usage:
        async with limiter:
            await adapter.honor_claim(transfer)
    """

    def __init__(
        self,
        limit: Optional[RateLimit] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit or RateLimit()
        self._semaphore = asyncio.Semaphore(self.limit.max_concurrency)
        self._spacing = asyncio.Lock()
        self._next_start = 0.0
        self._sleep = sleep
        self._clock = clock

    async def __aenter__(self) -> "RateLimiter":
        await self._semaphore.acquire()
        try:
            async with self._spacing:
                wait = self._next_start - self._clock()
                if wait > 0:
                    await self._sleep(wait)
                self._next_start = self._clock() + self.limit.min_interval
        except BaseException:
            self._semaphore.release()
            raise
        return self

    async def __aexit__(self, *exc_info) -> None:
        self._semaphore.release()


class _LimitedAdapter:
    """Adapter view whose calls pass through a RateLimiter."""

    def __init__(self, adapter: HonoringAdapter, limiter: RateLimiter):
        self._adapter = adapter
        self._limiter = limiter
        self.name = adapter.name
        self.anchor_types = adapter.anchor_types

    async def honor_claim(self, transfer: ClearedTransfer) -> HonoringResult:
        async with self._limiter:
            return await self._adapter.honor_claim(transfer)

    async def check_status(self, external_id: str, transfer_id: int) -> HonoringResult:
        async with self._limiter:
            return await self._adapter.check_status(external_id, transfer_id)

    async def handle_webhook(self, payload: dict[str, Any]) -> WebhookResult:
        return await self._adapter.handle_webhook(payload)

    def validate_config(self) -> list[str]:
        return self._adapter.validate_config()


# ============================================================
# DISPATCHER
# ============================================================

class HonoringDispatcher:
    """
    Background honoring of cleared obligations.

    Example:
        dispatcher = HonoringDispatcher(mirror=mirror)
        dispatcher.register(MoovCashOutAdapter(...))
        dispatcher.dispatch(transfer)      # returns PENDING at once
        await dispatcher.join()            # tests: wait for settlement
    """

    def __init__(
        self,
        mirror: Optional[NarrativeMirror] = None,
        policy: Optional[RetryPolicy] = None,
        rate_limits: Optional[dict[str, RateLimit]] = None,
        sleep: Sleep = asyncio.sleep,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._mirror = mirror
        self._policy = policy or RetryPolicy()
        self._rate_limits = dict(rate_limits or {})
        self._sleep = sleep
        self._metrics = metrics

        self._adapters: dict[str, HonoringAdapter] = {}
        self._routes: dict[AnchorType, str] = {}
        self._limiters: dict[str, RateLimiter] = {}

        self._results: dict[int, HonoringResult] = {}
        self._transfers: dict[int, ClearedTransfer] = {}
        self._tasks: dict[int, asyncio.Task] = {}
        self._cancelled: set[int] = set()
        self._by_external: dict[str, int] = {}
        self._callbacks: list[ResultCallback] = []

    # ============================================================
    # REGISTRY
    # ============================================================

    def register(
        self,
        adapter: HonoringAdapter,
        anchor_types: Optional[Iterable[AnchorType]] = None,
    ) -> None:
        """Route anchor types (default: the adapter's own) to an adapter."""
        problems = adapter.validate_config()
        if problems:
            logger.warning(
                "Honoring adapter registered with configuration problems",
                adapter=adapter.name,
                problems=problems,
            )
        self._adapters[adapter.name] = adapter
        for anchor_type in (anchor_types if anchor_types is not None else adapter.anchor_types):
            self._routes[AnchorType(anchor_type)] = adapter.name
        logger.info(
            "Honoring adapter registered",
            adapter=adapter.name,
            anchor_types=sorted(a.value for a, n in self._routes.items() if n == adapter.name),
        )

    def adapter_for(self, anchor_type: Optional[AnchorType]) -> Optional[HonoringAdapter]:
        if anchor_type is None:
            return None
        name = self._routes.get(anchor_type)
        return self._adapters.get(name) if name else None

    def adapter_named(self, name: str) -> Optional[HonoringAdapter]:
        return self._adapters.get(name)

    @property
    def adapters(self) -> dict[str, HonoringAdapter]:
        return dict(self._adapters)

    def on_result(self, callback: ResultCallback) -> None:
        """Register a callback invoked with every settled result."""
        self._callbacks.append(callback)

    def _limiter(self, adapter_name: str) -> RateLimiter:
        if adapter_name not in self._limiters:
            self._limiters[adapter_name] = RateLimiter(
                self._rate_limits.get(adapter_name),
                sleep=self._sleep,
            )
        return self._limiters[adapter_name]

    # ============================================================
    # DISPATCH
    # ============================================================

    def dispatch(self, transfer: ClearedTransfer) -> HonoringResult:
        """
        Start honoring a cleared transfer in the background.

        Must be called from a running event loop. Returns the current state:
        PENDING for a new loop, or whatever already exists for this transfer.
        """
        transfer_id = transfer.transfer_id
        existing = self._results.get(transfer_id)
        if existing is not None and transfer_id not in self._cancelled:
            logger.debug(
                "Honoring already dispatched",
                transfer_id=transfer.transfer_id_hex,
                honoring_status=existing.status.value,
            )
            return existing

        self._cancelled.discard(transfer_id)
        self._transfers[transfer_id] = transfer
        self._by_external[external_reference(transfer_id)] = transfer_id

        adapter = self.adapter_for(transfer.anchor_type)
        pending = HonoringResult(
            status=HonoringStatus.PENDING,
            transfer_id=transfer_id,
            adapter=adapter.name if adapter else "",
            external_reference=external_reference(transfer_id),
        )
        self._results[transfer_id] = pending

        task = asyncio.get_running_loop().create_task(
            self._run(adapter, transfer),
            name=f"honoring-{transfer.transfer_id_hex}",
        )
        self._tasks[transfer_id] = task
        task.add_done_callback(lambda done, tid=transfer_id: self._forget_task(tid, done))
        logger.info(
            "Honoring dispatched",
            claim_id=transfer.claim_id,
            transfer_id=transfer.transfer_id_hex,
            adapter=pending.adapter or None,
        )
        return pending

    async def _run(self, adapter: Optional[HonoringAdapter], transfer: ClearedTransfer) -> None:
        transfer_id = transfer.transfer_id
        try:
            if adapter is None:
                result = HonoringResult(
                    status=HonoringStatus.MANUAL_REVIEW,
                    transfer_id=transfer_id,
                    adapter="",
                    external_reference=external_reference(transfer_id),
                    error_code="NO_ADAPTER",
                    error_message=f"No adapter routed for anchor type {transfer.anchor_type}",
                    completed_at=datetime.now(timezone.utc),
                )
            else:
                result = await honor_with_retry(
                    _LimitedAdapter(adapter, self._limiter(adapter.name)),
                    transfer,
                    self._policy,
                    sleep=self._sleep,
                    on_attempt=self._count_attempt,
                )
        except asyncio.CancelledError:
            logger.info("Honoring cancelled", transfer_id=transfer.transfer_id_hex)
            raise
        except Exception as e:
            logger.exception(
                "Unexpected honoring failure, routing to manual review",
                transfer_id=transfer.transfer_id_hex,
            )
            result = HonoringResult(
                status=HonoringStatus.MANUAL_REVIEW,
                transfer_id=transfer_id,
                adapter=adapter.name if adapter else "",
                external_reference=external_reference(transfer_id),
                error_code="INTERNAL_ERROR",
                error_message=str(e),
                completed_at=datetime.now(timezone.utc),
            )
        await self._settle(transfer, result)

    def _forget_task(self, transfer_id: int, task: asyncio.Task) -> None:
        if self._tasks.get(transfer_id) is task:
            del self._tasks[transfer_id]

    def _count_attempt(self, attempt: int) -> None:
        if self._metrics is not None:
            self._metrics.record_honoring_attempt()

    async def _settle(self, transfer: ClearedTransfer, result: HonoringResult) -> HonoringResult:
        transfer_id = transfer.transfer_id
        current = self._results.get(transfer_id)
        if current is not None and current.is_terminal and current is not result:
            logger.info(
                "Ignoring honoring update for settled transfer",
                transfer_id=transfer.transfer_id_hex,
                honoring_status=current.status.value,
                ignored_status=result.status.value,
            )
            return current

        self._results[transfer_id] = result
        if result.external_id:
            self._by_external[result.external_id] = transfer_id
        if self._metrics is not None:
            self._metrics.record_honoring_outcome(result.status.value)

        level = logging.INFO if result.status in (HonoringStatus.HONORED, HonoringStatus.PENDING) else logging.WARNING
        logger.log(
            level,
            "Honoring settled",
            claim_id=transfer.claim_id,
            transfer_id=transfer.transfer_id_hex,
            adapter=result.adapter,
            honoring_status=result.status.value,
            attempts=result.attempts,
            error_code=result.error_code,
        )

        if self._mirror is not None:
            await self._observe(transfer.claim_id, honoring_entry(transfer, result))

        for callback in self._callbacks:
            try:
                callback(transfer, result)
            except Exception:
                logger.exception("Honoring result callback failed", transfer_id=transfer.transfer_id_hex)
        return result

    async def _observe(self, claim_id: str, entry: NarrativeEntry) -> None:
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

    # ============================================================
    # STATUS, WEBHOOKS
    # ============================================================

    def status(self, transfer_id: int) -> Optional[HonoringResult]:
        return self._results.get(transfer_id)

    def transfer_for(self, reference: str) -> Optional[ClearedTransfer]:
        """Find a dispatched transfer by external reference or provider id."""
        transfer_id = self._by_external.get(reference)
        return self._transfers.get(transfer_id) if transfer_id is not None else None

    async def refresh_status(self, transfer_id: int) -> Optional[HonoringResult]:
        """Ask the provider for the current status of a PENDING transfer."""
        current = self._results.get(transfer_id)
        transfer = self._transfers.get(transfer_id)
        if current is None or transfer is None or current.is_terminal or not current.external_id:
            return current
        adapter = self._adapters.get(current.adapter)
        if adapter is None:
            return current
        try:
            async with self._limiter(adapter.name):
                result = await adapter.check_status(current.external_id, transfer_id)
        except HonoringError as e:
            logger.warning(
                "Honoring status check failed",
                transfer_id=transfer.transfer_id_hex,
                adapter=adapter.name,
                error_code=e.code,
            )
            return current
        if result.status == HonoringStatus.PENDING:
            return current
        return await self._settle(transfer, result.model_copy(update={"attempts": current.attempts}))

    async def apply_webhook(self, adapter_name: str, webhook: WebhookResult) -> Optional[HonoringResult]:
        """
        Fold a provider callback into the status view and the mirror.

        Returns the transfer's honoring state, or None when the callback
        does not match a dispatched transfer.
        """
        if self._metrics is not None:
            self._metrics.record_webhook()

        transfer = None
        for reference in (webhook.external_reference, webhook.external_id):
            if reference:
                transfer = self.transfer_for(reference)
                if transfer is not None:
                    break

        claim_id = transfer.claim_id if transfer else (webhook.external_reference or webhook.external_id or "unknown")
        if self._mirror is not None:
            await self._observe(claim_id, webhook_entry(adapter_name, claim_id, webhook))

        if transfer is None:
            logger.warning(
                "Webhook did not match a dispatched transfer",
                adapter=adapter_name,
                external_id=webhook.external_id,
                external_reference=webhook.external_reference,
            )
            return None

        current = self._results[transfer.transfer_id]
        if webhook.status is None or webhook.status == HonoringStatus.PENDING:
            return current

        return await self._settle(
            transfer,
            current.model_copy(update={
                "status": webhook.status,
                "external_id": webhook.external_id or current.external_id,
                "details": {**current.details, "webhook_event": webhook.event_type},
                "completed_at": datetime.now(timezone.utc),
            }),
        )

    # ============================================================
    # LIFECYCLE
    # ============================================================

    def cancel(self, transfer_id: int) -> bool:
        """Cancel an in-flight honoring loop. Ledger and mirror are not touched."""
        task = self._tasks.get(transfer_id)
        if task is None or task.done():
            return False
        self._cancelled.add(transfer_id)
        task.cancel()
        return True

    async def join(self) -> None:
        """Wait until every in-flight honoring loop has settled."""
        while True:
            pending = [task for task in self._tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every in-flight honoring loop and wait for them to stop."""
        tasks = list(self._tasks.items())
        for transfer_id, task in tasks:
            self._cancelled.add(transfer_id)
            task.cancel()
        if tasks:
            await asyncio.gather(*(t for _, t in tasks), return_exceptions=True)
        logger.info("Honoring dispatcher shut down", cancelled=len(tasks))

    def get_statistics(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        for result in self._results.values():
            by_status[result.status.value] = by_status.get(result.status.value, 0) + 1
        return {
            "adapters": sorted(self._adapters),
            "routes": {anchor.value: name for anchor, name in sorted(self._routes.items())},
            "in_flight": sum(1 for task in self._tasks.values() if not task.done()),
            "tracked": len(self._results),
            "by_status": by_status,
        }
