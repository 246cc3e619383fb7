"""
Honoring Retry Driver

Wraps one adapter's honor_claim() in bounded exponential backoff.

    attempt 1 ─fail(retryable)─ sleep(base) ─ attempt 2 ─fail─ sleep(2·base) ─ attempt 3 ─fail─ MANUAL_REVIEW

Only retryable failures consume budget; a non-retryable HonoringError ends
the loop at once with the terminal status its code classifies to. A
per-attempt timeout is treated as a retryable TIMEOUT.

The driver never touches the ledger. It only produces a HonoringResult.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from ..observability import get_logger
from ..schemas import ClearedTransfer, HonoringResult, HonoringStatus
from .protocol import HonoringAdapter, HonoringError, external_reference


logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    attempt_timeout: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Backoff after failed attempt number `attempt` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


Sleep = Callable[[float], Awaitable[None]]


def _settled(
    transfer: ClearedTransfer,
    adapter: HonoringAdapter,
    status: HonoringStatus,
    attempts: int,
    error: Optional[HonoringError] = None,
) -> HonoringResult:
    return HonoringResult(
        status=status,
        transfer_id=transfer.transfer_id,
        adapter=adapter.name,
        external_reference=external_reference(transfer.transfer_id),
        error_code=error.code if error else None,
        error_message=error.message if error else None,
        details=dict(error.details) if error else {},
        attempts=attempts,
        completed_at=datetime.now(timezone.utc),
    )


async def honor_with_retry(
    adapter: HonoringAdapter,
    transfer: ClearedTransfer,
    policy: Optional[RetryPolicy] = None,
    sleep: Sleep = asyncio.sleep,
    on_attempt: Optional[Callable[[int], None]] = None,
) -> HonoringResult:
    """
    Drive honor_claim() to a settled HonoringResult.

    Args:
        adapter: Provider to call
        transfer: The cleared transfer being honored
        policy: Attempt budget and backoff
        sleep: Awaitable used between attempts (injected by tests)
        on_attempt: Called with the attempt number before each call

    Returns:
        The adapter's result on success or PENDING; REJECTED or
        FAILED_EXTERNAL on a non-retryable error; MANUAL_REVIEW when
        the budget is spent.
    """
    policy = policy or RetryPolicy()
    last_error: Optional[HonoringError] = None

    for attempt in range(1, policy.max_attempts + 1):
        if on_attempt is not None:
            on_attempt(attempt)

        try:
            result = await asyncio.wait_for(
                adapter.honor_claim(transfer),
                timeout=policy.attempt_timeout,
            )
        except asyncio.TimeoutError:
            last_error = HonoringError(
                "TIMEOUT",
                f"Attempt exceeded {policy.attempt_timeout}s",
                adapter=adapter.name,
                transfer_id=transfer.transfer_id,
            )
        except HonoringError as e:
            if not e.retryable:
                logger.warning(
                    "Honoring ended with non-retryable error",
                    adapter=adapter.name,
                    transfer_id=transfer.transfer_id_hex,
                    error_code=e.code,
                    attempt=attempt,
                )
                return _settled(transfer, adapter, e.terminal_status, attempt, e)
            last_error = e
        else:
            return result.model_copy(update={"attempts": attempt})

        logger.info(
            "Honoring attempt failed",
            adapter=adapter.name,
            transfer_id=transfer.transfer_id_hex,
            error_code=last_error.code,
            attempt=attempt,
            max_attempts=policy.max_attempts,
        )
        if attempt < policy.max_attempts:
            await sleep(policy.delay_for(attempt))

    logger.warning(
        "Honoring retries exhausted, routing to manual review",
        adapter=adapter.name,
        transfer_id=transfer.transfer_id_hex,
        attempts=policy.max_attempts,
    )
    return _settled(transfer, adapter, HonoringStatus.MANUAL_REVIEW, policy.max_attempts, last_error)
