"""
Honoring Adapter Protocol

The single contract every external fulfillment provider implements.
Providers are independent implementations selected by configuration,
not subclasses of a shared base.

    honor_claim(transfer)    -> HonoringResult   (one attempt, no retries)
    check_status(external_id) -> HonoringResult
    handle_webhook(payload)  -> WebhookResult
    validate_config()        -> list of problems (empty when usable)

Adapters report failures by raising HonoringError with a provider-neutral
error code. classify_error() decides, once for every provider, whether a
code is retryable and which terminal status a non-retryable code lands in.

Every outbound call carries external_reference(transfer_id): the same
reference on every retry, so the provider can deduplicate.
"""

from typing import Any, Optional, Protocol, runtime_checkable

from ..schemas import (
    AnchorType,
    ClearedTransfer,
    HonoringResult,
    HonoringStatus,
    WebhookResult,
)


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

# code -> terminal status, for errors that must not be retried
NON_RETRYABLE: dict[str, HonoringStatus] = {
    # Business declines: the provider understood and said no
    "COMPLIANCE_REJECTED": HonoringStatus.REJECTED,
    "COMPLIANCE_REJECTION": HonoringStatus.REJECTED,
    "CARD_DECLINED": HonoringStatus.REJECTED,
    "BUSINESS_DECLINE": HonoringStatus.REJECTED,
    "AMOUNT_LIMIT_EXCEEDED": HonoringStatus.REJECTED,
    "DUPLICATE_TRANSACTION": HonoringStatus.REJECTED,
    # Recipient cannot be served
    "INVALID_RECIPIENT": HonoringStatus.REJECTED,
    "INVALID_CARD": HonoringStatus.REJECTED,
    "INVALID_ACCOUNT": HonoringStatus.REJECTED,
    "MISSING_RECIPIENT_DATA": HonoringStatus.REJECTED,
    "UNKNOWN_BILLER": HonoringStatus.REJECTED,
    # Our side or the provider's side is broken beyond a retry
    "AUTH_FAILED": HonoringStatus.FAILED_EXTERNAL,
    "INVALID_PARTNER": HonoringStatus.FAILED_EXTERNAL,
    "INVALID_CONFIG": HonoringStatus.FAILED_EXTERNAL,
    "INSUFFICIENT_FUNDS": HonoringStatus.FAILED_EXTERNAL,
    "PERMANENT_FAILURE": HonoringStatus.FAILED_EXTERNAL,
    "INVALID_RESPONSE": HonoringStatus.FAILED_EXTERNAL,
}

RETRYABLE = frozenset({
    "TIMEOUT",
    "NETWORK_ERROR",
    "CONNECTION_FAILED",
    "RATE_LIMITED",
    "SERVICE_UNAVAILABLE",
})


def classify_error(code: str) -> tuple[bool, HonoringStatus]:
    """
    Classify a provider-neutral error code.

    HTTP_5xx and HTTP_429 are retryable; any other HTTP_4xx is a
    non-retryable external failure. Unknown codes are retried: when in
    doubt, the budget runs out into MANUAL_REVIEW instead of a hard fail.

    Returns:
        (retryable, terminal_status_if_not_retryable)
    """
    if code in NON_RETRYABLE:
        return False, NON_RETRYABLE[code]
    if code in RETRYABLE:
        return True, HonoringStatus.MANUAL_REVIEW
    if code.startswith("HTTP_"):
        try:
            status_code = int(code[5:])
        except ValueError:
            return True, HonoringStatus.MANUAL_REVIEW
        if status_code >= 500 or status_code == 429:
            return True, HonoringStatus.MANUAL_REVIEW
        return False, HonoringStatus.FAILED_EXTERNAL
    return True, HonoringStatus.MANUAL_REVIEW


class HonoringError(Exception):
    """
    External provider failure.

    Never escalates to a ledger mutation. Retryability and terminal status
    come from classify_error() unless given explicitly.
    """

    def __init__(
        self,
        code: str,
        message: str,
        adapter: str = "",
        transfer_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ):
        self.code = code
        self.message = message
        self.adapter = adapter
        self.transfer_id = transfer_id
        self.details = details or {}
        default_retryable, self.terminal_status = classify_error(code)
        self.retryable = default_retryable if retryable is None else retryable
        super().__init__(f"[{adapter or 'honoring'}] {code}: {message}")


def external_reference(transfer_id: int) -> str:
    """Idempotent provider reference for a transfer. Stable across retries and restarts."""
    return f"CLR-{transfer_id:032x}"


# ============================================================
# ADAPTER CONTRACT
# ============================================================

@runtime_checkable
class HonoringAdapter(Protocol):
    """Capability set of an external fulfillment provider."""

    name: str
    anchor_types: frozenset[AnchorType]

    async def honor_claim(self, transfer: ClearedTransfer) -> HonoringResult:
        """
        Make one fulfillment attempt.

        Raises:
            HonoringError: On any provider failure
        """
        ...

    async def check_status(self, external_id: str, transfer_id: int) -> HonoringResult:
        ...

    async def handle_webhook(self, payload: dict[str, Any]) -> WebhookResult:
        ...

    def validate_config(self) -> list[str]:
        ...
