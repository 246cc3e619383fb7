"""
Moov push-to-card adapter: honors CASH_OUT obligations.

Required transfer metadata:
    card_last4         last four digits of the destination card
    card_holder_name   cardholder's full name
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from ...observability import get_logger
from ...schemas import AnchorType, ClearedTransfer, HonoringResult, HonoringStatus, WebhookResult
from ..protocol import HonoringError, external_reference
from ._http import ProviderTransport, format_amount, proof_hash, to_currency_units


logger = get_logger(__name__)

MOOV_API_URL = "https://api.moov.io"
MAX_PUSH_AMOUNT = Decimal(10_000)

STATUS_MAP = {
    "SUCCESS": HonoringStatus.HONORED,
    "PENDING": HonoringStatus.PENDING,
    "FAILED": HonoringStatus.FAILED_EXTERNAL,
    "REJECTED": HonoringStatus.REJECTED,
}


def map_status(provider_status: Optional[str]) -> HonoringStatus:
    return STATUS_MAP.get((provider_status or "").upper(), HonoringStatus.MANUAL_REVIEW)


class MoovCashOutAdapter:
    """Push-to-card payouts through Moov."""

    name = "moov"

    def __init__(
        self,
        api_key: str,
        partner_id: str,
        api_url: str = MOOV_API_URL,
        sandbox: bool = True,
        timeout_s: float = 30.0,
        anchor_types: Optional[Iterable[AnchorType]] = None,
    ):
        self.api_key = api_key
        self.partner_id = partner_id
        self.api_url = api_url
        self.sandbox = sandbox
        self.anchor_types = frozenset(anchor_types or {AnchorType.CASH_OUT})
        self._transport = ProviderTransport(
            self.name,
            api_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "X-Partner-ID": partner_id,
            },
            timeout_s=timeout_s,
        )

    def validate_config(self) -> list[str]:
        problems = []
        if not self.api_key:
            problems.append("Moov API key is required")
        if not self.partner_id:
            problems.append("Moov partner ID is required")
        if not self.api_url:
            problems.append("Moov API URL is required")
        return problems

    async def honor_claim(self, transfer: ClearedTransfer) -> HonoringResult:
        card_last4 = transfer.metadata.get("card_last4")
        card_holder_name = transfer.metadata.get("card_holder_name")
        if not card_last4 or not card_holder_name:
            raise HonoringError(
                "MISSING_RECIPIENT_DATA",
                "card_last4 and card_holder_name are required for CASH_OUT",
                adapter=self.name,
                transfer_id=transfer.transfer_id,
            )

        amount = to_currency_units(transfer.amount)
        if amount <= 0 or amount > MAX_PUSH_AMOUNT:
            raise HonoringError(
                "AMOUNT_LIMIT_EXCEEDED",
                f"Push-to-card amount must be within (0, {MAX_PUSH_AMOUNT}], got {amount}",
                adapter=self.name,
                transfer_id=transfer.transfer_id,
            )

        reference = external_reference(transfer.transfer_id)
        logger.info(
            "Moov push-to-card",
            transfer_id=transfer.transfer_id_hex,
            external_reference=reference,
            sandbox=self.sandbox,
        )
        response = await self._transport.request(
            "POST",
            "/v1/push-to-card",
            body={
                "partnerId": self.partner_id,
                "amount": format_amount(transfer.amount),
                "currency": "USD",
                "cardLast4": str(card_last4),
                "cardHolderName": card_holder_name,
                "externalReference": reference,
                "description": transfer.metadata.get("description", "Cash-out"),
            },
            transfer_id=transfer.transfer_id,
        )
        return self._result(transfer.transfer_id, response)

    async def check_status(self, external_id: str, transfer_id: int) -> HonoringResult:
        response = await self._transport.request(
            "GET",
            f"/v1/transactions/{external_id}",
            transfer_id=transfer_id,
        )
        return self._result(transfer_id, response)

    async def handle_webhook(self, payload: dict[str, Any]) -> WebhookResult:
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        transaction_id = data.get("transactionId")
        if not transaction_id or not data.get("status"):
            return WebhookResult(acknowledged=False, message="Missing transactionId or status")
        return WebhookResult(
            acknowledged=True,
            external_id=transaction_id,
            external_reference=data.get("externalReference"),
            status=map_status(data.get("status")),
            event_type=payload.get("type") or payload.get("eventType"),
        )

    def _result(self, transfer_id: int, response: dict[str, Any]) -> HonoringResult:
        status = map_status(response.get("status"))
        error = response.get("error") if isinstance(response.get("error"), dict) else {}
        return HonoringResult(
            status=status,
            transfer_id=transfer_id,
            adapter=self.name,
            external_reference=external_reference(transfer_id),
            external_id=response.get("transactionId"),
            proof_hash=proof_hash(
                "MOOV",
                transaction_id=response.get("transactionId"),
                network_auth_code=response.get("networkAuthCode"),
                trace_id=response.get("traceId"),
                status=response.get("status"),
            ),
            error_code=error.get("code"),
            error_message=error.get("message"),
            details={"provider_status": response.get("status")},
            completed_at=datetime.now(timezone.utc) if status == HonoringStatus.HONORED else None,
        )
