"""
Tango Card (RaaS v2) adapter: honors gift-card obligations.

Default routes: GROCERY, FUEL, MOBILE.

Required transfer metadata:
    email        recipient email for delivery
Optional:
    utid         catalog item id (defaults to the configured utid)
    brand_name, first_name, last_name
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

import httpx

from ...observability import get_logger
from ...schemas import AnchorType, ClearedTransfer, HonoringResult, HonoringStatus, WebhookResult
from ..protocol import HonoringError, external_reference
from ._http import ProviderTransport, format_amount, proof_hash, to_currency_units


logger = get_logger(__name__)

SANDBOX_URL = "https://integration-api.tangocard.com/raas/v2"
PRODUCTION_URL = "https://api.tangocard.com/raas/v2"
MAX_ORDER_AMOUNT = Decimal(10_000)

STATUS_MAP = {
    "COMPLETED": HonoringStatus.HONORED,
    "COMPLETE": HonoringStatus.HONORED,
    "NEW": HonoringStatus.PENDING,
    "PENDING": HonoringStatus.PENDING,
    "FUNDED": HonoringStatus.PENDING,
    "PROCESSED": HonoringStatus.PENDING,
    "CANCELLED": HonoringStatus.REJECTED,
    "FAILED": HonoringStatus.FAILED_EXTERNAL,
}


def map_status(provider_status: Optional[str]) -> HonoringStatus:
    return STATUS_MAP.get((provider_status or "").upper(), HonoringStatus.MANUAL_REVIEW)


class TangoGiftCardAdapter:
    """Gift card orders through Tango Card."""

    name = "tango"

    def __init__(
        self,
        platform_name: str,
        platform_key: str,
        account_id: str,
        customer_id: str,
        utid: str = "",
        sandbox: bool = True,
        base_url: Optional[str] = None,
        timeout_s: float = 30.0,
        anchor_types: Optional[Iterable[AnchorType]] = None,
    ):
        self.platform_name = platform_name
        self.platform_key = platform_key
        self.account_id = account_id
        self.customer_id = customer_id
        self.utid = utid
        self.sandbox = sandbox
        self.base_url = base_url or (SANDBOX_URL if sandbox else PRODUCTION_URL)
        self.anchor_types = frozenset(
            anchor_types or {AnchorType.GROCERY, AnchorType.FUEL, AnchorType.MOBILE}
        )
        self._transport = ProviderTransport(
            self.name,
            self.base_url,
            auth=httpx.BasicAuth(platform_name, platform_key),
            timeout_s=timeout_s,
        )

    def validate_config(self) -> list[str]:
        problems = []
        if not self.platform_name or not self.platform_key:
            problems.append("Tango platform name and key are required")
        if not self.account_id:
            problems.append("Tango account identifier is required")
        if not self.customer_id:
            problems.append("Tango customer identifier is required")
        return problems

    async def honor_claim(self, transfer: ClearedTransfer) -> HonoringResult:
        email = transfer.metadata.get("email")
        if not email:
            raise HonoringError(
                "MISSING_RECIPIENT_DATA",
                "Recipient email is required for gift card delivery",
                adapter=self.name,
                transfer_id=transfer.transfer_id,
            )
        utid = transfer.metadata.get("utid") or self.utid
        if not utid or len(utid) < 3:
            raise HonoringError(
                "INVALID_CONFIG",
                "A catalog utid is required",
                adapter=self.name,
                transfer_id=transfer.transfer_id,
            )

        amount = to_currency_units(transfer.amount)
        if amount <= 0 or amount > MAX_ORDER_AMOUNT:
            raise HonoringError(
                "AMOUNT_LIMIT_EXCEEDED",
                f"Gift card amount must be within (0, {MAX_ORDER_AMOUNT}], got {amount}",
                adapter=self.name,
                transfer_id=transfer.transfer_id,
            )

        reference = external_reference(transfer.transfer_id)
        logger.info(
            "Tango gift card order",
            transfer_id=transfer.transfer_id_hex,
            external_reference=reference,
            anchor_type=transfer.anchor_type.value if transfer.anchor_type else None,
        )
        response = await self._transport.request(
            "POST",
            "/orders",
            body={
                "accountIdentifier": self.account_id,
                "customerIdentifier": self.customer_id,
                "amount": format_amount(transfer.amount),
                "utid": utid,
                "externalRefID": reference,
                "sendEmail": True,
                "recipient": {
                    "email": email,
                    "firstName": transfer.metadata.get("first_name", ""),
                    "lastName": transfer.metadata.get("last_name", ""),
                },
            },
            transfer_id=transfer.transfer_id,
        )
        return self._result(transfer.transfer_id, response)

    async def check_status(self, external_id: str, transfer_id: int) -> HonoringResult:
        response = await self._transport.request("GET", f"/orders/{external_id}", transfer_id=transfer_id)
        return self._result(transfer_id, response)

    async def handle_webhook(self, payload: dict[str, Any]) -> WebhookResult:
        order_id = payload.get("referenceOrderID")
        if not order_id or not payload.get("status"):
            return WebhookResult(acknowledged=False, message="Missing referenceOrderID or status")
        return WebhookResult(
            acknowledged=True,
            external_id=order_id,
            external_reference=payload.get("externalRefID"),
            status=map_status(payload.get("status")),
            event_type=payload.get("eventType") or payload.get("type"),
        )

    def _result(self, transfer_id: int, response: dict[str, Any]) -> HonoringResult:
        status = map_status(response.get("status"))
        reward = response.get("reward") if isinstance(response.get("reward"), dict) else {}
        credentials = reward.get("credentials") if isinstance(reward.get("credentials"), dict) else {}
        return HonoringResult(
            status=status,
            transfer_id=transfer_id,
            adapter=self.name,
            external_reference=external_reference(transfer_id),
            external_id=response.get("referenceOrderID"),
            proof_hash=proof_hash(
                "TANGO",
                reference_order_id=response.get("referenceOrderID"),
                status=response.get("status"),
                utid=response.get("utid"),
            ),
            details={
                "provider_status": response.get("status"),
                "redemption_available": bool(credentials),
            },
            completed_at=datetime.now(timezone.utc) if status == HonoringStatus.HONORED else None,
        )
