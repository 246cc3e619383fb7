"""
Arcus bill-pay adapter: honors UTILITY and HOUSING obligations.

Required transfer metadata:
    biller_id        Arcus biller id (must be a known biller)
    account_number   customer account with the biller, when the biller requires one
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from ...observability import get_logger
from ...schemas import AnchorType, ClearedTransfer, HonoringResult, HonoringStatus, WebhookResult
from ..protocol import HonoringError, external_reference
from ._http import ProviderTransport, format_amount, proof_hash


logger = get_logger(__name__)

ARCUS_API_URL = "https://api.arcus.com"

STATUS_MAP = {
    "SUCCESS": HonoringStatus.HONORED,
    "PENDING": HonoringStatus.PENDING,
    "FAILED": HonoringStatus.FAILED_EXTERNAL,
    "INSUFFICIENT_FUNDS": HonoringStatus.MANUAL_REVIEW,
}


def map_status(provider_status: Optional[str]) -> HonoringStatus:
    return STATUS_MAP.get((provider_status or "").upper(), HonoringStatus.MANUAL_REVIEW)


@dataclass(frozen=True)
class Biller:
    biller_id: str
    name: str
    biller_type: str
    requires_account_number: bool = True


DEFAULT_BILLERS = (
    Biller("ELECTRIC_COMPANY_A", "Electric Company", "ELECTRIC"),
    Biller("GAS_COMPANY_A", "Gas Company", "GAS"),
    Biller("WATER_UTILITY", "Water Utility", "WATER"),
    Biller("TELECOM_PROVIDER_A", "Telecom Provider", "TELECOM", requires_account_number=False),
)


class ArcusBillPayAdapter:
    """Bill payments through Arcus."""

    name = "arcus"

    def __init__(
        self,
        api_key: str,
        api_url: str = ARCUS_API_URL,
        billers: Iterable[Biller] = DEFAULT_BILLERS,
        timeout_s: float = 30.0,
        anchor_types: Optional[Iterable[AnchorType]] = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.anchor_types = frozenset(anchor_types or {AnchorType.UTILITY, AnchorType.HOUSING})
        self._billers = {biller.biller_id: biller for biller in billers}
        self._transport = ProviderTransport(
            self.name,
            api_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout_s=timeout_s,
        )

    def add_biller(self, biller: Biller) -> None:
        self._billers[biller.biller_id] = biller
        logger.info("Arcus biller added", biller_id=biller.biller_id, biller_name=biller.name)

    @property
    def billers(self) -> list[Biller]:
        return list(self._billers.values())

    def validate_config(self) -> list[str]:
        problems = []
        if not self.api_key:
            problems.append("Arcus API key is required")
        if not self.api_url:
            problems.append("Arcus API URL is required")
        return problems

    async def honor_claim(self, transfer: ClearedTransfer) -> HonoringResult:
        biller_id = transfer.metadata.get("biller_id")
        if not biller_id:
            raise HonoringError(
                "MISSING_RECIPIENT_DATA",
                "biller_id is required for bill payment",
                adapter=self.name,
                transfer_id=transfer.transfer_id,
            )
        biller = self._billers.get(biller_id)
        if biller is None:
            raise HonoringError(
                "UNKNOWN_BILLER",
                f"Unknown biller ID: {biller_id}",
                adapter=self.name,
                transfer_id=transfer.transfer_id,
            )
        account_number = transfer.metadata.get("account_number")
        if biller.requires_account_number and not account_number:
            raise HonoringError(
                "MISSING_RECIPIENT_DATA",
                f"account_number is required for biller {biller_id}",
                adapter=self.name,
                transfer_id=transfer.transfer_id,
            )

        reference = external_reference(transfer.transfer_id)
        logger.info(
            "Arcus bill payment",
            transfer_id=transfer.transfer_id_hex,
            external_reference=reference,
            biller_id=biller_id,
        )
        response = await self._transport.request(
            "POST",
            "/v1/payments/billpay",
            body={
                "billerId": biller.biller_id,
                "accountNumber": account_number,
                "amount": format_amount(transfer.amount),
                "currency": "USD",
                "externalReference": reference,
            },
            transfer_id=transfer.transfer_id,
        )
        return self._result(transfer.transfer_id, response)

    async def check_status(self, external_id: str, transfer_id: int) -> HonoringResult:
        response = await self._transport.request("GET", f"/v1/payments/{external_id}", transfer_id=transfer_id)
        return self._result(transfer_id, response)

    async def handle_webhook(self, payload: dict[str, Any]) -> WebhookResult:
        payment_id = payload.get("paymentId")
        if not payment_id or not payload.get("status"):
            return WebhookResult(acknowledged=False, message="Missing paymentId or status")
        return WebhookResult(
            acknowledged=True,
            external_id=payment_id,
            external_reference=payload.get("externalReference"),
            status=map_status(payload.get("status")),
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
            external_id=response.get("paymentId"),
            proof_hash=proof_hash(
                "ARCUS",
                payment_id=response.get("paymentId"),
                confirmation_id=response.get("confirmationId"),
                reference_number=response.get("referenceNumber"),
                status=response.get("status"),
            ),
            error_code=error.get("code"),
            error_message=error.get("message"),
            details={
                "provider_status": response.get("status"),
                "confirmation_id": response.get("confirmationId"),
            },
            completed_at=datetime.now(timezone.utc) if status == HonoringStatus.HONORED else None,
        )
