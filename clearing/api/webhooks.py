"""
Provider Webhooks

POST /webhook/{adapter_name}

1. Unknown adapter                      -> 404
2. Signature check (when enabled)       -> 401 on mismatch
   x-webhook-signature = hex(HMAC-SHA256(secret, raw body))
3. adapter.handle_webhook(payload)      -> 500 if not acknowledged
4. Status view + narrative observation  -> 200

Webhooks never touch the ledger. They can only settle a transfer's
honoring status and add an OBSERVED mirror entry.
"""

import hashlib
import hmac
import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..observability import get_logger
from ..wiring import Pipeline
from .routes import get_pipeline


router = APIRouter()
logger = get_logger(__name__)

SIGNATURE_HEADER = "x-webhook-signature"


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Constant-time check. A missing secret or signature never verifies."""
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature.strip().lower())


@router.post("/webhook/{adapter_name}", tags=["Webhooks"], summary="Provider callback")
async def receive_webhook(
    adapter_name: str,
    request: Request,
    pipeline: Pipeline = Depends(get_pipeline),
):
    adapter = pipeline.dispatcher.adapter_named(adapter_name)
    if adapter is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Adapter not found", "adapter": adapter_name},
        )

    body = await request.body()
    settings = pipeline.settings
    if settings.verify_webhook_signatures:
        signature = request.headers.get(SIGNATURE_HEADER)
        if not verify_signature(settings.webhook_secret(adapter_name), body, signature):
            logger.warning("Invalid webhook signature", adapter=adapter_name)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"error": "Invalid signature"},
            )

    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Body is not valid JSON"},
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Body must be a JSON object"},
        )

    result = await adapter.handle_webhook(payload)
    if not result.acknowledged:
        logger.warning("Webhook not acknowledged", adapter=adapter_name, reason=result.message)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": result.message or "Webhook not acknowledged", "adapter": adapter_name},
        )

    honoring = await pipeline.dispatcher.apply_webhook(adapter_name, result)
    logger.info(
        "Webhook processed",
        adapter=adapter_name,
        external_id=result.external_id,
        event_type=result.event_type,
        matched=honoring is not None,
    )
    return {
        "received": True,
        "adapter": adapter_name,
        "event_type": result.event_type,
        "external_id": result.external_id,
        "honoring_status": honoring.status.value if honoring is not None else None,
    }
