"""
Shared HTTP transport for provider adapters.

Turns httpx failures into provider-neutral HonoringError codes:

    httpx.TimeoutException  -> TIMEOUT             (retryable)
    httpx.ConnectError      -> CONNECTION_FAILED   (retryable)
    other httpx.HTTPError   -> NETWORK_ERROR       (retryable)
    HTTP 4xx/5xx            -> provider error code from the body, else HTTP_<status>
    non-JSON / non-object   -> INVALID_RESPONSE
"""

import json
from decimal import Decimal
from typing import Any, Optional

import httpx

from ...core.hasher import Hasher
from ..protocol import NON_RETRYABLE, RETRYABLE, HonoringError


MICRO_UNITS = Decimal(1_000_000)


def to_currency_units(amount: int) -> Decimal:
    """Micro-units (1 unit = 1e-6 currency) to decimal currency units."""
    return Decimal(amount) / MICRO_UNITS


def format_amount(amount: int) -> str:
    """Micro-units to an exact decimal string: "50.00", or "1.234567" below a cent."""
    units, micros = divmod(amount, 1_000_000)
    if micros % 10_000 == 0:
        return f"{units}.{micros // 10_000:02d}"
    return f"{units}.{micros:06d}".rstrip("0")


def proof_hash(provider: str, **fields: Any) -> str:
    """Deterministic digest over a provider's confirmation fields."""
    values = {key: None if value is None else str(value) for key, value in fields.items()}
    return Hasher.hash_data({"provider": provider, **values})


class ProviderTransport:
    """JSON-over-HTTP calls to one provider base URL."""

    def __init__(
        self,
        adapter_name: str,
        base_url: str,
        headers: Optional[dict[str, str]] = None,
        auth: Optional[httpx.Auth] = None,
        timeout_s: float = 30.0,
    ):
        self.adapter_name = adapter_name
        self.base_url = base_url.rstrip("/")
        self._headers = headers or {}
        self._auth = auth
        self._timeout_s = timeout_s

    async def request(
        self,
        method: str,
        path: str,
        body: Optional[dict[str, Any]] = None,
        transfer_id: Optional[int] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"

        def fail(code: str, message: str, **details: Any) -> HonoringError:
            return HonoringError(
                code,
                message,
                adapter=self.adapter_name,
                transfer_id=transfer_id,
                details={"url": url, **details},
            )

        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, auth=self._auth) as client:
                response = await client.request(
                    method,
                    url,
                    json=body,
                    headers={
                        "Content-Type": "application/json",
                        "Accept": "application/json",
                        **self._headers,
                        **(headers or {}),
                    },
                )
        except httpx.TimeoutException as e:
            raise fail("TIMEOUT", f"HTTP request timed out after {self._timeout_s}s") from e
        except httpx.ConnectError as e:
            raise fail("CONNECTION_FAILED", f"Failed to connect to {url}") from e
        except httpx.HTTPError as e:
            raise fail("NETWORK_ERROR", f"HTTP error: {e}") from e

        if response.status_code >= 400:
            code, message, provider_code = self._error_from(response)
            raise fail(code, message, status_code=response.status_code, provider_code=provider_code)

        try:
            result = response.json()
        except json.JSONDecodeError as e:
            raise fail(
                "INVALID_RESPONSE",
                "Response was not valid JSON",
                body_preview=response.text[:200] if response.text else "",
            ) from e

        if not isinstance(result, dict):
            raise fail("INVALID_RESPONSE", "Response JSON was not an object", type=type(result).__name__)
        return result

    @staticmethod
    def _error_from(response: httpx.Response) -> tuple[str, str, Optional[str]]:
        """Known provider codes win over the HTTP status; unknown ones are kept as details."""
        code = f"HTTP_{response.status_code}"
        message = f"HTTP {response.status_code}: {response.reason_phrase}"
        try:
            body = response.json()
        except json.JSONDecodeError:
            return code, message, None
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict) or not error.get("code"):
            return code, message, None
        provider_code = str(error["code"])
        message = str(error.get("message") or message)
        if provider_code in NON_RETRYABLE or provider_code in RETRYABLE:
            return provider_code, message, provider_code
        return code, message, provider_code
