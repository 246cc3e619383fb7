"""
Shared fixtures: signing identities, claims, a seeded in-memory ledger
and scripted honoring adapters.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

import pytest

from clearing.core import (
    AttestationEngine,
    ClearingConfig,
    ClearingOrchestrator,
    KeyPair,
    NarrativeMirror,
    Signer,
    SigningIdentity,
    derive_transfer_id,
)
from clearing.db import InMemoryClaimStore, InMemoryNarrativeStore
from clearing.honoring import HonoringDispatcher, HonoringError, RetryPolicy, external_reference
from clearing.ledger import InMemoryLedgerGateway
from clearing.observability import MetricsCollector
from clearing.schemas import (
    AnchorType,
    Claim,
    ClaimKind,
    ClearedTransfer,
    HonoringResult,
    HonoringStatus,
    LedgerAccount,
    WebhookResult,
)


DEBIT_ACCOUNT = 1010
CREDIT_ACCOUNT = 1000


class ScriptedAdapter:
    """
    Honoring adapter that plays back a script.

    Each honor_claim() call consumes one step: an Exception is raised, a
    HonoringStatus is returned as a result. The last step repeats.
    """

    def __init__(
        self,
        name: str = "scripted",
        anchor_types: Iterable[AnchorType] = (AnchorType.GROCERY,),
        script: Optional[list[Union[Exception, HonoringStatus]]] = None,
        external_id: Optional[str] = "ext-1",
        delay: float = 0.0,
        blocked: bool = False,
    ):
        self.name = name
        self.anchor_types = frozenset(anchor_types)
        self.script = list(script or [HonoringStatus.HONORED])
        self.external_id = external_id
        self.delay = delay
        self.calls: list[int] = []
        self.status_checks: list[str] = []
        self.status_result = HonoringStatus.HONORED
        self.in_flight = 0
        self.max_in_flight = 0
        self.release = asyncio.Event() if blocked else None

    def _result(self, transfer_id: int, status: HonoringStatus) -> HonoringResult:
        return HonoringResult(
            status=status,
            transfer_id=transfer_id,
            adapter=self.name,
            external_reference=external_reference(transfer_id),
            external_id=self.external_id,
            completed_at=datetime.now(timezone.utc) if status == HonoringStatus.HONORED else None,
        )

    async def honor_claim(self, transfer: ClearedTransfer) -> HonoringResult:
        self.calls.append(transfer.transfer_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.release is not None:
                await self.release.wait()
            elif self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
        finally:
            self.in_flight -= 1

        step = self.script[min(len(self.calls), len(self.script)) - 1]
        if isinstance(step, Exception):
            raise step
        return self._result(transfer.transfer_id, step)

    async def check_status(self, external_id: str, transfer_id: int) -> HonoringResult:
        self.status_checks.append(external_id)
        return self._result(transfer_id, self.status_result)

    async def handle_webhook(self, payload: dict[str, Any]) -> WebhookResult:
        if not payload.get("id") or not payload.get("status"):
            return WebhookResult(acknowledged=False, message="Missing id or status")
        return WebhookResult(
            acknowledged=True,
            external_id=payload["id"],
            external_reference=payload.get("reference"),
            status=HonoringStatus(payload["status"]),
            event_type=payload.get("type", "payment.updated"),
        )

    def validate_config(self) -> list[str]:
        return []


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def transient(code: str = "TIMEOUT") -> HonoringError:
    return HonoringError(code, "transient failure", adapter="scripted")


def permanent(code: str = "CARD_DECLINED") -> HonoringError:
    return HonoringError(code, "permanent failure", adapter="scripted")


@pytest.fixture
def identity():
    private_key, public_key = Signer.generate_keypair()
    return SigningIdentity(
        signer_id="test-signer",
        keypair=KeyPair(private_key=private_key, public_key=public_key),
    )


@pytest.fixture
def engine(identity):
    return AttestationEngine(identity)


@pytest.fixture
def make_claim():
    def factory(claim_id: str = "c1", **overrides) -> Claim:
        fields = {
            "id": claim_id,
            "kind": ClaimKind.SPEND_AUTHORIZED,
            "subject": "user1",
            "amount": 50_000000,
            "created_at": datetime(2026, 1, 15, 10, 30, tzinfo=timezone.utc),
        }
        fields.update(overrides)
        return Claim(**fields)
    return factory


@pytest.fixture
def make_transfer():
    def factory(claim_id: str = "c1", **overrides) -> ClearedTransfer:
        fields = {
            "transfer_id": derive_transfer_id(claim_id),
            "claim_id": claim_id,
            "subject": "user1",
            "debit_account_id": DEBIT_ACCOUNT,
            "credit_account_id": CREDIT_ACCOUNT,
            "amount": 50_000000,
            "anchor_type": AnchorType.GROCERY,
            "metadata": {"email": "user1@example.com"},
        }
        fields.update(overrides)
        return ClearedTransfer(**fields)
    return factory


@pytest.fixture
def ledger():
    gateway = InMemoryLedgerGateway()
    gateway.create_accounts([LedgerAccount(id=DEBIT_ACCOUNT), LedgerAccount(id=CREDIT_ACCOUNT)])
    return gateway


@pytest.fixture
def store():
    return InMemoryNarrativeStore()


@pytest.fixture
def mirror(store):
    return NarrativeMirror(store)


@pytest.fixture
def claim_store():
    return InMemoryClaimStore()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def dispatcher(mirror, sleep, metrics):
    return HonoringDispatcher(
        mirror=mirror,
        policy=RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0, attempt_timeout=5.0),
        sleep=sleep,
        metrics=metrics,
    )


@pytest.fixture
def orchestrator(engine, ledger, mirror, dispatcher, metrics, claim_store):
    return ClearingOrchestrator(
        engine,
        ledger,
        mirror=mirror,
        dispatcher=dispatcher,
        config=ClearingConfig(ledger_timeout=2.0),
        metrics=metrics,
        events=claim_store,
    )
