"""
Tests for the clearing orchestrator.

Demonstrates the clearing path end to end:
1. Verify the attestation (no ledger call when it fails)
2. Post exactly one transfer per claim id
3. Observe in the narrative mirror without depending on it
4. Honor in the background without ever reversing the transfer
"""

import asyncio
import threading
import time

import pytest

from clearing.core import (
    ClearingConfig,
    ClearingFailed,
    ClearingOrchestrator,
    ComplianceCode,
    ComplianceConfig,
    ComplianceGate,
    ComplianceRejected,
    InvalidAttestationError,
    NarrativeMirror,
    derive_transfer_id,
)
from clearing.db import ClaimStoreError, InMemoryClaimStore, InMemoryNarrativeStore, MirrorWriteError
from clearing.ledger import InMemoryLedgerGateway, LedgerGatewayError, LedgerTimeoutError
from clearing.schemas import (
    CLEARING_TRANSITIONS,
    HONORING_TRANSITIONS,
    AnchorType,
    ClaimEventType,
    ClaimKind,
    ClearingState,
    LedgerAccount,
    NarrativeSource,
    NarrativeStatus,
)

from conftest import CREDIT_ACCOUNT, DEBIT_ACCOUNT, ScriptedAdapter, permanent, transient


class SlowFirstCallLedger(InMemoryLedgerGateway):
    """The first create_transfer blocks for `stall` seconds, then posts."""

    def __init__(self, stall: float):
        super().__init__()
        self.stall = stall
        self.entered = threading.Event()
        self._stalled = False

    def create_transfer(self, transfer):
        if not self._stalled:
            self._stalled = True
            self.entered.set()
            time.sleep(self.stall)
        return super().create_transfer(transfer)


class FailingStore(InMemoryNarrativeStore):
    def append(self, entry):
        raise MirrorWriteError("mirror database unreachable")


class FailingClaimStore(InMemoryClaimStore):
    def append(self, event):
        raise ClaimStoreError("claim event database unreachable")


def finalize(orchestrator, claim, attestation):
    async def scenario():
        try:
            return await orchestrator.finalize(claim, attestation)
        finally:
            await orchestrator.drain()
    return asyncio.run(scenario())


class TestClearing:

    def test_spend_clears_on_ledger(self, orchestrator, engine, ledger, make_claim):
        claim = make_claim("c1", subject="user1", amount=50_000000)

        result = finalize(orchestrator, claim, engine.attest(claim))

        assert result.success
        assert result.transfer_id == derive_transfer_id("c1")
        assert result.state == ClearingState.CLEARED
        assert not result.replayed
        assert ledger.lookup_balance(CREDIT_ACCOUNT) == 50_000000
        assert ledger.lookup_balance(DEBIT_ACCOUNT) == -50_000000

    def test_transfer_carries_claim(self, orchestrator, engine, ledger, make_claim):
        claim = make_claim("c1", anchor_type=AnchorType.GROCERY, metadata={"email": "user1@example.com"})

        finalize(orchestrator, claim, engine.attest(claim))

        posted = ledger.lookup_transfer(derive_transfer_id("c1"))
        assert posted.claim_id == "c1"
        assert posted.subject == "user1"
        assert posted.debit_account_id == DEBIT_ACCOUNT
        assert posted.credit_account_id == CREDIT_ACCOUNT

    def test_replay_is_idempotent(self, orchestrator, engine, ledger, mirror, make_claim):
        claim = make_claim()
        attestation = engine.attest(claim)

        first = finalize(orchestrator, claim, attestation)
        second = finalize(orchestrator, claim, attestation)

        assert second.success
        assert second.replayed
        assert second.transfer_id == first.transfer_id
        assert ledger.transfer_count == 1
        assert ledger.lookup_balance(CREDIT_ACCOUNT) == 50_000000
        assert len(mirror.entries_from_source(NarrativeSource.CLEARING_OBSERVATION)) == 1
        assert orchestrator.lifecycle("c1").replayed

    def test_replay_with_fresh_attestation(self, orchestrator, engine, ledger, make_claim):
        claim = make_claim()
        finalize(orchestrator, claim, engine.attest(claim))
        again = finalize(orchestrator, claim, engine.attest(claim))

        assert again.replayed
        assert ledger.transfer_count == 1

    def test_concurrent_finalize_posts_once(self, orchestrator, engine, ledger, make_claim):
        claim = make_claim()
        attestation = engine.attest(claim)

        async def scenario():
            results = await asyncio.gather(*(orchestrator.finalize(claim, attestation) for _ in range(5)))
            await orchestrator.drain()
            return results

        results = asyncio.run(scenario())

        assert all(r.success for r in results)
        assert {r.transfer_id for r in results} == {derive_transfer_id("c1")}
        assert sum(1 for r in results if not r.replayed) == 1
        assert ledger.transfer_count == 1

    def test_replay_during_clearing_posts_once(self, engine, metrics, make_claim):
        ledger = SlowFirstCallLedger(stall=0.2)
        ledger.create_accounts([LedgerAccount(id=DEBIT_ACCOUNT), LedgerAccount(id=CREDIT_ACCOUNT)])
        orchestrator = ClearingOrchestrator(engine, ledger, config=ClearingConfig(ledger_timeout=2.0), metrics=metrics)
        claim = make_claim()
        attestation = engine.attest(claim)

        async def scenario():
            first = asyncio.ensure_future(orchestrator.finalize(claim, attestation))
            while not ledger.entered.is_set():
                await asyncio.sleep(0.01)
            during = orchestrator.lifecycle("c1")
            second = await orchestrator.finalize(claim, attestation)
            results = [await first, second]
            await orchestrator.drain()
            return during, results

        during, results = asyncio.run(scenario())

        assert during.clearing_state == ClearingState.ATTESTED_OK
        assert all(r.success for r in results)
        assert sum(1 for r in results if not r.replayed) == 1
        assert ledger.transfer_count == 1
        assert orchestrator.lifecycle("c1") is during
        assert [change.state for change in during.history] == [
            ClearingState.INTAKEN,
            ClearingState.ATTESTED_OK,
            ClearingState.CLEARED,
        ]

    def test_lifecycle_history(self, orchestrator, engine, make_claim):
        claim = make_claim()
        finalize(orchestrator, claim, engine.attest(claim))

        lifecycle = orchestrator.lifecycle("c1")
        assert [change.state for change in lifecycle.history] == [
            ClearingState.INTAKEN,
            ClearingState.ATTESTED_OK,
            ClearingState.CLEARED,
        ]
        assert orchestrator.lifecycle("unknown") is None

    def test_terminal_states_allow_no_transition(self):
        assert ClearingState.CLEARED in CLEARING_TRANSITIONS[ClearingState.ATTESTED_OK]
        assert not CLEARING_TRANSITIONS[ClearingState.CLEARED]
        assert not CLEARING_TRANSITIONS[ClearingState.REJECTED]
        assert HONORING_TRANSITIONS[None] == frozenset({ClearingState.HONORING_PENDING})
        assert not HONORING_TRANSITIONS[ClearingState.HONORED]


class TestRejection:

    def test_tampered_claim_never_reaches_ledger(self, orchestrator, engine, ledger, mirror, metrics, make_claim):
        claim = make_claim()
        attestation = engine.attest(claim)
        tampered = claim.model_copy(update={"amount": 500_000000})
        calls_before = ledger.call_count

        with pytest.raises(InvalidAttestationError):
            finalize(orchestrator, tampered, attestation)

        assert ledger.call_count == calls_before
        assert orchestrator.lifecycle("c1").state == ClearingState.REJECTED
        assert metrics.claims_rejected_attestation == 1
        [entry] = mirror.entries_for_claim("c1")
        assert entry.status == NarrativeStatus.FAILED
        assert entry.source == NarrativeSource.ATTESTATION

    def test_tampered_metadata_never_reaches_ledger(self, orchestrator, engine, ledger, make_claim):
        claim = make_claim(anchor_type=AnchorType.CASH_OUT, metadata={"card_last4": "4242"})
        attestation = engine.attest(claim)
        tampered = claim.model_copy(update={"metadata": {"card_last4": "0000"}})
        calls_before = ledger.call_count

        with pytest.raises(InvalidAttestationError):
            finalize(orchestrator, tampered, attestation)
        assert ledger.call_count == calls_before

    def test_tampered_replay_after_clearing_keeps_cleared(self, orchestrator, engine, make_claim):
        claim = make_claim()
        attestation = engine.attest(claim)
        finalize(orchestrator, claim, attestation)

        with pytest.raises(InvalidAttestationError):
            finalize(orchestrator, claim.model_copy(update={"amount": 1}), attestation)
        assert orchestrator.lifecycle("c1").clearing_state == ClearingState.CLEARED

    def test_tampered_replay_during_clearing_keeps_cleared(self, engine, dispatcher, metrics, make_claim):
        ledger = SlowFirstCallLedger(stall=0.2)
        ledger.create_accounts([LedgerAccount(id=DEBIT_ACCOUNT), LedgerAccount(id=CREDIT_ACCOUNT)])
        orchestrator = ClearingOrchestrator(
            engine,
            ledger,
            dispatcher=dispatcher,
            config=ClearingConfig(ledger_timeout=2.0),
            metrics=metrics,
        )
        dispatcher.register(ScriptedAdapter())
        claim = make_claim(anchor_type=AnchorType.GROCERY, metadata={"email": "user1@example.com"})
        attestation = engine.attest(claim)
        tampered = claim.model_copy(update={"amount": 1})

        async def scenario():
            clearing = asyncio.ensure_future(orchestrator.finalize(claim, attestation))
            while not ledger.entered.is_set():
                await asyncio.sleep(0.01)
            with pytest.raises(InvalidAttestationError):
                await orchestrator.finalize(tampered, attestation)
            during = orchestrator.lifecycle("c1")
            result = await clearing
            await orchestrator.drain()
            return during, result

        during, result = asyncio.run(scenario())

        assert during.clearing_state == ClearingState.ATTESTED_OK
        assert result.success
        lifecycle = orchestrator.lifecycle("c1")
        assert lifecycle.clearing_state == ClearingState.CLEARED
        assert lifecycle.honoring_state == ClearingState.HONORED
        assert ClearingState.REJECTED not in [change.state for change in lifecycle.history]
        assert metrics.claims_rejected_attestation == 1
        assert ledger.transfer_count == 1

    def test_tampered_replay_after_unknown_outcome(self, orchestrator, engine, ledger, make_claim):
        ledger.fail_next(LedgerGatewayError("down"))
        ledger.fail_next(LedgerGatewayError("still down"))
        claim = make_claim()
        attestation = engine.attest(claim)

        with pytest.raises(ClearingFailed):
            finalize(orchestrator, claim, attestation)
        with pytest.raises(InvalidAttestationError):
            finalize(orchestrator, claim.model_copy(update={"amount": 1}), attestation)
        assert orchestrator.lifecycle("c1").state == ClearingState.REJECTED

        result = finalize(orchestrator, claim, attestation)

        assert result.state == ClearingState.CLEARED
        assert [change.state for change in orchestrator.lifecycle("c1").history] == [
            ClearingState.INTAKEN,
            ClearingState.ATTESTED_OK,
            ClearingState.CLEARED,
        ]

    def test_ledger_rejection_is_clearing_failure(self, engine, make_claim):
        ledger = InMemoryLedgerGateway()
        ledger.create_accounts([LedgerAccount(id=CREDIT_ACCOUNT)])
        orchestrator = ClearingOrchestrator(engine, ledger)
        claim = make_claim()

        with pytest.raises(ClearingFailed) as exc:
            finalize(orchestrator, claim, engine.attest(claim))

        assert exc.value.reason == "debit_account_not_found"
        assert exc.value.transfer_id == derive_transfer_id("c1")
        assert orchestrator.lifecycle("c1").state == ClearingState.REJECTED

    def test_rejected_claim_can_be_retried(self, engine, make_claim):
        ledger = InMemoryLedgerGateway()
        ledger.create_accounts([LedgerAccount(id=CREDIT_ACCOUNT)])
        orchestrator = ClearingOrchestrator(engine, ledger)
        claim = make_claim()
        attestation = engine.attest(claim)

        with pytest.raises(ClearingFailed):
            finalize(orchestrator, claim, attestation)

        ledger.create_accounts([LedgerAccount(id=DEBIT_ACCOUNT)])
        result = finalize(orchestrator, claim, attestation)
        assert result.state == ClearingState.CLEARED


class TestLedgerUncertainty:

    def test_lost_response_is_reconciled(self, orchestrator, engine, ledger, metrics, make_claim):
        ledger.fail_next(LedgerTimeoutError("response lost"), after_commit=True)
        claim = make_claim()

        result = finalize(orchestrator, claim, engine.attest(claim))

        assert result.success
        assert ledger.transfer_count == 1
        assert "lookup_transfer" in ledger.calls
        assert metrics.ledger_timeouts == 1
        assert ledger.lookup_balance(CREDIT_ACCOUNT) == 50_000000

    def test_transport_failure_resubmits(self, orchestrator, engine, ledger, make_claim):
        ledger.fail_next(LedgerGatewayError("connection reset"))
        claim = make_claim()
        before = len(ledger.calls)

        result = finalize(orchestrator, claim, engine.attest(claim))

        assert result.success
        assert ledger.calls[before:] == ["create_transfer", "lookup_transfer", "create_transfer"]
        assert ledger.transfer_count == 1

    def test_ledger_unavailable(self, orchestrator, engine, ledger, mirror, make_claim):
        ledger.fail_next(LedgerGatewayError("down"))
        ledger.fail_next(LedgerGatewayError("still down"))
        claim = make_claim()

        with pytest.raises(ClearingFailed) as exc:
            finalize(orchestrator, claim, engine.attest(claim))

        assert exc.value.reason == "ledger_unavailable"
        assert ledger.transfer_count == 0
        assert orchestrator.lifecycle("c1").state == ClearingState.ATTESTED_OK
        assert mirror.entries_for_claim("c1") == []

    def test_slow_ledger_never_double_posts(self, engine, make_claim):
        ledger = SlowFirstCallLedger(stall=0.3)
        ledger.create_accounts([LedgerAccount(id=DEBIT_ACCOUNT), LedgerAccount(id=CREDIT_ACCOUNT)])
        orchestrator = ClearingOrchestrator(
            engine,
            ledger,
            config=ClearingConfig(ledger_timeout=0.05, resubmit_attempts=1),
        )
        claim = make_claim()

        result = finalize(orchestrator, claim, engine.attest(claim))

        assert result.success
        assert ledger.transfer_count == 1
        assert ledger.lookup_balance(CREDIT_ACCOUNT) == 50_000000


class TestHonoring:

    def grocery_claim(self, make_claim, claim_id="c1"):
        return make_claim(
            claim_id,
            kind=ClaimKind.SPEND_AUTHORIZED,
            anchor_type=AnchorType.GROCERY,
            metadata={"email": "user1@example.com"},
        )

    def test_honored(self, orchestrator, dispatcher, engine, make_claim):
        dispatcher.register(ScriptedAdapter())
        claim = self.grocery_claim(make_claim)

        result = finalize(orchestrator, claim, engine.attest(claim))

        assert result.state == ClearingState.HONORING_PENDING
        lifecycle = orchestrator.lifecycle("c1")
        assert lifecycle.clearing_state == ClearingState.CLEARED
        assert lifecycle.honoring_state == ClearingState.HONORED
        assert lifecycle.honoring_result.external_id == "ext-1"

    def test_honoring_failure_never_reverses_transfer(self, orchestrator, dispatcher, engine, ledger, make_claim):
        dispatcher.register(ScriptedAdapter(script=[permanent("CARD_DECLINED")]))
        claim = self.grocery_claim(make_claim)

        finalize(orchestrator, claim, engine.attest(claim))

        lifecycle = orchestrator.lifecycle("c1")
        assert lifecycle.clearing_state == ClearingState.CLEARED
        assert lifecycle.honoring_state == ClearingState.FAILED_EXTERNAL
        assert ledger.calls.count("create_transfer") == 1
        assert ledger.lookup_balance(CREDIT_ACCOUNT) == 50_000000

    def test_retries_exhausted_is_manual_review(self, orchestrator, dispatcher, engine, ledger, sleep, make_claim):
        dispatcher.register(ScriptedAdapter(script=[transient("SERVICE_UNAVAILABLE")]))
        claim = self.grocery_claim(make_claim)

        finalize(orchestrator, claim, engine.attest(claim))

        assert orchestrator.lifecycle("c1").honoring_state == ClearingState.MANUAL_REVIEW
        assert sleep.delays == [1.0, 2.0]
        assert ledger.transfer_count == 1

    def test_replay_does_not_honor_twice(self, orchestrator, dispatcher, engine, make_claim):
        adapter = ScriptedAdapter()
        dispatcher.register(adapter)
        claim = self.grocery_claim(make_claim)
        attestation = engine.attest(claim)

        finalize(orchestrator, claim, attestation)
        again = finalize(orchestrator, claim, attestation)

        assert again.replayed
        assert again.state == ClearingState.HONORED
        assert len(adapter.calls) == 1

    def test_no_anchor_skips_honoring(self, orchestrator, dispatcher, engine, make_claim):
        adapter = ScriptedAdapter()
        dispatcher.register(adapter)
        claim = make_claim(anchor_type=None)

        finalize(orchestrator, claim, engine.attest(claim))

        assert adapter.calls == []
        assert orchestrator.lifecycle("c1").honoring_state is None

    def test_deposit_kind_skips_honoring(self, orchestrator, dispatcher, engine, make_claim):
        adapter = ScriptedAdapter()
        dispatcher.register(adapter)
        claim = make_claim(kind=ClaimKind.CREDIT_DEPOSITED, anchor_type=AnchorType.GROCERY)

        finalize(orchestrator, claim, engine.attest(claim))

        assert adapter.calls == []


class TestNarrativeNonAuthority:

    def test_mirror_failure_does_not_fail_clearing(self, engine, ledger, metrics, make_claim):
        orchestrator = ClearingOrchestrator(
            engine,
            ledger,
            mirror=NarrativeMirror(FailingStore()),
            metrics=metrics,
        )
        claim = make_claim()

        result = finalize(orchestrator, claim, engine.attest(claim))

        assert result.success
        assert metrics.mirror_write_failures == 1
        assert ledger.lookup_balance(CREDIT_ACCOUNT) == 50_000000

    def test_wiping_mirror_changes_no_ledger_value(self, orchestrator, engine, ledger, store, mirror, make_claim):
        claim = make_claim()
        finalize(orchestrator, claim, engine.attest(claim))
        balance = ledger.lookup_balance(CREDIT_ACCOUNT)

        store.clear()
        mirror.rebuild_balances()

        assert mirror.observed_balance(DEBIT_ACCOUNT) == 0
        assert ledger.lookup_balance(CREDIT_ACCOUNT) == balance

    def test_clearing_observed(self, orchestrator, engine, mirror, make_claim):
        claim = make_claim()
        finalize(orchestrator, claim, engine.attest(claim))

        [entry] = mirror.entries_for_claim("c1")
        assert entry.source == NarrativeSource.CLEARING_OBSERVATION
        assert entry.transfer_id == f"{derive_transfer_id('c1'):032x}"
        assert mirror.observed_balance(DEBIT_ACCOUNT) == 50_000000


class TestClaimEvents:

    def event_types(self, claim_store, claim_id="c1"):
        return [event.event_type for event in claim_store.list_for_claim(claim_id)]

    def test_cleared_claim_is_logged(self, orchestrator, engine, claim_store, make_claim):
        claim = make_claim()
        finalize(orchestrator, claim, engine.attest(claim))

        received, cleared = claim_store.list_for_claim("c1")
        assert received.event_type == ClaimEventType.RECEIVED
        assert received.transfer_id is None
        assert cleared.event_type == ClaimEventType.CLEARED
        assert cleared.transfer_id == f"{derive_transfer_id('c1'):032x}"
        assert cleared.subject == "user1"
        assert cleared.kind == ClaimKind.SPEND_AUTHORIZED
        assert cleared.amount == 50_000000

    def test_replay_is_logged(self, orchestrator, engine, claim_store, make_claim):
        claim = make_claim()
        attestation = engine.attest(claim)
        finalize(orchestrator, claim, attestation)
        finalize(orchestrator, claim, attestation)

        assert self.event_types(claim_store) == [
            ClaimEventType.RECEIVED,
            ClaimEventType.CLEARED,
            ClaimEventType.RECEIVED,
            ClaimEventType.REPLAYED,
        ]

    def test_attestation_rejection_is_logged(self, orchestrator, engine, claim_store, make_claim):
        claim = make_claim()
        attestation = engine.attest(claim)

        with pytest.raises(InvalidAttestationError):
            finalize(orchestrator, claim.model_copy(update={"amount": 1}), attestation)

        received, rejected = claim_store.list_for_claim("c1")
        assert received.event_type == ClaimEventType.RECEIVED
        assert received.amount == 1
        assert rejected.event_type == ClaimEventType.ATTESTATION_REJECTED
        assert rejected.reason

    def test_ledger_outcomes_are_logged(self, engine, claim_store, make_claim):
        ledger = InMemoryLedgerGateway()
        ledger.create_accounts([LedgerAccount(id=CREDIT_ACCOUNT)])
        orchestrator = ClearingOrchestrator(engine, ledger, events=claim_store)
        claim = make_claim()
        attestation = engine.attest(claim)

        with pytest.raises(ClearingFailed):
            finalize(orchestrator, claim, attestation)
        ledger.fail_next(LedgerGatewayError("down"))
        ledger.fail_next(LedgerGatewayError("still down"))
        with pytest.raises(ClearingFailed):
            finalize(orchestrator, claim, attestation)

        [rejected] = claim_store.list_by_type(ClaimEventType.LEDGER_REJECTED)
        assert rejected.reason == "debit_account_not_found"
        [unavailable] = claim_store.list_by_type(ClaimEventType.LEDGER_UNAVAILABLE)
        assert unavailable.reason == "ledger_unavailable"
        assert unavailable.transfer_id == f"{derive_transfer_id('c1'):032x}"

    def test_queries_by_subject_and_kind(self, orchestrator, engine, claim_store, make_claim):
        for claim in (
            make_claim("c1", subject="user1"),
            make_claim("c2", subject="user2"),
            make_claim("c3", subject="user1", kind=ClaimKind.CREDIT_DEPOSITED),
        ):
            finalize(orchestrator, claim, engine.attest(claim))

        assert {e.claim_id for e in claim_store.list_for_subject("user1")} == {"c1", "c3"}
        assert {e.claim_id for e in claim_store.list_by_kind(ClaimKind.CREDIT_DEPOSITED)} == {"c3"}
        assert len(claim_store.query(subject="user1", event_type=ClaimEventType.CLEARED)) == 2

    def test_event_log_failure_does_not_fail_clearing(self, engine, ledger, metrics, make_claim):
        orchestrator = ClearingOrchestrator(engine, ledger, events=FailingClaimStore(), metrics=metrics)
        claim = make_claim()

        result = finalize(orchestrator, claim, engine.attest(claim))

        assert result.success
        assert metrics.event_log_failures == 2
        assert ledger.lookup_balance(CREDIT_ACCOUNT) == 50_000000


class TestCompliance:

    def build(self, engine, ledger, mirror, claim_store, metrics, **limits):
        gate = ComplianceGate(ComplianceConfig(**limits))
        orchestrator = ClearingOrchestrator(
            engine,
            ledger,
            mirror=mirror,
            metrics=metrics,
            compliance=gate,
            events=claim_store,
        )
        return gate, orchestrator

    def test_refusal_never_reaches_ledger(self, engine, ledger, mirror, claim_store, metrics, make_claim):
        gate, orchestrator = self.build(engine, ledger, mirror, claim_store, metrics)
        gate.block("user1", "sanctions match")
        claim = make_claim()
        calls_before = ledger.call_count

        with pytest.raises(ComplianceRejected) as exc:
            finalize(orchestrator, claim, engine.attest(claim))

        assert exc.value.code == ComplianceCode.USER_BLOCKED
        assert ledger.call_count == calls_before
        assert orchestrator.lifecycle("c1").state == ClearingState.REJECTED
        assert metrics.claims_rejected_compliance == 1
        [entry] = mirror.entries_for_claim("c1")
        assert entry.status == NarrativeStatus.FAILED
        assert entry.source == NarrativeSource.CLEARING_OBSERVATION
        [event] = claim_store.list_by_type(ClaimEventType.COMPLIANCE_REJECTED)
        assert event.reason == "USER_BLOCKED"
        assert event.metadata["risk_level"] == "BLOCKED"

    def test_attestation_checked_before_compliance(self, engine, ledger, mirror, claim_store, metrics, make_claim):
        gate, orchestrator = self.build(engine, ledger, mirror, claim_store, metrics)
        gate.block("user1", "sanctions match")
        claim = make_claim()
        attestation = engine.attest(claim)

        with pytest.raises(InvalidAttestationError):
            finalize(orchestrator, claim.model_copy(update={"amount": 1}), attestation)
        assert metrics.claims_rejected_attestation == 1
        assert metrics.claims_rejected_compliance == 0

    def test_replay_is_not_counted_twice(self, engine, ledger, mirror, claim_store, metrics, make_claim):
        gate, orchestrator = self.build(engine, ledger, mirror, claim_store, metrics, max_daily_claims=1)
        claim = make_claim("c1")
        attestation = engine.attest(claim)

        finalize(orchestrator, claim, attestation)
        again = finalize(orchestrator, claim, attestation)
        assert again.replayed

        other = make_claim("c2")
        with pytest.raises(ComplianceRejected) as exc:
            finalize(orchestrator, other, engine.attest(other))
        assert exc.value.code == ComplianceCode.DAILY_LIMIT_EXCEEDED
        assert ledger.transfer_count == 1

    def test_ledger_rejection_releases_admission(self, engine, mirror, claim_store, metrics, make_claim):
        ledger = InMemoryLedgerGateway()
        ledger.create_accounts([LedgerAccount(id=CREDIT_ACCOUNT)])
        gate, orchestrator = self.build(engine, ledger, mirror, claim_store, metrics, max_daily_claims=1)
        claim = make_claim()

        with pytest.raises(ClearingFailed):
            finalize(orchestrator, claim, engine.attest(claim))
        assert gate.profile("user1").total_claims == 0

        ledger.create_accounts([LedgerAccount(id=DEBIT_ACCOUNT)])
        result = finalize(orchestrator, claim, engine.attest(claim))
        assert result.state == ClearingState.CLEARED
        assert gate.profile("user1").total_claims == 1

    def test_unknown_outcome_stays_counted(self, engine, ledger, mirror, claim_store, metrics, make_claim):
        gate, orchestrator = self.build(engine, ledger, mirror, claim_store, metrics)
        ledger.fail_next(LedgerGatewayError("down"))
        ledger.fail_next(LedgerGatewayError("still down"))
        claim = make_claim()

        with pytest.raises(ClearingFailed):
            finalize(orchestrator, claim, engine.attest(claim))

        assert gate.profile("user1").total_claims == 1
