"""
Tests for the narrative mirror: append-only, balanced, deduplicated,
and advisory only.
"""

import pytest

from clearing.core import (
    NarrativeMirror,
    clearing_entry,
    honoring_entry,
    rejection_entry,
    webhook_entry,
)
from clearing.db import UnbalancedEntryError
from clearing.honoring import external_reference
from clearing.schemas import (
    AnchorType,
    Direction,
    HonoringResult,
    HonoringStatus,
    NarrativeAccount,
    NarrativeEntry,
    NarrativeLine,
    NarrativeSource,
    NarrativeStatus,
    WebhookResult,
)

from conftest import CREDIT_ACCOUNT, DEBIT_ACCOUNT


def honoring(transfer, status: HonoringStatus) -> HonoringResult:
    return HonoringResult(
        status=status,
        transfer_id=transfer.transfer_id,
        adapter="tango",
        external_reference=external_reference(transfer.transfer_id),
        external_id="RA-1",
    )


class TestEntryBuilders:

    def test_clearing_entry_without_anchor(self, make_transfer):
        entry = clearing_entry(make_transfer(anchor_type=None))

        assert entry.is_balanced
        assert len(entry.lines) == 2
        assert entry.source == NarrativeSource.CLEARING_OBSERVATION
        assert entry.status == NarrativeStatus.RECORDED
        assert entry.dedupe_key == f"clearing:{make_transfer().transfer_id_hex}"

    def test_clearing_entry_with_anchor_adds_memo(self, make_transfer):
        entry = clearing_entry(make_transfer(anchor_type=AnchorType.GROCERY))

        assert entry.is_balanced
        assert len(entry.lines) == 4
        assert entry.touches(NarrativeAccount.ANCHOR_GROCERY_AUTHORIZATION_MEMO)
        assert entry.touches(NarrativeAccount.OBSERVED_OPS_EXPENSE)

    def test_rejection_entry(self):
        entry = rejection_entry("c1", "attestation", "claim hash mismatch")

        assert entry.status == NarrativeStatus.FAILED
        assert entry.source == NarrativeSource.ATTESTATION
        assert entry.lines == []
        assert entry.metadata["reason"] == "claim hash mismatch"

    def test_honored_entry_moves_obligation(self, make_transfer):
        transfer = make_transfer(anchor_type=AnchorType.UTILITY)
        entry = honoring_entry(transfer, honoring(transfer, HonoringStatus.HONORED))

        debit = next(line for line in entry.lines if line.direction == Direction.DEBIT)
        credit = next(line for line in entry.lines if line.direction == Direction.CREDIT)
        assert debit.account_id == NarrativeAccount.OBSERVED_ANCHOR_UTILITY_OBLIGATION
        assert credit.account_id == NarrativeAccount.HONORING_ADAPTER_ACH
        assert entry.status == NarrativeStatus.RECORDED

    def test_grocery_settles_through_odfi(self, make_transfer):
        transfer = make_transfer(anchor_type=AnchorType.GROCERY)
        entry = honoring_entry(transfer, honoring(transfer, HonoringStatus.HONORED))
        assert entry.touches(NarrativeAccount.HONORING_ADAPTER_ODFI)

    @pytest.mark.parametrize("status,expected", [
        (HonoringStatus.FAILED_EXTERNAL, NarrativeStatus.FAILED),
        (HonoringStatus.REJECTED, NarrativeStatus.FAILED),
        (HonoringStatus.MANUAL_REVIEW, NarrativeStatus.OBSERVED),
        (HonoringStatus.PENDING, NarrativeStatus.OBSERVED),
    ])
    def test_unfulfilled_outcomes_move_nothing(self, make_transfer, status, expected):
        transfer = make_transfer()
        entry = honoring_entry(transfer, honoring(transfer, status))
        assert entry.lines == []
        assert entry.status == expected

    def test_webhook_entry(self):
        entry = webhook_entry(
            "moov",
            "c1",
            WebhookResult(acknowledged=True, external_id="tx1", status=HonoringStatus.HONORED, event_type="transfer.completed"),
        )
        assert entry.source == NarrativeSource.INTERSYSTEM
        assert entry.status == NarrativeStatus.OBSERVED
        assert entry.metadata["status"] == "HONORED"


class TestNarrativeMirror:

    def test_record_assigns_id(self, mirror, make_transfer):
        entry_id = mirror.record(clearing_entry(make_transfer()))
        assert entry_id.startswith("NM-")
        assert mirror.get(entry_id).claim_id == "c1"

    def test_observed_balances_follow_mirror_convention(self, mirror, make_transfer):
        mirror.record(clearing_entry(make_transfer(anchor_type=None)))

        assert mirror.observed_balance(DEBIT_ACCOUNT) == 50_000000
        assert mirror.observed_balance(CREDIT_ACCOUNT) == -50_000000

    def test_dedupe_key(self, mirror, store, make_transfer):
        first = mirror.record(clearing_entry(make_transfer(anchor_type=None)))
        second = mirror.record(clearing_entry(make_transfer(anchor_type=None), replayed=True))

        assert first == second
        assert store.count() == 1
        assert mirror.observed_balance(DEBIT_ACCOUNT) == 50_000000

    def test_unbalanced_entry_refused(self, mirror, store):
        entry = NarrativeEntry(
            description="broken",
            source=NarrativeSource.CLEARING_OBSERVATION,
            status=NarrativeStatus.RECORDED,
            claim_id="c1",
            lines=[NarrativeLine(account_id=DEBIT_ACCOUNT, direction=Direction.DEBIT, amount=10)],
        )
        with pytest.raises(UnbalancedEntryError):
            mirror.record(entry)
        assert store.count() == 0

    def test_queries(self, mirror, make_transfer):
        transfer = make_transfer()
        mirror.record(clearing_entry(transfer))
        mirror.record(rejection_entry("c2", "attestation", "bad signature"))
        mirror.record(honoring_entry(transfer, honoring(transfer, HonoringStatus.HONORED)))

        assert len(mirror.entries_for_claim("c1")) == 2
        assert len(mirror.entries_with_status(NarrativeStatus.FAILED)) == 1
        assert len(mirror.entries_from_source(NarrativeSource.HONORING_RESULT)) == 1
        assert len(mirror.entries_for_account(DEBIT_ACCOUNT)) == 1
        assert len(mirror.all_entries()) == 3

    def test_balances_rebuilt_from_store(self, mirror, store, make_transfer):
        mirror.record(clearing_entry(make_transfer("c1", anchor_type=None)))
        mirror.record(clearing_entry(make_transfer("c2", anchor_type=None)))

        reopened = NarrativeMirror(store)
        assert reopened.observed_balances([DEBIT_ACCOUNT, CREDIT_ACCOUNT]) == {
            DEBIT_ACCOUNT: 100_000000,
            CREDIT_ACCOUNT: -100_000000,
        }
