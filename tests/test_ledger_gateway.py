"""
Tests for the ledger gateway contract, against the in-memory gateway.

At most one transfer per id, ever.
"""

import pytest

from clearing.core import derive_transfer_id
from clearing.ledger import (
    AccountNotFoundError,
    InMemoryLedgerGateway,
    LedgerGatewayError,
    LedgerResultMap,
    LedgerTimeoutError,
)
from clearing.schemas import ClearedTransfer, LedgerAccount, TransferStatus

from conftest import CREDIT_ACCOUNT, DEBIT_ACCOUNT


def transfer(claim_id: str = "c1", amount: int = 50_000000, **overrides) -> ClearedTransfer:
    fields = {
        "transfer_id": derive_transfer_id(claim_id),
        "claim_id": claim_id,
        "subject": "user1",
        "debit_account_id": DEBIT_ACCOUNT,
        "credit_account_id": CREDIT_ACCOUNT,
        "amount": amount,
    }
    fields.update(overrides)
    return ClearedTransfer(**fields)


class TestAccounts:

    def test_create_then_exists(self):
        gateway = InMemoryLedgerGateway()
        accounts = [LedgerAccount(id=DEBIT_ACCOUNT), LedgerAccount(id=CREDIT_ACCOUNT)]

        first = gateway.create_accounts(accounts)
        second = gateway.create_accounts(accounts)

        assert all(r.created for r in first)
        assert all(r.exists and not r.created for r in second)

    def test_different_flags_is_failure(self):
        gateway = InMemoryLedgerGateway()
        gateway.create_accounts([LedgerAccount(id=DEBIT_ACCOUNT)])
        [result] = gateway.create_accounts(
            [LedgerAccount(id=DEBIT_ACCOUNT, debits_must_not_exceed_credits=True)]
        )
        assert not result.created and not result.exists
        assert result.reason == "exists_with_different_flags"

    def test_unknown_account_balance(self, ledger):
        with pytest.raises(AccountNotFoundError):
            ledger.lookup_balance(424242)


class TestTransfers:

    def test_accept_moves_balances(self, ledger):
        outcome = ledger.create_transfer(transfer())

        assert outcome.status == TransferStatus.ACCEPTED
        assert outcome.cleared
        assert outcome.timestamp is not None
        assert ledger.lookup_balance(CREDIT_ACCOUNT) == 50_000000
        assert ledger.lookup_balance(DEBIT_ACCOUNT) == -50_000000

    def test_same_transfer_twice_is_exists(self, ledger):
        ledger.create_transfer(transfer())
        outcome = ledger.create_transfer(transfer())

        assert outcome.status == TransferStatus.EXISTS
        assert outcome.cleared
        assert ledger.transfer_count == 1
        assert ledger.lookup_balance(CREDIT_ACCOUNT) == 50_000000

    def test_same_id_different_amount_rejected(self, ledger):
        ledger.create_transfer(transfer())
        outcome = ledger.create_transfer(transfer(amount=1))

        assert outcome.status == TransferStatus.REJECTED
        assert outcome.reason == "exists_with_different_amount"
        assert ledger.lookup_balance(CREDIT_ACCOUNT) == 50_000000

    def test_missing_account_rejected(self, ledger):
        outcome = ledger.create_transfer(transfer(debit_account_id=9999))
        assert outcome.status == TransferStatus.REJECTED
        assert outcome.reason == "debit_account_not_found"
        assert ledger.transfer_count == 0

    def test_same_account_rejected(self, ledger):
        outcome = ledger.create_transfer(transfer(credit_account_id=DEBIT_ACCOUNT))
        assert outcome.reason == "accounts_must_be_different"

    def test_overdraft_flag(self):
        gateway = InMemoryLedgerGateway()
        gateway.create_accounts([
            LedgerAccount(id=DEBIT_ACCOUNT, debits_must_not_exceed_credits=True),
            LedgerAccount(id=CREDIT_ACCOUNT),
        ])
        outcome = gateway.create_transfer(transfer())
        assert outcome.reason == "exceeds_credits"

    def test_lookup_transfer(self, ledger):
        assert ledger.lookup_transfer(derive_transfer_id("c1")) is None
        ledger.create_transfer(transfer())
        posted = ledger.lookup_transfer(derive_transfer_id("c1"))
        assert posted.amount == 50_000000
        assert posted.timestamp is not None


class TestInjectedFailures:

    def test_failure_before_commit_posts_nothing(self, ledger):
        ledger.fail_next(LedgerGatewayError("connection reset"))
        with pytest.raises(LedgerGatewayError):
            ledger.create_transfer(transfer())
        assert ledger.lookup_transfer(derive_transfer_id("c1")) is None

    def test_lost_response_still_posts(self, ledger):
        ledger.fail_next(LedgerTimeoutError("response lost"), after_commit=True)
        with pytest.raises(LedgerTimeoutError):
            ledger.create_transfer(transfer())

        assert ledger.lookup_transfer(derive_transfer_id("c1")) is not None
        assert ledger.create_transfer(transfer()).status == TransferStatus.EXISTS

    def test_calls_are_counted(self, ledger):
        before = ledger.call_count
        ledger.create_transfer(transfer())
        ledger.lookup_balance(CREDIT_ACCOUNT)
        assert ledger.calls[before:] == ["create_transfer", "lookup_balance"]


class TestResultMap:

    def test_default_mapping(self):
        result_map = LedgerResultMap()
        assert result_map.transfer_status("ok") == TransferStatus.ACCEPTED
        assert result_map.transfer_status("exists") == TransferStatus.EXISTS
        assert result_map.transfer_status("exists_with_different_amount") == TransferStatus.REJECTED

    def test_configured_exists_names(self):
        result_map = LedgerResultMap.from_names(["exists", " Already_Posted "])
        assert result_map.transfer_status("already_posted") == TransferStatus.EXISTS
        assert result_map.transfer_status("EXISTS") == TransferStatus.EXISTS

    def test_empty_names_rejected(self):
        with pytest.raises(ValueError):
            LedgerResultMap.from_names(["", "  "])

    def test_outcome_reason(self):
        result_map = LedgerResultMap()
        assert result_map.outcome(7, "ok").reason is None
        assert result_map.outcome(7, "Exceeds_Credits").reason == "exceeds_credits"
