"""
Ledger Gateway

The contract this system consumes from the authoritative ledger. The
gateway is the ONLY writer of truth: balances are always read back from it,
never kept as mutable state here.

Operations:
- create_accounts(accounts)   -> list[AccountResult]
- create_transfer(transfer)   -> TransferOutcome (accepted | exists | rejected)
- lookup_balance(account_id)  -> credits_posted - debits_posted
- lookup_transfer(transfer_id) -> ClearedTransfer | None

RESULT CODES:
The ledger answers with a small closed set of result names ("ok",
"exists", "exceeds_credits", ...). Which of those mean "this exact
transfer is already posted" is configuration (LedgerResultMap), validated
against the ledger's own enumeration. "exists_with_different_amount" and
friends are NOT idempotent success: the id collided with a different
transfer, which is a rejection.

Rejections are surfaced, never retried here. Retrying a business
rejection is a caller decision.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Iterable, Optional

from ..schemas import (
    AccountResult,
    ClearedTransfer,
    LedgerAccount,
    TransferOutcome,
    TransferStatus,
)


# ============================================================
# EXCEPTIONS
# ============================================================

class LedgerGatewayError(Exception):
    """Transport-level ledger failure (not a business rejection)."""
    pass


class LedgerTimeoutError(LedgerGatewayError):
    """The ledger did not answer in time; outcome unknown until re-queried."""
    pass


class AccountNotFoundError(LedgerGatewayError):
    """Balance lookup for an account the ledger does not know."""
    pass


# ============================================================
# RESULT MAPPING
# ============================================================

OK = "ok"


@dataclass(frozen=True)
class LedgerResultMap:
    """
    Maps ledger result names onto TransferStatus.

    Args:
        transfer_exists: Result names meaning the identical transfer is posted
        account_exists: Result names meaning the identical account exists
    """
    transfer_exists: frozenset = frozenset({"exists"})
    account_exists: frozenset = frozenset({"exists"})

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "LedgerResultMap":
        normalized = frozenset(n.strip().lower() for n in names if n.strip())
        if not normalized:
            raise ValueError("At least one 'exists' result name is required")
        return cls(transfer_exists=normalized, account_exists=normalized)

    def transfer_status(self, result_name: str) -> TransferStatus:
        name = result_name.lower()
        if name == OK:
            return TransferStatus.ACCEPTED
        if name in self.transfer_exists:
            return TransferStatus.EXISTS
        return TransferStatus.REJECTED

    def account_result(self, account_id: int, result_name: str) -> AccountResult:
        name = result_name.lower()
        if name == OK:
            return AccountResult(account_id=account_id, created=True)
        if name in self.account_exists:
            return AccountResult(account_id=account_id, created=False, exists=True)
        return AccountResult(account_id=account_id, created=False, reason=name)

    def outcome(
        self,
        transfer_id: int,
        result_name: str,
        timestamp: Optional[datetime] = None,
    ) -> TransferOutcome:
        status = self.transfer_status(result_name)
        return TransferOutcome(
            status=status,
            transfer_id=transfer_id,
            reason=None if status == TransferStatus.ACCEPTED else result_name.lower(),
            timestamp=timestamp,
        )


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LedgerGateway(ABC):
    """
    Abstract client of the authoritative ledger.

    Implementations must guarantee that, for a given transfer id, at most
    one transfer is ever posted, and that concurrent submissions of the
    same id converge to one outcome.
    """

    def __init__(self, result_map: Optional[LedgerResultMap] = None):
        self.result_map = result_map or LedgerResultMap()

    @abstractmethod
    def create_accounts(self, accounts: list[LedgerAccount]) -> list[AccountResult]:
        """Create accounts; existing identical accounts report exists=True."""
        pass

    @abstractmethod
    def create_transfer(self, transfer: ClearedTransfer) -> TransferOutcome:
        """
        Submit one transfer.

        Returns:
            TransferOutcome; EXISTS is success

        Raises:
            LedgerGatewayError: Transport failure (outcome unknown)
        """
        pass

    @abstractmethod
    def lookup_balance(self, account_id: int) -> int:
        """Net balance (credits_posted - debits_posted), read live."""
        pass

    @abstractmethod
    def lookup_transfer(self, transfer_id: int) -> Optional[ClearedTransfer]:
        """Posted transfer by id, or None. Used to resolve write timeouts."""
        pass

    def ping(self) -> bool:
        """Connectivity check for health reporting."""
        return True

    def close(self) -> None:
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

@dataclass
class _AccountState:
    account: LedgerAccount
    debits_posted: int = 0
    credits_posted: int = 0


@dataclass
class _InjectedFailure:
    error: Exception
    after_commit: bool


class InMemoryLedgerGateway(LedgerGateway):
    """
    In-memory ledger, a test double for the real cluster.

    Enforces the same rules the clearing path relies on (idempotent ids,
    overdraft flag, same-ledger accounts) and counts every call, so tests
    can assert that a rejected claim never reached the ledger.

    NOT suitable for production (no durability, single process).
    """

    def __init__(self, result_map: Optional[LedgerResultMap] = None):
        super().__init__(result_map)
        self._accounts: dict[int, _AccountState] = {}
        self._transfers: dict[int, ClearedTransfer] = {}
        self._lock = Lock()
        self._failures: list[_InjectedFailure] = []
        self.calls: list[str] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    @property
    def transfer_count(self) -> int:
        return len(self._transfers)

    def fail_next(self, error: Exception, after_commit: bool = False) -> None:
        """
        Make the next create_transfer raise.

        With after_commit=True the transfer IS posted before the error is
        raised (a lost response), which is what a write timeout looks like.
        """
        self._failures.append(_InjectedFailure(error=error, after_commit=after_commit))

    def create_accounts(self, accounts: list[LedgerAccount]) -> list[AccountResult]:
        results = []
        with self._lock:
            self.calls.append("create_accounts")
            for account in accounts:
                existing = self._accounts.get(account.id)
                if existing is None:
                    self._accounts[account.id] = _AccountState(account=account)
                    name = OK
                elif existing.account == account:
                    name = "exists"
                else:
                    name = "exists_with_different_flags"
                results.append(self.result_map.account_result(account.id, name))
        return results

    def create_transfer(self, transfer: ClearedTransfer) -> TransferOutcome:
        with self._lock:
            self.calls.append("create_transfer")
            failure = self._failures.pop(0) if self._failures else None
            if failure is not None and not failure.after_commit:
                raise failure.error

            name, posted = self._apply(transfer)

            if failure is not None:
                raise failure.error
            timestamp = posted.timestamp if posted else None
            return self.result_map.outcome(transfer.transfer_id, name, timestamp)

    def _apply(self, transfer: ClearedTransfer) -> tuple[str, Optional[ClearedTransfer]]:
        """Validate and post under the lock. Returns (result_name, posted)."""
        existing = self._transfers.get(transfer.transfer_id)
        if existing is not None:
            for attr in ("debit_account_id", "credit_account_id", "amount", "ledger", "code"):
                if getattr(existing, attr) != getattr(transfer, attr):
                    return f"exists_with_different_{attr}", None
            return "exists", existing

        if transfer.debit_account_id == transfer.credit_account_id:
            return "accounts_must_be_different", None

        debit = self._accounts.get(transfer.debit_account_id)
        if debit is None:
            return "debit_account_not_found", None
        credit = self._accounts.get(transfer.credit_account_id)
        if credit is None:
            return "credit_account_not_found", None

        if debit.account.ledger != credit.account.ledger:
            return "accounts_must_have_the_same_ledger", None
        if transfer.ledger != debit.account.ledger:
            return "transfer_must_have_the_same_ledger_as_accounts", None

        if (
            debit.account.debits_must_not_exceed_credits
            and debit.debits_posted + transfer.amount > debit.credits_posted
        ):
            return "exceeds_credits", None

        posted = transfer.model_copy(update={"timestamp": datetime.now(timezone.utc)})
        self._transfers[transfer.transfer_id] = posted
        debit.debits_posted += transfer.amount
        credit.credits_posted += transfer.amount
        return OK, posted

    def lookup_balance(self, account_id: int) -> int:
        with self._lock:
            self.calls.append("lookup_balance")
            state = self._accounts.get(account_id)
            if state is None:
                raise AccountNotFoundError(f"Account {account_id} not found")
            return state.credits_posted - state.debits_posted

    def lookup_transfer(self, transfer_id: int) -> Optional[ClearedTransfer]:
        with self._lock:
            self.calls.append("lookup_transfer")
            return self._transfers.get(transfer_id)
