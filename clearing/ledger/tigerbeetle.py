"""
TigerBeetle Ledger Gateway

LedgerGateway backed by a TigerBeetle cluster through the official
`tigerbeetle` Python client (install with the `tigerbeetle` extra).

TigerBeetle reports failures per batch index with a result enum; a
successful create is simply absent from the error list. Result names are
lower-cased and passed through the configured LedgerResultMap, so the
"exists" decision follows configuration and not hard-coded numbers.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from ..core.hasher import Hasher
from ..schemas import AccountResult, ClearedTransfer, LedgerAccount, TransferOutcome
from .gateway import (
    AccountNotFoundError,
    LedgerGateway,
    LedgerGatewayError,
    LedgerResultMap,
    OK,
)


def _from_tb_timestamp(value: int) -> Optional[datetime]:
    """TigerBeetle timestamps are nanoseconds since the Unix epoch."""
    if not value:
        return None
    return datetime.fromtimestamp(value / 1_000_000_000, tz=timezone.utc)


class TigerBeetleLedgerGateway(LedgerGateway):
    """
    Gateway over a TigerBeetle cluster.

    Args:
        cluster_id: TigerBeetle cluster id
        addresses: Comma-separated replica addresses ("3000" or "host:port,...")
        result_map: Which result names count as "exists"
        client: Pre-built client (tests); otherwise a ClientSync is created
    """

    def __init__(
        self,
        cluster_id: int = 0,
        addresses: str = "3000",
        result_map: Optional[LedgerResultMap] = None,
        client: Any = None,
    ):
        super().__init__(result_map)
        import tigerbeetle as tb

        self._tb = tb
        self._client = client or tb.ClientSync(
            cluster_id=cluster_id,
            replica_addresses=addresses,
        )

    def create_accounts(self, accounts: list[LedgerAccount]) -> list[AccountResult]:
        tb = self._tb
        batch = [
            tb.Account(
                id=account.id,
                debits_pending=0,
                debits_posted=0,
                credits_pending=0,
                credits_posted=0,
                user_data_128=0,
                user_data_64=0,
                user_data_32=0,
                ledger=account.ledger,
                code=account.code,
                flags=(
                    tb.AccountFlags.DEBITS_MUST_NOT_EXCEED_CREDITS
                    if account.debits_must_not_exceed_credits
                    else tb.AccountFlags.NONE
                ),
                timestamp=0,
            )
            for account in accounts
        ]
        try:
            errors = self._client.create_accounts(batch)
        except Exception as e:
            raise LedgerGatewayError(f"create_accounts failed: {e}") from e

        names = {error.index: error.result.name for error in errors}
        return [
            self.result_map.account_result(account.id, names.get(i, OK))
            for i, account in enumerate(accounts)
        ]

    def create_transfer(self, transfer: ClearedTransfer) -> TransferOutcome:
        tb = self._tb
        record = tb.Transfer(
            id=transfer.transfer_id,
            debit_account_id=transfer.debit_account_id,
            credit_account_id=transfer.credit_account_id,
            amount=transfer.amount,
            pending_id=0,
            user_data_128=Hasher.derive_id("subject", transfer.subject),
            user_data_64=0,
            user_data_32=0,
            timeout=0,
            ledger=transfer.ledger,
            code=transfer.code,
            flags=tb.TransferFlags.NONE,
            timestamp=0,
        )
        try:
            errors = self._client.create_transfers([record])
        except Exception as e:
            raise LedgerGatewayError(f"create_transfers failed: {e}") from e

        name = errors[0].result.name if errors else OK
        outcome = self.result_map.outcome(transfer.transfer_id, name)
        if outcome.cleared:
            posted = self.lookup_transfer(transfer.transfer_id)
            if posted is not None:
                outcome = outcome.model_copy(update={"timestamp": posted.timestamp})
        return outcome

    def _lookup_account(self, account_id: int) -> Any:
        try:
            found = self._client.lookup_accounts([account_id])
        except Exception as e:
            raise LedgerGatewayError(f"lookup_accounts failed: {e}") from e
        if not found:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return found[0]

    def lookup_balance(self, account_id: int) -> int:
        account = self._lookup_account(account_id)
        return account.credits_posted - account.debits_posted

    def lookup_transfer(self, transfer_id: int) -> Optional[ClearedTransfer]:
        try:
            found = self._client.lookup_transfers([transfer_id])
        except Exception as e:
            raise LedgerGatewayError(f"lookup_transfers failed: {e}") from e
        if not found:
            return None
        record = found[0]
        # claim_id/subject live outside the ledger; callers re-attach them
        return ClearedTransfer(
            transfer_id=record.id,
            claim_id="",
            subject="",
            debit_account_id=record.debit_account_id,
            credit_account_id=record.credit_account_id,
            amount=record.amount,
            ledger=record.ledger,
            code=record.code,
            timestamp=_from_tb_timestamp(record.timestamp),
        )

    def ping(self) -> bool:
        try:
            self._client.lookup_accounts([1])
        except Exception:
            return False
        return True

    def close(self) -> None:
        self._client.close()
