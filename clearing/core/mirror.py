"""
Narrative Mirror Service

Append-only, best-effort observation log of everything the pipeline does,
in double-entry form, for audit and display.

The mirror is NEVER authoritative:
- Nothing in clearing reads from it
- Its observed balances are advisory; the ledger gateway is the truth
- Deleting every entry changes no ledger value

Writes are fire-and-forget relative to clearing. A failed write raises
MirrorWriteError to the caller, who logs it; it never unwinds a transfer
that the ledger already accepted.

Observed balances follow the mirror convention: a DEBIT line adds its
amount to the account, a CREDIT line subtracts it.
"""

from collections import defaultdict
from threading import Lock
from typing import Optional

from ..db.store import NarrativeStore, UnbalancedEntryError
from ..schemas import (
    ClearedTransfer,
    Direction,
    HonoringResult,
    HonoringStatus,
    MEMO_ACCOUNTS,
    NarrativeAccount,
    NarrativeEntry,
    NarrativeLine,
    NarrativeSource,
    NarrativeStatus,
    OBLIGATION_ACCOUNTS,
    SETTLEMENT_ACCOUNTS,
    WebhookResult,
)


class NarrativeMirror:
    """
    Records narrative entries into an injected NarrativeStore and keeps an
    in-process observed balance per account.
    """

    def __init__(self, store: NarrativeStore):
        self._store = store
        self._balances: dict[int, int] = defaultdict(int)
        self._lock = Lock()
        self.rebuild_balances()

    @property
    def store(self) -> NarrativeStore:
        return self._store

    # ============================================================
    # WRITE
    # ============================================================

    def record(self, entry: NarrativeEntry) -> str:
        """
        Append an entry.

        Returns:
            The entry id (the original id if dedupe_key was seen before)

        Raises:
            UnbalancedEntryError: debits != credits
            MirrorWriteError: storage failure
        """
        if not entry.is_balanced:
            raise UnbalancedEntryError(
                f"Entry for claim {entry.claim_id} is unbalanced: "
                f"debits={entry.total_debits} credits={entry.total_credits}"
            )

        with self._lock:
            stored, created = self._store.append(entry)
            if created:
                self._apply(stored)
            return stored.id

    def _apply(self, entry: NarrativeEntry) -> None:
        for line in entry.lines:
            delta = line.amount if line.direction == Direction.DEBIT else -line.amount
            self._balances[line.account_id] += delta

    def rebuild_balances(self) -> None:
        """Recompute observed balances from the store."""
        with self._lock:
            self._balances.clear()
            for entry in self._store.list_all():
                self._apply(entry)

    # ============================================================
    # QUERIES
    # ============================================================

    def get(self, entry_id: str) -> Optional[NarrativeEntry]:
        return self._store.get(entry_id)

    def entries_for_claim(self, claim_id: str) -> list[NarrativeEntry]:
        return self._store.list_for_claim(claim_id)

    def entries_for_account(self, account_id: int) -> list[NarrativeEntry]:
        return self._store.list_for_account(account_id)

    def entries_with_status(self, status: NarrativeStatus) -> list[NarrativeEntry]:
        return self._store.list_by_status(status)

    def entries_from_source(self, source: NarrativeSource) -> list[NarrativeEntry]:
        return [entry for entry in self._store.list_all() if entry.source == source]

    def all_entries(self) -> list[NarrativeEntry]:
        return self._store.list_all()

    def observed_balance(self, account_id: int) -> int:
        """Advisory balance for display. Never use for clearing decisions."""
        with self._lock:
            return self._balances.get(account_id, 0)

    def observed_balances(self, account_ids: list[int]) -> dict[int, int]:
        with self._lock:
            return {account_id: self._balances.get(account_id, 0) for account_id in account_ids}


# ============================================================
# ENTRY BUILDERS
# ============================================================

def clearing_entry(transfer: ClearedTransfer, replayed: bool = False) -> NarrativeEntry:
    """
    Observation of a transfer the ledger accepted.

    Mirrors the ledger movement, plus an authorization memo when the
    obligation still has to be honored externally.
    """
    amount = transfer.amount
    lines = [
        NarrativeLine(
            account_id=transfer.debit_account_id,
            direction=Direction.DEBIT,
            amount=amount,
            memo="Ledger debit observed",
        ),
        NarrativeLine(
            account_id=transfer.credit_account_id,
            direction=Direction.CREDIT,
            amount=amount,
            memo="Ledger credit observed",
        ),
    ]
    if transfer.anchor_type is not None:
        lines += [
            NarrativeLine(
                account_id=NarrativeAccount.OBSERVED_OPS_EXPENSE,
                direction=Direction.DEBIT,
                amount=amount,
                memo="Authorization intent registered",
            ),
            NarrativeLine(
                account_id=MEMO_ACCOUNTS[transfer.anchor_type],
                direction=Direction.CREDIT,
                amount=amount,
                memo="Authorization memo created",
            ),
        ]
    anchor = transfer.anchor_type.value if transfer.anchor_type else "NONE"
    return NarrativeEntry(
        description=f"Clearing observed: {transfer.claim_id} for {transfer.subject} ({amount} units, anchor {anchor})",
        source=NarrativeSource.CLEARING_OBSERVATION,
        status=NarrativeStatus.RECORDED,
        claim_id=transfer.claim_id,
        transfer_id=transfer.transfer_id_hex,
        lines=lines,
        dedupe_key=f"clearing:{transfer.transfer_id_hex}",
        metadata={"replayed": replayed, "ledger": transfer.ledger},
    )


def rejection_entry(
    claim_id: str,
    stage: str,
    reason: str,
    transfer_id_hex: Optional[str] = None,
) -> NarrativeEntry:
    """Observation of a claim rejected before (attestation) or by (ledger) clearing."""
    return NarrativeEntry(
        description=f"Claim rejected at {stage}: {reason}",
        source=(
            NarrativeSource.ATTESTATION if stage == "attestation"
            else NarrativeSource.CLEARING_OBSERVATION
        ),
        status=NarrativeStatus.FAILED,
        claim_id=claim_id,
        transfer_id=transfer_id_hex,
        metadata={"stage": stage, "reason": reason},
    )


def honoring_entry(transfer: ClearedTransfer, result: HonoringResult) -> NarrativeEntry:
    """
    Observation of an honoring outcome.

    Only HONORED moves observed balances (obligation fulfilled through the
    adapter's settlement account). Everything else is a status observation.
    """
    lines: list[NarrativeLine] = []
    if result.status == HonoringStatus.HONORED and transfer.anchor_type is not None:
        lines = [
            NarrativeLine(
                account_id=OBLIGATION_ACCOUNTS[transfer.anchor_type],
                direction=Direction.DEBIT,
                amount=transfer.amount,
                memo="Obligation fulfillment observed",
            ),
            NarrativeLine(
                account_id=SETTLEMENT_ACCOUNTS.get(
                    transfer.anchor_type, NarrativeAccount.HONORING_ADAPTER_ODFI
                ),
                direction=Direction.CREDIT,
                amount=transfer.amount,
                memo=f"Honoring adapter settlement ({result.adapter})",
            ),
        ]
        status = NarrativeStatus.RECORDED
    elif result.status in (HonoringStatus.FAILED_EXTERNAL, HonoringStatus.REJECTED):
        status = NarrativeStatus.FAILED
    else:
        status = NarrativeStatus.OBSERVED

    return NarrativeEntry(
        description=f"Honoring {result.status.value}: {transfer.claim_id} via {result.adapter}",
        source=NarrativeSource.HONORING_RESULT,
        status=status,
        claim_id=transfer.claim_id,
        transfer_id=transfer.transfer_id_hex,
        lines=lines,
        dedupe_key=f"honoring:{transfer.transfer_id_hex}:{result.status.value}",
        metadata={
            "adapter": result.adapter,
            "external_reference": result.external_reference,
            "external_id": result.external_id,
            "proof_hash": result.proof_hash,
            "error_code": result.error_code,
            "attempts": result.attempts,
        },
    )


def webhook_entry(adapter: str, claim_id: str, result: WebhookResult) -> NarrativeEntry:
    """Observation of a provider callback. Never moves balances."""
    return NarrativeEntry(
        description=f"Webhook from {adapter}: {result.event_type or 'unknown'}",
        source=NarrativeSource.INTERSYSTEM,
        status=NarrativeStatus.OBSERVED,
        claim_id=claim_id,
        metadata={
            "adapter": adapter,
            "external_id": result.external_id,
            "external_reference": result.external_reference,
            "status": result.status.value if result.status else None,
        },
    )
