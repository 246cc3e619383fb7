"""
Ledger Gateway Layer

Provides:
- LedgerGateway contract over the authoritative ledger
- InMemoryLedgerGateway test double
- TigerBeetleLedgerGateway (clearing.ledger.tigerbeetle, optional extra)
"""

from .gateway import (
    AccountNotFoundError,
    InMemoryLedgerGateway,
    LedgerGateway,
    LedgerGatewayError,
    LedgerResultMap,
    LedgerTimeoutError,
)

__all__ = [
    "AccountNotFoundError",
    "InMemoryLedgerGateway",
    "LedgerGateway",
    "LedgerGatewayError",
    "LedgerResultMap",
    "LedgerTimeoutError",
]
