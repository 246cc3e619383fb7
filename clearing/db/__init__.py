"""
Database Layer for the Narrative Mirror and the Claim Event Log

Provides:
- NarrativeStore abstraction (InMemory for dev/tests, Postgres for prod)
- ClaimStore abstraction, same split
- Connection configuration
"""

from .store import (
    InMemoryNarrativeStore,
    MirrorWriteError,
    NarrativeStore,
    PostgresNarrativeStore,
    UnbalancedEntryError,
)
from .claims import ClaimStore, ClaimStoreError, InMemoryClaimStore, PostgresClaimStore
from .config import DatabaseConfig, MirrorDriver, get_database_url, get_mirror_driver

__all__ = [
    "InMemoryNarrativeStore",
    "MirrorWriteError",
    "NarrativeStore",
    "PostgresNarrativeStore",
    "UnbalancedEntryError",
    "ClaimStore",
    "ClaimStoreError",
    "InMemoryClaimStore",
    "PostgresClaimStore",
    "DatabaseConfig",
    "MirrorDriver",
    "get_database_url",
    "get_mirror_driver",
]
