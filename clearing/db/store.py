"""
Narrative Store Abstraction

Storage behind the narrative mirror:
- InMemoryNarrativeStore: development and tests
- PostgresNarrativeStore: durable, shared between instances

The store is append-only. There is no update and no delete in this
interface, and the Postgres schema installs a trigger that refuses both.

The store is responsible for:
- Assigning entry ids
- Deduplicating appends by dedupe_key (replayed claims must not produce
  a second clearing observation)
- Queries by id, claim, account, status

Balance validation and observed balances live in NarrativeMirror
(clearing.core.mirror), not here.
"""

import json
import time
from abc import ABC, abstractmethod
from itertools import count
from threading import Lock
from typing import Any, Callable, Optional
from uuid import uuid4

from ..schemas import (
    Direction,
    NarrativeEntry,
    NarrativeLine,
    NarrativeSource,
    NarrativeStatus,
)


# ============================================================
# EXCEPTIONS
# ============================================================

class MirrorWriteError(Exception):
    """Best-effort audit write failed. Logged, never a clearing failure."""
    pass


class UnbalancedEntryError(MirrorWriteError):
    """Entry debits do not equal credits."""
    pass


def _new_entry_id(sequence: Optional[int] = None) -> str:
    millis = int(time.time() * 1000)
    suffix = f"{sequence:06d}" if sequence is not None else uuid4().hex[:8]
    return f"NM-{millis}-{suffix}"


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class NarrativeStore(ABC):
    """
    Append-only storage for narrative entries.

    Implementations must ensure:
    1. append() never overwrites an existing entry
    2. append() with a known dedupe_key returns the stored entry unchanged
    3. list_* results are in append order
    """

    @abstractmethod
    def append(self, entry: NarrativeEntry) -> tuple[NarrativeEntry, bool]:
        """
        Append an entry.

        Returns:
            (stored_entry, created). created is False when dedupe_key was
            already present and the earlier entry is returned instead.

        Raises:
            MirrorWriteError: If the write fails
        """
        pass

    @abstractmethod
    def get(self, entry_id: str) -> Optional[NarrativeEntry]:
        pass

    @abstractmethod
    def find_by_dedupe_key(self, dedupe_key: str) -> Optional[NarrativeEntry]:
        pass

    @abstractmethod
    def list_all(self) -> list[NarrativeEntry]:
        pass

    @abstractmethod
    def list_for_claim(self, claim_id: str) -> list[NarrativeEntry]:
        pass

    @abstractmethod
    def list_for_account(self, account_id: int) -> list[NarrativeEntry]:
        pass

    @abstractmethod
    def list_by_status(self, status: NarrativeStatus) -> list[NarrativeEntry]:
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryNarrativeStore(NarrativeStore):
    """
    In-memory narrative store.

    Suitable for development and tests. NOT suitable for production
    (no durability, no sharing between instances).
    """

    def __init__(self):
        self._entries: list[NarrativeEntry] = []
        self._by_id: dict[str, NarrativeEntry] = {}
        self._by_dedupe: dict[str, NarrativeEntry] = {}
        self._sequence = count(1)
        self._lock = Lock()

    def append(self, entry: NarrativeEntry) -> tuple[NarrativeEntry, bool]:
        with self._lock:
            if entry.dedupe_key and entry.dedupe_key in self._by_dedupe:
                return self._by_dedupe[entry.dedupe_key], False

            stored = entry.model_copy(update={"id": _new_entry_id(next(self._sequence))}, deep=True)
            self._entries.append(stored)
            self._by_id[stored.id] = stored
            if stored.dedupe_key:
                self._by_dedupe[stored.dedupe_key] = stored
            return stored, True

    def get(self, entry_id: str) -> Optional[NarrativeEntry]:
        return self._by_id.get(entry_id)

    def find_by_dedupe_key(self, dedupe_key: str) -> Optional[NarrativeEntry]:
        return self._by_dedupe.get(dedupe_key)

    def list_all(self) -> list[NarrativeEntry]:
        return list(self._entries)

    def list_for_claim(self, claim_id: str) -> list[NarrativeEntry]:
        return [e for e in self._entries if e.claim_id == claim_id]

    def list_for_account(self, account_id: int) -> list[NarrativeEntry]:
        return [e for e in self._entries if e.touches(account_id)]

    def list_by_status(self, status: NarrativeStatus) -> list[NarrativeEntry]:
        return [e for e in self._entries if e.status == status]

    def count(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        """Drop all entries (tests only)."""
        with self._lock:
            self._entries.clear()
            self._by_id.clear()
            self._by_dedupe.clear()


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS narrative_entries (
    seq          BIGSERIAL PRIMARY KEY,
    id           TEXT NOT NULL UNIQUE,
    claim_id     TEXT NOT NULL,
    transfer_id  TEXT,
    source       TEXT NOT NULL,
    status       TEXT NOT NULL,
    description  TEXT NOT NULL,
    dedupe_key   TEXT UNIQUE,
    metadata     JSONB NOT NULL DEFAULT '{}'::jsonb,
    recorded_at  TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS narrative_lines (
    entry_id    TEXT NOT NULL REFERENCES narrative_entries(id),
    line_no     INTEGER NOT NULL,
    account_id  BIGINT NOT NULL,
    direction   TEXT NOT NULL CHECK (direction IN ('DEBIT', 'CREDIT')),
    amount      NUMERIC(39, 0) NOT NULL CHECK (amount >= 0),
    memo        TEXT,
    PRIMARY KEY (entry_id, line_no)
);

CREATE INDEX IF NOT EXISTS narrative_entries_claim_idx ON narrative_entries (claim_id);
CREATE INDEX IF NOT EXISTS narrative_entries_status_idx ON narrative_entries (status);
CREATE INDEX IF NOT EXISTS narrative_lines_account_idx ON narrative_lines (account_id);

CREATE OR REPLACE FUNCTION narrative_append_only() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'narrative mirror is append-only';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS narrative_entries_append_only ON narrative_entries;
CREATE TRIGGER narrative_entries_append_only
    BEFORE UPDATE OR DELETE ON narrative_entries
    FOR EACH ROW EXECUTE FUNCTION narrative_append_only();

DROP TRIGGER IF EXISTS narrative_lines_append_only ON narrative_lines;
CREATE TRIGGER narrative_lines_append_only
    BEFORE UPDATE OR DELETE ON narrative_lines
    FOR EACH ROW EXECUTE FUNCTION narrative_append_only();
"""

_ENTRY_COLUMNS = (
    "id, claim_id, transfer_id, source, status, description, "
    "dedupe_key, metadata, recorded_at"
)


class PostgresNarrativeStore(NarrativeStore):
    """
    PostgreSQL narrative store.

    Each append is one transaction (entry row + line rows). Dedupe is
    enforced by the UNIQUE constraint on dedupe_key, so concurrent
    replays from several instances still produce one entry.

    Usage:
        store = PostgresNarrativeStore(lambda: psycopg2.connect(dsn))
        store.ensure_schema()
    """

    STATEMENT_TIMEOUT_MS = 5000

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        self._connection_factory = connection_factory
        self._statement_timeout_ms = statement_timeout_ms

    def _connect(self):
        try:
            return self._connection_factory()
        except Exception as e:
            raise MirrorWriteError(f"Could not connect to mirror database: {e}") from e

    def ensure_schema(self) -> None:
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                cursor.execute(SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    def append(self, entry: NarrativeEntry) -> tuple[NarrativeEntry, bool]:
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
                entry_id = _new_entry_id()
                cursor.execute(
                    f"""
                    INSERT INTO narrative_entries ({_ENTRY_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s)
                    ON CONFLICT (dedupe_key) DO NOTHING
                    RETURNING id
                    """,
                    (
                        entry_id,
                        entry.claim_id,
                        entry.transfer_id,
                        entry.source.value,
                        entry.status.value,
                        entry.description,
                        entry.dedupe_key,
                        json.dumps(entry.metadata, default=str),
                        entry.recorded_at,
                    ),
                )
                if cursor.fetchone() is None:
                    conn.rollback()
                    existing = self.find_by_dedupe_key(entry.dedupe_key)
                    if existing is None:
                        raise MirrorWriteError(
                            f"Dedupe conflict on {entry.dedupe_key} but no entry found"
                        )
                    return existing, False

                for line_no, line in enumerate(entry.lines):
                    cursor.execute(
                        """
                        INSERT INTO narrative_lines
                            (entry_id, line_no, account_id, direction, amount, memo)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (entry_id, line_no, line.account_id, line.direction.value, line.amount, line.memo),
                    )
            conn.commit()
            return entry.model_copy(update={"id": entry_id}), True
        except MirrorWriteError:
            raise
        except Exception as e:
            conn.rollback()
            raise MirrorWriteError(f"Narrative append failed: {e}") from e
        finally:
            conn.close()

    def _select(self, where: str = "", params: tuple = ()) -> list[NarrativeEntry]:
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                cursor.execute(
                    f"SELECT {_ENTRY_COLUMNS} FROM narrative_entries e {where} ORDER BY e.seq",
                    params,
                )
                rows = cursor.fetchall()
                if not rows:
                    return []
                ids = [row[0] for row in rows]
                cursor.execute(
                    """
                    SELECT entry_id, account_id, direction, amount, memo
                    FROM narrative_lines
                    WHERE entry_id = ANY(%s)
                    ORDER BY entry_id, line_no
                    """,
                    (ids,),
                )
                lines: dict[str, list[NarrativeLine]] = {}
                for entry_id, account_id, direction, amount, memo in cursor.fetchall():
                    lines.setdefault(entry_id, []).append(NarrativeLine(
                        account_id=account_id,
                        direction=Direction(direction),
                        amount=int(amount),
                        memo=memo,
                    ))
            return [
                NarrativeEntry(
                    id=row[0],
                    claim_id=row[1],
                    transfer_id=row[2],
                    source=NarrativeSource(row[3]),
                    status=NarrativeStatus(row[4]),
                    description=row[5],
                    dedupe_key=row[6],
                    metadata=row[7] if isinstance(row[7], dict) else json.loads(row[7] or "{}"),
                    recorded_at=row[8],
                    lines=lines.get(row[0], []),
                )
                for row in rows
            ]
        finally:
            conn.close()

    def get(self, entry_id: str) -> Optional[NarrativeEntry]:
        found = self._select("WHERE e.id = %s", (entry_id,))
        return found[0] if found else None

    def find_by_dedupe_key(self, dedupe_key: str) -> Optional[NarrativeEntry]:
        found = self._select("WHERE e.dedupe_key = %s", (dedupe_key,))
        return found[0] if found else None

    def list_all(self) -> list[NarrativeEntry]:
        return self._select()

    def list_for_claim(self, claim_id: str) -> list[NarrativeEntry]:
        return self._select("WHERE e.claim_id = %s", (claim_id,))

    def list_for_account(self, account_id: int) -> list[NarrativeEntry]:
        return self._select(
            "WHERE e.id IN (SELECT entry_id FROM narrative_lines WHERE account_id = %s)",
            (account_id,),
        )

    def list_by_status(self, status: NarrativeStatus) -> list[NarrativeEntry]:
        return self._select("WHERE e.status = %s", (status.value,))

    def count(self) -> int:
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                cursor.execute("SELECT COUNT(*) FROM narrative_entries")
                return cursor.fetchone()[0]
        finally:
            conn.close()

    def ping(self) -> bool:
        try:
            self.count()
        except Exception:
            return False
        return True
