"""
Claim Event Store

Storage behind the claim event log:
- InMemoryClaimStore: development and tests
- PostgresClaimStore: durable, shared between instances

Append-only, like the narrative store: no update, no delete, and the
Postgres schema refuses both with a trigger.

Queries filter by claim id, claim kind, subject and event type, and
return events in the order they occurred.
"""

import json
import time
from abc import ABC, abstractmethod
from itertools import count
from threading import Lock
from typing import Any, Callable, Optional
from uuid import uuid4

from ..schemas import AnchorType, ClaimEvent, ClaimEventType, ClaimKind


class ClaimStoreError(Exception):
    """The claim event log could not be written or read."""
    pass


def _new_event_id(sequence: Optional[int] = None) -> str:
    millis = int(time.time() * 1000)
    suffix = f"{sequence:06d}" if sequence is not None else uuid4().hex[:8]
    return f"CE-{millis}-{suffix}"


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class ClaimStore(ABC):
    """
    Append-only storage for claim events.

    Implementations must ensure:
    1. append() never overwrites an existing event
    2. query results are ordered by occurred_at, then append order
    """

    @abstractmethod
    def append(self, event: ClaimEvent) -> ClaimEvent:
        """
        Append an event.

        Returns:
            The stored event, with its id assigned

        Raises:
            ClaimStoreError: If the write fails
        """
        pass

    @abstractmethod
    def get(self, event_id: str) -> Optional[ClaimEvent]:
        pass

    @abstractmethod
    def query(
        self,
        claim_id: Optional[str] = None,
        kind: Optional[ClaimKind] = None,
        subject: Optional[str] = None,
        event_type: Optional[ClaimEventType] = None,
    ) -> list[ClaimEvent]:
        """Events matching every given filter."""
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    def list_for_claim(self, claim_id: str) -> list[ClaimEvent]:
        return self.query(claim_id=claim_id)

    def list_by_kind(self, kind: ClaimKind) -> list[ClaimEvent]:
        return self.query(kind=kind)

    def list_for_subject(self, subject: str) -> list[ClaimEvent]:
        return self.query(subject=subject)

    def list_by_type(self, event_type: ClaimEventType) -> list[ClaimEvent]:
        return self.query(event_type=event_type)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryClaimStore(ClaimStore):
    """
    In-memory claim event store.

    Suitable for development and tests. NOT suitable for production
    (no durability, no sharing between instances).
    """

    def __init__(self):
        self._events: list[ClaimEvent] = []
        self._by_id: dict[str, ClaimEvent] = {}
        self._sequence = count(1)
        self._lock = Lock()

    def append(self, event: ClaimEvent) -> ClaimEvent:
        with self._lock:
            stored = event.model_copy(update={"id": _new_event_id(next(self._sequence))}, deep=True)
            self._events.append(stored)
            self._by_id[stored.id] = stored
            return stored

    def get(self, event_id: str) -> Optional[ClaimEvent]:
        return self._by_id.get(event_id)

    def query(
        self,
        claim_id: Optional[str] = None,
        kind: Optional[ClaimKind] = None,
        subject: Optional[str] = None,
        event_type: Optional[ClaimEventType] = None,
    ) -> list[ClaimEvent]:
        with self._lock:
            events = list(self._events)
        matched = [
            e for e in events
            if (claim_id is None or e.claim_id == claim_id)
            and (kind is None or e.kind == kind)
            and (subject is None or e.subject == subject)
            and (event_type is None or e.event_type == event_type)
        ]
        return sorted(matched, key=lambda e: e.occurred_at)

    def count(self) -> int:
        return len(self._events)


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS claim_events (
    seq          BIGSERIAL PRIMARY KEY,
    id           TEXT NOT NULL UNIQUE,
    event_type   TEXT NOT NULL,
    claim_id     TEXT NOT NULL,
    kind         TEXT NOT NULL,
    subject      TEXT NOT NULL,
    amount       NUMERIC(39, 0) NOT NULL CHECK (amount >= 0),
    anchor_type  TEXT,
    transfer_id  TEXT,
    reason       TEXT,
    metadata     JSONB NOT NULL DEFAULT '{}'::jsonb,
    occurred_at  TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS claim_events_claim_idx ON claim_events (claim_id);
CREATE INDEX IF NOT EXISTS claim_events_subject_idx ON claim_events (subject);
CREATE INDEX IF NOT EXISTS claim_events_kind_idx ON claim_events (kind);

CREATE OR REPLACE FUNCTION claim_events_append_only() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'claim event log is append-only';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS claim_events_append_only ON claim_events;
CREATE TRIGGER claim_events_append_only
    BEFORE UPDATE OR DELETE ON claim_events
    FOR EACH ROW EXECUTE FUNCTION claim_events_append_only();
"""

_EVENT_COLUMNS = (
    "id, event_type, claim_id, kind, subject, amount, anchor_type, "
    "transfer_id, reason, metadata, occurred_at"
)


class PostgresClaimStore(ClaimStore):
    """
    PostgreSQL claim event store.

    Usage:
        store = PostgresClaimStore(lambda: psycopg2.connect(dsn))
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
            raise ClaimStoreError(f"Could not connect to claim event database: {e}") from e

    def ensure_schema(self) -> None:
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                cursor.execute(SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    def append(self, event: ClaimEvent) -> ClaimEvent:
        conn = self._connect()
        try:
            event_id = _new_event_id()
            with conn.cursor() as cursor:
                cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
                cursor.execute(
                    f"""
                    INSERT INTO claim_events ({_EVENT_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s)
                    """,
                    (
                        event_id,
                        event.event_type.value,
                        event.claim_id,
                        event.kind.value,
                        event.subject,
                        event.amount,
                        event.anchor_type.value if event.anchor_type else None,
                        event.transfer_id,
                        event.reason,
                        json.dumps(event.metadata, default=str),
                        event.occurred_at,
                    ),
                )
            conn.commit()
            return event.model_copy(update={"id": event_id})
        except Exception as e:
            conn.rollback()
            raise ClaimStoreError(f"Claim event append failed: {e}") from e
        finally:
            conn.close()

    def _select(self, where: str = "", params: tuple = ()) -> list[ClaimEvent]:
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                cursor.execute(
                    f"SELECT {_EVENT_COLUMNS} FROM claim_events {where} ORDER BY occurred_at, seq",
                    params,
                )
                rows = cursor.fetchall()
            return [
                ClaimEvent(
                    id=row[0],
                    event_type=ClaimEventType(row[1]),
                    claim_id=row[2],
                    kind=ClaimKind(row[3]),
                    subject=row[4],
                    amount=int(row[5]),
                    anchor_type=AnchorType(row[6]) if row[6] else None,
                    transfer_id=row[7],
                    reason=row[8],
                    metadata=row[9] if isinstance(row[9], dict) else json.loads(row[9] or "{}"),
                    occurred_at=row[10],
                )
                for row in rows
            ]
        finally:
            conn.close()

    def get(self, event_id: str) -> Optional[ClaimEvent]:
        found = self._select("WHERE id = %s", (event_id,))
        return found[0] if found else None

    def query(
        self,
        claim_id: Optional[str] = None,
        kind: Optional[ClaimKind] = None,
        subject: Optional[str] = None,
        event_type: Optional[ClaimEventType] = None,
    ) -> list[ClaimEvent]:
        clauses, params = [], []
        for column, value in (
            ("claim_id", claim_id),
            ("kind", kind.value if kind else None),
            ("subject", subject),
            ("event_type", event_type.value if event_type else None),
        ):
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return self._select(where, tuple(params))

    def count(self) -> int:
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                cursor.execute("SELECT COUNT(*) FROM claim_events")
                return cursor.fetchone()[0]
        finally:
            conn.close()

    def ping(self) -> bool:
        try:
            self.count()
        except Exception:
            return False
        return True
