"""
Event Store Abstraction

The EventStore is the durable, append-only log of lifecycle transitions.
Two implementations:
- InMemoryEventStore: development and testing
- PostgresEventStore: durability and multi-process safety (psycopg2)

The EventStore is responsible for:
- Atomic append with sequence number and previous hash assignment
- Ordering and durability
- Chain head management (single source of truth for sequence/hash)

The LedgerService keeps responsibility for hashing, signature checks and the
asset state machine.

TRANSACTION CONTRACT:

    with store.begin_append() as ctx:
        seq, prev_hash = ctx.head.next_sequence, ctx.head.last_event_hash
        # ... build and hash the event ...
        ctx.commit(event)

Head reservation and commit always happen on the same connection/transaction.
"""

import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Generator, Optional
from uuid import UUID

from ..core.hasher import Hasher
from ..observability import get_logger
from ..schemas import EventType, LedgerEvent

logger = get_logger(__name__)


# ============================================================
# EXCEPTIONS
# ============================================================

class EventStoreError(Exception):
    """Base exception for event store errors."""
    pass


class ConcurrencyError(EventStoreError):
    """Raised when concurrent append conflicts."""
    pass


class ChainIntegrityError(EventStoreError):
    """Raised when chain integrity validation fails."""
    pass


class LockTimeoutError(EventStoreError):
    """Raised when lock acquisition times out (ledger busy)."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class ChainHead:
    """Current state of the chain head. Locked during atomic append."""
    last_sequence: int  # -1 means empty ledger
    last_event_hash: Optional[str]

    @property
    def next_sequence(self) -> int:
        return self.last_sequence + 1

    @property
    def is_empty(self) -> bool:
        return self.last_sequence == -1


@dataclass
class AppendContext:
    """
    Transaction context for one atomic append.

    Holds the connection/cursor so commit and rollback happen on the
    connection that took the lock. The store instance itself stays stateless
    and can be shared between threads.
    """
    head: ChainHead
    _store: "EventStore"
    _conn: Any = field(default=None)
    _cursor: Any = field(default=None)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    def commit(self, event: LedgerEvent) -> LedgerEvent:
        if self._committed:
            raise EventStoreError("Transaction already committed")
        if self._rolled_back:
            raise EventStoreError("Transaction already rolled back")

        result = self._store._do_commit(self, event)
        self._committed = True
        return result

    def rollback(self) -> None:
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


def _verify_append(head: ChainHead, event: LedgerEvent) -> None:
    """Shared append checks: sequence, linkage and hash."""
    if event.sequence_number != head.next_sequence:
        raise ConcurrencyError(
            f"Sequence mismatch: expected {head.next_sequence}, "
            f"got {event.sequence_number}"
        )

    if head.is_empty:
        if event.previous_event_hash is not None:
            raise ChainIntegrityError("Genesis event must have previous_event_hash=None")
    elif event.previous_event_hash != head.last_event_hash:
        raise ConcurrencyError(
            f"Previous hash mismatch: expected {head.last_event_hash}, "
            f"got {event.previous_event_hash}"
        )

    if not Hasher.verify_event_hash(
        event.chain_body(), event.event_hash, event.previous_event_hash
    ):
        raise ChainIntegrityError(
            f"Hash verification failed for event {event.sequence_number}"
        )


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class EventStore(ABC):
    """
    Abstract base class for event storage.

    Implementations must ensure:
    1. Atomic append via begin_append()
    2. No gaps and no duplicates in sequence numbers
    3. Correct chain linkage
    """

    @contextmanager
    @abstractmethod
    def begin_append(self) -> Generator[AppendContext, None, None]:
        """Lock the chain head and yield an AppendContext. Rolls back on exit unless committed."""

    @abstractmethod
    def _do_commit(self, ctx: AppendContext, event: LedgerEvent) -> LedgerEvent:
        """Internal: use ctx.commit()."""

    @abstractmethod
    def _do_rollback(self, ctx: AppendContext) -> None:
        """Internal: use ctx.rollback()."""

    @abstractmethod
    def list_all(self) -> list[LedgerEvent]:
        """All events ordered by sequence number."""

    @abstractmethod
    def list_for_asset(self, asset_id: int) -> list[LedgerEvent]:
        """Events for one asset ordered by sequence number."""

    @abstractmethod
    def get_head(self) -> ChainHead:
        """Current chain head without locking."""

    @abstractmethod
    def get_event_count(self) -> int:
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryEventStore(EventStore):
    """
    In-memory EventStore.

    Suitable for development, tests and single-process deployments that do
    not need persistence.
    """

    def __init__(self):
        self._events: list[LedgerEvent] = []
        self._head = ChainHead(last_sequence=-1, last_event_hash=None)
        self._lock = Lock()

    @contextmanager
    def begin_append(self) -> Generator[AppendContext, None, None]:
        self._lock.acquire()
        head = ChainHead(
            last_sequence=self._head.last_sequence,
            last_event_hash=self._head.last_event_hash,
        )
        ctx = AppendContext(head=head, _store=self, _conn="in_memory_lock")
        try:
            yield ctx
        finally:
            if not ctx._committed and not ctx._rolled_back:
                ctx.rollback()

    def _do_commit(self, ctx: AppendContext, event: LedgerEvent) -> LedgerEvent:
        if ctx._conn != "in_memory_lock":
            raise EventStoreError("_do_commit called outside transaction")

        try:
            _verify_append(self._head, event)
            self._events.append(event)
            self._head = ChainHead(
                last_sequence=event.sequence_number,
                last_event_hash=event.event_hash,
            )
            return event
        finally:
            ctx._conn = None
            self._lock.release()

    def _do_rollback(self, ctx: AppendContext) -> None:
        if ctx._conn == "in_memory_lock":
            ctx._conn = None
            self._lock.release()

    def list_all(self) -> list[LedgerEvent]:
        return list(self._events)

    def list_for_asset(self, asset_id: int) -> list[LedgerEvent]:
        return [e for e in self._events if e.asset_id == asset_id]

    def get_head(self) -> ChainHead:
        return ChainHead(
            last_sequence=self._head.last_sequence,
            last_event_hash=self._head.last_event_hash,
        )

    def get_event_count(self) -> int:
        return len(self._events)


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ledger_head (
    id BOOLEAN PRIMARY KEY DEFAULT TRUE CHECK (id),
    last_sequence BIGINT NOT NULL,
    last_event_hash CHAR(64)
);

CREATE TABLE IF NOT EXISTS ledger_events (
    event_id UUID PRIMARY KEY,
    sequence_number BIGINT NOT NULL UNIQUE,
    previous_event_hash CHAR(64),
    event_hash CHAR(64) NOT NULL UNIQUE,
    event_type TEXT NOT NULL,
    asset_id BIGINT NOT NULL,
    actor TEXT NOT NULL,
    actor_public_key TEXT NOT NULL,
    actor_signature TEXT NOT NULL,
    transaction_digest CHAR(64) NOT NULL,
    transaction_id TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    payload_json JSONB NOT NULL,
    payload_canon TEXT NOT NULL,
    canon_version INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS ledger_events_asset_idx ON ledger_events (asset_id, sequence_number);
"""

_EVENT_COLUMNS = """
    event_id, sequence_number, previous_event_hash, event_hash, event_type,
    asset_id, actor, actor_public_key, actor_signature, transaction_digest,
    transaction_id, created_at, payload_json
"""


class PostgresEventStore(EventStore):
    """
    PostgreSQL EventStore (psycopg2).

    - Concurrency safety via FOR UPDATE on the single ledger_head row
    - Lock/statement timeouts so a stuck writer cannot hang the service
    - Transaction state lives in AppendContext, so one instance can be shared
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    PGCODE_LOCK_NOT_AVAILABLE = "55P03"
    PGCODE_QUERY_CANCELED = "57014"

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    def ensure_schema(self) -> None:
        conn = self._connection_factory()
        try:
            with conn.cursor() as cursor:
                cursor.execute(SCHEMA_SQL)
                cursor.execute("""
                    INSERT INTO ledger_head (id, last_sequence, last_event_hash)
                    VALUES (TRUE, -1, NULL)
                    ON CONFLICT (id) DO NOTHING
                """)
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def begin_append(self) -> Generator[AppendContext, None, None]:
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()
        ctx = None

        try:
            cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")

            try:
                cursor.execute("""
                    SELECT last_sequence, last_event_hash
                    FROM ledger_head
                    WHERE id = TRUE
                    FOR UPDATE
                """)
            except Exception as e:
                if self._timeout_kind(e) == "lock":
                    raise LockTimeoutError(
                        "Ledger busy - could not acquire lock. Try again."
                    ) from e
                raise

            row = cursor.fetchone()
            if row is None:
                raise EventStoreError("ledger_head row missing - run ensure_schema() first")

            ctx = AppendContext(
                head=ChainHead(last_sequence=row[0], last_event_hash=row[1]),
                _store=self,
                _conn=conn,
                _cursor=cursor,
            )
            yield ctx

        finally:
            if ctx is None or not ctx._committed:
                conn.rollback()
            try:
                cursor.close()
            finally:
                conn.close()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Classify a PostgreSQL error as "lock", "statement" or None.

        57014 (query_canceled) covers both lock_timeout and statement_timeout,
        so the message decides which one it was.
        """
        pgcode = getattr(e, "pgcode", None)
        err_msg = (getattr(e, "pgerror", None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"
        if pgcode == self.PGCODE_QUERY_CANCELED:
            if "lock timeout" in err_msg:
                return "lock"
            return "statement"
        return None

    def _do_commit(self, ctx: AppendContext, event: LedgerEvent) -> LedgerEvent:
        if ctx._cursor is None or ctx._conn is None:
            raise EventStoreError("_do_commit called outside begin_append context")

        from psycopg2.extras import Json

        _verify_append(ctx.head, event)

        cursor = ctx._cursor
        cursor.execute(
            f"INSERT INTO ledger_events ({_EVENT_COLUMNS}, payload_canon, canon_version) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
            (
                str(event.event_id),
                event.sequence_number,
                event.previous_event_hash,
                event.event_hash,
                event.event_type.value,
                event.asset_id,
                event.actor,
                event.actor_public_key,
                event.actor_signature,
                event.transaction_digest,
                event.transaction_id,
                event.created_at,
                Json(event.payload),
                Hasher.canonicalize(event.payload),
                Hasher.SERIALIZATION_VERSION,
            ),
        )
        cursor.execute(
            "UPDATE ledger_head SET last_sequence = %s, last_event_hash = %s WHERE id = TRUE",
            (event.sequence_number, event.event_hash),
        )
        ctx._conn.commit()
        return event

    def _do_rollback(self, ctx: AppendContext) -> None:
        if ctx._conn is not None:
            ctx._conn.rollback()

    def _fetch_events(self, where: str = "", params: tuple = ()) -> list[LedgerEvent]:
        conn = self._connection_factory()
        try:
            with conn.cursor() as cursor:
                cursor.execute(
                    f"SELECT {_EVENT_COLUMNS} FROM ledger_events {where} ORDER BY sequence_number",
                    params,
                )
                return [self._row_to_event(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def list_all(self) -> list[LedgerEvent]:
        return self._fetch_events()

    def list_for_asset(self, asset_id: int) -> list[LedgerEvent]:
        return self._fetch_events("WHERE asset_id = %s", (asset_id,))

    def get_head(self) -> ChainHead:
        conn = self._connection_factory()
        try:
            with conn.cursor() as cursor:
                cursor.execute(
                    "SELECT last_sequence, last_event_hash FROM ledger_head WHERE id = TRUE"
                )
                row = cursor.fetchone()
        finally:
            conn.close()

        if row is None:
            return ChainHead(last_sequence=-1, last_event_hash=None)
        return ChainHead(last_sequence=row[0], last_event_hash=row[1])

    def get_event_count(self) -> int:
        conn = self._connection_factory()
        try:
            with conn.cursor() as cursor:
                cursor.execute("SELECT COUNT(*) FROM ledger_events")
                return cursor.fetchone()[0]
        finally:
            conn.close()

    @staticmethod
    def _row_to_event(row: tuple) -> LedgerEvent:
        payload = row[12]
        if isinstance(payload, str):
            payload = json.loads(payload)

        return LedgerEvent(
            event_id=row[0] if isinstance(row[0], UUID) else UUID(str(row[0])),
            sequence_number=row[1],
            previous_event_hash=row[2],
            event_hash=row[3],
            event_type=EventType(row[4]),
            asset_id=row[5],
            actor=row[6],
            actor_public_key=row[7],
            actor_signature=row[8],
            transaction_digest=row[9],
            transaction_id=row[10],
            created_at=row[11],
            payload=payload,
        )
