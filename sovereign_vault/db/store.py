"""
Ledger Store Abstraction

This module defines the LedgerStore interface and two implementations:
- InMemoryLedgerStore: For development and testing
- PostgresLedgerStore: For production with durability and row-level locking

Every operation is scoped to a partition (one user's chain). Partitions
never interact, so appends to different partitions run fully in parallel.

The LedgerStore is responsible for:
- The per-partition serialization point for appends and erasure
- Ordering and durability
- Chain head management (single source of truth for sequence/digest)

The Ledger retains responsibility for:
- Input validation and payload canonicalization
- Digest computation
- Chain verification

TRANSACTION CONTRACT:
All append operations MUST use the begin_append() context manager:

    with store.begin_append(partition) as ctx:
        seq, prev = ctx.head.next_sequence, ctx.head.last_digest
        # ... build and hash the entry ...
        ctx.commit(entry)

Leaving the block without commit() rolls back and releases the partition.
"""

import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Generator, Iterator, Optional
from uuid import UUID, uuid4

from ..core.hasher import Hasher
from ..observability import get_logger
from ..schemas import EntryKind, LedgerEntry

logger = get_logger(__name__)


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(Exception):
    """Base exception for ledger store errors."""
    pass


class ConcurrencyError(StoreError):
    """Raised when the chain head moved under an open append."""
    pass


class ChainIntegrityError(StoreError):
    """Raised when an entry would not extend the chain correctly."""
    pass


class LockTimeoutError(StoreError):
    """Raised when the partition lock could not be acquired in time."""
    pass


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class ChainHead:
    """
    Current state of a partition's chain head.

    This is what gets locked during atomic append.
    """
    last_sequence: int  # -1 means empty partition
    last_digest: Optional[str]  # None means empty partition

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

    Holds the partition lock (or database transaction) for its lifetime,
    so commit/rollback always happen on whatever acquired it.
    """
    partition: str
    head: ChainHead
    _store: "LedgerStore"
    _conn: Any = field(default=None)
    _cursor: Any = field(default=None)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    def commit(self, entry: LedgerEntry) -> LedgerEntry:
        """Persist the entry and release the partition."""
        if self._committed:
            raise StoreError("Transaction already committed")
        if self._rolled_back:
            raise StoreError("Transaction already rolled back")
        if entry.partition != self.partition:
            raise ChainIntegrityError(
                f"Entry belongs to partition {entry.partition!r}, "
                f"transaction is for {self.partition!r}"
            )

        result = self._store._do_commit(self, entry)
        self._committed = True
        return result

    def rollback(self) -> None:
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


def check_extends_head(head: ChainHead, entry: LedgerEntry) -> None:
    """
    Validate that entry is the exact successor of head.

    Raises:
        ConcurrencyError: sequence or predecessor does not match the head
        ChainIntegrityError: the stored digest is not reproducible
    """
    if entry.sequence_index != head.next_sequence:
        raise ConcurrencyError(
            f"Sequence mismatch: expected {head.next_sequence}, "
            f"got {entry.sequence_index}"
        )

    if entry.previous_digest != head.last_digest:
        raise ConcurrencyError(
            f"Previous digest mismatch: expected {head.last_digest}, "
            f"got {entry.previous_digest}"
        )

    computed = Hasher.digest(entry.digest_input(entry.previous_digest))
    if computed != entry.payload_digest:
        raise ChainIntegrityError(
            f"Digest verification failed: computed {computed[:16]}..., "
            f"claimed {entry.payload_digest[:16]}..."
        )


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LedgerStore(ABC):
    """
    Abstract base class for partitioned ledger storage.

    Implementations must ensure, per partition:
    1. Appends are mutually exclusive (and exclusive with erasure)
    2. No gaps and no duplicates in sequence indexes
    3. Every committed entry extends the current head
    """

    @contextmanager
    @abstractmethod
    def begin_append(self, partition: str) -> Generator[AppendContext, None, None]:
        """
        Begin an atomic append on one partition.

        Yields:
            AppendContext with the locked head and a commit method
        """
        pass

    @abstractmethod
    def _do_commit(self, ctx: AppendContext, entry: LedgerEntry) -> LedgerEntry:
        """Internal: commit within current transaction. Use ctx.commit() instead."""
        pass

    @abstractmethod
    def _do_rollback(self, ctx: AppendContext) -> None:
        """Internal: rollback current transaction. Use ctx.rollback() instead."""
        pass

    @abstractmethod
    def get_head(self, partition: str) -> ChainHead:
        """Current head without locking. Use for read-only operations."""
        pass

    @abstractmethod
    def scan(
        self,
        partition: str,
        upto: Optional[int] = None,
        descending: bool = False,
    ) -> Iterator[LedgerEntry]:
        """
        Range scan by sequence index.

        Args:
            partition: Partition key
            upto: Highest sequence index to include. Callers pass the head
                  they observed so the scan never sees later appends.
            descending: Yield newest first

        Yields:
            Entries ordered by sequence_index
        """
        pass

    @abstractmethod
    def count(self, partition: str) -> int:
        """Number of entries stored for the partition."""
        pass

    @abstractmethod
    def erase_partition(
        self,
        partition: str,
        hook: Optional[Callable[[], None]] = None,
    ) -> int:
        """
        Delete every entry of the partition and reset its head.

        Runs under the same exclusion as begin_append. hook, if given, runs
        inside that exclusion before the entries are removed; if it raises,
        nothing is erased.

        Returns:
            Number of entries removed
        """
        pass

    @abstractmethod
    def partitions(self) -> list[str]:
        """Partition keys that currently hold at least one entry."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class _Partition:
    """One partition's chain plus its serialization point."""

    def __init__(self):
        self.entries: list[LedgerEntry] = []
        self.head = ChainHead(last_sequence=-1, last_digest=None)
        self.lock = Lock()


class InMemoryLedgerStore(LedgerStore):
    """
    In-memory implementation of LedgerStore.

    Suitable for development, tests and single-process deployments
    without persistence requirements.
    """

    def __init__(self, lock_timeout: Optional[float] = None):
        """
        Args:
            lock_timeout: Seconds to wait for a partition lock. None waits forever.
        """
        self._partitions: dict[str, _Partition] = {}
        self._registry_lock = Lock()
        self._lock_timeout = lock_timeout

    def _partition(self, partition: str) -> _Partition:
        with self._registry_lock:
            p = self._partitions.get(partition)
            if p is None:
                p = _Partition()
                self._partitions[partition] = p
            return p

    def _acquire(self, p: _Partition) -> None:
        timeout = -1 if self._lock_timeout is None else self._lock_timeout
        if not p.lock.acquire(timeout=timeout):
            raise LockTimeoutError("Partition busy - could not acquire lock. Try again.")

    @contextmanager
    def begin_append(self, partition: str) -> Generator[AppendContext, None, None]:
        """Begin atomic append holding the partition lock."""
        p = self._partition(partition)
        self._acquire(p)

        head = ChainHead(
            last_sequence=p.head.last_sequence,
            last_digest=p.head.last_digest,
        )
        ctx = AppendContext(partition=partition, head=head, _store=self, _conn=p)

        try:
            yield ctx
        finally:
            if not ctx._committed and not ctx._rolled_back:
                ctx.rollback()

    def _do_commit(self, ctx: AppendContext, entry: LedgerEntry) -> LedgerEntry:
        p = ctx._conn
        if not isinstance(p, _Partition):
            raise StoreError("_do_commit called outside transaction")

        try:
            check_extends_head(p.head, entry)

            p.entries.append(entry)
            p.head = ChainHead(
                last_sequence=entry.sequence_index,
                last_digest=entry.payload_digest,
            )
            return entry
        finally:
            ctx._conn = None
            p.lock.release()

    def _do_rollback(self, ctx: AppendContext) -> None:
        p = ctx._conn
        if isinstance(p, _Partition):
            ctx._conn = None
            p.lock.release()

    def get_head(self, partition: str) -> ChainHead:
        p = self._partition(partition)
        head = p.head
        return ChainHead(last_sequence=head.last_sequence, last_digest=head.last_digest)

    def scan(
        self,
        partition: str,
        upto: Optional[int] = None,
        descending: bool = False,
    ) -> Iterator[LedgerEntry]:
        p = self._partition(partition)
        bound = p.head.last_sequence if upto is None else upto
        # Shallow copy of the prefix: later appends and erasure don't leak in
        snapshot = p.entries[: bound + 1] if bound >= 0 else []
        if descending:
            snapshot.reverse()
        return iter(snapshot)

    def count(self, partition: str) -> int:
        return len(self._partition(partition).entries)

    def erase_partition(
        self,
        partition: str,
        hook: Optional[Callable[[], None]] = None,
    ) -> int:
        p = self._partition(partition)
        self._acquire(p)
        try:
            if hook is not None:
                hook()
            removed = len(p.entries)
            p.entries = []
            p.head = ChainHead(last_sequence=-1, last_digest=None)
            return removed
        finally:
            p.lock.release()

    def partitions(self) -> list[str]:
        with self._registry_lock:
            return sorted(k for k, p in self._partitions.items() if p.entries)

    def _overwrite(self, partition: str, entries: list[LedgerEntry]) -> None:
        """Replace stored entries bypassing every check (for testing only)."""
        p = self._partition(partition)
        with p.lock:
            p.entries = list(entries)
            if entries:
                last = entries[-1]
                p.head = ChainHead(last_sequence=last.sequence_index, last_digest=last.payload_digest)
            else:
                p.head = ChainHead(last_sequence=-1, last_digest=None)


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ledger_heads (
    partition       TEXT PRIMARY KEY,
    last_sequence   INTEGER NOT NULL DEFAULT -1,
    last_digest     TEXT
);

CREATE TABLE IF NOT EXISTS ledger_entries (
    partition        TEXT NOT NULL,
    sequence_index   INTEGER NOT NULL CHECK (sequence_index >= 0),
    entry_id         UUID NOT NULL UNIQUE,
    kind             TEXT NOT NULL,
    reference_id     TEXT NOT NULL,
    payload_json     JSONB NOT NULL,
    payload_canon    TEXT NOT NULL,
    canon_version    INTEGER NOT NULL,
    previous_digest  TEXT,
    payload_digest   TEXT NOT NULL,
    created_at       TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (partition, sequence_index)
);

CREATE INDEX IF NOT EXISTS ledger_entries_reference_idx
    ON ledger_entries (partition, reference_id);

-- Domain records; retention deletes rows here, never in ledger_entries
CREATE TABLE IF NOT EXISTS vault_records (
    partition    TEXT NOT NULL,
    kind         TEXT NOT NULL,
    record_id    TEXT NOT NULL,
    recorded_at  TIMESTAMPTZ NOT NULL,
    body         JSONB NOT NULL,
    PRIMARY KEY (partition, kind, record_id)
);

CREATE INDEX IF NOT EXISTS vault_records_recorded_idx
    ON vault_records (partition, kind, recorded_at DESC);

CREATE TABLE IF NOT EXISTS vault_settings (
    partition   TEXT PRIMARY KEY,
    body        JSONB NOT NULL,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

_ENTRY_COLUMNS = """
    entry_id, partition, sequence_index, kind, reference_id,
    payload_json, previous_digest, payload_digest, created_at
"""


def create_schema(conn) -> None:
    """Create the ledger and record tables if they do not exist."""
    cursor = conn.cursor()
    try:
        cursor.execute(SCHEMA_SQL)
        conn.commit()
    finally:
        cursor.close()


class PostgresLedgerStore(LedgerStore):
    """
    PostgreSQL implementation of LedgerStore.

    Provides:
    - Per-partition serialization via FOR UPDATE on the partition's head row
    - Durability and multi-instance support (shared database)
    - Lock/statement timeouts to prevent hanging
    - Streaming scans through server-side cursors

    All transaction state lives in the AppendContext, so one store
    instance can be shared across threads.
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000
    SCAN_BATCH_SIZE = 500

    # psycopg2 error codes for lock/statement timeout
    PGCODE_LOCK_NOT_AVAILABLE = "55P03"
    PGCODE_QUERY_CANCELED = "57014"

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for the head row lock.
            statement_timeout_ms: Max statement execution time.
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    def _open_locked(self, partition: str):
        """Open a transaction holding the partition's head row. Returns (conn, cursor, head)."""
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()

        try:
            cursor.execute(f"SET LOCAL lock_timeout = '{int(self._lock_timeout_ms)}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{int(self._statement_timeout_ms)}ms'")

            cursor.execute(
                """
                INSERT INTO ledger_heads (partition, last_sequence, last_digest)
                VALUES (%s, -1, NULL)
                ON CONFLICT (partition) DO NOTHING
                """,
                (partition,),
            )
            try:
                cursor.execute(
                    """
                    SELECT last_sequence, last_digest
                    FROM ledger_heads
                    WHERE partition = %s
                    FOR UPDATE
                    """,
                    (partition,),
                )
            except Exception as e:
                kind = self._timeout_kind(e)
                if kind == "lock":
                    raise LockTimeoutError(
                        "Partition busy - could not acquire lock. Try again."
                    ) from e
                if kind == "statement":
                    raise StoreError("Query timed out - statement took too long.") from e
                raise

            row = cursor.fetchone()
            head = ChainHead(last_sequence=row[0], last_digest=row[1])
            return conn, cursor, head
        except Exception:
            self._close(conn, cursor, rollback=True)
            raise

    @staticmethod
    def _close(conn, cursor, rollback: bool) -> None:
        try:
            if rollback:
                try:
                    conn.rollback()
                except Exception as e:
                    # Connection might be broken; closing it discards the transaction
                    logger.warning("Rollback failed", error=str(e), error_type=type(e).__name__)
            cursor.close()
        finally:
            conn.close()

    @contextmanager
    def begin_append(self, partition: str) -> Generator[AppendContext, None, None]:
        """Begin atomic append with FOR UPDATE on the partition head."""
        conn, cursor, head = self._open_locked(partition)
        ctx = AppendContext(partition=partition, head=head, _store=self, _conn=conn, _cursor=cursor)

        try:
            yield ctx
        finally:
            self._close(conn, cursor, rollback=not ctx._committed)

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Classify a PostgreSQL exception as "lock", "statement", "timeout" or None.

        57014 (query_canceled) covers both lock_timeout and statement_timeout,
        so the message decides between them.
        """
        pgcode = getattr(e, "pgcode", None)
        err_msg = (getattr(e, "pgerror", None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"

        if pgcode == self.PGCODE_QUERY_CANCELED:
            if "lock timeout" in err_msg or "lock_timeout" in err_msg:
                return "lock"
            if "statement timeout" in err_msg or "statement_timeout" in err_msg:
                return "statement"
            return "timeout"

        if "lock" in err_msg and "timeout" in err_msg:
            return "lock"
        if "statement" in err_msg and "timeout" in err_msg:
            return "statement"

        return None

    def _do_commit(self, ctx: AppendContext, entry: LedgerEntry) -> LedgerEntry:
        if ctx._cursor is None or ctx._conn is None:
            raise StoreError("_do_commit called outside begin_append context")

        cursor = ctx._cursor
        conn = ctx._conn

        # Head row is locked; ctx.head is still authoritative
        check_extends_head(ctx.head, entry)

        cursor.execute(
            """
            INSERT INTO ledger_entries (
                entry_id, partition, sequence_index, kind, reference_id,
                payload_json, payload_canon, canon_version,
                previous_digest, payload_digest, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s)
            """,
            (
                str(entry.id),
                entry.partition,
                entry.sequence_index,
                entry.kind.value,
                entry.reference_id,
                json.dumps(entry.payload),
                Hasher.canonicalize(entry.payload),
                Hasher.SERIALIZATION_VERSION,
                entry.previous_digest,
                entry.payload_digest,
                entry.created_at,
            ),
        )

        cursor.execute(
            """
            UPDATE ledger_heads
            SET last_sequence = %s, last_digest = %s
            WHERE partition = %s
            """,
            (entry.sequence_index, entry.payload_digest, entry.partition),
        )

        conn.commit()
        return entry

    def _do_rollback(self, ctx: AppendContext) -> None:
        if ctx._conn is not None:
            try:
                ctx._conn.rollback()
            except Exception as e:
                logger.warning(
                    "Rollback failed",
                    partition=ctx.partition,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    def get_head(self, partition: str) -> ChainHead:
        conn = self._connection_factory()
        cursor = conn.cursor()

        try:
            cursor.execute(
                "SELECT last_sequence, last_digest FROM ledger_heads WHERE partition = %s",
                (partition,),
            )
            row = cursor.fetchone()
            if row is None:
                return ChainHead(last_sequence=-1, last_digest=None)
            return ChainHead(last_sequence=row[0], last_digest=row[1])
        finally:
            cursor.close()
            conn.close()

    def scan(
        self,
        partition: str,
        upto: Optional[int] = None,
        descending: bool = False,
    ) -> Iterator[LedgerEntry]:
        if upto is None:
            upto = self.get_head(partition).last_sequence
        return self._stream(partition, upto, descending)

    def _stream(self, partition: str, upto: int, descending: bool) -> Iterator[LedgerEntry]:
        conn = self._connection_factory()
        # Named cursor: rows are fetched from the server in batches
        cursor = conn.cursor(name=f"ledger_scan_{uuid4().hex}")
        cursor.itersize = self.SCAN_BATCH_SIZE
        order = "DESC" if descending else "ASC"

        try:
            cursor.execute(
                f"""
                SELECT {_ENTRY_COLUMNS}
                FROM ledger_entries
                WHERE partition = %s AND sequence_index <= %s
                ORDER BY sequence_index {order}
                """,
                (partition, upto),
            )
            for row in cursor:
                yield self._row_to_entry(row)
        finally:
            cursor.close()
            conn.close()

    def count(self, partition: str) -> int:
        conn = self._connection_factory()
        cursor = conn.cursor()

        try:
            cursor.execute("SELECT COUNT(*) FROM ledger_entries WHERE partition = %s", (partition,))
            return cursor.fetchone()[0]
        finally:
            cursor.close()
            conn.close()

    def erase_partition(
        self,
        partition: str,
        hook: Optional[Callable[[], None]] = None,
    ) -> int:
        conn, cursor, _head = self._open_locked(partition)
        committed = False

        try:
            if hook is not None:
                hook()
            cursor.execute("DELETE FROM ledger_entries WHERE partition = %s", (partition,))
            removed = cursor.rowcount
            cursor.execute(
                """
                UPDATE ledger_heads
                SET last_sequence = -1, last_digest = NULL
                WHERE partition = %s
                """,
                (partition,),
            )
            conn.commit()
            committed = True
            return removed
        finally:
            self._close(conn, cursor, rollback=not committed)

    def partitions(self) -> list[str]:
        conn = self._connection_factory()
        cursor = conn.cursor()

        try:
            cursor.execute(
                "SELECT partition FROM ledger_heads WHERE last_sequence >= 0 ORDER BY partition"
            )
            return [row[0] for row in cursor.fetchall()]
        finally:
            cursor.close()
            conn.close()

    def _row_to_entry(self, row: tuple) -> LedgerEntry:
        payload = row[5]
        if isinstance(payload, str):
            payload = json.loads(payload)

        return LedgerEntry(
            id=row[0] if isinstance(row[0], UUID) else UUID(str(row[0])),
            partition=row[1],
            sequence_index=row[2],
            kind=EntryKind(row[3]),
            reference_id=row[4],
            payload=payload,
            previous_digest=row[6],
            payload_digest=row[7],
            created_at=row[8],
        )
