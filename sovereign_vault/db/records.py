"""
Record Store

Holds the domain records (states, risk events, sessions, patterns) that
ledger entries point at, plus each partition's settings. The ledger never
owns these: records may be deleted by retention while their ledger
entries live on.

Implementations:
- InMemoryRecordStore: For development and testing
- PostgresRecordStore: Durable, shares the ledger's database
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from threading import RLock
from typing import Any, Callable, Generator, Optional

from pydantic import BaseModel

from ..observability import get_logger
from ..schemas import RECORD_MODELS, AnalyticsPattern, EntryKind, PartitionSettings

logger = get_logger(__name__)

# Stored alongside the ledgered kinds in the same table
PATTERN_KIND = "pattern"


class RecordStoreError(Exception):
    """Base exception for record store errors."""
    pass


class RecordStore(ABC):
    """Partition-scoped storage for domain records, keyed by (kind, id)."""

    @abstractmethod
    def add(self, partition: str, kind: EntryKind, record: BaseModel) -> BaseModel:
        """Persist a record. Raises RecordStoreError if it cannot be stored."""
        pass

    @abstractmethod
    def find_by_id(
        self, partition: str, kind: EntryKind, reference_id: str
    ) -> Optional[BaseModel]:
        """Return the record, or None when it does not (or no longer) exists."""
        pass

    @abstractmethod
    def list(
        self,
        partition: str,
        kind: EntryKind,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> list[BaseModel]:
        """Records of one kind recorded at or after since, newest first."""
        pass

    @abstractmethod
    def delete(self, partition: str, kind: EntryKind, reference_id: str) -> bool:
        pass

    @abstractmethod
    def add_pattern(self, partition: str, pattern: AnalyticsPattern) -> AnalyticsPattern:
        pass

    @abstractmethod
    def list_patterns(
        self,
        partition: str,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> list[AnalyticsPattern]:
        """Detected patterns, newest first."""
        pass

    @abstractmethod
    def purge_older_than(self, partition: str, cutoff: datetime) -> int:
        """
        Delete every record (patterns included) recorded before cutoff.

        Returns:
            Number of records deleted
        """
        pass

    @abstractmethod
    def erase_partition(self, partition: str) -> int:
        """Delete every record and the settings of the partition. Returns the number of records deleted."""
        pass

    @abstractmethod
    def get_settings(self, partition: str) -> Optional[PartitionSettings]:
        """The partition's saved settings, or None if it never saved any."""
        pass

    @abstractmethod
    def put_settings(self, partition: str, settings: PartitionSettings) -> PartitionSettings:
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

def _newest_first(items: list, limit: Optional[int], since: Optional[datetime]) -> list:
    if since is not None:
        items = [i for i in items if i.recorded_at >= since]
    items.sort(key=lambda i: i.recorded_at, reverse=True)
    return items if limit is None else items[:limit]


class InMemoryRecordStore(RecordStore):
    """Thread-safe dict-backed RecordStore."""

    def __init__(self):
        # partition -> kind -> id -> record
        self._records: dict[str, dict[EntryKind, dict[str, BaseModel]]] = {}
        self._patterns: dict[str, dict[str, AnalyticsPattern]] = {}
        self._settings: dict[str, PartitionSettings] = {}
        self._lock = RLock()

    def _bucket(self, partition: str, kind: EntryKind) -> dict[str, BaseModel]:
        return self._records.setdefault(partition, {}).setdefault(EntryKind(kind), {})

    def add(self, partition: str, kind: EntryKind, record: BaseModel) -> BaseModel:
        record_id = getattr(record, "id", None)
        if not record_id:
            raise RecordStoreError("Record has no id")

        with self._lock:
            bucket = self._bucket(partition, kind)
            if record_id in bucket:
                raise RecordStoreError(f"Duplicate {EntryKind(kind).value} record {record_id}")
            bucket[record_id] = record
        return record

    def find_by_id(
        self, partition: str, kind: EntryKind, reference_id: str
    ) -> Optional[BaseModel]:
        with self._lock:
            return self._records.get(partition, {}).get(EntryKind(kind), {}).get(reference_id)

    def list(
        self,
        partition: str,
        kind: EntryKind,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> list[BaseModel]:
        with self._lock:
            records = list(self._records.get(partition, {}).get(EntryKind(kind), {}).values())
        return _newest_first(records, limit, since)

    def delete(self, partition: str, kind: EntryKind, reference_id: str) -> bool:
        with self._lock:
            bucket = self._records.get(partition, {}).get(EntryKind(kind), {})
            return bucket.pop(reference_id, None) is not None

    def add_pattern(self, partition: str, pattern: AnalyticsPattern) -> AnalyticsPattern:
        with self._lock:
            self._patterns.setdefault(partition, {})[pattern.id] = pattern
        return pattern

    def list_patterns(
        self,
        partition: str,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> list[AnalyticsPattern]:
        with self._lock:
            patterns = list(self._patterns.get(partition, {}).values())
        return _newest_first(patterns, limit, since)

    def purge_older_than(self, partition: str, cutoff: datetime) -> int:
        deleted = 0
        with self._lock:
            for bucket in self._records.get(partition, {}).values():
                expired = [rid for rid, r in bucket.items() if r.recorded_at < cutoff]
                for rid in expired:
                    del bucket[rid]
                deleted += len(expired)

            patterns = self._patterns.get(partition, {})
            expired = [pid for pid, p in patterns.items() if p.detected_at < cutoff]
            for pid in expired:
                del patterns[pid]
            deleted += len(expired)
        return deleted

    def erase_partition(self, partition: str) -> int:
        with self._lock:
            records = self._records.pop(partition, {})
            patterns = self._patterns.pop(partition, {})
            self._settings.pop(partition, None)
        return sum(len(bucket) for bucket in records.values()) + len(patterns)

    def get_settings(self, partition: str) -> Optional[PartitionSettings]:
        with self._lock:
            return self._settings.get(partition)

    def put_settings(self, partition: str, settings: PartitionSettings) -> PartitionSettings:
        with self._lock:
            self._settings[partition] = settings
        return settings


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

class PostgresRecordStore(RecordStore):
    """
    PostgreSQL implementation of RecordStore.

    Records are kept as JSONB bodies in vault_records, one row per
    (partition, kind, id); patterns use the kind "pattern". The tables are
    created by db.store.create_schema together with the ledger tables.
    """

    def __init__(self, connection_factory: Callable[[], Any]):
        """
        Args:
            connection_factory: Callable that returns a psycopg2 connection.
        """
        self._connection_factory = connection_factory

    @contextmanager
    def _transaction(self) -> Generator[Any, None, None]:
        """Yield a cursor; commit on success, roll back on error."""
        conn = self._connection_factory()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()
            conn.close()

    @staticmethod
    def _body(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            return json.loads(value)
        return value

    def _insert(
        self,
        partition: str,
        kind: str,
        record_id: str,
        recorded_at: datetime,
        record: BaseModel,
    ) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO vault_records (partition, kind, record_id, recorded_at, body)
                VALUES (%s, %s, %s, %s, %s::jsonb)
                ON CONFLICT (partition, kind, record_id) DO NOTHING
                """,
                (partition, kind, record_id, recorded_at, record.model_dump_json()),
            )
            if cursor.rowcount == 0:
                raise RecordStoreError(f"Duplicate {kind} record {record_id}")

    def _select(
        self,
        partition: str,
        kind: str,
        limit: Optional[int],
        since: Optional[datetime],
    ) -> list[dict[str, Any]]:
        clauses = ["partition = %s", "kind = %s"]
        params: list[Any] = [partition, kind]
        if since is not None:
            clauses.append("recorded_at >= %s")
            params.append(since)

        where = " AND ".join(clauses)
        sql = f"""
            SELECT body FROM vault_records
            WHERE {where}
            ORDER BY recorded_at DESC
        """
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)

        with self._transaction() as cursor:
            cursor.execute(sql, tuple(params))
            return [self._body(row[0]) for row in cursor.fetchall()]

    def add(self, partition: str, kind: EntryKind, record: BaseModel) -> BaseModel:
        record_id = getattr(record, "id", None)
        if not record_id:
            raise RecordStoreError("Record has no id")
        self._insert(partition, EntryKind(kind).value, record_id, record.recorded_at, record)
        return record

    def find_by_id(
        self, partition: str, kind: EntryKind, reference_id: str
    ) -> Optional[BaseModel]:
        kind = EntryKind(kind)
        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT body FROM vault_records
                WHERE partition = %s AND kind = %s AND record_id = %s
                """,
                (partition, kind.value, reference_id),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return RECORD_MODELS[kind].model_validate(self._body(row[0]))

    def list(
        self,
        partition: str,
        kind: EntryKind,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> list[BaseModel]:
        kind = EntryKind(kind)
        model = RECORD_MODELS[kind]
        return [model.model_validate(b) for b in self._select(partition, kind.value, limit, since)]

    def delete(self, partition: str, kind: EntryKind, reference_id: str) -> bool:
        with self._transaction() as cursor:
            cursor.execute(
                "DELETE FROM vault_records WHERE partition = %s AND kind = %s AND record_id = %s",
                (partition, EntryKind(kind).value, reference_id),
            )
            return cursor.rowcount > 0

    def add_pattern(self, partition: str, pattern: AnalyticsPattern) -> AnalyticsPattern:
        self._insert(partition, PATTERN_KIND, pattern.id, pattern.detected_at, pattern)
        return pattern

    def list_patterns(
        self,
        partition: str,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> list[AnalyticsPattern]:
        return [
            AnalyticsPattern.model_validate(b)
            for b in self._select(partition, PATTERN_KIND, limit, since)
        ]

    def purge_older_than(self, partition: str, cutoff: datetime) -> int:
        with self._transaction() as cursor:
            cursor.execute(
                "DELETE FROM vault_records WHERE partition = %s AND recorded_at < %s",
                (partition, cutoff),
            )
            return cursor.rowcount

    def erase_partition(self, partition: str) -> int:
        with self._transaction() as cursor:
            cursor.execute("DELETE FROM vault_records WHERE partition = %s", (partition,))
            removed = cursor.rowcount
            cursor.execute("DELETE FROM vault_settings WHERE partition = %s", (partition,))
        logger.info("Partition records erased", partition=partition, records=removed)
        return removed

    def get_settings(self, partition: str) -> Optional[PartitionSettings]:
        with self._transaction() as cursor:
            cursor.execute("SELECT body FROM vault_settings WHERE partition = %s", (partition,))
            row = cursor.fetchone()
        if row is None:
            return None
        return PartitionSettings.model_validate(self._body(row[0]))

    def put_settings(self, partition: str, settings: PartitionSettings) -> PartitionSettings:
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO vault_settings (partition, body)
                VALUES (%s, %s::jsonb)
                ON CONFLICT (partition) DO UPDATE SET body = EXCLUDED.body, updated_at = NOW()
                """,
                (partition, settings.model_dump_json()),
            )
        return settings
