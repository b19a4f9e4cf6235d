"""
Storage Layer for the Sovereign Vault

Provides:
- LedgerStore abstraction (InMemory for dev, Postgres for prod)
- RecordStore for the domain records the ledger points at
- Environment-based configuration
"""

from .store import (
    LedgerStore,
    InMemoryLedgerStore,
    PostgresLedgerStore,
    ChainHead,
    AppendContext,
    StoreError,
    ConcurrencyError,
    ChainIntegrityError,
    LockTimeoutError,
    create_schema,
)
from .records import RecordStore, InMemoryRecordStore, PostgresRecordStore, RecordStoreError
from .config import (
    DatabaseConfig,
    StoreDriver,
    VaultSettings,
    get_database_url,
    get_store_driver,
)

__all__ = [
    "LedgerStore",
    "InMemoryLedgerStore",
    "PostgresLedgerStore",
    "ChainHead",
    "AppendContext",
    "StoreError",
    "ConcurrencyError",
    "ChainIntegrityError",
    "LockTimeoutError",
    "create_schema",
    "RecordStore",
    "InMemoryRecordStore",
    "PostgresRecordStore",
    "RecordStoreError",
    "DatabaseConfig",
    "StoreDriver",
    "VaultSettings",
    "get_database_url",
    "get_store_driver",
]
