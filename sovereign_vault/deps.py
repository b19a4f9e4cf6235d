"""
Service Wiring

Builds the ledger store, record store and VaultService for one process,
and exposes them to routes as FastAPI dependencies.

Mode is determined by environment variables:
- VAULT_STORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: Use in-memory (default for development)

The ledger and the records it points at always live in the same backend,
so a restart never keeps one and loses the other.
"""

from typing import Optional

from fastapi import Request

from .core import Ledger, VaultService
from .db.config import (
    DatabaseConfig,
    StoreDriver,
    VaultSettings,
    get_database_url,
    get_store_driver,
)
from .db.records import InMemoryRecordStore, RecordStore
from .db.store import InMemoryLedgerStore, LedgerStore
from .observability import get_logger

logger = get_logger(__name__)


def create_stores() -> tuple[LedgerStore, RecordStore]:
    """
    Create the ledger store and record store selected by configuration.

    Falls back to in-memory (with a warning) when PostgreSQL is
    configured but cannot be reached.
    """
    driver = get_store_driver()

    if driver == StoreDriver.MEMORY:
        logger.info("Using in-memory stores (no persistence)")
        return InMemoryLedgerStore(), InMemoryRecordStore()

    db_url = get_database_url()
    config = DatabaseConfig.from_url(db_url) if db_url else DatabaseConfig.from_env()
    return _create_psycopg2_stores(config)


def _create_psycopg2_stores(config: DatabaseConfig) -> tuple[LedgerStore, RecordStore]:
    """Create the PostgreSQL stores with psycopg2, creating tables if needed."""
    import psycopg2

    from .db.records import PostgresRecordStore
    from .db.store import PostgresLedgerStore, create_schema

    def connection_factory():
        return psycopg2.connect(config.to_dsn())

    try:
        conn = connection_factory()
        try:
            create_schema(conn)
        finally:
            conn.close()
    except psycopg2.Error as e:
        logger.warning(
            "Could not connect to PostgreSQL, falling back to in-memory stores",
            database=config.to_url(include_password=False),
            error=str(e),
        )
        return InMemoryLedgerStore(), InMemoryRecordStore()

    logger.info(
        "PostgreSQL stores ready",
        database=config.to_url(include_password=False),
    )
    return PostgresLedgerStore(connection_factory), PostgresRecordStore(connection_factory)


def create_vault(
    store: Optional[LedgerStore] = None,
    settings: Optional[VaultSettings] = None,
    record_store: Optional[RecordStore] = None,
) -> VaultService:
    """
    Assemble a VaultService. Unspecified parts come from the environment.

    A ledger store passed without a record store is paired with an
    in-memory record store.
    """
    if store is None:
        store, configured_records = create_stores()
        record_store = record_store or configured_records
    if record_store is None:
        record_store = InMemoryRecordStore()
    if settings is None:
        settings = VaultSettings.from_env()

    return VaultService(
        ledger=Ledger(store),
        record_store=record_store,
        settings=settings,
    )


def get_vault(request: Request) -> VaultService:
    """FastAPI dependency: the process-wide VaultService."""
    return request.app.state.vault
