"""
Sovereign Vault - Personal Data Ledger

Main application entry point.

Your records stay yours. The ledger lets you prove they were not
quietly changed.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .core import VaultService
from .deps import create_vault
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)

DESCRIPTION = """
## Sovereign Data Ledger

An append-only, hash-chained record of what a user logged: emotional
states, risk events and sessions.

### Core Principles

- **Append-only**: Every new record produces one new ledger entry
- **Chained**: Each entry carries the digest of the one before it
- **Verifiable**: Any out-of-band edit or deletion breaks the chain at a known index
- **Partitioned**: Every call names its partition; partitions never interact

### Integrity Status

`GET /api/partitions/{partition}/ledger/verify` walks the chain.
A broken chain is reported, never hidden and never repaired.

### Exports

`obfuscated` exports are base64 encoded. This is NOT encryption.

### Storage Backends

- **InMemoryLedgerStore**: Development/testing (default)
- **PostgresLedgerStore**: Production with full durability

Set `DATABASE_URL` or `DATABASE_HOST` environment variables to use PostgreSQL.
"""


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    if getattr(app.state, "vault", None) is None:
        app.state.vault = create_vault()

    vault: VaultService = app.state.vault
    store = vault.ledger.store

    # Verify every chain on startup; a break is logged, never repaired
    partitions = store.partitions()
    for partition in partitions:
        result = vault.verify(partition)
        if result.valid:
            logger.info(
                "Chain integrity verified OK",
                partition=partition,
                entries=result.entries_checked,
            )

    logger.info(
        "Application startup complete",
        partitions=len(partitions),
        store_type=type(store).__name__,
    )

    yield

    logger.info("Application shutdown complete")


def create_app(vault: Optional[VaultService] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        vault: Pre-built VaultService. If None, one is assembled from the
               environment at startup.
    """
    app = FastAPI(
        title="Sovereign Vault",
        description=DESCRIPTION,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.vault = vault

    app.add_middleware(RequestContextMiddleware)

    from .api.routes import router
    app.include_router(router)

    @app.get("/health", tags=["System"])
    def health():
        """Returns 200 if the service is running."""
        return {"status": "healthy", "service": "sovereign-vault"}

    @app.get("/health/detailed", tags=["System"])
    def health_detailed(request: Request, verify: bool = False):
        """
        Detailed health check.

        Checks:
        - Service liveness
        - Ledger store connectivity
        - Chain integrity of every partition (only with verify=true)

        Returns 200 if healthy, 503 if unhealthy.
        """
        vault = request.app.state.vault
        health_status = check_health(
            vault=vault,
            store=vault.ledger.store,
            verify_chains=verify,
        )

        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    def metrics():
        """Counters and latency percentiles."""
        return get_metrics().get_summary()

    return app


app = create_app()
