# Core vault services
from .hasher import Hasher, CanonicalSerializationError
from .ledger import (
    Ledger,
    LedgerView,
    LedgerError,
    InvalidInputError,
    WriteFailureError,
    check_entry,
    check_complete,
    walk_chain,
)
from .projector import EnrichmentProjector
from .export import ExportFormat, ExportSerializer, ExportError, decode_export
from .vault import VaultService, VaultStatus

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "Ledger",
    "LedgerView",
    "LedgerError",
    "InvalidInputError",
    "WriteFailureError",
    "check_entry",
    "check_complete",
    "walk_chain",
    "EnrichmentProjector",
    "ExportFormat",
    "ExportSerializer",
    "ExportError",
    "decode_export",
    "VaultService",
    "VaultStatus",
]
