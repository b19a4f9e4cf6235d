"""
Export Serializer

Snapshots one partition (domain records, patterns, ledger) into a
portable document.

Formats:
- plain: indented UTF-8 JSON
- obfuscated: base64 of the plain bytes. This is a transport encoding,
  NOT encryption; anyone holding the file can read it.

Export is read-only with respect to the ledger: entries are written
exactly as stored, never re-sequenced or re-hashed.
"""

import base64
import binascii
import json
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from ..observability import get_logger
from ..schemas import EntryKind
from .ledger import check_complete, walk_chain

if TYPE_CHECKING:
    from ..db.records import RecordStore
    from .ledger import Ledger

logger = get_logger(__name__)

EXPORT_FORMAT_VERSION = 1


class ExportFormat(str, Enum):
    PLAIN = "plain"
    OBFUSCATED = "obfuscated"


class ExportError(ValueError):
    """Raised when an export document cannot be decoded."""
    pass


def _dump(records: list) -> list[dict[str, Any]]:
    return [r.model_dump(mode="json") for r in records]


class ExportSerializer:
    """Builds export documents for one partition at a time."""

    def __init__(
        self,
        record_store: "RecordStore",
        ledger: "Ledger",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.record_store = record_store
        self.ledger = ledger
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def build_document(self, partition: str) -> dict[str, Any]:
        """The export as a JSON-ready dict."""
        # One bounded read: the verdict describes exactly the entries exported
        view = self.ledger.list(partition)
        ledger_entries = list(view)
        verification = check_complete(walk_chain(partition, ledger_entries), len(view))
        if not verification.valid:
            logger.warning(
                "Exporting a broken chain",
                partition=partition,
                broken_at_index=verification.broken_at_index,
                reason=verification.reason,
            )
        entries = [e.model_dump(mode="json") for e in ledger_entries]
        store = self.record_store

        return {
            "format_version": EXPORT_FORMAT_VERSION,
            "partition": partition,
            "exported_at": self._clock().isoformat(),
            "emotional_states": _dump(store.list(partition, EntryKind.STATE)),
            "risk_events": _dump(store.list(partition, EntryKind.RISK_EVENT)),
            "session_logs": _dump(store.list(partition, EntryKind.SESSION)),
            "analytics_patterns": _dump(store.list_patterns(partition)),
            "ledger_entries": entries,
            "chain": {
                "valid": verification.valid,
                "broken_at_index": verification.broken_at_index,
                "tail_digest": entries[-1]["payload_digest"] if entries else None,
                "entry_count": len(entries),
            },
        }

    def export(self, partition: str, fmt: ExportFormat | str = ExportFormat.PLAIN) -> bytes:
        fmt = ExportFormat(fmt)
        document = self.build_document(partition)
        plain = json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")

        logger.info(
            "Partition exported",
            partition=partition,
            format=fmt.value,
            ledger_entries=document["chain"]["entry_count"],
        )

        if fmt is ExportFormat.OBFUSCATED:
            return base64.b64encode(plain)
        return plain


def decode_export(data: bytes | str) -> dict[str, Any]:
    """
    Decode either export format back to the document dict.

    Raises:
        ExportError: If data is neither plain JSON nor base64 of it
    """
    if isinstance(data, str):
        data = data.encode("utf-8")

    raw = data.strip()
    if not raw.startswith(b"{"):
        try:
            raw = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ExportError(f"Export is neither JSON nor base64: {e}") from e

    try:
        document = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ExportError(f"Export is not valid JSON: {e}") from e

    if not isinstance(document, dict) or "ledger_entries" not in document:
        raise ExportError("Export document has no ledger_entries")
    return document
