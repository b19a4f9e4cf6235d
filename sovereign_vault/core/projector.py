"""
Enrichment Projector: read-model for display

Joins ledger entries back to the domain records they point at and
attaches a redacted summary. Records deleted under retention are
expected: the entry is returned with no summary.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from pydantic import BaseModel

from ..schemas import EnrichedEntry, EntryKind, LedgerEntry

if TYPE_CHECKING:
    from ..db.records import RecordStore


def _state_summary(record: Any) -> dict[str, Any]:
    return {
        "intensity": record.intensity,
        "valence": record.valence,
        "arousal": record.arousal,
    }


def _risk_event_summary(record: Any) -> dict[str, Any]:
    return {
        "severity": record.severity,
        "trigger_type": record.trigger_type,
    }


def _session_summary(record: Any) -> dict[str, Any]:
    return {
        "duration": record.duration,
        "avg_intensity": record.avg_intensity,
        "peak_intensity": record.peak_intensity,
        "session_type": record.session_type,
    }


SUMMARIZERS: dict[EntryKind, Callable[[Any], dict[str, Any]]] = {
    EntryKind.STATE: _state_summary,
    EntryKind.RISK_EVENT: _risk_event_summary,
    EntryKind.SESSION: _session_summary,
}


class EnrichmentProjector:
    """
    Builds EnrichedEntry views.

    Free-text notes are a caller policy: they only appear when the
    projector was built with include_notes=True, or a call overrides it.
    """

    def __init__(self, record_store: "RecordStore", include_notes: bool = False):
        self.record_store = record_store
        self.include_notes = include_notes

    def summarize(
        self, kind: EntryKind, record: BaseModel, include_notes: Optional[bool] = None
    ) -> dict[str, Any]:
        summarizer = SUMMARIZERS.get(kind)
        if summarizer is None:
            # Kinds without a summarizer still show that the record exists
            summary: dict[str, Any] = {}
        else:
            summary = summarizer(record)

        if include_notes is None:
            include_notes = self.include_notes
        if include_notes and getattr(record, "note", None):
            summary["note"] = record.note
        return summary

    def project(
        self, partition: str, entry: LedgerEntry, include_notes: Optional[bool] = None
    ) -> EnrichedEntry:
        record = self.record_store.find_by_id(partition, entry.kind, entry.reference_id)
        if record is None:
            return EnrichedEntry(entry=entry, content_summary=None)
        summary = self.summarize(entry.kind, record, include_notes)
        return EnrichedEntry(entry=entry, content_summary=summary)

    def project_many(
        self,
        partition: str,
        entries: Iterable[LedgerEntry],
        include_notes: Optional[bool] = None,
    ) -> list[EnrichedEntry]:
        return [self.project(partition, e, include_notes) for e in entries]
