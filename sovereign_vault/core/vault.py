"""
Vault Service

The thin shell around the ledger core. Composes the record store, the
ledger, the enrichment projector and the export serializer.

ORDERING RULE:
A domain record is persisted first; its ledger entry is appended only
after that succeeds. A failed persist never appends. A crash between
the two leaves a record with no entry, which is detectable and leaves
the chain valid.

SETTINGS:
Each partition may save its own retention window, notes policy and
export format. Partitions that never saved any use the deployment
defaults from VaultSettings.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from itertools import islice
from typing import Any, Callable, Optional
from uuid import uuid4

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..db.config import VaultSettings
from ..observability import get_logger
from ..schemas import (
    AnalyticsPattern,
    AnalyticsPatternCreate,
    AnalyticsSummary,
    ChainVerification,
    EmotionalState,
    EmotionalStateCreate,
    EnrichedEntry,
    EntryKind,
    LedgerEntry,
    LedgerPayload,
    PartitionSettings,
    RiskEvent,
    RiskEventCreate,
    SessionLog,
    SessionLogCreate,
    SettingsUpdate,
    TodayStats,
)
from .analytics import SUMMARY_DAYS, start_of_day, today_stats, weekly_summary
from .export import ExportFormat, ExportSerializer
from .ledger import InvalidInputError, Ledger, LedgerView, WriteFailureError
from .projector import EnrichmentProjector

logger = get_logger(__name__)

# Reported as-is: exports are obfuscated, never encrypted
ENCRYPTION_STATUS = "obfuscated-label"


class VaultStatus(BaseModel):
    """Trust status of one partition, as shown to its owner."""
    partition: str
    total_entries: int
    tail_digest: Optional[str] = None
    chain_valid: bool
    broken_at_index: Optional[int] = None
    reason: Optional[str] = None
    encryption_status: str = ENCRYPTION_STATUS
    record_counts: dict[str, int] = Field(default_factory=dict)
    retention_days: int


class VaultService:
    """
    One vault per deployment, many partitions.

    Every method takes the partition key explicitly.
    """

    def __init__(
        self,
        ledger: Ledger,
        record_store,
        settings: Optional[VaultSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.records = record_store
        self.settings = settings or VaultSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.projector = EnrichmentProjector(
            record_store, include_notes=self.settings.include_notes
        )
        self.serializer = ExportSerializer(record_store, ledger, clock=self._clock)

    @staticmethod
    def _check_partition(partition: str) -> None:
        if not isinstance(partition, str) or not partition.strip():
            raise InvalidInputError("partition must be a non-empty string")

    # ============================================================
    # SETTINGS
    # ============================================================

    def defaults(self) -> PartitionSettings:
        return PartitionSettings(
            retention_days=self.settings.retention_days,
            include_notes=self.settings.include_notes,
            export_format=self.settings.export_format,
        )

    def settings_for(self, partition: str) -> PartitionSettings:
        """Saved settings of the partition, else the deployment defaults."""
        self._check_partition(partition)
        return self.records.get_settings(partition) or self.defaults()

    def update_settings(self, partition: str, update: SettingsUpdate) -> PartitionSettings:
        current = self.settings_for(partition)
        merged = current.model_copy(update=update.model_dump(exclude_none=True))
        try:
            merged = PartitionSettings.model_validate(merged.model_dump())
        except PydanticValidationError as e:
            raise InvalidInputError(f"Invalid settings: {e}") from e

        try:
            saved = self.records.put_settings(partition, merged)
        except Exception as e:
            raise WriteFailureError(f"Could not save settings: {e}") from e

        logger.info("Partition settings updated", partition=partition, **merged.model_dump())
        return saved

    # ============================================================
    # DOMAIN RECORDS
    # ============================================================

    def _persist_and_append(
        self, partition: str, kind: EntryKind, record: Any
    ) -> tuple[Any, LedgerEntry]:
        self._check_partition(partition)

        # Build the payload before writing anything
        try:
            payload: LedgerPayload = record.ledger_payload()
        except PydanticValidationError as e:
            raise InvalidInputError(f"Invalid {kind.value} record: {e}") from e

        try:
            self.records.add(partition, kind, record)
        except Exception as e:
            logger.error(
                "Record persist failed",
                partition=partition,
                kind=kind.value,
                error=str(e),
            )
            raise WriteFailureError(f"Could not persist {kind.value} record: {e}") from e

        entry = self.ledger.append(partition, kind, record.id, payload)
        return record, entry

    def record_state(
        self, partition: str, data: EmotionalStateCreate
    ) -> tuple[EmotionalState, LedgerEntry]:
        record = EmotionalState(id=str(uuid4()), timestamp=self._clock(), **data.model_dump())
        return self._persist_and_append(partition, EntryKind.STATE, record)

    def record_risk_event(
        self, partition: str, data: RiskEventCreate
    ) -> tuple[RiskEvent, LedgerEntry]:
        record = RiskEvent(id=str(uuid4()), timestamp=self._clock(), **data.model_dump())
        return self._persist_and_append(partition, EntryKind.RISK_EVENT, record)

    def record_session(
        self, partition: str, data: SessionLogCreate
    ) -> tuple[SessionLog, LedgerEntry]:
        fields = data.model_dump()
        if fields["start_time"] is None:
            fields["start_time"] = self._clock()

        end_time = fields["end_time"]
        if end_time is not None and end_time < fields["start_time"]:
            raise InvalidInputError("session end_time must not be before start_time")
        if fields["duration"] is None and end_time is not None:
            fields["duration"] = int((end_time - fields["start_time"]).total_seconds())

        record = SessionLog(id=str(uuid4()), **fields)
        return self._persist_and_append(partition, EntryKind.SESSION, record)

    def record_pattern(self, partition: str, data: AnalyticsPatternCreate) -> AnalyticsPattern:
        """Patterns are derived analytics and are not ledgered."""
        self._check_partition(partition)
        pattern = AnalyticsPattern(id=str(uuid4()), detected_at=self._clock(), **data.model_dump())
        return self.records.add_pattern(partition, pattern)

    def _since(self, days: Optional[int]) -> Optional[datetime]:
        if days is None:
            return None
        if days <= 0:
            raise InvalidInputError(f"days must be positive, got {days}")
        return self._clock() - timedelta(days=days)

    def list_records(
        self,
        partition: str,
        kind: EntryKind,
        days: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[Any]:
        """Records of one kind, newest first, optionally from the last days only."""
        self._check_partition(partition)
        return self.records.list(partition, EntryKind(kind), limit=limit, since=self._since(days))

    def list_patterns(
        self,
        partition: str,
        days: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[AnalyticsPattern]:
        self._check_partition(partition)
        return self.records.list_patterns(partition, limit=limit, since=self._since(days))

    def today_stats(self, partition: str) -> TodayStats:
        self._check_partition(partition)
        midnight = start_of_day(self._clock())
        states = self.records.list(partition, EntryKind.STATE, since=midnight)
        events = self.records.list(partition, EntryKind.RISK_EVENT, since=midnight)
        return today_stats(states, len(events))

    def analytics_summary(self, partition: str) -> AnalyticsSummary:
        self._check_partition(partition)
        now = self._clock()
        window_start = start_of_day(now) - timedelta(days=SUMMARY_DAYS - 1)
        states = self.records.list(partition, EntryKind.STATE, since=window_start)
        total_events = len(self.records.list(partition, EntryKind.RISK_EVENT))
        return weekly_summary(states, total_events, now)

    # ============================================================
    # LEDGER
    # ============================================================

    def append(self, partition: str, kind: EntryKind | str, reference_id: str, payload) -> LedgerEntry:
        return self.ledger.append(partition, kind, reference_id, payload)

    def tail_digest(self, partition: str) -> Optional[str]:
        return self.ledger.tail_digest(partition)

    def verify(self, partition: str) -> ChainVerification:
        return self.ledger.verify(partition)

    def list(self, partition: str, descending: bool = False) -> LedgerView:
        return self.ledger.list(partition, descending=descending)

    def project(self, partition: str, entry: LedgerEntry) -> EnrichedEntry:
        include_notes = self.settings_for(partition).include_notes
        return self.projector.project(partition, entry, include_notes)

    def list_enriched(
        self,
        partition: str,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[EnrichedEntry]:
        include_notes = self.settings_for(partition).include_notes
        view = self.ledger.list(partition, descending=descending)
        entries = view if limit is None else islice(view, limit)
        return self.projector.project_many(partition, entries, include_notes)

    def export(self, partition: str, fmt: ExportFormat | str | None = None) -> bytes:
        fmt = fmt or self.settings_for(partition).export_format
        return self.serializer.export(partition, fmt)

    # ============================================================
    # STATUS AND LIFECYCLE
    # ============================================================

    def status(self, partition: str) -> VaultStatus:
        verification = self.ledger.verify(partition)
        counts = {
            kind.value: len(self.records.list(partition, kind))
            for kind in EntryKind
        }
        counts["pattern"] = len(self.records.list_patterns(partition))

        return VaultStatus(
            partition=partition,
            total_entries=self.ledger.count(partition),
            tail_digest=self.ledger.tail_digest(partition),
            chain_valid=verification.valid,
            broken_at_index=verification.broken_at_index,
            reason=verification.reason,
            record_counts=counts,
            retention_days=self.settings_for(partition).retention_days,
        )

    def apply_retention(
        self,
        partition: str,
        retention_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Delete domain records older than the retention window.

        Ledger entries stay; they project with no content summary afterwards.

        Returns:
            Number of records deleted
        """
        self._check_partition(partition)
        if retention_days is None:
            retention_days = self.settings_for(partition).retention_days
        if retention_days <= 0:
            raise InvalidInputError(f"retention_days must be positive, got {retention_days}")

        cutoff = (now or self._clock()) - timedelta(days=retention_days)
        deleted = self.records.purge_older_than(partition, cutoff)

        logger.info(
            "Retention applied",
            partition=partition,
            retention_days=retention_days,
            cutoff=cutoff.isoformat(),
            records_deleted=deleted,
        )
        return deleted

    def delete_all_data(self, partition: str) -> dict[str, int]:
        """
        Irreversibly erase the partition: ledger, every domain record and
        its saved settings.

        Records are erased inside the ledger's partition exclusion, so no
        append can land between the two deletes.
        """
        self._check_partition(partition)
        removed = {"records": 0}

        def erase_records() -> None:
            removed["records"] = self.records.erase_partition(partition)

        entries = self.ledger.erase(partition, hook=erase_records)
        return {"ledger_entries": entries, "records": removed["records"]}
