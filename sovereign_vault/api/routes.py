"""
API Routes for the Sovereign Vault

Every route is scoped to one partition: /api/partitions/{partition}/...

Record endpoints (persist the record, then append its ledger entry):
- POST /states              - Record an emotional state
- POST /risk-events         - Record a risk event
- POST /sessions            - Record a session log
- POST /patterns            - Store a detected pattern (not ledgered)

Record reads (newest first, ?days= and ?limit=):
- GET /states, /states/recent
- GET /risk-events, /risk-events/recent
- GET /sessions, /patterns
- GET /stats/today          - Readings since midnight UTC
- GET /analytics/summary    - Seven-day summary
- GET, PATCH /settings      - Per-partition policy

Ledger endpoints (read-only):
- GET /ledger               - Enriched entries, ascending or descending
- GET /ledger/tail          - Tail digest
- GET /ledger/verify        - Whole-chain verification
- GET /vault/status         - Trust status for display

Lifecycle:
- GET /export               - Download (plain or obfuscated)
- POST /retention           - Apply the record retention window
- DELETE /data              - Erase everything (requires confirm=true)

Handlers are plain functions: the ledger and its stores block.
"""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel

from ..core import (
    ExportFormat,
    InvalidInputError,
    LedgerError,
    VaultService,
    VaultStatus,
    WriteFailureError,
)
from ..deps import get_vault
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
    PartitionSettings,
    RiskEvent,
    RiskEventCreate,
    SessionLog,
    SessionLogCreate,
    SettingsUpdate,
    TodayStats,
)


router = APIRouter(prefix="/api/partitions/{partition}")


def _http_error(e: LedgerError) -> HTTPException:
    """Map ledger errors to status codes. Nothing else is translated here."""
    if isinstance(e, InvalidInputError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, WriteFailureError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


# ============================================================
# Response Models
# ============================================================

class StateRecordedResponse(BaseModel):
    record: EmotionalState
    entry: LedgerEntry


class RiskEventRecordedResponse(BaseModel):
    record: RiskEvent
    entry: LedgerEntry


class SessionRecordedResponse(BaseModel):
    record: SessionLog
    entry: LedgerEntry


class TailResponse(BaseModel):
    partition: str
    tail_digest: Optional[str] = None
    entry_count: int


class RetentionResponse(BaseModel):
    partition: str
    retention_days: int
    records_deleted: int


class EraseResponse(BaseModel):
    partition: str
    ledger_entries: int
    records: int


# ============================================================
# Record Endpoints
# ============================================================

@router.post(
    "/states",
    response_model=StateRecordedResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Records"],
    summary="Record an emotional state",
)
def record_state(
    partition: str,
    request: EmotionalStateCreate,
    vault: VaultService = Depends(get_vault),
):
    try:
        record, entry = vault.record_state(partition, request)
    except LedgerError as e:
        raise _http_error(e)
    return StateRecordedResponse(record=record, entry=entry)


@router.post(
    "/risk-events",
    response_model=RiskEventRecordedResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Records"],
    summary="Record a risk event",
)
def record_risk_event(
    partition: str,
    request: RiskEventCreate,
    vault: VaultService = Depends(get_vault),
):
    try:
        record, entry = vault.record_risk_event(partition, request)
    except LedgerError as e:
        raise _http_error(e)
    return RiskEventRecordedResponse(record=record, entry=entry)


@router.post(
    "/sessions",
    response_model=SessionRecordedResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Records"],
    summary="Record a session log",
)
def record_session(
    partition: str,
    request: SessionLogCreate,
    vault: VaultService = Depends(get_vault),
):
    try:
        record, entry = vault.record_session(partition, request)
    except LedgerError as e:
        raise _http_error(e)
    return SessionRecordedResponse(record=record, entry=entry)


@router.post(
    "/patterns",
    response_model=AnalyticsPattern,
    status_code=status.HTTP_201_CREATED,
    tags=["Records"],
    summary="Store a detected pattern",
)
def record_pattern(
    partition: str,
    request: AnalyticsPatternCreate,
    vault: VaultService = Depends(get_vault),
):
    try:
        return vault.record_pattern(partition, request)
    except LedgerError as e:
        raise _http_error(e)


# ============================================================
# Record Read Endpoints
# ============================================================

@router.get(
    "/states",
    response_model=list[EmotionalState],
    tags=["Records"],
    summary="List emotional states, newest first",
)
def list_states(
    partition: str,
    days: Optional[int] = Query(None, ge=1, description="Only the last N days"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    vault: VaultService = Depends(get_vault),
):
    try:
        return vault.list_records(partition, EntryKind.STATE, days=days, limit=limit)
    except LedgerError as e:
        raise _http_error(e)


@router.get(
    "/states/recent",
    response_model=list[EmotionalState],
    tags=["Records"],
    summary="Most recent emotional states",
)
def recent_states(
    partition: str,
    limit: int = Query(10, ge=1, le=100),
    vault: VaultService = Depends(get_vault),
):
    try:
        return vault.list_records(partition, EntryKind.STATE, limit=limit)
    except LedgerError as e:
        raise _http_error(e)


@router.get(
    "/risk-events",
    response_model=list[RiskEvent],
    tags=["Records"],
    summary="List risk events, newest first",
)
def list_risk_events(
    partition: str,
    days: Optional[int] = Query(None, ge=1, description="Only the last N days"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    vault: VaultService = Depends(get_vault),
):
    try:
        return vault.list_records(partition, EntryKind.RISK_EVENT, days=days, limit=limit)
    except LedgerError as e:
        raise _http_error(e)


@router.get(
    "/risk-events/recent",
    response_model=list[RiskEvent],
    tags=["Records"],
    summary="Most recent risk events",
)
def recent_risk_events(
    partition: str,
    limit: int = Query(5, ge=1, le=100),
    vault: VaultService = Depends(get_vault),
):
    try:
        return vault.list_records(partition, EntryKind.RISK_EVENT, limit=limit)
    except LedgerError as e:
        raise _http_error(e)


@router.get(
    "/sessions",
    response_model=list[SessionLog],
    tags=["Records"],
    summary="List session logs, newest first",
)
def list_sessions(
    partition: str,
    days: Optional[int] = Query(None, ge=1, description="Only the last N days"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    vault: VaultService = Depends(get_vault),
):
    try:
        return vault.list_records(partition, EntryKind.SESSION, days=days, limit=limit)
    except LedgerError as e:
        raise _http_error(e)


@router.get(
    "/patterns",
    response_model=list[AnalyticsPattern],
    tags=["Records"],
    summary="List detected patterns, newest first",
)
def list_patterns(
    partition: str,
    days: Optional[int] = Query(None, ge=1, description="Only the last N days"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    vault: VaultService = Depends(get_vault),
):
    try:
        return vault.list_patterns(partition, days=days, limit=limit)
    except LedgerError as e:
        raise _http_error(e)


# ============================================================
# Aggregates
# ============================================================

@router.get(
    "/stats/today",
    response_model=TodayStats,
    tags=["Analytics"],
    summary="Readings since midnight UTC",
)
def stats_today(partition: str, vault: VaultService = Depends(get_vault)):
    try:
        return vault.today_stats(partition)
    except LedgerError as e:
        raise _http_error(e)


@router.get(
    "/analytics/summary",
    response_model=AnalyticsSummary,
    tags=["Analytics"],
    summary="Seven-day intensity summary",
)
def analytics_summary(partition: str, vault: VaultService = Depends(get_vault)):
    try:
        return vault.analytics_summary(partition)
    except LedgerError as e:
        raise _http_error(e)


# ============================================================
# Settings
# ============================================================

@router.get(
    "/settings",
    response_model=PartitionSettings,
    tags=["Settings"],
    summary="Retention, notes and export policy of the partition",
)
def get_settings(partition: str, vault: VaultService = Depends(get_vault)):
    try:
        return vault.settings_for(partition)
    except LedgerError as e:
        raise _http_error(e)


@router.patch(
    "/settings",
    response_model=PartitionSettings,
    tags=["Settings"],
    summary="Update the partition's policy",
)
def update_settings(
    partition: str,
    request: SettingsUpdate,
    vault: VaultService = Depends(get_vault),
):
    """Omitted fields keep their current value."""
    try:
        return vault.update_settings(partition, request)
    except LedgerError as e:
        raise _http_error(e)


# ============================================================
# Ledger Endpoints
# ============================================================

@router.get(
    "/ledger",
    response_model=list[EnrichedEntry],
    tags=["Ledger"],
    summary="List ledger entries with content summaries",
)
def list_ledger(
    partition: str,
    direction: Literal["asc", "desc"] = Query("asc"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    vault: VaultService = Depends(get_vault),
):
    """
    Entries whose record was deleted under retention come back with
    content_summary = null. That is expected, not an error.
    """
    try:
        return vault.list_enriched(partition, descending=direction == "desc", limit=limit)
    except LedgerError as e:
        raise _http_error(e)


@router.get(
    "/ledger/tail",
    response_model=TailResponse,
    tags=["Ledger"],
    summary="Digest of the newest entry",
)
def ledger_tail(partition: str, vault: VaultService = Depends(get_vault)):
    try:
        return TailResponse(
            partition=partition,
            tail_digest=vault.tail_digest(partition),
            entry_count=vault.ledger.count(partition),
        )
    except LedgerError as e:
        raise _http_error(e)


@router.get(
    "/ledger/verify",
    response_model=ChainVerification,
    tags=["Ledger"],
    summary="Verify the whole chain",
)
def verify_ledger(partition: str, vault: VaultService = Depends(get_vault)):
    """A broken chain is a 200 with valid=false; it is a result, not a failure."""
    try:
        return vault.verify(partition)
    except LedgerError as e:
        raise _http_error(e)


@router.get(
    "/vault/status",
    response_model=VaultStatus,
    tags=["Ledger"],
    summary="Chain integrity and record counts",
)
def vault_status(partition: str, vault: VaultService = Depends(get_vault)):
    try:
        return vault.status(partition)
    except LedgerError as e:
        raise _http_error(e)


# ============================================================
# Lifecycle Endpoints
# ============================================================

@router.get(
    "/export",
    tags=["Lifecycle"],
    summary="Export the partition",
    response_class=Response,
)
def export_partition(
    partition: str,
    format: Optional[ExportFormat] = Query(None),
    vault: VaultService = Depends(get_vault),
):
    """
    plain: JSON document. obfuscated: base64 of the same document.
    Obfuscated is a transport encoding, not encryption.
    """
    try:
        fmt = format or ExportFormat(vault.settings_for(partition).export_format)
        content = vault.export(partition, fmt)
    except LedgerError as e:
        raise _http_error(e)

    if fmt is ExportFormat.OBFUSCATED:
        media_type, suffix = "text/plain", "b64"
    else:
        media_type, suffix = "application/json", "json"

    return Response(
        content=content,
        media_type=media_type,
        headers={
            "Content-Disposition": f'attachment; filename="vault-export-{partition}.{suffix}"',
            "X-Export-Format": fmt.value,
        },
    )


@router.post(
    "/retention",
    response_model=RetentionResponse,
    tags=["Lifecycle"],
    summary="Delete records older than the retention window",
)
def apply_retention(
    partition: str,
    days: Optional[int] = Query(None, ge=1),
    vault: VaultService = Depends(get_vault),
):
    """Ledger entries are kept; only the domain records they point at expire."""
    try:
        if days is None:
            days = vault.settings_for(partition).retention_days
        deleted = vault.apply_retention(partition, retention_days=days)
    except LedgerError as e:
        raise _http_error(e)
    return RetentionResponse(
        partition=partition,
        retention_days=days,
        records_deleted=deleted,
    )


@router.delete(
    "/data",
    response_model=EraseResponse,
    tags=["Lifecycle"],
    summary="Irreversibly delete all data of the partition",
)
def delete_all_data(
    partition: str,
    confirm: bool = Query(False),
    vault: VaultService = Depends(get_vault),
):
    if not confirm:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Erasure is irreversible; repeat with confirm=true",
        )
    try:
        removed = vault.delete_all_data(partition)
    except LedgerError as e:
        raise _http_error(e)
    return EraseResponse(partition=partition, **removed)
