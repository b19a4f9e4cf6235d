# Schemas for the sovereign data vault
# Ledger entries are derived, immutable attestations over user-owned records.

from .ledger import (
    EntryKind,
    LedgerPayload,
    StatePayload,
    RiskEventPayload,
    SessionPayload,
    PAYLOAD_MODELS,
    payload_model_for,
    LedgerEntry,
    ChainVerification,
    EnrichedEntry,
)
from .records import (
    EmotionalState,
    EmotionalStateCreate,
    RiskEvent,
    RiskEventCreate,
    SessionLog,
    SessionLogCreate,
    AnalyticsPattern,
    AnalyticsPatternCreate,
    RECORD_MODELS,
    PartitionSettings,
    SettingsUpdate,
    TodayStats,
    DailyAverage,
    AnalyticsSummary,
)

__all__ = [
    # Ledger
    "EntryKind",
    "LedgerPayload",
    "StatePayload",
    "RiskEventPayload",
    "SessionPayload",
    "PAYLOAD_MODELS",
    "payload_model_for",
    "LedgerEntry",
    "ChainVerification",
    "EnrichedEntry",
    # Records
    "EmotionalState",
    "EmotionalStateCreate",
    "RiskEvent",
    "RiskEventCreate",
    "SessionLog",
    "SessionLogCreate",
    "AnalyticsPattern",
    "AnalyticsPatternCreate",
    "RECORD_MODELS",
    "PartitionSettings",
    "SettingsUpdate",
    "TodayStats",
    "DailyAverage",
    "AnalyticsSummary",
]
