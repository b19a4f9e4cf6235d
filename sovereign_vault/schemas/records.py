"""
Domain Record Schemas

The records a user logs. The Record Store owns their lifecycle
(including retention deletes); the ledger only points at them.

Every timestamp is timezone-aware. Naive datetimes are rejected at the
edge so records can always be ordered against each other and against
the service clock.
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import AwareDatetime, BaseModel, Field, field_validator

from .ledger import EntryKind, RiskEventPayload, SessionPayload, StatePayload


# ============================================================
# Inputs
# ============================================================

class EmotionalStateCreate(BaseModel):
    """A state reading from the signal processor."""
    intensity: float = Field(..., ge=0, le=100, description="0-100 scale")
    valence: float = Field(..., ge=-100, le=100, description="-100 (negative) to 100 (positive)")
    arousal: float = Field(..., ge=0, le=100, description="0 (calm) to 100 (alert)")
    note: Optional[str] = None
    waveform_data: Optional[list[float]] = Field(
        default=None,
        description="Amplitude samples captured with the reading",
    )


class RiskEventCreate(BaseModel):
    """A non-suicidal self-injury event."""
    severity: int = Field(..., ge=1, le=10, description="1-10 scale")
    trigger_type: Optional[str] = Field(
        default=None,
        description="environmental, emotional, social, physical",
    )
    intervention_used: Optional[str] = None
    note: Optional[str] = None
    emotional_state_id: Optional[str] = None


class SessionLogCreate(BaseModel):
    """A tracking, intervention or reflection session."""
    start_time: Optional[AwareDatetime] = None
    end_time: Optional[AwareDatetime] = None
    duration: Optional[int] = Field(default=None, ge=0, description="Seconds")
    avg_intensity: Optional[float] = Field(default=None, ge=0, le=100)
    peak_intensity: Optional[float] = Field(default=None, ge=0, le=100)
    emotional_state_ids: list[str] = Field(default_factory=list)
    session_type: Optional[str] = Field(
        default=None,
        description="tracking, intervention, reflection",
    )
    metadata: Optional[dict[str, Any]] = None

    @field_validator("end_time")
    @classmethod
    def end_not_before_start(cls, v: Optional[datetime], info) -> Optional[datetime]:
        start = info.data.get("start_time")
        if v is not None and start is not None and v < start:
            raise ValueError("end_time must not be before start_time")
        return v


class AnalyticsPatternCreate(BaseModel):
    """A pattern detected over the user's records."""
    pattern_type: str = Field(..., min_length=1, description="trend, cycle, trigger, correlation")
    description: str
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    data_points: Optional[Any] = None
    recommendation: Optional[str] = None


# ============================================================
# Stored records
# ============================================================

class EmotionalState(EmotionalStateCreate):
    id: str
    timestamp: AwareDatetime

    @property
    def recorded_at(self) -> datetime:
        return self.timestamp

    def ledger_payload(self) -> StatePayload:
        return StatePayload(
            intensity=self.intensity,
            valence=self.valence,
            arousal=self.arousal,
        )


class RiskEvent(RiskEventCreate):
    id: str
    timestamp: AwareDatetime

    @property
    def recorded_at(self) -> datetime:
        return self.timestamp

    def ledger_payload(self) -> RiskEventPayload:
        return RiskEventPayload(
            severity=self.severity,
            trigger_type=self.trigger_type,
        )


class SessionLog(SessionLogCreate):
    id: str
    start_time: AwareDatetime

    @property
    def recorded_at(self) -> datetime:
        return self.start_time

    def ledger_payload(self) -> SessionPayload:
        return SessionPayload(
            duration_seconds=self.duration,
            avg_intensity=self.avg_intensity,
            peak_intensity=self.peak_intensity,
            session_type=self.session_type,
        )


class AnalyticsPattern(AnalyticsPatternCreate):
    id: str
    detected_at: AwareDatetime

    @property
    def recorded_at(self) -> datetime:
        return self.detected_at


RECORD_MODELS: dict[EntryKind, type[BaseModel]] = {
    EntryKind.STATE: EmotionalState,
    EntryKind.RISK_EVENT: RiskEvent,
    EntryKind.SESSION: SessionLog,
}


# ============================================================
# Per-partition settings
# ============================================================

class PartitionSettings(BaseModel):
    """The owner's policy for one partition. Unset partitions use the deployment defaults."""
    retention_days: int = Field(..., ge=1, description="Record retention window in days")
    include_notes: bool = Field(..., description="Show free-text notes in enriched views")
    export_format: Literal["plain", "obfuscated"]


class SettingsUpdate(BaseModel):
    """Partial update; omitted fields keep their current value."""
    retention_days: Optional[int] = Field(default=None, ge=1)
    include_notes: Optional[bool] = None
    export_format: Optional[Literal["plain", "obfuscated"]] = None


# ============================================================
# Aggregates
# ============================================================

class TodayStats(BaseModel):
    """Readings since midnight UTC."""
    avg_intensity: float
    peak_intensity: float
    state_count: int
    risk_event_count: int


class DailyAverage(BaseModel):
    day: str = Field(..., description="ISO date, UTC")
    avg: float


class AnalyticsSummary(BaseModel):
    """The last seven days of states, newest day first."""
    avg_intensity: float
    trend_direction: Literal["up", "down", "stable"]
    total_states: int
    total_risk_events: int
    weekly_average: list[DailyAverage]
