"""
Ledger Entry Schema

The vault is an append-only chain, not CRUD.
Nothing is edited. A new domain record produces a new entry.

Each entry:
- Attests to exactly one domain record (weak back-reference)
- Carries a tagged, canonical payload for its kind
- Is hashed over all of its own fields
- Is chained to its predecessor by digest
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class EntryKind(str, Enum):
    """
    Domain entity types that produce ledger entries.
    You can add more later, never remove.
    """
    STATE = "state"
    RISK_EVENT = "risk-event"
    SESSION = "session"


# ============================================================
# Tagged payloads
# One model per kind. Each owns its canonicalization rule, so the
# hasher never has to guess at a loosely-typed structure.
# ============================================================

class LedgerPayload(BaseModel):
    """Base for per-kind ledger payloads."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: ClassVar[EntryKind]

    def canonical(self) -> dict[str, Any]:
        """Fields that enter the digest, before number normalization."""
        return self.model_dump(mode="python", exclude_none=True)


class StatePayload(LedgerPayload):
    """Emotional state snapshot. Notes and waveforms never enter the chain."""

    kind: ClassVar[EntryKind] = EntryKind.STATE

    intensity: Decimal = Field(..., ge=0, le=100)
    valence: Decimal = Field(..., ge=-100, le=100)
    arousal: Decimal = Field(..., ge=0, le=100)


class RiskEventPayload(LedgerPayload):
    """Self-harm risk event. Trigger labels are case-folded before hashing."""

    kind: ClassVar[EntryKind] = EntryKind.RISK_EVENT

    severity: int = Field(..., ge=1, le=10)
    trigger_type: Optional[str] = None

    def canonical(self) -> dict[str, Any]:
        data: dict[str, Any] = {"severity": self.severity}
        if self.trigger_type is not None and self.trigger_type.strip():
            data["trigger_type"] = self.trigger_type.strip().lower()
        return data


class SessionPayload(LedgerPayload):
    """Tracking/intervention/reflection session summary."""

    kind: ClassVar[EntryKind] = EntryKind.SESSION

    duration_seconds: Optional[int] = Field(default=None, ge=0)
    avg_intensity: Optional[Decimal] = Field(default=None, ge=0, le=100)
    peak_intensity: Optional[Decimal] = Field(default=None, ge=0, le=100)
    session_type: Optional[str] = None

    def canonical(self) -> dict[str, Any]:
        data = super().canonical()
        if "session_type" in data:
            data["session_type"] = data["session_type"].strip().lower()
        return data


PAYLOAD_MODELS: dict[EntryKind, type[LedgerPayload]] = {
    EntryKind.STATE: StatePayload,
    EntryKind.RISK_EVENT: RiskEventPayload,
    EntryKind.SESSION: SessionPayload,
}


def payload_model_for(kind: EntryKind | str) -> type[LedgerPayload]:
    """
    Resolve a kind to its payload model.

    Raises:
        ValueError: If the kind is unknown
    """
    try:
        return PAYLOAD_MODELS[EntryKind(kind)]
    except (KeyError, ValueError):
        raise ValueError(
            f"Unknown entry kind {kind!r}. "
            f"Valid kinds: {', '.join(k.value for k in EntryKind)}"
        ) from None


# ============================================================
# Chain node
# ============================================================

class LedgerEntry(BaseModel):
    """
    A single node of a partition's chain.

    Immutable once appended. The digest covers every field below
    except payload_digest itself, so any out-of-band edit is detectable.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(..., description="Unique entry identifier, assigned at creation")
    partition: str = Field(..., min_length=1, description="Owning user/tenant partition key")
    sequence_index: int = Field(..., ge=0, description="Gapless position in the partition chain")
    kind: EntryKind
    reference_id: str = Field(
        ...,
        min_length=1,
        description="Domain record this entry attests to (lookup only, not ownership)",
    )
    payload: dict[str, Any] = Field(..., description="Canonical payload for this kind")

    # previous_digest: None ONLY for sequence_index == 0 (the sentinel)
    previous_digest: Optional[str] = Field(
        default=None,
        description="payload_digest of sequence_index - 1; None for the first entry",
    )
    payload_digest: str = Field(..., description="SHA-256 over digest_input()")

    created_at: datetime

    @property
    def is_genesis(self) -> bool:
        return self.sequence_index == 0

    def digest_input(self, previous_digest: Optional[str]) -> dict[str, Any]:
        """
        The structure that is hashed into payload_digest.

        previous_digest is passed in rather than read from self so that
        verification can hash against the predecessor it expects, not the
        one the entry claims.
        """
        return {
            "id": self.id,
            "partition": self.partition,
            "sequence_index": self.sequence_index,
            "kind": self.kind,
            "reference_id": self.reference_id,
            "payload": self.payload,
            "previous_digest": previous_digest,
            "created_at": self.created_at,
        }


class ChainVerification(BaseModel):
    """Result of walking a partition's chain. A broken chain is a result, not an exception."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    broken_at_index: Optional[int] = None
    entries_checked: int = 0
    reason: Optional[str] = None


class EnrichedEntry(BaseModel):
    """A ledger entry joined back to a redacted view of its domain record."""

    entry: LedgerEntry
    content_summary: Optional[dict[str, Any]] = Field(
        default=None,
        description="Display-safe record fields; None once the record is gone",
    )

    @property
    def record_available(self) -> bool:
        return self.content_summary is not None
