"""
Ledger - The Heart of the Vault

An append-only, hash-chained record of everything a user logged.
Nothing is edited. A new domain record produces a new entry.

The ledger:
- Validates and canonicalizes the payload for the entry's kind
- Appends one entry per domain record, chained to its predecessor
- Answers tail-digest queries
- Verifies whole chains and reports where they break

ARCHITECTURE NOTE:
Storage is delegated to a LedgerStore.
- Ledger: validation, canonicalization, hashing, verification
- LedgerStore: per-partition serialization, ordering, durability

The store is the single source of truth for the chain head. The ledger
reads (sequence, previous digest) from the locked head inside
begin_append(), so two concurrent appends can never share a position.

Every call names its partition explicitly. There is no current user.
"""

import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, Optional
from uuid import UUID, uuid4

from pydantic import ValidationError as PydanticValidationError

from ..observability import get_logger, get_metrics
from ..schemas import (
    ChainVerification,
    EntryKind,
    LedgerEntry,
    LedgerPayload,
    payload_model_for,
)
from .hasher import CanonicalSerializationError, Hasher

if TYPE_CHECKING:
    from ..db.store import LedgerStore

logger = get_logger(__name__)


class LedgerError(Exception):
    """Base exception for ledger errors."""
    pass


class InvalidInputError(LedgerError):
    """Raised before any write when partition, kind, reference or payload is malformed."""
    pass


class WriteFailureError(LedgerError):
    """
    Raised when the store rejected an append.

    The chain is unchanged. Retrying the whole append is safe because the
    head is re-read; the ledger itself never retries.
    """
    pass


def _require_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"{name} must be a non-empty string")
    return value


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# CHAIN CHECKS
# Pure functions: used by Ledger.verify and by the offline verifier.
# ============================================================

def check_entry(
    entry: LedgerEntry,
    partition: str,
    position: int,
    expected_previous: Optional[str],
) -> Optional[str]:
    """Return why entry cannot sit at position, or None if it can."""
    if entry.sequence_index != position:
        return f"sequence_index {entry.sequence_index} found at position {position}"

    if entry.partition != partition:
        return f"entry belongs to partition {entry.partition!r}"

    if not Hasher.constant_time_equal(entry.previous_digest, expected_previous):
        return "previous_digest does not match the preceding entry"

    try:
        computed = Hasher.digest(entry.digest_input(expected_previous))
    except CanonicalSerializationError as e:
        return f"entry is not canonically serializable: {e}"

    if not Hasher.constant_time_equal(computed, entry.payload_digest):
        return (
            f"digest mismatch: computed {computed[:16]}..., "
            f"stored {entry.payload_digest[:16]}..."
        )

    return None


def walk_chain(partition: str, entries: Iterable[LedgerEntry]) -> ChainVerification:
    """
    Verify entries given oldest-first, stopping at the first broken one.

    Only the running digest is kept, so entries may be a stream.
    """
    expected_previous: Optional[str] = None
    checked = 0

    for position, entry in enumerate(entries):
        reason = check_entry(entry, partition, position, expected_previous)
        if reason is not None:
            return ChainVerification(
                valid=False,
                broken_at_index=position,
                entries_checked=checked,
                reason=reason,
            )
        expected_previous = entry.payload_digest
        checked += 1

    return ChainVerification(valid=True, entries_checked=checked)


def check_complete(result: ChainVerification, expected_count: int) -> ChainVerification:
    """
    A clean walk that stopped short of the head is broken at the first missing index.
    """
    if not result.valid or result.entries_checked == expected_count:
        return result
    return ChainVerification(
        valid=False,
        broken_at_index=result.entries_checked,
        entries_checked=result.entries_checked,
        reason=(
            f"entry missing: head is at {expected_count - 1}, "
            f"chain ends at {result.entries_checked - 1}"
        ),
    )


class LedgerView:
    """
    Lazy, restartable view over a partition's entries.

    The bound is fixed when the view is created: entries appended later
    never show up, however many times the view is iterated.
    """

    def __init__(self, store: "LedgerStore", partition: str, upto: int, descending: bool = False):
        self._store = store
        self._partition = partition
        self._upto = upto
        self._descending = descending

    @property
    def partition(self) -> str:
        return self._partition

    @property
    def descending(self) -> bool:
        return self._descending

    def __iter__(self) -> Iterator[LedgerEntry]:
        if self._upto < 0:
            return iter(())
        return self._store.scan(self._partition, upto=self._upto, descending=self._descending)

    def __len__(self) -> int:
        return self._upto + 1

    def __repr__(self) -> str:
        order = "desc" if self._descending else "asc"
        return f"LedgerView(partition={self._partition!r}, entries={len(self)}, order={order})"


class Ledger:
    """
    The core ledger.

    CHAIN INTEGRITY GUARANTEES (per partition):
    - sequence_index runs 0..N-1 with no gaps or duplicates
    - previous_digest is None ONLY for sequence_index 0
    - payload_digest is recomputable from the entry's other fields
    - Entries are never updated; only whole-partition erasure removes them

    CONCURRENCY GUARANTEES (with LedgerStore):
    - Sequence numbers and previous digests come from the locked head
    - Appends and erasure on one partition are mutually exclusive
    - Appends on different partitions never wait on each other
    """

    def __init__(
        self,
        store: Optional["LedgerStore"] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], UUID]] = None,
    ):
        """
        Args:
            store: LedgerStore implementation. Defaults to an InMemoryLedgerStore.
            clock: Returns the timezone-aware creation time for new entries.
            id_factory: Returns the id for new entries.
        """
        if store is None:
            from ..db.store import InMemoryLedgerStore
            store = InMemoryLedgerStore()

        self._store = store
        self._clock = clock or _utc_now
        self._id_factory = id_factory or uuid4

    @property
    def store(self) -> "LedgerStore":
        return self._store

    # ============================================================
    # APPEND
    # ============================================================

    @staticmethod
    def _canonical_payload(kind: EntryKind, payload: Any) -> dict[str, Any]:
        """Validate payload against its kind's model and return the canonical dict."""
        model = payload_model_for(kind)

        if isinstance(payload, LedgerPayload):
            if not isinstance(payload, model):
                raise InvalidInputError(
                    f"{type(payload).__name__} is not a valid payload for kind {kind.value!r}"
                )
            validated = payload
        else:
            if not isinstance(payload, dict):
                raise InvalidInputError(
                    f"Payload must be a mapping, got {type(payload).__name__}"
                )
            try:
                validated = model.model_validate(payload)
            except PydanticValidationError as e:
                raise InvalidInputError(f"Invalid {kind.value} payload: {e}") from e

        try:
            return Hasher.canonical_dict(validated.canonical())
        except CanonicalSerializationError as e:
            raise InvalidInputError(str(e)) from e

    def append(
        self,
        partition: str,
        kind: EntryKind | str,
        reference_id: str,
        payload: LedgerPayload | dict[str, Any],
    ) -> LedgerEntry:
        """
        Append one entry to the partition's chain.

        Atomic append flow:
        1. Validate and canonicalize (no lock held, nothing written)
        2. Open begin_append() - locks the partition head
        3. Take sequence/previous digest from the locked head
        4. Hash and commit

        Raises:
            InvalidInputError: Malformed input, rejected before any write
            WriteFailureError: The store rejected the write; chain unchanged
        """
        _require_text("partition", partition)
        _require_text("reference_id", reference_id)
        if isinstance(kind, str) and not isinstance(kind, EntryKind):
            _require_text("kind", kind)
        try:
            kind = EntryKind(kind)
        except ValueError:
            raise InvalidInputError(
                f"Unknown entry kind {kind!r}. "
                f"Valid kinds: {', '.join(k.value for k in EntryKind)}"
            ) from None

        canonical = self._canonical_payload(kind, payload)

        start = time.perf_counter()
        try:
            with self._store.begin_append(partition) as ctx:
                head = ctx.head
                # Only the first entry may point at the sentinel
                if head.next_sequence > 0 and head.last_digest is None:
                    raise WriteFailureError(
                        f"Head of {partition!r} is at {head.last_sequence} "
                        "but has no digest"
                    )

                draft = LedgerEntry(
                    id=self._id_factory(),
                    partition=partition,
                    sequence_index=head.next_sequence,
                    kind=kind,
                    reference_id=reference_id,
                    payload=canonical,
                    previous_digest=head.last_digest,
                    payload_digest="",
                    created_at=self._clock(),
                )
                digest = Hasher.digest(draft.digest_input(head.last_digest))
                entry = draft.model_copy(update={"payload_digest": digest})

                ctx.commit(entry)

        except LedgerError:
            get_metrics().record_write_failure()
            raise
        except Exception as e:
            get_metrics().record_write_failure()
            logger.error(
                "Ledger append failed",
                partition=partition,
                kind=kind.value,
                reference_id=reference_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise WriteFailureError(f"Append to {partition!r} failed: {e}") from e

        latency_ms = (time.perf_counter() - start) * 1000
        get_metrics().record_append(latency_ms)
        logger.info(
            "Entry appended",
            partition=partition,
            kind=kind.value,
            sequence_index=entry.sequence_index,
            digest_prefix=entry.payload_digest[:16],
            latency_ms=round(latency_ms, 2),
        )
        return entry

    # ============================================================
    # READS
    # ============================================================

    def tail_digest(self, partition: str) -> Optional[str]:
        """payload_digest of the newest entry, or None for an empty chain."""
        _require_text("partition", partition)
        return self._store.get_head(partition).last_digest

    def count(self, partition: str) -> int:
        _require_text("partition", partition)
        return self._store.get_head(partition).next_sequence

    def list(self, partition: str, descending: bool = False) -> LedgerView:
        """Entries ordered by sequence_index, bounded by the head at call time."""
        _require_text("partition", partition)
        head = self._store.get_head(partition)
        return LedgerView(self._store, partition, head.last_sequence, descending=descending)

    # ============================================================
    # VERIFICATION
    # ============================================================

    def verify(self, partition: str) -> ChainVerification:
        """
        Walk the chain oldest-first and report the first broken index.

        The scan is bounded by the head at call time, streams entries and
        keeps only the running digest. A broken chain is returned, logged
        and counted, never raised and never repaired.
        """
        _require_text("partition", partition)
        head = self._store.get_head(partition)

        result = check_complete(
            walk_chain(partition, self._store.scan(partition, upto=head.last_sequence)),
            head.next_sequence,
        )

        if not result.valid:
            logger.error(
                "Chain integrity broken",
                partition=partition,
                broken_at_index=result.broken_at_index,
                reason=result.reason,
            )

        get_metrics().record_verification(result.valid)
        return result

    # ============================================================
    # ERASURE
    # ============================================================

    def erase(self, partition: str, hook: Optional[Callable[[], None]] = None) -> int:
        """
        Irreversibly delete the partition's chain.

        Holds the same exclusion as append; hook runs inside it. Numbering
        restarts at 0 afterwards.

        Returns:
            Number of entries removed

        Raises:
            WriteFailureError: The store (or hook) failed; nothing was erased
        """
        _require_text("partition", partition)
        try:
            removed = self._store.erase_partition(partition, hook=hook)
        except LedgerError:
            raise
        except Exception as e:
            logger.error("Partition erase failed", partition=partition, error=str(e))
            raise WriteFailureError(f"Erase of {partition!r} failed: {e}") from e

        logger.warning("Partition erased", partition=partition, entries_removed=removed)
        return removed
