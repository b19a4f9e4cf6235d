from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest

from sovereign_vault.core import Ledger, VaultService
from sovereign_vault.db import InMemoryLedgerStore, InMemoryRecordStore, VaultSettings

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class StepClock:
    """Deterministic clock: EPOCH, then one minute later on every call."""

    def __init__(self, start: datetime = EPOCH, step: timedelta = timedelta(minutes=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + self.step
        return current


class SequentialIds:
    """UUIDs 00000000-0000-4000-8000-000000000000, ...0001, ..."""

    def __init__(self):
        self.n = 0

    def __call__(self) -> UUID:
        value = UUID(f"00000000-0000-4000-8000-{self.n:012x}")
        self.n += 1
        return value


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def make_ledger():
    def _make(store):
        return Ledger(store, clock=StepClock(), id_factory=SequentialIds())
    return _make


@pytest.fixture
def ledger(store, make_ledger):
    return make_ledger(store)


@pytest.fixture
def records():
    return InMemoryRecordStore()


@pytest.fixture
def vault(ledger, records):
    return VaultService(ledger, records, settings=VaultSettings(), clock=StepClock())
