"""
HTTP tests for the vault API.

Each test builds its own app around a fresh in-memory vault.
"""

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from sovereign_vault.core import VaultService
from sovereign_vault.db import InMemoryLedgerStore, InMemoryRecordStore, StoreError
from sovereign_vault.main import create_app

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)
BASE = "/api/partitions/user-1"

STATE = {"intensity": 62, "valence": -20, "arousal": 70, "note": "private"}


@pytest.fixture
def client(vault):
    return TestClient(create_app(vault=vault))


def _tamper_second_entry(vault):
    store = vault.ledger.store
    entries = list(store.scan("user-1"))
    entries[1] = entries[1].model_copy(update={"reference_id": "forged"})
    store._overwrite("user-1", entries)


class TestRecordEndpoints:

    def test_record_state(self, client):
        response = client.post(f"{BASE}/states", json=STATE)

        assert response.status_code == 201
        body = response.json()
        assert body["entry"]["sequence_index"] == 0
        assert body["entry"]["previous_digest"] is None
        assert body["entry"]["reference_id"] == body["record"]["id"]
        assert body["entry"]["payload"] == {"intensity": 62, "valence": -20, "arousal": 70}
        assert body["record"]["note"] == "private"

    def test_record_risk_event(self, client):
        client.post(f"{BASE}/states", json=STATE)
        response = client.post(f"{BASE}/risk-events", json={"severity": 2, "trigger_type": "social"})

        assert response.status_code == 201
        assert response.json()["entry"]["sequence_index"] == 1
        assert response.json()["entry"]["kind"] == "risk-event"

    def test_record_session(self, client):
        response = client.post(f"{BASE}/sessions", json={"duration": 600, "session_type": "tracking"})
        assert response.status_code == 201
        assert response.json()["entry"]["payload"] == {"duration_seconds": 600, "session_type": "tracking"}

    def test_record_pattern(self, client):
        response = client.post(f"{BASE}/patterns", json={"pattern_type": "trend", "description": "rising"})
        assert response.status_code == 201
        assert client.get(f"{BASE}/ledger/tail").json()["entry_count"] == 0

    @pytest.mark.parametrize("body", [
        {"start_time": "2024-01-01T00:00:00"},
        {"start_time": "2024-01-01T00:00:00Z", "end_time": "2024-01-01T00:10:00"},
        {"start_time": "2024-01-01T00:10:00Z", "end_time": "2024-01-01T00:00:00Z"},
    ])
    def test_bad_session_times_are_422(self, client, body):
        assert client.post(f"{BASE}/sessions", json=body).status_code == 422
        assert client.get(f"{BASE}/sessions").json() == []

    def test_session_ending_before_default_start_is_400(self, client):
        response = client.post(f"{BASE}/sessions", json={"end_time": "2000-01-01T00:00:00Z"})
        assert response.status_code == 400

    def test_offset_session_keeps_partition_readable(self, client):
        response = client.post(
            f"{BASE}/sessions",
            json={"start_time": "2024-01-01T02:00:00+02:00", "end_time": "2024-01-01T02:30:00+02:00"},
        )
        assert response.status_code == 201
        assert response.json()["record"]["duration"] == 1800
        client.post(f"{BASE}/sessions", json={"duration": 60})

        assert client.get(f"{BASE}/vault/status").status_code == 200
        assert client.get(f"{BASE}/export").status_code == 200
        assert client.post(f"{BASE}/retention", params={"days": 30}).status_code == 200

    def test_out_of_range_body_is_422(self, client):
        response = client.post(f"{BASE}/risk-events", json={"severity": 11})
        assert response.status_code == 422

    def test_blank_partition_is_400(self, client):
        response = client.post("/api/partitions/%20/states", json=STATE)
        assert response.status_code == 400

    def test_write_failure_is_503(self, make_ledger):
        class FullStore(InMemoryLedgerStore):
            def _do_commit(self, ctx, entry):
                self._do_rollback(ctx)
                raise StoreError("disk full")

        vault = VaultService(make_ledger(FullStore()), InMemoryRecordStore())
        client = TestClient(create_app(vault=vault))

        response = client.post(f"{BASE}/states", json=STATE)
        assert response.status_code == 503
        assert "disk full" in response.json()["detail"]


class TestLedgerEndpoints:

    @pytest.fixture
    def populated(self, client):
        client.post(f"{BASE}/states", json=STATE)
        client.post(f"{BASE}/risk-events", json={"severity": 2})
        client.post(f"{BASE}/states", json={**STATE, "intensity": 10})
        return client

    def test_list_ascending(self, populated):
        body = populated.get(f"{BASE}/ledger").json()
        assert [e["entry"]["sequence_index"] for e in body] == [0, 1, 2]
        assert all(e["content_summary"] is not None for e in body)
        assert "note" not in body[0]["content_summary"]

    def test_list_descending_with_limit(self, populated):
        body = populated.get(f"{BASE}/ledger", params={"direction": "desc", "limit": 2}).json()
        assert [e["entry"]["sequence_index"] for e in body] == [2, 1]

    def test_list_bad_direction_is_422(self, populated):
        assert populated.get(f"{BASE}/ledger", params={"direction": "sideways"}).status_code == 422

    def test_tail(self, populated):
        body = populated.get(f"{BASE}/ledger/tail").json()
        entries = populated.get(f"{BASE}/ledger").json()
        assert body["entry_count"] == 3
        assert body["tail_digest"] == entries[-1]["entry"]["payload_digest"]

    def test_empty_partition(self, client):
        assert client.get("/api/partitions/nobody/ledger").json() == []
        assert client.get("/api/partitions/nobody/ledger/tail").json()["tail_digest"] is None
        assert client.get("/api/partitions/nobody/ledger/verify").json()["valid"] is True

    def test_verify_intact(self, populated):
        body = populated.get(f"{BASE}/ledger/verify").json()
        assert body == {"valid": True, "broken_at_index": None, "entries_checked": 3, "reason": None}

    def test_verify_broken_is_still_200(self, populated, vault):
        _tamper_second_entry(vault)

        response = populated.get(f"{BASE}/ledger/verify")
        assert response.status_code == 200
        assert response.json()["valid"] is False
        assert response.json()["broken_at_index"] == 1

    def test_status(self, populated):
        body = populated.get(f"{BASE}/vault/status").json()
        assert body["chain_valid"] is True
        assert body["total_entries"] == 3
        assert body["encryption_status"] == "obfuscated-label"
        assert body["record_counts"]["state"] == 2


class TestLifecycleEndpoints:

    def test_export_plain(self, client):
        client.post(f"{BASE}/states", json=STATE)
        response = client.get(f"{BASE}/export")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/json")
        assert response.headers["x-export-format"] == "plain"
        assert 'filename="vault-export-user-1.json"' in response.headers["content-disposition"]
        assert len(response.json()["ledger_entries"]) == 1

    def test_export_obfuscated(self, client):
        client.post(f"{BASE}/states", json=STATE)
        response = client.get(f"{BASE}/export", params={"format": "obfuscated"})

        assert response.headers["x-export-format"] == "obfuscated"
        document = json.loads(base64.b64decode(response.content))
        assert document["chain"]["entry_count"] == 1

    def test_export_unknown_format_is_422(self, client):
        assert client.get(f"{BASE}/export", params={"format": "zip"}).status_code == 422

    def test_retention(self, ledger):
        # Record stamped at EPOCH, retention applied 40 days later
        times = iter([EPOCH, EPOCH + timedelta(days=40)])
        vault = VaultService(ledger, InMemoryRecordStore(), clock=lambda: next(times))
        client = TestClient(create_app(vault=vault))

        client.post(f"{BASE}/states", json=STATE)
        body = client.post(f"{BASE}/retention", params={"days": 30}).json()

        assert body == {"partition": "user-1", "retention_days": 30, "records_deleted": 1}
        listed = client.get(f"{BASE}/ledger").json()
        assert len(listed) == 1
        assert listed[0]["content_summary"] is None

    def test_retention_rejects_zero_days(self, client):
        assert client.post(f"{BASE}/retention", params={"days": 0}).status_code == 422

    def test_erase_requires_confirm(self, client):
        client.post(f"{BASE}/states", json=STATE)
        response = client.delete(f"{BASE}/data")

        assert response.status_code == 400
        assert client.get(f"{BASE}/ledger/tail").json()["entry_count"] == 1

    def test_erase(self, client):
        client.post(f"{BASE}/states", json=STATE)
        client.post(f"{BASE}/risk-events", json={"severity": 2})

        response = client.delete(f"{BASE}/data", params={"confirm": "true"})
        assert response.json() == {"partition": "user-1", "ledger_entries": 2, "records": 2}

        again = client.post(f"{BASE}/states", json=STATE).json()
        assert again["entry"]["sequence_index"] == 0


class TestSystemEndpoints:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy", "service": "sovereign-vault"}

    def test_detailed_health(self, client):
        client.post(f"{BASE}/states", json=STATE)
        response = client.get("/health/detailed")

        assert response.status_code == 200
        checks = response.json()["checks"]
        assert checks["ledger_store"]["backend"] == "InMemoryLedgerStore"
        assert checks["ledger_store"]["partitions"] == 1
        assert "chain_integrity" not in checks

    def test_detailed_health_reports_broken_chain(self, client, vault):
        client.post(f"{BASE}/states", json=STATE)
        client.post(f"{BASE}/states", json=STATE)
        _tamper_second_entry(vault)

        response = client.get("/health/detailed", params={"verify": "true"})
        assert response.status_code == 503
        assert response.json()["checks"]["chain_integrity"]["broken"] == {"user-1": 1}

    def test_metrics(self, client):
        client.post(f"{BASE}/states", json=STATE)
        body = client.get("/metrics").json()
        assert body["entries_appended"] >= 1
        assert body["requests_total"] >= 1

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "abc123"})
        assert response.headers["x-request-id"] == "abc123"


class TestRecordReadEndpoints:

    @pytest.fixture
    def populated(self, client):
        for intensity in (10, 20, 30):
            client.post(f"{BASE}/states", json={**STATE, "intensity": intensity})
        client.post(f"{BASE}/risk-events", json={"severity": 2})
        client.post(f"{BASE}/sessions", json={"duration": 60})
        client.post(f"{BASE}/patterns", json={"pattern_type": "trend", "description": "rising"})
        return client

    def test_list_states_newest_first(self, populated):
        body = populated.get(f"{BASE}/states").json()
        assert [s["intensity"] for s in body] == [30, 20, 10]
        assert body[0]["note"] == "private"

    def test_list_states_with_limit_and_days(self, populated):
        assert len(populated.get(f"{BASE}/states", params={"limit": 2}).json()) == 2
        assert len(populated.get(f"{BASE}/states", params={"days": 1}).json()) == 3

    def test_recent_states(self, populated):
        body = populated.get(f"{BASE}/states/recent", params={"limit": 1}).json()
        assert [s["intensity"] for s in body] == [30]

    def test_risk_events(self, populated):
        assert [e["severity"] for e in populated.get(f"{BASE}/risk-events").json()] == [2]
        assert len(populated.get(f"{BASE}/risk-events/recent").json()) == 1

    def test_sessions_and_patterns(self, populated):
        assert populated.get(f"{BASE}/sessions").json()[0]["duration"] == 60
        assert populated.get(f"{BASE}/patterns").json()[0]["pattern_type"] == "trend"

    def test_other_partition_sees_nothing(self, populated):
        assert populated.get("/api/partitions/other/states").json() == []

    def test_zero_days_is_422(self, client):
        assert client.get(f"{BASE}/states", params={"days": 0}).status_code == 422

    def test_stats_today(self, populated):
        body = populated.get(f"{BASE}/stats/today").json()
        assert body == {"avg_intensity": 20, "peak_intensity": 30, "state_count": 3, "risk_event_count": 1}

    def test_analytics_summary(self, populated):
        body = populated.get(f"{BASE}/analytics/summary").json()
        assert body["total_states"] == 3
        assert body["total_risk_events"] == 1
        assert body["trend_direction"] == "up"
        assert len(body["weekly_average"]) == 7


class TestSettingsEndpoints:

    def test_defaults(self, client):
        body = client.get(f"{BASE}/settings").json()
        assert body == {"retention_days": 90, "include_notes": False, "export_format": "plain"}

    def test_patch_is_partial(self, client):
        client.patch(f"{BASE}/settings", json={"retention_days": 14})
        body = client.patch(f"{BASE}/settings", json={"export_format": "obfuscated"}).json()

        assert body == {"retention_days": 14, "include_notes": False, "export_format": "obfuscated"}
        assert client.get(f"{BASE}/settings").json() == body
        assert client.get("/api/partitions/other/settings").json()["retention_days"] == 90

    @pytest.mark.parametrize("body", [{"retention_days": 0}, {"export_format": "zip"}])
    def test_invalid_patch_is_422(self, client, body):
        assert client.patch(f"{BASE}/settings", json=body).status_code == 422

    def test_export_uses_partition_format(self, client):
        client.post(f"{BASE}/states", json=STATE)
        client.patch(f"{BASE}/settings", json={"export_format": "obfuscated"})

        response = client.get(f"{BASE}/export")
        assert response.headers["x-export-format"] == "obfuscated"

    def test_retention_uses_partition_window(self, client):
        client.patch(f"{BASE}/settings", json={"retention_days": 14})
        assert client.post(f"{BASE}/retention").json()["retention_days"] == 14

    def test_notes_in_ledger_view(self, client):
        client.post(f"{BASE}/states", json=STATE)
        client.patch(f"{BASE}/settings", json={"include_notes": True})

        assert client.get(f"{BASE}/ledger").json()[0]["content_summary"]["note"] == "private"
