"""
Tests for export serialization and the offline verifier.
"""

import base64
import json
from datetime import datetime, timezone

import pytest

from sovereign_vault.core import ExportError, ExportFormat, ExportSerializer, decode_export
from sovereign_vault.schemas import (
    ChainVerification,
    EmotionalStateCreate,
    EntryKind,
    LedgerEntry,
    RiskEventCreate,
)
from sovereign_vault.verify import ExportVerifier, VerificationResult, main

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)
PARTITION = "user-1"


@pytest.fixture
def populated(vault):
    state, _ = vault.record_state(
        PARTITION, EmotionalStateCreate(intensity=62, valence=-20, arousal=70, note="private")
    )
    risk, _ = vault.record_risk_event(PARTITION, RiskEventCreate(severity=2, trigger_type="social"))
    vault.record_state(PARTITION, EmotionalStateCreate(intensity=30, valence=10, arousal=20))
    return vault, state, risk


@pytest.fixture
def serializer(populated):
    vault = populated[0]
    return ExportSerializer(vault.records, vault.ledger, clock=lambda: EPOCH)


class TestExportSerializer:

    def test_document_sections(self, serializer):
        doc = serializer.build_document(PARTITION)

        assert doc["format_version"] == 1
        assert doc["partition"] == PARTITION
        assert doc["exported_at"] == EPOCH.isoformat()
        assert len(doc["emotional_states"]) == 2
        assert len(doc["risk_events"]) == 1
        assert doc["session_logs"] == []
        assert doc["analytics_patterns"] == []
        assert len(doc["ledger_entries"]) == 3

    def test_entries_exported_exactly_as_stored(self, serializer, populated):
        ledger = populated[0].ledger
        doc = serializer.build_document(PARTITION)

        exported = [LedgerEntry.model_validate(e) for e in doc["ledger_entries"]]
        assert exported == list(ledger.list(PARTITION))

    def test_chain_summary(self, serializer, populated):
        ledger = populated[0].ledger
        chain = serializer.build_document(PARTITION)["chain"]

        assert chain == {
            "valid": True,
            "broken_at_index": None,
            "tail_digest": ledger.tail_digest(PARTITION),
            "entry_count": 3,
        }

    def test_verdict_describes_the_exported_entries(self, serializer, populated, monkeypatch):
        ledger = populated[0].ledger
        entries = list(ledger.store.scan(PARTITION))
        entries[1] = entries[1].model_copy(update={"reference_id": "forged"})
        ledger.store._overwrite(PARTITION, entries)
        # A separate verification pass must not be what the document reports
        monkeypatch.setattr(ledger, "verify", lambda partition: ChainVerification(valid=True, entries_checked=3))

        chain = serializer.build_document(PARTITION)["chain"]

        assert chain["valid"] is False
        assert chain["broken_at_index"] == 1

    def test_missing_tail_reported_broken(self, serializer, populated):
        populated[0].ledger.store._partition(PARTITION).entries.pop()

        doc = serializer.build_document(PARTITION)

        assert doc["chain"]["valid"] is False
        assert doc["chain"]["broken_at_index"] == 2
        assert len(doc["ledger_entries"]) == 2

    def test_export_does_not_touch_the_ledger(self, serializer, populated):
        ledger = populated[0].ledger
        before = list(ledger.list(PARTITION))
        serializer.export(PARTITION, ExportFormat.OBFUSCATED)
        assert list(ledger.list(PARTITION)) == before

    def test_plain_and_obfuscated_decode_identically(self, serializer):
        plain = serializer.export(PARTITION, "plain")
        obfuscated = serializer.export(PARTITION, "obfuscated")

        assert base64.b64decode(obfuscated) == plain
        assert decode_export(plain) == decode_export(obfuscated) == json.loads(plain)

    def test_unknown_format_rejected(self, serializer):
        with pytest.raises(ValueError):
            serializer.export(PARTITION, "zip")

    def test_empty_partition(self, serializer):
        doc = serializer.build_document("nobody")
        assert doc["ledger_entries"] == []
        assert doc["chain"]["tail_digest"] is None
        assert doc["chain"]["entry_count"] == 0

    @pytest.mark.parametrize(
        "data",
        [b"not an export!!", b"[1, 2, 3]", b'{"partition": "x"}', base64.b64encode(b"\xff\xfe")],
    )
    def test_decode_rejects_garbage(self, data):
        with pytest.raises(ExportError):
            decode_export(data)


class TestExportVerifier:

    def _document(self, serializer):
        return json.loads(serializer.export(PARTITION))

    def test_intact_export_verifies(self, serializer):
        report = ExportVerifier(self._document(serializer)).verify()

        assert report.result is VerificationResult.VERIFIED
        assert report.exit_code == 0
        assert report.entry_count == 3
        assert report.checks_failed == []
        assert report.warnings == []

    def test_edited_payload_is_tampered(self, serializer):
        doc = self._document(serializer)
        doc["ledger_entries"][1]["payload"]["severity"] = 9

        report = ExportVerifier(doc).verify()
        assert report.result is VerificationResult.TAMPERED
        assert report.broken_at_index == 1
        assert report.exit_code == 1

    def test_dropped_entry_in_the_middle_is_tampered(self, serializer):
        doc = self._document(serializer)
        del doc["ledger_entries"][1]

        report = ExportVerifier(doc).verify()
        assert report.result is VerificationResult.TAMPERED
        assert report.broken_at_index == 1

    def test_truncated_tail_is_incomplete(self, serializer):
        doc = self._document(serializer)
        doc["ledger_entries"].pop()

        report = ExportVerifier(doc).verify()
        assert report.result is VerificationResult.INCOMPLETE
        assert report.exit_code == 2

    @pytest.mark.parametrize("key", ["format_version", "chain", "partition"])
    def test_missing_section_is_invalid(self, serializer, key):
        doc = self._document(serializer)
        del doc[key]
        assert ExportVerifier(doc).verify().result is VerificationResult.INVALID_FORMAT

    def test_unknown_version_is_invalid(self, serializer):
        doc = self._document(serializer)
        doc["format_version"] = 99
        assert ExportVerifier(doc).verify().exit_code == 3

    def test_malformed_entry_is_invalid(self, serializer):
        doc = self._document(serializer)
        doc["ledger_entries"][0]["sequence_index"] = "first"
        assert ExportVerifier(doc).verify().result is VerificationResult.INVALID_FORMAT

    def test_records_removed_by_retention_only_warn(self, populated):
        vault, state, risk = populated
        vault.records.delete(PARTITION, EntryKind.RISK_EVENT, risk.id)

        doc = json.loads(vault.export(PARTITION, "plain"))
        report = ExportVerifier(doc).verify()

        assert report.result is VerificationResult.VERIFIED
        assert report.warnings == ["1 entries reference records no longer present"]


class TestVerifyCommand:

    def test_plain_file(self, serializer, tmp_path):
        path = tmp_path / "export.json"
        path.write_bytes(serializer.export(PARTITION, "plain"))
        assert main([str(path)]) == 0

    def test_obfuscated_file(self, serializer, tmp_path):
        path = tmp_path / "export.b64"
        path.write_bytes(serializer.export(PARTITION, "obfuscated"))
        assert main([str(path), "--verbose"]) == 0

    def test_tampered_file_json_output(self, serializer, tmp_path, capsys):
        doc = json.loads(serializer.export(PARTITION))
        doc["ledger_entries"][0]["reference_id"] = "forged"
        path = tmp_path / "export.json"
        path.write_text(json.dumps(doc))
        capsys.readouterr()

        assert main([str(path), "--json"]) == 1
        output = json.loads(capsys.readouterr().out)
        assert output["result"] == "TAMPERED"
        assert output["broken_at_index"] == 0

    def test_missing_file(self, tmp_path):
        assert main([str(tmp_path / "nope.json")]) == 3

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "export.json"
        path.write_bytes(b"definitely not json")
        assert main([str(path)]) == 3
