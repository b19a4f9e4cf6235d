"""
Tests for canonical hashing.

If a pinned value here changes, every stored chain becomes unverifiable.
"""

import json
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

import pytest

from sovereign_vault.core import CanonicalSerializationError, Hasher
from sovereign_vault.schemas import EntryKind, RiskEventPayload, SessionPayload, StatePayload


class TestHasher:
    """Test canonical hashing - THIS IS SACRED GROUND."""

    def test_deterministic_digest(self):
        data = {"name": "test", "value": 42}
        assert Hasher.digest(data) == Hasher.digest(data)

    def test_key_order_does_not_matter(self):
        assert Hasher.digest({"b": 2, "a": 1}) == Hasher.digest({"a": 1, "b": 2})

    def test_nested_key_order_does_not_matter(self):
        data1 = {"outer": {"z": 1, "a": 2}, "inner": {"b": 3, "a": 4}}
        data2 = {"inner": {"a": 4, "b": 3}, "outer": {"a": 2, "z": 1}}
        assert Hasher.digest(data1) == Hasher.digest(data2)

    def test_digest_shape(self):
        digest = Hasher.digest({"a": 1})
        assert len(digest) == 64
        assert Hasher.is_digest(digest)
        assert not Hasher.is_digest(digest.upper())
        assert not Hasher.is_digest("abc")

    def test_nulls_omitted(self):
        assert Hasher.canonicalize({"a": 1, "b": None}) == Hasher.canonicalize({"a": 1})

    def test_empty_values_preserved(self):
        """Empty strings and lists are data, not absence."""
        assert Hasher.canonicalize({"a": ""}) != Hasher.canonicalize({"a": None})
        assert Hasher.canonicalize({"a": []}) != Hasher.canonicalize({})

    def test_datetime_requires_timezone(self):
        with pytest.raises(CanonicalSerializationError, match="timezone-naive"):
            Hasher.canonicalize({"timestamp": datetime(2024, 1, 1, 12, 0, 0)})

    def test_datetime_normalized_to_utc(self):
        utc_time = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        plus5 = datetime(2024, 1, 1, 17, 0, 0, tzinfo=timezone(timedelta(hours=5)))
        assert Hasher.digest({"t": utc_time}) == Hasher.digest({"t": plus5})

    def test_datetime_includes_microseconds(self):
        dt1 = datetime(2024, 1, 1, 12, 0, 0, 0, tzinfo=timezone.utc)
        dt2 = datetime(2024, 1, 1, 12, 0, 0, 1, tzinfo=timezone.utc)
        assert Hasher.digest({"t": dt1}) != Hasher.digest({"t": dt2})

    def test_uuid_lowercase(self):
        canonical = Hasher.canonicalize({"id": UUID("550E8400-E29B-41D4-A716-446655440000")})
        assert "550e8400" in canonical
        assert "550E8400" not in canonical

    def test_enum_uses_value(self):
        canonical = Hasher.canonicalize({"kind": EntryKind.RISK_EVENT})
        assert '"risk-event"' in canonical
        assert "RISK_EVENT" not in canonical

    def test_no_whitespace_in_output(self):
        canonical = Hasher.canonicalize({"a": 1, "b": {"c": 2}})
        assert " " not in canonical
        assert "\n" not in canonical

    def test_sets_not_allowed(self):
        with pytest.raises(CanonicalSerializationError, match="set"):
            Hasher.canonicalize({"items": {1, 2, 3}})

    def test_bytes_not_allowed(self):
        with pytest.raises(CanonicalSerializationError, match="bytes"):
            Hasher.canonicalize({"raw": b"\x00"})

    def test_floats_banned(self):
        with pytest.raises(CanonicalSerializationError, match="Floats are banned"):
            Hasher.canonicalize({"value": 3.14159})
        with pytest.raises(CanonicalSerializationError, match="Floats are banned"):
            Hasher.canonicalize({"value": float("nan")})

    def test_non_finite_decimal_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="non-finite"):
            Hasher.canonicalize({"value": Decimal("Infinity")})

    def test_non_string_keys_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="must be string"):
            Hasher.canonicalize({1: "one"})

    def test_top_level_must_be_dict(self):
        for value in ([1, 2, 3], "hello", 42):
            with pytest.raises(CanonicalSerializationError, match="requires a dict"):
                Hasher.canonicalize(value)

    def test_version_injection(self):
        canonical = Hasher.canonicalize({"foo": "bar"})
        assert canonical.startswith('{"__canon_v":1,')
        assert json.loads(canonical)["__canon_v"] == 1

    def test_constant_time_equal(self):
        digest = Hasher.digest({"a": 1})
        assert Hasher.constant_time_equal(digest, digest)
        assert not Hasher.constant_time_equal(digest, Hasher.digest({"a": 2}))
        assert Hasher.constant_time_equal(None, None)
        assert not Hasher.constant_time_equal(None, digest)

    def test_golden_canonical_format(self):
        """
        GOLDEN TEST: Documents the exact canonical format.

        THIS TEST MUST NEVER CHANGE.
        """
        test_data = {
            "string": "hello",
            "integer": 42,
            "decimal": Decimal("3.14159"),
            "boolean": True,
            "null_omitted": None,
            "uuid": UUID("550e8400-e29b-41d4-a716-446655440000"),
            "date": date(2024, 1, 15),
            "datetime": datetime(2024, 1, 15, 12, 30, 45, 123456, tzinfo=timezone.utc),
            "nested": {"z_key": "last", "a_key": "first"},
            "list": [1, 2, 3],
            "empty_string": "",
            "empty_list": [],
        }

        EXPECTED_CANONICAL = (
            '{"__canon_v":1,"boolean":true,"date":"2024-01-15",'
            '"datetime":"2024-01-15T12:30:45.123456Z","decimal":"3.14159",'
            '"empty_list":[],"empty_string":"","integer":42,"list":[1,2,3],'
            '"nested":{"a_key":"first","z_key":"last"},"string":"hello",'
            '"uuid":"550e8400-e29b-41d4-a716-446655440000"}'
        )
        EXPECTED_DIGEST = "8cdaf50a263888f11b2c3404ce14c8012641db34e98994e55fbb3989e8ee09cc"

        assert Hasher.canonicalize(test_data) == EXPECTED_CANONICAL
        assert Hasher.digest(test_data) == EXPECTED_DIGEST


class TestNumberNormalization:
    """One logical number, one encoding."""

    def test_integral_decimal_equals_int(self):
        assert Hasher.canonicalize({"v": Decimal("62.00")}) == Hasher.canonicalize({"v": 62})
        assert Hasher.canonicalize({"v": 62}) == '{"__canon_v":1,"v":62}'

    def test_trailing_zeros_dropped(self):
        assert Hasher.canonicalize({"v": Decimal("3.50")}) == '{"__canon_v":1,"v":"3.5"}'

    def test_no_exponent_notation(self):
        assert Hasher.canonical_dict({"v": Decimal("1E-7")}) == {"v": "0.0000001"}
        assert Hasher.canonical_dict({"v": Decimal("1E+3")}) == {"v": 1000}

    def test_negative_decimal(self):
        assert Hasher.canonical_dict({"v": Decimal("-0.50")}) == {"v": "-0.5"}

    def test_canonical_dict_is_fixed_point(self):
        data = {"b": Decimal("2.50"), "a": {"y": Decimal("7"), "x": None}, "c": "text"}
        once = Hasher.canonical_dict(data)
        assert Hasher.canonical_dict(once) == once
        assert Hasher.digest(once) == Hasher.digest(data)


class TestTaggedPayloads:
    """Each kind owns its canonicalization rule."""

    def test_state_payload_coerces_floats(self):
        payload = StatePayload(intensity=62.0, valence=-20, arousal=70.5)
        canonical = Hasher.canonical_dict(payload.canonical())
        assert canonical == {"intensity": 62, "valence": -20, "arousal": "70.5"}

    def test_state_payload_bounds(self):
        with pytest.raises(ValueError):
            StatePayload(intensity=101, valence=0, arousal=0)
        with pytest.raises(ValueError):
            StatePayload(intensity=50, valence=-101, arousal=0)

    def test_state_payload_rejects_extra_fields(self):
        """Notes never reach the chain."""
        with pytest.raises(ValueError):
            StatePayload(intensity=1, valence=1, arousal=1, note="private")

    def test_risk_event_trigger_case_folded(self):
        a = RiskEventPayload(severity=2, trigger_type=" Social ")
        b = RiskEventPayload(severity=2, trigger_type="social")
        assert a.canonical() == b.canonical() == {"severity": 2, "trigger_type": "social"}

    def test_risk_event_blank_trigger_omitted(self):
        assert RiskEventPayload(severity=2, trigger_type="  ").canonical() == {"severity": 2}

    def test_session_payload_omits_unset(self):
        payload = SessionPayload(duration_seconds=600, session_type="Reflection")
        assert payload.canonical() == {"duration_seconds": 600, "session_type": "reflection"}
