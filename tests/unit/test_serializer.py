"""Unit tests for the Entry Serializer and Channel Registry.

Tests verify channel/operation validation, patient identifier hashing,
field normalization and request id propagation.
"""

import hashlib
from datetime import UTC, datetime

import pytest

from ehr_audit.channels import ChannelRegistry, ChannelSpec, default_registry
from ehr_audit.errors import SerializationError, UnknownChannelOrOperation
from ehr_audit.models import ENTRY_FIELDS, LogContext
from ehr_audit.serializer import (
    EntrySerializer,
    current_request_id,
    generate_request_id,
    hash_identifier,
    normalize_ip,
    request_context,
)

SALT = "test-salt"


class TestChannelRegistry:
    """Test the closed channel registry."""

    def test_default_channels(self):
        """All clinical and operational channels should be registered."""
        expected = {
            "ehr",
            "encounter",
            "vitals",
            "assessment",
            "treatment",
            "signature",
            "finalization",
            "phi_access",
            "dashboard",
            "metrics",
            "cache",
            "performance",
            "access",
        }
        assert set(default_registry) == expected

    def test_validate_known_pair(self):
        """A registered channel/operation pair should validate."""
        spec = default_registry.validate("encounter", "READ")
        assert spec.name == "encounter"

    def test_unknown_channel(self):
        """Unknown channels should raise UnknownChannelOrOperation."""
        with pytest.raises(UnknownChannelOrOperation) as exc_info:
            default_registry.validate("billing", "READ")

        assert exc_info.value.code == "E202"

    def test_unknown_operation(self):
        """Operations not registered for the channel should be rejected."""
        with pytest.raises(UnknownChannelOrOperation):
            default_registry.validate("vitals", "DELETE")

    def test_operation_case_sensitive(self):
        """Operations should not be coerced to upper case."""
        with pytest.raises(UnknownChannelOrOperation):
            default_registry.validate("encounter", "read")

    def test_non_string_operation(self):
        """Non-string operations should be rejected, not crash."""
        with pytest.raises(UnknownChannelOrOperation):
            default_registry.validate("encounter", None)  # type: ignore[arg-type]

    def test_channel_defaults(self):
        """Channel defaults should follow the channel table."""
        assert default_registry.get("phi_access").default_level == "AUDIT"
        assert default_registry.get("cache").default_level == "DEBUG"
        assert default_registry.get("performance").default_level == "PERF"
        assert default_registry.get("dashboard").accepts_metrics is True
        assert default_registry.get("encounter").accepts_metrics is False

    def test_unsafe_channel_name_rejected(self):
        """Channel names must be safe file name prefixes."""
        with pytest.raises(ValueError):
            ChannelRegistry([ChannelSpec("../etc", frozenset({"READ"}))])

    def test_duplicate_channel_rejected(self):
        """Channels must be unique."""
        spec = ChannelSpec("audit", frozenset({"READ"}))
        with pytest.raises(ValueError):
            ChannelRegistry([spec, spec])

    def test_unknown_default_level_rejected(self):
        """Channel default levels must be known levels."""
        with pytest.raises(ValueError):
            ChannelRegistry([ChannelSpec("audit", frozenset({"READ"}), default_level="TRACE")])


class TestHashing:
    """Test identifier hashing."""

    def test_hash_identifier_matches_definition(self):
        """Hash should be SHA-256 of the identifier followed by the salt."""
        expected = hashlib.sha256(b"P-100" + SALT.encode()).hexdigest()
        assert hash_identifier("P-100", SALT) == expected

    def test_int_and_str_identifiers_equal(self):
        """Integer identifiers should hash like their string form."""
        assert hash_identifier(42, SALT) == hash_identifier("42", SALT)

    def test_salt_changes_hash(self):
        """Different salts should produce different hashes."""
        assert hash_identifier("P-100", "a") != hash_identifier("P-100", "b")


class TestEntrySerializer:
    """Test building log entries."""

    def setup_method(self):
        """Create serializer with a test salt."""
        self.serializer = EntrySerializer(salt=SALT)

    def test_patient_id_hashed(self):
        """Raw patient identifiers should be replaced by their salted hash."""
        entry = self.serializer.build("encounter", "READ", {"patient_id": "P-100"})

        assert entry.patient_id_hash == hash_identifier("P-100", SALT)
        assert "P-100" not in str(entry.to_dict())

    def test_missing_patient_id(self):
        """Absent patient identifiers should give a null hash."""
        entry = self.serializer.build("encounter", "READ")
        assert entry.patient_id_hash is None

    def test_field_order(self):
        """Entries should serialize fields in the documented order."""
        entry = self.serializer.build("encounter", "READ")
        assert tuple(entry.to_dict()) == ENTRY_FIELDS

    def test_timestamp_format(self):
        """Timestamps should be UTC ISO 8601 with milliseconds and Z suffix."""
        moment = datetime(2024, 3, 1, 14, 5, 9, 123456, tzinfo=UTC)
        entry = self.serializer.build("encounter", "READ", timestamp=moment)
        assert entry.timestamp == "2024-03-01T14:05:09.123Z"
        assert entry.date.isoformat() == "2024-03-01"

    def test_user_agent_truncated(self):
        """User agents should be truncated to 500 characters."""
        entry = self.serializer.build("encounter", "READ", {"user_agent": "x" * 900})
        assert len(entry.user_agent) == 500

    def test_user_agent_default(self):
        """Missing user agents should be recorded as 'unknown'."""
        assert self.serializer.build("encounter", "READ").user_agent == "unknown"

    def test_forwarded_ip_first_entry(self):
        """Forwarded-for lists should resolve to the client address."""
        entry = self.serializer.build(
            "encounter", "READ", {"ip_address": "203.0.113.7, 10.0.0.1"}
        )
        assert entry.ip_address == "203.0.113.7"

    def test_ip_default(self):
        """Missing IP addresses should default to 0.0.0.0."""
        assert normalize_ip(None) == "0.0.0.0"
        assert normalize_ip("") == "0.0.0.0"

    def test_default_level_from_channel(self):
        """Level should default to the channel default."""
        assert self.serializer.build("phi_access", "PHI_ACCESS").level == "AUDIT"
        assert self.serializer.build("encounter", "READ").level == "INFO"

    def test_failure_defaults_to_error(self):
        """Failed operations should default to ERROR."""
        entry = self.serializer.build("encounter", "READ", {"result": "failure"})
        assert entry.level == "ERROR"

    def test_explicit_level_wins(self):
        """An explicit level should override the defaults."""
        entry = self.serializer.build("encounter", "READ", {"result": "failure"}, level="WARNING")
        assert entry.level == "WARNING"

    def test_invalid_level(self):
        """Unknown levels should raise SerializationError."""
        with pytest.raises(SerializationError):
            self.serializer.build("encounter", "READ", level="TRACE")

    def test_invalid_result(self):
        """Unknown results should raise SerializationError."""
        with pytest.raises(SerializationError) as exc_info:
            self.serializer.build("encounter", "READ", {"result": "maybe"})

        assert exc_info.value.code == "E201"

    def test_details_must_be_mapping(self):
        """Non-mapping details should raise SerializationError."""
        with pytest.raises(SerializationError):
            self.serializer.build("encounter", "READ", {"details": ["a"]})

    def test_unknown_context_key(self):
        """Unknown context keys should raise SerializationError."""
        with pytest.raises(SerializationError) as exc_info:
            self.serializer.build("encounter", "READ", {"patient_name": "Jane"})

        assert "patient_name" in str(exc_info.value)

    def test_duration_converted_to_int(self):
        """Durations should be stored as integer milliseconds."""
        entry = self.serializer.build("encounter", "READ", {"duration_ms": 12.9})
        assert entry.duration_ms == 12

    def test_negative_duration_rejected(self):
        """Negative durations should raise SerializationError."""
        with pytest.raises(SerializationError):
            self.serializer.build("encounter", "READ", {"duration_ms": -1})

    def test_nan_duration_rejected(self):
        """NaN durations should raise SerializationError."""
        with pytest.raises(SerializationError):
            self.serializer.build("encounter", "READ", {"duration_ms": float("nan")})

    def test_encounter_id_stringified(self):
        """Integer encounter ids should be stored as strings."""
        entry = self.serializer.build("encounter", "READ", LogContext(encounter_id=77))
        assert entry.encounter_id == "77"

    def test_unknown_channel_propagates(self):
        """Unknown channels should fail before anything else is checked."""
        with pytest.raises(UnknownChannelOrOperation):
            self.serializer.build("nope", "READ", {"result": "maybe"})


class TestRequestIds:
    """Test request id generation and propagation."""

    def test_generated_format(self):
        """Generated ids should look like req-<12 hex>."""
        rid = generate_request_id()
        assert rid.startswith("req-")
        assert len(rid) == 16

    def test_explicit_request_id(self):
        """An explicit request id should be used as-is."""
        entry = EntrySerializer().build("encounter", "READ", {"request_id": "req-explicit"})
        assert entry.request_id == "req-explicit"

    def test_ambient_request_id(self):
        """Entries built inside request_context should share its id."""
        serializer = EntrySerializer()
        with request_context("req-ambient") as rid:
            first = serializer.build("encounter", "READ")
            second = serializer.build("vitals", "READ")

        assert rid == "req-ambient"
        assert first.request_id == second.request_id == "req-ambient"
        assert current_request_id() is None

    def test_fresh_id_per_entry_without_context(self):
        """Without an ambient id each entry should get its own id."""
        serializer = EntrySerializer()
        a = serializer.build("encounter", "READ")
        b = serializer.build("encounter", "READ")
        assert a.request_id != b.request_id
