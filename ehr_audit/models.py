"""Data models for the EHR audit chain.

This module defines the core data structures shared by the serializer, the
chain hasher and the integrity verifier: the persisted log entry, the
per-(channel, date) chain state and the verification report.
"""

import hashlib
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from typing import Any

from ehr_audit.errors import IntegrityViolation

# Seed for the first entry of every (channel, date) chain: SHA-256 of b"".
GENESIS_HASH = hashlib.sha256(b"").hexdigest()

LEVELS = frozenset({"INFO", "WARNING", "ERROR", "AUDIT", "DEBUG", "PERF"})
RESULTS = frozenset({"success", "failure", "logged", "initiated"})

# Persisted field order. "hash" is always last.
ENTRY_FIELDS = (
    "timestamp",
    "level",
    "channel",
    "operation",
    "user_id",
    "user_role",
    "encounter_id",
    "patient_id_hash",
    "ip_address",
    "user_agent",
    "request_id",
    "details",
    "result",
    "duration_ms",
    "hash",
)


def format_timestamp(moment: datetime) -> str:
    """Format a datetime as ISO 8601 UTC with millisecond precision.

    Args:
        moment: Timezone-aware datetime (naive values are taken as UTC)

    Returns:
        Timestamp such as '2024-03-01T14:05:09.123Z'
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class LogEntry:
    """One audit log line.

    Entries are immutable: they are built once by the serializer, redacted,
    linked into the chain (which sets ``hash``) and then written.

    Attributes:
        timestamp: ISO 8601 UTC timestamp with milliseconds and 'Z' suffix
        level: INFO, WARNING, ERROR, AUDIT, DEBUG or PERF
        channel: Registered channel (also selects the chain)
        operation: Registered operation for the channel
        user_id: Acting user (nullable)
        user_role: Role of the acting user (nullable)
        encounter_id: Encounter identifier (nullable)
        patient_id_hash: Salted SHA-256 of the patient identifier (never the raw value)
        ip_address: Client IP address
        user_agent: Truncated client user agent
        request_id: Correlation id shared by entries of one external request
        details: Redacted structured payload
        result: success, failure, logged or initiated
        duration_ms: Operation duration in milliseconds (nullable)
        hash: Chain link, empty until the entry is appended
    """

    timestamp: str
    level: str
    channel: str
    operation: str
    user_id: int | str | None = None
    user_role: str | None = None
    encounter_id: str | None = None
    patient_id_hash: str | None = None
    ip_address: str = "0.0.0.0"
    user_agent: str = "unknown"
    request_id: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    result: str = "success"
    duration_ms: int | None = None
    hash: str = ""

    @property
    def date(self) -> date:
        """UTC date of the entry, which selects its chain file."""
        return datetime.fromisoformat(self.timestamp.replace("Z", "+00:00")).date()

    def to_dict(self, include_hash: bool = True) -> dict[str, Any]:
        """Convert entry to a dictionary in persisted field order.

        Args:
            include_hash: Whether to include the chain hash field

        Returns:
            Dictionary representation of the entry
        """
        data = {name: getattr(self, name) for name in ENTRY_FIELDS}
        if not include_hash:
            del data["hash"]
        return data

    def with_hash(self, chain_hash: str) -> "LogEntry":
        """Return a copy of this entry carrying its chain hash."""
        return replace(self, hash=chain_hash)

    def with_details(self, details: dict[str, Any]) -> "LogEntry":
        """Return a copy of this entry with replaced details."""
        return replace(self, details=details)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LogEntry":
        """Rebuild an entry from a parsed log line.

        Unknown keys are ignored; missing optional keys take their defaults.
        """
        known = {name: data[name] for name in ENTRY_FIELDS if name in data}
        return cls(**known)


@dataclass(frozen=True)
class ChainState:
    """Running state of one (channel, date) chain.

    Attributes:
        channel: Chain channel
        date: Chain UTC date
        running_hash: Hash of the last appended entry (GENESIS_HASH when empty)
        entry_count: Number of entries in the chain
    """

    channel: str
    date: date
    running_hash: str = GENESIS_HASH
    entry_count: int = 0

    def advance(self, new_hash: str) -> "ChainState":
        """Return the state after one more entry with ``new_hash`` is appended."""
        return replace(self, running_hash=new_hash, entry_count=self.entry_count + 1)


@dataclass
class VerificationResult:
    """Outcome of verifying one (channel, date) chain.

    Attributes:
        valid: Whether every complete line verified
        channel: Verified channel
        date: Verified date (YYYY-MM-DD)
        entries_verified: Number of entries whose hash was recomputed successfully
        final_hash: Running hash after the last verified entry
        first_bad_line: 1-based line number of the first failure (None when valid)
        cause: Failure cause (hash_mismatch, malformed_json, missing_hash,
            truncated, checkpoint_mismatch, missing_file) or None
        error: Human-readable description of the failure
        partial_tail: Whether a trailing incomplete line was skipped
    """

    valid: bool
    channel: str
    date: str
    entries_verified: int = 0
    final_hash: str | None = None
    first_bad_line: int | None = None
    cause: str | None = None
    error: str | None = None
    partial_tail: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert verification result to dictionary for serialization."""
        return {
            "valid": self.valid,
            "channel": self.channel,
            "date": self.date,
            "entries_verified": self.entries_verified,
            "final_hash": self.final_hash,
            "first_bad_line": self.first_bad_line,
            "cause": self.cause,
            "error": self.error,
            "partial_tail": self.partial_tail,
        }

    def raise_for_violation(self) -> None:
        """Raise IntegrityViolation if verification failed.

        Raises:
            IntegrityViolation: If ``valid`` is False
        """
        if not self.valid:
            raise IntegrityViolation(
                self.channel, self.date, self.first_bad_line, self.cause or "unknown"
            )


@dataclass(frozen=True)
class LogContext:
    """Caller-supplied context for one log call.

    Callers pass raw values: ``patient_id`` is hashed and ``details`` is
    redacted by the logging core, never by the caller.

    Attributes:
        user_id: Acting user
        user_role: Role of the acting user
        encounter_id: Encounter identifier
        patient_id: Raw patient identifier (hashed before persistence)
        ip_address: Client IP address or forwarded-for list
        user_agent: Client user agent
        request_id: Correlation id (ambient or generated when omitted)
        details: Operation-specific structured data
        result: success, failure, logged or initiated
        duration_ms: Operation duration in milliseconds
    """

    user_id: int | str | None = None
    user_role: str | None = None
    encounter_id: int | str | None = None
    patient_id: int | str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None
    details: Any = field(default_factory=dict)
    result: str = "success"
    duration_ms: int | float | None = None
