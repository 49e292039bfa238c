"""Entry Serializer.

Validates a log call against the channel registry and builds the canonical
LogEntry. The serializer transforms, it never removes: the patient
identifier is replaced by a salted one-way SHA-256 hash so entries about the
same patient stay correlatable without the raw value ever being persisted.

The serializer does not redact ``details``; the AuditLogger runs the
Redaction Engine on every built entry before it is chained.

CRITICAL: Never store raw patient identifiers - only hash_identifier() output.
"""

import hashlib
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import fields
from datetime import UTC, datetime
from typing import Any

from .channels import ChannelRegistry, default_registry
from .config import DEFAULT_PHI_HASH_SALT, DEFAULT_USER_AGENT_MAX_LENGTH
from .errors import SerializationError
from .models import LEVELS, RESULTS, LogContext, LogEntry, format_timestamp

CONTEXT_FIELDS = frozenset(f.name for f in fields(LogContext))

DEFAULT_IP_ADDRESS = "0.0.0.0"
DEFAULT_USER_AGENT = "unknown"

_current_request_id: ContextVar[str | None] = ContextVar("ehr_audit_request_id", default=None)


def generate_request_id() -> str:
    """Generate unique request ID for correlation.

    Returns:
        UUID-based request ID
    """
    return f"req-{uuid.uuid4().hex[:12]}"


def current_request_id() -> str | None:
    """Return the ambient request ID, if one is set."""
    return _current_request_id.get()


@contextmanager
def request_context(request_id: str | None = None) -> Iterator[str]:
    """Set the ambient request ID for all log calls in this context.

    Works across threads started inside the block only if the context is
    copied (contextvars semantics); asyncio tasks inherit it automatically.

    Args:
        request_id: ID to use (generated when omitted)

    Yields:
        The active request ID

    Example:
        >>> with request_context("req-abc") as rid:
        ...     audit.log("encounter", "READ", {"encounter_id": "E1"})
    """
    rid = request_id or generate_request_id()
    token = _current_request_id.set(rid)
    try:
        yield rid
    finally:
        _current_request_id.reset(token)


def hash_identifier(value: Any, salt: str = DEFAULT_PHI_HASH_SALT) -> str:
    """Generate salted SHA-256 hash of an identifier for audit logging.

    Args:
        value: Identifier to hash (patient ID, e-mail, phone number, ...)
        salt: Static salt appended before hashing

    Returns:
        64-character hexadecimal SHA-256 hash
    """
    return hashlib.sha256(f"{value}{salt}".encode()).hexdigest()


def normalize_ip(ip_address: str | None) -> str:
    """Take the client address from a possibly comma-separated forwarded list."""
    if not ip_address:
        return DEFAULT_IP_ADDRESS
    first = str(ip_address).split(",")[0].strip()
    return first or DEFAULT_IP_ADDRESS


def coerce_context(context: LogContext | Mapping[str, Any] | None) -> LogContext:
    """Convert caller input into a LogContext.

    Args:
        context: LogContext, mapping with LogContext field names, or None

    Returns:
        LogContext

    Raises:
        SerializationError: If the mapping has unknown keys or context has the wrong type
    """
    if context is None:
        return LogContext()
    if isinstance(context, LogContext):
        return context
    if not isinstance(context, Mapping):
        raise SerializationError("context", f"expected a mapping, got {type(context).__name__}")
    unknown = sorted(str(k) for k in context if k not in CONTEXT_FIELDS)
    if unknown:
        raise SerializationError("context", f"unknown keys: {', '.join(unknown)}")
    return LogContext(**context)


class EntrySerializer:
    """Builds validated LogEntry objects. Stateless and thread-safe."""

    def __init__(
        self,
        registry: ChannelRegistry = default_registry,
        salt: str = DEFAULT_PHI_HASH_SALT,
        user_agent_max_length: int = DEFAULT_USER_AGENT_MAX_LENGTH,
    ) -> None:
        """Initialize serializer.

        Args:
            registry: Channel registry used for validation
            salt: Salt for patient identifier hashing
            user_agent_max_length: User agents are truncated to this length
        """
        self.registry = registry
        self.salt = salt
        self.user_agent_max_length = user_agent_max_length

    def build(
        self,
        channel: str,
        operation: str,
        context: LogContext | Mapping[str, Any] | None = None,
        *,
        level: str | None = None,
        timestamp: datetime | None = None,
    ) -> LogEntry:
        """Build a log entry.

        Args:
            channel: Registered channel
            operation: Operation registered for the channel
            context: Caller context (LogContext or mapping)
            level: Explicit level; defaults to ERROR for failures, else the channel default
            timestamp: Entry time (defaults to now, UTC)

        Returns:
            LogEntry with unredacted details and no hash

        Raises:
            UnknownChannelOrOperation: If channel or operation is not registered
            SerializationError: If any field is malformed
        """
        spec = self.registry.validate(channel, operation)
        ctx = coerce_context(context)

        if not isinstance(ctx.result, str) or ctx.result not in RESULTS:
            raise SerializationError("result", f"must be one of {sorted(RESULTS)}")

        if level is None:
            level = "ERROR" if ctx.result == "failure" else spec.default_level
        elif not isinstance(level, str) or level not in LEVELS:
            raise SerializationError("level", f"must be one of {sorted(LEVELS)}")

        if not isinstance(ctx.details, Mapping):
            raise SerializationError("details", "must be a mapping")

        if timestamp is None:
            timestamp = datetime.now(UTC)

        return LogEntry(
            timestamp=format_timestamp(timestamp),
            level=level,
            channel=channel,
            operation=operation,
            user_id=self._user_id(ctx.user_id),
            user_role=self._optional_str("user_role", ctx.user_role),
            encounter_id=self._optional_str("encounter_id", ctx.encounter_id),
            patient_id_hash=self.hash_patient_id(ctx.patient_id),
            ip_address=normalize_ip(ctx.ip_address),
            user_agent=self._user_agent(ctx.user_agent),
            request_id=ctx.request_id or current_request_id() or generate_request_id(),
            details=dict(ctx.details),
            result=ctx.result,
            duration_ms=self._duration(ctx.duration_ms),
        )

    def hash_patient_id(self, patient_id: Any) -> str | None:
        """Hash a patient identifier (one-way, for correlation only)."""
        if patient_id is None or patient_id == "":
            return None
        if not isinstance(patient_id, (str, int)) or isinstance(patient_id, bool):
            raise SerializationError("patient_id", "must be a string or integer")
        return hash_identifier(patient_id, self.salt)

    def _user_agent(self, user_agent: str | None) -> str:
        if not user_agent:
            return DEFAULT_USER_AGENT
        return str(user_agent)[: self.user_agent_max_length]

    @staticmethod
    def _user_id(user_id: Any) -> int | str | None:
        if user_id is None or isinstance(user_id, str):
            return user_id
        if isinstance(user_id, int) and not isinstance(user_id, bool):
            return user_id
        raise SerializationError("user_id", "must be a string, integer or None")

    @staticmethod
    def _optional_str(name: str, value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            raise SerializationError(name, "must be a string, integer or None")
        return str(value)

    @staticmethod
    def _duration(duration_ms: Any) -> int | None:
        if duration_ms is None:
            return None
        if isinstance(duration_ms, bool) or not isinstance(duration_ms, (int, float)):
            raise SerializationError("duration_ms", "must be a number")
        if duration_ms != duration_ms or duration_ms < 0 or duration_ms == float("inf"):
            raise SerializationError("duration_ms", "must be a finite non-negative number")
        return int(duration_ms)
