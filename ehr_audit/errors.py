"""Error taxonomy for the EHR audit chain.

This module defines the exception hierarchy and error codes (E101-E899)
used throughout the audit logging core. Messages identify the failing
component, field path or chain, but NEVER include the offending value:
audit-logging errors are themselves written to operator diagnostics and
must not become a PHI leak.

Code ranges:
- E1xx: Redaction Engine (fatal, fail closed)
- E2xx: Entry Serializer and Channel Registry
- E3xx: Chain Hasher and Log Store (write path)
- E4xx: Integrity Verifier (verification only, never raised on write)
- E8xx: Configuration
"""


class AuditError(Exception):
    """Base exception for all audit logging errors.

    Attributes:
        code: Error code (E101-E899)
        message: Human-readable error message (PHI-free)
        component: Component that raised the error
        details: Additional context-specific details (PHI-free)
    """

    def __init__(
        self,
        code: str,
        message: str,
        component: str,
        details: dict | None = None,
    ) -> None:
        """Initialize audit error.

        Args:
            code: Error code (e.g., 'E101')
            message: Error message
            component: Component name
            details: Optional additional details
        """
        self.code = code
        self.message = message
        self.component = component
        self.details = details or {}
        super().__init__(f"[{code}] {message}")


# Redaction Engine (E101-E199)


class RedactionError(AuditError):
    """Error E101: Input could not be safely redacted.

    Raised for any structure the engine cannot traverse. The whole log call
    fails; partially redacted output is never produced.
    """

    def __init__(self, path: str, reason: str) -> None:
        """Initialize redaction error.

        Args:
            path: Location of the offending node (e.g., 'details.notes[2]')
            reason: Why the node cannot be redacted
        """
        message = f"Cannot redact value at '{path}': {reason}"
        details = {"path": path, "reason": reason}
        super().__init__("E101", message, "redaction", details)


# Entry Serializer and Channel Registry (E201-E299)


class SerializationError(AuditError):
    """Error E201: Malformed log input."""

    def __init__(self, field: str, reason: str) -> None:
        """Initialize serialization error.

        Args:
            field: Name of the offending field
            reason: Why the field was rejected
        """
        message = f"Invalid log field '{field}': {reason}"
        details = {"field": field, "reason": reason}
        super().__init__("E201", message, "serializer", details)


class UnknownChannelOrOperation(AuditError):
    """Error E202: Channel or operation is not registered.

    This is a programmer error and always fails fast at the call site.
    """

    def __init__(self, channel: str, operation: str | None = None) -> None:
        """Initialize unknown channel/operation error.

        Args:
            channel: Requested channel
            operation: Requested operation (None when the channel itself is unknown)
        """
        if operation is None:
            message = f"Unknown log channel '{channel}'"
        else:
            message = f"Operation '{operation}' is not registered for channel '{channel}'"
        details = {"channel": channel, "operation": operation}
        super().__init__("E202", message, "registry", details)


# Chain Hasher and Log Store (E301-E399)


class ChainWriteError(AuditError):
    """Error E301: Entry could not be durably appended to its chain."""

    def __init__(self, channel: str, date: str, reason: str, code: str = "E301") -> None:
        """Initialize chain write error.

        Args:
            channel: Chain channel
            date: Chain date (YYYY-MM-DD)
            reason: Failure reason
            code: Error code override for subclasses
        """
        message = f"Append to chain {channel}/{date} failed: {reason}"
        details = {"channel": channel, "date": date, "reason": reason}
        super().__init__(code, message, "chain", details)


class ChainLockTimeout(ChainWriteError):
    """Error E302: Timed out waiting for the per-chain append lock."""

    def __init__(self, channel: str, date: str, timeout: float) -> None:
        """Initialize lock timeout error.

        Args:
            channel: Chain channel
            date: Chain date (YYYY-MM-DD)
            timeout: Seconds waited before giving up
        """
        super().__init__(channel, date, f"lock not acquired within {timeout:.2f}s", code="E302")
        self.details["timeout_seconds"] = timeout


class CheckpointConflict(ChainWriteError):
    """Error E303: The log file contradicts its checkpoint.

    Raised on cold start when the file holds fewer entries than the
    checkpoint recorded, or the same number ending in a different hash.

    Appends are refused so the checkpoint keeps the evidence the verifier
    needs. An operator clears the condition by moving the checkpoint aside
    after investigating.
    """

    def __init__(self, channel: str, date: str, recorded: int, found: int) -> None:
        """Initialize checkpoint conflict error.

        Args:
            channel: Chain channel
            date: Chain date (YYYY-MM-DD)
            recorded: Entry count in the checkpoint
            found: Entry count in the log file
        """
        reason = f"checkpoint records {recorded} entries, log file holds {found}"
        if recorded == found:
            reason = f"checkpoint and log file disagree on the hash of entry {found}"
        super().__init__(channel, date, reason, code="E303")
        self.details["checkpoint_entries"] = recorded
        self.details["file_entries"] = found


# Integrity Verifier (E401-E499)


class IntegrityViolation(AuditError):
    """Error E401: Chain verification detected tampering or corruption.

    Produced only by explicit verification. Never remediated automatically.
    """

    def __init__(self, channel: str, date: str, line: int | None, cause: str) -> None:
        """Initialize integrity violation.

        Args:
            channel: Verified channel
            date: Verified date (YYYY-MM-DD)
            line: First bad line (1-based) or None
            cause: Violation cause (hash_mismatch, malformed_json, ...)
        """
        where = f" at line {line}" if line is not None else ""
        message = f"Integrity violation in {channel}/{date}{where}: {cause}"
        details = {"channel": channel, "date": date, "line": line, "cause": cause}
        super().__init__("E401", message, "verifier", details)


# Configuration (E801-E899)


class ConfigurationError(AuditError):
    """Error E801: Configuration file or environment error."""

    def __init__(self, source: str, reason: str) -> None:
        """Initialize configuration error.

        Args:
            source: Configuration file path or environment variable name
            reason: Reason for configuration error
        """
        message = f"Configuration error in '{source}': {reason}"
        details = {"source": source, "reason": reason}
        super().__init__("E801", message, "config", details)
