"""Tamper-evident, PHI-redacting audit logger.

This module implements the write path of the EHR audit trail (HIPAA audit
controls, 45 CFR 164.312(b)):

    serializer -> redaction engine -> chain hasher -> log store

Features:
- JSONL format, one file per channel per UTC day
- SHA-256 hash chain per (channel, date) for tamper evidence
- Field-name and pattern-based PHI redaction before anything is hashed
- fsync on every append (no batching of compliance records)
- Optional request-scoped performance metrics for operational channels

Security:
- Raw patient identifiers are replaced by salted one-way hashes
- Redaction failures fail the whole write (fail closed)
- Diagnostics never include PHI values

Example:
    >>> from ehr_audit import AuditConfig, AuditLogger
    >>> with AuditLogger(AuditConfig(log_dir="/var/log/ehr_audit")) as audit:
    ...     audit.log("encounter", "READ", user_id=7, encounter_id="E-100", patient_id="P-9")
"""

import logging
import threading
from collections.abc import Mapping
from dataclasses import replace
from datetime import date, datetime
from typing import Any

from ..chain.hasher import ChainHasher
from ..chain.state import ChainStateStore
from ..chain.store import LogStore
from ..chain.verifier import IntegrityVerifier
from ..channels import ChannelRegistry, default_registry
from ..config import AuditConfig
from ..errors import (
    AuditError,
    CheckpointConflict,
    RedactionError,
    SerializationError,
    UnknownChannelOrOperation,
)
from ..models import LogContext, LogEntry, VerificationResult
from ..performance import RequestMetrics
from ..redaction.engine import RedactionEngine
from ..redaction.rules import RedactionRuleSet, load_rules
from ..serializer import CONTEXT_FIELDS, EntrySerializer, coerce_context
from ..statistics import LogStatistics, collect_statistics
from .events import AuditEvent

logger = logging.getLogger(__name__)
diagnostics = logging.getLogger("ehr_audit.diagnostics")


def _merge_context(
    context: LogContext | Mapping[str, Any] | None, fields: dict[str, Any]
) -> LogContext:
    if fields:
        unknown = sorted(k for k in fields if k not in CONTEXT_FIELDS)
        if unknown:
            raise SerializationError("context", f"unknown keys: {', '.join(unknown)}")
        if context is None:
            context = fields
        elif isinstance(context, LogContext):
            context = replace(context, **fields)
        elif isinstance(context, Mapping):
            context = {**context, **fields}
    return coerce_context(context)


class AuditLogger:
    """Audit logging facade.

    One instance per process per log directory. The instance is thread-safe:
    appends to the same (channel, date) chain are serialized, appends to
    different chains run in parallel.

    Attributes:
        config: Active configuration
        registry: Channel registry used for validation
        rules: Active redaction rule set (immutable)
        degraded_writes: Number of entries dropped by try_log()
    """

    def __init__(
        self,
        config: AuditConfig | None = None,
        *,
        registry: ChannelRegistry = default_registry,
        rules: RedactionRuleSet | None = None,
    ) -> None:
        """Initialize audit logger.

        Args:
            config: Configuration (read from the environment when None)
            registry: Channel registry
            rules: Redaction rules (loaded from config.redaction_rules_path when None)

        Raises:
            ConfigurationError: If the configuration or redaction rules are invalid
        """
        self.config = config or AuditConfig.from_env()
        self.registry = registry
        self.rules = rules or load_rules(self.config.redaction_rules_path)

        self.serializer = EntrySerializer(
            registry, self.config.phi_hash_salt, self.config.user_agent_max_length
        )
        self.redactor = RedactionEngine(self.rules)
        self.store = LogStore(self.config.log_dir)
        self.state_store = ChainStateStore(self.config.log_dir, self.config.state_key)
        self.hasher = ChainHasher(self.store, self.state_store, self.config.lock_timeout_seconds)
        self.verifier = IntegrityVerifier(self.config.log_dir, self.config.state_key)

        self.degraded_writes = 0
        self._degraded_lock = threading.Lock()

        logger.info(
            "Audit logger writing to %s (redaction rules %s, checkpoints %s)",
            self.config.log_dir,
            self.rules.version,
            "encrypted" if self.state_store.encrypted else "plaintext",
        )

    def log(
        self,
        channel: str,
        operation: str,
        context: LogContext | Mapping[str, Any] | None = None,
        *,
        level: str | None = None,
        metrics: RequestMetrics | None = None,
        timestamp: datetime | None = None,
        **fields: Any,
    ) -> LogEntry:
        """Redact, chain and durably write one audit entry.

        Callers pass raw values; they must not pre-redact details.

        Args:
            channel: Registered channel
            operation: Operation registered for the channel
            context: LogContext or mapping of LogContext fields
            level: Explicit level (overrides defaults and metric escalation)
            metrics: Request metrics; supplies duration_ms and, on metric
                channels, a ``performance`` summary in details
            timestamp: Entry time (defaults to now, UTC)
            **fields: LogContext fields, overriding those in ``context``

        Returns:
            The entry as written, including its chain hash

        Raises:
            UnknownChannelOrOperation: If channel or operation is not registered
            SerializationError: If a field is malformed
            RedactionError: If details cannot be safely redacted
            ChainWriteError: If the entry could not be durably written
            CheckpointConflict: If the chain file contradicts its checkpoint
        """
        try:
            spec = self.registry.validate(channel, operation)
            ctx = _merge_context(context, fields)

            if metrics is not None:
                summary = metrics.summary()
                if ctx.duration_ms is None:
                    ctx = replace(ctx, duration_ms=summary.total_time_ms)
                if spec.accepts_metrics and isinstance(ctx.details, Mapping):
                    ctx = replace(ctx, details={**ctx.details, "performance": summary.to_dict()})
                    if level is None and summary.exceeded and ctx.result != "failure":
                        level = "WARNING"

            entry = self.serializer.build(channel, operation, ctx, level=level, timestamp=timestamp)
            entry = entry.with_details(self.redactor.redact(entry.details))
            return self.hasher.append(channel, entry.date, entry)
        except AuditError as e:
            self._report(e, channel, operation)
            raise

    def try_log(
        self,
        channel: str,
        operation: str,
        context: LogContext | Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> LogEntry | None:
        """Log an entry without interrupting the clinical workflow.

        Write-path failures are escalated to operators and counted in
        ``degraded_writes`` instead of being raised. Unknown channels and
        operations are programmer errors and still raise.

        Args:
            channel: Registered channel
            operation: Operation registered for the channel
            context: LogContext or mapping of LogContext fields
            **kwargs: Passed through to log()

        Returns:
            The written entry, or None if it could not be written

        Raises:
            UnknownChannelOrOperation: If channel or operation is not registered
        """
        try:
            return self.log(channel, operation, context, **kwargs)
        except UnknownChannelOrOperation:
            raise
        except AuditError as e:
            with self._degraded_lock:
                self.degraded_writes += 1
            diagnostics.critical(
                "Audit entry for %s/%s was not recorded: [%s]",
                channel,
                operation,
                e.code,
                extra={
                    "code": e.code,
                    "component": e.component,
                    "channel": channel,
                    "operation": operation,
                },
            )
            return None

    def log_event(self, event: AuditEvent) -> LogEntry:
        """Log a prepared audit event.

        Args:
            event: AuditEvent built by one of the create_* functions

        Returns:
            The entry as written
        """
        return self.log(
            event.channel,
            event.operation,
            event.context,
            level=event.level,
            metrics=event.metrics,
        )

    def verify(self, channel: str, day: date | str) -> VerificationResult:
        """Verify one (channel, date) chain. See IntegrityVerifier.verify()."""
        return self.verifier.verify(channel, day)

    def verify_all(self, channel: str | None = None) -> list[VerificationResult]:
        """Verify every chain in the log directory."""
        return self.verifier.verify_all(channel)

    def statistics(self, channel: str, day: date | str) -> LogStatistics:
        """Collect statistics for one (channel, date) chain.

        Raises:
            UnknownChannelOrOperation: If the channel is not registered
            FileNotFoundError: If no entries were written for that date
        """
        self.registry.get(channel)
        if not isinstance(day, date):
            day = date.fromisoformat(day)
        return collect_statistics(self.store.path_for(channel, day), channel, day)

    def close(self) -> None:
        """Close all open chain files."""
        self.hasher.close()

    def __enter__(self) -> "AuditLogger":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @staticmethod
    def _report(error: AuditError, channel: str, operation: str) -> None:
        escalate = isinstance(error, RedactionError | CheckpointConflict)
        log = diagnostics.critical if escalate else diagnostics.error
        log(
            "Audit write rejected for %s/%s: %s",
            channel,
            operation,
            error.message,
            extra={
                "code": error.code,
                "component": error.component,
                "channel": str(channel),
                "operation": str(operation),
            },
        )
