"""EHR Audit Chain - Tamper-evident, PHI-redacting audit logging core.

This package records clinical and operational events of an EHR as
hash-chained JSON Lines files, one per channel per UTC day, redacting PHI
before anything is hashed or written (HIPAA audit controls,
45 CFR § 164.312(b)).

Version: 1.0.0
"""

__version__ = "1.0.0"

from ehr_audit.audit import AsyncAuditLogger, AuditEvent, AuditLogger
from ehr_audit.chain import GENESIS_HASH, IntegrityVerifier
from ehr_audit.channels import ChannelRegistry, ChannelSpec, default_registry
from ehr_audit.config import AuditConfig
from ehr_audit.errors import (
    AuditError,
    ChainLockTimeout,
    ChainWriteError,
    CheckpointConflict,
    ConfigurationError,
    IntegrityViolation,
    RedactionError,
    SerializationError,
    UnknownChannelOrOperation,
)
from ehr_audit.models import LogContext, LogEntry, VerificationResult
from ehr_audit.performance import RequestMetrics
from ehr_audit.redaction import RedactionEngine, RedactionRuleSet, load_rules, redact
from ehr_audit.serializer import request_context

__all__ = [
    "GENESIS_HASH",
    "AsyncAuditLogger",
    "AuditConfig",
    "AuditError",
    "AuditEvent",
    "AuditLogger",
    "ChainLockTimeout",
    "ChainWriteError",
    "ChannelRegistry",
    "ChannelSpec",
    "CheckpointConflict",
    "ConfigurationError",
    "IntegrityVerifier",
    "IntegrityViolation",
    "LogContext",
    "LogEntry",
    "RedactionEngine",
    "RedactionError",
    "RedactionRuleSet",
    "RequestMetrics",
    "SerializationError",
    "UnknownChannelOrOperation",
    "VerificationResult",
    "__version__",
    "load_rules",
    "redact",
    "request_context",
]
