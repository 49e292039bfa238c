"""Operator diagnostics for the audit logging core.

Diagnostics are ordinary stdlib ``logging`` records emitted by the
``ehr_audit.*`` loggers: lock timeouts, failed writes, tail recoveries,
checkpoint divergence and verification failures. They are NOT audit
entries and are never hash-chained.

Write-path failures are reported on the ``ehr_audit.diagnostics`` logger
with structured extras (code, channel, operation, chain_date). Diagnostics
never carry PHI: error messages name fields and chains, never values.
"""

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .errors import AuditError

ROOT_LOGGER_NAME = "ehr_audit"
DIAGNOSTICS_LOGGER_NAME = "ehr_audit.diagnostics"

# LogRecord attributes copied into the JSON line when present.
EXTRA_FIELDS = ("code", "component", "channel", "operation", "chain_date", "request_id")


class DiagnosticJSONFormatter(logging.Formatter):
    """Format diagnostic records as JSON lines.

    Each record becomes one JSON object with timestamp, level, logger and
    message plus any structured extras. Exceptions are reduced to their
    type and, for AuditError, the error code and PHI-free message.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON line.

        Args:
            record: Log record to format

        Returns:
            JSON string representing the log record
        """
        data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                data[name] = value

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            data["exception"] = type(exc).__name__
            # Only audit errors have messages known to be PHI-free.
            if isinstance(exc, AuditError):
                data.setdefault("code", exc.code)
                data["error"] = exc.message

        return json.dumps(data, default=str)


def configure_diagnostics(
    log_file: Path | str | None = None, level: int = logging.WARNING
) -> logging.Logger:
    """Route ``ehr_audit`` diagnostics to a JSON lines handler.

    Calling this again replaces the handler installed by the previous call.

    Args:
        log_file: Diagnostics file (stderr when None)
        level: Minimum level to emit

    Returns:
        The configured ``ehr_audit`` logger
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)
    root.propagate = False

    for handler in list(root.handlers):
        if getattr(handler, "_ehr_audit_diagnostics", False):
            root.removeHandler(handler)
            handler.close()

    if log_file is not None:
        handler: logging.Handler = logging.FileHandler(str(log_file), encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(DiagnosticJSONFormatter())
    handler._ehr_audit_diagnostics = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    return root
