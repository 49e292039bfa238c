"""Audit event definitions for the EHR audit trail.

This module defines the AuditEvent structure and creation functions for
the clinical and operational events the EHR records. Builders only shape
the entry: every event still passes through the serializer (patient
identifier hashing) and the redaction engine when it is logged.

Event groups:
- Encounter lifecycle: created, read, updated, deleted, status transition, amended
- Clinical documentation: vitals, assessment, treatment, signatures
- Finalization and notifications: finalization, e-mail, SMS
- PHI access and errors
- Dashboard and performance: dashboard loads, metrics, cache, queries

CRITICAL: Builders never copy clinical values into details - vitals are
logged by field name, e-mail recipients and phone numbers by salted hash.
"""

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..channels import (
    OP_AMEND,
    OP_CACHE_READ,
    OP_CACHE_WRITE,
    OP_CREATE,
    OP_DASHBOARD_LOAD,
    OP_DATA_AGGREGATE,
    OP_DELETE,
    OP_ERROR,
    OP_FINALIZE,
    OP_METRIC_CALCULATE,
    OP_METRIC_REQUEST,
    OP_PHI_ACCESS,
    OP_QUERY_EXECUTE,
    OP_READ,
    OP_REQUEST_SUMMARY,
    OP_SEND_EMAIL,
    OP_SEND_SMS,
    OP_SIGN,
    OP_UPDATE,
)
from ..config import DEFAULT_PHI_HASH_SALT
from ..models import LogContext
from ..performance import DEFAULT_THRESHOLDS, RequestMetrics, sanitize_query_description
from ..redaction import REDACTED
from ..serializer import hash_identifier

CACHE_KEY_MAX_LENGTH = 200
FILTER_VALUE_MAX_LENGTH = 100

# Dashboard filter and access keys whose values are never logged
SENSITIVE_FILTER_KEYS = frozenset({"password", "token", "secret", "ssn", "dob"})
SENSITIVE_ACCESS_KEYS = frozenset({"patient_id", "ssn", "dob", "email", "phone"})

_SSN_IN_KEY = re.compile(r"\d{3}-\d{2}-\d{4}")


@dataclass(frozen=True)
class AuditEvent:
    """A prepared audit log call.

    Attributes:
        channel: Target channel
        operation: Operation registered for the channel
        context: Entry context (raw values; hashed and redacted on logging)
        level: Explicit level, or None for the channel default
        metrics: Request metrics to attach on metric channels
    """

    channel: str
    operation: str
    context: LogContext = field(default_factory=LogContext)
    level: str | None = None
    metrics: RequestMetrics | None = None


def _event(
    channel: str,
    operation: str,
    details: dict[str, Any],
    *,
    level: str | None = None,
    metrics: RequestMetrics | None = None,
    **context: Any,
) -> AuditEvent:
    return AuditEvent(
        channel=channel,
        operation=operation,
        context=LogContext(details=details, **context),
        level=level,
        metrics=metrics,
    )


def _sanitize_values(values: Mapping[str, Any] | None, sensitive: frozenset[str]) -> Any:
    """Mask sensitive keys and shorten strings in caller-supplied dashboard values."""

    def clean(value: Any) -> Any:
        if isinstance(value, Mapping):
            return {
                key: REDACTED if str(key).lower() in sensitive else clean(item)
                for key, item in value.items()
            }
        if isinstance(value, list | tuple):
            return [clean(item) for item in value]
        if isinstance(value, str):
            return value[:FILTER_VALUE_MAX_LENGTH]
        return value

    return clean(dict(values or {}))


def sanitize_cache_key(key: str) -> str:
    """Mask SSN-shaped fragments and cap the length of a cache key."""
    return _SSN_IN_KEY.sub("[SSN-REDACTED]", str(key))[:CACHE_KEY_MAX_LENGTH]


# Encounter lifecycle


def create_encounter_created_event(
    encounter_id: str,
    patient_id: int | str,
    details: Mapping[str, Any] | None = None,
    **context: Any,
) -> AuditEvent:
    """Create encounter creation event.

    Args:
        encounter_id: New encounter
        patient_id: Raw patient identifier (hashed on logging)
        details: Additional details (redacted on logging)
        **context: Further LogContext fields (user_id, ip_address, ...)

    Returns:
        AuditEvent for the encounter channel
    """
    return _event(
        "encounter",
        OP_CREATE,
        {**(details or {}), "action": "encounter_created"},
        encounter_id=encounter_id,
        patient_id=patient_id,
        **context,
    )


def create_encounter_read_event(
    encounter_id: str, patient_id: int | str | None = None, **context: Any
) -> AuditEvent:
    """Create encounter read/access event."""
    return _event(
        "encounter",
        OP_READ,
        {"action": "encounter_read"},
        encounter_id=encounter_id,
        patient_id=patient_id,
        **context,
    )


def create_encounter_updated_event(
    encounter_id: str, fields_updated: Iterable[str] = (), **context: Any
) -> AuditEvent:
    """Create encounter update event listing the updated field names."""
    names = [str(name) for name in fields_updated]
    return _event(
        "encounter",
        OP_UPDATE,
        {"action": "encounter_updated", "fields_updated": names, "fields_count": len(names)},
        encounter_id=encounter_id,
        **context,
    )


def create_encounter_deleted_event(
    encounter_id: str, reason: str = "", **context: Any
) -> AuditEvent:
    """Create encounter deletion/cancellation event."""
    return _event(
        "encounter",
        OP_DELETE,
        {"action": "encounter_deleted", "reason": reason},
        encounter_id=encounter_id,
        **context,
    )


def create_status_transition_event(
    encounter_id: str, from_status: str, to_status: str, reason: str = "", **context: Any
) -> AuditEvent:
    """Create encounter status transition event."""
    return _event(
        "encounter",
        OP_UPDATE,
        {
            "action": "status_transition",
            "from_status": from_status,
            "to_status": to_status,
            "transition_reason": reason,
        },
        encounter_id=encounter_id,
        **context,
    )


def create_encounter_amended_event(
    encounter_id: str, reason: str, amended_by: int | str, **context: Any
) -> AuditEvent:
    """Create amendment-to-signed-encounter event."""
    return _event(
        "encounter",
        OP_AMEND,
        {"action": "encounter_amended", "amendment_reason": reason, "amended_by": amended_by},
        encounter_id=encounter_id,
        **context,
    )


# Clinical documentation


def create_vitals_recorded_event(
    encounter_id: str, vitals: Mapping[str, Any], **context: Any
) -> AuditEvent:
    """Create vitals recording event.

    Only the names of the recorded vitals are logged, never their values.

    Args:
        encounter_id: Encounter the vitals belong to
        vitals: Recorded vitals keyed by name
        **context: Further LogContext fields

    Returns:
        AuditEvent for the vitals channel
    """
    names = [str(name) for name in vitals]
    return _event(
        "vitals",
        OP_UPDATE,
        {"action": "vitals_recorded", "vitals_fields": names, "vitals_count": len(names)},
        encounter_id=encounter_id,
        **context,
    )


def create_assessment_added_event(
    encounter_id: str, assessment: Mapping[str, Any], **context: Any
) -> AuditEvent:
    """Create assessment event recording only whether a diagnosis exists and code counts."""
    diagnosis = assessment.get("diagnosis") or assessment.get("assessment")
    return _event(
        "assessment",
        OP_UPDATE,
        {
            "action": "assessment_added",
            "has_diagnosis": bool(diagnosis),
            "icd_codes_count": len(assessment.get("icd_codes") or ()),
        },
        encounter_id=encounter_id,
        **context,
    )


def create_treatment_added_event(
    encounter_id: str, treatment: Mapping[str, Any], **context: Any
) -> AuditEvent:
    """Create treatment event recording only plan presence and item counts."""
    plan = treatment.get("plan") or treatment.get("treatment_plan")
    return _event(
        "treatment",
        OP_UPDATE,
        {
            "action": "treatment_added",
            "has_plan": bool(plan),
            "cpt_codes_count": len(treatment.get("cpt_codes") or ()),
            "medications_count": len(treatment.get("medications") or ()),
            "procedures_count": len(treatment.get("procedures") or ()),
        },
        encounter_id=encounter_id,
        **context,
    )


def create_signature_added_event(
    encounter_id: str, signature_type: str, signed_by: int | str, **context: Any
) -> AuditEvent:
    """Create signature event."""
    return _event(
        "signature",
        OP_SIGN,
        {"action": "signature_added", "signature_type": signature_type, "signed_by": signed_by},
        encounter_id=encounter_id,
        **context,
    )


def create_encounter_signed_event(
    encounter_id: str, signed_by: int | str, **context: Any
) -> AuditEvent:
    """Create encounter signing/locking event."""
    return _event(
        "signature",
        OP_SIGN,
        {"action": "encounter_signed", "signed_by": signed_by, "locked": True},
        encounter_id=encounter_id,
        **context,
    )


# Finalization and notifications


def create_finalization_event(
    encounter_id: str,
    validation_results: Mapping[str, Any],
    success: bool,
    *,
    is_work_related: bool = False,
    previous_status: str | None = None,
    **context: Any,
) -> AuditEvent:
    """Create encounter finalization event.

    Args:
        encounter_id: Finalized encounter
        validation_results: Mapping with optional 'errors' and 'warnings' lists
        success: Whether finalization validation passed
        is_work_related: Whether the encounter is a work-related incident
        previous_status: Status before finalization
        **context: Further LogContext fields (duration_ms, user_id, ...)

    Returns:
        AuditEvent for the finalization channel (WARNING on failure)
    """
    return _event(
        "finalization",
        OP_FINALIZE,
        {
            "action": "encounter_finalized",
            "validation_passed": success,
            "validation_errors": [] if success else list(validation_results.get("errors") or ()),
            "validation_warnings": list(validation_results.get("warnings") or ()),
            "is_work_related": is_work_related,
            "status_changed_from": previous_status,
            "status_changed_to": "finalized",
        },
        level="INFO" if success else "WARNING",
        encounter_id=encounter_id,
        result="success" if success else "failure",
        **context,
    )


def create_email_notification_event(
    encounter_id: str,
    recipients: Iterable[str],
    success: bool,
    error_message: str = "",
    *,
    salt: str = DEFAULT_PHI_HASH_SALT,
    **context: Any,
) -> AuditEvent:
    """Create e-mail notification event.

    Recipients are logged as salted hashes of their normalized address.

    Args:
        encounter_id: Encounter the notification concerns
        recipients: Recipient e-mail addresses
        success: Whether the notification was sent
        error_message: Failure reason (redacted on logging)
        salt: Identifier hashing salt (pass AuditConfig.phi_hash_salt)
        **context: Further LogContext fields

    Returns:
        AuditEvent for the finalization channel
    """
    hashes = [hash_identifier(r.strip().lower(), salt) for r in recipients]
    details: dict[str, Any] = {
        "action": "email_notification",
        "recipient_count": len(hashes),
        "recipient_hashes": hashes,
        "notification_type": "work_related_incident",
    }
    if not success:
        details["error_message"] = error_message
    return _event(
        "finalization",
        OP_SEND_EMAIL,
        details,
        encounter_id=encounter_id,
        result="success" if success else "failure",
        **context,
    )


def create_sms_reminder_event(
    encounter_id: str,
    phone_number: str,
    success: bool,
    error_message: str = "",
    *,
    salt: str = DEFAULT_PHI_HASH_SALT,
    **context: Any,
) -> AuditEvent:
    """Create SMS reminder event; the phone number is logged as a salted hash of its digits."""
    digits = re.sub(r"\D", "", phone_number)
    details: dict[str, Any] = {
        "action": "sms_reminder",
        "phone_hash": hash_identifier(digits, salt),
        "reminder_type": "follow_up",
    }
    if not success:
        details["error_message"] = error_message
    return _event(
        "finalization",
        OP_SEND_SMS,
        details,
        encounter_id=encounter_id,
        result="success" if success else "failure",
        **context,
    )


# PHI access and errors


def create_phi_access_event(
    user_id: int | str,
    patient_id: int | str,
    access_type: str,
    fields_accessed: Iterable[str] = (),
    purpose: str = "treatment",
    **context: Any,
) -> AuditEvent:
    """Create PHI access audit event.

    Args:
        user_id: User who accessed the record
        patient_id: Raw patient identifier (hashed on logging)
        access_type: Kind of access (view, export, print, ...)
        fields_accessed: Names of the PHI fields accessed
        purpose: Purpose of use
        **context: Further LogContext fields

    Returns:
        AuditEvent for the phi_access channel (AUDIT level, result 'logged')
    """
    names = [str(name) for name in fields_accessed]
    return _event(
        "phi_access",
        OP_PHI_ACCESS,
        {
            "access_type": access_type,
            "fields_accessed": names,
            "fields_count": len(names),
            "purpose": purpose,
        },
        user_id=user_id,
        patient_id=patient_id,
        result="logged",
        **context,
    )


def create_error_event(
    failed_operation: str,
    error_message: str,
    *,
    channel: str = "ehr",
    error_context: Mapping[str, Any] | None = None,
    **context: Any,
) -> AuditEvent:
    """Create error event for a failed EHR or dashboard operation.

    Args:
        failed_operation: Operation that failed
        error_message: Error message (redacted on logging)
        channel: 'ehr' or 'dashboard'
        error_context: Additional structured context (redacted on logging)
        **context: Further LogContext fields

    Returns:
        AuditEvent with operation ERROR, level ERROR and result 'failure'
    """
    return _event(
        channel,
        OP_ERROR,
        {
            "failed_operation": failed_operation,
            "error_message": error_message,
            "context": dict(error_context or {}),
        },
        level="ERROR",
        result="failure",
        **context,
    )


# Dashboard and performance


def create_dashboard_load_event(
    dashboard_type: str,
    metrics: RequestMetrics | None = None,
    *,
    filters: Mapping[str, Any] | None = None,
    **context: Any,
) -> AuditEvent:
    """Create dashboard load event; the request's performance summary is attached on logging."""
    return _event(
        "dashboard",
        OP_DASHBOARD_LOAD,
        {
            "dashboard_type": dashboard_type,
            "filters": _sanitize_values(filters, SENSITIVE_FILTER_KEYS),
        },
        metrics=metrics,
        **context,
    )


def create_dashboard_access_event(
    dashboard_type: str, access_details: Mapping[str, Any] | None = None, **context: Any
) -> AuditEvent:
    """Create dashboard access pattern event."""
    return _event(
        "access",
        OP_DASHBOARD_LOAD,
        {
            "dashboard_type": dashboard_type,
            "access_details": _sanitize_values(access_details, SENSITIVE_ACCESS_KEYS),
        },
        **context,
    )


def create_metric_request_event(
    dashboard_type: str, metric: str, filters: Mapping[str, Any] | None = None, **context: Any
) -> AuditEvent:
    """Create dashboard metric request event (result 'initiated')."""
    return _event(
        "metrics",
        OP_METRIC_REQUEST,
        {
            "dashboard_type": dashboard_type,
            "metric": metric,
            "filters": _sanitize_values(filters, SENSITIVE_FILTER_KEYS),
        },
        result="initiated",
        **context,
    )


def create_metric_calculation_event(
    metric: str, elapsed_ms: float, query_count: int = 1, row_count: int = 0, **context: Any
) -> AuditEvent:
    """Create metric calculation event (WARNING when slow)."""
    slow = elapsed_ms >= DEFAULT_THRESHOLDS.slow_query_ms
    return _event(
        "metrics",
        OP_METRIC_CALCULATE,
        {
            "metric": metric,
            "query_count": query_count,
            "row_count": row_count,
            "threshold_exceeded": slow,
        },
        level="WARNING" if slow else None,
        duration_ms=elapsed_ms,
        **context,
    )


def create_data_aggregation_event(
    aggregation_type: str,
    elapsed_ms: float,
    data_points: int = 0,
    source_tables: Iterable[str] = (),
    **context: Any,
) -> AuditEvent:
    """Create data aggregation event (WARNING when slow)."""
    slow = elapsed_ms >= DEFAULT_THRESHOLDS.slow_query_ms
    return _event(
        "metrics",
        OP_DATA_AGGREGATE,
        {
            "aggregation_type": aggregation_type,
            "data_points": data_points,
            "source_tables": list(source_tables),
        },
        level="WARNING" if slow else None,
        duration_ms=elapsed_ms,
        **context,
    )


def create_cache_event(
    key: str, hit: bool, *, write: bool = False, ttl: int | None = None, **context: Any
) -> AuditEvent:
    """Create cache read (hit/miss) or cache write event."""
    details: dict[str, Any] = {"cache_key": sanitize_cache_key(key), "cache_hit": hit}
    if ttl is not None:
        details["ttl_seconds"] = ttl
    return _event("cache", OP_CACHE_WRITE if write else OP_CACHE_READ, details, **context)


def create_query_performance_event(
    description: str, elapsed_ms: float, row_count: int = 0, **context: Any
) -> AuditEvent:
    """Create query performance event.

    The description is stripped of literal values. Slow queries are logged
    at PERF level, others at DEBUG.
    """
    slow = elapsed_ms >= DEFAULT_THRESHOLDS.slow_query_ms
    return _event(
        "performance",
        OP_QUERY_EXECUTE,
        {
            "query_description": sanitize_query_description(description),
            "row_count": row_count,
            "is_slow_query": slow,
        },
        level="PERF" if slow else "DEBUG",
        duration_ms=elapsed_ms,
        **context,
    )


def create_request_summary_event(metrics: RequestMetrics, **context: Any) -> AuditEvent:
    """Create end-of-request performance summary event."""
    return _event("performance", OP_REQUEST_SUMMARY, {}, metrics=metrics, **context)
