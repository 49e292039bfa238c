"""Tamper-evident, PHI-redacting audit logging.

Audit entries are written as JSON Lines, one file per channel per UTC day,
each entry hash-chained to its predecessor (HIPAA audit controls,
45 CFR § 164.312(b)).

Key features:
- PHI redaction before hashing (NEVER logs raw patient identifiers)
- SHA-256 hash chain per (channel, date)
- fsync per entry
- Async front-end with per-channel ordering

Modules:
- events: Audit event definitions and creation functions
- logger: Synchronous audit logger facade
- async_logger: Asyncio front-end
"""

from ehr_audit.audit.async_logger import AsyncAuditLogger
from ehr_audit.audit.events import (
    AuditEvent,
    create_encounter_created_event,
    create_encounter_read_event,
    create_encounter_updated_event,
    create_encounter_deleted_event,
    create_status_transition_event,
    create_encounter_amended_event,
    create_vitals_recorded_event,
    create_assessment_added_event,
    create_treatment_added_event,
    create_signature_added_event,
    create_encounter_signed_event,
    create_finalization_event,
    create_email_notification_event,
    create_sms_reminder_event,
    create_phi_access_event,
    create_error_event,
    create_dashboard_load_event,
    create_dashboard_access_event,
    create_metric_request_event,
    create_metric_calculation_event,
    create_data_aggregation_event,
    create_cache_event,
    create_query_performance_event,
    create_request_summary_event,
)
from ehr_audit.audit.logger import AuditLogger

__all__ = [
    "AsyncAuditLogger",
    "AuditEvent",
    "AuditLogger",
    "create_encounter_created_event",
    "create_encounter_read_event",
    "create_encounter_updated_event",
    "create_encounter_deleted_event",
    "create_status_transition_event",
    "create_encounter_amended_event",
    "create_vitals_recorded_event",
    "create_assessment_added_event",
    "create_treatment_added_event",
    "create_signature_added_event",
    "create_encounter_signed_event",
    "create_finalization_event",
    "create_email_notification_event",
    "create_sms_reminder_event",
    "create_phi_access_event",
    "create_error_event",
    "create_dashboard_load_event",
    "create_dashboard_access_event",
    "create_metric_request_event",
    "create_metric_calculation_event",
    "create_data_aggregation_event",
    "create_cache_event",
    "create_query_performance_event",
    "create_request_summary_event",
]
