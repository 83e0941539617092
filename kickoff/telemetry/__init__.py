"""
Telemetry for the notification units.

Prometheus counters/histograms (low-cardinality labels only) and Sentry
error capture with scheduler job context.
"""

from kickoff.telemetry.metrics import (
    get_metrics_text,
    record_audit_finding,
    record_job_run,
    record_lock_contention,
    record_remote_request,
    record_unit_outcome,
    record_webhook_resolution,
)
from kickoff.telemetry.sentry import (
    capture_exception,
    init_sentry,
    sentry_job_context,
)

__all__ = [
    "get_metrics_text",
    "record_audit_finding",
    "record_job_run",
    "record_lock_contention",
    "record_remote_request",
    "record_unit_outcome",
    "record_webhook_resolution",
    "capture_exception",
    "init_sentry",
    "sentry_job_context",
]
