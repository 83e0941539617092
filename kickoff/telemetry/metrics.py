"""
Prometheus metrics for the notification units.

Design principles:
- Low cardinality (controlled labels)
- Best-effort (never block main flow)

=============================================================================
CARDINALITY CONTROL
=============================================================================

ALLOWED LABELS (bounded sets):
- job / unit:   "scheduler", "reconcile", "verify", "gap_detection", "congrats", "webhook"
- action:       "created", "updated", "skipped", "error", "cancelled", "sent", ...
- reason:       reason codes emitted by the units (max ~25)
- operation:    "create", "update", "delete", "list", "send"
- status_code:  "200", "400", "404", "429", "500", "0"
- resolution:   "embedded", "identifier", "time_window", "unlinked"

FORBIDDEN AS LABELS:
- match_id, schedule_id, dispatch_id, send_id, user ids
- team names, URLs, raw payloads, error messages

For debugging a specific fixture use the scheduler_logs table, not labels.
=============================================================================
"""

import logging
import time
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

# =============================================================================
# JOB HEALTH
# =============================================================================

job_runs_total = Counter(
    "kickoff_job_runs_total",
    "Unit runs by status",
    ["job", "status"],  # ok, skipped, error
)

job_duration_ms = Histogram(
    "kickoff_job_duration_ms",
    "Unit run duration in milliseconds",
    ["job"],
    buckets=[50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000, 120000],
)

job_last_success_timestamp = Gauge(
    "kickoff_job_last_success_timestamp",
    "Unix timestamp of last successful run",
    ["job"],
)

lock_contention_total = Counter(
    "kickoff_lock_contention_total",
    "Runs skipped because another holder owned the lock",
    ["lock"],
)

# =============================================================================
# DECISIONS
# =============================================================================

unit_outcomes_total = Counter(
    "kickoff_unit_outcomes_total",
    "Per-fixture outcomes emitted by the notification units",
    ["unit", "action", "reason"],
)

# =============================================================================
# REMOTE PLATFORM
# =============================================================================

remote_requests_total = Counter(
    "kickoff_remote_requests_total",
    "Requests to the campaign platform",
    ["operation", "status_code"],
)

remote_latency_ms = Histogram(
    "kickoff_remote_latency_ms",
    "Campaign platform request latency in milliseconds",
    ["operation"],
    buckets=[25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000],
)

remote_timeouts_total = Counter(
    "kickoff_remote_timeouts_total",
    "Campaign platform requests that timed out",
    ["operation"],
)

# =============================================================================
# WEBHOOK / AUDITS
# =============================================================================

webhook_events_total = Counter(
    "kickoff_webhook_events_total",
    "Delivery events by correlation method (unlinked = data-quality signal)",
    ["resolution"],
)

audit_findings_total = Counter(
    "kickoff_audit_findings_total",
    "Verifier and gap detector findings",
    ["audit", "kind"],  # kind: stale_pending, missing_remote, missing_schedule
)


# =============================================================================
# HELPERS
# =============================================================================


def record_job_run(job: str, status: str, duration_ms: float) -> None:
    """Record a unit run with status and duration."""
    try:
        job_runs_total.labels(job=job, status=status).inc()
        if duration_ms > 0:
            job_duration_ms.labels(job=job).observe(duration_ms)
        if status == "ok":
            job_last_success_timestamp.labels(job=job).set(time.time())
    except Exception as e:
        logger.warning(f"Failed to record job run metric: {e}")


def record_lock_contention(lock: str) -> None:
    try:
        lock_contention_total.labels(lock=lock).inc()
    except Exception as e:
        logger.warning(f"Failed to record lock contention metric: {e}")


def record_unit_outcome(unit: str, action: str, reason: Optional[str] = None) -> None:
    try:
        unit_outcomes_total.labels(unit=unit, action=action, reason=reason or "none").inc()
    except Exception as e:
        logger.warning(f"Failed to record outcome metric: {e}")


def record_remote_request(
    operation: str,
    status_code: int,
    latency_ms: float,
    is_timeout: bool = False,
) -> None:
    """Record a campaign platform request with all associated metrics."""
    try:
        remote_requests_total.labels(operation=operation, status_code=str(status_code)).inc()
        remote_latency_ms.labels(operation=operation).observe(latency_ms)
        if is_timeout:
            remote_timeouts_total.labels(operation=operation).inc()
    except Exception as e:
        logger.warning(f"Failed to record remote request metric: {e}")


def record_webhook_resolution(resolution: str, count: int = 1) -> None:
    try:
        if count > 0:
            webhook_events_total.labels(resolution=resolution).inc(count)
    except Exception as e:
        logger.warning(f"Failed to record webhook metric: {e}")


def record_audit_finding(audit: str, kind: str, count: int = 1) -> None:
    try:
        if count > 0:
            audit_findings_total.labels(audit=audit, kind=kind).inc(count)
    except Exception as e:
        logger.warning(f"Failed to record audit metric: {e}")


def get_metrics_text() -> tuple[str, str]:
    """
    Generate Prometheus metrics text output.

    Returns:
        Tuple of (content, content_type)
    """
    return generate_latest(REGISTRY).decode("utf-8"), CONTENT_TYPE_LATEST
