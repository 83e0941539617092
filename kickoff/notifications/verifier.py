"""
Audits over the schedule ledger. Neither audit mutates the ledger.

Verifier:
- missing_remote: a future pending row whose schedule Braze no longer lists
- stale_pending: a row whose send time passed (plus grace) with no delivery
  confirmation recorded for the fixture

Gap detector:
- missing_schedule: an eligible fixture in the near-term window with no
  active ledger row. Optionally triggers one convergence pass and reports
  the gap count before and after.

Findings are written to the outcome log as action "alert", counted in
Prometheus and emailed (with cooldown) when SMTP is configured.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.alerting import AlertType, send_alert_email
from kickoff.config import Settings, get_settings
from kickoff.jobs.tracking import RunSummary, record_outcome, record_run_summary
from kickoff.models import LEDGER_ACTIVE_STATUSES, LEDGER_PENDING, NotificationSend, ScheduleLedger
from kickoff.notifications.convergence import run_convergence
from kickoff.notifications.fixtures import get_upcoming_fixtures
from kickoff.notifications.ledger import LedgerSnapshot, is_placeholder_id
from kickoff.remote.base import RemotePlatformError, SchedulePlatform
from kickoff.teams.canonical import featured_participants, load_notable_set, load_team_mappings
from kickoff.telemetry.metrics import record_audit_finding
from kickoff.telemetry.sentry import capture_exception
from kickoff.utils.dates import utc_now

logger = logging.getLogger(__name__)

VERIFY_RUN_NAME = "verify"
GAP_RUN_NAME = "gap_detection"


async def find_missing_remote(
    session: AsyncSession,
    platform: SchedulePlatform,
    now: datetime,
    settings: Settings,
) -> list[dict]:
    """Future pending rows whose remote schedule is absent from the Braze listing."""
    result = await session.execute(
        select(ScheduleLedger)
        .where(ScheduleLedger.status == LEDGER_PENDING)
        .where(ScheduleLedger.send_at_utc > now)
        .order_by(ScheduleLedger.send_at_utc)
        .execution_options(populate_existing=True)
    )
    entries = [LedgerSnapshot.from_row(row) for row in result.scalars().all()]
    if not entries:
        return []

    lock_ttl = timedelta(minutes=settings.LOCK_TTL_MINUTES)
    horizon = max(entry.send_at_utc for entry in entries) + timedelta(days=1)
    remote_ids = {schedule.schedule_id for schedule in await platform.list_schedules(horizon)}

    findings = []
    for entry in entries:
        # Young placeholders belong to a create still in flight
        if is_placeholder_id(entry.remote_schedule_id) and now - entry.created_at < lock_ttl:
            continue
        if entry.remote_schedule_id in remote_ids:
            continue
        findings.append({
            "match_id": entry.match_id,
            "ledger_id": entry.id,
            "schedule_id": entry.remote_schedule_id,
            "send_at": entry.send_at_utc.isoformat(),
        })
    return findings


async def find_stale_pending(session: AsyncSession, now: datetime, settings: Settings) -> list[dict]:
    """
    Rows whose send time is past the grace period with no confirmation.

    A row counts as confirmed once the webhook set confirmed_at or stored any
    delivery event for the fixture. The reconciler flips past pending rows to
    sent on its own, so status alone says nothing about delivery.
    """
    newest = now - timedelta(minutes=settings.STALE_PENDING_GRACE_MINUTES)
    oldest = now - timedelta(hours=settings.STALE_PENDING_LOOKBACK_HOURS)
    result = await session.execute(
        select(ScheduleLedger)
        .where(ScheduleLedger.status.in_(LEDGER_ACTIVE_STATUSES))
        .where(ScheduleLedger.send_at_utc <= newest)
        .where(ScheduleLedger.send_at_utc >= oldest)
        .where(ScheduleLedger.confirmed_at.is_(None))
        .order_by(ScheduleLedger.send_at_utc)
        .execution_options(populate_existing=True)
    )
    entries = [LedgerSnapshot.from_row(row) for row in result.scalars().all()]
    if not entries:
        return []

    confirmed = await session.execute(
        select(NotificationSend.match_id)
        .where(NotificationSend.match_id.in_(sorted({entry.match_id for entry in entries})))
        .distinct()
    )
    confirmed_matches = set(confirmed.scalars().all())

    return [
        {
            "match_id": entry.match_id,
            "ledger_id": entry.id,
            "schedule_id": entry.remote_schedule_id,
            "send_at": entry.send_at_utc.isoformat(),
            "minutes_overdue": round((now - entry.send_at_utc).total_seconds() / 60, 1),
        }
        for entry in entries
        if entry.match_id not in confirmed_matches
    ]


async def _report(
    session: AsyncSession,
    summary: RunSummary,
    alert_type: AlertType,
    findings: list[dict],
) -> None:
    for finding in findings:
        await record_outcome(
            session, summary, "alert", reason=alert_type.value, match_id=finding.get("match_id"), details=finding
        )
    record_audit_finding(summary.run_name, alert_type.value, len(findings))
    if findings:
        logger.warning(f"[{summary.run_name.upper()}] {len(findings)} {alert_type.value} findings")
        await send_alert_email(alert_type, findings)


async def run_verifier(
    session: AsyncSession,
    platform: SchedulePlatform,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> dict:
    """
    Read-only delivery audit.

    A failed remote listing skips the missing-remote check (recorded as an
    error outcome) but the stale-pending check still runs.
    """
    settings = settings or get_settings()
    now = now or utc_now()
    summary = RunSummary(VERIFY_RUN_NAME, started_at=now)

    try:
        missing = await find_missing_remote(session, platform, now, settings)
    except RemotePlatformError as e:
        capture_exception(e, job_id=VERIFY_RUN_NAME)
        await record_outcome(
            session, summary, "error", reason="remote_list_failed",
            details={"error": str(e), "status_code": e.status_code},
        )
        missing = None

    stale = await find_stale_pending(session, now, settings)

    if missing is not None:
        await _report(session, summary, AlertType.MISSING_REMOTE, missing)
        summary.details["missing_remote"] = len(missing)
    await _report(session, summary, AlertType.STALE_PENDING, stale)
    summary.details["stale_pending"] = len(stale)

    if stale or missing:
        summary.status = "findings"
    return await record_run_summary(session, summary)


async def find_gaps(session: AsyncSession, now: datetime, settings: Settings) -> list[dict]:
    """Eligible fixtures kicking off within the gap window that have no active ledger row."""
    notable = await load_notable_set(session)
    if not notable:
        return []
    rules = await load_team_mappings(session)

    fixtures = await get_upcoming_fixtures(session, now, now + timedelta(hours=settings.GAP_WINDOW_HOURS))
    eligible = {}
    for fixture in fixtures:
        featured = featured_participants(fixture.home_team, fixture.away_team, rules, notable)
        if featured:
            eligible[fixture.id] = (fixture, featured)
    if not eligible:
        return []

    scheduled = await session.execute(
        select(ScheduleLedger.match_id)
        .where(ScheduleLedger.match_id.in_(list(eligible)))
        .where(ScheduleLedger.status.in_(LEDGER_ACTIVE_STATUSES))
    )
    scheduled_ids = set(scheduled.scalars().all())

    offset = timedelta(minutes=settings.SEND_OFFSET_MINUTES)
    gaps = []
    for match_id, (fixture, featured) in eligible.items():
        if match_id in scheduled_ids:
            continue
        gaps.append({
            "match_id": match_id,
            "fixture": f"{fixture.home_team} vs {fixture.away_team}",
            "kickoff": fixture.utc_date.isoformat(),
            "featured": featured,
            "repairable": fixture.utc_date - offset > now,
        })
    return gaps


async def run_gap_detection(
    session: AsyncSession,
    platform: Optional[SchedulePlatform] = None,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
    auto_repair: Optional[bool] = None,
) -> dict:
    """
    Look for eligible fixtures without a schedule.

    With auto-repair on (GAP_AUTO_REPAIR_ENABLED by default) and at least one
    repairable gap, runs one convergence pass and re-scans. Only gaps left
    after the repair are alerted.
    """
    settings = settings or get_settings()
    now = now or utc_now()
    if auto_repair is None:
        auto_repair = settings.GAP_AUTO_REPAIR_ENABLED
    summary = RunSummary(GAP_RUN_NAME, started_at=now)

    gaps = await find_gaps(session, now, settings)
    summary.details["gaps_before"] = len(gaps)
    logger.info(f"[GAP] {len(gaps)} fixtures without a schedule in the next {settings.GAP_WINDOW_HOURS}h")

    if gaps and auto_repair and platform is not None and any(gap["repairable"] for gap in gaps):
        repair = await run_convergence(session, platform, now=now, settings=settings)
        summary.details["repair"] = {"status": repair["status"], "counts": repair["counts"]}
        gaps = await find_gaps(session, now, settings)

    summary.details["gaps_after"] = len(gaps)
    await _report(session, summary, AlertType.GAP_DETECTED, gaps)

    if gaps:
        summary.status = "findings"
    return await record_run_summary(session, summary)
