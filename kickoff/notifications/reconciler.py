"""
Reconciler: repair drift between Braze and the schedule ledger.

The ledger is authoritative. Remote schedules created by this service
(trigger_properties.origin) are cancelled when they are:

- stale: known to the ledger but carrying a signature no active row wants
- orphan: unknown to the ledger
- duplicate: a second surviving schedule for the same fixture; the one the
  ledger points at is kept, otherwise the earliest

Then past pending rows are marked sent and rows older than the retention
horizon are purged. The scheduler and the reconciler each take their own
lock and then check the other one, so at most one of them touches Braze at
a time. A schedule whose fixture still has a young placeholder row is
mid-creation and is never treated as an orphan.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.config import Settings, get_settings
from kickoff.jobs.locks import RECONCILE_LOCK, SCHEDULER_LOCK, is_held, new_holder_token, release, try_acquire
from kickoff.jobs.tracking import RunSummary, record_outcome, record_run_summary
from kickoff.models import LEDGER_ACTIVE_STATUSES, LEDGER_PENDING, LEDGER_SENT, ScheduleLedger
from kickoff.notifications.ledger import (
    LedgerSnapshot,
    cancel_pending_for_remote_id,
    get_all_entries,
    is_placeholder_id,
)
from kickoff.remote.base import RemotePlatformError, RemoteSchedule, SchedulePlatform
from kickoff.telemetry.sentry import capture_exception
from kickoff.utils.dates import utc_now

logger = logging.getLogger(__name__)

RUN_NAME = "reconcile"


def plan_cancellations(
    remote: list[RemoteSchedule],
    entries: list[LedgerSnapshot],
    now: Optional[datetime] = None,
    placeholder_ttl: timedelta = timedelta(minutes=10),
) -> list[tuple[RemoteSchedule, str]]:
    """
    Decide which remote schedules to cancel and why.

    Pure function of the remote listing and the ledger; the caller has
    already filtered the listing to this service's future schedules.
    Unknown schedules for a fixture with a pending placeholder younger than
    placeholder_ttl are left alone (every placeholder counts when now is None).

    Returns:
        List of (schedule, reason) with reason in stale, orphan, duplicate.
    """
    known_ids = {entry.remote_schedule_id for entry in entries}
    active = [entry for entry in entries if entry.status in LEDGER_ACTIVE_STATUSES]
    desired_signatures = {entry.signature for entry in active}
    ledger_id_by_match = {entry.match_id: entry.remote_schedule_id for entry in active}
    reserving = {
        entry.match_id for entry in entries
        if entry.status == LEDGER_PENDING
        and is_placeholder_id(entry.remote_schedule_id)
        and (now is None or now - entry.created_at < placeholder_ttl)
    }

    cancellations: list[tuple[RemoteSchedule, str]] = []
    survivors: list[RemoteSchedule] = []
    for schedule in remote:
        if schedule.schedule_id not in known_ids:
            if schedule.match_id in reserving:
                logger.info(
                    f"[RECONCILE] match={schedule.match_id} {schedule.schedule_id} "
                    "awaits its ledger row, leaving it"
                )
                continue
            cancellations.append((schedule, "orphan"))
        elif schedule.signature not in desired_signatures:
            cancellations.append((schedule, "stale"))
        else:
            survivors.append(schedule)

    by_match: dict[int, list[RemoteSchedule]] = {}
    for schedule in survivors:
        if schedule.match_id is not None:
            by_match.setdefault(schedule.match_id, []).append(schedule)

    for match_id, schedules in by_match.items():
        if len(schedules) < 2:
            continue
        ledger_id = ledger_id_by_match.get(match_id)
        keep = next((s for s in schedules if s.schedule_id == ledger_id), None)
        if keep is None:
            keep = min(schedules, key=lambda s: (s.next_send_time or datetime.max, s.schedule_id))
        for schedule in schedules:
            if schedule is not keep:
                cancellations.append((schedule, "duplicate"))

    return cancellations


async def run_reconcile(
    session: AsyncSession,
    platform: SchedulePlatform,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> dict:
    """
    One reconcile pass.

    Returns:
        Run summary dict. status is "deferred" when the scheduler is active
        and "locked" when another reconcile holds the lock.
    """
    settings = settings or get_settings()
    now = now or utc_now()
    summary = RunSummary(RUN_NAME, started_at=now)

    if not settings.NOTIFICATIONS_ENABLED:
        logger.info("[RECONCILE] Notifications disabled, skipping run")
        summary.status = "disabled"
        return summary.to_dict()

    holder = new_holder_token(RUN_NAME)
    if not await try_acquire(session, RECONCILE_LOCK, holder, timedelta(minutes=settings.LOCK_TTL_MINUTES), now=now):
        summary.status = "locked"
        return await record_run_summary(session, summary)

    if await is_held(session, SCHEDULER_LOCK, now=now):
        await release(session, RECONCILE_LOCK, holder)
        logger.info("[RECONCILE] Scheduler is running, deferring")
        summary.status = "deferred"
        return await record_run_summary(session, summary)

    try:
        await _reconcile(session, platform, summary, settings, now)
    finally:
        await release(session, RECONCILE_LOCK, holder)

    return await record_run_summary(session, summary)


async def _reconcile(
    session: AsyncSession,
    platform: SchedulePlatform,
    summary: RunSummary,
    settings: Settings,
    now: datetime,
) -> None:
    listing = await platform.list_schedules(now + timedelta(days=settings.RECONCILE_LOOKAHEAD_DAYS))
    ours = [
        schedule for schedule in listing
        if schedule.next_send_time is not None
        and schedule.next_send_time > now
        and schedule.origin == settings.SCHEDULE_ORIGIN
    ]
    summary.details["remote_listed"] = len(listing)
    summary.details["remote_owned"] = len(ours)

    entries = await get_all_entries(session)
    placeholder_ttl = timedelta(minutes=settings.LOCK_TTL_MINUTES)
    for schedule, reason in plan_cancellations(ours, entries, now=now, placeholder_ttl=placeholder_ttl):
        await _cancel(session, platform, summary, schedule, reason, now)

    await _mark_past_entries_sent(session, summary, now)
    await _purge_expired_entries(session, summary, now - timedelta(days=settings.LEDGER_RETENTION_DAYS))


async def _cancel(
    session: AsyncSession,
    platform: SchedulePlatform,
    summary: RunSummary,
    schedule: RemoteSchedule,
    reason: str,
    now: datetime,
) -> None:
    try:
        deleted = await platform.delete_schedule(schedule.schedule_id)
    except RemotePlatformError as e:
        capture_exception(e, job_id=RUN_NAME, schedule_id=schedule.schedule_id)
        await record_outcome(
            session, summary, "error", reason="cancel_failed", match_id=schedule.match_id,
            details={"schedule_id": schedule.schedule_id, "cancel_reason": reason, "error": str(e)},
        )
        return

    ledger_rows = await cancel_pending_for_remote_id(session, schedule.schedule_id, now)
    await record_outcome(
        session, summary, "cancelled", reason=reason, match_id=schedule.match_id,
        details={
            "schedule_id": schedule.schedule_id,
            "signature": schedule.signature,
            "next_send_time": schedule.next_send_time.isoformat() if schedule.next_send_time else None,
            "already_gone": not deleted,
            "ledger_rows_cancelled": ledger_rows,
        },
    )


async def _mark_past_entries_sent(session: AsyncSession, summary: RunSummary, now: datetime) -> None:
    result = await session.execute(
        select(ScheduleLedger.id, ScheduleLedger.match_id, ScheduleLedger.remote_schedule_id)
        .where(ScheduleLedger.status == LEDGER_PENDING)
        .where(ScheduleLedger.send_at_utc < now)
    )
    past = result.all()
    if not past:
        return

    await session.execute(
        update(ScheduleLedger)
        .where(ScheduleLedger.id.in_([row.id for row in past]))
        .where(ScheduleLedger.status == LEDGER_PENDING)
        .values(status=LEDGER_SENT, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    for row in past:
        await record_outcome(
            session, summary, "sent", reason="send_time_passed", match_id=row.match_id,
            details={"ledger_id": row.id, "schedule_id": row.remote_schedule_id},
        )


async def _purge_expired_entries(session: AsyncSession, summary: RunSummary, cutoff: datetime) -> None:
    result = await session.execute(
        select(ScheduleLedger.id, ScheduleLedger.match_id).where(ScheduleLedger.send_at_utc < cutoff)
    )
    expired = result.all()
    if not expired:
        return

    await session.execute(delete(ScheduleLedger).where(ScheduleLedger.id.in_([row.id for row in expired])))
    await session.commit()
    summary.details["purged"] = len(expired)
    await record_outcome(
        session, summary, "purged", reason="retention", match_id=None,
        details={"ledger_ids": [row.id for row in expired], "cutoff": cutoff.isoformat()},
    )
