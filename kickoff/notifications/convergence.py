"""
Convergence scheduler: make Braze hold exactly one correct schedule per eligible fixture.

For every not-yet-started fixture in the lookahead window that involves a
featured team, compare the desired payload signature with the ledger and
create, update or leave the remote schedule alone.

Create is two-phase: reserve a placeholder ledger row (unique per fixture),
call Braze, then promote the row to the real schedule id. A failed create
deletes the placeholder. Per-fixture failures never abort the run.

Usage:
    async with get_session_with_retry() as session:
        summary = await run_convergence(session, BrazeClient.from_settings())
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.config import Settings, get_settings
from kickoff.jobs.locks import RECONCILE_LOCK, SCHEDULER_LOCK, is_held, new_holder_token, release, try_acquire
from kickoff.jobs.tracking import RunSummary, record_outcome, record_run_summary
from kickoff.models import LEDGER_SENT
from kickoff.notifications.fixtures import FixtureWindow, get_upcoming_fixtures
from kickoff.notifications.ledger import (
    LedgerSnapshot,
    delete_entries_for_match,
    delete_entry,
    get_active_entry,
    is_legacy_schedule_id,
    is_placeholder_id,
    promote_entry,
    record_convergent_update,
    reserve_ledger_slot,
)
from kickoff.notifications.payload import ScheduleContent, UnresolvedContent, build_schedule_content
from kickoff.remote.base import RemotePlatformError, SchedulePlatform
from kickoff.teams.canonical import (
    CanonicalRule,
    NotableSet,
    featured_participants,
    find_canonical_team,
    load_notable_set,
    load_team_mappings,
)
from kickoff.teams.localization import TranslationGenerator, TranslationResolver
from kickoff.telemetry.sentry import capture_exception
from kickoff.utils.dates import utc_now

logger = logging.getLogger(__name__)

RUN_NAME = "scheduler"


class _RunContext:
    """Per-run inputs loaded once and shared across fixtures."""

    def __init__(
        self,
        session: AsyncSession,
        platform: SchedulePlatform,
        summary: RunSummary,
        settings: Settings,
        now: datetime,
        rules: list[CanonicalRule],
        notable: NotableSet,
        resolver: TranslationResolver,
    ):
        self.session = session
        self.platform = platform
        self.summary = summary
        self.settings = settings
        self.now = now
        self.rules = rules
        self.notable = notable
        self.resolver = resolver
        self.lock_ttl = timedelta(minutes=settings.LOCK_TTL_MINUTES)
        self.update_buffer = timedelta(minutes=settings.UPDATE_BUFFER_MINUTES)

    async def outcome(self, action: str, reason: str, match_id: int, details: Optional[dict] = None) -> None:
        await record_outcome(self.session, self.summary, action, reason=reason, match_id=match_id, details=details)


async def run_convergence(
    session: AsyncSession,
    platform: SchedulePlatform,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
    translation_generator: Optional[TranslationGenerator] = None,
) -> dict:
    """
    One convergence pass over the lookahead window.

    Lock contention is a normal outcome (status "locked", or "deferred"
    while a reconcile pass is cancelling remote schedules). Lock store or
    configuration failures propagate to the caller.

    Returns:
        Run summary dict (status, counts by action, counts by reason).
    """
    settings = settings or get_settings()
    now = now or utc_now()
    summary = RunSummary(RUN_NAME, started_at=now)

    if not settings.NOTIFICATIONS_ENABLED:
        logger.info("[SCHEDULER] Notifications disabled (NOTIFICATIONS_ENABLED=false), skipping run")
        summary.status = "disabled"
        return summary.to_dict()

    holder = new_holder_token(RUN_NAME)
    ttl = timedelta(minutes=settings.LOCK_TTL_MINUTES)
    if not await try_acquire(session, SCHEDULER_LOCK, holder, ttl, now=now):
        summary.status = "locked"
        return await record_run_summary(session, summary)

    if await is_held(session, RECONCILE_LOCK, now=now):
        await release(session, SCHEDULER_LOCK, holder)
        logger.info("[SCHEDULER] Reconcile is running, deferring")
        summary.status = "deferred"
        return await record_run_summary(session, summary)

    try:
        await _converge(session, platform, summary, settings, now, translation_generator)
    finally:
        await release(session, SCHEDULER_LOCK, holder)

    return await record_run_summary(session, summary)


async def _converge(
    session: AsyncSession,
    platform: SchedulePlatform,
    summary: RunSummary,
    settings: Settings,
    now: datetime,
    translation_generator: Optional[TranslationGenerator],
) -> None:
    notable = await load_notable_set(session)
    if not notable:
        logger.info("[SCHEDULER] No featured teams configured - skipping")
        summary.status = "no_featured_teams"
        return

    ctx = _RunContext(
        session=session,
        platform=platform,
        summary=summary,
        settings=settings,
        now=now,
        rules=await load_team_mappings(session),
        notable=notable,
        resolver=await TranslationResolver.load(session, translation_generator),
    )

    fixtures = await get_upcoming_fixtures(session, now, now + timedelta(days=settings.LOOKAHEAD_DAYS))
    summary.details["fixtures_checked"] = len(fixtures)
    logger.info(f"[SCHEDULER] {len(fixtures)} fixtures in the next {settings.LOOKAHEAD_DAYS} days, "
                f"{len(notable)} featured teams")

    for fixture in fixtures:
        featured = featured_participants(fixture.home_team, fixture.away_team, ctx.rules, notable)
        if not featured:
            # Counted only: logging every non-featured fixture each run would flood the outcome log
            summary.add("ignored", "not_featured")
            continue

        try:
            await _converge_fixture(ctx, fixture, featured)
        except SQLAlchemyError as e:
            await session.rollback()
            capture_exception(e, job_id=RUN_NAME, match_id=fixture.id)
            await ctx.outcome("error", "ledger_write_failed", fixture.id, {"error": str(e)[:300]})


async def _converge_fixture(ctx: _RunContext, fixture: FixtureWindow, featured: list[str]) -> None:
    send_at = fixture.utc_date - timedelta(minutes=ctx.settings.SEND_OFFSET_MINUTES)
    if send_at <= ctx.now:
        await ctx.outcome(
            "skipped", "window_missed", fixture.id,
            {"send_at": send_at.isoformat(), "now": ctx.now.isoformat()},
        )
        return

    content = await build_schedule_content(
        fixture,
        send_at,
        featured,
        ctx.notable,
        ctx.resolver,
        canonical_names=(
            find_canonical_team(fixture.home_team, ctx.rules),
            find_canonical_team(fixture.away_team, ctx.rules),
        ),
        origin=ctx.settings.SCHEDULE_ORIGIN,
        local_timezone=ctx.settings.LOCAL_TIMEZONE,
    )
    if isinstance(content, UnresolvedContent):
        await ctx.outcome("skipped", "content_unresolved", fixture.id, {"missing": content.missing})
        return

    entry = await get_active_entry(ctx.session, fixture.id)
    if entry is not None and _reservation_in_flight(ctx, entry):
        await ctx.outcome("skipped", "reservation_in_progress", fixture.id)
        return
    if entry is not None:
        entry = await _retire_unusable_entry(ctx, entry)
    if entry is None:
        await _create(ctx, content)
        return

    if entry.status == LEDGER_SENT:
        await ctx.outcome("skipped", "already_sent", fixture.id, {"schedule_id": entry.remote_schedule_id})
        return

    if entry.signature == content.signature:
        await ctx.outcome("skipped", "unchanged", fixture.id)
        return

    # Guard on the schedule that is live remotely as well as the new target
    fires_at = min(entry.send_at_utc, content.send_at)
    if fires_at - ctx.now < ctx.update_buffer:
        await ctx.outcome(
            "skipped", "update_buffer", fixture.id,
            {
                "minutes_to_send": round((fires_at - ctx.now).total_seconds() / 60, 1),
                "buffer": ctx.settings.UPDATE_BUFFER_MINUTES,
            },
        )
        return

    await _update(ctx, entry, content)


def _reservation_in_flight(ctx: _RunContext, entry: LedgerSnapshot) -> bool:
    """A placeholder younger than the lock TTL belongs to a run that may still be creating it."""
    return is_placeholder_id(entry.remote_schedule_id) and ctx.now - entry.created_at < ctx.lock_ttl


async def _retire_unusable_entry(ctx: _RunContext, entry: LedgerSnapshot) -> Optional[LedgerSnapshot]:
    """
    Drop rows that can't be converged in place.

    Legacy remote ids are force-migrated (deleted and recreated). Placeholders
    older than the lock TTL were left by a crashed run and are recreated too.
    """
    if is_legacy_schedule_id(entry.remote_schedule_id, ctx.settings.LEGACY_SCHEDULE_ID_PATTERN):
        await delete_entry(ctx.session, entry.id)
        await ctx.outcome(
            "migrated", "legacy_schedule_id", entry.match_id,
            {"old_schedule_id": entry.remote_schedule_id},
        )
        return None

    if is_placeholder_id(entry.remote_schedule_id):
        await delete_entry(ctx.session, entry.id)
        await ctx.outcome(
            "recovered", "stale_placeholder", entry.match_id,
            {"placeholder": entry.remote_schedule_id, "created_at": entry.created_at.isoformat()},
        )
        return None

    return entry


async def _create(ctx: _RunContext, content: ScheduleContent) -> None:
    reservation = await reserve_ledger_slot(
        ctx.session, content.match_id, content.signature, content.send_at, ctx.now
    )
    if reservation is None:
        await ctx.outcome("skipped", "reservation_conflict", content.match_id)
        return

    try:
        created = await ctx.platform.create_schedule(
            content.send_at, content.audience, content.trigger_properties
        )
    except RemotePlatformError as e:
        await delete_entry(ctx.session, reservation.id)
        capture_exception(e, job_id=RUN_NAME, match_id=content.match_id)
        await ctx.outcome(
            "error", "create_failed", content.match_id,
            {"error": str(e), "status_code": e.status_code, "body": e.body},
        )
        return

    await promote_entry(
        ctx.session, reservation.id, created.schedule_id, created.dispatch_id, created.send_id, ctx.now
    )
    await ctx.outcome(
        "created", "new_schedule", content.match_id,
        {
            "schedule_id": created.schedule_id,
            "send_at": content.send_at.isoformat(),
            "audience": content.audience_keys,
        },
    )


async def _update(ctx: _RunContext, entry: LedgerSnapshot, content: ScheduleContent) -> None:
    try:
        await ctx.platform.update_schedule(
            entry.remote_schedule_id, content.send_at, content.audience, content.trigger_properties
        )
    except RemotePlatformError as e:
        # The old schedule stays valid; the next run retries off the signature mismatch
        capture_exception(e, job_id=RUN_NAME, match_id=content.match_id)
        await ctx.outcome(
            "error", "update_failed", content.match_id,
            {"schedule_id": entry.remote_schedule_id, "error": str(e), "status_code": e.status_code},
        )
        return

    await record_convergent_update(ctx.session, entry.id, content.signature, content.send_at, ctx.now)
    await ctx.outcome(
        "updated", "signature_changed", content.match_id,
        {
            "schedule_id": entry.remote_schedule_id,
            "old_send_at": entry.send_at_utc.isoformat(),
            "send_at": content.send_at.isoformat(),
        },
    )


async def reset_fixture(
    session: AsyncSession,
    platform: SchedulePlatform,
    match_id: int,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> dict:
    """
    Manual reset: delete the fixture's ledger rows, then run convergence.

    The remote schedule the deleted row pointed at becomes an orphan and is
    cancelled by the next reconcile.
    """
    now = now or utc_now()
    deleted = await delete_entries_for_match(session, match_id)
    summary = RunSummary("reset", started_at=now)
    await record_outcome(session, summary, "reset", reason="manual", match_id=match_id, details={"deleted": deleted})
    result = await run_convergence(session, platform, now=now, settings=settings)
    return {"match_id": match_id, "deleted": deleted, "convergence": result}
