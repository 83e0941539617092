"""Post-match congratulations to fans of the winning featured team.

Runs under its own lock. Each finished fixture gets exactly one decision
(congrats_status sent / skipped / error); the unique congrats_ledger row
is taken before the send so a concurrent or retried run can't send twice.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.config import Settings, get_settings, parse_csv
from kickoff.jobs.locks import CONGRATS_LOCK, new_holder_token, release, try_acquire
from kickoff.jobs.tracking import RunSummary, record_outcome, record_run_summary
from kickoff.models import CongratsLedger, Match
from kickoff.notifications.fixtures import FixtureWindow, get_finished_fixtures_awaiting_congrats
from kickoff.remote.base import ConfigurationError, RemotePlatformError, SchedulePlatform
from kickoff.remote.braze import team_audience
from kickoff.teams.canonical import find_canonical_team, load_notable_set, load_team_mappings
from kickoff.teams.localization import TranslationResolver
from kickoff.telemetry.sentry import capture_exception
from kickoff.utils.dates import utc_now

logger = logging.getLogger(__name__)

RUN_NAME = "congrats"

CONGRATS_SENT = "sent"
CONGRATS_SKIPPED = "skipped"
CONGRATS_ERROR = "error"


def pick_winner(fixture: FixtureWindow) -> Optional[tuple[str, str]]:
    """(winner, loser) raw names, or None for a draw or a missing score."""
    if fixture.home_score is None or fixture.away_score is None:
        return None
    if fixture.home_score == fixture.away_score:
        return None
    if fixture.home_score > fixture.away_score:
        return fixture.home_team, fixture.away_team
    return fixture.away_team, fixture.home_team


async def _set_congrats_status(session: AsyncSession, match_id: int, status: str) -> None:
    await session.execute(
        update(Match)
        .where(Match.id == match_id)
        .values(congrats_status=status)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def run_congrats(
    session: AsyncSession,
    platform: SchedulePlatform,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> dict:
    settings = settings or get_settings()
    now = now or utc_now()
    summary = RunSummary(RUN_NAME, started_at=now)

    if not settings.CONGRATS_ENABLED:
        logger.info("[CONGRATS] Disabled (CONGRATS_ENABLED=false), skipping run")
        summary.status = "disabled"
        return summary.to_dict()

    campaign_id = settings.BRAZE_CONGRATS_CAMPAIGN_ID
    if not campaign_id:
        raise ConfigurationError("BRAZE_CONGRATS_CAMPAIGN_ID is not configured")

    holder = new_holder_token(RUN_NAME)
    if not await try_acquire(session, CONGRATS_LOCK, holder, timedelta(minutes=settings.LOCK_TTL_MINUTES), now=now):
        summary.status = "locked"
        return await record_run_summary(session, summary)

    try:
        await _send_pending(session, platform, summary, settings, campaign_id, now)
    finally:
        await release(session, CONGRATS_LOCK, holder)

    return await record_run_summary(session, summary)


async def _send_pending(
    session: AsyncSession,
    platform: SchedulePlatform,
    summary: RunSummary,
    settings: Settings,
    campaign_id: str,
    now: datetime,
) -> None:
    fixtures = await get_finished_fixtures_awaiting_congrats(
        session, now - timedelta(hours=settings.CONGRATS_LOOKBACK_HOURS)
    )
    summary.details["fixtures_checked"] = len(fixtures)
    if not fixtures:
        return

    excluded = set(parse_csv(settings.CONGRATS_EXCLUDED_COMPETITIONS))
    rules = await load_team_mappings(session)
    notable = await load_notable_set(session)
    resolver = await TranslationResolver.load(session)

    async def skip(fixture: FixtureWindow, reason: str, details: Optional[dict] = None) -> None:
        await _set_congrats_status(session, fixture.id, CONGRATS_SKIPPED)
        await record_outcome(session, summary, "skipped", reason=reason, match_id=fixture.id, details=details)

    for fixture in fixtures:
        if fixture.competition in excluded:
            await skip(fixture, "excluded_competition", {"competition": fixture.competition})
            continue

        result = pick_winner(fixture)
        if result is None:
            await skip(fixture, "no_winner", {"score": f"{fixture.home_score}-{fixture.away_score}"})
            continue
        winner_raw, loser_raw = result

        winner = find_canonical_team(winner_raw, rules)
        if winner not in notable:
            await skip(fixture, "winner_not_featured", {"winner": winner})
            continue
        winner = notable.teams[winner.casefold()]

        home_localized = await resolver.resolve_team(fixture.home_team, find_canonical_team(fixture.home_team, rules))
        away_localized = await resolver.resolve_team(fixture.away_team, find_canonical_team(fixture.away_team, rules))
        if not home_localized or not away_localized:
            await skip(fixture, "content_unresolved")
            continue

        winner_is_home = winner_raw == fixture.home_team
        competition_en, competition_localized = resolver.resolve_competition(
            fixture.competition, fixture.competition_name
        )
        trigger_properties = {
            "match_id": str(fixture.id),
            "winning_team_en": winner,
            "winning_team_localized": home_localized if winner_is_home else away_localized,
            "losing_team_en": loser_raw,
            "losing_team_localized": away_localized if winner_is_home else home_localized,
            "home_en": fixture.home_team,
            "away_en": fixture.away_team,
            "home_localized": home_localized,
            "away_localized": away_localized,
            "score_home": fixture.home_score,
            "score_away": fixture.away_score,
            "result_summary": f"{fixture.home_score}-{fixture.away_score}",
            "competition_en": competition_en,
            "competition_localized": competition_localized,
            "origin": settings.SCHEDULE_ORIGIN,
        }

        await _send_one(
            session, platform, summary, fixture, winner,
            team_audience([notable.audience_key(winner)]), trigger_properties, campaign_id, now,
        )


async def _send_one(
    session: AsyncSession,
    platform: SchedulePlatform,
    summary: RunSummary,
    fixture: FixtureWindow,
    winner: str,
    audience: dict,
    trigger_properties: dict,
    campaign_id: str,
    now: datetime,
) -> None:
    row = CongratsLedger(match_id=fixture.id, winner_team=winner, status="pending", created_at=now)
    session.add(row)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        await _set_congrats_status(session, fixture.id, CONGRATS_SENT)
        await record_outcome(session, summary, "skipped", reason="already_sent", match_id=fixture.id)
        return
    ledger_id = row.id

    try:
        result = await platform.send_now(audience, trigger_properties, campaign_id=campaign_id)
    except RemotePlatformError as e:
        capture_exception(e, job_id=RUN_NAME, match_id=fixture.id)
        await session.execute(
            update(CongratsLedger)
            .where(CongratsLedger.id == ledger_id)
            .values(status=CONGRATS_ERROR, error=str(e)[:500])
            .execution_options(synchronize_session=False)
        )
        await _set_congrats_status(session, fixture.id, CONGRATS_ERROR)
        await record_outcome(
            session, summary, "error", reason="send_failed", match_id=fixture.id,
            details={"error": str(e), "status_code": e.status_code},
        )
        return

    await session.execute(
        update(CongratsLedger)
        .where(CongratsLedger.id == ledger_id)
        .values(status=CONGRATS_SENT, dispatch_id=result.dispatch_id)
        .execution_options(synchronize_session=False)
    )
    await _set_congrats_status(session, fixture.id, CONGRATS_SENT)
    await record_outcome(
        session, summary, "sent", reason="congrats", match_id=fixture.id,
        details={"winner": winner, "dispatch_id": result.dispatch_id},
    )
