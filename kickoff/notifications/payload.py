"""Build the remote payload (audience, trigger properties, signature) for a fixture."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from kickoff.notifications.fixtures import FixtureWindow
from kickoff.notifications.signature import compute_signature
from kickoff.remote.braze import team_audience
from kickoff.teams.canonical import NotableSet
from kickoff.teams.localization import TranslationResolver
from kickoff.utils.dates import isoformat_z

logger = logging.getLogger(__name__)


@dataclass
class ScheduleContent:
    """Everything the scheduler sends for one fixture."""

    match_id: int
    send_at: datetime
    audience_keys: list[str]
    audience: dict
    trigger_properties: dict
    signature: str


@dataclass
class UnresolvedContent:
    """Required localized content is missing; the fixture must be skipped."""

    missing: list[str]


def format_local_kickoff(kickoff: datetime, tz_name: str) -> str:
    """Kickoff as 'YYYY-MM-DD HH:MM' in the audience's timezone."""
    aware = kickoff.replace(tzinfo=timezone.utc)
    return aware.astimezone(ZoneInfo(tz_name)).strftime("%Y-%m-%d %H:%M")


async def build_schedule_content(
    match: FixtureWindow,
    send_at: datetime,
    featured: list[str],
    notable: NotableSet,
    resolver: TranslationResolver,
    canonical_names: tuple[str, str],
    origin: str,
    local_timezone: str,
) -> ScheduleContent | UnresolvedContent:
    """
    Resolve localized names and assemble the schedule payload.

    Team names are required: if either cannot be localized the fixture is
    not scheduled at all (no partial payloads).
    """
    home_canonical, away_canonical = canonical_names
    home_localized = await resolver.resolve_team(match.home_team, home_canonical)
    away_localized = await resolver.resolve_team(match.away_team, away_canonical)

    missing = []
    if not home_localized:
        missing.append(match.home_team)
    if not away_localized:
        missing.append(match.away_team)
    if missing:
        return UnresolvedContent(missing=missing)

    competition_en, competition_localized = resolver.resolve_competition(
        match.competition, match.competition_name
    )
    kickoff_local = format_local_kickoff(match.utc_date, local_timezone)
    audience_keys = sorted({notable.audience_key(team) for team in featured})

    signature = compute_signature(
        send_at,
        audience_keys,
        match.home_team,
        match.away_team,
        home_localized,
        away_localized,
        competition_en,
        competition_localized,
        kickoff_local,
    )

    trigger_properties = {
        "match_id": str(match.id),
        "competition_key": match.competition,
        "competition_en": competition_en,
        "competition_localized": competition_localized,
        "home_en": match.home_team,
        "away_en": match.away_team,
        "home_localized": home_localized,
        "away_localized": away_localized,
        "kickoff_utc": isoformat_z(match.utc_date),
        "kickoff_local": kickoff_local,
        "sig": signature,
        "origin": origin,
    }

    return ScheduleContent(
        match_id=match.id,
        send_at=send_at,
        audience_keys=audience_keys,
        audience=team_audience(audience_keys),
        trigger_properties=trigger_properties,
        signature=signature,
    )
