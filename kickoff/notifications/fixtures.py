"""Fixture feed queries.

Rows are returned as detached snapshots: the units roll back their session
on expected constraint violations, which would otherwise expire ORM objects
mid-run.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.models import FINISHED_STATUS, NOT_STARTED_STATUSES, Match


@dataclass(frozen=True)
class FixtureWindow:
    """Read-only view of a fixture."""

    id: int
    home_team: str
    away_team: str
    utc_date: datetime
    status: str
    competition: str
    competition_name: Optional[str] = None
    home_score: Optional[int] = None
    away_score: Optional[int] = None

    @classmethod
    def from_match(cls, match: Match) -> "FixtureWindow":
        return cls(
            id=match.id,
            home_team=match.home_team,
            away_team=match.away_team,
            utc_date=match.utc_date,
            status=match.status,
            competition=match.competition,
            competition_name=match.competition_name,
            home_score=match.home_score,
            away_score=match.away_score,
        )


async def get_upcoming_fixtures(session: AsyncSession, start: datetime, end: datetime) -> list[FixtureWindow]:
    """Not-yet-started fixtures kicking off in [start, end], earliest first."""
    result = await session.execute(
        select(Match)
        .where(Match.utc_date >= start)
        .where(Match.utc_date <= end)
        .where(Match.status.in_(NOT_STARTED_STATUSES))
        .order_by(Match.utc_date, Match.id)
        .execution_options(populate_existing=True)
    )
    return [FixtureWindow.from_match(match) for match in result.scalars().all()]


async def get_finished_fixtures_awaiting_congrats(
    session: AsyncSession,
    since: datetime,
) -> list[FixtureWindow]:
    """Finished fixtures kicked off after `since` with no congrats decision yet."""
    result = await session.execute(
        select(Match)
        .where(Match.status == FINISHED_STATUS)
        .where(Match.utc_date >= since)
        .where(Match.congrats_status.is_(None))
        .order_by(Match.utc_date, Match.id)
        .execution_options(populate_existing=True)
    )
    return [FixtureWindow.from_match(match) for match in result.scalars().all()]
