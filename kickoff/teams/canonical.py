"""Team canonicalization and the featured (notable) team set.

The feed spells clubs many ways ("Man Utd", "Manchester United FC", ...).
team_mappings holds regex pattern -> canonical name rules; a raw name is
canonicalized once per fixture and the canonical name is checked against
featured_teams.

Usage:
    rules = await load_team_mappings(session)
    notable = await load_notable_set(session)
    featured = featured_participants(match.home_team, match.away_team, rules, notable)
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.models import FeaturedTeam, TeamMapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CanonicalRule:
    """Compiled team_mappings row."""
    pattern: re.Pattern
    canonical_name: str


@dataclass
class NotableSet:
    """Featured teams keyed by casefolded canonical name."""
    teams: dict[str, str] = field(default_factory=dict)  # casefold name -> canonical name
    audience_keys: dict[str, str] = field(default_factory=dict)  # casefold name -> attribute value

    def add(self, team_name: str, attribute_value: Optional[str] = None) -> None:
        key = team_name.casefold()
        self.teams[key] = team_name
        self.audience_keys[key] = attribute_value or team_name

    def __contains__(self, team_name: str) -> bool:
        return team_name.casefold() in self.teams

    def __len__(self) -> int:
        return len(self.teams)

    def audience_key(self, team_name: str) -> str:
        """Value of the 'Team N' custom attribute for a featured team."""
        return self.audience_keys[team_name.casefold()]


def compile_mappings(rows: Iterable[tuple[str, str]]) -> list[CanonicalRule]:
    """
    Compile (pattern, canonical_name) pairs, case-insensitive.

    Invalid patterns are logged and dropped; the remaining rules keep their order.
    """
    rules = []
    for pattern, canonical_name in rows:
        try:
            rules.append(CanonicalRule(re.compile(pattern, re.IGNORECASE), canonical_name))
        except re.error as e:
            logger.warning(f"[TEAMS] Ignoring invalid team mapping pattern {pattern!r}: {e}")
    return rules


def find_canonical_team(name: str, rules: list[CanonicalRule]) -> str:
    """
    Canonical name for a raw feed name.

    First matching rule wins. Names no rule matches canonicalize to themselves.
    """
    cleaned = (name or "").strip()
    for rule in rules:
        if rule.pattern.search(cleaned):
            return rule.canonical_name
    return cleaned


def featured_participants(
    home_team: str,
    away_team: str,
    rules: list[CanonicalRule],
    notable: NotableSet,
) -> list[str]:
    """Canonical names of the fixture's participants that are featured (home first, no duplicates)."""
    featured = []
    for raw in (home_team, away_team):
        canonical = find_canonical_team(raw, rules)
        if canonical not in notable:
            continue
        name = notable.teams[canonical.casefold()]
        if name not in featured:
            featured.append(name)
    return featured


async def load_team_mappings(session: AsyncSession) -> list[CanonicalRule]:
    """Load and compile all team mappings (single query)."""
    result = await session.execute(
        select(TeamMapping.pattern, TeamMapping.canonical_name).order_by(TeamMapping.id)
    )
    return compile_mappings(result.all())


async def load_notable_set(session: AsyncSession) -> NotableSet:
    """Load active featured teams with their audience attribute values."""
    result = await session.execute(
        select(FeaturedTeam.team_name, FeaturedTeam.braze_attribute_value)
        .where(FeaturedTeam.is_active.is_(True))
    )
    notable = NotableSet()
    for team_name, attribute_value in result.all():
        notable.add(team_name, attribute_value)
    return notable
