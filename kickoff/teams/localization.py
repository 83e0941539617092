"""Localized display names for teams and competitions.

Translations are preloaded once per run (two queries) and resolved from
memory. A missing team translation can optionally be produced by an async
generator callable; generated names are persisted for reuse, but a failure
there only means "absent" for this run.
"""

import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.models import CompetitionTranslation, TeamTranslation

logger = logging.getLogger(__name__)

TranslationGenerator = Callable[[str], Awaitable[Optional[str]]]


class TranslationResolver:
    """In-memory view of team_translations and competition_translations."""

    def __init__(
        self,
        team_names: dict[str, str],
        competitions: dict[str, tuple[str, str]],
        generator: Optional[TranslationGenerator] = None,
    ):
        self._teams = {name.casefold(): localized for name, localized in team_names.items()}
        self._competitions = competitions
        self._generator = generator
        self._session: Optional[AsyncSession] = None

    @classmethod
    async def load(
        cls,
        session: AsyncSession,
        generator: Optional[TranslationGenerator] = None,
    ) -> "TranslationResolver":
        teams = await session.execute(select(TeamTranslation.team_name, TeamTranslation.localized_name))
        comps = await session.execute(
            select(
                CompetitionTranslation.competition_code,
                CompetitionTranslation.english_name,
                CompetitionTranslation.localized_name,
            )
        )
        resolver = cls(
            team_names=dict(teams.all()),
            competitions={code: (english, localized) for code, english, localized in comps.all()},
            generator=generator,
        )
        resolver._session = session
        return resolver

    def lookup_team(self, name: str) -> Optional[str]:
        return self._teams.get((name or "").strip().casefold())

    async def resolve_team(self, *names: str) -> Optional[str]:
        """
        Localized name for a team, trying each candidate spelling in order
        (e.g. raw feed name, then canonical name).

        Returns None when no translation exists and none could be generated.
        """
        for name in names:
            localized = self.lookup_team(name)
            if localized:
                return localized

        if self._generator is None or not names:
            return None
        return await self._generate(names[0])

    def resolve_competition(self, code: str, fallback_name: Optional[str]) -> tuple[str, str]:
        """
        (english, localized) competition names.

        Competitions are not required content: without a translation both
        fall back to the feed's name (or the code).
        """
        english, localized = self._competitions.get(code, (None, None))
        default = fallback_name or code
        return english or default, localized or default

    async def _generate(self, name: str) -> Optional[str]:
        try:
            localized = await self._generator(name)
        except Exception as e:
            logger.warning(f"[I18N] Translation generator failed for {name!r}: {e}")
            return None
        if not localized:
            return None

        localized = localized.strip()
        self._teams[name.casefold()] = localized
        await self._persist(name, localized)
        logger.info(f"[I18N] Generated translation: {name} -> {localized}")
        return localized

    async def _persist(self, name: str, localized: str) -> None:
        if self._session is None:
            return
        self._session.add(TeamTranslation(team_name=name, localized_name=localized))
        try:
            await self._session.commit()
        except IntegrityError:
            await self._session.rollback()
        except SQLAlchemyError as e:
            await self._session.rollback()
            logger.warning(f"[I18N] Could not persist translation for {name!r}: {e}")
