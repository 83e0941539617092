"""Unit tests for team canonicalization, the featured set and translations."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from kickoff.models import TeamTranslation
from kickoff.teams.canonical import (
    NotableSet,
    compile_mappings,
    featured_participants,
    find_canonical_team,
    load_notable_set,
    load_team_mappings,
)
from kickoff.teams.localization import TranslationResolver


# ---------------------------------------------------------------------------
# find_canonical_team
# ---------------------------------------------------------------------------

class TestFindCanonicalTeam:
    @pytest.fixture(scope="class")
    def rules(self):
        return compile_mappings([
            (r"^real madrid", "Real Madrid"),
            (r"man(chester)?\s*(utd|united)", "Manchester United"),
            (r"^barcelona$|^fc barcelona$", "Barcelona"),
        ])

    def test_regex_match(self, rules):
        assert find_canonical_team("Real Madrid CF", rules) == "Real Madrid"

    def test_case_insensitive(self, rules):
        assert find_canonical_team("MAN UTD", rules) == "Manchester United"
        assert find_canonical_team("manchester united fc", rules) == "Manchester United"

    def test_first_rule_wins(self):
        rules = compile_mappings([("madrid", "Real Madrid"), ("atletico", "Atletico Madrid")])
        assert find_canonical_team("Atletico Madrid", rules) == "Real Madrid"

    def test_unmapped_name_is_its_own_canonical(self, rules):
        assert find_canonical_team("  Getafe CF ", rules) == "Getafe CF"

    def test_empty_name(self, rules):
        assert find_canonical_team("", rules) == ""

    def test_invalid_pattern_dropped(self):
        rules = compile_mappings([("(unclosed", "Broken"), ("^liverpool", "Liverpool")])
        assert len(rules) == 1
        assert find_canonical_team("Liverpool FC", rules) == "Liverpool"


# ---------------------------------------------------------------------------
# NotableSet / featured_participants
# ---------------------------------------------------------------------------

class TestFeaturedParticipants:
    @pytest.fixture
    def notable(self):
        notable = NotableSet()
        notable.add("Real Madrid", "real_madrid")
        notable.add("Barcelona")
        return notable

    def test_audience_key_falls_back_to_name(self, notable):
        assert notable.audience_key("Real Madrid") == "real_madrid"
        assert notable.audience_key("barcelona") == "Barcelona"

    def test_membership_casefolded(self, notable):
        assert "REAL MADRID" in notable
        assert "Getafe" not in notable
        assert len(notable) == 2

    def test_home_first(self, notable):
        rules = compile_mappings([(r"^real madrid", "Real Madrid")])
        assert featured_participants("Barcelona", "Real Madrid CF", rules, notable) == ["Barcelona", "Real Madrid"]

    def test_uses_featured_spelling(self, notable):
        assert featured_participants("real madrid", "Getafe", [], notable) == ["Real Madrid"]

    def test_no_featured_team(self, notable):
        assert featured_participants("Getafe", "Valencia", [], notable) == []

    def test_same_team_twice_deduplicated(self, notable):
        rules = compile_mappings([(r"madrid", "Real Madrid")])
        assert featured_participants("Real Madrid", "Real Madrid Castilla", rules, notable) == ["Real Madrid"]


class TestLoaders:
    @pytest.mark.asyncio
    async def test_inactive_featured_teams_excluded(self, session, seed):
        await seed.featured("Real Madrid", "real_madrid")
        await seed.featured("Sevilla", is_active=False)
        notable = await load_notable_set(session)
        assert "Real Madrid" in notable
        assert "Sevilla" not in notable

    @pytest.mark.asyncio
    async def test_mappings_keep_insertion_order(self, session, seed):
        await seed.mapping("madrid", "Real Madrid")
        await seed.mapping("atletico", "Atletico Madrid")
        rules = await load_team_mappings(session)
        assert [rule.canonical_name for rule in rules] == ["Real Madrid", "Atletico Madrid"]


# ---------------------------------------------------------------------------
# TranslationResolver
# ---------------------------------------------------------------------------

class TestTranslationResolver:
    @pytest.mark.asyncio
    async def test_tries_each_spelling(self, session, seed):
        await seed.translation("Real Madrid", "ريال مدريد")
        resolver = await TranslationResolver.load(session)
        assert await resolver.resolve_team("Real Madrid CF", "Real Madrid") == "ريال مدريد"

    @pytest.mark.asyncio
    async def test_missing_translation_without_generator(self, session):
        resolver = await TranslationResolver.load(session)
        assert await resolver.resolve_team("Getafe") is None

    @pytest.mark.asyncio
    async def test_generated_translation_persisted(self, session):
        generator = AsyncMock(return_value=" خيتافي ")
        resolver = await TranslationResolver.load(session, generator)

        assert await resolver.resolve_team("Getafe") == "خيتافي"
        # Cached: a second lookup doesn't call the generator again
        assert await resolver.resolve_team("Getafe") == "خيتافي"
        generator.assert_awaited_once_with("Getafe")

        result = await session.execute(select(TeamTranslation.localized_name).where(TeamTranslation.team_name == "Getafe"))
        assert result.scalar_one() == "خيتافي"

    @pytest.mark.asyncio
    async def test_generator_failure_is_absent(self, session):
        generator = AsyncMock(side_effect=RuntimeError("LLM down"))
        resolver = await TranslationResolver.load(session, generator)
        assert await resolver.resolve_team("Getafe") is None

    @pytest.mark.asyncio
    async def test_competition_falls_back_to_feed_name(self, session, seed):
        await seed.competition("PD", "La Liga", "الدوري الإسباني")
        resolver = await TranslationResolver.load(session)
        assert resolver.resolve_competition("PD", "Primera Division") == ("La Liga", "الدوري الإسباني")
        assert resolver.resolve_competition("CL", "Champions League") == ("Champions League", "Champions League")
        assert resolver.resolve_competition("CL", None) == ("CL", "CL")
