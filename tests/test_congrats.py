"""Tests for the post-match congrats sender."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from kickoff.models import CongratsLedger, Match
from kickoff.notifications.congrats import pick_winner, run_congrats
from kickoff.notifications.fixtures import FixtureWindow
from kickoff.remote.base import ConfigurationError


@pytest.fixture
def congrats_settings(make_settings):
    return make_settings(CONGRATS_ENABLED=True, BRAZE_CONGRATS_CAMPAIGN_ID="congrats-campaign")


async def congrats_status(session, match_id):
    result = await session.execute(
        select(Match.congrats_status).where(Match.id == match_id)
    )
    return result.scalar_one()


async def finished(seed, match_id, home, away, home_score, away_score, now, competition="PD"):
    return await seed.match(
        match_id, home, away, now - timedelta(hours=2),
        status="FINISHED", competition=competition, home_score=home_score, away_score=away_score,
    )


def fixture(home_score, away_score):
    return FixtureWindow(
        id=1, home_team="A", away_team="B", utc_date=None, status="FINISHED", competition="PD",
        home_score=home_score, away_score=away_score,
    )


class TestPickWinner:
    def test_home_win(self):
        assert pick_winner(fixture(2, 1)) == ("A", "B")

    def test_away_win(self):
        assert pick_winner(fixture(0, 3)) == ("B", "A")

    def test_draw(self):
        assert pick_winner(fixture(1, 1)) is None

    def test_missing_score(self):
        assert pick_winner(fixture(None, 1)) is None


class TestRunCongrats:
    @pytest.mark.asyncio
    async def test_disabled_by_default(self, session, platform, settings, now):
        summary = await run_congrats(session, platform, now=now, settings=settings)
        assert summary["status"] == "disabled"

    @pytest.mark.asyncio
    async def test_missing_campaign_raises(self, session, platform, make_settings, now):
        with pytest.raises(ConfigurationError):
            await run_congrats(session, platform, now=now, settings=make_settings(CONGRATS_ENABLED=True))

    @pytest.mark.asyncio
    async def test_sends_to_winner_fans(self, session, seed, platform, congrats_settings, now):
        await seed.standard_world()
        await finished(seed, 10, "Real Madrid CF", "Barcelona", 3, 1, now)

        summary = await run_congrats(session, platform, now=now, settings=congrats_settings)

        assert summary["counts"] == {"sent": 1}
        assert len(platform.sends) == 1
        send = platform.sends[0]
        assert send["campaign_id"] == "congrats-campaign"
        assert {f["custom_attribute"]["value"] for f in send["audience"]["OR"]} == {"real_madrid"}
        properties = send["trigger_properties"]
        assert properties["match_id"] == "10"
        assert properties["winning_team_en"] == "Real Madrid"
        assert properties["winning_team_localized"] == "ريال مدريد"
        assert properties["losing_team_localized"] == "برشلونة"
        assert properties["result_summary"] == "3-1"

        assert await congrats_status(session, 10) == "sent"
        row = (await session.execute(select(CongratsLedger).execution_options(populate_existing=True))).scalar_one()
        assert row.status == "sent"
        assert row.dispatch_id == "dispatch-1"

    @pytest.mark.asyncio
    async def test_each_fixture_decided_once(self, session, seed, platform, congrats_settings, now):
        await seed.standard_world()
        await finished(seed, 10, "Real Madrid CF", "Barcelona", 3, 1, now)

        await run_congrats(session, platform, now=now, settings=congrats_settings)
        summary = await run_congrats(session, platform, now=now, settings=congrats_settings)

        assert summary["fixtures_checked"] == 0
        assert len(platform.sends) == 1

    @pytest.mark.asyncio
    async def test_skip_reasons(self, session, seed, platform, congrats_settings, now):
        await seed.standard_world()
        await finished(seed, 10, "Real Madrid CF", "Barcelona", 1, 1, now)
        await finished(seed, 11, "Real Madrid CF", "Barcelona", 0, 2, now)
        await finished(seed, 12, "Real Madrid CF", "PSG", 2, 0, now, competition="FL1")
        await finished(seed, 13, "Real Madrid CF", "Getafe", 2, 0, now)

        summary = await run_congrats(session, platform, now=now, settings=congrats_settings)

        assert summary["reasons"] == {
            "no_winner": 1,
            "winner_not_featured": 1,
            "excluded_competition": 1,
            "content_unresolved": 1,
        }
        assert platform.sends == []
        for match_id in (10, 11, 12, 13):
            assert await congrats_status(session, match_id) == "skipped"

    @pytest.mark.asyncio
    async def test_existing_ledger_row_blocks_resend(self, session, seed, platform, congrats_settings, now):
        await seed.standard_world()
        await finished(seed, 10, "Real Madrid CF", "Barcelona", 3, 1, now)
        session.add(CongratsLedger(match_id=10, winner_team="Real Madrid", status="sent", created_at=now))
        await session.commit()

        summary = await run_congrats(session, platform, now=now, settings=congrats_settings)

        assert summary["reasons"] == {"already_sent": 1}
        assert platform.sends == []
        assert await congrats_status(session, 10) == "sent"

    @pytest.mark.asyncio
    async def test_send_failure_recorded(self, session, seed, platform, congrats_settings, now):
        await seed.standard_world()
        await finished(seed, 10, "Real Madrid CF", "Barcelona", 3, 1, now)
        platform.fail_send = True

        summary = await run_congrats(session, platform, now=now, settings=congrats_settings)

        assert summary["reasons"] == {"send_failed": 1}
        assert await congrats_status(session, 10) == "error"
        row = (await session.execute(select(CongratsLedger).execution_options(populate_existing=True))).scalar_one()
        assert row.status == "error"
        assert "HTTP 400" in row.error

    @pytest.mark.asyncio
    async def test_old_fixtures_outside_lookback(self, session, seed, platform, congrats_settings, now):
        await seed.standard_world()
        await seed.match(
            10, "Real Madrid CF", "Barcelona", now - timedelta(hours=8),
            status="FINISHED", home_score=3, away_score=1,
        )

        summary = await run_congrats(session, platform, now=now, settings=congrats_settings)

        assert summary["fixtures_checked"] == 0
        assert platform.sends == []
