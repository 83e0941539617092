"""Shared fixtures: in-memory database, fake Braze platform and seed helpers."""

import os

# Must be set before kickoff modules read settings at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("BRAZE_API_KEY", "test-key")
os.environ.setdefault("BRAZE_REST_ENDPOINT", "https://rest.test.braze.eu")
os.environ.setdefault("BRAZE_CAMPAIGN_ID", "campaign-1")
os.environ.setdefault("SMTP_ENABLED", "false")
os.environ.setdefault("SENTRY_DSN", "")

from datetime import datetime, timedelta
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool
from sqlmodel import SQLModel

import kickoff.models  # noqa: F401
from kickoff.config import Settings
from kickoff.models import (
    CompetitionTranslation,
    FeaturedTeam,
    Match,
    ScheduleLedger,
    TeamMapping,
    TeamTranslation,
)
from kickoff.remote.base import (
    RemotePlatformError,
    RemoteSchedule,
    ScheduleCreated,
    SchedulePlatform,
    SendResult,
)

NOW = datetime(2026, 3, 1, 12, 0, 0)


class FakePlatform(SchedulePlatform):
    """In-memory Braze: keeps schedules in a dict and records every call."""

    def __init__(self, campaign_id: str = "campaign-1"):
        self.campaign_id = campaign_id
        self.schedules: dict[str, RemoteSchedule] = {}
        self.audiences: dict[str, dict] = {}
        self.created: list[str] = []
        self.updated: list[str] = []
        self.deleted: list[str] = []
        self.sends: list[dict] = []
        self.fail_create = False
        self.fail_update = False
        self.fail_delete = False
        self.fail_list = False
        self.fail_send = False
        self._counter = 0

    def add_remote(self, schedule_id: str, next_send_time: datetime, **trigger_properties) -> RemoteSchedule:
        schedule = RemoteSchedule(schedule_id, next_send_time, dict(trigger_properties), self.campaign_id)
        self.schedules[schedule_id] = schedule
        return schedule

    async def create_schedule(self, send_at, audience, trigger_properties) -> ScheduleCreated:
        if self.fail_create:
            raise RemotePlatformError("Braze create failed with HTTP 500", status_code=500, body="boom")
        self._counter += 1
        schedule_id = f"sched-{self._counter}"
        self.add_remote(schedule_id, send_at, **trigger_properties)
        self.audiences[schedule_id] = audience
        self.created.append(schedule_id)
        return ScheduleCreated(
            schedule_id=schedule_id,
            dispatch_id=f"dispatch-{self._counter}",
            send_id=f"send-{self._counter}",
        )

    async def update_schedule(self, schedule_id, send_at, audience, trigger_properties) -> None:
        if self.fail_update:
            raise RemotePlatformError("Braze update failed with HTTP 500", status_code=500, body="boom")
        if schedule_id not in self.schedules:
            raise RemotePlatformError("Braze update failed with HTTP 404", status_code=404, body="schedule not found")
        self.add_remote(schedule_id, send_at, **trigger_properties)
        self.audiences[schedule_id] = audience
        self.updated.append(schedule_id)

    async def delete_schedule(self, schedule_id: str) -> bool:
        if self.fail_delete:
            raise RemotePlatformError("Braze delete failed with HTTP 500", status_code=500, body="boom")
        self.deleted.append(schedule_id)
        return self.schedules.pop(schedule_id, None) is not None

    async def list_schedules(self, end_time: datetime) -> list[RemoteSchedule]:
        if self.fail_list:
            raise RemotePlatformError("Braze list failed with HTTP 503", status_code=503)
        return [
            schedule for schedule in self.schedules.values()
            if schedule.next_send_time is None or schedule.next_send_time <= end_time
        ]

    async def send_now(self, audience, trigger_properties, campaign_id=None) -> SendResult:
        if self.fail_send:
            raise RemotePlatformError("Braze send failed with HTTP 400", status_code=400, body="bad")
        self._counter += 1
        self.sends.append({"audience": audience, "trigger_properties": trigger_properties, "campaign_id": campaign_id})
        return SendResult(dispatch_id=f"dispatch-{self._counter}")

    async def send_to_recipients(self, external_user_ids, trigger_properties, campaign_id=None) -> SendResult:
        self._counter += 1
        self.sends.append({"recipients": list(external_user_ids), "trigger_properties": trigger_properties})
        return SendResult(dispatch_id=f"dispatch-{self._counter}")

    async def close(self) -> None:
        return None


class Seeder:
    """Inserts reference data and fixtures through one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _add(self, *rows):
        self.session.add_all(rows)
        await self.session.commit()
        return rows[0] if len(rows) == 1 else rows

    async def featured(self, team_name: str, attribute_value: Optional[str] = None, is_active: bool = True):
        return await self._add(
            FeaturedTeam(team_name=team_name, braze_attribute_value=attribute_value, is_active=is_active)
        )

    async def mapping(self, pattern: str, canonical_name: str):
        return await self._add(TeamMapping(pattern=pattern, canonical_name=canonical_name))

    async def translation(self, team_name: str, localized_name: str):
        return await self._add(TeamTranslation(team_name=team_name, localized_name=localized_name))

    async def competition(self, code: str, english_name: str, localized_name: str):
        return await self._add(
            CompetitionTranslation(competition_code=code, english_name=english_name, localized_name=localized_name)
        )

    async def match(
        self,
        match_id: int,
        home_team: str,
        away_team: str,
        kickoff: datetime,
        status: str = "SCHEDULED",
        competition: str = "PD",
        home_score: Optional[int] = None,
        away_score: Optional[int] = None,
    ) -> Match:
        return await self._add(
            Match(
                id=match_id,
                home_team=home_team,
                away_team=away_team,
                utc_date=kickoff,
                status=status,
                competition=competition,
                competition_name="La Liga" if competition == "PD" else None,
                home_score=home_score,
                away_score=away_score,
            )
        )

    async def ledger(
        self,
        match_id: int,
        remote_schedule_id: str,
        send_at: datetime,
        signature: str = "old-signature",
        status: str = "pending",
        created_at: datetime = NOW,
        dispatch_id: Optional[str] = None,
        send_id: Optional[str] = None,
    ) -> ScheduleLedger:
        return await self._add(
            ScheduleLedger(
                match_id=match_id,
                remote_schedule_id=remote_schedule_id,
                signature=signature,
                send_at_utc=send_at,
                status=status,
                dispatch_id=dispatch_id,
                send_id=send_id,
                created_at=created_at,
                updated_at=created_at,
            )
        )

    async def standard_world(self):
        """Real Madrid featured, with mapping and translations for a Clasico at NOW + 2 days."""
        await self.featured("Real Madrid", "real_madrid")
        await self.mapping(r"^real madrid", "Real Madrid")
        await self.translation("Real Madrid", "ريال مدريد")
        await self.translation("Barcelona", "برشلونة")
        await self.competition("PD", "La Liga", "الدوري الإسباني")
        return await self.match(1, "Real Madrid CF", "Barcelona", NOW + timedelta(days=2))


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Sessions on separate connections to one SQLite file, for concurrent writers."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'kickoff.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed(session) -> Seeder:
    return Seeder(session)


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def make_settings():
    def _make(**overrides) -> Settings:
        values = {
            "BRAZE_API_KEY": "test-key",
            "BRAZE_REST_ENDPOINT": "https://rest.test.braze.eu",
            "BRAZE_CAMPAIGN_ID": "campaign-1",
            "NOTIFICATIONS_ENABLED": True,
            "SMTP_ENABLED": False,
            "LOCAL_TIMEZONE": "UTC",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()
