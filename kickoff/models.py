"""Database models using SQLModel."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel

from kickoff.utils.dates import utc_now

# Ledger lifecycle
LEDGER_PENDING = "pending"
LEDGER_SENT = "sent"
LEDGER_CANCELLED = "cancelled"
LEDGER_ACTIVE_STATUSES = (LEDGER_PENDING, LEDGER_SENT)

# Fixture lifecycle values written by the match-data feed
NOT_STARTED_STATUSES = ("SCHEDULED", "TIMED")
FINISHED_STATUS = "FINISHED"


class Match(SQLModel, table=True):
    """Fixture as supplied by the match-data feed (read-only to the notifier, except congrats_status)."""

    __tablename__ = "matches"

    id: Optional[int] = Field(default=None, primary_key=True, description="Feed fixture ID")
    home_team: str = Field(max_length=255, description="Raw home team name")
    away_team: str = Field(max_length=255, description="Raw away team name")
    utc_date: datetime = Field(index=True, description="Kickoff (naive UTC)")
    status: str = Field(
        max_length=20, default="SCHEDULED", index=True,
        description="SCHEDULED, TIMED, IN_PLAY, FINISHED, POSTPONED, etc.",
    )
    competition: str = Field(max_length=20, description="Competition code (PL, PD, CL, ...)")
    competition_name: Optional[str] = Field(default=None, max_length=255, description="English competition name")
    home_score: Optional[int] = Field(default=None, description="NULL if not played")
    away_score: Optional[int] = Field(default=None, description="NULL if not played")
    congrats_status: Optional[str] = Field(
        default=None, max_length=20, description="NULL, sent, skipped, error"
    )


class FeaturedTeam(SQLModel, table=True):
    """Notable team: fixtures involving one of these are eligible for notifications."""

    __tablename__ = "featured_teams"

    id: Optional[int] = Field(default=None, primary_key=True)
    team_name: str = Field(max_length=255, unique=True, description="Canonical team name")
    braze_attribute_value: Optional[str] = Field(
        default=None, max_length=255, description="Value of the 'Team N' custom attribute on user profiles"
    )
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utc_now)


class TeamMapping(SQLModel, table=True):
    """Regex pattern -> canonical team name (case-insensitive)."""

    __tablename__ = "team_mappings"

    id: Optional[int] = Field(default=None, primary_key=True)
    pattern: str = Field(max_length=255, description="Python regex matched against raw feed names")
    canonical_name: str = Field(max_length=255, index=True)


class TeamTranslation(SQLModel, table=True):
    """Localized display name for a team."""

    __tablename__ = "team_translations"

    id: Optional[int] = Field(default=None, primary_key=True)
    team_name: str = Field(max_length=255, unique=True, description="Canonical or raw feed name")
    localized_name: str = Field(max_length=255)
    created_at: datetime = Field(default_factory=utc_now)


class CompetitionTranslation(SQLModel, table=True):
    """Display names for a competition code."""

    __tablename__ = "competition_translations"

    id: Optional[int] = Field(default=None, primary_key=True)
    competition_code: str = Field(max_length=20, unique=True)
    english_name: str = Field(max_length=255)
    localized_name: str = Field(max_length=255)


class ScheduleLedger(SQLModel, table=True):
    """
    Local record of one remote schedule object per fixture.

    The partial unique index is the concurrency guard for the create path:
    only one pending/sent row may exist per match.
    """

    __tablename__ = "schedule_ledger"
    __table_args__ = (
        Index(
            "uq_schedule_ledger_active_match",
            "match_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'sent')"),
            sqlite_where=text("status IN ('pending', 'sent')"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    match_id: int = Field(index=True, description="Fixture ID")
    remote_schedule_id: str = Field(max_length=255, index=True, description="Braze schedule_id or placeholder")
    signature: str = Field(max_length=128, description="Content signature of the scheduled payload")
    send_at_utc: datetime = Field(index=True, description="Target send instant (naive UTC)")
    status: str = Field(max_length=20, default=LEDGER_PENDING, description="pending, sent, cancelled")
    dispatch_id: Optional[str] = Field(default=None, max_length=255, index=True)
    send_id: Optional[str] = Field(default=None, max_length=255, index=True)
    confirmed_at: Optional[datetime] = Field(
        default=None, description="Set when a delivery webhook was correlated to this row"
    )
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class SchedulerLock(SQLModel, table=True):
    """Named, time-boxed mutual exclusion row."""

    __tablename__ = "scheduler_locks"

    lock_name: str = Field(primary_key=True, max_length=100)
    locked_by: Optional[str] = Field(default=None, max_length=100, description="Holder token")
    locked_at: Optional[datetime] = Field(default=None)
    expires_at: Optional[datetime] = Field(default=None)


class NotificationSend(SQLModel, table=True):
    """Delivery confirmation derived from a Braze webhook event."""

    __tablename__ = "notification_sends"

    id: Optional[int] = Field(default=None, primary_key=True)
    event_key: str = Field(max_length=64, unique=True, description="Dedupe key for redelivered events")
    external_user_id: Optional[str] = Field(default=None, max_length=255)
    event_type: Optional[str] = Field(default=None, max_length=100)
    dispatch_id: Optional[str] = Field(default=None, max_length=255)
    send_id: Optional[str] = Field(default=None, max_length=255)
    match_id: Optional[int] = Field(default=None, index=True, description="NULL when unlinked")
    ledger_entry_id: Optional[int] = Field(default=None)
    resolution: str = Field(max_length=20, description="embedded, identifier, time_window, unlinked")
    event_at: Optional[datetime] = Field(default=None, index=True)
    raw_payload: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now)


class SchedulerLog(SQLModel, table=True):
    """Append-only outcome / alert record consumed by dashboards."""

    __tablename__ = "scheduler_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    run_name: str = Field(max_length=50, index=True, description="scheduler, reconcile, verify, ...")
    match_id: Optional[int] = Field(default=None, index=True)
    action: str = Field(max_length=50, description="created, updated, skipped, error, alert, ...")
    reason: Optional[str] = Field(default=None, max_length=100)
    details: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now, index=True)


class CongratsLedger(SQLModel, table=True):
    """One post-match congratulation per fixture."""

    __tablename__ = "congrats_ledger"
    __table_args__ = (
        UniqueConstraint("match_id", name="uq_congrats_match"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    match_id: int = Field(index=True)
    winner_team: str = Field(max_length=255)
    status: str = Field(max_length=20, default="pending", description="pending, sent, error")
    dispatch_id: Optional[str] = Field(default=None, max_length=255)
    error: Optional[str] = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=utc_now)
