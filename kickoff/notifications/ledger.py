"""Schedule ledger: the local source of truth for remote schedule state.

One pending/sent row per fixture, guaranteed by the partial unique index on
schedule_ledger(match_id). A create starts with a placeholder remote id
that is promoted once the remote call succeeds.

Writes are bulk UPDATE statements that leave objects already loaded in the
session untouched, so every read uses populate_existing.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.models import (
    LEDGER_ACTIVE_STATUSES,
    LEDGER_CANCELLED,
    LEDGER_PENDING,
    ScheduleLedger,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "pending-"


@dataclass(frozen=True)
class LedgerSnapshot:
    """Detached copy of a ledger row (safe across session rollbacks)."""

    id: int
    match_id: int
    remote_schedule_id: str
    signature: str
    send_at_utc: datetime
    status: str
    dispatch_id: Optional[str]
    send_id: Optional[str]
    confirmed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: ScheduleLedger) -> "LedgerSnapshot":
        return cls(
            id=row.id,
            match_id=row.match_id,
            remote_schedule_id=row.remote_schedule_id,
            signature=row.signature,
            send_at_utc=row.send_at_utc,
            status=row.status,
            dispatch_id=row.dispatch_id,
            send_id=row.send_id,
            confirmed_at=row.confirmed_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "match_id": self.match_id,
            "remote_schedule_id": self.remote_schedule_id,
            "signature": self.signature,
            "send_at_utc": self.send_at_utc.isoformat(),
            "status": self.status,
            "dispatch_id": self.dispatch_id,
            "send_id": self.send_id,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


def new_placeholder_id() -> str:
    return f"{PLACEHOLDER_PREFIX}{uuid.uuid4()}"


def is_placeholder_id(remote_id: Optional[str]) -> bool:
    return bool(remote_id) and remote_id.startswith(PLACEHOLDER_PREFIX)


def is_legacy_schedule_id(remote_id: Optional[str], pattern: Optional[str]) -> bool:
    """Remote ids in a format the platform no longer accepts for updates."""
    if not remote_id or not pattern:
        return False
    return re.search(pattern, remote_id) is not None


async def get_active_entry(session: AsyncSession, match_id: int) -> Optional[LedgerSnapshot]:
    """The pending/sent row for a fixture, if any."""
    result = await session.execute(
        select(ScheduleLedger)
        .where(ScheduleLedger.match_id == match_id)
        .where(ScheduleLedger.status.in_(LEDGER_ACTIVE_STATUSES))
        .execution_options(populate_existing=True)
    )
    row = result.scalars().first()
    return LedgerSnapshot.from_row(row) if row else None


async def reserve_ledger_slot(
    session: AsyncSession,
    match_id: int,
    signature: str,
    send_at: datetime,
    now: datetime,
) -> Optional[LedgerSnapshot]:
    """
    Insert a pending placeholder row for a fixture and commit it.

    Returns None when another run already holds the fixture's slot (unique
    violation). Other database errors propagate.
    """
    row = ScheduleLedger(
        match_id=match_id,
        remote_schedule_id=new_placeholder_id(),
        signature=signature,
        send_at_utc=send_at,
        status=LEDGER_PENDING,
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.info(f"[LEDGER] match={match_id} slot already reserved by another run")
        return None
    return LedgerSnapshot.from_row(row)


async def promote_entry(
    session: AsyncSession,
    entry_id: int,
    remote_schedule_id: str,
    dispatch_id: Optional[str],
    send_id: Optional[str],
    now: datetime,
) -> None:
    """Replace the placeholder with the real remote id after a successful create."""
    await session.execute(
        update(ScheduleLedger)
        .where(ScheduleLedger.id == entry_id)
        .values(
            remote_schedule_id=remote_schedule_id,
            dispatch_id=dispatch_id,
            send_id=send_id,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def record_convergent_update(
    session: AsyncSession,
    entry_id: int,
    signature: str,
    send_at: datetime,
    now: datetime,
) -> None:
    await session.execute(
        update(ScheduleLedger)
        .where(ScheduleLedger.id == entry_id)
        .values(signature=signature, send_at_utc=send_at, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def delete_entry(session: AsyncSession, entry_id: int) -> None:
    await session.execute(delete(ScheduleLedger).where(ScheduleLedger.id == entry_id))
    await session.commit()


async def delete_entries_for_match(session: AsyncSession, match_id: int) -> int:
    """Manual reset: drop every ledger row for a fixture so the next run recreates it."""
    result = await session.execute(delete(ScheduleLedger).where(ScheduleLedger.match_id == match_id))
    await session.commit()
    return result.rowcount or 0


async def cancel_pending_for_remote_id(session: AsyncSession, remote_schedule_id: str, now: datetime) -> int:
    """Mark pending rows pointing at a cancelled remote schedule as cancelled."""
    result = await session.execute(
        update(ScheduleLedger)
        .where(ScheduleLedger.remote_schedule_id == remote_schedule_id)
        .where(ScheduleLedger.status == LEDGER_PENDING)
        .values(status=LEDGER_CANCELLED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount or 0


async def get_all_entries(session: AsyncSession) -> list[LedgerSnapshot]:
    result = await session.execute(
        select(ScheduleLedger).order_by(ScheduleLedger.id).execution_options(populate_existing=True)
    )
    return [LedgerSnapshot.from_row(row) for row in result.scalars().all()]


async def list_ledger_entries(
    session: AsyncSession,
    status: Optional[str] = None,
    match_id: Optional[int] = None,
    limit: int = 200,
) -> list[LedgerSnapshot]:
    """Ledger read API for the admin dashboard, soonest send first."""
    stmt = (
        select(ScheduleLedger)
        .order_by(ScheduleLedger.send_at_utc, ScheduleLedger.id)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    if status:
        stmt = stmt.where(ScheduleLedger.status == status)
    if match_id is not None:
        stmt = stmt.where(ScheduleLedger.match_id == match_id)
    result = await session.execute(stmt)
    return [LedgerSnapshot.from_row(row) for row in result.scalars().all()]
