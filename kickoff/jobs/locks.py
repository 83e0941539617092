"""
Named, time-boxed locks stored as rows in scheduler_locks.

Acquisition is a single conditional UPDATE (compare-and-swap on holder and
expiry), so it works the same on Postgres and SQLite and across processes.
A crashed holder never blocks recovery: once expires_at passes, any caller
can take the lock over.

Locks are not reentrant and there is no queueing. A caller that loses
returns immediately and treats it as a normal skip.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.models import SchedulerLock
from kickoff.telemetry.metrics import record_lock_contention
from kickoff.utils.dates import utc_now

logger = logging.getLogger(__name__)

SCHEDULER_LOCK = "braze-scheduler"
RECONCILE_LOCK = "braze-reconcile"
CONGRATS_LOCK = "braze-congrats"


class LockStoreUnavailable(RuntimeError):
    """The lock table could not be read or written; the run must abort."""


def new_holder_token(prefix: str) -> str:
    """Unique token identifying one run as a lock holder."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


async def _ensure_lock_row(session: AsyncSession, lock_name: str) -> None:
    existing = await session.get(SchedulerLock, lock_name)
    if existing is not None:
        return
    session.add(SchedulerLock(lock_name=lock_name))
    try:
        await session.commit()
    except IntegrityError:
        # Another process created the row first
        await session.rollback()


async def try_acquire(
    session: AsyncSession,
    lock_name: str,
    holder: str,
    ttl: timedelta,
    now: Optional[datetime] = None,
) -> bool:
    """
    Try to take the named lock for `ttl`.

    Succeeds when the lock has no holder or its expiry has passed. Never blocks.

    Raises:
        LockStoreUnavailable: the lock store could not be reached (fail-closed).
    """
    now = now or utc_now()
    try:
        await _ensure_lock_row(session, lock_name)
        result = await session.execute(
            update(SchedulerLock)
            .where(SchedulerLock.lock_name == lock_name)
            .where(
                or_(
                    SchedulerLock.locked_by.is_(None),
                    SchedulerLock.expires_at.is_(None),
                    SchedulerLock.expires_at <= now,
                )
            )
            .values(locked_by=holder, locked_at=now, expires_at=now + ttl)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        raise LockStoreUnavailable(f"Lock store unavailable acquiring {lock_name}: {e}") from e

    acquired = result.rowcount == 1
    if acquired:
        logger.info(f"[LOCK] {lock_name} acquired by {holder} until {now + ttl}")
    else:
        record_lock_contention(lock_name)
        logger.info(f"[LOCK] {lock_name} is held by another run, {holder} skipping")
    return acquired


async def release(session: AsyncSession, lock_name: str, holder: str) -> bool:
    """
    Release the lock only if `holder` still owns it.

    A run whose lock expired and was taken over by another run must not free
    the new holder's lock. Returns True if this call cleared the lock.
    A store failure is logged; the lock then self-expires.
    """
    try:
        result = await session.execute(
            update(SchedulerLock)
            .where(SchedulerLock.lock_name == lock_name)
            .where(SchedulerLock.locked_by == holder)
            .values(locked_by=None, locked_at=None, expires_at=None)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"[LOCK] Failed to release {lock_name} for {holder}, it will expire on its own: {e}")
        return False

    released = result.rowcount == 1
    if not released:
        logger.warning(f"[LOCK] {lock_name} no longer held by {holder} at release (expired and taken over)")
    return released


async def is_held(session: AsyncSession, lock_name: str, now: Optional[datetime] = None) -> bool:
    """Whether some run currently holds an unexpired lock."""
    now = now or utc_now()
    try:
        result = await session.execute(
            select(SchedulerLock.locked_by, SchedulerLock.expires_at)
            .where(SchedulerLock.lock_name == lock_name)
        )
        row = result.first()
    except SQLAlchemyError as e:
        await session.rollback()
        raise LockStoreUnavailable(f"Lock store unavailable reading {lock_name}: {e}") from e

    if row is None:
        return False
    locked_by, expires_at = row
    return locked_by is not None and expires_at is not None and expires_at > now
