"""Tests for the named lock manager."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from kickoff.jobs.locks import (
    SCHEDULER_LOCK,
    LockStoreUnavailable,
    is_held,
    new_holder_token,
    release,
    try_acquire,
)

TTL = timedelta(minutes=10)


class TestTryAcquire:
    @pytest.mark.asyncio
    async def test_first_acquire_succeeds(self, session, now):
        assert await try_acquire(session, SCHEDULER_LOCK, "run-a", TTL, now=now) is True
        assert await is_held(session, SCHEDULER_LOCK, now=now) is True

    @pytest.mark.asyncio
    async def test_second_holder_blocked_until_expiry(self, session, now):
        assert await try_acquire(session, SCHEDULER_LOCK, "run-a", TTL, now=now)
        assert await try_acquire(session, SCHEDULER_LOCK, "run-b", TTL, now=now + TTL - timedelta(seconds=1)) is False

    @pytest.mark.asyncio
    async def test_expired_lock_taken_over(self, session, now):
        assert await try_acquire(session, SCHEDULER_LOCK, "run-a", TTL, now=now)
        assert await try_acquire(session, SCHEDULER_LOCK, "run-b", TTL, now=now + TTL) is True

    @pytest.mark.asyncio
    async def test_not_reentrant(self, session, now):
        assert await try_acquire(session, SCHEDULER_LOCK, "run-a", TTL, now=now)
        assert await try_acquire(session, SCHEDULER_LOCK, "run-a", TTL, now=now) is False

    @pytest.mark.asyncio
    async def test_locks_are_independent_by_name(self, session, now):
        assert await try_acquire(session, SCHEDULER_LOCK, "run-a", TTL, now=now)
        assert await try_acquire(session, "braze-reconcile", "run-b", TTL, now=now) is True

    @pytest.mark.asyncio
    async def test_store_failure_fails_closed(self, now):
        broken = AsyncMock()
        broken.get = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("connection refused")))
        with pytest.raises(LockStoreUnavailable):
            await try_acquire(broken, SCHEDULER_LOCK, "run-a", TTL, now=now)
        broken.rollback.assert_awaited()


class TestRelease:
    @pytest.mark.asyncio
    async def test_holder_releases(self, session, now):
        await try_acquire(session, SCHEDULER_LOCK, "run-a", TTL, now=now)
        assert await release(session, SCHEDULER_LOCK, "run-a") is True
        assert await is_held(session, SCHEDULER_LOCK, now=now) is False
        assert await try_acquire(session, SCHEDULER_LOCK, "run-b", TTL, now=now) is True

    @pytest.mark.asyncio
    async def test_non_holder_cannot_release(self, session, now):
        await try_acquire(session, SCHEDULER_LOCK, "run-a", TTL, now=now)
        assert await release(session, SCHEDULER_LOCK, "run-b") is False
        assert await is_held(session, SCHEDULER_LOCK, now=now) is True

    @pytest.mark.asyncio
    async def test_stale_holder_cannot_release_after_takeover(self, session, now):
        await try_acquire(session, SCHEDULER_LOCK, "run-a", TTL, now=now)
        await try_acquire(session, SCHEDULER_LOCK, "run-b", TTL, now=now + TTL)
        assert await release(session, SCHEDULER_LOCK, "run-a") is False
        assert await is_held(session, SCHEDULER_LOCK, now=now + TTL) is True


class TestIsHeld:
    @pytest.mark.asyncio
    async def test_unknown_lock_not_held(self, session, now):
        assert await is_held(session, "never-created", now=now) is False

    @pytest.mark.asyncio
    async def test_expired_lock_not_held(self, session, now):
        await try_acquire(session, SCHEDULER_LOCK, "run-a", TTL, now=now)
        assert await is_held(session, SCHEDULER_LOCK, now=now + TTL) is False


def test_holder_tokens_unique():
    assert new_holder_token("scheduler") != new_holder_token("scheduler")
    assert new_holder_token("scheduler").startswith("scheduler-")
