"""Outcome log for the notification units.

Every per-fixture decision and every run summary is appended to
scheduler_logs so the admin dashboard and the verifier can read it back
without depending on Prometheus (which resets on deploy).

Usage:
    from kickoff.jobs.tracking import RunSummary, record_outcome, record_run_summary

    summary = RunSummary("scheduler")
    await record_outcome(session, summary, "skipped", reason="window_missed", match_id=42)
    ...
    await record_run_summary(session, summary)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.models import SchedulerLog
from kickoff.telemetry.metrics import record_unit_outcome
from kickoff.utils.dates import utc_now

logger = logging.getLogger(__name__)

RUN_COMPLETE = "run_complete"


@dataclass
class RunSummary:
    """Per-run counters returned by every unit and shown on the admin dashboard."""

    run_name: str
    status: str = "ok"
    started_at: datetime = field(default_factory=utc_now)
    counts: dict[str, int] = field(default_factory=dict)
    reasons: dict[str, int] = field(default_factory=dict)
    details: dict = field(default_factory=dict)

    def add(self, action: str, reason: Optional[str] = None) -> None:
        self.counts[action] = self.counts.get(action, 0) + 1
        if reason:
            self.reasons[reason] = self.reasons.get(reason, 0) + 1

    def count(self, action: str) -> int:
        return self.counts.get(action, 0)

    def to_dict(self) -> dict:
        return {
            "run_name": self.run_name,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "counts": dict(self.counts),
            "reasons": dict(self.reasons),
            **self.details,
        }


async def record_outcome(
    session: AsyncSession,
    summary: RunSummary,
    action: str,
    reason: Optional[str] = None,
    match_id: Optional[int] = None,
    details: Optional[dict] = None,
) -> None:
    """
    Append one structured outcome record and commit it.

    Args:
        session: Database session.
        summary: The run's summary (counters are updated in place).
        action: created, updated, skipped, error, cancelled, sent, alert, ...
        reason: Short reason code (window_missed, update_buffer, orphan, ...).
        match_id: Fixture the outcome refers to, if any.
        details: Free-form detail blob.
    """
    summary.add(action, reason)
    record_unit_outcome(summary.run_name, action, reason)

    message = f"[{summary.run_name.upper()}] match={match_id} action={action} reason={reason}"
    if action == "error":
        logger.error(f"{message} details={details}")
    else:
        logger.info(message)

    session.add(
        SchedulerLog(
            run_name=summary.run_name,
            match_id=match_id,
            action=action,
            reason=reason,
            details=details,
        )
    )
    await session.commit()


async def record_run_summary(session: AsyncSession, summary: RunSummary) -> dict:
    """Persist the run summary as a run_complete record and return it as a dict."""
    payload = summary.to_dict()
    session.add(
        SchedulerLog(
            run_name=summary.run_name,
            action=RUN_COMPLETE,
            reason=summary.status,
            details=payload,
        )
    )
    await session.commit()
    logger.info(f"[{summary.run_name.upper()}] Run complete: status={summary.status} counts={summary.counts}")
    return payload


async def get_recent_outcomes(
    session: AsyncSession,
    run_name: Optional[str] = None,
    limit: int = 100,
) -> list[SchedulerLog]:
    """Most recent outcome records, newest first."""
    stmt = select(SchedulerLog).order_by(SchedulerLog.created_at.desc(), SchedulerLog.id.desc()).limit(limit)
    if run_name:
        stmt = stmt.where(SchedulerLog.run_name == run_name)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_last_run_summaries(session: AsyncSession) -> dict[str, dict]:
    """
    Latest run_complete record per unit.

    Returns dict mapping run_name -> summary payload.
    """
    result = await session.execute(
        select(SchedulerLog)
        .where(SchedulerLog.action == RUN_COMPLETE)
        .order_by(SchedulerLog.created_at.desc(), SchedulerLog.id.desc())
        .limit(200)
    )
    summaries: dict[str, dict] = {}
    for row in result.scalars():
        if row.run_name not in summaries:
            summaries[row.run_name] = {
                **(row.details or {}),
                "recorded_at": row.created_at.isoformat(),
            }
    return summaries


async def cleanup_old_outcomes(
    session: AsyncSession,
    days_to_keep: int = 14,
    now: Optional[datetime] = None,
) -> int:
    """
    Delete outcome records older than the retention window.

    Returns:
        Number of rows deleted.
    """
    cutoff = (now or utc_now()) - timedelta(days=days_to_keep)
    result = await session.execute(delete(SchedulerLog).where(SchedulerLog.created_at < cutoff))
    await session.commit()
    deleted = result.rowcount or 0
    if deleted > 0:
        logger.info(f"[OUTCOMES] Cleaned up {deleted} old outcome records")
    return deleted
