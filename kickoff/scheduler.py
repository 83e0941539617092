"""Background scheduler for the notification units.

Each job opens its own session and Braze client, runs one unit and records
job telemetry. Run-level failures (lock store down, missing configuration,
Braze listing unavailable) are logged, sent to Sentry and recorded as an
error run; the next trigger simply runs again.
"""

import logging
import os
import time
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from kickoff.config import get_settings
from kickoff.database import AsyncSessionLocal, get_session_with_retry
from kickoff.jobs.tracking import RunSummary, cleanup_old_outcomes, record_run_summary
from kickoff.notifications.congrats import run_congrats
from kickoff.notifications.convergence import run_convergence
from kickoff.notifications.reconciler import run_reconcile
from kickoff.notifications.verifier import run_gap_detection, run_verifier
from kickoff.remote import BrazeClient
from kickoff.telemetry.metrics import record_job_run
from kickoff.telemetry.sentry import capture_exception, sentry_job_context

logger = logging.getLogger(__name__)

# Flag to prevent multiple scheduler instances (e.g., with --reload)
_scheduler_started = False
scheduler = AsyncIOScheduler()

UnitRunner = Callable[..., Awaitable[dict]]


async def _record_failed_run(job_name: str, error: Exception) -> None:
    """Persist an error run summary on a fresh session (the job's session may be unusable)."""
    summary = RunSummary(job_name, status="error", details={"error": str(error)[:500]})
    try:
        async with AsyncSessionLocal() as session:
            await record_run_summary(session, summary)
    except Exception as e:
        logger.error(f"[{job_name.upper()}] Could not record failed run: {e}")


async def run_unit_job(job_name: str, runner: UnitRunner) -> dict:
    """
    Run one unit with its own session and Braze client.

    Returns the unit's run summary, or {"status": "error", ...} on a
    run-level failure.
    """
    start_time = time.time()

    with sentry_job_context(job_name):
        try:
            platform = BrazeClient.from_settings()
            try:
                async with get_session_with_retry() as session:
                    result = await runner(session, platform)
            finally:
                await platform.close()
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(f"[{job_name.upper()}] Run failed after {duration_ms:.0f}ms: {e}", exc_info=True)
            capture_exception(e, job_id=job_name)
            record_job_run(job=job_name, status="error", duration_ms=duration_ms)
            await _record_failed_run(job_name, e)
            return {"run_name": job_name, "status": "error", "error": str(e)}

    duration_ms = (time.time() - start_time) * 1000
    record_job_run(job=job_name, status="ok", duration_ms=duration_ms)
    logger.info(f"[{job_name.upper()}] Job finished in {duration_ms:.0f}ms: status={result.get('status')}")
    return result


async def convergence_job() -> dict:
    return await run_unit_job("scheduler", run_convergence)


async def reconcile_job() -> dict:
    return await run_unit_job("reconcile", run_reconcile)


async def verify_job() -> dict:
    return await run_unit_job("verify", run_verifier)


async def gap_detection_job() -> dict:
    return await run_unit_job("gap_detection", run_gap_detection)


async def congrats_job() -> dict:
    return await run_unit_job("congrats", run_congrats)


async def outcome_log_cleanup() -> None:
    """Daily retention cleanup of scheduler_logs."""
    start_time = time.time()
    settings = get_settings()
    try:
        async with get_session_with_retry() as session:
            deleted = await cleanup_old_outcomes(session, days_to_keep=settings.OUTCOME_LOG_RETENTION_DAYS)
        record_job_run(job="outcome_log_cleanup", status="ok", duration_ms=(time.time() - start_time) * 1000)
        logger.info(f"[OUTCOMES] Retention cleanup removed {deleted} rows")
    except Exception as e:
        logger.error(f"[OUTCOMES] Retention cleanup failed: {e}")
        capture_exception(e, job_id="outcome_log_cleanup")
        record_job_run(job="outcome_log_cleanup", status="error", duration_ms=(time.time() - start_time) * 1000)


def _log_scheduler_jobs():
    """Log all registered scheduler jobs and their next run times."""
    jobs = scheduler.get_jobs()
    if not jobs:
        logger.warning("SCHEDULER HEARTBEAT: No jobs registered!")
        return

    job_info = []
    for job in jobs:
        next_run = job.next_run_time
        next_str = next_run.strftime("%Y-%m-%d %H:%M:%S UTC") if next_run else "None"
        job_info.append(f"  - {job.id}: next={next_str}")

    logger.info(
        f"SCHEDULER HEARTBEAT: {len(jobs)} jobs registered:\n" +
        "\n".join(job_info)
    )


def start_scheduler():
    """
    Start the background scheduler.

    Uses a module-level flag to prevent duplicate scheduler instances
    when running with --reload or multiple workers.
    """
    global _scheduler_started

    if _scheduler_started:
        logger.warning("Scheduler already started, skipping duplicate initialization")
        return

    # Uvicorn sets this env var in the reloader subprocess
    if os.environ.get("UVICORN_RELOADED"):
        logger.info("Skipping scheduler in reload subprocess")
        return

    scheduler.add_job(
        convergence_job,
        trigger=IntervalTrigger(minutes=15),
        id="braze_scheduler",
        name="Convergence Scheduler (every 15 min)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    # Offset from the scheduler so the two rarely contend (reconcile defers anyway)
    scheduler.add_job(
        reconcile_job,
        trigger=CronTrigger(minute="7,37"),
        id="braze_reconcile",
        name="Reconciler (every 30 min)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.add_job(
        verify_job,
        trigger=CronTrigger(minute="20,50"),
        id="braze_verify",
        name="Verifier (every 30 min)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.add_job(
        gap_detection_job,
        trigger=CronTrigger(minute=45),
        id="braze_gap_detection",
        name="Gap Detector (hourly)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.add_job(
        congrats_job,
        trigger=IntervalTrigger(minutes=10),
        id="braze_congrats",
        name="Congrats Sender (every 10 min)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.add_job(
        outcome_log_cleanup,
        trigger=CronTrigger(hour=4, minute=15),
        id="outcome_log_cleanup",
        name="Outcome Log Retention (daily 04:15 UTC)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.start()
    _scheduler_started = True

    _log_scheduler_jobs()

    logger.info(
        "Scheduler started:\n"
        "  - Convergence scheduler: Every 15 min\n"
        "  - Reconciler: Every 30 min (:07, :37)\n"
        "  - Verifier: Every 30 min (:20, :50)\n"
        "  - Gap detector: Hourly (:45)\n"
        "  - Congrats sender: Every 10 min\n"
        "  - Outcome log retention: Daily 04:15 UTC"
    )


def stop_scheduler():
    """Stop the background scheduler."""
    global _scheduler_started
    if scheduler.running:
        scheduler.shutdown()
        _scheduler_started = False
        logger.info("Scheduler stopped")
