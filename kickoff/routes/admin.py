"""Admin API: manual unit triggers, ledger read/reset, outcome log.

All endpoints require the X-API-Key header. Manual triggers call the same
functions the scheduled jobs call.
"""

import logging
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.database import get_async_session
from kickoff.jobs.locks import LockStoreUnavailable
from kickoff.jobs.tracking import get_last_run_summaries, get_recent_outcomes
from kickoff.notifications.congrats import run_congrats
from kickoff.notifications.convergence import reset_fixture, run_convergence
from kickoff.notifications.ledger import list_ledger_entries
from kickoff.notifications.reconciler import run_reconcile
from kickoff.notifications.verifier import run_gap_detection, run_verifier
from kickoff.remote import BrazeClient, ConfigurationError, RemotePlatformError, SchedulePlatform
from kickoff.security import verify_api_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(verify_api_key)])

UNITS = {
    "scheduler": run_convergence,
    "reconcile": run_reconcile,
    "verify": run_verifier,
    "gap-detection": run_gap_detection,
    "congrats": run_congrats,
}

LEDGER_STATUSES = ("pending", "sent", "cancelled")


async def get_platform() -> AsyncGenerator[SchedulePlatform, None]:
    """Braze client for one request. Missing configuration surfaces as 503."""
    try:
        platform = BrazeClient.from_settings()
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    try:
        yield platform
    finally:
        await platform.close()


@router.post("/run/{unit}")
async def run_unit(
    unit: str,
    session: AsyncSession = Depends(get_async_session),
    platform: SchedulePlatform = Depends(get_platform),
):
    """Trigger one unit now and return its run summary."""
    runner = UNITS.get(unit)
    if runner is None:
        raise HTTPException(status_code=404, detail=f"Unknown unit {unit!r}. Valid: {', '.join(UNITS)}")

    logger.info(f"[ADMIN] Manual run: {unit}")
    try:
        return await runner(session, platform)
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except LockStoreUnavailable as e:
        raise HTTPException(status_code=503, detail=f"Lock store unavailable: {e}")
    except RemotePlatformError as e:
        raise HTTPException(status_code=502, detail=f"Braze request failed: {e}")


@router.get("/ledger")
async def get_ledger(
    status: Optional[str] = Query(None),
    match_id: Optional[int] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
    session: AsyncSession = Depends(get_async_session),
):
    if status and status not in LEDGER_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(LEDGER_STATUSES)}")

    entries = await list_ledger_entries(session, status=status, match_id=match_id, limit=limit)
    return {"count": len(entries), "entries": [entry.to_dict() for entry in entries]}


@router.post("/ledger/{match_id}/reset")
async def reset_ledger_entry(
    match_id: int,
    session: AsyncSession = Depends(get_async_session),
    platform: SchedulePlatform = Depends(get_platform),
):
    """Delete the fixture's ledger rows and re-run convergence."""
    logger.info(f"[ADMIN] Manual reset: match={match_id}")
    try:
        return await reset_fixture(session, platform, match_id)
    except LockStoreUnavailable as e:
        raise HTTPException(status_code=503, detail=f"Lock store unavailable: {e}")


@router.get("/outcomes")
async def get_outcomes(
    run_name: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_async_session),
):
    rows = await get_recent_outcomes(session, run_name=run_name, limit=limit)
    return {
        "count": len(rows),
        "outcomes": [
            {
                "id": row.id,
                "run_name": row.run_name,
                "match_id": row.match_id,
                "action": row.action,
                "reason": row.reason,
                "details": row.details,
                "created_at": row.created_at.isoformat(),
            }
            for row in rows
        ],
    }


@router.get("/summary")
async def get_summary(session: AsyncSession = Depends(get_async_session)):
    """Latest run summary per unit."""
    return await get_last_run_summaries(session)
