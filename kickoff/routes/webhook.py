"""Inbound Braze delivery webhook."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.database import get_async_session
from kickoff.notifications.webhook import correlate_events
from kickoff.security import limiter, verify_webhook_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/braze", dependencies=[Depends(verify_webhook_secret)])
@limiter.limit("600/minute")
async def braze_webhook(request: Request, session: AsyncSession = Depends(get_async_session)):
    """
    Accepts {"events": [...]} or a bare list of events.

    Always answers 200 for a well-formed batch, including redeliveries, so
    Braze doesn't retry events that were already stored.
    """
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    if isinstance(body, dict):
        events = body.get("events")
    else:
        events = body
    if not isinstance(events, list):
        raise HTTPException(status_code=400, detail="Expected a list of events or {\"events\": [...]}")

    summary = await correlate_events(session, events)
    return {"received": len(events), "counts": summary.get("counts", {})}
