"""
Webhook correlator: turn Braze delivery events into confirmation records.

A batch is resolved with a single ledger query. Each event is attributed to
a fixture by, in order:

1. embedded match_id in the event properties
2. exact dispatch_id / send_id match against the ledger
3. nearest ledger send time within the match window (smallest delta wins)
4. otherwise stored unlinked (counted as a data-quality metric)

The time-window rule can misattribute when two fixtures' sends are close
together; unlinked or ambiguous results are monitored, not disambiguated.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import bindparam, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.config import Settings, get_settings
from kickoff.jobs.tracking import RunSummary, record_run_summary
from kickoff.models import LEDGER_ACTIVE_STATUSES, LEDGER_PENDING, LEDGER_SENT, NotificationSend, ScheduleLedger
from kickoff.notifications.ledger import LedgerSnapshot
from kickoff.telemetry.metrics import record_webhook_resolution
from kickoff.utils.dates import parse_remote_datetime, utc_now

logger = logging.getLogger(__name__)

RUN_NAME = "webhook"

EMBEDDED = "embedded"
IDENTIFIER = "identifier"
TIME_WINDOW = "time_window"
UNLINKED = "unlinked"


@dataclass
class DeliveryEvent:
    """One inbound Braze event."""

    event_type: str
    event_at: datetime
    external_user_id: Optional[str] = None
    dispatch_id: Optional[str] = None
    send_id: Optional[str] = None
    campaign_id: Optional[str] = None
    embedded_match_id: Optional[int] = None
    raw: dict = field(default_factory=dict)
    has_event_time: bool = True

    @classmethod
    def from_payload(cls, payload: dict, received_at: Optional[datetime] = None) -> "DeliveryEvent":
        properties = payload.get("properties") or {}
        embedded = properties.get("match_id")
        try:
            embedded_match_id = int(embedded) if embedded not in (None, "") else None
        except (TypeError, ValueError):
            embedded_match_id = None

        event_at = parse_remote_datetime(payload.get("time"))
        return cls(
            event_type=payload.get("event_type") or "unknown",
            event_at=event_at or received_at or utc_now(),
            external_user_id=payload.get("external_user_id") or payload.get("user_id"),
            dispatch_id=payload.get("dispatch_id") or None,
            send_id=payload.get("send_id") or None,
            campaign_id=payload.get("campaign_id"),
            embedded_match_id=embedded_match_id,
            raw=payload,
            has_event_time=event_at is not None,
        )

    @property
    def has_identifiers(self) -> bool:
        return bool(self.dispatch_id or self.send_id)

    @property
    def event_key(self) -> str:
        """
        Stable dedupe key: a redelivered event maps to the same key.

        Without a usable event time the fallback timestamp differs on every
        delivery, so the key is taken from the canonical payload instead.
        """
        if not self.has_event_time:
            canonical = json.dumps(self.raw, sort_keys=True, default=str)
            return hashlib.sha256(canonical.encode()).hexdigest()
        raw = "|".join([
            self.external_user_id or "",
            self.event_type,
            self.dispatch_id or "",
            self.send_id or "",
            self.event_at.isoformat(),
        ])
        return hashlib.sha256(raw.encode()).hexdigest()


@dataclass
class Resolution:
    method: str
    match_id: Optional[int] = None
    entry: Optional[LedgerSnapshot] = None


def resolve_event(
    event: DeliveryEvent,
    candidates: list[LedgerSnapshot],
    window: timedelta,
) -> Resolution:
    """
    Attribute one event to a fixture. Pure function over preloaded candidates.

    Time-window candidates are pending or sent rows, so later events of an
    already-confirmed send keep attributing to that fixture.
    """
    if event.embedded_match_id is not None:
        entry = next(
            (c for c in candidates
             if c.match_id == event.embedded_match_id and c.status in LEDGER_ACTIVE_STATUSES),
            None,
        )
        return Resolution(EMBEDDED, event.embedded_match_id, entry)

    if event.has_identifiers:
        for candidate in candidates:
            if (event.dispatch_id and candidate.dispatch_id == event.dispatch_id) or (
                event.send_id and candidate.send_id == event.send_id
            ):
                return Resolution(IDENTIFIER, candidate.match_id, candidate)

    best: Optional[LedgerSnapshot] = None
    best_delta: Optional[timedelta] = None
    for candidate in candidates:
        if candidate.status not in LEDGER_ACTIVE_STATUSES:
            continue
        delta = abs(candidate.send_at_utc - event.event_at)
        if delta > window:
            continue
        if best_delta is None or delta < best_delta or (delta == best_delta and candidate.id < best.id):
            best, best_delta = candidate, delta
    if best is not None:
        return Resolution(TIME_WINDOW, best.match_id, best)

    return Resolution(UNLINKED)


async def _load_candidates(
    session: AsyncSession,
    events: list[DeliveryEvent],
    window: timedelta,
) -> list[LedgerSnapshot]:
    """Single query: rows matching any identifier or embedded fixture, or in the batch's time span."""
    dispatch_ids = {e.dispatch_id for e in events if e.dispatch_id}
    send_ids = {e.send_id for e in events if e.send_id}
    match_ids = {e.embedded_match_id for e in events if e.embedded_match_id is not None}
    earliest = min(e.event_at for e in events) - window
    latest = max(e.event_at for e in events) + window

    conditions = [ScheduleLedger.send_at_utc.between(earliest, latest)]
    if dispatch_ids:
        conditions.append(ScheduleLedger.dispatch_id.in_(sorted(dispatch_ids)))
    if send_ids:
        conditions.append(ScheduleLedger.send_id.in_(sorted(send_ids)))
    if match_ids:
        conditions.append(ScheduleLedger.match_id.in_(sorted(match_ids)))

    result = await session.execute(
        select(ScheduleLedger).where(or_(*conditions)).execution_options(populate_existing=True)
    )
    return [LedgerSnapshot.from_row(row) for row in result.scalars().all()]


async def correlate_events(
    session: AsyncSession,
    payloads: list[dict],
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> dict:
    """
    Ingest a batch of webhook events.

    Persists one confirmation per new event, then flips every resolved
    pending ledger row to sent (conditioned on status, so redelivery is a
    no-op) and records the event's correlation ids on the row.

    Returns:
        Summary dict with counts per resolution method.
    """
    settings = settings or get_settings()
    now = now or utc_now()
    summary = RunSummary(RUN_NAME, started_at=now)
    window = timedelta(minutes=settings.WEBHOOK_MATCH_WINDOW_MINUTES)

    events = [DeliveryEvent.from_payload(p, received_at=now) for p in payloads if isinstance(p, dict)]
    summary.details["received"] = len(payloads)
    if not events:
        return summary.to_dict()

    # Drop events already stored (redelivery) and duplicates within the batch
    keys = [event.event_key for event in events]
    existing = await session.execute(select(NotificationSend.event_key).where(NotificationSend.event_key.in_(keys)))
    seen = set(existing.scalars().all())
    fresh: list[DeliveryEvent] = []
    for event in events:
        if event.event_key in seen:
            summary.add("duplicate")
            continue
        seen.add(event.event_key)
        fresh.append(event)

    if not fresh:
        logger.info(f"[WEBHOOK] {len(events)} events, all already recorded")
        return summary.to_dict()

    with_ids = sum(1 for event in fresh if event.has_identifiers)
    summary.details["with_identifiers"] = with_ids
    summary.details["without_identifiers"] = len(fresh) - with_ids

    candidates = await _load_candidates(session, fresh, window)

    resolved = [(event, resolve_event(event, candidates, window)) for event in fresh]
    stored = await _store_confirmations(session, resolved, now)
    for _ in range(len(resolved) - len(stored)):
        summary.add("duplicate")

    # ledger id -> (dispatch_id, send_id) of the first event that resolved to it
    resolved_entries: dict[int, tuple[Optional[str], Optional[str]]] = {}
    for event, resolution in stored:
        summary.add(resolution.method)
        if resolution.entry is not None and resolution.entry.id not in resolved_entries:
            resolved_entries[resolution.entry.id] = (event.dispatch_id, event.send_id)

    flipped = await _confirm_entries(session, resolved_entries, now)
    summary.details["ledger_confirmed"] = flipped

    for method in (EMBEDDED, IDENTIFIER, TIME_WINDOW, UNLINKED):
        record_webhook_resolution(method, summary.count(method))
    if summary.count(UNLINKED):
        logger.warning(f"[WEBHOOK] {summary.count(UNLINKED)} events could not be linked to a fixture")

    logger.info(
        f"[WEBHOOK] Processed {len(fresh)} events: embedded={summary.count(EMBEDDED)}, "
        f"identifier={summary.count(IDENTIFIER)}, time_window={summary.count(TIME_WINDOW)}, "
        f"unlinked={summary.count(UNLINKED)}, ledger_confirmed={flipped}"
    )
    return await record_run_summary(session, summary)


def _confirmation(event: DeliveryEvent, resolution: Resolution, now: datetime) -> NotificationSend:
    return NotificationSend(
        event_key=event.event_key,
        external_user_id=event.external_user_id,
        event_type=event.event_type,
        dispatch_id=event.dispatch_id,
        send_id=event.send_id,
        match_id=resolution.match_id,
        ledger_entry_id=resolution.entry.id if resolution.entry else None,
        resolution=resolution.method,
        event_at=event.event_at,
        raw_payload=event.raw,
        created_at=now,
    )


async def _store_confirmations(
    session: AsyncSession,
    resolved: list[tuple[DeliveryEvent, Resolution]],
    now: datetime,
) -> list[tuple[DeliveryEvent, Resolution]]:
    """
    Insert one confirmation per event and return the pairs actually stored.

    A concurrent delivery of the same events can commit between the
    duplicate check and this insert. On a unique-key conflict the batch is
    rolled back and retried once without the keys that now exist.
    """
    session.add_all([_confirmation(event, resolution, now) for event, resolution in resolved])
    try:
        await session.commit()
        return resolved
    except IntegrityError:
        await session.rollback()

    keys = [event.event_key for event, _ in resolved]
    result = await session.execute(select(NotificationSend.event_key).where(NotificationSend.event_key.in_(keys)))
    existing = set(result.scalars().all())
    remaining = [(event, resolution) for event, resolution in resolved if event.event_key not in existing]
    logger.info(f"[WEBHOOK] {len(resolved) - len(remaining)} events recorded concurrently, skipping them")

    if remaining:
        session.add_all([_confirmation(event, resolution, now) for event, resolution in remaining])
        await session.commit()
    return remaining


async def _confirm_entries(
    session: AsyncSession,
    resolved: dict[int, tuple[Optional[str], Optional[str]]],
    now: datetime,
) -> int:
    """Bulk status flip plus correlation-id backfill. Returns rows moved from pending to sent."""
    if not resolved:
        return 0

    ids = list(resolved.keys())
    result = await session.execute(
        update(ScheduleLedger)
        .where(ScheduleLedger.id.in_(ids))
        .where(ScheduleLedger.status == LEDGER_PENDING)
        .values(status=LEDGER_SENT, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    flipped = result.rowcount or 0

    table = ScheduleLedger.__table__
    backfill = (
        update(table)
        .where(table.c.id == bindparam("entry_id"))
        .values(
            dispatch_id=func.coalesce(
                table.c.dispatch_id, bindparam("event_dispatch_id", type_=table.c.dispatch_id.type)
            ),
            send_id=func.coalesce(table.c.send_id, bindparam("event_send_id", type_=table.c.send_id.type)),
            confirmed_at=func.coalesce(
                table.c.confirmed_at, bindparam("confirmed_now", type_=table.c.confirmed_at.type)
            ),
        )
    )
    connection = await session.connection()
    await connection.execute(
        backfill,
        [
            {
                "entry_id": entry_id,
                "event_dispatch_id": dispatch_id,
                "event_send_id": send_id,
                "confirmed_now": now,
            }
            for entry_id, (dispatch_id, send_id) in resolved.items()
        ],
    )
    await session.commit()
    return flipped
