"""Durable outbox for notification side effects.

Rows are appended in the same transaction as the ticket mutation that caused
them (``outbox_add``) and drained by the worker through ``claim_next`` /
``mark_success`` / ``mark_failure``. Each of those three runs in its own short
transaction so a killed worker never leaves a half-applied claim behind.

Eligibility: ``processed_at_utc IS NULL AND (next_retry_at_utc IS NULL OR
next_retry_at_utc <= now)``. Claims go oldest id first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, or_, select, update

from apps.helpdesk_backend.models import OutboxEvent
from common_core.config import settings
from common_core.db import SessionLocal
from common_core.errors import NotFoundError

log = logging.getLogger("helpdesk.outbox")

# A claim only loses a race when another worker bumped the same row first.
MAX_CLAIM_RACES = 5


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class ClaimedEvent:
    id: int
    event_type: str
    payload: dict[str, Any]
    attempts: int


def _eligible(now: datetime):
    return and_(
        OutboxEvent.processed_at_utc.is_(None),
        or_(OutboxEvent.next_retry_at_utc.is_(None), OutboxEvent.next_retry_at_utc <= now),
    )


def outbox_add(db, event_type: str, payload: dict[str, Any], now: datetime | None = None) -> OutboxEvent:
    """Queue an event inside the caller's transaction. The caller commits."""
    ev = OutboxEvent(
        event_type=event_type,
        payload_json=payload,
        attempts=0,
        processed_at_utc=None,
        next_retry_at_utc=None,
        last_error=None,
        created_at_utc=now or _now(),
    )
    db.add(ev)
    return ev


def backoff_minutes(attempts: int, cap_minutes: int | None = None) -> int:
    cap = settings.outbox_max_delay_minutes if cap_minutes is None else cap_minutes
    return min(cap, 2 ** min(max(0, attempts), 32))


def claim_next(
    *,
    session_factory=None,
    now: datetime | None = None,
    lease_seconds: int | None = None,
) -> ClaimedEvent | None:
    """Claim the oldest eligible event or return None.

    The claim bumps ``attempts`` and replaces ``next_retry_at_utc`` with a short
    lease so a worker that dies mid-handler does not strand the row. The update
    is conditional on the attempts value that was read, so two workers racing
    for the same row cannot both win it.
    """
    session_factory = session_factory or SessionLocal
    now = now or _now()
    lease = settings.outbox_claim_lease_seconds if lease_seconds is None else lease_seconds
    lease_until = now + timedelta(seconds=lease) if lease > 0 else None

    db = session_factory()
    try:
        for _ in range(MAX_CLAIM_RACES):
            row = (
                db.execute(
                    select(OutboxEvent)
                    .where(_eligible(now))
                    .order_by(OutboxEvent.id.asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                .scalars()
                .first()
            )
            if row is None:
                db.rollback()
                return None

            event_id = row.id
            seen_attempts = int(row.attempts or 0)
            event_type = row.event_type
            payload = dict(row.payload_json or {})

            res = db.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == event_id)
                .where(OutboxEvent.attempts == seen_attempts)
                .where(_eligible(now))
                .values(attempts=seen_attempts + 1, next_retry_at_utc=lease_until)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                db.commit()
                return ClaimedEvent(
                    id=event_id,
                    event_type=event_type,
                    payload=payload,
                    attempts=seen_attempts + 1,
                )
            db.rollback()
            log.info("outbox_claim_race_lost", extra={"event_id": event_id})
        return None
    finally:
        db.close()


def mark_success(event_id: int, *, session_factory=None, now: datetime | None = None) -> None:
    session_factory = session_factory or SessionLocal
    db = session_factory()
    try:
        row = db.get(OutboxEvent, event_id)
        if row is None:
            raise NotFoundError("OUTBOX_EVENT_NOT_FOUND", f"Outbox event {event_id} not found")
        if row.processed_at_utc is not None:
            return
        row.processed_at_utc = now or _now()
        row.next_retry_at_utc = None
        row.last_error = None
        db.commit()
    finally:
        db.close()


def mark_failure(
    event_id: int,
    reason: str | None = None,
    *,
    session_factory=None,
    now: datetime | None = None,
) -> datetime:
    """Defer the event by ``min(cap, 2**attempts)`` minutes.

    ``attempts`` was already counted by the claim and is left alone. There is
    no attempt limit: the row keeps coming back until it succeeds or an
    operator requeues or fixes it.
    """
    session_factory = session_factory or SessionLocal
    now = now or _now()
    db = session_factory()
    try:
        row = db.get(OutboxEvent, event_id)
        if row is None:
            raise NotFoundError("OUTBOX_EVENT_NOT_FOUND", f"Outbox event {event_id} not found")
        delay = backoff_minutes(int(row.attempts or 0))
        row.next_retry_at_utc = now + timedelta(minutes=delay)
        if reason:
            row.last_error = reason[:300]
        db.commit()
        log.error(
            "outbox_event_failed",
            extra={
                "event_id": event_id,
                "event_type": row.event_type,
                "attempts": row.attempts,
                "err": (reason or "")[:300],
            },
        )
        return row.next_retry_at_utc
    finally:
        db.close()


def list_stuck(db, limit: int = 100) -> list[OutboxEvent]:
    """Unprocessed rows that have been claimed at least once."""
    return (
        db.execute(
            select(OutboxEvent)
            .where(OutboxEvent.processed_at_utc.is_(None))
            .where(OutboxEvent.attempts > 0)
            .order_by(OutboxEvent.id.asc())
            .limit(limit)
        )
        .scalars()
        .all()
    )


def requeue(db, event_ids: list[int]) -> int:
    """Make the given unprocessed events eligible right away. The caller commits."""
    if not event_ids:
        return 0
    res = db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id.in_(event_ids))
        .where(OutboxEvent.processed_at_utc.is_(None))
        .values(next_retry_at_utc=None)
        .execution_options(synchronize_session=False)
    )
    return int(res.rowcount or 0)
