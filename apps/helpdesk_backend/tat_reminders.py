from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select

from apps.helpdesk_backend import statuses
from apps.helpdesk_backend.models import Ticket
from apps.helpdesk_backend.outbox import outbox_add
from apps.helpdesk_backend.ticket_metadata import TicketMetadata
from common_core.errors import ValidationError

log = logging.getLogger("helpdesk.tat")

EVENT_TAT_REMINDER = "tat.reminder"


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def tickets_due_today(db, now: datetime) -> dict[str, list[int]]:
    """Open tickets whose effective TAT deadline falls on ``now``'s UTC day, by assignee."""
    by_assignee: dict[str, list[int]] = defaultdict(list)
    rows = db.execute(
        select(Ticket).where(Ticket.assigned_to.is_not(None)).order_by(Ticket.id.asc())
    ).scalars()
    for t in rows:
        if statuses.is_final(t.status):
            continue
        try:
            deadline = TicketMetadata.parse(t.metadata_json).effective_tat_deadline(now)
        except ValidationError:
            log.warning("ticket_metadata_unreadable", extra={"ticket_id": t.id})
            continue
        if deadline is not None and deadline.date() == now.date():
            by_assignee[t.assigned_to].append(t.id)
    return dict(by_assignee)


def run_tat_reminder_sweep(db, now: Optional[datetime] = None) -> int:
    """Queue one ``tat.reminder`` digest per assignee. Weekdays only; returns events queued."""
    now = now or _now()
    if now.weekday() >= 5:
        log.info("tat_reminders_skipped_weekend")
        return 0

    due = tickets_due_today(db, now)
    try:
        for assignee_id, ticket_ids in sorted(due.items()):
            outbox_add(
                db,
                EVENT_TAT_REMINDER,
                {"assignee_id": assignee_id, "ticket_ids": ticket_ids, "date": now.date().isoformat()},
                now,
            )
        db.commit()
    except Exception:
        db.rollback()
        raise
    log.info("tat_reminders_queued", extra={"count": len(due)})
    return len(due)
