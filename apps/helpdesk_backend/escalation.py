"""Periodic escalation of stale and overdue tickets.

``run_escalation_sweep`` first scans for candidates, then escalates each one in
its own transaction so one bad ticket cannot roll back or block the others.
The sweep never changes a ticket's status or ``updated_at_utc``; escalation is
tracked through ``escalation_level`` / ``escalated_to`` only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select

from apps.helpdesk_backend import statuses
from apps.helpdesk_backend.assignment import DbAssignmentResolver
from apps.helpdesk_backend.models import Ticket
from apps.helpdesk_backend.outbox import outbox_add
from apps.helpdesk_backend.ticket_metadata import TicketMetadata
from common_core.config import settings

log = logging.getLogger("helpdesk.escalation")

EVENT_TICKET_ESCALATED = "ticket.escalated"

REASON_INACTIVITY = "inactivity"
REASON_TAT_VIOLATION = "tat-violation"

TARGET_SUPER_ADMIN = "super_admin"
TARGET_SUPER_ADMIN_URGENT = "super_admin_urgent"

_FINAL_RAW = [s for s in list(statuses.STATUS_META) + list(statuses.STATUS_ALIASES) if statuses.is_final(s)]


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class SweepSummary:
    escalated_count: int = 0
    ticket_ids: list[int] = field(default_factory=list)
    error_count: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    skipped: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "escalated_count": self.escalated_count,
            "ticket_ids": list(self.ticket_ids),
            "error_count": self.error_count,
            "errors": list(self.errors),
            "skipped": self.skipped,
        }


@dataclass(frozen=True)
class Candidate:
    ticket_id: int
    reason: str
    overdue_seconds: Optional[int] = None
    inactive_days: Optional[int] = None


def escalation_reason(t: Ticket, now: datetime, inactivity_days: int) -> Optional[Candidate]:
    """Why ``t`` should be escalated at ``now``, or None.

    A TAT breach wins over inactivity when both hold. The TAT deadline is the
    effective one: pauses while awaiting the student do not count against it.
    """
    try:
        meta = TicketMetadata.parse(t.metadata_json)
    except Exception:
        log.warning("ticket_metadata_unreadable", extra={"ticket_id": t.id})
        meta = TicketMetadata()

    deadline = meta.effective_tat_deadline(now)
    if deadline is not None and deadline < now:
        return Candidate(
            ticket_id=t.id,
            reason=REASON_TAT_VIOLATION,
            overdue_seconds=int((now - deadline).total_seconds()),
        )

    last_activity = max(d for d in (t.updated_at_utc, t.created_at_utc) if d is not None)
    if last_activity < now - timedelta(days=inactivity_days):
        return Candidate(
            ticket_id=t.id,
            reason=REASON_INACTIVITY,
            inactive_days=int((now - last_activity).total_seconds() // 86400),
        )
    return None


def in_cooldown(t: Ticket, now: datetime, cooldown_days: int) -> bool:
    last = t.last_escalated_at_utc
    return last is not None and (now - last) < timedelta(days=cooldown_days)


def escalate_locked_ticket(
    db,
    t: Ticket,
    *,
    now: datetime,
    reason: str,
    resolver,
    urgent_level: int,
    details: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Bump one already-locked ticket a level and queue ``ticket.escalated``.

    Shared by the sweep and manual escalation. The caller commits.
    """
    old_level = int(t.escalation_level or 0)
    new_level = old_level + 1

    target = resolver.next_target(t.category, t.location, old_level)
    assignee: Optional[str]
    if target is not None:
        escalated_to = f"level_{target.level}"
        assignee = target.assignee_id
    else:
        escalated_to = TARGET_SUPER_ADMIN_URGENT if new_level >= urgent_level else TARGET_SUPER_ADMIN
        assignee = resolver.fallback_assignee()
        if assignee is None:
            log.error("escalation_no_super_admin", extra={"ticket_id": t.id})

    t.escalation_level = new_level
    t.last_escalated_at_utc = now
    t.escalated_to = escalated_to
    if assignee:
        t.assigned_to = assignee

    if reason == REASON_TAT_VIOLATION:
        meta = TicketMetadata.parse(t.metadata_json)
        if meta.sla_breached_at is None:
            meta.sla_breached_at = now
            t.metadata_json = meta.dump()

    payload: dict[str, Any] = {
        "ticket_id": t.id,
        "old_level": old_level,
        "new_level": new_level,
        "escalated_to": escalated_to,
        "assigned_to": assignee,
        "reason": reason,
    }
    for k, v in (details or {}).items():
        if v is not None:
            payload[k] = v
    outbox_add(db, EVENT_TICKET_ESCALATED, payload, now)

    log.info(
        "ticket_escalated",
        extra={"ticket_id": t.id, "reason": reason, "count": new_level},
    )
    return payload


def find_candidates(db, now: datetime, inactivity_days: int) -> list[Candidate]:
    rows = db.execute(
        select(Ticket).where(Ticket.status.notin_(_FINAL_RAW)).order_by(Ticket.id.asc())
    ).scalars()
    out: list[Candidate] = []
    for t in rows:
        if statuses.is_final(t.status):
            continue
        c = escalation_reason(t, now, inactivity_days)
        if c is not None:
            out.append(c)
    return out


def run_escalation_sweep(
    db,
    now: Optional[datetime] = None,
    inactivity_days: Optional[int] = None,
    cooldown_days: Optional[int] = None,
    resolver=None,
    urgent_level: Optional[int] = None,
) -> SweepSummary:
    now = now or _now()
    inactivity_days = settings.auto_escalation_days if inactivity_days is None else inactivity_days
    cooldown_days = settings.escalation_cooldown_days if cooldown_days is None else cooldown_days
    urgent_level = settings.escalation_urgent_level if urgent_level is None else urgent_level
    resolver = resolver or DbAssignmentResolver(db)

    summary = SweepSummary()
    candidates = find_candidates(db, now, inactivity_days)
    db.rollback()

    for c in candidates:
        try:
            t = db.execute(
                select(Ticket)
                .where(Ticket.id == c.ticket_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            # re-checked under the lock; a transition may have landed since the scan
            if t is None or statuses.is_final(t.status) or in_cooldown(t, now, cooldown_days):
                db.rollback()
                summary.skipped += 1
                continue

            escalate_locked_ticket(
                db,
                t,
                now=now,
                reason=c.reason,
                resolver=resolver,
                urgent_level=urgent_level,
                details={"overdue_seconds": c.overdue_seconds, "inactive_days": c.inactive_days},
            )
            db.commit()
            summary.escalated_count += 1
            summary.ticket_ids.append(c.ticket_id)
        except Exception as e:
            db.rollback()
            summary.error_count += 1
            summary.errors.append({"ticket_id": c.ticket_id, "error": str(e)[:300]})
            log.exception("ticket_escalation_failed", extra={"ticket_id": c.ticket_id})

    log.info(
        "escalation_sweep_done",
        extra={"count": summary.escalated_count, "err": summary.error_count or None},
    )
    return summary
