from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import select

from apps.helpdesk_backend import statuses
from apps.helpdesk_backend.assignment import DbAssignmentResolver
from apps.helpdesk_backend.escalation import escalate_locked_ticket
from apps.helpdesk_backend.group_archive import archive_group_if_all_closed
from apps.helpdesk_backend.models import Ticket
from apps.helpdesk_backend.outbox import outbox_add
from apps.helpdesk_backend.ticket_metadata import Comment, TatExtension, TicketMetadata
from apps.helpdesk_backend.transition_rules import (
    authorize_transition,
    caller_created_ticket,
    caller_heads_tagged_committee,
)
from common_core import rbac
from common_core.config import settings
from common_core.errors import (
    ConfigurationError,
    HelpdeskError,
    NotFoundError,
    TransitionPermissionError,
    ValidationError,
)

log = logging.getLogger("helpdesk.tickets")

MAX_COMMENT_LEN = 5000
MAX_TAT_HOURS = 24 * 90

EVENT_TICKET_CREATED = "ticket.created"
EVENT_STATUS_UPDATED = "ticket.status.updated"
EVENT_COMMENT_ADDED = "ticket.comment_added"
EVENT_TAT_UPDATED = "ticket.tat.updated"


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def load_ticket_for_update(db, ticket_id: int) -> Ticket:
    t = db.execute(
        select(Ticket)
        .where(Ticket.id == ticket_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if t is None:
        raise NotFoundError("TICKET_NOT_FOUND", f"Ticket {ticket_id} not found")
    return t


def _current_status(t: Ticket) -> str:
    current = statuses.canonical_or_none(t.status)
    if current is None:
        raise ConfigurationError(
            "STORED_STATUS_UNKNOWN", f"Ticket {t.id} has unrecognised status {t.status!r}"
        )
    return current


def apply_tat_bookkeeping(meta: TicketMetadata, old_status: str, new_status: str, now: datetime) -> None:
    """Pause/resume the TAT clock and stamp lifecycle timestamps for one transition.

    After this runs, ``tat_pause_start`` is set exactly when ``new_status`` is
    awaiting_student.
    """
    if new_status == statuses.AWAITING_STUDENT:
        if old_status != statuses.AWAITING_STUDENT or meta.tat_pause_start is None:
            meta.pause_tat(now)
    else:
        meta.resume_tat(now)

    if new_status == statuses.RESOLVED:
        meta.resolved_at = now
    if new_status == statuses.REOPENED:
        meta.reopened_at = now
        meta.reopen_count = (meta.reopen_count or 0) + 1
        # a new cycle starts without a TAT until someone sets one
        meta.reset_tat_cycle()


def _apply_transition(
    db, ticket_id: int, actor_id: str, actor_role: str, new_status: str, now: datetime
) -> tuple[Ticket, str]:
    t = load_ticket_for_update(db, ticket_id)
    old_status = _current_status(t)
    rule = authorize_transition(db, t, actor_id, actor_role, old_status, new_status)

    meta = TicketMetadata.parse(t.metadata_json)
    apply_tat_bookkeeping(meta, old_status, new_status, now)

    t.status = new_status
    t.metadata_json = meta.dump()
    t.updated_at_utc = now
    if rule.takes_ownership and t.assigned_to != actor_id:
        t.assigned_to = actor_id

    outbox_add(
        db,
        EVENT_STATUS_UPDATED,
        {
            "ticket_id": t.id,
            "old_status": old_status,
            "new_status": new_status,
            "actor_id": actor_id,
        },
        now,
    )
    return t, old_status


def transition_status(
    db,
    ticket_id: int,
    actor_id: str,
    actor_role: str,
    requested_status: str,
    *,
    now: Optional[datetime] = None,
    archiver: Optional[Callable[[int], bool]] = None,
) -> Ticket:
    """Validate and apply a caller-requested status change.

    The ticket update and its ``ticket.status.updated`` outbox row commit
    together. Group archiving runs afterwards and never fails the transition.
    """
    new_status = statuses.canonical_status(requested_status)
    now = now or _now()
    try:
        t, old_status = _apply_transition(db, ticket_id, actor_id, actor_role, new_status, now)
        db.commit()
    except Exception:
        db.rollback()
        raise

    log.info(
        "ticket_status_changed",
        extra={
            "ticket_id": t.id,
            "actor_id": actor_id,
            "old_status": old_status,
            "new_status": new_status,
        },
    )

    if t.group_id is not None and statuses.is_final(new_status):
        archive = archiver or (lambda gid: archive_group_if_all_closed(db, gid))
        try:
            archive(t.group_id)
        except Exception:
            db.rollback()
            log.exception("group_archive_failed", extra={"group_id": t.group_id})
    return t


def open_ticket(
    db,
    created_by: str,
    category: str,
    location: Optional[str] = None,
    description: Optional[str] = None,
    group_id: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
) -> Ticket:
    if not category or not category.strip():
        raise ValidationError("CATEGORY_REQUIRED", "category is required")
    now = now or _now()
    try:
        t = Ticket(
            status=statuses.OPEN,
            created_by=created_by,
            assigned_to=None,
            category=category.strip(),
            location=(location or None),
            group_id=group_id,
            description=description,
            escalation_level=0,
            metadata_json={},
            created_at_utc=now,
            updated_at_utc=now,
        )
        db.add(t)
        db.flush()
        outbox_add(
            db,
            EVENT_TICKET_CREATED,
            {"ticket_id": t.id, "created_by": created_by, "category": t.category},
            now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    log.info("ticket_created", extra={"ticket_id": t.id, "actor_id": created_by})
    return t


def _may_comment(db, t: Ticket, actor_id: str, role: str) -> bool:
    if rbac.is_admin(role):
        return True
    if role == rbac.STUDENT:
        return caller_created_ticket(db, t, actor_id)
    if role == rbac.COMMITTEE:
        return caller_heads_tagged_committee(db, t, actor_id)
    return False


def add_comment(
    db,
    ticket_id: int,
    author_id: str,
    author_role: str,
    text: str,
    *,
    now: Optional[datetime] = None,
) -> Ticket:
    text = (text or "").strip()
    if not text:
        raise ValidationError("COMMENT_EMPTY", "comment text is required")
    if len(text) > MAX_COMMENT_LEN:
        raise ValidationError("COMMENT_TOO_LONG", f"comment exceeds {MAX_COMMENT_LEN} characters")
    role = rbac.normalize_role(author_role)
    now = now or _now()
    try:
        t = load_ticket_for_update(db, ticket_id)
        if not _may_comment(db, t, author_id, role):
            raise TransitionPermissionError("COMMENT_FORBIDDEN", "You cannot comment on this ticket")
        meta = TicketMetadata.parse(t.metadata_json)
        meta.comments.append(
            Comment(text=text, author_id=author_id, author_role=role, created_at=now)
        )
        t.metadata_json = meta.dump()
        t.updated_at_utc = now
        outbox_add(
            db,
            EVENT_COMMENT_ADDED,
            {
                "ticket_id": t.id,
                "comment_text": text,
                "author_id": author_id,
                "author_role": role,
            },
            now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    log.info("ticket_comment_added", extra={"ticket_id": t.id, "actor_id": author_id})
    return t


def set_tat(
    db,
    ticket_id: int,
    actor_id: str,
    actor_role: str,
    hours: float,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Ticket:
    """Set (or extend) the turnaround time. Admins only.

    The new deadline counts from now, so earlier pauses are dropped; a pause
    that is still open restarts at now.
    """
    if not rbac.is_admin(actor_role):
        raise TransitionPermissionError("ADMIN_ONLY", "Only admins can set a TAT")
    if hours is None or hours <= 0 or hours > MAX_TAT_HOURS:
        raise ValidationError("INVALID_TAT_HOURS", f"TAT must be between 0 and {MAX_TAT_HOURS} hours")
    now = now or _now()
    try:
        t = load_ticket_for_update(db, ticket_id)
        if statuses.is_final(t.status):
            raise ValidationError("TICKET_RESOLVED", "Cannot set a TAT on a resolved ticket")
        meta = TicketMetadata.parse(t.metadata_json)
        previous = meta.tat_date
        new_date = now + timedelta(hours=hours)
        if previous is not None:
            meta.tat_extensions.append(
                TatExtension(
                    previous_tat_date=previous,
                    new_tat_date=new_date,
                    extended_at=now,
                    extended_by=actor_id,
                    reason=reason,
                )
            )
        meta.tat = f"{hours:g} hours"
        meta.tat_date = new_date
        meta.tat_set_at = now
        meta.tat_set_by = actor_id
        meta.tat_paused_duration = 0.0
        if meta.tat_pause_start is not None:
            meta.tat_pause_start = now
        t.metadata_json = meta.dump()
        t.updated_at_utc = now
        outbox_add(
            db,
            EVENT_TAT_UPDATED,
            {
                "ticket_id": t.id,
                "tat": meta.tat,
                "tat_date": new_date.isoformat(),
                "previous_tat_date": previous.isoformat() if previous else None,
                "is_extension": previous is not None,
                "actor_id": actor_id,
            },
            now,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    log.info("ticket_tat_set", extra={"ticket_id": t.id, "actor_id": actor_id})
    return t


def escalate_ticket(
    db,
    ticket_id: int,
    actor_id: str,
    actor_role: str,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    resolver=None,
) -> Ticket:
    """Manual escalation by the ticket's student or an admin. No cooldown applies."""
    role = rbac.normalize_role(actor_role)
    if role == rbac.COMMITTEE:
        raise TransitionPermissionError("COMMITTEE_CANNOT_ESCALATE", "Committee members cannot escalate tickets")
    if role != rbac.STUDENT and not rbac.is_admin(role):
        raise TransitionPermissionError("FORBIDDEN", "Forbidden")
    if reason is not None and len(reason) > 2000:
        raise ValidationError("REASON_TOO_LONG", "reason exceeds 2000 characters")
    now = now or _now()
    try:
        t = load_ticket_for_update(db, ticket_id)
        if role == rbac.STUDENT and not caller_created_ticket(db, t, actor_id):
            raise TransitionPermissionError("STUDENT_NOT_OWNER", "You can only escalate your own tickets")
        if statuses.is_final(t.status):
            raise ValidationError("TICKET_RESOLVED", "Cannot escalate a resolved ticket")
        escalate_locked_ticket(
            db,
            t,
            now=now,
            reason="manual",
            resolver=resolver or DbAssignmentResolver(db),
            urgent_level=settings.escalation_urgent_level,
            details={"note": reason, "actor_id": actor_id},
        )
        db.commit()
    except HelpdeskError:
        db.rollback()
        raise
    except Exception:
        db.rollback()
        log.exception("manual_escalation_failed", extra={"ticket_id": ticket_id})
        raise
    return t
