"""Outbox event handlers.

Each handler re-reads the ticket, posts to chat and/or sends mail, and records
every delivered message in ``notification_log`` keyed by the outbox event id.
Redelivery of the same event skips channels already logged for it, and a
ticket that already has a chat thread never gets a second root message.

Delivery failures surface as ``TransientDeliveryError``; the dispatcher turns
them into ``mark_failure``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import select

from apps.helpdesk_backend import statuses
from apps.helpdesk_backend.escalation import (
    REASON_INACTIVITY,
    REASON_TAT_VIOLATION,
    TARGET_SUPER_ADMIN,
    TARGET_SUPER_ADMIN_URGENT,
)
from apps.helpdesk_backend.models import NotificationLog, Ticket, User
from apps.helpdesk_backend.outbox import ClaimedEvent
from apps.helpdesk_backend.ticket_metadata import TicketMetadata
from apps.helpdesk_worker import email_templates
from apps.helpdesk_worker.chat_channel import SlackChatChannel
from apps.helpdesk_worker.email_sender import OutgoingEmail, SmtpEmailSender
from common_core import rbac
from common_core.config import settings
from common_core.db import SessionLocal

log = logging.getLogger("helpdesk.handlers")

CHANNEL_SLACK = "slack"
CHANNEL_EMAIL = "email"

STATUS_EMOJI = {
    statuses.OPEN: "🆕",
    statuses.IN_PROGRESS: "🔄",
    statuses.AWAITING_STUDENT: "⏳",
    statuses.REOPENED: "🔁",
    statuses.ESCALATED: "🚨",
    statuses.FORWARDED: "➡️",
    statuses.RESOLVED: "✅",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class HandlerContext:
    session_factory: Callable[[], Any] = SessionLocal
    chat: Any = None
    email: Any = None
    clock: Callable[[], datetime] = _utcnow
    default_cc: list[str] = field(default_factory=list)
    category_channels: dict[str, str] = field(default_factory=dict)

    def channel_for(self, category: Optional[str]) -> str:
        key = (category or "").strip().lower()
        return self.category_channels.get(key) or self.category_channels.get("committee", "")


def default_context(session_factory=None) -> HandlerContext:
    return HandlerContext(
        session_factory=session_factory or SessionLocal,
        chat=SlackChatChannel() if settings.slack_enabled else None,
        email=SmtpEmailSender() if settings.email_enabled else None,
        default_cc=settings.default_cc_ids(),
        category_channels={
            "hostel": settings.slack_channel_hostel,
            "college": settings.slack_channel_college,
            "committee": settings.slack_channel_committee,
        },
    )


def _ticket_id(ev: ClaimedEvent) -> Optional[int]:
    raw = ev.payload.get("ticket_id")
    try:
        return int(raw)
    except (TypeError, ValueError):
        log.warning("outbox_payload_missing_ticket", extra={"event_id": ev.id, "event_type": ev.event_type})
        return None


def _load_ticket(db, ev: ClaimedEvent) -> Optional[Ticket]:
    ticket_id = _ticket_id(ev)
    if ticket_id is None:
        return None
    t = db.get(Ticket, ticket_id)
    if t is None:
        log.warning("ticket_gone", extra={"event_id": ev.id, "ticket_id": ticket_id})
    return t


def _user(db, user_id: Optional[str]) -> Optional[User]:
    return db.get(User, user_id) if user_id else None


def _email_of(db, user_id: Optional[str]) -> Optional[str]:
    u = _user(db, user_id)
    return u.email if u and u.email else None


def _display_name(db, user_id: Optional[str]) -> str:
    u = _user(db, user_id)
    if u is None:
        return user_id or "system"
    return u.full_name or u.email or u.id


def already_sent(db, event_id: int, channel: str) -> bool:
    return (
        db.execute(
            select(NotificationLog.id)
            .where(NotificationLog.outbox_event_id == event_id)
            .where(NotificationLog.channel == channel)
            .limit(1)
        ).first()
        is not None
    )


def _record(
    ctx: HandlerContext,
    db,
    ev: ClaimedEvent,
    channel: str,
    message_id: Optional[str],
    ticket_id: Optional[int] = None,
    user_id: Optional[str] = None,
) -> None:
    db.add(
        NotificationLog(
            ticket_id=ticket_id,
            outbox_event_id=ev.id,
            user_id=user_id,
            channel=channel,
            notification_type=ev.event_type,
            message_id=message_id,
            sent_at_utc=ctx.clock(),
        )
    )
    db.commit()


def _save_metadata(db, ticket_id: int, **fields: Any) -> None:
    """Merge thread handles into the ticket's metadata under a row lock."""
    # populate_existing: the caller may still hold a copy read before the send
    t = db.execute(
        select(Ticket)
        .where(Ticket.id == ticket_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()
    meta = TicketMetadata.parse(t.metadata_json)
    for k, v in fields.items():
        setattr(meta, k, v)
    t.metadata_json = meta.dump()
    db.commit()


def _notify_thread(
    ctx: HandlerContext,
    db,
    ev: ClaimedEvent,
    t: Ticket,
    text: str,
    email_to_user: Optional[str] = None,
    email_html: Optional[str] = None,
) -> None:
    meta = TicketMetadata.parse(t.metadata_json)

    if ctx.chat is not None and not already_sent(db, ev.id, CHANNEL_SLACK):
        if meta.slack_message_ts and meta.slack_channel:
            ts = ctx.chat.post_thread_reply(meta.slack_channel, meta.slack_message_ts, text, ctx.default_cc)
            _record(ctx, db, ev, CHANNEL_SLACK, ts, ticket_id=t.id)
        else:
            log.info("slack_thread_missing", extra={"ticket_id": t.id, "event_id": ev.id})

    to = _email_of(db, email_to_user)
    if ctx.email is not None and to and email_html and not already_sent(db, ev.id, CHANNEL_EMAIL):
        mid = ctx.email.send(
            OutgoingEmail(
                to=to,
                subject=email_templates.reply_subject(meta.original_email_subject, t.id),
                html=email_html,
                in_reply_to=meta.email_message_id,
            )
        )
        _record(ctx, db, ev, CHANNEL_EMAIL, mid, ticket_id=t.id, user_id=email_to_user)


def handle_ticket_created(ctx: HandlerContext, ev: ClaimedEvent) -> None:
    db = ctx.session_factory()
    try:
        t = _load_ticket(db, ev)
        if t is None:
            return
        meta = TicketMetadata.parse(t.metadata_json)
        creator = _user(db, t.created_by)

        if ctx.chat is not None and not meta.slack_message_ts:
            channel = ctx.channel_for(t.category)
            text = (
                f"🎫 *New Ticket #{t.id}*\n"
                f"Category: {t.category}\n"
                f"Location: {t.location or '-'}\n"
                f"By: {_display_name(db, t.created_by)}\n"
                f"{t.description or ''}"
            ).rstrip()
            ts = ctx.chat.post_message(channel, text, ctx.default_cc)
            _save_metadata(db, t.id, slack_message_ts=ts, slack_channel=channel)
            _record(ctx, db, ev, CHANNEL_SLACK, ts, ticket_id=t.id)

        if ctx.email is not None and creator and creator.email and not meta.email_message_id:
            subject, html = email_templates.ticket_created(t.id, t.category, t.location, t.description)
            mid = ctx.email.send(OutgoingEmail(to=creator.email, subject=subject, html=html))
            _save_metadata(db, t.id, email_message_id=mid, original_email_subject=subject)
            _record(ctx, db, ev, CHANNEL_EMAIL, mid, ticket_id=t.id, user_id=creator.id)
    finally:
        db.close()


def handle_status_updated(ctx: HandlerContext, ev: ClaimedEvent) -> None:
    old = str(ev.payload.get("old_status") or "")
    new = str(ev.payload.get("new_status") or "")
    db = ctx.session_factory()
    try:
        t = _load_ticket(db, ev)
        if t is None:
            return
        text = (
            f"{STATUS_EMOJI.get(new, '📝')} *Status Changed*\n"
            f"{statuses.label(old)} → {statuses.label(new)}\n"
            f"By: {_display_name(db, ev.payload.get('actor_id'))}"
        )
        _notify_thread(
            ctx,
            db,
            ev,
            t,
            text,
            email_to_user=t.created_by,
            email_html=email_templates.status_changed(t.id, old, new),
        )
    finally:
        db.close()


def _role_label(role: Optional[str]) -> str:
    role = rbac.normalize_role(role)
    if role == rbac.STUDENT:
        return "Student"
    if role == rbac.COMMITTEE:
        return "Committee"
    return "Admin"


def handle_comment_added(ctx: HandlerContext, ev: ClaimedEvent) -> None:
    author_id = ev.payload.get("author_id")
    author_role = ev.payload.get("author_role")
    comment = str(ev.payload.get("comment_text") or "")
    db = ctx.session_factory()
    try:
        t = _load_ticket(db, ev)
        if t is None:
            return
        author = _display_name(db, author_id)
        text = f"💬 *New Comment by {author}* ({_role_label(author_role)})\n{comment}"
        # students' comments go to whoever handles the ticket; everyone else's to the student
        recipient = t.assigned_to if rbac.normalize_role(author_role) == rbac.STUDENT else t.created_by
        if recipient == author_id:
            recipient = None
        _notify_thread(
            ctx,
            db,
            ev,
            t,
            text,
            email_to_user=recipient,
            email_html=email_templates.comment_added(t.id, author, comment),
        )
    finally:
        db.close()


def escalation_reason_text(payload: dict[str, Any]) -> str:
    reason = payload.get("reason")
    if reason == REASON_TAT_VIOLATION:
        hours = int(payload.get("overdue_seconds") or 0) // 3600
        return f"TAT violation (overdue by {hours}h)"
    if reason == REASON_INACTIVITY:
        return f"inactivity ({payload.get('inactive_days', '?')} days without activity)"
    note = payload.get("note")
    return f"manual request: {note}" if note else "manual request"


def _target_label(escalated_to: Optional[str]) -> str:
    if escalated_to == TARGET_SUPER_ADMIN_URGENT:
        return "Super Admin (URGENT)"
    if escalated_to == TARGET_SUPER_ADMIN:
        return "Super Admin"
    return (escalated_to or "-").replace("level_", "Level ")


def handle_escalated(ctx: HandlerContext, ev: ClaimedEvent) -> None:
    p = ev.payload
    level = int(p.get("new_level") or 0)
    reason = escalation_reason_text(p)
    db = ctx.session_factory()
    try:
        t = _load_ticket(db, ev)
        if t is None:
            return
        if p.get("reason") == "manual":
            heading = f"🚨 *ESCALATION #{level}*\nTicket #{t.id} was escalated by {_display_name(db, p.get('actor_id'))}."
        else:
            heading = f"🚨 *AUTO-ESCALATION #{level}*\nTicket #{t.id} has been automatically escalated due to: {reason}."
        text = f"{heading}\nEscalation count: {level}\nEscalated to: {_target_label(p.get('escalated_to'))}"
        _notify_thread(
            ctx,
            db,
            ev,
            t,
            text,
            email_to_user=p.get("assigned_to"),
            email_html=email_templates.escalated(t.id, level, reason),
        )
    finally:
        db.close()


def handle_tat_updated(ctx: HandlerContext, ev: ClaimedEvent) -> None:
    p = ev.payload
    is_extension = bool(p.get("is_extension"))
    tat_date = datetime.fromisoformat(p["tat_date"]) if p.get("tat_date") else None
    db = ctx.session_factory()
    try:
        t = _load_ticket(db, ev)
        if t is None:
            return
        due = tat_date.strftime("%Y-%m-%d %H:%M UTC") if tat_date else "-"
        text = f"⏰ *TAT {'Extended' if is_extension else 'Set'}*\nTAT: {p.get('tat') or '-'}\nDue: {due}"
        _notify_thread(
            ctx,
            db,
            ev,
            t,
            text,
            email_to_user=t.created_by,
            email_html=email_templates.tat_updated(t.id, p.get("tat"), tat_date, is_extension),
        )
    finally:
        db.close()


def handle_tat_reminder(ctx: HandlerContext, ev: ClaimedEvent) -> None:
    p = ev.payload
    if ctx.email is None:
        return
    db = ctx.session_factory()
    try:
        to = _email_of(db, p.get("assignee_id"))
        if not to:
            log.warning("tat_reminder_no_email", extra={"event_id": ev.id, "actor_id": p.get("assignee_id")})
            return
        if already_sent(db, ev.id, CHANNEL_EMAIL):
            return
        subject, html = email_templates.tat_reminder_digest(str(p.get("date") or ""), p.get("ticket_ids") or [])
        mid = ctx.email.send(OutgoingEmail(to=to, subject=subject, html=html))
        _record(ctx, db, ev, CHANNEL_EMAIL, mid, user_id=p.get("assignee_id"))
    finally:
        db.close()


HANDLERS: dict[str, Callable[[HandlerContext, ClaimedEvent], None]] = {
    "ticket.created": handle_ticket_created,
    "ticket.status.updated": handle_status_updated,
    "ticket.comment_added": handle_comment_added,
    "ticket.escalated": handle_escalated,
    "ticket.tat.updated": handle_tat_updated,
    "tat.reminder": handle_tat_reminder,
}
