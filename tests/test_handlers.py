import pytest
from sqlalchemy import select

from apps.helpdesk_backend import services
from apps.helpdesk_backend.escalation import run_escalation_sweep
from apps.helpdesk_backend.models import NotificationLog, OutboxEvent, Ticket
from apps.helpdesk_backend.outbox import ClaimedEvent
from apps.helpdesk_backend.tat_reminders import run_tat_reminder_sweep
from apps.helpdesk_backend.ticket_metadata import TicketMetadata
from apps.helpdesk_worker import handlers
from apps.helpdesk_worker.dispatcher import run_dispatcher_batch
from common_core.errors import TransientDeliveryError


def _drain(session_factory, handler_ctx, clock):
    return run_dispatcher_batch(50, session_factory=session_factory, ctx=handler_ctx, clock=clock)


def _meta(db, ticket_id):
    db.expire_all()
    return TicketMetadata.parse(db.get(Ticket, ticket_id).metadata_json)


@pytest.fixture
def opened(db, seeded, session_factory, handler_ctx, clock):
    t = services.open_ticket(db, "stu1", "Hostel", "Block A", "Geyser broken", now=clock())
    result = _drain(session_factory, handler_ctx, clock)
    assert (result.processed, result.errors) == (1, 0)
    return t


def test_created_posts_root_message_and_confirmation(db, opened, fake_chat, fake_email):
    (msg,) = fake_chat.messages
    assert msg["channel"] == "#hostel"
    assert f"*New Ticket #{opened.id}*" in msg["text"]
    assert msg["cc"] == ["UCC1"]

    (mail,) = fake_email.sent
    assert mail.to == "stu1@college.edu"
    assert mail.in_reply_to is None

    meta = _meta(db, opened.id)
    assert meta.slack_channel == "#hostel"
    assert meta.slack_message_ts == "1700000000.000001"
    assert meta.email_message_id == "<msg-1@helpdesk.test>"
    assert meta.original_email_subject == mail.subject

    logs = db.execute(select(NotificationLog).order_by(NotificationLog.id)).scalars().all()
    assert [(n.channel, n.notification_type) for n in logs] == [
        ("slack", "ticket.created"),
        ("email", "ticket.created"),
    ]


def test_status_change_replies_in_thread(db, opened, session_factory, handler_ctx, fake_chat, fake_email, clock):
    services.transition_status(db, opened.id, "adm1", "admin", "in_progress", now=clock())
    _drain(session_factory, handler_ctx, clock)

    (reply,) = fake_chat.replies
    assert reply["thread"] == "1700000000.000001"
    assert reply["channel"] == "#hostel"
    assert reply["text"].startswith("🔄 *Status Changed*\nOpen → In Progress\nBy: Admin One")

    mail = fake_email.sent[-1]
    assert mail.to == "stu1@college.edu"
    assert mail.in_reply_to == "<msg-1@helpdesk.test>"
    assert mail.subject.startswith("Re: ")


def test_redelivery_does_not_repeat_messages(db, opened, handler_ctx, fake_chat, fake_email, clock):
    ev = ClaimedEvent(
        id=999,
        event_type="ticket.status.updated",
        payload={"ticket_id": opened.id, "old_status": "open", "new_status": "resolved", "actor_id": "adm1"},
        attempts=1,
    )
    handlers.handle_status_updated(handler_ctx, ev)
    handlers.handle_status_updated(handler_ctx, ev)
    assert len(fake_chat.replies) == 1
    assert len(fake_email.sent) == 2  # confirmation + one status mail

    created = ClaimedEvent(id=1000, event_type="ticket.created", payload={"ticket_id": opened.id}, attempts=1)
    handlers.handle_ticket_created(handler_ctx, created)
    assert len(fake_chat.messages) == 1


def test_partial_failure_retries_only_the_missing_channel(
    db, opened, session_factory, handler_ctx, fake_chat, fake_email, clock
):
    services.transition_status(db, opened.id, "adm1", "admin", "awaiting_student", now=clock())
    fake_email.fail = True
    result = _drain(session_factory, handler_ctx, clock)
    assert result.errors == 1
    assert len(fake_chat.replies) == 1

    db.expire_all()
    ev = db.execute(select(OutboxEvent).where(OutboxEvent.event_type == "ticket.status.updated")).scalar_one()
    assert ev.processed_at_utc is None
    assert "SMTP_FAILED" in ev.last_error or "smtp is down" in ev.last_error

    fake_email.fail = False
    clock.advance(minutes=2)
    result = _drain(session_factory, handler_ctx, clock)
    assert (result.processed, result.errors) == (1, 0)
    assert len(fake_chat.replies) == 1
    assert "waiting for your response" in fake_email.sent[-1].html


def test_chat_outage_raises_transient_error(opened, handler_ctx, fake_chat):
    fake_chat.fail = True
    ev = ClaimedEvent(
        id=5000,
        event_type="ticket.comment_added",
        payload={"ticket_id": opened.id, "comment_text": "hello", "author_id": "adm1", "author_role": "admin"},
        attempts=1,
    )
    with pytest.raises(TransientDeliveryError):
        handlers.handle_comment_added(handler_ctx, ev)


def test_comment_mail_goes_to_the_other_side(db, opened, session_factory, handler_ctx, fake_chat, fake_email, clock):
    services.transition_status(db, opened.id, "adm1", "admin", "in_progress", now=clock())
    _drain(session_factory, handler_ctx, clock)
    before = len(fake_email.sent)

    services.add_comment(db, opened.id, "stu1", "student", "Any update?", now=clock())
    services.add_comment(db, opened.id, "adm1", "admin", "Tomorrow morning", now=clock())
    _drain(session_factory, handler_ctx, clock)

    assert [m.to for m in fake_email.sent[before:]] == ["adm1@college.edu", "stu1@college.edu"]
    texts = [r["text"] for r in fake_chat.replies[-2:]]
    assert texts[0].startswith("💬 *New Comment by Student One* (Student)")
    assert texts[1].startswith("💬 *New Comment by Admin One* (Admin)")


def test_escalation_notification_text(db, opened, session_factory, handler_ctx, fake_chat, fake_email, clock):
    clock.advance(days=10)
    run_escalation_sweep(db, now=clock(), inactivity_days=7, cooldown_days=2)
    _drain(session_factory, handler_ctx, clock)

    text = fake_chat.replies[-1]["text"]
    assert text.startswith("🚨 *AUTO-ESCALATION #1*")
    assert "inactivity (10 days without activity)" in text
    assert "Escalated to: Super Admin" in text
    assert fake_email.sent[-1].to == "sup1@college.edu"


def test_tat_update_and_reminder(db, opened, session_factory, handler_ctx, fake_chat, fake_email, clock):
    services.transition_status(db, opened.id, "adm1", "admin", "in_progress", now=clock())
    services.set_tat(db, opened.id, "adm1", "admin", 2, now=clock())
    _drain(session_factory, handler_ctx, clock)
    assert fake_chat.replies[-1]["text"].startswith("⏰ *TAT Set*\nTAT: 2 hours")

    run_tat_reminder_sweep(db, now=clock())
    _drain(session_factory, handler_ctx, clock)
    digest = fake_email.sent[-1]
    assert digest.to == "adm1@college.edu"
    assert f"Ticket #{opened.id}" in digest.html


def test_missing_ticket_is_skipped(handler_ctx, fake_chat, seeded):
    ev = ClaimedEvent(id=1, event_type="ticket.escalated", payload={"ticket_id": 4242, "new_level": 1}, attempts=1)
    handlers.handle_escalated(handler_ctx, ev)
    ev2 = ClaimedEvent(id=2, event_type="ticket.escalated", payload={}, attempts=1)
    handlers.handle_escalated(handler_ctx, ev2)
    assert fake_chat.replies == []


def test_without_thread_no_reply_is_posted(db, seeded, session_factory, fake_email, clock):
    ctx = handlers.HandlerContext(session_factory=session_factory, chat=None, email=fake_email, clock=clock)
    t = services.open_ticket(db, "stu1", "College", now=clock())
    services.transition_status(db, t.id, "adm1", "admin", "resolved", now=clock.advance(minutes=1))
    result = run_dispatcher_batch(10, session_factory=session_factory, ctx=ctx, clock=clock)
    assert (result.processed, result.errors) == (2, 0)
    assert len(fake_email.sent) == 2
    assert _meta(db, t.id).slack_message_ts is None


def test_thread_handles_merge_into_a_concurrent_transition(
    db, seeded, session_factory, handler_ctx, fake_chat, clock, monkeypatch
):
    t = services.open_ticket(db, "stu1", "Hostel", "Block A", "Geyser broken", now=clock())
    post = fake_chat.post_message

    def post_while_admin_acts(channel, text, cc_ids=None):
        other = session_factory()
        try:
            services.transition_status(other, t.id, "adm1", "admin", "awaiting_student", now=clock())
        finally:
            other.close()
        return post(channel, text, cc_ids)

    monkeypatch.setattr(fake_chat, "post_message", post_while_admin_acts)
    ev = ClaimedEvent(id=7000, event_type="ticket.created", payload={"ticket_id": t.id}, attempts=1)
    handlers.handle_ticket_created(handler_ctx, ev)

    db.expire_all()
    row = db.get(Ticket, t.id)
    meta = TicketMetadata.parse(row.metadata_json)
    assert row.status == "awaiting_student"
    assert meta.tat_pause_start == clock()
    assert meta.slack_message_ts == "1700000000.000001"
    assert meta.email_message_id == "<msg-1@helpdesk.test>"
