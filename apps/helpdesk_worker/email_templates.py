from __future__ import annotations

from datetime import datetime
from html import escape
from typing import Iterable, Optional

from apps.helpdesk_backend import statuses


def _wrap(title: str, body: str) -> str:
    return (
        "<div style=\"font-family:Arial,sans-serif;font-size:14px\">"
        f"<h3>{escape(title)}</h3>{body}"
        "<p style=\"color:#888\">This is an automated message from the college helpdesk.</p>"
        "</div>"
    )


def _row(k: str, v: Optional[str]) -> str:
    return f"<tr><td><b>{escape(k)}</b></td><td>{escape(v or '-')}</td></tr>"


def reply_subject(original: Optional[str], ticket_id: int) -> str:
    base = original or f"Ticket #{ticket_id}"
    return base if base.lower().startswith("re:") else f"Re: {base}"


def ticket_created(ticket_id: int, category: str, location: Optional[str], description: Optional[str]) -> tuple[str, str]:
    subject = f"Ticket #{ticket_id} created: {category}"
    body = (
        "<p>Your ticket has been received.</p><table>"
        + _row("Ticket", f"#{ticket_id}")
        + _row("Category", category)
        + _row("Location", location)
        + _row("Description", description)
        + "</table>"
    )
    return subject, _wrap(f"Ticket #{ticket_id} created", body)


def status_changed(ticket_id: int, old_status: str, new_status: str) -> str:
    body = (
        f"<p>The status of ticket #{ticket_id} changed from "
        f"<b>{escape(statuses.label(old_status))}</b> to <b>{escape(statuses.label(new_status))}</b>.</p>"
    )
    if new_status == statuses.AWAITING_STUDENT:
        body += "<p>The team is waiting for your response. Please reply on the ticket.</p>"
    return _wrap("Status updated", body)


def comment_added(ticket_id: int, author: str, text: str) -> str:
    body = f"<p><b>{escape(author)}</b> commented on ticket #{ticket_id}:</p><blockquote>{escape(text)}</blockquote>"
    return _wrap("New comment", body)


def escalated(ticket_id: int, level: int, reason: str) -> str:
    body = f"<p>Ticket #{ticket_id} has been escalated (level {level}) due to {escape(reason)}.</p>"
    return _wrap("Ticket escalated", body)


def tat_updated(ticket_id: int, tat: Optional[str], tat_date: Optional[datetime], is_extension: bool) -> str:
    verb = "extended" if is_extension else "set"
    when = tat_date.strftime("%Y-%m-%d %H:%M UTC") if tat_date else "-"
    body = f"<p>The expected resolution time for ticket #{ticket_id} was {verb}: <b>{escape(tat or '-')}</b> (by {when}).</p>"
    return _wrap("Turnaround time updated", body)


def tat_reminder_digest(day: str, ticket_ids: Iterable[int]) -> tuple[str, str]:
    ids = list(ticket_ids)
    items = "".join(f"<li>Ticket #{i}</li>" for i in ids)
    subject = f"{len(ids)} ticket(s) due today ({day})"
    return subject, _wrap("Tickets due today", f"<ul>{items}</ul>")
