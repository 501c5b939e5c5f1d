from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage

from common_core.config import settings

log = logging.getLogger("helpdesk.alerts")


def send_critical_alert(subject: str, body: str) -> None:
    """Mail IT about a worker loop that keeps failing. Never raises."""
    if not settings.email_enabled or not settings.smtp_host or not settings.email_it:
        log.error("critical_alert", extra={"reason": subject, "component": "helpdesk_worker"})
        return

    msg = EmailMessage()
    msg["From"] = settings.smtp_from
    msg["To"] = settings.email_it
    msg["Subject"] = f"[helpdesk] {subject}"
    msg.set_content(body)

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=15) as s:
            if settings.smtp_user:
                s.starttls()
                s.login(settings.smtp_user, settings.smtp_pass)
            s.send_message(msg)
    except Exception:
        log.exception("critical_alert_send_failed", extra={"component": "helpdesk_worker"})
