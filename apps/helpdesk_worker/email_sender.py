from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional

from common_core.config import settings
from common_core.errors import TransientDeliveryError

log = logging.getLogger("helpdesk.email")


@dataclass
class OutgoingEmail:
    to: str
    subject: str
    html: str
    # Message-ID of the first mail in the conversation, if any
    in_reply_to: Optional[str] = None
    references: list[str] = field(default_factory=list)


def build_message(mail: OutgoingEmail, sender: str) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = mail.to
    msg["Subject"] = mail.subject
    domain = sender.rsplit("@", 1)[-1] if "@" in sender else None
    msg["Message-ID"] = make_msgid(domain=domain)
    if mail.in_reply_to:
        msg["In-Reply-To"] = mail.in_reply_to
        refs = mail.references or [mail.in_reply_to]
        msg["References"] = " ".join(refs)
    msg.set_content("This message requires an HTML capable mail client.")
    msg.add_alternative(mail.html, subtype="html")
    return msg


class SmtpEmailSender:
    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
        timeout: float = 15.0,
    ):
        self.host = host or settings.smtp_host
        self.port = port or settings.smtp_port
        self.user = settings.smtp_user if user is None else user
        self.password = settings.smtp_pass if password is None else password
        self.sender = sender or settings.smtp_from
        self.timeout = timeout

    def send(self, mail: OutgoingEmail) -> str:
        """Send one mail and return its Message-ID."""
        msg = build_message(mail, self.sender)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as s:
                if self.user:
                    s.starttls()
                    s.login(self.user, self.password)
                s.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise TransientDeliveryError("SMTP_FAILED", str(e)[:300]) from e
        log.info("email_sent")
        return str(msg["Message-ID"])
