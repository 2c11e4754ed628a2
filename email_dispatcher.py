# email_dispatcher.py — SMTP channel sender for disaster notifications
from __future__ import annotations
import smtplib
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from config import CONFIG, NotificationConfig

logger = logging.getLogger("email_dispatcher")


class ChannelSendError(Exception):
    """A channel sender could not deliver a message."""


class SmtpEmailSender:
    """Sends one message per call over SMTP (STARTTLS when enabled). No retries here."""

    channel = "email"

    def __init__(self, settings: Optional[NotificationConfig] = None):
        self.settings = settings or CONFIG.notifications

    @property
    def configured(self) -> bool:
        s = self.settings
        return bool(s.smtp_host and s.smtp_user and s.smtp_pass)

    def send(self, to_addr: str, subject: str, text_body: str, html_body: Optional[str] = None) -> None:
        s = self.settings
        if not self.configured:
            raise ChannelSendError("SMTP creds missing; email channel disabled")
        from_addr = s.email_from or s.smtp_user

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = from_addr
        msg["To"] = to_addr
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        if html_body:
            msg.attach(MIMEText(html_body, "html", "utf-8"))

        try:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.smtp_timeout) as smtp:
                if s.smtp_tls:
                    smtp.starttls()
                smtp.login(s.smtp_user, s.smtp_pass)
                smtp.sendmail(from_addr, [to_addr], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error("send_email failed for %s: %s", to_addr, e)
            raise ChannelSendError(str(e)) from e
        logger.debug("email sent to %s", to_addr)
