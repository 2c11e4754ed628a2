# sms_dispatcher.py — Brevo transactional SMS channel sender
from __future__ import annotations
import logging
from typing import Optional

import requests

from config import CONFIG, NotificationConfig
from email_dispatcher import ChannelSendError

logger = logging.getLogger("sms_dispatcher")

# Brevo rejects longer content for a single transactional SMS
MAX_SMS_CHARS = 640


class BrevoSmsSender:
    """Sends one SMS per call through the Brevo API. No retries here."""

    channel = "sms"

    def __init__(self, settings: Optional[NotificationConfig] = None,
                 session: Optional[requests.Session] = None):
        self.settings = settings or CONFIG.notifications
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.settings.brevo_api_key)

    def send(self, to_number: str, subject: str, text_body: str, html_body: Optional[str] = None) -> None:
        s = self.settings
        if not self.configured:
            raise ChannelSendError("BREVO_API_KEY not set; sms channel disabled")

        headers = {
            "accept": "application/json",
            "api-key": s.brevo_api_key,
            "content-type": "application/json",
        }
        payload = {
            "sender": s.brevo_sms_sender,
            "recipient": to_number,
            "content": f"{subject}\n{text_body}"[:MAX_SMS_CHARS],
            "type": "transactional",
        }

        try:
            r = self.session.post(s.brevo_sms_url, headers=headers, json=payload, timeout=s.sms_timeout)
        except requests.RequestException as e:
            logger.error("SMS HTTP error for %s: %s", to_number, e)
            raise ChannelSendError(str(e)) from e

        if r.status_code not in (200, 201, 202):
            detail = (r.text or "").strip()
            logger.warning("SMS send failed (%s): %s", r.status_code, detail)
            raise ChannelSendError(f"Brevo returned {r.status_code}: {detail}")
        logger.debug("sms sent to %s", to_number)
