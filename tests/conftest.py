"""Shared fixtures: in-memory repository, fake channel senders and record builders."""

import os
import sys
from datetime import timedelta

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import Alert, Event, Subscriber, new_id, utc_now
from repository import InMemoryRepository


class FakeSender:
    """Channel sender that records calls and can be told to fail."""

    def __init__(self, channel, fail_for=()):
        self.channel = channel
        self.fail_for = set(fail_for)
        self.sent = []

    def send(self, to_addr, subject, text_body, html_body=None):
        from email_dispatcher import ChannelSendError

        if to_addr in self.fail_for:
            raise ChannelSendError(f"{self.channel} rejected {to_addr}")
        self.sent.append({"to": to_addr, "subject": subject, "body": text_body})


def make_event(location="penang", severity=0.5, timestamp=None, author=None, text=None, **kwargs):
    timestamp = timestamp or utc_now()
    return Event(
        id=new_id("evt"),
        post_ref=new_id("post"),
        text=text or f"fire reported {new_id('t')}",
        source="test",
        timestamp=timestamp,
        author=author,
        location=location,
        severity=severity,
        confidence=0.5,
        created_at=kwargs.pop("created_at", timestamp),
        **kwargs,
    )


def make_alert(location="penang", severity=0.6, event_refs=None, timestamp=None):
    refs = event_refs or [new_id("evt"), new_id("evt")]
    return Alert(
        id=new_id("alt"),
        location=location,
        severity=severity,
        event_count=len(refs),
        event_refs=refs,
        timestamp=timestamp or utc_now(),
    )


def make_subscriber(sub_id, type="email", location=None, email=None, phone=None, **prefs):
    preferences = {"disasterAlerts": False, "emergencyAlerts": False,
                   "verifications": False, "systemStatus": False}
    preferences.update(prefs)
    return Subscriber(
        id=sub_id,
        type=type,
        email=email if email is not None else (f"{sub_id}@example.com" if type in ("email", "both") else None),
        phone=phone if phone is not None else ("+60123456789" if type in ("sms", "both") else None),
        preferences=preferences,
        location=location,
    )


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def now():
    # Wall-clock based so ledger TTLs (epoch seconds) are in the future
    return utc_now().replace(microsecond=0)


@pytest.fixture
def senders():
    return {"email": FakeSender("email"), "sms": FakeSender("sms")}


@pytest.fixture
def minutes():
    return lambda n: timedelta(minutes=n)
