"""
Notification dispatch: at-most-once gating, subscriber resolution, partial failures and formatting.
"""

import threading
from unittest.mock import MagicMock

import pytest

from conftest import FakeSender, make_alert, make_event, make_subscriber
from models import NotificationKind, Verification, new_id
from notification_dispatcher import NotificationDispatcher
from notification_ledger import LedgerUnavailableError, RepositoryLedger
from notification_messages import build_message, format_disaster_alert
from repository import InMemoryRepository


class TestIdempotency:

    def setup_method(self):
        self.repo = InMemoryRepository()
        self.ledger = RepositoryLedger(self.repo)
        self.senders = {"email": FakeSender("email"), "sms": FakeSender("sms")}
        self.dispatcher = NotificationDispatcher(self.repo, self.ledger, senders=self.senders)
        self.repo.save_subscriber(make_subscriber("sub_1", disasterAlerts=True))

    def test_second_dispatch_skipped(self, now):
        alert = make_alert(severity=0.6)
        first = self.dispatcher.dispatch_alert(alert, now=now)
        second = self.dispatcher.dispatch_alert(alert, now=now)

        assert first["successful"] == 1
        assert not first["skipped"]
        assert second["skipped"]
        assert second["reason"] == "already sent"
        assert second["successful"] == 0
        assert len(self.senders["email"].sent) == 1
        assert self.repo.count_ledger_entries() == 1

    def test_ledger_entry_completed(self, now):
        alert = make_alert(severity=0.6)
        self.dispatcher.dispatch_alert(alert, now=now)
        entry = self.ledger.get(alert.id, "disaster_alert")
        assert entry.status == "completed"
        assert entry.recipient_count == 1
        assert entry.failed_count == 0

    def test_concurrent_dispatchers_send_once(self, now):
        alert = make_alert(severity=0.6)
        other = NotificationDispatcher(self.repo, RepositoryLedger(self.repo), senders=self.senders)
        barrier = threading.Barrier(2)
        results = []

        def run(dispatcher):
            barrier.wait()
            results.append(dispatcher.dispatch_alert(alert, now=now))

        threads = [threading.Thread(target=run, args=(d,)) for d in (self.dispatcher, other)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(self.senders["email"].sent) == 1
        assert sorted(r["skipped"] for r in results) == [False, True]

    def test_ledger_unavailable_fails_open(self, now):
        ledger = MagicMock()
        ledger.name = "broken"
        ledger.is_available.return_value = False
        dispatcher = NotificationDispatcher(self.repo, ledger, senders=self.senders)
        alert = make_alert(severity=0.6)

        dispatcher.dispatch_alert(alert, now=now)
        dispatcher.dispatch_alert(alert, now=now)

        # documented risk: duplicates while the ledger is down
        assert len(self.senders["email"].sent) == 2
        ledger.claim.assert_not_called()
        ledger.complete.assert_not_called()

    def test_claim_error_fails_open(self, now):
        ledger = MagicMock()
        ledger.name = "flaky"
        ledger.is_available.return_value = True
        ledger.claim.side_effect = LedgerUnavailableError("timeout")
        dispatcher = NotificationDispatcher(self.repo, ledger, senders=self.senders)
        result = dispatcher.dispatch_alert(make_alert(severity=0.6), now=now)
        assert result["successful"] == 1
        assert not result["skipped"]

    def test_non_alert_kinds_not_gated(self, now):
        self.repo.save_subscriber(make_subscriber("ops", systemStatus=True))
        status = {"statistics": {"raw_posts": 1}, "health": "HEALTHY"}
        self.dispatcher.dispatch_system_status(status, now=now)
        self.dispatcher.dispatch_system_status(status, now=now)
        assert len(self.senders["email"].sent) == 2
        assert self.repo.count_ledger_entries() == 0


class TestSubscriberResolution:

    def setup_method(self):
        self.repo = InMemoryRepository()
        self.senders = {"email": FakeSender("email"), "sms": FakeSender("sms")}
        self.dispatcher = NotificationDispatcher(self.repo, RepositoryLedger(self.repo), senders=self.senders)

    def test_emergency_threshold(self, now):
        self.repo.save_subscriber(make_subscriber("disaster_only", disasterAlerts=True))
        self.repo.save_subscriber(make_subscriber("emergency_only", emergencyAlerts=True))

        result = self.dispatcher.dispatch_alert(make_alert(severity=0.85), now=now)
        assert result["kind"] == "emergency_alert"
        assert [d["subscriber_id"] for d in result["details"]] == ["emergency_only"]

        result = self.dispatcher.dispatch_alert(make_alert(severity=0.79), now=now)
        assert result["kind"] == "disaster_alert"
        assert [d["subscriber_id"] for d in result["details"]] == ["disaster_only"]

    def test_preference_and_location_merged(self, now):
        self.repo.save_subscriber(make_subscriber("local", disasterAlerts=True, location="penang"))
        self.repo.save_subscriber(make_subscriber("national", disasterAlerts=True))
        self.repo.save_subscriber(make_subscriber("opted_out", location="penang"))
        result = self.dispatcher.dispatch_alert(make_alert(location="penang", severity=0.5), now=now)
        assert sorted(d["subscriber_id"] for d in result["details"]) == ["local", "national"]
        assert result["successful"] == 2

    def test_subscriber_filter(self, now):
        self.repo.save_subscriber(make_subscriber("a", disasterAlerts=True, location="penang"))
        self.repo.save_subscriber(make_subscriber("b", disasterAlerts=True, location="ipoh"))
        result = self.dispatcher.dispatch_alert(make_alert(location="penang", severity=0.5),
                                                subscriber_filter=lambda s: s.location == "penang", now=now)
        assert [d["subscriber_id"] for d in result["details"]] == ["a"]

    def test_no_subscribers(self, now):
        result = self.dispatcher.dispatch_alert(make_alert(severity=0.5), now=now)
        assert result["successful"] == 0
        assert result["failed"] == 0
        assert result["details"] == []


class TestPerSubscriberSend:

    def setup_method(self):
        self.repo = InMemoryRepository()

    def test_both_channels_independent(self, now):
        senders = {"email": FakeSender("email", fail_for={"both@example.com"}), "sms": FakeSender("sms")}
        dispatcher = NotificationDispatcher(self.repo, RepositoryLedger(self.repo), senders=senders)
        self.repo.save_subscriber(make_subscriber("both", type="both", email="both@example.com",
                                                  phone="+60111111111", disasterAlerts=True))
        result = dispatcher.dispatch_alert(make_alert(severity=0.5), now=now)

        assert result["successful"] == 1
        assert result["failed"] == 1
        by_channel = {d["channel"]: d for d in result["details"]}
        assert not by_channel["email"]["success"]
        assert by_channel["sms"]["success"]
        assert senders["sms"].sent[0]["to"] == "+60111111111"
        # at least one channel succeeded
        assert "disaster_alert" in self.repo.get_subscriber("both").last_notified

    def test_missing_endpoint(self, now):
        senders = {"email": FakeSender("email"), "sms": FakeSender("sms")}
        dispatcher = NotificationDispatcher(self.repo, RepositoryLedger(self.repo), senders=senders)
        sub = make_subscriber("nophone", type="sms", disasterAlerts=True)
        sub.phone = None
        self.repo.save_subscriber(sub)
        result = dispatcher.dispatch_alert(make_alert(severity=0.5), now=now)
        assert result["failed"] == 1
        assert result["details"][0]["error"] == "No valid endpoint"
        assert "disaster_alert" not in self.repo.get_subscriber("nophone").last_notified

    def test_failures_recorded_in_ledger(self, now):
        senders = {"email": FakeSender("email", fail_for={"bad@example.com"}), "sms": FakeSender("sms")}
        ledger = RepositoryLedger(self.repo)
        dispatcher = NotificationDispatcher(self.repo, ledger, senders=senders)
        self.repo.save_subscriber(make_subscriber("good", disasterAlerts=True))
        self.repo.save_subscriber(make_subscriber("bad", email="bad@example.com", disasterAlerts=True))
        alert = make_alert(severity=0.5)
        result = dispatcher.dispatch_alert(alert, now=now)
        assert (result["successful"], result["failed"]) == (1, 1)
        entry = ledger.get(alert.id, "disaster_alert")
        assert (entry.recipient_count, entry.failed_count) == (1, 1)

    def test_unexpected_sender_error_does_not_raise(self, now):
        email = MagicMock()
        email.send.side_effect = RuntimeError("socket closed")
        dispatcher = NotificationDispatcher(self.repo, RepositoryLedger(self.repo), senders={"email": email})
        self.repo.save_subscriber(make_subscriber("a", disasterAlerts=True))
        result = dispatcher.dispatch_alert(make_alert(severity=0.5), now=now)
        assert result["failed"] == 1

    def test_verification_message(self, now):
        senders = {"email": FakeSender("email"), "sms": FakeSender("sms")}
        dispatcher = NotificationDispatcher(self.repo, RepositoryLedger(self.repo), senders=senders)
        self.repo.save_subscriber(make_subscriber("v", verifications=True))
        event = make_event("penang", 0.6, now)
        verification = Verification(id=new_id("ver"), source="NADMA", type="official_alert", location="penang",
                                    text="kebakaran", confidence=0.9, timestamp=now)
        result = dispatcher.dispatch_verification(event, verification, now=now)
        assert result["successful"] == 1
        assert "Disaster Verified: penang" in senders["email"].sent[0]["subject"]
        assert "NADMA" in senders["email"].sent[0]["body"]


class TestMessages:

    def test_alert_message_shape(self, now):
        alert = make_alert(location="penang", severity=0.72)
        message = format_disaster_alert(alert)
        assert message.to_dict()["attributes"] == {"severity": 0.72, "location": "penang", "verified": False}
        assert "HIGH" in message.body
        assert alert.id in message.body
        assert message.html and "<html>" in message.html

    def test_emergency_message(self, now):
        message = build_message(NotificationKind.EMERGENCY_ALERT, {"alert": make_alert(severity=0.9)})
        assert message.subject.startswith("🚨 EMERGENCY")

    def test_html_escapes(self):
        message = format_disaster_alert(make_alert(location="<script>", severity=0.5))
        assert "<script>" not in message.html

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            build_message("nonsense", {})
