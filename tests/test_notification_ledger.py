"""
Notification ledger backends: repository rows and Redis keys.
"""

import json
import time
from unittest.mock import MagicMock, patch

import pytest
import redis

from notification_ledger import LedgerUnavailableError, RedisLedger, RepositoryLedger, ledger_ttl
from repository import InMemoryRepository, RepositoryError


def test_ledger_ttl_thirty_days(now):
    assert ledger_ttl(now, 30) - int(now.timestamp()) == 30 * 24 * 3600


class TestRepositoryLedger:

    def setup_method(self):
        self.repo = InMemoryRepository()
        self.ledger = RepositoryLedger(self.repo, ttl_days=30)

    def test_claim_once(self, now):
        assert self.ledger.claim("alt_1", "disaster_alert", now)
        assert not self.ledger.claim("alt_1", "disaster_alert", now)
        # a different kind for the same alert is independent
        assert self.ledger.claim("alt_1", "emergency_alert", now)

    def test_complete_records_counts(self, now):
        self.ledger.claim("alt_1", "disaster_alert", now)
        self.ledger.complete("alt_1", "disaster_alert", 3, 1)
        entry = self.ledger.get("alt_1", "disaster_alert")
        assert entry.status == "completed"
        assert entry.recipient_count == 3
        assert entry.failed_count == 1
        assert entry.sent_at == now

    def test_repository_errors_become_unavailable(self, now):
        repo = MagicMock()
        repo.insert_ledger_entry.side_effect = RepositoryError("relation does not exist")
        repo.ping.return_value = False
        ledger = RepositoryLedger(repo)
        assert not ledger.is_available()
        with pytest.raises(LedgerUnavailableError):
            ledger.claim("alt_1", "disaster_alert", now)


class TestRedisLedger:

    def setup_method(self):
        self.client = MagicMock()
        self.ledger = RedisLedger(client=self.client, key_prefix="test:ledger:", ttl_days=30)

    def test_claim_uses_set_nx(self, now):
        self.client.set.return_value = True
        assert self.ledger.claim("alt_1", "disaster_alert", now)
        args, kwargs = self.client.set.call_args
        assert args[0] == "test:ledger:alt_1:disaster_alert"
        assert kwargs["nx"] is True
        assert 0 < kwargs["ex"] <= 30 * 24 * 3600
        stored = json.loads(args[1])
        assert stored["alertId"] == "alt_1"
        assert stored["notificationKind"] == "disaster_alert"
        assert stored["status"] == "pending"

    def test_claim_existing_key(self, now):
        self.client.set.return_value = None
        assert not self.ledger.claim("alt_1", "disaster_alert", now)

    def test_complete_keeps_ttl(self, now):
        entry = {"alertId": "alt_1", "notificationKind": "disaster_alert", "sentAt": now.isoformat(),
                 "recipientCount": 0, "failedCount": 0, "status": "pending", "ttl": int(time.time()) + 100}
        self.client.get.return_value = json.dumps(entry)
        self.ledger.complete("alt_1", "disaster_alert", 5, 0)
        args, kwargs = self.client.set.call_args
        assert kwargs == {"xx": True, "keepttl": True}
        assert json.loads(args[1])["recipientCount"] == 5
        assert json.loads(args[1])["status"] == "completed"

    def test_redis_errors(self, now):
        self.client.ping.side_effect = redis.ConnectionError("refused")
        self.client.set.side_effect = redis.ConnectionError("refused")
        assert not self.ledger.is_available()
        with pytest.raises(LedgerUnavailableError):
            self.ledger.claim("alt_1", "disaster_alert", now)

    def test_unconfigured(self, now):
        with patch("notification_ledger._get_redis", return_value=None):
            ledger = RedisLedger()
            assert not ledger.is_available()
            with pytest.raises(LedgerUnavailableError):
                ledger.claim("alt_1", "disaster_alert", now)
