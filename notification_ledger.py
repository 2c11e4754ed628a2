"""notification_ledger.py - Idempotency ledger for outbound notifications.

One entry per (alert_id, notification_kind). The dispatcher claims the entry
before sending; whoever inserts it first owns delivery, everyone else skips.

Backends:
- RepositoryLedger: rows in the Repository (Postgres or in-memory)
- RedisLedger: SET key value NX EX ttl, JSON value

Availability is an explicit capability (`is_available()`); a backend that
fails mid-call raises LedgerUnavailableError so the dispatcher can take its
documented fail-open path.
"""

from __future__ import annotations
import json
import logging
import time
from datetime import datetime, timedelta
from typing import Optional

import redis

from config import CONFIG
from models import LedgerEntry, utc_now
from repository import Repository, RepositoryError

logger = logging.getLogger(__name__)


class LedgerUnavailableError(Exception):
    """The ledger store could not be reached."""


def ledger_ttl(now: datetime, ttl_days: Optional[int] = None) -> int:
    """Expiry as epoch seconds, `ttl_days` after `now`."""
    days = CONFIG.notifications.ledger_ttl_days if ttl_days is None else ttl_days
    return int((now + timedelta(days=days)).timestamp())


class NotificationLedger:
    """Ledger interface."""

    name = "base"

    def is_available(self) -> bool:
        raise NotImplementedError

    def claim(self, alert_id: str, kind: str, now: Optional[datetime] = None) -> bool:
        """Create a pending entry. False if one already exists."""
        raise NotImplementedError

    def complete(self, alert_id: str, kind: str, recipient_count: int, failed_count: int) -> None:
        raise NotImplementedError

    def get(self, alert_id: str, kind: str) -> Optional[LedgerEntry]:
        raise NotImplementedError


class RepositoryLedger(NotificationLedger):
    """Ledger rows stored through the Repository."""

    name = "repository"

    def __init__(self, repository: Repository, ttl_days: Optional[int] = None):
        self.repository = repository
        self.ttl_days = ttl_days

    def is_available(self) -> bool:
        try:
            return bool(self.repository.ping())
        except Exception as e:
            logger.warning("[notification_ledger] repository ping failed: %s", e)
            return False

    def claim(self, alert_id: str, kind: str, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        entry = LedgerEntry(alert_id=alert_id, kind=kind, sent_at=now,
                            ttl=ledger_ttl(now, self.ttl_days), status="pending")
        try:
            return self.repository.insert_ledger_entry(entry)
        except RepositoryError as e:
            raise LedgerUnavailableError(str(e)) from e

    def complete(self, alert_id: str, kind: str, recipient_count: int, failed_count: int) -> None:
        try:
            entry = self.repository.get_ledger_entry(alert_id, kind)
            if entry is None:
                logger.warning("[notification_ledger] no entry to complete for %s/%s", alert_id, kind)
                return
            entry.recipient_count = recipient_count
            entry.failed_count = failed_count
            entry.status = "completed"
            self.repository.update_ledger_entry(entry)
        except RepositoryError as e:
            raise LedgerUnavailableError(str(e)) from e

    def get(self, alert_id: str, kind: str) -> Optional[LedgerEntry]:
        try:
            return self.repository.get_ledger_entry(alert_id, kind)
        except RepositoryError as e:
            raise LedgerUnavailableError(str(e)) from e


def _get_redis(url: Optional[str] = None):
    """Get Redis connection if available."""
    url = url or CONFIG.redis.url
    if not url:
        return None
    try:
        r = redis.from_url(url, decode_responses=True, socket_timeout=CONFIG.redis.socket_timeout)
        r.ping()
        return r
    except redis.RedisError as e:
        logger.debug("[notification_ledger] Redis unavailable: %s", e)
        return None


class RedisLedger(NotificationLedger):
    """Ledger entries as Redis keys that expire with the entry TTL."""

    name = "redis"

    def __init__(self, client=None, url: Optional[str] = None, key_prefix: Optional[str] = None,
                 ttl_days: Optional[int] = None):
        self._url = url
        self._client = client
        self.key_prefix = key_prefix or CONFIG.redis.ledger_key_prefix
        self.ttl_days = ttl_days

    @property
    def client(self):
        if self._client is None:
            self._client = _get_redis(self._url)
        return self._client

    def _key(self, alert_id: str, kind: str) -> str:
        """Format: notifications:ledger:{alert_id}:{kind}"""
        return f"{self.key_prefix}{alert_id}:{kind}"

    def is_available(self) -> bool:
        client = self.client
        if client is None:
            return False
        try:
            return bool(client.ping())
        except redis.RedisError as e:
            logger.warning("[notification_ledger] Redis ping failed: %s", e)
            return False

    def claim(self, alert_id: str, kind: str, now: Optional[datetime] = None) -> bool:
        client = self.client
        if client is None:
            raise LedgerUnavailableError("Redis not configured or unreachable")
        now = now or utc_now()
        ttl = ledger_ttl(now, self.ttl_days)
        entry = LedgerEntry(alert_id=alert_id, kind=kind, sent_at=now, ttl=ttl, status="pending")
        try:
            created = client.set(self._key(alert_id, kind), json.dumps(entry.to_dict()),
                                 nx=True, ex=max(1, ttl - int(time.time())))
        except redis.RedisError as e:
            raise LedgerUnavailableError(str(e)) from e
        return bool(created)

    def complete(self, alert_id: str, kind: str, recipient_count: int, failed_count: int) -> None:
        client = self.client
        if client is None:
            raise LedgerUnavailableError("Redis not configured or unreachable")
        key = self._key(alert_id, kind)
        try:
            raw = client.get(key)
            if raw is None:
                logger.warning("[notification_ledger] no entry to complete for %s/%s", alert_id, kind)
                return
            entry = LedgerEntry.from_dict(json.loads(raw))
            entry.recipient_count = recipient_count
            entry.failed_count = failed_count
            entry.status = "completed"
            client.set(key, json.dumps(entry.to_dict()), xx=True, keepttl=True)
        except redis.RedisError as e:
            raise LedgerUnavailableError(str(e)) from e

    def get(self, alert_id: str, kind: str) -> Optional[LedgerEntry]:
        client = self.client
        if client is None:
            raise LedgerUnavailableError("Redis not configured or unreachable")
        try:
            raw = client.get(self._key(alert_id, kind))
        except redis.RedisError as e:
            raise LedgerUnavailableError(str(e)) from e
        return LedgerEntry.from_dict(json.loads(raw)) if raw else None


def build_ledger(repository: Repository) -> NotificationLedger:
    """Redis ledger when REDIS_URL is set, otherwise entries live in the Repository."""
    if CONFIG.redis.is_configured:
        return RedisLedger()
    return RepositoryLedger(repository)
