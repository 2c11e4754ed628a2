# repository.py — Persistence for posts, events, alerts, verifications, subscribers and the ledger
#
# Every mutation that two workers can race on (event/alert verification,
# ledger claims) is a single conditional write: the in-memory store does it
# under one lock, Postgres does it as one statement.

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import psycopg2

import db_utils
from db_utils import Json
from logging_config import get_logger, get_metrics_logger
from models import (
    Alert, Event, LedgerEntry, Post, Subscriber, Verification, parse_dt,
)

logger = get_logger("repository")
metrics = get_metrics_logger("repository")


class RepositoryError(Exception):
    """A persistence operation failed."""


class Repository:
    """Storage interface used by every pipeline component."""

    # ---- posts ----
    def save_post(self, post: Post) -> None:
        raise NotImplementedError

    def get_post(self, post_id: str) -> Optional[Post]:
        raise NotImplementedError

    # ---- events ----
    def save_event(self, event: Event) -> None:
        raise NotImplementedError

    def get_event(self, event_id: str) -> Optional[Event]:
        raise NotImplementedError

    def has_recent_duplicate(self, author: Optional[str], text: str, since: datetime) -> bool:
        """True if an event with the same (author, text) was created at or after `since`."""
        raise NotImplementedError

    def list_events_since(self, since: datetime) -> List[Event]:
        """Events whose report timestamp is at or after `since`, oldest first."""
        raise NotImplementedError

    def find_verification_candidates(self, location: str, start: datetime, end: datetime) -> List[Event]:
        """Unverified events at `location` with start <= timestamp <= end."""
        raise NotImplementedError

    def mark_event_verified(self, event_id: str, source: str, at: datetime,
                            confidence: Optional[float] = None) -> bool:
        """Flip verified false -> true. Returns False when already verified or missing."""
        raise NotImplementedError

    # ---- alerts ----
    def save_alert(self, alert: Alert) -> None:
        raise NotImplementedError

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        raise NotImplementedError

    def list_alerts(self, limit: int = 100) -> List[Alert]:
        """Most recent alerts first."""
        raise NotImplementedError

    def list_alerts_for_event(self, event_id: str) -> List[Alert]:
        raise NotImplementedError

    def list_alerts_verified_since(self, since: datetime) -> List[Alert]:
        raise NotImplementedError

    def mark_alert_verified(self, alert_id: str, at: datetime) -> bool:
        raise NotImplementedError

    # ---- verifications ----
    def save_verification(self, verification: Verification) -> None:
        raise NotImplementedError

    def list_verifications(self, limit: Optional[int] = None) -> List[Verification]:
        """Most recent first."""
        raise NotImplementedError

    # ---- subscribers ----
    def save_subscriber(self, subscriber: Subscriber) -> None:
        raise NotImplementedError

    def list_subscribers(self, preference: str) -> List[Subscriber]:
        """Active subscribers with the preference flag set."""
        raise NotImplementedError

    def list_subscribers_by_location(self, location: str, preference: str) -> List[Subscriber]:
        raise NotImplementedError

    def update_subscriber_last_notified(self, subscriber_id: str, kind: str, at: datetime) -> None:
        raise NotImplementedError

    # ---- notification ledger ----
    def get_ledger_entry(self, alert_id: str, kind: str) -> Optional[LedgerEntry]:
        raise NotImplementedError

    def insert_ledger_entry(self, entry: LedgerEntry) -> bool:
        """Insert if no live entry exists for (alert_id, kind). True when inserted."""
        raise NotImplementedError

    def update_ledger_entry(self, entry: LedgerEntry) -> None:
        raise NotImplementedError

    # ---- statistics ----
    def count_posts(self) -> int:
        raise NotImplementedError

    def count_events(self) -> int:
        raise NotImplementedError

    def count_located_events(self) -> int:
        raise NotImplementedError

    def count_verified_events(self) -> int:
        raise NotImplementedError

    def count_alerts(self) -> int:
        raise NotImplementedError

    def count_verifications(self) -> int:
        raise NotImplementedError

    def ping(self) -> bool:
        return True


# ---------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------

class InMemoryRepository(Repository):
    """Thread-safe process-local store for local runs and tests."""

    def __init__(self):
        self._lock = threading.RLock()
        self._posts: Dict[str, Post] = {}
        self._events: Dict[str, Event] = {}
        self._alerts: Dict[str, Alert] = {}
        self._verifications: List[Verification] = []
        self._subscribers: Dict[str, Subscriber] = {}
        self._ledger: Dict[Tuple[str, str], LedgerEntry] = {}

    # posts
    def save_post(self, post: Post) -> None:
        with self._lock:
            self._posts[post.id] = post

    def get_post(self, post_id: str) -> Optional[Post]:
        with self._lock:
            return self._posts.get(post_id)

    # events
    def save_event(self, event: Event) -> None:
        with self._lock:
            self._events[event.id] = replace(event)

    def get_event(self, event_id: str) -> Optional[Event]:
        with self._lock:
            event = self._events.get(event_id)
            return replace(event) if event else None

    def has_recent_duplicate(self, author: Optional[str], text: str, since: datetime) -> bool:
        with self._lock:
            return any(
                e.author == author and e.text == text and e.created_at >= since
                for e in self._events.values()
            )

    def list_events_since(self, since: datetime) -> List[Event]:
        with self._lock:
            events = [replace(e) for e in self._events.values() if e.timestamp >= since]
        return sorted(events, key=lambda e: e.timestamp)

    def find_verification_candidates(self, location: str, start: datetime, end: datetime) -> List[Event]:
        with self._lock:
            events = [
                replace(e) for e in self._events.values()
                if e.location == location and not e.verified and start <= e.timestamp <= end
            ]
        return sorted(events, key=lambda e: e.timestamp)

    def mark_event_verified(self, event_id: str, source: str, at: datetime,
                            confidence: Optional[float] = None) -> bool:
        with self._lock:
            event = self._events.get(event_id)
            if event is None or event.verified:
                return False
            event.verified = True
            event.verification_source = source
            event.verification_timestamp = at
            event.verification_confidence = confidence
            return True

    # alerts
    def save_alert(self, alert: Alert) -> None:
        with self._lock:
            self._alerts[alert.id] = replace(alert, event_refs=list(alert.event_refs))

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return replace(alert) if alert else None

    def list_alerts(self, limit: int = 100) -> List[Alert]:
        with self._lock:
            alerts = [replace(a) for a in self._alerts.values()]
        return sorted(alerts, key=lambda a: a.timestamp, reverse=True)[:limit]

    def list_alerts_for_event(self, event_id: str) -> List[Alert]:
        with self._lock:
            return [replace(a) for a in self._alerts.values() if event_id in a.event_refs]

    def list_alerts_verified_since(self, since: datetime) -> List[Alert]:
        with self._lock:
            return [replace(a) for a in self._alerts.values()
                    if a.verified and a.verified_at is not None and a.verified_at >= since]

    def mark_alert_verified(self, alert_id: str, at: datetime) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.verified:
                return False
            alert.verified = True
            alert.verified_at = at
            return True

    # verifications
    def save_verification(self, verification: Verification) -> None:
        with self._lock:
            self._verifications.append(verification)

    def list_verifications(self, limit: Optional[int] = None) -> List[Verification]:
        with self._lock:
            items = sorted(self._verifications, key=lambda v: v.timestamp, reverse=True)
        return items[:limit] if limit else items

    # subscribers
    def save_subscriber(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers[subscriber.id] = subscriber

    def list_subscribers(self, preference: str) -> List[Subscriber]:
        with self._lock:
            return [s for s in self._subscribers.values() if s.wants(preference)]

    def list_subscribers_by_location(self, location: str, preference: str) -> List[Subscriber]:
        with self._lock:
            return [s for s in self._subscribers.values()
                    if s.wants(preference) and s.location == location]

    def update_subscriber_last_notified(self, subscriber_id: str, kind: str, at: datetime) -> None:
        with self._lock:
            subscriber = self._subscribers.get(subscriber_id)
            if subscriber is None:
                raise RepositoryError(f"unknown subscriber {subscriber_id}")
            subscriber.last_notified[kind] = at

    def get_subscriber(self, subscriber_id: str) -> Optional[Subscriber]:
        with self._lock:
            return self._subscribers.get(subscriber_id)

    # ledger
    def get_ledger_entry(self, alert_id: str, kind: str) -> Optional[LedgerEntry]:
        with self._lock:
            entry = self._ledger.get((alert_id, kind))
            if entry is None or entry.ttl < time.time():
                return None
            return replace(entry)

    def insert_ledger_entry(self, entry: LedgerEntry) -> bool:
        key = (entry.alert_id, entry.kind)
        with self._lock:
            existing = self._ledger.get(key)
            if existing is not None and existing.ttl >= time.time():
                return False
            self._ledger[key] = replace(entry)
            return True

    def update_ledger_entry(self, entry: LedgerEntry) -> None:
        with self._lock:
            self._ledger[(entry.alert_id, entry.kind)] = replace(entry)

    def count_ledger_entries(self) -> int:
        with self._lock:
            return len(self._ledger)

    # statistics
    def count_posts(self) -> int:
        with self._lock:
            return len(self._posts)

    def count_events(self) -> int:
        with self._lock:
            return len(self._events)

    def count_located_events(self) -> int:
        with self._lock:
            return sum(1 for e in self._events.values() if e.location)

    def count_verified_events(self) -> int:
        with self._lock:
            return sum(1 for e in self._events.values() if e.verified)

    def count_alerts(self) -> int:
        with self._lock:
            return len(self._alerts)

    def count_verifications(self) -> int:
        with self._lock:
            return len(self._verifications)


# ---------------------------------------------------------------------
# Postgres implementation
# ---------------------------------------------------------------------

def _post_from_row(row) -> Post:
    return Post(
        id=row["id"], text=row["text"], source=row["source"],
        timestamp=parse_dt(row["timestamp"]), author=row.get("author"),
        images=tuple(row.get("images") or ()), location=row.get("location"),
    )

def _event_from_row(row) -> Event:
    return Event(
        id=row["id"], post_ref=row["post_ref"], text=row["text"], source=row["source"],
        timestamp=parse_dt(row["timestamp"]), author=row.get("author"),
        location=row.get("location"), severity=row["severity"], confidence=row["confidence"],
        event_type=row.get("event_type") or "general",
        entities=list(row.get("entities") or []), sentiment=row.get("sentiment") or "NEUTRAL",
        key_phrases=list(row.get("key_phrases") or []), images=list(row.get("images") or []),
        language=row.get("language") or "en", analysis_method=row.get("analysis_method") or "keyword",
        created_at=parse_dt(row["created_at"]), verified=bool(row["verified"]),
        verification_source=row.get("verification_source"),
        verification_timestamp=parse_dt(row.get("verification_timestamp")),
        verification_confidence=row.get("verification_confidence"),
    )

def _alert_from_row(row) -> Alert:
    return Alert(
        id=row["id"], location=row["location"], severity=row["severity"],
        event_count=int(row["event_count"]), event_refs=list(row.get("event_refs") or []),
        timestamp=parse_dt(row["timestamp"]), verified=bool(row["verified"]),
        verified_at=parse_dt(row.get("verified_at")),
    )

def _verification_from_row(row) -> Verification:
    return Verification(
        id=row["id"], source=row["source"], type=row["type"], location=row["location"],
        text=row.get("text") or "", confidence=float(row["confidence"]),
        timestamp=parse_dt(row["timestamp"]), url=row.get("url"),
        matched_event_ref=row.get("matched_event_ref"),
    )

def _subscriber_from_row(row) -> Subscriber:
    last = {k: parse_dt(v) for k, v in (row.get("last_notified") or {}).items()}
    return Subscriber(
        id=row["id"], type=row.get("type") or "email", email=row.get("email"),
        phone=row.get("phone"), preferences=dict(row.get("preferences") or {}),
        location=row.get("location"), active=bool(row.get("active", True)), last_notified=last,
    )

def _ledger_from_row(row) -> LedgerEntry:
    return LedgerEntry(
        alert_id=row["alert_id"], kind=row["notification_kind"], sent_at=parse_dt(row["sent_at"]),
        ttl=int(row["ttl"]), recipient_count=int(row["recipient_count"]),
        failed_count=int(row["failed_count"]), status=row["status"],
    )


class PostgresRepository(Repository):
    """Repository over the Postgres schema created by apply_migration.py."""

    def __init__(self, dsn: Optional[str] = None):
        db_utils.get_connection_pool(dsn)

    @contextmanager
    def _op(self, operation: str, table: str):
        start = time.perf_counter()
        try:
            yield
        except psycopg2.Error as e:
            logger.error("database_operation_failed", operation=operation, table=table, error=str(e))
            raise RepositoryError(f"{operation} on {table} failed: {e}") from e
        metrics.database_operation(operation, table, round((time.perf_counter() - start) * 1000, 2))

    # posts
    def save_post(self, post: Post) -> None:
        with self._op("insert", "posts"):
            db_utils.execute(
                "INSERT INTO posts (id, text, author, source, timestamp, images, location) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s) ON CONFLICT (id) DO NOTHING",
                (post.id, post.text, post.author, post.source, post.timestamp,
                 Json(list(post.images)), post.location),
            )

    def get_post(self, post_id: str) -> Optional[Post]:
        with self._op("select", "posts"):
            row = db_utils.fetch_one("SELECT * FROM posts WHERE id = %s", (post_id,))
        return _post_from_row(row) if row else None

    # events
    def save_event(self, event: Event) -> None:
        with self._op("insert", "events"):
            db_utils.execute(
                "INSERT INTO events (id, post_ref, text, author, source, timestamp, location, severity, "
                "confidence, event_type, entities, sentiment, key_phrases, images, language, "
                "analysis_method, created_at, verified) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s) "
                "ON CONFLICT (id) DO NOTHING",
                (event.id, event.post_ref, event.text, event.author, event.source, event.timestamp,
                 event.location, event.severity, event.confidence, event.event_type,
                 Json(event.entities), event.sentiment, Json(event.key_phrases), Json(event.images),
                 event.language, event.analysis_method, event.created_at, event.verified),
            )

    def get_event(self, event_id: str) -> Optional[Event]:
        with self._op("select", "events"):
            row = db_utils.fetch_one("SELECT * FROM events WHERE id = %s", (event_id,))
        return _event_from_row(row) if row else None

    def has_recent_duplicate(self, author: Optional[str], text: str, since: datetime) -> bool:
        with self._op("select", "events"):
            row = db_utils.fetch_one(
                "SELECT 1 AS hit FROM events WHERE author IS NOT DISTINCT FROM %s "
                "AND text = %s AND created_at >= %s LIMIT 1",
                (author, text, since),
            )
        return row is not None

    def list_events_since(self, since: datetime) -> List[Event]:
        with self._op("select", "events"):
            rows = db_utils.fetch_all(
                "SELECT * FROM events WHERE timestamp >= %s ORDER BY timestamp", (since,))
        return [_event_from_row(r) for r in rows]

    def find_verification_candidates(self, location: str, start: datetime, end: datetime) -> List[Event]:
        with self._op("select", "events"):
            rows = db_utils.fetch_all(
                "SELECT * FROM events WHERE location = %s AND verified = FALSE "
                "AND timestamp >= %s AND timestamp <= %s ORDER BY timestamp",
                (location, start, end),
            )
        return [_event_from_row(r) for r in rows]

    def mark_event_verified(self, event_id: str, source: str, at: datetime,
                            confidence: Optional[float] = None) -> bool:
        with self._op("update", "events"):
            updated = db_utils.execute(
                "UPDATE events SET verified = TRUE, verification_source = %s, "
                "verification_timestamp = %s, verification_confidence = %s "
                "WHERE id = %s AND verified = FALSE",
                (source, at, confidence, event_id),
            )
        return updated == 1

    # alerts
    def save_alert(self, alert: Alert) -> None:
        with self._op("insert", "alerts"):
            db_utils.execute(
                "INSERT INTO alerts (id, location, severity, event_count, event_refs, timestamp, verified, verified_at) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s) ON CONFLICT (id) DO NOTHING",
                (alert.id, alert.location, alert.severity, alert.event_count,
                 Json(list(alert.event_refs)), alert.timestamp, alert.verified, alert.verified_at),
            )

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._op("select", "alerts"):
            row = db_utils.fetch_one("SELECT * FROM alerts WHERE id = %s", (alert_id,))
        return _alert_from_row(row) if row else None

    def list_alerts(self, limit: int = 100) -> List[Alert]:
        with self._op("select", "alerts"):
            rows = db_utils.fetch_all("SELECT * FROM alerts ORDER BY timestamp DESC LIMIT %s", (limit,))
        return [_alert_from_row(r) for r in rows]

    def list_alerts_for_event(self, event_id: str) -> List[Alert]:
        with self._op("select", "alerts"):
            rows = db_utils.fetch_all(
                "SELECT * FROM alerts WHERE event_refs @> %s", (Json([event_id]),))
        return [_alert_from_row(r) for r in rows]

    def list_alerts_verified_since(self, since: datetime) -> List[Alert]:
        with self._op("select", "alerts"):
            rows = db_utils.fetch_all(
                "SELECT * FROM alerts WHERE verified = TRUE AND verified_at >= %s ORDER BY verified_at",
                (since,),
            )
        return [_alert_from_row(r) for r in rows]

    def mark_alert_verified(self, alert_id: str, at: datetime) -> bool:
        with self._op("update", "alerts"):
            updated = db_utils.execute(
                "UPDATE alerts SET verified = TRUE, verified_at = %s WHERE id = %s AND verified = FALSE",
                (at, alert_id),
            )
        return updated == 1

    # verifications
    def save_verification(self, verification: Verification) -> None:
        with self._op("insert", "verifications"):
            db_utils.execute(
                "INSERT INTO verifications (id, source, type, location, text, confidence, timestamp, "
                "url, matched_event_ref) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s) "
                "ON CONFLICT (id) DO NOTHING",
                (verification.id, verification.source, verification.type, verification.location,
                 verification.text, verification.confidence, verification.timestamp,
                 verification.url, verification.matched_event_ref),
            )

    def list_verifications(self, limit: Optional[int] = None) -> List[Verification]:
        query = "SELECT * FROM verifications ORDER BY timestamp DESC"
        params: tuple = ()
        if limit:
            query += " LIMIT %s"
            params = (int(limit),)
        with self._op("select", "verifications"):
            rows = db_utils.fetch_all(query, params)
        return [_verification_from_row(r) for r in rows]

    # subscribers
    def save_subscriber(self, subscriber: Subscriber) -> None:
        last = {k: v.isoformat() for k, v in subscriber.last_notified.items()}
        with self._op("upsert", "subscribers"):
            db_utils.execute(
                "INSERT INTO subscribers (id, type, email, phone, preferences, location, active, last_notified) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s) "
                "ON CONFLICT (id) DO UPDATE SET type = EXCLUDED.type, email = EXCLUDED.email, "
                "phone = EXCLUDED.phone, preferences = EXCLUDED.preferences, "
                "location = EXCLUDED.location, active = EXCLUDED.active",
                (subscriber.id, subscriber.type, subscriber.email, subscriber.phone,
                 Json(subscriber.preferences), subscriber.location, subscriber.active, Json(last)),
            )

    def list_subscribers(self, preference: str) -> List[Subscriber]:
        with self._op("select", "subscribers"):
            rows = db_utils.fetch_all(
                "SELECT * FROM subscribers WHERE active = TRUE "
                "AND COALESCE((preferences ->> %s)::boolean, FALSE)",
                (preference,),
            )
        return [_subscriber_from_row(r) for r in rows]

    def list_subscribers_by_location(self, location: str, preference: str) -> List[Subscriber]:
        with self._op("select", "subscribers"):
            rows = db_utils.fetch_all(
                "SELECT * FROM subscribers WHERE active = TRUE AND location = %s "
                "AND COALESCE((preferences ->> %s)::boolean, FALSE)",
                (location, preference),
            )
        return [_subscriber_from_row(r) for r in rows]

    def update_subscriber_last_notified(self, subscriber_id: str, kind: str, at: datetime) -> None:
        with self._op("update", "subscribers"):
            db_utils.execute(
                "UPDATE subscribers SET last_notified = last_notified || jsonb_build_object(%s::text, %s::text) "
                "WHERE id = %s",
                (kind, at.isoformat(), subscriber_id),
            )

    # ledger
    def get_ledger_entry(self, alert_id: str, kind: str) -> Optional[LedgerEntry]:
        with self._op("select", "notification_ledger"):
            row = db_utils.fetch_one(
                "SELECT * FROM notification_ledger WHERE alert_id = %s AND notification_kind = %s "
                "AND ttl >= EXTRACT(EPOCH FROM NOW())",
                (alert_id, kind),
            )
        return _ledger_from_row(row) if row else None

    def insert_ledger_entry(self, entry: LedgerEntry) -> bool:
        # An expired row is replaced in place; a live one blocks the insert.
        with self._op("insert", "notification_ledger"):
            inserted = db_utils.execute(
                "INSERT INTO notification_ledger (alert_id, notification_kind, sent_at, recipient_count, "
                "failed_count, status, ttl) VALUES (%s, %s, %s, %s, %s, %s, %s) "
                "ON CONFLICT (alert_id, notification_kind) DO UPDATE SET "
                "sent_at = EXCLUDED.sent_at, recipient_count = EXCLUDED.recipient_count, "
                "failed_count = EXCLUDED.failed_count, status = EXCLUDED.status, ttl = EXCLUDED.ttl "
                "WHERE notification_ledger.ttl < EXTRACT(EPOCH FROM NOW())",
                (entry.alert_id, entry.kind, entry.sent_at, entry.recipient_count,
                 entry.failed_count, entry.status, entry.ttl),
            )
        return inserted == 1

    def update_ledger_entry(self, entry: LedgerEntry) -> None:
        with self._op("update", "notification_ledger"):
            db_utils.execute(
                "UPDATE notification_ledger SET recipient_count = %s, failed_count = %s, status = %s "
                "WHERE alert_id = %s AND notification_kind = %s",
                (entry.recipient_count, entry.failed_count, entry.status, entry.alert_id, entry.kind),
            )

    # statistics
    def _count(self, table: str, where: str = "") -> int:
        with self._op("count", table):
            return int(db_utils.fetch_scalar(f"SELECT COUNT(*) FROM {table} {where}"))

    def count_posts(self) -> int:
        return self._count("posts")

    def count_events(self) -> int:
        return self._count("events")

    def count_located_events(self) -> int:
        return self._count("events", "WHERE location IS NOT NULL")

    def count_verified_events(self) -> int:
        return self._count("events", "WHERE verified = TRUE")

    def count_alerts(self) -> int:
        return self._count("alerts")

    def count_verifications(self) -> int:
        return self._count("verifications")

    def ping(self) -> bool:
        return db_utils.ping()


def build_repository() -> Repository:
    """Postgres when DATABASE_URL is set, otherwise the in-memory store."""
    from config import CONFIG

    if CONFIG.database.is_configured:
        return PostgresRepository()
    logger.info("repository_in_memory", reason="DATABASE_URL not set")
    return InMemoryRepository()
