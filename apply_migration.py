#!/usr/bin/env python3
"""Create the disaster pipeline schema (posts, events, alerts, verifications, subscribers, ledger)."""

import os
import psycopg2

SCHEMA_TABLES = ("posts", "events", "alerts", "verifications", "subscribers", "notification_ledger")

MIGRATION_SQL = """
CREATE TABLE IF NOT EXISTS posts (
    id TEXT PRIMARY KEY,
    text TEXT NOT NULL,
    author TEXT,
    source TEXT NOT NULL,
    timestamp TIMESTAMPTZ NOT NULL,
    images JSONB DEFAULT '[]'::jsonb,
    location TEXT,
    ingested_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    post_ref TEXT NOT NULL,
    text TEXT NOT NULL,
    author TEXT,
    source TEXT NOT NULL,
    timestamp TIMESTAMPTZ NOT NULL,
    location TEXT,
    severity DOUBLE PRECISION NOT NULL CHECK (severity >= 0 AND severity <= 1),
    confidence DOUBLE PRECISION NOT NULL CHECK (confidence >= 0 AND confidence <= 1),
    event_type TEXT DEFAULT 'general',
    entities JSONB DEFAULT '[]'::jsonb,
    sentiment TEXT,
    key_phrases JSONB DEFAULT '[]'::jsonb,
    images JSONB DEFAULT '[]'::jsonb,
    language TEXT,
    analysis_method TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    verified BOOLEAN NOT NULL DEFAULT FALSE,
    verification_source TEXT,
    verification_timestamp TIMESTAMPTZ,
    verification_confidence DOUBLE PRECISION
);

CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);
CREATE INDEX IF NOT EXISTS idx_events_location_verified ON events(location, verified);
CREATE INDEX IF NOT EXISTS idx_events_author_created ON events(author, created_at);

CREATE TABLE IF NOT EXISTS alerts (
    id TEXT PRIMARY KEY,
    location TEXT NOT NULL,
    severity DOUBLE PRECISION NOT NULL CHECK (severity >= 0 AND severity <= 1),
    event_count INTEGER NOT NULL,
    event_refs JSONB NOT NULL DEFAULT '[]'::jsonb,
    timestamp TIMESTAMPTZ NOT NULL,
    verified BOOLEAN NOT NULL DEFAULT FALSE,
    verified_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_alerts_event_refs ON alerts USING GIN (event_refs);

CREATE TABLE IF NOT EXISTS verifications (
    id TEXT PRIMARY KEY,
    source TEXT NOT NULL,
    type TEXT NOT NULL,
    location TEXT NOT NULL,
    text TEXT,
    confidence DOUBLE PRECISION NOT NULL,
    timestamp TIMESTAMPTZ NOT NULL,
    url TEXT,
    matched_event_ref TEXT
);

CREATE TABLE IF NOT EXISTS subscribers (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL DEFAULT 'email' CHECK (type IN ('email', 'sms', 'both')),
    email TEXT,
    phone TEXT,
    preferences JSONB NOT NULL DEFAULT '{}'::jsonb,
    location TEXT,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    last_notified JSONB NOT NULL DEFAULT '{}'::jsonb
);

CREATE INDEX IF NOT EXISTS idx_subscribers_location ON subscribers(location);

CREATE TABLE IF NOT EXISTS notification_ledger (
    alert_id TEXT NOT NULL,
    notification_kind TEXT NOT NULL,
    sent_at TIMESTAMPTZ NOT NULL,
    recipient_count INTEGER NOT NULL DEFAULT 0,
    failed_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    ttl BIGINT NOT NULL,
    PRIMARY KEY (alert_id, notification_kind)
);

COMMENT ON TABLE notification_ledger IS 'At most one row per (alert_id, notification_kind); row existence gates delivery';
COMMENT ON COLUMN notification_ledger.ttl IS 'Expiry as epoch seconds; rows past it may be purged';
"""


def apply_migration():
    db_url = os.environ.get("DATABASE_PUBLIC_URL") or os.environ.get("DATABASE_URL")
    if not db_url:
        print("ERROR: DATABASE_PUBLIC_URL or DATABASE_URL not set")
        return False

    try:
        conn = psycopg2.connect(db_url)
        cur = conn.cursor()

        print("Applying disaster pipeline schema...")
        cur.execute(MIGRATION_SQL)
        conn.commit()

        print("✓ Migration applied successfully")

        # Verify tables exist
        cur.execute(
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = ANY(%s)",
            (list(SCHEMA_TABLES),),
        )
        count = cur.fetchone()[0]
        if count == len(SCHEMA_TABLES):
            print("✓ %d tables verified" % count)
        else:
            print("✗ Table verification failed (%d of %d present)" % (count, len(SCHEMA_TABLES)))
            return False

        cur.close()
        conn.close()
        return True

    except psycopg2.Error as e:
        print(f"ERROR: {e}")
        return False

if __name__ == "__main__":
    success = apply_migration()
    exit(0 if success else 1)
