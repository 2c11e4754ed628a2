# db_utils.py — Postgres connection pool and query helpers for the disaster pipeline.

from __future__ import annotations
import atexit
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor, Json  # noqa: F401  (re-exported for repository)

from config import CONFIG

logger = logging.getLogger("db_utils")

_connection_pool: Optional[pool.ThreadedConnectionPool] = None
_pool_lock = threading.Lock()


def get_connection_pool(dsn: Optional[str] = None) -> pool.ThreadedConnectionPool:
    """Create the shared pool on first use."""
    global _connection_pool
    with _pool_lock:
        if _connection_pool is None:
            dsn = dsn or CONFIG.database.url
            if not dsn:
                raise RuntimeError("DATABASE_URL not set")
            _connection_pool = pool.ThreadedConnectionPool(
                minconn=CONFIG.database.pool_min_size,
                maxconn=CONFIG.database.pool_max_size,
                dsn=dsn,
            )
            atexit.register(close_connection_pool)
            logger.info("Connection pool initialized (min=%s, max=%s)",
                        CONFIG.database.pool_min_size, CONFIG.database.pool_max_size)
        return _connection_pool


def close_connection_pool() -> None:
    global _connection_pool
    with _pool_lock:
        if _connection_pool is None:
            return
        try:
            _connection_pool.closeall()
            logger.info("Connection pool closed")
        except psycopg2.Error as e:
            logger.error("Error closing connection pool: %s", e)
        finally:
            _connection_pool = None


@contextmanager
def connection():
    """Pooled connection; commits on success, rolls back on error, always returned to the pool."""
    db_pool = get_connection_pool()
    conn = db_pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        db_pool.putconn(conn)


def execute(query: str, params: tuple = ()) -> int:
    """Run one statement; returns the affected row count."""
    with connection() as conn, conn.cursor() as cur:
        cur.execute(query, params)
        return cur.rowcount


def fetch_one(query: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
    with connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(query, params)
        return cur.fetchone()


def fetch_all(query: str, params: tuple = ()) -> List[Dict[str, Any]]:
    with connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(query, params)
        return cur.fetchall()


def fetch_scalar(query: str, params: tuple = (), default: Any = 0) -> Any:
    with connection() as conn, conn.cursor() as cur:
        cur.execute(query, params)
        row = cur.fetchone()
        return row[0] if row else default


def ping() -> bool:
    try:
        return fetch_scalar("SELECT 1", default=None) == 1
    except (psycopg2.Error, RuntimeError) as e:
        logger.warning("Database ping failed: %s", e)
        return False
