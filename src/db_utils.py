"""
Shared database utilities.
Single source of truth for PostgreSQL connection-string resolution and the
process-wide connection pool.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg2
from psycopg2.pool import PoolError, ThreadedConnectionPool

import config
from errors import ResourceBusy

log = logging.getLogger("db_utils")

_pool: Optional[ThreadedConnectionPool] = None


def get_conn_str() -> str:
    """Return PostgreSQL connection string.

    Checks POSTGRES_CONNECTION_STRING first, falls back to DATABASE_URL
    (Heroku standard).  Normalises postgres:// to postgresql:// for psycopg2.
    """
    url = os.getenv("POSTGRES_CONNECTION_STRING") or os.getenv("DATABASE_URL") or ""
    url = url.strip()
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def init_pool(conn_str: Optional[str] = None) -> ThreadedConnectionPool:
    """Create the connection pool once; later calls return the same pool."""
    global _pool
    if _pool is not None:
        return _pool
    cs = conn_str or get_conn_str()
    if not cs:
        raise RuntimeError("POSTGRES_CONNECTION_STRING (or DATABASE_URL) is not configured")
    _pool = ThreadedConnectionPool(config.DB_POOL_MIN, config.DB_POOL_MAX, cs)
    log.info("Connection pool ready (min=%s, max=%s)", config.DB_POOL_MIN, config.DB_POOL_MAX)
    return _pool


def close_pool() -> None:
    global _pool
    if _pool is None:
        return
    _pool.closeall()
    _pool = None
    log.info("Connection pool drained.")


@contextmanager
def get_connection() -> Iterator["psycopg2.extensions.connection"]:
    """Check a pooled connection out for one unit of work.

    Commits when the block exits normally, rolls back on error and always
    hands the connection back.  An exhausted pool surfaces as ResourceBusy.
    """
    pool = _pool or init_pool()
    try:
        conn = pool.getconn()
    except PoolError as e:
        log.warning("Connection pool exhausted: %s", e)
        raise ResourceBusy(retry_after=config.POOL_RETRY_AFTER_SEC) from e
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)
