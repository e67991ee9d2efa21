import os
from contextlib import contextmanager

from psycopg2.pool import SimpleConnectionPool

from leadscout.settings import POSTGRES_DSN

_sync_pool: SimpleConnectionPool | None = None


def _get_sync_pool() -> SimpleConnectionPool:
    global _sync_pool
    if _sync_pool is None:
        if not POSTGRES_DSN:
            raise RuntimeError("Missing POSTGRES_DSN")
        max_conn = int(os.getenv("DB_MAX_CONN", "4"))
        # Short connection timeout so DNS/host issues fail fast
        try:
            _timeout = int(float(os.getenv("PG_CONNECT_TIMEOUT_S", "3") or 3))
        except ValueError:
            _timeout = 3
        _sync_pool = SimpleConnectionPool(1, max_conn, dsn=POSTGRES_DSN, connect_timeout=_timeout)
    return _sync_pool


@contextmanager
def get_conn():
    """Context-managed pooled psycopg2 connection.

    Usage:
        with get_conn() as conn, conn.cursor() as cur:
            ...

    Commits if the block exits cleanly, rolls back and re-raises otherwise.
    """
    pool = _get_sync_pool()
    conn = pool.getconn()
    try:
        try:
            yield conn
            if not conn.closed:
                conn.commit()
        except Exception:
            try:
                if not conn.closed:
                    conn.rollback()
            except Exception:
                pass
            raise
    finally:
        pool.putconn(conn, close=False)


def close_pool() -> None:
    global _sync_pool
    if _sync_pool is not None:
        _sync_pool.closeall()
        _sync_pool = None
