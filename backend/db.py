import os
import threading

from psycopg2 import pool as pg_pool

MIN_CONN = int(os.getenv("DB_POOL_MIN", "1"))
MAX_CONN = int(os.getenv("DB_POOL_MAX", "10"))
CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "10"))
STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "15000"))
POOL_WAIT_SECONDS = float(os.getenv("DB_POOL_WAIT_SECONDS", "30"))

_POOL: pg_pool.ThreadedConnectionPool | None = None
_POOL_LOCK = threading.Lock()
# ThreadedConnectionPool raises when exhausted; callers queue here instead.
_SLOTS = threading.BoundedSemaphore(MAX_CONN)


def _pool() -> pg_pool.ThreadedConnectionPool:
    global _POOL
    with _POOL_LOCK:
        if _POOL is None:
            database_url = os.getenv("DATABASE_URL")
            if not database_url:
                raise RuntimeError("DATABASE_URL environment variable is not set")
            _POOL = pg_pool.ThreadedConnectionPool(
                MIN_CONN,
                MAX_CONN,
                dsn=database_url,
                sslmode=os.getenv("DB_SSLMODE", "require"),
                connect_timeout=CONNECT_TIMEOUT,
                options=f"-c statement_timeout={STATEMENT_TIMEOUT_MS}",
            )
        return _POOL


def get_connection(wait: float = POOL_WAIT_SECONDS):
    if not _SLOTS.acquire(timeout=wait):
        raise pg_pool.PoolError(f"no database connection free after {wait}s")
    try:
        return _pool().getconn()
    except BaseException:
        _SLOTS.release()
        raise


def release_connection(conn):
    if conn:
        try:
            _pool().putconn(conn)
        finally:
            _SLOTS.release()
