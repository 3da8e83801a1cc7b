import threading

from psycopg2 import pool as pg_pool

import settings

_POOL: pg_pool.ThreadedConnectionPool | None = None
_POOL_LOCK = threading.Lock()


def _pool() -> pg_pool.ThreadedConnectionPool:
    global _POOL
    if _POOL is None:
        with _POOL_LOCK:
            if _POOL is None:
                if not settings.DATABASE_URL:
                    raise RuntimeError("DATABASE_URL environment variable is not set")
                _POOL = pg_pool.ThreadedConnectionPool(
                    settings.DB_POOL_MIN,
                    settings.DB_POOL_MAX,
                    dsn=settings.DATABASE_URL,
                    sslmode=settings.DB_SSLMODE,
                    connect_timeout=10,
                )
    return _POOL


def get_connection():
    return _pool().getconn()


def release_connection(conn):
    if conn:
        _pool().putconn(conn)
