from contextlib import contextmanager

from psycopg2.pool import ThreadedConnectionPool

from settings import settings

_pool: ThreadedConnectionPool | None = None


def init_pool():
    """
    Initialize the PostgreSQL connection pool.
    Called lazily on first use by the settlement store.
    Threaded: the sweep fans records out over worker threads that share it.
    """
    global _pool
    if _pool is None:
        _pool = ThreadedConnectionPool(
            minconn=1,
            maxconn=settings.DB_POOL_MAX,
            dsn=settings.DATABASE_URL,
            connect_timeout=5,
        )


def close_pool():
    global _pool
    if _pool:
        _pool.closeall()
        _pool = None


@contextmanager
def get_conn():
    """
    Provides a transactional DB connection.
    Auto-commits on success, rolls back on error.
    """
    if _pool is None:
        init_pool()

    conn = _pool.getconn()

    try:
        # claims and CAS updates are single statements; anything slower is a bug
        with conn.cursor() as cur:
            cur.execute("SET statement_timeout = %s;", (f"{settings.DB_STATEMENT_TIMEOUT_MS}ms",))
            cur.execute("SET idle_in_transaction_session_timeout = '5000ms';")
            cur.execute("SET application_name = 'settlement_reconciler';")

        yield conn
        conn.commit()

    except Exception:
        conn.rollback()
        raise

    finally:
        _pool.putconn(conn)
