from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

import psycopg2
from psycopg2 import sql
from psycopg2.pool import SimpleConnectionPool

from ach_relay.config import settings

logger = logging.getLogger(__name__)

_pool: SimpleConnectionPool | None = None


def init_pool() -> None:
    global _pool
    if _pool is not None or not settings.db_enabled:
        return
    _pool = SimpleConnectionPool(
        settings.db_pool_min,
        settings.db_pool_max,
        host=settings.db_host,
        port=settings.db_port,
        user=settings.db_user,
        password=settings.db_password,
        dbname=settings.db_name,
        connect_timeout=settings.db_connect_timeout,
        application_name="ach-relay",
    )
    logger.info("database pool ready")


def close_pool() -> None:
    global _pool
    if _pool is None:
        return
    _pool.closeall()
    _pool = None


def _checkout(pool: SimpleConnectionPool) -> psycopg2.extensions.connection:
    """Take a live connection from the pool with the schema search path set.

    A connection the server already closed is discarded and replaced once.
    """
    for attempt in range(2):
        conn = pool.getconn()
        try:
            if settings.db_schema:
                with conn.cursor() as cur:
                    cur.execute(sql.SQL("SET search_path TO {}").format(sql.Identifier(settings.db_schema)))
            return conn
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            pool.putconn(conn, close=True)
            logger.warning("stale database connection dropped", extra={"attempt": attempt + 1, "error": str(exc)})
            if attempt == 1:
                raise
    raise psycopg2.OperationalError("no database connection available")


@contextmanager
def get_conn() -> Iterator[psycopg2.extensions.connection | None]:
    """Yield a pooled connection, committing on success.

    Yields ``None`` when no database is configured; callers fall back to
    their no-op behaviour in that case.
    """
    init_pool()
    pool = _pool
    if pool is None:
        yield None
        return
    conn = _checkout(pool)
    try:
        yield conn
        conn.commit()
    except Exception:
        try:
            conn.rollback()
        except psycopg2.Error as exc:
            logger.warning("rollback failed", extra={"error": str(exc)})
        raise
    finally:
        pool.putconn(conn)
