"""Database helpers for the shelter search engine."""

import logging
import re
from contextlib import contextmanager
from typing import Any, Dict, List, Mapping, Optional

import psycopg2
from psycopg2 import extras, pool

from shelter_search.core.config import get_settings

logger = logging.getLogger(__name__)

_connection_pool: Optional[pool.ThreadedConnectionPool] = None

_DSN_PATTERN = re.compile(r"postgres(?:ql)?://\S+", re.IGNORECASE)


class DatabaseNotConfigured(RuntimeError):
    """Raised when no database connection string is configured."""


def init_pool(minconn: int = 1, maxconn: Optional[int] = None) -> pool.ThreadedConnectionPool:
    """Initialise and return the shared connection pool."""
    global _connection_pool
    if _connection_pool is None:
        settings = get_settings()
        if not settings.database_url:
            raise DatabaseNotConfigured("DATABASE_URL is required for database connections")
        _connection_pool = pool.ThreadedConnectionPool(
            minconn,
            maxconn or settings.db_pool_max,
            dsn=settings.database_url,
            connect_timeout=10,
        )
        logger.info("Database connection pool initialised")
    return _connection_pool


@contextmanager
def get_connection():
    """Context manager yielding a pooled connection.

    The connection is rolled back on error so it goes back to the pool clean.
    """
    pg_pool = init_pool()
    conn = pg_pool.getconn()
    try:
        yield conn
    except Exception:
        try:
            conn.rollback()
        except psycopg2.Error as exc:
            logger.warning("Rollback after failed statement also failed: %s", redact_error_message(str(exc)))
        raise
    finally:
        pg_pool.putconn(conn)


def fetch_all(sql: str, params: Optional[Mapping[str, Any]] = None, timeout_ms: int = 0) -> List[Dict[str, Any]]:
    """Run a read-only statement and return the rows as dictionaries."""
    with get_connection() as conn:
        with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
            if timeout_ms and timeout_ms > 0:
                cur.execute("SET LOCAL statement_timeout = %(timeout)s", {"timeout": int(timeout_ms)})
            logger.debug("Executing SQL: %s", " ".join(sql.split()))
            cur.execute(sql, params or {})
            rows = [dict(row) for row in cur.fetchall()]
        conn.rollback()
    return rows


def quote_ident(name: str) -> str:
    """Double-quote an SQL identifier, doubling any embedded quotes."""
    return '"' + name.replace('"', '""') + '"'


def qualified_name(schema: str, relation: str) -> str:
    return f"{quote_ident(schema)}.{quote_ident(relation)}"


def redact_error_message(message: str) -> str:
    """Strip connection strings from error text before it leaves the process."""
    return _DSN_PATTERN.sub("postgresql://***", message)
