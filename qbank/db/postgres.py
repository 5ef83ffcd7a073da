"""
Postgres connection management.

Uses psycopg3 with connection pooling for efficient database access.
"""

import logging
from contextlib import contextmanager
from typing import Optional, Any, Generator

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from qbank.config import config

logger = logging.getLogger(__name__)

# Global connection pool
_pool: Optional[ConnectionPool] = None

EXPECTED_TABLES = (
    "batch_jobs",
    "import_sessions",
    "questions",
    "question_options",
    "question_images",
)


def get_pg_pool(min_size: int = 1, max_size: int = 5) -> ConnectionPool:
    """
    Get or create the global connection pool.

    Args:
        min_size: Minimum number of connections to maintain
        max_size: Maximum number of connections allowed

    Returns:
        ConnectionPool instance
    """
    global _pool

    if _pool is None:
        logger.info(f"Creating Postgres connection pool (min={min_size}, max={max_size})")
        _pool = ConnectionPool(
            config.POSTGRES_DSN,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row},
        )

    return _pool


@contextmanager
def get_pg_connection() -> Generator[psycopg.Connection, None, None]:
    """
    Get a connection from the pool.

    Usage:
        with get_pg_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM questions LIMIT 10")
                results = cur.fetchall()
    """
    pool = get_pg_pool()
    with pool.connection() as conn:
        yield conn


def get_stats() -> dict[str, int]:
    """Get corpus and pipeline statistics from the database."""
    stats = {}

    queries = {
        "questions": "SELECT COUNT(*) FROM questions",
        "questions_needing_review": "SELECT COUNT(*) FROM questions WHERE needs_manual_review",
        "question_images": "SELECT COUNT(*) FROM question_images",
        "batch_jobs": "SELECT COUNT(*) FROM batch_jobs",
        "import_sessions": "SELECT COUNT(*) FROM import_sessions",
        "failed_sessions": "SELECT COUNT(*) FROM import_sessions WHERE stage = 'failed'",
    }

    with get_pg_connection() as conn:
        with conn.cursor() as cur:
            for name, query in queries.items():
                try:
                    cur.execute(query)
                    result = cur.fetchone()
                    stats[name] = result["count"] if result else 0
                except psycopg.Error as e:
                    logger.warning(f"Failed to get stat {name}: {e}")
                    conn.rollback()
                    stats[name] = 0

    return stats


def check_health() -> dict[str, Any]:
    """Check database health and return status."""
    result = {
        "status": "unknown",
        "connection": False,
        "tables": [],
    }

    try:
        with get_pg_connection() as conn:
            result["connection"] = True

            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT tablename FROM pg_tables
                    WHERE schemaname = 'public'
                    AND tablename = ANY(%s)
                    """,
                    (list(EXPECTED_TABLES),),
                )
                result["tables"] = sorted(row["tablename"] for row in cur.fetchall())

        missing = set(EXPECTED_TABLES) - set(result["tables"])
        result["status"] = "healthy" if not missing else "degraded"
        if missing:
            result["missing_tables"] = sorted(missing)

    except psycopg.Error as e:
        result["status"] = "unhealthy"
        result["error"] = str(e)

    return result


def close_pool() -> None:
    """Close the connection pool."""
    global _pool
    if _pool is not None:
        _pool.close()
        _pool = None
        logger.info("Postgres connection pool closed")
