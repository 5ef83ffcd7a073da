"""
Database access for qbank-ingest.

    from qbank.db import get_pg_pool, get_pg_connection
    from qbank.db.repositories import PostgresSessionStore, PostgresQuestionStore
"""

from .postgres import get_pg_pool, get_pg_connection

__all__ = [
    "get_pg_pool",
    "get_pg_connection",
]
