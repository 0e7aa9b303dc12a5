"""Connection helper for the application's Postgres metadata store.

The metadata store holds users, roles, permissions, connection profiles and
the append-only audit log. ClickHouse itself is reached through engine.py.
"""
import os
from contextlib import contextmanager
from typing import Any, Generator

import psycopg


class DatabaseConfig:
    """Metadata store configuration from environment variables."""

    def __init__(self) -> None:
        self.host = os.getenv("DB_HOST", "localhost")
        self.port = int(os.getenv("DB_PORT", "5432"))
        self.name = os.getenv("DB_NAME", "chadmin")
        self.user = os.getenv("DB_USER", "chadmin")
        self.password = os.getenv("DB_PASSWORD", "chadmin")
        self.connect_timeout = int(os.getenv("DB_CONNECT_TIMEOUT", "5"))

    def connection_string(self) -> str:
        """Return PostgreSQL connection string."""
        return (
            f"host={self.host} "
            f"port={self.port} "
            f"dbname={self.name} "
            f"user={self.user} "
            f"password={self.password} "
            f"connect_timeout={self.connect_timeout}"
        )


_db_config = DatabaseConfig()


@contextmanager
def get_connection() -> Generator[psycopg.Connection, None, None]:
    """Get a metadata store connection as a context manager.

    Usage:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT ...")
    """
    conn = psycopg.connect(_db_config.connection_string())
    try:
        yield conn
    finally:
        conn.close()


def rows_as_dicts(cur: psycopg.Cursor) -> list[dict[str, Any]]:
    """Fetch all remaining rows of a cursor keyed by column name."""
    if cur.description is None:
        return []
    columns = [desc[0] for desc in cur.description]
    return [dict(zip(columns, row)) for row in cur.fetchall()]


def check_metadata_store() -> bool:
    """Return True when the metadata store answers a trivial query."""
    try:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
        return True
    except psycopg.Error:
        return False
