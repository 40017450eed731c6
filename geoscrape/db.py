"""Database connection utilities."""
from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Generator, Optional

import psycopg2
from psycopg2.extensions import connection as PGConnection


def get_dsn(dsn: Optional[str] = None) -> str:
    """
    Resolve the PostgreSQL DSN.

    Priority:
    1. Explicit ``dsn`` argument
    2. PG_DSN / DATABASE_URL environment variables
    3. Individual components: PG_USER, PG_PASS, PG_HOST, PG_PORT, PG_DB

    Raises:
        ValueError: If database credentials are not configured.
    """
    dsn = dsn or os.getenv("PG_DSN") or os.getenv("DATABASE_URL")
    if dsn:
        return dsn

    user = os.getenv("PG_USER")
    password = os.getenv("PG_PASS")
    host = os.getenv("PG_HOST", "localhost")
    port = os.getenv("PG_PORT", "5432")
    database = os.getenv("PG_DB")

    if not all([user, password, database]):
        raise ValueError(
            "Database credentials not configured. "
            "Set PG_DSN or (PG_USER, PG_PASS, PG_DB) environment variables. "
            "See .env.example for reference."
        )

    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


def get_db_connection(dsn: Optional[str] = None) -> PGConnection:
    """Return a psycopg2 connection for the resolved DSN."""
    return psycopg2.connect(get_dsn(dsn))


@contextmanager
def connect(dsn: str) -> Generator[PGConnection, None, None]:
    """Open a connection, commit on success, roll back on error, always close."""
    conn = psycopg2.connect(dsn)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
