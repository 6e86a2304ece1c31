"""
SQLite connection helpers shared by the memory and vector stores.

Both stores open short-lived connections per operation. Every connection,
sync or async, gets the same WAL pragmas so the two stores can live in the
same database file without stepping on each other.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager

import aiosqlite


WAL_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA foreign_keys = ON",
    "PRAGMA busy_timeout = 5000",
)


def set_wal_pragmas(conn: sqlite3.Connection) -> None:
    """
    Configure a connection for WAL mode with standard settings.

    Args:
        conn: SQLite connection to configure
    """
    for pragma in WAL_PRAGMAS:
        conn.execute(pragma)


async def set_wal_pragmas_async(db: aiosqlite.Connection) -> None:
    """Async twin of set_wal_pragmas() for aiosqlite connections."""
    for pragma in WAL_PRAGMAS:
        await db.execute(pragma)


def connect(
    db_path: str,
    *,
    timeout: float = 30.0,
    row_factory: bool = True,
) -> sqlite3.Connection:
    """
    Create a SQLite connection with standard settings.

    Args:
        db_path: Database file path (or ":memory:")
        timeout: Lock timeout in seconds (default: 30.0)
        row_factory: Return sqlite3.Row rows (default: True)

    Returns:
        SQLite connection with WAL pragmas applied
    """
    conn = sqlite3.connect(db_path, timeout=timeout, check_same_thread=False)
    if row_factory:
        conn.row_factory = sqlite3.Row
    set_wal_pragmas(conn)
    return conn


def close_quietly(conn: sqlite3.Connection | None) -> None:
    """Close a connection, suppressing sqlite errors."""
    if conn:
        try:
            conn.close()
        except sqlite3.Error:
            pass


@contextmanager
def wal_db(db_path: str, *, timeout: float = 30.0) -> Iterator[sqlite3.Connection]:
    """
    Context manager yielding a configured connection.

    Commits on success, rolls back on error and always closes.

    Usage pattern:
        with wal_db("memories.db") as conn:
            conn.execute("INSERT INTO memories ...", params)
    """
    conn = connect(db_path, timeout=timeout)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        close_quietly(conn)
