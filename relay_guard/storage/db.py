"""
Database connection management.

Provides SQLite connection for state persistence.
"""

import sqlite3
from pathlib import Path


def get_connection(db_path: str = "relay_guard.db") -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    The parent directory is created if needed. Writes go through the
    rollback journal, so a crash mid-transaction leaves the previous
    committed state intact.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
