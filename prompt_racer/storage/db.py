"""
Database connection management.

Provides SQLite connection for the account credit ledger, the cookie jar
and the race log.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "prompt_racer.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.
    
    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before failing
        
    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout)
    try:
        conn.execute("PRAGMA foreign_keys = ON")
    except sqlite3.Error:
        conn.close()
        raise
    return conn
