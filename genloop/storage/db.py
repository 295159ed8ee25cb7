"""
Database connection management.

The cost ledger lives in a single SQLite file, by default in the working
directory so separate runs from the same place share one ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = ".genloop.db"

# Seconds to wait on a ledger locked by another genloop process
BUSY_TIMEOUT = 10.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open the ledger database, creating its directory when needed.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection that waits on concurrent writers
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(str(path), timeout=BUSY_TIMEOUT)
