"""
Repository pattern for data access.

Persists the append-only cost ledger so totals survive the process that
recorded them. Rows are only ever inserted, except for the explicit operator
reset which removes them all.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import CostEvent, CostKind

_INSERT_SQL = """
    INSERT INTO cost_event (timestamp, kind, amount, operation)
    VALUES (?, ?, ?, ?)
"""


def _row_params(event: CostEvent) -> tuple:
    return (
        event.timestamp.isoformat(),
        event.kind.value,
        str(event.amount),
        event.operation
    )


class CostRepository:
    """Repository for persisting and reading cost events.

    Thin object wrapper around the module-level functions so a ledger can
    hold one and write through on every ``record``.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    def insert(self, event: CostEvent) -> None:
        insert_cost_event(event, self.db_path)

    def recent_events(
        self,
        kind: Optional[CostKind] = None,
        limit: int = 100
    ) -> List[CostEvent]:
        return fetch_cost_events(kind=kind, limit=limit, db_path=self.db_path)

    def sums_by_kind(self) -> Dict[CostKind, Decimal]:
        return sum_cost_events(self.db_path)

    def reset(self) -> int:
        return delete_all_cost_events(self.db_path)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the cost_event table if it doesn't exist.

    Amounts are stored as decimal strings so sums stay exact.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS cost_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                kind TEXT NOT NULL,
                amount TEXT NOT NULL,
                operation TEXT NOT NULL DEFAULT ''
            )
        """)
        conn.commit()
    finally:
        conn.close()


def insert_cost_event(event: CostEvent, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert a single cost event into the append-only ledger.

    Args:
        event: The cost event to record
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute(_INSERT_SQL, _row_params(event))
        conn.commit()
    finally:
        conn.close()


def insert_cost_events(events: List[CostEvent], db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert multiple cost events atomically.

    All events are inserted in a single transaction to ensure consistency.

    Args:
        events: List of cost events to record
        db_path: Path to SQLite database file
    """
    if not events:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        for event in events:
            conn.execute(_INSERT_SQL, _row_params(event))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_cost_events(
    kind: Optional[CostKind] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[CostEvent]:
    """Fetch recent cost events, newest first.

    Args:
        kind: Optional filter for a single metered kind
        limit: Maximum number of events to return
        db_path: Path to SQLite database file

    Returns:
        List of cost events ordered by insertion (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = "SELECT timestamp, kind, amount, operation FROM cost_event"
        params: list = []
        if kind is not None:
            query += " WHERE kind = ?"
            params.append(kind.value)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        return [
            CostEvent(
                kind=CostKind(row[1]),
                amount=Decimal(row[2]),
                timestamp=datetime.fromisoformat(row[0]),
                operation=row[3]
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()


def sum_cost_events(db_path: str = DEFAULT_DB_PATH) -> Dict[CostKind, Decimal]:
    """Running unit sums per kind across every persisted event.

    Summed in Python rather than SQL so decimal amounts are not
    coerced to floating point.
    """
    sums = {kind: Decimal("0") for kind in CostKind}
    conn = get_connection(db_path)
    try:
        cursor = conn.execute("SELECT kind, amount FROM cost_event")
        for kind, amount in cursor.fetchall():
            sums[CostKind(kind)] += Decimal(amount)
        return sums
    finally:
        conn.close()


def delete_all_cost_events(db_path: str = DEFAULT_DB_PATH) -> int:
    """Zero the persisted ledger. Operator action only.

    Returns:
        Number of events removed
    """
    conn = get_connection(db_path)
    try:
        cursor = conn.execute("DELETE FROM cost_event")
        conn.commit()
        return cursor.rowcount
    finally:
        conn.close()
