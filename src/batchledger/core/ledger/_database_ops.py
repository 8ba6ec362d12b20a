"""One-statement-per-transaction helpers for the ledger components.

Each call opens its own transaction through ``LedgerDB.connection()``.
Multi-statement work (batch inserts, checkpoint commits) opens a connection
directly instead.
"""

from typing import TYPE_CHECKING, Any

from sqlalchemy import CursorResult, Executable
from sqlalchemy.engine import Row

if TYPE_CHECKING:
    from batchledger.core.ledger.database import LedgerDB


def _require_rows(result: CursorResult[Any], what: str) -> None:
    if result.rowcount == 0:
        raise ValueError(f"{what} affected no rows")


class DatabaseOps:
    def __init__(self, db: "LedgerDB") -> None:
        self._db = db

    def execute_fetchone(self, query: Executable) -> Row[Any] | None:
        with self._db.connection() as conn:
            return conn.execute(query).fetchone()

    def execute_fetchall(self, query: Executable) -> list[Row[Any]]:
        with self._db.connection() as conn:
            return list(conn.execute(query))

    def execute_scalar(self, query: Executable) -> Any:
        with self._db.connection() as conn:
            return conn.execute(query).scalar()

    def execute_insert(self, stmt: Executable) -> None:
        """Raises ValueError if the insert wrote nothing."""
        with self._db.connection() as conn:
            _require_rows(conn.execute(stmt), "insert")

    def execute_update(self, stmt: Executable) -> None:
        """Raises ValueError if no row matched (the target does not exist)."""
        with self._db.connection() as conn:
            _require_rows(conn.execute(stmt), "update")
