"""Database operation helpers to reduce boilerplate in the stores.

Consolidates the repeated `with self._db.connection() as conn:` pattern for
single-statement reads. Multi-statement transitions (guarded
UPDATE plus its history row) open their own connection.
"""

from typing import TYPE_CHECKING, Any

from sqlalchemy import Executable
from sqlalchemy.engine import Row

if TYPE_CHECKING:
    from storyloom.core.store.database import StoryloomDB


class DatabaseOps:
    """Helper for common database operations."""

    def __init__(self, db: "StoryloomDB") -> None:
        self._db = db

    def execute_fetchone(self, query: Executable) -> Row[Any] | None:
        """Execute query and return single row or None."""
        with self._db.connection() as conn:
            result = conn.execute(query)
            return result.fetchone()

    def execute_fetchall(self, query: Executable) -> list[Row[Any]]:
        """Execute query and return all rows."""
        with self._db.connection() as conn:
            result = conn.execute(query)
            return list(result.fetchall())
