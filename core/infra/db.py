"""
Database infrastructure with SQLite and async support.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import aiosqlite


logger = logging.getLogger(__name__)


class Database:
    """Async SQLite database wrapper.

    ``schema`` holds ``CREATE ... IF NOT EXISTS`` statements that are applied
    on connect, so each owner of a database file declares its own tables.
    """

    def __init__(self, db_path: Union[str, Path] = "capture.db", schema: Sequence[str] = ()):
        db_path = str(db_path)
        # Handle sqlite+aiosqlite:///path format
        if db_path.startswith("sqlite"):
            db_path = db_path.split("///")[-1] if "///" in db_path else db_path.split("//")[-1]
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        self._schema = list(schema)
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        """Connect to the database and create the declared tables."""
        if self._connection:
            return

        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path, timeout=30)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA busy_timeout=30000;")
        await self._run_migrations()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def execute(self, sql: str, params: Tuple[Any, ...] = ()) -> aiosqlite.Cursor:
        """Execute a SQL statement."""
        if not self._connection:
            await self.connect()
        return await self._connection.execute(sql, params)

    async def execute_many(self, sql: str, rows: Sequence[Tuple[Any, ...]]) -> None:
        """Execute one statement for many parameter tuples and commit once."""
        if not self._connection:
            await self.connect()
        try:
            await self._connection.executemany(sql, rows)
            await self._connection.commit()
        except Exception:
            await self._connection.rollback()
            raise

    async def commit(self) -> None:
        if self._connection:
            await self._connection.commit()

    async def fetch_one(self, sql: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        """Fetch one row."""
        cursor = await self.execute(sql, params)
        return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        """Fetch all rows."""
        cursor = await self.execute(sql, params)
        return await cursor.fetchall()

    async def upsert(
        self,
        table: str,
        data: Dict[str, Any],
        pk_columns: List[str],
    ) -> None:
        """Upsert data into a table."""
        columns = list(data.keys())
        placeholders = ", ".join("?" * len(columns))

        update_columns = [col for col in columns if col not in pk_columns]
        if update_columns:
            update_clause = ", ".join(f"{col} = excluded.{col}" for col in update_columns)
            conflict_clause = f"ON CONFLICT({', '.join(pk_columns)}) DO UPDATE SET {update_clause}"
        else:
            conflict_clause = f"ON CONFLICT({', '.join(pk_columns)}) DO NOTHING"

        sql = f"""
            INSERT INTO {table} ({', '.join(columns)})
            VALUES ({placeholders})
            {conflict_clause}
        """

        await self.execute(sql, tuple(data.values()))
        await self._connection.commit()

    async def _run_migrations(self) -> None:
        for statement in self._schema:
            await self._connection.execute(statement)
        await self._connection.commit()
        logger.debug("Schema ready for %s (%d statement(s))", self.db_path, len(self._schema))
