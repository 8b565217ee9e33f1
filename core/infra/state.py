"""
Local key-value state: bucket markers, settings, last write and diagnostics.

Values are JSON documents.  ``MemoryKeyValue`` is for tests and one-off runs,
``SqliteKeyValue`` keeps state across restarts of the capture runner.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..interfaces import KeyValueStore
from ..models import DiagnosticEntry
from .db import Database

logger = logging.getLogger(__name__)

KV_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS kv_state (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
)


class MemoryKeyValue(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    async def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = value


class SqliteKeyValue(KeyValueStore):
    """Key-value state persisted in a local SQLite file."""

    def __init__(self, db_path: str = "db/state.db"):
        self.db = Database(db_path, schema=KV_SCHEMA)

    async def get(self, key: str, default: Any = None) -> Any:
        row = await self.db.fetch_one("SELECT value FROM kv_state WHERE key = ?", (key,))
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except ValueError:
            logger.warning("Corrupt state value for %r, ignoring", key)
            return default

    async def set(self, key: str, value: Any) -> None:
        await self.db.upsert(
            "kv_state",
            {"key": key, "value": json.dumps(value, ensure_ascii=False, default=str)},
            ["key"],
        )

    async def close(self) -> None:
        await self.db.close()


class DiagnosticLog:
    """Bounded ring buffer of diagnostic entries kept in the key-value store."""

    KEY = "logs"

    def __init__(self, state: KeyValueStore, max_entries: int = 100):
        self.state = state
        self.max_entries = max_entries

    async def append(self, msg: str, level: str = "log", at: Optional[datetime] = None) -> None:
        entry = DiagnosticEntry(msg=msg, level=level) if at is None else DiagnosticEntry(msg=msg, level=level, t=at)
        logs: List[Dict[str, Any]] = list(await self.state.get(self.KEY, []) or [])
        logs.append(entry.model_dump(mode="json"))
        await self.state.set(self.KEY, logs[-self.max_entries:])

    async def entries(self) -> List[DiagnosticEntry]:
        logs = await self.state.get(self.KEY, []) or []
        return [DiagnosticEntry.model_validate(e) for e in logs]

    async def clear(self) -> None:
        await self.state.set(self.KEY, [])
