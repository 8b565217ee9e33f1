"""
Row stores: a PostgREST (Supabase) HTTP store and a local SQLite store.

Both speak the :class:`~core.interfaces.RowStore` contract: writes report
success as a bool and never raise for store-side failures, reads return
plain dict rows.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

import aiohttp

from ..interfaces import RowStore
from ..timegrid import parse_recorded_at
from .db import Database
from .http import HttpClient

logger = logging.getLogger(__name__)


def _quote(value: Any) -> str:
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


class RestStore(RowStore):
    """Rows kept behind a PostgREST endpoint (``/rest/v1/<table>``)."""

    def __init__(
        self,
        url: Optional[str],
        anon_key: Optional[str],
        *,
        client: Optional[HttpClient] = None,
        page_size: int = 1000,
    ):
        self.configured = bool(url and anon_key)
        self.page_size = page_size
        headers = {
            "apikey": anon_key or "",
            "Authorization": f"Bearer {anon_key or ''}",
            "Content-Type": "application/json",
        }
        self.http = client or HttpClient(f"{(url or '').rstrip('/')}/rest/v1")
        self.http.update_default_headers(headers)

    def _check(self, action: str, table: str) -> bool:
        if not self.configured:
            logger.warning("Row store not configured, cannot %s %s", action, table)
        return self.configured

    async def _write(self, table: str, body: Any, prefer: str, params: Optional[Dict[str, str]] = None) -> bool:
        try:
            status, text = await self.http.post_json(
                table, body, headers={"Prefer": prefer}, params=params or {}
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Write to %s failed: %s", table, e)
            return False
        if 200 <= status < 300:
            return True
        logger.warning("Write to %s rejected with status %d: %s", table, status, text[:200])
        return False

    async def insert(self, table: str, row: Mapping[str, Any]) -> bool:
        return await self.insert_many(table, [row])

    async def insert_many(self, table: str, rows: Sequence[Mapping[str, Any]]) -> bool:
        if not self._check("write to", table):
            return False
        if not rows:
            return True
        body = dict(rows[0]) if len(rows) == 1 else [dict(r) for r in rows]
        return await self._write(table, body, "return=minimal")

    async def upsert(self, table: str, row: Mapping[str, Any], on_conflict: Sequence[str]) -> bool:
        if not self._check("upsert into", table):
            return False
        return await self._write(
            table,
            dict(row),
            "resolution=merge-duplicates,return=minimal",
            {"on_conflict": ",".join(on_conflict)},
        )

    async def _get(self, table: str, params: List[tuple]) -> List[Dict[str, Any]]:
        try:
            status, data = await self.http.get_json(table, params=params)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("Query of %s failed: %s", table, e)
            return []
        if data is None:
            logger.warning("Query of %s returned status %d", table, status)
            return []
        return [r for r in data if isinstance(r, dict)]

    async def select(
        self,
        table: str,
        since: datetime,
        until: datetime,
        *,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Rows of *table* in ``[since, until)``, paged until the window is exhausted."""
        if not self._check("query", table):
            return []
        base = [
            ("select", "*"),
            ("created_at", f"gte.{since.isoformat()}"),
            ("created_at", f"lt.{until.isoformat()}"),
            ("order", "created_at.asc"),
        ]
        rows: List[Dict[str, Any]] = []
        while limit is None or len(rows) < limit:
            page_size = self.page_size if limit is None else min(self.page_size, limit - len(rows))
            page = await self._get(table, base + [("limit", str(page_size)), ("offset", str(len(rows)))])
            rows.extend(page)
            if len(page) < page_size:
                break
        logger.debug("Fetched %d row(s) of %s", len(rows), table)
        return rows

    async def select_where(self, table: str, filters: Mapping[str, Sequence[Any]]) -> List[Dict[str, Any]]:
        if not self._check("query", table):
            return []
        params = [("select", "*")]
        for column, values in filters.items():
            params.append((column, f"in.({','.join(_quote(v) for v in values)})"))
        return await self._get(table, params)

    async def close(self) -> None:
        await self.http.close()


SQLITE_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        table_name TEXT NOT NULL,
        created_at TEXT,
        created_ts REAL NOT NULL,
        body TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_records_table_ts ON records (table_name, created_ts)",
    """
    CREATE TABLE IF NOT EXISTS keyed_records (
        table_name TEXT NOT NULL,
        record_key TEXT NOT NULL,
        body TEXT NOT NULL,
        PRIMARY KEY (table_name, record_key)
    )
    """,
)


class SqliteStore(RowStore):
    """Local stand-in for the remote store, one JSON document per row."""

    def __init__(self, db_path: str = "db/rows.db", *, fail_writes: bool = False):
        self.db = Database(db_path, schema=SQLITE_SCHEMA)
        # lets callers exercise the store-failure path
        self.fail_writes = fail_writes

    @staticmethod
    def _timestamp(row: Mapping[str, Any]) -> float:
        parsed = parse_recorded_at(row.get("created_at")) or parse_recorded_at(row.get("recorded_at"))
        return (parsed or datetime.now(tz=timezone.utc)).timestamp()

    async def insert(self, table: str, row: Mapping[str, Any]) -> bool:
        return await self.insert_many(table, [row])

    async def insert_many(self, table: str, rows: Sequence[Mapping[str, Any]]) -> bool:
        if self.fail_writes:
            logger.warning("Write to %s refused (store in failure mode)", table)
            return False
        params = [
            (table, r.get("created_at"), self._timestamp(r), json.dumps(dict(r), ensure_ascii=False, default=str))
            for r in rows
        ]
        try:
            await self.db.execute_many(
                "INSERT INTO records (table_name, created_at, created_ts, body) VALUES (?, ?, ?, ?)",
                params,
            )
        except Exception as e:
            logger.warning("Write to %s failed: %s", table, e)
            return False
        return True

    async def upsert(self, table: str, row: Mapping[str, Any], on_conflict: Sequence[str]) -> bool:
        if self.fail_writes:
            logger.warning("Upsert into %s refused (store in failure mode)", table)
            return False
        key = json.dumps([row.get(c) for c in on_conflict], ensure_ascii=False, default=str)
        try:
            await self.db.upsert(
                "keyed_records",
                {
                    "table_name": table,
                    "record_key": key,
                    "body": json.dumps(dict(row), ensure_ascii=False, default=str),
                },
                ["table_name", "record_key"],
            )
        except Exception as e:
            logger.warning("Upsert into %s failed: %s", table, e)
            return False
        return True

    async def select(
        self,
        table: str,
        since: datetime,
        until: datetime,
        *,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        sql = (
            "SELECT body FROM records WHERE table_name = ? AND created_ts >= ? AND created_ts < ? "
            "ORDER BY created_ts, id"
        )
        params: tuple = (table, since.timestamp(), until.timestamp())
        if limit:
            sql += " LIMIT ?"
            params += (limit,)
        rows = await self.db.fetch_all(sql, params)
        return [json.loads(r["body"]) for r in rows]

    async def select_where(self, table: str, filters: Mapping[str, Sequence[Any]]) -> List[Dict[str, Any]]:
        rows = await self.db.fetch_all(
            "SELECT body FROM keyed_records WHERE table_name = ? "
            "UNION ALL SELECT body FROM records WHERE table_name = ?",
            (table, table),
        )
        wanted = {column: set(map(str, values)) for column, values in filters.items()}
        found: List[Dict[str, Any]] = []
        for r in rows:
            body = json.loads(r["body"])
            if all(str(body.get(column)) in values for column, values in wanted.items()):
                found.append(body)
        return found

    async def close(self) -> None:
        await self.db.close()
