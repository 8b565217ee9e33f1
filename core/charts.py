"""
Chart service – store query -> canonicalize -> merge -> chart-ready views.

Store problems never surface as exceptions here: a failed query is logged and
the affected view comes back empty.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .aggregate import merge_day_maps, metric_template, overlay, trend
from .canonical import TableSpec, canonicalize
from .infra.scheduler import Scheduler
from .infra.ws import RealtimeClient
from .interfaces import RowStore
from .models import DaySeries, MergedChart, TrendPoint
from .notes import fetch_notes
from .timegrid import BUSINESS_TZ, date_range, query_window

logger = logging.getLogger(__name__)


class ChartService:
    def __init__(
        self,
        store: RowStore,
        tables: Mapping[str, TableSpec],
        *,
        tz: timezone = BUSINESS_TZ,
        max_visible_metrics: Optional[int] = None,
    ):
        self.store = store
        self.tables = dict(tables)
        self.tz = tz
        self.max_visible_metrics = max_visible_metrics
        # day series from other producers (workbook imports)
        self.imported: Dict[str, DaySeries] = {}

    def spec(self, table: str) -> TableSpec:
        try:
            return self.tables[table]
        except KeyError:
            raise KeyError(f"Unknown table '{table}'. Available: {list(self.tables)}") from None

    def add_days(self, days: Mapping[str, DaySeries]) -> None:
        self.imported = merge_day_maps(self.imported, days)

    async def load_days(self, table: str, start: str, end: Optional[str] = None) -> Dict[str, DaySeries]:
        """Canonical day series of one table for the business dates ``start..end``."""
        spec = self.spec(table)
        end = end or start
        since, until = query_window(start, end, self.tz, spec.granularity.start_hour)
        try:
            rows = await self.store.select(table, since, until)
        except Exception as e:
            logger.error(f"Query of {table} failed: {e}")
            rows = []

        wanted = set(date_range(start, end))
        days = canonicalize(rows, spec, tz=self.tz)
        logger.debug(f"{table}: {len(rows)} row(s) -> {len(days)} day(s)")
        return {d: s for d, s in days.items() if d in wanted}

    async def load_all(
        self,
        start: str,
        end: Optional[str] = None,
        tables: Optional[Sequence[str]] = None,
    ) -> Dict[str, DaySeries]:
        """All tables (plus imported days) merged per date."""
        end = end or start
        names = list(tables) if tables is not None else list(self.tables)
        loaded = await asyncio.gather(*(self.load_days(t, start, end) for t in names))
        wanted = set(date_range(start, end))
        imported = {d: s for d, s in self.imported.items() if d in wanted}
        return merge_day_maps(imported, *loaded)

    async def day(self, date: str, tables: Optional[Sequence[str]] = None) -> DaySeries:
        days = await self.load_all(date, date, tables)
        return days.get(date) or DaySeries(date=date)

    async def overlay(self, metric_key: str, dates: Sequence[str], tables: Optional[Sequence[str]] = None) -> MergedChart:
        if not dates:
            raise ValueError("overlay needs at least one date")
        days = await self.load_all(min(dates), max(dates), tables)
        return overlay(days, metric_key, dates)

    async def trend(
        self,
        metric_key: str,
        start: str,
        end: str,
        tables: Optional[Sequence[str]] = None,
        representative: Optional[int] = None,
    ) -> List[TrendPoint]:
        days = await self.load_all(start, end, tables)
        return trend(days, metric_key, list(date_range(start, end)), representative)

    async def template(self, dates: Sequence[str], tables: Optional[Sequence[str]] = None) -> List[str]:
        if not dates:
            return []
        days = await self.load_all(min(dates), max(dates), tables)
        return metric_template(days, dates, self.max_visible_metrics)

    async def notes(self, chart_keys: Sequence[str], dates: Sequence[str]) -> Dict[str, Dict[str, str]]:
        return await fetch_notes(self.store, chart_keys, dates)


class LiveChart:
    """Keeps one table's day view fresh from realtime inserts, with polling as fallback."""

    def __init__(
        self,
        service: ChartService,
        table: str,
        date: str,
        *,
        realtime: Optional[RealtimeClient] = None,
        scheduler: Optional[Scheduler] = None,
        poll_seconds: int = 60,
        on_update: Optional[Callable[[DaySeries], Any]] = None,
    ):
        self.service = service
        self.table = table
        self.date = date
        self.realtime = realtime
        self.scheduler = scheduler
        self.poll_seconds = poll_seconds
        self.on_update = on_update
        self.current = DaySeries(date=date)
        self.refreshes = 0
        self._connect_task: Optional[asyncio.Task] = None

    @property
    def job_id(self) -> str:
        return f"refresh-{self.table}"

    async def refresh(self) -> DaySeries:
        days = await self.service.load_days(self.table, self.date)
        self.current = days.get(self.date) or DaySeries(date=self.date)
        self.refreshes += 1
        if self.on_update:
            result = self.on_update(self.current)
            if asyncio.iscoroutine(result):
                await result
        return self.current

    async def handle_insert(self, table: str, record: Dict[str, Any]) -> None:
        if table != self.table:
            return
        logger.debug(f"Insert into {table}, refreshing view of {self.date}")
        await self.refresh()

    async def start(self) -> None:
        await self.refresh()
        if self.realtime is not None:
            self.realtime.on_insert = self.handle_insert
            self._connect_task = asyncio.create_task(self.realtime.connect())
        if self.scheduler is not None:
            self.scheduler.add_interval_job(self.refresh, seconds=self.poll_seconds, job_id=self.job_id)
            await self.scheduler.start()
        logger.info(
            f"Live view of {self.table} for {self.date} started "
            f"(realtime={'on' if self.realtime else 'off'}, poll={self.poll_seconds if self.scheduler else 0}s)"
        )

    async def stop(self) -> None:
        if self.realtime is not None:
            await self.realtime.disconnect()
        if self._connect_task and not self._connect_task.done():
            self._connect_task.cancel()
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.remove_job(self.job_id)
            await self.scheduler.stop()
