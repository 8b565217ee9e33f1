"""
Throttled sink – at most one persisted write per time bucket per source.

For every capture event the sink computes the event's bucket at the current
throttle granularity and compares it with the source's marker in local state:

* same bucket  -> skipped, nothing is written and no state changes
* new bucket   -> row(s) written; the marker only advances once the store
                  acknowledged the write, so a failed write is retried by the
                  next observation in the same bucket

Events of different sources are written concurrently; events of one source are
serialized by a per-source lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from .infra.state import DiagnosticLog
from .interfaces import KeyValueStore, RowStore, Sink
from .models import CaptureEvent, LastWrite
from .registry import MetricSource, SourceRegistry
from .timegrid import (
    BUSINESS_TZ,
    DEFAULT_THROTTLE_MINUTES,
    THROTTLE_OPTIONS,
    Granularity,
    TimeBucket,
    granularity_for,
    to_bucket,
    to_created_at,
)

logger = logging.getLogger(__name__)

THROTTLE_KEY = "throttle_minutes"
LAST_WRITE_KEY = "last_write"
MARKER_PREFIX = "last_bucket:"


class WriteOutcome(str, Enum):
    WRITTEN = "written"
    SKIPPED = "skipped"
    FAILED = "failed"
    IGNORED = "ignored"


def bucket_marker(bucket: TimeBucket, granularity: Granularity) -> str:
    return f"{bucket.date}#{bucket.index}@{granularity.minutes}"


def marker_key(source_id: str) -> str:
    return f"{MARKER_PREFIX}{source_id}"


def build_rows(source: MetricSource, event: CaptureEvent, tz: timezone = BUSINESS_TZ) -> List[Dict[str, Any]]:
    """Rows to persist for *event*; empty when the event carries nothing usable."""
    created_at = to_created_at(event.observed_at, tz)

    if source.multi_rows:
        return [{**item, "created_at": created_at} for item in event.items or []]
    if source.full_record:
        if not event.payload:
            return []
        return [{**event.payload, "created_at": created_at}]
    if event.value is None:
        return []
    return [{source.value_key: event.value, "created_at": created_at}]


def validate_throttle(minutes: Any) -> int:
    """Return *minutes* as an allowed throttle granularity or raise ``ValueError``."""
    value = None
    if isinstance(minutes, (int, str)) and not isinstance(minutes, bool):
        try:
            value = int(minutes)
        except ValueError:
            pass
    if value not in THROTTLE_OPTIONS:
        raise ValueError(f"Throttle must be one of {THROTTLE_OPTIONS}, got {minutes!r}")
    return value


class ThrottledSink(Sink):
    """Bucket-deduplicating writer in front of a :class:`RowStore`."""

    def __init__(
        self,
        registry: SourceRegistry,
        store: RowStore,
        state: KeyValueStore,
        *,
        default_minutes: int = DEFAULT_THROTTLE_MINUTES,
        tz: timezone = BUSINESS_TZ,
        diagnostics: Optional[DiagnosticLog] = None,
    ):
        self.registry = registry
        self.store = store
        self.state = state
        self.default_minutes = validate_throttle(default_minutes)
        self.tz = tz
        self.diagnostics = diagnostics or DiagnosticLog(state)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._pending: Set[asyncio.Task] = set()

    @property
    def name(self) -> str:
        return "ThrottledSink"

    # ---------------------------------------------- #
    # Throttle setting
    async def granularity(self) -> Granularity:
        stored = await self.state.get(THROTTLE_KEY)
        try:
            minutes = validate_throttle(stored)
        except ValueError:
            if stored is not None:
                logger.warning("Ignoring invalid throttle setting %r", stored)
            minutes = self.default_minutes
        return granularity_for(minutes)

    async def set_throttle_minutes(self, minutes: int) -> int:
        value = validate_throttle(minutes)
        await self.state.set(THROTTLE_KEY, value)
        logger.info("Throttle set to %d minutes", value)
        return value

    # ---------------------------------------------- #
    # Write path
    async def _persist(self, source: MetricSource, rows: List[Dict[str, Any]]) -> bool:
        try:
            if source.multi_rows:
                return await self.store.insert_many(source.table, rows)
            return await self.store.insert(source.table, rows[0])
        except Exception as e:
            logger.warning("[%s] store raised during write: %s", source.id, e)
            return False

    async def handle(self, item: Any) -> WriteOutcome:
        if not isinstance(item, CaptureEvent):
            return WriteOutcome.IGNORED
        try:
            source = self.registry.get(item.source_id)
        except KeyError:
            logger.warning("Dropping event for unknown source %r", item.source_id)
            return WriteOutcome.IGNORED

        rows = build_rows(source, item, self.tz)
        if not rows:
            logger.debug("[%s] event carries no value, nothing to write", source.id)
            return WriteOutcome.IGNORED

        try:
            async with self._locks[source.id]:
                return await self._write_once(source, item, rows)
        except Exception as e:
            logger.error("[%s] write path failed: %s", source.id, e, exc_info=True)
            await self._note_failure(f"[{source.id}] write path failed: {e}")
            return WriteOutcome.FAILED

    async def _note_failure(self, msg: str) -> None:
        try:
            await self.diagnostics.append(msg, level="error")
        except Exception as e:
            logger.error("Could not record diagnostic %r: %s", msg, e)

    async def _write_once(self, source: MetricSource, item: CaptureEvent, rows: List[Dict[str, Any]]) -> WriteOutcome:
        granularity = await self.granularity()
        bucket = to_bucket(item.observed_at, granularity, self.tz)
        marker = bucket_marker(bucket, granularity)
        key = marker_key(source.id)

        if await self.state.get(key) == marker:
            logger.debug("[%s] bucket %s already written", source.id, marker)
            await self.diagnostics.append(f"[{source.id}] captured, not written (bucket {marker} already written)")
            return WriteOutcome.SKIPPED

        if not await self._persist(source, rows):
            await self.diagnostics.append(f"[{source.id}] write failed for bucket {marker}", level="warn")
            return WriteOutcome.FAILED

        await self.state.set(key, marker)
        await self.state.set(
            LAST_WRITE_KEY,
            LastWrite(bucket=marker, source_id=source.id).model_dump(mode="json"),
        )
        logger.info("[%s] wrote %d row(s) to %s for bucket %s", source.id, len(rows), source.table, marker)
        await self.diagnostics.append(f"[{source.id}] written ({len(rows)} row(s), bucket {marker})")
        return WriteOutcome.WRITTEN

    # ---------------------------------------------- #
    # Concurrency
    def submit(self, event: CaptureEvent) -> "asyncio.Task[WriteOutcome]":
        task = asyncio.create_task(self.handle(event), name=f"write-{event.source_id}")
        self._pending.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: "asyncio.Task[WriteOutcome]") -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Write task %s failed", task.get_name(), exc_info=task.exception())

    async def drain(self) -> None:
        """Wait for all in-flight writes."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def last_write(self) -> Optional[LastWrite]:
        data = await self.state.get(LAST_WRITE_KEY)
        return LastWrite.model_validate(data) if data else None

    async def __call__(self, items: AsyncIterator[Any]) -> AsyncIterator[Any]:
        async for item in items:
            if isinstance(item, CaptureEvent):
                self.submit(item)
            yield item
        await self.drain()
