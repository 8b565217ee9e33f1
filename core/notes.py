"""
Chart point notes: free-text annotations attached to one point of one chart.

A note is unique per ``(chart_key, point_date, point_slot)``; trend charts
annotate whole days and use an empty slot.
"""

from __future__ import annotations

import logging
from typing import Dict, Sequence

from .interfaces import RowStore
from .models import ChartNote

logger = logging.getLogger(__name__)

NOTES_TABLE = "sycm_chart_point_notes"
NOTE_KEY_COLUMNS = ("chart_key", "point_date", "point_slot")


def note_key(point_date: str, point_slot: str = "") -> str:
    return f"{point_date}|{point_slot or ''}"


async def fetch_notes(
    store: RowStore,
    chart_keys: Sequence[str],
    point_dates: Sequence[str],
) -> Dict[str, Dict[str, str]]:
    """``{chart_key: {"<date>|<slot>": note}}`` for the given charts and dates."""
    if not chart_keys or not point_dates:
        return {}
    try:
        rows = await store.select_where(
            NOTES_TABLE, {"chart_key": list(chart_keys), "point_date": list(point_dates)}
        )
    except Exception as e:
        logger.error("Fetching chart notes failed: %s", e)
        return {}

    by_chart: Dict[str, Dict[str, str]] = {}
    for row in rows:
        chart = row.get("chart_key")
        if chart is None:
            continue
        key = note_key(str(row.get("point_date", "")), row.get("point_slot") or "")
        by_chart.setdefault(chart, {})[key] = row.get("note") or ""
    return by_chart


async def upsert_note(
    store: RowStore,
    chart_key: str,
    point_date: str,
    point_slot: str = "",
    note: str = "",
) -> bool:
    """Insert or replace one note; returns whether the store accepted it."""
    record = ChartNote(chart_key=chart_key, point_date=point_date, point_slot=point_slot or "", note=note or "")
    ok = await store.upsert(NOTES_TABLE, record.model_dump(mode="json"), NOTE_KEY_COLUMNS)
    if ok:
        logger.info("Saved note for %s %s", chart_key, note_key(point_date, point_slot))
    else:
        logger.warning("Saving note for %s %s failed", chart_key, note_key(point_date, point_slot))
    return ok
