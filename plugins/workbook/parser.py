"""
Workbook import – hand-kept hourly records as canonical day series.

Sheet layout (row 0 is a header):

    col 0   date       merged cell, carried forward to following rows
    col 1   category   merged cell, carried forward
    col 2   sub-category (blank -> row skipped)
    col 3+  hours 9 .. 24

Rows of the ``动作记录`` category are not numbers but actions taken during the
day; they become annotations ``"<sub>-<text>"`` under their hour.
"""

import logging
import math
import re
from datetime import date, datetime, timedelta
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import pandas as pd

from core.models import CanonicalSeries, DaySeries
from core.registry import to_number
from core.timegrid import HOUR_GRID

logger = logging.getLogger(__name__)

TARGET_SHEET = "数据记录-小贝壳"
ACTION_CATEGORY = "动作记录"
FIRST_HOUR_COLUMN = 3
EXCEL_EPOCH = date(1899, 12, 30)

_PLUS_RE = re.compile(r"^(\d+)\+$")


def _blank(cell: Any) -> bool:
    if cell is None:
        return True
    if isinstance(cell, float) and math.isnan(cell):
        return True
    return isinstance(cell, str) and not cell.strip()


def to_date_str(cell: Any) -> Optional[str]:
    """Excel serial, date/datetime or date text -> ``YYYY-MM-DD``."""
    if _blank(cell) or isinstance(cell, bool):
        return None
    if isinstance(cell, (datetime, pd.Timestamp)):
        return cell.date().isoformat()
    if isinstance(cell, date):
        return cell.isoformat()
    if isinstance(cell, (int, float)):
        return (EXCEL_EPOCH + timedelta(days=int(cell))).isoformat()
    try:
        parsed = pd.to_datetime(str(cell).strip())
    except (ValueError, OverflowError):
        return None
    if pd.isna(parsed):
        return None
    return parsed.date().isoformat()


def parse_cell(cell: Any) -> Optional[float]:
    """``-``/blank -> None, ``12+`` -> 12, thousands separators removed."""
    if _blank(cell):
        return None
    text = str(cell).strip()
    if text == "-":
        return None
    plus = _PLUS_RE.match(text)
    if plus:
        return float(plus.group(1))
    return to_number(cell if isinstance(cell, (int, float)) else text)


def is_rate(sub_category: str) -> bool:
    return "转化" in sub_category


def rows_to_day_series(rows: Iterable[Sequence[Any]]) -> Dict[str, DaySeries]:
    """Turn sheet rows (header first) into hour-grid :class:`DaySeries` per date."""
    hours = HOUR_GRID.bucket_count
    days: Dict[str, DaySeries] = {}
    last_date: Optional[str] = None
    last_category = ""

    for n, row in enumerate(rows):
        if n == 0 or row is None or len(row) < FIRST_HOUR_COLUMN:
            continue

        last_date = to_date_str(row[0]) or last_date
        if not last_date:
            continue
        if not _blank(row[1]):
            last_category = str(row[1]).strip()

        sub_category = "" if _blank(row[2]) else str(row[2]).strip()
        day = days.setdefault(last_date, DaySeries(date=last_date))
        if not sub_category:
            continue

        cells = list(row[FIRST_HOUR_COLUMN:FIRST_HOUR_COLUMN + hours])
        cells += [None] * (hours - len(cells))

        if last_category == ACTION_CATEGORY:
            for index, cell in enumerate(cells):
                if _blank(cell):
                    continue
                label = HOUR_GRID.label(index)
                day.annotations.setdefault(label, []).append(f"{sub_category}-{str(cell).strip()}")
            continue

        day.series.append(
            CanonicalSeries(
                metric_key=f"{last_category}-{sub_category}",
                category=last_category,
                sub_category=sub_category,
                is_rate=is_rate(sub_category),
                granularity_minutes=HOUR_GRID.minutes,
                grid=[parse_cell(c) for c in cells],
            )
        )

    return dict(sorted(days.items()))


def pick_sheet(names: Sequence[str]) -> str:
    if not names:
        raise ValueError("Workbook has no sheets")
    if len(names) == 1:
        return names[0]
    return TARGET_SHEET if TARGET_SHEET in names else names[0]


def parse_workbook(source: Union[str, Path, bytes]) -> Dict[str, DaySeries]:
    """Read an ``.xlsx`` file (path or raw bytes) into day series."""
    handle = BytesIO(source) if isinstance(source, bytes) else source
    with pd.ExcelFile(handle, engine="openpyxl") as book:
        sheet = pick_sheet(book.sheet_names)
        frame = pd.read_excel(book, sheet_name=sheet, header=None, dtype=object, keep_default_na=False)

    rows: List[List[Any]] = frame.values.tolist()
    days = rows_to_day_series(rows)
    logger.info("Parsed sheet %r: %d row(s), %d date(s)", sheet, len(rows), len(days))
    return days
