"""
Canonicalizer – irregular raw rows in, fixed-length day grids out.

Rows are bucketed on the business-day grid (see :mod:`core.timegrid`) and each
``(date, bucket, series)`` cell keeps the *latest* reading among the rows that
carry a finite value for that column.  "Latest" compares the parsed instants
first and falls back to the raw timestamp text and then the value, so the
result does not depend on row order or on duplicated rows.
"""

from __future__ import annotations

from datetime import timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict

from .models import CanonicalSeries, DaySeries, RawRow
from .registry import to_number
from .timegrid import BUSINESS_TZ, FINE_GRID, Granularity, parse_recorded_at, to_bucket

Row = Union[RawRow, Mapping[str, Any]]


class ColumnSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    sub_category: str
    is_rate: bool = False


class TableSpec(BaseModel):
    """How the rows of one raw table become canonical series."""

    model_config = ConfigDict(frozen=True)

    table: str
    category: str
    columns: List[ColumnSpec]
    # one series per distinct value of this column (e.g. shop title)
    entity_column: Optional[str] = None
    granularity: Granularity = FINE_GRID
    timestamp_columns: Tuple[str, ...] = ("created_at", "recorded_at")

    def metric_key(self, sub_category: str) -> str:
        return f"{self.category}-{sub_category}"

    def timestamp_of(self, record: Mapping[str, Any]) -> Optional[str]:
        for column in self.timestamp_columns:
            value = record.get(column)
            if value not in (None, ""):
                return str(value)
        return None


def finite_number(value: Any) -> Optional[float]:
    """Finite float or ``None``; NaN, infinities, bools and blanks are absent."""
    return to_number(value)


def rows_from_records(
    source_id: str,
    records: Iterable[Mapping[str, Any]],
    timestamp_columns: Sequence[str] = ("created_at", "recorded_at"),
) -> List[RawRow]:
    """Wrap store records as :class:`RawRow`; records without a timestamp are dropped."""
    rows = []
    for record in records:
        stamp = next((record[c] for c in timestamp_columns if record.get(c) not in (None, "")), None)
        if stamp is None:
            continue
        rows.append(RawRow(source_id=source_id, recorded_at=str(stamp), columns=dict(record)))
    return rows


# (instant, raw text, value) – greatest wins
_Rank = Tuple[float, str, float]


def _cells(
    rows: Iterable[Row],
    spec: TableSpec,
    granularity: Granularity,
    tz: timezone,
) -> Tuple[Dict[str, Dict[Tuple[str, str], Dict[int, _Rank]]], Dict[Tuple[str, str], ColumnSpec]]:
    cells: Dict[str, Dict[Tuple[str, str], Dict[int, _Rank]]] = {}
    meta: Dict[Tuple[str, str], ColumnSpec] = {}

    for row in rows:
        if isinstance(row, RawRow):
            recorded, columns = row.recorded_at, row.columns
        else:
            recorded, columns = spec.timestamp_of(row), row

        ts = parse_recorded_at(recorded, tz)
        if ts is None:
            continue
        bucket = to_bucket(ts, granularity, tz)
        day = cells.setdefault(bucket.date, {})

        entity = None
        if spec.entity_column:
            raw_entity = columns.get(spec.entity_column)
            if raw_entity in (None, ""):
                continue
            entity = str(raw_entity)

        for column in spec.columns:
            value = finite_number(columns.get(column.key))
            if value is None:
                continue
            if entity is None:
                sub = column.sub_category
            elif len(spec.columns) == 1:
                sub = entity
            else:
                sub = f"{entity}/{column.sub_category}"
            series_key = (sub, column.key)
            meta[series_key] = column

            rank = (ts.timestamp(), recorded, value)
            grid = day.setdefault(series_key, {})
            current = grid.get(bucket.index)
            if current is None or rank > current:
                grid[bucket.index] = rank

    return cells, meta


def canonicalize(
    rows: Iterable[Row],
    spec: TableSpec,
    granularity: Optional[Granularity] = None,
    tz: timezone = BUSINESS_TZ,
) -> Dict[str, DaySeries]:
    """Group *rows* into one :class:`DaySeries` per business date.

    Plain tables always emit every configured column for a date that has
    rows, entity tables emit one series per entity seen that date.
    """
    granularity = granularity or spec.granularity
    cells, meta = _cells(rows, spec, granularity, tz)

    days: Dict[str, DaySeries] = {}
    for date in sorted(cells):
        found = cells[date]
        if spec.entity_column:
            keys = sorted(found)
        else:
            keys = [(c.sub_category, c.key) for c in spec.columns]

        series = []
        for sub, column_key in keys:
            column = meta.get((sub, column_key)) or next(c for c in spec.columns if c.key == column_key)
            grid: List[Optional[float]] = [None] * granularity.bucket_count
            for index, rank in found.get((sub, column_key), {}).items():
                grid[index] = rank[2]
            series.append(
                CanonicalSeries(
                    metric_key=spec.metric_key(sub),
                    category=spec.category,
                    sub_category=sub,
                    is_rate=column.is_rate,
                    granularity_minutes=granularity.minutes,
                    grid=grid,
                )
            )
        days[date] = DaySeries(date=date, series=series)
    return days


def canonical_grid(
    rows: Iterable[Row],
    column: str,
    date: str,
    granularity: Granularity = FINE_GRID,
    tz: timezone = BUSINESS_TZ,
) -> List[Optional[float]]:
    """Grid of one column for one date; all ``None`` when the date has no data."""
    spec = TableSpec(table="", category="", columns=[ColumnSpec(key=column, sub_category=column)])
    day = canonicalize(rows, spec, granularity, tz).get(date)
    if day is None:
        return [None] * granularity.bucket_count
    return list(day.series[0].grid)


def day_points(series: CanonicalSeries) -> List[Dict[str, Any]]:
    """Chart points ``{x, label, value}`` for a series, ``x`` in fractional hours."""
    granularity = Granularity(minutes=series.granularity_minutes)
    return [
        {"x": granularity.x(i), "label": granularity.label(i), "value": value}
        for i, value in enumerate(series.grid)
    ]
