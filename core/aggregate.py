"""
Merging and aggregation of canonical day series.

Everything here works on the shapes produced by :mod:`core.canonical` and the
workbook importer, so views do not care where a series came from.
"""

from __future__ import annotations

import json
import math
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .models import CanonicalSeries, DaySeries, MergedChart, TrendPoint
from .timegrid import FINE_GRID, granularity_for

DayMap = Mapping[str, DaySeries]


def empty_series(
    metric_key: str,
    granularity_minutes: int = FINE_GRID.minutes,
    *,
    category: Optional[str] = None,
    sub_category: Optional[str] = None,
    is_rate: bool = False,
) -> CanonicalSeries:
    """An all-``None`` series of the right length for *granularity_minutes*."""
    if category is None or sub_category is None:
        category, _, sub_category = metric_key.partition("-")
    return CanonicalSeries(
        metric_key=metric_key,
        category=category,
        sub_category=sub_category,
        is_rate=is_rate,
        granularity_minutes=granularity_minutes,
        grid=[None] * granularity_for(granularity_minutes).bucket_count,
    )


def find_series(day: Optional[DaySeries], metric_key: str) -> Optional[CanonicalSeries]:
    if day is None:
        return None
    return next((s for s in day.series if s.metric_key == metric_key), None)


def _prototype(days: DayMap, metric_key: str, dates: Iterable[str]) -> Optional[CanonicalSeries]:
    for date in list(dates) + sorted(days):
        series = find_series(days.get(date), metric_key)
        if series is not None:
            return series
    return None


def overlay(
    days: DayMap,
    metric_key: str,
    dates: Sequence[str],
    granularity_minutes: Optional[int] = None,
) -> MergedChart:
    """The same metric for several dates on one shared bucket axis."""
    proto = _prototype(days, metric_key, dates)
    if granularity_minutes is None:
        granularity_minutes = proto.granularity_minutes if proto else FINE_GRID.minutes

    by_date: Dict[str, CanonicalSeries] = {}
    for date in dates:
        series = find_series(days.get(date), metric_key)
        if series is None or series.granularity_minutes != granularity_minutes:
            series = empty_series(
                metric_key,
                granularity_minutes,
                category=proto.category if proto else None,
                sub_category=proto.sub_category if proto else None,
                is_rate=proto.is_rate if proto else False,
            )
        by_date[date] = series
    return MergedChart(metric_key=metric_key, granularity_minutes=granularity_minutes, by_date=by_date)


def metric_template(days: DayMap, dates: Sequence[str], limit: Optional[int] = None) -> List[str]:
    """Metric keys present on any of *dates*, in first-seen order.

    *limit* only truncates what is shown; callers wanting every key pass ``None``.
    """
    keys: List[str] = []
    for date in dates:
        day = days.get(date)
        if day is None:
            continue
        for series in day.series:
            if series.metric_key not in keys:
                keys.append(series.metric_key)
    return keys if limit is None else keys[:limit]


def _finite(value: Optional[float]) -> bool:
    return value is not None and not isinstance(value, bool) and math.isfinite(value)


def trend_value(
    series: Union[CanonicalSeries, Sequence[Optional[float]], None],
    representative: Optional[int] = None,
) -> Optional[float]:
    """One number per day.

    The *representative* bucket (the final bucket unless given) when it holds a
    finite value, else the mean of the finite buckets, else ``None``.
    """
    if series is None:
        return None
    grid = series.grid if isinstance(series, CanonicalSeries) else list(series)
    if not grid:
        return None

    index = len(grid) - 1 if representative is None else representative
    if 0 <= index < len(grid) and _finite(grid[index]):
        return grid[index]

    finite = [v for v in grid if _finite(v)]
    if not finite:
        return None
    return sum(finite) / len(finite)


def trend(
    days: DayMap,
    metric_key: str,
    dates: Sequence[str],
    representative: Optional[int] = None,
) -> List[TrendPoint]:
    return [
        TrendPoint(date=date, value=trend_value(find_series(days.get(date), metric_key), representative))
        for date in dates
    ]


def _series_order(series: CanonicalSeries):
    return (series.metric_key, series.granularity_minutes, json.dumps(series.grid), series.category, series.is_rate)


def merge_days(*days: DaySeries) -> DaySeries:
    """Union DaySeries of one date coming from independent sources.

    Series lists are concatenated and annotation lists unioned per bucket; the
    result is ordered canonically so merge order does not matter.
    """
    if not days:
        raise ValueError("merge_days needs at least one DaySeries")
    dates = {d.date for d in days}
    if len(dates) != 1:
        raise ValueError(f"Cannot merge different dates: {sorted(dates)}")

    series: List[CanonicalSeries] = [s for d in days for s in d.series]
    annotations: Dict[str, set] = {}
    for d in days:
        for label, notes in d.annotations.items():
            annotations.setdefault(label, set()).update(notes)

    return DaySeries(
        date=days[0].date,
        series=sorted(series, key=_series_order),
        annotations={label: sorted(notes) for label, notes in sorted(annotations.items())},
    )


def merge_day_maps(*maps: DayMap) -> Dict[str, DaySeries]:
    grouped: Dict[str, List[DaySeries]] = {}
    for day_map in maps:
        for date, day in day_map.items():
            grouped.setdefault(date, []).append(day)
    return {date: merge_days(*grouped[date]) for date in sorted(grouped)}


def annotation_key(date: str, label: str) -> str:
    return f"{date}|{label}"


def annotation_map(days: DayMap, dates: Optional[Sequence[str]] = None) -> Dict[str, List[str]]:
    """Flatten per-day annotations into the ``"<date>|<label>"`` side map."""
    flat: Dict[str, List[str]] = {}
    for date in dates if dates is not None else sorted(days):
        day = days.get(date)
        if day is None:
            continue
        for label, notes in day.annotations.items():
            flat[annotation_key(date, label)] = list(notes)
    return flat
