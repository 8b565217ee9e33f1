#!/usr/bin/env python3
"""
Tests for overlay, trend and merging of day series.
"""

import os
import sys

import pytest

# Add project root to PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core.aggregate import (
    annotation_key,
    annotation_map,
    empty_series,
    merge_day_maps,
    merge_days,
    metric_template,
    overlay,
    trend,
    trend_value,
)
from core.models import CanonicalSeries, DaySeries
from plugins.sycm.tables import RANK_TREND_BUCKET


def series(metric_key, values, minutes=20, is_rate=False):
    size = 46 if minutes == 20 else 16
    grid = [None] * size
    for index, value in values.items():
        grid[index] = value
    category, _, sub = metric_key.partition("-")
    return CanonicalSeries(
        metric_key=metric_key,
        category=category,
        sub_category=sub,
        is_rate=is_rate,
        granularity_minutes=minutes,
        grid=grid,
    )


def day(date, *items, annotations=None):
    return DaySeries(date=date, series=list(items), annotations=annotations or {})


def test_empty_series_has_grid_length():
    s = empty_series("流量来源-搜索访客数")
    assert s.category == "流量来源" and s.sub_category == "搜索访客数"
    assert s.grid == [None] * 46
    assert len(empty_series("小贝壳-商品加购件数", 60).grid) == 16


def test_overlay_fills_missing_dates():
    days = {
        "2024-06-01": day("2024-06-01", series("a-x", {0: 1.0}, is_rate=True)),
        "2024-06-03": day("2024-06-03", series("a-x", {2: 3.0}, is_rate=True)),
    }
    chart = overlay(days, "a-x", ["2024-06-01", "2024-06-02", "2024-06-03"])
    assert list(chart.by_date) == ["2024-06-01", "2024-06-02", "2024-06-03"]
    assert chart.granularity_minutes == 20
    assert chart.by_date["2024-06-02"].grid == [None] * 46
    assert chart.by_date["2024-06-02"].is_rate
    assert chart.by_date["2024-06-03"].grid[2] == 3.0


def test_overlay_of_unknown_metric():
    chart = overlay({}, "none-here", ["2024-06-01"], granularity_minutes=60)
    assert chart.by_date["2024-06-01"].grid == [None] * 16


def test_metric_template_first_seen_order_and_limit():
    days = {
        "2024-06-01": day("2024-06-01", series("a-1", {}), series("a-2", {})),
        "2024-06-02": day("2024-06-02", series("a-2", {}), series("b-1", {})),
    }
    dates = ["2024-06-01", "2024-06-02", "2024-06-03"]
    assert metric_template(days, dates) == ["a-1", "a-2", "b-1"]
    assert metric_template(days, dates, limit=2) == ["a-1", "a-2"]
    assert metric_template(days, ["2024-06-02", "2024-06-01"]) == ["a-2", "b-1", "a-1"]


def test_trend_value_rules():
    # representative bucket wins when finite
    assert trend_value(series("r-A", {30: 4.0, 10: 1.0}), RANK_TREND_BUCKET) == 4.0
    # otherwise the mean of finite buckets
    assert trend_value(series("r-A", {10: 1.0, 20: 3.0}), RANK_TREND_BUCKET) == 2.0
    # default representative is the final bucket
    assert trend_value([1.0, None, 5.0]) == 5.0
    assert trend_value([2.0, 4.0, None]) == 3.0
    assert trend_value([None, float("nan")]) is None
    assert trend_value([]) is None
    assert trend_value(None) is None


def test_trend_over_dates():
    days = {"2024-06-01": day("2024-06-01", series("a-x", {45: 9.0}))}
    points = trend(days, "a-x", ["2024-06-01", "2024-06-02"])
    assert [(p.date, p.value) for p in points] == [("2024-06-01", 9.0), ("2024-06-02", None)]


def test_merge_is_commutative_and_associative():
    a = day("2024-06-01", series("a-1", {0: 1.0}), annotations={"10": ["x"]})
    b = day("2024-06-01", series("b-1", {1: 2.0}, minutes=60), annotations={"10": ["y"], "11": ["z"]})
    c = day("2024-06-01", series("a-1", {5: 3.0}))

    assert merge_days(a, b) == merge_days(b, a)
    assert merge_days(merge_days(a, b), c) == merge_days(a, merge_days(b, c))

    merged = merge_days(a, b, c)
    assert len(merged.series) == len(a.series) + len(b.series) + len(c.series)
    assert merged.annotations == {"10": ["x", "y"], "11": ["z"]}


def test_merge_rejects_mixed_dates_and_empty_input():
    with pytest.raises(ValueError):
        merge_days(day("2024-06-01"), day("2024-06-02"))
    with pytest.raises(ValueError):
        merge_days()


def test_merge_day_maps_groups_by_date():
    left = {"2024-06-02": day("2024-06-02", series("a-1", {})), "2024-06-01": day("2024-06-01")}
    right = {"2024-06-02": day("2024-06-02", series("b-1", {}))}
    merged = merge_day_maps(left, right)
    assert list(merged) == ["2024-06-01", "2024-06-02"]
    assert [s.metric_key for s in merged["2024-06-02"].series] == ["a-1", "b-1"]


def test_annotation_map():
    days = {
        "2024-06-01": day("2024-06-01", annotations={"10": ["直通车-加价"]}),
        "2024-06-02": day("2024-06-02", annotations={"9": ["上新"]}),
    }
    assert annotation_key("2024-06-01", "10") == "2024-06-01|10"
    assert annotation_map(days) == {"2024-06-01|10": ["直通车-加价"], "2024-06-02|9": ["上新"]}
    assert annotation_map(days, ["2024-06-02", "2024-06-05"]) == {"2024-06-02|9": ["上新"]}


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
