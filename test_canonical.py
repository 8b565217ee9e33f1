#!/usr/bin/env python3
"""
Tests for canonicalization of raw rows onto fixed day grids.
"""

import os
import random
import sys

import pytest

# Add project root to PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core.canonical import ColumnSpec, TableSpec, canonical_grid, canonicalize, day_points, rows_from_records
from core.models import RawRow
from core.timegrid import FINE_GRID, HOUR_GRID
from plugins.sycm.tables import CART_TABLE, FLOW_TABLE, MARKET_RANK_TABLE

COUNT = TableSpec(table="t", category="c", columns=[ColumnSpec(key="count", sub_category="count")])


def row(recorded_at, value, column="count", **extra):
    return RawRow(source_id="s", recorded_at=recorded_at, columns={column: value, **extra})


def test_latest_reading_in_bucket_wins():
    rows = [row("2024-06-01:09:05:00", 3), row("2024-06-01:09:15:00", 7)]
    grid = canonical_grid(rows, "count", "2024-06-01")
    assert len(grid) == 46
    assert grid[0] == 7
    assert all(v is None for v in grid[1:])


def test_latest_iso_reading_in_bucket_wins():
    rows = [row("2024-06-01T09:05:00+08:00", 3), row("2024-06-01T09:18:00+08:00", 7)]
    grid = canonical_grid(rows, "count", "2024-06-01")
    assert grid[0] == 7
    assert canonical_grid(list(reversed(rows)), "count", "2024-06-01")[0] == 7


def test_after_midnight_reading_lands_in_final_bucket():
    rows = [row("2024-06-02T00:10:00+08:00", 12)]
    assert canonical_grid(rows, "count", "2024-06-01")[45] == 12
    assert canonical_grid(rows, "count", "2024-06-02") == [None] * 46


def test_final_bucket_prefers_the_later_of_late_evening_and_midnight():
    rows = [row("2024-06-02:00:30:00", 5), row("2024-06-02:00:10:00", 4)]
    assert canonical_grid(rows, "count", "2024-06-01")[45] == 5


def test_order_and_duplicates_do_not_matter():
    rows = [
        row("2024-06-01:09:05:00", 3),
        row("2024-06-01:09:15:00", 7),
        row("2024-06-01T10:01:00+08:00", 1),
        row("2024-06-01T02:30:00Z", 9),  # 10:30 business time
        row("2024-06-01:23:50:00", 2),
    ]
    expected = canonical_grid(rows, "count", "2024-06-01")

    shuffled = rows * 3
    random.Random(7).shuffle(shuffled)
    assert canonical_grid(shuffled, "count", "2024-06-01") == expected
    assert expected[3] == 1
    assert expected[4] == 9
    assert expected[44] == 2


def test_ties_on_instant_break_on_text_then_value():
    same_instant = [
        row("2024-06-01T09:05:00+08:00", 1),
        row("2024-06-01:09:05:00", 2),
    ]
    # "2024-06-01T..." sorts after "2024-06-01:..."
    assert canonical_grid(same_instant, "count", "2024-06-01")[0] == 1
    assert canonical_grid(list(reversed(same_instant)), "count", "2024-06-01")[0] == 1

    same_text = [row("2024-06-01:09:05:00", 4), row("2024-06-01:09:05:00", 6)]
    assert canonical_grid(same_text, "count", "2024-06-01")[0] == 6
    assert canonical_grid(list(reversed(same_text)), "count", "2024-06-01")[0] == 6


def test_grid_length_does_not_depend_on_row_count():
    assert canonical_grid([], "count", "2024-06-01") == [None] * 46
    assert canonical_grid([], "count", "2024-06-01", HOUR_GRID) == [None] * 16
    one = canonical_grid([row("2024-06-01:12:00:00", 1)], "count", "2024-06-01", HOUR_GRID)
    assert len(one) == 16 and one[3] == 1


@pytest.mark.parametrize("value", [None, "", "n/a", float("nan"), float("inf"), True])
def test_non_finite_values_are_absent(value):
    rows = [row("2024-06-01:09:05:00", 3), row("2024-06-01:09:10:00", value)]
    # the later unusable reading does not displace the earlier finite one
    assert canonical_grid(rows, "count", "2024-06-01")[0] == 3


def test_numeric_strings_are_coerced():
    assert canonical_grid([row("2024-06-01:09:05:00", "1,234")], "count", "2024-06-01")[0] == 1234


def test_rows_with_bad_timestamps_are_dropped():
    rows = [row("yesterday", 5), row("2024-06", 6), row("2024-06-01:09:05:00", 1)]
    days = canonicalize(rows, COUNT)
    assert list(days) == ["2024-06-01"]
    assert days["2024-06-01"].series[0].grid[0] == 1


def test_plain_table_emits_every_column():
    records = [
        {"created_at": "2024-06-01T10:00:00+08:00", "search_uv": 10, "search_pay_rate": 0.1},
        {"created_at": "2024-06-01T10:05:00+08:00", "cart_uv": 4},
    ]
    days = canonicalize(records, FLOW_TABLE)
    day = days["2024-06-01"]
    assert [s.metric_key for s in day.series] == [
        "流量来源-搜索访客数",
        "流量来源-搜索支付转化率",
        "流量来源-购物车访客数",
        "流量来源-购物车支付转化率",
    ]
    assert [s.is_rate for s in day.series] == [False, True, False, True]
    assert day.series[0].grid[3] == 10
    assert day.series[2].grid[3] == 4
    assert day.series[3].grid == [None] * 46


def test_entity_table_emits_one_series_per_entity():
    records = [
        {"created_at": "2024-06-01T19:00:00+08:00", "shop_title": "B店", "rank": 2},
        {"created_at": "2024-06-01T19:05:00+08:00", "shop_title": "A店", "rank": 1},
        {"created_at": "2024-06-01T19:10:00+08:00", "shop_title": "", "rank": 3},
    ]
    day = canonicalize(records, MARKET_RANK_TABLE)["2024-06-01"]
    assert [s.sub_category for s in day.series] == ["A店", "B店"]
    assert day.series[0].metric_key == "市场排名-A店"
    assert day.series[0].grid[30] == 1


def test_table_granularity_and_override():
    records = [{"created_at": "2024-06-01T09:30:00+08:00", "item_cart_cnt": 5}]
    hourly = canonicalize(records, CART_TABLE)["2024-06-01"].series[0]
    assert hourly.granularity_minutes == 60
    assert len(hourly.grid) == 16
    fine = canonicalize(records, CART_TABLE, FINE_GRID)["2024-06-01"].series[0]
    assert len(fine.grid) == 46 and fine.grid[1] == 5


def test_rows_from_records_skips_missing_timestamps():
    rows = rows_from_records("cart-log", [{"created_at": "2024-06-01T09:00:00+08:00", "v": 1}, {"v": 2}])
    assert len(rows) == 1
    assert rows[0].recorded_at == "2024-06-01T09:00:00+08:00"


def test_day_points():
    series = canonicalize([row("2024-06-01:09:25:00", 2)], COUNT)["2024-06-01"].series[0]
    points = day_points(series)
    assert len(points) == 46
    assert points[1] == {"x": pytest.approx(9 + 20 / 60), "label": "09:20", "value": 2}
    assert points[-1]["label"] == "24:00"


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
