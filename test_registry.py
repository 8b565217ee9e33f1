#!/usr/bin/env python3
"""
Tests for the metric source registry and its extraction strategies.
"""

import os
import sys

import pytest

# Add project root to PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core.registry import (
    MetricSource,
    ScalarStrategy,
    SourceRegistry,
    UrlMatcher,
    dig,
    load_sources,
    round_half_up,
    to_number,
)
from plugins.sycm.sources import CART_LOG, FLOW_SOURCE, MARKET_RANK, default_registry, page_urls

CART_URL = "https://sycm.taobao.com/cc/item/live/view/top.json?dateType=today&itemId=1"
FLOW_URL = "https://sycm.taobao.com/flow/v6/live/item/source/v4.json?device=2"
RANK_URL = "https://sycm.taobao.com/mc/mq/mkt/item/live/rank.json?cateId=1&keyWord=%E5%B0%8F%E8%B4%9D%E5%A3%B3&page=1"


def cart_body(*rows):
    return {"data": {"data": {"data": list(rows)}}}


def flow_body(search=None, cart=None):
    children = []
    if search is not None:
        children.append({"pageName": {"value": "搜索"}, **search})
    if cart is not None:
        children.append({"pageName": {"value": "购物车"}, **cart})
    return {"data": {"data": [{"pageName": {"value": "站内免费"}, "children": children}]}}


def test_helpers():
    assert dig({"a": {"b": [{"c": 1}]}}, "a.b.0.c") == 1
    assert dig({"a": {"b": []}}, "a.b.0.c") is None
    assert dig({"a": 1}, "a.b") is None
    assert to_number("1,234") == 1234
    assert to_number(True) is None
    assert to_number(float("nan")) is None
    assert to_number("abc") is None
    assert round_half_up(0.125, 2) == 0.13
    assert round_half_up(0.12345, 2) == 0.12


def test_match_first_wins_and_query_filter():
    registry = default_registry()
    assert registry.match(CART_URL) is CART_LOG
    assert registry.match(FLOW_URL) is FLOW_SOURCE
    assert registry.match(RANK_URL) is MARKET_RANK
    assert registry.match(RANK_URL.replace("%E5%B0%8F%E8%B4%9D%E5%A3%B3", "other")) is None
    assert registry.match("https://sycm.taobao.com/unrelated.json") is None
    assert [s.id for s in registry] == ["cart-log", "flow-source", "market-rank"]
    assert registry.sources_for_table("sycm_cart_log") == [CART_LOG]


def test_get_unknown_source():
    with pytest.raises(KeyError):
        default_registry().get("nope")


def test_scalar_extraction():
    assert CART_LOG.extract(cart_body({"itemCartCnt": {"value": 42}})) == 42
    assert CART_LOG.extract(cart_body({"itemCartCnt": 7})) == 7
    assert CART_LOG.extract(cart_body({"itemCartCnt": "15"})) == 15
    # readings that are not numbers never reach the numeric column
    assert CART_LOG.extract(cart_body({"itemCartCnt": "n/a"})) is None
    assert CART_LOG.extract(cart_body({"itemCartCnt": {"value": "-"}})) is None
    assert CART_LOG.extract(cart_body({"itemCartCnt": True})) is None
    # exactly one row is required
    assert CART_LOG.extract(cart_body({"itemCartCnt": 1}, {"itemCartCnt": 2})) is None
    assert CART_LOG.extract(cart_body()) is None
    assert CART_LOG.extract(cart_body({"other": 1})) is None
    assert CART_LOG.extract({"data": None}) is None


def test_tree_record_extraction():
    body = flow_body(
        search={"uv": {"value": 120}, "payRate": {"value": 0.05}},
        cart={"uv": {"value": 30}, "payRate": {"value": 0.12345}},
    )
    assert FLOW_SOURCE.extract(body) == {
        "search_uv": 120,
        "search_pay_rate": 0.05,
        "cart_uv": 30,
        "cart_pay_rate": 0.12,
    }


def test_tree_record_missing_fields_default_to_zero():
    body = flow_body(search={}, cart={"uv": {"value": 3}})
    assert FLOW_SOURCE.extract(body) == {"search_uv": 0, "search_pay_rate": 0, "cart_uv": 3, "cart_pay_rate": 0}


def test_tree_record_requires_every_label():
    assert FLOW_SOURCE.extract(flow_body(search={"uv": {"value": 1}})) is None
    assert FLOW_SOURCE.extract({"data": {"data": {}}}) is None


def test_row_list_extraction():
    body = cart_body(
        {"shop": {"title": "A店"}, "cateRankId": {"value": 3}},
        {"shop": {"value": "B店"}, "cateRankId": 5},
        {"shop": {}, "cateRankId": None},
    )
    assert MARKET_RANK.extract(body) == {
        "items": [{"shop_title": "A店", "rank": 3}, {"shop_title": "B店", "rank": 5}]
    }
    assert MARKET_RANK.extract(cart_body({"shop": {}})) is None
    assert MARKET_RANK.extract(cart_body()) is None


def test_overlapping_sources_rejected():
    twin = CART_LOG.model_copy(update={"id": "cart-log-2"})
    with pytest.raises(ValueError):
        SourceRegistry([CART_LOG, twin])
    with pytest.raises(ValueError):
        SourceRegistry([CART_LOG, CART_LOG])


def test_query_filter_distinguishes_overlapping_paths():
    other = MARKET_RANK.model_copy(
        update={"id": "market-rank-other", "matcher": UrlMatcher(contains=MARKET_RANK.matcher.contains, query={"keyWord": "别的"})}
    )
    registry = SourceRegistry([MARKET_RANK, other])
    assert registry.match(RANK_URL) is MARKET_RANK


def test_source_shape_validation():
    with pytest.raises(ValueError):
        MetricSource(
            id="x",
            matcher=UrlMatcher(contains="/x.json"),
            extractor=ScalarStrategy(path="data", field="v"),
            table="t",
        )
    with pytest.raises(ValueError):
        MetricSource(
            id="x",
            matcher=UrlMatcher(contains="/x.json"),
            extractor=ScalarStrategy(path="data", field="v"),
            table="t",
            multi_value=True,
            multi_rows=True,
        )


def test_from_config_and_yaml(tmp_path):
    entry = {
        "id": "rank",
        "matcher": {"contains": "/rank.json"},
        "extractor": {
            "kind": "row_list",
            "path": "list",
            "columns": [{"column": "name", "paths": ["name"]}, {"column": "rank", "paths": ["r"], "numeric": True}],
        },
        "table": "ranks",
        "multi_value": True,
        "multi_rows": True,
    }
    registry = SourceRegistry.from_config([entry])
    assert registry.get("rank").extract({"list": [{"name": "a", "r": "2"}]}) == {"items": [{"name": "a", "rank": 2}]}

    path = tmp_path / "sources.yml"
    path.write_text(
        "sources:\n"
        "  - id: cart\n"
        "    matcher: {contains: /top.json}\n"
        "    extractor: {kind: scalar, path: data, field: n}\n"
        "    table: carts\n"
        "    value_key: n\n",
        encoding="utf-8",
    )
    loaded = load_sources(path)
    assert len(loaded) == 1
    assert loaded.match("https://x/top.json").extract({"data": [{"n": 9}]}) == 9

    (tmp_path / "empty.yml").write_text("other: 1\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_sources(tmp_path / "empty.yml")


def test_page_urls_encode_date_range():
    urls = page_urls("2024-06-01")
    assert len(urls) == 3
    assert all("dateRange=2024-06-01%7C2024-06-01" in u for u in urls)


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
