#!/usr/bin/env python3
"""
Tests for the capture agent and the end-to-end capture pipeline.
"""

import asyncio
import json
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add project root to PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from core.capture import CaptureAgent
from core.infra.state import MemoryKeyValue
from core.infra.store import SqliteStore
from core.interfaces import Fetcher
from core.models import CaptureEvent, RawResponse
from core.pipeline import run_pipeline
from core.registry import ScalarStrategy
from core.throttle import ThrottledSink
from plugins.sycm.sources import default_registry

CART_URL = "https://sycm.taobao.com/cc/item/live/view/top.json?itemId=1"
FLOW_URL = "https://sycm.taobao.com/flow/v6/live/item/source/v4.json"
RANK_URL = "https://sycm.taobao.com/mc/mq/mkt/item/live/rank.json?keyWord=%E5%B0%8F%E8%B4%9D%E5%A3%B3"

OBSERVED = datetime(2024, 6, 1, 1, 5, tzinfo=timezone.utc)  # 09:05 business time


def cart_payload(count):
    return json.dumps({"data": {"data": {"data": [{"itemCartCnt": {"value": count}}]}}}).encode()


def rank_payload(*pairs):
    rows = [{"shop": {"title": t}, "cateRankId": {"value": r}} for t, r in pairs]
    return json.dumps({"data": {"data": {"data": rows}}}, ensure_ascii=False).encode()


def flow_payload():
    nodes = [
        {"pageName": {"value": "搜索"}, "uv": {"value": 10}, "payRate": {"value": 0.2}},
        {"pageName": {"value": "购物车"}, "uv": {"value": 4}, "payRate": {"value": 0.333}},
    ]
    return json.dumps({"data": {"data": nodes}}, ensure_ascii=False).encode()


def test_observe_scalar_event():
    agent = CaptureAgent(default_registry())
    event = agent.observe(CART_URL, cart_payload(42), OBSERVED)

    assert isinstance(event, CaptureEvent)
    assert event.source_id == "cart-log"
    assert event.value == 42
    assert event.payload is None and event.items is None
    assert event.observed_at.utcoffset() == timedelta(hours=8)
    assert event.recorded_at == "2024-06-01:09:05:00"


def test_observe_record_and_rows():
    agent = CaptureAgent(default_registry())

    flow = agent.observe(FLOW_URL, flow_payload(), OBSERVED)
    assert flow.payload == {"search_uv": 10, "search_pay_rate": 0.2, "cart_uv": 4, "cart_pay_rate": 0.33}

    rank = agent.observe(RANK_URL, rank_payload(("A", 1), ("B", 2)), OBSERVED)
    assert rank.items == [{"shop_title": "A", "rank": 1}, {"shop_title": "B", "rank": 2}]


def test_no_event_for_unknown_or_malformed():
    agent = CaptureAgent(default_registry())
    assert agent.observe("https://sycm.taobao.com/other.json", cart_payload(1), OBSERVED) is None
    assert agent.observe(CART_URL, b"<html>not json</html>", OBSERVED) is None
    assert agent.observe(CART_URL, b"", OBSERVED) is None
    assert agent.observe(CART_URL, json.dumps({"data": {}}).encode(), OBSERVED) is None
    assert agent.observe(CART_URL, cart_payload("n/a"), OBSERVED) is None


def test_extractor_failure_is_contained(monkeypatch):
    def boom(self, body):
        raise RuntimeError("unexpected shape")

    monkeypatch.setattr(ScalarStrategy, "extract", boom)
    agent = CaptureAgent(default_registry())
    assert agent.observe(CART_URL, cart_payload(1), OBSERVED) is None
    # other sources keep working
    assert agent.observe(RANK_URL, rank_payload(("A", 1)), OBSERVED) is not None


def test_stream_passes_through_foreign_items():
    agent = CaptureAgent(default_registry())

    async def items():
        yield RawResponse(url=CART_URL, payload=cart_payload(3), observed_at=OBSERVED)
        yield "not a response"
        yield RawResponse(url=CART_URL, payload=b"broken", observed_at=OBSERVED)
        yield RawResponse(url=RANK_URL, payload=rank_payload(("A", 1)), observed_at=OBSERVED)

    async def collect():
        return [item async for item in agent(items())]

    out = asyncio.run(collect())
    assert len(out) == 3
    assert out[0].source_id == "cart-log"
    assert out[1] == "not a response"
    assert out[2].source_id == "market-rank"


class ReplayFetcher(Fetcher):
    """Replays canned responses instead of a live browser."""

    name = "ReplayFetcher"

    def __init__(self, responses):
        self.responses = responses

    async def fetch(self):
        for response in self.responses:
            yield response


def test_pipeline_writes_once_per_bucket(tmp_path):
    responses = [
        RawResponse(url=CART_URL, payload=cart_payload(1), observed_at=OBSERVED),
        RawResponse(url=CART_URL, payload=cart_payload(2), observed_at=OBSERVED + timedelta(minutes=5)),
        RawResponse(url=RANK_URL, payload=rank_payload(("A", 1), ("B", 2)), observed_at=OBSERVED),
        RawResponse(url=CART_URL, payload=cart_payload(3), observed_at=OBSERVED + timedelta(minutes=20)),
    ]

    async def scenario():
        registry = default_registry()
        store = SqliteStore(str(tmp_path / "rows.db"))
        sink = ThrottledSink(registry, store, MemoryKeyValue())
        try:
            ok = await run_pipeline("test", [ReplayFetcher(responses), CaptureAgent(registry), sink])
            window = (OBSERVED - timedelta(hours=1), OBSERVED + timedelta(hours=2))
            carts = await store.select("sycm_cart_log", *window)
            ranks = await store.select("sycm_market_rank_log", *window)
            return ok, carts, ranks
        finally:
            await store.close()

    ok, carts, ranks = asyncio.run(scenario())
    assert ok
    assert [r["item_cart_cnt"] for r in carts] == [1, 3]
    assert carts[0]["created_at"] == "2024-06-01T09:05:00+08:00"
    assert sorted(r["shop_title"] for r in ranks) == ["A", "B"]


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
