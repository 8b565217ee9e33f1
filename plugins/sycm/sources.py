"""
Metric sources of the live analytics pages.

Each entry names the JSON endpoint the host page polls, how to read the
metric out of its body and where the reading is persisted.
"""

from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import quote

from core.registry import (
    MetricSource,
    RowField,
    RowListStrategy,
    ScalarStrategy,
    SourceRegistry,
    TreeField,
    TreeRecordStrategy,
    UrlMatcher,
)
from core.timegrid import BUSINESS_TZ, business_today

CART_LOG = MetricSource(
    id="cart-log",
    matcher=UrlMatcher(contains="/cc/item/live/view/top.json"),
    extractor=ScalarStrategy(path="data.data.data", field="itemCartCnt"),
    table="sycm_cart_log",
    value_key="item_cart_cnt",
)

FLOW_SOURCE = MetricSource(
    id="flow-source",
    matcher=UrlMatcher(contains="/flow/v6/live/item/source/v4.json"),
    extractor=TreeRecordStrategy(
        path="data.data",
        columns=[
            TreeField(column="search_uv", label="搜索", field="uv"),
            TreeField(column="search_pay_rate", label="搜索", field="payRate"),
            TreeField(column="cart_uv", label="购物车", field="uv"),
            TreeField(column="cart_pay_rate", label="购物车", field="payRate", decimals=2),
        ],
    ),
    table="sycm_flow_source_log",
    multi_value=True,
    full_record=True,
)

MARKET_RANK = MetricSource(
    id="market-rank",
    matcher=UrlMatcher(contains="/mc/mq/mkt/item/live/rank.json", query={"keyWord": "小贝壳"}),
    extractor=RowListStrategy(
        path="data.data.data",
        columns=[
            RowField(column="shop_title", paths=["shop.title", "shop.value"]),
            RowField(column="rank", paths=["cateRankId"], numeric=True),
        ],
    ),
    table="sycm_market_rank_log",
    multi_value=True,
    multi_rows=True,
)

SOURCES: List[MetricSource] = [CART_LOG, FLOW_SOURCE, MARKET_RANK]


def default_registry() -> SourceRegistry:
    return SourceRegistry(SOURCES)


SYCM_ORIGIN = "https://sycm.taobao.com"


def page_urls(day: Optional[str] = None, now: Optional[datetime] = None, tz: timezone = BUSINESS_TZ) -> List[str]:
    """Pages whose polling carries the sources above, opened for *day* (today by default)."""
    day = day or business_today(tz, now)
    date_range = quote(f"{day}|{day}", safe="")
    return [
        f"{SYCM_ORIGIN}/cc/item_rank?dateRange={date_range}&dateType=today",
        f"{SYCM_ORIGIN}/cc/item_archives?activeKey=flow&dateRange={date_range}&dateType=today&itemId=1017849608938",
        f"{SYCM_ORIGIN}/mc/free/market_rank?activeKey=item&dateRange={date_range}&dateType=today"
        "&parentCateId=201272600&cateId=50009211",
    ]
