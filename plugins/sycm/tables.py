"""
How the raw capture tables are charted.
"""

from typing import Dict

from core.canonical import ColumnSpec, TableSpec
from core.timegrid import FINE_GRID, HOUR_GRID

CART_TABLE = TableSpec(
    table="sycm_cart_log",
    category="小贝壳",
    columns=[ColumnSpec(key="item_cart_cnt", sub_category="商品加购件数")],
    granularity=HOUR_GRID,
)

FLOW_TABLE = TableSpec(
    table="sycm_flow_source_log",
    category="流量来源",
    columns=[
        ColumnSpec(key="search_uv", sub_category="搜索访客数"),
        ColumnSpec(key="search_pay_rate", sub_category="搜索支付转化率", is_rate=True),
        ColumnSpec(key="cart_uv", sub_category="购物车访客数"),
        ColumnSpec(key="cart_pay_rate", sub_category="购物车支付转化率", is_rate=True),
    ],
    granularity=FINE_GRID,
)

MARKET_RANK_TABLE = TableSpec(
    table="sycm_market_rank_log",
    category="市场排名",
    columns=[ColumnSpec(key="rank", sub_category="排名")],
    entity_column="shop_title",
    granularity=FINE_GRID,
)

TABLES: Dict[str, TableSpec] = {t.table: t for t in (CART_TABLE, FLOW_TABLE, MARKET_RANK_TABLE)}

# Market rank trends read the 19:00 bucket of the fine grid
RANK_TREND_BUCKET = FINE_GRID.index_for(19, 0)
