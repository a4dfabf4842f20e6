from quote_compare.comparison.engine import (
    DEFAULT_EPSILON,
    PROMOTION_POLICIES,
    PriceComparisonEngine,
    PricePool,
    best_price,
    coerce_price,
    coerce_quantity,
    compare,
    delta_percent,
    format_delta,
    is_winning,
)
from quote_compare.comparison.orders import build_orders
from quote_compare.comparison.session import ComparisonSession, SessionState, SessionStore, reduce

__all__ = [
    "DEFAULT_EPSILON",
    "PROMOTION_POLICIES",
    "ComparisonSession",
    "PriceComparisonEngine",
    "PricePool",
    "SessionState",
    "SessionStore",
    "best_price",
    "build_orders",
    "coerce_price",
    "coerce_quantity",
    "compare",
    "delta_percent",
    "format_delta",
    "is_winning",
    "reduce",
]
