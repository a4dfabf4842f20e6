from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping

from quote_compare.comparison.engine import coerce_quantity
from quote_compare.domain.models import (
    ComparisonResult,
    Diagnostic,
    OrderBuildResult,
    OrderLine,
    UnfulfillableItem,
    split_group_key,
)


LOGGER = logging.getLogger("quote_compare.orders")

REASON_NO_VALID_PRICE = "no_valid_price"
REASON_NO_SELECTED_WINNER = "no_selected_winner"
REASON_GROUP_NOT_FOUND = "group_not_found"
REASON_NO_QUANTITY = "no_valid_quantity"


def build_orders(
    comparison_results: Mapping[str, ComparisonResult] | Iterable[ComparisonResult],
    selected_groups: Iterable[str],
    quantities: Mapping[str, Any] | None = None,
    *,
    requested_quantities: Mapping[str, Any] | None = None,
    group_suppliers: Mapping[str, str] | None = None,
    known_groups: Iterable[str] | None = None,
    inquiry_item_ids: Mapping[str, Any] | None = None,
    promotion_policy: str = "compete",
) -> OrderBuildResult:
    """Turn per-item winners into order lines grouped by supplier.

    Items without a winner among the selected groups are reported as
    unfulfillable. A selected group that no longer exists yields a
    ``build_error`` diagnostic.
    """
    if isinstance(comparison_results, Mapping):
        results = list(comparison_results.values())
    else:
        results = list(comparison_results)
    selected = list(dict.fromkeys(selected_groups or ()))
    known = None if known_groups is None else set(known_groups)
    quantities = quantities or {}
    requested = requested_quantities or {}
    suppliers = group_suppliers or {}
    inquiry_ids = inquiry_item_ids or {}

    diagnostics: List[Diagnostic] = []
    vanished = set()
    if known is not None:
        for group_key in selected:
            if group_key in known:
                continue
            vanished.add(group_key)
            diagnostics.append(
                Diagnostic(
                    kind="build_error",
                    code=REASON_GROUP_NOT_FOUND,
                    message="selected supplier group no longer exists",
                    context={"group_key": group_key},
                )
            )
    usable = [group_key for group_key in selected if group_key not in vanished]

    orders: Dict[str, List[OrderLine]] = {}
    unfulfillable: List[UnfulfillableItem] = []
    for result in results:
        winners = tuple(sorted(result.winning_group_keys))
        if result.best_price is None:
            unfulfillable.append(UnfulfillableItem(item_id=result.item_id, reason=REASON_NO_VALID_PRICE))
            continue

        candidates = [group_key for group_key in usable if group_key in result.winning_group_keys]
        if not candidates:
            reason = REASON_NO_SELECTED_WINNER
            if vanished.intersection(result.winning_group_keys):
                reason = REASON_GROUP_NOT_FOUND
            unfulfillable.append(
                UnfulfillableItem(
                    item_id=result.item_id,
                    reason=reason,
                    best_price=result.best_price,
                    winning_group_keys=winners,
                )
            )
            continue

        quantity = coerce_quantity(quantities.get(result.item_id))
        if quantity is None:
            quantity = coerce_quantity(requested.get(result.item_id))
        if quantity is None:
            unfulfillable.append(
                UnfulfillableItem(
                    item_id=result.item_id,
                    reason=REASON_NO_QUANTITY,
                    best_price=result.best_price,
                    winning_group_keys=winners,
                )
            )
            continue

        group_key = min(candidates, key=lambda key: _pick_order(key, result, promotion_policy))
        supplier_id, promotion_id = split_group_key(group_key)
        supplier_id = suppliers.get(group_key) or supplier_id
        line = OrderLine(
            item_id=result.item_id,
            supplier_id=supplier_id,
            unit_price=result.per_group_price.get(group_key, result.best_price),
            quantity=quantity,
            group_key=group_key,
            promotion_id=promotion_id,
            inquiry_item_id=inquiry_ids.get(result.item_id),
        )
        orders.setdefault(supplier_id, []).append(line)

    LOGGER.debug(
        "orders_built",
        extra={
            "suppliers": len(orders),
            "order_lines": sum(len(lines) for lines in orders.values()),
            "unfulfillable_items": len(unfulfillable),
        },
    )
    return OrderBuildResult(orders=orders, unfulfillable=unfulfillable, diagnostics=diagnostics)


def _pick_order(group_key: str, result: ComparisonResult, promotion_policy: str):
    price = result.per_group_price.get(group_key, result.best_price)
    is_promotion = split_group_key(group_key)[1] is not None
    promotion_rank = 0 if is_promotion and promotion_policy == "prefer_promotion" else 1
    return (price, promotion_rank, group_key)
