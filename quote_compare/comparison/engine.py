from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Mapping, Set, Tuple

from quote_compare.domain.models import (
    ClassifiedResponse,
    ComparisonResult,
    Diagnostic,
    GroupSummary,
    split_group_key,
)
from quote_compare.observability import observe_comparison_recompute


DEFAULT_EPSILON = 0.01
DEFAULT_EXCHANGE_RATE = 3.95
PROMOTION_POLICIES = ("compete", "prefer_promotion")

# Float slack so a difference of exactly one epsilon still counts as a tie.
_EPSILON_SLACK = 1e-9


def coerce_price(value: Any) -> float | None:
    """Return a positive finite price, or None for anything else."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


coerce_quantity = coerce_price


def is_winning(price: float | None, best: float | None, epsilon: float = DEFAULT_EPSILON) -> bool:
    if price is None or best is None:
        return False
    return abs(price - best) <= epsilon + _EPSILON_SLACK


def delta_percent(price: float | None, best: float | None) -> float:
    if not price or not best:
        return 0.0
    value = round((price - best) / best * 100.0, 2)
    return 0.0 if value == 0 else value


def format_delta(value: float | None) -> str:
    if not value:
        return "0.00%"
    return f"{value:+.2f}%"


@dataclass(frozen=True)
class RetailTerms:
    retail_price: float | None = None
    import_markup: float | None = None


def retail_discount(
    price: float | None,
    import_markup: float | None,
    retail_price: float | None,
    exchange_rate: float = DEFAULT_EXCHANGE_RATE,
) -> float | None:
    """Percent below retail once the supplier price is landed in the retail currency.

    Landed cost is ``price * exchange_rate * import_markup``; the result is clamped
    to 0..100 and None when any input is missing or not positive.
    """
    price = coerce_price(price)
    markup = coerce_price(import_markup)
    retail = coerce_price(retail_price)
    rate = coerce_price(exchange_rate)
    if price is None or markup is None or retail is None or rate is None:
        return None
    landed = price * rate * markup
    discount = (retail - landed) / retail * 100.0
    return round(max(0.0, min(100.0, discount)), 2)


def effective_prices(
    prices_by_group: Mapping[str, Any],
    active_groups: Iterable[str] | None = None,
    overrides: Mapping[Tuple[str, str], Any] | None = None,
    *,
    item_id: str | None = None,
) -> Dict[str, float]:
    """Valid price per active group, with user overrides applied over submitted prices."""
    active = None if active_groups is None else set(active_groups)
    candidates = list(prices_by_group)
    for override_item, override_group in (overrides or {}):
        if override_item == item_id and override_group not in prices_by_group:
            candidates.append(override_group)

    prices: Dict[str, float] = {}
    for group_key in candidates:
        if active is not None and group_key not in active:
            continue
        price = None
        if overrides and (item_id, group_key) in overrides:
            price = coerce_price(overrides[(item_id, group_key)])
        if price is None:
            price = coerce_price(prices_by_group.get(group_key))
        if price is not None:
            prices[group_key] = price
    return prices


def best_price(
    prices_by_group: Mapping[str, Any],
    active_groups: Iterable[str] | None = None,
    overrides: Mapping[Tuple[str, str], Any] | None = None,
    *,
    item_id: str | None = None,
) -> float | None:
    prices = effective_prices(prices_by_group, active_groups, overrides, item_id=item_id)
    if not prices:
        return None
    return min(prices.values())


@dataclass(frozen=True)
class PricedQuote:
    item_id: str
    group_key: str
    supplier_id: str
    price: float
    response_date: date | None = None
    promotion_id: str | None = None
    submitted_item_id: str | None = None

    @property
    def is_promotion(self) -> bool:
        return self.promotion_id is not None


class PricePool:
    """Submitted price per ``(inquiry item, supplier group)``."""

    def __init__(self, quotes: Iterable[PricedQuote] = ()) -> None:
        self._quotes: Dict[str, Dict[str, PricedQuote]] = {}
        self._groups: Dict[str, PricedQuote] = {}
        for quote in quotes:
            self._add(quote)

    def _add(self, quote: PricedQuote) -> None:
        by_group = self._quotes.setdefault(quote.item_id, {})
        current = by_group.get(quote.group_key)
        if current is not None and current.response_date and quote.response_date:
            if quote.response_date < current.response_date:
                return
        by_group[quote.group_key] = quote
        self._groups.setdefault(quote.group_key, quote)

    @classmethod
    def from_classified(cls, classified: Iterable[ClassifiedResponse]) -> "PricePool":
        quotes = []
        for record in classified:
            if not record.covers_inquiry_item:
                continue
            price = coerce_price(record.price_quoted)
            if price is None:
                continue
            quotes.append(
                PricedQuote(
                    item_id=record.effective_item_id,
                    group_key=record.group_key,
                    supplier_id=record.supplier_id,
                    price=price,
                    response_date=record.response_date,
                    promotion_id=record.promotion_id,
                    submitted_item_id=record.item_id,
                )
            )
        return cls(quotes)

    @classmethod
    def from_prices(cls, prices: Mapping[str, Mapping[str, Any]]) -> "PricePool":
        quotes = []
        for item_id, by_group in prices.items():
            for group_key, raw_price in by_group.items():
                price = coerce_price(raw_price)
                if price is None:
                    continue
                supplier_id, promotion_id = split_group_key(group_key)
                quotes.append(
                    PricedQuote(
                        item_id=item_id,
                        group_key=group_key,
                        supplier_id=supplier_id,
                        price=price,
                        promotion_id=promotion_id,
                    )
                )
        return cls(quotes)

    def item_ids(self) -> List[str]:
        return list(self._quotes)

    def group_keys(self) -> List[str]:
        return sorted(self._groups)

    def has_group(self, group_key: str) -> bool:
        return group_key in self._groups

    def prices_for(self, item_id: str) -> Dict[str, float]:
        return {group_key: quote.price for group_key, quote in self._quotes.get(item_id, {}).items()}

    def items_for_group(self, group_key: str) -> List[str]:
        return [item_id for item_id, by_group in self._quotes.items() if group_key in by_group]

    def quote(self, item_id: str, group_key: str) -> PricedQuote | None:
        return self._quotes.get(item_id, {}).get(group_key)

    def supplier_for(self, group_key: str) -> str:
        quote = self._groups.get(group_key)
        if quote is not None:
            return quote.supplier_id
        return split_group_key(group_key)[0]

    def is_promotion_group(self, group_key: str) -> bool:
        quote = self._groups.get(group_key)
        if quote is not None:
            return quote.is_promotion
        return split_group_key(group_key)[1] is not None

    def group_suppliers(self) -> Dict[str, str]:
        return {group_key: self.supplier_for(group_key) for group_key in self.group_keys()}


@dataclass(frozen=True)
class PricingState:
    active_groups: frozenset | None = None
    price_overrides: Dict[Tuple[str, str], Any] = field(default_factory=dict)
    quantity_overrides: Dict[str, Any] = field(default_factory=dict)


class PriceComparisonEngine:
    """Winner selection over a price pool.

    Best prices are cached per item. Callers invalidate the items an edit
    touches; everything else (active groups, overrides, quantities) is read
    from ``state_provider()`` at computation time, never from a snapshot.
    """

    def __init__(
        self,
        pool: PricePool,
        requested_quantities: Mapping[str, Any] | None = None,
        *,
        epsilon: float = DEFAULT_EPSILON,
        promotion_policy: str = "compete",
        state_provider: Callable[[], Any] | None = None,
        item_order: Iterable[str] | None = None,
        retail_terms: Mapping[str, RetailTerms] | None = None,
        exchange_rate: float = DEFAULT_EXCHANGE_RATE,
    ) -> None:
        if promotion_policy not in PROMOTION_POLICIES:
            raise ValueError(f"unknown promotion policy: {promotion_policy}")
        self.pool = pool
        self.epsilon = float(epsilon)
        self.promotion_policy = promotion_policy
        self.retail_terms = dict(retail_terms or {})
        self.exchange_rate = float(exchange_rate)
        self._requested = {item_id: coerce_quantity(qty) or 0.0 for item_id, qty in (requested_quantities or {}).items()}
        default_state = PricingState()
        self._state_provider = state_provider or (lambda: default_state)
        self._best_cache: Dict[str, float | None] = {}
        self.recompute_count = 0

        ordered = list(item_order or self._requested)
        for item_id in pool.item_ids():
            if item_id not in ordered:
                ordered.append(item_id)
        self._items: List[str] = list(dict.fromkeys(ordered))

    @property
    def item_ids(self) -> List[str]:
        return list(self._items)

    def _state(self):
        return self._state_provider()

    def _prices(self, item_id: str) -> Dict[str, float]:
        state = self._state()
        return effective_prices(
            self.pool.prices_for(item_id),
            state.active_groups,
            state.price_overrides,
            item_id=item_id,
        )

    def invalidate_item(self, item_id: str) -> None:
        self._best_cache.pop(item_id, None)

    def invalidate_group(self, group_key: str) -> None:
        affected: Set[str] = set(self.pool.items_for_group(group_key))
        for item_id, override_group in self._state().price_overrides:
            if override_group == group_key:
                affected.add(item_id)
        for item_id in affected:
            self._best_cache.pop(item_id, None)

    def invalidate_all(self) -> None:
        self._best_cache.clear()

    def best_price(self, item_id: str) -> float | None:
        if item_id not in self._best_cache:
            prices = self._prices(item_id)
            self._best_cache[item_id] = min(prices.values()) if prices else None
            self.recompute_count += 1
            observe_comparison_recompute(1)
        return self._best_cache[item_id]

    def is_winning(self, price: float | None, item_id: str) -> bool:
        return is_winning(coerce_price(price), self.best_price(item_id), self.epsilon)

    def winners(self, item_id: str) -> Set[str]:
        best = self.best_price(item_id)
        if best is None:
            return set()
        winners = {
            group_key
            for group_key, price in self._prices(item_id).items()
            if is_winning(price, best, self.epsilon)
        }
        if self.promotion_policy == "prefer_promotion":
            promoted = {group_key for group_key in winners if self.pool.is_promotion_group(group_key)}
            if promoted:
                return promoted
        return winners

    def effective_quantity(self, item_id: str) -> float:
        override = coerce_quantity(self._state().quantity_overrides.get(item_id))
        if override is not None:
            return override
        return self._requested.get(item_id, 0.0)

    def result(self, item_id: str) -> ComparisonResult:
        best = self.best_price(item_id)
        prices = self._prices(item_id)
        winners = self.winners(item_id)
        deltas = {
            group_key: 0.0 if group_key in winners else delta_percent(price, best)
            for group_key, price in prices.items()
        }
        terms = self.retail_terms.get(item_id) or RetailTerms()
        discounts = {
            group_key: retail_discount(price, terms.import_markup, terms.retail_price, self.exchange_rate)
            for group_key, price in prices.items()
        }
        return ComparisonResult(
            item_id=item_id,
            best_price=best,
            winning_group_keys=frozenset(winners),
            per_group_price=prices,
            delta_percent=deltas,
            delta_labels={group_key: format_delta(value) for group_key, value in deltas.items()},
            requested_qty=self._requested.get(item_id, 0.0),
            effective_qty=self.effective_quantity(item_id),
            retail_discount=discounts,
        )

    def results(self) -> Dict[str, ComparisonResult]:
        return {item_id: self.result(item_id) for item_id in self._items}

    def summarize(self, group_key: str) -> GroupSummary:
        state = self._state()
        active = state.active_groups is None or group_key in state.active_groups
        total_items = 0
        winning_items = 0
        total_value = 0.0
        for item_id in self._items:
            price = self._prices(item_id).get(group_key)
            if price is None:
                if active or self.pool.quote(item_id, group_key) is None:
                    continue
            total_items += 1
            if price is not None and group_key in self.winners(item_id):
                winning_items += 1
                total_value += price * self.effective_quantity(item_id)
        return GroupSummary(
            group_key=group_key,
            supplier_id=self.pool.supplier_for(group_key),
            is_promotion=self.pool.is_promotion_group(group_key),
            active=active,
            total_items=total_items,
            winning_items=winning_items,
            total_value=round(total_value, 2),
        )

    def group_keys(self) -> List[str]:
        keys = set(self.pool.group_keys())
        for _item_id, group_key in self._state().price_overrides:
            keys.add(group_key)
        return sorted(keys)

    def summaries(self) -> List[GroupSummary]:
        return [self.summarize(group_key) for group_key in self.group_keys()]

    def diagnostics(self) -> List[Diagnostic]:
        found: List[Diagnostic] = []
        for (item_id, group_key), value in sorted(self._state().price_overrides.items()):
            if coerce_price(value) is None:
                found.append(
                    Diagnostic(
                        kind="comparison_error",
                        code="invalid_price_override",
                        message="override ignored, submitted price kept",
                        context={"item_id": item_id, "group_key": group_key},
                    )
                )
        for item_id, value in sorted(self._state().quantity_overrides.items()):
            if coerce_quantity(value) is None:
                found.append(
                    Diagnostic(
                        kind="comparison_error",
                        code="invalid_quantity_override",
                        message="override ignored, requested quantity kept",
                        context={"item_id": item_id},
                    )
                )
        for item_id in self._items:
            if self.best_price(item_id) is None:
                found.append(
                    Diagnostic(
                        kind="comparison_error",
                        code="no_valid_price",
                        message="no active supplier group has a valid price",
                        context={"item_id": item_id},
                    )
                )
        return found


def compare(
    pool: PricePool,
    requested_quantities: Mapping[str, Any] | None = None,
    active_groups: Iterable[str] | None = None,
    price_overrides: Mapping[Tuple[str, str], Any] | None = None,
    quantity_overrides: Mapping[str, Any] | None = None,
    *,
    epsilon: float = DEFAULT_EPSILON,
    promotion_policy: str = "compete",
    item_order: Iterable[str] | None = None,
    retail_terms: Mapping[str, RetailTerms] | None = None,
    exchange_rate: float = DEFAULT_EXCHANGE_RATE,
) -> Dict[str, ComparisonResult]:
    return build_engine(
        pool,
        requested_quantities,
        active_groups,
        price_overrides,
        quantity_overrides,
        epsilon=epsilon,
        promotion_policy=promotion_policy,
        item_order=item_order,
        retail_terms=retail_terms,
        exchange_rate=exchange_rate,
    ).results()


def build_engine(
    pool: PricePool,
    requested_quantities: Mapping[str, Any] | None = None,
    active_groups: Iterable[str] | None = None,
    price_overrides: Mapping[Tuple[str, str], Any] | None = None,
    quantity_overrides: Mapping[str, Any] | None = None,
    *,
    epsilon: float = DEFAULT_EPSILON,
    promotion_policy: str = "compete",
    item_order: Iterable[str] | None = None,
    retail_terms: Mapping[str, RetailTerms] | None = None,
    exchange_rate: float = DEFAULT_EXCHANGE_RATE,
) -> PriceComparisonEngine:
    state = PricingState(
        active_groups=None if active_groups is None else frozenset(active_groups),
        price_overrides=dict(price_overrides or {}),
        quantity_overrides=dict(quantity_overrides or {}),
    )
    return PriceComparisonEngine(
        pool,
        requested_quantities,
        epsilon=epsilon,
        promotion_policy=promotion_policy,
        state_provider=lambda: state,
        item_order=item_order,
        retail_terms=retail_terms,
        exchange_rate=exchange_rate,
    )
