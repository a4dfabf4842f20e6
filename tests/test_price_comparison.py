import unittest
from datetime import date

from quote_compare.comparison.engine import (
    PriceComparisonEngine,
    PricePool,
    PricingState,
    RetailTerms,
    best_price,
    build_engine,
    coerce_price,
    compare,
    delta_percent,
    format_delta,
    is_winning,
    retail_discount,
)
from quote_compare.reconciliation.normalizer import normalize
from quote_compare.reconciliation.references import ReferenceIndex


class PriceHelpersTest(unittest.TestCase):
    def test_winning_tolerance_is_one_cent(self) -> None:
        self.assertTrue(is_winning(10.00, 10.00))
        self.assertTrue(is_winning(10.004, 10.00))
        self.assertTrue(is_winning(10.01, 10.00))
        self.assertFalse(is_winning(10.02, 10.00))
        self.assertFalse(is_winning(None, 10.00))
        self.assertFalse(is_winning(10.00, None))

    def test_coerce_price_rejects_non_positive_and_garbage(self) -> None:
        for value in (0, -1, "abc", "", None, True, float("nan"), float("inf")):
            with self.subTest(value=value):
                self.assertIsNone(coerce_price(value))
        self.assertEqual(coerce_price("3.5"), 3.5)

    def test_delta_formatting(self) -> None:
        self.assertEqual(delta_percent(4.00, 3.00), 33.33)
        self.assertEqual(format_delta(33.33), "+33.33%")
        self.assertEqual(format_delta(0.0), "0.00%")
        self.assertEqual(format_delta(None), "0.00%")
        self.assertEqual(delta_percent(None, 3.00), 0.0)

    def test_best_price_honours_active_groups_and_overrides(self) -> None:
        prices = {"S1-regular": 4.0, "S2-regular": 5.0}
        self.assertEqual(best_price(prices), 4.0)
        self.assertEqual(best_price(prices, ["S2-regular"]), 5.0)
        self.assertIsNone(best_price(prices, []))
        self.assertEqual(best_price(prices, None, {("X", "S2-regular"): 2.0}, item_id="X"), 2.0)
        self.assertEqual(best_price(prices, None, {("X", "S2-regular"): -2.0}, item_id="X"), 4.0)

    def test_retail_discount_lands_price_before_comparing(self) -> None:
        self.assertEqual(retail_discount(10.0, 1.5, 100.0), 40.75)
        self.assertEqual(retail_discount(10.0, 1.5, 100.0, exchange_rate=2.0), 70.0)
        self.assertEqual(retail_discount(100.0, 1.5, 100.0), 0.0)
        for price, markup, retail in ((None, 1.5, 100.0), (10.0, None, 100.0), (10.0, 1.5, 0), (10.0, "abc", 100.0)):
            with self.subTest(price=price, markup=markup, retail=retail):
                self.assertIsNone(retail_discount(price, markup, retail))
        self.assertIsNone(retail_discount(10.0, 1.5, 100.0, exchange_rate=0))


class PriceComparisonEngineTest(unittest.TestCase):
    def test_equal_prices_both_win_with_zero_delta(self) -> None:
        pool = PricePool.from_prices({"X1": {"S1-regular": 9.00, "S2-regular": 9.00}})
        result = compare(pool, {"X1": 5})["X1"]

        self.assertEqual(result.best_price, 9.00)
        self.assertEqual(result.winning_group_keys, frozenset({"S1-regular", "S2-regular"}))
        self.assertEqual(result.delta_labels, {"S1-regular": "0.00%", "S2-regular": "0.00%"})
        self.assertEqual(result.effective_qty, 5)

    def test_near_tie_within_epsilon(self) -> None:
        pool = PricePool.from_prices({"X1": {"A-regular": 10.00, "B-regular": 10.004, "C-regular": 10.02}})
        result = compare(pool, {"X1": 1})["X1"]

        self.assertEqual(result.winning_group_keys, frozenset({"A-regular", "B-regular"}))
        self.assertEqual(result.delta_percent["B-regular"], 0.0)
        self.assertEqual(result.delta_labels["C-regular"], "+0.20%")

    def test_price_override_changes_winner(self) -> None:
        pool = PricePool.from_prices({"X4": {"S1-regular": 4.00}})
        result = compare(pool, {"X4": 1}, price_overrides={("X4", "S2-regular"): 3.00})["X4"]

        self.assertEqual(result.best_price, 3.00)
        self.assertEqual(result.winning_group_keys, frozenset({"S2-regular"}))
        self.assertEqual(result.delta_labels["S1-regular"], "+33.33%")
        self.assertEqual(result.delta_labels["S2-regular"], "0.00%")

    def test_invalid_override_keeps_submitted_price(self) -> None:
        pool = PricePool.from_prices({"X4": {"S1-regular": 4.00, "S2-regular": 5.00}})
        engine = build_engine(pool, {"X4": 1}, price_overrides={("X4", "S2-regular"): "abc"})

        self.assertEqual(engine.result("X4").per_group_price["S2-regular"], 5.00)
        self.assertIn("invalid_price_override", [diagnostic.code for diagnostic in engine.diagnostics()])

    def test_inactive_groups_are_ignored(self) -> None:
        pool = PricePool.from_prices({"X1": {"S1-regular": 4.0, "S2-regular": 5.0}, "X2": {"S1-regular": 1.0}})
        results = compare(pool, {"X1": 1, "X2": 1}, active_groups=["S2-regular"])

        self.assertEqual(results["X1"].winning_group_keys, frozenset({"S2-regular"}))
        self.assertNotIn("S1-regular", results["X1"].per_group_price)
        self.assertIsNone(results["X2"].best_price)
        self.assertEqual(results["X2"].winning_group_keys, frozenset())

    def test_items_without_price_are_reported(self) -> None:
        pool = PricePool.from_prices({"X1": {"S1-regular": 4.0}})
        engine = build_engine(pool, {"X1": 1, "X9": 3}, item_order=["X9", "X1"])

        self.assertEqual(list(engine.results()), ["X9", "X1"])
        codes = [(diagnostic.code, diagnostic.context.get("item_id")) for diagnostic in engine.diagnostics()]
        self.assertIn(("no_valid_price", "X9"), codes)

    def test_toggle_order_does_not_change_result(self) -> None:
        pool = PricePool.from_prices(
            {
                "X1": {"A-regular": 4.0, "B-regular": 5.0, "C-regular": 4.5},
                "X2": {"A-regular": 2.0, "C-regular": 1.5},
            }
        )
        state = {"value": PricingState(active_groups=frozenset({"A-regular", "B-regular", "C-regular"}))}
        engine = PriceComparisonEngine(pool, {"X1": 1, "X2": 1}, state_provider=lambda: state["value"])
        engine.results()

        def toggle(group_key: str) -> None:
            active = set(state["value"].active_groups)
            active.symmetric_difference_update({group_key})
            state["value"] = PricingState(active_groups=frozenset(active))
            engine.invalidate_group(group_key)

        toggle("A-regular")
        toggle("C-regular")
        first = engine.results()

        state["value"] = PricingState(active_groups=frozenset({"A-regular", "B-regular", "C-regular"}))
        engine.invalidate_all()
        toggle("C-regular")
        toggle("A-regular")
        second = engine.results()

        self.assertEqual(first, second)
        self.assertEqual(first["X1"].winning_group_keys, frozenset({"B-regular"}))
        self.assertIsNone(first["X2"].best_price)

    def test_best_price_is_cached_until_invalidated(self) -> None:
        pool = PricePool.from_prices({"X1": {"A-regular": 4.0}, "X2": {"B-regular": 2.0}})
        engine = build_engine(pool, {"X1": 1, "X2": 1})
        engine.results()
        baseline = engine.recompute_count
        engine.results()
        self.assertEqual(engine.recompute_count, baseline)

        engine.invalidate_group("A-regular")
        engine.results()
        self.assertEqual(engine.recompute_count, baseline + 1)

    def test_prefer_promotion_narrows_tied_winners(self) -> None:
        pool = PricePool.from_prices({"X1": {"S1-regular": 5.0, "S1-P7": 5.0}})
        compete = compare(pool, {"X1": 1})["X1"]
        preferred = compare(pool, {"X1": 1}, promotion_policy="prefer_promotion")["X1"]

        self.assertEqual(compete.winning_group_keys, frozenset({"S1-regular", "S1-P7"}))
        self.assertEqual(preferred.winning_group_keys, frozenset({"S1-P7"}))

    def test_group_summaries(self) -> None:
        pool = PricePool.from_prices({"X1": {"A-regular": 4.0, "B-regular": 5.0}, "X2": {"B-regular": 2.0}})
        engine = build_engine(pool, {"X1": 2, "X2": 3})
        summaries = {summary.group_key: summary for summary in engine.summaries()}

        self.assertEqual(summaries["A-regular"].winning_items, 1)
        self.assertEqual(summaries["A-regular"].total_value, 8.0)
        self.assertEqual(summaries["B-regular"].total_items, 2)
        self.assertEqual(summaries["B-regular"].winning_items, 1)
        self.assertEqual(summaries["B-regular"].total_value, 6.0)

    def test_retail_discount_per_group(self) -> None:
        pool = PricePool.from_prices({"X1": {"S1-regular": 10.0, "S2-regular": 20.0}, "X2": {"S1-regular": 3.0}})
        results = compare(
            pool,
            {"X1": 1, "X2": 1},
            retail_terms={"X1": RetailTerms(retail_price=100.0, import_markup=1.5)},
            exchange_rate=2.0,
        )

        self.assertEqual(results["X1"].retail_discount, {"S1-regular": 70.0, "S2-regular": 40.0})
        self.assertEqual(results["X2"].retail_discount, {"S1-regular": None})
        self.assertEqual(results["X1"].to_dict()["retailDiscount"]["S2-regular"], 40.0)

    def test_deleted_response_never_wins(self) -> None:
        lines = [
            {"supplier_id": "S1", "item_id": "X1", "price_quoted": 9.0, "response_date": "2024-01-05"},
            {
                "supplier_id": "S2",
                "item_id": "X1",
                "price_quoted": 1.0,
                "response_date": "2024-01-05",
                "status": "deleted",
            },
        ]
        normalized = normalize(
            [{"inquiry_item_id": 1, "item_id": "X1", "requested_qty": 2}],
            lines,
            [],
            ReferenceIndex.build([]),
            today=date(2024, 1, 10),
        )
        result = compare(PricePool.from_classified(normalized.classified), {"X1": 2})["X1"]

        self.assertEqual(result.best_price, 9.0)
        self.assertEqual(result.winning_group_keys, frozenset({"S1-regular"}))
        self.assertNotIn("S2-regular", result.per_group_price)

    def test_unknown_promotion_policy_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            PriceComparisonEngine(PricePool(), promotion_policy="cheapest")


if __name__ == "__main__":
    unittest.main()
