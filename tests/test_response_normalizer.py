import unittest
from collections import Counter
from datetime import date

from quote_compare.reconciliation.aggregator import aggregate
from quote_compare.reconciliation.normalizer import normalize
from quote_compare.reconciliation.references import ReferenceIndex


TODAY = date(2024, 1, 10)


def _inquiry(*item_ids: str) -> list:
    return [
        {"inquiry_item_id": position + 1, "item_id": item_id, "requested_qty": 5, "excel_row_index": position}
        for position, item_id in enumerate(item_ids)
    ]


def _line(supplier_id: str, item_id: str, price, day: str = "2024-01-05", **extra) -> dict:
    payload = {"supplier_id": supplier_id, "item_id": item_id, "price_quoted": price, "response_date": day}
    payload.update(extra)
    return payload


def _by_kind(result, kind: str) -> list:
    return [record for record in result.classified if record.kind == kind]


class ResponseNormalizerTest(unittest.TestCase):
    def test_line_for_new_reference_is_a_replacement(self) -> None:
        index = ReferenceIndex.build(
            [{"originalItemId": "X2", "newReferenceId": "X2-NEW", "changeDate": "2024-01-05"}]
        )
        result = normalize(_inquiry("X2"), [_line("S1", "X2-NEW", 7.5)], [], index, today=TODAY)

        replacements = _by_kind(result, "replacement")
        self.assertEqual(len(replacements), 1)
        self.assertEqual(replacements[0].item_id, "X2-NEW")
        self.assertEqual(replacements[0].effective_item_id, "X2")
        self.assertEqual(replacements[0].replacement_target_id, "X2-NEW")
        self.assertEqual(_by_kind(result, "extra"), [])
        self.assertEqual(_by_kind(result, "missing"), [])

    def test_line_for_replaced_original_is_flagged_as_replacement(self) -> None:
        index = ReferenceIndex.build(
            [{"originalItemId": "X2", "newReferenceId": "X2-NEW", "changeDate": "2024-01-05"}]
        )
        result = normalize(_inquiry("X2"), [_line("S1", "X2", 7.5)], [], index, today=TODAY)

        records = _by_kind(result, "replacement")
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].effective_item_id, "X2")
        self.assertEqual(records[0].replacement_target_id, "X2-NEW")

    def test_superseded_id_points_at_the_submitted_reference(self) -> None:
        index = ReferenceIndex.build(
            [{"originalItemId": "X2", "newReferenceId": "X2-NEW", "changeDate": "2024-01-05"}]
        )
        result = normalize(_inquiry("X2-NEW"), [_line("S1", "X2", 7.5)], [], index, today=TODAY)

        records = _by_kind(result, "replacement")
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].effective_item_id, "X2-NEW")
        self.assertEqual(records[0].replacement_target_id, "X2")
        self.assertNotEqual(records[0].replacement_target_id, records[0].effective_item_id)

    def test_deleted_lines_are_skipped(self) -> None:
        result = normalize(
            _inquiry("X1"),
            [_line("S1", "X1", 9.0), _line("S2", "X1", 1.0, status="deleted"), _line("S3", "X1", 2.0, status=" Deleted ")],
            [],
            ReferenceIndex.build([]),
            today=TODAY,
        )
        self.assertEqual([(record.supplier_id, record.kind) for record in result.classified], [("S1", "matched")])
        self.assertEqual(result.deleted_skipped, 2)
        self.assertEqual(result.diagnostics, ())

    def test_direct_quote_wins_over_replacement_for_same_item(self) -> None:
        index = ReferenceIndex.build(
            [{"originalItemId": "X2", "newReferenceId": "X2-NEW", "changeDate": "2024-01-05"}]
        )
        result = normalize(
            _inquiry("X2", "X2-NEW"),
            [_line("S1", "X2", 7.5), _line("S1", "X2-NEW", 7.0)],
            [],
            index,
            today=TODAY,
        )
        kinds = Counter(record.kind for record in result.classified)
        self.assertEqual(kinds["matched"], 2)
        self.assertEqual(kinds["replacement"], 0)

    def test_duplicate_lines_keep_lowest_price_by_default(self) -> None:
        result = normalize(
            _inquiry("X3"),
            [_line("S1", "X3", 5.50), _line("S1", "X3", 5.00)],
            [],
            ReferenceIndex.build([]),
            today=TODAY,
        )
        matched = _by_kind(result, "matched")
        self.assertEqual(len(matched), 1)
        self.assertEqual(matched[0].price_quoted, 5.00)
        self.assertEqual(result.duplicates_dropped, 1)

        summaries = aggregate(result.classified)
        self.assertEqual(len(summaries), 1)
        self.assertEqual(summaries[0].total_count, 1)
        self.assertEqual(summaries[0].matched_count, 1)

    def test_duplicate_policies(self) -> None:
        lines = [_line("S1", "X3", 5.50), _line("S1", "X3", 5.00), _line("S1", "X3", 6.00)]
        expected = {"first_seen": 5.50, "last_seen": 6.00, "lowest_price": 5.00}
        for policy, price in expected.items():
            with self.subTest(policy=policy):
                result = normalize(
                    _inquiry("X3"), lines, [], ReferenceIndex.build([]), today=TODAY, duplicate_policy=policy
                )
                self.assertEqual(_by_kind(result, "matched")[0].price_quoted, price)
                self.assertEqual(result.duplicates_dropped, 2)

    def test_unknown_duplicate_policy_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            normalize([], [], [], ReferenceIndex.build([]), duplicate_policy="random")

    def test_same_item_on_different_days_is_kept_per_bucket(self) -> None:
        result = normalize(
            _inquiry("X1"),
            [_line("S1", "X1", 5.0, "2024-01-05"), _line("S1", "X1", 4.0, "2024-01-06T10:30:00")],
            [],
            ReferenceIndex.build([]),
            today=TODAY,
        )
        days = sorted(record.response_date for record in _by_kind(result, "matched"))
        self.assertEqual(days, [date(2024, 1, 5), date(2024, 1, 6)])
        self.assertEqual(result.duplicates_dropped, 0)

    def test_missing_items_are_synthesized_per_bucket(self) -> None:
        result = normalize(
            _inquiry("X1", "X3"),
            [_line("S1", "X3", 5.0), _line("S2", "X1", 5.0), _line("S2", "X3", 5.0)],
            [],
            ReferenceIndex.build([]),
            today=TODAY,
        )
        missing = _by_kind(result, "missing")
        self.assertEqual([(record.group_key, record.item_id) for record in missing], [("S1-regular", "X1")])
        self.assertIsNone(missing[0].price_quoted)

    def test_unknown_items_are_extra(self) -> None:
        result = normalize(_inquiry("X1"), [_line("S1", "X1", 5.0), _line("S1", "ZZ", 2.0)], [], ReferenceIndex.build([]), today=TODAY)
        extras = _by_kind(result, "extra")
        self.assertEqual([record.item_id for record in extras], ["ZZ"])
        self.assertEqual(extras[0].effective_item_id, "ZZ")

    def test_bad_lines_become_diagnostics(self) -> None:
        result = normalize(
            _inquiry("X1"),
            [
                _line("S1", "X1", 0),
                _line("S1", "X1", "abc"),
                _line("", "X1", 4.0),
                _line("S1", "X1", 4.0, "yesterday"),
                _line("S1", "X1", 4.0),
            ],
            [],
            ReferenceIndex.build([]),
            today=TODAY,
        )
        codes = Counter(diagnostic.code for diagnostic in result.diagnostics)
        self.assertEqual(codes["invalid_price"], 2)
        self.assertEqual(codes["missing_supplier"], 1)
        self.assertEqual(codes["invalid_response_date"], 1)
        self.assertEqual(len(_by_kind(result, "matched")), 1)
        self.assertEqual(result.diagnostic_counts(), {"data_error": 4})

    def test_active_promotions_form_their_own_group(self) -> None:
        promotions = [
            {
                "promotion_id": "P7",
                "supplier_id": "S1",
                "item_id": "X1",
                "promotion_price": 8.0,
                "start_date": "2024-01-01",
                "end_date": "2024-01-31",
                "promotion_name": "January",
            },
            {
                "promotion_id": "P8",
                "supplier_id": "S1",
                "item_id": "X1",
                "promotion_price": 1.0,
                "start_date": "2023-01-01",
                "end_date": "2023-01-31",
            },
        ]
        result = normalize(_inquiry("X1", "X2"), [_line("S1", "X1", 9.0)], promotions, ReferenceIndex.build([]), today=TODAY)

        promoted = _by_kind(result, "promotion")
        self.assertEqual(len(promoted), 1)
        self.assertEqual(promoted[0].group_key, "S1-P7")
        self.assertEqual(promoted[0].promotion_name, "January")
        self.assertEqual(promoted[0].response_date, date(2024, 1, 1))
        missing_groups = sorted(record.group_key for record in _by_kind(result, "missing"))
        self.assertEqual(missing_groups, ["S1-P7", "S1-regular"])

    def test_classification_is_idempotent_and_disjoint(self) -> None:
        index = ReferenceIndex.build(
            [{"originalItemId": "X2", "newReferenceId": "X2-NEW", "changeDate": "2024-01-05"}]
        )
        inquiry = _inquiry("X1", "X2", "X3")
        lines = [
            _line("S1", "X1", 5.0),
            _line("S1", "X2-NEW", 6.0),
            _line("S1", "ZZ", 1.0),
            _line("S2", "X3", 2.0, "2024-01-04"),
        ]
        first = normalize(inquiry, lines, [], index, today=TODAY)
        second = normalize(inquiry, lines, [], index, today=TODAY)
        self.assertEqual(first.classified, second.classified)

        per_bucket = {}
        for record in first.classified:
            if record.kind == "extra":
                continue
            key = (record.group_key, record.response_date)
            per_bucket.setdefault(key, []).append(record.effective_item_id)
        for bucket, item_ids in per_bucket.items():
            with self.subTest(bucket=bucket):
                self.assertEqual(sorted(item_ids), ["X1", "X2", "X3"])

    def test_item_ids_are_cleaned_before_matching(self) -> None:
        result = normalize(
            [{"item_id": "00001109AL", "requested_qty": 2}],
            [_line("S1", "1109 al", 3.0)],
            [],
            ReferenceIndex.build([]),
            today=TODAY,
        )
        matched = _by_kind(result, "matched")
        self.assertEqual([record.item_id for record in matched], ["1109AL"])


if __name__ == "__main__":
    unittest.main()
