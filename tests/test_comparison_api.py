import sqlite3
import unittest

from quote_compare import create_app
from quote_compare.config import Config
from quote_compare.db import close_db
from quote_compare.ui_strings import error_message
from tests.helpers.seed_data import seed_comparison_inquiry
from tests.helpers.temp_db import TempDbSandbox


class _ApiConfig(Config):
    TESTING = True
    PROPAGATE_EXCEPTIONS = False
    LOG_JSON = False


class ComparisonApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="comparison_api")
        self.app = create_app(self._temp_db.make_config(_ApiConfig))
        self.client = self.app.test_client()
        self.inquiry_id = seed_comparison_inquiry(self.app)

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()

    def _query(self, sql: str, params: tuple = ()) -> list:
        conn = sqlite3.connect(self._temp_db.db_path)
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    def test_response_summary_groups_by_supplier_and_day(self) -> None:
        response = self.client.get(f"/api/inquiries/{self.inquiry_id}/responses/summary")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()

        summaries = payload["summaries"]
        self.assertEqual(
            [(summary["supplierName"], summary["groupKey"], summary["date"]) for summary in summaries],
            [("Alfa", "1-regular", "2024-01-05"), ("Beta", "2-regular", "2024-01-05"), ("Beta", "2-1", "2024-01-01")],
        )
        alfa = summaries[0]
        self.assertEqual(alfa["totalCount"], 3)
        self.assertEqual(alfa["replacementCount"], 1)
        self.assertEqual(alfa["replacementItems"][0]["inquiryItemId"], "X2")
        self.assertEqual(alfa["extraCount"], 0)

        beta = summaries[1]
        self.assertEqual(beta["missingItems"], ["X2", "X4"])
        promo = summaries[2]
        self.assertTrue(promo["isPromotion"])
        self.assertEqual(promo["promotionName"], "Promo X2")
        self.assertEqual(promo["matchedCount"], 1)

    def test_comparison_with_price_override(self) -> None:
        response = self.client.post(
            f"/api/inquiries/{self.inquiry_id}/comparison",
            json={"priceOverrides": [{"itemId": "X4", "groupKey": "2-regular", "price": 3.0}]},
        )
        self.assertEqual(response.status_code, 200)
        results = {result["itemId"]: result for result in response.get_json()["results"]}

        self.assertEqual(results["X1"]["winningSupplierKeys"], ["1-regular", "2-regular"])
        self.assertEqual(results["X1"]["deltaLabels"], {"1-regular": "0.00%", "2-regular": "0.00%"})
        self.assertEqual(results["X4"]["bestPrice"], 3.0)
        self.assertEqual(results["X4"]["winningSupplierKeys"], ["2-regular"])
        self.assertEqual(results["X4"]["deltaLabels"]["1-regular"], "+33.33%")
        self.assertEqual(results["X2"]["winningSupplierKeys"], ["2-1"])
        self.assertEqual(results["X2"]["perSupplierPrice"]["1-regular"], 7.0)

    def test_comparison_skips_deleted_responses_and_reports_retail_discount(self) -> None:
        conn = sqlite3.connect(self._temp_db.db_path)
        try:
            conn.execute(
                """
                INSERT INTO supplier_responses (inquiry_id, supplier_id, item_id, price_quoted, response_date, status)
                VALUES (1, 2, 'X4', 1.0, '2024-01-05', 'deleted')
                """
            )
            conn.execute("UPDATE items SET retail_price = 100.0, import_markup = 1.0 WHERE item_id = 'X2'")
            conn.commit()
        finally:
            conn.close()

        response = self.client.post(f"/api/inquiries/{self.inquiry_id}/comparison", json={})
        self.assertEqual(response.status_code, 200)
        results = {result["itemId"]: result for result in response.get_json()["results"]}

        self.assertEqual(results["X4"]["bestPrice"], 4.0)
        self.assertEqual(results["X4"]["winningSupplierKeys"], ["1-regular"])
        self.assertAlmostEqual(results["X2"]["retailDiscount"]["1-regular"], 72.35, places=2)
        self.assertIsNone(results["X1"]["retailDiscount"]["1-regular"])

    def test_comparison_with_inactive_groups(self) -> None:
        response = self.client.post(
            f"/api/inquiries/{self.inquiry_id}/comparison",
            json={"activeGroups": ["2-regular"]},
        )
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        results = {result["itemId"]: result for result in payload["results"]}
        self.assertIsNone(results["X4"]["bestPrice"])
        codes = [diagnostic["code"] for diagnostic in payload["diagnostics"]]
        self.assertIn("no_valid_price", codes)

    def test_order_preview_reports_unfulfillable_items(self) -> None:
        response = self.client.post(
            f"/api/inquiries/{self.inquiry_id}/orders/preview",
            json={"selectedGroups": ["1-regular"]},
        )
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual([line["itemId"] for line in payload["orders"]["1"]], ["X1", "X4"])
        self.assertEqual(payload["unfulfillable"], [
            {"itemId": "X2", "reason": "no_selected_winner", "bestPrice": 6.5, "winningSupplierKeys": ["2-1"]}
        ])

    def test_order_preview_requires_selected_groups(self) -> None:
        response = self.client.post(f"/api/inquiries/{self.inquiry_id}/orders/preview", json={})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "validation_error")

    def test_session_edit_and_commit_creates_orders(self) -> None:
        opened = self.client.post(f"/api/inquiries/{self.inquiry_id}/comparison-sessions")
        self.assertEqual(opened.status_code, 201)
        session = opened.get_json()
        session_id = session["sessionId"]
        self.assertEqual(session["status"], "loaded")
        self.assertEqual(session["activeGroups"], ["1-regular", "2-1", "2-regular"])

        edited = self.client.patch(
            f"/api/comparison-sessions/{session_id}",
            json={"edits": [{"type": "set_price", "itemId": "X4", "groupKey": "2-regular", "price": 3.0}]},
        )
        self.assertEqual(edited.status_code, 200)
        results = {result["itemId"]: result for result in edited.get_json()["results"]}
        self.assertEqual(results["X4"]["winningSupplierKeys"], ["2-regular"])

        committed = self.client.post(f"/api/comparison-sessions/{session_id}/orders", json={})
        self.assertEqual(committed.status_code, 201)
        payload = committed.get_json()
        self.assertEqual(payload["status"], "committed")
        created = {order["supplierId"]: order for order in payload["createdOrders"]}
        self.assertEqual(created["1"]["totalValue"], 45.0)
        self.assertEqual(created["2"]["lineCount"], 2)
        self.assertEqual(created["2"]["totalValue"], 25.5)

        self.assertEqual(self._query("SELECT COUNT(*) FROM orders WHERE inquiry_id = 1")[0][0], 2)
        self.assertEqual(self._query("SELECT COUNT(*) FROM order_items")[0][0], 3)
        self.assertEqual(self._query("SELECT status FROM inquiries WHERE id = 1")[0][0], "ordered")

        again = self.client.post(f"/api/comparison-sessions/{session_id}/orders", json={})
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.get_json()["error"], "session_committed")

        snapshot = self.client.get(f"/api/comparison-sessions/{session_id}")
        self.assertEqual(snapshot.status_code, 200)
        self.assertEqual(snapshot.get_json()["status"], "committed")
        self.assertIsNotNone(snapshot.get_json()["orders"])

    def test_invalid_session_edit(self) -> None:
        opened = self.client.post(f"/api/inquiries/{self.inquiry_id}/comparison-sessions")
        session_id = opened.get_json()["sessionId"]

        response = self.client.patch(f"/api/comparison-sessions/{session_id}", json={"edits": [{"type": "explode"}]})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "edit_invalid")

        empty = self.client.patch(f"/api/comparison-sessions/{session_id}", json={"edits": []})
        self.assertEqual(empty.status_code, 400)

    def test_unknown_inquiry_and_session(self) -> None:
        response = self.client.get("/api/inquiries/999/responses/summary")
        self.assertEqual(response.status_code, 404)
        payload = response.get_json()
        self.assertEqual(payload["error"], "inquiry_not_found")
        self.assertEqual(payload["message"], error_message("inquiry_not_found"))

        missing = self.client.get("/api/comparison-sessions/nope")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.get_json()["error"], "session_not_found")

    def test_reference_change_lifecycle(self) -> None:
        created = self.client.post(
            "/api/reference-changes",
            json={"originalItemId": "x4", "newReferenceId": "X4-B", "changeDate": "2024-01-06"},
        )
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.get_json()["status"], "created")
        self.assertEqual(created.get_json()["change"]["originalItemId"], "X4")

        repeated = self.client.post(
            "/api/reference-changes",
            json={"originalItemId": "X4", "newReferenceId": "X4-B"},
        )
        self.assertEqual(repeated.status_code, 200)
        self.assertEqual(repeated.get_json()["status"], "exists")

        itself = self.client.post("/api/reference-changes", json={"originalItemId": "X4", "newReferenceId": "x4"})
        self.assertEqual(itself.status_code, 400)
        self.assertEqual(itself.get_json()["error"], "reference_self")

        invalid = self.client.post(
            "/api/reference-changes",
            json={"originalItemId": "X4", "newReferenceId": "X4-C", "source": "robot"},
        )
        self.assertEqual(invalid.status_code, 400)
        self.assertEqual(invalid.get_json()["error"], "reference_invalid")

        summary = self.client.get(f"/api/inquiries/{self.inquiry_id}/responses/summary").get_json()
        alfa = summary["summaries"][0]
        self.assertEqual(alfa["replacementCount"], 2)

    def test_item_references(self) -> None:
        response = self.client.get("/api/items/X2/references")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["resolvesTo"], "X2-NEW")
        self.assertEqual(payload["replacedBy"], "X2-NEW")
        self.assertEqual(payload["chain"], {"itemIds": ["X2", "X2-NEW"], "cyclic": False})
        self.assertEqual(payload["item"]["englishDescription"], "Original")

        target = self.client.get("/api/items/X2-NEW/references").get_json()
        self.assertEqual(target["replaces"], ["X2"])
        self.assertIsNone(target["replacedBy"])
        self.assertIsNone(target["item"])

    def test_cleanup_self_references(self) -> None:
        rows = (
            ("X9", "X9", "2024-01-01"),
            ("X8", "X9", "2024-01-01"),
            ("X8", "X8", "2024-01-02"),
            ("X7", "X7", "2024-01-01"),
            ("X7", "X6", "2024-01-02"),
        )
        conn = sqlite3.connect(self._temp_db.db_path)
        try:
            conn.executemany(
                "INSERT INTO item_reference_changes (original_item_id, new_reference_id, change_date) VALUES (?, ?, ?)",
                rows,
            )
            conn.commit()
        finally:
            conn.close()

        response = self.client.post("/api/reference-changes/cleanup")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["removed"], 2)

        remaining = self._query(
            "SELECT original_item_id, new_reference_id FROM item_reference_changes WHERE original_item_id LIKE 'X_' ORDER BY id"
        )
        self.assertIn(("X8", "X8"), remaining)
        self.assertNotIn(("X9", "X9"), remaining)
        self.assertNotIn(("X7", "X7"), remaining)

    def test_request_id_is_echoed(self) -> None:
        response = self.client.get(
            f"/api/inquiries/{self.inquiry_id}/responses/summary",
            headers={"X-Request-Id": "req-abc"},
        )
        self.assertEqual(response.headers.get("X-Request-Id"), "req-abc")


if __name__ == "__main__":
    unittest.main()
