from __future__ import annotations

from quote_compare.db import get_db


RESPONSE_DAY = "2024-01-05"


def seed_comparison_inquiry(app) -> int:
    """Two suppliers, one reference change and one promotion over a three item inquiry.

    Supplier 1 quotes X1 9.00, X4 4.00 and X2-NEW (replacing X2) 7.00.
    Supplier 2 quotes X1 9.00 and has promotion 1 on X2 at 6.50.
    """
    with app.app_context():
        db = get_db()
        db.execute("INSERT INTO suppliers (id, name) VALUES (1, 'Alfa'), (2, 'Beta')")
        db.execute("INSERT INTO items (item_id, english_description, retail_price) VALUES ('X2', 'Original', 12.0)")
        db.execute("INSERT INTO inquiries (id, title) VALUES (1, 'Test inquiry')")
        for row_index, (item_id, qty) in enumerate((("X1", 5), ("X2", 3), ("X4", 2))):
            db.execute(
                "INSERT INTO inquiry_items (inquiry_id, item_id, requested_qty, excel_row_index) VALUES (1, ?, ?, ?)",
                (item_id, qty, row_index),
            )
        for supplier_id, item_id, price in ((1, "X1", 9.0), (1, "X4", 4.0), (1, "X2-NEW", 7.0), (2, "X1", 9.0)):
            db.execute(
                """
                INSERT INTO supplier_responses (inquiry_id, supplier_id, item_id, price_quoted, response_date, status)
                VALUES (1, ?, ?, ?, ?, 'received')
                """,
                (supplier_id, item_id, price, RESPONSE_DAY),
            )
        db.execute(
            """
            INSERT INTO item_reference_changes (original_item_id, new_reference_id, change_date, source, supplier_id)
            VALUES ('X2', 'X2-NEW', ?, 'supplier', 1)
            """,
            (RESPONSE_DAY,),
        )
        db.execute(
            """
            INSERT INTO promotions (id, supplier_id, name, start_date, end_date, is_active)
            VALUES (1, 2, 'Promo X2', '2024-01-01', '2099-12-31', 1)
            """
        )
        db.execute("INSERT INTO promotion_items (promotion_id, item_id, promotion_price) VALUES (1, 'X2', 6.5)")
        db.commit()
    return 1
