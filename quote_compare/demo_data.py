from __future__ import annotations

from datetime import date, timedelta

from quote_compare.dates import today_utc


_DEMO_SUPPLIERS = (
    ("Alfa Supplies", "alfa@example.com"),
    ("Beta Trading", "beta@example.com"),
)

_DEMO_ITEMS = (
    ("ITEM-001", "Hex bolt M8", 120.0, 12.5),
    ("ITEM-002", "Flat washer 8mm", 400.0, 1.2),
    ("ITEM-003", "Lock nut M8", 250.0, 2.1),
    ("ITEM-003B", "Lock nut M8 (new reference)", 0.0, 2.0),
)


def _insert_returning_id(db, sql: str, params: tuple) -> int:
    row = db.execute(sql + " RETURNING id", params).fetchone()
    return int(row["id"] if isinstance(row, dict) else row[0])


def seed_demo_inquiry(db, *, today: date | None = None) -> int:
    """Create one inquiry with two suppliers, a promotion and a reference change."""
    today = today or today_utc()
    yesterday = today - timedelta(days=1)

    supplier_ids = [
        _insert_returning_id(db, "INSERT INTO suppliers (name, email) VALUES (?, ?)", (name, email))
        for name, email in _DEMO_SUPPLIERS
    ]
    alfa, beta = supplier_ids

    for item_id, description, stock_qty, retail_price in _DEMO_ITEMS:
        existing = db.execute("SELECT item_id FROM items WHERE item_id = ?", (item_id,)).fetchone()
        if existing:
            continue
        db.execute(
            """
            INSERT INTO items (item_id, english_description, stock_qty, retail_price)
            VALUES (?, ?, ?, ?)
            """,
            (item_id, description, stock_qty, retail_price),
        )

    inquiry_id = _insert_returning_id(
        db,
        "INSERT INTO inquiries (title, status) VALUES (?, 'open')",
        (f"Demo inquiry {today.isoformat()}",),
    )
    for row_index, (item_id, qty) in enumerate((("ITEM-001", 10), ("ITEM-002", 50), ("ITEM-003", 20))):
        db.execute(
            """
            INSERT INTO inquiry_items (inquiry_id, item_id, requested_qty, excel_row_index)
            VALUES (?, ?, ?, ?)
            """,
            (inquiry_id, item_id, qty, row_index),
        )

    responses = (
        (alfa, "ITEM-001", 10.0, today),
        (alfa, "ITEM-002", 1.0, today),
        (beta, "ITEM-001", 10.004, yesterday),
        (beta, "ITEM-002", 0.9, yesterday),
        (beta, "ITEM-003B", 1.8, yesterday),
    )
    for supplier_id, item_id, price, response_date in responses:
        db.execute(
            """
            INSERT INTO supplier_responses (inquiry_id, supplier_id, item_id, price_quoted, response_date, status)
            VALUES (?, ?, ?, ?, ?, 'received')
            """,
            (inquiry_id, supplier_id, item_id, price, response_date.isoformat()),
        )

    db.execute(
        """
        INSERT INTO item_reference_changes (original_item_id, new_reference_id, change_date, source, supplier_id, notes)
        VALUES (?, ?, ?, 'supplier', ?, ?)
        """,
        ("ITEM-003", "ITEM-003B", yesterday.isoformat(), beta, "Reference replaced by the supplier"),
    )

    promotion_id = _insert_returning_id(
        db,
        "INSERT INTO promotions (supplier_id, name, start_date, end_date, is_active) VALUES (?, ?, ?, ?, TRUE)",
        (alfa, "Washer promotion", yesterday.isoformat(), (today + timedelta(days=30)).isoformat()),
    )
    db.execute(
        "INSERT INTO promotion_items (promotion_id, item_id, promotion_price) VALUES (?, ?, ?)",
        (promotion_id, "ITEM-002", 0.85),
    )
    return inquiry_id
