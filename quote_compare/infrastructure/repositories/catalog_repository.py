from __future__ import annotations

from typing import Dict, Iterable

from quote_compare.infrastructure.repositories.base import BaseRepository


class CatalogRepository(BaseRepository):
    def get_inquiry(self, db, inquiry_id: int) -> dict | None:
        row = db.execute(
            """
            SELECT id, title, status, created_at, updated_at
            FROM inquiries
            WHERE id = ?
            LIMIT 1
            """,
            (inquiry_id,),
        ).fetchone()
        return dict(row) if row else None

    def get_inquiry_items(self, db, inquiry_id: int) -> list[dict]:
        rows = db.execute(
            """
            SELECT ii.id AS inquiry_item_id, ii.item_id, ii.requested_qty, ii.excel_row_index,
                   COALESCE(ii.retail_price, i.retail_price) AS retail_price, i.import_markup
            FROM inquiry_items ii
            LEFT JOIN items i ON i.item_id = ii.item_id
            WHERE ii.inquiry_id = ?
            ORDER BY ii.excel_row_index ASC, ii.id ASC
            """,
            (inquiry_id,),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def get_item(self, db, item_id: str) -> dict | None:
        row = db.execute(
            """
            SELECT item_id, hebrew_description, english_description, stock_qty,
                   sold_this_year, retail_price, import_markup
            FROM items
            WHERE item_id = ?
            LIMIT 1
            """,
            (item_id,),
        ).fetchone()
        return dict(row) if row else None

    def supplier_names(self, db, supplier_ids: Iterable[str]) -> Dict[str, str]:
        ids = [self.db_id(value) for value in dict.fromkeys(supplier_ids)]
        if not ids:
            return {}
        rows = db.execute(
            f"SELECT id, name FROM suppliers WHERE id IN ({self.placeholders(ids)})",
            ids,
        ).fetchall()
        return {str(row["id"]): str(row["name"]) for row in rows}

    def set_inquiry_status(self, db, inquiry_id: int, status: str) -> None:
        db.execute(
            "UPDATE inquiries SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (status, inquiry_id),
        )
