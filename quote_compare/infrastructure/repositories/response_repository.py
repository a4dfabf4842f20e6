from __future__ import annotations

from typing import Iterable

from quote_compare.infrastructure.repositories.base import BaseRepository


class ResponseRepository(BaseRepository):
    def get_responses(self, db, inquiry_id: int) -> list[dict]:
        rows = db.execute(
            """
            SELECT id AS response_id, supplier_id, item_id, price_quoted, response_date, status,
                   is_promotion, promotion_id, promotion_name, notes
            FROM supplier_responses
            WHERE inquiry_id = ? AND COALESCE(status, '') <> 'deleted'
            ORDER BY id ASC
            """,
            (inquiry_id,),
        ).fetchall()
        return self.rows_to_dicts(rows)

    def get_active_promotions(self, db, inquiry_id: int, extra_item_ids: Iterable[str] = ()) -> list[dict]:
        """Active promotion lines for the inquiry's items and any related reference ids.

        Validity dates are checked later against the comparison day.
        """
        extra = list(dict.fromkeys(extra_item_ids))
        clause = "pi.item_id IN (SELECT item_id FROM inquiry_items WHERE inquiry_id = ?)"
        params: list = [inquiry_id]
        if extra:
            clause = f"({clause} OR pi.item_id IN ({self.placeholders(extra)}))"
            params.extend(extra)
        rows = db.execute(
            f"""
            SELECT CAST(p.id AS TEXT) AS promotion_id, p.supplier_id, pi.item_id, pi.promotion_price,
                   p.start_date, p.end_date, p.is_active, p.name AS promotion_name
            FROM promotion_items pi
            JOIN promotions p ON p.id = pi.promotion_id
            WHERE p.is_active AND {clause}
            ORDER BY p.id ASC, pi.id ASC
            """,
            params,
        ).fetchall()
        return self.rows_to_dicts(rows)
