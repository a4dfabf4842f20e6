from __future__ import annotations

from typing import Iterable

from quote_compare.domain.models import OrderLine
from quote_compare.infrastructure.repositories.base import BaseRepository


class OrderRepository(BaseRepository):
    def create_order(
        self,
        db,
        *,
        inquiry_id: int,
        supplier_id: str,
        lines: Iterable[OrderLine],
        session_id: str | None = None,
    ) -> int:
        lines = list(lines)
        total_value = round(sum(line.line_total for line in lines), 2)
        cursor = db.execute(
            """
            INSERT INTO orders (inquiry_id, supplier_id, status, total_value, session_id)
            VALUES (?, ?, 'draft', ?, ?)
            RETURNING id
            """,
            (inquiry_id, self.db_id(supplier_id), total_value, session_id),
        )
        order_id = self.inserted_id(cursor)
        for line in lines:
            db.execute(
                """
                INSERT INTO order_items (
                    order_id, item_id, inquiry_item_id, quantity, unit_price, group_key, promotion_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    order_id,
                    line.item_id,
                    line.inquiry_item_id,
                    line.quantity,
                    line.unit_price,
                    line.group_key,
                    line.promotion_id,
                ),
            )
        return order_id
