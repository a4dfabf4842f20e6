from __future__ import annotations

from typing import Dict, Iterable, List

from quote_compare.domain.models import ReferenceChangeEvent
from quote_compare.infrastructure.repositories.base import BaseRepository


_EVENT_COLUMNS = """
    id AS change_id, original_item_id, new_reference_id, change_date, source, supplier_id, notes
"""


class ReferenceRepository(BaseRepository):
    def get_reference_events(self, db, item_ids: Iterable[str] | None = None) -> list[dict]:
        """Reference log in insertion order, optionally scoped to the given items.

        Scoping keeps every event of each original that touches the items, so the
        latest-event fold sees the same history it would see over the full log.
        """
        if item_ids is None:
            rows = db.execute(f"SELECT {_EVENT_COLUMNS} FROM item_reference_changes ORDER BY id ASC").fetchall()
            return self.rows_to_dicts(rows)

        ids = list(dict.fromkeys(item_ids))
        if not ids:
            return []
        marks = self.placeholders(ids)
        pointing = db.execute(
            f"SELECT DISTINCT original_item_id FROM item_reference_changes WHERE new_reference_id IN ({marks})",
            ids,
        ).fetchall()
        originals = list(dict.fromkeys(ids + [str(row["original_item_id"]) for row in pointing]))
        rows = db.execute(
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM item_reference_changes
            WHERE original_item_id IN ({self.placeholders(originals)})
            ORDER BY id ASC
            """,
            originals,
        ).fetchall()
        return self.rows_to_dicts(rows)

    def latest_for(self, db, original_item_id: str) -> dict | None:
        row = db.execute(
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM item_reference_changes
            WHERE original_item_id = ?
            ORDER BY change_date DESC, id DESC
            LIMIT 1
            """,
            (original_item_id,),
        ).fetchone()
        return dict(row) if row else None

    def add_reference_change(self, db, event: ReferenceChangeEvent) -> int:
        cursor = db.execute(
            """
            INSERT INTO item_reference_changes (
                original_item_id, new_reference_id, change_date, source, supplier_id, notes
            )
            VALUES (?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                event.original_item_id,
                event.new_reference_id,
                event.change_date.isoformat(),
                event.source,
                self.db_id(event.supplier_id) if event.supplier_id else None,
                event.notes,
            ),
        )
        return self.inserted_id(cursor)

    def removable_self_references(self, db) -> List[int]:
        """Self-reference rows whose deletion leaves every active change unchanged.

        A self-reference that is the latest event of an item with older changes
        is what keeps those older changes inactive, so it stays.
        """
        rows = db.execute(
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM item_reference_changes
            WHERE original_item_id IN (
                SELECT original_item_id FROM item_reference_changes WHERE original_item_id = new_reference_id
            )
            ORDER BY change_date ASC, id ASC
            """
        ).fetchall()
        history: Dict[str, List[dict]] = {}
        for row in rows:
            history.setdefault(str(row["original_item_id"]), []).append(dict(row))

        removable: List[int] = []
        for events in history.values():
            latest = events[-1]
            has_real_change = any(event["original_item_id"] != event["new_reference_id"] for event in events[:-1])
            for event in events:
                if event["original_item_id"] != event["new_reference_id"]:
                    continue
                if event is latest and has_real_change:
                    continue
                removable.append(int(event["change_id"]))
        return removable

    def delete_reference_changes(self, db, change_ids: Iterable[int]) -> int:
        ids = list(change_ids)
        if not ids:
            return 0
        db.execute(f"DELETE FROM item_reference_changes WHERE id IN ({self.placeholders(ids)})", ids)
        return len(ids)
