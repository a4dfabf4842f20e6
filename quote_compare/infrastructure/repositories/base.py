from __future__ import annotations

import contextlib
import logging
from typing import Any, Iterable, Sequence

from quote_compare.db import DB_ERRORS
from quote_compare.errors import StoreError


LOGGER = logging.getLogger("quote_compare.store")


@contextlib.contextmanager
def store_access(operation: str):
    """Surface driver failures as StoreError, the only hard error of a fetch."""
    try:
        yield
    except DB_ERRORS as exc:
        LOGGER.error("store_access_failed", extra={"operation": operation, "details": str(exc)})
        raise StoreError(details=f"{operation}: {exc}") from exc


class BaseRepository:
    @staticmethod
    def placeholders(values: Sequence[Any]) -> str:
        return ", ".join("?" for _ in values)

    @staticmethod
    def rows_to_dicts(rows: Iterable[Any]) -> list[dict]:
        return [dict(row) for row in rows]

    @staticmethod
    def inserted_id(cursor) -> int:
        row = cursor.fetchone()
        return int(row["id"] if isinstance(row, dict) else row[0])

    @staticmethod
    def db_id(value: Any) -> Any:
        text = str(value if value is not None else "").strip()
        return int(text) if text.isdigit() else text
