from __future__ import annotations

import re
from typing import Iterable, List


_LEADING_ZEROS = re.compile(r"^0000(?=\d)")
_WHITESPACE = re.compile(r"\s+")


def clean_item_id(raw: object | None) -> str:
    """Standardize a catalog id as suppliers spell it in their price lists.

    "00001109AL" -> "1109AL" (exactly four leading zeros are dropped),
    "0111AT" -> "0111AT", "ab 12.5" -> "AB125".
    """
    if raw is None:
        return ""
    value = str(raw).replace(".", "")
    value = _WHITESPACE.sub("", value)
    value = _LEADING_ZEROS.sub("", value)
    return value.upper()


def clean_item_ids(values: Iterable[object]) -> List[str]:
    return [clean_item_id(value) for value in values]


def is_clean_item_id(value: str | None) -> bool:
    if not value:
        return False
    return clean_item_id(value) == value
