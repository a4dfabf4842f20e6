from __future__ import annotations

import re
from datetime import date, datetime, timezone


_DATE_PREFIX = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")


def to_calendar_date(value: object | None) -> date | None:
    """Reduce a date-like value to its calendar day; time of day is ignored."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    match = _DATE_PREFIX.match(raw)
    if not match:
        return None
    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def iso_day(value: date | None) -> str | None:
    return value.isoformat() if value else None
