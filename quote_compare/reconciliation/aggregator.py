from __future__ import annotations

from datetime import date
from typing import Dict, Iterable, List, Mapping, Tuple

from quote_compare.domain.models import (
    KIND_EXTRA,
    KIND_MATCHED,
    KIND_MISSING,
    KIND_PROMOTION,
    KIND_REPLACEMENT,
    ClassifiedResponse,
    ReplacementEntry,
    SupplierDateSummary,
)


def aggregate(
    classified: Iterable[ClassifiedResponse],
    *,
    supplier_names: Mapping[str, str] | None = None,
) -> List[SupplierDateSummary]:
    """Per supplier list and day statistics for the response-list view.

    Regular lists group by ``(supplier, date)``; each promotion gets its own
    summary. Counts use distinct item ids.
    """
    names = supplier_names or {}
    buckets: Dict[Tuple[str, date, str], List[ClassifiedResponse]] = {}
    for record in classified:
        buckets.setdefault((record.supplier_id, record.response_date, record.group_key), []).append(record)

    summaries = [
        _summarize(supplier_id, day, group_key, records, names.get(supplier_id) or supplier_id)
        for (supplier_id, day, group_key), records in buckets.items()
    ]
    summaries.sort(key=lambda summary: (-summary.date.toordinal(), summary.supplier_name.lower(), summary.group_key))
    return summaries


def _distinct(records: Iterable[ClassifiedResponse], *kinds: str) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(record.item_id for record in records if record.kind in kinds))


def _summarize(
    supplier_id: str,
    day: date,
    group_key: str,
    records: List[ClassifiedResponse],
    supplier_name: str,
) -> SupplierDateSummary:
    matched = _distinct(records, KIND_MATCHED, KIND_PROMOTION)
    extra = _distinct(records, KIND_EXTRA)
    missing = _distinct(records, KIND_MISSING)

    replacements: Dict[str, ReplacementEntry] = {}
    for record in records:
        if record.kind != KIND_REPLACEMENT or record.item_id in replacements:
            continue
        replacements[record.item_id] = ReplacementEntry(
            item_id=record.item_id,
            inquiry_item_id=record.effective_item_id,
            replacement_target_id=record.replacement_target_id,
        )

    submitted = set(matched) | set(extra) | set(replacements)
    promotion = next((record for record in records if record.promotion_id), None)
    return SupplierDateSummary(
        supplier_id=supplier_id,
        supplier_name=supplier_name,
        date=day,
        group_key=group_key,
        is_promotion=promotion is not None,
        total_count=len(submitted),
        matched_count=len(matched),
        extra_count=len(extra),
        replacement_count=len(replacements),
        missing_count=len(missing),
        matched_items=matched,
        extra_items=extra,
        missing_items=missing,
        replacement_items=tuple(replacements.values()),
        promotion_id=promotion.promotion_id if promotion else None,
        promotion_name=promotion.promotion_name if promotion else None,
    )
