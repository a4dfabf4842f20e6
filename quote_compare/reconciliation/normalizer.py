from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from quote_compare.dates import today_utc
from quote_compare.domain.models import (
    KIND_EXTRA,
    KIND_MATCHED,
    KIND_MISSING,
    KIND_PROMOTION,
    KIND_REPLACEMENT,
    RESPONSE_STATUS_DELETED,
    ClassifiedResponse,
    Diagnostic,
    InquiryItem,
    PromotionItem,
    SupplierResponseLine,
)
from quote_compare.errors import DataError
from quote_compare.item_ids import clean_item_id
from quote_compare.reconciliation.references import ReferenceIndex


LOGGER = logging.getLogger("quote_compare.normalizer")

DUPLICATE_POLICIES = ("lowest_price", "first_seen", "last_seen")

_UNLISTED_ROW = 10**9


@dataclass(frozen=True)
class NormalizationResult:
    classified: Tuple[ClassifiedResponse, ...]
    diagnostics: Tuple[Diagnostic, ...] = ()
    inquiry_items: Tuple[InquiryItem, ...] = ()
    duplicates_dropped: int = 0
    deleted_skipped: int = 0

    def kind_counts(self) -> Dict[str, int]:
        return dict(Counter(record.kind for record in self.classified))

    def diagnostic_counts(self) -> Dict[str, int]:
        return dict(Counter(diagnostic.kind for diagnostic in self.diagnostics))


@dataclass(frozen=True)
class _Candidate:
    line: SupplierResponseLine
    kind: str
    covers: str | None
    target: str | None


def normalize(
    inquiry_items: Iterable[Any],
    response_lines: Iterable[Any],
    promotion_items: Iterable[Any],
    reference_index: ReferenceIndex,
    *,
    today: date | None = None,
    duplicate_policy: str = "lowest_price",
    clean_ids: bool = True,
) -> NormalizationResult:
    """Classify supplier lines against the inquiry item list.

    Every line ends up as exactly one matched, promotion, replacement or extra
    record inside its ``(group key, calendar date)`` bucket, and each bucket gets
    one missing record per inquiry item it left uncovered. Bad records become
    diagnostics instead of aborting the batch.
    """
    if duplicate_policy not in DUPLICATE_POLICIES:
        raise ValueError(f"unknown duplicate policy: {duplicate_policy}")
    day = today or today_utc()
    diagnostics: List[Diagnostic] = []

    inquiry = _parse_inquiry_items(inquiry_items, diagnostics, clean_ids)
    deleted: List[SupplierResponseLine] = []
    lines = _parse_response_lines(response_lines, diagnostics, clean_ids, deleted)
    lines.extend(_active_promotion_lines(promotion_items, day, diagnostics, clean_ids))

    kept, dropped = _deduplicate(lines, duplicate_policy)

    buckets: Dict[Tuple[str, date], List[SupplierResponseLine]] = {}
    for line in kept:
        buckets.setdefault((line.group_key, line.response_date), []).append(line)

    classified: List[ClassifiedResponse] = []
    for bucket_key in sorted(buckets):
        classified.extend(_classify_bucket(buckets[bucket_key], inquiry, reference_index))

    row_order = {item_id: item.excel_row_index for item_id, item in inquiry.items()}
    classified.sort(
        key=lambda record: (
            record.group_key,
            record.response_date,
            row_order.get(record.effective_item_id, _UNLISTED_ROW),
            record.item_id,
            record.kind,
        )
    )
    return NormalizationResult(
        classified=tuple(classified),
        diagnostics=tuple(diagnostics),
        inquiry_items=tuple(inquiry.values()),
        duplicates_dropped=dropped,
        deleted_skipped=len(deleted),
    )


def _record_error(diagnostics: List[Diagnostic], exc: DataError, source: str, position: int) -> None:
    diagnostics.append(
        Diagnostic(kind=exc.kind, code=exc.code, message=exc.message, context={**exc.context, "source": source, "position": position})
    )
    LOGGER.warning(
        "response_line_skipped",
        extra={"error_code": exc.code, "record_source": source, "position": position},
    )


def _parse_inquiry_items(raw_items: Iterable[Any], diagnostics: List[Diagnostic], clean_ids: bool) -> Dict[str, InquiryItem]:
    parsed: List[InquiryItem] = []
    for position, raw in enumerate(raw_items or ()):
        try:
            item = raw if isinstance(raw, InquiryItem) else InquiryItem.from_dict(raw)
        except DataError as exc:
            _record_error(diagnostics, exc, "inquiry_item", position)
            continue
        if clean_ids:
            item = InquiryItem(
                inquiry_item_id=item.inquiry_item_id,
                item_id=clean_item_id(item.item_id),
                requested_qty=item.requested_qty,
                excel_row_index=item.excel_row_index,
                retail_price=item.retail_price,
                import_markup=item.import_markup,
            )
        parsed.append(item)

    # Rows sharing an item id collapse onto the first row in sheet order.
    inquiry: Dict[str, InquiryItem] = {}
    for item in sorted(parsed, key=lambda entry: entry.excel_row_index):
        inquiry.setdefault(item.item_id, item)
    return inquiry


def _parse_response_lines(
    raw_lines: Iterable[Any],
    diagnostics: List[Diagnostic],
    clean_ids: bool,
    deleted: List[SupplierResponseLine],
) -> List[SupplierResponseLine]:
    lines: List[SupplierResponseLine] = []
    for position, raw in enumerate(raw_lines or ()):
        try:
            line = raw if isinstance(raw, SupplierResponseLine) else SupplierResponseLine.from_dict(raw)
            line = _validated(line, clean_ids)
        except DataError as exc:
            _record_error(diagnostics, exc, "response", position)
            continue
        if line.status.strip().lower() == RESPONSE_STATUS_DELETED:
            deleted.append(line)
            LOGGER.debug(
                "deleted_response_skipped",
                extra={"supplier_id": line.supplier_id, "item_id": line.item_id, "position": position},
            )
            continue
        lines.append(line)
    return lines


def _active_promotion_lines(
    raw_promotions: Iterable[Any],
    day: date,
    diagnostics: List[Diagnostic],
    clean_ids: bool,
) -> List[SupplierResponseLine]:
    lines: List[SupplierResponseLine] = []
    for position, raw in enumerate(raw_promotions or ()):
        try:
            promotion = raw if isinstance(raw, PromotionItem) else PromotionItem.from_dict(raw)
        except DataError as exc:
            _record_error(diagnostics, exc, "promotion", position)
            continue
        if not promotion.is_valid_on(day):
            continue
        try:
            lines.append(_validated(promotion.to_response_line(day), clean_ids))
        except DataError as exc:
            _record_error(diagnostics, exc, "promotion", position)
    return lines


def _validated(line: SupplierResponseLine, clean_ids: bool) -> SupplierResponseLine:
    # Lines built in code skip from_dict, so the price rule is enforced here too.
    if not line.supplier_id:
        raise DataError("missing_supplier", "response line without supplier", item_id=line.item_id)
    if line.price_quoted is None or not line.price_quoted > 0:
        raise DataError(
            "invalid_price",
            "quoted price is not a positive number",
            supplier_id=line.supplier_id,
            item_id=line.item_id,
        )
    if not clean_ids:
        return line
    cleaned = clean_item_id(line.item_id)
    if not cleaned:
        raise DataError("missing_item_id", "response line without item id", supplier_id=line.supplier_id)
    if cleaned == line.item_id:
        return line
    return SupplierResponseLine(
        supplier_id=line.supplier_id,
        item_id=cleaned,
        price_quoted=line.price_quoted,
        response_date=line.response_date,
        status=line.status,
        is_promotion=line.is_promotion,
        promotion_name=line.promotion_name,
        notes=line.notes,
        promotion_id=line.promotion_id,
        response_id=line.response_id,
    )


def _deduplicate(lines: Sequence[SupplierResponseLine], policy: str) -> Tuple[List[SupplierResponseLine], int]:
    chosen: Dict[Tuple[str, str, date], SupplierResponseLine] = {}
    dropped = 0
    for line in lines:
        key = (line.group_key, line.item_id, line.response_date)
        current = chosen.get(key)
        if current is None:
            chosen[key] = line
            continue
        dropped += 1
        if policy == "last_seen" or (policy == "lowest_price" and line.price_quoted < current.price_quoted):
            loser, chosen[key] = current, line
        else:
            loser = line
        LOGGER.debug(
            "duplicate_response_dropped",
            extra={
                "group_key": key[0],
                "item_id": key[1],
                "response_date": key[2].isoformat(),
                "dropped_price": loser.price_quoted,
                "policy": policy,
            },
        )
    return list(chosen.values()), dropped


def _classify_bucket(
    lines: List[SupplierResponseLine],
    inquiry: Dict[str, InquiryItem],
    index: ReferenceIndex,
) -> List[ClassifiedResponse]:
    quoted_ids = {line.item_id for line in lines}
    direct: List[_Candidate] = []
    replacements: List[_Candidate] = []
    extras: List[_Candidate] = []

    for line in lines:
        raw = line.item_id
        effective = index.resolve(raw)
        if raw in inquiry:
            if effective != raw and not (effective in inquiry and effective in quoted_ids):
                replacements.append(_Candidate(line, KIND_REPLACEMENT, covers=raw, target=effective))
            else:
                kind = KIND_PROMOTION if line.is_promotion else KIND_MATCHED
                direct.append(_Candidate(line, kind, covers=raw, target=None))
            continue

        originals = sorted(
            (original for original in index.incoming_references(raw) if original in inquiry),
            key=lambda original: (inquiry[original].excel_row_index, original),
        )
        if originals:
            replacements.append(_Candidate(line, KIND_REPLACEMENT, covers=originals[0], target=raw))
        elif effective != raw and effective in inquiry:
            replacements.append(_Candidate(line, KIND_REPLACEMENT, covers=effective, target=raw))
        else:
            extras.append(_Candidate(line, KIND_EXTRA, covers=None, target=None))

    covered = {candidate.covers for candidate in direct}
    replacements.sort(key=lambda candidate: (inquiry[candidate.covers].excel_row_index, candidate.line.item_id))
    for candidate in replacements:
        if candidate.covers in covered:
            extras.append(_Candidate(candidate.line, KIND_EXTRA, covers=None, target=None))
            continue
        covered.add(candidate.covers)
        direct.append(candidate)

    sample = lines[0]
    records = [_to_record(candidate, index) for candidate in direct + extras]
    for item_id in inquiry:
        if item_id in covered:
            continue
        records.append(
            ClassifiedResponse(
                item_id=item_id,
                supplier_id=sample.supplier_id,
                response_date=sample.response_date,
                kind=KIND_MISSING,
                effective_item_id=item_id,
                group_key=sample.group_key,
                promotion_id=sample.promotion_id if sample.is_promotion else None,
                promotion_name=sample.promotion_name if sample.is_promotion else None,
            )
        )
    return records


def _to_record(candidate: _Candidate, index: ReferenceIndex) -> ClassifiedResponse:
    line = candidate.line
    effective = candidate.covers if candidate.covers is not None else index.resolve(line.item_id)
    return ClassifiedResponse(
        item_id=line.item_id,
        supplier_id=line.supplier_id,
        response_date=line.response_date,
        kind=candidate.kind,
        effective_item_id=effective,
        group_key=line.group_key,
        replacement_target_id=candidate.target,
        price_quoted=line.price_quoted,
        promotion_id=line.promotion_id if line.is_promotion else None,
        promotion_name=line.promotion_name if line.is_promotion else None,
    )
