from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Mapping, Tuple

from quote_compare.dates import iso_day, to_calendar_date
from quote_compare.errors import DataError


REFERENCE_SOURCES = ("supplier", "user", "inquiry_item")

KIND_MATCHED = "matched"
KIND_EXTRA = "extra"
KIND_MISSING = "missing"
KIND_REPLACEMENT = "replacement"
KIND_PROMOTION = "promotion"
CLASSIFICATION_KINDS = (KIND_MATCHED, KIND_EXTRA, KIND_MISSING, KIND_REPLACEMENT, KIND_PROMOTION)

REGULAR_GROUP_SUFFIX = "regular"

RESPONSE_STATUS_DELETED = "deleted"


def regular_group_key(supplier_id: str) -> str:
    return f"{supplier_id}-{REGULAR_GROUP_SUFFIX}"


def promotion_group_key(supplier_id: str, promotion_id: str) -> str:
    return f"{supplier_id}-{promotion_id}"


def split_group_key(group_key: str) -> Tuple[str, str | None]:
    """Return ``(supplier_id, promotion_id)``; promotion is None for regular lists."""
    raw = str(group_key or "").strip()
    supplier_id, sep, suffix = raw.rpartition("-")
    if not sep:
        return raw, None
    if suffix == REGULAR_GROUP_SUFFIX:
        return supplier_id, None
    return supplier_id, suffix


def _pick(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _optional_text(value: Any) -> str | None:
    return _text(value) or None


def _optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _flag(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in {"1", "true", "yes", "on", "t"}


def _require_mapping(payload: Any, code: str) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise DataError(code, "payload is not an object", payload_type=type(payload).__name__)
    return payload


@dataclass(frozen=True)
class Item:
    item_id: str
    hebrew_description: str = ""
    english_description: str = ""
    stock_qty: float = 0.0
    sold_this_year: float = 0.0
    retail_price: float | None = None
    import_markup: float | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Item":
        payload = _require_mapping(payload, "invalid_item")
        item_id = _text(_pick(payload, "itemId", "item_id", "id"))
        if not item_id:
            raise DataError("missing_item_id", "item without identifier")
        return cls(
            item_id=item_id,
            hebrew_description=_text(_pick(payload, "hebrewDescription", "hebrew_description")),
            english_description=_text(_pick(payload, "englishDescription", "english_description")),
            stock_qty=_optional_float(_pick(payload, "stockQty", "stock_qty")) or 0.0,
            sold_this_year=_optional_float(_pick(payload, "soldThisYear", "sold_this_year")) or 0.0,
            retail_price=_optional_float(_pick(payload, "retailPrice", "retail_price")),
            import_markup=_optional_float(_pick(payload, "importMarkup", "import_markup")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "hebrewDescription": self.hebrew_description,
            "englishDescription": self.english_description,
            "stockQty": self.stock_qty,
            "soldThisYear": self.sold_this_year,
            "retailPrice": self.retail_price,
            "importMarkup": self.import_markup,
        }


@dataclass(frozen=True)
class ReferenceChangeEvent:
    original_item_id: str
    new_reference_id: str
    change_date: date
    source: str = "user"
    supplier_id: str | None = None
    notes: str | None = None
    change_id: int | None = None

    @property
    def is_self_reference(self) -> bool:
        return self.original_item_id == self.new_reference_id

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ReferenceChangeEvent":
        payload = _require_mapping(payload, "invalid_reference_event")
        original = _text(_pick(payload, "originalItemId", "original_item_id"))
        new_reference = _text(_pick(payload, "newReferenceId", "new_reference_id"))
        if not original or not new_reference:
            raise DataError(
                "reference_ids_missing",
                "reference change without both item ids",
                original_item_id=original or None,
                new_reference_id=new_reference or None,
            )
        raw_date = _pick(payload, "changeDate", "change_date")
        change_date = to_calendar_date(raw_date)
        if change_date is None:
            raise DataError(
                "reference_date_invalid",
                "reference change date could not be parsed",
                original_item_id=original,
                change_date=_text(raw_date) or None,
            )
        source = _text(_pick(payload, "source")).lower() or "user"
        if source not in REFERENCE_SOURCES:
            raise DataError("reference_source_invalid", "unknown reference change source", source=source)
        change_id = _pick(payload, "changeId", "change_id", "id")
        return cls(
            original_item_id=original,
            new_reference_id=new_reference,
            change_date=change_date,
            source=source,
            supplier_id=_optional_text(_pick(payload, "supplierId", "supplier_id")),
            notes=_optional_text(_pick(payload, "notes")),
            change_id=int(change_id) if isinstance(change_id, int) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changeId": self.change_id,
            "originalItemId": self.original_item_id,
            "newReferenceId": self.new_reference_id,
            "changeDate": iso_day(self.change_date),
            "source": self.source,
            "supplierId": self.supplier_id,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class InquiryItem:
    inquiry_item_id: int | str
    item_id: str
    requested_qty: float
    excel_row_index: int = 0
    retail_price: float | None = None
    import_markup: float | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "InquiryItem":
        payload = _require_mapping(payload, "invalid_inquiry_item")
        item_id = _text(_pick(payload, "itemId", "item_id"))
        if not item_id:
            raise DataError("missing_item_id", "inquiry item without item id")
        inquiry_item_id = _pick(payload, "inquiryItemId", "inquiry_item_id", "id")
        requested = _optional_float(_pick(payload, "requestedQty", "requested_qty"))
        row_index = _optional_float(_pick(payload, "excelRowIndex", "excel_row_index"))
        return cls(
            inquiry_item_id=inquiry_item_id if inquiry_item_id is not None else item_id,
            item_id=item_id,
            requested_qty=requested if requested is not None and requested > 0 else 0.0,
            excel_row_index=int(row_index) if row_index is not None else 0,
            retail_price=_optional_float(_pick(payload, "retailPrice", "retail_price")),
            import_markup=_optional_float(_pick(payload, "importMarkup", "import_markup")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inquiryItemId": self.inquiry_item_id,
            "itemId": self.item_id,
            "requestedQty": self.requested_qty,
            "excelRowIndex": self.excel_row_index,
            "retailPrice": self.retail_price,
            "importMarkup": self.import_markup,
        }


@dataclass(frozen=True)
class SupplierResponseLine:
    supplier_id: str
    item_id: str
    price_quoted: float
    response_date: date
    status: str = "pending"
    is_promotion: bool = False
    promotion_name: str | None = None
    notes: str | None = None
    promotion_id: str | None = None
    response_id: int | None = None

    @property
    def group_key(self) -> str:
        if self.is_promotion and self.promotion_id:
            return promotion_group_key(self.supplier_id, self.promotion_id)
        return regular_group_key(self.supplier_id)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, default_date: date | None = None) -> "SupplierResponseLine":
        payload = _require_mapping(payload, "invalid_response_line")
        supplier_id = _text(_pick(payload, "supplierId", "supplier_id"))
        item_id = _text(_pick(payload, "itemId", "item_id"))
        if not supplier_id:
            raise DataError("missing_supplier", "response line without supplier", item_id=item_id or None)
        if not item_id:
            raise DataError("missing_item_id", "response line without item id", supplier_id=supplier_id)
        raw_price = _pick(payload, "priceQuoted", "price_quoted", "price")
        price = _optional_float(raw_price)
        if price is None or price <= 0:
            raise DataError(
                "invalid_price",
                "quoted price is not a positive number",
                supplier_id=supplier_id,
                item_id=item_id,
                price_quoted=raw_price if isinstance(raw_price, (int, float, str)) else None,
            )
        raw_date = _pick(payload, "responseDate", "response_date")
        response_date = to_calendar_date(raw_date) or (default_date if raw_date is None else None)
        if response_date is None:
            raise DataError(
                "invalid_response_date",
                "response date could not be parsed",
                supplier_id=supplier_id,
                item_id=item_id,
            )
        promotion_id = _optional_text(_pick(payload, "promotionId", "promotion_id"))
        is_promotion = _flag(_pick(payload, "isPromotion", "is_promotion"), default=False)
        response_id = _pick(payload, "responseId", "response_id", "id")
        return cls(
            supplier_id=supplier_id,
            item_id=item_id,
            price_quoted=price,
            response_date=response_date,
            status=_text(_pick(payload, "status")) or "pending",
            is_promotion=is_promotion,
            promotion_name=_optional_text(_pick(payload, "promotionName", "promotion_name")),
            notes=_optional_text(_pick(payload, "notes")),
            promotion_id=promotion_id,
            response_id=int(response_id) if isinstance(response_id, int) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "supplierId": self.supplier_id,
            "itemId": self.item_id,
            "priceQuoted": self.price_quoted,
            "responseDate": iso_day(self.response_date),
            "status": self.status,
            "isPromotion": self.is_promotion,
            "promotionId": self.promotion_id,
            "promotionName": self.promotion_name,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class PromotionItem:
    promotion_id: str
    supplier_id: str
    item_id: str
    promotion_price: float
    start_date: date | None = None
    end_date: date | None = None
    is_active: bool = True
    promotion_name: str | None = None

    def is_valid_on(self, day: date) -> bool:
        if not self.is_active:
            return False
        if self.start_date is not None and day < self.start_date:
            return False
        if self.end_date is not None and day > self.end_date:
            return False
        return True

    def to_response_line(self, today: date) -> SupplierResponseLine:
        return SupplierResponseLine(
            supplier_id=self.supplier_id,
            item_id=self.item_id,
            price_quoted=self.promotion_price,
            response_date=self.start_date or today,
            status="promotion",
            is_promotion=True,
            promotion_name=self.promotion_name,
            promotion_id=self.promotion_id,
        )

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PromotionItem":
        payload = _require_mapping(payload, "invalid_promotion_item")
        promotion_id = _text(_pick(payload, "promotionId", "promotion_id"))
        supplier_id = _text(_pick(payload, "supplierId", "supplier_id"))
        item_id = _text(_pick(payload, "itemId", "item_id"))
        if not supplier_id:
            raise DataError("missing_supplier", "promotion item without supplier", promotion_id=promotion_id or None)
        if not promotion_id or not item_id:
            raise DataError(
                "promotion_ids_missing",
                "promotion item without promotion or item id",
                supplier_id=supplier_id,
            )
        raw_price = _pick(payload, "promotionPrice", "promotion_price", "price")
        price = _optional_float(raw_price)
        if price is None or price <= 0:
            raise DataError(
                "invalid_price",
                "promotion price is not a positive number",
                supplier_id=supplier_id,
                item_id=item_id,
                promotion_id=promotion_id,
            )
        raw_start = _pick(payload, "startDate", "start_date")
        raw_end = _pick(payload, "endDate", "end_date")
        start_date = to_calendar_date(raw_start)
        end_date = to_calendar_date(raw_end)
        if (raw_start not in (None, "") and start_date is None) or (raw_end not in (None, "") and end_date is None):
            raise DataError(
                "promotion_dates_invalid",
                "promotion validity dates could not be parsed",
                promotion_id=promotion_id,
            )
        return cls(
            promotion_id=promotion_id,
            supplier_id=supplier_id,
            item_id=item_id,
            promotion_price=price,
            start_date=start_date,
            end_date=end_date,
            is_active=_flag(_pick(payload, "isActive", "is_active"), default=True),
            promotion_name=_optional_text(_pick(payload, "promotionName", "promotion_name", "name")),
        )


@dataclass(frozen=True)
class ClassifiedResponse:
    item_id: str
    supplier_id: str
    response_date: date
    kind: str
    effective_item_id: str
    group_key: str
    replacement_target_id: str | None = None
    price_quoted: float | None = None
    promotion_id: str | None = None
    promotion_name: str | None = None

    @property
    def is_promotion(self) -> bool:
        return self.promotion_id is not None

    @property
    def covers_inquiry_item(self) -> bool:
        return self.kind in (KIND_MATCHED, KIND_PROMOTION, KIND_REPLACEMENT)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "supplierId": self.supplier_id,
            "responseDate": iso_day(self.response_date),
            "kind": self.kind,
            "effectiveItemId": self.effective_item_id,
            "replacementTargetId": self.replacement_target_id,
            "groupKey": self.group_key,
            "priceQuoted": self.price_quoted,
            "promotionId": self.promotion_id,
            "promotionName": self.promotion_name,
        }


@dataclass(frozen=True)
class Diagnostic:
    kind: str
    code: str
    message: str = ""
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_error(cls, error) -> "Diagnostic":
        return cls(kind=error.kind, code=error.code, message=error.message, context=dict(error.context))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
            "context": dict(self.context),
        }


@dataclass(frozen=True)
class ReplacementEntry:
    item_id: str
    inquiry_item_id: str
    replacement_target_id: str | None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "inquiryItemId": self.inquiry_item_id,
            "replacementTargetId": self.replacement_target_id,
        }


@dataclass(frozen=True)
class SupplierDateSummary:
    supplier_id: str
    supplier_name: str
    date: date
    group_key: str
    is_promotion: bool
    total_count: int
    matched_count: int
    extra_count: int
    replacement_count: int
    missing_count: int
    matched_items: Tuple[str, ...] = ()
    extra_items: Tuple[str, ...] = ()
    missing_items: Tuple[str, ...] = ()
    replacement_items: Tuple[ReplacementEntry, ...] = ()
    promotion_id: str | None = None
    promotion_name: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "supplierId": self.supplier_id,
            "supplierName": self.supplier_name,
            "date": iso_day(self.date),
            "groupKey": self.group_key,
            "isPromotion": self.is_promotion,
            "promotionId": self.promotion_id,
            "promotionName": self.promotion_name,
            "totalCount": self.total_count,
            "matchedCount": self.matched_count,
            "extraCount": self.extra_count,
            "replacementCount": self.replacement_count,
            "missingCount": self.missing_count,
            "matchedItems": list(self.matched_items),
            "extraItems": list(self.extra_items),
            "missingItems": list(self.missing_items),
            "replacementItems": [entry.to_dict() for entry in self.replacement_items],
        }


@dataclass(frozen=True)
class ComparisonResult:
    item_id: str
    best_price: float | None
    winning_group_keys: frozenset = frozenset()
    per_group_price: Dict[str, float] = field(default_factory=dict)
    delta_percent: Dict[str, float] = field(default_factory=dict)
    delta_labels: Dict[str, str] = field(default_factory=dict)
    requested_qty: float = 0.0
    effective_qty: float = 0.0
    retail_discount: Dict[str, float | None] = field(default_factory=dict)

    def is_winner(self, group_key: str) -> bool:
        return group_key in self.winning_group_keys

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "bestPrice": self.best_price,
            "winningSupplierKeys": sorted(self.winning_group_keys),
            "perSupplierPrice": dict(sorted(self.per_group_price.items())),
            "deltaPercent": dict(sorted(self.delta_percent.items())),
            "deltaLabels": dict(sorted(self.delta_labels.items())),
            "requestedQty": self.requested_qty,
            "effectiveQty": self.effective_qty,
            "retailDiscount": dict(sorted(self.retail_discount.items())),
        }


@dataclass(frozen=True)
class GroupSummary:
    group_key: str
    supplier_id: str
    is_promotion: bool
    active: bool
    total_items: int
    winning_items: int
    total_value: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "groupKey": self.group_key,
            "supplierId": self.supplier_id,
            "isPromotion": self.is_promotion,
            "active": self.active,
            "totalItems": self.total_items,
            "winningItems": self.winning_items,
            "totalValue": self.total_value,
        }


@dataclass(frozen=True)
class OrderLine:
    item_id: str
    supplier_id: str
    unit_price: float
    quantity: float
    group_key: str
    promotion_id: str | None = None
    inquiry_item_id: int | str | None = None

    @property
    def line_total(self) -> float:
        return round(self.unit_price * self.quantity, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "supplierId": self.supplier_id,
            "unitPrice": self.unit_price,
            "quantity": self.quantity,
            "groupKey": self.group_key,
            "promotionId": self.promotion_id,
            "inquiryItemId": self.inquiry_item_id,
            "lineTotal": self.line_total,
        }


@dataclass(frozen=True)
class UnfulfillableItem:
    item_id: str
    reason: str
    best_price: float | None = None
    winning_group_keys: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "reason": self.reason,
            "bestPrice": self.best_price,
            "winningSupplierKeys": list(self.winning_group_keys),
        }


@dataclass(frozen=True)
class OrderBuildResult:
    orders: Dict[str, List[OrderLine]] = field(default_factory=dict)
    unfulfillable: List[UnfulfillableItem] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def line_count(self) -> int:
        return sum(len(lines) for lines in self.orders.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "orders": {
                supplier_id: [line.to_dict() for line in lines]
                for supplier_id, lines in sorted(self.orders.items())
            },
            "unfulfillable": [item.to_dict() for item in self.unfulfillable],
            "diagnostics": [diagnostic.to_dict() for diagnostic in self.diagnostics],
        }
