from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from quote_compare.comparison.engine import DEFAULT_EXCHANGE_RATE, PROMOTION_POLICIES, PricePool, RetailTerms, build_engine
from quote_compare.comparison.orders import build_orders
from quote_compare.comparison.session import ComparisonSession, SessionStore
from quote_compare.core.event_bus import (
    ComparisonSessionCommitted,
    EventBus,
    InquiryReconciled,
    OrdersCreated,
    ReferenceChangeRecorded,
    get_event_bus,
)
from quote_compare.dates import today_utc
from quote_compare.db import DB_ERRORS
from quote_compare.domain.contracts import (
    ComparisonInput,
    OrderPreviewInput,
    ReferenceChangeInput,
    ServiceOutput,
    SessionCommitInput,
    SessionEditsInput,
)
from quote_compare.domain.models import Diagnostic, Item, OrderBuildResult, ReferenceChangeEvent
from quote_compare.errors import DataError, NotFoundError, ValidationError
from quote_compare.infrastructure.repositories import (
    CatalogRepository,
    OrderRepository,
    ReferenceRepository,
    ResponseRepository,
    store_access,
)
from quote_compare.item_ids import clean_item_id
from quote_compare.observability import observe_diagnostics, observe_orders_built, observe_reconciliation
from quote_compare.reconciliation.aggregator import aggregate
from quote_compare.reconciliation.normalizer import DUPLICATE_POLICIES, NormalizationResult, normalize
from quote_compare.reconciliation.references import ReferenceIndex
from quote_compare.ui_strings import success_message


LOGGER = logging.getLogger("quote_compare.service")

_MAX_CHAIN_FETCHES = 32


@dataclass(frozen=True)
class ComparisonSettings:
    epsilon: float = 0.01
    duplicate_policy: str = "lowest_price"
    promotion_policy: str = "compete"
    clean_ids: bool = True
    session_ttl_seconds: int = 3600
    exchange_rate: float = DEFAULT_EXCHANGE_RATE

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ComparisonSettings":
        duplicate_policy = str(config.get("DUPLICATE_LINE_POLICY") or "lowest_price").strip().lower()
        promotion_policy = str(config.get("PROMOTION_TIE_POLICY") or "compete").strip().lower()
        if duplicate_policy not in DUPLICATE_POLICIES:
            raise RuntimeError(f"invalid DUPLICATE_LINE_POLICY: {duplicate_policy}")
        if promotion_policy not in PROMOTION_POLICIES:
            raise RuntimeError(f"invalid PROMOTION_TIE_POLICY: {promotion_policy}")
        exchange_rate = float(config.get("EXCHANGE_RATE", DEFAULT_EXCHANGE_RATE))
        if not exchange_rate > 0:
            raise RuntimeError(f"invalid EXCHANGE_RATE: {exchange_rate}")
        return cls(
            epsilon=float(config.get("PRICE_EPSILON", 0.01)),
            duplicate_policy=duplicate_policy,
            promotion_policy=promotion_policy,
            clean_ids=bool(config.get("CLEAN_ITEM_IDS", True)),
            session_ttl_seconds=int(config.get("COMPARISON_SESSION_TTL_SECONDS", 3600)),
            exchange_rate=exchange_rate,
        )


@dataclass(frozen=True)
class InquirySnapshot:
    inquiry: Dict[str, Any]
    inquiry_items: List[Dict[str, Any]]
    responses: List[Dict[str, Any]]
    promotions: List[Dict[str, Any]]
    reference_events: List[Dict[str, Any]]
    supplier_names: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Reconciliation:
    snapshot: InquirySnapshot
    index: ReferenceIndex
    normalized: NormalizationResult

    @property
    def diagnostics(self) -> List[Diagnostic]:
        return list(self.index.diagnostics) + list(self.normalized.diagnostics)

    def requested_quantities(self) -> Dict[str, float]:
        return {item.item_id: item.requested_qty for item in self.normalized.inquiry_items}

    def item_order(self) -> List[str]:
        return [item.item_id for item in self.normalized.inquiry_items]

    def inquiry_item_ids(self) -> Dict[str, Any]:
        return {item.item_id: item.inquiry_item_id for item in self.normalized.inquiry_items}

    def retail_terms(self) -> Dict[str, RetailTerms]:
        return {
            item.item_id: RetailTerms(retail_price=item.retail_price, import_markup=item.import_markup)
            for item in self.normalized.inquiry_items
        }


class ComparisonService:
    def __init__(
        self,
        settings: ComparisonSettings | None = None,
        *,
        catalog: CatalogRepository | None = None,
        responses: ResponseRepository | None = None,
        references: ReferenceRepository | None = None,
        orders: OrderRepository | None = None,
        event_bus: EventBus | None = None,
        session_store: SessionStore | None = None,
    ) -> None:
        self.settings = settings or ComparisonSettings()
        self.catalog = catalog or CatalogRepository()
        self.responses = responses or ResponseRepository()
        self.references = references or ReferenceRepository()
        self.orders = orders or OrderRepository()
        self.event_bus = event_bus or get_event_bus()
        self.sessions = session_store or SessionStore(ttl_seconds=self.settings.session_ttl_seconds)

    # -- loading -----------------------------------------------------------

    def _clean(self, item_id: Any) -> str:
        raw = str(item_id or "").strip()
        return clean_item_id(raw) if self.settings.clean_ids else raw

    def load_snapshot(self, db, inquiry_id: int) -> InquirySnapshot:
        with store_access("load_inquiry"), db.read_snapshot():
            inquiry = self.catalog.get_inquiry(db, inquiry_id)
            if inquiry is None:
                raise NotFoundError(
                    code="inquiry_not_found",
                    message_key="inquiry_not_found",
                    payload={"inquiry_id": inquiry_id},
                )
            inquiry_items = self.catalog.get_inquiry_items(db, inquiry_id)
            responses = self.responses.get_responses(db, inquiry_id)

            scope = _item_ids(inquiry_items) | _item_ids(responses)
            related = _event_item_ids(self.references.get_reference_events(db, sorted(scope)))
            promotions = self.responses.get_active_promotions(db, inquiry_id, sorted(related - scope))
            events = self.references.get_reference_events(db, sorted(scope | _item_ids(promotions)))

            supplier_ids = {str(row.get("supplier_id")) for row in responses + promotions if row.get("supplier_id") is not None}
            names = self.catalog.supplier_names(db, sorted(supplier_ids))
        return InquirySnapshot(
            inquiry=inquiry,
            inquiry_items=inquiry_items,
            responses=responses,
            promotions=promotions,
            reference_events=events,
            supplier_names=names,
        )

    def reconcile_snapshot(self, snapshot: InquirySnapshot, *, today: date | None = None) -> Reconciliation:
        started = time.perf_counter()
        index = ReferenceIndex.build(snapshot.reference_events, clean_ids=self.settings.clean_ids)
        normalized = normalize(
            snapshot.inquiry_items,
            snapshot.responses,
            snapshot.promotions,
            index,
            today=today or today_utc(),
            duplicate_policy=self.settings.duplicate_policy,
            clean_ids=self.settings.clean_ids,
        )
        reconciliation = Reconciliation(snapshot=snapshot, index=index, normalized=normalized)
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        observe_reconciliation(normalized.kind_counts(), elapsed_ms)
        observe_diagnostics(_diagnostic_counts(reconciliation.diagnostics))
        return reconciliation

    def _reconcile(self, db, inquiry_id: int) -> Reconciliation:
        return self.reconcile_snapshot(self.load_snapshot(db, inquiry_id))

    # -- reconciliation and comparison -------------------------------------

    def reconcile(self, db, inquiry_id: int) -> ServiceOutput:
        reconciliation = self._reconcile(db, inquiry_id)
        summaries = aggregate(
            reconciliation.normalized.classified,
            supplier_names=reconciliation.snapshot.supplier_names,
        )
        diagnostics = reconciliation.diagnostics
        LOGGER.info(
            "reconciliation_completed",
            extra={
                "inquiry_id": inquiry_id,
                "summaries": len(summaries),
                "classified_lines": len(reconciliation.normalized.classified),
                "duplicates_dropped": reconciliation.normalized.duplicates_dropped,
                "deleted_skipped": reconciliation.normalized.deleted_skipped,
                "diagnostics": len(diagnostics),
            },
        )
        self.event_bus.publish(
            InquiryReconciled(
                inquiry_id=inquiry_id,
                summaries=len(summaries),
                classified_lines=len(reconciliation.normalized.classified),
                diagnostics=len(diagnostics),
            )
        )
        return ServiceOutput(
            payload={
                "inquiryId": inquiry_id,
                "summaries": [summary.to_dict() for summary in summaries],
                "duplicatesDropped": reconciliation.normalized.duplicates_dropped,
                "diagnostics": [diagnostic.to_dict() for diagnostic in diagnostics],
            }
        )

    def _parse_price_overrides(
        self, entries: Iterable[Any], diagnostics: List[Diagnostic]
    ) -> Dict[Tuple[str, str], Any]:
        overrides: Dict[Tuple[str, str], Any] = {}
        for position, entry in enumerate(entries or ()):
            if not isinstance(entry, Mapping):
                raise ValidationError(details="price override must be an object")
            item_id = self._clean(entry.get("itemId") or entry.get("item_id"))
            group_key = str(entry.get("groupKey") or entry.get("group_key") or "").strip()
            if not item_id or not group_key:
                diagnostics.append(
                    Diagnostic(
                        kind="comparison_error",
                        code="override_incomplete",
                        message="price override without item or group",
                        context={"position": position},
                    )
                )
                continue
            overrides[(item_id, group_key)] = entry.get("price")
        return overrides

    def _parse_quantity_overrides(self, entries: Mapping[str, Any] | None) -> Dict[str, Any]:
        if entries is None:
            return {}
        if not isinstance(entries, Mapping):
            raise ValidationError(details="quantity overrides must be an object")
        return {self._clean(item_id): value for item_id, value in entries.items() if self._clean(item_id)}

    def _engine(self, reconciliation: Reconciliation, active_groups, price_overrides, quantity_overrides):
        pool = PricePool.from_classified(reconciliation.normalized.classified)
        engine = build_engine(
            pool,
            reconciliation.requested_quantities(),
            None if active_groups is None else list(active_groups),
            price_overrides,
            quantity_overrides,
            epsilon=self.settings.epsilon,
            promotion_policy=self.settings.promotion_policy,
            item_order=reconciliation.item_order(),
            retail_terms=reconciliation.retail_terms(),
            exchange_rate=self.settings.exchange_rate,
        )
        return pool, engine

    def compare(self, db, compare_input: ComparisonInput) -> ServiceOutput:
        reconciliation = self._reconcile(db, compare_input.inquiry_id)
        diagnostics: List[Diagnostic] = []
        _pool, engine = self._engine(
            reconciliation,
            compare_input.active_groups,
            self._parse_price_overrides(compare_input.price_overrides, diagnostics),
            self._parse_quantity_overrides(compare_input.quantity_overrides),
        )
        results = engine.results()
        diagnostics.extend(engine.diagnostics())
        observe_diagnostics(_diagnostic_counts(diagnostics))
        return ServiceOutput(
            payload={
                "inquiryId": compare_input.inquiry_id,
                "results": [result.to_dict() for result in results.values()],
                "groups": [summary.to_dict() for summary in engine.summaries()],
                "supplierNames": reconciliation.snapshot.supplier_names,
                "diagnostics": [diagnostic.to_dict() for diagnostic in diagnostics],
            }
        )

    def preview_orders(self, db, preview_input: OrderPreviewInput) -> ServiceOutput:
        reconciliation = self._reconcile(db, preview_input.inquiry_id)
        diagnostics: List[Diagnostic] = []
        quantity_overrides = self._parse_quantity_overrides(preview_input.quantity_overrides)
        pool, engine = self._engine(
            reconciliation,
            preview_input.active_groups,
            self._parse_price_overrides(preview_input.price_overrides, diagnostics),
            quantity_overrides,
        )
        results = engine.results()
        result = build_orders(
            results,
            preview_input.selected_groups,
            quantity_overrides,
            requested_quantities=reconciliation.requested_quantities(),
            group_suppliers=pool.group_suppliers(),
            known_groups=pool.group_keys(),
            inquiry_item_ids=reconciliation.inquiry_item_ids(),
            promotion_policy=self.settings.promotion_policy,
        )
        payload = result.to_dict()
        payload["inquiryId"] = preview_input.inquiry_id
        payload["supplierNames"] = reconciliation.snapshot.supplier_names
        payload["diagnostics"] = [diagnostic.to_dict() for diagnostic in diagnostics] + payload["diagnostics"]
        return ServiceOutput(payload=payload)

    # -- comparison sessions -----------------------------------------------

    def open_session(self, db, inquiry_id: int) -> ServiceOutput:
        reconciliation = self._reconcile(db, inquiry_id)
        session = ComparisonSession(
            uuid.uuid4().hex,
            inquiry_id,
            PricePool.from_classified(reconciliation.normalized.classified),
            reconciliation.requested_quantities(),
            epsilon=self.settings.epsilon,
            promotion_policy=self.settings.promotion_policy,
            item_order=reconciliation.item_order(),
            inquiry_item_ids=reconciliation.inquiry_item_ids(),
            retail_terms=reconciliation.retail_terms(),
            exchange_rate=self.settings.exchange_rate,
        )
        self.sessions.open(session)
        LOGGER.info(
            "comparison_session_opened",
            extra={"session_id": session.session_id, "inquiry_id": inquiry_id, "groups": len(session.pool.group_keys())},
        )
        payload = session.snapshot()
        payload["supplierNames"] = reconciliation.snapshot.supplier_names
        return ServiceOutput(payload=payload, status_code=201)

    def _session(self, session_id: str) -> ComparisonSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFoundError(
                code="session_not_found",
                message_key="session_not_found",
                payload={"session_id": session_id},
            )
        return session

    def get_session(self, session_id: str) -> ServiceOutput:
        return ServiceOutput(payload=self._session(session_id).snapshot())

    def apply_edits(self, edits_input: SessionEditsInput) -> ServiceOutput:
        if not isinstance(edits_input.edits, list) or not edits_input.edits:
            raise ValidationError(code="edit_invalid", message_key="edit_invalid", details="edits must be a non-empty list")
        session = self._session(edits_input.session_id)
        edits = [self._clean_edit(edit) for edit in edits_input.edits]
        session.apply(edits)
        return ServiceOutput(payload=session.snapshot())

    def _clean_edit(self, edit: Any) -> Any:
        if not isinstance(edit, Mapping):
            return edit
        cleaned = dict(edit)
        for key in ("itemId", "item_id"):
            if cleaned.get(key):
                cleaned[key] = self._clean(cleaned[key])
        return cleaned

    def commit_session(self, db, commit_input: SessionCommitInput) -> ServiceOutput:
        session = self._session(commit_input.session_id)
        selected = commit_input.selected_groups
        if selected is None:
            selected = sorted(session.state.active_groups)
        result = session.commit(selected)
        created = self._persist_orders(db, session, result)
        observe_orders_built(result.line_count, len(result.unfulfillable))
        observe_diagnostics(_diagnostic_counts(result.diagnostics))

        self.event_bus.publish(
            ComparisonSessionCommitted(
                session_id=session.session_id,
                inquiry_id=session.inquiry_id,
                selected_groups=tuple(selected),
            )
        )
        self.event_bus.publish(
            OrdersCreated(
                inquiry_id=session.inquiry_id,
                order_ids=tuple(order["orderId"] for order in created),
                unfulfillable_items=len(result.unfulfillable),
            )
        )
        payload = result.to_dict()
        payload.update(
            {
                "sessionId": session.session_id,
                "inquiryId": session.inquiry_id,
                "status": session.status,
                "createdOrders": created,
                "message": success_message("orders_created"),
            }
        )
        return ServiceOutput(payload=payload, status_code=201)

    def _persist_orders(self, db, session: ComparisonSession, result: OrderBuildResult) -> List[Dict[str, Any]]:
        created: List[Dict[str, Any]] = []
        with store_access("persist_orders"):
            try:
                for supplier_id, lines in sorted(result.orders.items()):
                    order_id = self.orders.create_order(
                        db,
                        inquiry_id=session.inquiry_id,
                        supplier_id=supplier_id,
                        lines=lines,
                        session_id=session.session_id,
                    )
                    created.append(
                        {
                            "orderId": order_id,
                            "supplierId": supplier_id,
                            "lineCount": len(lines),
                            "totalValue": round(sum(line.line_total for line in lines), 2),
                        }
                    )
                if created:
                    self.catalog.set_inquiry_status(db, session.inquiry_id, "ordered")
                db.commit()
            except DB_ERRORS:
                # Orders of one session land together or not at all.
                db.rollback()
                raise
        LOGGER.info(
            "orders_created",
            extra={
                "session_id": session.session_id,
                "inquiry_id": session.inquiry_id,
                "orders": len(created),
                "unfulfillable_items": len(result.unfulfillable),
            },
        )
        return created

    # -- reference changes -------------------------------------------------

    def record_reference_change(self, db, change_input: ReferenceChangeInput) -> ServiceOutput:
        original = self._clean(change_input.original_item_id)
        new_reference = self._clean(change_input.new_reference_id)
        if original and original == new_reference:
            raise ValidationError(
                code="reference_self",
                message_key="reference_self",
                payload={"item_id": original},
            )
        try:
            event = ReferenceChangeEvent.from_dict(
                {
                    "originalItemId": original,
                    "newReferenceId": new_reference,
                    "changeDate": change_input.change_date or today_utc().isoformat(),
                    "source": change_input.source,
                    "supplierId": change_input.supplier_id,
                    "notes": change_input.notes,
                }
            )
        except DataError as exc:
            raise ValidationError(
                code="reference_invalid",
                message_key="reference_invalid",
                details=exc.message,
                payload={"reason": exc.code},
            ) from exc

        with store_access("record_reference_change"):
            latest = self.references.latest_for(db, event.original_item_id)
            if latest and str(latest["new_reference_id"]) == event.new_reference_id:
                return ServiceOutput(
                    payload={
                        "status": "exists",
                        "message": success_message("reference_exists"),
                        "changeId": latest["change_id"],
                    }
                )
            change_id = self.references.add_reference_change(db, event)
            db.commit()

        LOGGER.info(
            "reference_change_recorded",
            extra={
                "change_id": change_id,
                "original_item_id": event.original_item_id,
                "new_reference_id": event.new_reference_id,
                "source": event.source,
            },
        )
        self.event_bus.publish(
            ReferenceChangeRecorded(
                original_item_id=event.original_item_id,
                new_reference_id=event.new_reference_id,
                source=event.source,
            )
        )
        return ServiceOutput(
            payload={
                "status": "created",
                "message": success_message("reference_recorded"),
                "changeId": change_id,
                "change": event.to_dict() | {"changeId": change_id},
            },
            status_code=201,
        )

    def cleanup_self_references(self, db) -> ServiceOutput:
        with store_access("cleanup_self_references"):
            removable = self.references.removable_self_references(db)
            removed = self.references.delete_reference_changes(db, removable)
            db.commit()
        LOGGER.info("self_references_removed", extra={"removed": removed})
        return ServiceOutput(
            payload={"removed": removed, "message": success_message("self_references_removed")}
        )

    def item_references(self, db, item_id: str) -> ServiceOutput:
        target = self._clean(item_id)
        if not target:
            raise ValidationError(details="item id required")
        fetched = {target}
        with store_access("item_references"), db.read_snapshot():
            item_row = self.catalog.get_item(db, target)
            for _ in range(_MAX_CHAIN_FETCHES):
                index = ReferenceIndex.build(
                    self.references.get_reference_events(db, sorted(fetched)),
                    clean_ids=self.settings.clean_ids,
                )
                chain = index.chain(target, record=False)
                if set(chain.item_ids) <= fetched:
                    break
                fetched.update(chain.item_ids)

        chain = index.chain(target)
        active = index.active_change_for(target)
        return ServiceOutput(
            payload={
                "itemId": target,
                "item": Item.from_dict(item_row).to_dict() if item_row else None,
                "activeChange": active.to_dict() if active else None,
                "resolvesTo": index.resolve(target),
                "replacedBy": index.replacement_for(target),
                "replaces": sorted(index.incoming_references(target)),
                "chain": chain.to_dict(),
                "diagnostics": [diagnostic.to_dict() for diagnostic in index.diagnostics],
            }
        )


def _item_ids(rows: Iterable[Mapping[str, Any]]) -> set:
    return {str(row["item_id"]) for row in rows if row.get("item_id")}


def _event_item_ids(rows: Iterable[Mapping[str, Any]]) -> set:
    ids = set()
    for row in rows:
        for key in ("original_item_id", "new_reference_id"):
            if row.get(key):
                ids.add(str(row[key]))
    return ids


def _diagnostic_counts(diagnostics: Iterable[Diagnostic]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for diagnostic in diagnostics:
        counts[diagnostic.kind] = counts.get(diagnostic.kind, 0) + 1
    return counts
