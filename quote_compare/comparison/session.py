from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Tuple

from quote_compare.comparison.engine import (
    DEFAULT_EPSILON,
    DEFAULT_EXCHANGE_RATE,
    PriceComparisonEngine,
    PricePool,
    RetailTerms,
    coerce_price,
    coerce_quantity,
)
from quote_compare.comparison.orders import build_orders
from quote_compare.domain.models import Diagnostic, OrderBuildResult
from quote_compare.errors import ConflictError, ValidationError


LOGGER = logging.getLogger("quote_compare.session")

STATUS_IDLE = "idle"
STATUS_LOADED = "loaded"
STATUS_EDITING = "editing"
STATUS_COMMITTED = "committed"

SESSION_FLOW: Dict[str, Dict[str, str]] = {
    STATUS_IDLE: {"load": STATUS_LOADED},
    STATUS_LOADED: {"edit": STATUS_EDITING, "read": STATUS_LOADED, "commit": STATUS_COMMITTED},
    STATUS_EDITING: {"edit": STATUS_EDITING, "read": STATUS_LOADED, "commit": STATUS_COMMITTED},
    STATUS_COMMITTED: {"read": STATUS_COMMITTED},
}

EDIT_TYPES = ("toggle_group", "set_group_active", "set_price", "clear_price", "set_quantity", "clear_quantity")


def action_allowed(status: str, action: str) -> bool:
    return action in SESSION_FLOW.get(status, {})


def next_status(status: str, action: str) -> str:
    if status == STATUS_COMMITTED and action != "read":
        raise ConflictError(code="session_committed", message_key="session_committed", details=action)
    target = SESSION_FLOW.get(status, {}).get(action)
    if target is None:
        raise ConflictError(details=f"{action} not allowed while {status}", payload={"status": status})
    return target


@dataclass(frozen=True)
class SessionEdit:
    type: str
    group_key: str | None = None
    item_id: str | None = None
    value: Any = None
    active: bool | None = None


def parse_edit(payload: Mapping[str, Any]) -> SessionEdit:
    if not isinstance(payload, Mapping):
        raise ValidationError(code="edit_invalid", message_key="edit_invalid", details="edit must be an object")
    edit_type = str(payload.get("type") or "").strip()
    if edit_type not in EDIT_TYPES:
        raise ValidationError(code="edit_invalid", message_key="edit_invalid", details=f"unknown edit {edit_type!r}")
    group_key = str(payload.get("groupKey") or payload.get("group_key") or "").strip() or None
    item_id = str(payload.get("itemId") or payload.get("item_id") or "").strip() or None

    if edit_type in ("toggle_group", "set_group_active", "set_price", "clear_price") and not group_key:
        raise ValidationError(code="edit_invalid", message_key="edit_invalid", details=f"{edit_type} needs groupKey")
    if edit_type in ("set_price", "clear_price", "set_quantity", "clear_quantity") and not item_id:
        raise ValidationError(code="edit_invalid", message_key="edit_invalid", details=f"{edit_type} needs itemId")

    value = None
    if edit_type == "set_price":
        value = payload.get("price")
    elif edit_type == "set_quantity":
        value = payload.get("quantity")
    active = None
    if edit_type == "set_group_active":
        active = bool(payload.get("active"))
    return SessionEdit(type=edit_type, group_key=group_key, item_id=item_id, value=value, active=active)


@dataclass(frozen=True)
class SessionState:
    status: str = STATUS_IDLE
    known_groups: frozenset = frozenset()
    active_groups: frozenset = frozenset()
    price_overrides: Dict[Tuple[str, str], float] = field(default_factory=dict)
    quantity_overrides: Dict[str, float] = field(default_factory=dict)
    version: int = 0


def load_state(group_keys: Iterable[str]) -> SessionState:
    groups = frozenset(group_keys)
    return SessionState(
        status=next_status(STATUS_IDLE, "load"),
        known_groups=groups,
        active_groups=groups,
    )


def reduce(state: SessionState, edit: SessionEdit) -> SessionState:
    """Apply one edit; invalid prices or quantities clear the override instead of failing."""
    status = next_status(state.status, "edit")
    active = set(state.active_groups)
    prices = dict(state.price_overrides)
    quantities = dict(state.quantity_overrides)

    if edit.type == "toggle_group":
        if edit.group_key in state.known_groups:
            if edit.group_key in active:
                active.discard(edit.group_key)
            else:
                active.add(edit.group_key)
    elif edit.type == "set_group_active":
        if edit.group_key in state.known_groups:
            if edit.active:
                active.add(edit.group_key)
            else:
                active.discard(edit.group_key)
    elif edit.type == "set_price":
        price = coerce_price(edit.value)
        if price is None:
            prices.pop((edit.item_id, edit.group_key), None)
        else:
            prices[(edit.item_id, edit.group_key)] = price
    elif edit.type == "clear_price":
        prices.pop((edit.item_id, edit.group_key), None)
    elif edit.type == "set_quantity":
        quantity = coerce_quantity(edit.value)
        if quantity is None:
            quantities.pop(edit.item_id, None)
        else:
            quantities[edit.item_id] = quantity
    elif edit.type == "clear_quantity":
        quantities.pop(edit.item_id, None)

    return replace(
        state,
        status=status,
        active_groups=frozenset(active),
        price_overrides=prices,
        quantity_overrides=quantities,
        version=state.version + 1,
    )


class ComparisonSession:
    """One buyer's what-if comparison over a fixed price pool.

    Edits are applied in arrival order under the session lock and only the
    affected items are invalidated; prices are recomputed on the next read.
    """

    def __init__(
        self,
        session_id: str,
        inquiry_id: int,
        pool: PricePool,
        requested_quantities: Mapping[str, Any] | None = None,
        *,
        epsilon: float = DEFAULT_EPSILON,
        promotion_policy: str = "compete",
        item_order: Iterable[str] | None = None,
        inquiry_item_ids: Mapping[str, Any] | None = None,
        retail_terms: Mapping[str, RetailTerms] | None = None,
        exchange_rate: float = DEFAULT_EXCHANGE_RATE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_id = session_id
        self.inquiry_id = inquiry_id
        self.pool = pool
        self.promotion_policy = promotion_policy
        self.inquiry_item_ids = dict(inquiry_item_ids or {})
        self._lock = threading.RLock()
        self._state = SessionState()
        self._clock = clock
        self.touched_at = clock()
        self.diagnostics: List[Diagnostic] = []
        self.order_result: OrderBuildResult | None = None
        self.engine = PriceComparisonEngine(
            pool,
            requested_quantities,
            epsilon=epsilon,
            promotion_policy=promotion_policy,
            state_provider=lambda: self._state,
            item_order=item_order,
            retail_terms=retail_terms,
            exchange_rate=exchange_rate,
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> str:
        return self._state.status

    def touch(self) -> None:
        self.touched_at = self._clock()

    def load(self) -> SessionState:
        with self._lock:
            self._state = load_state(self.pool.group_keys())
            self.engine.invalidate_all()
            self.touch()
            return self._state

    def apply(self, edits: Iterable[Any]) -> SessionState:
        """Apply a batch of edits atomically: one bad edit leaves the state untouched."""
        with self._lock:
            batch = [raw if isinstance(raw, SessionEdit) else parse_edit(raw) for raw in edits]
            new_state = self._state
            for edit in batch:
                new_state = reduce(new_state, edit)
            self._state = new_state
            for edit in batch:
                self._note_ignored_value(edit)
                self._invalidate_for(edit)
            self.touch()
            return self._state

    def _invalidate_for(self, edit: SessionEdit) -> None:
        if edit.type in ("toggle_group", "set_group_active"):
            self.engine.invalidate_group(edit.group_key)
        elif edit.type in ("set_price", "clear_price"):
            self.engine.invalidate_item(edit.item_id)

    def _note_ignored_value(self, edit: SessionEdit) -> None:
        if edit.type == "set_price" and coerce_price(edit.value) is None:
            code = "invalid_price_override"
        elif edit.type == "set_quantity" and coerce_quantity(edit.value) is None:
            code = "invalid_quantity_override"
        else:
            return
        self.diagnostics.append(
            Diagnostic(
                kind="comparison_error",
                code=code,
                message="edit value ignored, override cleared",
                context={"item_id": edit.item_id, "group_key": edit.group_key},
            )
        )
        LOGGER.info(
            "comparison_edit_value_ignored",
            extra={"session_id": self.session_id, "item_id": edit.item_id, "error_code": code},
        )

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            results = self.engine.results()
            if self._state.status != STATUS_COMMITTED:
                self._state = replace(self._state, status=next_status(self._state.status, "read"))
            self.touch()
            return {
                "sessionId": self.session_id,
                "inquiryId": self.inquiry_id,
                "status": self._state.status,
                "version": self._state.version,
                "activeGroups": sorted(self._state.active_groups),
                "groups": [summary.to_dict() for summary in self.engine.summaries()],
                "results": [result.to_dict() for result in results.values()],
                "diagnostics": [diagnostic.to_dict() for diagnostic in self.diagnostics + self.engine.diagnostics()],
                "orders": self.order_result.to_dict() if self.order_result else None,
            }

    def commit(self, selected_groups: Iterable[str] | None = None) -> OrderBuildResult:
        with self._lock:
            target = next_status(self._state.status, "commit")
            results = self.engine.results()
            selected = list(self._state.active_groups if selected_groups is None else selected_groups)
            result = build_orders(
                results,
                selected,
                self._state.quantity_overrides,
                requested_quantities={item_id: res.requested_qty for item_id, res in results.items()},
                group_suppliers=self.pool.group_suppliers(),
                known_groups=self._state.known_groups,
                inquiry_item_ids=self.inquiry_item_ids,
                promotion_policy=self.promotion_policy,
            )
            self.order_result = result
            self._state = replace(self._state, status=target)
            self.touch()
            LOGGER.info(
                "comparison_session_committed",
                extra={
                    "session_id": self.session_id,
                    "inquiry_id": self.inquiry_id,
                    "order_lines": result.line_count,
                    "unfulfillable_items": len(result.unfulfillable),
                },
            )
            return result


class SessionStore:
    """Per-process session registry with idle expiry."""

    def __init__(self, ttl_seconds: int = 3600, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = int(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, ComparisonSession] = {}

    def open(self, session: ComparisonSession) -> ComparisonSession:
        session.load()
        with self._lock:
            self._purge_locked()
            self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> ComparisonSession | None:
        with self._lock:
            self._purge_locked()
            return self._sessions.get(session_id)

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked()

    def _purge_locked(self) -> int:
        if self.ttl_seconds <= 0:
            return 0
        now = self._clock()
        expired = [key for key, session in self._sessions.items() if now - session.touched_at > self.ttl_seconds]
        for key in expired:
            self._sessions.pop(key, None)
        if expired:
            LOGGER.info("comparison_sessions_expired", extra={"expired": len(expired)})
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
