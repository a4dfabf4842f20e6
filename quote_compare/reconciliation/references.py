"""Active reference-change index.

Reference changes are an append-only log. The index keeps, for every original
item id, the latest event only, so an older change never resurfaces once a
newer one (even a self-reference) has been recorded for the same item.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Mapping, Set, Tuple

from quote_compare.domain.models import Diagnostic, ReferenceChangeEvent
from quote_compare.errors import DataError
from quote_compare.item_ids import clean_item_id


LOGGER = logging.getLogger("quote_compare.references")


@dataclass(frozen=True)
class ReferenceChain:
    item_ids: Tuple[str, ...]
    cyclic: bool = False

    @property
    def head(self) -> str:
        return self.item_ids[-1] if self.item_ids else ""

    def to_dict(self) -> Dict[str, Any]:
        return {"itemIds": list(self.item_ids), "cyclic": self.cyclic}


class ReferenceIndex:
    def __init__(
        self,
        active: Mapping[str, ReferenceChangeEvent] | None = None,
        diagnostics: Iterable[Diagnostic] = (),
    ) -> None:
        self._active: Dict[str, ReferenceChangeEvent] = dict(active or {})
        self._incoming: Dict[str, Set[str]] = {}
        for original, event in self._active.items():
            self._incoming.setdefault(event.new_reference_id, set()).add(original)
        self.diagnostics: List[Diagnostic] = list(diagnostics)

    @classmethod
    def build(cls, events: Iterable[Any] | None, *, clean_ids: bool = False) -> "ReferenceIndex":
        diagnostics: List[Diagnostic] = []
        ordered: List[Tuple[Any, int, ReferenceChangeEvent]] = []

        for position, raw in enumerate(events or ()):
            try:
                event = raw if isinstance(raw, ReferenceChangeEvent) else ReferenceChangeEvent.from_dict(raw)
                if clean_ids:
                    event = _cleaned(event)
            except DataError as exc:
                diagnostics.append(Diagnostic.from_error(exc))
                LOGGER.warning(
                    "reference_event_dropped",
                    extra={"error_code": exc.code, "log_position": position, **exc.context},
                )
                continue
            ordered.append((event.change_date, position, event))

        latest: Dict[str, ReferenceChangeEvent] = {}
        for _change_date, _position, event in sorted(ordered, key=lambda entry: (entry[0], entry[1])):
            latest[event.original_item_id] = event

        active: Dict[str, ReferenceChangeEvent] = {}
        for original, event in latest.items():
            if event.is_self_reference:
                diagnostics.append(
                    Diagnostic(
                        kind="resolution_error",
                        code="self_reference",
                        message="latest reference change points at the item itself",
                        context={"item_id": original, "change_date": event.change_date.isoformat()},
                    )
                )
                continue
            active[original] = event

        index = cls(active, diagnostics)
        index._flag_cycles()
        return index

    def _flag_cycles(self) -> None:
        seen: Set[str] = set()
        for original in sorted(self._active):
            if original in seen:
                continue
            chain = self.chain(original, record=False)
            seen.update(chain.item_ids)
            if chain.cyclic:
                self.diagnostics.append(
                    Diagnostic(
                        kind="resolution_error",
                        code="reference_cycle",
                        message="reference changes form a cycle",
                        context={"item_ids": list(chain.item_ids)},
                    )
                )
                LOGGER.warning("reference_cycle_detected", extra={"item_ids": list(chain.item_ids)})

    def __len__(self) -> int:
        return len(self._active)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._active

    def active_change_for(self, item_id: str) -> ReferenceChangeEvent | None:
        return self._active.get(item_id)

    def resolve(self, item_id: str) -> str:
        event = self._active.get(item_id)
        if event is None:
            return item_id
        return event.new_reference_id

    def replacement_for(self, item_id: str) -> str | None:
        event = self._active.get(item_id)
        return event.new_reference_id if event is not None else None

    def incoming_references(self, item_id: str) -> Set[str]:
        return set(self._incoming.get(item_id, set())) - {item_id}

    def active_changes(self) -> List[ReferenceChangeEvent]:
        return [self._active[key] for key in sorted(self._active)]

    def chain(self, item_id: str, *, record: bool = True) -> ReferenceChain:
        """Follow active changes hop by hop, stopping at the first repeated id."""
        visited: List[str] = [item_id]
        current = item_id
        while True:
            target = self.replacement_for(current)
            if target is None:
                return ReferenceChain(tuple(visited), cyclic=False)
            if target in visited:
                if record:
                    self.diagnostics.append(
                        Diagnostic(
                            kind="resolution_error",
                            code="reference_cycle",
                            message="reference chain revisits an item",
                            context={"item_ids": visited + [target]},
                        )
                    )
                return ReferenceChain(tuple(visited), cyclic=True)
            visited.append(target)
            current = target


def _cleaned(event: ReferenceChangeEvent) -> ReferenceChangeEvent:
    original = clean_item_id(event.original_item_id)
    new_reference = clean_item_id(event.new_reference_id)
    if not original or not new_reference:
        raise DataError(
            "reference_ids_missing",
            "reference change without both item ids",
            original_item_id=event.original_item_id,
            new_reference_id=event.new_reference_id,
        )
    return replace(event, original_item_id=original, new_reference_id=new_reference)
