from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass(frozen=True)
class ServiceOutput:
    payload: Dict[str, Any]
    status_code: int = 200


@dataclass(frozen=True)
class ComparisonInput:
    inquiry_id: int
    active_groups: List[str] | None = None
    price_overrides: List[Dict[str, Any]] = field(default_factory=list)
    quantity_overrides: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OrderPreviewInput:
    inquiry_id: int
    selected_groups: List[str]
    active_groups: List[str] | None = None
    price_overrides: List[Dict[str, Any]] = field(default_factory=list)
    quantity_overrides: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionEditsInput:
    session_id: str
    edits: List[Dict[str, Any]]


@dataclass(frozen=True)
class SessionCommitInput:
    session_id: str
    selected_groups: List[str] | None = None


@dataclass(frozen=True)
class ReferenceChangeInput:
    original_item_id: str
    new_reference_id: str
    source: str = "user"
    change_date: str | None = None
    supplier_id: str | None = None
    notes: str | None = None
