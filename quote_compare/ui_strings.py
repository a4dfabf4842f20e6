from __future__ import annotations

from typing import Dict


FRIENDLY_TERMS: Dict[str, str] = {
    "app_name": "Quote Comparison",
    "inquiry": "Inquiry",
    "supplier": "Supplier",
    "promotion": "Promotion",
    "order": "Order",
    "reference_change": "Reference change",
}


CLASSIFICATION_LABELS: Dict[str, str] = {
    "matched": "Quoted",
    "extra": "Extra item",
    "missing": "No response",
    "replacement": "Replacement",
    "promotion": "Promotion",
}


SESSION_STATUS_LABELS: Dict[str, str] = {
    "idle": "Waiting for data",
    "loaded": "Prices computed",
    "editing": "Editing",
    "committed": "Orders created",
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "error": {
        "unexpected_error": "The operation could not be completed.",
        "action_invalid": "Invalid action.",
        "validation_error": "Invalid data.",
        "inquiry_not_found": "Inquiry not found.",
        "session_not_found": "Comparison session not found or expired.",
        "session_committed": "Orders for this session were already created.",
        "action_not_allowed_for_status": "Action not allowed in the current status.",
        "edit_invalid": "Invalid edit for the comparison session.",
        "reference_self": "An item cannot replace itself.",
        "reference_invalid": "Invalid reference change.",
        "store_unavailable": "The database is unavailable right now.",
        "not_found": "Resource not found.",
    },
    "success": {
        "orders_created": "Orders created.",
        "reference_recorded": "Reference change recorded.",
        "reference_exists": "Reference change already recorded.",
        "self_references_removed": "Self-references removed.",
    },
}


def get_ui_text(key: str, default: str | None = None) -> str:
    value = FRIENDLY_TERMS.get(key) or CLASSIFICATION_LABELS.get(key) or SESSION_STATUS_LABELS.get(key)
    if value:
        return value
    if default is not None:
        return default
    return key


def get_message(category: str, key: str, default: str | None = None) -> str:
    value = (MESSAGES.get(category) or {}).get(str(key or "").strip())
    if value:
        return value
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)
