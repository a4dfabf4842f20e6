from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from quote_compare.application.comparison_service import ComparisonService
from quote_compare.db import get_db, get_read_db
from quote_compare.domain.contracts import (
    ComparisonInput,
    OrderPreviewInput,
    ReferenceChangeInput,
    SessionCommitInput,
    SessionEditsInput,
)
from quote_compare.errors import ValidationError


comparison_bp = Blueprint("comparison", __name__)


def _service() -> ComparisonService:
    return current_app.extensions["quote_compare"]


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError(details="JSON body must be an object")
    return payload


def _optional_str_list(payload: dict, key: str) -> list[str] | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        raise ValidationError(details=f"{key} must be a list", payload={"field": key})
    # Keeps first-seen order, drops duplicates.
    return list(dict.fromkeys(str(entry).strip() for entry in value if str(entry or "").strip()))


def _list_field(payload: dict, key: str) -> list:
    value = payload.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(details=f"{key} must be a list", payload={"field": key})
    return value


def _dict_field(payload: dict, key: str) -> dict:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(details=f"{key} must be an object", payload={"field": key})
    return value


@comparison_bp.route("/api/inquiries/<int:inquiry_id>/responses/summary", methods=["GET"])
def inquiry_response_summary(inquiry_id: int):
    result = _service().reconcile(get_read_db(), inquiry_id)
    return jsonify(result.payload), result.status_code


@comparison_bp.route("/api/inquiries/<int:inquiry_id>/comparison", methods=["POST"])
def inquiry_comparison(inquiry_id: int):
    payload = _json_body()
    result = _service().compare(
        get_read_db(),
        ComparisonInput(
            inquiry_id=inquiry_id,
            active_groups=_optional_str_list(payload, "activeGroups"),
            price_overrides=_list_field(payload, "priceOverrides"),
            quantity_overrides=_dict_field(payload, "quantityOverrides"),
        ),
    )
    return jsonify(result.payload), result.status_code


@comparison_bp.route("/api/inquiries/<int:inquiry_id>/orders/preview", methods=["POST"])
def inquiry_order_preview(inquiry_id: int):
    payload = _json_body()
    selected = _optional_str_list(payload, "selectedGroups")
    if selected is None:
        raise ValidationError(details="selectedGroups is required", payload={"field": "selectedGroups"})
    result = _service().preview_orders(
        get_read_db(),
        OrderPreviewInput(
            inquiry_id=inquiry_id,
            selected_groups=selected,
            active_groups=_optional_str_list(payload, "activeGroups"),
            price_overrides=_list_field(payload, "priceOverrides"),
            quantity_overrides=_dict_field(payload, "quantityOverrides"),
        ),
    )
    return jsonify(result.payload), result.status_code


@comparison_bp.route("/api/inquiries/<int:inquiry_id>/comparison-sessions", methods=["POST"])
def open_comparison_session(inquiry_id: int):
    result = _service().open_session(get_read_db(), inquiry_id)
    return jsonify(result.payload), result.status_code


@comparison_bp.route("/api/comparison-sessions/<session_id>", methods=["GET"])
def get_comparison_session(session_id: str):
    result = _service().get_session(session_id)
    return jsonify(result.payload), result.status_code


@comparison_bp.route("/api/comparison-sessions/<session_id>", methods=["PATCH"])
def edit_comparison_session(session_id: str):
    payload = _json_body()
    result = _service().apply_edits(SessionEditsInput(session_id=session_id, edits=payload.get("edits")))
    return jsonify(result.payload), result.status_code


@comparison_bp.route("/api/comparison-sessions/<session_id>/orders", methods=["POST"])
def commit_comparison_session(session_id: str):
    payload = _json_body()
    result = _service().commit_session(
        get_db(),
        SessionCommitInput(
            session_id=session_id,
            selected_groups=_optional_str_list(payload, "selectedGroups"),
        ),
    )
    return jsonify(result.payload), result.status_code


@comparison_bp.route("/api/reference-changes", methods=["POST"])
def create_reference_change():
    payload = _json_body()
    result = _service().record_reference_change(
        get_db(),
        ReferenceChangeInput(
            original_item_id=str(payload.get("originalItemId") or "").strip(),
            new_reference_id=str(payload.get("newReferenceId") or "").strip(),
            source=str(payload.get("source") or "user").strip(),
            change_date=(str(payload.get("changeDate") or "").strip() or None),
            supplier_id=(str(payload.get("supplierId") or "").strip() or None),
            notes=(str(payload.get("notes") or "").strip() or None),
        ),
    )
    return jsonify(result.payload), result.status_code


@comparison_bp.route("/api/reference-changes/cleanup", methods=["POST"])
def cleanup_reference_changes():
    result = _service().cleanup_self_references(get_db())
    return jsonify(result.payload), result.status_code


@comparison_bp.route("/api/items/<path:item_id>/references", methods=["GET"])
def item_references(item_id: str):
    result = _service().item_references(get_read_db(), item_id)
    return jsonify(result.payload), result.status_code
