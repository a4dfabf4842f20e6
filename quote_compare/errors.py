from __future__ import annotations

from typing import Any, Dict

from quote_compare.ui_strings import error_message


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        fallback = error_message("unexpected_error", "The operation could not be completed.")
        return error_message(self.message_key, fallback)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "action_invalid"
    default_http_status = 400
    default_critical = False


class ValidationError(UserActionError):
    default_code = "validation_error"
    default_message_key = "validation_error"
    default_http_status = 400
    default_critical = False


class NotFoundError(UserActionError):
    default_code = "not_found"
    default_message_key = "not_found"
    default_http_status = 404
    default_critical = False


class ConflictError(UserActionError):
    default_code = "action_not_allowed_for_status"
    default_message_key = "action_not_allowed_for_status"
    default_http_status = 409
    default_critical = False


class StoreError(AppError):
    """Catalog or response store could not be read or written."""

    default_code = "store_unavailable"
    default_message_key = "store_unavailable"
    default_http_status = 503
    default_critical = True


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True


# Core failures below never leave the engine as exceptions: they are raised by
# boundary parsers and turned into Diagnostic records by the caller.


class CoreError(ValueError):
    kind = "data_error"

    def __init__(self, code: str, message: str = "", **context: Any) -> None:
        self.code = str(code or "").strip() or self.kind
        self.message = str(message or self.code)
        self.context = dict(context)
        super().__init__(self.message)


class DataError(CoreError):
    kind = "data_error"
