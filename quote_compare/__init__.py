import os

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from quote_compare.config import Config
from quote_compare.db import close_db, init_db
from quote_compare.db_migrations import register_db_cli
from quote_compare.observability import (
    configure_json_logging,
    ensure_request_id,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    prometheus_metrics_text,
)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_error_handlers(app)
    _register_services(app)
    _register_blueprints(app)
    _register_health(app)
    register_db_cli(app)
    _maybe_init_schema(app)

    app.teardown_appcontext(close_db)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _maybe_init_schema(app: Flask) -> None:
    auto_init = bool(app.config.get("DB_AUTO_INIT", False))
    if app.testing:
        # Tests build the schema without running migrations.
        auto_init = True
    if not auto_init:
        return

    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("DB_AUTO_INIT ignored outside development.")
        return

    with app.app_context():
        init_db()


def _register_services(app: Flask) -> None:
    from quote_compare.application.comparison_service import ComparisonService, ComparisonSettings

    app.extensions["quote_compare"] = ComparisonService(ComparisonSettings.from_config(app.config))


def _register_blueprints(app: Flask) -> None:
    from quote_compare.routes.comparison_routes import comparison_bp

    app.register_blueprint(comparison_bp)


def _register_error_handlers(app: Flask) -> None:
    from quote_compare.errors import AppError, NotFoundError, SystemError

    @app.before_request
    def _ensure_request_id() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _append_request_id(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        return observe_response(response)

    def _log_error(error: AppError, request_id: str) -> None:
        log_method = app.logger.error if error.critical else app.logger.warning
        log_method(
            "application_error",
            extra={
                "request_id": request_id,
                "error_code": error.code,
                "http_status": error.http_status,
                "message_key": error.message_key,
                "details": error.details,
                "request_path": request.path,
                "http_method": request.method,
            },
            exc_info=error.critical,
        )

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        _log_error(exc, request_id)
        return jsonify(exc.to_response_payload(request_id)), exc.http_status

    @app.errorhandler(404)
    def _handle_not_found(_exc):
        if not request.path.startswith("/api/"):
            return _exc
        request_id = ensure_request_id()
        mapped = NotFoundError(details=request.path)
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc

        request_id = ensure_request_id()
        mapped = SystemError(
            code="unexpected_error",
            message_key="unexpected_error",
            http_status=500,
            critical=True,
            details=str(exc),
        )
        app.logger.exception(
            "unexpected_exception",
            extra={
                "request_id": request_id,
                "error_code": mapped.code,
                "request_path": request.path,
                "http_method": request.method,
            },
        )
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status


def _register_health(app: Flask) -> None:
    @app.route("/health")
    def health():
        from quote_compare.db import DB_ERRORS, _table_exists, get_read_db

        db_path = app.config.get("DB_PATH") or "unknown"
        backend = "postgres" if str(db_path).startswith("postgres") else "sqlite"
        sessions = app.extensions["quote_compare"].sessions
        payload = {
            "status": "ok",
            "db": backend,
            "env": app.config.get("ENV", "unknown"),
            "comparison_sessions": len(sessions),
            "metrics": {
                "http": metrics_snapshot(),
            },
        }
        try:
            payload["schema_ready"] = _table_exists(get_read_db(), "inquiries")
        except DB_ERRORS:
            payload["status"] = "degraded"
            payload["schema_ready"] = False
        if not payload["schema_ready"]:
            payload["status"] = "degraded"
        return payload, 200

    @app.route("/metrics")
    def metrics():
        return Response(prometheus_metrics_text(), mimetype="text/plain; version=0.0.4")
