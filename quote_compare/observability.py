from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, Mapping

from flask import g, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_RECONCILIATION_DURATION_BUCKETS_MS = (1.0, 5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 5000.0)

_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


def _background_request_id(default: str | None = None) -> str:
    request_id = str(_LOG_REQUEST_ID_CTX.get() or "").strip()
    if request_id:
        return request_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id(default="n/a")
            payload["path"] = request.path
            payload["method"] = request.method
            if request.url_rule is not None:
                payload["route"] = request.url_rule.rule
        else:
            record_request_id = str(getattr(record, "request_id", "") or "").strip()
            payload["request_id"] = record_request_id or _background_request_id(default="n/a")

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_"):
                continue
            if key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        set_log_request_id(request_id)
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming or str(uuid.uuid4())
    g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _background_request_id(default=default)


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._errors_total = 0
            self._http_request_total: Dict[tuple[str, str, str], int] = {}
            self._http_request_duration_ms: Dict[tuple[str, str], dict] = {}
            self._domain_event_emitted_total: Dict[str, int] = {}
            self._classified_lines_total: Dict[str, int] = {}
            self._diagnostics_total: Dict[str, int] = {}
            self._reconciliation_duration_ms = self._new_histogram_state(_RECONCILIATION_DURATION_BUCKETS_MS)
            self._comparison_recompute_total = 0
            self._order_lines_built_total = 0
            self._unfulfillable_items_total = 0

    @staticmethod
    def _bucket_label(limit: float) -> str:
        return f"{limit:g}"

    @classmethod
    def _new_histogram_state(cls, limits: tuple[float, ...]) -> dict:
        return {
            "count": 0,
            "sum": 0.0,
            "buckets": {cls._bucket_label(limit): 0 for limit in limits} | {"+Inf": 0},
        }

    @classmethod
    def _observe_histogram(cls, state: dict, value: float, limits: tuple[float, ...]) -> None:
        duration = max(0.0, float(value))
        state["count"] += 1
        state["sum"] += duration
        for limit in limits:
            if duration <= limit:
                key = cls._bucket_label(limit)
                state["buckets"][key] = int(state["buckets"].get(key, 0)) + 1
        state["buckets"]["+Inf"] = int(state["count"])

    @staticmethod
    def _bump(counter: Dict[str, int], key: str, amount: int = 1) -> None:
        counter[key] = int(counter.get(key, 0)) + amount

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"
        status_key = str(int(status_code))
        with self._lock:
            self._requests_total += 1
            if int(status_code) >= 400:
                self._errors_total += 1
            key = (method_key, route_key, status_key)
            self._http_request_total[key] = int(self._http_request_total.get(key, 0)) + 1
            histogram = self._http_request_duration_ms.setdefault(
                (method_key, route_key),
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_domain_event_emitted(self, event_type: str) -> None:
        key = str(event_type or "unknown").strip() or "unknown"
        with self._lock:
            self._bump(self._domain_event_emitted_total, key)

    def observe_reconciliation(self, kind_counts: Mapping[str, int], duration_ms: float) -> None:
        with self._lock:
            for kind, count in (kind_counts or {}).items():
                increment = max(0, int(count or 0))
                if increment:
                    self._bump(self._classified_lines_total, str(kind), increment)
            self._observe_histogram(self._reconciliation_duration_ms, duration_ms, _RECONCILIATION_DURATION_BUCKETS_MS)

    def observe_diagnostics(self, kind_counts: Mapping[str, int]) -> None:
        with self._lock:
            for kind, count in (kind_counts or {}).items():
                increment = max(0, int(count or 0))
                if increment:
                    self._bump(self._diagnostics_total, str(kind), increment)

    def observe_comparison_recompute(self, count: int = 1) -> None:
        increment = max(0, int(count or 0))
        if increment <= 0:
            return
        with self._lock:
            self._comparison_recompute_total += increment

    def observe_orders_built(self, lines: int, unfulfillable: int) -> None:
        with self._lock:
            self._order_lines_built_total += max(0, int(lines or 0))
            self._unfulfillable_items_total += max(0, int(unfulfillable or 0))

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "requests_total": self._requests_total,
                "errors_total": self._errors_total,
                "error_rate": round(self._errors_total / self._requests_total, 4) if self._requests_total else 0.0,
                "classified_lines_total": dict(self._classified_lines_total),
                "diagnostics_total": dict(self._diagnostics_total),
                "comparison_recompute_total": self._comparison_recompute_total,
                "order_lines_built_total": self._order_lines_built_total,
                "unfulfillable_items_total": self._unfulfillable_items_total,
            }

    def prometheus_snapshot(self) -> dict:
        with self._lock:
            return {
                "http_request_total": [
                    {"method": method, "route": route, "status": status, "value": value}
                    for (method, route, status), value in sorted(self._http_request_total.items())
                ],
                "http_request_duration_ms": [
                    {"method": method, "route": route, **json.loads(json.dumps(state))}
                    for (method, route), state in sorted(self._http_request_duration_ms.items())
                ],
                "domain_event_emitted_total": dict(self._domain_event_emitted_total),
                "classified_lines_total": dict(self._classified_lines_total),
                "diagnostics_total": dict(self._diagnostics_total),
                "reconciliation_duration_ms": json.loads(json.dumps(self._reconciliation_duration_ms)),
                "comparison_recompute_total": self._comparison_recompute_total,
                "order_lines_built_total": self._order_lines_built_total,
                "unfulfillable_items_total": self._unfulfillable_items_total,
            }


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_domain_event_emitted(event_type: str) -> None:
    _METRICS.observe_domain_event_emitted(event_type)


def observe_reconciliation(kind_counts: Mapping[str, int], duration_ms: float) -> None:
    _METRICS.observe_reconciliation(kind_counts, duration_ms)


def observe_diagnostics(kind_counts: Mapping[str, int]) -> None:
    _METRICS.observe_diagnostics(kind_counts)


def observe_comparison_recompute(count: int = 1) -> None:
    _METRICS.observe_comparison_recompute(count)


def observe_orders_built(lines: int, unfulfillable: int) -> None:
    _METRICS.observe_orders_built(lines, unfulfillable)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def _prom_histogram(lines: list[str], name: str, state: dict, labels: dict[str, object] | None = None) -> None:
    base_labels = dict(labels or {})
    for bucket, count in state["buckets"].items():
        lines.append(_prom_line(f"{name}_bucket", int(count), labels={**base_labels, "le": bucket}))
    lines.append(_prom_line(f"{name}_sum", round(float(state["sum"]), 3), labels=base_labels or None))
    lines.append(_prom_line(f"{name}_count", int(state["count"]), labels=base_labels or None))


def prometheus_metrics_text() -> str:
    snapshot = _METRICS.prometheus_snapshot()
    lines: list[str] = []

    lines.append("# HELP http_request_total Total HTTP requests by method, route and status.")
    lines.append("# TYPE http_request_total counter")
    for sample in snapshot["http_request_total"]:
        lines.append(
            _prom_line(
                "http_request_total",
                int(sample["value"]),
                labels={"method": sample["method"], "route": sample["route"], "status": sample["status"]},
            )
        )

    lines.append("# HELP http_request_duration_ms HTTP request latency in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for sample in snapshot["http_request_duration_ms"]:
        _prom_histogram(
            lines,
            "http_request_duration_ms",
            sample,
            labels={"method": sample["method"], "route": sample["route"]},
        )

    lines.append("# HELP domain_event_emitted_total Domain events published by type.")
    lines.append("# TYPE domain_event_emitted_total counter")
    for event_type, value in sorted(snapshot["domain_event_emitted_total"].items()):
        lines.append(_prom_line("domain_event_emitted_total", int(value), labels={"event_type": event_type}))

    lines.append("# HELP reconciliation_classified_lines_total Supplier lines classified by kind.")
    lines.append("# TYPE reconciliation_classified_lines_total counter")
    for kind, value in sorted(snapshot["classified_lines_total"].items()):
        lines.append(_prom_line("reconciliation_classified_lines_total", int(value), labels={"kind": kind}))

    lines.append("# HELP reconciliation_diagnostics_total Records skipped or degraded by diagnostic kind.")
    lines.append("# TYPE reconciliation_diagnostics_total counter")
    for kind, value in sorted(snapshot["diagnostics_total"].items()):
        lines.append(_prom_line("reconciliation_diagnostics_total", int(value), labels={"kind": kind}))

    lines.append("# HELP reconciliation_duration_ms Normalize and aggregate latency in milliseconds.")
    lines.append("# TYPE reconciliation_duration_ms histogram")
    _prom_histogram(lines, "reconciliation_duration_ms", snapshot["reconciliation_duration_ms"])

    lines.append("# HELP comparison_recompute_total Best-price recomputations after invalidation.")
    lines.append("# TYPE comparison_recompute_total counter")
    lines.append(_prom_line("comparison_recompute_total", int(snapshot["comparison_recompute_total"])))

    lines.append("# HELP order_lines_built_total Order lines produced from comparison sessions.")
    lines.append("# TYPE order_lines_built_total counter")
    lines.append(_prom_line("order_lines_built_total", int(snapshot["order_lines_built_total"])))

    lines.append("# HELP unfulfillable_items_total Items left without a selected winning supplier.")
    lines.append("# TYPE unfulfillable_items_total counter")
    lines.append(_prom_line("unfulfillable_items_total", int(snapshot["unfulfillable_items_total"])))

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)
