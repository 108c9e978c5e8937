from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

custom_field_validation_failures_total = Counter(
    "custom_field_validation_failures_total",
    "Rejected custom-field batches by object type and reason",
    ["object_type", "reason"],
)

custom_field_formula_warnings_total = Counter(
    "custom_field_formula_warnings_total",
    "Calculation fields stored as null with a warning",
    ["object_type"],
)

custom_field_file_operations_total = Counter(
    "custom_field_file_operations_total",
    "File attachment operations by action",
    ["object_type", "action"],
)


_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _INT_RE.sub("/{id}", request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_validation_failure(object_type: str, reason: str) -> None:
    custom_field_validation_failures_total.labels(object_type=object_type, reason=reason).inc()


def observe_formula_warnings(object_type: str, count: int) -> None:
    if count > 0:
        custom_field_formula_warnings_total.labels(object_type=object_type).inc(count)


def observe_file_operation(object_type: str, action: str, count: int = 1) -> None:
    if count > 0:
        custom_field_file_operations_total.labels(object_type=object_type, action=action).inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
