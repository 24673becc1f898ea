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

case_transitions_total = Counter(
    "case_transitions_total",
    "Total applied status transitions",
    ["entity_kind", "from_status", "to_status"],
)

case_transition_denials_total = Counter(
    "case_transition_denials_total",
    "Total rejected status transitions by reason",
    ["entity_kind", "reason"],
)

case_operation_failures_total = Counter(
    "case_operation_failures_total",
    "Total failed lifecycle operations by error code",
    ["operation", "code"],
)

case_operation_duration_seconds = Histogram(
    "case_operation_duration_seconds",
    "Lifecycle operation duration in seconds",
    ["operation"],
)

audit_entries_appended_total = Counter(
    "audit_entries_appended_total",
    "Total audit entries appended",
    ["entity_type", "is_override"],
)

profile_lock_events_total = Counter(
    "profile_lock_events_total",
    "Total profile lock state changes",
    ["event"],
)

ledger_rows_created_total = Counter(
    "ledger_rows_created_total",
    "Total invoice and commission rows created",
    ["kind"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_transition(entity_kind: str, from_status: str, to_status: str) -> None:
    case_transitions_total.labels(entity_kind=entity_kind, from_status=from_status, to_status=to_status).inc()


def observe_transition_denied(entity_kind: str, reason: str) -> None:
    case_transition_denials_total.labels(entity_kind=entity_kind, reason=reason).inc()


def observe_operation(operation: str, duration: float) -> None:
    case_operation_duration_seconds.labels(operation=operation).observe(duration)


def observe_operation_failure(operation: str, code: str) -> None:
    case_operation_failures_total.labels(operation=operation, code=code).inc()


def observe_audit_append(entity_type: str, is_override: bool) -> None:
    audit_entries_appended_total.labels(entity_type=entity_type, is_override=str(is_override).lower()).inc()


def observe_lock_event(event: str) -> None:
    profile_lock_events_total.labels(event=event).inc()


def observe_ledger_row(kind: str, count: int = 1) -> None:
    if count > 0:
        ledger_rows_created_total.labels(kind=kind).inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
