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

crm_contact_imports_total = Counter(
    "crm_contact_imports_total",
    "Total contact file imports by kind and outcome",
    ["file_kind", "outcome"],
)

crm_contact_import_rows_total = Counter(
    "crm_contact_import_rows_total",
    "Total imported contact rows by result",
    ["result"],
)

crm_directory_sync_businesses_total = Counter(
    "crm_directory_sync_businesses_total",
    "Total directory businesses reconciled by outcome",
    ["outcome"],
)

crm_directory_sync_duration_seconds = Histogram(
    "crm_directory_sync_duration_seconds",
    "Directory sync duration in seconds",
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
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_contact_import(file_kind: str, outcome: str, inserted: int, rejected: int) -> None:
    crm_contact_imports_total.labels(file_kind=file_kind, outcome=outcome).inc()
    if inserted > 0:
        crm_contact_import_rows_total.labels(result="inserted").inc(inserted)
    if rejected > 0:
        crm_contact_import_rows_total.labels(result="rejected").inc(rejected)


def observe_directory_business(outcome: str) -> None:
    crm_directory_sync_businesses_total.labels(outcome=outcome).inc()


def observe_directory_sync(duration: float) -> None:
    crm_directory_sync_duration_seconds.observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
