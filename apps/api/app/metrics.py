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

guard_decisions_total = Counter(
    "crm_guard_decisions_total",
    "Page guard decisions by terminal state",
    ["state"],
)

pipeline_moves_total = Counter(
    "crm_pipeline_moves_total",
    "Pipeline board lead moves by outcome",
    ["outcome"],
)

auth_sign_ins_total = Counter(
    "crm_auth_sign_ins_total",
    "Sign-in attempts by outcome",
    ["outcome"],
)

csv_exports_total = Counter(
    "crm_csv_exports_total",
    "CSV report downloads by report",
    ["report"],
)

csv_export_rows = Histogram(
    "crm_csv_export_rows",
    "Rows written per CSV report download",
    ["report"],
    buckets=(0, 10, 100, 1000, 10000),
)


_UUID_RE = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def resolve_http_path_label(request: Request) -> str:
    """Label requests by route template so per-record URLs share one series.

    Unmatched paths (page 404s, say) fall back to the raw path with ids folded.
    """
    route = request.scope.get("route")
    path_format = getattr(route, "path_format", None)
    if isinstance(path_format, str) and path_format:
        return _PATH_PARAM_RE.sub("{id}", path_format)
    return _UUID_RE.sub("{id}", request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_guard_decision(state: str) -> None:
    guard_decisions_total.labels(state=state).inc()


def observe_pipeline_move(outcome: str) -> None:
    pipeline_moves_total.labels(outcome=outcome).inc()


def observe_sign_in(outcome: str) -> None:
    auth_sign_ins_total.labels(outcome=outcome).inc()


def observe_csv_export(report: str, row_count: int) -> None:
    csv_exports_total.labels(report=report).inc()
    csv_export_rows.labels(report=report).observe(row_count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
