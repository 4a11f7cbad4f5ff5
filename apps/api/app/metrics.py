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

lifecycle_jobs_total = Counter(
    "lifecycle_jobs_total",
    "Total lifecycle decay runs by status",
    ["status"],
)

lifecycle_job_duration_seconds = Histogram(
    "lifecycle_job_duration_seconds",
    "Lifecycle decay run duration in seconds",
)

lifecycle_leads_decayed_total = Counter(
    "lifecycle_leads_decayed_total",
    "Total leads moved to a decayed stage by population",
    ["population"],
)

lifecycle_population_failures_total = Counter(
    "lifecycle_population_failures_total",
    "Total failed decay populations",
    ["population"],
)

workflow_actions_total = Counter(
    "workflow_actions_total",
    "Total workflow actions by entity and action",
    ["entity_type", "action"],
)

audit_write_failures_total = Counter(
    "audit_write_failures_total",
    "Total audit log writes that failed",
    ["entity_type"],
)

rate_limited_requests_total = Counter(
    "rate_limited_requests_total",
    "Mutating requests rejected by the rate limiter",
    ["route_group"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_lifecycle_run(status: str, duration: float) -> None:
    lifecycle_jobs_total.labels(status=status).inc()
    lifecycle_job_duration_seconds.observe(duration)


def observe_lifecycle_failure() -> None:
    lifecycle_jobs_total.labels(status="failed").inc()


def observe_leads_decayed(population: str, count: int) -> None:
    if count > 0:
        lifecycle_leads_decayed_total.labels(population=population).inc(count)


def observe_population_failure(population: str) -> None:
    lifecycle_population_failures_total.labels(population=population).inc()


def observe_workflow_action(entity_type: str, action: str) -> None:
    workflow_actions_total.labels(entity_type=entity_type, action=action).inc()


def observe_audit_write_failure(entity_type: str) -> None:
    audit_write_failures_total.labels(entity_type=entity_type).inc()


def observe_rate_limited(route_group: str) -> None:
    rate_limited_requests_total.labels(route_group=route_group).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
