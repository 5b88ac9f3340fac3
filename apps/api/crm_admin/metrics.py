"""Prometheus metrics exposed on ``/metrics``.

Path labels use the route template with every parameter collapsed to ``{id}``
so that label cardinality stays bounded.
"""

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

crm_mutations_total = Counter(
    "crm_mutations_total",
    "Committed CRM mutations",
    ["resource", "action"],
)

crm_audit_write_failures_total = Counter(
    "crm_audit_write_failures_total",
    "Audit rows that could not be written",
    ["resource"],
)

_ROUTE_PARAM = re.compile(r"\{[^{}]+\}")
_NUMERIC_SEGMENT = re.compile(r"/\d+(?=/|$)")


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    if isinstance(template, str) and template:
        return _ROUTE_PARAM.sub("{id}", template)
    # unmatched requests have no route; fall back to the raw path
    return _NUMERIC_SEGMENT.sub("/{id}", request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_mutation(resource: str, action: str) -> None:
    crm_mutations_total.labels(resource=resource, action=action).inc()


def observe_audit_write_failure(resource: str) -> None:
    crm_audit_write_failures_total.labels(resource=resource).inc()


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
