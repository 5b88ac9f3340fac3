from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crm_admin.context import reset_correlation_id, set_correlation_id


CORRELATION_HEADERS = ("x-correlation-id", "x-request-id")

_ACCEPTED_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def resolve_correlation_id(request: Request) -> str:
    """Take the caller's id when it is safe to log, otherwise mint a new one."""
    for header in CORRELATION_HEADERS:
        candidate = request.headers.get(header)
        if candidate and _ACCEPTED_ID_RE.match(candidate):
            return candidate
    return str(uuid.uuid4())


def _tag_current_span(correlation_id: str) -> None:
    span = trace.get_current_span()
    if span.is_recording():
        span.set_attribute("correlation_id", correlation_id)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request)
        request.state.correlation_id = correlation_id
        _tag_current_span(correlation_id)

        token = set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADERS[0]] = correlation_id
        return response
