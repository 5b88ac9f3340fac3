from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crm_admin.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("crm_admin.request")


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def _actor_id(request: Request) -> str | None:
    identity = getattr(request.state, "identity", None)
    return identity.actor_id if identity is not None else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Writes one access log line and the HTTP metrics for every request."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._emit(request, started, 500, "http.error", failed=True)
            raise
        self._emit(request, started, response.status_code, "http.request")
        return response

    def _emit(self, request: Request, started: float, status_code: int, message: str, *, failed: bool = False) -> None:
        duration = time.perf_counter() - started
        # resolved after the router ran so the route template is available
        path = resolve_http_path_label(request)
        observe_http_request(method=request.method, path=path, status=status_code, duration=duration)
        logger.log(
            _level_for(status_code),
            message,
            exc_info=failed,
            extra={
                "method": request.method,
                "path": path,
                "status_code": status_code,
                "duration_ms": round(duration * 1000, 2),
                "actor_id": _actor_id(request),
            },
        )
