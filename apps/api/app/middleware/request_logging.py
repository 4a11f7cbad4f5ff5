from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.context import get_request_context
from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")

_QUIET_PATHS = {"/health", "/metrics"}


def _level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def _request_fields(request: Request, path: str, status_code: int, started: float) -> dict[str, Any]:
    context = get_request_context(request)
    return {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        "auth_method": context.auth_method if context is not None else None,
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One ``http.request`` line and one Prometheus observation per request, keyed by route template."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            path = resolve_http_path_label(request)
            fields = _request_fields(request, path, 500, started)
            observe_http_request(request.method, path, 500, fields["duration_ms"] / 1000)
            logger.error("http.error", exc_info=True, extra=fields)
            raise

        # route is only in scope once the router has matched
        path = resolve_http_path_label(request)
        fields = _request_fields(request, path, response.status_code, started)
        observe_http_request(request.method, path, response.status_code, fields["duration_ms"] / 1000)
        if path not in _QUIET_PATHS:
            logger.log(_level_for_status(response.status_code), "http.request", extra=fields)
        return response
