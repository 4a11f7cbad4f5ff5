from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, set_correlation_id


MAX_CORRELATION_ID_LENGTH = 128


def _incoming_correlation_id(request: Request) -> str | None:
    raw = request.headers.get("x-correlation-id") or request.headers.get("x-request-id")
    if not raw:
        return None
    value = raw.strip()
    if not value or len(value) > MAX_CORRELATION_ID_LENGTH:
        return None
    return value


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _incoming_correlation_id(request) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response
