from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.auth import session_subject
from app.core.config import Settings, get_settings
from app.core.errors import error_response
from app.metrics import observe_rate_limited


logger = logging.getLogger("app.rate_limit")

API_PREFIX = "/api/v1"
WINDOW_SECONDS = 60
LEAD_INTAKE_GROUP = "lead_intake"
MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


@dataclass
class _Bucket:
    tokens: float
    last_refill: float


class TokenBucketLimiter:
    """Token buckets keyed by (caller, route group), refilled continuously over the window."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def take(self, caller: str, route_group: str, capacity: int, window_seconds: int = WINDOW_SECONDS) -> int:
        """Consume one token; returns 0 when allowed, otherwise the seconds until a token frees up."""
        if capacity <= 0:
            return window_seconds

        now = time.monotonic()
        refill_rate = capacity / float(window_seconds)
        key = (caller, route_group)

        with self._lock:
            bucket = self._buckets.setdefault(key, _Bucket(tokens=float(capacity), last_refill=now))
            elapsed = max(0.0, now - bucket.last_refill)
            bucket.tokens = min(float(capacity), bucket.tokens + elapsed * refill_rate)
            bucket.last_refill = now

            if bucket.tokens < 1.0:
                return max(1, math.ceil((1.0 - bucket.tokens) / refill_rate))
            bucket.tokens -= 1.0
            return 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


def route_group(request: Request) -> str:
    """Collection segment after ``/api/v1``; webhook lead deliveries get their own group."""
    parts = [part for part in request.url.path[len(API_PREFIX):].split("/") if part]
    group = parts[0] if parts else "api"
    if group == "leads" and len(parts) == 1 and request.headers.get("x-api-key"):
        return LEAD_INTAKE_GROUP
    return group


def caller_key(request: Request) -> str:
    subject = session_subject(request)
    if subject is not None:
        return subject
    if request.headers.get("x-api-key"):
        return "api-key"
    return request.client.host if request.client else "anonymous"


def _capacity(settings: Settings, group: str) -> int:
    if group == LEAD_INTAKE_GROUP:
        return settings.rate_limit_webhook_per_minute
    return settings.rate_limit_mutations_per_minute


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    """Per-caller token bucket on mutating ``/api/v1`` calls, one bucket per entity collection."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in MUTATING_METHODS
            or not request.url.path.startswith(API_PREFIX)
        ):
            return await call_next(request)

        group = route_group(request)
        retry_after = _limiter.take(caller_key(request), group, _capacity(settings, group))
        if not retry_after:
            return await call_next(request)

        observe_rate_limited(group)
        logger.warning("rate_limit.rejected", extra={"route_group": group, "retry_after": retry_after})
        response = error_response(request, status_code=429, error="Too Many Requests", message="Too many requests")
        response.headers["Retry-After"] = str(retry_after)
        return response


def reset_rate_limiter() -> None:
    _limiter.clear()
