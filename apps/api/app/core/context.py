from __future__ import annotations

from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    client_ip: str | None
    actor_id: str | None = None
    actor_role: str | None = None
    # "session", "api_key", or None until a dependency authenticates the caller
    auth_method: str | None = None

    def bind_actor(self, actor_id: str, role: str | None) -> None:
        self.actor_id = actor_id
        self.actor_role = role
        self.auth_method = "session"

    def bind_api_client(self) -> None:
        self.auth_method = "api_key"


def get_request_context(request: Request) -> RequestContext | None:
    return getattr(request.state, "context", None)


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        request.state.context = RequestContext(
            request_id=correlation_id,
            correlation_id=correlation_id,
            client_ip=_client_ip(request),
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
