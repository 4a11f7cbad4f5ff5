from __future__ import annotations

import hmac
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Depends
from jose import JWTError, jwt
from sqlalchemy import and_, select
from sqlalchemy.orm import Session
from starlette.requests import Request

from app.agents.models import Profile
from app.context import set_actor_id
from app.core.config import get_settings
from app.core.context import get_request_context
from app.core.database import get_db
from app.core.errors import ForbiddenError, MisconfigurationError, UnauthorizedError
from app.core.rbac import Role, bypasses_ownership, can_access_resource, has_permission, resolve_role


@dataclass(frozen=True)
class Actor:
    id: uuid.UUID
    role: Role | None
    full_name: str | None = None

    @property
    def is_admin(self) -> bool:
        return bypasses_ownership(self.role)


def issue_session_token(profile_id: uuid.UUID, expires_in: timedelta | None = None) -> str:
    settings = get_settings()
    lifetime = expires_in or timedelta(minutes=settings.session_ttl_minutes)
    payload = {
        "sub": str(profile_id),
        "exp": datetime.now(timezone.utc) + lifetime,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _extract_token(request: Request) -> str:
    settings = get_settings()
    cookie_token = request.cookies.get(settings.session_cookie_name)
    if cookie_token:
        return cookie_token
    auth_header = request.headers.get("authorization", "")
    return auth_header[len("Bearer "):] if auth_header.startswith("Bearer ") else ""


def session_subject(request: Request) -> str | None:
    """Profile id claimed by the session token, without a database lookup."""
    token = _extract_token(request)
    if not token:
        return None
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    subject = payload.get("sub")
    return str(subject) if subject is not None else None


def get_current_actor(request: Request, db: Session = Depends(get_db)) -> Actor:
    token = _extract_token(request)
    if not token:
        raise UnauthorizedError()

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        profile_id = uuid.UUID(str(payload.get("sub")))
    except (JWTError, ValueError) as exc:
        raise UnauthorizedError("Invalid or expired session") from exc

    profile = db.scalar(select(Profile).where(and_(Profile.id == profile_id, Profile.deleted_at.is_(None))))
    if profile is None:
        raise UnauthorizedError("Profile not found")

    actor = Actor(id=profile.id, role=resolve_role(profile.role), full_name=profile.full_name)
    set_actor_id(str(actor.id))
    context = get_request_context(request)
    if context is not None:
        context.bind_actor(str(actor.id), actor.role.value if actor.role is not None else None)
    return actor


def require_permission(actor: Actor, permission: str) -> None:
    if actor.role is None:
        raise UnauthorizedError("User role not assigned")
    if not has_permission(actor.role, permission):
        raise ForbiddenError(f"Missing permission '{permission}'")


def require_resource_access(actor: Actor, permission: str, owner_id: uuid.UUID | None) -> None:
    require_permission(actor, permission)
    if not can_access_resource(actor.role, permission, owner_id, actor.id):
        raise ForbiddenError("You do not have access to this resource")


def require_role(actor: Actor, *roles: Role) -> None:
    if actor.role is None:
        raise UnauthorizedError("User role not assigned")
    if actor.role not in roles:
        raise ForbiddenError(f"Requires role: {', '.join(role.value for role in roles)}")


def verify_api_key(provided: str) -> None:
    settings = get_settings()
    if not settings.leads_api_secret:
        raise MisconfigurationError("API key authentication is not configured")
    if not hmac.compare_digest(provided.encode("utf-8"), settings.leads_api_secret.encode("utf-8")):
        raise UnauthorizedError("Invalid API key")


def get_actor_or_api_client(request: Request, db: Session = Depends(get_db)) -> Actor | None:
    """Authenticated actor, or ``None`` for a trusted integration calling with ``x-api-key``."""
    api_key = request.headers.get("x-api-key")
    if api_key:
        verify_api_key(api_key)
        context = get_request_context(request)
        if context is not None:
            context.bind_api_client()
        return None
    return get_current_actor(request, db)
