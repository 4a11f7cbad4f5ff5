"""Static role to permission table and the checks built on it.

Permissions are ``<resource>:<verb>`` strings. Every lookup is a pure
function of the table below; an unknown or missing role holds nothing.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from enum import Enum


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    TEAM_LEAD = "team_lead"
    LISTING_AGENT = "listing_agent"
    BUYER_AGENT = "buyer_agent"
    VISIT_AGENT = "visit_agent"
    DISPATCH_AGENT = "dispatch_agent"
    CLOSING_AGENT = "closing_agent"
    SELLER_AGENT = "seller_agent"


def _crud(resource: str, *extra: str) -> set[str]:
    return {f"{resource}:{verb}" for verb in ("read", "create", "update", "delete", *extra)}


ALL_PERMISSIONS: frozenset[str] = frozenset(
    _crud("leads", "assign")
    | _crud("seller_leads", "assign")
    | _crud("listings", "publish", "verify")
    | _crud("visits", "complete")
    | _crud("tours", "dispatch")
    | _crud("sellers")
    | _crud("buildings")
    | _crud("units")
    | {"communications:read", "communications:create"}
    | _crud("notes")
    | {"buyer_events:read", "buyer_events:create"}
    | {"audit_logs:read"}
    | _crud("media")
    | _crud("inspections")
    | _crud("catalogues")
    | _crud("offers")
    | _crud("users")
    | {"settings:read", "settings:update"}
)

_TEAM_LEAD_EXCLUDED = {
    "leads:delete",
    "seller_leads:delete",
    "listings:delete",
    "listings:verify",
    "sellers:delete",
    "buildings:delete",
    "units:delete",
    "users:create",
    "users:update",
    "users:delete",
    "settings:read",
    "settings:update",
}

ROLE_PERMISSIONS: dict[Role, frozenset[str]] = {
    Role.SUPER_ADMIN: ALL_PERMISSIONS,
    Role.TEAM_LEAD: ALL_PERMISSIONS - _TEAM_LEAD_EXCLUDED,
    Role.LISTING_AGENT: frozenset(
        {
            "leads:read",
            "seller_leads:read",
            "seller_leads:create",
            "listings:read",
            "listings:create",
            "listings:update",
            "listings:publish",
            "sellers:read",
            "sellers:create",
            "sellers:update",
            "buildings:read",
            "buildings:create",
            "buildings:update",
            "units:read",
            "units:create",
            "units:update",
            "communications:read",
            "communications:create",
            "notes:read",
            "notes:create",
            "notes:update",
            "media:read",
            "media:create",
            "media:update",
            "inspections:read",
            "inspections:create",
            "inspections:update",
            "catalogues:read",
            "catalogues:create",
            "catalogues:update",
            "offers:read",
            "offers:create",
        }
    ),
    Role.BUYER_AGENT: frozenset(
        {
            "leads:read",
            "leads:create",
            "leads:update",
            "listings:read",
            "visits:read",
            "visits:create",
            "visits:update",
            "visits:complete",
            "sellers:read",
            "communications:read",
            "communications:create",
            "notes:read",
            "notes:create",
            "notes:update",
            "media:read",
            "offers:read",
            "offers:create",
        }
    ),
    Role.VISIT_AGENT: frozenset(
        {
            "leads:read",
            "listings:read",
            "visits:read",
            "visits:update",
            "visits:complete",
            "tours:read",
            "communications:read",
            "communications:create",
        }
    ),
    Role.DISPATCH_AGENT: frozenset(
        {
            "leads:read",
            "listings:read",
            "visits:read",
            "tours:read",
            "tours:create",
            "tours:update",
            "tours:dispatch",
            "communications:read",
        }
    ),
    Role.CLOSING_AGENT: frozenset(
        {
            "leads:read",
            "seller_leads:read",
            "seller_leads:update",
            "listings:read",
            "sellers:read",
            "sellers:update",
            "communications:read",
            "communications:create",
        }
    ),
    Role.SELLER_AGENT: frozenset(
        {
            "seller_leads:read",
            "seller_leads:create",
            "seller_leads:update",
            "seller_leads:assign",
            "sellers:read",
            "sellers:create",
            "sellers:update",
            "listings:read",
            "communications:read",
            "communications:create",
        }
    ),
}

OWNERSHIP_BYPASS_ROLES = frozenset({Role.SUPER_ADMIN, Role.TEAM_LEAD})


def resolve_role(role: Role | str | None) -> Role | None:
    if role is None or isinstance(role, Role):
        return role
    try:
        return Role(role)
    except ValueError:
        return None


def get_role_permissions(role: Role | str | None) -> frozenset[str]:
    resolved = resolve_role(role)
    if resolved is None:
        return frozenset()
    return ROLE_PERMISSIONS.get(resolved, frozenset())


def has_permission(role: Role | str | None, permission: str) -> bool:
    return permission in get_role_permissions(role)


def has_any_permission(role: Role | str | None, permissions: Iterable[str]) -> bool:
    granted = get_role_permissions(role)
    return any(permission in granted for permission in permissions)


def has_all_permissions(role: Role | str | None, permissions: Iterable[str]) -> bool:
    granted = get_role_permissions(role)
    if not granted:
        return False
    return all(permission in granted for permission in permissions)


def bypasses_ownership(role: Role | str | None) -> bool:
    return resolve_role(role) in OWNERSHIP_BYPASS_ROLES


def can_access_resource(
    role: Role | str | None,
    permission: str,
    resource_owner_id: uuid.UUID | str | None = None,
    current_user_id: uuid.UUID | str | None = None,
) -> bool:
    """Permission check combined with ownership.

    Super admins and team leads skip the ownership comparison. For every other
    role the owner must equal the current user when both are known; a resource
    without an owner is open to anyone holding the permission.
    """
    if not has_permission(role, permission):
        return False
    if bypasses_ownership(role):
        return True
    if resource_owner_id is not None and current_user_id is not None:
        return str(resource_owner_id) == str(current_user_id)
    return True
