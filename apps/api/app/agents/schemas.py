from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import EmailStr, Field

from app.core.rbac import Role
from app.core.schemas import PHONE_PATTERN, CamelModel, ReadModel


class AgentCreate(CamelModel):
    full_name: str = Field(min_length=1, max_length=200)
    phone: str = Field(pattern=PHONE_PATTERN)
    email: EmailStr | None = None
    role: Role
    territory_id: UUID | None = None


class ProfileRead(ReadModel):
    id: UUID
    full_name: str
    phone: str
    email: str | None
    role: str | None
    territory_id: UUID | None
    created_at: datetime
