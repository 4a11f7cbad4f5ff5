from __future__ import annotations

import uuid

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from app import audit
from app.agents.models import Profile
from app.agents.schemas import AgentCreate, ProfileRead
from app.core.auth import Actor
from app.core.database import unit_of_work
from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.core.rbac import resolve_role


class AgentService:
    entity_type = "profile"

    def list_agents(self, session: Session, role: str | None = None) -> list[ProfileRead]:
        stmt = select(Profile).where(and_(Profile.deleted_at.is_(None), Profile.role.is_not(None)))
        if role:
            if resolve_role(role) is None:
                raise ValidationError(f"Unknown role: {role}")
            stmt = stmt.where(Profile.role == role)
        profiles = session.scalars(stmt.order_by(Profile.full_name.asc())).all()
        return [ProfileRead.model_validate(item) for item in profiles]

    def create_agent(self, session: Session, actor: Actor, dto: AgentCreate) -> ProfileRead:
        email = str(dto.email) if dto.email is not None else None
        clash = [Profile.phone == dto.phone]
        if email is not None:
            clash.append(Profile.email == email)
        existing = session.scalar(select(Profile).where(or_(*clash)))
        if existing is not None:
            field = "phone" if existing.phone == dto.phone else "email"
            raise ConflictError(f"A profile with this {field} already exists", details={"field": field})

        with unit_of_work(session):
            profile = Profile(
                full_name=dto.full_name,
                phone=dto.phone,
                email=email,
                role=dto.role.value,
                territory_id=dto.territory_id,
            )
            session.add(profile)
            session.flush()
            created = ProfileRead.model_validate(profile)

        audit.log_activity(
            session,
            entity_type=self.entity_type,
            entity_id=profile.id,
            action="create",
            changes=audit.compute_changes(None, audit.snapshot(created)),
            performed_by_id=actor.id,
        )
        return created

    def get_agent(self, session: Session, agent_id: uuid.UUID) -> Profile:
        profile = session.scalar(
            select(Profile).where(
                and_(Profile.id == agent_id, Profile.deleted_at.is_(None), Profile.role.is_not(None))
            )
        )
        if profile is None:
            raise NotFoundError("Agent", agent_id)
        return profile

    def find_or_create_contact(self, session: Session, full_name: str, phone: str, email: str | None) -> Profile:
        """Buyer contacts are profiles without a role, keyed by phone."""
        profile = session.scalar(select(Profile).where(Profile.phone == phone))
        if profile is not None:
            return profile
        profile = Profile(full_name=full_name, phone=phone, email=email, role=None)
        session.add(profile)
        session.flush()
        return profile


agent_service = AgentService()
