from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.agents.schemas import AgentCreate, ProfileRead
from app.agents.service import agent_service
from app.core.auth import Actor, get_current_actor, require_permission
from app.core.database import get_db
from app.core.schemas import DataResponse


router = APIRouter(prefix="/api/v1/agents", tags=["agents"])


@router.get("", response_model=DataResponse[list[ProfileRead]])
def list_agents(
    role: str | None = Query(default=None),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[list[ProfileRead]]:
    require_permission(actor, "users:read")
    return DataResponse(data=agent_service.list_agents(db, role))


@router.post("", response_model=DataResponse[ProfileRead], status_code=status.HTTP_201_CREATED)
def create_agent(
    dto: AgentCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[ProfileRead]:
    require_permission(actor, "users:create")
    return DataResponse(data=agent_service.create_agent(db, actor, dto), message="Agent created")
