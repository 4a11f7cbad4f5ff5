from fastapi import APIRouter, Depends
from fastapi.responses import Response

from app.agents.api import router as agents_router
from app.core.auth import Actor, get_current_actor, require_permission
from app.core.config import get_settings
from app.core.errors import NotFoundError
from app.crm.api import (
    audit_router,
    buyer_events_router,
    cron_router,
    leads_router,
    media_router,
    notes_router,
    offers_router,
    seller_leads_router,
    sellers_router,
    tasks_router,
    visits_router,
)
from app.inventory.api import (
    buildings_router,
    catalogues_router,
    inspections_router,
    listings_router,
    units_router,
)
from app.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(agents_router)
router.include_router(leads_router)
router.include_router(seller_leads_router)
router.include_router(visits_router)
router.include_router(offers_router)
router.include_router(tasks_router)
router.include_router(notes_router)
router.include_router(media_router)
router.include_router(sellers_router)
router.include_router(buyer_events_router)
router.include_router(audit_router)
router.include_router(buildings_router)
router.include_router(units_router)
router.include_router(listings_router)
router.include_router(inspections_router)
router.include_router(catalogues_router)
router.include_router(cron_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(actor: Actor = Depends(get_current_actor)) -> dict[str, str | None]:
    return {
        "id": str(actor.id),
        "role": actor.role.value if actor.role is not None else None,
        "fullName": actor.full_name,
    }


@router.get("/metrics", tags=["system"])
def metrics(actor: Actor = Depends(get_current_actor)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFoundError("Metrics endpoint")
    require_permission(actor, "settings:read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
