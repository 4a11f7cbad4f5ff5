from __future__ import annotations

import hmac
import logging
import uuid
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.auth import Actor, get_actor_or_api_client, get_current_actor
from app.core.config import get_settings
from app.core.database import get_db, utcnow
from app.core.errors import MisconfigurationError, UnauthorizedError, ValidationError, error_response
from app.core.schemas import DataResponse, PaginatedResponse, Pagination
from app.crm.lifecycle import lifecycle_service
from app.crm.schemas import (
    AuditRead,
    BuyerEventCreate,
    BuyerEventRead,
    CronResponse,
    LeadActivityRequest,
    LeadActivityResult,
    LeadCreate,
    LeadCreateResponse,
    LeadRead,
    LeadUpdate,
    MediaCreate,
    MediaRead,
    MediaReorderRequest,
    MediaUpdate,
    NoteCreate,
    NoteRead,
    NoteUpdate,
    OfferCreate,
    OfferRead,
    OfferUpdate,
    SellerCreate,
    SellerLeadCreate,
    SellerLeadRead,
    SellerLeadUpdate,
    SellerRead,
    TaskCreate,
    TaskRead,
    TaskUpdate,
    VisitCreate,
    VisitRead,
    VisitUpdate,
)
from app.crm.service import (
    audit_service,
    buyer_event_service,
    lead_service,
    media_service,
    note_service,
    offer_service,
    seller_lead_service,
    seller_service,
    task_service,
    visit_service,
)
from app.metrics import observe_lifecycle_failure


logger = logging.getLogger("app.crm.api")

leads_router = APIRouter(prefix="/api/v1/leads", tags=["crm.leads"])
seller_leads_router = APIRouter(prefix="/api/v1/seller-leads", tags=["crm.seller_leads"])
visits_router = APIRouter(prefix="/api/v1/visits", tags=["crm.visits"])
offers_router = APIRouter(prefix="/api/v1/offers", tags=["crm.offers"])
tasks_router = APIRouter(prefix="/api/v1/tasks", tags=["crm.tasks"])
notes_router = APIRouter(prefix="/api/v1/notes", tags=["crm.notes"])
media_router = APIRouter(prefix="/api/v1/media", tags=["crm.media"])
sellers_router = APIRouter(prefix="/api/v1/sellers", tags=["crm.sellers"])
buyer_events_router = APIRouter(prefix="/api/v1/buyer-events", tags=["crm.buyer_events"])
audit_router = APIRouter(prefix="/api/v1/audit-logs", tags=["crm.audit"])
cron_router = APIRouter(tags=["cron"])


def _page(rows: list[Any], total: int, page: int, limit: int) -> PaginatedResponse[Any]:
    return PaginatedResponse(data=rows, pagination=Pagination.build(page, limit, total))


@leads_router.get("", response_model=PaginatedResponse[LeadRead])
def list_leads(
    status_filter: str | None = Query(default=None, alias="status"),
    stage: str | None = Query(default=None),
    source: str | None = Query(default=None),
    agent_id: uuid.UUID | None = Query(default=None, alias="agentId"),
    search: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> PaginatedResponse[LeadRead]:
    rows, total = lead_service.list_leads(
        db,
        actor,
        filters={"status": status_filter, "stage": stage, "source": source, "agent_id": agent_id, "search": search},
        page=page,
        limit=limit,
    )
    return _page(rows, total, page, limit)


@leads_router.post("", response_model=LeadCreateResponse, status_code=status.HTTP_201_CREATED)
def create_lead(
    dto: LeadCreate,
    response: Response,
    db: Session = Depends(get_db),
    actor: Actor | None = Depends(get_actor_or_api_client),
) -> LeadCreateResponse:
    lead, duplicate = lead_service.create_lead(db, actor, dto)
    if duplicate:
        response.status_code = status.HTTP_200_OK
        return LeadCreateResponse(data=lead, message="Lead already exists", duplicate=True)
    return LeadCreateResponse(data=lead, message="Lead created")


@leads_router.get("/{lead_id}", response_model=DataResponse[LeadRead])
def get_lead(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[LeadRead]:
    return DataResponse(data=lead_service.get_lead(db, actor, lead_id))


@leads_router.put("/{lead_id}", response_model=DataResponse[LeadRead])
def update_lead(
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[LeadRead]:
    return DataResponse(data=lead_service.update_lead(db, actor, lead_id, dto), message="Lead updated")


@leads_router.delete("/{lead_id}", response_model=DataResponse[None])
def delete_lead(
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[None]:
    lead_service.delete_lead(db, actor, lead_id)
    return DataResponse(data=None, message="Lead deleted")


@leads_router.post("/{lead_id}/activity", response_model=DataResponse[LeadActivityResult])
def record_lead_activity(
    lead_id: uuid.UUID,
    dto: LeadActivityRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[LeadActivityResult]:
    return DataResponse(data=lead_service.record_activity(db, actor, lead_id, dto.type))


@seller_leads_router.get("", response_model=PaginatedResponse[SellerLeadRead])
def list_seller_leads(
    status_filter: str | None = Query(default=None, alias="status"),
    source: str | None = Query(default=None),
    assigned_to_id: uuid.UUID | None = Query(default=None, alias="assignedToId"),
    search: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> PaginatedResponse[SellerLeadRead]:
    rows, total = seller_lead_service.list_seller_leads(
        db,
        actor,
        filters={"status": status_filter, "source": source, "assigned_to_id": assigned_to_id, "search": search},
        page=page,
        limit=limit,
    )
    return _page(rows, total, page, limit)


@seller_leads_router.post("", response_model=DataResponse[SellerLeadRead], status_code=status.HTTP_201_CREATED)
def create_seller_lead(
    dto: SellerLeadCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[SellerLeadRead]:
    return DataResponse(data=seller_lead_service.create_seller_lead(db, actor, dto), message="Seller lead created")


@seller_leads_router.get("/{seller_lead_id}", response_model=DataResponse[SellerLeadRead])
def get_seller_lead(
    seller_lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[SellerLeadRead]:
    return DataResponse(data=seller_lead_service.get_seller_lead(db, actor, seller_lead_id))


@seller_leads_router.put("/{seller_lead_id}", response_model=DataResponse[SellerLeadRead])
def update_seller_lead(
    seller_lead_id: uuid.UUID,
    dto: SellerLeadUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[SellerLeadRead]:
    updated = seller_lead_service.update_seller_lead(db, actor, seller_lead_id, dto)
    return DataResponse(data=updated, message="Seller lead updated")


@seller_leads_router.delete("/{seller_lead_id}", response_model=DataResponse[None])
def delete_seller_lead(
    seller_lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[None]:
    seller_lead_service.delete_seller_lead(db, actor, seller_lead_id)
    return DataResponse(data=None, message="Seller lead deleted")


@visits_router.get("", response_model=PaginatedResponse[VisitRead])
def list_visits(
    status_filter: str | None = Query(default=None, alias="status"),
    lead_id: uuid.UUID | None = Query(default=None, alias="leadId"),
    listing_id: uuid.UUID | None = Query(default=None, alias="listingId"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> PaginatedResponse[VisitRead]:
    rows, total = visit_service.list_visits(
        db,
        actor,
        filters={"status": status_filter, "lead_id": lead_id, "listing_id": listing_id},
        page=page,
        limit=limit,
    )
    return _page(rows, total, page, limit)


@visits_router.post("", response_model=DataResponse[VisitRead], status_code=status.HTTP_201_CREATED)
def create_visit(
    dto: VisitCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[VisitRead]:
    return DataResponse(data=visit_service.create_visit(db, actor, dto), message="Visit scheduled")


@visits_router.get("/{visit_id}", response_model=DataResponse[VisitRead])
def get_visit(
    visit_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[VisitRead]:
    return DataResponse(data=visit_service.get_visit(db, actor, visit_id))


@visits_router.put("/{visit_id}", response_model=DataResponse[VisitRead])
def update_visit(
    visit_id: uuid.UUID,
    dto: VisitUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[VisitRead]:
    return DataResponse(data=visit_service.update_visit(db, actor, visit_id, dto), message="Visit updated")


@visits_router.post("/{visit_id}", response_model=DataResponse[VisitRead])
def visit_action(
    visit_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[VisitRead]:
    visit = visit_service.perform_action(db, actor, visit_id, payload)
    return DataResponse(data=visit, message=f"Visit {payload.get('action')} applied")


@offers_router.get("", response_model=PaginatedResponse[OfferRead])
def list_offers(
    listing_id: uuid.UUID | None = Query(default=None, alias="listingId"),
    lead_id: uuid.UUID | None = Query(default=None, alias="leadId"),
    status_filter: str | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> PaginatedResponse[OfferRead]:
    rows, total = offer_service.list_offers(
        db,
        actor,
        filters={"listing_id": listing_id, "lead_id": lead_id, "status": status_filter},
        page=page,
        limit=limit,
    )
    return _page(rows, total, page, limit)


@offers_router.post("", response_model=DataResponse[OfferRead], status_code=status.HTTP_201_CREATED)
def create_offer(
    dto: OfferCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[OfferRead]:
    return DataResponse(data=offer_service.create_offer(db, actor, dto), message="Offer created")


@offers_router.get("/{offer_id}", response_model=DataResponse[OfferRead])
def get_offer(
    offer_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[OfferRead]:
    return DataResponse(data=offer_service.get_offer(db, actor, offer_id))


@offers_router.put("/{offer_id}", response_model=DataResponse[OfferRead])
def update_offer(
    offer_id: uuid.UUID,
    dto: OfferUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[OfferRead]:
    return DataResponse(data=offer_service.update_offer(db, actor, offer_id, dto), message="Offer updated")


@offers_router.delete("/{offer_id}", response_model=DataResponse[None])
def delete_offer(
    offer_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[None]:
    offer_service.delete_offer(db, actor, offer_id)
    return DataResponse(data=None, message="Offer deleted")


@offers_router.post("/{offer_id}", response_model=DataResponse[OfferRead])
def offer_action(
    offer_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[OfferRead]:
    offer = offer_service.perform_action(db, actor, offer_id, payload)
    return DataResponse(data=offer, message=f"Offer {payload.get('action')} applied")


@tasks_router.get("", response_model=PaginatedResponse[TaskRead])
def list_tasks(
    entity_type: str | None = Query(default=None, alias="entityType"),
    entity_id: uuid.UUID | None = Query(default=None, alias="entityId"),
    assignee_id: uuid.UUID | None = Query(default=None, alias="assigneeId"),
    status_filter: str | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> PaginatedResponse[TaskRead]:
    rows, total = task_service.list_tasks(
        db,
        actor,
        filters={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "assignee_id": assignee_id,
            "status": status_filter,
        },
        page=page,
        limit=limit,
    )
    return _page(rows, total, page, limit)


@tasks_router.post("", response_model=DataResponse[TaskRead], status_code=status.HTTP_201_CREATED)
def create_task(
    dto: TaskCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[TaskRead]:
    return DataResponse(data=task_service.create_task(db, actor, dto), message="Task created")


@tasks_router.get("/{task_id}", response_model=DataResponse[TaskRead])
def get_task(
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[TaskRead]:
    return DataResponse(data=task_service.get_task(db, actor, task_id))


@tasks_router.put("/{task_id}", response_model=DataResponse[TaskRead])
def update_task(
    task_id: uuid.UUID,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[TaskRead]:
    return DataResponse(data=task_service.update_task(db, actor, task_id, dto), message="Task updated")


@tasks_router.post("/{task_id}/complete", response_model=DataResponse[TaskRead])
def complete_task(
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor | None = Depends(get_actor_or_api_client),
) -> DataResponse[TaskRead]:
    return DataResponse(data=task_service.complete_task(db, actor, task_id), message="Task completed")


@tasks_router.delete("/{task_id}", response_model=DataResponse[None])
def delete_task(
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[None]:
    task_service.delete_task(db, actor, task_id)
    return DataResponse(data=None, message="Task deleted")


@notes_router.get("", response_model=DataResponse[list[NoteRead]])
def list_notes(
    entity_type: str = Query(alias="entityType"),
    entity_id: uuid.UUID = Query(alias="entityId"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[list[NoteRead]]:
    return DataResponse(data=note_service.list_notes(db, actor, entity_type, entity_id))


@notes_router.post("", response_model=DataResponse[NoteRead], status_code=status.HTTP_201_CREATED)
def create_note(
    dto: NoteCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[NoteRead]:
    return DataResponse(data=note_service.create_note(db, actor, dto), message="Note added")


@notes_router.get("/{note_id}", response_model=DataResponse[NoteRead])
def get_note(
    note_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[NoteRead]:
    return DataResponse(data=note_service.get_note(db, actor, note_id))


@notes_router.put("/{note_id}", response_model=DataResponse[NoteRead])
def update_note(
    note_id: uuid.UUID,
    dto: NoteUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[NoteRead]:
    return DataResponse(data=note_service.update_note(db, actor, note_id, dto), message="Note updated")


@notes_router.delete("/{note_id}", response_model=DataResponse[None])
def delete_note(
    note_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[None]:
    note_service.delete_note(db, actor, note_id)
    return DataResponse(data=None, message="Note deleted")


@media_router.get("", response_model=DataResponse[list[MediaRead]])
def list_media(
    entity_type: str = Query(alias="entityType"),
    entity_id: uuid.UUID = Query(alias="entityId"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[list[MediaRead]]:
    return DataResponse(data=media_service.list_media(db, actor, entity_type, entity_id))


@media_router.post("", response_model=DataResponse[MediaRead], status_code=status.HTTP_201_CREATED)
def create_media(
    dto: MediaCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[MediaRead]:
    return DataResponse(data=media_service.create_media(db, actor, dto), message="Media added")


@media_router.put("/order", response_model=DataResponse[list[MediaRead]])
def reorder_media(
    dto: MediaReorderRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[list[MediaRead]]:
    return DataResponse(data=media_service.reorder_media(db, actor, dto), message="Media reordered")


@media_router.get("/{media_id}", response_model=DataResponse[MediaRead])
def get_media(
    media_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[MediaRead]:
    return DataResponse(data=media_service.get_media(db, actor, media_id))


@media_router.put("/{media_id}", response_model=DataResponse[MediaRead])
def update_media(
    media_id: uuid.UUID,
    dto: MediaUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[MediaRead]:
    return DataResponse(data=media_service.update_media(db, actor, media_id, dto), message="Media updated")


@media_router.delete("/{media_id}", response_model=DataResponse[None])
def delete_media(
    media_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[None]:
    media_service.delete_media(db, actor, media_id)
    return DataResponse(data=None, message="Media deleted")


@sellers_router.get("", response_model=PaginatedResponse[SellerRead])
def list_sellers(
    search: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> PaginatedResponse[SellerRead]:
    rows, total = seller_service.list_sellers(db, actor, search, page, limit)
    return _page(rows, total, page, limit)


@sellers_router.post("", response_model=DataResponse[SellerRead], status_code=status.HTTP_201_CREATED)
def create_seller(
    dto: SellerCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[SellerRead]:
    seller = seller_service.create_seller(db, actor, dto)
    return DataResponse(data=seller, message="Seller contact created successfully")


@buyer_events_router.get("", response_model=PaginatedResponse[BuyerEventRead])
def list_buyer_events(
    lead_id: uuid.UUID | None = Query(default=None, alias="leadId"),
    event_type: str | None = Query(default=None, alias="eventType"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> PaginatedResponse[BuyerEventRead]:
    rows, total = buyer_event_service.list_events(
        db,
        actor,
        filters={"lead_id": lead_id, "event_type": event_type},
        page=page,
        limit=limit,
    )
    return _page(rows, total, page, limit)


@buyer_events_router.post("", response_model=DataResponse[BuyerEventRead], status_code=status.HTTP_201_CREATED)
def create_buyer_event(
    dto: BuyerEventCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[BuyerEventRead]:
    event = buyer_event_service.create_event(db, actor, dto)
    return DataResponse(data=event, message="Buyer event created successfully")


@audit_router.get("", response_model=DataResponse[list[AuditRead]])
def list_audit_logs(
    entity_type: str | None = Query(default=None, alias="entityType"),
    entity_id: uuid.UUID | None = Query(default=None, alias="entityId"),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[list[AuditRead]]:
    if not entity_type or entity_id is None:
        raise ValidationError(
            "entityType and entityId are required",
            details=[{"path": "entityType", "message": "required"}, {"path": "entityId", "message": "required"}],
        )
    return DataResponse(data=audit_service.list_audit_logs(db, actor, entity_type, entity_id, limit))


def _verify_cron_secret(request: Request) -> None:
    secret = get_settings().cron_secret
    if not secret:
        raise MisconfigurationError("CRON_SECRET is not configured")
    header = request.headers.get("authorization", "")
    token = header[len("Bearer "):] if header.startswith("Bearer ") else ""
    if not token or not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        raise UnauthorizedError("Invalid cron secret")


@cron_router.get("/api/cron/process-lifecycle", response_model=CronResponse)
@cron_router.get("/api/v1/cron/process-lifecycle", response_model=CronResponse)
def process_lifecycle(request: Request, db: Session = Depends(get_db)) -> CronResponse | JSONResponse:
    _verify_cron_secret(request)
    try:
        result = lifecycle_service.process_time_decay(db)
    except Exception as exc:
        observe_lifecycle_failure()
        logger.exception("lifecycle.cron_failed", extra={"job": "process_time_decay", "error": str(exc)})
        return error_response(request, status_code=500, error="Internal Server Error", message=str(exc))
    return CronResponse(success=True, result=result, processed_at=utcnow())
