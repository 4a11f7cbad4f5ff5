from __future__ import annotations

import hmac
import logging
import secrets
import uuid
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from app import audit
from app.agents.models import Profile
from app.agents.service import agent_service
from app.core.auth import Actor, require_permission, require_resource_access, require_role
from app.core.database import apply_changes, check_row_version, paginate, unit_of_work, utcnow
from app.core.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    OperationNotAllowedError,
    OTPError,
    ValidationError,
)
from app.core.rbac import Role
from app.core.schemas import parse_action
from app.crm.lifecycle import calculate_stage, lifecycle_service
from app.crm.models import BuyerEvent, Lead, MediaItem, Note, Offer, SellerLead, Task, Visit
from app.crm.schemas import (
    AuditRead,
    BuyerEventCreate,
    BuyerEventRead,
    LeadActivityResult,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    MediaCreate,
    MediaRead,
    MediaReorderRequest,
    MediaUpdate,
    NoteCreate,
    NoteRead,
    NoteUpdate,
    OfferAcceptAction,
    OfferCounterAction,
    OfferCreate,
    OfferRead,
    OfferRejectAction,
    OfferUpdate,
    SellerCreate,
    SellerLeadCreate,
    SellerLeadRead,
    SellerLeadUpdate,
    SellerRead,
    TaskCreate,
    TaskRead,
    TaskUpdate,
    VisitCancelAction,
    VisitCompleteAction,
    VisitConfirmAction,
    VisitCreate,
    VisitRead,
    VisitRescheduleAction,
    VisitUpdate,
)
from app.inventory.service import listing_service
from app.metrics import observe_workflow_action
from app.otel import workflow_span


logger = logging.getLogger("app.crm")


def _update_values(dto: Any) -> dict[str, Any]:
    return dto.model_dump(exclude_unset=True, exclude={"row_version"})


def generate_otp() -> str:
    return str(secrets.randbelow(9000) + 1000)


class LeadService:
    entity_type = "lead"
    snapshot_exclude = audit.BOOKKEEPING_FIELDS | {"profile"}
    field_update_keys = (
        "source",
        "external_id",
        "locality",
        "drop_reason",
        "assigned_agent_id",
        "last_contacted_at",
    )

    def _to_read(self, lead: Lead) -> LeadRead:
        return LeadRead.model_validate(lead)

    def _snapshot(self, lead: Lead) -> dict[str, Any]:
        return audit.snapshot(self._to_read(lead), exclude=self.snapshot_exclude)

    def get_active(self, session: Session, lead_id: uuid.UUID) -> Lead:
        lead = session.scalar(select(Lead).where(and_(Lead.id == lead_id, Lead.deleted_at.is_(None))))
        if lead is None:
            raise NotFoundError("Lead", lead_id)
        return lead

    def list_leads(
        self,
        session: Session,
        actor: Actor,
        filters: dict[str, Any],
        page: int,
        limit: int,
    ) -> tuple[list[LeadRead], int]:
        require_permission(actor, "leads:read")
        stmt = select(Lead).where(Lead.deleted_at.is_(None))
        agent_id = filters.get("agent_id")
        if not actor.is_admin:
            agent_id = actor.id
        if agent_id:
            stmt = stmt.where(Lead.assigned_agent_id == agent_id)
        if filters.get("status"):
            stmt = stmt.where(Lead.status == filters["status"])
        if filters.get("stage"):
            stmt = stmt.where(Lead.stage == filters["stage"])
        if filters.get("source"):
            stmt = stmt.where(Lead.source == filters["source"])
        if filters.get("search"):
            term = f"%{filters['search']}%"
            stmt = stmt.join(Profile, Profile.id == Lead.profile_id).where(
                or_(Profile.full_name.ilike(term), Profile.phone.ilike(term), Lead.external_id.ilike(term))
            )
        rows, total = paginate(session, stmt.order_by(Lead.created_at.desc()), page, limit)
        return [self._to_read(item) for item in rows], total

    def get_lead(self, session: Session, actor: Actor, lead_id: uuid.UUID) -> LeadRead:
        lead = self.get_active(session, lead_id)
        require_resource_access(actor, "leads:read", lead.assigned_agent_id)
        return self._to_read(lead)

    def create_lead(self, session: Session, actor: Actor | None, dto: LeadCreate) -> tuple[LeadRead, bool]:
        """Create a buyer lead; ``actor`` is None for inbound webhook deliveries.

        A delivery repeating an ``(externalId, source)`` pair returns the
        existing lead and ``True`` instead of creating a second one.
        """
        if actor is not None:
            require_permission(actor, "leads:create")

        if dto.external_id:
            existing = session.scalar(
                select(Lead).where(
                    and_(Lead.external_id == dto.external_id, Lead.source == dto.source, Lead.deleted_at.is_(None))
                )
            )
            if existing is not None:
                logger.info(
                    "lead.duplicate_delivery",
                    extra={"entity_type": self.entity_type, "entity_id": str(existing.id), "phone": dto.profile.phone},
                )
                return self._to_read(existing), True

        requirements = None
        if dto.requirements is not None and not dto.requirements.is_empty():
            requirements = dto.requirements.model_dump(mode="json", exclude_none=True)

        now = utcnow()
        with unit_of_work(session):
            assigned_agent_id = dto.assigned_agent_id
            if assigned_agent_id is not None:
                agent_service.get_agent(session, assigned_agent_id)
            elif actor is not None and not actor.is_admin:
                assigned_agent_id = actor.id
            contact = agent_service.find_or_create_contact(
                session,
                full_name=dto.profile.full_name,
                phone=dto.profile.phone,
                email=str(dto.profile.email) if dto.profile.email is not None else None,
            )
            lead = Lead(
                profile_id=contact.id,
                source=dto.source,
                external_id=dto.external_id,
                status="new",
                stage=calculate_stage(now, requirements is not None, None, 0, now, lifecycle_service.thresholds),
                assigned_agent_id=assigned_agent_id,
                requirement_json=requirements,
                locality=dto.locality,
                last_active_at=now,
            )
            session.add(lead)
            session.flush()
            session.refresh(lead)
            after = self._snapshot(lead)

        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=lead.id,
            action="create",
            before=None,
            after=after,
            performed_by_id=actor.id if actor is not None else None,
        )
        logger.info("lead.created", extra={"entity_type": self.entity_type, "entity_id": str(lead.id)})
        return self._to_read(lead), False

    def update_lead(self, session: Session, actor: Actor, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        """Apply one of three kinds of update, chosen by the body.

        ``status`` present: status transition only. ``agentId`` present:
        reassignment only. Otherwise: a field update. Status transitions are
        not restricted to a fixed order.
        """
        fields = dto.model_fields_set - {"row_version"}
        with unit_of_work(session):
            lead = self.get_active(session, lead_id)
            require_resource_access(actor, "leads:update", lead.assigned_agent_id)
            check_row_version(lead, dto.row_version)

            if "status" in fields:
                if dto.status is None:
                    raise ValidationError("status cannot be null", details=[{"path": "status", "message": "required"}])
                values: dict[str, Any] = {"status": dto.status}
            elif "agent_id" in fields:
                require_permission(actor, "leads:assign")
                if dto.agent_id is not None:
                    agent_service.get_agent(session, dto.agent_id)
                values = {"assigned_agent_id": dto.agent_id}
            else:
                values = {key: getattr(dto, key) for key in self.field_update_keys if key in fields}
                if "assigned_agent_id" in values:
                    require_permission(actor, "leads:assign")
                    if values["assigned_agent_id"] is not None:
                        agent_service.get_agent(session, values["assigned_agent_id"])
                if "requirements" in fields:
                    requirements = dto.requirements
                    values["requirement_json"] = (
                        requirements.model_dump(mode="json", exclude_none=True)
                        if requirements is not None and not requirements.is_empty()
                        else None
                    )

            before = self._snapshot(lead)
            for key, value in values.items():
                setattr(lead, key, value)
            if "requirement_json" in values:
                lifecycle_service.on_preference_saved(lead)
            session.flush()
            session.refresh(lead)
            after = self._snapshot(lead)
            if after != before:
                lead.row_version = lead.row_version + 1

        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=lead.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        return self._to_read(lead)

    def delete_lead(self, session: Session, actor: Actor, lead_id: uuid.UUID) -> None:
        require_role(actor, Role.SUPER_ADMIN)
        deleted_at = utcnow()
        with unit_of_work(session):
            lead = self.get_active(session, lead_id)
            lead.deleted_at = deleted_at
            lead.row_version = lead.row_version + 1
        audit.record_deletion(
            session,
            entity_type=self.entity_type,
            entity_id=lead.id,
            deleted_at=deleted_at,
            performed_by_id=actor.id,
        )

    def record_activity(
        self,
        session: Session,
        actor: Actor,
        lead_id: uuid.UUID,
        activity_type: str,
    ) -> LeadActivityResult:
        with unit_of_work(session):
            lead = self.get_active(session, lead_id)
            require_resource_access(actor, "leads:update", lead.assigned_agent_id)
            before = self._snapshot(lead)
            reactivated = lifecycle_service.register_activity(lead, activity_type)
            session.flush()
            session.refresh(lead)
            after = self._snapshot(lead)
            if after != before:
                lead.row_version = lead.row_version + 1

        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=lead.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        return LeadActivityResult(reactivated=reactivated, new_stage=lead.stage if reactivated else None)


class SellerLeadService:
    entity_type = "seller_lead"

    def _snapshot(self, seller_lead: SellerLead) -> dict[str, Any]:
        return audit.snapshot(SellerLeadRead.model_validate(seller_lead))

    def get_active(self, session: Session, seller_lead_id: uuid.UUID) -> SellerLead:
        seller_lead = session.scalar(
            select(SellerLead).where(and_(SellerLead.id == seller_lead_id, SellerLead.deleted_at.is_(None)))
        )
        if seller_lead is None:
            raise NotFoundError("Seller lead", seller_lead_id)
        return seller_lead

    def list_seller_leads(
        self,
        session: Session,
        actor: Actor,
        filters: dict[str, Any],
        page: int,
        limit: int,
    ) -> tuple[list[SellerLeadRead], int]:
        require_permission(actor, "seller_leads:read")
        stmt = select(SellerLead).where(SellerLead.deleted_at.is_(None))
        assigned_to_id = filters.get("assigned_to_id")
        if not actor.is_admin:
            assigned_to_id = actor.id
        if assigned_to_id:
            stmt = stmt.where(SellerLead.assigned_to_id == assigned_to_id)
        if filters.get("status"):
            stmt = stmt.where(SellerLead.status == filters["status"])
        if filters.get("source"):
            stmt = stmt.where(SellerLead.source == filters["source"])
        if filters.get("search"):
            term = f"%{filters['search']}%"
            stmt = stmt.where(or_(SellerLead.name.ilike(term), SellerLead.phone.ilike(term)))
        rows, total = paginate(session, stmt.order_by(SellerLead.created_at.desc()), page, limit)
        return [SellerLeadRead.model_validate(item) for item in rows], total

    def get_seller_lead(self, session: Session, actor: Actor, seller_lead_id: uuid.UUID) -> SellerLeadRead:
        seller_lead = self.get_active(session, seller_lead_id)
        require_resource_access(actor, "seller_leads:read", seller_lead.assigned_to_id)
        return SellerLeadRead.model_validate(seller_lead)

    def create_seller_lead(self, session: Session, actor: Actor, dto: SellerLeadCreate) -> SellerLeadRead:
        require_permission(actor, "seller_leads:create")
        with unit_of_work(session):
            values = dto.model_dump()
            values["email"] = str(dto.email) if dto.email is not None else None
            if values["assigned_to_id"] is None and not actor.is_admin:
                values["assigned_to_id"] = actor.id
            elif values["assigned_to_id"] is not None:
                agent_service.get_agent(session, values["assigned_to_id"])
            seller_lead = SellerLead(**values, status="new", created_by_id=actor.id)
            session.add(seller_lead)
            session.flush()
            session.refresh(seller_lead)
            after = self._snapshot(seller_lead)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=seller_lead.id,
            action="create",
            before=None,
            after=after,
            performed_by_id=actor.id,
        )
        return SellerLeadRead.model_validate(seller_lead)

    def update_seller_lead(
        self,
        session: Session,
        actor: Actor,
        seller_lead_id: uuid.UUID,
        dto: SellerLeadUpdate,
    ) -> SellerLeadRead:
        with unit_of_work(session):
            seller_lead = self.get_active(session, seller_lead_id)
            require_resource_access(actor, "seller_leads:update", seller_lead.assigned_to_id)
            check_row_version(seller_lead, dto.row_version)
            values = _update_values(dto)
            if "email" in values and values["email"] is not None:
                values["email"] = str(values["email"])
            if "assigned_to_id" in values:
                require_permission(actor, "seller_leads:assign")
                if values["assigned_to_id"] is not None:
                    agent_service.get_agent(session, values["assigned_to_id"])
            before, after = apply_changes(session, seller_lead, values, self._snapshot)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=seller_lead.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        return SellerLeadRead.model_validate(seller_lead)

    def delete_seller_lead(self, session: Session, actor: Actor, seller_lead_id: uuid.UUID) -> None:
        require_permission(actor, "seller_leads:delete")
        deleted_at = utcnow()
        with unit_of_work(session):
            seller_lead = self.get_active(session, seller_lead_id)
            seller_lead.deleted_at = deleted_at
            seller_lead.row_version = seller_lead.row_version + 1
        audit.record_deletion(
            session,
            entity_type=self.entity_type,
            entity_id=seller_lead.id,
            deleted_at=deleted_at,
            performed_by_id=actor.id,
        )


class VisitService:
    entity_type = "visit"

    def _snapshot(self, visit: Visit) -> dict[str, Any]:
        return audit.snapshot(VisitRead.model_validate(visit))

    def get_visit_row(self, session: Session, visit_id: uuid.UUID) -> Visit:
        visit = session.get(Visit, visit_id)
        if visit is None:
            raise NotFoundError("Visit", visit_id)
        return visit

    def list_visits(
        self,
        session: Session,
        actor: Actor,
        filters: dict[str, Any],
        page: int,
        limit: int,
    ) -> tuple[list[VisitRead], int]:
        require_permission(actor, "visits:read")
        stmt = select(Visit)
        if filters.get("status"):
            stmt = stmt.where(Visit.status == filters["status"])
        if filters.get("lead_id"):
            stmt = stmt.where(Visit.lead_id == filters["lead_id"])
        if filters.get("listing_id"):
            stmt = stmt.where(Visit.listing_id == filters["listing_id"])
        rows, total = paginate(session, stmt.order_by(Visit.scheduled_at.desc()), page, limit)
        return [VisitRead.model_validate(item) for item in rows], total

    def get_visit(self, session: Session, actor: Actor, visit_id: uuid.UUID) -> VisitRead:
        require_permission(actor, "visits:read")
        return VisitRead.model_validate(self.get_visit_row(session, visit_id))

    def create_visit(self, session: Session, actor: Actor, dto: VisitCreate) -> VisitRead:
        require_permission(actor, "visits:create")
        with unit_of_work(session):
            lead = lead_service.get_active(session, dto.lead_id)
            listing = listing_service.get_active(session, dto.listing_id)
            visit = Visit(
                lead_id=lead.id,
                listing_id=listing.id,
                tour_id=dto.tour_id,
                scheduled_at=dto.scheduled_at,
                status="pending",
                otp_code=generate_otp(),
            )
            session.add(visit)
            session.flush()
            session.refresh(visit)
            visit_after = self._snapshot(visit)
            lead_before = lead_service._snapshot(lead)
            lifecycle_service.on_visit_created(lead)
            session.flush()
            session.refresh(lead)
            lead_after = lead_service._snapshot(lead)
            if lead_after != lead_before:
                lead.row_version = lead.row_version + 1

        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=visit.id,
            action="create",
            before=None,
            after=visit_after,
            performed_by_id=actor.id,
        )
        audit.record_change(
            session,
            entity_type=lead_service.entity_type,
            entity_id=lead.id,
            action="update",
            before=lead_before,
            after=lead_after,
            performed_by_id=actor.id,
        )
        return VisitRead.model_validate(visit)

    def update_visit(self, session: Session, actor: Actor, visit_id: uuid.UUID, dto: VisitUpdate) -> VisitRead:
        require_permission(actor, "visits:update")
        with unit_of_work(session):
            visit = self.get_visit_row(session, visit_id)
            check_row_version(visit, dto.row_version)
            values = _update_values(dto)
            if "scheduled_at" in values and visit.status in {"completed", "cancelled"}:
                raise OperationNotAllowedError(f"Cannot change the schedule of a {visit.status} visit")
            before, after = apply_changes(session, visit, values, self._snapshot)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=visit.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        return VisitRead.model_validate(visit)

    def perform_action(self, session: Session, actor: Actor, visit_id: uuid.UUID, payload: Any) -> VisitRead:
        command = parse_action(
            payload,
            {
                "confirm": VisitConfirmAction,
                "cancel": VisitCancelAction,
                "reschedule": VisitRescheduleAction,
                "complete": VisitCompleteAction,
            },
        )
        with workflow_span(self.entity_type, command.action, visit_id):
            if isinstance(command, VisitRescheduleAction):
                result = self._reschedule(session, actor, visit_id, command)
            else:
                result = self._transition(session, actor, visit_id, command)
        observe_workflow_action(self.entity_type, command.action)
        return result

    def _transition(self, session: Session, actor: Actor, visit_id: uuid.UUID, command: Any) -> VisitRead:
        now = utcnow()
        with unit_of_work(session):
            visit = self.get_visit_row(session, visit_id)
            if isinstance(command, VisitConfirmAction):
                require_permission(actor, "visits:update")
                if visit.status not in {"pending", "scheduled"}:
                    raise OperationNotAllowedError(f"Cannot confirm a {visit.status} visit")
                values: dict[str, Any] = {"visit_confirmed": True, "confirmed_at": now, "status": "scheduled"}
            elif isinstance(command, VisitCancelAction):
                require_permission(actor, "visits:update")
                if visit.status == "completed":
                    raise OperationNotAllowedError(f"Cannot cancel a {visit.status} visit")
                values = {
                    "visit_canceled": True,
                    "canceled_at": now,
                    "drop_reason": command.drop_reason,
                    "cancellation_notes": command.cancellation_notes,
                    "status": "cancelled",
                }
            else:
                require_permission(actor, "visits:complete")
                if visit.status in {"completed", "cancelled"}:
                    raise OperationNotAllowedError(f"Cannot complete a {visit.status} visit")
                if not visit.otp_code or not hmac.compare_digest(visit.otp_code, command.otp_code):
                    raise OTPError("Invalid OTP")
                values = {
                    "visit_completed": True,
                    "completed_at": now,
                    "completion_latitude": command.location.latitude,
                    "completion_longitude": command.location.longitude,
                    "otp_verified": True,
                    "status": "completed",
                    "completed_by_id": actor.id,
                    "feedback_text": command.feedback_text,
                    "feedback_rating": command.feedback_rating,
                    "buyer_score": command.buyer_score,
                    "primary_pain_point": command.primary_pain_point,
                }
            before, after = apply_changes(session, visit, values, self._snapshot)

        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=visit.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        return VisitRead.model_validate(visit)

    def _reschedule(
        self,
        session: Session,
        actor: Actor,
        visit_id: uuid.UUID,
        command: VisitRescheduleAction,
    ) -> VisitRead:
        require_permission(actor, "visits:create")
        now = utcnow()
        with unit_of_work(session):
            original = self.get_visit_row(session, visit_id)
            if original.status in {"completed", "cancelled"}:
                raise OperationNotAllowedError(f"Cannot reschedule a {original.status} visit")
            replacement = Visit(
                lead_id=original.lead_id,
                listing_id=original.listing_id,
                tour_id=original.tour_id,
                scheduled_at=command.new_scheduled_at,
                status="pending",
                otp_code=generate_otp(),
                rescheduled_from_visit_id=original.id,
                reschedule_requested=True,
            )
            session.add(replacement)
            session.flush()
            session.refresh(replacement)
            created = self._snapshot(replacement)
            before, after = apply_changes(
                session,
                original,
                {
                    "visit_canceled": True,
                    "canceled_at": now,
                    "reschedule_time": command.new_scheduled_at,
                    "status": "cancelled",
                },
                self._snapshot,
            )

        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=replacement.id,
            action="create",
            before=None,
            after=created,
            performed_by_id=actor.id,
        )
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=original.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        return VisitRead.model_validate(replacement)


class OfferService:
    entity_type = "offer"

    def _snapshot(self, offer: Offer) -> dict[str, Any]:
        return audit.snapshot(OfferRead.model_validate(offer))

    def get_active(self, session: Session, offer_id: uuid.UUID) -> Offer:
        offer = session.scalar(select(Offer).where(and_(Offer.id == offer_id, Offer.deleted_at.is_(None))))
        if offer is None:
            raise NotFoundError("Offer", offer_id)
        return offer

    def list_offers(
        self,
        session: Session,
        actor: Actor,
        filters: dict[str, Any],
        page: int,
        limit: int,
    ) -> tuple[list[OfferRead], int]:
        require_permission(actor, "offers:read")
        stmt = select(Offer).where(Offer.deleted_at.is_(None))
        if filters.get("listing_id"):
            stmt = stmt.where(Offer.listing_id == filters["listing_id"])
        if filters.get("lead_id"):
            stmt = stmt.where(Offer.lead_id == filters["lead_id"])
        if filters.get("status"):
            stmt = stmt.where(Offer.status == filters["status"])
        rows, total = paginate(session, stmt.order_by(Offer.created_at.desc()), page, limit)
        return [OfferRead.model_validate(item) for item in rows], total

    def get_offer(self, session: Session, actor: Actor, offer_id: uuid.UUID) -> OfferRead:
        require_permission(actor, "offers:read")
        return OfferRead.model_validate(self.get_active(session, offer_id))

    def create_offer(self, session: Session, actor: Actor, dto: OfferCreate) -> OfferRead:
        require_permission(actor, "offers:create")
        with unit_of_work(session):
            listing = listing_service.get_active(session, dto.listing_id)
            lead = lead_service.get_active(session, dto.lead_id)
            offer = Offer(
                listing_id=listing.id,
                lead_id=lead.id,
                offer_amount=dto.offer_amount,
                terms=dto.terms,
                status="pending",
                created_by_id=actor.id,
            )
            session.add(offer)
            session.flush()
            session.refresh(offer)
            after = self._snapshot(offer)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=offer.id,
            action="create",
            before=None,
            after=after,
            performed_by_id=actor.id,
        )
        return OfferRead.model_validate(offer)

    def update_offer(self, session: Session, actor: Actor, offer_id: uuid.UUID, dto: OfferUpdate) -> OfferRead:
        require_permission(actor, "offers:update")
        with unit_of_work(session):
            offer = self.get_active(session, offer_id)
            check_row_version(offer, dto.row_version)
            if offer.status != "pending":
                raise OperationNotAllowedError(f"Cannot edit a {offer.status} offer")
            before, after = apply_changes(session, offer, _update_values(dto), self._snapshot)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=offer.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        return OfferRead.model_validate(offer)

    def delete_offer(self, session: Session, actor: Actor, offer_id: uuid.UUID) -> None:
        require_permission(actor, "offers:delete")
        deleted_at = utcnow()
        with unit_of_work(session):
            offer = self.get_active(session, offer_id)
            offer.deleted_at = deleted_at
            offer.row_version = offer.row_version + 1
        audit.record_deletion(
            session,
            entity_type=self.entity_type,
            entity_id=offer.id,
            deleted_at=deleted_at,
            performed_by_id=actor.id,
        )

    def perform_action(self, session: Session, actor: Actor, offer_id: uuid.UUID, payload: Any) -> OfferRead:
        command = parse_action(
            payload,
            {"accept": OfferAcceptAction, "reject": OfferRejectAction, "counter": OfferCounterAction},
        )
        require_permission(actor, "offers:update")
        counter_offer: Offer | None = None
        created: dict[str, Any] | None = None
        with workflow_span(self.entity_type, command.action, offer_id), unit_of_work(session):
            offer = self.get_active(session, offer_id)
            if offer.status != "pending":
                raise OperationNotAllowedError(f"Cannot {command.action} a {offer.status} offer")
            if isinstance(command, OfferAcceptAction):
                values: dict[str, Any] = {"status": "accepted"}
            elif isinstance(command, OfferRejectAction):
                values = {"status": "rejected", "rejection_reason": command.reason}
            else:
                counter_offer = Offer(
                    listing_id=offer.listing_id,
                    lead_id=offer.lead_id,
                    offer_amount=command.counter_amount,
                    terms=command.terms if command.terms is not None else offer.terms,
                    status="pending",
                    countered_from_offer_id=offer.id,
                    created_by_id=actor.id,
                )
                session.add(counter_offer)
                session.flush()
                session.refresh(counter_offer)
                created = self._snapshot(counter_offer)
                values = {"status": "countered"}
            before, after = apply_changes(session, offer, values, self._snapshot)

        observe_workflow_action(self.entity_type, command.action)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=offer.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        if counter_offer is not None and created is not None:
            audit.record_change(
                session,
                entity_type=self.entity_type,
                entity_id=counter_offer.id,
                action="create",
                before=None,
                after=created,
                performed_by_id=actor.id,
            )
            return OfferRead.model_validate(counter_offer)
        return OfferRead.model_validate(offer)


class TaskService:
    entity_type = "task"

    def _snapshot(self, task: Task) -> dict[str, Any]:
        return audit.snapshot(TaskRead.model_validate(task))

    def get_active(self, session: Session, task_id: uuid.UUID) -> Task:
        task = session.scalar(select(Task).where(and_(Task.id == task_id, Task.deleted_at.is_(None))))
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def _require_task_access(self, actor: Actor, task: Task) -> None:
        if actor.is_admin or actor.id in {task.assignee_id, task.creator_id}:
            return
        raise ForbiddenError("You do not have access to this task")

    def list_tasks(
        self,
        session: Session,
        actor: Actor,
        filters: dict[str, Any],
        page: int,
        limit: int,
    ) -> tuple[list[TaskRead], int]:
        stmt = select(Task).where(Task.deleted_at.is_(None))
        assignee_id = filters.get("assignee_id")
        if not actor.is_admin and filters.get("entity_id") is None:
            assignee_id = actor.id
        if assignee_id:
            stmt = stmt.where(Task.assignee_id == assignee_id)
        if filters.get("entity_type"):
            stmt = stmt.where(Task.entity_type == filters["entity_type"])
        if filters.get("entity_id"):
            stmt = stmt.where(Task.entity_id == filters["entity_id"])
        if filters.get("status"):
            stmt = stmt.where(Task.status == filters["status"])
        rows, total = paginate(session, stmt.order_by(Task.due_at.asc(), Task.created_at.desc()), page, limit)
        return [TaskRead.model_validate(item) for item in rows], total

    def get_task(self, session: Session, actor: Actor, task_id: uuid.UUID) -> TaskRead:
        task = self.get_active(session, task_id)
        self._require_task_access(actor, task)
        return TaskRead.model_validate(task)

    def create_task(self, session: Session, actor: Actor, dto: TaskCreate) -> TaskRead:
        with unit_of_work(session):
            assignee_id = dto.assignee_id or actor.id
            if dto.assignee_id is not None:
                agent_service.get_agent(session, dto.assignee_id)
            task = Task(
                title=dto.title,
                description=dto.description,
                priority=dto.priority,
                status="open",
                due_at=dto.due_at,
                assignee_id=assignee_id,
                creator_id=actor.id,
                entity_type=dto.entity_type,
                entity_id=dto.entity_id,
            )
            session.add(task)
            session.flush()
            session.refresh(task)
            after = self._snapshot(task)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=task.id,
            action="create",
            before=None,
            after=after,
            performed_by_id=actor.id,
        )
        return TaskRead.model_validate(task)

    def update_task(self, session: Session, actor: Actor, task_id: uuid.UUID, dto: TaskUpdate) -> TaskRead:
        with unit_of_work(session):
            task = self.get_active(session, task_id)
            self._require_task_access(actor, task)
            check_row_version(task, dto.row_version)
            values = _update_values(dto)
            if values.get("assignee_id") is not None:
                agent_service.get_agent(session, values["assignee_id"])
            if values.get("status") == "completed" and task.completed_at is None:
                values["completed_at"] = utcnow()
            before, after = apply_changes(session, task, values, self._snapshot)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=task.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        return TaskRead.model_validate(task)

    def complete_task(self, session: Session, actor: Actor | None, task_id: uuid.UUID) -> TaskRead:
        """Mark a task done; ``actor`` is None for integrations calling with the API key."""
        with unit_of_work(session):
            task = self.get_active(session, task_id)
            if actor is not None:
                self._require_task_access(actor, task)
            if task.status == "cancelled":
                raise OperationNotAllowedError("Cannot complete a cancelled task")
            values: dict[str, Any] = {"status": "completed"}
            if task.completed_at is None:
                values["completed_at"] = utcnow()
            before, after = apply_changes(session, task, values, self._snapshot)
        observe_workflow_action(self.entity_type, "complete")
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=task.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id if actor is not None else None,
        )
        return TaskRead.model_validate(task)

    def delete_task(self, session: Session, actor: Actor, task_id: uuid.UUID) -> None:
        deleted_at = utcnow()
        with unit_of_work(session):
            task = self.get_active(session, task_id)
            self._require_task_access(actor, task)
            task.deleted_at = deleted_at
            task.row_version = task.row_version + 1
        audit.record_deletion(
            session,
            entity_type=self.entity_type,
            entity_id=task.id,
            deleted_at=deleted_at,
            performed_by_id=actor.id,
        )


class NoteService:
    entity_type = "note"

    def _snapshot(self, note: Note) -> dict[str, Any]:
        return audit.snapshot(NoteRead.model_validate(note))

    def get_active(self, session: Session, note_id: uuid.UUID) -> Note:
        note = session.scalar(select(Note).where(and_(Note.id == note_id, Note.deleted_at.is_(None))))
        if note is None:
            raise NotFoundError("Note", note_id)
        return note

    def get_note(self, session: Session, actor: Actor, note_id: uuid.UUID) -> NoteRead:
        require_permission(actor, "notes:read")
        return NoteRead.model_validate(self.get_active(session, note_id))

    def list_notes(self, session: Session, actor: Actor, entity_type: str, entity_id: uuid.UUID) -> list[NoteRead]:
        require_permission(actor, "notes:read")
        notes = session.scalars(
            select(Note)
            .where(and_(Note.entity_type == entity_type, Note.entity_id == entity_id, Note.deleted_at.is_(None)))
            .order_by(Note.created_at.desc())
        ).all()
        return [NoteRead.model_validate(item) for item in notes]

    def create_note(self, session: Session, actor: Actor, dto: NoteCreate) -> NoteRead:
        require_permission(actor, "notes:create")
        with unit_of_work(session):
            note = Note(
                entity_type=dto.entity_type,
                entity_id=dto.entity_id,
                content=dto.content,
                created_by_id=actor.id,
            )
            session.add(note)
            session.flush()
            session.refresh(note)
            after = self._snapshot(note)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=note.id,
            action="create",
            before=None,
            after=after,
            performed_by_id=actor.id,
        )
        return NoteRead.model_validate(note)

    def update_note(self, session: Session, actor: Actor, note_id: uuid.UUID, dto: NoteUpdate) -> NoteRead:
        with unit_of_work(session):
            note = self.get_active(session, note_id)
            require_resource_access(actor, "notes:update", note.created_by_id)
            check_row_version(note, dto.row_version)
            before, after = apply_changes(session, note, {"content": dto.content}, self._snapshot)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=note.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        return NoteRead.model_validate(note)

    def delete_note(self, session: Session, actor: Actor, note_id: uuid.UUID) -> None:
        deleted_at = utcnow()
        with unit_of_work(session):
            note = self.get_active(session, note_id)
            require_resource_access(actor, "notes:update", note.created_by_id)
            note.deleted_at = deleted_at
            note.row_version = note.row_version + 1
        audit.record_deletion(
            session,
            entity_type=self.entity_type,
            entity_id=note.id,
            deleted_at=deleted_at,
            performed_by_id=actor.id,
        )


class MediaService:
    entity_type = "media"

    def _snapshot(self, item: MediaItem) -> dict[str, Any]:
        return audit.snapshot(MediaRead.model_validate(item))

    def get_active(self, session: Session, media_id: uuid.UUID) -> MediaItem:
        item = session.scalar(select(MediaItem).where(and_(MediaItem.id == media_id, MediaItem.deleted_at.is_(None))))
        if item is None:
            raise NotFoundError("Media", media_id)
        return item

    def get_media(self, session: Session, actor: Actor, media_id: uuid.UUID) -> MediaRead:
        require_permission(actor, "media:read")
        return MediaRead.model_validate(self.get_active(session, media_id))

    def list_media(self, session: Session, actor: Actor, entity_type: str, entity_id: uuid.UUID) -> list[MediaRead]:
        require_permission(actor, "media:read")
        items = session.scalars(
            select(MediaItem)
            .where(
                and_(
                    MediaItem.entity_type == entity_type,
                    MediaItem.entity_id == entity_id,
                    MediaItem.deleted_at.is_(None),
                )
            )
            .order_by(MediaItem.order.asc(), MediaItem.created_at.asc())
        ).all()
        return [MediaRead.model_validate(item) for item in items]

    def create_media(self, session: Session, actor: Actor, dto: MediaCreate) -> MediaRead:
        require_permission(actor, "media:create")
        with unit_of_work(session):
            item = MediaItem(
                entity_type=dto.entity_type,
                entity_id=dto.entity_id,
                media_type=dto.media_type,
                tag=dto.tag,
                url=dto.url,
                public_id=dto.public_id,
                order=dto.order,
                media_metadata=dto.metadata,
                uploaded_by_id=actor.id,
            )
            session.add(item)
            session.flush()
            session.refresh(item)
            after = self._snapshot(item)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=item.id,
            action="create",
            before=None,
            after=after,
            performed_by_id=actor.id,
        )
        return MediaRead.model_validate(item)

    def update_media(self, session: Session, actor: Actor, media_id: uuid.UUID, dto: MediaUpdate) -> MediaRead:
        require_permission(actor, "media:update")
        with unit_of_work(session):
            item = self.get_active(session, media_id)
            check_row_version(item, dto.row_version)
            values = _update_values(dto)
            if "metadata" in values:
                values["media_metadata"] = values.pop("metadata")
            before, after = apply_changes(session, item, values, self._snapshot)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=item.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        return MediaRead.model_validate(item)

    def reorder_media(self, session: Session, actor: Actor, dto: MediaReorderRequest) -> list[MediaRead]:
        require_permission(actor, "media:update")
        diffs: list[tuple[uuid.UUID, dict[str, Any], dict[str, Any]]] = []
        with unit_of_work(session):
            items = [self.get_active(session, entry.id) for entry in dto.items]
            scopes = {(item.entity_type, item.entity_id) for item in items}
            if len(scopes) > 1:
                raise ValidationError("All media items must belong to the same entity")
            for item, entry in zip(items, dto.items):
                before, after = apply_changes(session, item, {"order": entry.order}, self._snapshot)
                diffs.append((item.id, before, after))
        for media_id, before, after in diffs:
            audit.record_change(
                session,
                entity_type=self.entity_type,
                entity_id=media_id,
                action="update",
                before=before,
                after=after,
                performed_by_id=actor.id,
            )
        entity_type, entity_id = next(iter(scopes))
        return self.list_media(session, actor, entity_type, entity_id)

    def delete_media(self, session: Session, actor: Actor, media_id: uuid.UUID) -> None:
        require_permission(actor, "media:delete")
        deleted_at = utcnow()
        with unit_of_work(session):
            item = self.get_active(session, media_id)
            item.deleted_at = deleted_at
            item.row_version = item.row_version + 1
        audit.record_deletion(
            session,
            entity_type=self.entity_type,
            entity_id=item.id,
            deleted_at=deleted_at,
            performed_by_id=actor.id,
        )


SELLER_CONTACT_EXISTS = "A contact with this phone number already exists"


class SellerService:
    """Seller contacts: profiles without a role, shared with buyer contacts and keyed by phone."""

    entity_type = "contact"

    def list_sellers(
        self,
        session: Session,
        actor: Actor,
        search: str | None,
        page: int,
        limit: int,
    ) -> tuple[list[SellerRead], int]:
        require_permission(actor, "sellers:read")
        stmt = select(Profile).where(and_(Profile.deleted_at.is_(None), Profile.role.is_(None)))
        if search:
            term = f"%{search}%"
            stmt = stmt.where(or_(Profile.full_name.ilike(term), Profile.email.ilike(term), Profile.phone.ilike(term)))
        rows, total = paginate(session, stmt.order_by(Profile.full_name.asc()), page, limit)
        return [SellerRead.model_validate(item) for item in rows], total

    def create_seller(self, session: Session, actor: Actor, dto: SellerCreate) -> SellerRead:
        require_permission(actor, "sellers:create")
        if session.scalar(select(Profile.id).where(Profile.phone == dto.phone)) is not None:
            raise ConflictError(SELLER_CONTACT_EXISTS, details={"field": "phone"})
        with unit_of_work(session):
            contact = Profile(
                full_name=dto.full_name,
                phone=dto.phone,
                email=str(dto.email) if dto.email is not None else None,
                role=None,
            )
            session.add(contact)
            session.flush()
            session.refresh(contact)
            created = SellerRead.model_validate(contact)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=contact.id,
            action="create",
            before=None,
            after=audit.snapshot(created),
            performed_by_id=actor.id,
        )
        logger.info(
            "seller.created",
            extra={"entity_type": self.entity_type, "entity_id": str(contact.id), "phone": dto.phone},
        )
        return created


class BuyerEventService:
    entity_type = "buyer_event"

    def list_events(
        self,
        session: Session,
        actor: Actor,
        filters: dict[str, Any],
        page: int,
        limit: int,
    ) -> tuple[list[BuyerEventRead], int]:
        require_permission(actor, "buyer_events:read")
        stmt = select(BuyerEvent)
        if filters.get("lead_id"):
            stmt = stmt.where(BuyerEvent.lead_id == filters["lead_id"])
        if filters.get("event_type"):
            stmt = stmt.where(BuyerEvent.event_type == filters["event_type"])
        rows, total = paginate(session, stmt.order_by(BuyerEvent.created_at.desc()), page, limit)
        return [BuyerEventRead.model_validate(item) for item in rows], total

    def create_event(self, session: Session, actor: Actor, dto: BuyerEventCreate) -> BuyerEventRead:
        require_permission(actor, "buyer_events:create")
        with unit_of_work(session):
            lead_service.get_active(session, dto.lead_id)
            event = BuyerEvent(
                lead_id=dto.lead_id,
                profile_id=dto.profile_id,
                phone=dto.phone,
                lead_source=dto.lead_source,
                source_listing_id=dto.source_listing_id,
                event_type=dto.event_type,
                event_metadata=dto.metadata,
                created_by_id=actor.id,
            )
            session.add(event)
            session.flush()
            session.refresh(event)
            created = BuyerEventRead.model_validate(event)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=event.id,
            action="create",
            before=None,
            after=audit.snapshot(created),
            performed_by_id=actor.id,
        )
        return created


class AuditService:
    def list_audit_logs(
        self,
        session: Session,
        actor: Actor,
        entity_type: str,
        entity_id: uuid.UUID,
        limit: int,
    ) -> list[AuditRead]:
        require_permission(actor, "audit_logs:read")
        entries = audit.get_audit_logs(session, entity_type, entity_id, limit=limit)
        return [AuditRead.model_validate(item) for item in entries]


lead_service = LeadService()
seller_lead_service = SellerLeadService()
visit_service = VisitService()
offer_service = OfferService()
task_service = TaskService()
note_service = NoteService()
media_service = MediaService()
seller_service = SellerService()
buyer_event_service = BuyerEventService()
audit_service = AuditService()
