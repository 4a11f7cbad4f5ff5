from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app import audit
from app.agents.service import agent_service
from app.core.auth import Actor, require_permission, require_resource_access
from app.core.database import apply_changes, check_row_version, paginate, unit_of_work, utcnow
from app.core.errors import NotFoundError, OperationNotAllowedError
from app.core.schemas import parse_action
from app.inventory.models import Building, Catalogue, Inspection, Listing, Unit
from app.inventory.schemas import (
    BuildingCreate,
    BuildingRead,
    BuildingUpdate,
    CatalogueApproveAction,
    CatalogueCreate,
    CatalogueRead,
    CatalogueRejectAction,
    CatalogueRevisionAction,
    CatalogueUpdate,
    InspectionCompleteAction,
    InspectionCreate,
    InspectionRead,
    InspectionSetStatusAction,
    InspectionUpdate,
    ListingCreate,
    ListingMarkSoldAction,
    ListingPublishAction,
    ListingRead,
    ListingSetStatusAction,
    ListingUpdate,
    ListingVerifyAction,
    UnitCreate,
    UnitRead,
)
from app.metrics import observe_workflow_action
from app.otel import workflow_span


ACTIVE = "active"
CLOSED_LISTING_STATUSES = {"sold", "delisted"}


def _update_values(dto: Any) -> dict[str, Any]:
    return dto.model_dump(exclude_unset=True, exclude={"row_version"})


class BuildingService:
    entity_type = "building"

    def _snapshot(self, building: Building) -> dict[str, Any]:
        return audit.snapshot(BuildingRead.model_validate(building))

    def get_active(self, session: Session, building_id: uuid.UUID) -> Building:
        building = session.scalar(
            select(Building).where(and_(Building.id == building_id, Building.deleted_at.is_(None)))
        )
        if building is None:
            raise NotFoundError("Building", building_id)
        return building

    def list_buildings(
        self,
        session: Session,
        actor: Actor,
        filters: dict[str, Any],
        page: int,
        limit: int,
    ) -> tuple[list[BuildingRead], int]:
        require_permission(actor, "buildings:read")
        stmt = select(Building).where(Building.deleted_at.is_(None))
        if filters.get("locality"):
            stmt = stmt.where(Building.locality == filters["locality"])
        if filters.get("search"):
            stmt = stmt.where(Building.name.ilike(f"%{filters['search']}%"))
        rows, total = paginate(session, stmt.order_by(Building.name.asc()), page, limit)
        return [BuildingRead.model_validate(item) for item in rows], total

    def get_building(self, session: Session, actor: Actor, building_id: uuid.UUID) -> BuildingRead:
        require_permission(actor, "buildings:read")
        return BuildingRead.model_validate(self.get_active(session, building_id))

    def create_building(self, session: Session, actor: Actor, dto: BuildingCreate) -> BuildingRead:
        require_permission(actor, "buildings:create")
        with unit_of_work(session):
            building = Building(**dto.model_dump())
            session.add(building)
            session.flush()
            after = self._snapshot(building)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=building.id,
            action="create",
            before=None,
            after=after,
            performed_by_id=actor.id,
        )
        return BuildingRead.model_validate(building)

    def update_building(
        self,
        session: Session,
        actor: Actor,
        building_id: uuid.UUID,
        dto: BuildingUpdate,
    ) -> BuildingRead:
        require_permission(actor, "buildings:update")
        with unit_of_work(session):
            building = self.get_active(session, building_id)
            check_row_version(building, dto.row_version)
            before, after = apply_changes(session, building, _update_values(dto), self._snapshot)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=building.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        return BuildingRead.model_validate(building)

    def create_unit(self, session: Session, actor: Actor, dto: UnitCreate) -> UnitRead:
        require_permission(actor, "units:create")
        with unit_of_work(session):
            self.get_active(session, dto.building_id)
            unit = Unit(**dto.model_dump())
            session.add(unit)
            session.flush()
            after = audit.snapshot(UnitRead.model_validate(unit))
        audit.record_change(
            session,
            entity_type="unit",
            entity_id=unit.id,
            action="create",
            before=None,
            after=after,
            performed_by_id=actor.id,
        )
        return UnitRead.model_validate(unit)

    def list_units(self, session: Session, actor: Actor, building_id: uuid.UUID) -> list[UnitRead]:
        require_permission(actor, "units:read")
        self.get_active(session, building_id)
        units = session.scalars(
            select(Unit)
            .where(and_(Unit.building_id == building_id, Unit.deleted_at.is_(None)))
            .order_by(Unit.unit_number.asc())
        ).all()
        return [UnitRead.model_validate(item) for item in units]


class ListingService:
    entity_type = "listing"

    def _snapshot(self, listing: Listing) -> dict[str, Any]:
        return audit.snapshot(ListingRead.model_validate(listing))

    def get_active(self, session: Session, listing_id: uuid.UUID) -> Listing:
        listing = session.scalar(select(Listing).where(and_(Listing.id == listing_id, Listing.deleted_at.is_(None))))
        if listing is None:
            raise NotFoundError("Listing", listing_id)
        return listing

    def list_listings(
        self,
        session: Session,
        actor: Actor,
        filters: dict[str, Any],
        page: int,
        limit: int,
    ) -> tuple[list[ListingRead], int]:
        require_permission(actor, "listings:read")
        stmt = select(Listing).where(Listing.deleted_at.is_(None))
        if filters.get("status"):
            stmt = stmt.where(Listing.status == filters["status"])
        if filters.get("agent_id"):
            stmt = stmt.where(Listing.listing_agent_id == filters["agent_id"])
        if filters.get("building_id"):
            stmt = stmt.join(Unit, Unit.id == Listing.unit_id).where(Unit.building_id == filters["building_id"])
        rows, total = paginate(session, stmt.order_by(Listing.created_at.desc()), page, limit)
        return [ListingRead.model_validate(item) for item in rows], total

    def get_listing(self, session: Session, actor: Actor, listing_id: uuid.UUID) -> ListingRead:
        require_permission(actor, "listings:read")
        return ListingRead.model_validate(self.get_active(session, listing_id))

    def create_listing(self, session: Session, actor: Actor, dto: ListingCreate) -> ListingRead:
        require_permission(actor, "listings:create")
        with unit_of_work(session):
            unit = session.scalar(select(Unit).where(and_(Unit.id == dto.unit_id, Unit.deleted_at.is_(None))))
            if unit is None:
                raise NotFoundError("Unit", dto.unit_id)
            agent_id = dto.listing_agent_id
            if agent_id is not None:
                agent_service.get_agent(session, agent_id)
            elif not actor.is_admin:
                agent_id = actor.id
            listing = Listing(
                unit_id=unit.id,
                listing_agent_id=agent_id,
                status="draft",
                asking_price=dto.asking_price,
                description=dto.description,
                images=list(dto.images),
            )
            session.add(listing)
            session.flush()
            session.refresh(listing)
            after = self._snapshot(listing)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=listing.id,
            action="create",
            before=None,
            after=after,
            performed_by_id=actor.id,
        )
        return ListingRead.model_validate(listing)

    def update_listing(self, session: Session, actor: Actor, listing_id: uuid.UUID, dto: ListingUpdate) -> ListingRead:
        with unit_of_work(session):
            listing = self.get_active(session, listing_id)
            require_resource_access(actor, "listings:update", listing.listing_agent_id)
            check_row_version(listing, dto.row_version)
            values = _update_values(dto)
            if values.get("listing_agent_id") is not None:
                agent_service.get_agent(session, values["listing_agent_id"])
            before, after = apply_changes(session, listing, values, self._snapshot)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=listing.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        return ListingRead.model_validate(listing)

    def delete_listing(self, session: Session, actor: Actor, listing_id: uuid.UUID) -> None:
        require_permission(actor, "listings:delete")
        deleted_at = utcnow()
        with unit_of_work(session):
            listing = self.get_active(session, listing_id)
            listing.deleted_at = deleted_at
            listing.row_version = listing.row_version + 1
        audit.record_deletion(
            session,
            entity_type=self.entity_type,
            entity_id=listing.id,
            deleted_at=deleted_at,
            performed_by_id=actor.id,
        )

    def perform_action(self, session: Session, actor: Actor, listing_id: uuid.UUID, payload: Any) -> ListingRead:
        command = parse_action(
            payload,
            {
                "publish": ListingPublishAction,
                "verify": ListingVerifyAction,
                "mark_sold": ListingMarkSoldAction,
                "set_status": ListingSetStatusAction,
            },
        )
        now = utcnow()
        with workflow_span(self.entity_type, command.action, listing_id), unit_of_work(session):
            listing = self.get_active(session, listing_id)
            if isinstance(command, ListingPublishAction):
                require_resource_access(actor, "listings:publish", listing.listing_agent_id)
                if listing.status in CLOSED_LISTING_STATUSES:
                    raise OperationNotAllowedError(f"Cannot publish a {listing.status} listing")
                values = self._status_values(listing, ACTIVE, now)
            elif isinstance(command, ListingVerifyAction):
                require_permission(actor, "listings:verify")
                values = {"is_verified": True}
            elif isinstance(command, ListingMarkSoldAction):
                require_resource_access(actor, "listings:update", listing.listing_agent_id)
                if listing.status in CLOSED_LISTING_STATUSES:
                    raise OperationNotAllowedError(f"Cannot mark a {listing.status} listing as sold")
                values = {"status": "sold", "sold_by": command.sold_by, "selling_price": command.selling_price}
            else:
                require_resource_access(actor, "listings:update", listing.listing_agent_id)
                values = self._status_values(listing, command.status, now)
            before, after = apply_changes(session, listing, values, self._snapshot)

        observe_workflow_action(self.entity_type, command.action)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=listing.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        return ListingRead.model_validate(listing)

    def _status_values(self, listing: Listing, status: str, now: Any) -> dict[str, Any]:
        values: dict[str, Any] = {"status": status}
        if status == ACTIVE and listing.published_at is None:
            values["published_at"] = now
        return values

    def advance_status(self, session: Session, listing: Listing, expected: str, target: str) -> tuple[dict, dict] | None:
        """Move a listing along the onboarding pipeline when it sits at ``expected``."""
        if listing.status != expected:
            return None
        return apply_changes(session, listing, {"status": target}, self._snapshot)


class InspectionService:
    entity_type = "inspection"

    def _snapshot(self, inspection: Inspection) -> dict[str, Any]:
        return audit.snapshot(InspectionRead.model_validate(inspection))

    def get_active(self, session: Session, inspection_id: uuid.UUID) -> Inspection:
        inspection = session.scalar(
            select(Inspection).where(and_(Inspection.id == inspection_id, Inspection.deleted_at.is_(None)))
        )
        if inspection is None:
            raise NotFoundError("Inspection", inspection_id)
        return inspection

    def list_inspections(
        self,
        session: Session,
        actor: Actor,
        filters: dict[str, Any],
        page: int,
        limit: int,
    ) -> tuple[list[InspectionRead], int]:
        require_permission(actor, "inspections:read")
        stmt = select(Inspection).where(Inspection.deleted_at.is_(None))
        if filters.get("listing_id"):
            stmt = stmt.where(Inspection.listing_id == filters["listing_id"])
        if filters.get("status"):
            stmt = stmt.where(Inspection.status == filters["status"])
        rows, total = paginate(session, stmt.order_by(Inspection.created_at.desc()), page, limit)
        return [InspectionRead.model_validate(item) for item in rows], total

    def get_inspection(self, session: Session, actor: Actor, inspection_id: uuid.UUID) -> InspectionRead:
        require_permission(actor, "inspections:read")
        return InspectionRead.model_validate(self.get_active(session, inspection_id))

    def create_inspection(self, session: Session, actor: Actor, dto: InspectionCreate) -> InspectionRead:
        require_permission(actor, "inspections:create")
        with unit_of_work(session):
            listing = listing_service.get_active(session, dto.listing_id)
            inspection = Inspection(
                listing_id=listing.id,
                inspected_by_id=dto.inspected_by_id or actor.id,
                inspected_on=dto.inspected_on,
                notes=dto.notes,
                status="pending",
            )
            session.add(inspection)
            session.flush()
            after = self._snapshot(inspection)
            listing_diff = listing_service.advance_status(session, listing, "draft", "inspection_pending")

        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=inspection.id,
            action="create",
            before=None,
            after=after,
            performed_by_id=actor.id,
        )
        _record_listing_diff(session, listing.id, listing_diff, actor)
        return InspectionRead.model_validate(inspection)

    def update_inspection(
        self,
        session: Session,
        actor: Actor,
        inspection_id: uuid.UUID,
        dto: InspectionUpdate,
    ) -> InspectionRead:
        with unit_of_work(session):
            inspection = self.get_active(session, inspection_id)
            require_resource_access(actor, "inspections:update", inspection.inspected_by_id)
            check_row_version(inspection, dto.row_version)
            before, after = apply_changes(session, inspection, _update_values(dto), self._snapshot)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=inspection.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        return InspectionRead.model_validate(inspection)

    def perform_action(self, session: Session, actor: Actor, inspection_id: uuid.UUID, payload: Any) -> InspectionRead:
        command = parse_action(
            payload,
            {"complete": InspectionCompleteAction, "set_status": InspectionSetStatusAction},
        )
        listing_diff = None
        with workflow_span(self.entity_type, command.action, inspection_id), unit_of_work(session):
            inspection = self.get_active(session, inspection_id)
            require_resource_access(actor, "inspections:update", inspection.inspected_by_id)
            if inspection.status in {"completed", "rejected"}:
                raise OperationNotAllowedError(f"Cannot change a {inspection.status} inspection")
            if isinstance(command, InspectionCompleteAction):
                values: dict[str, Any] = {
                    "status": "completed",
                    "latitude": command.location.latitude,
                    "longitude": command.location.longitude,
                    "completed_at": utcnow(),
                }
                if command.inspection_score is not None:
                    values["inspection_score"] = command.inspection_score
                if command.notes is not None:
                    values["notes"] = command.notes
                if command.known_issues is not None:
                    values["known_issues"] = command.known_issues
                if inspection.inspected_on is None:
                    values["inspected_on"] = utcnow().date()
            else:
                values = {"status": command.status}
            before, after = apply_changes(session, inspection, values, self._snapshot)
            if isinstance(command, InspectionCompleteAction):
                listing = listing_service.get_active(session, inspection.listing_id)
                listing_diff = listing_service.advance_status(
                    session,
                    listing,
                    "inspection_pending",
                    "cataloguing_pending",
                )

        observe_workflow_action(self.entity_type, command.action)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=inspection.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        _record_listing_diff(session, inspection.listing_id, listing_diff, actor)
        return InspectionRead.model_validate(inspection)


class CatalogueService:
    entity_type = "catalogue"
    reviewable_statuses = {"pending", "needs_revision"}

    def _snapshot(self, catalogue: Catalogue) -> dict[str, Any]:
        return audit.snapshot(CatalogueRead.model_validate(catalogue))

    def get_active(self, session: Session, catalogue_id: uuid.UUID) -> Catalogue:
        catalogue = session.scalar(
            select(Catalogue).where(and_(Catalogue.id == catalogue_id, Catalogue.deleted_at.is_(None)))
        )
        if catalogue is None:
            raise NotFoundError("Catalogue", catalogue_id)
        return catalogue

    def list_catalogues(
        self,
        session: Session,
        actor: Actor,
        filters: dict[str, Any],
        page: int,
        limit: int,
    ) -> tuple[list[CatalogueRead], int]:
        require_permission(actor, "catalogues:read")
        stmt = select(Catalogue).where(Catalogue.deleted_at.is_(None))
        if filters.get("listing_id"):
            stmt = stmt.where(Catalogue.listing_id == filters["listing_id"])
        if filters.get("status"):
            stmt = stmt.where(Catalogue.status == filters["status"])
        rows, total = paginate(session, stmt.order_by(Catalogue.created_at.desc()), page, limit)
        return [CatalogueRead.model_validate(item) for item in rows], total

    def get_catalogue(self, session: Session, actor: Actor, catalogue_id: uuid.UUID) -> CatalogueRead:
        require_permission(actor, "catalogues:read")
        return CatalogueRead.model_validate(self.get_active(session, catalogue_id))

    def create_catalogue(self, session: Session, actor: Actor, dto: CatalogueCreate) -> CatalogueRead:
        require_permission(actor, "catalogues:create")
        with unit_of_work(session):
            listing = listing_service.get_active(session, dto.listing_id)
            if dto.inspection_id is not None:
                inspection = inspection_service.get_active(session, dto.inspection_id)
                if inspection.listing_id != listing.id:
                    raise OperationNotAllowedError("Inspection belongs to a different listing")
            catalogue = Catalogue(**dto.model_dump(), catalogued_by_id=actor.id, status="pending")
            session.add(catalogue)
            session.flush()
            after = self._snapshot(catalogue)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=catalogue.id,
            action="create",
            before=None,
            after=after,
            performed_by_id=actor.id,
        )
        return CatalogueRead.model_validate(catalogue)

    def update_catalogue(
        self,
        session: Session,
        actor: Actor,
        catalogue_id: uuid.UUID,
        dto: CatalogueUpdate,
    ) -> CatalogueRead:
        with unit_of_work(session):
            catalogue = self.get_active(session, catalogue_id)
            require_resource_access(actor, "catalogues:update", catalogue.catalogued_by_id)
            check_row_version(catalogue, dto.row_version)
            before, after = apply_changes(session, catalogue, _update_values(dto), self._snapshot)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=catalogue.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        return CatalogueRead.model_validate(catalogue)

    def perform_action(self, session: Session, actor: Actor, catalogue_id: uuid.UUID, payload: Any) -> CatalogueRead:
        command = parse_action(
            payload,
            {
                "approve": CatalogueApproveAction,
                "reject": CatalogueRejectAction,
                "request_revision": CatalogueRevisionAction,
            },
        )
        require_permission(actor, "catalogues:update")
        with workflow_span(self.entity_type, command.action, catalogue_id), unit_of_work(session):
            catalogue = self.get_active(session, catalogue_id)
            if catalogue.status not in self.reviewable_statuses:
                raise OperationNotAllowedError(f"Cannot {command.action.replace('_', ' ')} a {catalogue.status} catalogue")
            if isinstance(command, CatalogueApproveAction):
                values: dict[str, Any] = {"status": "approved", "approved_at": utcnow(), "rejection_reason": None}
            elif isinstance(command, CatalogueRejectAction):
                values = {"status": "rejected", "rejection_reason": command.reason}
            else:
                values = {"status": "needs_revision", "rejection_reason": command.reason}
            before, after = apply_changes(session, catalogue, values, self._snapshot)

        observe_workflow_action(self.entity_type, command.action)
        audit.record_change(
            session,
            entity_type=self.entity_type,
            entity_id=catalogue.id,
            action="update",
            before=before,
            after=after,
            performed_by_id=actor.id,
        )
        return CatalogueRead.model_validate(catalogue)


def _record_listing_diff(
    session: Session,
    listing_id: uuid.UUID,
    diff: tuple[dict, dict] | None,
    actor: Actor,
) -> None:
    if diff is None:
        return
    before, after = diff
    audit.record_change(
        session,
        entity_type=ListingService.entity_type,
        entity_id=listing_id,
        action="update",
        before=before,
        after=after,
        performed_by_id=actor.id,
    )


building_service = BuildingService()
listing_service = ListingService()
inspection_service = InspectionService()
catalogue_service = CatalogueService()
