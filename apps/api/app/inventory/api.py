from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.orm import Session

from app.core.auth import Actor, get_current_actor
from app.core.database import get_db
from app.core.schemas import DataResponse, PaginatedResponse, Pagination
from app.inventory.schemas import (
    BuildingCreate,
    BuildingRead,
    BuildingUpdate,
    CatalogueCreate,
    CatalogueRead,
    CatalogueUpdate,
    InspectionCreate,
    InspectionRead,
    InspectionUpdate,
    ListingCreate,
    ListingRead,
    ListingUpdate,
    UnitCreate,
    UnitRead,
)
from app.inventory.service import building_service, catalogue_service, inspection_service, listing_service


buildings_router = APIRouter(prefix="/api/v1/buildings", tags=["inventory.buildings"])
units_router = APIRouter(prefix="/api/v1/units", tags=["inventory.units"])
listings_router = APIRouter(prefix="/api/v1/listings", tags=["inventory.listings"])
inspections_router = APIRouter(prefix="/api/v1/inspections", tags=["inventory.inspections"])
catalogues_router = APIRouter(prefix="/api/v1/catalogues", tags=["inventory.catalogues"])


@buildings_router.get("", response_model=PaginatedResponse[BuildingRead])
def list_buildings(
    locality: str | None = Query(default=None),
    search: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> PaginatedResponse[BuildingRead]:
    rows, total = building_service.list_buildings(
        db, actor, filters={"locality": locality, "search": search}, page=page, limit=limit
    )
    return PaginatedResponse(data=rows, pagination=Pagination.build(page, limit, total))


@buildings_router.post("", response_model=DataResponse[BuildingRead], status_code=status.HTTP_201_CREATED)
def create_building(
    dto: BuildingCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[BuildingRead]:
    return DataResponse(data=building_service.create_building(db, actor, dto), message="Building created")


@buildings_router.get("/{building_id}", response_model=DataResponse[BuildingRead])
def get_building(
    building_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[BuildingRead]:
    return DataResponse(data=building_service.get_building(db, actor, building_id))


@buildings_router.put("/{building_id}", response_model=DataResponse[BuildingRead])
def update_building(
    building_id: uuid.UUID,
    dto: BuildingUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[BuildingRead]:
    building = building_service.update_building(db, actor, building_id, dto)
    return DataResponse(data=building, message="Building updated")


@buildings_router.get("/{building_id}/units", response_model=DataResponse[list[UnitRead]])
def list_building_units(
    building_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[list[UnitRead]]:
    return DataResponse(data=building_service.list_units(db, actor, building_id))


@units_router.post("", response_model=DataResponse[UnitRead], status_code=status.HTTP_201_CREATED)
def create_unit(
    dto: UnitCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[UnitRead]:
    return DataResponse(data=building_service.create_unit(db, actor, dto), message="Unit created")


@listings_router.get("", response_model=PaginatedResponse[ListingRead])
def list_listings(
    status_filter: str | None = Query(default=None, alias="status"),
    agent_id: uuid.UUID | None = Query(default=None, alias="agentId"),
    building_id: uuid.UUID | None = Query(default=None, alias="buildingId"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> PaginatedResponse[ListingRead]:
    rows, total = listing_service.list_listings(
        db,
        actor,
        filters={"status": status_filter, "agent_id": agent_id, "building_id": building_id},
        page=page,
        limit=limit,
    )
    return PaginatedResponse(data=rows, pagination=Pagination.build(page, limit, total))


@listings_router.post("", response_model=DataResponse[ListingRead], status_code=status.HTTP_201_CREATED)
def create_listing(
    dto: ListingCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[ListingRead]:
    return DataResponse(data=listing_service.create_listing(db, actor, dto), message="Listing created")


@listings_router.get("/{listing_id}", response_model=DataResponse[ListingRead])
def get_listing(
    listing_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[ListingRead]:
    return DataResponse(data=listing_service.get_listing(db, actor, listing_id))


@listings_router.put("/{listing_id}", response_model=DataResponse[ListingRead])
def update_listing(
    listing_id: uuid.UUID,
    dto: ListingUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[ListingRead]:
    return DataResponse(data=listing_service.update_listing(db, actor, listing_id, dto), message="Listing updated")


@listings_router.delete("/{listing_id}", response_model=DataResponse[None])
def delete_listing(
    listing_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[None]:
    listing_service.delete_listing(db, actor, listing_id)
    return DataResponse(data=None, message="Listing deleted")


@listings_router.post("/{listing_id}", response_model=DataResponse[ListingRead])
def listing_action(
    listing_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[ListingRead]:
    listing = listing_service.perform_action(db, actor, listing_id, payload)
    return DataResponse(data=listing, message=f"Listing {payload.get('action')} applied")


@inspections_router.get("", response_model=PaginatedResponse[InspectionRead])
def list_inspections(
    listing_id: uuid.UUID | None = Query(default=None, alias="listingId"),
    status_filter: str | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> PaginatedResponse[InspectionRead]:
    rows, total = inspection_service.list_inspections(
        db, actor, filters={"listing_id": listing_id, "status": status_filter}, page=page, limit=limit
    )
    return PaginatedResponse(data=rows, pagination=Pagination.build(page, limit, total))


@inspections_router.post("", response_model=DataResponse[InspectionRead], status_code=status.HTTP_201_CREATED)
def create_inspection(
    dto: InspectionCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[InspectionRead]:
    return DataResponse(data=inspection_service.create_inspection(db, actor, dto), message="Inspection created")


@inspections_router.get("/{inspection_id}", response_model=DataResponse[InspectionRead])
def get_inspection(
    inspection_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[InspectionRead]:
    return DataResponse(data=inspection_service.get_inspection(db, actor, inspection_id))


@inspections_router.put("/{inspection_id}", response_model=DataResponse[InspectionRead])
def update_inspection(
    inspection_id: uuid.UUID,
    dto: InspectionUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[InspectionRead]:
    inspection = inspection_service.update_inspection(db, actor, inspection_id, dto)
    return DataResponse(data=inspection, message="Inspection updated")


@inspections_router.post("/{inspection_id}", response_model=DataResponse[InspectionRead])
def inspection_action(
    inspection_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[InspectionRead]:
    inspection = inspection_service.perform_action(db, actor, inspection_id, payload)
    return DataResponse(data=inspection, message=f"Inspection {payload.get('action')} applied")


@catalogues_router.get("", response_model=PaginatedResponse[CatalogueRead])
def list_catalogues(
    listing_id: uuid.UUID | None = Query(default=None, alias="listingId"),
    status_filter: str | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> PaginatedResponse[CatalogueRead]:
    rows, total = catalogue_service.list_catalogues(
        db, actor, filters={"listing_id": listing_id, "status": status_filter}, page=page, limit=limit
    )
    return PaginatedResponse(data=rows, pagination=Pagination.build(page, limit, total))


@catalogues_router.post("", response_model=DataResponse[CatalogueRead], status_code=status.HTTP_201_CREATED)
def create_catalogue(
    dto: CatalogueCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[CatalogueRead]:
    return DataResponse(data=catalogue_service.create_catalogue(db, actor, dto), message="Catalogue created")


@catalogues_router.get("/{catalogue_id}", response_model=DataResponse[CatalogueRead])
def get_catalogue(
    catalogue_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[CatalogueRead]:
    return DataResponse(data=catalogue_service.get_catalogue(db, actor, catalogue_id))


@catalogues_router.put("/{catalogue_id}", response_model=DataResponse[CatalogueRead])
def update_catalogue(
    catalogue_id: uuid.UUID,
    dto: CatalogueUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[CatalogueRead]:
    catalogue = catalogue_service.update_catalogue(db, actor, catalogue_id, dto)
    return DataResponse(data=catalogue, message="Catalogue updated")


@catalogues_router.post("/{catalogue_id}", response_model=DataResponse[CatalogueRead])
def catalogue_action(
    catalogue_id: uuid.UUID,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DataResponse[CatalogueRead]:
    catalogue = catalogue_service.perform_action(db, actor, catalogue_id, payload)
    return DataResponse(data=catalogue, message=f"Catalogue {payload.get('action')} applied")
