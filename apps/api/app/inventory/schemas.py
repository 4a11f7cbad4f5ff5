from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import Field

from app.core.schemas import CamelModel, Location, ReadModel, RowVersioned


class BuildingCreate(CamelModel):
    name: str = Field(min_length=1, max_length=200)
    locality: str | None = None
    city: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    amenities_json: list[str] | None = None
    water_source: str | None = None


class BuildingUpdate(RowVersioned):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    locality: str | None = None
    city: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    amenities_json: list[str] | None = None
    water_source: str | None = None


class BuildingRead(ReadModel):
    id: UUID
    name: str
    locality: str | None
    city: str | None
    latitude: float | None
    longitude: float | None
    amenities_json: list[Any] | None
    water_source: str | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


class UnitCreate(CamelModel):
    building_id: UUID
    unit_number: str = Field(min_length=1, max_length=32)
    bhk: int | None = Field(default=None, ge=1, le=10)
    floor_number: int | None = None
    carpet_area: int | None = Field(default=None, gt=0)
    owner_id: UUID | None = None


class UnitRead(ReadModel):
    id: UUID
    building_id: UUID
    unit_number: str
    bhk: int | None
    floor_number: int | None
    carpet_area: int | None
    owner_id: UUID | None
    created_at: datetime
    updated_at: datetime
    row_version: int


ListingStatus = Literal[
    "draft",
    "inspection_pending",
    "cataloguing_pending",
    "active",
    "on_hold",
    "inactive",
    "sold",
    "delisted",
]
SoldBy = Literal["jumbo", "owner", "other_agent"]


class ListingCreate(CamelModel):
    unit_id: UUID
    listing_agent_id: UUID | None = None
    asking_price: Decimal | None = Field(default=None, gt=0)
    description: str | None = None
    images: list[str] = Field(default_factory=list)


class ListingUpdate(RowVersioned):
    listing_agent_id: UUID | None = None
    asking_price: Decimal | None = Field(default=None, gt=0)
    description: str | None = None
    images: list[str] | None = None


class ListingRead(ReadModel):
    id: UUID
    unit_id: UUID
    listing_agent_id: UUID | None
    status: str
    asking_price: Decimal | None
    description: str | None
    images: list[str]
    is_verified: bool
    published_at: datetime | None
    sold_by: str | None
    selling_price: Decimal | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


class ListingPublishAction(CamelModel):
    action: Literal["publish"]


class ListingVerifyAction(CamelModel):
    action: Literal["verify"]


class ListingMarkSoldAction(CamelModel):
    action: Literal["mark_sold"]
    sold_by: SoldBy
    selling_price: Decimal | None = Field(default=None, gt=0)


class ListingSetStatusAction(CamelModel):
    action: Literal["set_status"]
    status: ListingStatus


InspectionStatus = Literal["pending", "in_progress", "completed", "rejected"]


class InspectionCreate(CamelModel):
    listing_id: UUID
    inspected_by_id: UUID | None = None
    inspected_on: date | None = None
    notes: str | None = None


class InspectionUpdate(RowVersioned):
    inspected_by_id: UUID | None = None
    inspected_on: date | None = None
    notes: str | None = None
    known_issues: list[str] | None = None


class InspectionRead(ReadModel):
    id: UUID
    listing_id: UUID
    inspected_by_id: UUID | None
    status: str
    inspected_on: date | None
    latitude: float | None
    longitude: float | None
    inspection_score: int | None
    notes: str | None
    known_issues: list[Any] | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


class InspectionCompleteAction(CamelModel):
    action: Literal["complete"]
    location: Location
    inspection_score: int | None = Field(default=None, ge=0, le=100)
    notes: str | None = None
    known_issues: list[str] | None = None


class InspectionSetStatusAction(CamelModel):
    action: Literal["set_status"]
    status: Literal["pending", "in_progress", "rejected"]


CatalogueStatus = Literal["pending", "approved", "rejected", "needs_revision"]


class CatalogueCreate(CamelModel):
    listing_id: UUID
    inspection_id: UUID | None = None
    cataloguing_score: int | None = Field(default=None, ge=0, le=100)
    floor_plan_url: str | None = None
    video_url: str | None = None
    thumbnail_url: str | None = None


class CatalogueUpdate(RowVersioned):
    cataloguing_score: int | None = Field(default=None, ge=0, le=100)
    floor_plan_url: str | None = None
    video_url: str | None = None
    thumbnail_url: str | None = None


class CatalogueRead(ReadModel):
    id: UUID
    listing_id: UUID
    inspection_id: UUID | None
    catalogued_by_id: UUID | None
    status: str
    cataloguing_score: int | None
    floor_plan_url: str | None
    video_url: str | None
    thumbnail_url: str | None
    approved_at: datetime | None
    rejection_reason: str | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


class CatalogueApproveAction(CamelModel):
    action: Literal["approve"]


class CatalogueRejectAction(CamelModel):
    action: Literal["reject"]
    reason: str = Field(min_length=1)


class CatalogueRevisionAction(CamelModel):
    action: Literal["request_revision"]
    reason: str | None = None
