from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, model_validator

from app.core.schemas import PHONE_PATTERN, CamelModel, DataResponse, Location, ReadModel, RowVersioned


LeadStatus = Literal["new", "contacted", "active_visitor", "at_risk", "closed"]
LeadStage = Literal[
    "NEW_LEAD",
    "QUALIFIED",
    "REACTIVATED",
    "AT_RISK_LEAD",
    "INACTIVE_LEAD",
    "ACTIVE_VISITOR",
    "AT_RISK_VISITOR",
    "INACTIVE_VISITOR",
]
ActivityType = Literal["INQUIRY", "LOGIN"]


class LeadRequirements(BaseModel):
    """Buyer preferences stored on the lead.

    Unknown keys from upstream lead sources are kept as-is.
    """

    model_config = ConfigDict(extra="allow")

    bhk: list[int] = Field(default_factory=list)
    budget_min: Decimal | None = Field(default=None, gt=0)
    budget_max: Decimal | None = Field(default=None, gt=0)
    localities: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_ranges(self) -> LeadRequirements:
        for value in self.bhk:
            if value < 1 or value > 10:
                raise ValueError("bhk values must be between 1 and 10")
        if self.budget_min is not None and self.budget_max is not None and self.budget_min > self.budget_max:
            raise ValueError("budget_min must not exceed budget_max")
        return self

    def is_empty(self) -> bool:
        return not (self.bhk or self.localities or self.budget_min or self.budget_max or self.model_extra)


class ContactInput(CamelModel):
    full_name: str = Field(min_length=1, max_length=200)
    phone: str = Field(pattern=PHONE_PATTERN)
    email: EmailStr | None = None


class ContactRead(ReadModel):
    id: UUID
    full_name: str
    phone: str
    email: str | None


class LeadCreate(CamelModel):
    profile: ContactInput
    source: str = Field(min_length=1, max_length=64)
    external_id: str | None = Field(default=None, max_length=128)
    requirements: LeadRequirements | None = None
    locality: str | None = None
    assigned_agent_id: UUID | None = None


class LeadUpdate(RowVersioned):
    status: LeadStatus | None = None
    agent_id: UUID | None = None
    source: str | None = Field(default=None, min_length=1, max_length=64)
    external_id: str | None = None
    locality: str | None = None
    drop_reason: str | None = None
    requirements: LeadRequirements | None = None
    assigned_agent_id: UUID | None = None
    last_contacted_at: datetime | None = None


class LeadRead(ReadModel):
    id: UUID
    profile_id: UUID
    profile: ContactRead | None = None
    source: str
    external_id: str | None
    status: str
    stage: str
    assigned_agent_id: UUID | None
    requirement_json: dict[str, Any] | None
    locality: str | None
    drop_reason: str | None
    last_contacted_at: datetime | None
    last_active_at: datetime | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


class LeadCreateResponse(DataResponse[LeadRead]):
    duplicate: bool = False


class LeadActivityRequest(CamelModel):
    type: ActivityType


class LeadActivityResult(CamelModel):
    reactivated: bool
    new_stage: str | None = None


SellerLeadStatus = Literal["new", "proposal_sent", "proposal_accepted", "dropped"]
SellerLeadSource = Literal["website", "99acres", "magicbricks", "housing", "nobroker", "mygate", "referral"]


class SellerLeadCreate(CamelModel):
    name: str = Field(min_length=1, max_length=200)
    phone: str = Field(pattern=PHONE_PATTERN)
    email: EmailStr | None = None
    source: SellerLeadSource
    source_url: str | None = None
    referred_by_id: UUID | None = None
    building_id: UUID | None = None
    unit_id: UUID | None = None
    assigned_to_id: UUID | None = None
    follow_up_date: date | None = None
    is_nri: bool = False
    notes: str | None = None


class SellerLeadUpdate(RowVersioned):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    phone: str | None = Field(default=None, pattern=PHONE_PATTERN)
    email: EmailStr | None = None
    status: SellerLeadStatus | None = None
    source_url: str | None = None
    building_id: UUID | None = None
    unit_id: UUID | None = None
    assigned_to_id: UUID | None = None
    follow_up_date: date | None = None
    is_nri: bool | None = None
    notes: str | None = None


class SellerLeadRead(ReadModel):
    id: UUID
    name: str
    phone: str
    email: str | None
    status: str
    source: str
    source_url: str | None
    referred_by_id: UUID | None
    building_id: UUID | None
    unit_id: UUID | None
    assigned_to_id: UUID | None
    follow_up_date: date | None
    is_nri: bool
    notes: str | None
    created_by_id: UUID | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


VisitStatus = Literal["pending", "scheduled", "confirmed", "completed", "cancelled", "no_show"]


class VisitCreate(CamelModel):
    lead_id: UUID
    listing_id: UUID
    scheduled_at: datetime
    tour_id: UUID | None = None


class VisitUpdate(RowVersioned):
    scheduled_at: datetime | None = None
    feedback_text: str | None = None
    feedback_rating: int | None = Field(default=None, ge=1, le=5)


class VisitRead(ReadModel):
    id: UUID
    lead_id: UUID
    listing_id: UUID
    tour_id: UUID | None
    scheduled_at: datetime
    status: str
    otp_verified: bool
    visit_confirmed: bool
    confirmed_at: datetime | None
    visit_canceled: bool
    canceled_at: datetime | None
    drop_reason: str | None
    cancellation_notes: str | None
    visit_completed: bool
    completed_at: datetime | None
    completion_latitude: float | None
    completion_longitude: float | None
    completed_by_id: UUID | None
    feedback_text: str | None
    feedback_rating: int | None
    buyer_score: float | None
    primary_pain_point: str | None
    rescheduled_from_visit_id: UUID | None
    reschedule_requested: bool
    reschedule_time: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class VisitConfirmAction(CamelModel):
    action: Literal["confirm"]


class VisitCancelAction(CamelModel):
    action: Literal["cancel"]
    drop_reason: str = Field(min_length=1)
    cancellation_notes: str | None = None


class VisitRescheduleAction(CamelModel):
    action: Literal["reschedule"]
    new_scheduled_at: datetime


class VisitCompleteAction(CamelModel):
    action: Literal["complete"]
    otp_code: str = Field(min_length=4, max_length=4)
    location: Location
    feedback_text: str | None = None
    feedback_rating: int | None = Field(default=None, ge=1, le=5)
    buyer_score: float | None = Field(default=None, ge=0, le=10)
    primary_pain_point: str | None = None


OfferStatus = Literal["pending", "accepted", "rejected", "countered", "expired"]


class OfferCreate(CamelModel):
    listing_id: UUID
    lead_id: UUID
    offer_amount: Decimal = Field(gt=0)
    terms: dict[str, Any] | None = None


class OfferUpdate(RowVersioned):
    offer_amount: Decimal | None = Field(default=None, gt=0)
    terms: dict[str, Any] | None = None


class OfferRead(ReadModel):
    id: UUID
    listing_id: UUID
    lead_id: UUID
    offer_amount: Decimal
    terms: dict[str, Any] | None
    status: str
    rejection_reason: str | None
    countered_from_offer_id: UUID | None
    created_by_id: UUID | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


class OfferAcceptAction(CamelModel):
    action: Literal["accept"]


class OfferRejectAction(CamelModel):
    action: Literal["reject"]
    reason: str | None = None


class OfferCounterAction(CamelModel):
    action: Literal["counter"]
    counter_amount: Decimal = Field(gt=0)
    terms: dict[str, Any] | None = None


TaskPriority = Literal["low", "medium", "high", "urgent"]
TaskStatus = Literal["open", "in_progress", "completed", "cancelled"]
TaskEntityType = Literal["buyer_lead", "seller_lead", "listing", "visit"]


class TaskCreate(CamelModel):
    title: str = Field(min_length=1, max_length=300)
    description: str | None = None
    priority: TaskPriority = "medium"
    due_at: datetime | None = None
    assignee_id: UUID | None = None
    entity_type: TaskEntityType | None = None
    entity_id: UUID | None = None

    @model_validator(mode="after")
    def _entity_pair(self) -> TaskCreate:
        if (self.entity_type is None) != (self.entity_id is None):
            raise ValueError("entityType and entityId must be provided together")
        return self


class TaskUpdate(RowVersioned):
    title: str | None = Field(default=None, min_length=1, max_length=300)
    description: str | None = None
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    due_at: datetime | None = None
    assignee_id: UUID | None = None


class TaskRead(ReadModel):
    id: UUID
    title: str
    description: str | None
    priority: str
    status: str
    due_at: datetime | None
    assignee_id: UUID | None
    creator_id: UUID | None
    entity_type: str | None
    entity_id: UUID | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


NoteEntityType = Literal[
    "seller_lead",
    "buyer_lead",
    "listing",
    "visit",
    "building",
    "unit",
    "inspection",
    "catalogue",
]


class NoteCreate(CamelModel):
    entity_type: NoteEntityType
    entity_id: UUID
    content: str = Field(min_length=1)


class NoteUpdate(RowVersioned):
    content: str = Field(min_length=1)


class NoteRead(ReadModel):
    id: UUID
    entity_type: str
    entity_id: UUID
    content: str
    created_by_id: UUID | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


MediaEntityType = Literal["listing", "building", "inspection", "catalogue"]
MediaType = Literal["image", "video", "floor_plan", "document"]


class MediaCreate(CamelModel):
    entity_type: MediaEntityType
    entity_id: UUID
    media_type: MediaType
    url: str = Field(min_length=1)
    tag: str | None = Field(default=None, max_length=64)
    public_id: str | None = None
    order: int = Field(default=0, ge=0)
    metadata: dict[str, Any] | None = None


class MediaUpdate(RowVersioned):
    tag: str | None = Field(default=None, max_length=64)
    order: int | None = Field(default=None, ge=0)
    metadata: dict[str, Any] | None = None


class MediaOrderItem(CamelModel):
    id: UUID
    order: int = Field(ge=0)


class MediaReorderRequest(CamelModel):
    items: list[MediaOrderItem] = Field(min_length=1)


class MediaRead(ReadModel):
    id: UUID
    entity_type: str
    entity_id: UUID
    media_type: str
    tag: str | None
    url: str
    public_id: str | None
    order: int
    metadata: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("media_metadata", "metadata"),
    )
    uploaded_by_id: UUID | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None
    row_version: int


class AuditRead(ReadModel):
    id: UUID
    entity_type: str
    entity_id: UUID
    action: str
    changes: dict[str, Any]
    performed_by_id: UUID | None
    created_at: datetime


class CronResult(CamelModel):
    pre_visit_decayed: int = 0
    post_visit_decayed: int = 0
    total: int = 0


class CronResponse(CamelModel):
    success: bool
    result: CronResult
    processed_at: datetime


class SellerCreate(CamelModel):
    full_name: str = Field(min_length=2, max_length=200)
    phone: str = Field(pattern=PHONE_PATTERN)
    email: EmailStr | None = None


class SellerRead(ContactRead):
    created_at: datetime


class BuyerEventCreate(CamelModel):
    lead_id: UUID
    profile_id: UUID | None = None
    phone: str | None = Field(default=None, max_length=20)
    lead_source: str | None = Field(default=None, max_length=64)
    source_listing_id: str | None = Field(default=None, max_length=128)
    event_type: str = Field(min_length=1, max_length=64)
    metadata: dict[str, Any] | None = None


class BuyerEventRead(ReadModel):
    id: UUID
    lead_id: UUID
    profile_id: UUID | None
    phone: str | None
    lead_source: str | None
    source_listing_id: str | None
    event_type: str
    metadata: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("event_metadata", "metadata"),
    )
    created_by_id: UUID | None
    created_at: datetime
