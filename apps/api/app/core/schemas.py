from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from app.core.database import as_utc
from app.core.errors import BadRequestError, ValidationError


T = TypeVar("T")

PHONE_PATTERN = r"^\+91[0-9]{10}$"


class CamelModel(BaseModel):
    """Base for every wire schema: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReadModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    @field_validator("*", mode="after")
    @classmethod
    def _aware_datetimes(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return as_utc(value)
        return value


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> Pagination:
        return cls(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit) if limit else 0)


class DataResponse(CamelModel, Generic[T]):
    data: T
    message: str | None = None


class PaginatedResponse(CamelModel, Generic[T]):
    data: list[T]
    pagination: Pagination


class Location(CamelModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class RowVersioned(CamelModel):
    row_version: int | None = Field(default=None, ge=1)


def to_wire(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def parse_action(payload: Any, actions: dict[str, type[BaseModel]]) -> BaseModel:
    """Validate a workflow body against the schema registered for its ``action``."""
    action = payload.get("action") if isinstance(payload, dict) else None
    if not isinstance(action, str) or not action:
        raise ValidationError("action is required", details=[{"path": "action", "message": "Field required"}])
    schema = actions.get(action)
    if schema is None:
        raise BadRequestError(f"Unknown action: {action}")
    try:
        return schema.model_validate(payload)
    except PydanticValidationError as exc:
        details = [
            {"path": ".".join(str(part) for part in issue.get("loc", ())), "message": issue.get("msg", "invalid value")}
            for issue in exc.errors()
        ]
        raise ValidationError(f"Invalid payload for action '{action}'", details=details) from exc
