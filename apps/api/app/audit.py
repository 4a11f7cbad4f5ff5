"""Field-level change tracking and the append-only audit trail.

``compute_changes`` is pure. ``log_activity`` is best effort: it commits the
audit row on its own after the business mutation has been committed, and a
failure there is logged and counted but never reaches the caller.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel
from sqlalchemy import and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.metrics import observe_audit_write_failure
from app.models.audit import AuditLog


logger = logging.getLogger("app.audit")

AuditAction = Literal["create", "update", "delete"]

Changes = dict[str, dict[str, Any]]

BOOKKEEPING_FIELDS = frozenset({"updatedAt", "rowVersion"})

DEFAULT_AUDIT_LIMIT = 50


def snapshot(model: BaseModel, exclude: Iterable[str] = BOOKKEEPING_FIELDS) -> dict[str, Any]:
    """JSON-normalised wire view of a read model, minus bookkeeping fields."""
    excluded = set(exclude)
    dumped = model.model_dump(mode="json", by_alias=True)
    return {key: value for key, value in dumped.items() if key not in excluded}


def _differs(previous: Any, value: Any) -> bool:
    """Structural comparison that also tells ``True`` from ``1`` and ``False`` from ``0``."""
    if type(previous) is not type(value):
        return True
    if isinstance(value, dict):
        return previous.keys() != value.keys() or any(_differs(previous[key], value[key]) for key in value)
    if isinstance(value, (list, tuple)):
        return len(previous) != len(value) or any(_differs(a, b) for a, b in zip(previous, value))
    return previous != value


def compute_changes(old: Mapping[str, Any] | None, new: Mapping[str, Any]) -> Changes | None:
    if old is None:
        created = {key: {"old": None, "new": value} for key, value in new.items() if value is not None}
        return created or None

    changes: Changes = {}
    for key, value in new.items():
        previous = old.get(key)
        if _differs(previous, value):
            changes[key] = {"old": previous, "new": value}
    return changes or None


def log_activity(
    session: Session,
    *,
    entity_type: str,
    entity_id: uuid.UUID,
    action: AuditAction,
    changes: Changes | None,
    performed_by_id: uuid.UUID | None,
) -> AuditLog | None:
    if not changes:
        return None

    entry = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        changes=changes,
        performed_by_id=performed_by_id,
    )
    try:
        session.add(entry)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        observe_audit_write_failure(entity_type)
        logger.error(
            "audit.write_failed",
            exc_info=True,
            extra={"entity_type": entity_type, "entity_id": str(entity_id), "action": action, "error": str(exc)},
        )
        return None
    return entry


def get_audit_logs(
    session: Session,
    entity_type: str,
    entity_id: uuid.UUID,
    limit: int = DEFAULT_AUDIT_LIMIT,
) -> list[AuditLog]:
    stmt = (
        select(AuditLog)
        .where(and_(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id))
        .order_by(AuditLog.created_at.desc())
        .limit(limit)
    )
    return list(session.scalars(stmt).all())


def record_change(
    session: Session,
    *,
    entity_type: str,
    entity_id: uuid.UUID,
    action: AuditAction,
    before: Mapping[str, Any] | None,
    after: Mapping[str, Any],
    performed_by_id: uuid.UUID | None,
) -> AuditLog | None:
    return log_activity(
        session,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        changes=compute_changes(before, after),
        performed_by_id=performed_by_id,
    )


def record_deletion(
    session: Session,
    *,
    entity_type: str,
    entity_id: uuid.UUID,
    deleted_at: datetime,
    performed_by_id: uuid.UUID | None,
) -> AuditLog | None:
    return log_activity(
        session,
        entity_type=entity_type,
        entity_id=entity_id,
        action="delete",
        changes={"deletedAt": {"old": None, "new": deleted_at.isoformat()}},
        performed_by_id=performed_by_id,
    )
