"""Buyer lead lifecycle stages and the daily time-decay job.

A lead without visits moves along the pre-visit track
(NEW_LEAD/QUALIFIED -> AT_RISK_LEAD -> INACTIVE_LEAD); once a visit is booked
it moves along the post-visit track (ACTIVE_VISITOR -> AT_RISK_VISITOR ->
INACTIVE_VISITOR). Any decayed lead that shows activity again becomes
REACTIVATED and re-enters whichever track applies to it.

``calculate_stage`` and ``decay_target`` are pure. ``process_time_decay`` is
idempotent: a lead is only written when its target stage differs from the
stage it already holds.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from opentelemetry.trace import Status, StatusCode
from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from app import audit
from app.core.config import Settings, get_settings
from app.core.database import as_utc, unit_of_work, utcnow
from app.core.errors import ServiceError
from app.crm.models import Lead, Visit
from app.crm.schemas import CronResult
from app.metrics import observe_leads_decayed, observe_lifecycle_run, observe_population_failure
from app.otel import get_tracer


logger = logging.getLogger("app.crm.lifecycle")
tracer = get_tracer("app.crm.lifecycle")

NEW_LEAD = "NEW_LEAD"
QUALIFIED = "QUALIFIED"
REACTIVATED = "REACTIVATED"
AT_RISK_LEAD = "AT_RISK_LEAD"
INACTIVE_LEAD = "INACTIVE_LEAD"
ACTIVE_VISITOR = "ACTIVE_VISITOR"
AT_RISK_VISITOR = "AT_RISK_VISITOR"
INACTIVE_VISITOR = "INACTIVE_VISITOR"

PRE_VISIT = "pre_visit"
POST_VISIT = "post_visit"

PRE_VISIT_DECAY_STAGES = frozenset({NEW_LEAD, QUALIFIED, REACTIVATED, AT_RISK_LEAD})
POST_VISIT_DECAY_STAGES = frozenset({ACTIVE_VISITOR, REACTIVATED, AT_RISK_VISITOR})
DECAYED_STAGES = frozenset({AT_RISK_LEAD, INACTIVE_LEAD, AT_RISK_VISITOR, INACTIVE_VISITOR})

DECAYED_STATUS = "at_risk"
CLOSED_STATUS = "closed"
_VISITOR_STATUS_SOURCES = frozenset({"new", "contacted", "at_risk"})


@dataclass(frozen=True)
class DecayThresholds:
    lead_at_risk: timedelta
    lead_inactive: timedelta
    visitor_at_risk: timedelta
    visitor_inactive: timedelta
    qualification_window: timedelta

    @classmethod
    def from_settings(cls, settings: Settings) -> DecayThresholds:
        return cls(
            lead_at_risk=timedelta(days=settings.lead_at_risk_after_days),
            lead_inactive=timedelta(days=settings.lead_inactive_after_days),
            visitor_at_risk=timedelta(days=settings.visitor_at_risk_after_days),
            visitor_inactive=timedelta(days=settings.visitor_inactive_after_days),
            qualification_window=timedelta(days=settings.lead_qualification_window_days),
        )


def _latest(*values: datetime | None) -> datetime | None:
    present = [as_utc(value) for value in values if value is not None]
    return max(present) if present else None


def calculate_stage(
    created_at: datetime,
    has_requirements: bool,
    last_visit_at: datetime | None,
    visit_count: int,
    now: datetime,
    thresholds: DecayThresholds,
) -> str:
    if visit_count > 0 and last_visit_at is not None:
        since_visit = now - as_utc(last_visit_at)
        if since_visit <= thresholds.visitor_at_risk:
            return ACTIVE_VISITOR
        if since_visit <= thresholds.visitor_inactive:
            return AT_RISK_VISITOR
        return INACTIVE_VISITOR

    age = now - as_utc(created_at)
    if age <= thresholds.lead_at_risk:
        return QUALIFIED if has_requirements else NEW_LEAD
    if age <= thresholds.lead_inactive:
        return AT_RISK_LEAD
    return INACTIVE_LEAD


def decay_target(
    stage: str,
    reference_at: datetime,
    has_visits: bool,
    now: datetime,
    thresholds: DecayThresholds,
) -> str | None:
    """Stage a lead should decay to, or None when it stays where it is."""
    idle = now - as_utc(reference_at)
    if has_visits:
        if stage not in POST_VISIT_DECAY_STAGES:
            return None
        if idle > thresholds.visitor_inactive:
            target = INACTIVE_VISITOR
        elif idle > thresholds.visitor_at_risk:
            target = AT_RISK_VISITOR
        else:
            return None
    else:
        if stage not in PRE_VISIT_DECAY_STAGES:
            return None
        if idle > thresholds.lead_inactive:
            target = INACTIVE_LEAD
        elif idle > thresholds.lead_at_risk:
            target = AT_RISK_LEAD
        else:
            return None
    return None if target == stage else target


def pre_visit_reference(lead: Lead) -> datetime:
    return _latest(lead.created_at, lead.last_contacted_at, lead.last_active_at) or utcnow()


def post_visit_reference(lead: Lead, last_visit_at: datetime | None) -> datetime:
    return _latest(last_visit_at, lead.last_active_at) or pre_visit_reference(lead)


@dataclass
class _Decayed:
    lead_id: uuid.UUID
    changes: dict[str, dict[str, Any]]


class LifecycleService:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings

    @property
    def thresholds(self) -> DecayThresholds:
        return DecayThresholds.from_settings(self._settings or get_settings())

    def on_preference_saved(self, lead: Lead, now: datetime | None = None) -> bool:
        current = now or utcnow()
        if lead.stage != NEW_LEAD or not lead.requirement_json:
            return False
        if current - as_utc(lead.created_at) > self.thresholds.qualification_window:
            return False
        lead.stage = QUALIFIED
        return True

    def on_visit_created(self, lead: Lead, now: datetime | None = None) -> None:
        lead.stage = ACTIVE_VISITOR
        lead.last_active_at = now or utcnow()
        if lead.status in _VISITOR_STATUS_SOURCES:
            lead.status = "active_visitor"

    def register_activity(self, lead: Lead, activity_type: str, now: datetime | None = None) -> bool:
        lead.last_active_at = now or utcnow()
        if lead.stage not in DECAYED_STAGES:
            return False
        lead.stage = REACTIVATED
        if lead.status == DECAYED_STATUS:
            lead.status = "contacted"
        logger.info(
            "lifecycle.lead_reactivated",
            extra={"entity_type": "lead", "entity_id": str(lead.id), "action": activity_type, "to_stage": REACTIVATED},
        )
        return True

    def process_time_decay(self, session: Session, now: datetime | None = None) -> CronResult:
        current = now or utcnow()
        started = time.perf_counter()
        with tracer.start_as_current_span("lifecycle.process_time_decay") as span:
            pre_visit = self._run_population(session, PRE_VISIT, current)
            post_visit = self._run_population(session, POST_VISIT, current)
            result = CronResult(
                pre_visit_decayed=pre_visit,
                post_visit_decayed=post_visit,
                total=pre_visit + post_visit,
            )
            span.set_attribute("lifecycle.pre_visit_decayed", pre_visit)
            span.set_attribute("lifecycle.post_visit_decayed", post_visit)

        observe_lifecycle_run("succeeded", time.perf_counter() - started)
        logger.info("lifecycle.decay_completed", extra={"job": "process_time_decay", "count": result.total})
        return result

    def _run_population(self, session: Session, population: str, now: datetime) -> int:
        with tracer.start_as_current_span(f"lifecycle.{population}") as span:
            try:
                decayed = self._decay_population(session, population, now)
            except ServiceError as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                observe_population_failure(population)
                logger.error(
                    "lifecycle.population_failed",
                    exc_info=True,
                    extra={"job": "process_time_decay", "population": population, "error": str(exc)},
                )
                return 0
            span.set_attribute("lifecycle.decayed", len(decayed))

        for item in decayed:
            audit.log_activity(
                session,
                entity_type="lead",
                entity_id=item.lead_id,
                action="update",
                changes=item.changes,
                performed_by_id=None,
            )
        observe_leads_decayed(population, len(decayed))
        return len(decayed)

    def _decay_population(self, session: Session, population: str, now: datetime) -> list[_Decayed]:
        thresholds = self.thresholds
        visit_stats = (
            select(
                Visit.lead_id.label("lead_id"),
                func.max(Visit.scheduled_at).label("last_visit_at"),
            )
            .group_by(Visit.lead_id)
            .subquery()
        )
        has_visits = population == POST_VISIT
        stages = POST_VISIT_DECAY_STAGES if has_visits else PRE_VISIT_DECAY_STAGES
        visit_predicate = visit_stats.c.lead_id.is_not(None) if has_visits else visit_stats.c.lead_id.is_(None)
        stmt = (
            select(Lead, visit_stats.c.last_visit_at)
            .outerjoin(visit_stats, visit_stats.c.lead_id == Lead.id)
            .where(
                and_(
                    Lead.deleted_at.is_(None),
                    Lead.status != CLOSED_STATUS,
                    Lead.stage.in_(stages),
                    visit_predicate,
                )
            )
        )

        decayed: list[_Decayed] = []
        with unit_of_work(session):
            for lead, last_visit_at in session.execute(stmt).all():
                if has_visits:
                    reference = post_visit_reference(lead, last_visit_at)
                else:
                    reference = pre_visit_reference(lead)
                target = decay_target(lead.stage, reference, has_visits, now, thresholds)
                if target is None:
                    continue

                before = {"stage": lead.stage, "status": lead.status}
                lead.stage = target
                lead.status = DECAYED_STATUS
                lead.row_version = lead.row_version + 1
                changes = audit.compute_changes(before, {"stage": lead.stage, "status": lead.status})
                if changes:
                    decayed.append(_Decayed(lead_id=lead.id, changes=changes))
                logger.info(
                    "lifecycle.lead_decayed",
                    extra={
                        "population": population,
                        "entity_type": "lead",
                        "entity_id": str(lead.id),
                        "from_stage": before["stage"],
                        "to_stage": target,
                    },
                )
        return decayed


lifecycle_service = LifecycleService()
