from __future__ import annotations

import os
from collections.abc import Generator
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.agents.models import Profile
from app.core.auth import issue_session_token
from app.core.config import get_settings
from app.core.database import Base, get_db, utcnow
from app.crm.models import Lead
from app.inventory.models import Building, Listing, Unit
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.otel import setup_inmemory_otel


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("CRON_SECRET", "otel-cron-secret")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    agent = Profile(full_name="Listing Agent", phone="+919900000041", role="listing_agent")
    db_session.add(agent)
    db_session.commit()

    response = client.post(
        "/api/v1/buildings",
        json={"name": "Traced Tower"},
        headers={"X-Correlation-Id": "otel-corr-1", "Authorization": f"Bearer {issue_session_token(agent.id)}"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_decay_run_emits_job_and_population_spans(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    contact = Profile(full_name="Idle Buyer", phone="+919900000042")
    db_session.add(contact)
    db_session.flush()
    db_session.add(Lead(profile_id=contact.id, source="website", created_at=utcnow() - timedelta(days=40)))
    db_session.commit()

    response = client.get("/api/cron/process-lifecycle", headers={"Authorization": "Bearer otel-cron-secret"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    names = {span.name for span in spans}
    assert {"lifecycle.process_time_decay", "lifecycle.pre_visit", "lifecycle.post_visit"} <= names

    job_span = next(span for span in spans if span.name == "lifecycle.process_time_decay")
    assert job_span.attributes.get("lifecycle.pre_visit_decayed") == 1
    assert job_span.attributes.get("lifecycle.post_visit_decayed") == 0


def test_workflow_action_opens_named_span(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    agent = Profile(full_name="Listing Agent", phone="+919900000043", role="listing_agent")
    building = Building(name="Span Heights")
    db_session.add_all([agent, building])
    db_session.flush()
    unit = Unit(building_id=building.id, unit_number="E-101")
    db_session.add(unit)
    db_session.flush()
    listing = Listing(unit_id=unit.id, listing_agent_id=agent.id, status="draft", images=[])
    db_session.add(listing)
    db_session.commit()

    response = client.post(
        f"/api/v1/listings/{listing.id}",
        json={"action": "publish"},
        headers={"X-Correlation-Id": "otel-corr-2", "Authorization": f"Bearer {issue_session_token(agent.id)}"},
    )
    assert response.status_code == 200

    span = next(span for span in span_exporter.get_finished_spans() if span.name == "listing.publish")
    assert span.attributes.get("workflow.entity_id") == str(listing.id)
    assert span.attributes.get("correlation_id") == "otel-corr-2"
