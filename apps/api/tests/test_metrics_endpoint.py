from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.agents.models import Profile
from app.core.auth import issue_session_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("CRON_SECRET", "metrics-cron-secret")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _headers(session: Session, role: str, phone: str) -> dict[str, str]:
    profile = Profile(full_name=role.title(), phone=phone, role=role)
    session.add(profile)
    session.commit()
    return {"Authorization": f"Bearer {issue_session_token(profile.id)}"}


def test_metrics_endpoint_exposes_http_and_job_metrics(client: TestClient, db_session: Session) -> None:
    admin = _headers(db_session, "super_admin", "+919900000021")

    health = client.get("/health")
    assert health.status_code == 200

    building = client.post("/api/v1/buildings", json={"name": "Metrics Tower"}, headers=admin)
    assert building.status_code == 201
    fetched = client.get(f"/api/v1/buildings/{building.json()['data']['id']}", headers=admin)
    assert fetched.status_code == 200

    cron = client.get("/api/cron/process-lifecycle", headers={"Authorization": "Bearer metrics-cron-secret"})
    assert cron.status_code == 200

    metrics = client.get("/metrics", headers=admin)
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "lifecycle_jobs_total" in body
    assert "lifecycle_job_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/v1/buildings/{id}"' in body
    assert 'status="succeeded"' in body


def test_metrics_require_settings_permission(client: TestClient, db_session: Session) -> None:
    lead_manager = _headers(db_session, "team_lead", "+919900000022")

    response = client.get("/metrics", headers=lead_manager)
    assert response.status_code == 403
    assert response.json()["error"] == "Forbidden"


def test_metrics_hidden_when_disabled(
    client: TestClient,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    admin = _headers(db_session, "super_admin", "+919900000023")
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics", headers=admin)
    assert response.status_code == 404
