from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.agents.models import Profile
from app.core.config import get_settings
from app.core.database import Base, get_db, utcnow
from app.crm.lifecycle import LifecycleService
from app.crm.models import Lead
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


CRON_SECRET = "cron-secret-value"
CRON_PATHS = ["/api/cron/process-lifecycle", "/api/v1/cron/process-lifecycle"]


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
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed_idle_lead(session: Session, days_idle: int) -> Lead:
    contact = Profile(full_name="Idle Buyer", phone=f"+91{uuid.uuid4().int % 10**10:010d}")
    session.add(contact)
    session.flush()
    lead = Lead(
        profile_id=contact.id,
        source="website",
        status="new",
        stage="NEW_LEAD",
        created_at=utcnow() - timedelta(days=days_idle),
    )
    session.add(lead)
    session.commit()
    return lead


@pytest.mark.parametrize("path", CRON_PATHS)
def test_cron_runs_decay_with_valid_secret(client: TestClient, db_session: Session, path: str) -> None:
    lead = _seed_idle_lead(db_session, days_idle=12)

    response = client.get(path, headers={"Authorization": f"Bearer {CRON_SECRET}"})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["result"] == {"preVisitDecayed": 1, "postVisitDecayed": 0, "total": 1}
    assert body["processedAt"]

    db_session.expire_all()
    assert db_session.get(Lead, lead.id).stage == "AT_RISK_LEAD"


def test_second_cron_run_is_a_noop(client: TestClient, db_session: Session) -> None:
    _seed_idle_lead(db_session, days_idle=12)
    headers = {"Authorization": f"Bearer {CRON_SECRET}"}

    assert client.get(CRON_PATHS[0], headers=headers).json()["result"]["total"] == 1
    assert client.get(CRON_PATHS[0], headers=headers).json()["result"]["total"] == 0


@pytest.mark.parametrize(
    "headers",
    [{}, {"Authorization": "Bearer wrong-secret"}, {"Authorization": CRON_SECRET}],
)
def test_cron_rejects_missing_or_wrong_secret(client: TestClient, headers: dict[str, str]) -> None:
    response = client.get(CRON_PATHS[0], headers=headers)
    assert response.status_code == 401
    assert response.json()["error"] == "Unauthorized"


def test_cron_without_configured_secret_is_misconfiguration(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("CRON_SECRET", raising=False)
    get_settings.cache_clear()

    response = client.get(CRON_PATHS[0], headers={"Authorization": "Bearer anything"})
    assert response.status_code == 500
    assert response.json()["error"] == "Server misconfiguration"


def test_cron_reports_unexpected_failure(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    def explode(self: LifecycleService, session: Session, now: object = None) -> None:
        raise RuntimeError("decay engine offline")

    monkeypatch.setattr(LifecycleService, "process_time_decay", explode)

    response = client.get(CRON_PATHS[1], headers={"Authorization": f"Bearer {CRON_SECRET}"})
    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "Internal Server Error"
    assert body["message"] == "decay engine offline"
    assert "correlation_id" in body
