from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.agents.models import Profile
from app.core.auth import issue_session_token
from app.core.config import Settings, get_settings
from app.core.database import Base, get_db
from app.main import app, create_app
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
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
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


@pytest.fixture()
def admin(db_session: Session) -> Profile:
    profile = Profile(full_name="Anita Admin", phone="+919800000001", role="super_admin")
    db_session.add(profile)
    db_session.commit()
    return profile


def _auth(profile: Profile) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_session_token(profile.id)}"}


def test_health_is_public(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_me_returns_actor(client: TestClient, admin: Profile) -> None:
    response = client.get("/me", headers=_auth(admin))
    assert response.status_code == 200
    assert response.json() == {"id": str(admin.id), "role": "super_admin", "fullName": "Anita Admin"}

    assert client.get("/me").status_code == 401
    assert client.get("/me", headers={"Authorization": "Bearer not-a-token"}).status_code == 401


def test_admin_creates_agent(client: TestClient, admin: Profile) -> None:
    response = client.post(
        "/api/v1/agents",
        json={"fullName": "Vikram Rao", "phone": "+919800000002", "email": "vikram@example.com", "role": "visit_agent"},
        headers=_auth(admin),
    )
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["role"] == "visit_agent"
    assert data["email"] == "vikram@example.com"

    audit = client.get(
        "/api/v1/audit-logs",
        params={"entityType": "profile", "entityId": data["id"]},
        headers=_auth(admin),
    ).json()["data"]
    assert audit[0]["action"] == "create"
    assert audit[0]["changes"]["role"] == {"old": None, "new": "visit_agent"}


def test_duplicate_phone_is_conflict(client: TestClient, admin: Profile) -> None:
    response = client.post(
        "/api/v1/agents",
        json={"fullName": "Copy Cat", "phone": admin.phone, "role": "buyer_agent"},
        headers=_auth(admin),
    )
    assert response.status_code == 409
    assert response.json()["message"] == "A profile with this phone already exists"


def test_unknown_role_is_rejected(client: TestClient, admin: Profile) -> None:
    response = client.post(
        "/api/v1/agents",
        json={"fullName": "Nobody", "phone": "+919800000003", "role": "janitor"},
        headers=_auth(admin),
    )
    assert response.status_code == 400


def test_team_lead_cannot_create_agents(client: TestClient, db_session: Session) -> None:
    lead = Profile(full_name="Team Lead", phone="+919800000004", role="team_lead")
    db_session.add(lead)
    db_session.commit()

    response = client.post(
        "/api/v1/agents",
        json={"fullName": "New Hire", "phone": "+919800000005", "role": "buyer_agent"},
        headers=_auth(lead),
    )
    assert response.status_code == 403

    listed = client.get("/api/v1/agents", headers=_auth(lead))
    assert listed.status_code == 200


def test_list_agents_filters_by_role_and_skips_contacts(
    client: TestClient, db_session: Session, admin: Profile
) -> None:
    db_session.add_all(
        [
            Profile(full_name="Bela Buyer Agent", phone="+919800000006", role="buyer_agent"),
            Profile(full_name="Carl Contact", phone="+919800000007"),
        ]
    )
    db_session.commit()

    everyone = client.get("/api/v1/agents", headers=_auth(admin)).json()["data"]
    assert [item["fullName"] for item in everyone] == ["Anita Admin", "Bela Buyer Agent"]

    buyers = client.get("/api/v1/agents", params={"role": "buyer_agent"}, headers=_auth(admin)).json()["data"]
    assert [item["fullName"] for item in buyers] == ["Bela Buyer Agent"]

    unknown = client.get("/api/v1/agents", params={"role": "janitor"}, headers=_auth(admin))
    assert unknown.status_code == 400


def test_openapi_schema_only_in_debug() -> None:
    with TestClient(create_app(Settings(app_debug=True))) as debug_client:
        assert debug_client.get("/openapi.json").status_code == 200
    with TestClient(create_app(Settings(app_debug=False))) as prod_client:
        assert prod_client.get("/openapi.json").status_code == 404
