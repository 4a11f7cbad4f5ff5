from __future__ import annotations

import uuid
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


def _make_profile(session: Session, role: str) -> Profile:
    profile = Profile(full_name=role.title(), phone=f"+91{uuid.uuid4().int % 10**10:010d}", role=role)
    session.add(profile)
    session.commit()
    return profile


def _auth(profile: Profile) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_session_token(profile.id)}"}


def _create_lead(client: TestClient, actor: Profile, phone: str = "+919845098450") -> str:
    response = client.post(
        "/api/v1/leads",
        json={"profile": {"fullName": "Kavya Rao", "phone": phone}, "source": "website"},
        headers=_auth(actor),
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]["id"]


def test_create_seller_contact(client: TestClient, db_session: Session) -> None:
    agent = _make_profile(db_session, "seller_agent")
    admin = _make_profile(db_session, "super_admin")

    response = client.post(
        "/api/v1/sellers",
        json={"fullName": "Ramesh Gupta", "phone": "+919900112233", "email": "ramesh@example.com"},
        headers=_auth(agent),
    )
    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "Seller contact created successfully"
    seller = body["data"]
    assert seller["fullName"] == "Ramesh Gupta"
    assert seller["email"] == "ramesh@example.com"

    stored = db_session.get(Profile, uuid.UUID(seller["id"]))
    assert stored is not None and stored.role is None

    audit = client.get(
        "/api/v1/audit-logs",
        params={"entityType": "contact", "entityId": seller["id"]},
        headers=_auth(admin),
    ).json()["data"]
    assert [entry["action"] for entry in audit] == ["create"]
    assert audit[0]["performedById"] == str(agent.id)


def test_create_seller_rejects_known_phone(client: TestClient, db_session: Session) -> None:
    agent = _make_profile(db_session, "seller_agent")
    payload = {"fullName": "Ramesh Gupta", "phone": "+919900112233"}
    assert client.post("/api/v1/sellers", json=payload, headers=_auth(agent)).status_code == 201

    duplicate = client.post("/api/v1/sellers", json={**payload, "fullName": "R. Gupta"}, headers=_auth(agent))
    assert duplicate.status_code == 409
    assert duplicate.json()["message"] == "A contact with this phone number already exists"


def test_create_seller_validates_body_and_permission(client: TestClient, db_session: Session) -> None:
    seller_agent = _make_profile(db_session, "seller_agent")
    buyer_agent = _make_profile(db_session, "buyer_agent")

    invalid = client.post("/api/v1/sellers", json={"fullName": "R", "phone": "9900112233"}, headers=_auth(seller_agent))
    assert invalid.status_code == 400
    assert invalid.json()["error"] == "Validation Error"

    denied = client.post(
        "/api/v1/sellers",
        json={"fullName": "Ramesh Gupta", "phone": "+919900112233"},
        headers=_auth(buyer_agent),
    )
    assert denied.status_code == 403
    assert denied.json()["message"] == "Missing permission 'sellers:create'"


def test_list_sellers_searches_contacts_only(client: TestClient, db_session: Session) -> None:
    agent = _make_profile(db_session, "seller_agent")
    for name, phone in (("Anita Desai", "+919811100001"), ("Vikram Shah", "+919811100002")):
        client.post("/api/v1/sellers", json={"fullName": name, "phone": phone}, headers=_auth(agent))

    everyone = client.get("/api/v1/sellers", headers=_auth(agent)).json()
    assert [item["fullName"] for item in everyone["data"]] == ["Anita Desai", "Vikram Shah"]
    assert everyone["pagination"] == {"page": 1, "limit": 20, "total": 2, "totalPages": 1}

    by_phone = client.get("/api/v1/sellers", params={"search": "100002"}, headers=_auth(agent)).json()
    assert [item["fullName"] for item in by_phone["data"]] == ["Vikram Shah"]

    paged = client.get("/api/v1/sellers", params={"limit": 1, "page": 2}, headers=_auth(agent)).json()
    assert [item["fullName"] for item in paged["data"]] == ["Vikram Shah"]
    assert paged["pagination"]["totalPages"] == 2


def test_create_and_filter_buyer_events(client: TestClient, db_session: Session) -> None:
    manager = _make_profile(db_session, "team_lead")
    lead_id = _create_lead(client, manager)
    other_lead_id = _create_lead(client, manager, phone="+919845098451")

    created = client.post(
        "/api/v1/buyer-events",
        json={
            "leadId": lead_id,
            "eventType": "brochure_download",
            "leadSource": "website",
            "metadata": {"listing": "C-1203", "pages": 12},
        },
        headers=_auth(manager),
    )
    assert created.status_code == 201
    event = created.json()["data"]
    assert event["eventType"] == "brochure_download"
    assert event["metadata"] == {"listing": "C-1203", "pages": 12}
    assert event["createdById"] == str(manager.id)

    for lead, event_type in ((lead_id, "callback_request"), (other_lead_id, "brochure_download")):
        response = client.post(
            "/api/v1/buyer-events",
            json={"leadId": lead, "eventType": event_type},
            headers=_auth(manager),
        )
        assert response.status_code == 201

    for_lead = client.get("/api/v1/buyer-events", params={"leadId": lead_id}, headers=_auth(manager)).json()
    assert for_lead["pagination"]["total"] == 2

    downloads = client.get(
        "/api/v1/buyer-events",
        params={"leadId": lead_id, "eventType": "brochure_download"},
        headers=_auth(manager),
    ).json()["data"]
    assert [item["id"] for item in downloads] == [event["id"]]

    audit = client.get(
        "/api/v1/audit-logs",
        params={"entityType": "buyer_event", "entityId": event["id"]},
        headers=_auth(manager),
    ).json()["data"]
    assert audit[0]["action"] == "create"
    assert audit[0]["changes"]["eventType"] == {"old": None, "new": "brochure_download"}


def test_buyer_event_requires_known_lead(client: TestClient, db_session: Session) -> None:
    manager = _make_profile(db_session, "team_lead")

    response = client.post(
        "/api/v1/buyer-events",
        json={"leadId": str(uuid.uuid4()), "eventType": "site_visit_request"},
        headers=_auth(manager),
    )
    assert response.status_code == 404


def test_buyer_events_need_permission(client: TestClient, db_session: Session) -> None:
    agent = _make_profile(db_session, "buyer_agent")

    listed = client.get("/api/v1/buyer-events", headers=_auth(agent))
    assert listed.status_code == 403
    assert listed.json()["message"] == "Missing permission 'buyer_events:read'"
