from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.agents.models import Profile
from app.core.auth import issue_session_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import Lead
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


WEBHOOK_SECRET = "lead-webhook-secret"


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
    monkeypatch.setenv("LEADS_API_SECRET", WEBHOOK_SECRET)
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


def _make_profile(session: Session, role: str, full_name: str | None = None) -> Profile:
    profile = Profile(
        full_name=full_name or role.replace("_", " ").title(),
        phone=f"+91{uuid.uuid4().int % 10**10:010d}",
        role=role,
    )
    session.add(profile)
    session.commit()
    return profile


def _auth(profile: Profile) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_session_token(profile.id)}"}


def _lead_payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "profile": {"fullName": "Asha Rao", "phone": "+919876543210"},
        "source": "website",
    }
    payload.update(overrides)
    return payload


def _create_lead(client: TestClient, actor: Profile, **overrides: object) -> dict:
    response = client.post("/api/v1/leads", json=_lead_payload(**overrides), headers=_auth(actor))
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _audit_entries(client: TestClient, admin: Profile, lead_id: str) -> list[dict]:
    response = client.get(
        "/api/v1/audit-logs",
        params={"entityType": "lead", "entityId": lead_id},
        headers=_auth(admin),
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


def test_create_lead_with_requirements_is_qualified_and_assigned_to_creator(
    client: TestClient,
    db_session: Session,
) -> None:
    agent = _make_profile(db_session, "buyer_agent")
    admin = _make_profile(db_session, "super_admin")

    response = client.post(
        "/api/v1/leads",
        json=_lead_payload(requirements={"bhk": [2, 3], "localities": ["Indiranagar"]}),
        headers=_auth(agent),
    )
    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "Lead created"
    assert body["duplicate"] is False
    lead = body["data"]
    assert lead["stage"] == "QUALIFIED"
    assert lead["status"] == "new"
    assert lead["assignedAgentId"] == str(agent.id)
    assert lead["requirementJson"]["bhk"] == [2, 3]
    assert lead["rowVersion"] == 1

    entries = _audit_entries(client, admin, lead["id"])
    assert [entry["action"] for entry in entries] == ["create"]
    assert entries[0]["performedById"] == str(agent.id)
    assert entries[0]["changes"]["stage"] == {"old": None, "new": "QUALIFIED"}


def test_create_lead_with_empty_requirements_is_new_lead(client: TestClient, db_session: Session) -> None:
    admin = _make_profile(db_session, "super_admin")

    lead = _create_lead(client, admin, requirements={})
    assert lead["stage"] == "NEW_LEAD"
    assert lead["requirementJson"] is None
    assert lead["assignedAgentId"] is None


def test_webhook_delivery_is_idempotent_on_external_id(client: TestClient, db_session: Session) -> None:
    headers = {"x-api-key": WEBHOOK_SECRET}
    payload = _lead_payload(source="99acres", externalId="ext-1001")

    first = client.post("/api/v1/leads", json=payload, headers=headers)
    assert first.status_code == 201
    assert first.json()["duplicate"] is False

    second = client.post("/api/v1/leads", json=payload, headers=headers)
    assert second.status_code == 200
    body = second.json()
    assert body["duplicate"] is True
    assert body["message"] == "Lead already exists"
    assert body["data"]["id"] == first.json()["data"]["id"]

    assert db_session.scalar(select(func.count()).select_from(Lead)) == 1


def test_webhook_rejects_wrong_api_key(client: TestClient) -> None:
    response = client.post("/api/v1/leads", json=_lead_payload(), headers={"x-api-key": "nope"})
    assert response.status_code == 401
    assert response.json()["error"] == "Unauthorized"


def test_webhook_without_configured_secret_is_misconfiguration(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.delenv("LEADS_API_SECRET", raising=False)
    get_settings.cache_clear()

    response = client.post("/api/v1/leads", json=_lead_payload(), headers={"x-api-key": WEBHOOK_SECRET})
    assert response.status_code == 500
    assert response.json()["error"] == "Server misconfiguration"


def test_create_lead_requires_authentication(client: TestClient) -> None:
    response = client.post("/api/v1/leads", json=_lead_payload())
    assert response.status_code == 401
    body = response.json()
    assert body["error"] == "Unauthorized"
    assert "correlation_id" in body


def test_create_lead_rejects_malformed_phone(client: TestClient, db_session: Session) -> None:
    agent = _make_profile(db_session, "buyer_agent")

    response = client.post(
        "/api/v1/leads",
        json=_lead_payload(profile={"fullName": "Asha Rao", "phone": "98765"}),
        headers=_auth(agent),
    )
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Validation Error"
    assert any(item["path"] == "profile.phone" for item in body["details"])


def test_status_update_bumps_row_version_and_writes_audit_diff(client: TestClient, db_session: Session) -> None:
    agent = _make_profile(db_session, "buyer_agent")
    admin = _make_profile(db_session, "super_admin")
    lead = _create_lead(client, agent)

    response = client.put(
        f"/api/v1/leads/{lead['id']}",
        json={"status": "contacted", "rowVersion": 1},
        headers=_auth(agent),
    )
    assert response.status_code == 200
    updated = response.json()["data"]
    assert updated["status"] == "contacted"
    assert updated["rowVersion"] == 2
    assert response.json()["message"] == "Lead updated"

    entries = _audit_entries(client, admin, lead["id"])
    assert [entry["action"] for entry in entries] == ["update", "create"]
    assert entries[0]["changes"] == {"status": {"old": "new", "new": "contacted"}}


def test_noop_update_writes_no_audit_entry(client: TestClient, db_session: Session) -> None:
    agent = _make_profile(db_session, "buyer_agent")
    admin = _make_profile(db_session, "super_admin")
    lead = _create_lead(client, agent, locality="Whitefield")

    response = client.put(f"/api/v1/leads/{lead['id']}", json={"locality": "Whitefield"}, headers=_auth(agent))
    assert response.status_code == 200
    assert response.json()["data"]["rowVersion"] == 1

    assert len(_audit_entries(client, admin, lead["id"])) == 1


def test_stale_row_version_is_conflict(client: TestClient, db_session: Session) -> None:
    agent = _make_profile(db_session, "buyer_agent")
    lead = _create_lead(client, agent)

    response = client.put(
        f"/api/v1/leads/{lead['id']}",
        json={"status": "contacted", "rowVersion": 5},
        headers=_auth(agent),
    )
    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "Conflict"
    assert body["message"] == "row_version conflict"


def test_buyer_agent_cannot_touch_another_agents_lead(client: TestClient, db_session: Session) -> None:
    owner = _make_profile(db_session, "buyer_agent", "Owner Agent")
    other = _make_profile(db_session, "buyer_agent", "Other Agent")
    lead = _create_lead(client, owner)

    read = client.get(f"/api/v1/leads/{lead['id']}", headers=_auth(other))
    assert read.status_code == 403
    assert read.json()["error"] == "Forbidden"

    write = client.put(f"/api/v1/leads/{lead['id']}", json={"status": "contacted"}, headers=_auth(other))
    assert write.status_code == 403


def test_reassignment_requires_assign_permission(client: TestClient, db_session: Session) -> None:
    owner = _make_profile(db_session, "buyer_agent", "Owner Agent")
    other = _make_profile(db_session, "buyer_agent", "Other Agent")
    lead_manager = _make_profile(db_session, "team_lead")
    lead = _create_lead(client, owner)

    denied = client.put(f"/api/v1/leads/{lead['id']}", json={"agentId": str(other.id)}, headers=_auth(owner))
    assert denied.status_code == 403

    allowed = client.put(
        f"/api/v1/leads/{lead['id']}",
        json={"agentId": str(other.id)},
        headers=_auth(lead_manager),
    )
    assert allowed.status_code == 200
    assert allowed.json()["data"]["assignedAgentId"] == str(other.id)

    unknown = client.put(
        f"/api/v1/leads/{lead['id']}",
        json={"agentId": str(uuid.uuid4())},
        headers=_auth(lead_manager),
    )
    assert unknown.status_code == 404


def test_only_super_admin_deletes_leads(client: TestClient, db_session: Session) -> None:
    agent = _make_profile(db_session, "buyer_agent")
    lead_manager = _make_profile(db_session, "team_lead")
    admin = _make_profile(db_session, "super_admin")
    lead = _create_lead(client, agent)

    denied = client.delete(f"/api/v1/leads/{lead['id']}", headers=_auth(lead_manager))
    assert denied.status_code == 403

    deleted = client.delete(f"/api/v1/leads/{lead['id']}", headers=_auth(admin))
    assert deleted.status_code == 200
    assert deleted.json()["message"] == "Lead deleted"

    missing = client.get(f"/api/v1/leads/{lead['id']}", headers=_auth(admin))
    assert missing.status_code == 404
    assert missing.json()["error"] == "Not Found"

    entries = _audit_entries(client, admin, lead["id"])
    assert entries[0]["action"] == "delete"
    assert entries[0]["changes"]["deletedAt"]["old"] is None


def test_activity_reactivates_decayed_lead(client: TestClient, db_session: Session) -> None:
    agent = _make_profile(db_session, "buyer_agent")
    lead = _create_lead(client, agent)

    row = db_session.get(Lead, uuid.UUID(lead["id"]))
    row.stage = "INACTIVE_LEAD"
    row.status = "at_risk"
    db_session.commit()

    first = client.post(f"/api/v1/leads/{lead['id']}/activity", json={"type": "LOGIN"}, headers=_auth(agent))
    assert first.status_code == 200
    assert first.json()["data"] == {"reactivated": True, "newStage": "REACTIVATED"}

    second = client.post(f"/api/v1/leads/{lead['id']}/activity", json={"type": "INQUIRY"}, headers=_auth(agent))
    assert second.json()["data"] == {"reactivated": False, "newStage": None}

    refreshed = client.get(f"/api/v1/leads/{lead['id']}", headers=_auth(agent)).json()["data"]
    assert refreshed["stage"] == "REACTIVATED"
    assert refreshed["status"] == "contacted"


def test_activity_rejects_unknown_type(client: TestClient, db_session: Session) -> None:
    agent = _make_profile(db_session, "buyer_agent")
    lead = _create_lead(client, agent)

    response = client.post(f"/api/v1/leads/{lead['id']}/activity", json={"type": "PING"}, headers=_auth(agent))
    assert response.status_code == 400


def test_list_is_scoped_to_own_leads_for_agents(client: TestClient, db_session: Session) -> None:
    first = _make_profile(db_session, "buyer_agent", "First Agent")
    second = _make_profile(db_session, "buyer_agent", "Second Agent")
    admin = _make_profile(db_session, "super_admin")
    _create_lead(client, first)
    _create_lead(client, second, profile={"fullName": "Vikram Shah", "phone": "+919812345678"})

    own = client.get("/api/v1/leads", headers=_auth(first)).json()
    assert own["pagination"]["total"] == 1
    assert own["data"][0]["assignedAgentId"] == str(first.id)

    everything = client.get("/api/v1/leads", headers=_auth(admin)).json()
    assert everything["pagination"] == {"page": 1, "limit": 20, "total": 2, "totalPages": 1}

    searched = client.get("/api/v1/leads", params={"search": "Vikram"}, headers=_auth(admin)).json()
    assert searched["pagination"]["total"] == 1
    assert searched["data"][0]["assignedAgentId"] == str(second.id)
