from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.agents.models import Profile
from app.core.auth import issue_session_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm import service as crm_service
from app.crm.models import Lead, Offer
from app.inventory.models import Building, Listing, Unit
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


def _make_profile(session: Session, role: str | None, full_name: str = "Someone") -> Profile:
    profile = Profile(full_name=full_name, phone=f"+91{uuid.uuid4().int % 10**10:010d}", role=role)
    session.add(profile)
    session.commit()
    return profile


def _auth(profile: Profile) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_session_token(profile.id)}"}


@pytest.fixture()
def deal(db_session: Session) -> dict[str, str]:
    buyer = _make_profile(db_session, None, "Buyer")
    building = Building(name="Skyline Residency")
    db_session.add(building)
    db_session.flush()
    unit = Unit(building_id=building.id, unit_number="C-1203")
    db_session.add(unit)
    db_session.flush()
    listing = Listing(unit_id=unit.id, status="active", images=[])
    lead = Lead(profile_id=buyer.id, source="website")
    db_session.add_all([listing, lead])
    db_session.commit()
    return {"listingId": str(listing.id), "leadId": str(lead.id)}


def _make_offer(client: TestClient, actor: Profile, deal: dict[str, str], amount: str = "9500000") -> dict:
    response = client.post(
        "/api/v1/offers",
        json={**deal, "offerAmount": amount, "terms": {"possession": "90 days"}},
        headers=_auth(actor),
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def test_create_offer_starts_pending(client: TestClient, db_session: Session, deal: dict[str, str]) -> None:
    agent = _make_profile(db_session, "buyer_agent")

    offer = _make_offer(client, agent, deal)
    assert offer["status"] == "pending"
    assert offer["offerAmount"] == "9500000.00"
    assert offer["createdById"] == str(agent.id)


def test_create_offer_rejects_non_positive_amount(client: TestClient, db_session: Session, deal: dict[str, str]) -> None:
    agent = _make_profile(db_session, "buyer_agent")

    response = client.post("/api/v1/offers", json={**deal, "offerAmount": "0"}, headers=_auth(agent))
    assert response.status_code == 400
    assert response.json()["error"] == "Validation Error"


def test_counter_creates_linked_pending_offer(client: TestClient, db_session: Session, deal: dict[str, str]) -> None:
    agent = _make_profile(db_session, "team_lead")
    offer = _make_offer(client, agent, deal)

    response = client.post(
        f"/api/v1/offers/{offer['id']}",
        json={"action": "counter", "counterAmount": "9900000"},
        headers=_auth(agent),
    )
    assert response.status_code == 200
    counter = response.json()["data"]
    assert counter["id"] != offer["id"]
    assert counter["status"] == "pending"
    assert counter["offerAmount"] == "9900000.00"
    assert counter["counteredFromOfferId"] == offer["id"]
    assert counter["terms"] == {"possession": "90 days"}

    original = client.get(f"/api/v1/offers/{offer['id']}", headers=_auth(agent)).json()["data"]
    assert original["status"] == "countered"

    accept_countered = client.post(
        f"/api/v1/offers/{offer['id']}",
        json={"action": "accept"},
        headers=_auth(agent),
    )
    assert accept_countered.status_code == 400
    assert accept_countered.json()["message"] == "Cannot accept a countered offer"


def test_accept_leaves_other_offers_untouched(client: TestClient, db_session: Session, deal: dict[str, str]) -> None:
    agent = _make_profile(db_session, "team_lead")
    first = _make_offer(client, agent, deal, "9000000")
    second = _make_offer(client, agent, deal, "9200000")

    accepted = client.post(f"/api/v1/offers/{first['id']}", json={"action": "accept"}, headers=_auth(agent))
    assert accepted.status_code == 200
    assert accepted.json()["data"]["status"] == "accepted"

    other = client.get(f"/api/v1/offers/{second['id']}", headers=_auth(agent)).json()["data"]
    assert other["status"] == "pending"

    pending = client.get("/api/v1/offers", params={"listingId": deal["listingId"], "status": "pending"}, headers=_auth(agent))
    assert pending.json()["pagination"]["total"] == 1


def test_reject_records_reason(client: TestClient, db_session: Session, deal: dict[str, str]) -> None:
    agent = _make_profile(db_session, "team_lead")
    offer = _make_offer(client, agent, deal)

    rejected = client.post(
        f"/api/v1/offers/{offer['id']}",
        json={"action": "reject", "reason": "Below reserve price"},
        headers=_auth(agent),
    )
    assert rejected.status_code == 200
    data = rejected.json()["data"]
    assert data["status"] == "rejected"
    assert data["rejectionReason"] == "Below reserve price"

    edit = client.put(f"/api/v1/offers/{offer['id']}", json={"offerAmount": "9600000"}, headers=_auth(agent))
    assert edit.status_code == 400


def test_buyer_agent_cannot_decide_offers(client: TestClient, db_session: Session, deal: dict[str, str]) -> None:
    agent = _make_profile(db_session, "buyer_agent")
    offer = _make_offer(client, agent, deal)

    response = client.post(f"/api/v1/offers/{offer['id']}", json={"action": "accept"}, headers=_auth(agent))
    assert response.status_code == 403


def test_only_privileged_roles_delete_offers(client: TestClient, db_session: Session, deal: dict[str, str]) -> None:
    agent = _make_profile(db_session, "buyer_agent")
    admin = _make_profile(db_session, "super_admin")
    offer = _make_offer(client, agent, deal)

    denied = client.delete(f"/api/v1/offers/{offer['id']}", headers=_auth(agent))
    assert denied.status_code == 403

    deleted = client.delete(f"/api/v1/offers/{offer['id']}", headers=_auth(admin))
    assert deleted.status_code == 200
    assert client.get(f"/api/v1/offers/{offer['id']}", headers=_auth(admin)).status_code == 404


def test_counter_rolls_back_when_original_cannot_be_updated(
    client: TestClient,
    db_session: Session,
    deal: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    agent = _make_profile(db_session, "team_lead")
    offer = _make_offer(client, agent, deal)

    def failing_apply_changes(*args: object, **kwargs: object) -> None:
        raise OperationalError("UPDATE offers", {}, Exception("database is locked"))

    monkeypatch.setattr(crm_service, "apply_changes", failing_apply_changes)

    response = client.post(
        f"/api/v1/offers/{offer['id']}",
        json={"action": "counter", "counterAmount": "9900000"},
        headers=_auth(agent),
    )
    assert response.status_code == 500
    assert response.json()["error"] == "Internal Server Error"

    db_session.expire_all()
    assert db_session.scalar(select(func.count()).select_from(Offer)) == 1
    stored = db_session.get(Offer, uuid.UUID(offer["id"]))
    assert stored is not None
    assert stored.status == "pending"
    assert str(stored.offer_amount) == "9500000.00"
