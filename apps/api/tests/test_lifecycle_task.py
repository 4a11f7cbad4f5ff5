from __future__ import annotations

import logging
from collections.abc import Generator
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.agents.models import Profile
from app.core.database import Base, utcnow
from app.crm import tasks
from app.crm.models import Lead
from app.logging import configure_logging


@pytest.fixture(autouse=True)
def structured_logging() -> None:
    configure_logging()


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def stale_lead(engine: Engine, monkeypatch: pytest.MonkeyPatch) -> Lead:
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    monkeypatch.setattr(tasks, "SessionLocal", SessionLocal)

    session = SessionLocal()
    contact = Profile(full_name="Dormant Buyer", phone="+919700000001")
    session.add(contact)
    session.flush()
    lead = Lead(profile_id=contact.id, source="website", created_at=utcnow() - timedelta(days=15))
    session.add(lead)
    session.commit()
    session.close()
    return lead


def test_task_runs_decay_and_returns_camel_case_result(stale_lead: Lead) -> None:
    outcome = tasks.process_lifecycle.apply().get()

    assert outcome == {"preVisitDecayed": 1, "postVisitDecayed": 0, "total": 1}
    assert tasks.process_lifecycle.apply().get()["total"] == 0


def test_task_logs_carry_job_correlation_id(stale_lead: Lead, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    tasks.process_lifecycle.apply(kwargs={"correlation_id": "beat-2026-10-17"}).get()

    decayed = [record for record in caplog.records if record.getMessage() == "lifecycle.lead_decayed"]
    assert decayed
    assert all(getattr(record, "correlation_id", None) == "beat-2026-10-17" for record in decayed)
    completed = next(record for record in caplog.records if record.getMessage() == "lifecycle.task_completed")
    assert completed.count == 1
    assert completed.correlation_id == "beat-2026-10-17"


def test_task_generates_correlation_id_when_none_given(stale_lead: Lead, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    tasks.process_lifecycle.apply().get()

    completed = next(record for record in caplog.records if record.getMessage() == "lifecycle.task_completed")
    assert completed.correlation_id.startswith("process_lifecycle-")
