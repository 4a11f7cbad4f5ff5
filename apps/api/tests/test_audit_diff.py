from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import BaseModel
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.core.database import Base
from app.core.schemas import ReadModel
from app.models.audit import AuditLog


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


class _Sample(ReadModel):
    id: uuid.UUID
    asking_price: Decimal | None
    published_at: datetime | None
    tags: list[str]
    updated_at: datetime
    row_version: int


def test_create_diff_lists_only_non_null_fields() -> None:
    changes = audit.compute_changes(None, {"status": "new", "locality": None, "bhk": [2, 3]})
    assert changes == {
        "status": {"old": None, "new": "new"},
        "bhk": {"old": None, "new": [2, 3]},
    }


def test_create_diff_of_all_null_record_is_none() -> None:
    assert audit.compute_changes(None, {"status": None}) is None


def test_update_diff_reports_changed_fields_only() -> None:
    old = {"status": "new", "stage": "NEW_LEAD", "requirements": {"bhk": [2]}}
    new = {"status": "contacted", "stage": "NEW_LEAD", "requirements": {"bhk": [2]}}
    assert audit.compute_changes(old, new) == {"status": {"old": "new", "new": "contacted"}}


def test_update_diff_compares_nested_values_structurally() -> None:
    old = {"requirements": {"bhk": [2]}}
    new = {"requirements": {"bhk": [2, 3]}}
    assert audit.compute_changes(old, new) == {
        "requirements": {"old": {"bhk": [2]}, "new": {"bhk": [2, 3]}},
    }


def test_update_diff_treats_missing_old_key_as_null() -> None:
    assert audit.compute_changes({}, {"dropReason": "budget"}) == {"dropReason": {"old": None, "new": "budget"}}


def test_identical_snapshots_produce_no_diff() -> None:
    state = {"status": "active", "images": ["a.jpg"]}
    assert audit.compute_changes(state, dict(state)) is None


def test_snapshot_is_json_normalised_and_drops_bookkeeping() -> None:
    record_id = uuid.uuid4()
    sample = _Sample(
        id=record_id,
        asking_price=Decimal("4500000.00"),
        published_at=datetime(2026, 1, 2, 3, 4, 5),
        tags=["corner"],
        updated_at=datetime(2026, 1, 2, tzinfo=timezone.utc),
        row_version=3,
    )
    snapshot = audit.snapshot(sample)
    assert snapshot == {
        "id": str(record_id),
        "askingPrice": "4500000.00",
        "publishedAt": "2026-01-02T03:04:05Z",
        "tags": ["corner"],
    }


def test_log_activity_skips_empty_change_sets(db_session: Session) -> None:
    entity_id = uuid.uuid4()
    assert audit.log_activity(
        db_session,
        entity_type="lead",
        entity_id=entity_id,
        action="update",
        changes=None,
        performed_by_id=None,
    ) is None
    assert db_session.scalars(select(AuditLog)).all() == []


def test_audit_logs_are_returned_newest_first_and_limited(db_session: Session) -> None:
    entity_id = uuid.uuid4()
    for index in range(3):
        db_session.add(
            AuditLog(
                entity_type="lead",
                entity_id=entity_id,
                action="update",
                changes={"status": {"old": None, "new": str(index)}},
                created_at=datetime(2026, 1, 1 + index, tzinfo=timezone.utc),
            )
        )
    db_session.add(
        AuditLog(entity_type="visit", entity_id=entity_id, action="create", changes={"x": {"old": None, "new": 1}})
    )
    db_session.commit()

    entries = audit.get_audit_logs(db_session, "lead", entity_id, limit=2)
    assert [entry.changes["status"]["new"] for entry in entries] == ["2", "1"]


def test_audit_write_failure_is_swallowed(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_commit() -> None:
        raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk full"))

    monkeypatch.setattr(db_session, "commit", failing_commit)

    result = audit.record_change(
        db_session,
        entity_type="lead",
        entity_id=uuid.uuid4(),
        action="create",
        before=None,
        after={"status": "new"},
        performed_by_id=None,
    )
    assert result is None


def test_deletion_records_deleted_at_change(db_session: Session) -> None:
    deleted_at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    entry = audit.record_deletion(
        db_session,
        entity_type="lead",
        entity_id=uuid.uuid4(),
        deleted_at=deleted_at,
        performed_by_id=None,
    )
    assert entry is not None
    assert entry.action == "delete"
    assert entry.changes == {"deletedAt": {"old": None, "new": deleted_at.isoformat()}}


def test_snapshot_accepts_any_pydantic_model() -> None:
    class Plain(BaseModel):
        name: str

    assert audit.snapshot(Plain(name="x"), exclude=()) == {"name": "x"}


def test_update_diff_distinguishes_booleans_from_integers() -> None:
    changes = audit.compute_changes({"flag": 1, "n": 0, "bhk": [1]}, {"flag": True, "n": False, "bhk": [True]})
    assert changes == {
        "flag": {"old": 1, "new": True},
        "n": {"old": 0, "new": False},
        "bhk": {"old": [1], "new": [True]},
    }
