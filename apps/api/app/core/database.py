from __future__ import annotations

import logging
from collections.abc import Callable, Generator, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Select, create_engine, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.core.config import get_settings
from app.core.errors import ConflictError, DatabaseError, ServiceError


logger = logging.getLogger("app.db")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round trip.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


engine = create_engine(get_settings().database_url, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def unit_of_work(session: Session) -> Iterator[Session]:
    """Commit everything done inside the block, or nothing.

    Service errors raised inside the block are re-raised unchanged after the
    rollback. Integrity violations surface as ``ConflictError`` and any other
    driver failure as ``DatabaseError``.
    """
    try:
        yield session
        session.commit()
    except ServiceError:
        session.rollback()
        raise
    except IntegrityError as exc:
        session.rollback()
        logger.warning("db.integrity_error", extra={"error": str(exc.orig)})
        raise ConflictError("Resource conflicts with an existing record") from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("db.error", exc_info=True, extra={"error": str(exc)})
        raise DatabaseError("Database operation failed") from exc
    except Exception:
        session.rollback()
        raise


def check_row_version(entity: object, expected: int | None) -> None:
    """Optimistic concurrency guard; callers that omit the version get last-write-wins."""
    if expected is None:
        return
    current = getattr(entity, "row_version", None)
    if current != expected:
        raise ConflictError("row_version conflict", details={"expected": expected, "current": current})


def paginate(session: Session, stmt: Select[Any], page: int, limit: int) -> tuple[list[Any], int]:
    total = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    rows = session.scalars(stmt.offset((page - 1) * limit).limit(limit)).all()
    return list(rows), int(total)


def apply_changes(
    session: Session,
    entity: Any,
    values: Mapping[str, Any],
    snapshot: Callable[[Any], dict[str, Any]],
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Set ``values`` on ``entity`` and return its before/after snapshots.

    The entity is flushed and refreshed so the after snapshot reflects stored
    values; ``row_version`` only moves when the snapshot actually changed.
    """
    before = snapshot(entity)
    for key, value in values.items():
        setattr(entity, key, value)
    session.flush()
    session.refresh(entity)
    after = snapshot(entity)
    if after != before:
        entity.row_version = entity.row_version + 1
        session.flush()
    return before, after
