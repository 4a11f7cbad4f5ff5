from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
actor_id_var: ContextVar[str | None] = ContextVar("actor_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


@contextmanager
def job_correlation(job: str, correlation_id: str | None = None) -> Iterator[str]:
    """Bind a correlation id for work running outside an HTTP request (beat jobs, workers)."""
    value = correlation_id or f"{job}-{uuid.uuid4()}"
    token = set_correlation_id(value)
    try:
        yield value
    finally:
        reset_correlation_id(token)


def set_actor_id(value: str | None) -> Token[str | None]:
    """Bind the authenticated profile id to the current request for log records."""
    return actor_id_var.set(value)


def get_actor_id() -> str | None:
    return actor_id_var.get()
