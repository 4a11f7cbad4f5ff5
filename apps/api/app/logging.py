from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_actor_id, get_correlation_id
from app.core.config import Settings, get_settings


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())

# Structured extras that reach the output; anything else passed via ``extra`` is dropped.
LOG_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "entity_type",
        "entity_id",
        "action",
        "job",
        "population",
        "count",
        "from_stage",
        "to_stage",
        "route_group",
        "retry_after",
        "task_id",
        "auth_method",
        "phone",
        "status",
        "error",
    }
)
MAX_ERROR_LENGTH = 500
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"

_PHONE_RE = re.compile(r"^(\+?\d+?)(\d{4})$")


def mask_phone(value: str) -> str:
    """``+919812345678`` -> ``+91******5678``."""
    match = _PHONE_RE.match(value)
    if match is None:
        return "***"
    head, tail = match.groups()
    prefix = head[:3] if head.startswith("+") else ""
    return f"{prefix}{'*' * (len(head) - len(prefix))}{tail}"


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        if not getattr(record, "actor_id", None):
            record.actor_id = get_actor_id()
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def _structured_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key.startswith("_") or key in _BASE_RECORD_KEYS or key not in LOG_FIELDS:
            continue
        if key == "phone" and isinstance(value, str):
            value = mask_phone(value)
        elif key == "error" and isinstance(value, str):
            value = value[:MAX_ERROR_LENGTH]
        fields[key] = value
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "actor_id": getattr(record, "actor_id", None),
        }
        fields = _structured_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload["fields"] = fields
        return json.dumps(payload, default=str)


class TextLogFormatter(logging.Formatter):
    """Human readable lines for local runs; structured fields trail the message."""

    def __init__(self) -> None:
        super().__init__(TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _structured_fields(record)
        if not fields:
            return line
        rendered = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        return f"{line} {rendered}"


def configure_logging(settings: Settings | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_brokerage_configured", False):
        return

    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(TextLogFormatter() if settings.log_format == "text" else JsonLogFormatter())
    handler.addFilter(RequestContextFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._brokerage_configured = True  # type: ignore[attr-defined]
