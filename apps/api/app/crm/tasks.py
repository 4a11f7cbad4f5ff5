from __future__ import annotations

import logging
from typing import Any

from app.context import job_correlation
from app.core.celery_app import celery_app
from app.core.database import SessionLocal
from app.crm.lifecycle import lifecycle_service


logger = logging.getLogger("app.crm.tasks")


@celery_app.task(name="app.crm.tasks.process_lifecycle", bind=True)
def process_lifecycle(self, correlation_id: str | None = None) -> dict[str, Any]:  # type: ignore[no-untyped-def]
    with job_correlation("process_lifecycle", correlation_id):
        session = SessionLocal()
        try:
            result = lifecycle_service.process_time_decay(session)
        finally:
            session.close()
        logger.info(
            "lifecycle.task_completed",
            extra={"job": "process_lifecycle", "task_id": self.request.id, "count": result.total},
        )
    return result.model_dump(by_alias=True)
