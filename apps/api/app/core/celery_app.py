from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from app.core.config import get_settings
from app.logging import configure_logging
from app.otel import configure_tracing

settings = get_settings()

celery_app = Celery(
    "brokerage_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.crm.tasks"],
)
celery_app.conf.timezone = "UTC"
celery_app.conf.task_acks_late = True
celery_app.conf.worker_hijack_root_logger = False
celery_app.conf.beat_schedule = {
    "process-lead-lifecycle": {
        "task": "app.crm.tasks.process_lifecycle",
        "schedule": crontab(hour=settings.lifecycle_cron_hour, minute=0),
    },
}


@worker_process_init.connect
def _init_worker_process(**_: object) -> None:
    configure_logging()
    configure_tracing("worker")
