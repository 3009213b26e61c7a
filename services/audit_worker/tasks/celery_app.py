from celery import Celery
from celery.schedules import crontab

from services.audit_worker.config import settings
from config.logging_config import get_logger, setup_celery_logging

logger = get_logger(__name__)

celery_app = Celery(
    "audit_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_always_eager=settings.celery_task_always_eager,
    broker_connection_retry_on_startup=True,
)

celery_app.conf.beat_schedule = {
    "hourly_stuck_audit_recovery": {
        "task": "services.audit_worker.tasks.periodic_tasks.recover_stuck_audits",
        "schedule": crontab(minute=0),
    }
}

setup_celery_logging()

celery_app.autodiscover_tasks(["services.audit_worker.tasks"])
