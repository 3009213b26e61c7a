from services.audit_worker.tasks.celery_app import celery_app
from services.audit_worker.tasks.periodic_tasks import recover_stuck_audits

__all__ = [
    "celery_app",
    "recover_stuck_audits",
]
