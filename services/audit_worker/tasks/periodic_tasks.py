import asyncio
from datetime import datetime, timezone
from typing import Any, Dict

from services.audit_worker.db.session import dispose_engine
from services.audit_worker.lifecycle import AuditLifecycleCoordinator
from config.logging_config import get_logger

from services.audit_worker.tasks.celery_app import celery_app

logger = get_logger(__name__)


def _run_async(coro):
    return asyncio.run(coro)


async def _sweep() -> Dict[str, Any]:
    coordinator = AuditLifecycleCoordinator()
    try:
        return await coordinator.sweep_stuck_audits()
    finally:
        # finalize handoffs must run before the loop closes
        await coordinator.aclose()
        await dispose_engine()


@celery_app.task(
    name="services.audit_worker.tasks.periodic_tasks.recover_stuck_audits"
)
def recover_stuck_audits() -> Dict[str, Any]:
    started_at = datetime.now(timezone.utc).isoformat()
    try:
        result = _run_async(_sweep())
    except Exception as exc:
        logger.error(
            "Stuck audit sweep failed",
            extra={"error": str(exc)},
            exc_info=True,
        )
        raise

    logger.info("Stuck audit sweep finished", extra=result)
    return {
        "status": "completed",
        "started_at": started_at,
        "completed_at": datetime.now(timezone.utc).isoformat(),
        **result,
    }
